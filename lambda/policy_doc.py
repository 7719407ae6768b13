from __future__ import annotations

import copy
import json
from typing import Any
from urllib.parse import unquote

POLICY_VERSION = "2012-10-17"
ASSUME_ROLE_ACTION = "sts:AssumeRole"
READ_ONLY_ACTIONS = ["s3:Get*", "s3:List*"]


def role_arn(account_id: str, role_name: str) -> str:
    return f"arn:aws:iam::{account_id}:role/{role_name}"


def inline_policy_name(role_name: str) -> str:
    return f"{role_name}-Permission"


def _unique(values: list[str]) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for value in values:
        if not value or value in seen:
            continue
        seen.add(value)
        out.append(value)
    return out


def build_assume_role_policy(role_name: str, account_ids: list[str]) -> dict[str, Any] | None:
    """Home-account permission policy letting `role_name` switch into each account.

    Returns None when there is no account to grant, meaning no policy is needed.
    """
    resources = _unique([role_arn(str(a).strip(), role_name) for a in account_ids if str(a).strip()])
    if not resources:
        return None
    return {
        "Version": POLICY_VERSION,
        "Statement": [
            {
                "Effect": "Allow",
                "Action": [ASSUME_ROLE_ACTION],
                "Resource": resources,
            },
            {
                "Effect": "Allow",
                "Action": list(READ_ONLY_ACTIONS),
                "Resource": "*",
            },
        ],
    }


def member_trust_policy(home_account_id: str, role_name: str) -> dict[str, Any]:
    # Only the same-named role in the home account may assume the member role.
    return {
        "Version": POLICY_VERSION,
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": {"AWS": role_arn(home_account_id, role_name)},
                "Action": ASSUME_ROLE_ACTION,
            }
        ],
    }


def service_trust_policy(service: str) -> dict[str, Any]:
    return {
        "Version": POLICY_VERSION,
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": {"Service": service},
                "Action": ASSUME_ROLE_ACTION,
            }
        ],
    }


def load_policy_document(raw: Any) -> dict[str, Any]:
    """IAM may hand back a URL-encoded JSON string or an already decoded dict."""
    if isinstance(raw, dict):
        return raw
    text = str(raw or "").strip()
    if text.startswith("%7B") or text.startswith("%7b"):
        text = unquote(text)
    doc = json.loads(text)
    if not isinstance(doc, dict):
        raise ValueError("policy document must be a JSON object")
    return doc


def assume_role_resources(policy: dict[str, Any]) -> list[str]:
    statements = policy.get("Statement") or []
    if isinstance(statements, dict):
        statements = [statements]
    if not statements:
        return []
    resource = statements[0].get("Resource") or []
    if isinstance(resource, str):
        return [resource]
    return [str(r) for r in resource]


def _with_resources(policy: dict[str, Any], resources: list[str]) -> dict[str, Any]:
    out = copy.deepcopy(policy)
    statements = out.get("Statement") or []
    if isinstance(statements, dict):
        statements = [statements]
        out["Statement"] = statements
    statements[0]["Resource"] = resources
    return out


def add_account(policy: dict[str, Any], role_name: str, account_id: str) -> tuple[dict[str, Any], bool]:
    resources = _unique(assume_role_resources(policy))
    arn = role_arn(account_id, role_name)
    if arn in resources:
        return _with_resources(policy, resources), False
    resources.append(arn)
    return _with_resources(policy, resources), True


def remove_account(
    policy: dict[str, Any], role_name: str, account_id: str
) -> tuple[dict[str, Any] | None, bool]:
    """Drop the account's ARN. Returns (None, changed) once nothing is left to grant."""
    resources = _unique(assume_role_resources(policy))
    arn = role_arn(account_id, role_name)
    changed = arn in resources
    remaining = [r for r in resources if r != arn]
    if not remaining:
        return None, changed
    return _with_resources(policy, remaining), changed
