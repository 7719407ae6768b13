from __future__ import annotations

import json
import re
from typing import Any

import boto3
from botocore.exceptions import ClientError

from policy_doc import inline_policy_name
from policy_doc import load_policy_document


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code") or "")


def _policy_text(policy: dict[str, Any] | str) -> str:
    if isinstance(policy, str):
        return policy
    return json.dumps(policy, separators=(",", ":"))


def client_for_credentials(credentials: dict[str, Any] | None = None) -> Any:
    """IAM client for the home account, or for a member account when given STS credentials."""
    if not credentials:
        return boto3.client("iam")
    return boto3.client(
        "iam",
        aws_access_key_id=credentials["AccessKeyId"],
        aws_secret_access_key=credentials["SecretAccessKey"],
        aws_session_token=credentials["SessionToken"],
    )


def session_name(home_account_id: str, purpose: str) -> str:
    sanitized = re.sub(r"[^a-zA-Z0-9+=,.@_-]", "", f"{home_account_id}-{purpose}")
    return sanitized[:64] or "cross-account-manager"


def assume_member_admin(sts: Any, *, account_id: str, admin_role_name: str, role_session_name: str) -> dict[str, Any]:
    out = sts.assume_role(
        RoleArn=f"arn:aws:iam::{account_id}:role/{admin_role_name}",
        RoleSessionName=role_session_name,
    )
    return out["Credentials"]


def get_inline_policy(iam: Any, role_name: str) -> dict[str, Any] | None:
    try:
        out = iam.get_role_policy(RoleName=role_name, PolicyName=inline_policy_name(role_name))
    except ClientError as e:
        if _error_code(e) == "NoSuchEntity":
            return None
        raise
    return load_policy_document(out.get("PolicyDocument"))


def put_inline_policy(iam: Any, role_name: str, policy: dict[str, Any] | str) -> None:
    iam.put_role_policy(
        RoleName=role_name,
        PolicyName=inline_policy_name(role_name),
        PolicyDocument=_policy_text(policy),
    )


def delete_inline_policy(iam: Any, role_name: str) -> bool:
    try:
        iam.delete_role_policy(RoleName=role_name, PolicyName=inline_policy_name(role_name))
    except ClientError as e:
        if _error_code(e) == "NoSuchEntity":
            return False
        raise
    return True


def delete_role(iam: Any, role_name: str) -> bool:
    """Delete the role and its inline policy. A missing role is not an error."""
    delete_inline_policy(iam, role_name)
    try:
        iam.delete_role(RoleName=role_name)
    except ClientError as e:
        if _error_code(e) == "NoSuchEntity":
            return False
        raise
    return True


def create_role(
    iam: Any,
    role_name: str,
    trust_policy: dict[str, Any],
    policy: dict[str, Any] | str | None = None,
) -> bool:
    """Create the role with its trust and inline policy.

    An existing role has its trust policy replaced instead, so redelivered
    requests converge on the same role. Returns True when the role was created.
    """
    created = True
    try:
        iam.create_role(RoleName=role_name, AssumeRolePolicyDocument=_policy_text(trust_policy))
    except ClientError as e:
        if _error_code(e) != "EntityAlreadyExists":
            raise
        created = False
        iam.update_assume_role_policy(RoleName=role_name, PolicyDocument=_policy_text(trust_policy))
    if policy:
        put_inline_policy(iam, role_name, policy)
    return created
