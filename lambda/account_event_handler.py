from __future__ import annotations

import json
import os
import time
from datetime import datetime, timezone
from typing import Any

import boto3

import aws_io
import iam_roles
import registry
from event_codec import ACTION_ADD
from event_codec import LifecycleEvent
from event_codec import RoleRequest
from event_codec import encode_role_request
from event_codec import parse_lifecycle_event
from event_codec import sns_messages
from policy_doc import add_account
from policy_doc import build_assume_role_policy
from policy_doc import remove_account

ACCOUNTS_TABLE_NAME = os.environ.get("ACCOUNTS_TABLE_NAME", "CrossAccountManager-Accounts")
ROLES_TABLE_NAME = os.environ.get("ROLES_TABLE_NAME", "CrossAccountManager-Roles")
BINDINGS_TABLE_NAME = os.environ.get("BINDINGS_TABLE_NAME", "CrossAccountManager-Account-Roles")
ROLE_TOPIC_ARN = os.environ.get("ROLE_TOPIC_ARN", "")
POLICY_KEY_PREFIX = os.environ.get("POLICY_KEY_PREFIX", "custom_policy/")
SCHEMA_VERSION = os.environ.get("SCHEMA_VERSION", "2026-10-01")

_ddb_resource: Any | None = None
_s3_client: Any | None = None
_sns_client: Any | None = None
_iam_client: Any | None = None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _ddb() -> Any:
    global _ddb_resource
    if _ddb_resource is None:
        _ddb_resource = boto3.resource("dynamodb")
    return _ddb_resource


def _s3() -> Any:
    global _s3_client
    if _s3_client is None:
        _s3_client = boto3.client("s3")
    return _s3_client


def _sns() -> Any:
    global _sns_client
    if _sns_client is None:
        _sns_client = boto3.client("sns")
    return _sns_client


def _iam() -> Any:
    global _iam_client
    if _iam_client is None:
        _iam_client = iam_roles.client_for_credentials()
    return _iam_client


def _accounts_table() -> Any:
    return _ddb().Table(ACCOUNTS_TABLE_NAME)


def _roles_table() -> Any:
    return _ddb().Table(ROLES_TABLE_NAME)


def _bindings_table() -> Any:
    return _ddb().Table(BINDINGS_TABLE_NAME)


def update_home_policy(iam: Any, role_name: str, account_id: str, action: str) -> str:
    """Add or remove the account's ARN in the role's home-account resource list.

    The list is edited as a set and written back whole; concurrent editors of the
    same role settle on last-write-wins.
    """
    current = iam_roles.get_inline_policy(iam, role_name)
    if current is None:
        if action != ACTION_ADD:
            return "absent"
        iam_roles.put_inline_policy(iam, role_name, build_assume_role_policy(role_name, [account_id]))
        return "created"

    if action == ACTION_ADD:
        updated, changed = add_account(current, role_name, account_id)
        if updated != current:
            iam_roles.put_inline_policy(iam, role_name, updated)
        return "added" if changed else "unchanged"

    remaining, changed = remove_account(current, role_name, account_id)
    if remaining is None:
        # An empty Resource list grants nothing; drop the policy instead.
        iam_roles.delete_inline_policy(iam, role_name)
        return "deleted"
    if remaining != current:
        iam_roles.put_inline_policy(iam, role_name, remaining)
    return "removed" if changed else "unchanged"


def reconcile(evt: LifecycleEvent) -> dict[str, Any]:
    accounts = _accounts_table()
    account = registry.get_account(accounts, evt.account_id)
    if not account:
        raise registry.UnknownAccountError(f"account {evt.account_id} is not registered")

    adding = evt.action == ACTION_ADD
    group = str(account.get("accountGroup") or registry.ANY_GROUP)
    registry.put_account(
        accounts,
        account_id=evt.account_id,
        email=str(account.get("email") or ""),
        group=group,
        status=registry.ACCOUNT_ACTIVE if adding else registry.ACCOUNT_DELETED,
    )

    iam = _iam()
    bindings = _bindings_table()
    results: list[dict[str, Any]] = []
    for role_item in registry.roles_for_group(_roles_table(), group):
        role_name = str(role_item.get("role") or "")
        if not role_name:
            continue
        policy_outcome = update_home_policy(iam, role_name, evt.account_id, evt.action)
        registry.put_binding(
            bindings,
            role=role_name,
            account_id=evt.account_id,
            status=registry.BINDING_PENDING if adding else registry.BINDING_DELETED,
        )
        if adding:
            bucket, path = registry.parse_policy_ref(str(role_item.get("policy") or ""))
            body = aws_io.read_text(_s3(), bucket, f"{POLICY_KEY_PREFIX}{path}")
            request = RoleRequest(action=evt.action, account_id=evt.account_id, role=role_name, policy=body)
            aws_io.publish(_sns(), ROLE_TOPIC_ARN, encode_role_request(request))
        results.append({"role": role_name, "policy": policy_outcome})

    return {"accountId": evt.account_id, "action": evt.action, "group": group, "roles": results}


def handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    start = time.time()
    wide_event: dict[str, Any] = {
        "event": "cam_account_event",
        "schema_version": SCHEMA_VERSION,
        "ts": _now_iso(),
        "request_id": str(getattr(context, "aws_request_id", "") or ""),
    }
    try:
        if not ROLE_TOPIC_ARN:
            wide_event["outcome"] = "misconfigured"
            raise RuntimeError("missing configuration: ROLE_TOPIC_ARN")

        results: list[dict[str, Any]] = []
        for msg in sns_messages(event):
            evt = parse_lifecycle_event(msg)
            wide_event["account_id"] = evt.account_id
            wide_event["action"] = evt.action
            results.append(reconcile(evt))

        wide_event["results"] = results
        wide_event["outcome"] = "success"
        return {"ok": True, "results": results}
    except Exception as exc:
        wide_event.setdefault("outcome", "error")
        wide_event["error"] = {"type": type(exc).__name__, "message": str(exc)}
        raise
    finally:
        wide_event["duration_ms"] = int((time.time() - start) * 1000)
        print(json.dumps(wide_event, separators=(",", ":"), sort_keys=True))
