from __future__ import annotations

import json
import os
import time
from datetime import datetime, timezone
from typing import Any, Callable

import boto3

import aws_io
import iam_roles
import registry
from event_codec import ACTION_ADD
from event_codec import MessageError
from event_codec import RoleRequest
from event_codec import encode_link_refresh
from event_codec import encode_role_request
from event_codec import parse_role_request
from event_codec import sns_messages
from event_codec import sqs_messages
from policy_doc import member_trust_policy

BINDINGS_TABLE_NAME = os.environ.get("BINDINGS_TABLE_NAME", "CrossAccountManager-Account-Roles")
MEMBER_ADMIN_ROLE_NAME = os.environ.get("MEMBER_ADMIN_ROLE_NAME", "CrossAccountManager-Admin-DO-NOT-DELETE")
SETTLE_QUEUE_URL = os.environ.get("SETTLE_QUEUE_URL", "")
SETTLE_DELAY_SECONDS = os.environ.get("SETTLE_DELAY_SECONDS", "60")
ACCESS_LINKS_TOPIC_ARN = os.environ.get("ACCESS_LINKS_TOPIC_ARN", "")
HOME_ACCOUNT_ID = os.environ.get("HOME_ACCOUNT_ID", "")
SCHEMA_VERSION = os.environ.get("SCHEMA_VERSION", "2026-10-01")

DEFAULT_SETTLE_DELAY_SECONDS = 60
# SQS DelaySeconds upper bound.
MAX_SETTLE_DELAY_SECONDS = 900

_ddb_resource: Any | None = None
_sts_client: Any | None = None
_sqs_client: Any | None = None
_sns_client: Any | None = None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _ddb() -> Any:
    global _ddb_resource
    if _ddb_resource is None:
        _ddb_resource = boto3.resource("dynamodb")
    return _ddb_resource


def _sts() -> Any:
    global _sts_client
    if _sts_client is None:
        _sts_client = boto3.client("sts")
    return _sts_client


def _sqs() -> Any:
    global _sqs_client
    if _sqs_client is None:
        _sqs_client = boto3.client("sqs")
    return _sqs_client


def _sns() -> Any:
    global _sns_client
    if _sns_client is None:
        _sns_client = boto3.client("sns")
    return _sns_client


def _bindings_table() -> Any:
    return _ddb().Table(BINDINGS_TABLE_NAME)


def _settle_delay_seconds() -> int:
    try:
        n = int(SETTLE_DELAY_SECONDS)
    except ValueError:
        return DEFAULT_SETTLE_DELAY_SECONDS
    return min(max(n, 0), MAX_SETTLE_DELAY_SECONDS)


def _home_account_id(context: Any) -> str:
    arn = str(getattr(context, "invoked_function_arn", "") or "")
    parts = arn.split(":")
    if len(parts) > 4 and parts[4]:
        return parts[4]
    if HOME_ACCOUNT_ID:
        return HOME_ACCOUNT_ID
    raise RuntimeError("cannot determine home account id (no function ARN and HOME_ACCOUNT_ID unset)")


def _member_iam(account_id: str, home_account_id: str) -> Any:
    credentials = iam_roles.assume_member_admin(
        _sts(),
        account_id=account_id,
        admin_role_name=MEMBER_ADMIN_ROLE_NAME,
        role_session_name=iam_roles.session_name(home_account_id, "handleRoleEvent"),
    )
    return iam_roles.client_for_credentials(credentials)


def begin(req: RoleRequest, home_account_id: str) -> dict[str, Any]:
    """Delete phase: clear the member role, then hand ADDs to the settle queue."""
    if req.action == ACTION_ADD and not req.policy.strip():
        raise MessageError(f"missing Policy for ADD of {req.role} in {req.account_id}")

    deleted = iam_roles.delete_role(_member_iam(req.account_id, home_account_id), req.role)
    out: dict[str, Any] = {"role": req.role, "accountId": req.account_id, "action": req.action, "deleted": deleted}

    if req.action == ACTION_ADD:
        delay = _settle_delay_seconds()
        aws_io.send_delayed(_sqs(), SETTLE_QUEUE_URL, encode_role_request(req), delay)
        out["phase"] = "scheduled"
        out["delay_seconds"] = delay
        return out

    registry.put_binding(
        _bindings_table(),
        role=req.role,
        account_id=req.account_id,
        status=registry.BINDING_DELETED,
    )
    out["phase"] = "removed"
    return out


def complete(req: RoleRequest, home_account_id: str) -> dict[str, Any]:
    """Create phase, re-entered from the settle queue once deletions have propagated."""
    if req.action != ACTION_ADD:
        raise MessageError(f"settle continuation for {req.role} must be an ADD request")
    if not req.policy.strip():
        raise MessageError(f"missing Policy for ADD of {req.role} in {req.account_id}")

    # The binding row holds the latest intent; a REMOVE handled during the delay wins.
    binding = registry.get_binding(_bindings_table(), req.role, req.account_id)
    current = str((binding or {}).get("status") or "")
    if current != registry.BINDING_PENDING:
        return {
            "role": req.role,
            "accountId": req.account_id,
            "action": req.action,
            "phase": "skipped",
            "binding_status": current or None,
        }

    iam = _member_iam(req.account_id, home_account_id)
    created = iam_roles.create_role(iam, req.role, member_trust_policy(home_account_id, req.role), req.policy)

    registry.put_binding(
        _bindings_table(),
        role=req.role,
        account_id=req.account_id,
        status=registry.BINDING_ACTIVE,
    )
    if ACCESS_LINKS_TOPIC_ARN:
        aws_io.publish(_sns(), ACCESS_LINKS_TOPIC_ARN, encode_link_refresh(req))

    return {
        "role": req.role,
        "accountId": req.account_id,
        "action": req.action,
        "phase": "created",
        "created": created,
    }


def _run(
    event: dict[str, Any],
    context: Any,
    *,
    name: str,
    messages: Callable[[dict[str, Any]], list[dict[str, Any]]],
    step: Callable[[RoleRequest, str], dict[str, Any]],
) -> dict[str, Any]:
    start = time.time()
    wide_event: dict[str, Any] = {
        "event": name,
        "schema_version": SCHEMA_VERSION,
        "ts": _now_iso(),
        "request_id": str(getattr(context, "aws_request_id", "") or ""),
    }
    try:
        if not SETTLE_QUEUE_URL:
            wide_event["outcome"] = "misconfigured"
            raise RuntimeError("missing configuration: SETTLE_QUEUE_URL")

        home_account_id = _home_account_id(context)
        results: list[dict[str, Any]] = []
        for msg in messages(event):
            req = parse_role_request(msg)
            wide_event["role"] = req.role
            wide_event["account_id"] = req.account_id
            wide_event["action"] = req.action
            results.append(step(req, home_account_id))

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


def handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    return _run(event, context, name="cam_role_event", messages=sns_messages, step=begin)


def settle_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    return _run(event, context, name="cam_role_settle", messages=sqs_messages, step=complete)
