from __future__ import annotations

import json
import os
import time
from datetime import datetime, timezone
from typing import Any, Callable
from urllib.parse import unquote_plus

import boto3

import aws_io
import iam_roles
import registry
from definitions import DefinitionError
from definitions import RoleDefinition
from definitions import parse_accounts
from definitions import parse_roles
from event_codec import ACTION_ADD
from event_codec import RoleRequest
from event_codec import encode_role_request
from policy_doc import build_assume_role_policy
from policy_doc import service_trust_policy

ACCOUNTS_TABLE_NAME = os.environ.get("ACCOUNTS_TABLE_NAME", "CrossAccountManager-Accounts")
ROLES_TABLE_NAME = os.environ.get("ROLES_TABLE_NAME", "CrossAccountManager-Roles")
BINDINGS_TABLE_NAME = os.environ.get("BINDINGS_TABLE_NAME", "CrossAccountManager-Account-Roles")
ACCOUNT_TOPIC_ARN = os.environ.get("ACCOUNT_TOPIC_ARN", "")
ROLE_TOPIC_ARN = os.environ.get("ROLE_TOPIC_ARN", "")
ROLE_NAME_PREFIX = os.environ.get("ROLE_NAME_PREFIX", "CrossAccountManager-")
POLICY_KEY_PREFIX = os.environ.get("POLICY_KEY_PREFIX", "custom_policy/")
HOME_ROLE_TRUSTED_SERVICE = os.environ.get("HOME_ROLE_TRUSTED_SERVICE", "ds.amazonaws.com")
CONFIG_BUCKET = os.environ.get("CONFIG_BUCKET", "")
ACCOUNTS_KEY_PREFIX = os.environ.get("ACCOUNTS_KEY_PREFIX", "accounts/")
ROLES_KEY_PREFIX = os.environ.get("ROLES_KEY_PREFIX", "roles/")
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


def _s3_objects(event: dict[str, Any]) -> list[tuple[str, str]]:
    out: list[tuple[str, str]] = []
    for record in event.get("Records") or []:
        s3 = (record or {}).get("s3") or {}
        bucket = str((s3.get("bucket") or {}).get("name") or "").strip()
        # Object keys arrive URL-encoded in S3 notifications.
        key = unquote_plus(str((s3.get("object") or {}).get("key") or ""))
        if bucket and key:
            out.append((bucket, key))
    return out


def ingest_accounts(bucket: str, key: str) -> dict[str, Any]:
    source = f"s3://{bucket}/{key}"
    accounts = parse_accounts(aws_io.read_text(_s3(), bucket, key), source=source)

    aws_io.replace_publish_grant(_sns(), ACCOUNT_TOPIC_ARN, [a.account_id for a in accounts])

    table = _accounts_table()
    kept_active = 0
    for acct in accounts:
        existing = registry.get_account(table, acct.account_id)
        if existing and existing.get("status") == registry.ACCOUNT_ACTIVE:
            status = registry.ACCOUNT_ACTIVE
            kept_active += 1
        else:
            status = registry.ACCOUNT_PENDING
        registry.put_account(
            table,
            account_id=acct.account_id,
            email=acct.email,
            group=acct.group,
            status=status,
        )

    aws_io.delete_object(_s3(), bucket, key)
    return {
        "source": source,
        "accounts": len(accounts),
        "active": kept_active,
        "pending": len(accounts) - kept_active,
    }


def _apply_role(defn: RoleDefinition, bucket: str) -> dict[str, Any]:
    # REMOVE requests carry no body, so a deleted policy file cannot block them.
    policy_body = ""
    if defn.action == ACTION_ADD:
        policy_body = aws_io.read_text(_s3(), bucket, f"{POLICY_KEY_PREFIX}{defn.policy}")
    account_ids = [
        str(item.get("accountId"))
        for item in registry.member_accounts(_accounts_table(), defn.group)
        if item.get("accountId")
    ]

    iam = _iam()
    iam_roles.delete_role(iam, defn.role_name)
    if defn.action == ACTION_ADD:
        iam_roles.create_role(
            iam,
            defn.role_name,
            service_trust_policy(HOME_ROLE_TRUSTED_SERVICE),
            build_assume_role_policy(defn.role_name, account_ids),
        )
        role_status = registry.ROLE_ACTIVE
        binding_status = registry.BINDING_PENDING
    else:
        role_status = registry.ROLE_DELETED
        binding_status = registry.BINDING_DELETING

    registry.put_role(
        _roles_table(),
        role=defn.role_name,
        policy=registry.policy_ref(bucket, defn.policy),
        group=defn.group,
        status=role_status,
    )

    bindings = _bindings_table()
    for account_id in account_ids:
        registry.put_binding(bindings, role=defn.role_name, account_id=account_id, status=binding_status)
        request = RoleRequest(
            action=defn.action,
            account_id=account_id,
            role=defn.role_name,
            policy=policy_body,
        )
        aws_io.publish(_sns(), ROLE_TOPIC_ARN, encode_role_request(request))

    return {"role": defn.role_name, "action": defn.action, "group": defn.group, "accounts": account_ids}


def ingest_roles(bucket: str, key: str) -> dict[str, Any]:
    source = f"s3://{bucket}/{key}"
    # Validation covers the whole file before the first role is touched.
    roles = parse_roles(aws_io.read_text(_s3(), bucket, key), prefix=ROLE_NAME_PREFIX, source=source)

    applied = [_apply_role(defn, bucket) for defn in roles]

    aws_io.delete_object(_s3(), bucket, key)
    return {"source": source, "roles": applied}


def _run(
    event: dict[str, Any],
    context: Any,
    *,
    name: str,
    required: dict[str, str],
    ingest: Callable[[str, str], dict[str, Any]],
) -> dict[str, Any]:
    start = time.time()
    wide_event: dict[str, Any] = {
        "event": name,
        "schema_version": SCHEMA_VERSION,
        "ts": _now_iso(),
        "request_id": str(getattr(context, "aws_request_id", "") or ""),
    }
    try:
        missing = sorted(k for k, v in required.items() if not v)
        if missing:
            wide_event["outcome"] = "misconfigured"
            raise RuntimeError(f"missing configuration: {', '.join(missing)}")

        results: list[dict[str, Any]] = []
        for bucket, key in _s3_objects(event):
            wide_event["source"] = f"s3://{bucket}/{key}"
            results.append(ingest(bucket, key))

        wide_event["files"] = results
        wide_event["outcome"] = "success"
        return {"ok": True, "files": results}
    except DefinitionError as exc:
        wide_event["outcome"] = "invalid_definition"
        wide_event["error"] = {"type": type(exc).__name__, "message": str(exc)}
        raise
    except Exception as exc:
        wide_event.setdefault("outcome", "error")
        wide_event["error"] = {"type": type(exc).__name__, "message": str(exc)}
        raise
    finally:
        wide_event["duration_ms"] = int((time.time() - start) * 1000)
        print(json.dumps(wide_event, separators=(",", ":"), sort_keys=True))


def account_file_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    return _run(
        event,
        context,
        name="cam_ingest_accounts",
        required={"ACCOUNT_TOPIC_ARN": ACCOUNT_TOPIC_ARN},
        ingest=ingest_accounts,
    )


def role_file_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    return _run(
        event,
        context,
        name="cam_ingest_roles",
        required={"ROLE_TOPIC_ARN": ROLE_TOPIC_ARN},
        ingest=ingest_roles,
    )


def sweep_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    """Re-ingest definition files left behind by failed invocations."""
    start = time.time()
    wide_event: dict[str, Any] = {
        "event": "cam_ingest_sweep",
        "schema_version": SCHEMA_VERSION,
        "ts": _now_iso(),
        "request_id": str(getattr(context, "aws_request_id", "") or ""),
    }
    try:
        missing = sorted(
            k
            for k, v in {
                "CONFIG_BUCKET": CONFIG_BUCKET,
                "ACCOUNT_TOPIC_ARN": ACCOUNT_TOPIC_ARN,
                "ROLE_TOPIC_ARN": ROLE_TOPIC_ARN,
            }.items()
            if not v
        )
        if missing:
            wide_event["outcome"] = "misconfigured"
            raise RuntimeError(f"missing configuration: {', '.join(missing)}")

        processed: list[str] = []
        failed: list[dict[str, Any]] = []
        passes: list[tuple[str, Callable[[str, str], dict[str, Any]]]] = [
            (ACCOUNTS_KEY_PREFIX, ingest_accounts),
            (ROLES_KEY_PREFIX, ingest_roles),
        ]
        for prefix, ingest in passes:
            for key in aws_io.list_keys(_s3(), CONFIG_BUCKET, prefix):
                try:
                    ingest(CONFIG_BUCKET, key)
                    processed.append(key)
                except Exception as exc:
                    failed.append({"key": key, "error": {"type": type(exc).__name__, "message": str(exc)}})

        wide_event["processed"] = processed
        wide_event["failed"] = failed
        if failed:
            wide_event["outcome"] = "partial_failure"
            raise RuntimeError(f"{len(failed)} definition file(s) failed to ingest")
        wide_event["outcome"] = "success"
        return {"ok": True, "processed": len(processed), "failed": 0}
    except Exception as exc:
        wide_event.setdefault("outcome", "error")
        wide_event["error"] = {"type": type(exc).__name__, "message": str(exc)}
        raise
    finally:
        wide_event["duration_ms"] = int((time.time() - start) * 1000)
        print(json.dumps(wide_event, separators=(",", ":"), sort_keys=True))
