from __future__ import annotations

import html
import json
import os
import time
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlencode

import boto3

import aws_io
import registry
from event_codec import sns_messages

ACCOUNTS_TABLE_NAME = os.environ.get("ACCOUNTS_TABLE_NAME", "CrossAccountManager-Accounts")
BINDINGS_TABLE_NAME = os.environ.get("BINDINGS_TABLE_NAME", "CrossAccountManager-Account-Roles")
ACCESS_LINKS_BUCKET = os.environ.get("ACCESS_LINKS_BUCKET", "")
ACCESS_LINKS_KEY = os.environ.get("ACCESS_LINKS_KEY", "cross-account-manager-links.html")
SCHEMA_VERSION = os.environ.get("SCHEMA_VERSION", "2026-10-01")

SWITCH_ROLE_URL = "https://signin.aws.amazon.com/switchrole"

PAGE_HEAD = (
    "<!doctype html><html><head><title>Cross Account Manager Links</title>"
    "<style>body {border: 0;font-family: sans-serif;font-size: 100%;font-weight: bold;margin: 20;padding: 20;}"
    "</style></head><body><h1 style=\"color: darkorange;\">AWS Console Access</h1>"
)
PAGE_TAIL = "</body></html>"

_ddb_resource: Any | None = None
_s3_client: Any | None = None


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


def _accounts_table() -> Any:
    return _ddb().Table(ACCOUNTS_TABLE_NAME)


def _bindings_table() -> Any:
    return _ddb().Table(BINDINGS_TABLE_NAME)


def switch_role_url(account_id: str, role: str) -> str:
    return f"{SWITCH_ROLE_URL}?{urlencode({'account': account_id, 'roleName': role})}"


def render_page(accounts: list[dict[str, Any]], bindings: list[dict[str, Any]]) -> str:
    by_id = {str(a.get("accountId")): a for a in accounts}
    parts = [PAGE_HEAD]
    current_role = None
    for binding in bindings:
        role = str(binding.get("role") or "")
        account_id = str(binding.get("accountId") or "")
        account = by_id.get(account_id)
        # Bindings can outlive their account row becoming inactive.
        if not role or account is None:
            continue
        if role != current_role:
            parts.append(f"<h2>{html.escape(role)}</h2>")
            current_role = role
        label = str(account.get("email") or "") or account_id
        group = str(account.get("accountGroup") or registry.ANY_GROUP)
        line = (
            f"<div><p style=\"font-weight: normal;\">"
            f"<a style=\"color: darkorange;\" href=\"{html.escape(switch_role_url(account_id, role))}\" "
            f"target=\"_blank\">{html.escape(label)}</a>  </br>{html.escape(account_id)}  "
        )
        if group != registry.ANY_GROUP:
            line += f"({html.escape(group)})"
        parts.append(line + "</p></div>")
    parts.append(PAGE_TAIL)
    return "".join(parts)


def handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    start = time.time()
    wide_event: dict[str, Any] = {
        "event": "cam_access_links",
        "schema_version": SCHEMA_VERSION,
        "ts": _now_iso(),
        "request_id": str(getattr(context, "aws_request_id", "") or ""),
    }
    try:
        if not ACCESS_LINKS_BUCKET:
            wide_event["outcome"] = "misconfigured"
            raise RuntimeError("missing configuration: ACCESS_LINKS_BUCKET")

        wide_event["triggers"] = [
            {"action": m.get("Action"), "role": m.get("Role"), "account_id": m.get("SubAccountId")}
            for m in sns_messages(event)
        ]

        accounts = registry.list_accounts(_accounts_table(), registry.ANY_GROUP)
        bindings = registry.active_bindings(_bindings_table())
        page = render_page(accounts, bindings)
        aws_io.put_html(_s3(), ACCESS_LINKS_BUCKET, ACCESS_LINKS_KEY, page)

        wide_event["accounts"] = len(accounts)
        wide_event["bindings"] = len(bindings)
        wide_event["outcome"] = "success"
        return {"ok": True, "bindings": len(bindings)}
    except Exception as exc:
        wide_event.setdefault("outcome", "error")
        wide_event["error"] = {"type": type(exc).__name__, "message": str(exc)}
        raise
    finally:
        wide_event["duration_ms"] = int((time.time() - start) * 1000)
        print(json.dumps(wide_event, separators=(",", ":"), sort_keys=True))
