from __future__ import annotations

import argparse
import json
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from boto3.dynamodb.types import TypeDeserializer

from .cli_shared import (
    GlobalOpts,
    OpError,
    UsageError,
    _account_session,
    _cf_outputs,
    _normalize_account_id,
    _print_json,
    _require_str,
    _stack_output_value,
)

ANY_GROUP = "*"
VALID_ACTIONS = ("ADD", "REMOVE")
DEFAULT_KEY_PREFIXES = {
    "AccountsKeyPrefix": "accounts/",
    "RolesKeyPrefix": "roles/",
    "PolicyKeyPrefix": "custom_policy/",
}


@dataclass
class AdminContext:
    session: Any
    stack: str
    _outputs: dict[str, str] = field(default_factory=dict)

    def outputs(self) -> dict[str, str]:
        if self._outputs:
            return self._outputs
        self._outputs = {
            str(o.get("OutputKey", "")).strip(): str(o.get("OutputValue", "")).strip()
            for o in _cf_outputs(self.session, stack=self.stack)
        }
        return self._outputs

    def output(self, key: str) -> str | None:
        return self.outputs().get(key)

    def require_output(self, key: str) -> str:
        v = self.output(key)
        if v is None:
            raise OpError(f"missing CloudFormation output {key!r} on stack {self.stack!r}")
        return v

    def key_prefix(self, key: str) -> str:
        return self.output(key) or DEFAULT_KEY_PREFIXES[key]


def build_admin_context(g: GlobalOpts) -> AdminContext:
    return AdminContext(session=_account_session(), stack=g.stack)


def _read_file(path: str | None) -> tuple[Path, str]:
    p = Path(_require_str(path, "file", hint="pass a local file path"))
    try:
        return p, p.read_text(encoding="utf-8")
    except OSError as e:
        raise UsageError(f"cannot read {p}: {e}") from e


def _definition_entry_count(text: str, *, section: str, label: str) -> int:
    try:
        doc = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise UsageError(f"invalid {label}: {e}") from e
    if not isinstance(doc, dict) or section not in doc:
        raise UsageError(f"invalid {label}: expected a top-level {section!r} section")
    body = doc[section]
    if isinstance(body, dict):
        return len(body)
    if isinstance(body, list) and all(isinstance(item, dict) for item in body):
        return sum(len(item) for item in body)
    raise UsageError(f"invalid {label}: {section!r} must be a map or a list of maps")


def _put_object(session: Any, *, bucket: str, key: str, body: str, content_type: str) -> None:
    s3 = session.client("s3")
    try:
        s3.put_object(Bucket=bucket, Key=key, Body=body.encode("utf-8"), ContentType=content_type)
    except Exception as e:
        raise OpError(f"s3 put-object failed for s3://{bucket}/{key}: {e}") from e


def _upload_definition(args: argparse.Namespace, g: GlobalOpts, *, section: str, prefix_output: str) -> int:
    path, text = _read_file(getattr(args, "file", None))
    entries = _definition_entry_count(text, section=section, label=f"{section} definition {path.name}")

    ctx = build_admin_context(g)
    bucket = ctx.require_output("ConfigBucketName")
    key = f"{ctx.key_prefix(prefix_output)}{path.name}"
    _put_object(ctx.session, bucket=bucket, key=key, body=text, content_type="application/x-yaml")
    _print_json({"bucket": bucket, "key": key, "entries": entries}, pretty=g.pretty)
    return 0


def _scan_table(session: Any, *, table_name: str) -> list[dict[str, Any]]:
    ddb = session.client("dynamodb")
    deserializer = TypeDeserializer()
    items: list[dict[str, Any]] = []
    try:
        for page in ddb.get_paginator("scan").paginate(TableName=table_name, ConsistentRead=True):
            items.extend(
                {k: deserializer.deserialize(v) for k, v in raw.items()} for raw in page.get("Items") or []
            )
    except Exception as e:
        raise OpError(f"dynamodb scan failed for table {table_name!r}: {e}") from e
    return items


def cmd_stack_output(args: argparse.Namespace, g: GlobalOpts) -> int:
    ctx = build_admin_context(g)
    key = str(getattr(args, "output_key", "") or "").strip()
    if not key:
        _print_json(_cf_outputs(ctx.session, stack=g.stack), pretty=g.pretty)
        return 0
    v = _stack_output_value(ctx.session, stack=g.stack, key=key)
    if v is None:
        raise OpError(f"output key not found: {key}")
    sys.stdout.write(v + "\n")
    return 0


def cmd_accounts_upload(args: argparse.Namespace, g: GlobalOpts) -> int:
    return _upload_definition(args, g, section="accounts", prefix_output="AccountsKeyPrefix")


def cmd_roles_upload(args: argparse.Namespace, g: GlobalOpts) -> int:
    return _upload_definition(args, g, section="roles", prefix_output="RolesKeyPrefix")


def cmd_policy_upload(args: argparse.Namespace, g: GlobalOpts) -> int:
    path, text = _read_file(getattr(args, "file", None))
    try:
        doc = json.loads(text)
    except json.JSONDecodeError as e:
        raise UsageError(f"invalid policy document {path.name}: {e}") from e
    if not isinstance(doc, dict) or "Statement" not in doc:
        raise UsageError(f"invalid policy document {path.name}: expected a JSON object with Statement")

    name = str(getattr(args, "name", None) or path.name).strip().lstrip("/")
    ctx = build_admin_context(g)
    bucket = ctx.require_output("ConfigBucketName")
    key = f"{ctx.key_prefix('PolicyKeyPrefix')}{name}"
    _put_object(ctx.session, bucket=bucket, key=key, body=text, content_type="application/json")
    _print_json({"bucket": bucket, "key": key, "policyRef": f"{bucket}:{name}"}, pretty=g.pretty)
    return 0


def cmd_accounts_list(args: argparse.Namespace, g: GlobalOpts) -> int:
    ctx = build_admin_context(g)
    group = str(getattr(args, "group", None) or ANY_GROUP).strip()
    items = _scan_table(ctx.session, table_name=ctx.require_output("AccountsTableName"))
    if group != ANY_GROUP:
        items = [i for i in items if str(i.get("accountGroup") or ANY_GROUP) == group]
    items.sort(key=lambda i: str(i.get("accountId") or ""))
    _print_json({"group": group, "accounts": items}, pretty=g.pretty)
    return 0


def cmd_roles_list(args: argparse.Namespace, g: GlobalOpts) -> int:
    ctx = build_admin_context(g)
    items = _scan_table(ctx.session, table_name=ctx.require_output("RolesTableName"))
    status = str(getattr(args, "status", None) or "").strip()
    if status:
        items = [i for i in items if str(i.get("status") or "") == status]
    items.sort(key=lambda i: str(i.get("role") or ""))
    _print_json({"roles": items}, pretty=g.pretty)
    return 0


def cmd_bindings_list(args: argparse.Namespace, g: GlobalOpts) -> int:
    ctx = build_admin_context(g)
    items = _scan_table(ctx.session, table_name=ctx.require_output("BindingsTableName"))
    status = str(getattr(args, "status", None) or "").strip()
    role = str(getattr(args, "role", None) or "").strip()
    if status:
        items = [i for i in items if str(i.get("status") or "") == status]
    if role:
        items = [i for i in items if str(i.get("role") or "") == role]
    items.sort(key=lambda i: (str(i.get("role") or ""), str(i.get("accountId") or "")))
    _print_json({"bindings": items}, pretty=g.pretty)
    return 0


def cmd_accounts_event(args: argparse.Namespace, g: GlobalOpts) -> int:
    action = _require_str(getattr(args, "action", None), "action", hint="--action ADD|REMOVE").upper()
    if action not in VALID_ACTIONS:
        raise UsageError(f"invalid action {action!r}: expected one of {', '.join(VALID_ACTIONS)}")
    account_id = _normalize_account_id(getattr(args, "account_id", None))

    ctx = build_admin_context(g)
    topic_arn = ctx.require_output("AccountTopicArn")
    message = json.dumps({"Action": action, "SubAccountId": account_id}, separators=(",", ":"), sort_keys=True)
    sns = ctx.session.client("sns")
    try:
        resp = sns.publish(TopicArn=topic_arn, Message=message)
    except Exception as e:
        raise OpError(f"sns publish failed for topic {topic_arn!r}: {e}") from e
    _print_json(
        {
            "published": True,
            "topicArn": topic_arn,
            "messageId": str(resp.get("MessageId") or ""),
            "action": action,
            "accountId": account_id,
        },
        pretty=g.pretty,
    )
    return 0
