from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

ACTION_ADD = "ADD"
ACTION_REMOVE = "REMOVE"
VALID_ACTIONS = {ACTION_ADD, ACTION_REMOVE}


class MessageError(ValueError):
    pass


@dataclass(frozen=True)
class LifecycleEvent:
    action: str
    account_id: str


@dataclass(frozen=True)
class RoleRequest:
    action: str
    account_id: str
    role: str
    policy: str


def normalize_action(raw: Any) -> str:
    action = str(raw or "").strip().upper()
    if action not in VALID_ACTIONS:
        raise MessageError(f"invalid action {raw!r}; expected ADD or REMOVE")
    return action


def _load_object(raw: Any, label: str) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(str(raw or ""))
    except ValueError as e:
        raise MessageError(f"{label} must be valid JSON") from e
    if not isinstance(parsed, dict):
        raise MessageError(f"{label} must be a JSON object")
    return parsed


def sns_messages(event: dict[str, Any]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for record in event.get("Records") or []:
        sns = (record or {}).get("Sns") or {}
        out.append(_load_object(sns.get("Message"), "SNS message"))
    return out


def sqs_messages(event: dict[str, Any]) -> list[dict[str, Any]]:
    return [_load_object((record or {}).get("body"), "SQS body") for record in event.get("Records") or []]


def _required(msg: dict[str, Any], key: str) -> str:
    val = str(msg.get(key) or "").strip()
    if not val:
        raise MessageError(f"missing {key}")
    return val


def parse_lifecycle_event(msg: dict[str, Any]) -> LifecycleEvent:
    return LifecycleEvent(
        action=normalize_action(msg.get("Action")),
        account_id=_required(msg, "SubAccountId"),
    )


def parse_role_request(msg: dict[str, Any]) -> RoleRequest:
    policy = msg.get("Policy")
    if isinstance(policy, dict):
        policy = json.dumps(policy)
    return RoleRequest(
        action=normalize_action(msg.get("Action")),
        account_id=_required(msg, "SubAccountId"),
        role=_required(msg, "Role"),
        policy=str(policy or ""),
    )


def encode_role_request(req: RoleRequest) -> str:
    return json.dumps(
        {
            "Action": req.action,
            "SubAccountId": req.account_id,
            "Role": req.role,
            "Policy": req.policy,
        },
        separators=(",", ":"),
    )


def encode_link_refresh(req: RoleRequest) -> str:
    return json.dumps(
        {"Action": req.action, "SubAccountId": req.account_id, "Role": req.role},
        separators=(",", ":"),
    )
