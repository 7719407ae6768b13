from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from boto3.dynamodb.conditions import Attr

ANY_GROUP = "*"

ACCOUNT_PENDING = "pending"
ACCOUNT_ACTIVE = "active"
ACCOUNT_DELETED = "deleted"

ROLE_ACTIVE = "active"
ROLE_DELETED = "deleted"

BINDING_PENDING = "pending"
BINDING_ACTIVE = "active"
BINDING_DELETING = "deleting"
BINDING_DELETED = "deleted"


class UnknownAccountError(LookupError):
    pass


def _now_iso() -> str:
    # Fixed-format UTC timestamp for lexicographic ordering.
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def scan_all(table: Any, filter_expression: Any | None = None) -> list[dict[str, Any]]:
    """Drain every scan page into a list owned by this call."""
    items: list[dict[str, Any]] = []
    start_key: dict[str, Any] | None = None
    while True:
        kwargs: dict[str, Any] = {}
        if filter_expression is not None:
            kwargs["FilterExpression"] = filter_expression
        if start_key:
            kwargs["ExclusiveStartKey"] = start_key
        page = table.scan(**kwargs)
        items.extend(item for item in page.get("Items", []) or [] if isinstance(item, dict))
        start_key = page.get("LastEvaluatedKey")
        if not start_key:
            return items


def _active() -> Any:
    return Attr("status").eq(ACCOUNT_ACTIVE)


# Accounts


def get_account(table: Any, account_id: str) -> dict[str, Any] | None:
    resp = table.get_item(Key={"accountId": account_id}, ConsistentRead=True)
    return resp.get("Item") or None


def put_account(table: Any, *, account_id: str, email: str, group: str, status: str) -> dict[str, Any]:
    item = {
        "accountId": str(account_id),
        "email": email,
        "accountGroup": group or ANY_GROUP,
        "status": status,
        "updatedAt": _now_iso(),
    }
    table.put_item(Item=item)
    return item


def list_accounts(table: Any, group: str = ANY_GROUP) -> list[dict[str, Any]]:
    """Active accounts in `group`; the "*" group returns every active account."""
    condition = _active()
    if group != ANY_GROUP:
        condition = condition & Attr("accountGroup").eq(group)
    return scan_all(table, condition)


def member_accounts(table: Any, role_group: str) -> list[dict[str, Any]]:
    """Active accounts a role of `role_group` applies to.

    A "*" role only applies to accounts outside every group.
    """
    return scan_all(table, _active() & Attr("accountGroup").eq(role_group or ANY_GROUP))


# Roles


def parse_policy_ref(ref: str) -> tuple[str, str]:
    bucket, sep, path = str(ref or "").partition(":")
    if not sep or not bucket or not path:
        raise ValueError(f"invalid policy reference: {ref!r}")
    return bucket, path


def policy_ref(bucket: str, path: str) -> str:
    return f"{bucket}:{path}"


def put_role(table: Any, *, role: str, policy: str, group: str, status: str) -> dict[str, Any]:
    item = {
        "role": role,
        "policy": policy,
        "accountGroup": group or ANY_GROUP,
        "status": status,
        "updatedAt": _now_iso(),
    }
    table.put_item(Item=item)
    return item


def roles_for_group(table: Any, account_group: str) -> list[dict[str, Any]]:
    group = account_group or ANY_GROUP
    return scan_all(table, _active() & (Attr("accountGroup").eq(group) | Attr("accountGroup").eq(ANY_GROUP)))


# Bindings


def get_binding(table: Any, role: str, account_id: str) -> dict[str, Any] | None:
    resp = table.get_item(Key={"role": role, "accountId": str(account_id)}, ConsistentRead=True)
    return resp.get("Item") or None


def put_binding(table: Any, *, role: str, account_id: str, status: str) -> dict[str, Any]:
    item = {
        "role": role,
        "accountId": str(account_id),
        "status": status,
        "updatedAt": _now_iso(),
    }
    table.put_item(Item=item)
    return item


def active_bindings(table: Any) -> list[dict[str, Any]]:
    items = scan_all(table, Attr("status").eq(BINDING_ACTIVE))
    return sorted(items, key=lambda i: (str(i.get("role") or ""), str(i.get("accountId") or "")))
