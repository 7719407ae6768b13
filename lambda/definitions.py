from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import yaml

from event_codec import VALID_ACTIONS

DEFAULT_GROUP = "*"
MAX_ROLE_NAME_LENGTH = 64


class DefinitionError(ValueError):
    pass


@dataclass(frozen=True)
class AccountDefinition:
    account_id: str
    email: str
    group: str


@dataclass(frozen=True)
class RoleDefinition:
    suffix: str
    role_name: str
    action: str
    policy: str
    group: str


def load_document(text: str, *, source: str = "") -> dict[str, Any]:
    try:
        doc = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise DefinitionError(f"invalid YAML in {source or 'definition file'}: {e}") from e
    if not isinstance(doc, dict):
        raise DefinitionError(f"{source or 'definition file'} must contain a mapping")
    return doc


def _entries(doc: dict[str, Any], section: str, source: str) -> dict[Any, Any]:
    raw = doc.get(section)
    if raw is None:
        raise DefinitionError(f"missing '{section}' section in {source or 'definition file'}")
    if isinstance(raw, dict):
        return dict(raw)
    if not isinstance(raw, list):
        raise DefinitionError(f"'{section}' in {source or 'definition file'} must be a list or mapping")

    merged: dict[Any, Any] = {}
    for item in raw:
        if not isinstance(item, dict):
            raise DefinitionError(f"'{section}' entries in {source or 'definition file'} must be mappings")
        for key, value in item.items():
            if key in merged:
                raise DefinitionError(f"duplicate {section} entry {key!r} in {source or 'definition file'}")
            merged[key] = value
    return merged


def normalize_account_id(raw: Any) -> str:
    if isinstance(raw, bool):
        raise DefinitionError(f"invalid account id: {raw!r}")
    if isinstance(raw, int):
        # YAML reads unquoted ids as integers and drops leading zeros.
        return f"{raw:012d}"
    account_id = str(raw or "").strip()
    if not account_id:
        raise DefinitionError("empty account id")
    return account_id


def _group(props: dict[str, Any]) -> str:
    group = props.get("accountgroup")
    if group is None:
        return DEFAULT_GROUP
    return str(group).strip() or DEFAULT_GROUP


def parse_accounts(text: str, *, source: str = "") -> list[AccountDefinition]:
    entries = _entries(load_document(text, source=source), "accounts", source)
    out: list[AccountDefinition] = []
    for raw_id, props in entries.items():
        account_id = normalize_account_id(raw_id)
        props = props or {}
        if not isinstance(props, dict):
            raise DefinitionError(f"account {account_id} in {source} must map to properties")
        out.append(
            AccountDefinition(
                account_id=account_id,
                email=str(props.get("email") or "").strip(),
                group=_group(props),
            )
        )
    return out


def parse_roles(text: str, *, prefix: str, source: str = "") -> list[RoleDefinition]:
    """Validate every role entry up front; the first invalid one fails the whole file."""
    entries = _entries(load_document(text, source=source), "roles", source)
    out: list[RoleDefinition] = []
    for raw_suffix, props in entries.items():
        suffix = str(raw_suffix).strip()
        if not suffix:
            raise DefinitionError(f"empty role name in {source}")
        if not isinstance(props, dict):
            raise DefinitionError(f"role {suffix} in {source} must map to properties")

        action = str(props.get("action") or "").strip().upper()
        if action not in VALID_ACTIONS:
            raise DefinitionError(
                f"invalid action {props.get('action')!r} for role {suffix} in {source}; expected ADD or REMOVE"
            )

        policy = str(props.get("policy") or "").strip()
        if not policy:
            raise DefinitionError(f"missing policy for role {suffix} in {source}")

        role_name = f"{prefix}{suffix}"
        if len(role_name) > MAX_ROLE_NAME_LENGTH:
            raise DefinitionError(
                f"role name {role_name} is {len(role_name)} characters in {source}; max is {MAX_ROLE_NAME_LENGTH}"
            )

        out.append(
            RoleDefinition(
                suffix=suffix,
                role_name=role_name,
                action=action,
                policy=policy,
                group=_group(props),
            )
        )
    return out
