from __future__ import annotations

import json
import os
import sys
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import boto3


class CamOpsError(Exception):
    pass


class UsageError(CamOpsError):
    pass


class OpError(CamOpsError):
    pass


DEFAULT_STACK_NAME = "CrossAccountManagerStack"
ACCOUNT_ID_LENGTH = 12


def _eprint(msg: str) -> None:
    print(msg, file=sys.stderr)


@dataclass(frozen=True)
class GlobalOpts:
    stack: str
    pretty: bool
    quiet: bool


def _env_or_none(*names: str) -> str | None:
    for n in names:
        v = (os.environ.get(n) or "").strip()
        if v:
            return v
    return None


def _require_str(val: str | None, name: str, *, hint: str) -> str:
    v = (val or "").strip()
    if not v:
        raise UsageError(f"missing {name} ({hint})")
    return v


def _aws_profile_region_from_env() -> tuple[str, str]:
    profile = (os.environ.get("AWS_PROFILE") or "").strip()
    region = (os.environ.get("AWS_REGION") or "").strip()
    if not profile:
        raise UsageError("missing AWS_PROFILE (set env or pass --profile)")
    if not region:
        raise UsageError("missing AWS_REGION (set env or pass --region)")
    return profile, region


def _account_session() -> Any:
    profile, region = _aws_profile_region_from_env()
    return boto3.session.Session(profile_name=profile, region_name=region)


def _cf_outputs(session: Any, *, stack: str) -> list[dict[str, Any]]:
    cf = session.client("cloudformation")
    try:
        resp = cf.describe_stacks(StackName=stack)
    except Exception as e:
        raise OpError(f"cloudformation describe-stacks failed for stack {stack!r}: {e}") from e
    stacks = resp.get("Stacks") or []
    if not stacks:
        raise OpError(f"stack not found: {stack}")
    outputs = stacks[0].get("Outputs") or []
    if not isinstance(outputs, list):
        return []
    return [o for o in outputs if isinstance(o, dict)]


def _stack_output_value(session: Any, *, stack: str, key: str) -> str | None:
    for o in _cf_outputs(session, stack=stack):
        if str(o.get("OutputKey", "")).strip() == key:
            v = str(o.get("OutputValue", "")).strip()
            return v if v else ""
    return None


def _json_default(value: Any) -> Any:
    # boto3 deserializes DynamoDB numbers as Decimal.
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"not JSON serializable: {type(value).__name__}")


def _print_json(obj: Any, *, pretty: bool) -> None:
    if pretty:
        sys.stdout.write(json.dumps(obj, indent=2, sort_keys=True, default=_json_default) + "\n")
    else:
        sys.stdout.write(json.dumps(obj, separators=(",", ":"), sort_keys=True, default=_json_default) + "\n")


def _normalize_account_id(raw: str | None) -> str:
    v = _require_str(raw, "account id", hint="--account-id")
    if not v.isdigit() or len(v) > ACCOUNT_ID_LENGTH:
        raise UsageError(f"invalid account id {v!r}: expected up to {ACCOUNT_ID_LENGTH} digits")
    return v.zfill(ACCOUNT_ID_LENGTH)
