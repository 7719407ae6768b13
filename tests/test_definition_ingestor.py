import importlib
import json

import pytest
from botocore.exceptions import ClientError

import registry
from aws_fakes import FakeContext
from aws_fakes import FakeDynamoResource
from aws_fakes import FakeIam
from aws_fakes import FakeS3
from aws_fakes import FakeSns
from aws_fakes import registry_tables
from aws_fakes import s3_event
from definitions import DefinitionError
from policy_doc import assume_role_resources
from policy_doc import build_assume_role_policy

ACCOUNT_TOPIC = "arn:aws:sns:us-east-1:999999999999:AccountTopic"
ROLE_TOPIC = "arn:aws:sns:us-east-1:999999999999:RoleTopic"
BUCKET = "cam-config"
FINANCE_POLICY = '{"Version": "2012-10-17", "Statement": [{"Effect": "Allow", "Action": "ce:*", "Resource": "*"}]}'


def _load(monkeypatch, *, account_topic=ACCOUNT_TOPIC):
    monkeypatch.setenv("ACCOUNT_TOPIC_ARN", account_topic)
    monkeypatch.setenv("ROLE_TOPIC_ARN", ROLE_TOPIC)
    monkeypatch.setenv("CONFIG_BUCKET", BUCKET)
    monkeypatch.setenv("ROLE_NAME_PREFIX", "CrossAccountManager-")
    monkeypatch.setenv("POLICY_KEY_PREFIX", "custom_policy/")
    import definition_ingestor as mod

    mod = importlib.reload(mod)
    env = {
        "tables": registry_tables(),
        "s3": FakeS3({("cam-config", "custom_policy/finance.json"): FINANCE_POLICY}),
        "sns": FakeSns(),
        "iam": FakeIam(),
    }
    mod._ddb_resource = FakeDynamoResource(env["tables"])
    mod._s3_client = env["s3"]
    mod._sns_client = env["sns"]
    mod._iam_client = env["iam"]
    return mod, env


def _accounts(env):
    return env["tables"]["CrossAccountManager-Accounts"]


def _roles(env):
    return env["tables"]["CrossAccountManager-Roles"]


def _bindings(env):
    return env["tables"]["CrossAccountManager-Account-Roles"]


def _last_log(capsys) -> dict:
    lines = [ln for ln in capsys.readouterr().out.splitlines() if ln.strip()]
    return json.loads(lines[-1])


def _seed_scenario_accounts(env):
    registry.put_account(_accounts(env), account_id="111111111111", email="a@example.com", group="*", status="active")
    registry.put_account(
        _accounts(env), account_id="222222222222", email="b@example.com", group="finance", status="active"
    )


ROLES_FILE = """
roles:
  - finance:
      action: ADD
      policy: finance.json
      accountgroup: "*"
"""


def test_star_role_applies_only_to_ungrouped_accounts(monkeypatch, capsys):
    mod, env = _load(monkeypatch)
    _seed_scenario_accounts(env)
    env["s3"].objects[(BUCKET, "roles/finance.yaml")] = ROLES_FILE.encode("utf-8")

    out = mod.role_file_handler(s3_event(BUCKET, "roles/finance.yaml"), FakeContext())

    role = "CrossAccountManager-finance"
    assert out["files"][0]["roles"] == [
        {"role": role, "action": "ADD", "group": "*", "accounts": ["111111111111"]}
    ]
    assert assume_role_resources(env["iam"].policy(role)) == [f"arn:aws:iam::111111111111:role/{role}"]
    assert env["iam"].roles[role]["trust"]["Statement"][0]["Principal"] == {"Service": "ds.amazonaws.com"}

    role_row = _roles(env).get(role)
    assert role_row["status"] == "active"
    assert role_row["policy"] == "cam-config:finance.json"
    assert role_row["accountGroup"] == "*"

    assert _bindings(env).get(role, "111111111111")["status"] == "pending"
    assert _bindings(env).get(role, "222222222222") is None

    assert env["sns"].published == [
        (
            ROLE_TOPIC,
            {"Action": "ADD", "SubAccountId": "111111111111", "Role": role, "Policy": FINANCE_POLICY},
        )
    ]
    assert (BUCKET, "roles/finance.yaml") in env["s3"].deleted

    log = _last_log(capsys)
    assert log["event"] == "cam_ingest_roles"
    assert log["outcome"] == "success"
    assert log["source"] == "s3://cam-config/roles/finance.yaml"


def test_role_ingest_recreates_existing_home_role(monkeypatch):
    mod, env = _load(monkeypatch)
    _seed_scenario_accounts(env)
    role = "CrossAccountManager-finance"
    env["iam"].create_role(RoleName=role, AssumeRolePolicyDocument=json.dumps({"Statement": []}))
    env["iam"].put_role_policy(
        RoleName=role,
        PolicyName=f"{role}-Permission",
        PolicyDocument=json.dumps(build_assume_role_policy(role, ["333333333333"])),
    )
    env["s3"].objects[(BUCKET, "roles/finance.yaml")] = ROLES_FILE.encode("utf-8")

    mod.role_file_handler(s3_event(BUCKET, "roles/finance.yaml"), FakeContext())

    assert assume_role_resources(env["iam"].policy(role)) == [f"arn:aws:iam::111111111111:role/{role}"]
    ops = [c[0] for c in env["iam"].calls[2:]]
    assert ops[:3] == ["delete_role_policy", "delete_role", "create_role"]


def test_oversized_role_name_rejects_file_before_any_mutation(monkeypatch, capsys):
    mod, env = _load(monkeypatch)
    _seed_scenario_accounts(env)
    long_suffix = "x" * 50
    text = ROLES_FILE + f"""  - {long_suffix}:
      action: ADD
      policy: finance.json
"""
    env["s3"].objects[(BUCKET, "roles/bad.yaml")] = text.encode("utf-8")

    with pytest.raises(DefinitionError, match="70 characters"):
        mod.role_file_handler(s3_event(BUCKET, "roles/bad.yaml"), FakeContext())

    assert env["iam"].calls == []
    assert _roles(env).items == {}
    assert _bindings(env).items == {}
    assert env["sns"].published == []
    assert (BUCKET, "roles/bad.yaml") in env["s3"].objects

    log = _last_log(capsys)
    assert log["outcome"] == "invalid_definition"
    assert log["error"]["type"] == "DefinitionError"


def test_missing_policy_body_fails_before_touching_iam(monkeypatch, capsys):
    mod, env = _load(monkeypatch)
    _seed_scenario_accounts(env)
    text = "roles:\n  audit:\n    action: ADD\n    policy: audit.json\n"
    env["s3"].objects[(BUCKET, "roles/audit.yaml")] = text.encode("utf-8")

    with pytest.raises(ClientError):
        mod.role_file_handler(s3_event(BUCKET, "roles/audit.yaml"), FakeContext())

    assert env["iam"].calls == []
    assert (BUCKET, "roles/audit.yaml") in env["s3"].objects
    assert _last_log(capsys)["outcome"] == "error"


def test_remove_role_marks_bindings_deleting_and_requests_member_removal(monkeypatch):
    mod, env = _load(monkeypatch)
    _seed_scenario_accounts(env)
    role = "CrossAccountManager-finance"
    env["iam"].create_role(RoleName=role, AssumeRolePolicyDocument=json.dumps({"Statement": []}))
    registry.put_binding(_bindings(env), role=role, account_id="111111111111", status="active")
    text = "roles:\n  finance:\n    action: remove\n    policy: finance.json\n"
    env["s3"].objects[(BUCKET, "roles/finance.yaml")] = text.encode("utf-8")

    mod.role_file_handler(s3_event(BUCKET, "roles/finance.yaml"), FakeContext())

    assert role not in env["iam"].roles
    assert _roles(env).get(role)["status"] == "deleted"
    assert _bindings(env).get(role, "111111111111")["status"] == "deleting"
    [(topic, msg)] = env["sns"].published
    assert topic == ROLE_TOPIC
    assert msg["Action"] == "REMOVE"
    assert msg["SubAccountId"] == "111111111111"
    assert msg["Policy"] == ""


def test_remove_role_does_not_need_the_policy_file(monkeypatch):
    mod, env = _load(monkeypatch)
    _seed_scenario_accounts(env)
    role = "CrossAccountManager-audit"
    env["iam"].create_role(RoleName=role, AssumeRolePolicyDocument=json.dumps({"Statement": []}))
    text = "roles:\n  audit:\n    action: REMOVE\n    policy: audit.json\n"
    env["s3"].objects[(BUCKET, "roles/audit.yaml")] = text.encode("utf-8")

    mod.role_file_handler(s3_event(BUCKET, "roles/audit.yaml"), FakeContext())

    assert role not in env["iam"].roles
    assert _roles(env).get(role)["status"] == "deleted"
    assert (BUCKET, "roles/audit.yaml") not in env["s3"].objects
    [(_topic, msg)] = env["sns"].published
    assert msg == {"Action": "REMOVE", "SubAccountId": "111111111111", "Role": role, "Policy": ""}


def test_accounts_ingest_grants_publish_and_keeps_active_rows(monkeypatch, capsys):
    mod, env = _load(monkeypatch)
    registry.put_account(_accounts(env), account_id="111111111111", email="old@example.com", group="*", status="active")
    text = """
accounts:
  - "111111111111":
      email: ops@example.com
  - "333333333333":
      email: new@example.com
      accountgroup: finance
"""
    env["s3"].objects[(BUCKET, "accounts/a.yaml")] = text.encode("utf-8")

    out = mod.account_file_handler(s3_event(BUCKET, "accounts/a.yaml"), FakeContext())

    assert out["files"] == [
        {"source": "s3://cam-config/accounts/a.yaml", "accounts": 2, "active": 1, "pending": 1}
    ]
    assert _accounts(env).get("111111111111")["status"] == "active"
    assert _accounts(env).get("111111111111")["email"] == "ops@example.com"
    assert _accounts(env).get("333333333333")["status"] == "pending"
    assert _accounts(env).get("333333333333")["accountGroup"] == "finance"

    grant = [s for s in env["sns"].policy(ACCOUNT_TOPIC)["Statement"] if s["Sid"] == "CAM"]
    assert grant[0]["Principal"]["AWS"] == [
        "arn:aws:iam::111111111111:root",
        "arn:aws:iam::333333333333:root",
    ]
    assert (BUCKET, "accounts/a.yaml") not in env["s3"].objects
    assert _last_log(capsys)["event"] == "cam_ingest_accounts"


def test_account_ingest_is_idempotent(monkeypatch):
    mod, env = _load(monkeypatch)
    text = b'accounts:\n  "111111111111": {email: a@example.com}\n'

    for _ in range(2):
        env["s3"].objects[(BUCKET, "accounts/a.yaml")] = text
        mod.account_file_handler(s3_event(BUCKET, "accounts/a.yaml"), FakeContext())

    assert list(_accounts(env).items) == [("111111111111",)]
    grants = [s for s in env["sns"].policy(ACCOUNT_TOPIC)["Statement"] if s["Sid"] == "CAM"]
    assert len(grants) == 1


def test_handler_reports_missing_configuration(monkeypatch, capsys):
    mod, _env = _load(monkeypatch, account_topic="")

    with pytest.raises(RuntimeError, match="ACCOUNT_TOPIC_ARN"):
        mod.account_file_handler(s3_event(BUCKET, "accounts/a.yaml"), FakeContext())

    assert _last_log(capsys)["outcome"] == "misconfigured"


def test_sweep_retries_leftover_files_and_reports_failures(monkeypatch, capsys):
    mod, env = _load(monkeypatch)
    _seed_scenario_accounts(env)
    env["s3"].objects[(BUCKET, "accounts/a.yaml")] = b'accounts:\n  "111111111111": {email: a@example.com}\n'
    env["s3"].objects[(BUCKET, "roles/bad.yaml")] = b"roles:\n  finance: {action: UPDATE, policy: finance.json}\n"
    env["s3"].objects[(BUCKET, "roles/finance.yaml")] = ROLES_FILE.encode("utf-8")

    with pytest.raises(RuntimeError, match="1 definition file"):
        mod.sweep_handler({}, FakeContext())

    assert (BUCKET, "accounts/a.yaml") not in env["s3"].objects
    assert (BUCKET, "roles/finance.yaml") not in env["s3"].objects
    assert (BUCKET, "roles/bad.yaml") in env["s3"].objects

    log = _last_log(capsys)
    assert log["outcome"] == "partial_failure"
    assert log["processed"] == ["accounts/a.yaml", "roles/finance.yaml"]
    assert log["failed"][0]["key"] == "roles/bad.yaml"
    assert log["failed"][0]["error"]["type"] == "DefinitionError"


def test_sweep_with_nothing_left_succeeds(monkeypatch):
    mod, _env = _load(monkeypatch)
    assert mod.sweep_handler({}, FakeContext()) == {"ok": True, "processed": 0, "failed": 0}
