import pytest
from botocore.exceptions import ClientError

import iam_roles
from aws_fakes import FakeIam
from aws_fakes import FakeSts
from aws_fakes import client_error
from policy_doc import build_assume_role_policy
from policy_doc import service_trust_policy


def test_delete_role_treats_missing_role_as_success():
    iam = FakeIam()
    assert iam_roles.delete_role(iam, "CrossAccountManager-missing") is False


def test_delete_role_removes_inline_policy_first():
    iam = FakeIam()
    iam_roles.create_role(iam, "R", service_trust_policy("ds.amazonaws.com"), build_assume_role_policy("R", ["1"]))

    assert iam_roles.delete_role(iam, "R") is True
    assert "R" not in iam.roles
    assert [c[0] for c in iam.calls[-2:]] == ["delete_role_policy", "delete_role"]


def test_create_role_over_existing_role_replaces_trust_policy():
    iam = FakeIam()
    assert iam_roles.create_role(iam, "R", service_trust_policy("a.amazonaws.com")) is True
    assert iam_roles.create_role(iam, "R", service_trust_policy("b.amazonaws.com"), '{"Statement": []}') is False

    assert iam.roles["R"]["trust"]["Statement"][0]["Principal"] == {"Service": "b.amazonaws.com"}
    assert iam.policy("R") == {"Statement": []}


def test_get_inline_policy_returns_none_when_absent_and_decodes_document():
    iam = FakeIam()
    assert iam_roles.get_inline_policy(iam, "R") is None

    iam_roles.create_role(iam, "R", service_trust_policy("ds.amazonaws.com"))
    assert iam_roles.get_inline_policy(iam, "R") is None

    policy = build_assume_role_policy("R", ["111111111111"])
    iam_roles.put_inline_policy(iam, "R", policy)
    assert iam_roles.get_inline_policy(iam, "R") == policy


def test_unexpected_errors_propagate():
    class DeniedIam(FakeIam):
        def delete_role_policy(self, **kwargs):
            raise client_error("AccessDenied", "DeleteRolePolicy")

    with pytest.raises(ClientError):
        iam_roles.delete_role(DeniedIam(), "R")


def test_assume_member_admin_uses_admin_role_and_session_name():
    sts = FakeSts()
    creds = iam_roles.assume_member_admin(
        sts,
        account_id="111111111111",
        admin_role_name="CrossAccountManager-Admin-DO-NOT-DELETE",
        role_session_name=iam_roles.session_name("999999999999", "handleRoleEvent"),
    )

    assert creds["AccessKeyId"] == "AKIA111111111111"
    assert sts.assumed == [
        {
            "RoleArn": "arn:aws:iam::111111111111:role/CrossAccountManager-Admin-DO-NOT-DELETE",
            "RoleSessionName": "999999999999-handleRoleEvent",
        }
    ]


def test_session_name_is_sanitised_and_bounded():
    assert iam_roles.session_name("999 999", "handle/Role") == "999999-handleRole"
    assert len(iam_roles.session_name("9" * 12, "x" * 100)) == 64
