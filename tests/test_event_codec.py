import json

import pytest

from event_codec import LifecycleEvent
from event_codec import MessageError
from event_codec import RoleRequest
from event_codec import encode_link_refresh
from event_codec import encode_role_request
from event_codec import parse_lifecycle_event
from event_codec import parse_role_request
from event_codec import sns_messages
from event_codec import sqs_messages


def test_sns_messages_decodes_each_record():
    event = {
        "Records": [
            {"Sns": {"Message": json.dumps({"Action": "ADD", "SubAccountId": "111111111111"})}},
            {"Sns": {"Message": json.dumps({"Action": "remove", "SubAccountId": "222222222222"})}},
        ]
    }
    events = [parse_lifecycle_event(m) for m in sns_messages(event)]
    assert events == [
        LifecycleEvent(action="ADD", account_id="111111111111"),
        LifecycleEvent(action="REMOVE", account_id="222222222222"),
    ]


def test_sns_messages_rejects_non_object_payload():
    with pytest.raises(MessageError, match="SNS message"):
        sns_messages({"Records": [{"Sns": {"Message": "[1, 2]"}}]})
    with pytest.raises(MessageError, match="valid JSON"):
        sns_messages({"Records": [{"Sns": {"Message": "not json"}}]})


def test_parse_lifecycle_event_requires_account_and_known_action():
    with pytest.raises(MessageError, match="SubAccountId"):
        parse_lifecycle_event({"Action": "ADD"})
    with pytest.raises(MessageError, match="invalid action"):
        parse_lifecycle_event({"Action": "SUSPEND", "SubAccountId": "1"})


def test_role_request_survives_sqs_continuation():
    req = RoleRequest(action="ADD", account_id="111111111111", role="CrossAccountManager-finance", policy='{"a":1}')
    body = json.loads(encode_role_request(req))
    assert body == {
        "Action": "ADD",
        "SubAccountId": "111111111111",
        "Role": "CrossAccountManager-finance",
        "Policy": '{"a":1}',
    }

    [msg] = sqs_messages({"Records": [{"body": encode_role_request(req)}]})
    assert parse_role_request(msg) == req


def test_parse_role_request_serialises_object_policy():
    req = parse_role_request(
        {"Action": "ADD", "SubAccountId": "1", "Role": "R", "Policy": {"Version": "2012-10-17"}}
    )
    assert json.loads(req.policy) == {"Version": "2012-10-17"}


def test_link_refresh_omits_policy_body():
    req = RoleRequest(action="ADD", account_id="1", role="R", policy="secret-ish body")
    assert json.loads(encode_link_refresh(req)) == {"Action": "ADD", "SubAccountId": "1", "Role": "R"}
