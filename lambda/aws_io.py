from __future__ import annotations

import json
from typing import Any

PUBLISH_GRANT_SID = "CAM"


def read_text(s3: Any, bucket: str, key: str) -> str:
    out = s3.get_object(Bucket=bucket, Key=key)
    return out["Body"].read().decode("utf-8")


def delete_object(s3: Any, bucket: str, key: str) -> None:
    s3.delete_object(Bucket=bucket, Key=key)


def put_html(s3: Any, bucket: str, key: str, body: str) -> None:
    s3.put_object(Bucket=bucket, Key=key, Body=body.encode("utf-8"), ContentType="text/html")


def list_keys(s3: Any, bucket: str, prefix: str) -> list[str]:
    keys: list[str] = []
    paginator = s3.get_paginator("list_objects_v2")
    for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
        for obj in page.get("Contents", []) or []:
            key = str(obj.get("Key") or "")
            # Skip folder placeholder objects.
            if key and not key.endswith("/"):
                keys.append(key)
    return keys


def publish(sns: Any, topic_arn: str, message: str) -> str:
    out = sns.publish(TopicArn=topic_arn, Message=message)
    return str(out.get("MessageId") or "")


def send_delayed(sqs: Any, queue_url: str, body: str, delay_seconds: int) -> str:
    out = sqs.send_message(QueueUrl=queue_url, MessageBody=body, DelaySeconds=int(delay_seconds))
    return str(out.get("MessageId") or "")


def _topic_policy(sns: Any, topic_arn: str) -> dict[str, Any]:
    out = sns.get_topic_attributes(TopicArn=topic_arn)
    raw = (out.get("Attributes") or {}).get("Policy") or ""
    if not raw:
        return {"Version": "2008-10-17", "Statement": []}
    policy = json.loads(raw)
    if isinstance(policy.get("Statement"), dict):
        policy["Statement"] = [policy["Statement"]]
    policy.setdefault("Statement", [])
    return policy


def replace_publish_grant(sns: Any, topic_arn: str, account_ids: list[str]) -> None:
    """Make `account_ids` the exact set of accounts allowed to publish on the topic.

    The previous grant and the new one are swapped in a single SetTopicAttributes
    call, so there is no window in which no account may publish.
    """
    policy = _topic_policy(sns, topic_arn)
    statements = [s for s in policy["Statement"] if s.get("Sid") != PUBLISH_GRANT_SID]
    principals = [f"arn:aws:iam::{a}:root" for a in sorted(set(account_ids))]
    if principals:
        statements.append(
            {
                "Sid": PUBLISH_GRANT_SID,
                "Effect": "Allow",
                "Principal": {"AWS": principals},
                "Action": ["SNS:Publish"],
                "Resource": topic_arn,
            }
        )
    policy["Statement"] = statements
    sns.set_topic_attributes(
        TopicArn=topic_arn,
        AttributeName="Policy",
        AttributeValue=json.dumps(policy, separators=(",", ":")),
    )
