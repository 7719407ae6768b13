import os

from aws_cdk import (
    Aws,
    BundlingOptions,
    CfnOutput,
    Duration,
    RemovalPolicy,
    Stack,
    aws_dynamodb as ddb,
    aws_events as events,
    aws_events_targets as events_targets,
    aws_iam as iam,
    aws_lambda as _lambda,
    aws_lambda_event_sources as lambda_event_sources,
    aws_s3 as s3,
    aws_s3_notifications as s3n,
    aws_sns as sns,
    aws_sns_subscriptions as sns_subscriptions,
    aws_sqs as sqs,
)
from constructs import Construct

ROLE_MANAGEMENT_ACTIONS = [
    "iam:GetRole",
    "iam:CreateRole",
    "iam:DeleteRole",
    "iam:UpdateAssumeRolePolicy",
    "iam:GetRolePolicy",
    "iam:PutRolePolicy",
    "iam:DeleteRolePolicy",
]


class CrossAccountManagerStack(Stack):
    """
    Deploy into the home account.

    Creates:
    - The config bucket that receives account/role definition files and policy documents
    - The Accounts, Roles and Account-Roles registries
    - Account, role and access-links topics plus the settle queue
    - The ingest, reconcile, provision and access-links Lambda handlers
    """

    def __init__(self, scope: Construct, construct_id: str, **kwargs) -> None:
        super().__init__(scope, construct_id, **kwargs)

        stage_name = os.getenv("STAGE", "prod")
        data_retention_mode = os.getenv("DATA_RETENTION_MODE", "destroy").strip().lower()
        if data_retention_mode not in {"destroy", "retain"}:
            raise ValueError(
                "DATA_RETENTION_MODE must be 'destroy' or 'retain' (case-insensitive)"
            )
        stateful_removal_policy = (
            RemovalPolicy.DESTROY
            if data_retention_mode == "destroy"
            else RemovalPolicy.RETAIN
        )
        bucket_auto_delete_objects = data_retention_mode == "destroy"
        bundle_deps = (os.getenv("LAMBDA_BUNDLE_DEPS") or "true").strip().lower() in {
            "1",
            "true",
            "yes",
        }
        schema_version = "2026-10-01"
        settle_delay_seconds = int((os.getenv("SETTLE_DELAY_SECONDS") or "60").strip())
        # SQS caps message delays at 15 minutes.
        settle_delay_seconds = max(0, min(settle_delay_seconds, 900))

        role_name_prefix = os.getenv("ROLE_NAME_PREFIX", "CrossAccountManager-")
        member_admin_role_name = os.getenv(
            "MEMBER_ADMIN_ROLE_NAME", "CrossAccountManager-Admin-DO-NOT-DELETE"
        )
        accounts_key_prefix = "accounts/"
        roles_key_prefix = "roles/"
        policy_key_prefix = "custom_policy/"

        name_prefix = f"{construct_id}-{stage_name}"

        if bundle_deps:
            lambda_code = _lambda.Code.from_asset(
                "lambda",
                bundling=BundlingOptions(
                    image=_lambda.Runtime.PYTHON_3_12.bundling_image,
                    command=[
                        "bash",
                        "-c",
                        "pip install -r requirements.txt -t /asset-output && cp -au . /asset-output",
                    ],
                ),
            )
        else:
            lambda_code = _lambda.Code.from_asset("lambda")

        config_bucket = s3.Bucket(
            self,
            "ConfigBucket",
            removal_policy=stateful_removal_policy,
            auto_delete_objects=bucket_auto_delete_objects,
            enforce_ssl=True,
            block_public_access=s3.BlockPublicAccess.BLOCK_ALL,
            versioned=True,
        )

        access_links_bucket = s3.Bucket(
            self,
            "AccessLinksBucket",
            removal_policy=stateful_removal_policy,
            auto_delete_objects=bucket_auto_delete_objects,
            enforce_ssl=True,
            block_public_access=s3.BlockPublicAccess.BLOCK_ALL,
        )

        accounts_table = ddb.Table(
            self,
            "Accounts",
            partition_key=ddb.Attribute(name="accountId", type=ddb.AttributeType.STRING),
            billing_mode=ddb.BillingMode.PAY_PER_REQUEST,
            point_in_time_recovery=True,
            removal_policy=stateful_removal_policy,
        )

        roles_table = ddb.Table(
            self,
            "Roles",
            partition_key=ddb.Attribute(name="role", type=ddb.AttributeType.STRING),
            billing_mode=ddb.BillingMode.PAY_PER_REQUEST,
            point_in_time_recovery=True,
            removal_policy=stateful_removal_policy,
        )

        bindings_table = ddb.Table(
            self,
            "AccountRoles",
            partition_key=ddb.Attribute(name="role", type=ddb.AttributeType.STRING),
            sort_key=ddb.Attribute(name="accountId", type=ddb.AttributeType.STRING),
            billing_mode=ddb.BillingMode.PAY_PER_REQUEST,
            point_in_time_recovery=True,
            removal_policy=stateful_removal_policy,
        )

        account_topic = sns.Topic(
            self,
            "AccountTopic",
            topic_name=f"{name_prefix}-AccountTopic",
        )
        role_topic = sns.Topic(
            self,
            "RoleTopic",
            topic_name=f"{name_prefix}-RoleTopic",
        )
        access_links_topic = sns.Topic(
            self,
            "AccessLinksTopic",
            topic_name=f"{name_prefix}-AccessLinksTopic",
        )

        settle_dlq = sqs.Queue(
            self,
            "RoleSettleDeadLetterQueue",
            retention_period=Duration.days(14),
            removal_policy=stateful_removal_policy,
        )
        settle_queue = sqs.Queue(
            self,
            "RoleSettleQueue",
            # Must exceed the consuming function timeout.
            visibility_timeout=Duration.seconds(180),
            retention_period=Duration.days(4),
            removal_policy=stateful_removal_policy,
            dead_letter_queue=sqs.DeadLetterQueue(max_receive_count=5, queue=settle_dlq),
        )

        registry_env = {
            "ACCOUNTS_TABLE_NAME": accounts_table.table_name,
            "ROLES_TABLE_NAME": roles_table.table_name,
            "BINDINGS_TABLE_NAME": bindings_table.table_name,
            "SCHEMA_VERSION": schema_version,
        }
        ingest_env = {
            **registry_env,
            "ACCOUNT_TOPIC_ARN": account_topic.topic_arn,
            "ROLE_TOPIC_ARN": role_topic.topic_arn,
            "ROLE_NAME_PREFIX": role_name_prefix,
            "POLICY_KEY_PREFIX": policy_key_prefix,
            "HOME_ROLE_TRUSTED_SERVICE": os.getenv("HOME_ROLE_TRUSTED_SERVICE", "ds.amazonaws.com"),
            "CONFIG_BUCKET": config_bucket.bucket_name,
            "ACCOUNTS_KEY_PREFIX": accounts_key_prefix,
            "ROLES_KEY_PREFIX": roles_key_prefix,
        }
        provision_env = {
            **registry_env,
            "SETTLE_QUEUE_URL": settle_queue.queue_url,
            "SETTLE_DELAY_SECONDS": str(settle_delay_seconds),
            "MEMBER_ADMIN_ROLE_NAME": member_admin_role_name,
            "ACCESS_LINKS_TOPIC_ARN": access_links_topic.topic_arn,
        }

        home_role_statement = iam.PolicyStatement(
            actions=ROLE_MANAGEMENT_ACTIONS,
            resources=[f"arn:{Aws.PARTITION}:iam::{Aws.ACCOUNT_ID}:role/{role_name_prefix}*"],
        )
        account_topic_policy_statement = iam.PolicyStatement(
            actions=["sns:GetTopicAttributes", "sns:SetTopicAttributes"],
            resources=[account_topic.topic_arn],
        )

        account_file_fn = _lambda.Function(
            self,
            "AccountFileHandler",
            runtime=_lambda.Runtime.PYTHON_3_12,
            handler="definition_ingestor.account_file_handler",
            code=lambda_code,
            timeout=Duration.seconds(60),
            environment=ingest_env,
        )
        role_file_fn = _lambda.Function(
            self,
            "RoleFileHandler",
            runtime=_lambda.Runtime.PYTHON_3_12,
            handler="definition_ingestor.role_file_handler",
            code=lambda_code,
            timeout=Duration.seconds(300),
            environment=ingest_env,
        )
        sweep_fn = _lambda.Function(
            self,
            "DefinitionSweepHandler",
            runtime=_lambda.Runtime.PYTHON_3_12,
            handler="definition_ingestor.sweep_handler",
            code=lambda_code,
            timeout=Duration.seconds(600),
            environment=ingest_env,
        )
        for fn in (account_file_fn, role_file_fn, sweep_fn):
            config_bucket.grant_read(fn)
            config_bucket.grant_delete(fn)
            accounts_table.grant_read_write_data(fn)
            roles_table.grant_read_write_data(fn)
            bindings_table.grant_read_write_data(fn)
            role_topic.grant_publish(fn)
            fn.add_to_role_policy(home_role_statement)
            fn.add_to_role_policy(account_topic_policy_statement)

        config_bucket.add_event_notification(
            s3.EventType.OBJECT_CREATED,
            s3n.LambdaDestination(account_file_fn),
            s3.NotificationKeyFilter(prefix=accounts_key_prefix),
        )
        config_bucket.add_event_notification(
            s3.EventType.OBJECT_CREATED,
            s3n.LambdaDestination(role_file_fn),
            s3.NotificationKeyFilter(prefix=roles_key_prefix),
        )
        events.Rule(
            self,
            "DefinitionSweepSchedule",
            schedule=events.Schedule.rate(Duration.hours(1)),
            targets=[events_targets.LambdaFunction(sweep_fn)],
        )

        account_event_fn = _lambda.Function(
            self,
            "AccountEventHandler",
            runtime=_lambda.Runtime.PYTHON_3_12,
            handler="account_event_handler.handler",
            code=lambda_code,
            timeout=Duration.seconds(120),
            environment={
                **registry_env,
                "ROLE_TOPIC_ARN": role_topic.topic_arn,
                "POLICY_KEY_PREFIX": policy_key_prefix,
            },
        )
        accounts_table.grant_read_write_data(account_event_fn)
        roles_table.grant_read_data(account_event_fn)
        bindings_table.grant_read_write_data(account_event_fn)
        config_bucket.grant_read(account_event_fn)
        role_topic.grant_publish(account_event_fn)
        account_event_fn.add_to_role_policy(home_role_statement)
        account_topic.add_subscription(sns_subscriptions.LambdaSubscription(account_event_fn))

        assume_member_admin_statement = iam.PolicyStatement(
            actions=["sts:AssumeRole"],
            resources=[f"arn:{Aws.PARTITION}:iam::*:role/{member_admin_role_name}"],
        )

        role_event_fn = _lambda.Function(
            self,
            "RoleEventHandler",
            runtime=_lambda.Runtime.PYTHON_3_12,
            handler="role_event_handler.handler",
            code=lambda_code,
            timeout=Duration.seconds(60),
            environment=provision_env,
        )
        bindings_table.grant_read_write_data(role_event_fn)
        settle_queue.grant_send_messages(role_event_fn)
        role_event_fn.add_to_role_policy(assume_member_admin_statement)
        role_topic.add_subscription(sns_subscriptions.LambdaSubscription(role_event_fn))

        role_settle_fn = _lambda.Function(
            self,
            "RoleSettleHandler",
            runtime=_lambda.Runtime.PYTHON_3_12,
            handler="role_event_handler.settle_handler",
            code=lambda_code,
            timeout=Duration.seconds(60),
            environment=provision_env,
        )
        bindings_table.grant_read_write_data(role_settle_fn)
        access_links_topic.grant_publish(role_settle_fn)
        role_settle_fn.add_to_role_policy(assume_member_admin_statement)
        role_settle_fn.add_event_source(
            lambda_event_sources.SqsEventSource(settle_queue, batch_size=1)
        )

        access_links_fn = _lambda.Function(
            self,
            "AccessLinksHandler",
            runtime=_lambda.Runtime.PYTHON_3_12,
            handler="access_links_handler.handler",
            code=lambda_code,
            timeout=Duration.seconds(60),
            environment={
                **registry_env,
                "ACCESS_LINKS_BUCKET": access_links_bucket.bucket_name,
                "ACCESS_LINKS_KEY": "cross-account-manager-links.html",
            },
        )
        accounts_table.grant_read_data(access_links_fn)
        bindings_table.grant_read_data(access_links_fn)
        access_links_bucket.grant_put(access_links_fn)
        access_links_topic.add_subscription(sns_subscriptions.LambdaSubscription(access_links_fn))

        CfnOutput(self, "ConfigBucketName", value=config_bucket.bucket_name)
        CfnOutput(self, "AccessLinksBucketName", value=access_links_bucket.bucket_name)
        CfnOutput(self, "AccountsTableName", value=accounts_table.table_name)
        CfnOutput(self, "RolesTableName", value=roles_table.table_name)
        CfnOutput(self, "BindingsTableName", value=bindings_table.table_name)
        CfnOutput(self, "AccountTopicArn", value=account_topic.topic_arn)
        CfnOutput(self, "RoleTopicArn", value=role_topic.topic_arn)
        CfnOutput(self, "AccessLinksTopicArn", value=access_links_topic.topic_arn)
        CfnOutput(self, "SettleQueueUrl", value=settle_queue.queue_url)
        CfnOutput(self, "AccountsKeyPrefix", value=accounts_key_prefix)
        CfnOutput(self, "RolesKeyPrefix", value=roles_key_prefix)
        CfnOutput(self, "PolicyKeyPrefix", value=policy_key_prefix)
