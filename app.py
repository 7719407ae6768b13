#!/usr/bin/env python3
import os

import aws_cdk as cdk

from stacks.cross_account_manager_stack import CrossAccountManagerStack
from stacks.member_account_stack import MemberAccountStack

app = cdk.App()

stack_name = os.getenv("CDK_STACK_NAME", "CrossAccountManagerStack")

CrossAccountManagerStack(
    app,
    stack_name,
    env=cdk.Environment(
        account=os.getenv("CDK_DEFAULT_ACCOUNT"),
        region=os.getenv("CDK_DEFAULT_REGION", "us-east-1"),
    ),
)

member_account_id = (os.getenv("MEMBER_ACCOUNT_ID") or "").strip()
home_account_id = (os.getenv("CAM_HOME_ACCOUNT_ID") or "").strip()
if member_account_id and home_account_id:
    member_stack_name = os.getenv("MEMBER_STACK_NAME", "CrossAccountManagerMemberStack")
    MemberAccountStack(
        app,
        member_stack_name,
        env=cdk.Environment(
            account=member_account_id,
            region=os.getenv("MEMBER_ACCOUNT_REGION", "us-east-1"),
        ),
    )

app.synth()
