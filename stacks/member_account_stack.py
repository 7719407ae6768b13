import os

from aws_cdk import (
    Aws,
    CfnOutput,
    Stack,
    aws_iam as iam,
)
from constructs import Construct

from stacks.cross_account_manager_stack import ROLE_MANAGEMENT_ACTIONS


class MemberAccountStack(Stack):
    """
    Deploy into each member account.

    Creates the admin role the home account assumes to provision and remove
    CrossAccountManager-* roles in this account.
    """

    def __init__(self, scope: Construct, construct_id: str, **kwargs) -> None:
        super().__init__(scope, construct_id, **kwargs)

        home_account_id = (os.getenv("CAM_HOME_ACCOUNT_ID") or "").strip()
        if not home_account_id:
            raise ValueError("CAM_HOME_ACCOUNT_ID must be set to the home account id.")

        role_name_prefix = os.getenv("ROLE_NAME_PREFIX", "CrossAccountManager-")
        admin_role_name = os.getenv(
            "MEMBER_ADMIN_ROLE_NAME", "CrossAccountManager-Admin-DO-NOT-DELETE"
        )
        admin_role_arn = f"arn:{Aws.PARTITION}:iam::{Aws.ACCOUNT_ID}:role/{admin_role_name}"

        admin_role = iam.Role(
            self,
            "CrossAccountManagerAdminRole",
            role_name=admin_role_name,
            assumed_by=iam.AccountPrincipal(home_account_id),
            inline_policies={
                "ManageProvisionedRoles": iam.PolicyDocument(
                    statements=[
                        iam.PolicyStatement(
                            actions=ROLE_MANAGEMENT_ACTIONS,
                            resources=[
                                f"arn:{Aws.PARTITION}:iam::{Aws.ACCOUNT_ID}:role/{role_name_prefix}*"
                            ],
                        ),
                        # The admin role shares the managed prefix; it must not be able to remove itself.
                        iam.PolicyStatement(
                            effect=iam.Effect.DENY,
                            actions=ROLE_MANAGEMENT_ACTIONS,
                            resources=[admin_role_arn],
                        ),
                    ]
                )
            },
        )

        CfnOutput(self, "AdminRoleArn", value=admin_role.role_arn)
        CfnOutput(self, "HomeAccountId", value=home_account_id)
