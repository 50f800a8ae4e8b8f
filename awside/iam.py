"""IAM role and instance profile management for Session Manager access."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from awside.ec2 import AwsApiError

SSM_POLICY_ARN = "arn:aws:iam::aws:policy/AmazonSSMManagedInstanceCore"
CLOUDWATCH_POLICY_ARN = "arn:aws:iam::aws:policy/CloudWatchAgentServerPolicy"

PROFILE_MAX_WAIT = 30.0
PROFILE_POLL_INTERVAL = 2.0

CLEANUP_ROLE_NAME = "aws-jupyter-session-manager-role"
CLEANUP_PROFILE_NAME = "aws-jupyter-session-manager-profile"

SESSION_MANAGER_TRUST_POLICY = json.dumps(
    {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": {"Service": "ec2.amazonaws.com"},
                "Action": "sts:AssumeRole",
            }
        ],
    },
    indent=4,
)


@dataclass
class InstanceProfileInfo:
    """An instance profile and the role it carries."""

    name: str = ""
    arn: str = ""
    role: str = ""


def auto_stop_policy_document(app_prefix: str) -> str:
    """Return the inline policy that lets an instance stop itself."""
    return json.dumps(
        {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Action": "ec2:DescribeInstances",
                    "Resource": "*",
                },
                {
                    "Effect": "Allow",
                    "Action": "ec2:StopInstances",
                    "Resource": "*",
                    "Condition": {
                        "StringEquals": {"ec2:ResourceTag/CreatedBy": f"{app_prefix}-cli"}
                    },
                },
            ],
        },
        indent=4,
    )


def _is_no_such_entity(err: Exception) -> bool:
    return isinstance(err, AwsApiError) and err.code == "NoSuchEntity"


def _tags(app_prefix: str) -> list[dict]:
    return [
        {"Key": "CreatedBy", "Value": f"{app_prefix}-cli"},
        {"Key": "Purpose", "Value": "session-manager-access"},
    ]


class IAMClient:
    """IAM operations over a service client with IAM API methods."""

    def __init__(
        self,
        client: Any,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self._sleep = sleep
        self._clock = clock

    def get_or_create_session_manager_role(self, app_prefix: str) -> InstanceProfileInfo:
        """Return the app's Session Manager instance profile, creating what is missing."""
        role_name = f"{app_prefix}-session-manager-role"
        profile_name = f"{app_prefix}-session-manager-profile"

        try:
            exists = self._role_exists(role_name)
        except Exception as err:
            raise RuntimeError(f"failed to check role existence: {err}") from err

        if not exists:
            print(f"Creating IAM role: {role_name}")
            try:
                self._create_role(role_name, app_prefix)
            except Exception as err:
                raise RuntimeError(f"failed to create role: {err}") from err
            try:
                self._attach_session_manager_policy(role_name, app_prefix)
            except Exception as err:
                raise RuntimeError(f"failed to attach Session Manager policy: {err}") from err
        else:
            print(f"Using existing IAM role: {role_name}")
            try:
                self._ensure_auto_stop_policy(role_name, app_prefix)
            except Exception as err:
                print(f"Warning: Failed to ensure auto-stop policy: {err}")

        try:
            info = self._find_instance_profile(profile_name)
        except Exception as err:
            raise RuntimeError(f"failed to check instance profile existence: {err}") from err

        if info is None:
            print(f"Creating instance profile: {profile_name}")
            try:
                info = self._create_instance_profile(profile_name, role_name, app_prefix)
            except Exception as err:
                raise RuntimeError(f"failed to create instance profile: {err}") from err
        else:
            print(f"Using existing instance profile: {profile_name}")
        return info

    def _role_exists(self, role_name: str) -> bool:
        try:
            self.client.get_role(RoleName=role_name)
        except Exception as err:
            if _is_no_such_entity(err):
                return False
            raise
        return True

    def _create_role(self, role_name: str, app_prefix: str) -> None:
        self.client.create_role(
            RoleName=role_name,
            AssumeRolePolicyDocument=SESSION_MANAGER_TRUST_POLICY,
            Description=f"IAM role for {app_prefix} instances with Session Manager access",
            Tags=_tags(app_prefix),
        )

    def _attach_session_manager_policy(self, role_name: str, app_prefix: str) -> None:
        self.client.attach_role_policy(RoleName=role_name, PolicyArn=SSM_POLICY_ARN)

        try:
            self.client.attach_role_policy(RoleName=role_name, PolicyArn=CLOUDWATCH_POLICY_ARN)
        except Exception as err:
            print(f"Warning: Failed to attach CloudWatch policy (non-critical): {err}")

        try:
            self._attach_auto_stop_policy(role_name, app_prefix)
        except Exception as err:
            print(f"Warning: Failed to attach auto-stop policy (non-critical): {err}")

    def _attach_auto_stop_policy(self, role_name: str, app_prefix: str) -> None:
        try:
            self.client.put_role_policy(
                RoleName=role_name,
                PolicyName=f"{app_prefix}-auto-stop-policy",
                PolicyDocument=auto_stop_policy_document(app_prefix),
            )
        except Exception as err:
            raise RuntimeError(f"failed to attach auto-stop policy: {err}") from err
        print("✓ Auto-stop policy attached")

    def _ensure_auto_stop_policy(self, role_name: str, app_prefix: str) -> None:
        try:
            self.client.get_role_policy(
                RoleName=role_name, PolicyName=f"{app_prefix}-auto-stop-policy"
            )
        except Exception as err:
            if _is_no_such_entity(err):
                self._attach_auto_stop_policy(role_name, app_prefix)
                return
            raise

    def _find_instance_profile(self, profile_name: str) -> Optional[InstanceProfileInfo]:
        try:
            result = self.client.get_instance_profile(InstanceProfileName=profile_name)
        except Exception as err:
            if _is_no_such_entity(err):
                return None
            raise
        profile = result.get("InstanceProfile") or {}
        roles = profile.get("Roles") or []
        return InstanceProfileInfo(
            name=profile.get("InstanceProfileName", ""),
            arn=profile.get("Arn", ""),
            role=roles[0].get("RoleName", "") if roles else "",
        )

    def _create_instance_profile(
        self, profile_name: str, role_name: str, app_prefix: str
    ) -> InstanceProfileInfo:
        try:
            result = self.client.create_instance_profile(
                InstanceProfileName=profile_name, Tags=_tags(app_prefix)
            )
        except Exception as err:
            raise RuntimeError(f"failed to create instance profile: {err}") from err

        try:
            self.client.add_role_to_instance_profile(
                InstanceProfileName=profile_name, RoleName=role_name
            )
        except Exception as err:
            try:
                self.client.delete_instance_profile(InstanceProfileName=profile_name)
            except Exception as delete_err:
                print(f"Warning: Failed to cleanup instance profile after error: {delete_err}")
            raise RuntimeError(f"failed to add role to instance profile: {err}") from err

        print("Waiting for IAM instance profile to propagate...")
        try:
            self._wait_for_instance_profile_ready(profile_name)
        except Exception as err:
            raise RuntimeError(f"instance profile not ready: {err}") from err

        return InstanceProfileInfo(
            name=profile_name,
            arn=(result.get("InstanceProfile") or {}).get("Arn", ""),
            role=role_name,
        )

    def _wait_for_instance_profile_ready(self, profile_name: str) -> None:
        deadline = self._clock() + PROFILE_MAX_WAIT
        while True:
            self._sleep(PROFILE_POLL_INTERVAL)
            if self._clock() >= deadline:
                raise TimeoutError("timeout waiting for instance profile to be ready")
            try:
                result = self.client.get_instance_profile(InstanceProfileName=profile_name)
            except Exception:
                continue
            if (result.get("InstanceProfile") or {}).get("Roles"):
                print("✓ IAM instance profile ready")
                return

    def validate_session_manager_role(self, role_name: str) -> None:
        """Raise ValueError unless the role has the Session Manager policy attached."""
        try:
            result = self.client.list_attached_role_policies(RoleName=role_name)
        except Exception as err:
            raise RuntimeError(f"failed to list role policies: {err}") from err
        arns = {policy.get("PolicyArn") for policy in result.get("AttachedPolicies") or []}
        if SSM_POLICY_ARN not in arns:
            raise ValueError("role missing AmazonSSMManagedInstanceCore policy")

    def cleanup_session_manager_resources(self) -> None:
        """Remove the Session Manager role and instance profile."""
        print("⚠️  Cleaning up Session Manager IAM resources...")

        try:
            self.client.remove_role_from_instance_profile(
                InstanceProfileName=CLEANUP_PROFILE_NAME, RoleName=CLEANUP_ROLE_NAME
            )
        except Exception as err:
            print(f"Warning: Failed to remove role from instance profile: {err}")

        try:
            self.client.delete_instance_profile(InstanceProfileName=CLEANUP_PROFILE_NAME)
        except Exception as err:
            print(f"Warning: Failed to delete instance profile: {err}")

        for policy_arn in (SSM_POLICY_ARN, CLOUDWATCH_POLICY_ARN):
            try:
                self.client.detach_role_policy(RoleName=CLEANUP_ROLE_NAME, PolicyArn=policy_arn)
            except Exception as err:
                print(f"Warning: Failed to detach policy {policy_arn}: {err}")

        try:
            self.client.delete_role(RoleName=CLEANUP_ROLE_NAME)
        except Exception as err:
            raise RuntimeError(f"failed to delete role: {err}") from err

        print("✓ Cleaned up Session Manager IAM resources")