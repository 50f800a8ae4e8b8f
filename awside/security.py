"""Security group lookup, creation and validation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from awside.ec2 import CREATED_BY_TAG, EC2Client

CREATED_BY_USER = "user"
CREATED_BY_AWS_JUPYTER = "aws-jupyter"
DEFAULT_SG_NAME = "aws-jupyter"
SESSION_MANAGER_SG_NAME = "aws-jupyter-session-manager"

PORT_SSH = 22
PORT_JUPYTER = 8888

_LOOPBACK_CIDR = "127.0.0.1/32"
_ANYWHERE_CIDR = "0.0.0.0/0"


@dataclass
class SecurityGroupStrategy:
    """How a security group should be chosen or created."""

    prefer_existing: bool = False
    default_name: str = ""
    user_specified: str = ""
    vpc_id: str = ""
    force_create: bool = False

    def default_security_group_name(self) -> str:
        """Return the name that would be used for the group."""
        return self.user_specified or self.default_name


@dataclass
class SecurityGroupInfo:
    """A security group and who created it."""

    id: str
    name: str
    description: str
    vpc_id: str
    created_by: str


def default_security_group_strategy(vpc_id: str) -> SecurityGroupStrategy:
    """Return the default strategy: reuse the standard group if it exists."""
    return SecurityGroupStrategy(
        prefer_existing=True,
        default_name=DEFAULT_SG_NAME,
        vpc_id=vpc_id,
        force_create=False,
    )


def is_aws_jupyter_security_group(name: str) -> bool:
    """Return whether the group name is the one this tool creates."""
    return name == DEFAULT_SG_NAME


def _created_by(name: str) -> str:
    return CREATED_BY_AWS_JUPYTER if is_aws_jupyter_security_group(name) else CREATED_BY_USER


def _info_from_group(group: dict) -> SecurityGroupInfo:
    name = group.get("GroupName", "")
    return SecurityGroupInfo(
        id=group.get("GroupId", ""),
        name=name,
        description=group.get("Description", ""),
        vpc_id=group.get("VpcId", ""),
        created_by=_created_by(name),
    )


def _tcp_rule(port: int, cidr: str, description: str) -> dict:
    return {
        "IpProtocol": "tcp",
        "FromPort": port,
        "ToPort": port,
        "IpRanges": [{"CidrIp": cidr, "Description": description}],
    }


class SecurityGroupManager:
    """Security group operations on top of an EC2 client."""

    def __init__(self, ec2: EC2Client):
        self.ec2 = ec2

    @property
    def _client(self):
        return self.ec2.client

    def find(self, name: str) -> Optional[SecurityGroupInfo]:
        """Return the group with this name, or None if there is none."""
        try:
            result = self._client.describe_security_groups(
                Filters=[{"Name": "group-name", "Values": [name]}]
            )
        except Exception as err:
            raise RuntimeError(f"failed to check security group existence: {err}") from err
        groups = result.get("SecurityGroups") or []
        if not groups:
            return None
        return _info_from_group(groups[0])

    def _rules_for(self, name: str) -> tuple[str, list[dict]]:
        if name == SESSION_MANAGER_SG_NAME:
            description = "aws-jupyter security group - Session Manager and Jupyter Lab access"
            rules = [
                _tcp_rule(
                    PORT_JUPYTER,
                    _LOOPBACK_CIDR,
                    "Jupyter Lab access via port forwarding only",
                )
            ]
            return description, rules

        description = "aws-jupyter security group - SSH and Jupyter Lab access"
        print(
            "Warning: Could not determine public IP, allowing SSH from anywhere: "
            "could not determine public IP from external services"
        )
        rules = [
            _tcp_rule(PORT_SSH, _ANYWHERE_CIDR, "SSH access from current IP"),
            _tcp_rule(PORT_JUPYTER, _LOOPBACK_CIDR, "Jupyter Lab access via SSH tunnel only"),
        ]
        return description, rules

    def create(self, name: str, vpc_id: str) -> SecurityGroupInfo:
        """Create a group with the access rules this tool needs."""
        description, rules = self._rules_for(name)

        try:
            result = self._client.create_security_group(
                GroupName=name,
                Description=description,
                VpcId=vpc_id,
                TagSpecifications=[
                    {
                        "ResourceType": "security-group",
                        "Tags": [
                            {"Key": "Name", "Value": name},
                            {"Key": "CreatedBy", "Value": CREATED_BY_TAG},
                            {"Key": "Purpose", "Value": "jupyter-lab-access"},
                        ],
                    }
                ],
            )
        except Exception as err:
            raise RuntimeError(f"failed to create security group: {err}") from err

        group_id = result.get("GroupId", "")
        try:
            self._client.authorize_security_group_ingress(GroupId=group_id, IpPermissions=rules)
        except Exception as err:
            try:
                self._client.delete_security_group(GroupId=group_id)
            except Exception as delete_err:
                print(f"Warning: Failed to delete security group after error: {delete_err}")
            raise RuntimeError(f"failed to add security group rules: {err}") from err

        return SecurityGroupInfo(
            id=group_id,
            name=name,
            description=description,
            vpc_id=vpc_id,
            created_by=CREATED_BY_AWS_JUPYTER,
        )

    def get_or_create(self, strategy: SecurityGroupStrategy) -> SecurityGroupInfo:
        """Return an existing group according to the strategy, or create one."""
        name = strategy.default_security_group_name()

        if strategy.user_specified:
            try:
                info = self.find(strategy.user_specified)
            except Exception as err:
                raise RuntimeError(
                    f"failed to check user-specified security group: {err}"
                ) from err
            if info is None:
                raise LookupError(
                    f"user-specified security group '{strategy.user_specified}' does not exist"
                )
            return info

        if strategy.prefer_existing and not strategy.force_create:
            try:
                info = self.find(name)
            except Exception as err:
                raise RuntimeError(
                    f"failed to check for existing security group: {err}"
                ) from err
            if info is not None:
                try:
                    self.validate_rules(info.id)
                except Exception as err:
                    print(f"Warning: Existing security group may not have optimal rules: {err}")
                return info

        vpc_id = strategy.vpc_id
        if not vpc_id:
            try:
                vpc_id = self.ec2.default_vpc_id()
            except Exception as err:
                raise RuntimeError(f"failed to get default VPC: {err}") from err

        print(f"Creating new security group: {name}")
        return self.create(name, vpc_id)

    def validate_rules(self, group_id: str) -> None:
        """Raise ValueError unless the group opens both the SSH and Jupyter ports."""
        try:
            result = self._client.describe_security_groups(GroupIds=[group_id])
        except Exception as err:
            raise RuntimeError(f"failed to describe security group rules: {err}") from err
        groups = result.get("SecurityGroups") or []
        if not groups:
            raise LookupError("security group not found")

        ports = {
            (rule.get("FromPort", 0), rule.get("ToPort", 0))
            for rule in groups[0].get("IpPermissions") or []
        }
        if (PORT_SSH, PORT_SSH) not in ports:
            raise ValueError(f"missing SSH rule (port {PORT_SSH})")
        if (PORT_JUPYTER, PORT_JUPYTER) not in ports:
            raise ValueError(f"missing Jupyter rule (port {PORT_JUPYTER})")

    def list_groups(self) -> list[SecurityGroupInfo]:
        """Return every named security group visible to the client."""
        try:
            result = self._client.describe_security_groups()
        except Exception as err:
            raise RuntimeError(f"failed to list security groups: {err}") from err
        return [
            _info_from_group(group)
            for group in result.get("SecurityGroups") or []
            if group.get("GroupName") is not None
        ]