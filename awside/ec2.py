"""EC2 operations: instance lifecycle, availability zones and custom AMIs."""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

CREATED_BY_TAG = "aws-jupyter-cli"
INSTANCE_NAME_TAG = "aws-jupyter"
LAUNCH_MAX_ATTEMPTS = 5
RUNNING_POLL_INTERVAL = 15.0
DEFAULT_RUNNING_TIMEOUT = 300.0

_IAM_PROPAGATION_MARKERS = (
    "Invalid IAM Instance Profile",
    "iamInstanceProfile",
    "not valid",
    "does not exist",
)
_WAITER_FAILURE_STATES = frozenset({"terminated", "stopping", "shutting-down"})


class AwsApiError(Exception):
    """An error reported by an AWS service, carrying its error code."""

    def __init__(self, code, message):
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message


@dataclass
class LaunchParams:
    """Everything needed to launch one instance."""

    ami: str = ""
    instance_type: str = ""
    key_pair_name: str = ""
    security_group_id: str = ""
    user_data: str = ""
    ebs_volume_size: int = 0
    environment: str = ""
    subnet_id: str = ""
    instance_profile: str = ""


@dataclass
class AMIInfo:
    """A custom image created by this tool."""

    id: str
    name: str
    description: str
    state: str
    creation_date: Optional[datetime]


def _filter(name: str, *values: str) -> dict:
    return {"Name": name, "Values": list(values)}


def _parse_rfc3339(text: str) -> Optional[datetime]:
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def _is_iam_propagation_error(message: str) -> bool:
    return any(marker in message for marker in _IAM_PROPAGATION_MARKERS)


class EC2Client:
    """High-level EC2 operations over a service client with EC2 API methods."""

    def __init__(self, client: Any, region: str = "", sleep: Callable[[float], None] = time.sleep):
        self.client = client
        self.region = region
        self._sleep = sleep

    def is_instance_type_supported(self, instance_type: str, availability_zone: str) -> bool:
        """Return whether the instance type is offered in the availability zone."""
        result = self.client.describe_instance_type_offerings(
            LocationType="availability-zone",
            Filters=[
                _filter("instance-type", instance_type),
                _filter("location", availability_zone),
            ],
        )
        return bool(result.get("InstanceTypeOfferings"))

    def find_compatible_availability_zone(self, instance_type: str, subnet_type: str) -> str:
        """Find a zone offering the instance type with a subnet of the given type."""
        try:
            result = self.client.describe_instance_type_offerings(
                LocationType="availability-zone",
                Filters=[_filter("instance-type", instance_type)],
            )
        except Exception as err:
            raise RuntimeError(f"failed to query instance type offerings: {err}") from err

        offerings = result.get("InstanceTypeOfferings") or []
        if not offerings:
            raise LookupError(
                f"instance type {instance_type} not available in region {self.region}"
            )

        try:
            vpc_id = self.default_vpc_id()
        except Exception as err:
            raise RuntimeError(f"failed to get default VPC: {err}") from err

        for offering in offerings:
            zone = offering.get("Location", "")
            try:
                subnets = self.client.describe_subnets(
                    Filters=[
                        _filter("vpc-id", vpc_id),
                        _filter("availability-zone", zone),
                    ]
                )
            except Exception:
                continue
            for subnet in subnets.get("Subnets") or []:
                is_public = bool(subnet.get("MapPublicIpOnLaunch", False))
                if (subnet_type == "public" and is_public) or (
                    subnet_type == "private" and not is_public
                ):
                    return zone

        raise LookupError(
            f"no availability zone found with both {instance_type} support "
            f"and {subnet_type} subnet"
        )

    def _run_input(self, params: LaunchParams, subnet_id: str) -> dict:
        run_input: dict = {
            "ImageId": params.ami,
            "InstanceType": params.instance_type,
            "MinCount": 1,
            "MaxCount": 1,
            "SubnetId": subnet_id,
            "SecurityGroupIds": [params.security_group_id],
            "UserData": params.user_data,
            "BlockDeviceMappings": [
                {
                    "DeviceName": "/dev/sda1",
                    "Ebs": {
                        "VolumeSize": params.ebs_volume_size,
                        "VolumeType": "gp3",
                        "DeleteOnTermination": True,
                    },
                }
            ],
            "TagSpecifications": [
                {
                    "ResourceType": "instance",
                    "Tags": [
                        {"Key": "Name", "Value": INSTANCE_NAME_TAG},
                        {"Key": "CreatedBy", "Value": CREATED_BY_TAG},
                        {"Key": "Environment", "Value": params.environment},
                    ],
                }
            ],
        }
        if params.key_pair_name:
            run_input["KeyName"] = params.key_pair_name
        if params.instance_profile:
            run_input["IamInstanceProfile"] = {"Name": params.instance_profile}
        return run_input

    def launch_instance(self, params: LaunchParams) -> dict:
        """Launch one instance, retrying while a new instance profile propagates."""
        subnet_id = params.subnet_id or self.default_subnet_id()
        run_input = self._run_input(params, subnet_id)

        last_error: Optional[Exception] = None
        result = None
        for attempt in range(LAUNCH_MAX_ATTEMPTS):
            if attempt > 0:
                wait = 2**attempt
                print(f"Retrying launch in {wait}s (attempt {attempt + 1}/{LAUNCH_MAX_ATTEMPTS})...")
                self._sleep(wait)
            try:
                result = self.client.run_instances(**run_input)
            except Exception as err:
                last_error = err
                if params.instance_profile and _is_iam_propagation_error(str(err)):
                    continue
                raise
            last_error = None
            break

        if last_error is not None:
            raise RuntimeError(
                f"failed after {LAUNCH_MAX_ATTEMPTS} attempts: {last_error}"
            ) from last_error

        instances = (result or {}).get("Instances") or []
        if not instances:
            raise RuntimeError("no instances created")
        return instances[0]

    def default_vpc_id(self) -> str:
        """Return the ID of the region's default VPC."""
        try:
            result = self.client.describe_vpcs(Filters=[_filter("isDefault", "true")])
        except Exception as err:
            raise RuntimeError(f"failed to describe VPCs: {err}") from err
        vpcs = result.get("Vpcs") or []
        if not vpcs:
            raise LookupError("no default VPC found")
        return vpcs[0].get("VpcId", "")

    def default_subnet_id(self) -> str:
        """Return the first subnet of the default VPC."""
        vpcs = self.client.describe_vpcs(Filters=[_filter("isDefault", "true")]).get("Vpcs") or []
        if not vpcs:
            raise LookupError("no default VPC found")
        subnets = self.client.describe_subnets(
            Filters=[_filter("vpc-id", vpcs[0]["VpcId"])]
        ).get("Subnets") or []
        if not subnets:
            raise LookupError("no subnets found in default VPC")
        return subnets[0].get("SubnetId", "")

    def _instance_state(self, instance_id: str) -> Optional[str]:
        try:
            result = self.client.describe_instances(InstanceIds=[instance_id])
        except AwsApiError as err:
            if err.code == "InvalidInstanceID.NotFound":
                return None
            raise
        for reservation in result.get("Reservations") or []:
            for instance in reservation.get("Instances") or []:
                return (instance.get("State") or {}).get("Name")
        return None

    def wait_for_instance_running(self, instance_id: str, timeout: float = DEFAULT_RUNNING_TIMEOUT) -> None:
        """Poll until the instance is running; raise on failure states or timeout."""
        elapsed = 0.0
        while True:
            state = self._instance_state(instance_id)
            if state == "running":
                return
            if state in _WAITER_FAILURE_STATES:
                raise RuntimeError(
                    f"instance {instance_id} entered state '{state}' while waiting for running"
                )
            if elapsed >= timeout:
                raise TimeoutError(f"exceeded max wait time for instance {instance_id} to run")
            self._sleep(RUNNING_POLL_INTERVAL)
            elapsed += RUNNING_POLL_INTERVAL

    def get_instance_info(self, instance_id: str) -> dict:
        """Return the description of one instance."""
        result = self.client.describe_instances(InstanceIds=[instance_id])
        reservations = result.get("Reservations") or []
        if not reservations or not reservations[0].get("Instances"):
            raise LookupError("instance not found")
        return reservations[0]["Instances"][0]

    def stop_instance(self, instance_id: str, hibernate: bool = False) -> None:
        """Stop an instance, optionally hibernating it."""
        self.client.stop_instances(InstanceIds=[instance_id], Hibernate=hibernate)

    def start_instance(self, instance_id: str) -> None:
        """Start a stopped instance."""
        self.client.start_instances(InstanceIds=[instance_id])

    def terminate_instance(self, instance_id: str) -> None:
        """Terminate an instance permanently."""
        self.client.terminate_instances(InstanceIds=[instance_id])

    def create_ami(self, instance_id: str, name: str, description: str, no_reboot: bool = False) -> str:
        """Create an image from an instance and return its ID."""
        result = self.client.create_image(
            InstanceId=instance_id,
            Name=name,
            Description=description,
            NoReboot=no_reboot,
            TagSpecifications=[
                {
                    "ResourceType": "image",
                    "Tags": [
                        {"Key": "Name", "Value": name},
                        {"Key": "CreatedBy", "Value": CREATED_BY_TAG},
                    ],
                }
            ],
        )
        return result["ImageId"]

    def list_custom_amis(self) -> list[AMIInfo]:
        """List images owned by this account that this tool created."""
        result = self.client.describe_images(
            Owners=["self"],
            Filters=[_filter("tag:CreatedBy", CREATED_BY_TAG)],
        )
        return [
            AMIInfo(
                id=image.get("ImageId", ""),
                name=image.get("Name", ""),
                description=image.get("Description", ""),
                state=str(image.get("State", "")),
                creation_date=_parse_rfc3339(image.get("CreationDate", "")),
            )
            for image in result.get("Images") or []
        ]

    def delete_ami(self, ami_id: str) -> None:
        """Deregister an image and delete its snapshots."""
        try:
            result = self.client.describe_images(ImageIds=[ami_id])
        except Exception as err:
            raise RuntimeError(f"failed to describe AMI: {err}") from err
        images = result.get("Images") or []
        if not images:
            raise LookupError(f"AMI {ami_id} not found")
        image = images[0]

        try:
            self.client.deregister_image(ImageId=ami_id)
        except Exception as err:
            raise RuntimeError(f"failed to deregister AMI: {err}") from err

        for mapping in image.get("BlockDeviceMappings") or []:
            snapshot_id = (mapping.get("Ebs") or {}).get("SnapshotId")
            if not snapshot_id:
                continue
            try:
                self.client.delete_snapshot(SnapshotId=snapshot_id)
            except Exception as err:
                print(f"Warning: Failed to delete snapshot {snapshot_id}: {err}")