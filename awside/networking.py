"""Subnet selection, NAT gateways and private subnet routing."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional

from awside.ec2 import CREATED_BY_TAG, AwsApiError, EC2Client

NAT_POLL_INTERVAL = 15.0
NAT_MAX_WAIT = 300.0


@dataclass
class SubnetInfo:
    """A subnet and whether it assigns public addresses on launch."""

    id: str
    vpc_id: str
    availability_zone: str
    cidr_block: str
    is_public: bool


@dataclass
class NATGatewayInfo:
    """A NAT gateway and where it lives."""

    id: str
    subnet_id: str
    vpc_id: str
    state: str


def _filter(name: str, *values: str) -> dict:
    return {"Name": name, "Values": list(values)}


def _tags(resource_type: str, name: str) -> list[dict]:
    return [
        {
            "ResourceType": resource_type,
            "Tags": [
                {"Key": "Name", "Value": name},
                {"Key": "CreatedBy", "Value": CREATED_BY_TAG},
            ],
        }
    ]


def _matches(subnet_type: str, is_public: bool) -> bool:
    return (subnet_type == "public" and is_public) or (
        subnet_type == "private" and not is_public
    )


class NetworkManager:
    """Networking operations on top of an EC2 client."""

    def __init__(self, ec2: EC2Client, sleep: Callable[[float], None] = time.sleep):
        self.ec2 = ec2
        self._sleep = sleep

    @property
    def _client(self):
        return self.ec2.client

    def get_subnet(self, subnet_type: str, availability_zone: str = "") -> SubnetInfo:
        """Pick a subnet of the default VPC, preferring the requested type."""
        try:
            vpc_id = self.ec2.default_vpc_id()
        except Exception as err:
            raise RuntimeError(f"failed to get default VPC: {err}") from err

        filters = [_filter("vpc-id", vpc_id)]
        if availability_zone:
            filters.append(_filter("availability-zone", availability_zone))

        try:
            result = self._client.describe_subnets(Filters=filters)
        except Exception as err:
            raise RuntimeError(f"failed to describe subnets: {err}") from err

        subnets = result.get("Subnets") or []
        if not subnets:
            if availability_zone:
                raise LookupError(
                    f"no subnets found in VPC {vpc_id} in availability zone {availability_zone}"
                )
            raise LookupError(f"no subnets found in VPC {vpc_id}")

        best: Optional[dict] = next(
            (
                subnet
                for subnet in subnets
                if _matches(subnet_type, bool(subnet.get("MapPublicIpOnLaunch", False)))
            ),
            None,
        )
        if best is None:
            best = subnets[0]
            actual = "public" if best.get("MapPublicIpOnLaunch") else "private"
            print(f"⚠️  No {subnet_type} subnet found, using {actual} subnet instead")

        return SubnetInfo(
            id=best.get("SubnetId", ""),
            vpc_id=best.get("VpcId", ""),
            availability_zone=best.get("AvailabilityZone", ""),
            cidr_block=best.get("CidrBlock", ""),
            is_public=bool(best.get("MapPublicIpOnLaunch", False)),
        )

    def _find_existing_nat_gateway(self, vpc_id: str) -> Optional[NATGatewayInfo]:
        result = self._client.describe_nat_gateways(
            Filter=[_filter("vpc-id", vpc_id), _filter("state", "available")]
        )
        gateways = result.get("NatGateways") or []
        if not gateways:
            return None
        gateway = gateways[0]
        return NATGatewayInfo(
            id=gateway.get("NatGatewayId", ""),
            subnet_id=gateway.get("SubnetId", ""),
            vpc_id=gateway.get("VpcId", ""),
            state=str(gateway.get("State", "")),
        )

    def get_or_create_nat_gateway(self, vpc_id: str) -> NATGatewayInfo:
        """Return the VPC's available NAT gateway, creating one if there is none."""
        try:
            existing = self._find_existing_nat_gateway(vpc_id)
        except Exception as err:
            raise RuntimeError(f"failed to check for existing NAT Gateway: {err}") from err
        if existing is not None:
            print(f"Using existing NAT Gateway: {existing.id}")
            return existing

        try:
            public_subnet = self.get_subnet("public", "")
        except Exception as err:
            raise RuntimeError(f"failed to find public subnet for NAT Gateway: {err}") from err
        if not public_subnet.is_public:
            raise LookupError("no public subnet available for NAT Gateway")

        print("Allocating Elastic IP for NAT Gateway...")
        try:
            address = self._client.allocate_address(
                Domain="vpc",
                TagSpecifications=_tags("elastic-ip", "aws-jupyter-nat-gateway-eip"),
            )
        except Exception as err:
            raise RuntimeError(f"failed to allocate Elastic IP: {err}") from err
        allocation_id = address.get("AllocationId")

        print(f"Creating NAT Gateway in subnet {public_subnet.id}...")
        try:
            created = self._client.create_nat_gateway(
                SubnetId=public_subnet.id,
                AllocationId=allocation_id,
                TagSpecifications=_tags("natgateway", "aws-jupyter-nat-gateway"),
            )
        except Exception as err:
            try:
                self._client.release_address(AllocationId=allocation_id)
            except Exception as release_err:
                print(f"Warning: Failed to release Elastic IP after error: {release_err}")
            raise RuntimeError(f"failed to create NAT Gateway: {err}") from err

        gateway = created.get("NatGateway") or {}
        info = NATGatewayInfo(
            id=gateway.get("NatGatewayId", ""),
            subnet_id=public_subnet.id,
            vpc_id=vpc_id,
            state=str(gateway.get("State", "")),
        )

        print(f"Waiting for NAT Gateway {info.id} to become available...")
        try:
            self._wait_for_nat_gateway_available(info.id)
        except Exception as err:
            raise RuntimeError(f"NAT Gateway did not become available: {err}") from err

        print(f"✓ NAT Gateway {info.id} is now available")
        return info

    def _wait_for_nat_gateway_available(self, nat_gateway_id: str) -> None:
        elapsed = 0.0
        while elapsed < NAT_MAX_WAIT:
            self._sleep(NAT_POLL_INTERVAL)
            elapsed += NAT_POLL_INTERVAL
            try:
                result = self._client.describe_nat_gateways(NatGatewayIds=[nat_gateway_id])
            except Exception as err:
                raise RuntimeError(f"failed to check NAT Gateway status: {err}") from err
            gateways = result.get("NatGateways") or []
            if not gateways:
                raise LookupError("NAT Gateway not found")
            state = gateways[0].get("State")
            if state == "available":
                return
            if state == "failed":
                raise RuntimeError("NAT Gateway creation failed")
            if state in ("deleted", "deleting"):
                raise RuntimeError("NAT Gateway was deleted")
            print(f"NAT Gateway state: {state}")
        raise TimeoutError("timeout waiting for NAT Gateway to become available")

    def _vpc_id_from_subnet(self, subnet_id: str) -> str:
        result = self._client.describe_subnets(SubnetIds=[subnet_id])
        subnets = result.get("Subnets") or []
        if not subnets:
            raise LookupError("subnet not found")
        return subnets[0].get("VpcId", "")

    def update_private_subnet_routes(self, subnet_id: str, nat_gateway_id: str) -> None:
        """Route the subnet's internet traffic through the NAT gateway."""
        try:
            tables = self._client.describe_route_tables(
                Filters=[_filter("association.subnet-id", subnet_id)]
            ).get("RouteTables") or []
        except Exception as err:
            raise RuntimeError(f"failed to find route table for subnet: {err}") from err

        if tables:
            route_table_id = tables[0].get("RouteTableId", "")
        else:
            try:
                vpc_id = self._vpc_id_from_subnet(subnet_id)
            except Exception as err:
                raise RuntimeError(f"failed to get VPC ID: {err}") from err
            try:
                main_tables = self._client.describe_route_tables(
                    Filters=[_filter("vpc-id", vpc_id), _filter("association.main", "true")]
                ).get("RouteTables") or []
            except Exception as err:
                raise RuntimeError(f"failed to find main route table: {err}") from err
            if not main_tables:
                raise LookupError("no main route table found")
            route_table_id = main_tables[0].get("RouteTableId", "")

        print(f"Adding NAT Gateway route to route table {route_table_id}")
        try:
            self._client.create_route(
                RouteTableId=route_table_id,
                DestinationCidrBlock="0.0.0.0/0",
                NatGatewayId=nat_gateway_id,
            )
        except AwsApiError as err:
            if err.code == "RouteAlreadyExists":
                print("Route to NAT Gateway already exists")
                return
            raise RuntimeError(f"failed to create route to NAT Gateway: {err}") from err
        except Exception as err:
            raise RuntimeError(f"failed to create route to NAT Gateway: {err}") from err

        print("✓ Route to NAT Gateway created successfully")