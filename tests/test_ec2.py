from datetime import datetime, timezone

import pytest

from awside.ec2 import AMIInfo, AwsApiError, EC2Client, LaunchParams


class FakeEC2:
    def __init__(self, **responses):
        self.responses = responses
        self.calls = []

    def __getattr__(self, name):
        responses = self.__dict__.get("responses", {})
        if name not in responses:
            raise AttributeError(name)

        def method(**kwargs):
            self.calls.append((name, kwargs))
            resp = self.responses[name]
            if isinstance(resp, list):
                resp = resp.pop(0)
            if callable(resp):
                resp = resp(**kwargs)
            if isinstance(resp, Exception):
                raise resp
            return resp

        return method

    def calls_to(self, name):
        return [kw for n, kw in self.calls if n == name]


def make_client(fake, region="us-west-2"):
    sleeps = []
    return EC2Client(fake, region, sleep=sleeps.append), sleeps


def test_launch_params_fields():
    params = LaunchParams(
        ami="ami-12345",
        instance_type="m7g.medium",
        key_pair_name="test-key",
        security_group_id="sg-12345",
        user_data="#!/bin/bash\necho 'test'",
        ebs_volume_size=20,
        environment="test-env",
    )
    assert params.ami == "ami-12345"
    assert params.instance_type == "m7g.medium"
    assert params.key_pair_name == "test-key"
    assert params.security_group_id == "sg-12345"
    assert params.ebs_volume_size == 20
    assert params.environment == "test-env"
    assert params.subnet_id == ""
    assert params.instance_profile == ""


def test_client_region():
    client, _ = make_client(FakeEC2())
    assert client.region == "us-west-2"


def test_api_error_carries_code():
    err = AwsApiError("NoSuchEntity", "missing")
    assert err.code == "NoSuchEntity"
    assert err.message == "missing"
    assert "missing" in str(err)


def test_instance_type_supported():
    fake = FakeEC2(describe_instance_type_offerings={"InstanceTypeOfferings": [{"Location": "us-west-2a"}]})
    client, _ = make_client(fake)
    assert client.is_instance_type_supported("t3.medium", "us-west-2a") is True
    call = fake.calls_to("describe_instance_type_offerings")[0]
    assert call["Filters"] == [
        {"Name": "instance-type", "Values": ["t3.medium"]},
        {"Name": "location", "Values": ["us-west-2a"]},
    ]


def test_instance_type_not_supported():
    fake = FakeEC2(describe_instance_type_offerings={"InstanceTypeOfferings": []})
    client, _ = make_client(fake)
    assert client.is_instance_type_supported("", "us-west-2a") is False


def test_find_compatible_zone_skips_failing_and_mismatched():
    fake = FakeEC2(
        describe_instance_type_offerings={
            "InstanceTypeOfferings": [
                {"Location": "us-west-2a"},
                {"Location": "us-west-2b"},
                {"Location": "us-west-2c"},
            ]
        },
        describe_vpcs={"Vpcs": [{"VpcId": "vpc-1"}]},
        describe_subnets=[
            AwsApiError("Throttling", "slow down"),
            {"Subnets": [{"SubnetId": "s-b", "MapPublicIpOnLaunch": False}]},
            {"Subnets": [{"SubnetId": "s-c", "MapPublicIpOnLaunch": True}]},
        ],
    )
    client, _ = make_client(fake)
    assert client.find_compatible_availability_zone("t3.medium", "public") == "us-west-2c"


def test_find_compatible_zone_private():
    fake = FakeEC2(
        describe_instance_type_offerings={"InstanceTypeOfferings": [{"Location": "us-west-2a"}]},
        describe_vpcs={"Vpcs": [{"VpcId": "vpc-1"}]},
        describe_subnets={"Subnets": [{"SubnetId": "s-a", "MapPublicIpOnLaunch": False}]},
    )
    client, _ = make_client(fake)
    assert client.find_compatible_availability_zone("t3.medium", "private") == "us-west-2a"


def test_find_compatible_zone_no_offerings():
    fake = FakeEC2(describe_instance_type_offerings={"InstanceTypeOfferings": []})
    client, _ = make_client(fake)
    with pytest.raises(LookupError, match="not available in region us-west-2"):
        client.find_compatible_availability_zone("x.huge", "public")


def test_find_compatible_zone_none_match():
    fake = FakeEC2(
        describe_instance_type_offerings={"InstanceTypeOfferings": [{"Location": "us-west-2a"}]},
        describe_vpcs={"Vpcs": [{"VpcId": "vpc-1"}]},
        describe_subnets={"Subnets": [{"SubnetId": "s-a", "MapPublicIpOnLaunch": False}]},
    )
    client, _ = make_client(fake)
    with pytest.raises(LookupError, match="no availability zone found"):
        client.find_compatible_availability_zone("t3.medium", "public")


def full_params(**overrides):
    values = dict(
        ami="ami-test123",
        instance_type="t3.medium",
        key_pair_name="test-key",
        security_group_id="sg-test123",
        subnet_id="subnet-test123",
        user_data="#!/bin/bash\necho 'test'",
        ebs_volume_size=30,
        environment="test",
        instance_profile="test-profile",
    )
    values.update(overrides)
    return LaunchParams(**values)


def test_launch_instance_builds_request():
    fake = FakeEC2(run_instances={"Instances": [{"InstanceId": "i-1", "InstanceType": "t3.medium"}]})
    client, sleeps = make_client(fake)
    instance = client.launch_instance(full_params())
    assert instance["InstanceId"] == "i-1"
    assert sleeps == []
    request = fake.calls_to("run_instances")[0]
    assert request["ImageId"] == "ami-test123"
    assert request["SubnetId"] == "subnet-test123"
    assert request["SecurityGroupIds"] == ["sg-test123"]
    assert request["KeyName"] == "test-key"
    assert request["IamInstanceProfile"] == {"Name": "test-profile"}
    assert request["BlockDeviceMappings"][0]["Ebs"]["VolumeSize"] == 30
    assert request["BlockDeviceMappings"][0]["Ebs"]["VolumeType"] == "gp3"
    tags = request["TagSpecifications"][0]["Tags"]
    assert {"Key": "Environment", "Value": "test"} in tags
    assert {"Key": "CreatedBy", "Value": "aws-jupyter-cli"} in tags


def test_launch_instance_uses_default_subnet_and_omits_optional():
    fake = FakeEC2(
        describe_vpcs={"Vpcs": [{"VpcId": "vpc-9"}]},
        describe_subnets={"Subnets": [{"SubnetId": "subnet-default"}]},
        run_instances={"Instances": [{"InstanceId": "i-2"}]},
    )
    client, _ = make_client(fake)
    client.launch_instance(full_params(subnet_id="", key_pair_name="", instance_profile=""))
    request = fake.calls_to("run_instances")[0]
    assert request["SubnetId"] == "subnet-default"
    assert "KeyName" not in request
    assert "IamInstanceProfile" not in request
    assert fake.calls_to("describe_subnets")[0]["Filters"] == [{"Name": "vpc-id", "Values": ["vpc-9"]}]


def test_launch_instance_no_default_vpc():
    fake = FakeEC2(describe_vpcs={"Vpcs": []})
    client, _ = make_client(fake)
    with pytest.raises(LookupError, match="no default VPC found"):
        client.launch_instance(full_params(subnet_id=""))


def test_launch_retries_iam_propagation():
    fake = FakeEC2(
        run_instances=[
            AwsApiError("InvalidParameterValue", "Invalid IAM Instance Profile name"),
            {"Instances": [{"InstanceId": "i-3"}]},
        ]
    )
    client, sleeps = make_client(fake)
    assert client.launch_instance(full_params())["InstanceId"] == "i-3"
    assert sleeps == [2]


def test_launch_gives_up_after_five_attempts():
    fake = FakeEC2(run_instances=lambda **_: AwsApiError("InvalidParameterValue", "profile does not exist"))
    client, sleeps = make_client(fake)
    with pytest.raises(RuntimeError, match="failed after 5 attempts"):
        client.launch_instance(full_params())
    assert sleeps == [2, 4, 8, 16]
    assert len(fake.calls_to("run_instances")) == 5


def test_launch_other_error_not_retried():
    fake = FakeEC2(run_instances=[AwsApiError("InvalidAMIID.Malformed", "bad image")])
    client, sleeps = make_client(fake)
    with pytest.raises(AwsApiError) as info:
        client.launch_instance(full_params(ami=""))
    assert info.value.code == "InvalidAMIID.Malformed"
    assert sleeps == []


def test_launch_iam_like_error_without_profile_not_retried():
    fake = FakeEC2(run_instances=[AwsApiError("X", "key does not exist")])
    client, sleeps = make_client(fake)
    with pytest.raises(AwsApiError):
        client.launch_instance(full_params(instance_profile=""))
    assert len(fake.calls_to("run_instances")) == 1


def test_launch_no_instances():
    fake = FakeEC2(run_instances={"Instances": []})
    client, _ = make_client(fake)
    with pytest.raises(RuntimeError, match="no instances created"):
        client.launch_instance(full_params())


def reservation(state):
    return {"Reservations": [{"Instances": [{"InstanceId": "i-1", "State": {"Name": state}}]}]}


def test_wait_for_running():
    fake = FakeEC2(
        describe_instances=[
            AwsApiError("InvalidInstanceID.NotFound", "not yet"),
            reservation("pending"),
            reservation("running"),
        ]
    )
    client, sleeps = make_client(fake)
    client.wait_for_instance_running("i-1")
    assert sleeps == [15.0, 15.0]


def test_wait_for_running_failure_state():
    fake = FakeEC2(describe_instances=[reservation("pending"), reservation("terminated")])
    client, _ = make_client(fake)
    with pytest.raises(RuntimeError, match="terminated"):
        client.wait_for_instance_running("i-1")


def test_wait_for_running_timeout():
    fake = FakeEC2(describe_instances=lambda **_: reservation("pending"))
    client, sleeps = make_client(fake)
    with pytest.raises(TimeoutError):
        client.wait_for_instance_running("i-1", timeout=30)
    assert sleeps == [15.0, 15.0]


def test_get_instance_info():
    fake = FakeEC2(describe_instances=reservation("stopped"))
    client, _ = make_client(fake)
    assert client.get_instance_info("i-1")["State"]["Name"] == "stopped"


def test_get_instance_info_missing():
    fake = FakeEC2(describe_instances={"Reservations": []})
    client, _ = make_client(fake)
    with pytest.raises(LookupError, match="instance not found"):
        client.get_instance_info("i-nonexistent12345")


def test_stop_start_terminate():
    fake = FakeEC2(stop_instances={}, start_instances={}, terminate_instances={})
    client, _ = make_client(fake)
    client.stop_instance("i-1", True)
    client.start_instance("i-1")
    client.terminate_instance("i-1")
    assert fake.calls == [
        ("stop_instances", {"InstanceIds": ["i-1"], "Hibernate": True}),
        ("start_instances", {"InstanceIds": ["i-1"]}),
        ("terminate_instances", {"InstanceIds": ["i-1"]}),
    ]


def test_stop_propagates_error():
    fake = FakeEC2(stop_instances=AwsApiError("InvalidInstanceID.Malformed", "empty"))
    client, _ = make_client(fake)
    with pytest.raises(AwsApiError):
        client.stop_instance("", False)


def test_create_ami():
    fake = FakeEC2(create_image={"ImageId": "ami-new"})
    client, _ = make_client(fake)
    assert client.create_ami("i-1", "test-ami", "Test AMI description", True) == "ami-new"
    request = fake.calls_to("create_image")[0]
    assert request["NoReboot"] is True
    assert request["TagSpecifications"][0]["ResourceType"] == "image"
    assert {"Key": "Name", "Value": "test-ami"} in request["TagSpecifications"][0]["Tags"]


def test_list_custom_amis():
    fake = FakeEC2(
        describe_images={
            "Images": [
                {
                    "ImageId": "ami-1",
                    "Name": "one",
                    "Description": "desc",
                    "State": "available",
                    "CreationDate": "2024-03-01T12:30:00.000Z",
                },
                {"ImageId": "ami-2", "Name": "two", "State": "pending", "CreationDate": "garbage"},
            ]
        }
    )
    client, _ = make_client(fake)
    amis = client.list_custom_amis()
    assert amis[0] == AMIInfo(
        id="ami-1",
        name="one",
        description="desc",
        state="available",
        creation_date=datetime(2024, 3, 1, 12, 30, tzinfo=timezone.utc),
    )
    assert amis[1].creation_date is None
    assert amis[1].description == ""
    request = fake.calls_to("describe_images")[0]
    assert request["Owners"] == ["self"]
    assert request["Filters"] == [{"Name": "tag:CreatedBy", "Values": ["aws-jupyter-cli"]}]


def test_delete_ami_removes_snapshots(capsys):
    fake = FakeEC2(
        describe_images={
            "Images": [
                {
                    "ImageId": "ami-1",
                    "BlockDeviceMappings": [
                        {"Ebs": {"SnapshotId": "snap-1"}},
                        {"DeviceName": "/dev/sdb"},
                        {"Ebs": {"SnapshotId": "snap-2"}},
                    ],
                }
            ]
        },
        deregister_image={},
        delete_snapshot=[{}, AwsApiError("InvalidSnapshot.InUse", "in use")],
    )
    client, _ = make_client(fake)
    client.delete_ami("ami-1")
    assert fake.calls_to("deregister_image") == [{"ImageId": "ami-1"}]
    assert fake.calls_to("delete_snapshot") == [{"SnapshotId": "snap-1"}, {"SnapshotId": "snap-2"}]
    assert "Failed to delete snapshot snap-2" in capsys.readouterr().out


def test_delete_ami_not_found():
    fake = FakeEC2(describe_images={"Images": []})
    client, _ = make_client(fake)
    with pytest.raises(LookupError, match="AMI ami-test12345 not found"):
        client.delete_ami("ami-test12345")


def test_delete_ami_deregister_failure():
    fake = FakeEC2(
        describe_images={"Images": [{"ImageId": "ami-1"}]},
        deregister_image=AwsApiError("UnauthorizedOperation", "denied"),
    )
    client, _ = make_client(fake)
    with pytest.raises(RuntimeError, match="failed to deregister AMI"):
        client.delete_ami("ami-1")


def test_default_vpc_id():
    fake = FakeEC2(describe_vpcs={"Vpcs": [{"VpcId": "vpc-12345"}]})
    client, _ = make_client(fake)
    assert client.default_vpc_id() == "vpc-12345"


def test_default_vpc_missing():
    fake = FakeEC2(describe_vpcs={"Vpcs": []})
    client, _ = make_client(fake)
    with pytest.raises(LookupError, match="no default VPC found"):
        client.default_vpc_id()


def test_default_subnet_missing():
    fake = FakeEC2(describe_vpcs={"Vpcs": [{"VpcId": "vpc-1"}]}, describe_subnets={"Subnets": []})
    client, _ = make_client(fake)
    with pytest.raises(LookupError, match="no subnets found in default VPC"):
        client.default_subnet_id()