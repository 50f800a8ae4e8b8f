# awside

Building blocks for running cloud development instances: launching and
tracking compute instances, picking base images, managing security groups,
subnets and NAT gateways, running commands on instances remotely, and
setting up the instance role that lets the instance be reached without SSH.

The package has no runtime dependencies. Every manager takes the cloud API
client you already use as a constructor argument, so the same code runs
against a real account, a local emulator, or an in-memory fake in tests.
Waits and retries accept `sleep` (and where relevant `clock`) callables, so
polling loops can be driven without real delays.

## Modules

- `awside.ec2`: `EC2Client` launches, starts, stops and terminates
  instances, creates, lists and deletes custom images, finds an availability
  zone that offers an instance type, and looks up the default VPC and subnet.
  Launch settings travel in a `LaunchParams`; images are reported as
  `AMIInfo`. API failures are raised as `AwsApiError`, which carries the
  service's error code.
- `awside.ami`: `AMISelector.get_ami(client, ami_base)` resolves a base name
  such as `ubuntu24-arm64`, `ubuntu22-x86_64` or `amazonlinux2-arm64` to the
  newest matching image in the region. Unknown names fall back to Ubuntu
  24.04 on ARM64.
- `awside.security`: `SecurityGroupManager` finds, creates, validates and
  lists security groups. `default_security_group_strategy(vpc_id)` gives the
  usual strategy: reuse the group named `aws-jupyter` if it exists, create
  it otherwise. A user-specified group must already exist.
- `awside.networking`: `NetworkManager` picks a public or private subnet in
  the default VPC, creates a NAT gateway when one is missing and routes a
  private subnet's traffic through it. Results are `SubnetInfo` and
  `NATGatewayInfo`.
- `awside.ssm`: `SSMClient` sends shell commands, waits for them to finish
  (`CommandResult`, `CommandStatus`), waits for the agent to come online and
  checks whether a service answers on a local port. `parse_http_code` and
  `is_service_ready` interpret the probe output: any three-character code
  other than `000` means the service is up.
- `awside.iam`: `IAMClient.get_or_create_session_manager_role(app_prefix)`
  makes sure the role `<prefix>-session-manager-role` and the instance
  profile `<prefix>-session-manager-profile` exist, with the managed
  session policy and an inline policy that lets the instance stop itself.
  The result is an `InstanceProfileInfo`.
- `awside.uptime`: `format_duration(start, now)` renders uptime as
  `<hours>h<minutes>m`, truncating seconds; `kill_process(pid)` asks a
  process to terminate and forces it if that fails.

## Example

```python
from awside.ec2 import EC2Client, LaunchParams
from awside.ami import AMISelector

ec2 = EC2Client(api_client, "us-west-2", time.sleep)
image_id = AMISelector("us-west-2").get_ami(ec2, "ubuntu24-arm64")

instance = ec2.launch_instance(
    LaunchParams(
        ami=image_id,
        instance_type="m7g.medium",
        security_group_id="sg-12345",
        ebs_volume_size=20,
        environment="data-science",
    )
)
```

Launches that name an instance profile are retried with growing pauses
while the new role is still propagating; any other error is raised at once.