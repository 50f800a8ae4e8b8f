"""Running shell commands on instances through Systems Manager."""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

COMMAND_TIMEOUT_SECONDS = 30
READINESS_TIMEOUT = 15.0
COMMAND_POLL_INTERVAL = 1.0
AGENT_POLL_INTERVAL = 5.0


class CommandStatus(str, Enum):
    """Status of a command invocation."""

    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    DELAYED = "Delayed"
    SUCCESS = "Success"
    CANCELLED = "Cancelled"
    TIMED_OUT = "TimedOut"
    FAILED = "Failed"
    CANCELLING = "Cancelling"


_FINISHED = frozenset(
    {CommandStatus.SUCCESS, CommandStatus.FAILED, CommandStatus.CANCELLED, CommandStatus.TIMED_OUT}
)


@dataclass
class CommandResult:
    """Outcome of one command run on one instance."""

    command_id: str = ""
    status: Optional[CommandStatus] = None
    output: str = ""
    error_output: str = ""
    response_code: int = 0


def parse_http_code(output: str) -> str:
    """Return the first three characters of the output, or "" if it is shorter."""
    return output[:3] if len(output) >= 3 else ""


def is_service_ready(output: str) -> bool:
    """Return whether curl output shows any HTTP response at all."""
    code = parse_http_code(output)
    return bool(code) and code != "000"


def _status(value: Any) -> Optional[CommandStatus]:
    try:
        return CommandStatus(value)
    except ValueError:
        return None


class SSMClient:
    """Command execution and agent checks over a service client with SSM API methods."""

    def __init__(
        self,
        client: Any,
        region: str = "",
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.region = region
        self._sleep = sleep
        self._clock = clock

    def run_command(self, instance_id: str, command: str) -> str:
        """Send a shell command to the instance and return its command ID."""
        try:
            result = self.client.send_command(
                InstanceIds=[instance_id],
                DocumentName="AWS-RunShellScript",
                Parameters={"commands": [command]},
                TimeoutSeconds=COMMAND_TIMEOUT_SECONDS,
            )
        except Exception as err:
            raise RuntimeError(f"failed to send SSM command: {err}") from err
        return result["Command"]["CommandId"]

    def wait_for_command(self, command_id: str, instance_id: str, timeout: float) -> CommandResult:
        """Poll until the command finishes and return its result."""
        deadline = self._clock() + timeout
        while True:
            if self._clock() > deadline:
                raise TimeoutError("timeout waiting for SSM command to complete")
            try:
                invocation = self.client.get_command_invocation(
                    CommandId=command_id, InstanceId=instance_id
                )
            except Exception:
                self._sleep(COMMAND_POLL_INTERVAL)
                continue

            status = _status(invocation.get("Status"))
            if status in _FINISHED:
                return CommandResult(
                    command_id=command_id,
                    status=status,
                    output=invocation.get("StandardOutputContent") or "",
                    error_output=invocation.get("StandardErrorContent") or "",
                    response_code=invocation.get("ResponseCode", 0),
                )
            self._sleep(COMMAND_POLL_INTERVAL)

    def check_service_readiness(self, instance_id: str, port: int) -> bool:
        """Return whether anything answers HTTP on the port, asked from the instance itself."""
        command = (
            "curl -s -o /dev/null -w '%{http_code}' --connect-timeout 2 --max-time 5 "
            f"http://localhost:{port}/ 2>/dev/null || echo '000'"
        )
        try:
            command_id = self.run_command(instance_id, command)
        except Exception as err:
            raise RuntimeError(f"failed to run readiness check command: {err}") from err
        try:
            result = self.wait_for_command(command_id, instance_id, READINESS_TIMEOUT)
        except Exception as err:
            raise RuntimeError(f"failed to wait for readiness check: {err}") from err
        return is_service_ready(result.output)

    def wait_for_ssm_agent(self, instance_id: str, timeout: float) -> None:
        """Poll until the instance's agent reports online."""
        deadline = self._clock() + timeout
        while True:
            if self._clock() > deadline:
                raise TimeoutError("timeout waiting for SSM agent to become available")
            try:
                result = self.client.describe_instance_information(
                    Filters=[{"Key": "InstanceIds", "Values": [instance_id]}]
                )
            except Exception:
                result = {}
            infos = result.get("InstanceInformationList") or []
            if infos and infos[0].get("PingStatus") == "Online":
                return
            self._sleep(AGENT_POLL_INTERVAL)