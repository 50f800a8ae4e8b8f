"""Selection of the newest public base image for a region."""

from __future__ import annotations

from awside.ec2 import EC2Client

CANONICAL_OWNER = "099720109477"
AMAZON_OWNER = "137112412989"

_UBUNTU_CODENAMES = {
    "24.04": "noble",
    "22.04": "jammy",
    "20.04": "focal",
    "18.04": "bionic",
}

_UBUNTU_BASES = {
    "ubuntu24-arm64": ("24.04", "arm64"),
    "ubuntu-24.04-arm64": ("24.04", "arm64"),
    "ubuntu24-x86_64": ("24.04", "x86_64"),
    "ubuntu-24.04-x86_64": ("24.04", "x86_64"),
    "ubuntu22-arm64": ("22.04", "arm64"),
    "ubuntu-22.04-arm64": ("22.04", "arm64"),
    "ubuntu22-x86_64": ("22.04", "x86_64"),
    "ubuntu-22.04-x86_64": ("22.04", "x86_64"),
    "ubuntu20-arm64": ("20.04", "arm64"),
    "ubuntu-20.04-arm64": ("20.04", "arm64"),
    "ubuntu20-x86_64": ("20.04", "x86_64"),
    "ubuntu-20.04-x86_64": ("20.04", "x86_64"),
}

_AMAZON_LINUX_BASES = {
    "amazonlinux2-arm64": ("2", "arm64"),
    "amazonlinux2-x86_64": ("2", "x86_64"),
}

# Ubuntu 24.04 on ARM64 (Graviton) is the default base.
_DEFAULT_UBUNTU = ("24.04", "arm64")


def _image_filters(name_pattern: str, arch: str, owner: str) -> list[dict]:
    architecture = "arm64" if arch == "arm64" else "x86_64"
    return [
        {"Name": "name", "Values": [name_pattern]},
        {"Name": "architecture", "Values": [architecture]},
        {"Name": "state", "Values": ["available"]},
        {"Name": "owner-id", "Values": [owner]},
    ]


class AMISelector:
    """Picks a base image ID for a named base configuration."""

    def __init__(self, region: str):
        self.region = region

    def get_ami(self, client: EC2Client, ami_base: str) -> str:
        """Return the newest image ID matching the base name."""
        if ami_base in _AMAZON_LINUX_BASES:
            version, arch = _AMAZON_LINUX_BASES[ami_base]
            return self._find_amazon_linux(client, version, arch)
        version, arch = _UBUNTU_BASES.get(ami_base, _DEFAULT_UBUNTU)
        return self._find_ubuntu(client, version, arch)

    def _find_ubuntu(self, client: EC2Client, version: str, arch: str) -> str:
        codename = _UBUNTU_CODENAMES.get(version)
        if codename is None:
            raise ValueError(f"unsupported Ubuntu version: {version}")
        pattern = f"ubuntu/images/hvm-ssd/ubuntu-{codename}-{version}-{arch}-server-*"
        try:
            result = client.client.describe_images(
                Filters=_image_filters(pattern, arch, CANONICAL_OWNER),
                Owners=[CANONICAL_OWNER],
            )
        except Exception as err:
            raise RuntimeError(f"failed to query Ubuntu AMIs: {err}") from err
        return self._newest(result, f"Ubuntu {version} {arch}")

    def _find_amazon_linux(self, client: EC2Client, version: str, arch: str) -> str:
        pattern = (
            "amzn2-ami-hvm-*-arm64-gp2" if arch == "arm64" else "amzn2-ami-hvm-*-x86_64-gp2"
        )
        try:
            result = client.client.describe_images(
                Filters=_image_filters(pattern, arch, AMAZON_OWNER),
                Owners=[AMAZON_OWNER],
            )
        except Exception as err:
            raise RuntimeError(f"failed to query Amazon Linux AMIs: {err}") from err
        return self._newest(result, f"Amazon Linux {version} {arch}")

    def _newest(self, result: dict, label: str) -> str:
        images = result.get("Images") or []
        if not images:
            raise LookupError(f"no {label} AMIs found in region {self.region}")
        newest = max(images, key=lambda image: image.get("CreationDate") or "")
        ami_id = newest.get("ImageId", "")
        print(f"Selected {label} AMI: {ami_id} ({newest.get('Name', '')})")
        return ami_id