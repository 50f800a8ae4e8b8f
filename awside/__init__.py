"""Tools for launching and managing cloud development instances."""

__version__ = "0.1.0"
__all__ = ["ami", "ec2", "iam", "networking", "security", "ssm", "uptime"]