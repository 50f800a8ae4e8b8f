"""Uptime formatting and process termination helpers."""

from __future__ import annotations

import os
import signal
from datetime import datetime
from typing import Optional


def format_duration(start: datetime, now: Optional[datetime] = None) -> str:
    """Format the time since start as hours and minutes, e.g. "5h45m"."""
    if now is None:
        now = datetime.now(start.tzinfo)
    seconds = (now - start).total_seconds()
    hours = int(seconds / 3600)
    total_minutes = int(seconds / 60)
    minutes = total_minutes - int(total_minutes / 60) * 60
    return f"{hours}h{minutes}m"


def kill_process(pid: int) -> None:
    """Ask a process to terminate, killing it outright if that fails."""
    try:
        os.kill(pid, signal.SIGTERM)
    except OSError:
        try:
            os.kill(pid, getattr(signal, "SIGKILL", signal.SIGTERM))
        except OSError as err:
            raise RuntimeError(f"failed to kill process: {err}") from err