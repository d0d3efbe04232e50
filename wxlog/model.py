"""Descriptions of running chat client processes."""

from __future__ import annotations

import enum
from dataclasses import dataclass

PLATFORM_WINDOWS = "windows"
PLATFORM_MACOS = "darwin"


class ProcessStatus(str, enum.Enum):
    """Whether a client process has an account logged in."""

    INIT = ""
    OFFLINE = "offline"
    ONLINE = "online"


@dataclass
class Process:
    """A chat client process found on this machine."""

    pid: int = 0
    exe_path: str = ""
    platform: str = ""
    version: int = 0
    full_version: str = ""
    status: ProcessStatus = ProcessStatus.INIT
    data_dir: str = ""
    account_name: str = ""

    def __post_init__(self) -> None:
        self.status = ProcessStatus(self.status)

    @property
    def is_online(self) -> bool:
        """True when an account is logged in to this process."""
        return self.status is ProcessStatus.ONLINE