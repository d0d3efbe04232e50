"""Finding running chat client processes and the account each one has open."""

from __future__ import annotations

import logging
import subprocess
import sys
from typing import Callable, Iterable, Protocol

import psutil

from wxlog.model import PLATFORM_MACOS, PLATFORM_WINDOWS, Process, ProcessStatus

log = logging.getLogger(__name__)

DARWIN_PROCESS_NAMES = ("WeChat", "Weixin")
DARWIN_V3_DB_FILE = "Message/msg_0.db"
DARWIN_V4_DB_FILE = "db_storage/session/session.db"

WINDOWS_V3_PROCESS_NAME = "WeChat"
WINDOWS_V4_PROCESS_NAME = "Weixin"
WINDOWS_V3_DB_FILE = "Msg\\Misc.db"
WINDOWS_V4_DB_FILE = "db_storage\\session\\session.db"

_WINDOWS_LONG_PATH_PREFIX = "\\\\?\\"
_DARWIN_FALLBACK_VERSION = (3, "3.0.0")

VersionReader = Callable[[str], "tuple[int, str]"]
OpenFiles = Callable[[psutil.Process], "list[str]"]


class Detector(Protocol):
    def find_processes(self) -> list[Process]: ...


def _no_version_info(exe_path: str) -> tuple[int, str]:
    raise LookupError(f"no version information available for {exe_path}")


def parse_lsof_output(output: str) -> list[str]:
    """Return the file names from 'lsof -F n' output."""
    return [line[1:] for line in output.split("\n") if line.startswith("n") and line[1:]]


def account_from_db_path(path: str, version: int, separator: str) -> tuple[str, str] | None:
    """Return (data dir, account name) for a database path, or None if too short."""
    parts = path.split(separator)
    if len(parts) < 4:
        return None
    if version == 4:
        return separator.join(parts[:-3]), parts[-4]
    return separator.join(parts[:-2]), parts[-3]


def _locate_account(
    info: Process,
    files: Iterable[str],
    db_file: str,
    separator: str,
    windows: bool,
) -> None:
    for path in files:
        if windows:
            if not path.endswith(db_file):
                continue
            path = path.removeprefix(_WINDOWS_LONG_PATH_PREFIX)
        elif db_file not in path:
            continue

        found = account_from_db_path(path, info.version, separator)
        if found is None:
            log.debug("invalid file path: %s", path)
            continue
        info.status = ProcessStatus.ONLINE
        info.data_dir, info.account_name = found
        return


def _lsof_open_files(proc: psutil.Process) -> list[str]:
    result = subprocess.run(
        ["lsof", "-p", str(proc.pid), "-F", "n"],
        capture_output=True,
        text=True,
        errors="replace",
        check=True,
    )
    return parse_lsof_output(result.stdout)


def _psutil_open_files(proc: psutil.Process) -> list[str]:
    if sys.platform != "win32":
        return []
    return [f.path for f in proc.open_files()]


class NullDetector:
    """Detector for platforms without a supported client."""

    def find_processes(self) -> list[Process]:
        return []


class DarwinDetector:
    """Finds client processes on macOS, using lsof to see their open files."""

    def __init__(
        self,
        version_reader: VersionReader | None = None,
        open_files: OpenFiles | None = None,
    ) -> None:
        self.version_reader = version_reader or _no_version_info
        self.open_files = open_files or _lsof_open_files

    def find_processes(self) -> list[Process]:
        result = []
        for proc in psutil.process_iter():
            try:
                name = proc.name()
            except psutil.Error:
                continue
            if name not in DARWIN_PROCESS_NAMES:
                continue
            try:
                result.append(self._process_info(proc))
            except (psutil.Error, OSError) as exc:
                log.error("failed to get info of process %d: %s", proc.pid, exc)
        return result

    def _process_info(self, proc: psutil.Process) -> Process:
        info = Process(
            pid=proc.pid,
            exe_path=proc.exe(),
            platform=PLATFORM_MACOS,
            status=ProcessStatus.OFFLINE,
        )
        try:
            info.version, info.full_version = self.version_reader(info.exe_path)
        except (LookupError, OSError, ValueError) as exc:
            log.error("failed to get version info: %s", exc)
            info.version, info.full_version = _DARWIN_FALLBACK_VERSION

        try:
            files = self.open_files(proc)
        except (OSError, subprocess.SubprocessError, psutil.Error) as exc:
            log.error("failed to list open files: %s", exc)
            return info

        db_file = DARWIN_V4_DB_FILE if info.version == 4 else DARWIN_V3_DB_FILE
        _locate_account(info, files, db_file, "/", windows=False)
        return info


class WindowsDetector:
    """Finds client processes on Windows."""

    def __init__(
        self,
        version_reader: VersionReader | None = None,
        open_files: OpenFiles | None = None,
    ) -> None:
        self.version_reader = version_reader or _no_version_info
        self.open_files = open_files or _psutil_open_files

    def find_processes(self) -> list[Process]:
        result = []
        for proc in psutil.process_iter():
            try:
                name = proc.name().removesuffix(".exe")
            except psutil.Error:
                continue
            if name not in (WINDOWS_V3_PROCESS_NAME, WINDOWS_V4_PROCESS_NAME):
                continue

            # Version 4 runs helper processes under the same name.
            if name == WINDOWS_V4_PROCESS_NAME:
                try:
                    cmdline = " ".join(proc.cmdline())
                except psutil.Error as exc:
                    log.error("failed to get process command line: %s", exc)
                    continue
                if "--" in cmdline:
                    continue

            try:
                info = self._process_info(proc)
            except (psutil.Error, OSError, LookupError, ValueError) as exc:
                log.error("failed to get info of process %d: %s", proc.pid, exc)
                continue
            result.append(info)
        return result

    def _process_info(self, proc: psutil.Process) -> Process:
        info = Process(
            pid=proc.pid,
            exe_path=proc.exe(),
            platform=PLATFORM_WINDOWS,
            status=ProcessStatus.OFFLINE,
        )
        info.version, info.full_version = self.version_reader(info.exe_path)

        try:
            files = self.open_files(proc)
        except (OSError, psutil.Error) as exc:
            log.error("failed to list open files of process %d: %s", proc.pid, exc)
            return info

        db_file = WINDOWS_V4_DB_FILE if info.version == 4 else WINDOWS_V3_DB_FILE
        _locate_account(info, files, db_file, "\\", windows=True)
        return info


def new_detector(platform: str) -> NullDetector | DarwinDetector | WindowsDetector:
    """Return the process detector for a platform name."""
    if platform == PLATFORM_WINDOWS:
        return WindowsDetector()
    if platform == PLATFORM_MACOS:
        return DarwinDetector()
    return NullDetector()