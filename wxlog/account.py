"""Accounts of running clients and the manager that keeps track of them."""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Any, Callable

from wxlog.decryptor import new_decryptor
from wxlog.detector import Detector, new_detector
from wxlog.extractor import new_extractor
from wxlog.model import PLATFORM_MACOS, PLATFORM_WINDOWS, Process, ProcessStatus
from wxlog.validator import Validator

ExtractorFactory = Callable[[str, int], Any]
ValidatorFactory = Callable[[str, int, str], Any]


class AccountNotFoundError(LookupError):
    """No running client has this account logged in."""

    def __init__(self, name: str) -> None:
        super().__init__(f"wechat account not found: {name}")
        self.name = name


class AccountNotOnlineError(RuntimeError):
    """The account's client is running but not logged in."""

    def __init__(self, name: str) -> None:
        super().__init__(f"wechat account is not online: {name}")
        self.name = name


def _current_platform() -> str:
    if sys.platform == "win32":
        return PLATFORM_WINDOWS
    if sys.platform == "darwin":
        return PLATFORM_MACOS
    return sys.platform


@dataclass
class Account:
    """One client account and the keys found for it."""

    name: str = ""
    platform: str = ""
    version: int = 0
    full_version: str = ""
    data_dir: str = ""
    key: str = ""
    img_key: str = ""
    pid: int = 0
    exe_path: str = ""
    status: ProcessStatus = ProcessStatus.INIT

    @classmethod
    def from_process(cls, proc: Process) -> Account:
        """Build an account from a detected process."""
        return cls(
            name=proc.account_name,
            platform=proc.platform,
            version=proc.version,
            full_version=proc.full_version,
            data_dir=proc.data_dir,
            pid=proc.pid,
            exe_path=proc.exe_path,
            status=proc.status,
        )

    def refresh_status(self, manager: Manager) -> None:
        """Re-detect processes and update this account's process details."""
        manager.load()
        try:
            proc = manager.get_process(self.name)
        except AccountNotFoundError:
            self.status = ProcessStatus.OFFLINE
            return

        if proc.account_name == self.name:
            self.pid = proc.pid
            self.exe_path = proc.exe_path
            self.platform = proc.platform
            self.version = proc.version
            self.full_version = proc.full_version
            self.status = proc.status
            self.data_dir = proc.data_dir

    def get_key(self, manager: Manager) -> tuple[str, str]:
        """Return (data key, image key) in hex, extracting them if not known yet."""
        if self.key and (self.img_key or self.version == 3):
            return self.key, self.img_key

        self.refresh_status(manager)
        if self.status is not ProcessStatus.ONLINE:
            raise AccountNotOnlineError(self.name)

        extractor = manager.extractor_factory(self.platform, self.version)
        proc = manager.get_process(self.name)
        extractor.validator = manager.validator_factory(proc.platform, proc.version, proc.data_dir)

        data_key, img_key = extractor.extract(proc)
        if data_key:
            self.key = data_key
        if img_key:
            self.img_key = img_key
        return data_key, img_key

    def decrypt_database(self, manager: Manager, db_path: str, output_path: str) -> None:
        """Decrypt one of this account's databases into output_path."""
        hex_key, _ = self.get_key(manager)
        decryptor = new_decryptor(self.platform, self.version)
        with open(output_path, "wb") as output:
            decryptor.decrypt(db_path, hex_key, output)


class Manager:
    """Keeps the list of detected client processes and their accounts."""

    def __init__(
        self,
        detector: Detector | None = None,
        extractor_factory: ExtractorFactory = new_extractor,
        validator_factory: ValidatorFactory = Validator,
    ) -> None:
        self.detector = detector if detector is not None else new_detector(_current_platform())
        self.extractor_factory = extractor_factory
        self.validator_factory = validator_factory
        self._accounts: list[Account] = []
        self._process_map: dict[str, Process] = {}

    def load(self) -> None:
        """Detect running client processes."""
        processes = self.detector.find_processes()
        self._accounts = [Account.from_process(p) for p in processes]
        self._process_map = {p.account_name: p for p in processes if p.account_name}

    def get_account(self, name: str) -> Account:
        """Return a fresh account object for a logged-in account name."""
        return Account.from_process(self.get_process(name))

    def get_process(self, name: str) -> Process:
        """Return the process that has the named account logged in."""
        try:
            return self._process_map[name]
        except KeyError:
            raise AccountNotFoundError(name) from None

    def get_accounts(self) -> list[Account]:
        """Return every detected account, including those not logged in."""
        return self._accounts

    def decrypt_database(self, account_name: str, db_path: str, output_path: str) -> None:
        """Decrypt a database with the key of the named account."""
        self.get_account(account_name).decrypt_database(self, db_path, output_path)