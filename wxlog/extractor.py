"""Choosing the key extractor for a client platform and version."""

from __future__ import annotations

import logging
from typing import Callable, Iterable, Iterator, Optional, Union

from wxlog.decryptor import UnsupportedPlatformError
from wxlog.keysearch import DarwinV3Extractor, DarwinV4Extractor, KeyNotFoundError, KeyValidator
from wxlog.model import Process, ProcessStatus

log = logging.getLogger(__name__)

KEY_SIZE = 32
IMG_KEY_SIZE = 16
MIN_POINTER = 0x10000
MAX_POINTER = 0x7FFFFFFFFFFF

_V3_PATTERN = bytes([0x20, 0, 0, 0, 0, 0, 0, 0])
_V4_PATTERN = bytes(8) + bytes([0x20, 0, 0, 0, 0, 0, 0, 0]) + bytes([0x2F, 0, 0, 0, 0, 0, 0, 0])

MemoryReader = Callable[[int, int], Optional[bytes]]
RegionSource = Callable[[Process], Iterable[bytes]]


class WindowsExtractor:
    """Key extractor for Windows clients.

    Keys live behind pointers stored next to a fixed byte pattern. Following
    those pointers needs a ``read_memory(address, size)`` callable, and a full
    extraction also needs ``regions(proc)`` yielding the memory to scan. Without
    them no process memory is reachable: searches find nothing and extraction
    reports no keys.
    """

    def __init__(
        self,
        version: int,
        validator: KeyValidator | None = None,
        read_memory: MemoryReader | None = None,
        regions: RegionSource | None = None,
        pointer_size: int = 8,
    ) -> None:
        self.version = version
        self.validator = validator
        self.read_memory = read_memory
        self.regions = regions
        self.pointer_size = pointer_size

    @property
    def _pattern(self) -> bytes:
        if self.version == 4:
            return _V4_PATTERN
        return _V3_PATTERN[: self.pointer_size]

    def _pointers(self, memory: bytes) -> Iterator[int]:
        """Yield plausible pointer values stored just before the pattern, last first."""
        pattern = self._pattern
        size = self.pointer_size
        index = len(memory)
        while True:
            index = memory.rfind(pattern, 0, index + len(pattern) - 1) if index > 0 else -1
            if index == -1 or index - size < 0:
                return
            value = int.from_bytes(memory[index - size : index], "little")
            if MIN_POINTER < value < MAX_POINTER:
                yield value
            index -= 1

    def _check(self, address: int) -> tuple[str, bool]:
        """Return (hex key, is image key) for the key at an address, or ("", False)."""
        if self.read_memory is None or self.validator is None:
            return "", False
        data = self.read_memory(address, KEY_SIZE)
        if data is None or len(data) < KEY_SIZE:
            return "", False
        data = data[:KEY_SIZE]
        if self.validator.validate(data):
            return data.hex(), False
        if self.version == 4 and self.validator.validate_img_key(data):
            return data[:IMG_KEY_SIZE].hex(), True
        return "", False

    def search_key(self, memory: bytes) -> str | None:
        """Return the database key reached from pointers in ``memory``, if any."""
        for address in self._pointers(memory):
            key, is_img = self._check(address)
            if key and not is_img:
                return key
        return None

    def extract(self, proc: Process) -> tuple[str, str]:
        """Return (data key, image key); both are empty when memory is unreachable."""
        if self.read_memory is None or self.regions is None:
            return "", ""
        if proc.status is ProcessStatus.OFFLINE:
            log.debug("wechat is offline")
            raise KeyNotFoundError()
        if self.validator is None:
            log.debug("validator not set")
            raise KeyNotFoundError()

        data_key = img_key = ""
        seen: set[int] = set()
        for memory in self.regions(proc):
            for address in self._pointers(memory):
                if address in seen:
                    continue
                seen.add(address)
                key, is_img = self._check(address)
                if not key:
                    continue
                if is_img and not img_key:
                    img_key = key
                    log.debug("image key found: %s", key)
                elif not is_img and not data_key:
                    data_key = key
                    log.debug("data key found: %s", key)
                if data_key and (img_key or self.version == 3):
                    return data_key, img_key
        if data_key or img_key:
            return data_key, img_key
        raise KeyNotFoundError()


Extractor = Union[WindowsExtractor, DarwinV3Extractor, DarwinV4Extractor]


def new_extractor(platform: str, version: int) -> Extractor:
    """Return a key extractor for a platform and major version."""
    if platform == "windows" and version in (3, 4):
        return WindowsExtractor(version)
    if platform == "darwin" and version == 3:
        return DarwinV3Extractor()
    if platform == "darwin" and version == 4:
        return DarwinV4Extractor()
    raise UnsupportedPlatformError(platform, version)