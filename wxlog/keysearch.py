"""Finding database and image keys in the heap of a macOS client process."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Protocol

from wxlog.glance import Glance, MemoryReadError
from wxlog.model import Process, ProcessStatus
from wxlog.sip import is_sip_disabled

log = logging.getLogger(__name__)

DATA_KEY_SIZE = 32
IMG_KEY_SIZE = 16

MemoryReader = Callable[[int], Iterable[bytes]]


class KeyValidator(Protocol):
    def validate(self, key: bytes) -> bool: ...

    def validate_img_key(self, key: bytes) -> bool: ...


@dataclass(frozen=True)
class KeyPattern:
    """A byte pattern found near a key, and the key's offsets from it."""

    pattern: bytes
    offsets: tuple[int, ...]


class KeyNotFoundError(LookupError):
    """No valid key was found in the process memory."""

    def __init__(self) -> None:
        super().__init__("no valid key found")


_ZERO16 = b"\x00" * 16

V3_KEY_PATTERNS = (KeyPattern(b"rtree_i32", (24,)),)
V4_KEY_PATTERNS = (
    KeyPattern(b" fts5(%\x00", (16, -80, 64)),
    KeyPattern(_ZERO16, (-32,)),
)
V4_IMG_KEY_PATTERNS = (KeyPattern(_ZERO16, (-32,)),)


def _read_glance(pid: int) -> Iterable[bytes]:
    return Glance(pid).iter_chunks()


def _last_nonzero_end(memory: bytes, end: int) -> int:
    """Index just past the last non-zero byte before end; -1 if none."""
    stripped = memory[:end].rstrip(b"\x00")
    return len(stripped) if stripped else -1


def _check_ready(proc: Process, validator: KeyValidator | None) -> None:
    if proc.status is ProcessStatus.OFFLINE:
        raise RuntimeError("wechat is offline")
    if not is_sip_disabled():
        raise PermissionError("System Integrity Protection is enabled; memory cannot be read")
    if validator is None:
        raise RuntimeError("validator is not set")


def _iter_memory(reader: MemoryReader, pid: int) -> Iterable[bytes]:
    try:
        yield from reader(pid)
    except MemoryReadError as exc:
        log.error("failed to read memory: %s", exc)


class DarwinV3Extractor:
    """Key extractor for version 3 clients on macOS."""

    def __init__(
        self,
        validator: KeyValidator | None = None,
        memory_reader: MemoryReader = _read_glance,
    ) -> None:
        self.validator = validator
        self.key_patterns = V3_KEY_PATTERNS
        self.memory_reader = memory_reader

    def search_key(self, memory: bytes) -> str | None:
        """Return the hex data key found in memory, or None."""
        for kp in self.key_patterns:
            index = len(memory)
            while index >= 0:
                index = memory.rfind(kp.pattern, 0, index)
                if index == -1:
                    break
                for offset in kp.offsets:
                    key_offset = index + offset
                    if key_offset < 0 or key_offset + DATA_KEY_SIZE > len(memory):
                        continue
                    key = bytes(memory[key_offset : key_offset + DATA_KEY_SIZE])
                    if self.validator.validate(key):
                        log.debug("key found: pattern=%s offset=%d", kp.pattern.hex(), offset)
                        return key.hex()
                index -= 1
        return None

    def extract(self, proc: Process) -> tuple[str, str]:
        """Scan the process heap; return (data key, '') in hex."""
        _check_ready(proc, self.validator)
        for chunk in _iter_memory(self.memory_reader, proc.pid):
            key = self.search_key(chunk)
            if key:
                return key, ""
        raise KeyNotFoundError()


class DarwinV4Extractor:
    """Key extractor for version 4 clients on macOS; finds data and image keys."""

    def __init__(
        self,
        validator: KeyValidator | None = None,
        memory_reader: MemoryReader = _read_glance,
    ) -> None:
        self.validator = validator
        self.data_key_patterns = V4_KEY_PATTERNS
        self.img_key_patterns = V4_IMG_KEY_PATTERNS
        self.memory_reader = memory_reader
        self._processed_data_keys: set[str] = set()
        self._processed_img_keys: set[str] = set()

    def _search(
        self,
        memory: bytes,
        patterns: Iterable[KeyPattern],
        key_size: int,
        seen: set[str],
        check: Callable[[bytes], bool],
        always_align: bool,
    ) -> str | None:
        for kp in patterns:
            align = always_align or kp.pattern == _ZERO16
            index = len(memory)
            while True:
                index = memory.rfind(kp.pattern, 0, index)
                if index == -1:
                    break
                if align:
                    index = _last_nonzero_end(memory, index)
                    if index == -1:
                        break
                for offset in kp.offsets:
                    key_offset = index + offset
                    if key_offset < 0 or key_offset + key_size > len(memory):
                        continue
                    key = bytes(memory[key_offset : key_offset + key_size])
                    if b"\x00\x00" in key:
                        continue
                    key_hex = key.hex()
                    if key_hex in seen:
                        continue
                    seen.add(key_hex)
                    if check(key):
                        log.debug("key found: pattern=%s offset=%d", kp.pattern.hex(), offset)
                        return key_hex
                index -= 1
                if index < 0:
                    break
        return None

    def search_key(self, memory: bytes) -> str | None:
        """Return the hex data key found in memory, or None."""
        return self._search(
            memory,
            self.data_key_patterns,
            DATA_KEY_SIZE,
            self._processed_data_keys,
            self.validator.validate,
            False,
        )

    def search_img_key(self, memory: bytes) -> str | None:
        """Return the hex image key found in memory, or None."""
        return self._search(
            memory,
            self.img_key_patterns,
            IMG_KEY_SIZE,
            self._processed_img_keys,
            self.validator.validate_img_key,
            True,
        )

    def extract(self, proc: Process) -> tuple[str, str]:
        """Scan the process heap; return (data key, image key) in hex, '' if missing."""
        _check_ready(proc, self.validator)
        data_key = img_key = ""
        for chunk in _iter_memory(self.memory_reader, proc.pid):
            if not data_key:
                data_key = self.search_key(chunk) or ""
            if not img_key:
                img_key = self.search_img_key(chunk) or ""
            if data_key and img_key:
                return data_key, img_key
        if data_key or img_key:
            return data_key, img_key
        raise KeyNotFoundError()