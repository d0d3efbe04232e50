import subprocess
from unittest import mock

import pytest

from wxlog.glance import MemoryReadError
from wxlog.keysearch import (
    DarwinV3Extractor,
    DarwinV4Extractor,
    KeyNotFoundError,
    KeyPattern,
)
from wxlog.model import Process, ProcessStatus

DATA_KEY = bytes(range(1, 33))
IMG_KEY = bytes(range(40, 56))
SIP_OFF = subprocess.CompletedProcess(
    args=["csrutil", "status"], returncode=0, stdout="System Integrity Protection status: disabled.\n"
)


class _FakeValidator:
    def __init__(self, data_keys=(), img_keys=()):
        self.data_keys = set(data_keys)
        self.img_keys = set(img_keys)
        self.calls = 0

    def validate(self, key):
        self.calls += 1
        return key in self.data_keys

    def validate_img_key(self, key):
        self.calls += 1
        return key in self.img_keys


def _v3_memory(key):
    return b"\x11" * 100 + b"rtree_i32" + b"\x22" * 15 + key + b"\x33" * 40


def _online():
    return Process(pid=4242, status=ProcessStatus.ONLINE)


def test_key_pattern_holds_offsets():
    kp = KeyPattern(b"abc", (1, -2))
    assert kp.offsets == (1, -2)


def test_v3_search_finds_key():
    ext = DarwinV3Extractor(_FakeValidator([DATA_KEY]))
    assert ext.search_key(_v3_memory(DATA_KEY)) == DATA_KEY.hex()


def test_v3_search_without_pattern():
    ext = DarwinV3Extractor(_FakeValidator([DATA_KEY]))
    assert ext.search_key(b"\x22" * 15 + DATA_KEY) is None


def test_v3_search_prefers_last_match():
    other = bytes(range(100, 132))
    ext = DarwinV3Extractor(_FakeValidator([DATA_KEY, other]))
    memory = _v3_memory(other) + _v3_memory(DATA_KEY)
    assert ext.search_key(memory) == DATA_KEY.hex()


def test_v3_search_rejects_invalid_key():
    ext = DarwinV3Extractor(_FakeValidator([]))
    assert ext.search_key(_v3_memory(DATA_KEY)) is None


def test_v4_fts5_pattern():
    ext = DarwinV4Extractor(_FakeValidator([DATA_KEY]))
    memory = b"\x05" * 100 + b" fts5(%\x00" + b"\x07" * 8 + DATA_KEY + b"\x09" * 50
    assert ext.search_key(memory) == DATA_KEY.hex()


def test_v4_zero_pattern_aligns():
    ext = DarwinV4Extractor(_FakeValidator([DATA_KEY]))
    memory = b"\x01" * 10 + DATA_KEY + b"\x00" * 16 + b"\x01" * 5
    assert ext.search_key(memory) == DATA_KEY.hex()


def test_v4_skips_keys_with_double_zero():
    key = DATA_KEY[:10] + b"\x00\x00" + DATA_KEY[12:]
    ext = DarwinV4Extractor(_FakeValidator([key]))
    memory = b"\x05" * 100 + b" fts5(%\x00" + b"\x07" * 8 + key + b"\x09" * 50
    assert ext.search_key(memory) is None


def test_v4_img_key():
    ext = DarwinV4Extractor(_FakeValidator(img_keys=[IMG_KEY]))
    memory = b"\x01" * 10 + IMG_KEY + b"\x03" * 16 + b"\x00" * 16 + b"\x01" * 4
    assert ext.search_img_key(memory) == IMG_KEY.hex()


def test_v4_candidates_checked_once():
    validator = _FakeValidator()
    ext = DarwinV4Extractor(validator)
    memory = b"\x05" * 100 + b" fts5(%\x00" + b"\x07" * 8 + DATA_KEY + b"\x09" * 100
    assert ext.search_key(memory) is None
    first = validator.calls
    assert first > 0
    assert ext.search_key(memory) is None
    assert validator.calls == first


def test_extract_offline_raises():
    ext = DarwinV4Extractor(_FakeValidator())
    with pytest.raises(RuntimeError):
        ext.extract(Process(pid=1, status=ProcessStatus.OFFLINE))


@mock.patch("subprocess.run", side_effect=OSError("no csrutil"))
def test_extract_with_sip_enabled(_run):
    ext = DarwinV3Extractor(_FakeValidator())
    with pytest.raises(PermissionError):
        ext.extract(_online())


@mock.patch("subprocess.run", return_value=SIP_OFF)
def test_extract_without_validator(_run):
    ext = DarwinV3Extractor(None, memory_reader=lambda pid: [])
    with pytest.raises(RuntimeError):
        ext.extract(_online())


@mock.patch("subprocess.run", return_value=SIP_OFF)
def test_v3_extract(_run):
    seen = []

    def reader(pid):
        seen.append(pid)
        return [b"\x00" * 64, _v3_memory(DATA_KEY)]

    ext = DarwinV3Extractor(_FakeValidator([DATA_KEY]), memory_reader=reader)
    assert ext.extract(_online()) == (DATA_KEY.hex(), "")
    assert seen == [4242]


@mock.patch("subprocess.run", return_value=SIP_OFF)
def test_v4_extract_both_keys(_run):
    data_chunk = b"\x05" * 100 + b" fts5(%\x00" + b"\x07" * 8 + DATA_KEY + b"\x09" * 50
    img_chunk = b"\x01" * 10 + IMG_KEY + b"\x03" * 16 + b"\x00" * 16 + b"\x01" * 4
    ext = DarwinV4Extractor(
        _FakeValidator([DATA_KEY], [IMG_KEY]), memory_reader=lambda pid: [data_chunk, img_chunk]
    )
    assert ext.extract(_online()) == (DATA_KEY.hex(), IMG_KEY.hex())


@mock.patch("subprocess.run", return_value=SIP_OFF)
def test_v4_extract_only_data_key(_run):
    data_chunk = b"\x05" * 100 + b" fts5(%\x00" + b"\x07" * 8 + DATA_KEY + b"\x09" * 50
    ext = DarwinV4Extractor(_FakeValidator([DATA_KEY]), memory_reader=lambda pid: [data_chunk])
    assert ext.extract(_online()) == (DATA_KEY.hex(), "")


@mock.patch("subprocess.run", return_value=SIP_OFF)
def test_extract_nothing_found(_run):
    ext = DarwinV4Extractor(_FakeValidator(), memory_reader=lambda pid: [b"\x42" * 256])
    with pytest.raises(KeyNotFoundError):
        ext.extract(_online())


@mock.patch("subprocess.run", return_value=SIP_OFF)
def test_extract_read_failure_means_no_key(_run):
    def reader(pid):
        raise MemoryReadError("no memory regions found")
        yield b""

    ext = DarwinV3Extractor(_FakeValidator([DATA_KEY]), memory_reader=reader)
    with pytest.raises(KeyNotFoundError):
        ext.extract(_online())