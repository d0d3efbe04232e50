import pytest

from wxlog.model import Process, ProcessStatus


def test_default_process_is_not_online():
    proc = Process()
    assert proc.status is ProcessStatus.INIT
    assert proc.is_online is False


def test_online_status_is_reported():
    proc = Process(pid=42, status=ProcessStatus.ONLINE)
    assert proc.is_online is True
    assert proc.pid == 42


def test_status_string_is_coerced():
    proc = Process(status="offline")
    assert proc.status is ProcessStatus.OFFLINE
    assert proc.is_online is False


def test_status_compares_equal_to_its_text():
    assert ProcessStatus("online") is ProcessStatus.ONLINE
    assert ProcessStatus.ONLINE == "online"


def test_unknown_status_is_rejected():
    with pytest.raises(ValueError):
        Process(status="sleeping")