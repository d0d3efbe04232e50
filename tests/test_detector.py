from unittest.mock import patch

import psutil
import pytest

from wxlog.detector import (
    DarwinDetector,
    NullDetector,
    WindowsDetector,
    account_from_db_path,
    new_detector,
    parse_lsof_output,
)
from wxlog.model import ProcessStatus


class FakeProc:
    def __init__(self, pid, name, exe="/apps/client", cmdline=(), fail_name=False):
        self.pid = pid
        self._name = name
        self._exe = exe
        self._cmdline = list(cmdline)
        self._fail_name = fail_name

    def name(self):
        if self._fail_name:
            raise psutil.NoSuchProcess(self.pid)
        return self._name

    def exe(self):
        return self._exe

    def cmdline(self):
        return list(self._cmdline)


def test_parse_lsof_output_keeps_name_lines():
    output = "p123\nfcwd\nn/a/b\nn\nftxt\nn/c/d.db\n"
    assert parse_lsof_output(output) == ["/a/b", "/c/d.db"]


def test_account_from_db_path_v4():
    path = "/Users/u/xwechat_files/wxid_a/db_storage/session/session.db"
    assert account_from_db_path(path, 4, "/") == ("/Users/u/xwechat_files/wxid_a", "wxid_a")


def test_account_from_db_path_v3():
    path = "/Users/u/com.app/2.0b4.0.9/acct1/Message/msg_0.db"
    assert account_from_db_path(path, 3, "/") == ("/Users/u/com.app/2.0b4.0.9/acct1", "acct1")


def test_account_from_db_path_too_short():
    assert account_from_db_path("a/b/c", 3, "/") is None


@pytest.mark.parametrize(
    "platform, cls, scans",
    [
        ("windows", WindowsDetector, True),
        ("darwin", DarwinDetector, True),
        ("linux", NullDetector, False),
    ],
)
def test_new_detector_by_platform(platform, cls, scans):
    detector = new_detector(platform)
    assert type(detector) is cls
    procs = [FakeProc(1, "Safari"), FakeProc(2, "notepad.exe")]
    with patch("psutil.process_iter", return_value=procs) as process_iter:
        found = detector.find_processes()
    assert found == []
    assert process_iter.called is scans


def test_null_detector_finds_nothing():
    assert NullDetector().find_processes() == []


def test_darwin_detector_finds_online_account():
    procs = [
        FakeProc(10, "WeChat"),
        FakeProc(11, "Safari"),
        FakeProc(12, "Weixin", fail_name=True),
    ]
    files = ["/tmp/other", "/Users/u/xwechat_files/wxid_a/db_storage/session/session.db"]
    detector = DarwinDetector(version_reader=lambda exe: (4, "4.0.5"), open_files=lambda p: files)
    with patch("psutil.process_iter", return_value=procs):
        found = detector.find_processes()

    assert len(found) == 1
    proc = found[0]
    assert proc.pid == 10
    assert proc.platform == "darwin"
    assert proc.version == 4
    assert proc.full_version == "4.0.5"
    assert proc.status is ProcessStatus.ONLINE
    assert proc.account_name == "wxid_a"
    assert proc.data_dir == "/Users/u/xwechat_files/wxid_a"


def test_darwin_detector_version_fallback_and_offline():
    def no_version(exe):
        raise LookupError(exe)

    detector = DarwinDetector(version_reader=no_version, open_files=lambda p: [])
    with patch("psutil.process_iter", return_value=[FakeProc(7, "WeChat")]):
        found = detector.find_processes()

    assert len(found) == 1
    assert found[0].version == 3
    assert found[0].full_version == "3.0.0"
    assert found[0].status is ProcessStatus.OFFLINE
    assert found[0].account_name == ""


def test_windows_detector_skips_helper_processes():
    procs = [
        FakeProc(1, "Weixin.exe", cmdline=["Weixin.exe", "--type=renderer"]),
        FakeProc(2, "Weixin.exe", cmdline=["Weixin.exe"]),
        FakeProc(3, "notepad.exe"),
    ]
    files = ["\\\\?\\C:\\Users\\u\\Documents\\xwechat_files\\wxid_b\\db_storage\\session\\session.db"]
    detector = WindowsDetector(version_reader=lambda exe: (4, "4.0.3"), open_files=lambda p: files)
    with patch("psutil.process_iter", return_value=procs):
        found = detector.find_processes()

    assert [p.pid for p in found] == [2]
    assert found[0].platform == "windows"
    assert found[0].status is ProcessStatus.ONLINE
    assert found[0].account_name == "wxid_b"
    assert found[0].data_dir == "C:\\Users\\u\\Documents\\xwechat_files\\wxid_b"


def test_windows_detector_skips_process_without_version():
    def no_version(exe):
        raise LookupError(exe)

    detector = WindowsDetector(version_reader=no_version, open_files=lambda p: [])
    with patch("psutil.process_iter", return_value=[FakeProc(5, "WeChat.exe")]):
        assert detector.find_processes() == []


def test_windows_detector_open_files_failure_keeps_offline_process():
    def broken(proc):
        raise OSError("denied")

    detector = WindowsDetector(version_reader=lambda exe: (3, "3.9.12"), open_files=broken)
    with patch("psutil.process_iter", return_value=[FakeProc(5, "WeChat.exe")]):
        found = detector.find_processes()

    assert len(found) == 1
    assert found[0].status is ProcessStatus.OFFLINE
    assert found[0].version == 3


@pytest.mark.parametrize("version", [3, 4])
def test_account_path_roundtrip(version):
    tail = ["db_storage", "session", "session.db"] if version == 4 else ["Message", "msg_0.db"]
    base = ["", "root", "dir", "acct"]
    path = "/".join(base + tail)
    data_dir, name = account_from_db_path(path, version, "/")
    assert data_dir == "/".join(base)
    assert name == base[-1]