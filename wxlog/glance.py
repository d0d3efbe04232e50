"""Reading another process's heap memory on macOS through lldb."""

from __future__ import annotations

import contextlib
import logging
import os
import subprocess
import tempfile
import threading
import time
from typing import BinaryIO, Iterator

from wxlog.vmmap import MemRegion, filter_regions, get_vmmap

log = logging.getLogger(__name__)

MAX_WORKERS = 8
MIN_CHUNK_SIZE = 4 * 1024 * 1024
CHUNK_OVERLAP_BYTES = 1024  # larger than every key offset
CHUNK_MULTIPLIER = 2

READ_TIMEOUT = 30.0
ATTACH_WAIT = 2.0
EXIT_TIMEOUT = 10.0


class MemoryReadError(Exception):
    """Process memory could not be read."""


class _FifoReader(threading.Thread):
    """Reads everything written to a named pipe."""

    def __init__(self, path: str) -> None:
        super().__init__(daemon=True)
        self.path = path
        self.data: bytes | None = None
        self.error: OSError | None = None

    def run(self) -> None:
        try:
            with open(self.path, "rb") as fp:
                self.data = fp.read()
        except OSError as exc:
            self.error = exc


def _pipe_path(suffix: str = "") -> str:
    return os.path.join(tempfile.gettempdir(), f"wxlog_pipe_{time.time_ns()}{suffix}")


@contextlib.contextmanager
def _fifo(path: str) -> Iterator[str]:
    try:
        os.mkfifo(path, 0o600)
    except OSError as exc:
        raise MemoryReadError(f"create pipe file failed: {exc}") from exc
    try:
        yield path
    finally:
        with contextlib.suppress(OSError):
            os.remove(path)


def _drain(stream: BinaryIO) -> None:
    """Consume lldb's output so it never blocks, logging it at debug level."""
    for line in stream:
        log.debug("lldb: %s", line.decode(errors="replace").rstrip())


def _read_command(path: str, region: MemRegion) -> str:
    return f"memory read --binary --force --outfile {path} --count {region.size} 0x{region.start:x}"


def split_region(memory: bytes) -> Iterator[bytes]:
    """Split a memory region into overlapping chunks, last chunk first."""
    total = len(memory)
    if total <= MIN_CHUNK_SIZE:
        yield memory
        return

    count = MAX_WORKERS * CHUNK_MULTIPLIER
    chunk_size = total // count
    if chunk_size < MIN_CHUNK_SIZE:
        count = max(total // MIN_CHUNK_SIZE, 1)
        chunk_size = total // count

    for i in reversed(range(count)):
        start = i * chunk_size
        end = total if i == count - 1 else (i + 1) * chunk_size
        if i > 0:
            start = max(start - CHUNK_OVERLAP_BYTES, 0)
        yield memory[start:end]


class Glance:
    """Reads the heap regions of one process."""

    def __init__(self, pid: int) -> None:
        self.pid = pid
        self.mem_regions: list[MemRegion] = []
        self._pipe_path = _pipe_path()
        self._data: bytes | None = None

    def _load_regions(self) -> list[MemRegion]:
        try:
            regions = get_vmmap(self.pid)
        except (OSError, subprocess.SubprocessError) as exc:
            raise MemoryReadError(f"run command failed: {exc}") from exc
        self.mem_regions = filter_regions(regions)
        if not self.mem_regions:
            raise MemoryReadError("no memory regions found")
        return self.mem_regions

    def read(self) -> bytes:
        """Read the first heap region in one lldb run; the result is cached."""
        if self._data is not None:
            return self._data

        region = self._load_regions()[0]
        with _fifo(self._pipe_path) as path:
            reader = _FifoReader(path)
            reader.start()
            cmd = ["lldb", "-p", str(self.pid), "-o", _read_command(path, region), "-o", "quit"]
            try:
                proc = subprocess.Popen(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
            except OSError as exc:
                raise MemoryReadError(f"run command failed: {exc}") from exc

            reader.join(READ_TIMEOUT)
            if reader.is_alive():
                proc.kill()
                proc.wait()
                raise MemoryReadError("read memory timeout")
            if reader.error is not None:
                proc.kill()
                proc.wait()
                raise MemoryReadError(f"read pipe file failed: {reader.error}")

            self._data = reader.data or b""
            if proc.wait() != 0:
                log.error("lldb process exited with code %d", proc.returncode)
        return self._data

    def iter_chunks(self) -> Iterator[bytes]:
        """Yield chunks of every heap region, read through one lldb session."""
        regions = self._load_regions()
        try:
            proc = subprocess.Popen(
                ["lldb"],
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
            )
        except OSError as exc:
            raise MemoryReadError(f"run command failed: {exc}") from exc

        drain = threading.Thread(target=_drain, args=(proc.stdout,), daemon=True)
        drain.start()
        finished = False
        try:
            try:
                self._send(proc, f"process attach --pid {self.pid}\n")
            except OSError as exc:
                raise MemoryReadError(f"run command failed: {exc}") from exc
            time.sleep(ATTACH_WAIT)

            for region in regions:
                data = self._read_region(proc, region)
                if data is not None:
                    yield from split_region(data)
            finished = True
        finally:
            self._shutdown(proc, drain, finished)
        log.info("read memory completed, region length: %d", len(regions))

    @staticmethod
    def _send(proc: subprocess.Popen, command: str) -> None:
        assert proc.stdin is not None
        proc.stdin.write(command.encode())
        proc.stdin.flush()

    def _read_region(self, proc: subprocess.Popen, region: MemRegion) -> bytes | None:
        path = _pipe_path(f"_{region.start:x}")
        try:
            os.mkfifo(path, 0o600)
        except OSError as exc:
            log.warning("failed to create pipe for region 0x%x: %s", region.start, exc)
            return None

        try:
            reader = _FifoReader(path)
            reader.start()
            log.debug("reading region 0x%x, size: %d bytes", region.start, region.size)
            try:
                self._send(proc, _read_command(path, region) + "\n")
            except OSError as exc:
                log.warning("failed to send memory read command for region 0x%x: %s", region.start, exc)
                return None
            reader.join()
        finally:
            with contextlib.suppress(OSError):
                os.remove(path)

        if reader.error is not None:
            log.warning("failed to read pipe for region 0x%x: %s", region.start, reader.error)
            return None
        return reader.data or b""

    def _shutdown(self, proc: subprocess.Popen, drain: threading.Thread, finished: bool) -> None:
        if not finished:
            with contextlib.suppress(OSError):
                proc.stdin.close()
            proc.kill()
            proc.wait()
            return

        with contextlib.suppress(OSError):
            self._send(proc, "process detach\n")
            time.sleep(0.2)
            self._send(proc, "quit\n")
        with contextlib.suppress(OSError):
            proc.stdin.close()

        try:
            if proc.wait(EXIT_TIMEOUT) != 0:
                log.error("lldb process exited with code %d", proc.returncode)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()
            log.warning("timeout waiting for lldb to complete, killed the process")

        drain.join(EXIT_TIMEOUT)
        if drain.is_alive():
            log.warning("timeout waiting for output reader")