import subprocess
from unittest import mock

import pytest

from wxlog.glance import (
    CHUNK_OVERLAP_BYTES,
    MIN_CHUNK_SIZE,
    Glance,
    MemoryReadError,
    split_region,
)


def _patterned(size):
    block = bytes(range(251))
    return (block * (size // len(block) + 1))[:size]


def test_small_region_is_one_chunk():
    memory = b"abcdef" * 10
    assert list(split_region(memory)) == [memory]


def test_region_at_min_size_is_one_chunk():
    memory = bytes(MIN_CHUNK_SIZE)
    chunks = list(split_region(memory))
    assert len(chunks) == 1
    assert len(chunks[0]) == MIN_CHUNK_SIZE


def test_slightly_larger_region_still_one_chunk():
    memory = _patterned(MIN_CHUNK_SIZE + 10)
    assert list(split_region(memory)) == [memory]


def test_large_region_split_end_first_with_overlap():
    memory = _patterned(2 * MIN_CHUNK_SIZE + 100)
    chunks = list(split_region(memory))
    assert len(chunks) == 2
    assert memory.endswith(chunks[0])
    assert memory.startswith(chunks[-1])
    assert sum(len(c) for c in chunks) == len(memory) + CHUNK_OVERLAP_BYTES
    # The overlap area appears at the end of the earlier chunk and the start of the later one.
    assert chunks[1][-CHUNK_OVERLAP_BYTES:] == chunks[0][:CHUNK_OVERLAP_BYTES]


def test_chunks_cover_all_memory():
    memory = _patterned(5 * MIN_CHUNK_SIZE + 7)
    chunks = list(split_region(memory))
    assert len(chunks) == 5
    rebuilt = chunks[-1]
    for chunk in reversed(chunks[:-1]):
        rebuilt += chunk[CHUNK_OVERLAP_BYTES:]
    assert rebuilt == memory


def test_read_without_regions_raises():
    done = subprocess.CompletedProcess(["vmmap"], 0, stdout="nothing to see\n", stderr="")
    with mock.patch("subprocess.run", return_value=done):
        glance = Glance(4242)
        with pytest.raises(MemoryReadError, match="no memory regions"):
            glance.read()
    assert glance.mem_regions == []


def test_iter_chunks_without_regions_raises():
    done = subprocess.CompletedProcess(["vmmap"], 0, stdout="nothing to see\n", stderr="")
    with mock.patch("subprocess.run", return_value=done):
        with pytest.raises(MemoryReadError, match="no memory regions"):
            next(Glance(4242).iter_chunks())


def test_vmmap_failure_becomes_memory_read_error():
    error = subprocess.CalledProcessError(1, ["vmmap"])
    with mock.patch("subprocess.run", side_effect=error):
        with pytest.raises(MemoryReadError, match="run command failed"):
            Glance(7).read()


def test_glance_keeps_pid():
    assert Glance(99).pid == 99