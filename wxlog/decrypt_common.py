"""Page-level primitives for encrypted SQLite databases."""

from __future__ import annotations

import binascii
import hmac
import os
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

KEY_SIZE = 32
SALT_SIZE = 16
AES_BLOCK_SIZE = 16
SQLITE_HEADER = b"SQLite format 3\x00"
IV_SIZE = 16

DeriveKeys = Callable[[bytes, bytes], "tuple[bytes, bytes]"]


class DecryptError(Exception):
    """A database could not be decrypted."""


class AlreadyDecryptedError(DecryptError):
    """The database is plain SQLite already."""

    def __init__(self, path: str = "") -> None:
        super().__init__(f"database is already decrypted: {path}" if path else "database is already decrypted")


class IncorrectKeyError(DecryptError):
    """The key does not match the database."""

    def __init__(self) -> None:
        super().__init__("incorrect decryption key")


class HashVerificationError(DecryptError):
    """A page failed its HMAC check."""

    def __init__(self, page_num: int | None = None) -> None:
        msg = "page hash verification failed"
        if page_num is not None:
            msg += f" (page {page_num})"
        super().__init__(msg)


@dataclass(frozen=True)
class DBFile:
    """Basic facts about an encrypted database file."""

    path: str
    salt: bytes
    total_pages: int
    first_page: bytes


def decode_hex_key(hex_key: str) -> bytes:
    """Decode a hex key string, raising DecryptError on bad input."""
    try:
        return binascii.unhexlify(hex_key)
    except (binascii.Error, ValueError) as exc:
        raise DecryptError(f"decode key failed: {exc}") from exc


def open_db_file(db_path: str | os.PathLike, page_size: int) -> DBFile:
    """Read the first page of an encrypted database and count its pages."""
    path = Path(db_path)
    try:
        with path.open("rb") as fp:
            size = os.fstat(fp.fileno()).st_size
            first = fp.read(page_size)
    except OSError as exc:
        raise DecryptError(f"cannot read {path}: {exc}") from exc

    if len(first) != page_size:
        raise DecryptError(f"incomplete read of {path}: read {len(first)} bytes, expected {page_size}")

    if first[: len(SQLITE_HEADER) - 1] == SQLITE_HEADER[:-1]:
        raise AlreadyDecryptedError(str(path))

    return DBFile(
        path=str(path),
        salt=first[:SALT_SIZE],
        total_pages=-(-size // page_size),
        first_page=first,
    )


def xor_bytes(data: bytes, value: int) -> bytes:
    """XOR every byte of data with value."""
    return bytes(b ^ value for b in data)


def _page_mac(mac_key: bytes, hash_name: str, signed: bytes, page_no: int) -> bytes:
    mac = hmac.new(mac_key, signed, hash_name)
    mac.update(struct.pack("<I", page_no))
    return mac.digest()


def validate_key(
    page1: bytes,
    key: bytes,
    salt: bytes,
    hash_name: str,
    hmac_size: int,
    reserve: int,
    page_size: int,
    derive_keys: DeriveKeys,
) -> bool:
    """Check a candidate key against the HMAC stored in the first page."""
    if len(key) != KEY_SIZE:
        return False

    _, mac_key = derive_keys(key, salt)
    data_end = page_size - reserve + IV_SIZE
    calculated = _page_mac(mac_key, hash_name, bytes(page1[SALT_SIZE:data_end]), 1)
    stored = bytes(page1[data_end : data_end + hmac_size])
    return hmac.compare_digest(calculated, stored)


def decrypt_page(
    page_buf: bytes,
    enc_key: bytes,
    mac_key: bytes,
    page_num: int,
    hash_name: str,
    hmac_size: int,
    reserve: int,
    page_size: int,
) -> bytes:
    """Verify and decrypt one page; page numbers start at zero."""
    offset = SALT_SIZE if page_num == 0 else 0
    data_end = page_size - reserve
    mac_start = data_end + IV_SIZE

    calculated = _page_mac(mac_key, hash_name, bytes(page_buf[offset:mac_start]), page_num + 1)
    if not hmac.compare_digest(calculated, bytes(page_buf[mac_start : mac_start + hmac_size])):
        raise HashVerificationError(page_num)

    iv = bytes(page_buf[data_end:mac_start])
    try:
        cipher = Cipher(algorithms.AES(bytes(enc_key)), modes.CBC(iv))
    except ValueError as exc:
        raise DecryptError(f"create cipher failed: {exc}") from exc

    aes = cipher.decryptor()
    plain = aes.update(bytes(page_buf[offset:data_end])) + aes.finalize()
    return plain + bytes(page_buf[data_end:page_size])