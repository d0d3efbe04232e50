"""Whole-database decryption for each supported client platform and version."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import BinaryIO

from wxlog.decrypt_common import (
    AES_BLOCK_SIZE,
    IV_SIZE,
    KEY_SIZE,
    SALT_SIZE,
    SQLITE_HEADER,
    DecryptError,
    IncorrectKeyError,
    decode_hex_key,
    decrypt_page,
    open_db_file,
    validate_key,
    xor_bytes,
)

HMAC_SHA1_SIZE = 20
HMAC_SHA512_SIZE = 64
WINDOWS_PAGE_SIZE = 4096
DARWIN_V3_PAGE_SIZE = 1024
V4_PAGE_SIZE = 4096
V3_ITER_COUNT = 64000
V4_ITER_COUNT = 256000
_MAC_SALT_MASK = 0x3A


class UnsupportedPlatformError(ValueError):
    """No implementation exists for the given platform and version."""

    def __init__(self, platform: str, version: int) -> None:
        super().__init__(f"unsupported platform: {platform} v{version}")
        self.platform = platform
        self.version = version


@dataclass(frozen=True)
class Decryptor:
    """Parameters of one encrypted database format and the operations on it.

    With ``iter_count`` of None the supplied key is used as the encryption
    key directly; otherwise it is stretched with PBKDF2.
    """

    version_name: str
    page_size: int
    hash_name: str
    hmac_size: int
    iter_count: int | None = None

    @property
    def reserve(self) -> int:
        """Bytes at the end of each page holding the IV and HMAC."""
        size = IV_SIZE + self.hmac_size
        return -(-size // AES_BLOCK_SIZE) * AES_BLOCK_SIZE

    def derive_keys(self, key: bytes, salt: bytes) -> tuple[bytes, bytes]:
        """Return the encryption key and MAC key for a raw key and salt."""
        if self.iter_count is None:
            enc_key = bytes(key)
        else:
            enc_key = hashlib.pbkdf2_hmac(self.hash_name, key, salt, self.iter_count, KEY_SIZE)
        mac_salt = xor_bytes(salt, _MAC_SALT_MASK)
        mac_key = hashlib.pbkdf2_hmac(self.hash_name, enc_key, mac_salt, 2, KEY_SIZE)
        return enc_key, mac_key

    def validate(self, page1: bytes, key: bytes) -> bool:
        """Check whether key opens a database whose first page is page1."""
        if len(page1) < self.page_size or len(key) != KEY_SIZE:
            return False
        return validate_key(
            page1,
            key,
            page1[:SALT_SIZE],
            self.hash_name,
            self.hmac_size,
            self.reserve,
            self.page_size,
            self.derive_keys,
        )

    def decrypt(self, db_file: str, hex_key: str, output: BinaryIO) -> None:
        """Decrypt db_file with a hex key, writing plain SQLite to output."""
        key = decode_hex_key(hex_key)
        info = open_db_file(db_file, self.page_size)
        if not self.validate(info.first_page, key):
            raise IncorrectKeyError()

        enc_key, mac_key = self.derive_keys(key, info.salt)

        try:
            fp = open(db_file, "rb")
        except OSError as exc:
            raise DecryptError(f"cannot open {db_file}: {exc}") from exc

        with fp:
            output.write(SQLITE_HEADER)
            for page_num in range(info.total_pages):
                page = fp.read(self.page_size)
                if len(page) < self.page_size:
                    if page:
                        break
                    raise DecryptError(f"unexpected end of file in {db_file}")
                if not any(page):
                    output.write(page)
                    continue
                output.write(
                    decrypt_page(
                        page,
                        enc_key,
                        mac_key,
                        page_num,
                        self.hash_name,
                        self.hmac_size,
                        self.reserve,
                        self.page_size,
                    )
                )


_DECRYPTORS = {
    ("windows", 3): Decryptor("Windows v3", WINDOWS_PAGE_SIZE, "sha1", HMAC_SHA1_SIZE, V3_ITER_COUNT),
    ("windows", 4): Decryptor("Windows v4", WINDOWS_PAGE_SIZE, "sha512", HMAC_SHA512_SIZE, V4_ITER_COUNT),
    ("darwin", 3): Decryptor("macOS v3", DARWIN_V3_PAGE_SIZE, "sha1", HMAC_SHA1_SIZE, None),
    ("darwin", 4): Decryptor("macOS v4", V4_PAGE_SIZE, "sha512", HMAC_SHA512_SIZE, V4_ITER_COUNT),
}


def new_decryptor(platform: str, version: int) -> Decryptor:
    """Return the decryptor for a platform and major version."""
    try:
        return _DECRYPTORS[(platform, version)]
    except KeyError:
        raise UnsupportedPlatformError(platform, version) from None