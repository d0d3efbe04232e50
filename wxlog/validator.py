"""Checking candidate keys against an account's own files."""

from __future__ import annotations

import os
from typing import Callable

from wxlog.decrypt_common import DBFile, open_db_file
from wxlog.decryptor import Decryptor, UnsupportedPlatformError, new_decryptor

ImgKeyCheck = Callable[[bytes], bool]

_SIMPLE_DB_FILES = {
    ("windows", 3): "Msg\\Misc.db",
    ("windows", 4): "db_storage\\message\\message_0.db",
    ("darwin", 3): "Message/msg_0.db",
    ("darwin", 4): "db_storage/message/message_0.db",
}


def simple_db_file(platform: str, version: int) -> str:
    """Relative path of a small database used to test data keys; '' if unknown."""
    return _SIMPLE_DB_FILES.get((platform, version), "")


class Validator:
    """Tests candidate data keys and image keys for one account.

    The first page of a known database is read once, and every data key
    candidate is checked against its HMAC. Image keys are checked by the
    optional ``img_key_validator`` callable, which is only used for
    version 4 accounts.
    """

    def __init__(
        self,
        platform: str,
        version: int,
        data_dir: str | os.PathLike,
        img_key_validator: ImgKeyCheck | None = None,
    ) -> None:
        if (platform, version) not in _SIMPLE_DB_FILES:
            raise UnsupportedPlatformError(platform, version)
        self.platform = platform
        self.version = version
        self.db_path = os.path.join(os.fspath(data_dir), simple_db_file(platform, version))
        self.decryptor: Decryptor = new_decryptor(platform, version)
        self.db_file: DBFile = open_db_file(self.db_path, self.decryptor.page_size)
        self.img_key_validator = img_key_validator if version == 4 else None

    def validate(self, key: bytes) -> bool:
        """True if key decrypts the account's databases."""
        return self.decryptor.validate(self.db_file.first_page, bytes(key))

    def validate_img_key(self, key: bytes) -> bool:
        """True if key decrypts the account's image files."""
        if self.img_key_validator is None:
            return False
        return bool(self.img_key_validator(bytes(key)))