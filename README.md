# wxlog

`wxlog` is a library for working with the local data of a desktop chat
client on Windows and macOS. It has no command-line program; everything is
used from Python.

- `wxlog.detector` finds running client processes (through `psutil`) and works
  out from their open files which account and data directory each belongs to.
- `wxlog.account` keeps track of those accounts (`Manager`, `Account`) and
  ties key recovery and decryption together.
- `wxlog.keysearch` and `wxlog.extractor` search process memory for the
  database key and the image key; `wxlog.validator` checks a candidate key
  against the account's own database.
- `wxlog.decryptor` turns the page-encrypted SQLite databases of client
  versions 3 and 4 into plain SQLite files; `wxlog.decrypt_common` holds the
  page-level primitives.
- `wxlog.repository` answers contact, chat room, session, message and media
  queries over a data source you supply, with exact and partial name matching.
- `wxlog.vmmap`, `wxlog.sip` and `wxlog.glance` are the macOS memory-reading
  helpers.

## Decrypting a database with a known key

```python
from wxlog.decryptor import new_decryptor

decryptor = new_decryptor("darwin", 4)
with open("/tmp/plain.db", "wb") as output:
    decryptor.decrypt("/path/to/message_0.db", hex_key, output)
```

`new_decryptor` accepts the platforms `"windows"` and `"darwin"` with versions
3 and 4 and raises `UnsupportedPlatformError` otherwise. `decrypt` raises
`IncorrectKeyError` for a wrong key, `AlreadyDecryptedError` for a file that is
already plain SQLite, `HashVerificationError` when a page fails its HMAC check,
and `DecryptError` for an undecodable hex key or an unreadable file. Pages that
are all zeros are copied unchanged. `Decryptor.validate(page1, key)` checks a
raw 32-byte key against a first page without decrypting anything.

## Accounts and keys

```python
from wxlog.account import Manager

manager = Manager()
manager.load()

for account in manager.get_accounts():
    print(account.name, account.platform, account.version, account.status)

manager.decrypt_database("my_account", "/path/to/message_0.db", "/tmp/message_0.db")
```

`Manager()` picks a detector for the running platform (`new_detector`;
other platforms get a `NullDetector` that finds nothing). `get_account` and
`get_process` raise `AccountNotFoundError` for an account that is not logged
in. `Account.get_key(manager)` returns `(data_key, image_key)` in hex, reusing
keys already found; it re-detects processes first and raises
`AccountNotOnlineError` if the account's client is not logged in. A `Manager`
also takes `detector`, `extractor_factory` and `validator_factory` arguments,
so each step can be replaced.

The detectors take a `version_reader(exe_path) -> (major, full_version)`
callable and an `open_files(process)` callable. On macOS open files are listed
with `lsof` (`parse_lsof_output`), and an account is found from the path of
its session or message database (`account_from_db_path`).

## Key search

On macOS, `DarwinV3Extractor` and `DarwinV4Extractor` read the client's heap
with `vmmap` and `lldb` (`Glance.iter_chunks`, which splits large regions into
overlapping chunks with `split_region`) and look for keys near known byte
patterns. This needs System Integrity Protection off: `extract` raises
`PermissionError` when `wxlog.sip.is_sip_disabled()` is false, `RuntimeError`
when the process is offline or no validator is set, and `KeyNotFoundError`
when nothing valid turns up. Both extractors accept a `memory_reader(pid)`
callable in place of `Glance`.

`WindowsExtractor` follows key pointers stored beside a fixed byte pattern.
It reads memory only through `read_memory(address, size)` and `regions(proc)`
callables that you pass in.

## Querying data

`Repository(ds)` wraps an object with `get_contacts`, `get_chat_rooms`,
`get_sessions`, `get_messages`, `get_media`, `set_callback` and `close`
methods, and builds indexes of contacts and chat rooms on creation.
`get_contact` and `get_chat_room` find one entry by user name, alias, remark or
nickname, falling back to substring matches, and raise `ContactNotFoundError`
or `ChatRoomNotFoundError`. `get_contacts` and `get_chat_rooms` return every
match, paged by `limit` and `offset`. `get_messages` turns talker and sender
names (comma-separated) into user names, passes the query with its time range
and keyword to the data source, and fills in talker and sender display names.
`get_sessions` and `get_media` pass straight through. `contact_callback` and
`chatroom_callback` rebuild the indexes when given an event whose `is_create`
is true.

## What the package does not do

- It does not read version information from client executables. Without a
  `version_reader`, Windows processes are skipped and macOS processes are
  taken to be version 3.
- It does not read process memory on Windows by itself: a `WindowsExtractor`
  without `read_memory` and `regions` returns empty keys.
- It does not check image keys by itself: `Validator` reports every image key
  invalid unless given an `img_key_validator` callable.
- It has no data source over decrypted databases; `Repository` needs one
  supplied.
- It has no command-line program, server or user interface.

## Tests

Install the `test` extra and run `pytest` from the project root.