"""Cached lookups of contacts, chat rooms and messages over a data source."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Protocol, Sequence, TypeVar

log = logging.getLogger(__name__)

CHATROOM_SUFFIX = "@chatroom"

T = TypeVar("T")


class DataSource(Protocol):
    def get_messages(
        self,
        start: datetime,
        end: datetime,
        talker: str,
        sender: str,
        keyword: str,
        limit: int,
        offset: int,
    ) -> list[Any]: ...

    def get_contacts(self, key: str, limit: int, offset: int) -> list[Any]: ...

    def get_chat_rooms(self, key: str, limit: int, offset: int) -> list[Any]: ...

    def get_sessions(self, key: str, limit: int, offset: int) -> list[Any]: ...

    def get_media(self, media_type: str, key: str) -> Any: ...

    def set_callback(self, group: str, callback: Callable[[Any], None]) -> None: ...

    def close(self) -> None: ...


class ContactNotFoundError(LookupError):
    """No contact matches the key."""

    def __init__(self, key: str) -> None:
        super().__init__(f"contact not found: {key}")
        self.key = key


class ChatRoomNotFoundError(LookupError):
    """No chat room matches the key."""

    def __init__(self, key: str) -> None:
        super().__init__(f"chat room not found: {key}")
        self.key = key


@dataclass
class ChatRoomRecord:
    """A chat room known only from the contact list."""

    name: str
    remark: str = ""
    nick_name: str = ""
    owner: str = ""
    users: list[Any] = field(default_factory=list)
    user_to_display_name: dict[str, str] = field(default_factory=dict)

    def display_name(self) -> str:
        """The remark, else the nick name, else the room name."""
        return self.remark or self.nick_name or self.name


def _split_list(value: str, sep: str = ",") -> list[str]:
    return [part.strip() for part in value.split(sep) if part.strip()]


def _page(items: Sequence[T], limit: int, offset: int) -> list[T]:
    if limit > 0:
        return list(items[offset : offset + limit])
    return list(items)


def _is_create(event: Any) -> bool:
    return bool(getattr(event, "is_create", False))


class _Index:
    """Exact and substring lookup of records by one text attribute."""

    def __init__(self) -> None:
        self.by_value: dict[str, list[Any]] = defaultdict(list)
        self.values: list[str] = []

    def add(self, value: str, record: Any) -> None:
        if value:
            self.by_value[value].append(record)
            self.values.append(value)

    def finish(self) -> None:
        self.by_value = dict(self.by_value)
        self.values.sort()

    def exact(self, key: str) -> list[Any]:
        return self.by_value.get(key, [])

    def containing(self, key: str) -> Iterable[list[Any]]:
        for value in self.values:
            if key in value:
                yield self.by_value[value]


def _find_first(cache: dict[str, Any], indexes: Sequence[_Index], key: str) -> Any | None:
    if key in cache:
        return cache[key]
    for index in indexes:
        found = index.exact(key)
        if found:
            return found[0]
    for index in indexes:
        for group in index.containing(key):
            return group[0]
    return None


def _find_all(cache: dict[str, Any], indexes: Sequence[_Index], key: str, name_of: Callable[[Any], str]) -> list[Any]:
    result: list[Any] = []
    seen: set[str] = set()

    def add(records: Iterable[Any]) -> None:
        for record in records:
            name = name_of(record)
            if name not in seen:
                seen.add(name)
                result.append(record)

    if key in cache:
        add([cache[key]])
    for index in indexes:
        add(index.exact(key))
    for index in indexes:
        for group in index.containing(key):
            add(group)
    return result


class Repository:
    """Answers queries from a data source, resolving names through cached indexes."""

    def __init__(self, ds: DataSource) -> None:
        self.ds = ds

        self._contact_cache: dict[str, Any] = {}
        self._contact_alias = _Index()
        self._contact_remark = _Index()
        self._contact_nick_name = _Index()
        self._chat_room_in_contact: dict[str, Any] = {}
        self._chat_room_user_to_info: dict[str, Any] = {}
        self._contact_list: list[str] = []

        self._chat_room_cache: dict[str, Any] = {}
        self._chat_room_remark = _Index()
        self._chat_room_nick_name = _Index()
        self._chat_room_list: list[str] = []

        self._init_contact_cache()
        self._init_chat_room_cache()

        ds.set_callback("contact", self.contact_callback)
        ds.set_callback("chatroom", self.chatroom_callback)

    # contacts

    def _init_contact_cache(self) -> None:
        try:
            contacts = self.ds.get_contacts("", 0, 0) or []
        except Exception as exc:  # the data source may be missing a database
            log.error("failed to load contacts: %s", exc)
            contacts = []

        cache: dict[str, Any] = {}
        alias, remark, nick_name = _Index(), _Index(), _Index()
        room_users: dict[str, Any] = {}
        rooms: dict[str, Any] = {}
        names: list[str] = []

        for contact in contacts:
            cache[contact.user_name] = contact
            names.append(contact.user_name)
            alias.add(contact.alias, contact)
            remark.add(contact.remark, contact)
            nick_name.add(contact.nick_name, contact)
            if not contact.is_friend:
                room_users[contact.user_name] = contact
            if contact.user_name.endswith(CHATROOM_SUFFIX):
                rooms[contact.user_name] = contact

        for index in (alias, remark, nick_name):
            index.finish()
        names.sort()

        self._contact_cache = cache
        self._contact_alias = alias
        self._contact_remark = remark
        self._contact_nick_name = nick_name
        self._chat_room_user_to_info = room_users
        self._chat_room_in_contact = rooms
        self._contact_list = names

    @property
    def _contact_indexes(self) -> tuple[_Index, _Index, _Index]:
        return self._contact_alias, self._contact_remark, self._contact_nick_name

    def get_contact(self, key: str) -> Any:
        """Return the best-matching contact by name, alias, remark or nick name."""
        contact = _find_first(self._contact_cache, self._contact_indexes, key)
        if contact is None:
            raise ContactNotFoundError(key)
        return contact

    def get_contacts(self, key: str = "", limit: int = 0, offset: int = 0) -> list[Any]:
        """Return contacts matching key, or all contacts sorted by user name."""
        if key:
            found = _find_all(self._contact_cache, self._contact_indexes, key, lambda c: c.user_name)
            return _page(found, limit, offset)
        names = _page(self._contact_list, limit, offset)
        return [self._contact_cache[name] for name in names]

    def _full_contact(self, user_name: str) -> Any | None:
        contact = self._contact_cache.get(user_name)
        if contact is not None:
            return contact
        return self._chat_room_user_to_info.get(user_name)

    # chat rooms

    def _init_chat_room_cache(self) -> None:
        try:
            chat_rooms = self.ds.get_chat_rooms("", 0, 0) or []
        except Exception as exc:  # the data source may be missing a database
            log.error("failed to load chat rooms: %s", exc)
            chat_rooms = []

        cache: dict[str, Any] = {}
        remark, nick_name = _Index(), _Index()
        names: list[str] = []

        for room in chat_rooms:
            contact = self._contact_cache.get(room.name)
            if contact is not None:
                room.remark = contact.remark
                room.nick_name = contact.nick_name
            cache[room.name] = room
            names.append(room.name)
            remark.add(room.remark, room)
            nick_name.add(room.nick_name, room)

        for contact in self._chat_room_in_contact.values():
            if contact.user_name in cache:
                continue
            room = ChatRoomRecord(
                name=contact.user_name,
                remark=contact.remark,
                nick_name=contact.nick_name,
            )
            cache[room.name] = room
            names.append(room.name)
            remark.add(room.remark, room)
            nick_name.add(room.nick_name, room)

        remark.finish()
        nick_name.finish()
        names.sort()

        self._chat_room_cache = cache
        self._chat_room_remark = remark
        self._chat_room_nick_name = nick_name
        self._chat_room_list = names

    @property
    def _chat_room_indexes(self) -> tuple[_Index, _Index]:
        return self._chat_room_remark, self._chat_room_nick_name

    def get_chat_room(self, key: str) -> Any:
        """Return the best-matching chat room by name, remark or nick name."""
        room = _find_first(self._chat_room_cache, self._chat_room_indexes, key)
        if room is None:
            raise ChatRoomNotFoundError(key)
        return room

    def get_chat_rooms(self, key: str = "", limit: int = 0, offset: int = 0) -> list[Any]:
        """Return chat rooms matching key, or all chat rooms sorted by name."""
        if key:
            found = _find_all(self._chat_room_cache, self._chat_room_indexes, key, lambda r: r.name)
            return _page(found, limit, offset)
        names = _page(self._chat_room_list, limit, offset)
        return [self._chat_room_cache[name] for name in names]

    # messages

    def get_messages(
        self,
        start: datetime,
        end: datetime,
        talker: str,
        sender: str = "",
        keyword: str = "",
        limit: int = 0,
        offset: int = 0,
    ) -> list[Any]:
        """Query messages, resolving talker and sender names to user names."""
        talker, sender = self._parse_talker_and_sender(talker, sender)
        messages = self.ds.get_messages(start, end, talker, sender, keyword, limit, offset)
        self.enrich_messages(messages)
        return messages

    def enrich_messages(self, messages: Iterable[Any]) -> None:
        """Fill in talker and sender display names from the caches."""
        for msg in messages:
            self._enrich_message(msg)

    def _enrich_message(self, msg: Any) -> None:
        if msg.is_chat_room:
            room = self._chat_room_cache.get(msg.talker)
            if room is not None:
                msg.talker_name = room.display_name()
                display_name = room.user_to_display_name.get(msg.sender)
                if display_name is not None:
                    msg.sender_name = display_name

        if not msg.sender_name and not msg.is_self:
            contact = self._full_contact(msg.sender)
            if contact is not None:
                msg.sender_name = contact.display_name()

    def _lookup(self, getter: Callable[[str], Any], key: str) -> Any | None:
        try:
            return getter(key)
        except LookupError:
            return None

    def _parse_talker_and_sender(self, talker: str, sender: str) -> tuple[str, str]:
        display_name_to_user: dict[str, str] = {}
        users: dict[str, None] = {}

        talkers = _split_list(talker)
        if talkers:
            resolved = []
            for item in talkers:
                contact = self._lookup(self.get_contact, item)
                if contact is not None:
                    resolved.append(contact.user_name)
                    continue
                # The whole talker string is looked up here, not the single item.
                room = self._lookup(self.get_chat_room, talker)
                resolved.append(room.name if room is not None else item)
            talkers = resolved

            for item in talkers:
                room = self._lookup(self.get_chat_room, item)
                if room is None:
                    continue
                for user, display_name in room.user_to_display_name.items():
                    display_name_to_user[display_name] = user
                for user in room.users:
                    users[user.user_name] = None
            talker = ",".join(talkers)

        senders = _split_list(sender)
        if senders:
            resolved = []
            for item in senders:
                if item in display_name_to_user:
                    resolved.append(display_name_to_user[item])
                    continue
                for user in users:
                    contact = self._full_contact(user)
                    if contact is not None and contact.display_name() == item:
                        item = user
                        break
                resolved.append(item)
            sender = ",".join(resolved)

        return talker, sender

    # pass-through queries

    def get_media(self, media_type: str, key: str) -> Any:
        """Return a media record from the data source."""
        return self.ds.get_media(media_type, key)

    def get_sessions(self, key: str = "", limit: int = 0, offset: int = 0) -> list[Any]:
        """Return recent sessions from the data source."""
        return self.ds.get_sessions(key, limit, offset)

    # file events

    def contact_callback(self, event: Any) -> None:
        """Rebuild the contact cache when a contact database is created."""
        if not _is_create(event):
            return
        try:
            self._init_contact_cache()
        except Exception as exc:
            log.error("failed to reinitialize contact cache: %s: %s", getattr(event, "name", ""), exc)

    def chatroom_callback(self, event: Any) -> None:
        """Rebuild the chat room cache when a chat room database is created."""
        if not _is_create(event):
            return
        try:
            self._init_chat_room_cache()
        except Exception as exc:
            log.error("failed to reinitialize chat room cache: %s: %s", getattr(event, "name", ""), exc)

    def close(self) -> None:
        """Close the underlying data source."""
        self.ds.close()