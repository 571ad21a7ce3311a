"""Record types exchanged between the stores, the hub and the transport.

Rows coming back from the document store are validated here, right where
external data enters the system, so the rest of the code can rely on the
field types.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from .errors import ReadError

ONLINE = "online"
OFFLINE = "offline"


def _require_str(row: Mapping[str, Any], key: str) -> str:
    value = row[key]
    if not isinstance(value, str):
        raise ReadError(f"{key} must be a string")
    return value


def _optional_str(row: Mapping[str, Any], key: str) -> str | None:
    value = row[key]
    if value is not None and not isinstance(value, str):
        raise ReadError(f"{key} must be a string or null")
    return value


def _require_int(row: Mapping[str, Any], key: str) -> int:
    value = row[key]
    if not isinstance(value, int) or isinstance(value, bool):
        raise ReadError(f"{key} must be an integer")
    return value


@dataclass(frozen=True)
class User:
    uid: str
    name: str
    email: str | None = None
    phone_number: str | None = None
    photo_url: str | None = None
    description: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "User":
        return cls(
            uid=_require_str(row, "uid"),
            name=_require_str(row, "name"),
            email=_optional_str(row, "email"),
            phone_number=_optional_str(row, "phone_number"),
            photo_url=_optional_str(row, "photo_url"),
            description=_optional_str(row, "description"),
        )

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "uid": self.uid,
            "name": self.name,
            "email": self.email,
            "phoneNumber": self.phone_number,
            "photoURL": self.photo_url,
            "description": self.description,
        }


@dataclass(frozen=True)
class Sender:
    id: str
    display_name: str


@dataclass(frozen=True)
class Message:
    """An immutable chat message; ordered by ``(created_at_ms, seq)``."""

    conv_id: str
    seq: int
    msg_id: str
    text: str
    created_at_ms: int
    sender: Sender

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Message":
        return cls(
            conv_id=_require_str(row, "conv_id"),
            seq=_require_int(row, "seq"),
            msg_id=_require_str(row, "msg_id"),
            text=_require_str(row, "text"),
            created_at_ms=_require_int(row, "created_at_ms"),
            sender=Sender(
                id=_require_str(row, "sender_id"),
                display_name=_require_str(row, "sender_name"),
            ),
        )

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "conv_id": self.conv_id,
            "seq": self.seq,
            "msg_id": self.msg_id,
            "text": self.text,
            "createdAt": self.created_at_ms,
            "sender": {"id": self.sender.id, "displayName": self.sender.display_name},
        }


@dataclass(frozen=True)
class ConversationSummary:
    conv_id: str
    participants: tuple[str, str]
    last_message: str
    last_updated_ms: int
    last_seq: int = 0

    def other_participant(self, uid: str) -> str:
        first, second = self.participants
        return second if uid == first else first

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "conv_id": self.conv_id,
            "participants": list(self.participants),
            "lastMessage": self.last_message,
            "lastUpdated": self.last_updated_ms,
            "lastSeq": self.last_seq,
        }


@dataclass(frozen=True)
class ConversationRow:
    """A conversation list row with the other participant's profile joined in."""

    summary: ConversationSummary
    other_user: User | None

    def to_api_dict(self) -> dict[str, Any]:
        body = self.summary.to_api_dict()
        body["otherUser"] = self.other_user.to_api_dict() if self.other_user else None
        return body


@dataclass(frozen=True)
class FriendEdge:
    owner_uid: str
    friend_uid: str
    added_at_ms: int

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "FriendEdge":
        return cls(
            owner_uid=_require_str(row, "owner_uid"),
            friend_uid=_require_str(row, "friend_uid"),
            added_at_ms=_require_int(row, "added_at_ms"),
        )

    def to_api_dict(self) -> dict[str, Any]:
        return {"uid": self.friend_uid, "addedAt": self.added_at_ms}


@dataclass(frozen=True)
class PresenceRecord:
    uid: str
    state: str
    last_changed_ms: int | None

    @property
    def online(self) -> bool:
        return self.state == ONLINE

    def to_api_dict(self) -> dict[str, Any]:
        return {"uid": self.uid, "state": self.state, "lastChanged": self.last_changed_ms}
