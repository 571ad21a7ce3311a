"""Deterministic conversation identifiers for one-to-one chats."""

from __future__ import annotations

from .errors import ValidationError

SEPARATOR = "_"


def validate_uid(uid: object) -> str:
    if not isinstance(uid, str) or not uid:
        raise ValidationError("uid must be a non-empty string")
    if uid != uid.strip():
        raise ValidationError("uid must not contain surrounding whitespace")
    if SEPARATOR in uid:
        raise ValidationError(f"uid must not contain {SEPARATOR!r}")
    return uid


def resolve(id_a: str, id_b: str) -> str:
    """Return the conversation id shared by ``id_a`` and ``id_b``.

    The two identifiers are sorted before joining, so the result does not
    depend on argument order. Chatting with yourself is rejected.
    """

    validate_uid(id_a)
    validate_uid(id_b)
    if id_a == id_b:
        raise ValidationError("cannot start a conversation with yourself")
    first, second = sorted((id_a, id_b))
    return f"{first}{SEPARATOR}{second}"


def participants_of(conv_id: str) -> tuple[str, str]:
    if not isinstance(conv_id, str):
        raise ValidationError("conv_id must be a string")
    parts = conv_id.split(SEPARATOR)
    if len(parts) != 2 or not all(parts) or parts[0] >= parts[1]:
        raise ValidationError("malformed conversation id")
    return parts[0], parts[1]
