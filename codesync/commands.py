"""
Inbound commands

Every client frame is a JSON object with a "type" field. parse_command()
turns it into exactly one of the command classes below or raises
MalformedRequest; there is no fallback for unknown types.
"""
from dataclasses import dataclass, fields
from typing import Any, Dict, Type, Union

from .errors import MalformedRequest


@dataclass(frozen=True)
class Join:
    room_id: str
    display_name: str
    role: str


@dataclass(frozen=True)
class EditDocument:
    room_id: str
    text: str


@dataclass(frozen=True)
class ChangeLanguage:
    room_id: str
    language: str


@dataclass(frozen=True)
class PostChat:
    room_id: str
    text: str


@dataclass(frozen=True)
class SetPermission:
    room_id: str
    target_user_id: str
    permission: str


@dataclass(frozen=True)
class Execute:
    room_id: str
    text: str
    language: str


@dataclass(frozen=True)
class ScheduleSession:
    room_id: str
    title: str
    description: str
    time: str


@dataclass(frozen=True)
class ListScheduledSessions:
    room_id: str


@dataclass(frozen=True)
class StartCall:
    room_id: str


@dataclass(frozen=True)
class EndCall:
    room_id: str


@dataclass(frozen=True)
class Signal:
    kind: str
    target: str
    payload: Any


Command = Union[
    Join, EditDocument, ChangeLanguage, PostChat, SetPermission, Execute,
    ScheduleSession, ListScheduledSessions, StartCall, EndCall, Signal,
]

COMMANDS: Dict[str, Type] = {
    "join": Join,
    "edit-document": EditDocument,
    "change-language": ChangeLanguage,
    "post-chat": PostChat,
    "set-permission": SetPermission,
    "execute": Execute,
    "schedule-session": ScheduleSession,
    "list-scheduled-sessions": ListScheduledSessions,
    "start-call": StartCall,
    "end-call": EndCall,
}

SIGNAL_KINDS = ("offer", "answer", "ice-candidate")

# Fields that may legitimately be empty strings
OPTIONAL_TEXT = {"text", "description"}


def _wire_name(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def parse_command(frame: Any) -> Command:
    """Build a command from a decoded JSON frame"""
    if not isinstance(frame, dict):
        raise MalformedRequest("frame must be a JSON object")

    msg_type = frame.get("type")
    if not isinstance(msg_type, str):
        raise MalformedRequest("frame type must be a string")
    if msg_type in SIGNAL_KINDS:
        target = frame.get("target")
        if not isinstance(target, str) or not target:
            raise MalformedRequest(f"{msg_type}: missing target")
        # Payload shape is never validated; it belongs to the peers
        return Signal(kind=msg_type, target=target, payload=frame.get("payload"))

    cls = COMMANDS.get(msg_type)
    if cls is None:
        raise MalformedRequest(f"unknown command type: {msg_type!r}")

    values = {}
    for f in fields(cls):
        key = _wire_name(f.name)
        value = frame.get(key)
        if f.name in OPTIONAL_TEXT and value is None:
            value = ""
        if not isinstance(value, str):
            raise MalformedRequest(f"{msg_type}: missing {key}")
        if not value and f.name not in OPTIONAL_TEXT:
            raise MalformedRequest(f"{msg_type}: empty {key}")
        values[f.name] = value
    return cls(**values)
