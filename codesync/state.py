"""
In-memory state for rooms and connections
Process-local only: nothing here survives a restart
"""
import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

HOST = "host"
GUEST = "guest"
ROLES = (HOST, GUEST)

VIEWER = "viewer"
EDITOR = "editor"
PERMISSIONS = (VIEWER, EDITOR)

DEFAULT_LANGUAGE = "javascript"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Participant:
    id: str
    name: str
    role: str
    room_id: str
    permission: str = VIEWER
    is_online: bool = True
    joined_at: int = field(default_factory=now_ms)

    def __post_init__(self):
        if self.role == HOST:
            self.permission = EDITOR

    @property
    def can_edit(self) -> bool:
        return self.role == HOST or self.permission == EDITOR

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "role": self.role,
            "permission": self.permission,
            "isOnline": self.is_online,
            "joinedAt": self.joined_at,
        }


@dataclass(frozen=True)
class ChatMessage:
    id: str
    user_id: str
    user_name: str
    text: str
    timestamp: int

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "userName": self.user_name,
            "text": self.text,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class ScheduledSession:
    id: str
    room_id: str
    title: str
    description: str
    scheduled_time: str
    created_by: str
    created_at: int = field(default_factory=now_ms)
    participants: tuple = ()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "roomId": self.room_id,
            "title": self.title,
            "description": self.description,
            "scheduledTime": self.scheduled_time,
            "createdBy": self.created_by,
            "createdAt": self.created_at,
            "participants": list(self.participants),
        }


class Room:
    """
    One collaborative session: shared document, language tag, chat log
    and participant set.

    `lock` guards every mutable field. `closed` is set once the last
    participant has left; a closed room is never reused, a new one is
    created under the same id instead.
    """

    def __init__(self, room_id: str, host: Participant):
        self.id = room_id
        self.host_id = host.id
        self.document = ""
        self.language = DEFAULT_LANGUAGE
        self.chat: List[ChatMessage] = []
        self.participants: Dict[str, Participant] = {host.id: host}
        self.created_at = now_ms()
        self.lock = asyncio.Lock()
        self.closed = False

    def add(self, participant: Participant) -> None:
        self.participants[participant.id] = participant

    def remove(self, participant_id: str) -> Optional[Participant]:
        return self.participants.pop(participant_id, None)

    def get(self, participant_id: str) -> Optional[Participant]:
        return self.participants.get(participant_id)

    def roster(self) -> List[dict]:
        return [p.to_dict() for p in self.participants.values()]

    def is_empty(self) -> bool:
        return not self.participants

    def snapshot(self) -> dict:
        return {
            "document": self.document,
            "language": self.language,
        }

    def metadata(self) -> dict:
        return {
            "id": self.id,
            "userCount": len(self.participants),
            "language": self.language,
            "createdAt": self.created_at,
        }


class ConnectionRegistry:
    """Non-owning index: connection id -> Participant. Never iterated for broadcast."""

    def __init__(self):
        self._participants: Dict[str, Participant] = {}

    def register(self, connection_id: str, participant: Participant) -> None:
        self._participants[connection_id] = participant

    def lookup(self, connection_id: str) -> Optional[Participant]:
        return self._participants.get(connection_id)

    def remove(self, connection_id: str) -> Optional[Participant]:
        return self._participants.pop(connection_id, None)

    def __len__(self) -> int:
        return len(self._participants)


class RoomRegistry:
    """room id -> Room. A room is present here iff it has at least one participant."""

    def __init__(self):
        self._rooms: Dict[str, Room] = {}

    def get(self, room_id: str) -> Optional[Room]:
        return self._rooms.get(room_id)

    def create(self, room_id: str, host: Participant) -> Room:
        room = Room(room_id, host)
        self._rooms[room_id] = room
        return room

    def discard(self, room: Room) -> bool:
        """Remove `room` only if it is still the registered instance for its id"""
        if self._rooms.get(room.id) is room:
            del self._rooms[room.id]
            return True
        return False

    def __contains__(self, room_id: str) -> bool:
        return room_id in self._rooms

    def __len__(self) -> int:
        return len(self._rooms)
