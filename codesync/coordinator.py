"""
Session coordinator: room/connection registries, permissions,
document sync, chat/signaling relay and the execution relay.

One Coordinator instance owns all state; nothing is module-global, so
independent instances can run side by side (tests do this).
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, List, Optional, Set

from .commands import (
    ChangeLanguage, EditDocument, EndCall, Execute, Join, ListScheduledSessions,
    PostChat, ScheduleSession, SetPermission, Signal, StartCall, parse_command,
)
from .errors import (
    CoordinatorError, ExternalServiceFailure, MalformedRequest, RoomNotFound, Unauthorized,
)
from .judge import ExecutionResult, JudgeClient
from .state import (
    HOST, PERMISSIONS, ROLES, ChatMessage, ConnectionRegistry, Participant, Room,
    RoomRegistry, ScheduledSession, now_ms,
)
from .utils import generate_connection_id, generate_message_id

logger = logging.getLogger("codesync")

# Payload key used on the wire for each relayed signal kind
SIGNAL_PAYLOAD_KEYS = {
    "offer": "offer",
    "answer": "answer",
    "ice-candidate": "candidate",
}


def event(msg_type: str, **fields) -> dict:
    return {"type": msg_type, **fields}


class Channel:
    """
    Outbound side of one connection.

    send() only enqueues; the transport drains `outbox` in order. None is
    the close sentinel.
    """

    def __init__(self, connection_id: str):
        self.id = connection_id
        self.outbox: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def send(self, message: dict) -> None:
        if not self.closed:
            self.outbox.put_nowait(message)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.outbox.put_nowait(None)


class Coordinator:
    def __init__(self, judge: Optional[JudgeClient] = None):
        self.rooms = RoomRegistry()
        self.connections = ConnectionRegistry()
        self.channels: Dict[str, Channel] = {}
        self.sessions: Dict[str, ScheduledSession] = {}
        self.judge = judge if judge is not None else JudgeClient()
        self._tasks: Set[asyncio.Task] = set()
        self._handlers = {
            Join: self.join,
            EditDocument: self.apply_edit,
            ChangeLanguage: self.apply_language_change,
            PostChat: self.post_chat,
            SetPermission: self.set_permission,
            Execute: self.execute_code,
            ScheduleSession: self.schedule_session,
            ListScheduledSessions: self.list_scheduled_sessions,
            StartCall: self.start_call,
            EndCall: self.end_call,
            Signal: self.relay_signal,
        }

    # ============================================================
    # CONNECTIONS & DELIVERY
    # ============================================================

    def connect(self, connection_id: Optional[str] = None) -> Channel:
        """Open an outbound channel for a new transport connection"""
        connection_id = connection_id or generate_connection_id()
        channel = Channel(connection_id)
        self.channels[connection_id] = channel
        channel.send(event("connected", connectionId=connection_id))
        logger.info("🔌 Connection opened: %s", connection_id)
        return channel

    async def disconnect(self, connection_id: str) -> None:
        """Idempotent: safe to call any number of times for the same connection"""
        channel = self.channels.pop(connection_id, None)
        await self.leave(connection_id)
        if channel is not None:
            channel.close()
            logger.info("🔌 Connection closed: %s", connection_id)

    def _send(self, connection_id: str, message: dict) -> bool:
        channel = self.channels.get(connection_id)
        if channel is None:
            logger.debug("Dropping %s for gone connection %s", message.get("type"), connection_id)
            return False
        channel.send(message)
        return True

    def _broadcast(self, room: Room, message: dict, exclude: Optional[str] = None) -> None:
        for participant_id in list(room.participants):
            if participant_id != exclude:
                self._send(participant_id, message)

    # ============================================================
    # DISPATCH
    # ============================================================

    async def receive(self, connection_id: str, frame) -> None:
        """Parse one decoded client frame and dispatch it"""
        try:
            command = parse_command(frame)
        except MalformedRequest as e:
            logger.debug("Malformed frame from %s: %s", connection_id, e.message)
            self._notify(connection_id, e)
            return
        except Exception:
            logger.exception("Could not parse frame from %s", connection_id)
            self._notify(connection_id, MalformedRequest("unreadable frame"))
            return
        await self.dispatch(connection_id, command)

    async def dispatch(self, connection_id: str, command) -> None:
        handler = self._handlers.get(type(command))
        if handler is None:
            raise TypeError(f"no handler for {type(command).__name__}")

        if isinstance(command, Execute):
            # The judge is slow; do not hold up this connection's next event
            task = asyncio.create_task(self._guarded(connection_id, handler(connection_id, command)))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            return

        await self._guarded(connection_id, handler(connection_id, command))

    async def _guarded(self, connection_id: str, operation) -> None:
        try:
            await operation
        except CoordinatorError as e:
            self._notify(connection_id, e)
        except Exception:
            logger.exception("Handler failed for connection %s", connection_id)

    def _notify(self, connection_id: str, error: CoordinatorError) -> None:
        if isinstance(error, RoomNotFound):
            self._send(connection_id, event("room-not-found", roomId=error.message))
        else:
            self._send(connection_id, event("error", code=error.code, message=error.message))

    async def wait_idle(self) -> None:
        """Wait for in-flight execution requests"""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    @asynccontextmanager
    async def _member(self, connection_id: str, room_id: str):
        """Resolve the caller inside `room_id` and hold that room's lock"""
        participant = self.connections.lookup(connection_id)
        room = self.rooms.get(room_id)
        if participant is None or room is None:
            raise Unauthorized("Room or user not found")
        async with room.lock:
            if room.closed or room.get(participant.id) is not participant:
                raise Unauthorized("Room or user not found")
            yield room, participant

    # ============================================================
    # LIFECYCLE
    # ============================================================

    async def join(self, connection_id: str, cmd: Join) -> Optional[Participant]:
        if cmd.role not in ROLES:
            raise MalformedRequest(f"join: unknown role {cmd.role!r}")
        if connection_id not in self.channels:
            return None

        # A second join on the same connection replaces the first membership
        if self.connections.lookup(connection_id) is not None:
            await self.leave(connection_id)

        while True:
            participant = Participant(
                id=connection_id,
                name=cmd.display_name,
                role=cmd.role,
                room_id=cmd.room_id,
            )
            room = self.rooms.get(cmd.room_id)
            created = room is None
            if created:
                if cmd.role != HOST:
                    logger.info("🚫 Guest %s tried to join missing room %s", cmd.display_name, cmd.room_id)
                    raise RoomNotFound(cmd.room_id)
                room = self.rooms.create(cmd.room_id, participant)
                logger.info("🎪 Room created: %s by %s", cmd.room_id, cmd.display_name)

            async with room.lock:
                if room.closed:
                    # Emptied while we waited; look it up again
                    continue
                if connection_id not in self.channels:
                    if created:
                        self._detach(room, participant.id)
                    return None
                if not created:
                    room.add(participant)
                self.connections.register(connection_id, participant)

                self._send(connection_id, event("current-user", user=participant.to_dict()))
                self._send(connection_id, event("room-snapshot", roomId=room.id, **room.snapshot()))
                for message in room.chat:
                    self._send(connection_id, event("chat-message", message=message.to_dict()))
                self._broadcast(room, event(
                    "roster-changed",
                    event="joined",
                    participant=participant.to_dict(),
                    participants=room.roster(),
                ))

            logger.info(
                "✅ %s (%s) joined %s. Total users: %d",
                participant.name, participant.role, room.id, len(room.participants)
            )
            return participant

    async def leave(self, connection_id: str) -> None:
        """Remove the connection's participant; destroy the room if it is now empty"""
        participant = self.connections.remove(connection_id)
        if participant is None:
            return
        room = self.rooms.get(participant.room_id)
        if room is None:
            return

        async with room.lock:
            if room.closed or room.get(participant.id) is not participant:
                return
            participant.is_online = False
            if self._detach(room, participant.id):
                return
            self._broadcast(room, event(
                "roster-changed",
                event="left",
                participant=participant.to_dict(),
                userName=participant.name,
                participants=room.roster(),
            ))
        logger.info("👋 %s left %s", participant.name, room.id)

    def _detach(self, room: Room, participant_id: str) -> bool:
        """Caller holds room.lock. Returns True if the room was destroyed."""
        room.remove(participant_id)
        if not room.is_empty():
            return False
        room.closed = True
        self.rooms.discard(room)
        logger.info("🛑 Room %s deleted (empty)", room.id)
        return True

    # ============================================================
    # PERMISSIONS
    # ============================================================

    async def set_permission(self, connection_id: str, cmd: SetPermission) -> None:
        if cmd.permission not in PERMISSIONS:
            raise MalformedRequest(f"set-permission: unknown permission {cmd.permission!r}")

        async with self._member(connection_id, cmd.room_id) as (room, actor):
            if actor.role != HOST:
                raise Unauthorized("Only a host can change permissions")
            target = room.get(cmd.target_user_id)
            if target is None:
                raise MalformedRequest(f"set-permission: no participant {cmd.target_user_id!r}")
            if target.role == HOST:
                raise Unauthorized("Host permission cannot be changed")

            target.permission = cmd.permission
            change = event("permission-changed", userId=target.id, permission=cmd.permission)
            self._broadcast(room, change)
            self._send(target.id, change)

        logger.info("🔑 %s set %s to %s in %s", actor.name, target.name, cmd.permission, room.id)

    # ============================================================
    # DOCUMENT SYNC
    # ============================================================

    async def apply_edit(self, connection_id: str, cmd: EditDocument) -> None:
        async with self._member(connection_id, cmd.room_id) as (room, participant):
            if not participant.can_edit:
                raise Unauthorized("You do not have edit permission")
            room.document = cmd.text
            self._broadcast(room, event("document-changed", text=cmd.text), exclude=connection_id)

    async def apply_language_change(self, connection_id: str, cmd: ChangeLanguage) -> None:
        async with self._member(connection_id, cmd.room_id) as (room, participant):
            if participant.role != HOST:
                raise Unauthorized("Only a host can change the language")
            room.language = cmd.language
            self._broadcast(room, event("language-changed", language=cmd.language))

    # ============================================================
    # CHAT & SIGNALING
    # ============================================================

    async def post_chat(self, connection_id: str, cmd: PostChat) -> ChatMessage:
        async with self._member(connection_id, cmd.room_id) as (room, participant):
            message = ChatMessage(
                id=generate_message_id(),
                user_id=participant.id,
                user_name=participant.name,
                text=cmd.text,
                timestamp=now_ms(),
            )
            room.chat.append(message)
            self._broadcast(room, event("chat-message", message=message.to_dict()))
        return message

    async def start_call(self, connection_id: str, cmd: StartCall) -> None:
        async with self._member(connection_id, cmd.room_id) as (room, participant):
            self._broadcast(
                room,
                event("call-started", initiator=participant.name, userId=participant.id),
                exclude=connection_id,
            )
        logger.info("📞 Call started in %s by %s", room.id, participant.name)

    async def end_call(self, connection_id: str, cmd: EndCall) -> None:
        async with self._member(connection_id, cmd.room_id) as (room, participant):
            self._broadcast(room, event("call-ended", userId=participant.id), exclude=connection_id)
        logger.info("📴 Call ended in %s by %s", room.id, participant.name)

    async def relay_signal(self, connection_id: str, cmd: Signal) -> None:
        """Point-to-point forward; best effort, nothing is stored"""
        key = SIGNAL_PAYLOAD_KEYS[cmd.kind]
        self._send(cmd.target, {"type": cmd.kind, key: cmd.payload, "from": connection_id})

    # ============================================================
    # EXECUTION RELAY
    # ============================================================

    async def execute_code(self, connection_id: str, cmd: Execute) -> ExecutionResult:
        # Any member may run code; only membership is checked
        async with self._member(connection_id, cmd.room_id) as (room, participant):
            pass

        logger.info("⚙️ Executing %s code for %s in %s", cmd.language, participant.name, room.id)
        try:
            result = await self.judge.execute(cmd.text, cmd.language)
        except ExternalServiceFailure as e:
            logger.warning("Code execution failed in %s: %s", room.id, e.message)
            result = ExecutionResult.failed(e.message)

        async with room.lock:
            if room.closed:
                logger.info("Room %s gone before execution finished; result dropped", room.id)
            else:
                self._broadcast(room, event("execution-result", **result.to_dict()))
        return result

    # ============================================================
    # SCHEDULED SESSIONS
    # ============================================================

    async def schedule_session(self, connection_id: str, cmd: ScheduleSession) -> ScheduledSession:
        async with self._member(connection_id, cmd.room_id) as (room, participant):
            if participant.role != HOST:
                raise Unauthorized("Only a host can schedule sessions")
            session = ScheduledSession(
                id=generate_message_id(),
                room_id=room.id,
                title=cmd.title,
                description=cmd.description,
                scheduled_time=cmd.time,
                created_by=participant.name,
            )
            self.sessions[session.id] = session
            self._broadcast(room, event("session-scheduled", session=session.to_dict()))
        logger.info("📅 Session %r scheduled in %s", session.title, room.id)
        return session

    async def list_scheduled_sessions(
        self, connection_id: str, cmd: ListScheduledSessions
    ) -> List[ScheduledSession]:
        sessions = [s for s in self.sessions.values() if s.room_id == cmd.room_id]
        self._send(connection_id, event(
            "scheduled-sessions",
            roomId=cmd.room_id,
            sessions=[s.to_dict() for s in sessions],
        ))
        return sessions

    # ============================================================
    # QUERIES
    # ============================================================

    def status(self) -> dict:
        return {
            "activeRooms": len(self.rooms),
            "activeUsers": len(self.connections),
        }

    def room_metadata(self, room_id: str) -> Optional[dict]:
        room = self.rooms.get(room_id)
        return room.metadata() if room is not None else None

    async def close(self) -> None:
        await self.wait_idle()
        await self.judge.close()
