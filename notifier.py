"""Fire-and-forget real-time events over Socket.IO.

Every session has two rooms: the owner's live view and the attendees' clients.
Publishing never blocks a request on delivery and never raises.
"""

import functools
import logging
from typing import Any, Dict

import anyio

logger = logging.getLogger(__name__)

AUDIENCE_TEACHER = "teacher"
AUDIENCE_STUDENTS = "students"
AUDIENCE_ALL = "all"

EVENT_JOINED = "attendance:joined"
EVENT_SUBMITTED = "attendance:submitted"
EVENT_MANUAL = "attendance:manual"
EVENT_SESSION_ENDED = "session:ended"
EVENT_PASSCODE_ROTATED = "passcode:rotated"


def room_name(session_id: str, audience: str) -> str:
    return f"session:{session_id}:{audience}"


def rooms_for(session_id: str, audience: str):
    if audience == AUDIENCE_ALL:
        return [room_name(session_id, AUDIENCE_TEACHER), room_name(session_id, AUDIENCE_STUDENTS)]
    return [room_name(session_id, audience)]


class SocketNotifier:
    """Publishes to a python-socketio AsyncServer from sync request handlers."""

    def __init__(self, sio):
        self.sio = sio

    def publish(self, session_id: str, event: str, payload: Dict[str, Any], audience: str = AUDIENCE_ALL) -> None:
        for room in rooms_for(session_id, audience):
            try:
                anyio.from_thread.run_sync(
                    functools.partial(self.sio.start_background_task, self.sio.emit, event, payload, to=room)
                )
            except Exception:
                logger.debug("Dropped %s event for %s", event, room, exc_info=True)
