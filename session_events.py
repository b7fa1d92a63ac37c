"""Typed events delivered from the Gemini Live connection to the call session.

Server messages are parsed into SessionEvents and fed one at a time, in
arrival order, into LiveCallSession.handle_event().
"""

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any

from pcm_codec import base64_decode


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class EventType(Enum):
    OPENED = auto()          # setupComplete received, session usable
    TOOL_CALL = auto()       # data: list[FunctionCall]
    AUDIO_CHUNK = auto()     # data: raw PCM bytes (24kHz mono int16)
    INTERRUPTED = auto()     # user talked over the agent
    TURN_COMPLETE = auto()   # agent finished its turn
    CLOSED = auto()          # remote closed normally
    ERRORED = auto()         # data: exception or error payload


@dataclass(frozen=True)
class FunctionCall:
    """A pending tool call extracted from a toolCall message."""
    id: str
    name: str
    args: dict = field(default_factory=dict)


@dataclass
class SessionEvent:
    type: EventType
    data: Any = None
    metadata: dict = field(default_factory=dict)


def parse_server_message(message: dict) -> list[SessionEvent]:
    """Split one BidiGenerateContent server message into typed events.

    Order within a message: tool calls, then interruption, then audio,
    then turn completion.
    """
    events = []

    if "setupComplete" in message:
        events.append(SessionEvent(EventType.OPENED))

    tool_call = message.get("toolCall")
    if tool_call:
        calls = [
            FunctionCall(id=fc.get("id", ""), name=fc.get("name", ""), args=fc.get("args") or {})
            for fc in tool_call.get("functionCalls", [])
            if fc.get("name")
        ]
        if calls:
            events.append(SessionEvent(EventType.TOOL_CALL, data=calls))

    server_content = message.get("serverContent") or {}

    if server_content.get("interrupted"):
        events.append(SessionEvent(EventType.INTERRUPTED))

    model_turn = server_content.get("modelTurn") or {}
    for part in model_turn.get("parts", []):
        inline_data = part.get("inlineData")
        if not inline_data or not inline_data.get("data"):
            continue
        events.append(SessionEvent(
            EventType.AUDIO_CHUNK,
            data=base64_decode(inline_data["data"]),
            metadata={"mime_type": inline_data.get("mimeType", "")},
        ))

    if server_content.get("turnComplete"):
        events.append(SessionEvent(EventType.TURN_COMPLETE))

    if "error" in message:
        events.append(SessionEvent(EventType.ERRORED, data=message["error"]))

    return events
