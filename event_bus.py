"""
Per-call JSONL event log with in-process listeners.

LiveCallSession writes one line per lifecycle event (state changes, tool calls,
interruptions, errors) to <log_dir>/<sid>/events.jsonl. The UI layer and the
CLI subscribe with EventBus.on() to get the same events as they happen.
Audio chunk notifications go to listeners only and never hit the disk.

Each line is kept under 4096 bytes (POSIX PIPE_BUF) so appends stay atomic.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)

_PIPE_BUF = 4096
_MAX_STRING = 200


class EventType(str, Enum):
    """Catalog of call events."""
    CALL_START = "call_start"
    CALL_END = "call_end"
    STATE = "state"
    STATUS = "status"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    AUDIO_CHUNK = "audio_chunk"  # ephemeral
    INTERRUPTED = "interrupted"
    MUTE = "mute"
    ERROR = "error"


_CORE_FIELDS = ("ts", "src", "type", "call", "sid")


@dataclass
class BusEvent:
    """One event. Anything beyond the core fields lives in payload."""
    ts: float
    src: str
    type: str
    call: int
    sid: str
    payload: dict = field(default_factory=dict)

    def __init__(self, ts: float, src: str, type: str, call: int, sid: str, **payload):
        self.ts = ts
        self.src = src
        self.type = type
        self.call = call
        self.sid = sid
        self.payload = payload

    def _core(self) -> dict:
        return {"ts": self.ts, "src": self.src, "type": self.type,
                "call": self.call, "sid": self.sid}

    def to_json_line(self) -> str:
        data = {**self.payload, **self._core()}
        line = json.dumps(data, separators=(',', ':'), default=str) + "\n"
        if len(line.encode()) <= _PIPE_BUF:
            return line

        shortened = {
            k: (v[:_MAX_STRING] + "...[truncated]"
                if isinstance(v, str) and len(v) > _MAX_STRING and k not in _CORE_FIELDS else v)
            for k, v in data.items()
        }
        line = json.dumps(shortened, separators=(',', ':'), default=str) + "\n"
        if len(line.encode()) <= _PIPE_BUF:
            return line

        return json.dumps({**self._core(), "_truncated": True}, separators=(',', ':')) + "\n"

    @classmethod
    def from_json_line(cls, line: str) -> "BusEvent":
        data = json.loads(line.strip())
        core = {k: data.pop(k) for k in _CORE_FIELDS}
        return cls(**core, **data)


class EventBusWriter:
    """Append-only JSONL writer."""

    def __init__(self, path: Path):
        self.path = path
        self._file = None

    def open(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self.path, "a")

    def write(self, evt: BusEvent):
        if self._file is None:
            self.open()
        self._file.write(evt.to_json_line())
        self._file.flush()

    def close(self):
        if self._file:
            self._file.close()
            self._file = None


class EventBus:
    """Call event log plus in-process listeners.

    Usage:
        bus = EventBus(log_dir / sid, "live_session", sid)
        bus.open()
        bus.on("state", on_state)
        bus.emit("state", call=1, state="connected")
        bus.emit_ephemeral("audio_chunk", call=1, bytes=4800)
        bus.read_recent(event_type="tool_call")
        bus.close()

    A bus that was never opened still delivers to listeners.
    """

    def __init__(self, session_dir: Path, src: str, sid: str):
        self._src = src
        self._sid = sid
        self._path = session_dir / "events.jsonl"
        self._writer: EventBusWriter | None = None
        self._callbacks: dict[str, list[Callable]] = {}

    @property
    def path(self) -> Path:
        return self._path

    @property
    def sid(self) -> str:
        return self._sid

    def open(self):
        self._writer = EventBusWriter(self._path)
        self._writer.open()

    def close(self):
        if self._writer:
            self._writer.close()
            self._writer = None

    def on(self, event_type: str, callback: Callable):
        """Register callback(BusEvent) for one event type, or "*" for all."""
        self._callbacks.setdefault(event_type, []).append(callback)

    def _notify(self, evt: BusEvent):
        for key in (evt.type, "*"):
            for cb in self._callbacks.get(key, []):
                try:
                    cb(evt)
                except Exception as e:
                    logger.error("Listener failed on %s: %s", evt.type, e)

    def _make(self, event_type, call: int, payload: dict) -> BusEvent:
        if isinstance(event_type, EventType):
            event_type = event_type.value
        return BusEvent(ts=time.time(), src=self._src, type=event_type,
                        call=call, sid=self._sid, **payload)

    def emit(self, event_type, call: int = 0, **payload):
        evt = self._make(event_type, call, payload)
        if self._writer:
            try:
                self._writer.write(evt)
            except OSError as e:
                logger.error("Event log write failed: %s", e)
        self._notify(evt)

    def emit_ephemeral(self, event_type, call: int = 0, **payload):
        self._notify(self._make(event_type, call, payload))

    def read_recent(self, last_n: int = 50, event_type: str | None = None,
                    since_ts: float | None = None) -> list[BusEvent]:
        """Most recent events from the log file, oldest first."""
        if not self._path.exists():
            return []
        events = []
        try:
            with open(self._path) as f:
                for line in f:
                    if not line.strip():
                        continue
                    try:
                        evt = BusEvent.from_json_line(line)
                    except (json.JSONDecodeError, KeyError):
                        continue
                    if event_type and evt.type != event_type:
                        continue
                    if since_ts and evt.ts < since_ts:
                        continue
                    events.append(evt)
        except OSError:
            return []
        return events[-last_n:] if last_n else events


def summarize_call(events: list[BusEvent]) -> dict:
    """Counts and outcome for one call's events, for the end-of-call report."""
    summary = {"tool_calls": 0, "interruptions": 0, "errors": [], "duration": 0}
    for evt in events:
        if evt.type == EventType.TOOL_CALL.value:
            summary["tool_calls"] += 1
        elif evt.type == EventType.INTERRUPTED.value:
            summary["interruptions"] += 1
        elif evt.type == EventType.ERROR.value:
            summary["errors"].append(evt.payload.get("message", ""))
        elif evt.type == EventType.CALL_END.value:
            summary["duration"] = evt.payload.get("duration", 0)
    return summary
