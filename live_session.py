#!/usr/bin/env python3
"""
Live voice call with the Whales Pump agent over Gemini Live:
  Microphone (16kHz) -> encode -> realtimeInput ... serverContent audio (24kHz) -> PlaybackScheduler

Each call gets a fresh CallContext that owns every resource of that call:
the two device contexts, the microphone, the frame processor, the playback
scheduler, the live connection and all background tasks. Teardown is a method
on that context, so hanging up, remote close, remote error and failed startup
all release the same way.

Inbound traffic is turned into typed SessionEvents and fed one at a time,
in arrival order, to handle_event().
"""

import asyncio
import inspect
import itertools
import logging

from audio_devices import CaptureContext, MicrophonePermissionError, PlaybackContext
from business_tools import ToolDispatcher
from chat_transcript import ChatTranscript
from config import (DEFAULTS, MISSING_KEY_MESSAGE, ConfigurationError, is_valid_key,
                    load_system_instruction)
from event_bus import EventType as BusEventType
from gemini_live import LiveConnection
from pcm_codec import encode_outbound
from playback_scheduler import PlaybackScheduler
from session_events import ConnectionState, EventType, SessionEvent

logger = logging.getLogger(__name__)

CONNECTION_LOST = "Connection lost."
CONNECT_FAILED = "Failed to connect."
MICROPHONE_DENIED = "Microphone access is required for voice calls."


class CallContext:
    """Resources of one call. Never reused by a later call."""

    def __init__(self, call_id: int, loop: asyncio.AbstractEventLoop):
        self.call_id = call_id
        self.wanted = True
        # Resolved with the open connection after setupComplete, cancelled on teardown
        self.ready: asyncio.Future = loop.create_future()
        self.connection = None
        self.capture_context = None
        self.playback_context = None
        self.microphone = None
        self.processor = None
        self.scheduler = None
        self.tasks: set[asyncio.Task] = set()

    def spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task

    async def wait_connection(self):
        """The open connection, or None once the call is no longer wanted."""
        if not self.wanted:
            return None
        if not self.ready.done():
            await asyncio.wait([self.ready])
        if not self.wanted or self.ready.cancelled():
            return None
        return self.ready.result()

    def _take(self, name: str):
        value = getattr(self, name)
        setattr(self, name, None)
        return value

    async def _release(self, what: str, action):
        try:
            result = action()
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning("Call %d: releasing %s failed: %s", self.call_id, what, e)

    async def teardown(self):
        """Release everything. Safe to call any number of times, never raises."""
        self.wanted = False
        if not self.ready.done():
            self.ready.cancel()

        current = asyncio.current_task()
        pending = [t for t in self.tasks if t is not current and not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        microphone = self._take("microphone")
        if microphone is not None:
            await self._release("microphone", microphone.stop)
        processor = self._take("processor")
        if processor is not None:
            await self._release("frame processor", processor.disconnect)
        capture = self._take("capture_context")
        if capture is not None:
            await self._release("capture context", capture.close)

        scheduler = self._take("scheduler")
        if scheduler is not None:
            await self._release("playback sources", scheduler.reset)
        playback = self._take("playback_context")
        if playback is not None:
            await self._release("playback context", playback.close)

        connection = self._take("connection")
        if connection is not None:
            await self._release("live connection", connection.close)

    @property
    def released(self) -> bool:
        return all(getattr(self, name) is None for name in (
            "connection", "capture_context", "playback_context",
            "microphone", "processor", "scheduler"))


class LiveCallSession:
    """Voice call lifecycle: DISCONNECTED -> CONNECTING -> CONNECTED -> DISCONNECTED.

    ERROR is entered on transport failures and always falls through teardown
    back to DISCONNECTED. The factories exist so tests can substitute devices
    and the connection.
    """

    def __init__(self, api_key=None, config=None, dispatcher=None, transcript=None,
                 on_status=None, on_error=None, on_speaking=None, bus=None, chat=None,
                 connection_factory=None, capture_factory=None, playback_factory=None):
        self.api_key = api_key
        self.config = {**DEFAULTS, **(config or {})}
        self.transcript = transcript or ChatTranscript()
        self.dispatcher = dispatcher or ToolDispatcher(self.transcript, self.config)
        self.system_instruction = load_system_instruction(self.config)
        self.on_status = on_status or (lambda s: None)
        self.on_error = on_error or (lambda msg: None)
        self.on_speaking = on_speaking or (lambda speaking: None)
        self.bus = bus
        self.chat = chat

        self._connection_factory = connection_factory or self._default_connection
        self._capture_factory = capture_factory or (
            lambda: CaptureContext(self.config["capture_sample_rate"]))
        self._playback_factory = playback_factory or (
            lambda: PlaybackContext(self.config["playback_sample_rate"]))

        self.state = ConnectionState.DISCONNECTED
        self.muted = False
        self.agent_speaking = False
        self.call_duration = 0
        self.error = None
        self._call: CallContext | None = None
        self._call_ids = itertools.count(1)

    def _default_connection(self):
        return LiveConnection(
            self.api_key,
            self.config["live_model"],
            system_instruction=self.system_instruction,
            tools=self.dispatcher.declarations,
            voice=self.config["voice"],
        )

    # ── Status ─────────────────────────────────────────────────────

    @property
    def call(self) -> CallContext | None:
        return self._call

    def _emit(self, event_type, **payload):
        if self.bus is None:
            return
        call_id = self._call.call_id if self._call else 0
        self.bus.emit(event_type, call=call_id, **payload)

    def _set_state(self, state: ConnectionState):
        if self.state == state:
            return
        self.state = state
        logger.info("Call state: %s", state.value)
        self._emit(BusEventType.STATE, state=state.value)
        self.on_status(state.value)

    def _on_speaking(self, call: CallContext, speaking: bool):
        if call is not self._call:
            return
        self.agent_speaking = speaking
        self._emit(BusEventType.STATUS, status="speaking" if speaking else "listening")
        self.on_speaking(speaking)

    # ── Start / end ────────────────────────────────────────────────

    async def start_session(self):
        """Acquire devices and begin the handshake. Returns in CONNECTING.

        Raises ConfigurationError without touching any device or socket when
        there is no usable API key.
        """
        if self.state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            logger.info("Call already in progress")
            return

        self.error = None
        if not is_valid_key(self.api_key):
            self.error = MISSING_KEY_MESSAGE
            self.on_error(MISSING_KEY_MESSAGE)
            raise ConfigurationError(MISSING_KEY_MESSAGE)

        call = CallContext(next(self._call_ids), asyncio.get_running_loop())
        self._call = call
        self.muted = False
        self.agent_speaking = False
        self.call_duration = 0
        self._set_state(ConnectionState.CONNECTING)
        self._emit(BusEventType.CALL_START, model=self.config["live_model"], voice=self.config["voice"])

        try:
            capture = call.capture_context = self._capture_factory()
            playback = call.playback_context = self._playback_factory()
            await capture.resume()
            if call.wanted:
                await playback.resume()
            if call.wanted:
                call.microphone = await capture.open_microphone(self.config["capture_frame_size"])
        except MicrophonePermissionError as e:
            await self._disconnect(call, MICROPHONE_DENIED, e)
            return
        except Exception as e:
            await self._disconnect(call, CONNECT_FAILED, e)
            return

        if not call.wanted:
            # Hung up while devices were opening
            await call.teardown()
            return

        call.scheduler = PlaybackScheduler(
            call.playback_context,
            sample_rate=self.config["playback_sample_rate"],
            on_speaking=lambda speaking: self._on_speaking(call, speaking),
        )
        call.spawn(self._run_call(call))

    async def end_session(self):
        """Hang up. Idempotent, callable from any state."""
        call = self._call
        if call is None:
            self.call_duration = 0
            self.agent_speaking = False
            self._set_state(ConnectionState.DISCONNECTED)
            return
        await self._disconnect(call)

    async def _disconnect(self, call: CallContext, error: str = None, cause=None,
                          remote: bool = False):
        current = call is self._call and call.wanted
        if error and not current:
            logger.debug("Call %d: ignoring %s after hangup (%s)", call.call_id, error, cause)
            error = None
        if error:
            logger.error("Call %d failed: %s (%s)", call.call_id, error, cause)
            self.error = error
            self._set_state(ConnectionState.ERROR)
            self._emit(BusEventType.ERROR, message=error, detail=str(cause) if cause else "")
        if current and (error or remote) and self.chat is not None:
            # Next attempt must not reuse a chat tied to the failed session
            self.chat.reset()

        await call.teardown()

        if call is self._call:
            self._emit(BusEventType.CALL_END, duration=self.call_duration)
            self._call = None
            self.call_duration = 0
            self.agent_speaking = False
            self._set_state(ConnectionState.DISCONNECTED)
        if error:
            self.on_error(error)

    # ── Connection task ────────────────────────────────────────────

    async def _run_call(self, call: CallContext):
        connection = self._connection_factory()
        call.connection = connection
        try:
            await asyncio.wait_for(connection.open(), self.config["handshake_timeout"])
        except Exception as e:
            # TransportError, socket errors, or the handshake timeout
            await self._disconnect(call, CONNECT_FAILED, e)
            return

        if not call.wanted:
            await call.teardown()
            return
        call.ready.set_result(connection)

        try:
            await self.handle_event(call, SessionEvent(EventType.OPENED))
            if not call.wanted:
                return
            async for event in connection.events():
                await self.handle_event(call, event)
                if not call.wanted:
                    break
        except Exception as e:
            await self.handle_event(call, SessionEvent(EventType.ERRORED, data=e))

    async def handle_event(self, call: CallContext, event: SessionEvent):
        """Single transition function for events of one call."""
        if call is not self._call or not call.wanted:
            logger.debug("Dropping %s for call %d", event.type.name, call.call_id)
            return

        if event.type == EventType.OPENED:
            await self._on_opened(call)
        elif event.type == EventType.TOOL_CALL:
            await self._on_tool_call(call, event.data)
        elif event.type == EventType.INTERRUPTED:
            self._on_interrupted(call)
        elif event.type == EventType.AUDIO_CHUNK:
            source = await call.scheduler.schedule_chunk(event.data)
            logger.debug("Scheduled %.3fs at %.3f", source.duration, source.start_time)
            if self.bus is not None:
                self.bus.emit_ephemeral(BusEventType.AUDIO_CHUNK, call=call.call_id,
                                        bytes=len(event.data), start=source.start_time)
        elif event.type == EventType.TURN_COMPLETE:
            logger.debug("Agent turn complete")
        elif event.type == EventType.CLOSED:
            logger.info("Remote closed the call")
            await self._disconnect(call, remote=True)
        elif event.type == EventType.ERRORED:
            await self._disconnect(call, CONNECTION_LOST, event.data)

    async def _on_opened(self, call: CallContext):
        self._set_state(ConnectionState.CONNECTED)
        call.spawn(self._count_duration(call))

        connection = await call.wait_connection()
        if connection is None:
            return
        try:
            await connection.send_client_content(self.config["greeting_trigger"])
        except Exception as e:
            if call.wanted:
                await self._disconnect(call, CONNECTION_LOST, e)
            return

        if call.microphone is None or not call.wanted:
            return
        call.processor = call.capture_context.create_processor(
            call.microphone, lambda samples: self._on_capture_frame(call, samples))
        self._emit(BusEventType.STATUS, status="listening")

    async def _count_duration(self, call: CallContext):
        while call.wanted:
            await asyncio.sleep(1)
            if call is self._call and call.wanted:
                self.call_duration += 1

    async def _on_tool_call(self, call: CallContext, function_calls):
        timeout = self.config["tool_timeout"]

        async def resolve(fc):
            self._emit(BusEventType.TOOL_CALL, id=fc.id, name=fc.name, args=fc.args)
            try:
                result = await asyncio.wait_for(self.dispatcher.dispatch(fc.name, fc.args), timeout)
            except asyncio.TimeoutError:
                result = {"error": f"{fc.name} timed out after {timeout}s"}
            self._emit(BusEventType.TOOL_RESULT, id=fc.id, name=fc.name, result=result)
            response = result if "error" in result else {"result": result}
            return {"id": fc.id, "name": fc.name, "response": response}

        responses = await asyncio.gather(*(resolve(fc) for fc in function_calls))

        connection = await call.wait_connection()
        if connection is None:
            return
        await connection.send_tool_response(list(responses))
        logger.info("Sent %d tool response(s)", len(responses))

    def _on_interrupted(self, call: CallContext):
        stopped = call.scheduler.interrupt()
        self._emit(BusEventType.INTERRUPTED, dropped=stopped)

    # ── Capture ────────────────────────────────────────────────────

    def _on_capture_frame(self, call: CallContext, samples):
        if self.muted or not call.wanted or call is not self._call:
            return
        call.spawn(self._send_frame(call, encode_outbound(samples)))

    async def _send_frame(self, call: CallContext, pcm: bytes):
        connection = await call.wait_connection()
        if connection is None:
            return
        try:
            await connection.send_realtime_audio(pcm)
        except Exception as e:
            if call.wanted:
                await self._disconnect(call, CONNECTION_LOST, e)

    def toggle_mute(self) -> bool:
        self.muted = not self.muted
        call = self._call
        if call is not None and call.microphone is not None:
            call.microphone.enabled = not self.muted
        logger.info("Microphone %s", "muted" if self.muted else "unmuted")
        self._emit(BusEventType.MUTE, muted=self.muted)
        return self.muted
