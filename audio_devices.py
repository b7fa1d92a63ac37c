"""PyAudio device contexts for a live call.

Two contexts are created per call, one per direction:

  CaptureContext (16kHz)  -> MicrophoneStream -> FrameProcessor -> on_frame(float32 samples)
  PlaybackContext (24kHz) <- AudioSourceHandle.start(when) <- PlaybackScheduler

PortAudio runs both streams in callback mode on its own thread. Captured
frames and "source ended" notifications are handed to the asyncio loop
with call_soon_threadsafe, so everything above this module runs on one loop.

The playback context keeps its own clock (current_time = frames rendered /
rate) and mixes every scheduled source at its start frame. A suspended
context does not render, so its clock does not advance.
"""

import asyncio
import logging
import threading
from enum import Enum
from typing import Callable, Optional

import numpy as np

from pcm_codec import CAPTURE_SAMPLE_RATE, PLAYBACK_SAMPLE_RATE, PlaybackBuffer

logger = logging.getLogger(__name__)

PLAYBACK_FRAMES_PER_BUFFER = 1024
CAPTURE_FRAMES_PER_BUFFER = 4096


class AudioDeviceError(Exception):
    """A device context could not be created, resumed, or used."""


class MicrophonePermissionError(AudioDeviceError):
    """The microphone could not be opened."""


class ContextState(str, Enum):
    SUSPENDED = "suspended"
    RUNNING = "running"
    CLOSED = "closed"


def _load_pyaudio():
    import pyaudio
    return pyaudio


# ── Playback ───────────────────────────────────────────────────────


class AudioSourceHandle:
    """One buffer scheduled on a PlaybackContext.

    stop() is safe at any time, including after the source finished.
    on_ended fires on the event loop only when the source plays to the end.
    """

    def __init__(self, context: "PlaybackContext", samples: np.ndarray):
        self._context = context
        self.samples = samples
        self.start_time: Optional[float] = None
        self.start_frame: Optional[int] = None
        self.on_ended: Optional[Callable[[], None]] = None
        self.stopped = False
        self.finished = False

    @property
    def duration(self) -> float:
        return len(self.samples) / self._context.sample_rate

    def start(self, when: float):
        self._context._schedule(self, when)

    def stop(self):
        if self.stopped or self.finished:
            return
        self.stopped = True
        self._context._unschedule(self)

    def _finish(self):
        if self.stopped or self.finished:
            return
        self.finished = True
        if self.on_ended:
            self.on_ended()


class PlaybackContext:
    """Clocked output device that plays scheduled sources gaplessly."""

    def __init__(self, sample_rate: int = PLAYBACK_SAMPLE_RATE,
                 frames_per_buffer: int = PLAYBACK_FRAMES_PER_BUFFER, backend=None):
        self.sample_rate = sample_rate
        self.state = ContextState.SUSPENDED
        self._backend = backend or _load_pyaudio()
        self._lock = threading.Lock()
        self._sources: list[AudioSourceHandle] = []
        self._frames_rendered = 0
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        self._pa = self._backend.PyAudio()
        try:
            self._stream = self._pa.open(
                format=self._backend.paInt16,
                channels=1,
                rate=sample_rate,
                output=True,
                frames_per_buffer=frames_per_buffer,
                stream_callback=self._callback,
                start=False,
            )
        except Exception as e:
            self._pa.terminate()
            self.state = ContextState.CLOSED
            raise AudioDeviceError(f"Cannot open playback device: {e}") from e

    @property
    def current_time(self) -> float:
        with self._lock:
            return self._frames_rendered / self.sample_rate

    async def resume(self):
        if self.state == ContextState.CLOSED:
            raise AudioDeviceError("Playback context is closed")
        self._loop = asyncio.get_running_loop()
        if self.state == ContextState.SUSPENDED:
            await self._loop.run_in_executor(None, self._stream.start_stream)
            self.state = ContextState.RUNNING

    def create_source(self, buffer: PlaybackBuffer) -> AudioSourceHandle:
        return AudioSourceHandle(self, buffer.mono())

    def _schedule(self, handle: AudioSourceHandle, when: float):
        with self._lock:
            handle.start_time = when
            handle.start_frame = max(int(round(when * self.sample_rate)), self._frames_rendered)
            self._sources.append(handle)

    def _unschedule(self, handle: AudioSourceHandle):
        with self._lock:
            if handle in self._sources:
                self._sources.remove(handle)

    def _render(self, frame_count: int) -> tuple[np.ndarray, list[AudioSourceHandle]]:
        """Mix the next frame_count frames and advance the clock."""
        out = np.zeros(frame_count, dtype=np.float32)
        ended = []
        with self._lock:
            pos = self._frames_rendered
            end = pos + frame_count
            for src in list(self._sources):
                src_end = src.start_frame + len(src.samples)
                lo = max(src.start_frame, pos)
                hi = min(src_end, end)
                if lo < hi:
                    out[lo - pos:hi - pos] += src.samples[lo - src.start_frame:hi - src.start_frame]
                if src_end <= end:
                    self._sources.remove(src)
                    ended.append(src)
            self._frames_rendered = end
        return out, ended

    def _callback(self, in_data, frame_count, time_info, status):
        out, ended = self._render(frame_count)
        loop = self._loop
        if loop is not None and not loop.is_closed():
            for src in ended:
                loop.call_soon_threadsafe(src._finish)
        pcm = (np.clip(out, -1.0, 1.0) * 32767).astype('<i2').tobytes()
        return pcm, self._backend.paContinue

    def close(self):
        if self.state == ContextState.CLOSED:
            return
        self.state = ContextState.CLOSED
        with self._lock:
            self._sources.clear()
        try:
            if self._stream.is_active():
                self._stream.stop_stream()
            self._stream.close()
        finally:
            self._pa.terminate()


# ── Capture ────────────────────────────────────────────────────────


class MicrophoneStream:
    """An open microphone. Disabled tracks deliver silence instead of audio."""

    def __init__(self, sample_rate: int, frames_per_buffer: int, continue_flag):
        self.sample_rate = sample_rate
        self.frames_per_buffer = frames_per_buffer
        self.enabled = True
        self.active = True
        self._continue = continue_flag
        self._stream = None
        self._sink: Optional[Callable[[np.ndarray], None]] = None

    def _on_input(self, in_data, frame_count, time_info, status):
        sink = self._sink
        if sink is not None and self.active:
            if self.enabled:
                samples = np.frombuffer(in_data, dtype='<i2').astype(np.float32) / 32768.0
            else:
                samples = np.zeros(frame_count, dtype=np.float32)
            sink(samples)
        return None, self._continue

    def stop(self):
        """Stop all tracks. Safe to call repeatedly."""
        if not self.active:
            return
        self.active = False
        self._sink = None
        if self._stream is not None:
            try:
                if self._stream.is_active():
                    self._stream.stop_stream()
            finally:
                self._stream.close()
                self._stream = None


class FrameProcessor:
    """Per-frame hook between a MicrophoneStream and the event loop."""

    def __init__(self, microphone: MicrophoneStream, loop: asyncio.AbstractEventLoop,
                 on_frame: Callable[[np.ndarray], None]):
        self._microphone = microphone
        self._loop = loop
        self._on_frame = on_frame
        self.connected = True
        microphone._sink = self._deliver

    def _deliver(self, samples: np.ndarray):
        # PortAudio thread
        if self.connected and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._dispatch, samples)

    def _dispatch(self, samples: np.ndarray):
        if self.connected:
            self._on_frame(samples)

    def disconnect(self):
        self.connected = False
        if self._microphone._sink == self._deliver:
            self._microphone._sink = None


class CaptureContext:
    """Input device context at the capture sample rate."""

    def __init__(self, sample_rate: int = CAPTURE_SAMPLE_RATE, backend=None):
        self.sample_rate = sample_rate
        self.state = ContextState.SUSPENDED
        self._backend = backend or _load_pyaudio()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        try:
            self._pa = self._backend.PyAudio()
        except Exception as e:
            self.state = ContextState.CLOSED
            raise AudioDeviceError(f"Cannot initialise audio input: {e}") from e

    async def resume(self):
        if self.state == ContextState.CLOSED:
            raise AudioDeviceError("Capture context is closed")
        self._loop = asyncio.get_running_loop()
        self.state = ContextState.RUNNING

    async def open_microphone(self, frames_per_buffer: int = CAPTURE_FRAMES_PER_BUFFER) -> MicrophoneStream:
        """Open the default input device. Raises MicrophonePermissionError."""
        mic = MicrophoneStream(self.sample_rate, frames_per_buffer, self._backend.paContinue)
        loop = asyncio.get_running_loop()

        def _open():
            return self._pa.open(
                format=self._backend.paInt16,
                channels=1,
                rate=self.sample_rate,
                input=True,
                frames_per_buffer=frames_per_buffer,
                stream_callback=mic._on_input,
            )

        try:
            mic._stream = await loop.run_in_executor(None, _open)
        except OSError as e:
            raise MicrophonePermissionError(f"Microphone unavailable: {e}") from e
        logger.info("Microphone opened (%d Hz, %d samples/frame)", self.sample_rate, frames_per_buffer)
        return mic

    def create_processor(self, microphone: MicrophoneStream,
                         on_frame: Callable[[np.ndarray], None]) -> FrameProcessor:
        loop = self._loop or asyncio.get_running_loop()
        return FrameProcessor(microphone, loop, on_frame)

    def close(self):
        if self.state == ContextState.CLOSED:
            return
        self.state = ContextState.CLOSED
        self._pa.terminate()
