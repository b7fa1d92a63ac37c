"""Gapless scheduling of inbound agent audio on the playback clock.

Each chunk starts at max(next_start_time, now) and pushes next_start_time
forward by its duration, so back-to-back chunks play without gaps or
overlap. A barge-in stops every source still queued or playing.
"""

import logging
from typing import Callable, Optional

from audio_devices import AudioSourceHandle, ContextState, PlaybackContext
from pcm_codec import PLAYBACK_SAMPLE_RATE, decode_inbound

logger = logging.getLogger(__name__)


class PlaybackScheduler:
    def __init__(self, context: PlaybackContext, sample_rate: int = PLAYBACK_SAMPLE_RATE,
                 on_speaking: Optional[Callable[[bool], None]] = None):
        self.context = context
        self.sample_rate = sample_rate
        self.on_speaking = on_speaking
        self.next_start_time = 0.0
        self.active_sources: set[AudioSourceHandle] = set()
        self.speaking = False

    def _set_speaking(self, value: bool):
        if self.speaking == value:
            return
        self.speaking = value
        if self.on_speaking:
            self.on_speaking(value)

    async def schedule_chunk(self, raw: bytes) -> AudioSourceHandle:
        """Decode one chunk and queue it right after whatever is already queued."""
        if self.context.state == ContextState.SUSPENDED:
            await self.context.resume()

        buffer = decode_inbound(raw, sample_rate=self.sample_rate)
        start = max(self.next_start_time, self.context.current_time)

        source = self.context.create_source(buffer)
        source.on_ended = lambda: self._on_source_ended(source)
        source.start(start)

        self.next_start_time = start + buffer.duration
        self.active_sources.add(source)
        self._set_speaking(True)
        return source

    def _on_source_ended(self, source: AudioSourceHandle):
        self.active_sources.discard(source)
        if not self.active_sources:
            self._set_speaking(False)

    def interrupt(self) -> int:
        """Stop everything queued or playing and reset the clock.

        Returns the number of sources that were stopped.
        """
        stopped = 0
        for source in list(self.active_sources):
            try:
                source.stop()
                stopped += 1
            except Exception as e:
                logger.debug("Source already stopped: %s", e)
        self.active_sources.clear()
        self.next_start_time = 0.0
        self._set_speaking(False)
        if stopped:
            logger.info("Playback interrupted, %d source(s) dropped", stopped)
        return stopped

    def reset(self):
        self.interrupt()
