"""
Gapless playback of agent audio with instant barge-in cancel.

OutputDevice owns the PyAudio output stream. It keeps its own clock (seconds of
audio rendered so far) and mixes whatever sources are scheduled on that clock.
The PyAudio callback thread only reads an immutable tuple of sources; all
mutation happens on the event loop thread, which swaps a new tuple in. Ended
sources are reported back to the loop with call_soon_threadsafe.

PlaybackScheduler sits on top and decides *when* each chunk starts: right
after the previous one, or now if the device clock has already passed that.
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Callable

import numpy as np

from audio_codec import CHANNELS, OUTPUT_SAMPLE_RATE, PlayableBuffer

logger = logging.getLogger(__name__)

FRAMES_PER_BUFFER = 1024

_source_ids = itertools.count(1)


@dataclass(eq=False)
class ScheduledSource:
    """A buffer pinned to a position on the device timeline."""
    buffer: PlayableBuffer
    start_time: float
    start_frame: int
    on_ended: Callable | None = None
    id: int = field(default_factory=lambda: next(_source_ids))

    @property
    def end_frame(self) -> int:
        return self.start_frame + self.buffer.frames

    @property
    def end_time(self) -> float:
        return self.start_time + self.buffer.duration


class OutputDevice:
    """PyAudio output stream with a sample-accurate schedule.

    Args:
        sample_rate: device rate; buffers must match it
        loop: event loop that receives ended notifications
    """

    def __init__(self, sample_rate=OUTPUT_SAMPLE_RATE, channels=CHANNELS,
                 frames_per_buffer=FRAMES_PER_BUFFER, loop=None, pa_factory=None):
        self.sample_rate = sample_rate
        self.channels = channels
        self.frames_per_buffer = frames_per_buffer
        self._loop = loop
        self._pa_factory = pa_factory
        self._pa = None
        self._stream = None
        self._pyaudio = None
        self._sources: tuple = ()
        self._reported: set = set()  # touched only by the render thread
        self._frames_rendered = 0
        self.closed = False

    @property
    def current_time(self) -> float:
        return self._frames_rendered / float(self.sample_rate)

    def open(self):
        """Open and start the output stream (raises OSError if unavailable)."""
        import pyaudio

        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        self._pyaudio = pyaudio
        self._pa = (self._pa_factory or pyaudio.PyAudio)()
        try:
            self._stream = self._pa.open(
                format=pyaudio.paFloat32,
                channels=self.channels,
                rate=self.sample_rate,
                output=True,
                frames_per_buffer=self.frames_per_buffer,
                stream_callback=self._render,
            )
            self._stream.start_stream()
        except Exception:
            self._pa.terminate()
            self._pa = None
            raise
        logger.info("Playback started (%d Hz)", self.sample_rate)

    def start(self, buffer: PlayableBuffer, when: float, on_ended=None) -> ScheduledSource:
        if buffer.sample_rate != self.sample_rate:
            raise ValueError(f"Buffer rate {buffer.sample_rate} != device rate {self.sample_rate}")
        # A start already in the past plays from its first sample, right now
        start_frame = max(int(round(when * self.sample_rate)), self._frames_rendered)
        source = ScheduledSource(
            buffer=buffer,
            start_time=start_frame / float(self.sample_rate),
            start_frame=start_frame,
            on_ended=on_ended,
        )
        self._sources = self._sources + (source,)
        return source

    def stop(self, source: ScheduledSource):
        """Silence a source immediately. Stopping twice is harmless."""
        self._sources = tuple(s for s in self._sources if s is not source)

    def stop_all(self):
        self._sources = ()

    def close(self):
        if self.closed:
            return
        self.closed = True
        self._sources = ()
        if self._stream is not None:
            try:
                self._stream.stop_stream()
                self._stream.close()
            except Exception as e:
                logger.warning("Playback stream close error: %s", e)
            self._stream = None
        if self._pa is not None:
            self._pa.terminate()
            self._pa = None
        logger.info("Playback stopped")

    def mix(self, frame_count: int) -> np.ndarray:
        """Render the next frame_count frames and advance the clock.

        Called from the PyAudio thread; also usable directly in tests.
        """
        t0 = self._frames_rendered
        t1 = t0 + frame_count
        out = np.zeros((frame_count, self.channels), dtype=np.float32)
        sources = self._sources
        live_ids = set()
        for source in sources:
            live_ids.add(source.id)
            lo = max(source.start_frame, t0)
            hi = min(source.end_frame, t1)
            if lo < hi:
                out[lo - t0:hi - t0] += source.buffer.samples[lo - source.start_frame:hi - source.start_frame]
            if source.end_frame <= t1 and source.id not in self._reported:
                self._reported.add(source.id)
                self._notify_ended(source)
        self._reported &= live_ids
        self._frames_rendered = t1
        np.clip(out, -1.0, 1.0, out=out)
        return out

    def _notify_ended(self, source: ScheduledSource):
        if source.on_ended is None or self._loop is None:
            return
        try:
            self._loop.call_soon_threadsafe(source.on_ended, source)
        except RuntimeError:
            # Loop already closed during shutdown
            pass

    def _render(self, in_data, frame_count, time_info, status):
        try:
            if status:
                logger.debug("Playback status flags: %s", status)
            data = self.mix(frame_count).tobytes()
        except Exception as e:
            logger.error("Playback render error: %s", e)
            data = bytes(frame_count * self.channels * 4)
        return (data, self._pyaudio.paContinue)


class PlaybackScheduler:
    """Queue decoded chunks back to back on an OutputDevice.

    Args:
        device: anything with current_time, start(), stop(), close()
        on_idle: called when the last pending chunk finishes
    """

    def __init__(self, device, on_idle=None):
        self._device = device
        self._on_idle = on_idle or (lambda: None)
        self._pending: set = set()
        self.next_start_time = 0.0
        self.chunks_scheduled = 0
        self._closed = False

    @property
    def device(self):
        return self._device

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def is_playing(self) -> bool:
        return bool(self._pending)

    def schedule(self, buffer: PlayableBuffer) -> ScheduledSource:
        """Start buffer right after everything already scheduled."""
        if self._closed:
            raise RuntimeError("PlaybackScheduler is closed")
        start = max(self.next_start_time, self._device.current_time)
        source = self._device.start(buffer, start, on_ended=self._on_source_ended)
        self.next_start_time = start + buffer.duration
        self._pending.add(source)
        self.chunks_scheduled += 1
        return source

    def _on_source_ended(self, source):
        if source not in self._pending:
            return  # cancelled, or from an earlier turn
        self._pending.discard(source)
        self._device.stop(source)
        if not self._pending:
            self._on_idle()

    def cancel_all(self) -> int:
        """Stop everything now. Returns how many chunks were cut."""
        cancelled = len(self._pending)
        for source in list(self._pending):
            try:
                self._device.stop(source)
            except Exception as e:
                logger.warning("Error stopping playback source: %s", e)
        self._pending.clear()
        self.next_start_time = 0.0
        if cancelled:
            logger.info("Playback cancelled (%d chunks)", cancelled)
        return cancelled

    def close(self):
        if self._closed:
            return
        self._closed = True
        self.cancel_all()
        self._device.close()
