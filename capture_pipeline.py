"""
Microphone capture for the live session.

A PyAudio callback stream reads 16kHz mono float32 frames. The callback runs on
PortAudio's thread, so it only copies the frame and posts it to the event loop;
volume metering and hand-off to the session channel happen on the loop. The
pipeline never holds more than the frame it is delivering.
"""

import asyncio
import logging

import numpy as np

from audio_codec import CHANNELS, INPUT_SAMPLE_RATE, compute_volume
from session_errors import PermissionDenied

logger = logging.getLogger(__name__)

FRAME_SIZE = 4096  # samples per frame (~256ms at 16kHz)


class CapturePipeline:
    """Mic -> fixed-size frames -> on_frame(samples).

    Args:
        on_frame: called on the event loop with each float32 frame
        on_volume: called on the event loop with the frame's [0, 1] loudness
        pa_factory: PyAudio constructor, replaceable in tests
    """

    def __init__(self, on_frame, on_volume=None, sample_rate=INPUT_SAMPLE_RATE,
                 frame_size=FRAME_SIZE, loop=None, pa_factory=None):
        self._on_frame = on_frame
        self._on_volume = on_volume or (lambda v: None)
        self.sample_rate = sample_rate
        self.frame_size = frame_size
        self._loop = loop
        self._pa_factory = pa_factory
        self._pyaudio = None
        self._pa = None
        self._stream = None
        self.running = False
        self.volume = 0.0
        self.frames_captured = 0

    @property
    def is_open(self) -> bool:
        return self._stream is not None

    def open(self):
        """Acquire the microphone without starting delivery.

        Raises PermissionDenied if the input device cannot be opened.
        """
        if self._stream is not None:
            return
        try:
            import pyaudio
        except ImportError as e:
            raise PermissionDenied(f"PyAudio is not installed: {e}") from e

        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        self._pyaudio = pyaudio
        try:
            self._pa = (self._pa_factory or pyaudio.PyAudio)()
            self._stream = self._pa.open(
                format=pyaudio.paFloat32,
                channels=CHANNELS,
                rate=self.sample_rate,
                input=True,
                frames_per_buffer=self.frame_size,
                stream_callback=self._on_audio,
                start=False,
            )
        except Exception as e:
            self._release()
            raise PermissionDenied(f"Microphone unavailable: {e}") from e
        logger.info("Microphone opened (%d Hz, %d-sample frames)", self.sample_rate, self.frame_size)

    def start(self):
        if self._stream is None:
            self.open()
        self.running = True
        self._stream.start_stream()
        logger.info("Audio capture started")

    def stop(self):
        """Release the microphone. Safe to call repeatedly or before open()."""
        was_active = self.running or self._stream is not None
        self.running = False
        self.volume = 0.0
        self._release()
        if was_active:
            logger.info("Audio capture stopped (%d frames)", self.frames_captured)

    def _release(self):
        stream, self._stream = self._stream, None
        pa, self._pa = self._pa, None
        if stream is not None:
            try:
                if stream.is_active():
                    stream.stop_stream()
                stream.close()
            except Exception as e:
                logger.warning("Microphone close error: %s", e)
        if pa is not None:
            pa.terminate()

    # ── PortAudio thread ───────────────────────────────────────────

    def _on_audio(self, in_data, frame_count, time_info, status):
        try:
            if in_data and self.running:
                samples = np.frombuffer(in_data, dtype=np.float32).copy()
                self._loop.call_soon_threadsafe(self.deliver, samples)
        except Exception as e:
            # Loop closed mid-shutdown, or a bad buffer: never stall capture
            logger.debug("Capture callback error: %s", e)
        return (None, self._pyaudio.paContinue)

    # ── Event loop ─────────────────────────────────────────────────

    def deliver(self, samples):
        """Meter one frame and hand it on. Runs on the event loop."""
        if not self.running:
            return
        self.frames_captured += 1
        try:
            self.volume = compute_volume(samples)
            self._on_volume(self.volume)
        except Exception as e:
            logger.error("Volume meter error: %s", e)
        try:
            self._on_frame(samples)
        except Exception as e:
            logger.error("Frame delivery error: %s", e)
