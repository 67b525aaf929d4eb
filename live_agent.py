#!/usr/bin/env python3
"""
Live caseworker session: the state machine that ties capture, playback, the
Live API channel and the tool dispatcher together.

    Disconnected -> Connecting -> Listening <-> Speaking
    Error is reachable from anywhere; disconnect() returns to Disconnected.

Everything runs on one asyncio loop. Inbound server frames and playback-idle
notifications go through a single asyncio.Queue and are handled one at a time,
in order. Device threads never touch session state; they post to the loop.
"""

import asyncio
import logging
import mimetypes
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import audio_codec
from capture_pipeline import CapturePipeline
from claim_state import ClaimDraft, ClaimDraftStore
from event_bus import EventBus, EventType
from pipeline_frames import FrameType, PipelineFrame
from playback_scheduler import OutputDevice, PlaybackScheduler
from session_channel import DEFAULT_MODEL, SessionChannel, SessionConfig
from session_errors import ConnectionFailed, PermissionDenied, SessionError
from tool_dispatcher import ToolCallDispatcher, default_registry
from transcript_log import FragmentAccumulator, TranscriptLog

logger = logging.getLogger(__name__)

# Longest an agent turn may keep us in SPEAKING before we give up on it
MAX_TURN_SECONDS = 90.0

SYSTEM_INSTRUCTION = """You are CivicAlly, a compassionate, rigorous, and expert Social Protection Caseworker.
Your goal: guide the user to successfully claim unclaimed bank deposits (India).
Your persona: empathetic, plain language, rigorous.
Operational rules:
1. Speak clearly and simply.
2. Ask one question at a time.
3. If the user provides a document image, analyze it to extract name, account number, or bank name.
4. Use the "updateClaimDraft" tool to update the claim form whenever you get new information.
5. If a death certificate is shown, set "deceasedName".
6. If a passbook is shown, set "bankName" and "accountNumber".
7. Only set status to "ready" once every field is filled, then ask the user to review and submit.
8. Be proactive: "I see you uploaded a passbook. I've updated the bank details."
"""


class AgentState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    LISTENING = "listening"
    SPEAKING = "speaking"
    ERROR = "error"


_LIVE_STATES = (AgentState.LISTENING, AgentState.SPEAKING)

_STOP = None  # consumer queue sentinel


@dataclass(frozen=True)
class AgentSnapshot:
    """Everything the presentation layer reads, captured at one instant."""
    state: AgentState
    draft: ClaimDraft
    transcript: tuple
    volume: float
    error: str | None


def default_model() -> str:
    return os.environ.get("CASEWORKER_MODEL") or DEFAULT_MODEL


class LiveAgent:
    """Voice caseworker session.

    Args:
        channel: SessionChannel (or a fake with the same methods)
        capture_factory: builds the mic pipeline; called with on_frame,
            on_volume and loop keyword arguments
        output_factory: builds the output device; called with the loop
        max_turn_seconds: speaking watchdog, None to disable
    """

    def __init__(self, channel=None, model=None, system_instruction=SYSTEM_INSTRUCTION,
                 capture_factory=None, output_factory=None, registry=None, bus=None,
                 max_turn_seconds=MAX_TURN_SECONDS):
        self.channel = channel or SessionChannel()
        self.model = model or default_model()
        self.system_instruction = system_instruction
        self.bus = bus or EventBus("live_agent")
        self.max_turn_seconds = max_turn_seconds

        self._capture_factory = capture_factory or CapturePipeline
        self._output_factory = output_factory or (lambda loop: OutputDevice(loop=loop))

        self.state = AgentState.DISCONNECTED
        self.error: str | None = None
        self.volume = 0.0

        self.draft_store = ClaimDraftStore(on_change=self._on_draft_change)
        self.transcript = TranscriptLog(on_append=self._on_log_entry)
        self._fragments = FragmentAccumulator(self.transcript)
        self.dispatcher = ToolCallDispatcher(registry or default_registry(self.draft_store))

        # Generation ID for interrupt coherence: bumps on every interruption
        # so late playback notifications from the old turn are ignored.
        self.generation_id = 0

        self._connect_attempt = 0
        self._handle = None
        self._capture = None
        self._scheduler = None
        self._events_q: asyncio.Queue | None = None
        self._reader_task: asyncio.Task | None = None
        self._consumer_task: asyncio.Task | None = None
        self._turn_timer = None

    # ── Presentation boundary ─────────────────────────────────────

    @property
    def draft(self) -> ClaimDraft:
        return self.draft_store.draft

    @property
    def handle(self):
        return self._handle

    @property
    def scheduler(self):
        return self._scheduler

    def snapshot(self) -> AgentSnapshot:
        return AgentSnapshot(
            state=self.state,
            draft=self.draft_store.draft,
            transcript=self.transcript.snapshot(),
            volume=self.volume,
            error=self.error,
        )

    def _set_state(self, state: AgentState):
        if state == self.state:
            return
        logger.info("Live agent: %s -> %s", self.state.value, state.value)
        self.state = state
        if state != AgentState.SPEAKING:
            self._cancel_turn_timer()
        self.bus.emit(EventType.STATE, state=state.value)

    def _set_error(self, message: str | None):
        self.error = message
        if message:
            self.bus.emit(EventType.ERROR, message=message)

    def _log(self, role: str, text: str):
        self.transcript.append(role, text)

    def _on_log_entry(self, entry):
        self.bus.emit(EventType.TRANSCRIPT, id=entry.id, role=entry.role, text=entry.text)

    def _on_draft_change(self, draft: ClaimDraft):
        self.bus.emit(EventType.DRAFT, **draft.to_dict())

    def _on_volume(self, level: float):
        self.volume = level
        self.bus.emit(EventType.VOLUME, level=level)

    # ── Connect / disconnect ──────────────────────────────────────

    def build_config(self) -> SessionConfig:
        return SessionConfig(
            model=self.model,
            system_instruction=self.system_instruction,
            tools=self.dispatcher.registry.declarations(),
        )

    async def connect(self) -> bool:
        """Open devices and the Live API session. Returns True once listening."""
        if self.state in (AgentState.CONNECTING,) + _LIVE_STATES:
            logger.warning("Live agent: connect() ignored, already %s", self.state.value)
            return False

        self._connect_attempt += 1
        attempt = self._connect_attempt
        loop = asyncio.get_running_loop()

        # Fresh session state
        self.transcript = TranscriptLog(on_append=self._on_log_entry)
        self._fragments = FragmentAccumulator(self.transcript)
        self.draft_store.reset()
        self._set_error(None)
        self._events_q = asyncio.Queue()
        self._set_state(AgentState.CONNECTING)
        self._log("system", "Initializing audio secure context...")

        try:
            output = self._output_factory(loop)
            output.open()
            self._scheduler = PlaybackScheduler(output, on_idle=self._on_playback_idle)
            self._capture = self._capture_factory(
                on_frame=self._on_mic_frame, on_volume=self._on_volume, loop=loop)
            self._capture.open()
        except PermissionDenied as e:
            await self._fail(e)
            return False
        except (OSError, ImportError) as e:
            await self._fail(PermissionDenied(f"Audio device unavailable: {e}"))
            return False

        self._log("system", "Connecting to CivicAlly caseworker...")
        try:
            handle = await self.channel.connect(self.build_config())
        except ConnectionFailed as e:
            if attempt == self._connect_attempt:
                await self._fail(e)
            return False
        except asyncio.CancelledError:
            await self._teardown()
            self._set_state(AgentState.DISCONNECTED)
            raise

        if attempt != self._connect_attempt or self.state != AgentState.CONNECTING:
            # disconnect() arrived while we were connecting; do not adopt
            logger.info("Live agent: Discarding late connection %r", handle)
            await self.channel.close(handle)
            return False

        self._handle = handle
        try:
            self._capture.start()
        except PermissionDenied as e:
            await self._fail(e)
            return False
        except OSError as e:
            # _fail closes the adopted handle along with the devices
            await self._fail(PermissionDenied(f"Microphone failed to start: {e}"))
            return False
        self._set_state(AgentState.LISTENING)
        self._log("system", "Connected. Speak now.")

        queue = self._events_q
        self._reader_task = asyncio.create_task(self._read_events(handle, queue))
        self._consumer_task = asyncio.create_task(self._consume_events(queue))
        return True

    async def disconnect(self):
        """User hang-up. Idempotent; safe during an in-flight connect."""
        self._connect_attempt += 1
        was_connected = self.state != AgentState.DISCONNECTED
        await self._teardown()
        if was_connected:
            self._log("system", "Session ended")
        self._set_state(AgentState.DISCONNECTED)

    async def _fail(self, error: SessionError):
        logger.error("Live agent: %s", error)
        await self._teardown()
        self._set_error(error.user_message)
        self._set_state(AgentState.ERROR)

    async def _teardown(self):
        """Release capture, channel and playback; each exactly once."""
        self._cancel_turn_timer()
        self._fragments.flush()
        self.volume = 0.0

        capture, self._capture = self._capture, None
        if capture is not None:
            capture.stop()

        scheduler, self._scheduler = self._scheduler, None
        if scheduler is not None:
            scheduler.close()

        handle, self._handle = self._handle, None
        if handle is not None:
            await self.channel.close(handle)

        current = asyncio.current_task()
        reader, self._reader_task = self._reader_task, None
        if reader is not None and reader is not current and not reader.done():
            reader.cancel()

        consumer, self._consumer_task = self._consumer_task, None
        if consumer is not None and not consumer.done():
            if consumer is current:
                # Finish the frame in hand, then exit
                self._events_q.put_nowait(_STOP)
            else:
                consumer.cancel()

    # ── Event loop plumbing ───────────────────────────────────────

    async def _read_events(self, handle, queue: asyncio.Queue):
        try:
            async for frame in self.channel.events(handle):
                frame.metadata["handle_id"] = handle.id
                queue.put_nowait(frame)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("Live agent: Event reader failed: %s", e)
            queue.put_nowait(PipelineFrame(type=FrameType.TRANSPORT_ERROR, data=str(e),
                                           metadata={"handle_id": handle.id}))

    async def _consume_events(self, queue: asyncio.Queue):
        while True:
            frame = await queue.get()
            if frame is _STOP:
                break
            try:
                await self.handle_frame(frame)
            except Exception as e:
                # One bad event must not end an otherwise healthy session
                logger.exception("Live agent: Error handling %s: %s", frame.type.name, e)

    def _post(self, frame: PipelineFrame):
        if self._events_q is not None:
            self._events_q.put_nowait(frame)

    def _on_playback_idle(self):
        self._post(PipelineFrame(type=FrameType.PLAYBACK_IDLE, generation_id=self.generation_id))

    def _on_mic_frame(self, samples):
        if self._handle is not None:
            self.channel.send_audio_frame(self._handle, samples)

    # ── Speaking watchdog ─────────────────────────────────────────

    def _start_turn_timer(self):
        self._cancel_turn_timer()
        if not self.max_turn_seconds:
            return
        loop = asyncio.get_running_loop()
        gen_id = self.generation_id
        self._turn_timer = loop.call_later(
            self.max_turn_seconds,
            lambda: self._post(PipelineFrame(type=FrameType.TURN_TIMEOUT, generation_id=gen_id)),
        )

    def _cancel_turn_timer(self):
        if self._turn_timer is not None:
            self._turn_timer.cancel()
            self._turn_timer = None

    # ── Frame handling ────────────────────────────────────────────

    async def handle_frame(self, frame: PipelineFrame):
        """Apply one inbound frame. Frames from a stale handle are dropped."""
        handle_id = frame.metadata.get("handle_id")
        if handle_id is not None and (self._handle is None or self._handle.id != handle_id):
            logger.debug("Live agent: Dropping %s from stale handle %s", frame.type.name, handle_id)
            return

        ft = frame.type
        if ft == FrameType.AUDIO_CHUNK:
            self._on_audio_chunk(frame)
        elif ft == FrameType.TRANSCRIPT:
            self._fragments.add(frame.metadata.get("role", "agent"), frame.data or "")
        elif ft == FrameType.TOOL_CALL_BATCH:
            self._on_tool_calls(frame.data or [])
        elif ft == FrameType.INTERRUPTED:
            self._on_interrupted()
        elif ft == FrameType.TURN_COMPLETE:
            self._fragments.flush()
        elif ft == FrameType.PLAYBACK_IDLE:
            self._on_playback_drained(frame)
        elif ft == FrameType.TURN_TIMEOUT:
            self._on_turn_timeout(frame)
        elif ft == FrameType.CLOSED:
            await self._on_closed()
        elif ft == FrameType.TRANSPORT_ERROR:
            await self._fail(ConnectionFailed(f"Transport error: {frame.data}"))
        else:
            logger.warning("Live agent: Unhandled frame type %s", ft)

    def _on_audio_chunk(self, frame: PipelineFrame):
        if self._scheduler is None or self.state not in _LIVE_STATES:
            return
        samples = audio_codec.decode(frame.data or b"")
        if samples.size == 0:
            return
        buffer = audio_codec.build_playable_buffer(
            samples, audio_codec.OUTPUT_SAMPLE_RATE, audio_codec.CHANNELS)
        self._scheduler.schedule(buffer)
        if self.state == AgentState.LISTENING:
            self._set_state(AgentState.SPEAKING)
            self._start_turn_timer()

    def _on_playback_drained(self, frame: PipelineFrame):
        if frame.generation_id != self.generation_id:
            return
        if self._scheduler is not None and self._scheduler.pending:
            return  # new audio was scheduled after the idle notice was posted
        if self.state == AgentState.SPEAKING:
            self._set_state(AgentState.LISTENING)

    def _on_tool_calls(self, calls):
        self._log("system", "Agent is updating the claim form...")
        results = self.dispatcher.dispatch(calls)
        for call, result in zip(calls, results):
            self.bus.emit(EventType.TOOL_CALL, call_id=call.call_id, name=call.name,
                          response=result.response)
        if self._handle is None:
            logger.warning("Live agent: Tool results dropped, no open session")
            return
        self.channel.send_tool_results(self._handle, results)

    def _on_interrupted(self):
        self.generation_id += 1
        if self._scheduler is not None:
            self._scheduler.cancel_all()
        self._fragments.flush()
        self._log("system", "Agent interrupted")
        if self.state in _LIVE_STATES:
            self._set_state(AgentState.LISTENING)

    def _on_turn_timeout(self, frame: PipelineFrame):
        if frame.generation_id != self.generation_id or self.state != AgentState.SPEAKING:
            return
        logger.warning("Live agent: Agent turn exceeded %.0fs, resetting playback", self.max_turn_seconds)
        self.generation_id += 1
        if self._scheduler is not None:
            self._scheduler.cancel_all()
        self._fragments.flush()
        self._log("system", "Agent response timed out")
        self._set_state(AgentState.LISTENING)

    async def _on_closed(self):
        await self._teardown()
        self._log("system", "Connection closed")
        self._set_state(AgentState.DISCONNECTED)

    # ── Documents ─────────────────────────────────────────────────

    async def upload_document(self, path) -> bool:
        """Send a photographed document into the conversation.

        Failures become a system note in the transcript; the session goes on.
        """
        path = Path(path)
        if self._handle is None or self.state not in _LIVE_STATES:
            self._log("system", f"Upload failed: not connected ({path.name})")
            return False

        self._log("system", f"Uploading {path.name}...")
        try:
            mime_type = mimetypes.guess_type(path.name)[0]
            if not mime_type or not mime_type.startswith("image/"):
                raise ValueError(f"Unsupported document type: {mime_type or 'unknown'}")
            data = await asyncio.get_running_loop().run_in_executor(None, path.read_bytes)
            if self._handle is None:
                raise ConnectionFailed("Session ended during upload")
            self.channel.send_document(self._handle, mime_type, data)
        except (OSError, ValueError, SessionError) as e:
            logger.error("Live agent: Upload failed: %s", e)
            self._log("system", "Upload failed")
            return False

        self._log("user", f"[Uploaded Image: {path.name}]")
        return True

    def submit_claim(self) -> ClaimDraft:
        """Explicit user action: mark a ready claim as submitted."""
        return self.draft_store.submit()
