#!/usr/bin/env python3
"""
Gemini Live (BidiGenerateContent) websocket channel.

Opens the duplex session, streams microphone PCM and uploaded documents out,
and turns server messages into PipelineFrames in arrival order. The channel
only parses; deciding what a frame means is LiveAgent's job.
"""

import asyncio
import itertools
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

try:
    import websockets
    import websockets.exceptions
    WEBSOCKETS_AVAILABLE = True
except ImportError:
    WEBSOCKETS_AVAILABLE = False

import audio_codec
from pipeline_frames import FrameType, PipelineFrame
from session_errors import ConnectionFailed, MalformedEvent, NotConnected
from tool_dispatcher import ToolCall, ToolResult

logger = logging.getLogger(__name__)

# Gemini Live endpoint
LIVE_URL = ("wss://generativelanguage.googleapis.com/ws/"
            "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent")
DEFAULT_MODEL = "gemini-2.5-flash-native-audio-preview-09-2025"

INPUT_AUDIO_MIME = f"audio/pcm;rate={audio_codec.INPUT_SAMPLE_RATE}"

# Seconds to wait for setupComplete after the socket opens
SETUP_TIMEOUT = 15.0

# Audio frames allowed to wait in the outbox before new ones are dropped.
# At 4096 samples/16kHz this is ~12s of speech.
MAX_QUEUED_AUDIO = 48

_CLOSE = object()


@dataclass
class SessionConfig:
    """Everything sent in the setup message."""
    model: str = DEFAULT_MODEL
    system_instruction: str = ""
    tools: list = field(default_factory=list)  # function declarations
    response_modalities: list = field(default_factory=lambda: ["AUDIO"])
    input_transcription: bool = True
    output_transcription: bool = True

    def to_setup_message(self) -> dict:
        model = self.model if self.model.startswith("models/") else f"models/{self.model}"
        setup = {
            "model": model,
            "generationConfig": {"responseModalities": list(self.response_modalities)},
        }
        if self.system_instruction:
            setup["systemInstruction"] = {"parts": [{"text": self.system_instruction}]}
        if self.tools:
            setup["tools"] = [{"functionDeclarations": list(self.tools)}]
        if self.input_transcription:
            setup["inputAudioTranscription"] = {}
        if self.output_transcription:
            setup["outputAudioTranscription"] = {}
        return {"setup": setup}


_handle_ids = itertools.count(1)


class SessionHandle:
    """One live connection. Owned by whoever called SessionChannel.connect()."""

    def __init__(self, ws, config: SessionConfig):
        self.id = next(_handle_ids)
        self.ws = ws
        self.config = config
        self.closed = False
        self.frames_sent = 0
        self.frames_dropped = 0
        self._outbox: asyncio.Queue = asyncio.Queue()
        self._queued_audio = 0
        self._writer_task: asyncio.Task | None = None

    @property
    def is_open(self) -> bool:
        return not self.closed

    def __repr__(self):
        state = "closed" if self.closed else "open"
        return f"<SessionHandle {self.id} {state}>"


def get_api_key():
    """Get the Gemini API key."""
    for var in ("GEMINI_API_KEY", "GOOGLE_API_KEY", "API_KEY"):
        key = os.environ.get(var)
        if key:
            return key
    for path in [
        Path.home() / ".config" / "gemini" / "api_key",
        Path.home() / ".gemini" / "api_key",
    ]:
        if path.exists():
            return path.read_text().strip()
    return None


def is_available():
    """Check if the Live API can be reached from this machine."""
    return WEBSOCKETS_AVAILABLE and get_api_key() is not None


# ── Inbound parsing ──────────────────────────────────────────────

def _load_message(raw) -> dict:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedEvent(f"non-UTF8 message: {e}") from e
    try:
        data = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as e:
        raise MalformedEvent(f"invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedEvent(f"expected an object, got {type(data).__name__}")
    return data


def _parse_tool_calls(tool_call) -> list[ToolCall]:
    if not isinstance(tool_call, dict):
        raise MalformedEvent("toolCall is not an object")
    calls = []
    for fc in tool_call.get("functionCalls") or []:
        if not isinstance(fc, dict) or not fc.get("name"):
            raise MalformedEvent(f"bad function call entry: {fc!r}")
        args = fc.get("args") or {}
        calls.append(ToolCall(call_id=str(fc.get("id", "")), name=fc["name"], args=args))
    return calls


def parse_server_message(raw) -> list[PipelineFrame]:
    """Turn one server message into zero or more frames, in message order.

    Raises MalformedEvent if the payload has an unexpected shape.
    """
    data = _load_message(raw)
    try:
        return _parse_message(data)
    except (AttributeError, TypeError, KeyError) as e:
        raise MalformedEvent(f"unexpected message shape: {e}") from e


def _parse_message(data: dict) -> list[PipelineFrame]:
    frames = []

    if "toolCall" in data:
        calls = _parse_tool_calls(data["toolCall"])
        if calls:
            frames.append(PipelineFrame(type=FrameType.TOOL_CALL_BATCH, data=calls))

    content = data.get("serverContent")
    if content is not None:
        if not isinstance(content, dict):
            raise MalformedEvent("serverContent is not an object")

        for key, role in (("inputTranscription", "user"), ("outputTranscription", "agent")):
            transcription = content.get(key)
            if isinstance(transcription, dict) and transcription.get("text"):
                frames.append(PipelineFrame(type=FrameType.TRANSCRIPT,
                                            data=transcription["text"],
                                            metadata={"role": role}))

        model_turn = content.get("modelTurn") or {}
        for part in model_turn.get("parts") or []:
            inline = part.get("inlineData") if isinstance(part, dict) else None
            if not inline or not inline.get("data"):
                continue
            mime = inline.get("mimeType", "audio/pcm")
            if not mime.startswith("audio/"):
                continue
            try:
                pcm = audio_codec.from_base64(inline["data"])
            except ValueError as e:
                raise MalformedEvent(str(e)) from e
            frames.append(PipelineFrame(type=FrameType.AUDIO_CHUNK, data=pcm,
                                        metadata={"mime_type": mime}))

        if content.get("interrupted"):
            frames.append(PipelineFrame(type=FrameType.INTERRUPTED))
        if content.get("turnComplete"):
            frames.append(PipelineFrame(type=FrameType.TURN_COMPLETE))

    if "goAway" in data:
        logger.warning("Server going away: %s", data["goAway"])
    if "toolCallCancellation" in data:
        logger.info("Server cancelled tool calls: %s", data["toolCallCancellation"])

    return frames


# ── Channel ──────────────────────────────────────────────────────

class SessionChannel:
    """Duplex streaming connection to the Live API.

    Args:
        api_key: Gemini API key (defaults to get_api_key())
        connect_fn: coroutine factory with websockets.connect's signature;
            tests pass a fake
    """

    def __init__(self, api_key=None, connect_fn=None, url=LIVE_URL):
        self.api_key = api_key if api_key is not None else get_api_key()
        self.url = url
        if connect_fn is None and WEBSOCKETS_AVAILABLE:
            connect_fn = websockets.connect
        self._connect_fn = connect_fn

    async def connect(self, config: SessionConfig) -> SessionHandle:
        """Open the socket, send setup, wait for setupComplete."""
        if not self.api_key:
            raise ConnectionFailed("API key is missing",
                                   user_message="API Key is missing. Please check your environment configuration.")
        if self._connect_fn is None:
            raise ConnectionFailed("websockets is not installed")

        try:
            ws = await self._connect_fn(
                f"{self.url}?key={self.api_key}",
                ping_interval=20,
                max_size=None,
            )
        except Exception as e:
            raise ConnectionFailed(f"Could not open Live API socket: {e}") from e

        try:
            await ws.send(json.dumps(config.to_setup_message()))
            raw = await asyncio.wait_for(ws.recv(), timeout=SETUP_TIMEOUT)
            reply = _load_message(raw)
            if "setupComplete" not in reply:
                raise ConnectionFailed(f"Unexpected setup reply: {str(reply)[:200]}")
        except asyncio.CancelledError:
            await self._close_quietly(ws)
            raise
        except ConnectionFailed:
            await self._close_quietly(ws)
            raise
        except Exception as e:
            await self._close_quietly(ws)
            raise ConnectionFailed(f"Live API setup failed: {e}") from e

        handle = SessionHandle(ws, config)
        handle._writer_task = asyncio.create_task(self._writer(handle))
        logger.info("Live API: Connected (model=%s, %d tools)", config.model, len(config.tools))
        return handle

    @staticmethod
    async def _close_quietly(ws):
        try:
            await ws.close()
        except Exception as e:
            logger.debug("Socket close error: %s", e)

    # ── Outbound ──────────────────────────────────────────────────

    def _require_open(self, handle):
        if handle is None or handle.closed:
            raise NotConnected("No open session")

    def _enqueue(self, handle: SessionHandle, message: dict, is_audio=False):
        if is_audio:
            handle._queued_audio += 1
        handle._outbox.put_nowait((message, is_audio))

    def send_audio_frame(self, handle: SessionHandle, frame) -> bool:
        """Queue one mic frame for sending. Returns False if it was dropped."""
        if handle is None or handle.closed:
            return False
        if handle._queued_audio >= MAX_QUEUED_AUDIO:
            handle.frames_dropped += 1
            if handle.frames_dropped % 50 == 1:
                logger.warning("Live API: Outbox full, dropped %d audio frames", handle.frames_dropped)
            return False
        pcm = audio_codec.encode(frame)
        self._enqueue(handle, {
            "realtimeInput": {
                "mediaChunks": [{"mimeType": INPUT_AUDIO_MIME, "data": audio_codec.to_base64(pcm)}]
            }
        }, is_audio=True)
        return True

    def send_document(self, handle: SessionHandle, mime_type: str, data: bytes):
        """Send an uploaded image as realtime media input."""
        self._require_open(handle)
        if not mime_type:
            raise ValueError("mime_type is required")
        self._enqueue(handle, {
            "realtimeInput": {
                "mediaChunks": [{"mimeType": mime_type, "data": audio_codec.to_base64(data)}]
            }
        })
        logger.info("Live API: Queued document (%s, %d bytes)", mime_type, len(data))

    def send_tool_result(self, handle: SessionHandle, result: ToolResult):
        self.send_tool_results(handle, [result])

    def send_tool_results(self, handle: SessionHandle, results: list[ToolResult]):
        """Acknowledge tool calls; one functionResponse per call."""
        self._require_open(handle)
        if not results:
            return
        self._enqueue(handle, {
            "toolResponse": {"functionResponses": [r.to_wire() for r in results]}
        })

    async def _writer(self, handle: SessionHandle):
        """Single sender so messages leave in the order they were queued."""
        ws = handle.ws
        while True:
            item = await handle._outbox.get()
            if item is _CLOSE:
                break
            message, is_audio = item
            if is_audio:
                handle._queued_audio -= 1
            try:
                await ws.send(json.dumps(message))
            except Exception as e:
                # The reader surfaces the close; just stop sending
                logger.info("Live API: Send failed, writer stopping: %s", e)
                break
            if is_audio:
                handle.frames_sent += 1
                if handle.frames_sent % 100 == 0:
                    logger.info("Live API: Sent %d audio frames", handle.frames_sent)

    async def drain(self, handle: SessionHandle):
        """Wait until everything queued so far has been handed to the socket."""
        while not handle.closed and not handle._outbox.empty():
            if handle._writer_task is None or handle._writer_task.done():
                return
            await asyncio.sleep(0)

    # ── Inbound ───────────────────────────────────────────────────

    async def events(self, handle: SessionHandle):
        """Async generator of PipelineFrames in arrival order.

        Ends with exactly one CLOSED or TRANSPORT_ERROR frame.
        """
        try:
            async for raw in handle.ws:
                try:
                    frames = parse_server_message(raw)
                except MalformedEvent as e:
                    logger.warning("Live API: Skipping malformed message: %s", e)
                    continue
                for frame in frames:
                    yield frame
        except Exception as e:
            if handle.closed:
                yield PipelineFrame(type=FrameType.CLOSED)
                return
            if WEBSOCKETS_AVAILABLE and isinstance(e, websockets.exceptions.ConnectionClosedOK):
                yield PipelineFrame(type=FrameType.CLOSED, data=str(e))
                return
            logger.error("Live API: Transport error: %s", e)
            yield PipelineFrame(type=FrameType.TRANSPORT_ERROR, data=str(e))
            return
        logger.info("Live API: Connection closed")
        yield PipelineFrame(type=FrameType.CLOSED)

    async def close(self, handle: SessionHandle | None):
        """Release the socket. Safe to call repeatedly."""
        if handle is None or handle.closed:
            return
        handle.closed = True
        handle._outbox.put_nowait(_CLOSE)
        task = handle._writer_task
        try:
            if task is not None and not task.done():
                task.cancel()
                # wait() leaves the writer's outcome alone but still lets a
                # cancellation of our caller through
                await asyncio.wait({task})
        finally:
            await self._close_quietly(handle.ws)
        logger.info("Live API: Disconnected (sent %d frames, dropped %d)",
                    handle.frames_sent, handle.frames_dropped)
