#!/usr/bin/env python3
"""Tests for the live caseworker state machine.

Tests: connect/listen/speak cycle, tool-call acknowledgement, barge-in,
       teardown idempotence, late connections, transport errors, server
       close, transcript assembly, document upload, speaking watchdog.

Uses a fake channel and fake audio devices; no network, no PortAudio.

Run: python3 test_live_agent.py
"""

import asyncio
import itertools
import sys
import tempfile
from pathlib import Path

import numpy as np

sys.path.insert(0, str(Path(__file__).parent))

PASSED = 0
FAILED = 0
ERRORS = []


def test(name):
    def decorator(fn):
        fn._test_name = name
        return fn
    return decorator


def run_test(fn):
    global PASSED, FAILED
    name = getattr(fn, '_test_name', fn.__name__)
    try:
        if asyncio.iscoroutinefunction(fn):
            asyncio.run(fn())
        else:
            fn()
        PASSED += 1
        print(f"  PASS: {name}")
    except AssertionError as e:
        FAILED += 1
        ERRORS.append((name, str(e)))
        print(f"  FAIL: {name} -- {e}")
    except Exception as e:
        FAILED += 1
        ERRORS.append((name, f"{type(e).__name__}: {e}"))
        print(f"  ERROR: {name} -- {type(e).__name__}: {e}")


# ── Helpers: fake channel and devices ─────────────────────────────

_ids = itertools.count(1)


class FakeHandle:
    def __init__(self):
        self.id = next(_ids)
        self.inbound = asyncio.Queue()
        self.closed = False


class FakeChannel:
    """Records everything LiveAgent sends; tests push inbound frames."""

    def __init__(self, connect_error=None, gate=None):
        self.connect_error = connect_error
        self.gate = gate
        self.configs = []
        self.handles = []
        self.closed = []
        self.audio_frames = []
        self.tool_results = []
        self.documents = []

    async def connect(self, config):
        self.configs.append(config)
        if self.gate is not None:
            await self.gate.wait()
        if self.connect_error is not None:
            raise self.connect_error
        handle = FakeHandle()
        self.handles.append(handle)
        return handle

    async def events(self, handle):
        from pipeline_frames import FrameType
        while True:
            frame = await handle.inbound.get()
            yield frame
            if frame.type in (FrameType.CLOSED, FrameType.TRANSPORT_ERROR):
                return

    def send_audio_frame(self, handle, frame):
        self.audio_frames.append(frame)
        return True

    def send_tool_results(self, handle, results):
        self.tool_results.append(list(results))

    def send_document(self, handle, mime_type, data):
        self.documents.append((mime_type, data))

    async def close(self, handle):
        if handle is None or handle.closed:
            return
        handle.closed = True
        self.closed.append(handle)


class FakeOutput:
    def __init__(self, loop):
        from playback_scheduler import ScheduledSource
        self._source_cls = ScheduledSource
        self.current_time = 0.0
        self.opened = 0
        self.close_calls = 0
        self.started = []
        self.stopped = []

    def open(self):
        self.opened += 1

    def start(self, buffer, when, on_ended=None):
        source = self._source_cls(buffer=buffer, start_time=when,
                                  start_frame=int(round(when * 24000)), on_ended=on_ended)
        self.started.append(source)
        return source

    def stop(self, source):
        self.stopped.append(source)

    def close(self):
        self.close_calls += 1

    def end(self, source):
        source.on_ended(source)


class FakeCapture:
    def __init__(self, on_frame, on_volume=None, loop=None, open_error=None, start_error=None):
        self.on_frame = on_frame
        self.start_error = start_error
        self.on_volume = on_volume
        self.open_error = open_error
        self.started = 0
        self.stop_calls = 0

    def open(self):
        if self.open_error is not None:
            raise self.open_error

    def start(self):
        if self.start_error is not None:
            raise self.start_error
        self.started += 1

    def stop(self):
        self.stop_calls += 1


def make_agent(channel=None, capture_error=None, start_error=None, max_turn_seconds=None):
    from live_agent import LiveAgent
    devices = {}

    def output_factory(loop):
        devices["output"] = FakeOutput(loop)
        return devices["output"]

    def capture_factory(**kwargs):
        devices["capture"] = FakeCapture(open_error=capture_error, start_error=start_error, **kwargs)
        return devices["capture"]

    agent = LiveAgent(channel=channel or FakeChannel(), model="test-model",
                      capture_factory=capture_factory, output_factory=output_factory,
                      max_turn_seconds=max_turn_seconds)
    states = []
    agent.bus.on("state", lambda evt: states.append(evt.payload["state"]))
    return agent, devices, states


async def settle(rounds=10):
    for _ in range(rounds):
        await asyncio.sleep(0)


def push(agent, frame_type, data=None, **metadata):
    from pipeline_frames import PipelineFrame
    agent.handle.inbound.put_nowait(PipelineFrame(type=frame_type, data=data, metadata=metadata))


def pcm_chunk(frames=2400, value=0.1):
    from audio_codec import encode
    return encode(np.full(frames, value, dtype=np.float32))


def system_notes(agent):
    return [e.text for e in agent.transcript.snapshot() if e.role == "system"]


# ======================================================================
# Test Group 1: connect, speak, listen
# ======================================================================

@test("connect opens devices and the channel, then listens")
async def test_connect_listening():
    from live_agent import AgentState
    channel = FakeChannel()
    agent, devices, states = make_agent(channel)
    assert await agent.connect() is True
    assert agent.state == AgentState.LISTENING
    assert states == ["connecting", "listening"]
    assert devices["output"].opened == 1
    assert devices["capture"].started == 1
    assert channel.configs[0].model == "test-model"
    assert channel.configs[0].tools[0]["name"] == "updateClaimDraft"
    assert "Connected. Speak now." in system_notes(agent)
    await agent.disconnect()


@test("mic frames are forwarded to the open session")
async def test_mic_forwarded():
    channel = FakeChannel()
    agent, devices, _ = make_agent(channel)
    await agent.connect()
    devices["capture"].on_frame(np.zeros(4096, dtype=np.float32))
    devices["capture"].on_volume(0.4)
    assert len(channel.audio_frames) == 1
    assert agent.snapshot().volume == 0.4
    await agent.disconnect()


@test("agent audio moves to speaking, drained playback back to listening")
async def test_speak_then_listen():
    from live_agent import AgentState
    from pipeline_frames import FrameType
    agent, devices, states = make_agent()
    await agent.connect()

    push(agent, FrameType.AUDIO_CHUNK, pcm_chunk())
    await settle()
    assert agent.state == AgentState.SPEAKING
    assert agent.scheduler.pending == 1

    devices["output"].end(devices["output"].started[0])
    await settle()
    assert agent.state == AgentState.LISTENING
    assert states == ["connecting", "listening", "speaking", "listening"]
    await agent.disconnect()


@test("idle notice is ignored if more audio arrived in the meantime")
async def test_idle_with_new_audio():
    from live_agent import AgentState
    from pipeline_frames import FrameType, PipelineFrame
    agent, devices, _ = make_agent()
    await agent.connect()
    push(agent, FrameType.AUDIO_CHUNK, pcm_chunk())
    push(agent, FrameType.AUDIO_CHUNK, pcm_chunk())
    await settle()
    await agent.handle_frame(PipelineFrame(type=FrameType.PLAYBACK_IDLE, generation_id=0))
    assert agent.state == AgentState.SPEAKING
    await agent.disconnect()


@test("transcription fragments become one entry per turn")
async def test_transcript_fragments():
    from pipeline_frames import FrameType
    agent, _, _ = make_agent()
    transcripts = []
    agent.bus.on("transcript", lambda evt: transcripts.append(evt.payload))
    await agent.connect()
    push(agent, FrameType.TRANSCRIPT, "My father ", role="user")
    push(agent, FrameType.TRANSCRIPT, "passed away.", role="user")
    push(agent, FrameType.TRANSCRIPT, "I am so sorry. ", role="agent")
    push(agent, FrameType.TRANSCRIPT, "Let us start.", role="agent")
    push(agent, FrameType.TURN_COMPLETE)
    await settle()
    spoken = [(e.role, e.text) for e in agent.transcript.snapshot() if e.role != "system"]
    assert spoken == [("user", "My father passed away."), ("agent", "I am so sorry. Let us start.")]
    assert transcripts[-1]["text"] == "I am so sorry. Let us start."
    await agent.disconnect()


# ======================================================================
# Test Group 2: tool calls
# ======================================================================

@test("a tool call updates the draft and is acknowledged exactly once")
async def test_tool_call_ack():
    from pipeline_frames import FrameType
    from tool_dispatcher import ToolCall
    channel = FakeChannel()
    agent, _, _ = make_agent(channel)
    drafts = []
    agent.bus.on("draft", lambda evt: drafts.append(evt.payload))
    await agent.connect()

    push(agent, FrameType.TOOL_CALL_BATCH,
         [ToolCall("fc-1", "updateClaimDraft", {"bankName": "State Bank"})])
    await settle()

    assert len(channel.tool_results) == 1
    (result,) = channel.tool_results[0]
    assert result.call_id == "fc-1"
    assert result.response["result"] == "Form updated successfully"
    assert agent.draft.bank_name == "State Bank"
    assert drafts[-1]["bankName"] == "State Bank"
    assert "Agent is updating the claim form..." in system_notes(agent)
    await agent.disconnect()


@test("unknown tools in a batch still get their own acknowledgement")
async def test_tool_call_unknown():
    from pipeline_frames import FrameType
    from tool_dispatcher import ToolCall
    channel = FakeChannel()
    agent, _, _ = make_agent(channel)
    await agent.connect()
    push(agent, FrameType.TOOL_CALL_BATCH, [
        ToolCall("a", "updateClaimDraft", {"claimantName": "Asha"}),
        ToolCall("b", "checkIfsc", {}),
    ])
    await settle()
    results = channel.tool_results[0]
    assert [r.call_id for r in results] == ["a", "b"]
    assert results[1].response == {"result": "ok"}
    await agent.disconnect()


@test("submit_claim needs a ready draft")
async def test_submit_claim():
    from claim_state import ClaimStatus
    from pipeline_frames import FrameType
    from tool_dispatcher import ToolCall
    agent, _, _ = make_agent()
    await agent.connect()
    try:
        agent.submit_claim()
    except ValueError:
        pass
    else:
        raise AssertionError("Submitting an incomplete draft should fail")

    push(agent, FrameType.TOOL_CALL_BATCH, [ToolCall("r", "updateClaimDraft", {
        "claimantName": "Asha Rao", "deceasedName": "Ravi Rao", "relationship": "Daughter",
        "bankName": "State Bank", "accountNumber": "0012", "status": "ready"})])
    await settle()
    assert agent.draft.status == ClaimStatus.READY
    assert agent.submit_claim().status == ClaimStatus.SUBMITTED
    await agent.disconnect()


# ======================================================================
# Test Group 3: barge-in and watchdog
# ======================================================================

@test("interruption cancels every pending chunk and returns to listening")
async def test_interrupted():
    from live_agent import AgentState
    from pipeline_frames import FrameType
    agent, devices, _ = make_agent()
    await agent.connect()
    push(agent, FrameType.AUDIO_CHUNK, pcm_chunk())
    push(agent, FrameType.AUDIO_CHUNK, pcm_chunk())
    await settle()
    output = devices["output"]
    first, second = output.started

    push(agent, FrameType.INTERRUPTED)
    await settle()
    assert agent.state == AgentState.LISTENING
    assert agent.scheduler.pending == 0
    assert {first, second} <= set(output.stopped)
    assert agent.generation_id == 1
    assert "Agent interrupted" in system_notes(agent)

    # A late end notice from the cut turn changes nothing
    output.end(first)
    await settle()
    assert agent.state == AgentState.LISTENING
    await agent.disconnect()


@test("a turn that speaks too long is reset by the watchdog")
async def test_turn_watchdog():
    from live_agent import AgentState
    from pipeline_frames import FrameType
    agent, _, _ = make_agent(max_turn_seconds=0.05)
    await agent.connect()
    push(agent, FrameType.AUDIO_CHUNK, pcm_chunk())
    await settle()
    assert agent.state == AgentState.SPEAKING
    await asyncio.sleep(0.1)
    await settle()
    assert agent.state == AgentState.LISTENING
    assert agent.scheduler.pending == 0
    assert "Agent response timed out" in system_notes(agent)
    await agent.disconnect()


# ======================================================================
# Test Group 4: teardown and failures
# ======================================================================

@test("disconnect twice releases each resource exactly once")
async def test_double_disconnect():
    from live_agent import AgentState
    channel = FakeChannel()
    agent, devices, _ = make_agent(channel)
    await agent.connect()
    await agent.disconnect()
    await agent.disconnect()
    assert agent.state == AgentState.DISCONNECTED
    assert devices["capture"].stop_calls == 1
    assert devices["output"].close_calls == 1
    assert channel.closed == channel.handles
    assert system_notes(agent).count("Session ended") == 1


@test("disconnect during connect closes the late connection")
async def test_disconnect_while_connecting():
    from live_agent import AgentState
    gate = asyncio.Event()
    channel = FakeChannel(gate=gate)
    agent, devices, _ = make_agent(channel)

    connecting = asyncio.create_task(agent.connect())
    await settle()
    assert agent.state == AgentState.CONNECTING
    await agent.disconnect()
    assert agent.state == AgentState.DISCONNECTED

    gate.set()
    assert await connecting is False
    assert agent.state == AgentState.DISCONNECTED
    assert agent.handle is None
    assert channel.closed == channel.handles, "the late handle must be closed"
    assert devices["capture"].started == 0


@test("a transport error moves to error and releases everything")
async def test_transport_error():
    from live_agent import AgentState
    from pipeline_frames import FrameType
    channel = FakeChannel()
    agent, devices, _ = make_agent(channel)
    await agent.connect()
    push(agent, FrameType.TRANSPORT_ERROR, "connection reset")
    await settle()
    assert agent.state == AgentState.ERROR
    assert agent.error == "Connection error. Please retry."
    assert devices["capture"].stop_calls == 1
    assert devices["output"].close_calls == 1
    assert len(channel.closed) == 1
    await agent.disconnect()
    assert agent.state == AgentState.DISCONNECTED


@test("a server close moves to disconnected")
async def test_server_closed():
    from live_agent import AgentState
    from pipeline_frames import FrameType
    agent, devices, _ = make_agent()
    await agent.connect()
    push(agent, FrameType.CLOSED)
    await settle()
    assert agent.state == AgentState.DISCONNECTED
    assert agent.error is None
    assert "Connection closed" in system_notes(agent)
    assert devices["capture"].stop_calls == 1


@test("a failed handshake ends in error with devices released")
async def test_connect_failure():
    from live_agent import AgentState
    from session_errors import ConnectionFailed
    agent, devices, _ = make_agent(FakeChannel(connect_error=ConnectionFailed("403")))
    assert await agent.connect() is False
    assert agent.state == AgentState.ERROR
    assert agent.error == "Connection error. Please retry."
    assert devices["capture"].stop_calls == 1
    assert devices["output"].close_calls == 1


@test("a denied microphone ends in error before any connection")
async def test_permission_denied():
    from live_agent import AgentState
    from session_errors import PermissionDenied
    channel = FakeChannel()
    agent, _, _ = make_agent(channel, capture_error=PermissionDenied("denied"))
    assert await agent.connect() is False
    assert agent.state == AgentState.ERROR
    assert "microphone" in agent.error
    assert channel.configs == []


@test("a microphone that fails to start ends in error with the session closed")
async def test_capture_start_failure():
    from live_agent import AgentState
    channel = FakeChannel()
    agent, devices, states = make_agent(channel, start_error=OSError("stream start failed"))
    assert await agent.connect() is False
    assert agent.state == AgentState.ERROR
    assert "microphone" in agent.error
    assert agent.handle is None
    assert channel.closed == channel.handles, "the adopted handle must be closed"
    assert devices["capture"].stop_calls == 1
    assert devices["output"].close_calls == 1
    assert "listening" not in states


@test("snapshot captures state, draft, transcript and error together")
async def test_snapshot():
    from live_agent import AgentSnapshot, AgentState
    from pipeline_frames import FrameType
    from tool_dispatcher import ToolCall
    agent, _, _ = make_agent()
    await agent.connect()
    push(agent, FrameType.TOOL_CALL_BATCH, [ToolCall("s", "updateClaimDraft", {"deceasedName": "Ravi Rao"})])
    await settle()

    snap = agent.snapshot()
    assert isinstance(snap, AgentSnapshot)
    assert snap.state == AgentState.LISTENING
    assert snap.draft.deceased_name == "Ravi Rao"
    assert snap.error is None
    assert snap.transcript == agent.transcript.snapshot()

    await agent.disconnect()
    assert snap.state == AgentState.LISTENING, "a snapshot does not follow later changes"
    assert len(agent.transcript.snapshot()) > len(snap.transcript)


@test("reconnecting starts with a fresh draft and transcript")
async def test_reconnect_resets():
    from pipeline_frames import FrameType
    from tool_dispatcher import ToolCall
    agent, _, _ = make_agent()
    await agent.connect()
    push(agent, FrameType.TOOL_CALL_BATCH, [ToolCall("x", "updateClaimDraft", {"bankName": "UCO"})])
    await settle()
    await agent.disconnect()
    assert agent.draft.bank_name == "UCO", "the final form survives disconnect"

    await agent.connect()
    assert agent.draft.bank_name == ""
    assert "Session ended" not in system_notes(agent)
    await agent.disconnect()


# ======================================================================
# Test Group 5: documents
# ======================================================================

@test("an uploaded image is sent and noted in the transcript")
async def test_upload_image():
    channel = FakeChannel()
    agent, _, _ = make_agent(channel)
    await agent.connect()
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / "passbook.jpg"
        path.write_bytes(b"\xff\xd8\xff\xe0fake")
        assert await agent.upload_document(path) is True
    assert channel.documents == [("image/jpeg", b"\xff\xd8\xff\xe0fake")]
    last = agent.transcript.snapshot()[-1]
    assert (last.role, last.text) == ("user", "[Uploaded Image: passbook.jpg]")
    await agent.disconnect()


@test("a failed upload leaves a system note and keeps the session")
async def test_upload_failures():
    from live_agent import AgentState
    channel = FakeChannel()
    agent, _, _ = make_agent(channel)

    assert await agent.upload_document("/tmp/never-connected.png") is False
    await agent.connect()
    assert await agent.upload_document("/nonexistent/passbook.png") is False
    with tempfile.TemporaryDirectory() as tmp:
        notes = Path(tmp) / "notes.txt"
        notes.write_text("hello")
        assert await agent.upload_document(notes) is False
    assert channel.documents == []
    assert system_notes(agent).count("Upload failed") == 2
    assert agent.state == AgentState.LISTENING
    await agent.disconnect()


# ======================================================================
# Run all tests
# ======================================================================

if __name__ == "__main__":
    print("=" * 60)
    print("Live Agent Tests")
    print("=" * 60)

    tests = [
        obj for name, obj in sorted(globals().items())
        if callable(obj) and hasattr(obj, '_test_name')
    ]

    print(f"\nRunning {len(tests)} tests...\n")

    for fn in tests:
        run_test(fn)

    print(f"\n{'=' * 60}")
    print(f"Results: {PASSED} passed, {FAILED} failed out of {PASSED + FAILED}")

    if ERRORS:
        print(f"\nFailures:")
        for name, err in ERRORS:
            print(f"  - {name}: {err}")

    print("=" * 60)
    sys.exit(0 if FAILED == 0 else 1)
