#!/usr/bin/env python3
"""
CivicAlly console caseworker.

Talk to the caseworker through the default microphone and speakers while it
fills in the unclaimed-deposit claim. Type commands on stdin:

    upload <path>   send a photo of a passbook / certificate / ID
    draft           show the claim form
    submit          submit the claim once it is ready
    quit            end the session
"""

import argparse
import asyncio
import logging
import signal
import sys
import threading

from event_bus import EventType
from live_agent import MAX_TURN_SECONDS, AgentState, LiveAgent, default_model
from session_channel import is_available

log = logging.getLogger("caseworker")

_FORM_LABELS = (
    ("claimantName", "Claimant"),
    ("deceasedName", "Deceased"),
    ("relationship", "Relationship"),
    ("bankName", "Bank"),
    ("accountNumber", "Account"),
    ("amount", "Amount"),
    ("status", "Status"),
)


def format_draft(draft) -> str:
    data = draft.to_dict()
    width = max(len(label) for _, label in _FORM_LABELS)
    return "\n".join(f"  {label:<{width}}  {data[key] or '-'}" for key, label in _FORM_LABELS)


def print_event(evt):
    if evt.type == EventType.TRANSCRIPT.value:
        role = evt.payload["role"]
        prefix = {"user": "You", "agent": "CivicAlly", "system": "--"}[role]
        print(f"{prefix}: {evt.payload['text']}", flush=True)
    elif evt.type == EventType.STATE.value:
        print(f"[{evt.payload['state']}]", flush=True)
    elif evt.type == EventType.ERROR.value:
        print(f"Error: {evt.payload['message']}", flush=True)


def _stdin_thread(loop, lines: asyncio.Queue):
    """Blocking stdin reader; daemon so it never holds up shutdown."""
    for line in sys.stdin:
        loop.call_soon_threadsafe(lines.put_nowait, line)
    loop.call_soon_threadsafe(lines.put_nowait, "")


async def command_loop(agent: LiveAgent, stop: asyncio.Event):
    lines: asyncio.Queue = asyncio.Queue()
    reader = threading.Thread(target=_stdin_thread,
                              args=(asyncio.get_running_loop(), lines), daemon=True)
    reader.start()
    while not stop.is_set():
        line = await lines.get()
        if not line:
            break  # stdin closed
        command, _, arg = line.strip().partition(" ")
        command = command.lower()
        if not command:
            continue
        if command == "quit":
            break
        elif command == "upload":
            if not arg:
                print("usage: upload <path>", flush=True)
                continue
            await agent.upload_document(arg.strip())
        elif command == "draft":
            print(format_draft(agent.draft), flush=True)
        elif command == "submit":
            try:
                agent.submit_claim()
                print("Claim submitted.", flush=True)
            except ValueError as e:
                print(str(e), flush=True)
        else:
            print(f"Unknown command: {command}", flush=True)
    stop.set()


async def run(args) -> int:
    agent = LiveAgent(model=args.model, max_turn_seconds=args.max_turn_seconds or None)
    agent.bus.on("*", print_event)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    # A closed or failed session ends the run too
    def on_state(evt):
        if evt.payload["state"] in (AgentState.DISCONNECTED.value, AgentState.ERROR.value):
            stop.set()

    if not await agent.connect():
        return 1
    agent.bus.on(EventType.STATE, on_state)

    commands = asyncio.create_task(command_loop(agent, stop))
    await stop.wait()
    commands.cancel()

    failed = agent.state == AgentState.ERROR
    await agent.disconnect()
    print("\nFinal claim form:\n" + format_draft(agent.draft), flush=True)
    return 1 if failed else 0


def main() -> None:
    parser = argparse.ArgumentParser(description="CivicAlly voice caseworker")
    parser.add_argument("--model", default=default_model(), help="Live API model id")
    parser.add_argument("--max-turn-seconds", type=float, default=MAX_TURN_SECONDS,
                        help="Reset playback if an agent turn runs longer (0 disables)")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    if not is_available():
        log.error("Live API unavailable: install websockets and set GEMINI_API_KEY")
        sys.exit(1)

    try:
        sys.exit(asyncio.run(run(args)))
    except KeyboardInterrupt:
        log.info("Interrupted")


if __name__ == "__main__":
    main()
