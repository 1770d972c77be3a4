#!/usr/bin/env python3
"""
Amora — Voice Call CLI

Places or answers a voice call on a chat thread from the command line,
using the same signaling documents as the mobile app.  Handy for testing a
device against a desktop peer.

  call    — Send an offer to the other participant and wait for the answer.
  answer  — Answer the pending offer on the thread.

While connected, type ``m`` + Enter to toggle mute, ``q`` + Enter to hang up.

Usage examples
--------------
  # Call user bob on the alice/bob thread, recording what bob says
  python scripts/voice_call.py call --thread alice_bob --me alice --peer bob --record bob.wav

  # Answer on the other machine
  python scripts/voice_call.py answer --thread alice_bob --me bob
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Any, Optional

# Ensure the project root is importable
sys.path.insert(0, ".")

from aiortc.contrib.media import MediaBlackhole, MediaRecorder

from app.config import get_settings
from app.exceptions import AppException
from app.models.call import CallState
from app.services.call_signaling import CallSignalingEngine
from app.store import create_store


async def _read_commands(engine: CallSignalingEngine, done: asyncio.Event) -> None:
    while not done.is_set():
        line = await asyncio.to_thread(sys.stdin.readline)
        if not line:
            return
        command = line.strip().lower()
        if command == "m":
            muted = engine.toggle_mute()
            print(f"  {'muted' if muted else 'unmuted'}")
        elif command == "q":
            await engine.hangup()
            return


async def run(args: argparse.Namespace) -> int:
    settings = get_settings()
    store = create_store(settings)
    engine = CallSignalingEngine(store, settings)
    sink: Any = MediaRecorder(args.record) if args.record else MediaBlackhole()
    done = asyncio.Event()
    sink_started = False

    def _on_state(state: CallState) -> None:
        print(f"  state: {state.value}")
        if state == CallState.IDLE:
            done.set()

    async def _start_sink(track: Any) -> None:
        nonlocal sink_started
        sink.addTrack(track)
        if not sink_started:
            sink_started = True
            await sink.start()

    engine.on_state_change(_on_state)
    engine.on_remote_track(lambda track: asyncio.ensure_future(_start_sink(track)))

    try:
        if args.command == "call":
            await engine.start_call(args.thread, args.me, args.peer)
        else:
            await engine.answer_call(args.thread, args.me)
    except AppException as exc:
        print(f"Call failed: {exc.error_code.value}: {exc.message}")
        await store.close()
        return 1

    commands = asyncio.create_task(_read_commands(engine, done))
    try:
        await done.wait()
    except asyncio.CancelledError:
        await engine.hangup()
    finally:
        commands.cancel()
        await sink.stop()
        await store.close()

    print(f"Call ended ({engine.end_reason or 'hangup'})")
    return 0


# ──────────────────────────────────────────────────────────────────────────────
# CLI entry point
# ──────────────────────────────────────────────────────────────────────────────

def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Amora voice call client.")
    subparsers = parser.add_subparsers(dest="command", help="Available subcommands")

    call_parser = subparsers.add_parser("call", help="Call the other participant of a thread.")
    call_parser.add_argument("--peer", required=True, help="uid of the user to call.")

    answer_parser = subparsers.add_parser("answer", help="Answer the pending offer on a thread.")

    for sub in (call_parser, answer_parser):
        sub.add_argument("--thread", required=True, help="Chat thread id (sorted uids joined by '_').")
        sub.add_argument("--me", required=True, help="Your own uid.")
        sub.add_argument(
            "--record",
            type=str,
            default=None,
            help="Write the remote audio to this file instead of discarding it.",
        )

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        sys.exit(1)

    try:
        sys.exit(asyncio.run(run(args)))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
