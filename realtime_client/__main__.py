"""
Terminal client for a realtime voice conversation.

Usage:
    python -m realtime_client [--voice verse] [--log-level INFO]

Commands (one per line on stdin):
    start | pause | resume | restart | stop | mute | unmute
    next | prev | voice <id> | voices | status | quit
"""
import argparse
import asyncio
import sys
import time

from logging_setup import setup_logging
from voice_errors import VoiceSessionError, user_message
from .audio_levels import LevelSample
from .config import get_config
from .conversation import ConversationManager, InvalidTransitionError, StateChange, build_conversation
from .pubsub import StreamKind

METER_WIDTH = 20


class LevelMeter:
    """Throttled one-line level display."""

    def __init__(self, min_interval: float = 0.1):
        self._min_interval = min_interval
        self._last_draw = 0.0
        self.local = 0.0
        self.remote = 0.0

    def on_local(self, sample: LevelSample) -> None:
        self.local = sample.level
        self._draw()

    def on_remote(self, sample: LevelSample) -> None:
        self.remote = sample.level
        self._draw()

    @staticmethod
    def _bar(level: float) -> str:
        filled = int(round(level * METER_WIDTH))
        return "#" * filled + "." * (METER_WIDTH - filled)

    def _draw(self) -> None:
        now = time.monotonic()
        if now - self._last_draw < self._min_interval or not sys.stderr.isatty():
            return
        self._last_draw = now
        sys.stderr.write(f"\rmic [{self._bar(self.local)}]  voice [{self._bar(self.remote)}]")
        sys.stderr.flush()


def _print(message: str) -> None:
    sys.stderr.write(f"\n{message}\n")
    sys.stderr.flush()


def _on_state(change: StateChange) -> None:
    _print(f"[{change.previous.value} -> {change.current.value}]")


def _status(manager: ConversationManager) -> str:
    parts = [
        f"state={manager.state.value}",
        f"voice={manager.current_voice.id}",
        f"muted={manager.muted}",
        f"transmitting={manager.transmitting}",
    ]
    if manager.last_error:
        parts.append(f"error={manager.last_error!r}")
    return " ".join(parts)


async def _dispatch(manager: ConversationManager, line: str) -> bool:
    """Run one command; returns False on quit."""
    command, _, argument = line.strip().partition(" ")
    command = command.lower()

    if command in ("quit", "exit"):
        return False
    if command == "start":
        await manager.start()
    elif command == "pause":
        await manager.pause()
    elif command == "resume":
        await manager.resume()
    elif command == "restart":
        await manager.restart()
    elif command == "stop":
        await manager.stop()
    elif command == "mute":
        manager.set_muted(True)
    elif command == "unmute":
        manager.set_muted(False)
    elif command == "next":
        await manager.next_voice()
    elif command == "prev":
        await manager.prev_voice()
    elif command == "voice":
        await manager.select_voice(argument.strip())
    elif command == "voices":
        for index, voice in enumerate(manager.voices):
            marker = "*" if index == manager.selected_index else " "
            _print(f"{marker} {voice.id:<8} {voice.display_name} - {voice.description}")
    elif command in ("status", ""):
        pass
    else:
        _print(f"unknown command: {command}")
    _print(_status(manager))
    return True


async def run(voice: str) -> None:
    manager = build_conversation(get_config())
    meter = LevelMeter()
    manager.bus.subscribe(StreamKind.LOCAL_LEVEL, meter.on_local)
    manager.bus.subscribe(StreamKind.REMOTE_LEVEL, meter.on_remote)
    manager.bus.subscribe(StreamKind.STATE, _on_state)
    if voice:
        await manager.select_voice(voice)

    loop = asyncio.get_running_loop()
    _print(_status(manager))
    try:
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            try:
                if not await _dispatch(manager, line):
                    break
            except VoiceSessionError as e:
                _print(f"{user_message(manager.last_error_category or '')} ({e})")
            except (InvalidTransitionError, KeyError) as e:
                _print(str(e))
    finally:
        await manager.stop()


def main() -> None:
    parser = argparse.ArgumentParser(description="Realtime voice conversation client")
    parser.add_argument("--voice", default="", help="initial voice id (default: first in catalog)")
    parser.add_argument("--log-level", default="WARNING", help="log level (default: WARNING)")
    args = parser.parse_args()

    setup_logging(level=args.log_level, use_json=True)
    asyncio.run(run(args.voice))


if __name__ == "__main__":
    main()
