#!/usr/bin/env python3
"""Whales Pump support agent from the terminal.

  whales_pump.py call       live voice call (Enter hangs up, m + Enter toggles mute)
  whales_pump.py chat       text chat (/image PATH, /audio PATH attach media)
  whales_pump.py telegram   serve the Telegram webhook relay
"""

import argparse
import asyncio
import logging
import mimetypes
import sys
import threading
import time
from pathlib import Path

from chat_transcript import AGENT, ChatTranscript
from config import (ConfigurationError, get_api_key, get_telegram_token, load_config,
                    require_api_key)

log = logging.getLogger("whales_pump")


def _stdin_lines(loop: asyncio.AbstractEventLoop) -> asyncio.Queue:
    """Feed stdin lines into a queue from a daemon thread. None marks EOF."""
    queue: asyncio.Queue = asyncio.Queue()

    def reader():
        for line in sys.stdin:
            loop.call_soon_threadsafe(queue.put_nowait, line.rstrip("\n"))
        loop.call_soon_threadsafe(queue.put_nowait, None)

    threading.Thread(target=reader, daemon=True).start()
    return queue


def _print_agent(msg):
    if msg.sender == AGENT:
        print(f"\nAgent: {msg.text}\n", flush=True)


# ── call ───────────────────────────────────────────────────────────

async def run_call(config: dict) -> int:
    from event_bus import EventBus, summarize_call
    from live_session import LiveCallSession

    sid = time.strftime("%Y%m%d_%H%M%S")
    bus = EventBus(Path(config["log_dir"]).expanduser() / sid, "live_session", sid)
    bus.open()

    transcript = ChatTranscript(greeting=None)
    transcript.on_append(_print_agent)

    ended = asyncio.Event()

    def on_status(status):
        print(f"[{status}]", flush=True)
        if status == "disconnected":
            ended.set()

    session = LiveCallSession(
        api_key=get_api_key(),
        config=config,
        transcript=transcript,
        on_status=on_status,
        on_error=lambda msg: print(f"Error: {msg}", flush=True),
        on_speaking=lambda speaking: print("[agent speaking]" if speaking else "[listening]", flush=True),
        bus=bus,
    )

    try:
        await session.start_session()
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        bus.close()
        return 2

    if session.state.value == "disconnected":
        bus.close()
        return 1

    print("Call started. Enter hangs up, 'm' + Enter toggles mute.", flush=True)
    lines = _stdin_lines(asyncio.get_running_loop())
    try:
        while not ended.is_set():
            get_line = asyncio.ensure_future(lines.get())
            stop = asyncio.ensure_future(ended.wait())
            done, _ = await asyncio.wait({get_line, stop}, return_when=asyncio.FIRST_COMPLETED)
            for task in (get_line, stop):
                if task not in done:
                    task.cancel()
            if get_line not in done:
                break
            line = get_line.result()
            if line is not None and line.strip().lower() == "m":
                muted = session.toggle_mute()
                print("[muted]" if muted else "[unmuted]", flush=True)
                continue
            break
    finally:
        await session.end_session()

    summary = summarize_call(bus.read_recent(last_n=0))
    bus.close()
    print(f"Call ended after {summary['duration']}s, "
          f"{summary['tool_calls']} tool call(s), {summary['interruptions']} interruption(s).")
    print(f"Event log: {bus.path}")
    return 1 if session.error else 0


# ── chat ───────────────────────────────────────────────────────────

async def run_chat(config: dict) -> int:
    from text_chat import TextChat

    transcript = ChatTranscript()
    _print_agent(transcript.last())
    transcript.on_append(_print_agent)
    chat = TextChat(get_api_key(), transcript, config=config)

    lines = _stdin_lines(asyncio.get_running_loop())
    while True:
        line = await lines.get()
        if line is None or line.strip() in ("/quit", "/exit"):
            return 0
        line = line.strip()
        if not line:
            continue

        if line.startswith(("/image ", "/audio ")):
            command, _, rest = line.partition(" ")
            path_str, _, caption = rest.strip().partition(" ")
            path = Path(path_str).expanduser()
            try:
                data = path.read_bytes()
            except OSError as e:
                print(f"Cannot read {path}: {e}", file=sys.stderr)
                continue
            default_mime = "image/png" if command == "/image" else "audio/webm"
            mime_type = mimetypes.guess_type(path.name)[0] or default_mime
            await chat.send(caption or None, media=data, mime_type=mime_type)
        else:
            await chat.send(line)


# ── telegram ───────────────────────────────────────────────────────

def run_telegram(config: dict, port: int = None) -> int:
    from telegram_relay import TelegramRelay, serve

    token = get_telegram_token()
    if not token:
        print("Error: TELEGRAM_BOT_TOKEN is not set", file=sys.stderr)
        return 2
    if config["telegram_mode"] == "assistant":
        try:
            api_key = require_api_key()
        except ConfigurationError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 2
    else:
        api_key = get_api_key()
    relay = TelegramRelay(token, config=config, api_key=api_key)
    try:
        serve(relay, port=port)
    except KeyboardInterrupt:
        log.info("Relay stopped")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Whales Pump live support agent")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("call", help="Start a live voice call")
    sub.add_parser("chat", help="Text chat with the agent")
    tg = sub.add_parser("telegram", help="Serve the Telegram webhook relay")
    tg.add_argument("--port", type=int, default=None, help="Listen port (default: telegram_port from config)")
    tg.add_argument("--mode", choices=("redirect", "assistant"), default=None,
                    help="Override telegram_mode from config")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    config = load_config()
    try:
        if args.command == "call":
            code = asyncio.run(run_call(config))
        elif args.command == "chat":
            code = asyncio.run(run_chat(config))
        else:
            if args.mode:
                config["telegram_mode"] = args.mode
            code = run_telegram(config, port=args.port)
    except KeyboardInterrupt:
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
