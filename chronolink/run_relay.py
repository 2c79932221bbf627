import argparse
import asyncio
import dataclasses
import logging
import sys
from typing import Any, Dict, List, Optional

from .client import RelayClient
from .config import RelayConfig
from .eras import ERA_PROFILES
from . import messages as m
from .physics import NOISE_GLYPH, process_content
from .relay import RelayServer

"""
run_relay.py — single entry point for the Chronos Link relay and its helpers.

What you can do here:
- Relay:     the one process every era UI talks to
- Client:    a terminal chat: stdin lines go out, everything inbound is printed
- Send:      one-shot; send a line and print what happened to it
- Profiles:  dump the era physics table
"""

LOG_FORMAT = "%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Route package logs to stdout in one format. Safe to call twice."""
    root = logging.getLogger()
    if not any(getattr(h, "_chronolink", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S"))
        handler._chronolink = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


def format_event(event: str, data: Dict[str, Any]) -> str:
    """One readable line per inbound event."""
    if event == m.RECEIVE_MESSAGE:
        lock = " [secured]" if data.get("isSecured") else ""
        return f"[{data.get('era')}] {data.get('sender')}: {data.get('text')}{lock}"
    if event == m.MESSAGE_FAILED:
        return f"!! {data.get('error')} ({data.get('timestamp')})"
    if event == m.PONG:
        return f"{data.get('status')} peers={data.get('peers')}"
    return f"{event}: {data}"


def format_profiles() -> List[str]:
    lines = [f"{'era':<12}{'latency':>9}{'jitter':>8}{'drop':>7}{'cap':>7}"]
    for era, p in ERA_PROFILES.items():
        lines.append(f"{era.value:<12}{p.base_latency_ms:>9}{p.jitter_ms:>8}{p.drop_probability:>7.2f}{p.bandwidth_cap:>7}")
    return lines


# -------------------------
# Process runners (thin wrappers)
# -------------------------

async def run_relay(config: RelayConfig) -> None:
    server = RelayServer(config)
    await server.start()
    try:
        await server.serve_forever()
    finally:
        await server.close()


async def run_client(host: str, port: int, sender: str, era: str) -> None:
    """Interactive terminal client. Each stdin line is one message."""
    client = RelayClient(host, port, sender, era)
    await client.connect()
    print(f"Connected to {host}:{port} as {sender} ({era}). Type to send, Ctrl-D to quit.")

    async def printer() -> None:
        while True:
            event, data = await client.inbox.get()
            print(format_event(event, data))

    printer_task = asyncio.create_task(printer())
    loop = asyncio.get_running_loop()
    try:
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            line = line.rstrip("\n")
            if line:
                await client.send_message(line)
    finally:
        printer_task.cancel()
        await client.close()


def is_own_delivery(data: Dict[str, Any], sender: str, era: str, text: str) -> bool:
    """
    Does this receive_message carry the line we sent? Same sender and era, and
    the text our era would turn it into (allowing for line-noise glyphs).
    """
    if data.get("sender") != sender or data.get("era") != era:
        return False
    expected = process_content(text, era).content
    got = data.get("text")
    if not isinstance(got, str) or len(got) != len(expected):
        return False
    return all(g == e or g == NOISE_GLYPH for g, e in zip(got, expected))


async def run_send(host: str, port: int, sender: str, era: str, text: str, timeout: float) -> int:
    """
    Send one line and wait for its fate: our own receive_message coming back
    through the timeline, or a message_failed. Returns a process exit code.
    """
    async with RelayClient(host, port, sender, era) as client:
        await client.send_message(text)

        async def outcome() -> Optional[Dict[str, Any]]:
            while True:
                event, data = await client.inbox.get()
                if event == m.MESSAGE_FAILED:
                    print(format_event(event, data))
                    return None
                if event == m.RECEIVE_MESSAGE and is_own_delivery(data, sender, era, text):
                    print(format_event(event, data))
                    return data

        try:
            delivered = await asyncio.wait_for(outcome(), timeout)
        except asyncio.TimeoutError:
            print(f"No outcome within {timeout}s")
            return 2
    return 0 if delivered is not None else 1


# -------------------------
# Argument parsing
# -------------------------

def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """
    Quick examples:
      Relay:     python -m chronolink.run_relay --mode relay --port 3001
      Client:    python -m chronolink.run_relay --mode client --sender ada --era 1840
      Send:      python -m chronolink.run_relay --mode send --sender bob --era dialup hello there
      Profiles:  python -m chronolink.run_relay --mode profiles
    """
    p = argparse.ArgumentParser(prog="chronolink")
    p.add_argument("--mode", choices=["relay", "client", "send", "profiles"], required=True)
    p.add_argument("--host")
    p.add_argument("--port", type=int)
    p.add_argument("--log-level")
    p.add_argument("--drop-mode", choices=["drop", "corrupt"])
    p.add_argument("--sender")
    p.add_argument("--era", default="modern")
    p.add_argument("--timeout", type=float, default=10.0)
    p.add_argument("message", nargs=argparse.REMAINDER)
    return p.parse_args(argv)


def build_config(args: argparse.Namespace) -> RelayConfig:
    """Environment first, then any CLI flags on top."""
    config = RelayConfig.from_env()
    overrides = {
        "host": args.host,
        "port": args.port,
        "log_level": args.log_level,
        "drop_mode": args.drop_mode,
    }
    return dataclasses.replace(config, **{k: v for k, v in overrides.items() if v is not None})


# -------------------------
# Main entrypoint
# -------------------------

def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    try:
        config = build_config(args)
    except ValueError as exc:
        raise SystemExit(f"Bad configuration: {exc}")
    configure_logging(config.log_level)

    if args.mode == "profiles":
        print("\n".join(format_profiles()))
        return

    # Clients talking to a relay on 0.0.0.0 mean "this machine".
    target_host = "127.0.0.1" if config.host == "0.0.0.0" else config.host

    if args.mode == "relay":
        try:
            asyncio.run(run_relay(config))
        except KeyboardInterrupt:
            pass

    elif args.mode == "client":
        if not args.sender:
            raise SystemExit("--sender is required for client mode")
        asyncio.run(run_client(target_host, config.port, args.sender, args.era))

    elif args.mode == "send":
        if not args.sender:
            raise SystemExit("--sender is required for send mode")
        text = " ".join(args.message or [])
        if not text:
            raise SystemExit("Nothing to send")
        sys.exit(asyncio.run(run_send(target_host, config.port, args.sender, args.era, text, args.timeout)))


if __name__ == "__main__":
    main()
