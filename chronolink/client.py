import asyncio
import logging
from typing import Any, Dict, Optional, Tuple

from .framing import FrameError, read_event, write_event
from . import messages as m

"""
client.py — a small asyncio client for the relay.

Stands in for the web UIs in the terminal and in tests: connect, send chat
lines tagged with an era, and pull (event, data) pairs off the inbox.
"""

logger = logging.getLogger(__name__)

Event = Tuple[str, Dict[str, Any]]


class RelayClient:
    def __init__(self, host: str, port: int, sender: str, era: str = "modern") -> None:
        self.host = host
        self.port = port
        self.sender = sender
        self.era = era
        self.inbox: "asyncio.Queue[Event]" = asyncio.Queue()
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._reader_task: Optional[asyncio.Task] = None

    @property
    def connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    async def connect(self) -> None:
        """Open the connection and start pumping inbound events into the inbox."""
        self._reader, self._writer = await asyncio.open_connection(self.host, self.port)
        self._reader_task = asyncio.create_task(self.reader_loop())

    async def close(self) -> None:
        if self._writer is not None:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except OSError:
                pass
        if self._reader_task is not None:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        self._writer = None
        self._reader_task = None

    async def __aenter__(self) -> "RelayClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def emit(self, event: str, data: Dict[str, Any]) -> None:
        if self._writer is None:
            raise ConnectionError("not connected")
        await write_event(self._writer, event, data)

    async def send_message(self, content: str, era: Optional[str] = None) -> None:
        await self.emit(m.SEND_MESSAGE, {"content": content, "era": era or self.era, "sender": self.sender})

    async def ping(self, echo: Optional[Dict[str, Any]] = None) -> None:
        await self.emit(m.PING, echo or {})

    async def next_event(self, timeout: Optional[float] = None) -> Event:
        """Next inbound (event, data); raises asyncio.TimeoutError after `timeout`."""
        return await asyncio.wait_for(self.inbox.get(), timeout)

    async def wait_for(self, *events: str, timeout: Optional[float] = None) -> Event:
        """Skip ahead to the next event whose name is in `events`."""
        async def _match() -> Event:
            while True:
                name, data = await self.inbox.get()
                if name in events:
                    return name, data
        return await asyncio.wait_for(_match(), timeout)

    async def reader_loop(self) -> None:
        """Background task: frames from the relay go straight into the inbox."""
        assert self._reader is not None
        try:
            while True:
                event, data = await read_event(self._reader)
                await self.inbox.put((event, data))
        except (asyncio.IncompleteReadError, ConnectionError):
            logger.debug("Relay closed the connection")
        except FrameError as exc:
            logger.warning("Dropping connection after bad frame: %s", exc)
