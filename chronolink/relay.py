import asyncio
import logging
import threading
import uuid
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Set, Tuple

from .config import RelayConfig
from .eras import Era
from .framing import FrameTooLarge, InvalidFrame, read_event, write_event
from . import messages as m
from .physics import DelayPlanner, DeliveryPlan, ProcessedContent, corrupt, process_content

"""
relay.py — the era relay: connection registry, per-message scheduling, and
the asyncio server that ties them to sockets.

Flow for one send_message:
    receive -> plan(era) -> drop?  -> (after delay) message_failed to sender only
                         -> else   -> (after delay) receive_message to everyone

Every connection sits in one group, the "global timeline". Senders are in it
too, so they see their own message only once the simulated delay has passed.

Notes:
- Each outcome is its own asyncio task sleeping out its delay; nothing blocks
  reads or other deliveries, and nothing guarantees order across messages.
- Once scheduled, an outcome fires exactly once. There's no cancel; if the
  sender leaves mid-flight everyone else still gets the broadcast.
"""

logger = logging.getLogger(__name__)

GLOBAL_TIMELINE = "global_timeline"
HEALTH_TEXT = "Chronos Link relay is running. Time-travel logic active."


class Peer(Protocol):
    async def send(self, event: str, data: Dict[str, Any]) -> None: ...


class ConnectionContext:
    """One live socket: reader/writer, its id, and a write lock."""
    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.reader = reader
        self.writer = writer
        self.connection_id = str(uuid.uuid4())
        self.peername = str(writer.get_extra_info("peername"))
        # Two deliveries can fire at once; keep their frames from interleaving.
        self._write_lock = asyncio.Lock()

    async def send(self, event: str, data: Dict[str, Any]) -> None:
        async with self._write_lock:
            if self.writer.is_closing():
                raise ConnectionResetError(f"connection {self.connection_id} is closed")
            await write_event(self.writer, event, data)

    def close(self) -> None:
        self.writer.close()


class ConnectionRegistry:
    """
    Who is connected right now. All members share the one broadcast group.

    Membership is lock-guarded; broadcast works off a snapshot taken when the
    delivery fires, so a peer that left before then simply isn't in it.
    """
    def __init__(self, group: str = GLOBAL_TIMELINE) -> None:
        self.group = group
        self._lock = threading.Lock()
        self._peers: Dict[str, Peer] = {}

    def register(self, connection_id: str, peer: Peer) -> None:
        with self._lock:
            self._peers[connection_id] = peer

    def unregister(self, connection_id: str) -> None:
        with self._lock:
            self._peers.pop(connection_id, None)

    def get(self, connection_id: str) -> Optional[Peer]:
        with self._lock:
            return self._peers.get(connection_id)

    def members(self) -> List[str]:
        with self._lock:
            return list(self._peers)

    def snapshot(self) -> List[Tuple[str, Peer]]:
        with self._lock:
            return list(self._peers.items())

    def __len__(self) -> int:
        with self._lock:
            return len(self._peers)

    def __contains__(self, connection_id: object) -> bool:
        with self._lock:
            return connection_id in self._peers

    async def broadcast(self, event: str, data: Dict[str, Any]) -> int:
        """Send to every current member (sender included). Returns how many got it."""
        members = self.snapshot()
        results = await asyncio.gather(
            *(peer.send(event, data) for _, peer in members), return_exceptions=True
        )
        delivered = 0
        for (connection_id, _), result in zip(members, results):
            if result is None:
                delivered += 1
            elif isinstance(result, OSError):
                # Went away between snapshot and write.
                logger.debug("Skipped %s for %s: %s", event, connection_id, result)
            else:
                logger.error("Failed to send %s to %s", event, connection_id, exc_info=result)
        return delivered

    async def send_to_one(self, connection_id: str, event: str, data: Dict[str, Any]) -> bool:
        """Private delivery. Quietly does nothing if that peer has left."""
        peer = self.get(connection_id)
        if peer is None:
            return False
        try:
            await peer.send(event, data)
        except OSError as exc:
            logger.debug("Skipped %s for %s: %s", event, connection_id, exc)
            return False
        return True


Sleep = Callable[[float], Awaitable[Any]]


class RelayService:
    """
    Decorates each inbound message with its era's delay and fate.

    lossy_eras:  eras whose drop draw is honored. Only dial-up by default;
                 other eras still draw, their drops are just ignored.
    drop_mode:   "drop" reports message_failed to the sender; "corrupt"
                 delivers the message anyway with line noise applied.
    sleep:       how to wait out a delay (swap in a recorder for tests).
    """
    def __init__(self, registry: ConnectionRegistry, planner: Optional[DelayPlanner] = None,
                 lossy_eras: Iterable[Era] = (Era.DIALUP,), drop_mode: str = "drop",
                 line_noise: float = 0.3, sleep: Sleep = asyncio.sleep) -> None:
        if drop_mode not in ("drop", "corrupt"):
            raise ValueError(f"Unknown drop_mode: {drop_mode!r}")
        self.registry = registry
        self.planner = planner or DelayPlanner()
        self.lossy_eras = frozenset(lossy_eras)
        self.drop_mode = drop_mode
        self.line_noise = line_noise
        self._sleep = sleep
        self._pending: Set[asyncio.Task] = set()

    @classmethod
    def from_config(cls, registry: ConnectionRegistry, config: RelayConfig,
                    planner: Optional[DelayPlanner] = None) -> "RelayService":
        return cls(registry, planner=planner, lossy_eras=config.lossy_eras,
                   drop_mode=config.drop_mode, line_noise=config.line_noise)

    @property
    def pending(self) -> int:
        """Deliveries scheduled but not yet fired."""
        return len(self._pending)

    def receive(self, message: m.Message, reply_to: str) -> Optional[asyncio.Task]:
        """
        Plan and schedule the single outcome for `message`. Must be called
        from inside the running loop. Never raises; returns the scheduled
        task, or None if planning blew up.
        """
        try:
            era = Era.parse(message.era)
            plan = self.planner.plan(era)

            if plan.should_drop and era in self.lossy_eras:
                if self.drop_mode == "drop":
                    return self._schedule(self._fail_later(message, reply_to, plan))
                processed = process_content(message.content, era)
                noisy = ProcessedContent(
                    content=corrupt(processed.content, self.line_noise, self.planner.rng),
                    secured=processed.secured,
                )
                return self._schedule(self._deliver_later(message, noisy, plan))

            processed = process_content(message.content, era)
            return self._schedule(self._deliver_later(message, processed, plan))
        except Exception:
            logger.exception("Abandoning message %s from %s", message.id, message.sender)
            return None

    async def wait_idle(self) -> None:
        """Wait until every scheduled outcome has fired."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _schedule(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        # Hold a strong reference until it's done, or the loop may drop it.
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _deliver_later(self, message: m.Message, processed: ProcessedContent, plan: DeliveryPlan) -> None:
        await self._sleep(plan.delay_ms / 1000)
        try:
            payload = m.receive_message_payload(message, processed)
            delivered = await self.registry.broadcast(m.RECEIVE_MESSAGE, payload)
        except Exception:
            logger.exception("[%s] Broadcast of %s failed", message.era, message.id)
            return
        logger.info("[%s] Delivered after %dms to %d peer(s)", message.era, plan.delay_ms, delivered)

    async def _fail_later(self, message: m.Message, reply_to: str, plan: DeliveryPlan) -> None:
        await self._sleep(plan.delay_ms / 1000)
        try:
            sent = await self.registry.send_to_one(reply_to, m.MESSAGE_FAILED, m.message_failed_payload())
        except Exception:
            logger.exception("[%s] Failure notice for %s failed", message.era, message.id)
            return
        logger.info("[%s] Dropped %s after %dms (sender %s)", message.era, message.id, plan.delay_ms,
                    "notified" if sent else "gone")


class RelayServer:
    """
    asyncio TCP front end. Registers a connection on accept, unregisters it on
    EOF/reset, and hands send_message events to the RelayService.
    """
    def __init__(self, config: Optional[RelayConfig] = None, relay: Optional[RelayService] = None) -> None:
        self.config = config or RelayConfig()
        if relay is None:
            relay = RelayService.from_config(ConnectionRegistry(), self.config)
        self.relay = relay
        self.registry = relay.registry
        self._server: Optional[asyncio.AbstractServer] = None

    @property
    def port(self) -> int:
        """Actual bound port (useful when configured with port 0)."""
        if self._server is None or not self._server.sockets:
            return self.config.port
        return self._server.sockets[0].getsockname()[1]

    async def start(self) -> None:
        self._server = await asyncio.start_server(self.handle_conn, self.config.host, self.config.port)
        addrs = ", ".join(str(sock.getsockname()) for sock in self._server.sockets or [])
        logger.info("Relay listening on %s (allowed origin %s)", addrs, self.config.allowed_origin)

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        async with self._server:
            await self._server.serve_forever()

    async def close(self, drain: bool = False) -> None:
        """Stop accepting, optionally let in-flight deliveries land, then hang up on everyone."""
        if self._server is not None:
            self._server.close()
        if drain:
            await self.relay.wait_idle()
        for _, peer in self.registry.snapshot():
            if isinstance(peer, ConnectionContext):
                peer.close()
        if self._server is not None:
            await self._server.wait_closed()
            self._server = None

    async def handle_conn(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Per-connection loop: read events and dispatch until the peer goes away."""
        ctx = ConnectionContext(reader, writer)
        self.registry.register(ctx.connection_id, ctx)
        logger.info("User connected: %s (%s)", ctx.connection_id, ctx.peername)
        try:
            while True:
                try:
                    event, data = await read_event(reader)
                except InvalidFrame as exc:
                    # Body was consumed; the stream is still in sync.
                    logger.warning("Bad frame from %s: %s", ctx.connection_id, exc)
                    await ctx.send(m.ERROR, m.error_payload(m.INVALID_FRAME))
                    continue
                await self.dispatch(ctx, event, data)
        except asyncio.IncompleteReadError:
            pass
        except FrameTooLarge as exc:
            logger.warning("Closing %s: %s", ctx.connection_id, exc)
        except ConnectionError:
            pass
        except Exception:
            logger.exception("Connection %s failed", ctx.connection_id)
        finally:
            self.registry.unregister(ctx.connection_id)
            logger.info("User disconnected: %s", ctx.connection_id)
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

    async def dispatch(self, ctx: ConnectionContext, event: str, data: Dict[str, Any]) -> None:
        if event == m.SEND_MESSAGE:
            try:
                message = m.parse_send_message(data)
            except m.MalformedMessage as exc:
                logger.warning("Ignoring send_message from %s: %s", ctx.connection_id, exc)
                return
            logger.info("[%s] Message received from %s: %s", message.era, message.sender, message.content)
            self.relay.receive(message, ctx.connection_id)
            return

        if event == m.PING:
            await ctx.send(m.PONG, {"status": HEALTH_TEXT, "peers": len(self.registry), "echo": data})
            return

        await ctx.send(m.ERROR, m.error_payload(m.UNKNOWN_EVENT, event=event))
