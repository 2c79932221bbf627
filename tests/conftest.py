"""Pytest configuration and shared fixtures."""

import asyncio
import dataclasses
import random
from typing import Any, Dict, List, Tuple

import pytest
import pytest_asyncio

from chronolink.client import RelayClient
from chronolink.config import RelayConfig
from chronolink.eras import ERA_PROFILES
from chronolink.physics import DelayPlanner
from chronolink.relay import ConnectionRegistry, RelayServer


class RecordingPeer:
    """Stands in for a socket: remembers every (event, data) sent to it."""

    def __init__(self):
        self.received: List[Tuple[str, Dict[str, Any]]] = []

    async def send(self, event, data):
        self.received.append((event, data))

    def events(self, name):
        return [data for event, data in self.received if event == name]


class DeadPeer:
    """A peer whose socket has already gone."""

    async def send(self, event, data):
        raise ConnectionResetError("peer went away")


class SleepRecorder:
    """Replaces asyncio.sleep: records the delay, yields once, returns."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds):
        self.delays.append(seconds)
        await asyncio.sleep(0)


class GatedSleep:
    """Records the delay, then blocks until release() is called."""

    def __init__(self):
        self.delays: List[float] = []
        self.gate = asyncio.Event()

    async def __call__(self, seconds):
        self.delays.append(seconds)
        await self.gate.wait()

    def release(self):
        self.gate.set()


def forced_profiles(drop_probability):
    """Reference table with every era's drop probability pinned."""
    return {
        era: dataclasses.replace(profile, drop_probability=drop_probability)
        for era, profile in ERA_PROFILES.items()
    }


@pytest.fixture
def rng():
    """Seeded random source."""
    return random.Random(1840)


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def always_drop(rng):
    return DelayPlanner(profiles=forced_profiles(1.0), rng=rng)


@pytest.fixture
def never_drop(rng):
    return DelayPlanner(profiles=forced_profiles(0.0), rng=rng)


@pytest.fixture
def peers(registry):
    """Two recording peers, 'a' and 'b', already on the timeline."""
    a, b = RecordingPeer(), RecordingPeer()
    registry.register("a", a)
    registry.register("b", b)
    return a, b


@pytest_asyncio.fixture
async def relay_server():
    """Real relay on an ephemeral localhost port."""
    server = RelayServer(RelayConfig(host="127.0.0.1", port=0))
    await server.start()
    yield server
    # Let deliveries still sleeping land before the loop goes away.
    await server.close(drain=True)


@pytest_asyncio.fixture
async def start_relay():
    """Factory: live relay around a given RelayService, drained on teardown."""
    servers = []

    async def _start(relay):
        server = RelayServer(RelayConfig(host="127.0.0.1", port=0), relay=relay)
        await server.start()
        servers.append(server)
        return server

    yield _start
    for server in servers:
        await server.close(drain=True)


@pytest_asyncio.fixture
async def connect(relay_server):
    """Factory: connected RelayClient instances, closed on teardown."""
    clients = []

    async def _connect(sender, era="modern"):
        client = RelayClient("127.0.0.1", relay_server.port, sender, era)
        await client.connect()
        clients.append(client)
        # Registration happens on the relay's side of the accept; wait for it.
        for _ in range(100):
            if len(relay_server.registry) >= len(clients):
                break
            await asyncio.sleep(0.01)
        return client

    yield _connect
    for client in clients:
        await client.close()


async def eventually(predicate, timeout=2.0):
    """Poll until predicate() is true; fail the test after `timeout` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)
