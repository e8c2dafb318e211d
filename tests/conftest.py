"""
Pytest fixtures for PhishShield tests. State lives in a MemoryStore; the
remote model is an httpx.MockTransport; time comes from FakeClock.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Iterable

import httpx
import pytest

from phishshield_agent.analyzer import Analyzer
from phishshield_agent.errors import StorageError
from phishshield_agent.ledger import ReportLedger
from phishshield_agent.ml_bridge import RemoteModelClient
from phishshield_agent.storage import MemoryStore, StateStore

T0 = 1_700_000_000_000


class FakeClock:
    def __init__(self, start: int = T0) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class YieldingStore(MemoryStore):
    """MemoryStore that yields to the event loop on every call so concurrent
    writers actually interleave."""

    async def get(self, keys: Iterable[str]) -> dict[str, Any]:
        await asyncio.sleep(0)
        return await super().get(keys)

    async def set(self, values: dict[str, Any]) -> None:
        await asyncio.sleep(0)
        await super().set(values)


class BrokenStore(MemoryStore):
    """Reads work, writes fail."""

    async def set(self, values: dict[str, Any]) -> None:
        raise StorageError("disk full")


def json_model(body: Any, status_code: int = 200) -> Callable[[httpx.Request], httpx.Response]:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json=body)

    return handler


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def ledger(store, clock):
    return ReportLedger(store, clock=clock)


@pytest.fixture
def make_analyzer(store, ledger, clock):
    """Build an Analyzer whose remote model answers through handler."""

    def factory(handler: Callable[[httpx.Request], Any], **kwargs: Any) -> Analyzer:
        remote = RemoteModelClient(transport=httpx.MockTransport(handler), timeout_s=kwargs.pop("timeout_s", 2.0))
        return Analyzer(StateStore(store), ledger, remote, clock=clock, **kwargs)

    return factory


def run(coro):
    return asyncio.run(coro)
