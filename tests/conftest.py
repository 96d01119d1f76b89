"""
Pytest configuration and shared fixtures for the Bunny offloader tests.
"""

import json
from typing import Any, Dict, Optional
from unittest.mock import Mock

import pytest
import requests

from bunny_api import BunnyClient
from storage import MemoryTransients, MetaStore


class FakeClock:
    """Callable clock whose ``sleep`` advances time instead of blocking."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def make_response(status: int = 200, body: Any = None, headers: Optional[Dict[str, str]] = None) -> requests.Response:
    r = requests.Response()
    r.status_code = status
    if body is None:
        r._content = b""
    elif isinstance(body, bytes):
        r._content = body
    elif isinstance(body, str):
        r._content = body.encode()
    else:
        r._content = json.dumps(body).encode()
    r.encoding = "utf-8"
    r.headers.update(headers or {})
    return r


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transients(clock: FakeClock) -> MemoryTransients:
    return MemoryTransients(clock)


@pytest.fixture
def session() -> Mock:
    return Mock(spec=requests.Session)


@pytest.fixture
def client(session: Mock, transients: MemoryTransients, clock: FakeClock) -> BunnyClient:
    return BunnyClient(
        "lib-key",
        "123",
        account_key="account-key",
        session=session,
        transients=transients,
        sleep=clock.sleep,
        clock=clock,
    )


@pytest.fixture
def meta() -> MetaStore:
    return MetaStore()
