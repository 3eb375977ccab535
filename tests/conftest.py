import fakeredis
import pytest

from command_store.models import Route
from command_store.store import CommandStore
from shared.config import BridgeSettings

T0 = 1_700_000_000.0


class FakeClock:
    def __init__(self, t: float = T0) -> None:
        self.t = t

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
def redis_client(redis_server):
    return fakeredis.FakeRedis(server=redis_server, decode_responses=True)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return BridgeSettings(
        connections=("conn1",),
        routes={"room1": "conn1"},
        ingest_max_attempts=3,
        ingest_base_delay_ms=1.0,
        ingest_jitter_ms=0.0,
        ingest_attempt_timeout_sec=0,
    )


@pytest.fixture
def store(redis_client, clock):
    s = CommandStore(redis_client, clock=clock)
    s.ensure_connection("conn1")
    s.ensure_connection("conn2")
    s.ensure_route(Route(room_id="room1", connection_id="conn1"))
    return s
