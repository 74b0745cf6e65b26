# qx7/tests/conftest.py
import pytest

from qx7.browser import BrowsingContext, FileStorageArea, WorkerChannel

T0 = 1_700_000_000_000


class FakeClock:
    def __init__(self, now: int = T0):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_context(tmp_path, clock):
    """Factory for contexts with durable storage and a database under tmp_path."""
    counter = {"n": 0}

    def _make(origin="https://shop.example", *, database=True, worker=True, **kwargs):
        counter["n"] += 1
        n = counter["n"]
        return BrowsingContext(
            origin,
            local_storage=FileStorageArea(str(tmp_path / f"local-{n}.json")),
            database_path=str(tmp_path / f"qx7-{n}.db") if database else None,
            worker=WorkerChannel() if worker else None,
            clock=clock,
            **kwargs,
        )

    return _make
