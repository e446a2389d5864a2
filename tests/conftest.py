from __future__ import annotations

import pytest

from blobstore import LocalBlobStore
from client import ChatClient, build_client
from ledger import InMemoryLedger
from signer import EthSigner
from storage import LocalStore


class FakeClock:
    def __init__(self, start: int = 1_700_000_000) -> None:
        self.now_s = start

    def advance(self, seconds: int) -> None:
        self.now_s += seconds

    def now(self) -> int:
        return self.now_s


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ledger(clock: FakeClock) -> InMemoryLedger:
    return InMemoryLedger(now_func=clock.now)


@pytest.fixture
def blobs(tmp_path) -> LocalBlobStore:
    return LocalBlobStore(str(tmp_path / "blobs"))


@pytest.fixture
def make_client(tmp_path, ledger, clock, blobs):
    """Build a fully wired client for a fresh account on the shared ledger."""

    def _make(name: str, signer: EthSigner | None = None) -> ChatClient:
        store = LocalStore(str(tmp_path / f"{name}.db"))
        return build_client(signer or EthSigner.create(), ledger, store, blobs, now_func=clock.now)

    return _make
