# tests/conftest.py
from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy.orm import Session, sessionmaker
from support import FakeClock, Signer

from chorus_sync.db.session import build_session_factory
from chorus_sync.schemas.messages import WalletKind
from chorus_sync.services.relay import MemoryRelay
from chorus_sync.services.wallet import SoftwareWallet


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def session_factory(tmp_path: Path) -> sessionmaker[Session]:
    return build_session_factory(f"sqlite:///{tmp_path / 'sync.db'}")


@pytest.fixture()
def memory_factory() -> sessionmaker[Session]:
    """In-memory cache for tests that stay on one thread."""
    return build_session_factory("sqlite://")


@pytest.fixture()
def relay(clock: FakeClock) -> MemoryRelay:
    return MemoryRelay(clock)


@pytest.fixture()
def wallet() -> SoftwareWallet:
    return SoftwareWallet(WalletKind.ETHEREUM)


@pytest.fixture()
def alice() -> Signer:
    return Signer()


@pytest.fixture()
def bob() -> Signer:
    return Signer()


@pytest.fixture()
def carol() -> Signer:
    return Signer()
