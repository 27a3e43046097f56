"""
Shared fixtures for the credit engine test suite
"""

from datetime import date

import pytest

from credit_engine.cash_ledger import CashLedgerSynchronizer
from credit_engine.clock import FixedClock
from credit_engine.config import EngineConfig
from credit_engine.credits import CreditService
from credit_engine.directory import InMemoryDirectory
from credit_engine.identity import Actor, Role
from credit_engine.repositories import Repositories
from credit_engine.storage import AsyncInMemoryStorage


TODAY = date(2024, 3, 1)


@pytest.fixture
def config():
    """Default engine configuration on in-memory storage"""
    return EngineConfig(storage_type="memory")


@pytest.fixture
def clock():
    """Business clock pinned to TODAY"""
    return FixedClock(TODAY)


@pytest.fixture
def storage():
    return AsyncInMemoryStorage()


@pytest.fixture
def repos(storage):
    return Repositories(storage)


@pytest.fixture
def borrowers():
    return InMemoryDirectory({"b1": "Ana Pérez", "b2": "Luis Gómez"})


@pytest.fixture
def users():
    return InMemoryDirectory({"u1": "Carlos Cobrador"})


@pytest.fixture
def payment_methods():
    return InMemoryDirectory({"1": "Efectivo", "2": "Transferencia"})


@pytest.fixture
def service(storage, clock, config, borrowers, users, payment_methods):
    """Credit service wired over in-memory storage and a fixed clock"""
    return CreditService(storage, clock, config, borrowers, users, payment_methods)


@pytest.fixture
def cash(repos, clock):
    return CashLedgerSynchronizer(repos, clock)


@pytest.fixture
def superadmin():
    return Actor(user_id="root", role=Role.SUPERADMIN)


@pytest.fixture
def admin():
    return Actor(user_id="adm", role=Role.ADMIN)


@pytest.fixture
def collector():
    return Actor(user_id="u1", role=Role.COLLECTOR)
