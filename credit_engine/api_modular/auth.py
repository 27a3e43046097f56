"""
Engine wiring and request identity dependencies
"""

from typing import Dict, Optional

from fastapi import Header

from ..clock import BusinessClock
from ..config import EngineConfig, get_config
from ..credits import CreditService
from ..directory import InMemoryDirectory
from ..identity import Actor
from ..storage import AsyncPostgreSQLStorage, AsyncStorageInterface, create_async_storage


DEFAULT_PAYMENT_METHODS: Dict[str, str] = {
    "1": "Efectivo",
    "2": "Transferencia",
}


class CreditSystem:
    """Credit engine with all components initialized"""

    def __init__(self, config: Optional[EngineConfig] = None,
                 storage: Optional[AsyncStorageInterface] = None,
                 clock: Optional[BusinessClock] = None,
                 borrowers: Optional[InMemoryDirectory] = None,
                 users: Optional[InMemoryDirectory] = None,
                 payment_methods: Optional[InMemoryDirectory] = None):
        self.config = config or get_config()
        self.storage = storage or create_async_storage(self.config)
        self.clock = clock or BusinessClock(self.config.business_timezone)
        self.borrowers = borrowers or InMemoryDirectory()
        self.users = users or InMemoryDirectory()
        self.payment_methods = payment_methods or InMemoryDirectory(DEFAULT_PAYMENT_METHODS)

        self.credit_service = CreditService(
            self.storage, self.clock, self.config,
            self.borrowers, self.users, self.payment_methods,
        )
        self.cash = self.credit_service.cash

    async def start(self) -> None:
        """Open the database pool when running on PostgreSQL"""
        if isinstance(self.storage, AsyncPostgreSQLStorage):
            await self.storage.initialize()

    async def stop(self) -> None:
        await self.storage.close()


# Global credit system instance - created on first use or by the app lifespan
credit_system: Optional[CreditSystem] = None


def set_credit_system(system: Optional[CreditSystem]) -> None:
    global credit_system
    credit_system = system


# Dependency to get credit system
def get_credit_system() -> CreditSystem:
    global credit_system
    if credit_system is None:
        credit_system = CreditSystem()
    return credit_system


# Dependency to get the acting user
def get_actor(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Actor:
    return Actor.from_claims({"user_id": x_user_id, "role": x_user_role})
