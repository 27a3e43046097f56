"""
Read-only directories the engine consumes: borrower and user display names
and the payment-method catalog. Production wiring adapts the host
application's tables to these protocols; the in-memory versions back local
runs and tests.
"""

from typing import Dict, Optional, Protocol


class BorrowerDirectory(Protocol):
    async def display_name(self, borrower_id: str) -> Optional[str]:
        ...


class UserDirectory(Protocol):
    async def display_name(self, user_id: str) -> Optional[str]:
        ...


class PaymentMethodCatalog(Protocol):
    async def label(self, method_id: str) -> Optional[str]:
        ...


class InMemoryDirectory:
    """Id -> display name lookup usable for any of the directory protocols"""

    def __init__(self, names: Optional[Dict[str, str]] = None):
        self._names: Dict[str, str] = dict(names or {})

    def register(self, entry_id: str, name: str) -> None:
        self._names[str(entry_id)] = name

    async def display_name(self, entry_id: str) -> Optional[str]:
        if entry_id is None:
            return None
        return self._names.get(str(entry_id))

    async def label(self, entry_id: str) -> Optional[str]:
        return await self.display_name(entry_id)
