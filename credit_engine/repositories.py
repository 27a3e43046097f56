"""
Repositories Module

Typed access to each entity table on top of the storage interface. Every
"recreate if missing" path goes through one upsert-style method per entity.
"""

from datetime import date
from decimal import Decimal
from typing import Dict, Generic, List, Optional, Type, TypeVar
import uuid

from .exceptions import NotFoundError
from .models import (
    CashMovement, CashMovementType, Credit, CycleLedger, Installment,
    InstallmentStatus, Payment, Receipt, SourceType,
)
from .storage import AsyncStorageInterface, StorageRecord, utc_now


T = TypeVar("T", bound=StorageRecord)


def new_id() -> str:
    return str(uuid.uuid4())


class Repository(Generic[T]):
    """Load/save of one record type in one table"""

    table: str = ""
    record_class: Type[StorageRecord] = StorageRecord
    entity_name: str = "Record"

    def __init__(self, storage: AsyncStorageInterface):
        self.storage = storage

    async def get(self, record_id: str) -> Optional[T]:
        data = await self.storage.load(self.table, str(record_id))
        return self.record_class.from_dict(data) if data else None

    async def get_required(self, record_id: str) -> T:
        record = await self.get(record_id)
        if record is None:
            raise NotFoundError(self.entity_name, record_id)
        return record

    async def save(self, record: T) -> T:
        record.updated_at = utc_now()
        await self.storage.save(self.table, record.id, record.to_dict())
        return record

    async def delete(self, record_id: str) -> bool:
        return await self.storage.delete(self.table, str(record_id))

    async def find(self, **filters) -> List[T]:
        rows = await self.storage.find(self.table, filters)
        return [self.record_class.from_dict(row) for row in rows]


class CreditRepository(Repository[Credit]):
    table = "credits"
    record_class = Credit
    entity_name = "Credit"

    async def next_id(self) -> str:
        return str(await self.storage.next_sequence("credit_id"))

    async def for_borrower(self, borrower_id: str) -> List[Credit]:
        return await self.find(borrower_id=borrower_id)


class InstallmentRepository(Repository[Installment]):
    table = "installments"
    record_class = Installment
    entity_name = "Installment"

    async def for_credit(self, credit_id: str) -> List[Installment]:
        """Installments of a credit in ascending sequence order"""
        installments = await self.find(credit_id=credit_id)
        return sorted(installments, key=lambda i: i.number)

    async def delete_for_credit(self, credit_id: str) -> int:
        installments = await self.find(credit_id=credit_id)
        for installment in installments:
            await self.delete(installment.id)
        return len(installments)

    async def upsert_open_installment(self, credit: Credit, due_date: date,
                                      amount: Optional[Decimal] = None,
                                      late_fee: Optional[Decimal] = None,
                                      overdue: bool = False) -> Installment:
        """
        Refresh the single installment of an open credit, creating it if missing.

        Args:
            credit: Open-modality credit
            due_date: Due date to store (the open sentinel)
            amount: Amount to hold, the credit balance when omitted
            late_fee: Late fee pending across cycles; when given, the
                status is refreshed from ``overdue`` as well
            overdue: Whether a past-due cycle still has charges pending

        Returns:
            The stored installment
        """
        existing = await self.for_credit(credit.id)
        installment = existing[0] if existing else None
        for extra in existing[1:]:
            await self.delete(extra.id)

        now = utc_now()
        if installment is None:
            installment = Installment(
                id=new_id(),
                created_at=now,
                updated_at=now,
                credit_id=credit.id,
                number=1,
                amount=credit.balance if amount is None else amount,
                due_date=due_date,
            )
        else:
            installment.amount = credit.balance if amount is None else amount
            installment.due_date = due_date
            if installment.status in (InstallmentStatus.OVERDUE, InstallmentStatus.PARTIAL):
                installment.status = InstallmentStatus.PENDING

        if late_fee is not None:
            installment.late_fee = late_fee
            if not installment.is_closed:
                installment.status = (InstallmentStatus.OVERDUE if overdue
                                      else InstallmentStatus.PENDING)

        return await self.save(installment)


class PaymentRepository(Repository[Payment]):
    table = "payments"
    record_class = Payment
    entity_name = "Payment"

    async def for_credit(self, credit_id: str) -> List[Payment]:
        payments = await self.find(credit_id=credit_id)
        return sorted(payments, key=lambda p: (p.payment_date, p.created_at))

    async def by_installment(self, credit_id: str) -> Dict[str, List[Payment]]:
        grouped: Dict[str, List[Payment]] = {}
        for payment in await self.for_credit(credit_id):
            grouped.setdefault(payment.installment_id, []).append(payment)
        return grouped


class ReceiptRepository(Repository[Receipt]):
    table = "receipts"
    record_class = Receipt
    entity_name = "Receipt"

    async def for_credit(self, credit_id: str) -> List[Receipt]:
        receipts = await self.find(credit_id=credit_id)
        return sorted(receipts, key=lambda r: r.number)

    async def delete_for_credit(self, credit_id: str) -> int:
        receipts = await self.find(credit_id=credit_id)
        for receipt in receipts:
            await self.delete(receipt.id)
        return len(receipts)


class CashMovementRepository(Repository[CashMovement]):
    table = "cash_movements"
    record_class = CashMovement
    entity_name = "Cash movement"

    async def get_sourced(self, movement_type: CashMovementType, source_type: SourceType,
                          source_id: str) -> Optional[CashMovement]:
        return await self.get(CashMovement.source_key(movement_type, source_type, source_id))

    async def delete_sourced(self, movement_type: CashMovementType, source_type: SourceType,
                             source_id: str) -> bool:
        return await self.delete(CashMovement.source_key(movement_type, source_type, source_id))

    async def on_date(self, day: date) -> List[CashMovement]:
        return await self.find(movement_date=day.isoformat())


class CycleLedgerRepository(Repository[CycleLedger]):
    table = "cycle_ledgers"
    record_class = CycleLedger
    entity_name = "Cycle ledger"

    async def for_credit(self, credit_id: str) -> Dict[int, CycleLedger]:
        return {ledger.cycle: ledger for ledger in await self.find(credit_id=credit_id)}

    async def get_or_create(self, credit_id: str, cycle: int) -> CycleLedger:
        ledger = await self.get(CycleLedger.key(credit_id, cycle))
        if ledger is None:
            now = utc_now()
            ledger = CycleLedger(
                id=CycleLedger.key(credit_id, cycle),
                created_at=now,
                updated_at=now,
                credit_id=credit_id,
                cycle=cycle,
            )
        return ledger

    async def delete_for_credit(self, credit_id: str) -> int:
        ledgers = await self.find(credit_id=credit_id)
        for ledger in ledgers:
            await self.delete(ledger.id)
        return len(ledgers)


class Repositories:
    """All repositories over one storage backend"""

    def __init__(self, storage: AsyncStorageInterface):
        self.storage = storage
        self.credits = CreditRepository(storage)
        self.installments = InstallmentRepository(storage)
        self.payments = PaymentRepository(storage)
        self.receipts = ReceiptRepository(storage)
        self.cash = CashMovementRepository(storage)
        self.cycles = CycleLedgerRepository(storage)
