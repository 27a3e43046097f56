"""
Cash Ledger Synchronizer Module

Keeps the cash register in step with the business documents that move money:
credit disbursements, collection receipts, sales, purchases and expenses.
Every sourced row is keyed by (type, source type, source id) and uses that key
as its primary key, so repeated or concurrent calls collapse to one row.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .clock import BusinessClock, parse_date
from .exceptions import ValidationError
from .logging_config import get_logger, log_action
from .models import CashMovement, CashMovementType, Credit, Receipt, SourceType
from .money import ZERO, fix2, sanitize_amount
from .repositories import Repositories, new_id
from .storage import utc_now


logger = get_logger("credit_engine.cash_ledger")

# Direction removed by delete_from_source when no type is given
_DEFAULT_DIRECTIONS = {
    SourceType.CREDIT: (CashMovementType.OUTFLOW,),
    SourceType.RECEIPT: (CashMovementType.INFLOW,),
    SourceType.PURCHASE: (CashMovementType.OUTFLOW,),
    SourceType.EXPENSE: (CashMovementType.OUTFLOW,),
    SourceType.SALE: (CashMovementType.INFLOW, CashMovementType.OUTFLOW),
}


@dataclass
class DailyTotals:
    """Cash register totals for one day"""
    day: date
    inflow: Decimal = ZERO
    outflow: Decimal = ZERO
    by_type: Dict[str, Decimal] = field(default_factory=dict)
    movements: int = 0

    @property
    def net(self) -> Decimal:
        return fix2(self.inflow - self.outflow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "day": self.day.isoformat(),
            "inflow": str(self.inflow),
            "outflow": str(self.outflow),
            "net": str(self.net),
            "by_type": {k: str(v) for k, v in self.by_type.items()},
            "movements": self.movements,
        }


class CashLedgerSynchronizer:
    """
    Idempotent writer of the cash register.

    Callers run it inside their own unit of work; it never opens one.
    """

    def __init__(self, repositories: Repositories, clock: BusinessClock):
        self.repos = repositories
        self.clock = clock

    def _positive_amount(self, amount: Any) -> Decimal:
        value = sanitize_amount(amount)
        if value <= ZERO:
            raise ValidationError("Cash movement amount must be greater than zero", field="amount")
        return value

    def _new_movement(self, movement_id: str, movement_type: CashMovementType,
                      amount: Decimal, movement_date: Optional[Any], concept: str,
                      payment_method_id: Optional[str], operator_id: Optional[str],
                      source_type: Optional[SourceType] = None,
                      source_id: Optional[Any] = None) -> CashMovement:
        now = utc_now()
        return CashMovement(
            id=movement_id,
            created_at=now,
            updated_at=now,
            movement_date=parse_date(movement_date, "movement_date") or self.clock.today(),
            movement_time=self.clock.time_of_day(),
            movement_type=movement_type,
            amount=amount,
            concept=concept,
            payment_method_id=payment_method_id,
            source_type=source_type,
            source_id=str(source_id) if source_id is not None else None,
            operator_id=operator_id,
        )

    async def _register(self, movement_type: CashMovementType, source_type: SourceType,
                        source_id: Any, amount: Any, movement_date: Optional[Any],
                        concept: str, payment_method_id: Optional[str],
                        operator_id: Optional[str]) -> CashMovement:
        value = self._positive_amount(amount)
        existing = await self.repos.cash.get_sourced(movement_type, source_type, source_id)
        if existing is not None:
            return existing

        movement = self._new_movement(
            CashMovement.source_key(movement_type, source_type, source_id),
            movement_type, value, movement_date, concept, payment_method_id,
            operator_id, source_type, source_id,
        )
        await self.repos.cash.save(movement)

        log_action(logger, "info", "Cash movement registered",
                   user_id=operator_id, action=f"register_{movement_type.value}",
                   resource=f"cash:{movement.id}",
                   extra={"amount": str(value), "concept": concept})
        return movement

    async def register_inflow(self, source_type: SourceType, source_id: Any, amount: Any,
                              movement_date: Optional[Any] = None, concept: str = "",
                              payment_method_id: Optional[str] = None,
                              operator_id: Optional[str] = None) -> CashMovement:
        """
        Find or create the inflow mirroring a source document.

        Args:
            source_type: Kind of document
            source_id: Document id
            amount: Amount in any accepted numeric form, must be > 0
            movement_date: Movement date, today when omitted
            concept: Human readable concept
            payment_method_id: Payment method reference
            operator_id: Acting user

        Returns:
            The existing or new CashMovement
        """
        return await self._register(CashMovementType.INFLOW, source_type, source_id, amount,
                                    movement_date, concept, payment_method_id, operator_id)

    async def register_outflow(self, source_type: SourceType, source_id: Any, amount: Any,
                               movement_date: Optional[Any] = None, concept: str = "",
                               payment_method_id: Optional[str] = None,
                               operator_id: Optional[str] = None) -> CashMovement:
        """Find or create the outflow mirroring a source document"""
        return await self._register(CashMovementType.OUTFLOW, source_type, source_id, amount,
                                    movement_date, concept, payment_method_id, operator_id)

    async def _upsert(self, movement_type: CashMovementType, source_type: SourceType,
                      source_id: Any, amount: Decimal, movement_date: Optional[Any],
                      concept: str, payment_method_id: Optional[str],
                      operator_id: Optional[str]) -> CashMovement:
        movement = await self.repos.cash.get_sourced(movement_type, source_type, source_id)
        if movement is None:
            movement = self._new_movement(
                CashMovement.source_key(movement_type, source_type, source_id),
                movement_type, amount, movement_date, concept, payment_method_id,
                operator_id, source_type, source_id,
            )
        else:
            movement.amount = amount
            movement.concept = concept
            movement.payment_method_id = payment_method_id
            movement.operator_id = operator_id or movement.operator_id
            if movement_date is not None:
                movement.movement_date = parse_date(movement_date, "movement_date")
        return await self.repos.cash.save(movement)

    async def update_from_source(self, source_type: SourceType, source_id: Any,
                                 movement_type: CashMovementType, amount: Any,
                                 movement_date: Optional[Any] = None, concept: str = "",
                                 payment_method_id: Optional[str] = None,
                                 operator_id: Optional[str] = None,
                                 financed_capital: Optional[Any] = None,
                                 financed_installments: Optional[int] = None
                                 ) -> Optional[CashMovement]:
        """
        Update the row mirroring a source document, creating it if missing.

        A non-positive amount removes the row. For sales, the financing
        outflow is kept in step: present with the financed capital while the
        sale is financed (capital > 0 and more than one installment),
        removed otherwise.

        Returns:
            The stored movement, or None when it was removed
        """
        value = sanitize_amount(amount)
        if value > ZERO:
            movement = await self._upsert(movement_type, source_type, source_id, value,
                                          movement_date, concept, payment_method_id,
                                          operator_id)
        else:
            await self.repos.cash.delete_sourced(movement_type, source_type, source_id)
            movement = None

        if source_type == SourceType.SALE and movement_type == CashMovementType.INFLOW:
            await self._sync_sale_financing(source_id, financed_capital, financed_installments,
                                            movement_date, concept, payment_method_id,
                                            operator_id)

        log_action(logger, "info", "Cash movement synchronized",
                   user_id=operator_id, action="update_from_source",
                   resource=f"{source_type.value}:{source_id}",
                   extra={"movement_type": movement_type.value, "amount": str(value)})
        return movement

    async def _sync_sale_financing(self, sale_id: Any, capital: Optional[Any],
                                   installments: Optional[int], movement_date: Optional[Any],
                                   concept: str, payment_method_id: Optional[str],
                                   operator_id: Optional[str]) -> None:
        financed_capital = sanitize_amount(capital)
        financed = financed_capital > ZERO and (installments or 0) > 1
        if financed:
            await self._upsert(CashMovementType.OUTFLOW, SourceType.SALE, sale_id,
                               financed_capital, movement_date, f"Financiación - {concept}",
                               payment_method_id, operator_id)
        else:
            await self.repos.cash.delete_sourced(CashMovementType.OUTFLOW, SourceType.SALE, sale_id)

    async def delete_from_source(self, source_type: SourceType, source_id: Any,
                                 movement_type: Optional[CashMovementType] = None) -> int:
        """
        Remove the rows mirroring a source document.

        Without a type, sales lose both directions and other sources their
        usual one.

        Returns:
            Number of rows removed
        """
        types = (movement_type,) if movement_type else _DEFAULT_DIRECTIONS[source_type]
        removed = 0
        for kind in types:
            if await self.repos.cash.delete_sourced(kind, source_type, source_id):
                removed += 1

        if removed:
            log_action(logger, "info", "Cash movements removed",
                       action="delete_from_source", resource=f"{source_type.value}:{source_id}",
                       extra={"removed": removed})
        return removed

    async def record_movement(self, movement_type: CashMovementType, amount: Any,
                              concept: str, movement_date: Optional[Any] = None,
                              payment_method_id: Optional[str] = None,
                              operator_id: Optional[str] = None) -> CashMovement:
        """Record a manual movement with no source document (adjustments, opening, closing)"""
        value = self._positive_amount(amount)
        movement = self._new_movement(new_id(), movement_type, value, movement_date, concept,
                                      payment_method_id, operator_id)
        await self.repos.cash.save(movement)

        log_action(logger, "info", "Manual cash movement recorded",
                   user_id=operator_id, action=f"record_{movement_type.value}",
                   resource=f"cash:{movement.id}", extra={"amount": str(value)})
        return movement

    async def daily_totals(self, day: Any = None) -> DailyTotals:
        target = parse_date(day, "day") or self.clock.today()
        totals = DailyTotals(day=target)
        for movement in await self.repos.cash.on_date(target):
            kind = movement.movement_type.value
            totals.by_type[kind] = fix2(totals.by_type.get(kind, ZERO) + movement.amount)
            totals.movements += 1
        totals.inflow = totals.by_type.get(CashMovementType.INFLOW.value, ZERO)
        totals.outflow = totals.by_type.get(CashMovementType.OUTFLOW.value, ZERO)
        return totals

    async def movements_for_source(self, source_type: SourceType, source_id: Any) -> List[CashMovement]:
        return await self.repos.cash.find(source_type=source_type.value, source_id=str(source_id))

    # Credit helpers

    async def register_disbursement(self, credit: Credit, borrower_name: Optional[str],
                                    operator_id: Optional[str] = None) -> Optional[CashMovement]:
        """Outflow for the money handed to the borrower; none for financed sales"""
        if credit.from_financed_sale or credit.principal <= ZERO:
            return None
        return await self.register_outflow(
            SourceType.CREDIT, credit.id, credit.principal,
            movement_date=credit.accreditation_date,
            concept=f"Desembolso crédito #{credit.id} - {borrower_name or credit.borrower_id}",
            operator_id=operator_id,
        )

    async def remove_disbursement(self, credit_id: str) -> bool:
        return await self.repos.cash.delete_sourced(CashMovementType.OUTFLOW, SourceType.CREDIT,
                                                    credit_id)

    async def register_receipt_inflow(self, receipt: Receipt,
                                      operator_id: Optional[str] = None) -> Optional[CashMovement]:
        """Inflow for a collection receipt; none when nothing was collected"""
        if receipt.amount <= ZERO:
            return None
        return await self.register_inflow(
            SourceType.RECEIPT, receipt.number, receipt.amount,
            movement_date=receipt.issue_date,
            concept=f"Cobro recibo #{receipt.number} - {receipt.borrower_name or receipt.credit_id}",
            payment_method_id=receipt.payment_method_id,
            operator_id=operator_id,
        )
