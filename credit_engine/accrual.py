"""
Accrual Engine Module

Daily late-fee accrual for fixed and progressive installments, and the
open-modality cycle read model that derives interest, late fee and payoff
amounts from the per-cycle ledger. Both run lazily on read and before any
mutation that depends on today's amounts.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .clock import add_months
from .config import EngineConfig
from .exceptions import OpenCycleCapExceededError
from .logging_config import get_logger, log_action
from .models import Credit, CycleLedger, Installment, InstallmentStatus, Payment
from .money import HUNDRED, ZERO, fix2, non_negative
from .repositories import Repositories


logger = get_logger("credit_engine.accrual")


def piecewise_late_fee(base: Decimal, reductions: Iterable[Tuple[date, Decimal]],
                       start: date, end: date, daily_rate: Decimal) -> Decimal:
    """
    Late fee accrued on each day in (start, end].

    The outstanding amount starts at ``base``; a reduction dated ``p`` lowers
    it for the days after ``p``. Each segment of constant outstanding is
    rounded to cents.
    """
    if end <= start:
        return ZERO

    total = ZERO
    outstanding = base
    cursor = start
    for day, amount in sorted(reductions, key=lambda item: item[0]):
        if day >= end:
            break
        if day > cursor:
            days = (day - cursor).days
            total += fix2(non_negative(outstanding) * daily_rate * days)
            cursor = day
        outstanding -= amount

    days = (end - cursor).days
    if days > 0:
        total += fix2(non_negative(outstanding) * daily_rate * days)
    return fix2(total)


def installment_late_fee(installment: Installment, payments: Sequence[Payment],
                         today: date, daily_rate: Decimal) -> Decimal:
    """Outstanding late fee of one fixed/progressive installment as of today"""
    if installment.due_date >= today:
        return ZERO

    principal_paid = [(p.payment_date, p.principal) for p in payments if p.principal > ZERO]
    gross = piecewise_late_fee(
        fix2(installment.amount - installment.discount),
        principal_paid,
        installment.due_date,
        today,
        daily_rate,
    )
    collected = sum((p.late_fee + p.late_fee_discount for p in payments), ZERO)
    return non_negative(fix2(gross - collected))


def accrue_installments(installments: Iterable[Installment],
                        payments_by_installment: Dict[str, List[Payment]],
                        today: date, daily_rate: Decimal) -> List[Installment]:
    """
    Bring late fees and statuses of fixed/progressive installments up to date.

    Paid, refinanced and void installments are left alone. Past due
    installments become overdue with their late fee recomputed from scratch,
    so repeated calls on the same day give the same result.

    Returns:
        The installments whose fields changed
    """
    changed = []
    for installment in installments:
        if installment.is_closed:
            continue

        payments = payments_by_installment.get(installment.id, [])
        status = installment.status
        if installment.due_date < today:
            late_fee = installment_late_fee(installment, payments, today, daily_rate)
            status = InstallmentStatus.OVERDUE
        else:
            late_fee = ZERO
            if status == InstallmentStatus.OVERDUE:
                status = InstallmentStatus.PENDING

        if late_fee != installment.late_fee or status != installment.status:
            installment.late_fee = late_fee
            installment.status = status
            changed.append(installment)

    return changed


@dataclass
class CycleState:
    """Amounts of one open-modality cycle as of a given day"""
    cycle: int
    due_date: date
    capital_base: Decimal
    gross_interest: Decimal
    interest_collected: Decimal
    interest_pending: Decimal
    late_fee_gross: Decimal
    late_fee_collected: Decimal
    late_fee_pending: Decimal
    principal_collected: Decimal

    @property
    def charges_pending(self) -> Decimal:
        return fix2(self.interest_pending + self.late_fee_pending)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle": self.cycle,
            "due_date": self.due_date.isoformat(),
            "capital_base": str(self.capital_base),
            "gross_interest": str(self.gross_interest),
            "interest_collected": str(self.interest_collected),
            "interest_pending": str(self.interest_pending),
            "late_fee_pending": str(self.late_fee_pending),
            "principal_collected": str(self.principal_collected),
        }


@dataclass
class OpenCreditSummary:
    """Read model of an open-modality credit as of ``today``"""
    credit_id: str
    today: date
    current_cycle: int
    cycle_due_dates: List[date]
    capital_balance: Decimal
    interest_pending_total: Decimal
    late_fee_pending_total: Decimal
    interest_pending_current: Decimal
    late_fee_pending_current: Decimal
    cap_exceeded: bool
    cycles: List[CycleState] = field(default_factory=list)

    @property
    def payoff_today(self) -> Decimal:
        """Principal plus every pending charge up to the current cycle"""
        return fix2(self.capital_balance + self.interest_pending_total + self.late_fee_pending_total)

    @property
    def cycle_total_today(self) -> Decimal:
        """Principal plus the current cycle's charges"""
        return fix2(self.capital_balance + self.interest_pending_current
                    + self.late_fee_pending_current)

    @property
    def is_overdue(self) -> bool:
        """A cycle past its due date still has charges pending"""
        return any(state.due_date < self.today and state.charges_pending > ZERO
                   for state in self.cycles)

    def oldest_open_cycle(self) -> Optional[CycleState]:
        for state in self.cycles:
            if state.charges_pending > ZERO:
                return state
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "credit_id": self.credit_id,
            "today": self.today.isoformat(),
            "current_cycle": self.current_cycle,
            "cycle_due_dates": [d.isoformat() for d in self.cycle_due_dates],
            "capital_balance": str(self.capital_balance),
            "interest_pending_total": str(self.interest_pending_total),
            "late_fee_pending_total": str(self.late_fee_pending_total),
            "interest_pending_current": str(self.interest_pending_current),
            "late_fee_pending_current": str(self.late_fee_pending_current),
            "payoff_today": str(self.payoff_today),
            "cycle_total_today": str(self.cycle_total_today),
            "cap_exceeded": self.cap_exceeded,
            "cycles": [state.to_dict() for state in self.cycles],
        }


class OpenCycleReadModel:
    """
    Open-modality cycle arithmetic.

    Cycle 1 is due on the commitment date and each later cycle one calendar
    month after the previous one. Interest of a cycle is charged on the
    principal left after earlier cycles; once a cycle is past due its
    unpaid interest accrues the daily late fee.
    """

    def __init__(self, config: EngineConfig):
        self.config = config

    @property
    def cap(self) -> int:
        return self.config.open_cycle_cap

    def due_date(self, credit: Credit, cycle: int) -> date:
        return add_months(credit.commitment_date, cycle - 1)

    def due_dates(self, credit: Credit) -> List[date]:
        return [self.due_date(credit, c) for c in range(1, self.cap + 1)]

    def current_cycle(self, credit: Credit, today: date) -> int:
        for cycle in range(1, self.cap + 1):
            if today <= self.due_date(credit, cycle):
                return cycle
        return self.cap

    def is_cap_exceeded(self, credit: Credit, today: date) -> bool:
        return credit.balance > ZERO and today > self.due_date(credit, self.cap)

    def cycle_late_fee(self, gross_interest: Decimal, collections: List[Tuple[date, Decimal]],
                       due: date, today: date) -> Decimal:
        """Gross late fee of a cycle: unpaid interest at due date accruing daily after it"""
        if today <= due:
            return ZERO
        collected_by_due = sum((amount for day, amount in collections if day <= due), ZERO)
        later = [(day, amount) for day, amount in collections if day > due]
        return piecewise_late_fee(
            non_negative(fix2(gross_interest - collected_by_due)),
            later,
            due,
            today,
            self.config.daily_late_fee_rate,
        )

    def summarize(self, credit: Credit, ledgers: Dict[int, CycleLedger],
                  today: date) -> OpenCreditSummary:
        """
        Build the read model of an open credit.

        Args:
            credit: Open-modality credit
            ledgers: Cycle ledgers by cycle number
            today: Business date

        Returns:
            OpenCreditSummary covering cycles 1 through the current one
        """
        current = self.current_cycle(credit, today)
        principal_before = ZERO
        cycles = []

        for cycle in range(1, current + 1):
            ledger = ledgers.get(cycle)
            interest_collected = ledger.interest_collected if ledger else ZERO
            late_fee_collected = ledger.late_fee_collected if ledger else ZERO
            principal_collected = ledger.principal_collected if ledger else ZERO
            collections = ledger.interest_collections() if ledger else []

            due = self.due_date(credit, cycle)
            base = non_negative(fix2(credit.principal - principal_before))
            gross = fix2(base * credit.rate / HUNDRED)
            late_fee_gross = self.cycle_late_fee(gross, collections, due, today)

            cycles.append(CycleState(
                cycle=cycle,
                due_date=due,
                capital_base=base,
                gross_interest=gross,
                interest_collected=interest_collected,
                interest_pending=non_negative(fix2(gross - interest_collected)),
                late_fee_gross=late_fee_gross,
                late_fee_collected=late_fee_collected,
                late_fee_pending=non_negative(fix2(late_fee_gross - late_fee_collected)),
                principal_collected=principal_collected,
            ))
            principal_before += principal_collected

        capital = non_negative(credit.balance)
        if capital == ZERO:
            # Nothing is owed once the principal is gone
            for state in cycles:
                state.interest_pending = ZERO
                state.late_fee_pending = ZERO

        current_state = cycles[-1]
        return OpenCreditSummary(
            credit_id=credit.id,
            today=today,
            current_cycle=current,
            cycle_due_dates=self.due_dates(credit),
            capital_balance=capital,
            interest_pending_total=fix2(sum((s.interest_pending for s in cycles), ZERO)),
            late_fee_pending_total=fix2(sum((s.late_fee_pending for s in cycles), ZERO)),
            interest_pending_current=current_state.interest_pending,
            late_fee_pending_current=current_state.late_fee_pending,
            cap_exceeded=self.is_cap_exceeded(credit, today),
            cycles=cycles,
        )

    def assert_partial_payment_allowed(self, credit: Credit, summary: OpenCreditSummary,
                                       amount: Decimal) -> None:
        """
        In the last cycle, and past it, only a full payoff is accepted.

        Raises:
            OpenCycleCapExceededError: amount is short of the payoff
        """
        capped = summary.cap_exceeded or summary.current_cycle >= self.cap
        if capped and fix2(amount) < summary.payoff_today:
            raise OpenCycleCapExceededError(credit.id, self.cap)


class AccrualEngine:
    """Runs accrual against storage"""

    def __init__(self, repositories: Repositories, config: EngineConfig):
        self.repos = repositories
        self.config = config
        self.read_model = OpenCycleReadModel(config)

    async def accrue_credit(self, credit: Credit, today: date) -> List[Installment]:
        """
        Persist today's late fees and statuses for a fixed/progressive credit.

        Returns:
            All installments of the credit in sequence order
        """
        installments = await self.repos.installments.for_credit(credit.id)
        if credit.is_open or credit.is_terminal:
            return installments

        payments = await self.repos.payments.by_installment(credit.id)
        changed = accrue_installments(installments, payments, today,
                                      self.config.daily_late_fee_rate)
        for installment in changed:
            await self.repos.installments.save(installment)

        if changed:
            log_action(logger, "info", "Late fees accrued",
                       action="accrue", resource=f"credit:{credit.id}",
                       extra={"installments": len(changed), "today": today.isoformat()})
        return installments

    async def open_summary(self, credit: Credit, today: date) -> OpenCreditSummary:
        ledgers = await self.repos.cycles.for_credit(credit.id)
        return self.read_model.summarize(credit, ledgers, today)
