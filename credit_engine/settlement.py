"""
Settlement Engine Module

Full early payoff of a credit with an optional discretionary discount. The
whole payoff runs as one unit of work under a lock on the credit: installments
closed, credit marked paid, one aggregate payment, one receipt and one cash
inflow.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .accrual import AccrualEngine
from .cash_ledger import CashLedgerSynchronizer
from .clock import BusinessClock
from .config import EngineConfig
from .exceptions import ConflictError, ValidationError
from .identity import SYSTEM_ACTOR, Actor
from .logging_config import get_logger, log_action
from .models import (
    Credit, CreditStatus, DiscountBase, Installment, InstallmentStatus, Payment,
)
from .money import HUNDRED, ZERO, allocate_proportionally, clamp, fix2, sum_money, to_decimal
from .receipts import ReceiptBuilder
from .repositories import Repositories, new_id
from .storage import utc_now


logger = get_logger("credit_engine.settlement")


@dataclass
class SettlementLine:
    """What one installment owes at payoff and what is forgiven"""
    installment: Installment
    principal: Decimal
    late_fee: Decimal
    interest: Decimal = ZERO
    principal_discount: Decimal = ZERO
    late_fee_discount: Decimal = ZERO
    interest_discount: Decimal = ZERO

    @property
    def discount(self) -> Decimal:
        return fix2(self.principal_discount + self.late_fee_discount + self.interest_discount)


@dataclass
class SettlementSummary:
    """Outcome of a settlement"""
    credit_id: str
    installments_paid: int
    principal_pending: Decimal
    interest_pending: Decimal
    late_fee_pending: Decimal
    discount_applied: Decimal
    principal_collected: Decimal
    interest_collected: Decimal
    late_fee_collected: Decimal
    total_paid: Decimal
    balance_before: Decimal
    balance_after: Decimal
    receipt_number: Optional[int] = None
    already_paid: bool = False
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {}
        for key, value in self.__dict__.items():
            result[key] = str(value) if isinstance(value, Decimal) else value
        return result


def parse_discount_base(value: Any) -> DiscountBase:
    if value is None or value == "":
        return DiscountBase.MORA
    if isinstance(value, DiscountBase):
        return value
    try:
        return DiscountBase(str(value).strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown discount base: {value!r}", field="discount_base")


def allocate_discount(lines: List[SettlementLine], pct: Decimal, base: DiscountBase) -> None:
    """
    Spread a percentage discount over the payoff lines.

    Base ``mora`` discounts the late fee only, proportionally to each line's
    late fee. Base ``total`` discounts principal + interest + late fee,
    consuming late fee first, then interest, then principal. Every share is
    capped at what the line owes.
    """
    if pct <= ZERO or not lines:
        return

    late_fee_caps = [line.late_fee for line in lines]
    if base == DiscountBase.MORA:
        target = fix2(sum(late_fee_caps, ZERO) * pct / HUNDRED)
        for line, share in zip(lines, allocate_proportionally(target, late_fee_caps)):
            line.late_fee_discount = share
        return

    owed = sum((line.principal + line.interest + line.late_fee for line in lines), ZERO)
    remaining = fix2(owed * pct / HUNDRED)

    for line, share in zip(lines, allocate_proportionally(remaining, late_fee_caps)):
        line.late_fee_discount = share
        remaining -= share

    interest_caps = [line.interest for line in lines]
    for line, share in zip(lines, allocate_proportionally(remaining, interest_caps)):
        line.interest_discount = share
        remaining -= share

    principal_caps = [line.principal for line in lines]
    for line, share in zip(lines, allocate_proportionally(remaining, principal_caps)):
        line.principal_discount = share


class SettlementEngine:
    """Early payoff of fixed, progressive and open credits"""

    def __init__(self, repositories: Repositories, accrual: AccrualEngine,
                 cash: CashLedgerSynchronizer, receipts: ReceiptBuilder,
                 clock: BusinessClock, config: EngineConfig):
        self.repos = repositories
        self.storage = repositories.storage
        self.accrual = accrual
        self.cash = cash
        self.receipts = receipts
        self.clock = clock
        self.config = config

    async def settle(self, credit_id: str, payment_method_id: Optional[str],
                     actor: Actor = SYSTEM_ACTOR, discount_pct: Any = None,
                     discount_base: Any = DiscountBase.MORA,
                     note: Optional[str] = None) -> SettlementSummary:
        """
        Pay off a credit in full.

        Args:
            credit_id: Credit to settle
            payment_method_id: Payment method of the collection (required)
            actor: Acting user; discounts require a superadmin
            discount_pct: Discount percentage, clamped to 0-100
            discount_base: ``mora`` (late fee only) or ``total``
            note: Free text appended to the payment note

        Returns:
            SettlementSummary; an already paid credit gives a no-op summary

        Raises:
            NotFoundError: credit or payment method not found
            ValidationError: missing payment method or bad discount base
            PrivilegeError: discount requested by a non-superadmin
            ConflictError: credit is voided or refinanced
        """
        pct = clamp(to_decimal(discount_pct), ZERO, HUNDRED)
        base = parse_discount_base(discount_base)

        async with self.storage.atomic():
            async with self.storage.lock(self.repos.credits.table, credit_id):
                credit = await self.repos.credits.get_required(credit_id)
                if credit.is_terminal:
                    raise ConflictError(
                        f"Credit {credit_id} is {credit.status.value} and cannot be settled",
                        credit_id=credit_id,
                    )
                if credit.status == CreditStatus.PAID:
                    return self._already_paid(credit)

                method_label = await self.receipts.require_payment_method(payment_method_id)
                if pct > ZERO:
                    actor.require_superadmin("apply a settlement discount")

                today = self.clock.today()
                lines = await self._payoff_lines(credit, today)
                if not lines:
                    await self._close_out(credit, payment_method_id)
                    return self._already_paid(credit)

                allocate_discount(lines, pct, base)
                summary = await self._apply(credit, lines, payment_method_id, method_label,
                                            actor, note, today)

        log_action(logger, "info", "Credit settled",
                   user_id=actor.user_id, action="settle", resource=f"credit:{credit_id}",
                   extra={"total_paid": str(summary.total_paid),
                          "discount": str(summary.discount_applied),
                          "receipt_number": summary.receipt_number})
        return summary

    async def _payoff_lines(self, credit: Credit, today) -> List[SettlementLine]:
        if credit.is_open:
            if credit.balance <= ZERO:
                return []
            summary = await self.accrual.open_summary(credit, today)
            installment = await self.repos.installments.upsert_open_installment(
                credit, self.config.open_due_sentinel)
            return [SettlementLine(
                installment=installment,
                principal=summary.capital_balance,
                late_fee=summary.late_fee_pending_total,
                interest=summary.interest_pending_total,
            )]

        installments = await self.accrual.accrue_credit(credit, today)
        return [
            SettlementLine(installment=i, principal=i.principal_pending, late_fee=i.late_fee)
            for i in installments
            if not i.is_closed
        ]

    async def _close_out(self, credit: Credit, payment_method_id: str) -> None:
        """Mark a credit with nothing left to collect as paid, without moving cash"""
        for installment in await self.repos.installments.for_credit(credit.id):
            if installment.is_closed:
                continue
            installment.late_fee = ZERO
            installment.status = InstallmentStatus.PAID
            installment.payment_method_id = payment_method_id
            await self.repos.installments.save(installment)
        credit.balance = fix2(ZERO)
        credit.status = CreditStatus.PAID
        await self.repos.credits.save(credit)
        log_action(logger, "info", "Credit closed out with nothing pending",
                   action="close_out", resource=f"credit:{credit.id}")

    def _already_paid(self, credit: Credit) -> SettlementSummary:
        return SettlementSummary(
            credit_id=credit.id,
            installments_paid=0,
            principal_pending=ZERO,
            interest_pending=ZERO,
            late_fee_pending=ZERO,
            discount_applied=ZERO,
            principal_collected=ZERO,
            interest_collected=ZERO,
            late_fee_collected=ZERO,
            total_paid=ZERO,
            balance_before=credit.balance,
            balance_after=credit.balance,
            already_paid=True,
            message="Credit is already paid",
        )

    async def _apply(self, credit: Credit, lines: List[SettlementLine],
                     payment_method_id: str, method_label: str, actor: Actor,
                     note: Optional[str], today) -> SettlementSummary:
        for line in lines:
            installment = line.installment
            installment.discount = fix2(installment.discount + line.principal_discount)
            installment.paid_amount = fix2(installment.amount - installment.discount)
            installment.late_fee = ZERO
            installment.status = InstallmentStatus.PAID
            installment.payment_method_id = payment_method_id
            await self.repos.installments.save(installment)

        principal_owed = sum_money(line.principal for line in lines)
        interest_owed = sum_money(line.interest for line in lines)
        late_fee_owed = sum_money(line.late_fee for line in lines)
        principal_net = fix2(principal_owed - sum_money(l.principal_discount for l in lines))
        interest_net = fix2(interest_owed - sum_money(l.interest_discount for l in lines))
        late_fee_net = fix2(late_fee_owed - sum_money(l.late_fee_discount for l in lines))
        total_paid = fix2(principal_net + interest_net + late_fee_net)
        discount = sum_money(line.discount for line in lines)

        balance_before = credit.balance
        credit.balance = ZERO
        credit.status = CreditStatus.PAID
        if credit.is_open:
            credit.accrued_interest = fix2(credit.accrued_interest + interest_net)
        else:
            credit.accrued_interest = fix2(credit.accrued_interest + late_fee_net)
        await self.repos.credits.save(credit)

        payment_note = f"Cancelación crédito #{credit.id}" + (f" - {note}" if note else "")
        now = utc_now()
        cycle = None
        if credit.is_open:
            cycle = self.accrual.read_model.current_cycle(credit, today)

        payment = Payment(
            id=new_id(),
            created_at=now,
            updated_at=now,
            credit_id=credit.id,
            installment_id=lines[-1].installment.id,
            amount=total_paid,
            payment_date=today,
            payment_method_id=payment_method_id,
            note=payment_note,
            principal=principal_net,
            interest=interest_net,
            late_fee=late_fee_net,
            late_fee_discount=sum_money(l.late_fee_discount for l in lines),
            discount=sum_money(l.principal_discount + l.interest_discount for l in lines),
            cycle=cycle,
            operator_id=actor.user_id,
        )
        await self.repos.payments.save(payment)

        if credit.is_open:
            ledger = await self.repos.cycles.get_or_create(credit.id, cycle)
            ledger.record(today, interest=interest_net, late_fee=late_fee_net,
                          principal=principal_net, payment_id=payment.id)
            await self.repos.cycles.save(ledger)

        if credit.is_open:
            concept = f"Cancelación total crédito libre #{credit.id}"
        else:
            concept = f"Cancelación total del crédito #{credit.id} ({len(lines)} cuotas)"
        receipt = await self.receipts.issue(credit, payment, balance_before, ZERO, concept,
                                            payment_method_label=method_label)
        await self.cash.register_receipt_inflow(receipt, operator_id=actor.user_id)

        return SettlementSummary(
            credit_id=credit.id,
            installments_paid=len(lines),
            principal_pending=principal_owed,
            interest_pending=interest_owed,
            late_fee_pending=late_fee_owed,
            discount_applied=discount,
            principal_collected=principal_net,
            interest_collected=interest_net,
            late_fee_collected=late_fee_net,
            total_paid=total_paid,
            balance_before=balance_before,
            balance_after=ZERO,
            receipt_number=receipt.number,
        )
