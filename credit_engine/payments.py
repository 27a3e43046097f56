"""
Installment Payments Module

Collections against single installments. Fixed and progressive installments
take the late fee first and then principal; open credits take the oldest
open cycle's late fee, then its interest, and principal only once that cycle
is clear. Every payment produces one receipt and one cash inflow.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Optional

from .accrual import AccrualEngine
from .cash_ledger import CashLedgerSynchronizer
from .clock import BusinessClock
from .config import EngineConfig
from .exceptions import ConflictError, ValidationError
from .identity import SYSTEM_ACTOR, Actor
from .logging_config import get_logger, log_action
from .models import Credit, CreditStatus, Installment, InstallmentStatus, Payment
from .money import ZERO, fix2, non_negative, sanitize_amount
from .receipts import ReceiptBuilder
from .repositories import Repositories, new_id
from .settlement import SettlementEngine
from .status import recompute_status
from .storage import utc_now


logger = get_logger("credit_engine.payments")


@dataclass
class PaymentResult:
    """Outcome of an installment payment"""
    credit_id: str
    installment_id: str
    amount: Decimal
    principal: Decimal
    interest: Decimal
    late_fee: Decimal
    late_fee_discount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    installment_status: str
    credit_status: str
    payment_id: Optional[str] = None
    receipt_number: Optional[int] = None
    cycle: Optional[int] = None
    settled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        result = {}
        for key, value in self.__dict__.items():
            result[key] = str(value) if isinstance(value, Decimal) else value
        return result


class PaymentService:
    """Registers payments against installments"""

    def __init__(self, repositories: Repositories, accrual: AccrualEngine,
                 settlement: SettlementEngine, cash: CashLedgerSynchronizer,
                 receipts: ReceiptBuilder, clock: BusinessClock, config: EngineConfig):
        self.repos = repositories
        self.storage = repositories.storage
        self.accrual = accrual
        self.settlement = settlement
        self.cash = cash
        self.receipts = receipts
        self.clock = clock
        self.config = config

    async def pay_installment(self, installment_id: str, payment_method_id: Optional[str],
                              amount: Any = None, actor: Actor = SYSTEM_ACTOR,
                              late_fee_discount: Any = None, note: Optional[str] = None,
                              cycle: Optional[int] = None) -> PaymentResult:
        """
        Register a payment against an installment.

        Args:
            installment_id: Installment being paid
            payment_method_id: Payment method of the collection (required)
            amount: Amount collected; the full amount owed when omitted
            actor: Acting user; a late fee discount requires an admin or superadmin
            late_fee_discount: Late fee forgiven, capped at the late fee owed
            note: Free text stored on the payment
            cycle: Open credits only, cycle to pay instead of the oldest open one

        Returns:
            PaymentResult with the breakdown and receipt number

        Raises:
            NotFoundError: installment, credit or payment method not found
            ValidationError: bad amount, overpayment or missing payment method
            PrivilegeError: discount requested by a non-privileged actor
            ConflictError: credit refinanced or voided, installment already closed
            OpenCycleCapExceededError: partial payment on an open credit in its last cycle
        """
        discount = sanitize_amount(late_fee_discount)
        if discount < ZERO:
            raise ValidationError("Late fee discount cannot be negative", field="late_fee_discount")
        if discount > ZERO:
            actor.require_privileged("discount a late fee")

        target = await self.repos.installments.get_required(installment_id)

        async with self.storage.atomic():
            async with self.storage.lock(self.repos.credits.table, target.credit_id):
                credit = await self.repos.credits.get_required(target.credit_id)
                if credit.is_terminal:
                    raise ConflictError(
                        f"Credit {credit.id} is {credit.status.value}: payments are not accepted",
                        credit_id=credit.id,
                    )
                method_label = await self.receipts.require_payment_method(payment_method_id)

                if credit.is_open:
                    result = await self._pay_open(credit, payment_method_id, method_label,
                                                  amount, discount, actor, note, cycle)
                else:
                    result = await self._pay_fixed(credit, installment_id, payment_method_id,
                                                   method_label, amount, discount, actor, note)

        log_action(logger, "info", "Installment payment registered",
                   user_id=actor.user_id, action="pay_installment",
                   resource=f"installment:{installment_id}",
                   extra={"credit_id": result.credit_id, "amount": str(result.amount),
                          "receipt_number": result.receipt_number, "settled": result.settled})
        return result

    async def _pay_fixed(self, credit: Credit, installment_id: str, payment_method_id: str,
                         method_label: str, amount: Any, discount: Decimal, actor: Actor,
                         note: Optional[str]) -> PaymentResult:
        today = self.clock.today()
        installments = await self.accrual.accrue_credit(credit, today)
        installment = next((i for i in installments if i.id == installment_id), None)
        if installment is None or installment.is_closed:
            raise ConflictError(f"Installment {installment_id} is already closed",
                                credit_id=credit.id)

        discount = min(discount, installment.late_fee)
        late_fee_owed = fix2(installment.late_fee - discount)
        owed = fix2(late_fee_owed + installment.principal_pending)
        value = owed if amount is None else sanitize_amount(amount)
        if value < ZERO or (value == ZERO and discount == ZERO):
            raise ValidationError("Payment amount must be greater than zero", field="amount")
        if value > owed:
            raise ValidationError(f"Payment of {value} exceeds the {owed} owed on the installment",
                                  field="amount")

        late_fee_paid = min(value, late_fee_owed)
        principal_paid = fix2(value - late_fee_paid)

        installment.paid_amount = fix2(installment.paid_amount + principal_paid)
        installment.late_fee = fix2(late_fee_owed - late_fee_paid)
        installment.payment_method_id = payment_method_id
        if installment.principal_pending == ZERO and installment.late_fee == ZERO:
            installment.status = InstallmentStatus.PAID
        else:
            installment.status = InstallmentStatus.PARTIAL
        await self.repos.installments.save(installment)

        balance_before = credit.balance
        credit.balance = fix2(non_negative(credit.balance - principal_paid))
        if recompute_status(credit, installments) and credit.status == CreditStatus.PAID:
            credit.balance = fix2(ZERO)
        await self.repos.credits.save(credit)

        payment = await self._record_payment(
            credit, installment, value, today, payment_method_id, note, actor,
            principal=principal_paid, late_fee=late_fee_paid, late_fee_discount=discount,
        )
        concept = f"Pago cuota #{installment.number} crédito #{credit.id}"
        receipt = await self.receipts.issue(credit, payment, balance_before, credit.balance,
                                            concept, payment_method_label=method_label)
        await self.cash.register_receipt_inflow(receipt, operator_id=actor.user_id)

        return PaymentResult(
            credit_id=credit.id,
            installment_id=installment.id,
            amount=value,
            principal=principal_paid,
            interest=ZERO,
            late_fee=late_fee_paid,
            late_fee_discount=discount,
            balance_before=balance_before,
            balance_after=credit.balance,
            installment_status=installment.status.value,
            credit_status=credit.status.value,
            payment_id=payment.id,
            receipt_number=receipt.number,
        )

    async def _pay_open(self, credit: Credit, payment_method_id: str, method_label: str,
                        amount: Any, discount: Decimal, actor: Actor, note: Optional[str],
                        cycle: Optional[int]) -> PaymentResult:
        today = self.clock.today()
        read_model = self.accrual.read_model
        summary = await self.accrual.open_summary(credit, today)
        installment = await self.repos.installments.upsert_open_installment(
            credit, self.config.open_due_sentinel)

        value = summary.payoff_today if amount is None else sanitize_amount(amount)
        if value <= ZERO:
            raise ValidationError("Payment amount must be greater than zero", field="amount")
        if value > summary.payoff_today:
            raise ValidationError(
                f"Payment of {value} exceeds the {summary.payoff_today} payoff of the credit",
                field="amount",
            )
        if value == summary.payoff_today and discount == ZERO:
            return await self._settle_open(credit, installment, payment_method_id, actor,
                                           note, summary.current_cycle)

        read_model.assert_partial_payment_allowed(credit, summary, value)

        if cycle is not None:
            state = next((s for s in summary.cycles if s.cycle == int(cycle)), None)
            if state is None:
                raise ValidationError(f"Cycle {cycle} is not open yet", field="cycle")
        else:
            state = summary.oldest_open_cycle() or summary.cycles[-1]

        discount = min(discount, state.late_fee_pending)
        late_fee_owed = fix2(state.late_fee_pending - discount)
        late_fee_paid = min(value, late_fee_owed)
        rest = fix2(value - late_fee_paid)
        interest_paid = min(rest, state.interest_pending)
        rest = fix2(rest - interest_paid)

        cycle_clear = late_fee_paid == late_fee_owed and interest_paid == state.interest_pending
        older_clear = all(s.charges_pending == ZERO for s in summary.cycles
                          if s.cycle < state.cycle)
        principal_paid = (min(rest, summary.capital_balance) if cycle_clear and older_clear
                          else ZERO)
        if fix2(rest - principal_paid) > ZERO:
            raise ValidationError(
                f"Payment exceeds what cycle {state.cycle} and the principal can take",
                field="amount",
            )

        balance_before = credit.balance
        credit.balance = fix2(non_negative(credit.balance - principal_paid))
        if credit.balance == ZERO:
            # principal goes last, so nothing else is owed once it is gone
            credit.status = CreditStatus.PAID
        await self.repos.credits.save(credit)
        installment = await self.repos.installments.upsert_open_installment(
            credit, self.config.open_due_sentinel)
        if credit.status == CreditStatus.PAID:
            installment.late_fee = ZERO
            installment.status = InstallmentStatus.PAID
            installment.payment_method_id = payment_method_id
            installment = await self.repos.installments.save(installment)

        payment = await self._record_payment(
            credit, installment, value, today, payment_method_id, note, actor,
            principal=principal_paid, interest=interest_paid, late_fee=late_fee_paid,
            late_fee_discount=discount, cycle=state.cycle,
        )

        ledger = await self.repos.cycles.get_or_create(credit.id, state.cycle)
        ledger.record(today, interest=interest_paid, late_fee=late_fee_paid,
                      principal=principal_paid, payment_id=payment.id,
                      late_fee_discount=discount)
        await self.repos.cycles.save(ledger)

        concept = f"Pago parcial crédito libre #{credit.id} (Ciclo {state.cycle})"
        receipt = await self.receipts.issue(credit, payment, balance_before, credit.balance,
                                            concept, payment_method_label=method_label)
        await self.cash.register_receipt_inflow(receipt, operator_id=actor.user_id)

        return PaymentResult(
            credit_id=credit.id,
            installment_id=installment.id,
            amount=value,
            principal=principal_paid,
            interest=interest_paid,
            late_fee=late_fee_paid,
            late_fee_discount=discount,
            balance_before=balance_before,
            balance_after=credit.balance,
            installment_status=installment.status.value,
            credit_status=credit.status.value,
            payment_id=payment.id,
            receipt_number=receipt.number,
            cycle=state.cycle,
        )

    async def _settle_open(self, credit: Credit, installment: Installment,
                           payment_method_id: str, actor: Actor, note: Optional[str],
                           cycle: int) -> PaymentResult:
        """A payment equal to the payoff closes the credit through settlement"""
        summary = await self.settlement.settle(credit.id, payment_method_id, actor=actor,
                                               note=note)
        return PaymentResult(
            credit_id=credit.id,
            installment_id=installment.id,
            amount=summary.total_paid,
            principal=summary.principal_collected,
            interest=summary.interest_collected,
            late_fee=summary.late_fee_collected,
            late_fee_discount=ZERO,
            balance_before=summary.balance_before,
            balance_after=summary.balance_after,
            installment_status=InstallmentStatus.PAID.value,
            credit_status="paid",
            receipt_number=summary.receipt_number,
            cycle=cycle,
            settled=True,
        )

    async def _record_payment(self, credit: Credit, installment: Installment, amount: Decimal,
                              today: date, payment_method_id: str, note: Optional[str],
                              actor: Actor, principal: Decimal = ZERO, interest: Decimal = ZERO,
                              late_fee: Decimal = ZERO, late_fee_discount: Decimal = ZERO,
                              cycle: Optional[int] = None) -> Payment:
        now = utc_now()
        payment = Payment(
            id=new_id(),
            created_at=now,
            updated_at=now,
            credit_id=credit.id,
            installment_id=installment.id,
            amount=amount,
            payment_date=today,
            payment_method_id=payment_method_id,
            note=note,
            principal=principal,
            interest=interest,
            late_fee=late_fee,
            late_fee_discount=late_fee_discount,
            cycle=cycle,
            operator_id=actor.user_id,
        )
        return await self.repos.payments.save(payment)
