"""
Credit Service Module

Facade over the credit lifecycle: origination with its schedule and
disbursement, snapshots with lazy accrual, updates, settlement, refinancing,
voiding and deletion. Wires every engine over one storage backend.
"""

from dataclasses import dataclass, fields
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .accrual import AccrualEngine, OpenCreditSummary
from .cash_ledger import CashLedgerSynchronizer
from .clock import BusinessClock, parse_date
from .config import EngineConfig
from .directory import BorrowerDirectory, PaymentMethodCatalog, UserDirectory
from .exceptions import ConflictError, ValidationError
from .identity import SYSTEM_ACTOR, Actor
from .logging_config import get_logger, log_action
from .models import (
    CashMovementType, Credit, CreditStatus, Installment, Modality, PeriodUnit, SourceType,
)
from .money import ZERO, fix2, sanitize_amount, sum_money, to_decimal
from .payments import PaymentService
from .rates import (
    apply_interest_discount, normalize_percent, resolve_creation_rate, total_payable,
)
from .receipts import ReceiptBuilder
from .refinancing import RefinanceResult, RefinancingEngine
from .repositories import Repositories
from .schedule import PlanQuote, ScheduleGenerator, simulate_plan
from .settlement import SettlementEngine, SettlementSummary
from .status import recompute_status
from .storage import AsyncStorageInterface, utc_now


logger = get_logger("credit_engine.credits")

_MODALITY_ALIASES = {
    "comun": Modality.FIXED,
    "común": Modality.FIXED,
    "progresivo": Modality.PROGRESSIVE,
    "libre": Modality.OPEN,
}

_PERIOD_ALIASES = {
    "semanal": PeriodUnit.WEEKLY,
    "quincenal": PeriodUnit.BIWEEKLY,
    "mensual": PeriodUnit.MONTHLY,
}


def parse_modality(value: Any) -> Modality:
    if isinstance(value, Modality):
        return value
    text = str(value or "").strip().lower()
    if not text:
        return Modality.FIXED
    if text in _MODALITY_ALIASES:
        return _MODALITY_ALIASES[text]
    try:
        return Modality(text)
    except ValueError:
        raise ValidationError(f"Unknown modality: {value!r}", field="modality")


def parse_period(value: Any) -> PeriodUnit:
    if isinstance(value, PeriodUnit):
        return value
    text = str(value or "").strip().lower()
    if not text:
        return PeriodUnit.MONTHLY
    if text in _PERIOD_ALIASES:
        return _PERIOD_ALIASES[text]
    try:
        return PeriodUnit(text)
    except ValueError:
        raise ValidationError(f"Unknown period: {value!r}", field="period")


def parse_count(value: Any) -> int:
    try:
        count = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid installment count: {value!r}", field="installment_count")
    if count < 1:
        raise ValidationError("Installment count must be at least 1", field="installment_count")
    return count


@dataclass
class CreditTerms:
    """Commercial terms of a credit as requested by the caller"""
    borrower_id: str
    principal: Any
    modality: Modality = Modality.FIXED
    period: PeriodUnit = PeriodUnit.MONTHLY
    installment_count: int = 1
    rate: Any = None
    collector_id: Optional[str] = None
    request_date: Optional[Any] = None
    accreditation_date: Optional[Any] = None
    commitment_date: Optional[Any] = None
    discount_pct: Any = None
    from_financed_sale: bool = False
    is_legacy: bool = False
    product_detail: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'CreditTerms':
        """Build terms from a plain mapping, parsing enums and counts"""
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        if not values.get("borrower_id"):
            raise ValidationError("A borrower is required", field="borrower_id")
        values["modality"] = parse_modality(values.get("modality"))
        values["period"] = parse_period(values.get("period"))
        values["installment_count"] = parse_count(values.get("installment_count", 1))
        values["borrower_id"] = str(values["borrower_id"])
        return cls(**values)

    @classmethod
    def from_credit(cls, credit: Credit) -> 'CreditTerms':
        return cls(
            borrower_id=credit.borrower_id,
            principal=credit.principal,
            modality=credit.modality,
            period=credit.period,
            installment_count=credit.installment_count,
            rate=credit.rate,
            collector_id=credit.collector_id,
            request_date=credit.request_date,
            accreditation_date=credit.accreditation_date,
            commitment_date=credit.commitment_date,
            discount_pct=credit.creation_discount_pct,
            from_financed_sale=credit.from_financed_sale,
            is_legacy=credit.is_legacy,
            product_detail=credit.product_detail,
        )


def normalize_dates(terms: CreditTerms, today: date) -> Tuple[date, date, date]:
    """
    Resolve request, accreditation and commitment dates.

    Accreditation defaults to today, or to the commitment date when that lies
    in the past; commitment defaults to accreditation and may not precede it;
    request defaults to accreditation. Legacy credits must state their
    commitment date.

    Returns:
        Tuple of (request_date, accreditation_date, commitment_date)
    """
    commitment = parse_date(terms.commitment_date, "commitment_date")
    if terms.is_legacy and commitment is None:
        raise ValidationError("Legacy credits require a commitment date", field="commitment_date")

    accreditation = parse_date(terms.accreditation_date, "accreditation_date")
    if accreditation is None:
        accreditation = commitment if commitment is not None and commitment < today else today
    if commitment is None:
        commitment = accreditation
    if commitment < accreditation:
        raise ValidationError("Commitment date cannot precede the accreditation date",
                              field="commitment_date")

    request = parse_date(terms.request_date, "request_date") or accreditation
    return request, accreditation, commitment


@dataclass
class CreditSnapshot:
    """A credit with its installments and today's amounts"""
    credit: Credit
    installments: List[Installment]
    total_due: Decimal
    late_fee_due: Decimal
    open_summary: Optional[OpenCreditSummary] = None

    def to_dict(self) -> Dict[str, Any]:
        result = self.credit.to_dict()
        result["installments"] = [i.to_dict() for i in self.installments]
        result["total_due"] = str(self.total_due)
        result["late_fee_due"] = str(self.late_fee_due)
        result["open_summary"] = self.open_summary.to_dict() if self.open_summary else None
        return result


class CreditService:
    """
    Entry point of the credit engine.

    Every mutation runs inside ``storage.atomic()`` holding the credit's lock.
    """

    def __init__(self, storage: AsyncStorageInterface, clock: BusinessClock,
                 config: EngineConfig, borrowers: BorrowerDirectory, users: UserDirectory,
                 payment_methods: PaymentMethodCatalog):
        self.storage = storage
        self.clock = clock
        self.config = config
        self.repos = Repositories(storage)

        self.schedule = ScheduleGenerator(self.repos, config)
        self.accrual = AccrualEngine(self.repos, config)
        self.cash = CashLedgerSynchronizer(self.repos, clock)
        self.receipts = ReceiptBuilder(self.repos, clock, borrowers, users, payment_methods)
        self.settlement = SettlementEngine(self.repos, self.accrual, self.cash, self.receipts,
                                           clock, config)
        self.refinancing = RefinancingEngine(self.repos, self.accrual, self.schedule, clock, config)
        self.payments = PaymentService(self.repos, self.accrual, self.settlement, self.cash,
                                       self.receipts, clock, config)

    def _price(self, terms: CreditTerms, actor: Actor,
               check_discount: bool = True) -> Tuple[Decimal, Decimal, Decimal, Decimal]:
        """Principal, rate, total payable and applied discount for a set of terms"""
        principal = sanitize_amount(terms.principal)
        if principal <= ZERO:
            raise ValidationError("Principal must be greater than zero", field="principal")

        discount = to_decimal(terms.discount_pct)
        if terms.modality == Modality.OPEN:
            if discount > ZERO:
                raise ValidationError("Open credits do not take a creation discount",
                                      field="discount_pct")
            rate = normalize_percent(terms.rate, self.config.open_default_rate)
            return principal, rate, principal, ZERO

        rate = resolve_creation_rate(terms.period, terms.installment_count, terms.rate,
                                     terms.from_financed_sale, self.config.minimum_rate)
        if discount > ZERO:
            if check_discount:
                actor.require_superadmin("discount interest at creation")
            applied, total = apply_interest_discount(principal, rate, discount)
            return principal, rate, total, applied
        return principal, rate, total_payable(principal, rate), ZERO

    def _shape(self, terms: CreditTerms) -> CreditTerms:
        if terms.modality == Modality.OPEN:
            terms.period = PeriodUnit.MONTHLY
            terms.installment_count = 1
        return terms

    async def create_credit(self, terms: Any, actor: Actor = SYSTEM_ACTOR) -> str:
        """
        Originate a credit.

        Args:
            terms: CreditTerms or a mapping of its fields
            actor: Acting user; a creation discount requires a superadmin

        Returns:
            The new credit id
        """
        if not isinstance(terms, CreditTerms):
            terms = CreditTerms.from_dict(terms)
        terms = self._shape(terms)
        principal, rate, total, discount = self._price(terms, actor)
        request, accreditation, commitment = normalize_dates(terms, self.clock.today())

        async with self.storage.atomic():
            now = utc_now()
            credit = Credit(
                id=await self.repos.credits.next_id(),
                created_at=now,
                updated_at=now,
                borrower_id=terms.borrower_id,
                collector_id=terms.collector_id,
                principal=principal,
                modality=terms.modality,
                period=terms.period,
                installment_count=terms.installment_count,
                rate=rate,
                total_payable=total,
                balance=total,
                request_date=request,
                accreditation_date=accreditation,
                commitment_date=commitment,
                creation_discount_pct=discount,
                from_financed_sale=bool(terms.from_financed_sale),
                is_legacy=bool(terms.is_legacy),
                product_detail=terms.product_detail,
            )
            async with self.storage.lock(self.repos.credits.table, credit.id):
                await self.repos.credits.save(credit)
                await self.schedule.generate(credit)
                borrower_name = await self.receipts.borrower_name(credit)
                await self.cash.register_disbursement(credit, borrower_name,
                                                      operator_id=actor.user_id)

        log_action(logger, "info", "Credit created",
                   user_id=actor.user_id, action="create_credit", resource=f"credit:{credit.id}",
                   extra={"modality": credit.modality.value, "principal": str(principal),
                          "rate": str(rate), "total_payable": str(total)})
        return credit.id

    async def _snapshot(self, credit: Credit) -> CreditSnapshot:
        today = self.clock.today()
        if credit.is_open and not credit.is_terminal:
            summary = await self.accrual.open_summary(credit, today)
            if credit.status != CreditStatus.PAID:
                await self.repos.installments.upsert_open_installment(
                    credit, self.config.open_due_sentinel,
                    late_fee=summary.late_fee_pending_total, overdue=summary.is_overdue)
            installments = await self.repos.installments.for_credit(credit.id)
            return CreditSnapshot(
                credit=credit,
                installments=installments,
                total_due=summary.payoff_today if credit.status != CreditStatus.PAID else ZERO,
                late_fee_due=summary.late_fee_pending_total,
                open_summary=summary,
            )

        installments = await self.accrual.accrue_credit(credit, today)
        if recompute_status(credit, installments):
            await self.repos.credits.save(credit)
        active = [i for i in installments if not i.is_closed]
        late_fee = sum_money(i.late_fee for i in active)
        return CreditSnapshot(
            credit=credit,
            installments=installments,
            total_due=fix2(sum_money(i.principal_pending for i in active) + late_fee),
            late_fee_due=late_fee,
        )

    async def get_credit(self, credit_id: str) -> CreditSnapshot:
        """
        Load a credit with today's late fees applied and its status refreshed.

        Raises:
            NotFoundError: credit not found
        """
        async with self.storage.atomic():
            async with self.storage.lock(self.repos.credits.table, credit_id):
                credit = await self.repos.credits.get_required(credit_id)
                return await self._snapshot(credit)

    async def credits_for_borrower(self, borrower_id: str) -> List[Credit]:
        credits = await self.repos.credits.for_borrower(str(borrower_id))
        return sorted(credits, key=lambda c: c.created_at)

    async def _assert_no_payments(self, credit: Credit, operation: str) -> None:
        if await self.repos.payments.for_credit(credit.id):
            raise ConflictError(f"Credit {credit.id} has payments and cannot be {operation}",
                                credit_id=credit.id)

    async def update_credit(self, credit_id: str, changes: Mapping[str, Any],
                            actor: Actor = SYSTEM_ACTOR) -> CreditSnapshot:
        """
        Change the terms of a credit that has not been paid on yet.

        Rate, total and schedule are recomputed from the merged terms and the
        disbursement outflow follows the new principal.

        Raises:
            NotFoundError: credit not found
            ConflictError: credit is paid, refinanced, voided or has payments
        """
        async with self.storage.atomic():
            async with self.storage.lock(self.repos.credits.table, credit_id):
                credit = await self.repos.credits.get_required(credit_id)
                if credit.is_terminal or credit.status == CreditStatus.PAID:
                    raise ConflictError(
                        f"Credit {credit_id} is {credit.status.value} and cannot be updated",
                        credit_id=credit_id,
                    )
                await self._assert_no_payments(credit, "updated")

                merged = {f.name: getattr(CreditTerms.from_credit(credit), f.name)
                          for f in fields(CreditTerms)}
                merged.update({k: v for k, v in changes.items() if v is not None})
                if "rate" not in changes:
                    if parse_modality(merged["modality"]) == Modality.OPEN:
                        keeps_rate = credit.is_open
                    else:
                        keeps_rate = credit.from_financed_sale and not credit.is_open
                    if not keeps_rate:
                        merged["rate"] = None
                terms = self._shape(CreditTerms.from_dict(merged))

                principal, rate, total, discount = self._price(
                    terms, actor, check_discount="discount_pct" in changes)
                request, accreditation, commitment = normalize_dates(terms, self.clock.today())

                credit.borrower_id = terms.borrower_id
                credit.collector_id = terms.collector_id
                credit.principal = principal
                credit.modality = terms.modality
                credit.period = terms.period
                credit.installment_count = terms.installment_count
                credit.rate = rate
                credit.total_payable = total
                credit.balance = total
                credit.creation_discount_pct = discount
                credit.request_date = request
                credit.accreditation_date = accreditation
                credit.commitment_date = commitment
                credit.from_financed_sale = bool(terms.from_financed_sale)
                credit.product_detail = terms.product_detail
                credit.status = CreditStatus.PENDING
                await self.repos.credits.save(credit)

                await self.repos.cycles.delete_for_credit(credit.id)
                if credit.is_open:
                    await self.repos.installments.upsert_open_installment(
                        credit, self.config.open_due_sentinel)
                else:
                    await self.schedule.generate(credit)
                await self._sync_disbursement(credit, actor)

                snapshot = await self._snapshot(credit)

        log_action(logger, "info", "Credit updated",
                   user_id=actor.user_id, action="update_credit", resource=f"credit:{credit_id}",
                   extra={"fields": sorted(changes.keys()), "total_payable": str(total)})
        return snapshot

    async def _sync_disbursement(self, credit: Credit, actor: Actor) -> None:
        if credit.from_financed_sale:
            await self.cash.remove_disbursement(credit.id)
            return
        borrower_name = await self.receipts.borrower_name(credit)
        await self.cash.update_from_source(
            SourceType.CREDIT, credit.id, CashMovementType.OUTFLOW, credit.principal,
            movement_date=credit.accreditation_date,
            concept=f"Desembolso crédito #{credit.id} - {borrower_name or credit.borrower_id}",
            operator_id=actor.user_id,
        )

    async def settle_credit(self, credit_id: str, payment_method_id: Optional[str],
                            actor: Actor = SYSTEM_ACTOR, discount_pct: Any = None,
                            discount_base: Any = None,
                            note: Optional[str] = None) -> SettlementSummary:
        """Pay off a credit in full; see SettlementEngine.settle"""
        return await self.settlement.settle(credit_id, payment_method_id, actor=actor,
                                            discount_pct=discount_pct,
                                            discount_base=discount_base, note=note)

    async def refinance_credit(self, credit_id: str, option: Any, actor: Actor = SYSTEM_ACTOR,
                               manual_rate: Any = None, installment_count: Any = None,
                               period: Any = None) -> RefinanceResult:
        """Replace a credit's exposure with a new fixed credit; see RefinancingEngine"""
        count = parse_count(installment_count) if installment_count not in (None, "") else None
        new_period = parse_period(period) if period not in (None, "") else None
        return await self.refinancing.refinance(credit_id, option, actor=actor,
                                                manual_rate=manual_rate,
                                                installment_count=count, period=new_period)

    async def void_credit(self, credit_id: str, actor: Actor = SYSTEM_ACTOR) -> CreditSnapshot:
        """
        Annul a credit that was never paid on.

        Receipts, installments, cycle ledger rows and the disbursement outflow
        are removed; the credit itself stays with status voided.

        Raises:
            NotFoundError: credit not found
            ConflictError: credit is paid, refinanced or has payments
        """
        async with self.storage.atomic():
            async with self.storage.lock(self.repos.credits.table, credit_id):
                credit = await self.repos.credits.get_required(credit_id)
                if credit.status == CreditStatus.VOIDED:
                    return await self._snapshot(credit)
                if credit.status in (CreditStatus.PAID, CreditStatus.REFINANCED):
                    raise ConflictError(
                        f"Credit {credit_id} is {credit.status.value} and cannot be voided",
                        credit_id=credit_id,
                    )
                await self._assert_no_payments(credit, "voided")

                await self._remove_dependents(credit)
                credit.status = CreditStatus.VOIDED
                credit.balance = ZERO
                await self.repos.credits.save(credit)
                snapshot = await self._snapshot(credit)

        log_action(logger, "info", "Credit voided",
                   user_id=actor.user_id, action="void_credit", resource=f"credit:{credit_id}")
        return snapshot

    async def delete_credit(self, credit_id: str, actor: Actor = SYSTEM_ACTOR) -> bool:
        """
        Remove a credit and everything hanging from it.

        Raises:
            NotFoundError: credit not found
            ConflictError: credit has payments
        """
        async with self.storage.atomic():
            async with self.storage.lock(self.repos.credits.table, credit_id):
                credit = await self.repos.credits.get_required(credit_id)
                await self._assert_no_payments(credit, "deleted")
                await self._remove_dependents(credit)
                await self.repos.credits.delete(credit.id)

        log_action(logger, "info", "Credit deleted",
                   user_id=actor.user_id, action="delete_credit", resource=f"credit:{credit_id}")
        return True

    async def _remove_dependents(self, credit: Credit) -> None:
        await self.repos.receipts.delete_for_credit(credit.id)
        await self.repos.installments.delete_for_credit(credit.id)
        await self.repos.cycles.delete_for_credit(credit.id)
        await self.cash.remove_disbursement(credit.id)

    def simulate_plan(self, params: Mapping[str, Any]) -> PlanQuote:
        """
        Quote a fixed or progressive plan without persisting anything.

        Args:
            params: principal, period, installment_count, modality and optionally
                rate, from_financed_sale, discount_pct, commitment_date

        Returns:
            PlanQuote
        """
        start = parse_date(params.get("commitment_date"), "commitment_date") or self.clock.today()
        return simulate_plan(
            params.get("principal"),
            parse_period(params.get("period")),
            parse_count(params.get("installment_count", 1)),
            start,
            modality=parse_modality(params.get("modality")),
            rate=params.get("rate"),
            from_financed_sale=bool(params.get("from_financed_sale", False)),
            discount_pct=params.get("discount_pct"),
            config=self.config,
        )
