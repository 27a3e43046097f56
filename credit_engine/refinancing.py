"""
Refinancing Engine Module

Replaces the remaining exposure of a credit with a new fixed credit. The
original credit is closed as refinanced and keeps only the installments that
carry payment history; the new credit points back to it through
``origin_credit_id``. No cash moves.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from .accrual import AccrualEngine
from .clock import BusinessClock
from .config import EngineConfig
from .exceptions import ConflictError, ValidationError
from .identity import SYSTEM_ACTOR, Actor
from .logging_config import get_logger, log_action
from .models import (
    Credit, CreditStatus, InstallmentStatus, Modality, PeriodUnit, RefinanceOption,
)
from .money import HUNDRED, ZERO, fix2, sum_money
from .rates import per_period_rate, refinance_monthly_rate
from .repositories import Repositories
from .schedule import ScheduleGenerator
from .storage import utc_now


logger = get_logger("credit_engine.refinancing")


@dataclass
class RefinanceResult:
    """Outcome of a refinancing"""
    original_credit_id: str
    new_credit_id: str
    exposure: Decimal
    monthly_rate: Decimal
    period_rate: Decimal
    installment_count: int
    period: PeriodUnit
    interest: Decimal
    total_payable: Decimal
    option: RefinanceOption

    def to_dict(self) -> Dict[str, Any]:
        return {
            "original_credit_id": self.original_credit_id,
            "new_credit_id": self.new_credit_id,
            "exposure": str(self.exposure),
            "monthly_rate": str(self.monthly_rate),
            "period_rate": str(self.period_rate),
            "installment_count": self.installment_count,
            "period": self.period.value,
            "interest": str(self.interest),
            "total_payable": str(self.total_payable),
            "option": self.option.value,
        }


def parse_refinance_option(value: Any) -> RefinanceOption:
    """P1, P2, P3 or manual; P3 is the manual tier"""
    if isinstance(value, RefinanceOption):
        return RefinanceOption.MANUAL if value == RefinanceOption.P3 else value
    text = str(value or "").strip().upper()
    if text == "P1":
        return RefinanceOption.P1
    if text == "P2":
        return RefinanceOption.P2
    if text in ("P3", "MANUAL"):
        return RefinanceOption.MANUAL
    raise ValidationError(f"Unknown refinance option: {value!r}", field="option")


class RefinancingEngine:
    """Turns the exposure of a credit into a new fixed credit"""

    def __init__(self, repositories: Repositories, accrual: AccrualEngine,
                 schedule: ScheduleGenerator, clock: BusinessClock, config: EngineConfig):
        self.repos = repositories
        self.storage = repositories.storage
        self.accrual = accrual
        self.schedule = schedule
        self.clock = clock
        self.config = config

    async def exposure(self, credit: Credit, today) -> Decimal:
        """
        Amount carried into the new credit.

        Open credits carry today's payoff (principal + interest + late fee);
        fixed and progressive credits carry pending principal plus the late
        fee accrued on their active installments.
        """
        if credit.is_open:
            summary = await self.accrual.open_summary(credit, today)
            return summary.payoff_today

        installments = await self.accrual.accrue_credit(credit, today)
        active = [i for i in installments if not i.is_closed]
        return fix2(sum_money(i.principal_pending for i in active)
                    + sum_money(i.late_fee for i in active))

    async def refinance(self, credit_id: str, option: Any, actor: Actor = SYSTEM_ACTOR,
                        manual_rate: Any = None, installment_count: Optional[int] = None,
                        period: Optional[PeriodUnit] = None) -> RefinanceResult:
        """
        Refinance a credit.

        Args:
            credit_id: Credit to refinance
            option: P1, P2, P3 or manual
            actor: Acting user; a manual rate requires an admin or superadmin
            manual_rate: Monthly rate for the manual tier
            installment_count: Installments of the new credit, the original's by default
            period: Period of the new credit, the original's by default

        Returns:
            RefinanceResult with the new credit id and its terms

        Raises:
            NotFoundError: credit not found
            ConflictError: credit already refinanced, voided, paid or with nothing owed
            PrivilegeError: manual rate requested by a non-privileged actor
        """
        tier = parse_refinance_option(option)
        if tier == RefinanceOption.MANUAL:
            actor.require_privileged("refinance with a manual rate")

        async with self.storage.atomic():
            async with self.storage.lock(self.repos.credits.table, credit_id):
                original = await self.repos.credits.get_required(credit_id)
                if original.is_terminal or original.status == CreditStatus.PAID:
                    raise ConflictError(
                        f"Credit {credit_id} is {original.status.value} and cannot be refinanced",
                        credit_id=credit_id,
                    )

                today = self.clock.today()
                exposure = await self.exposure(original, today)
                if exposure <= ZERO:
                    raise ConflictError(f"Credit {credit_id} has no balance to refinance",
                                        credit_id=credit_id)

                count = max(int(installment_count or original.installment_count or 1), 1)
                new_period = period or original.period
                monthly = refinance_monthly_rate(tier, manual_rate, self.config)
                period_rate = fix2(per_period_rate(monthly, new_period))
                interest = fix2(exposure * period_rate / HUNDRED * count)
                total = fix2(exposure + interest)

                await self._close_original(original)
                new_credit = await self._create_replacement(original, exposure, period_rate,
                                                            count, new_period, total, tier, today)

        log_action(logger, "info", "Credit refinanced",
                   user_id=actor.user_id, action="refinance", resource=f"credit:{credit_id}",
                   extra={"new_credit_id": new_credit.id, "exposure": str(exposure),
                          "option": tier.value, "total_payable": str(total)})

        return RefinanceResult(
            original_credit_id=original.id,
            new_credit_id=new_credit.id,
            exposure=exposure,
            monthly_rate=monthly,
            period_rate=period_rate,
            installment_count=count,
            period=new_period,
            interest=interest,
            total_payable=total,
            option=tier,
        )

    async def _close_original(self, credit: Credit) -> None:
        payments = await self.repos.payments.by_installment(credit.id)
        for installment in await self.repos.installments.for_credit(credit.id):
            if installment.is_closed:
                continue
            if payments.get(installment.id) or installment.paid_amount > ZERO:
                installment.status = InstallmentStatus.REFINANCED
                installment.late_fee = ZERO
                await self.repos.installments.save(installment)
            else:
                await self.repos.installments.delete(installment.id)

        credit.status = CreditStatus.REFINANCED
        credit.balance = ZERO
        await self.repos.credits.save(credit)

    async def _create_replacement(self, original: Credit, exposure: Decimal,
                                  period_rate: Decimal, count: int, period: PeriodUnit,
                                  total: Decimal, tier: RefinanceOption, today) -> Credit:
        now = utc_now()
        credit = Credit(
            id=await self.repos.credits.next_id(),
            created_at=now,
            updated_at=now,
            borrower_id=original.borrower_id,
            collector_id=original.collector_id,
            principal=exposure,
            modality=Modality.FIXED,
            period=period,
            installment_count=count,
            rate=fix2(period_rate * count),
            total_payable=total,
            balance=total,
            request_date=today,
            accreditation_date=today,
            commitment_date=today,
            origin_credit_id=original.id,
            refinance_rate=period_rate,
            refinance_option=tier,
            product_detail=original.product_detail,
        )
        await self.repos.credits.save(credit)
        await self.schedule.generate(credit)
        return credit
