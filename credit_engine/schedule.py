"""
Installment Schedule Generator Module

Builds the installment plan of a credit for the fixed, progressive and open
modalities, and quotes plans without persisting them.
"""

from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .clock import add_months
from .config import EngineConfig
from .exceptions import ValidationError
from .logging_config import get_logger, log_action
from .models import Credit, Installment, Modality, PeriodUnit
from .money import ZERO, fix2, sanitize_amount
from .rates import apply_interest_discount, resolve_creation_rate, total_payable
from .repositories import Repositories, new_id
from .storage import utc_now


logger = get_logger("credit_engine.schedule")


@dataclass
class ScheduledAmount:
    """One line of a plan"""
    number: int
    due_date: date
    amount: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "number": self.number,
            "due_date": self.due_date.isoformat(),
            "amount": str(self.amount),
        }


@dataclass
class PlanQuote:
    """Result of simulating a plan"""
    principal: Decimal
    rate: Decimal
    total_payable: Decimal
    modality: Modality
    period: PeriodUnit
    installments: List[ScheduledAmount] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "principal": str(self.principal),
            "rate": str(self.rate),
            "total_payable": str(self.total_payable),
            "modality": self.modality.value,
            "period": self.period.value,
            "installments": [line.to_dict() for line in self.installments],
        }


def installment_amounts(modality: Modality, total: Decimal, count: int) -> List[Decimal]:
    """
    Split a total into ``count`` installment amounts.

    Fixed splits evenly; progressive weights installment k by
    k / (N(N+1)/2) so amounts grow. Rounding remainder always lands on the
    last installment so the amounts add up to ``total`` exactly.
    """
    if count < 1:
        raise ValidationError("Installment count must be at least 1", field="installment_count")

    total = fix2(total)
    if modality == Modality.PROGRESSIVE:
        weight_sum = Decimal(count * (count + 1) // 2)
        amounts = [fix2(total * Decimal(k) / weight_sum) for k in range(1, count)]
    else:
        each = fix2(total / Decimal(count))
        amounts = [each] * (count - 1)

    amounts.append(fix2(total - sum(amounts, ZERO)))
    return amounts


def due_dates(start: date, period: PeriodUnit, count: int) -> List[date]:
    """Installment k is due at ``start`` plus k-1 periods"""
    if period.days is None:
        return [add_months(start, k) for k in range(count)]
    return [start + timedelta(days=period.days * k) for k in range(count)]


def build_plan(modality: Modality, total: Decimal, count: int, period: PeriodUnit,
               start: date) -> List[ScheduledAmount]:
    amounts = installment_amounts(modality, total, count)
    dates = due_dates(start, period, count)
    return [ScheduledAmount(number=k + 1, due_date=dates[k], amount=amounts[k])
            for k in range(count)]


def simulate_plan(principal: Any, period: PeriodUnit, installment_count: int,
                  start: date, modality: Modality = Modality.FIXED,
                  rate: Any = None, from_financed_sale: bool = False,
                  discount_pct: Any = None,
                  config: Optional[EngineConfig] = None) -> PlanQuote:
    """
    Quote a fixed or progressive plan without persisting anything.

    Args:
        principal: Amount to lend
        period: Installment period
        installment_count: Number of installments
        start: Commitment date (first due date)
        modality: Fixed or progressive
        rate: Caller rate, honored for financed sales only
        from_financed_sale: Whether the credit finances a sale
        discount_pct: Creation-time discount on interest
        config: Engine configuration

    Returns:
        PlanQuote with rate, total and installment lines
    """
    if config is None:
        from .config import get_config
        config = get_config()

    if modality == Modality.OPEN:
        raise ValidationError("Open credits have no installment plan to simulate",
                              field="modality")

    amount = sanitize_amount(principal)
    if amount <= ZERO:
        raise ValidationError("Principal must be greater than zero", field="principal")

    resolved_rate = resolve_creation_rate(period, installment_count, rate,
                                          from_financed_sale, config.minimum_rate)
    if discount_pct:
        _, total = apply_interest_discount(amount, resolved_rate, discount_pct)
    else:
        total = total_payable(amount, resolved_rate)

    return PlanQuote(
        principal=amount,
        rate=resolved_rate,
        total_payable=total,
        modality=modality,
        period=period,
        installments=build_plan(modality, total, installment_count, period, start),
    )


class ScheduleGenerator:
    """Persists the installment plan of a credit"""

    def __init__(self, repositories: Repositories, config: EngineConfig):
        self.repos = repositories
        self.config = config

    def build(self, credit: Credit) -> List[Installment]:
        """Installments for a credit, not yet saved"""
        now = utc_now()
        if credit.is_open:
            plan = [ScheduledAmount(1, self.config.open_due_sentinel, credit.balance)]
        else:
            plan = build_plan(credit.modality, credit.total_payable, credit.installment_count,
                              credit.period, credit.commitment_date)

        return [
            Installment(
                id=new_id(),
                created_at=now,
                updated_at=now,
                credit_id=credit.id,
                number=line.number,
                amount=line.amount,
                due_date=line.due_date,
            )
            for line in plan
        ]

    async def generate(self, credit: Credit) -> List[Installment]:
        """
        Replace all installments of a credit with a freshly built plan.

        Args:
            credit: Saved credit with final terms

        Returns:
            The new installments in sequence order
        """
        await self.repos.installments.delete_for_credit(credit.id)
        installments = self.build(credit)
        for installment in installments:
            await self.repos.installments.save(installment)

        log_action(logger, "info", "Installment schedule generated",
                   action="generate_schedule", resource=f"credit:{credit.id}",
                   extra={"modality": credit.modality.value, "installments": len(installments),
                          "total_payable": str(credit.total_payable)})
        return installments
