"""
Tests for installment schedule generation and plan quotes
"""

from datetime import date
from decimal import Decimal

import pytest

from credit_engine.exceptions import ValidationError
from credit_engine.models import Modality, PeriodUnit
from credit_engine.schedule import due_dates, installment_amounts, simulate_plan


TODAY = date(2024, 3, 1)


class TestInstallmentAmounts:
    """Splitting the total payable"""

    def test_fixed_remainder_on_last(self):
        amounts = installment_amounts(Modality.FIXED, Decimal("1000"), 3)
        assert amounts == [Decimal("333.33"), Decimal("333.33"), Decimal("333.34")]

    def test_progressive_weights(self):
        amounts = installment_amounts(Modality.PROGRESSIVE, Decimal("1000"), 4)
        assert amounts == [Decimal("100.00"), Decimal("200.00"), Decimal("300.00"),
                           Decimal("400.00")]

    @pytest.mark.parametrize("modality", [Modality.FIXED, Modality.PROGRESSIVE])
    def test_sum_matches_total_for_any_count(self, modality):
        total = Decimal("12345.67")
        for count in range(1, 25):
            amounts = installment_amounts(modality, total, count)
            assert len(amounts) == count
            assert sum(amounts) == total

    def test_progressive_is_non_decreasing(self):
        for count in range(1, 25):
            amounts = installment_amounts(Modality.PROGRESSIVE, Decimal("9999.99"), count)
            assert amounts == sorted(amounts)

    def test_count_must_be_positive(self):
        with pytest.raises(ValidationError):
            installment_amounts(Modality.FIXED, Decimal("100"), 0)


class TestDueDates:
    """First installment falls on the commitment date"""

    def test_monthly_clamps_to_month_end(self):
        assert due_dates(date(2024, 1, 31), PeriodUnit.MONTHLY, 3) == [
            date(2024, 1, 31), date(2024, 2, 29), date(2024, 3, 31)]

    def test_weekly(self):
        assert due_dates(TODAY, PeriodUnit.WEEKLY, 3) == [
            date(2024, 3, 1), date(2024, 3, 8), date(2024, 3, 15)]

    def test_biweekly(self):
        assert due_dates(TODAY, PeriodUnit.BIWEEKLY, 3) == [
            date(2024, 3, 1), date(2024, 3, 16), date(2024, 3, 31)]


class TestSimulatePlan:
    """Quotes without persistence"""

    def test_minimum_rate_quote(self, config):
        quote = simulate_plan(9000, PeriodUnit.MONTHLY, 3, TODAY, config=config)
        assert quote.rate == Decimal("180")
        assert quote.total_payable == Decimal("25200.00")
        assert [line.amount for line in quote.installments] == [Decimal("8400.00")] * 3
        assert quote.installments[-1].due_date == date(2024, 5, 1)

    def test_quote_with_discount(self, config):
        quote = simulate_plan("1000", PeriodUnit.MONTHLY, 1, TODAY, discount_pct=50,
                              config=config)
        assert quote.total_payable == Decimal("1300.00")

    def test_open_modality_rejected(self, config):
        with pytest.raises(ValidationError):
            simulate_plan(1000, PeriodUnit.MONTHLY, 1, TODAY, modality=Modality.OPEN,
                          config=config)

    def test_principal_required(self, config):
        with pytest.raises(ValidationError):
            simulate_plan("0", PeriodUnit.MONTHLY, 1, TODAY, config=config)

    def test_to_dict(self, config):
        data = simulate_plan(1000, PeriodUnit.WEEKLY, 4, TODAY, config=config).to_dict()
        assert data["period"] == "weekly"
        assert data["total_payable"] == "1600.00"
        assert len(data["installments"]) == 4


class TestScheduleGenerator:
    """Persisted schedules"""

    @pytest.mark.asyncio
    async def test_generate_replaces_installments(self, service):
        credit_id = await service.create_credit({
            "borrower_id": "b1", "principal": "1000", "installment_count": 4,
            "period": "weekly", "modality": "progressive",
        })
        credit = await service.repos.credits.get_required(credit_id)

        await service.schedule.generate(credit)
        installments = await service.repos.installments.for_credit(credit_id)

        assert [i.number for i in installments] == [1, 2, 3, 4]
        assert sum(i.amount for i in installments) == credit.total_payable

    @pytest.mark.asyncio
    async def test_open_credit_single_installment(self, service, config):
        credit_id = await service.create_credit({
            "borrower_id": "b1", "principal": "1000", "modality": "libre",
        })
        installments = await service.repos.installments.for_credit(credit_id)

        assert len(installments) == 1
        assert installments[0].due_date == config.open_due_sentinel
        assert installments[0].amount == Decimal("1000.00")
