"""
Tests for the credit service facade

Creation with rate rules and date normalization, snapshots with lazy
accrual, updates, voiding, deletion and plan simulation.
"""

from datetime import date
from decimal import Decimal

import pytest

from credit_engine.credits import CreditTerms, normalize_dates, parse_modality, parse_period
from credit_engine.exceptions import (
    ConflictError, NotFoundError, PrivilegeError, ValidationError,
)
from credit_engine.models import (
    CashMovementType, CreditStatus, InstallmentStatus, Modality, PeriodUnit, SourceType,
)


TODAY = date(2024, 3, 1)


class TestParsing:
    """Boundary parsing of modality, period and dates"""

    def test_modality_aliases(self):
        assert parse_modality("comun") == Modality.FIXED
        assert parse_modality("Progresivo") == Modality.PROGRESSIVE
        assert parse_modality("libre") == Modality.OPEN
        assert parse_modality(None) == Modality.FIXED
        with pytest.raises(ValidationError):
            parse_modality("balloon")

    def test_period_aliases(self):
        assert parse_period("semanal") == PeriodUnit.WEEKLY
        assert parse_period("quincenal") == PeriodUnit.BIWEEKLY
        assert parse_period("monthly") == PeriodUnit.MONTHLY
        with pytest.raises(ValidationError):
            parse_period("daily")

    def test_dates_default_to_today(self):
        terms = CreditTerms(borrower_id="b1", principal=100)
        assert normalize_dates(terms, TODAY) == (TODAY, TODAY, TODAY)

    def test_past_commitment_moves_accreditation(self):
        terms = CreditTerms(borrower_id="b1", principal=100, commitment_date="2024-02-10")
        request, accreditation, commitment = normalize_dates(terms, TODAY)
        assert accreditation == commitment == date(2024, 2, 10)
        assert request == accreditation

    def test_commitment_before_accreditation(self):
        terms = CreditTerms(borrower_id="b1", principal=100, accreditation_date="2024-03-05",
                            commitment_date="2024-03-04")
        with pytest.raises(ValidationError):
            normalize_dates(terms, TODAY)

    def test_legacy_requires_commitment(self):
        with pytest.raises(ValidationError):
            normalize_dates(CreditTerms(borrower_id="b1", principal=100, is_legacy=True), TODAY)

    def test_invalid_date(self):
        terms = CreditTerms(borrower_id="b1", principal=100, commitment_date="01/03/2024")
        with pytest.raises(ValidationError):
            normalize_dates(terms, TODAY)


class TestCreateCredit:
    """Origination"""

    @pytest.mark.asyncio
    async def test_end_to_end_fixed_credit(self, service):
        credit_id = await service.create_credit({
            "borrower_id": "b1", "principal": 9000, "installment_count": 3,
            "period": "monthly",
        })
        snapshot = await service.get_credit(credit_id)
        credit = snapshot.credit

        assert credit.rate == Decimal("180")
        assert credit.total_payable == Decimal("25200.00")
        assert credit.total_payable == credit.principal * (1 + credit.rate / 100)
        assert credit.balance == credit.total_payable
        assert [i.amount for i in snapshot.installments] == [Decimal("8400.00")] * 3
        assert sum(i.amount for i in snapshot.installments) == credit.total_payable
        assert [i.due_date for i in snapshot.installments] == [
            date(2024, 3, 1), date(2024, 4, 1), date(2024, 5, 1)]
        assert snapshot.total_due == Decimal("25200.00")

    @pytest.mark.asyncio
    async def test_text_amount(self, service):
        credit_id = await service.create_credit({"borrower_id": "b1", "principal": "1.500,50"})
        credit = await service.repos.credits.get_required(credit_id)
        assert credit.principal == Decimal("1500.50")

    @pytest.mark.asyncio
    async def test_sequential_ids(self, service):
        first = await service.create_credit({"borrower_id": "b1", "principal": 100})
        second = await service.create_credit({"borrower_id": "b2", "principal": 100})
        assert (first, second) == ("1", "2")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("params", [
        {"borrower_id": "b1", "principal": 0},
        {"borrower_id": "b1", "principal": "-10"},
        {"borrower_id": "b1", "principal": 100, "modality": "balloon"},
        {"borrower_id": "b1", "principal": 100, "installment_count": 0},
        {"principal": 100},
    ])
    async def test_invalid_input(self, service, storage, params):
        with pytest.raises(ValidationError):
            await service.create_credit(params)
        assert await storage.count("credits") == 0

    @pytest.mark.asyncio
    async def test_creation_discount_requires_superadmin(self, service, admin, superadmin):
        params = {"borrower_id": "b1", "principal": 1000, "discount_pct": 50}
        with pytest.raises(PrivilegeError):
            await service.create_credit(params, actor=admin)

        credit_id = await service.create_credit(params, actor=superadmin)
        credit = await service.repos.credits.get_required(credit_id)
        assert credit.creation_discount_pct == Decimal("50")
        assert credit.total_payable == Decimal("1300.00")

    @pytest.mark.asyncio
    async def test_open_credit(self, service):
        credit_id = await service.create_credit({
            "borrower_id": "b1", "principal": 1000, "modality": "open", "rate": 0.6,
            "installment_count": 5, "period": "weekly",
        })
        credit = await service.repos.credits.get_required(credit_id)

        assert credit.rate == Decimal("60")
        assert credit.period == PeriodUnit.MONTHLY
        assert credit.installment_count == 1
        assert credit.total_payable == Decimal("1000.00")

    @pytest.mark.asyncio
    async def test_open_credit_rejects_discount(self, service, superadmin):
        with pytest.raises(ValidationError):
            await service.create_credit({"borrower_id": "b1", "principal": 1000,
                                         "modality": "open", "discount_pct": 10},
                                        actor=superadmin)

    @pytest.mark.asyncio
    async def test_financed_sale_keeps_caller_rate(self, service):
        credit_id = await service.create_credit({
            "borrower_id": "b1", "principal": 1000, "installment_count": 3,
            "rate": 30, "from_financed_sale": True,
        })
        credit = await service.repos.credits.get_required(credit_id)
        assert credit.rate == Decimal("30")
        assert credit.total_payable == Decimal("1300.00")


class TestGetCredit:
    """Snapshots with lazy accrual"""

    @pytest.mark.asyncio
    async def test_overdue_snapshot(self, service, clock):
        credit_id = await service.create_credit({"borrower_id": "b1", "principal": 1000})
        clock.advance(10)

        snapshot = await service.get_credit(credit_id)

        assert snapshot.credit.status == CreditStatus.OVERDUE
        assert snapshot.installments[0].status == InstallmentStatus.OVERDUE
        assert snapshot.late_fee_due == Decimal("400.00")
        assert snapshot.total_due == Decimal("2000.00")
        stored = await service.repos.credits.get_required(credit_id)
        assert stored.status == CreditStatus.OVERDUE

    @pytest.mark.asyncio
    async def test_open_snapshot_lists_cycle_due_dates(self, service):
        credit_id = await service.create_credit({"borrower_id": "b1", "principal": 1000,
                                                 "modality": "open"})
        data = (await service.get_credit(credit_id)).to_dict()

        assert data["open_summary"]["cycle_due_dates"] == [
            "2024-03-01", "2024-04-01", "2024-05-01"]
        assert data["total_due"] == "1600.00"

    @pytest.mark.asyncio
    async def test_open_installment_carries_accrued_late_fee(self, service, clock):
        credit_id = await service.create_credit({"borrower_id": "b1", "principal": 1000,
                                                 "modality": "open"})
        clock.advance(5)

        snapshot = await service.get_credit(credit_id)

        assert snapshot.late_fee_due == Decimal("75.00")
        installment = snapshot.installments[0]
        assert installment.late_fee == Decimal("75.00")
        assert installment.status == InstallmentStatus.OVERDUE

        await service.payments.pay_installment(installment.id, "1", amount=675)
        installment = (await service.get_credit(credit_id)).installments[0]
        assert installment.late_fee == Decimal("0.00")
        assert installment.status == InstallmentStatus.PENDING

    @pytest.mark.asyncio
    async def test_missing_credit(self, service):
        with pytest.raises(NotFoundError):
            await service.get_credit("404")

    @pytest.mark.asyncio
    async def test_credits_for_borrower(self, service):
        await service.create_credit({"borrower_id": "b1", "principal": 100})
        await service.create_credit({"borrower_id": "b2", "principal": 100})
        await service.create_credit({"borrower_id": "b1", "principal": 200})

        credits = await service.credits_for_borrower("b1")
        assert [c.principal for c in credits] == [Decimal("100.00"), Decimal("200.00")]


class TestUpdateCredit:
    """Changing terms before any payment"""

    @pytest.mark.asyncio
    async def test_principal_change_rebuilds_plan(self, service):
        credit_id = await service.create_credit({"borrower_id": "b1", "principal": 9000,
                                                 "installment_count": 3})
        snapshot = await service.update_credit(credit_id, {"principal": 6000})

        assert snapshot.credit.total_payable == Decimal("16800.00")
        assert [i.amount for i in snapshot.installments] == [Decimal("5600.00")] * 3
        outflow = await service.repos.cash.get_sourced(CashMovementType.OUTFLOW,
                                                       SourceType.CREDIT, credit_id)
        assert outflow.amount == Decimal("6000.00")

    @pytest.mark.asyncio
    async def test_switch_to_open(self, service):
        credit_id = await service.create_credit({"borrower_id": "b1", "principal": 1000,
                                                 "installment_count": 3})
        snapshot = await service.update_credit(credit_id, {"modality": "open"})

        assert snapshot.credit.rate == Decimal("60")
        assert snapshot.credit.balance == Decimal("1000.00")
        assert len(snapshot.installments) == 1

    @pytest.mark.asyncio
    async def test_update_after_payment_conflicts(self, service):
        credit_id = await service.create_credit({"borrower_id": "b1", "principal": 1000})
        installment = (await service.repos.installments.for_credit(credit_id))[0]
        await service.payments.pay_installment(installment.id, "1", amount=100)

        with pytest.raises(ConflictError):
            await service.update_credit(credit_id, {"principal": 500})

    @pytest.mark.asyncio
    async def test_update_missing_credit(self, service):
        with pytest.raises(NotFoundError):
            await service.update_credit("404", {"principal": 500})


class TestVoidAndDelete:
    """Annulment and removal"""

    @pytest.mark.asyncio
    async def test_void_removes_dependents(self, service):
        credit_id = await service.create_credit({"borrower_id": "b1", "principal": 1000})
        snapshot = await service.void_credit(credit_id)

        assert snapshot.credit.status == CreditStatus.VOIDED
        assert snapshot.credit.balance == Decimal("0")
        assert snapshot.installments == []
        assert await service.cash.movements_for_source(SourceType.CREDIT, credit_id) == []

    @pytest.mark.asyncio
    async def test_void_twice_returns_snapshot(self, service):
        credit_id = await service.create_credit({"borrower_id": "b1", "principal": 1000})
        await service.void_credit(credit_id)
        snapshot = await service.void_credit(credit_id)
        assert snapshot.credit.status == CreditStatus.VOIDED

    @pytest.mark.asyncio
    async def test_void_paid_credit_conflicts(self, service):
        credit_id = await service.create_credit({"borrower_id": "b1", "principal": 1000})
        await service.settle_credit(credit_id, "1")
        with pytest.raises(ConflictError):
            await service.void_credit(credit_id)

    @pytest.mark.asyncio
    async def test_delete_removes_everything(self, service, storage):
        credit_id = await service.create_credit({"borrower_id": "b1", "principal": 1000})

        assert await service.delete_credit(credit_id) is True
        assert await storage.exists("credits", credit_id) is False
        assert await service.cash.movements_for_source(SourceType.CREDIT, credit_id) == []

    @pytest.mark.asyncio
    async def test_delete_with_payment_conflicts(self, service, storage):
        credit_id = await service.create_credit({"borrower_id": "b1", "principal": 1000})
        installment = (await service.repos.installments.for_credit(credit_id))[0]
        await service.payments.pay_installment(installment.id, "1", amount=100)

        with pytest.raises(ConflictError):
            await service.delete_credit(credit_id)
        assert await storage.exists("credits", credit_id) is True


class TestSimulate:
    """Quotes through the facade"""

    def test_simulate_plan(self, service):
        quote = service.simulate_plan({"principal": "9000", "installment_count": 3,
                                       "period": "mensual"})
        assert quote.total_payable == Decimal("25200.00")
        assert quote.installments[0].due_date == TODAY
