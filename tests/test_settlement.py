"""
Tests for early payoff

Covers discount allocation, settlement of fixed and open credits, the
no-op on paid credits, serialization of concurrent payoffs and rollback of
the whole unit of work when a step fails.
"""

import asyncio
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from credit_engine.exceptions import (
    ConflictError, NotFoundError, PrivilegeError, ValidationError,
)
from credit_engine.models import (
    CashMovementType, CreditStatus, DiscountBase, Installment, InstallmentStatus, SourceType,
)
from credit_engine.settlement import SettlementLine, allocate_discount, parse_discount_base


NOW = datetime(2024, 3, 1, tzinfo=timezone.utc)


def line(principal, late_fee, interest="0", number=1):
    installment = Installment(id=f"i{number}", created_at=NOW, updated_at=NOW, credit_id="1",
                              number=number, amount=Decimal(principal),
                              due_date=date(2024, 3, 1))
    return SettlementLine(installment=installment, principal=Decimal(principal),
                          late_fee=Decimal(late_fee), interest=Decimal(interest))


class TestAllocateDiscount:
    """Spreading a percentage discount"""

    def test_mora_base_touches_late_fee_only(self):
        lines = [line("1000", "300", number=1), line("1000", "100", number=2)]
        allocate_discount(lines, Decimal("50"), DiscountBase.MORA)

        assert [l.late_fee_discount for l in lines] == [Decimal("150.00"), Decimal("50.00")]
        assert all(l.principal_discount == Decimal("0") for l in lines)

    def test_total_base_consumes_late_fee_then_principal(self):
        lines = [line("1600", "400")]
        allocate_discount(lines, Decimal("50"), DiscountBase.TOTAL)

        assert lines[0].late_fee_discount == Decimal("400.00")
        assert lines[0].principal_discount == Decimal("600.00")
        assert lines[0].discount == Decimal("1000.00")

    def test_total_base_takes_interest_before_principal(self):
        lines = [line("1000", "0", interest="600")]
        allocate_discount(lines, Decimal("50"), DiscountBase.TOTAL)

        assert lines[0].interest_discount == Decimal("600.00")
        assert lines[0].principal_discount == Decimal("200.00")

    def test_zero_percent_is_noop(self):
        lines = [line("1000", "300")]
        allocate_discount(lines, Decimal("0"), DiscountBase.TOTAL)
        assert lines[0].discount == Decimal("0")

    def test_parse_discount_base(self):
        assert parse_discount_base(None) == DiscountBase.MORA
        assert parse_discount_base("TOTAL") == DiscountBase.TOTAL
        with pytest.raises(ValidationError):
            parse_discount_base("principal")


class TestSettleFixedCredit:
    """Payoff of fixed credits"""

    @pytest.mark.asyncio
    async def test_settle_on_due_date(self, service):
        credit_id = await service.create_credit({"borrower_id": "b1", "principal": 1000})

        summary = await service.settle_credit(credit_id, "1")

        assert summary.total_paid == Decimal("1600.00")
        assert summary.installments_paid == 1
        assert summary.balance_after == Decimal("0")
        assert summary.receipt_number == 1

        credit = await service.repos.credits.get_required(credit_id)
        assert credit.status == CreditStatus.PAID
        assert credit.balance == Decimal("0")
        installments = await service.repos.installments.for_credit(credit_id)
        assert all(i.status == InstallmentStatus.PAID for i in installments)

    @pytest.mark.asyncio
    async def test_receipt_and_cash_inflow(self, service):
        credit_id = await service.create_credit({"borrower_id": "b1", "principal": 1000})
        await service.settle_credit(credit_id, "1")

        receipts = await service.repos.receipts.for_credit(credit_id)
        assert len(receipts) == 1
        assert receipts[0].payment_method_label == "Efectivo"
        assert receipts[0].borrower_name == "Ana Pérez"

        inflow = await service.repos.cash.get_sourced(CashMovementType.INFLOW,
                                                      SourceType.RECEIPT, "1")
        assert inflow.id == "inflow:receipt:1"
        assert inflow.amount == Decimal("1600.00")
        assert inflow.concept == "Cobro recibo #1 - Ana Pérez"

    @pytest.mark.asyncio
    async def test_late_fee_discount(self, service, clock, superadmin):
        credit_id = await service.create_credit({"borrower_id": "b1", "principal": 1000})
        clock.advance(10)

        summary = await service.settle_credit(credit_id, "1", actor=superadmin,
                                              discount_pct=50, discount_base="mora")

        assert summary.late_fee_pending == Decimal("400.00")
        assert summary.discount_applied == Decimal("200.00")
        assert summary.total_paid == Decimal("1800.00")
        credit = await service.repos.credits.get_required(credit_id)
        assert credit.accrued_interest == Decimal("200.00")

    @pytest.mark.asyncio
    async def test_total_discount(self, service, clock, superadmin):
        credit_id = await service.create_credit({"borrower_id": "b1", "principal": 1000})
        clock.advance(10)

        summary = await service.settle_credit(credit_id, "2", actor=superadmin,
                                              discount_pct=50, discount_base="total")

        assert summary.total_paid == Decimal("1000.00")
        installment = (await service.repos.installments.for_credit(credit_id))[0]
        assert installment.discount == Decimal("600.00")
        assert installment.paid_amount == Decimal("1000.00")

    @pytest.mark.asyncio
    async def test_discount_requires_superadmin(self, service, admin):
        credit_id = await service.create_credit({"borrower_id": "b1", "principal": 1000})
        with pytest.raises(PrivilegeError):
            await service.settle_credit(credit_id, "1", actor=admin, discount_pct=10)

    @pytest.mark.asyncio
    async def test_payment_method_required(self, service):
        credit_id = await service.create_credit({"borrower_id": "b1", "principal": 1000})
        with pytest.raises(ValidationError):
            await service.settle_credit(credit_id, None)
        with pytest.raises(NotFoundError):
            await service.settle_credit(credit_id, "99")

    @pytest.mark.asyncio
    async def test_settle_twice_is_noop(self, service):
        credit_id = await service.create_credit({"borrower_id": "b1", "principal": 1000})
        await service.settle_credit(credit_id, "1")

        summary = await service.settle_credit(credit_id, "1")

        assert summary.already_paid is True
        assert summary.total_paid == Decimal("0")
        assert len(await service.repos.payments.for_credit(credit_id)) == 1
        assert len(await service.repos.receipts.for_credit(credit_id)) == 1

    @pytest.mark.asyncio
    async def test_voided_credit_conflicts(self, service):
        credit_id = await service.create_credit({"borrower_id": "b1", "principal": 1000})
        await service.void_credit(credit_id)
        with pytest.raises(ConflictError):
            await service.settle_credit(credit_id, "1")


class TestSettleOpenCredit:
    """Payoff of open credits"""

    @pytest.mark.asyncio
    async def test_settle_open_credit(self, service):
        credit_id = await service.create_credit({"borrower_id": "b1", "principal": 1000,
                                                 "modality": "open"})
        summary = await service.settle_credit(credit_id, "1")

        assert summary.principal_collected == Decimal("1000.00")
        assert summary.interest_collected == Decimal("600.00")
        assert summary.total_paid == Decimal("1600.00")

        credit = await service.repos.credits.get_required(credit_id)
        assert credit.status == CreditStatus.PAID
        assert credit.accrued_interest == Decimal("600.00")
        receipt = (await service.repos.receipts.for_credit(credit_id))[0]
        assert receipt.concept == f"Cancelación total crédito libre #{credit_id}"
        assert receipt.cycle == 1

    @pytest.mark.asyncio
    async def test_zero_balance_open_credit_is_closed_out(self, service, repos):
        credit_id = await service.create_credit({"borrower_id": "b1", "principal": 1000,
                                                 "modality": "open"})
        credit = await repos.credits.get_required(credit_id)
        credit.balance = Decimal("0")
        await repos.credits.save(credit)
        movements_before = len(await repos.cash.find())

        summary = await service.settle_credit(credit_id, "1")

        assert summary.already_paid is True
        assert summary.receipt_number is None
        credit = await repos.credits.get_required(credit_id)
        assert credit.status == CreditStatus.PAID
        installment = (await repos.installments.for_credit(credit_id))[0]
        assert installment.status == InstallmentStatus.PAID
        assert len(await repos.cash.find()) == movements_before


class TestSettlementConcurrency:
    """One unit of work per payoff"""

    @pytest.mark.asyncio
    async def test_concurrent_settlements_issue_one_receipt(self, service, repos):
        credit_id = await service.create_credit({"borrower_id": "b1", "principal": 1000})

        first, second = await asyncio.gather(
            service.settle_credit(credit_id, "1"),
            service.settle_credit(credit_id, "1"),
        )

        assert sorted([first.already_paid, second.already_paid]) == [False, True]
        assert len(await repos.receipts.for_credit(credit_id)) == 1
        assert len(await repos.payments.for_credit(credit_id)) == 1
        assert len(await repos.cash.find(source_type="receipt")) == 1

    @pytest.mark.asyncio
    async def test_failure_rolls_back_everything(self, service, monkeypatch):
        credit_id = await service.create_credit({"borrower_id": "b1", "principal": 1000})

        async def broken_inflow(receipt, operator_id=None):
            raise RuntimeError("cash ledger unavailable")

        monkeypatch.setattr(service.cash, "register_receipt_inflow", broken_inflow)

        with pytest.raises(RuntimeError):
            await service.settle_credit(credit_id, "1")

        credit = await service.repos.credits.get_required(credit_id)
        assert credit.status == CreditStatus.PENDING
        assert credit.balance == Decimal("1600.00")
        assert await service.repos.payments.for_credit(credit_id) == []
        assert await service.repos.receipts.for_credit(credit_id) == []
        installment = (await service.repos.installments.for_credit(credit_id))[0]
        assert installment.status == InstallmentStatus.PENDING
        assert installment.paid_amount == Decimal("0")
