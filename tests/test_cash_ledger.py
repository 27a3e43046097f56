"""
Tests for the Cash Ledger Synchronizer

Covers idempotent registration by source key, find-or-create updates, the
financed-sale secondary outflow, deletion by source and daily totals.
"""

from decimal import Decimal

import pytest

from credit_engine.exceptions import ValidationError
from credit_engine.models import CashMovementType, SourceType


class TestRegistration:
    """Find-or-create by (type, source type, source id)"""

    @pytest.mark.asyncio
    async def test_register_inflow_twice_creates_one_row(self, cash, repos):
        first = await cash.register_inflow(SourceType.SALE, "s1", "1.234,56", concept="Venta 1")
        second = await cash.register_inflow(SourceType.SALE, "s1", "999", concept="Venta 1")

        rows = await repos.cash.find(source_type="sale", source_id="s1")
        assert len(rows) == 1
        assert second.id == first.id == "inflow:sale:s1"
        assert second.amount == Decimal("1234.56")

    @pytest.mark.asyncio
    async def test_directions_are_separate_rows(self, cash, repos):
        await cash.register_inflow(SourceType.SALE, "s1", 100)
        await cash.register_outflow(SourceType.SALE, "s1", 80)
        assert len(await cash.movements_for_source(SourceType.SALE, "s1")) == 2

    @pytest.mark.asyncio
    async def test_amount_must_be_positive(self, cash):
        with pytest.raises(ValidationError):
            await cash.register_outflow(SourceType.EXPENSE, "e1", "0")
        with pytest.raises(ValidationError):
            await cash.register_outflow(SourceType.EXPENSE, "e1", "not a number")

    @pytest.mark.asyncio
    async def test_defaults_date_and_time_from_clock(self, cash, clock):
        movement = await cash.register_outflow(SourceType.PURCHASE, "p1", 50, operator_id="u1")
        assert movement.movement_date == clock.today()
        assert movement.movement_time == "12:00:00"
        assert movement.operator_id == "u1"


class TestUpdateFromSource:
    """Keeping rows in step with their documents"""

    @pytest.mark.asyncio
    async def test_creates_when_missing(self, cash):
        movement = await cash.update_from_source(SourceType.EXPENSE, "e1",
                                                 CashMovementType.OUTFLOW, "150,50",
                                                 concept="Luz")
        assert movement.amount == Decimal("150.50")

    @pytest.mark.asyncio
    async def test_updates_existing_row(self, cash, repos):
        await cash.register_outflow(SourceType.PURCHASE, "p1", 100, concept="Compra")
        await cash.update_from_source(SourceType.PURCHASE, "p1", CashMovementType.OUTFLOW,
                                      250, concept="Compra corregida")

        rows = await repos.cash.find(source_type="purchase", source_id="p1")
        assert len(rows) == 1
        assert rows[0].amount == Decimal("250.00")
        assert rows[0].concept == "Compra corregida"

    @pytest.mark.asyncio
    async def test_zero_amount_removes_row(self, cash, repos):
        await cash.register_outflow(SourceType.PURCHASE, "p1", 100)
        result = await cash.update_from_source(SourceType.PURCHASE, "p1",
                                               CashMovementType.OUTFLOW, 0)
        assert result is None
        assert await repos.cash.find(source_type="purchase") == []

    @pytest.mark.asyncio
    async def test_financed_sale_mirrors_capital_outflow(self, cash, repos):
        await cash.update_from_source(SourceType.SALE, "s1", CashMovementType.INFLOW, 1000,
                                      concept="Venta 1", financed_capital="800",
                                      financed_installments=3)
        outflow = await repos.cash.get_sourced(CashMovementType.OUTFLOW, SourceType.SALE, "s1")
        assert outflow.amount == Decimal("800.00")
        assert outflow.concept == "Financiación - Venta 1"

        await cash.update_from_source(SourceType.SALE, "s1", CashMovementType.INFLOW, 1000,
                                      concept="Venta 1", financed_capital="800",
                                      financed_installments=1)
        assert await repos.cash.get_sourced(CashMovementType.OUTFLOW, SourceType.SALE,
                                            "s1") is None


class TestDeleteFromSource:
    """Removal when the source document goes away"""

    @pytest.mark.asyncio
    async def test_sale_removes_both_directions(self, cash):
        await cash.register_inflow(SourceType.SALE, "s1", 100)
        await cash.register_outflow(SourceType.SALE, "s1", 80)

        assert await cash.delete_from_source(SourceType.SALE, "s1") == 2
        assert await cash.movements_for_source(SourceType.SALE, "s1") == []

    @pytest.mark.asyncio
    async def test_explicit_type(self, cash):
        await cash.register_inflow(SourceType.SALE, "s1", 100)
        await cash.register_outflow(SourceType.SALE, "s1", 80)

        assert await cash.delete_from_source(SourceType.SALE, "s1",
                                             CashMovementType.OUTFLOW) == 1
        assert len(await cash.movements_for_source(SourceType.SALE, "s1")) == 1

    @pytest.mark.asyncio
    async def test_missing_source_is_noop(self, cash):
        assert await cash.delete_from_source(SourceType.EXPENSE, "nope") == 0


class TestManualMovementsAndTotals:
    """Unsourced rows and day totals"""

    @pytest.mark.asyncio
    async def test_record_movement(self, cash):
        movement = await cash.record_movement(CashMovementType.OPENING, "5000", "Apertura")
        assert movement.source_type is None
        assert movement.amount == Decimal("5000.00")

    @pytest.mark.asyncio
    async def test_daily_totals(self, cash, clock):
        await cash.register_inflow(SourceType.SALE, "s1", 100)
        await cash.register_outflow(SourceType.EXPENSE, "e1", 30)
        await cash.record_movement(CashMovementType.ADJUSTMENT, 5, "Ajuste")

        totals = await cash.daily_totals(clock.today())
        assert totals.inflow == Decimal("100.00")
        assert totals.outflow == Decimal("30.00")
        assert totals.net == Decimal("70.00")
        assert totals.movements == 3
        assert totals.by_type["adjustment"] == Decimal("5.00")


class TestCreditMovements:
    """Disbursements registered at credit creation"""

    @pytest.mark.asyncio
    async def test_disbursement_outflow(self, service):
        credit_id = await service.create_credit({"borrower_id": "b1", "principal": "1000"})
        movement = await service.repos.cash.get_sourced(CashMovementType.OUTFLOW,
                                                        SourceType.CREDIT, credit_id)
        assert movement.amount == Decimal("1000.00")
        assert movement.concept == f"Desembolso crédito #{credit_id} - Ana Pérez"

    @pytest.mark.asyncio
    async def test_financed_sale_has_no_disbursement(self, service):
        credit_id = await service.create_credit({
            "borrower_id": "b1", "principal": "1000", "from_financed_sale": True,
        })
        assert await service.cash.movements_for_source(SourceType.CREDIT, credit_id) == []
