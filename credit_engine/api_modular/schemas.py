"""
Pydantic schemas for API requests
"""

from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field


# Amounts are accepted as numbers or text ("1.234,56", "1234.56")
Amount = Union[str, int, float]


# Credit schemas
class CreateCreditRequest(BaseModel):
    borrower_id: str
    principal: Amount
    modality: str = Field("fixed", description="fixed, progressive or open")
    period: str = Field("monthly", description="weekly, biweekly or monthly")
    installment_count: int = 1
    rate: Optional[Amount] = None
    collector_id: Optional[str] = None
    request_date: Optional[str] = None        # ISO date string
    accreditation_date: Optional[str] = None  # ISO date string
    commitment_date: Optional[str] = None     # ISO date string
    discount_pct: Optional[Amount] = None
    from_financed_sale: bool = False
    is_legacy: bool = False
    product_detail: Optional[str] = None


class UpdateCreditRequest(BaseModel):
    principal: Optional[Amount] = None
    modality: Optional[str] = None
    period: Optional[str] = None
    installment_count: Optional[int] = None
    rate: Optional[Amount] = None
    collector_id: Optional[str] = None
    request_date: Optional[str] = None
    accreditation_date: Optional[str] = None
    commitment_date: Optional[str] = None
    discount_pct: Optional[Amount] = None
    product_detail: Optional[str] = None

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class SimulatePlanRequest(BaseModel):
    principal: Amount
    period: str = "monthly"
    installment_count: int = 1
    modality: str = "fixed"
    rate: Optional[Amount] = None
    from_financed_sale: bool = False
    discount_pct: Optional[Amount] = None
    commitment_date: Optional[str] = None


class SettleCreditRequest(BaseModel):
    payment_method_id: Optional[str] = None
    discount_pct: Optional[Amount] = None
    discount_base: str = Field("mora", description="mora or total")
    note: Optional[str] = None


class RefinanceCreditRequest(BaseModel):
    option: str = Field(..., description="P1, P2, P3 or manual")
    manual_rate: Optional[Amount] = None
    installment_count: Optional[int] = None
    period: Optional[str] = None


class InstallmentPaymentRequest(BaseModel):
    payment_method_id: Optional[str] = None
    amount: Optional[Amount] = None
    late_fee_discount: Optional[Amount] = None
    note: Optional[str] = None
    cycle: Optional[int] = None


# Cash schemas
class SourceMovementRequest(BaseModel):
    source_type: str = Field(..., description="credit, receipt, sale, purchase or expense")
    source_id: str
    amount: Amount
    movement_date: Optional[str] = None
    concept: str = ""
    payment_method_id: Optional[str] = None


class SourceSyncRequest(SourceMovementRequest):
    movement_type: str = Field("inflow", description="inflow or outflow")
    financed_capital: Optional[Amount] = None
    financed_installments: Optional[int] = None


class ManualMovementRequest(BaseModel):
    movement_type: str = Field(..., description="adjustment, opening, closing, inflow or outflow")
    amount: Amount
    concept: str
    movement_date: Optional[str] = None
    payment_method_id: Optional[str] = None
