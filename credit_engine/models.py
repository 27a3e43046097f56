"""
Credit Engine Models Module

Entities persisted by the engine: credits, installments, payments, receipts,
cash movements and the open-modality cycle ledger. All amounts are Decimal
quantized to cents.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .money import ZERO, fix2, non_negative
from .storage import StorageRecord


class Modality(Enum):
    """Repayment modality"""
    FIXED = "fixed"               # Equal installments
    PROGRESSIVE = "progressive"   # Installment k weighted by k
    OPEN = "open"                 # Single rolling installment, monthly cycles


class PeriodUnit(Enum):
    """Installment period"""
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"

    @property
    def nominal_length(self) -> int:
        """Periods per month used by the rate rules"""
        return {
            PeriodUnit.WEEKLY: 4,
            PeriodUnit.BIWEEKLY: 2,
            PeriodUnit.MONTHLY: 1,
        }[self]

    @property
    def days(self) -> Optional[int]:
        """Length in days, None for calendar months"""
        return {
            PeriodUnit.WEEKLY: 7,
            PeriodUnit.BIWEEKLY: 15,
            PeriodUnit.MONTHLY: None,
        }[self]


class CreditStatus(Enum):
    """Credit lifecycle states"""
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    REFINANCED = "refinanced"     # Terminal, replaced by a new credit
    VOIDED = "voided"             # Terminal, annulled before any payment


class InstallmentStatus(Enum):
    """Installment states"""
    PENDING = "pending"
    PAID = "paid"
    PARTIAL = "partial"
    OVERDUE = "overdue"
    REFINANCED = "refinanced"
    VOID = "void"


class CashMovementType(Enum):
    """Cash register movement types"""
    INFLOW = "inflow"
    OUTFLOW = "outflow"
    ADJUSTMENT = "adjustment"
    OPENING = "opening"
    CLOSING = "closing"


class SourceType(Enum):
    """Business document a cash movement mirrors"""
    CREDIT = "credit"
    RECEIPT = "receipt"
    SALE = "sale"
    PURCHASE = "purchase"
    EXPENSE = "expense"


class DiscountBase(Enum):
    """What a settlement discount percentage applies to"""
    MORA = "mora"      # Late fee only
    TOTAL = "total"    # Principal + interest + late fee


class RefinanceOption(Enum):
    """Refinancing rate tiers"""
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"
    MANUAL = "manual"


@dataclass
class Credit(StorageRecord):
    """A loan and its commercial terms"""
    borrower_id: str
    principal: Decimal
    modality: Modality
    period: PeriodUnit
    installment_count: int
    rate: Decimal                       # Percent: per cycle for open, total otherwise
    total_payable: Decimal
    balance: Decimal
    request_date: date
    accreditation_date: date
    commitment_date: date
    collector_id: Optional[str] = None
    status: CreditStatus = CreditStatus.PENDING
    accrued_interest: Decimal = ZERO    # Late fee / open interest collected at payoff
    creation_discount_pct: Decimal = ZERO
    origin_credit_id: Optional[str] = None
    from_financed_sale: bool = False
    is_legacy: bool = False
    refinance_rate: Optional[Decimal] = None
    refinance_option: Optional[RefinanceOption] = None
    product_detail: Optional[str] = None

    _decimal_fields = ('principal', 'rate', 'total_payable', 'balance', 'accrued_interest',
                       'creation_discount_pct', 'refinance_rate')
    _date_fields = ('request_date', 'accreditation_date', 'commitment_date')
    _enum_fields = {
        'modality': Modality,
        'period': PeriodUnit,
        'status': CreditStatus,
        'refinance_option': RefinanceOption,
    }

    @property
    def is_open(self) -> bool:
        return self.modality == Modality.OPEN

    @property
    def is_terminal(self) -> bool:
        """Refinanced and voided credits never change again"""
        return self.status in (CreditStatus.REFINANCED, CreditStatus.VOIDED)


@dataclass
class Installment(StorageRecord):
    """One scheduled repayment of a credit"""
    credit_id: str
    number: int
    amount: Decimal
    due_date: date
    status: InstallmentStatus = InstallmentStatus.PENDING
    paid_amount: Decimal = ZERO         # Principal collected
    discount: Decimal = ZERO            # Principal forgiven
    late_fee: Decimal = ZERO            # Outstanding accrued late fee
    payment_method_id: Optional[str] = None

    _decimal_fields = ('amount', 'paid_amount', 'discount', 'late_fee')
    _date_fields = ('due_date',)
    _enum_fields = {'status': InstallmentStatus}

    @property
    def principal_pending(self) -> Decimal:
        return non_negative(fix2(self.amount - self.discount - self.paid_amount))

    @property
    def is_closed(self) -> bool:
        return self.status in (InstallmentStatus.PAID, InstallmentStatus.REFINANCED,
                               InstallmentStatus.VOID)


@dataclass
class Payment(StorageRecord):
    """A monetary event against one installment, with its breakdown"""
    credit_id: str
    installment_id: str
    amount: Decimal
    payment_date: date
    payment_method_id: Optional[str] = None
    note: Optional[str] = None
    principal: Decimal = ZERO
    interest: Decimal = ZERO
    late_fee: Decimal = ZERO
    late_fee_discount: Decimal = ZERO
    discount: Decimal = ZERO            # Principal and interest forgiven
    cycle: Optional[int] = None
    operator_id: Optional[str] = None

    _decimal_fields = ('amount', 'principal', 'interest', 'late_fee',
                       'late_fee_discount', 'discount')
    _date_fields = ('payment_date',)


@dataclass
class Receipt(StorageRecord):
    """Printable snapshot of a payment"""
    number: int
    credit_id: str
    payment_id: str
    issue_date: date
    issue_time: str
    amount: Decimal
    concept: str
    borrower_name: Optional[str] = None
    collector_name: Optional[str] = None
    payment_method_id: Optional[str] = None
    payment_method_label: Optional[str] = None
    installment_id: Optional[str] = None
    balance_before: Decimal = ZERO
    balance_after: Decimal = ZERO
    principal_paid: Decimal = ZERO
    interest_paid: Decimal = ZERO
    late_fee_paid: Decimal = ZERO
    discount: Decimal = ZERO
    cycle: Optional[int] = None

    _decimal_fields = ('amount', 'balance_before', 'balance_after', 'principal_paid',
                       'interest_paid', 'late_fee_paid', 'discount')
    _date_fields = ('issue_date',)


@dataclass
class CashMovement(StorageRecord):
    """One row of the cash register"""
    movement_date: date
    movement_time: str
    movement_type: CashMovementType
    amount: Decimal
    concept: str
    payment_method_id: Optional[str] = None
    source_type: Optional[SourceType] = None
    source_id: Optional[str] = None
    operator_id: Optional[str] = None

    _decimal_fields = ('amount',)
    _date_fields = ('movement_date',)
    _enum_fields = {'movement_type': CashMovementType, 'source_type': SourceType}

    @staticmethod
    def source_key(movement_type: CashMovementType, source_type: SourceType,
                   source_id: Any) -> str:
        """Primary key of the single row allowed per (type, source type, source id)"""
        return f"{movement_type.value}:{source_type.value}:{source_id}"


@dataclass
class CycleLedger(StorageRecord):
    """Running collections of one open-modality credit within one cycle"""
    credit_id: str
    cycle: int
    interest_collected: Decimal = ZERO
    late_fee_collected: Decimal = ZERO    # Forgiven late fee included
    principal_collected: Decimal = ZERO
    entries: List[Dict[str, Any]] = field(default_factory=list)

    _decimal_fields = ('interest_collected', 'late_fee_collected', 'principal_collected')

    @staticmethod
    def key(credit_id: str, cycle: int) -> str:
        return f"{credit_id}:{cycle}"

    def record(self, day: date, interest: Decimal = ZERO, late_fee: Decimal = ZERO,
               principal: Decimal = ZERO, payment_id: Optional[str] = None,
               late_fee_discount: Decimal = ZERO) -> None:
        """Add one dated collection"""
        self.interest_collected = fix2(self.interest_collected + interest)
        self.late_fee_collected = fix2(self.late_fee_collected + late_fee + late_fee_discount)
        self.principal_collected = fix2(self.principal_collected + principal)
        self.entries.append({
            "date": day.isoformat(),
            "interest": str(fix2(interest)),
            "late_fee": str(fix2(late_fee)),
            "late_fee_discount": str(fix2(late_fee_discount)),
            "principal": str(fix2(principal)),
            "payment_id": payment_id,
        })

    def interest_collections(self) -> List[Tuple[date, Decimal]]:
        """Dated interest collections, oldest first"""
        result = []
        for entry in self.entries:
            amount = Decimal(entry["interest"])
            if amount > ZERO:
                result.append((date.fromisoformat(entry["date"]), amount))
        return sorted(result, key=lambda item: item[0])
