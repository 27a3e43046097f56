"""
Receipt Builder Module

Issues the receipt that accompanies every payment: sequential number plus a
snapshot of the names and balances at the time of collection.
"""

from decimal import Decimal
from typing import Optional

from .clock import BusinessClock
from .directory import BorrowerDirectory, PaymentMethodCatalog, UserDirectory
from .exceptions import NotFoundError, ValidationError
from .models import Credit, Payment, Receipt
from .repositories import Repositories, new_id
from .storage import utc_now


RECEIPT_SEQUENCE = "receipt_number"


class ReceiptBuilder:
    """Builds and stores receipts"""

    def __init__(self, repositories: Repositories, clock: BusinessClock,
                 borrowers: BorrowerDirectory, users: UserDirectory,
                 payment_methods: PaymentMethodCatalog):
        self.repos = repositories
        self.clock = clock
        self.borrowers = borrowers
        self.users = users
        self.payment_methods = payment_methods

    async def require_payment_method(self, payment_method_id: Optional[str]) -> str:
        """
        Validate a payment method reference.

        Returns:
            The payment method label

        Raises:
            ValidationError: no payment method given
            NotFoundError: payment method not in the catalog
        """
        if payment_method_id is None or str(payment_method_id).strip() == "":
            raise ValidationError("A payment method is required", field="payment_method_id")
        label = await self.payment_methods.label(str(payment_method_id))
        if label is None:
            raise NotFoundError("Payment method", payment_method_id)
        return label

    async def borrower_name(self, credit: Credit) -> Optional[str]:
        return await self.borrowers.display_name(credit.borrower_id)

    async def issue(self, credit: Credit, payment: Payment, balance_before: Decimal,
                    balance_after: Decimal, concept: str,
                    payment_method_label: Optional[str] = None) -> Receipt:
        """
        Create the receipt for a payment.

        Args:
            credit: Credit the payment belongs to
            payment: Stored payment with its breakdown
            balance_before: Credit balance before the payment
            balance_after: Credit balance after the payment
            concept: Receipt concept line
            payment_method_label: Label already resolved by the caller

        Returns:
            The stored Receipt
        """
        now = utc_now()
        if payment_method_label is None and payment.payment_method_id is not None:
            payment_method_label = await self.payment_methods.label(str(payment.payment_method_id))

        receipt = Receipt(
            id=new_id(),
            created_at=now,
            updated_at=now,
            number=await self.repos.storage.next_sequence(RECEIPT_SEQUENCE),
            credit_id=credit.id,
            payment_id=payment.id,
            installment_id=payment.installment_id,
            issue_date=payment.payment_date,
            issue_time=self.clock.time_of_day(),
            amount=payment.amount,
            concept=concept,
            borrower_name=await self.borrower_name(credit),
            collector_name=(await self.users.display_name(credit.collector_id)
                            if credit.collector_id else None),
            payment_method_id=payment.payment_method_id,
            payment_method_label=payment_method_label,
            balance_before=balance_before,
            balance_after=balance_after,
            principal_paid=payment.principal,
            interest_paid=payment.interest,
            late_fee_paid=payment.late_fee,
            discount=payment.discount + payment.late_fee_discount,
            cycle=payment.cycle,
        )
        return await self.repos.receipts.save(receipt)
