"""
Credit status recomputation from installment states.
"""

from typing import Iterable

from .models import Credit, CreditStatus, Installment, InstallmentStatus


def derive_status(credit: Credit, installments: Iterable[Installment]) -> CreditStatus:
    """
    Status a credit should have given its installments.

    Refinanced, voided and open credits keep their status. Otherwise: no
    installments -> pending, all paid -> paid, every unpaid one overdue ->
    overdue, anything else -> pending.
    """
    if credit.is_terminal or credit.is_open:
        return credit.status

    installments = list(installments)
    if not installments:
        return CreditStatus.PENDING

    unpaid = [i for i in installments if i.status != InstallmentStatus.PAID]
    if not unpaid:
        return CreditStatus.PAID
    if all(i.status == InstallmentStatus.OVERDUE for i in unpaid):
        return CreditStatus.OVERDUE
    return CreditStatus.PENDING


def recompute_status(credit: Credit, installments: Iterable[Installment]) -> bool:
    """Apply ``derive_status`` to the credit; returns whether it changed"""
    status = derive_status(credit, installments)
    if status == credit.status:
        return False
    credit.status = status
    return True
