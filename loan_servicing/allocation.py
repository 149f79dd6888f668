"""
Payment Allocation Module

Pure waterfall allocation of a payment across a loan's installments:
oldest installment first, and within an installment interest before
principal. Inputs are never mutated; the result carries updated copies.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass, field, replace
from typing import List, Optional, Sequence

from .currency import ZERO, ROUNDING_TOLERANCE, is_settled
from .errors import ValidationError
from .models import Installment, InstallmentStatus


@dataclass(frozen=True)
class InstallmentAllocation:
    """Portion of a payment applied to one installment"""
    installment_id: str
    installment_number: int
    amount: Decimal
    interest_amount: Decimal
    principal_amount: Decimal
    new_status: InstallmentStatus


@dataclass
class AllocationResult:
    """Outcome of allocating one payment"""
    amount: Decimal
    principal_portion: Decimal = ZERO
    interest_portion: Decimal = ZERO
    unapplied_amount: Decimal = ZERO
    allocations: List[InstallmentAllocation] = field(default_factory=list)
    updated_installments: List[Installment] = field(default_factory=list)

    @property
    def applied_amount(self) -> Decimal:
        return self.principal_portion + self.interest_portion

    @property
    def has_overpayment(self) -> bool:
        return self.unapplied_amount > ROUNDING_TOLERANCE

    @property
    def installment_numbers(self) -> List[int]:
        return [a.installment_number for a in self.allocations]


def allocate_payment(
    installments: Sequence[Installment],
    amount: Decimal,
    payment_date: Optional[date] = None
) -> AllocationResult:
    """
    Allocate a payment across outstanding installments

    Args:
        installments: The loan's installments; walked in installment order
        amount: Payment amount (must not be negative)
        payment_date: Recorded as paid_date on installments this settles

    Returns:
        AllocationResult with aggregate portions, touched installments and
        any unapplied leftover

    Raises:
        ValidationError: If amount is negative
    """
    if amount < ZERO:
        raise ValidationError(f"Cannot allocate a negative amount: {amount}")

    result = AllocationResult(amount=amount)
    remaining = amount

    for installment in sorted(installments, key=lambda i: i.installment_number):
        if remaining <= ZERO:
            break

        outstanding = installment.outstanding
        if installment.is_paid or outstanding <= ZERO:
            continue

        applied = min(remaining, outstanding)
        interest_payment = min(applied, max(installment.interest_outstanding, ZERO))
        principal_payment = applied - interest_payment

        total_paid = installment.total_paid + applied
        if is_settled(total_paid, installment.total_due):
            status = InstallmentStatus.PAID
            paid_date = payment_date
            days_past_due = 0
        else:
            status = InstallmentStatus.PARTIALLY_PAID
            paid_date = installment.paid_date
            days_past_due = installment.days_past_due

        updated = replace(
            installment,
            interest_paid=installment.interest_paid + interest_payment,
            principal_paid=installment.principal_paid + principal_payment,
            total_paid=total_paid,
            status=status,
            paid_date=paid_date,
            days_past_due=days_past_due
        )

        result.updated_installments.append(updated)
        result.allocations.append(InstallmentAllocation(
            installment_id=installment.id,
            installment_number=installment.installment_number,
            amount=applied,
            interest_amount=interest_payment,
            principal_amount=principal_payment,
            new_status=status
        ))
        result.interest_portion += interest_payment
        result.principal_portion += principal_payment
        remaining -= applied

    result.unapplied_amount = remaining
    return result
