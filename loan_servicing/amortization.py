"""
Amortization Module

Pure reducing-balance (level payment) amortization. Turns loan terms into an
ordered list of scheduled installments whose principal portions sum exactly
to the loan principal. No storage, no side effects.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import List
import calendar

from .currency import Currency, ZERO, round_money
from .errors import InvalidTermsError
from .models import RepaymentFrequency


@dataclass(frozen=True)
class LoanTerms:
    """Approved loan terms"""
    principal_amount: Decimal
    annual_interest_rate: Decimal       # e.g., 0.24 for 24% p.a.
    term_months: int
    first_payment_date: date
    frequency: RepaymentFrequency = RepaymentFrequency.MONTHLY
    currency: Currency = Currency.ZMW

    def validate(self) -> None:
        """Raise InvalidTermsError unless the terms can be amortized"""
        if not isinstance(self.principal_amount, Decimal) or not self.principal_amount.is_finite():
            raise InvalidTermsError("Principal must be a finite Decimal")
        if self.principal_amount <= ZERO:
            raise InvalidTermsError(f"Principal must be positive, got {self.principal_amount}")
        if round_money(self.principal_amount, self.currency) != self.principal_amount:
            raise InvalidTermsError(
                f"Principal {self.principal_amount} has more precision than {self.currency.code} allows"
            )
        if not isinstance(self.annual_interest_rate, Decimal) or not self.annual_interest_rate.is_finite():
            raise InvalidTermsError("Annual interest rate must be a finite Decimal")
        if self.annual_interest_rate < ZERO:
            raise InvalidTermsError(f"Annual interest rate cannot be negative, got {self.annual_interest_rate}")
        if isinstance(self.term_months, bool) or not isinstance(self.term_months, int) or self.term_months < 1:
            raise InvalidTermsError(f"Term must be at least one month, got {self.term_months}")
        if not isinstance(self.first_payment_date, date):
            raise InvalidTermsError("First payment date is required")
        if self.frequency != RepaymentFrequency.MONTHLY:
            raise InvalidTermsError(f"Unsupported repayment frequency: {self.frequency}")

    @property
    def monthly_rate(self) -> Decimal:
        return self.annual_interest_rate / Decimal('12')

    @property
    def maturity_date(self) -> date:
        return add_months(self.first_payment_date, self.term_months - 1)


@dataclass(frozen=True)
class ScheduledInstallment:
    """Single entry in amortization schedule"""
    installment_number: int
    due_date: date
    principal_due: Decimal
    interest_due: Decimal
    total_due: Decimal
    principal_balance: Decimal


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def calculate_level_payment(principal: Decimal, monthly_rate: Decimal, months: int,
                            currency: Currency = Currency.ZMW) -> Decimal:
    """
    Constant installment amount, rounded to the currency's minor unit.

    Standard annuity formula: P * [r(1+r)^n] / [(1+r)^n - 1], or P / n when
    the loan carries no interest.
    """
    if monthly_rate == ZERO:
        return round_money(principal / Decimal(months), currency)

    factor = (Decimal('1') + monthly_rate) ** months
    return round_money(principal * monthly_rate * factor / (factor - Decimal('1')), currency)


def calculate_installments(terms: LoanTerms) -> List[ScheduledInstallment]:
    """
    Generate the amortization schedule for the given terms

    Interest for each period is charged on the remaining balance. The last
    installment absorbs all rounding drift so the balance ends at exactly zero.

    Raises:
        InvalidTermsError: If the terms are invalid or too small to amortize
    """
    terms.validate()

    monthly_rate = terms.monthly_rate
    level_payment = calculate_level_payment(
        terms.principal_amount, monthly_rate, terms.term_months, terms.currency
    )

    schedule: List[ScheduledInstallment] = []
    remaining_balance = terms.principal_amount
    due_date = terms.first_payment_date

    for number in range(1, terms.term_months + 1):
        interest_due = round_money(remaining_balance * monthly_rate, terms.currency)

        if number == terms.term_months:
            # True-up: pay exactly what's left
            principal_due = remaining_balance
        else:
            principal_due = level_payment - interest_due
            if principal_due <= ZERO or principal_due >= remaining_balance:
                raise InvalidTermsError(
                    f"Terms do not amortize: installment {number} would repay "
                    f"{principal_due} of a remaining {remaining_balance}"
                )

        remaining_balance -= principal_due

        schedule.append(ScheduledInstallment(
            installment_number=number,
            due_date=due_date,
            principal_due=principal_due,
            interest_due=interest_due,
            total_due=principal_due + interest_due,
            principal_balance=remaining_balance
        ))

        due_date = add_months(terms.first_payment_date, number)

    return schedule
