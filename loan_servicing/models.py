"""
Loan Servicing Data Model

Records persisted by the servicing engine: repayment schedules and their
installments, payment transactions, reconciliation tasks, and the append-only
arrears classification history. Every mutable record carries an explicit
``version`` used for optimistic concurrency.
"""

from decimal import Decimal
from datetime import datetime, date
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Iterable, List, Optional, Type
from enum import Enum

from .currency import Currency, ZERO
from .storage import StorageRecord


# Storage tables
SCHEDULES_TABLE = "repayment_schedules"
SCHEDULE_INDEX_TABLE = "loan_schedule_index"          # loan_id -> schedule_id claim
INSTALLMENTS_TABLE = "installments"
PAYMENTS_TABLE = "payment_transactions"
PAYMENT_REFERENCE_TABLE = "payment_references"        # transaction_reference -> payment id claim
RECONCILIATION_TABLE = "reconciliation_tasks"
CLASSIFICATION_TABLE = "arrears_classification_history"


class RepaymentFrequency(Enum):
    """Repayment frequencies supported by the amortization calculator"""
    MONTHLY = "Monthly"


class InstallmentStatus(Enum):
    """Installment repayment state"""
    PENDING = "Pending"
    PARTIALLY_PAID = "PartiallyPaid"
    PAID = "Paid"
    OVERDUE = "Overdue"


class PaymentStatus(Enum):
    """Payment transaction state"""
    CONFIRMED = "Confirmed"
    RECONCILED = "Reconciled"


class ReconciliationTaskType(Enum):
    """Why a payment needs a reconciliation follow-up"""
    OVER_PAYMENT = "OverPayment"
    MISMATCH = "Mismatch"


class ReconciliationStatus(Enum):
    PENDING = "Pending"
    RESOLVED = "Resolved"


class ArrearsClassification(Enum):
    """Regulator arrears buckets, least to most severe"""
    CURRENT = "Current"
    SPECIAL_MENTION = "SpecialMention"
    SUBSTANDARD = "Substandard"
    DOUBTFUL = "Doubtful"
    LOSS = "Loss"

    @property
    def severity(self) -> int:
        return list(ArrearsClassification).index(self)


class PaymentMethod(Enum):
    """How the client paid"""
    CASH = "Cash"
    BANK_TRANSFER = "BankTransfer"
    MOBILE_MONEY = "MobileMoney"
    PAYROLL_DEDUCTION = "PayrollDeduction"
    CHEQUE = "Cheque"


class PaymentSource(Enum):
    """Channel the payment arrived through"""
    BRANCH = "Branch"
    MOBILE_APP = "MobileApp"
    BANK = "Bank"
    PAYROLL = "Payroll"
    AGENT = "Agent"


@dataclass(frozen=True)
class PaymentMethodProfile:
    """Per-method behavior, looked up rather than dispatched"""
    requires_external_reference: bool
    send_confirmation: bool
    description: str


PAYMENT_METHOD_PROFILES: Dict[PaymentMethod, PaymentMethodProfile] = {
    PaymentMethod.CASH: PaymentMethodProfile(
        requires_external_reference=False, send_confirmation=True,
        description="Cash received at a branch or agent"
    ),
    PaymentMethod.BANK_TRANSFER: PaymentMethodProfile(
        requires_external_reference=True, send_confirmation=True,
        description="Bank transfer, settled against the bank's reference"
    ),
    PaymentMethod.MOBILE_MONEY: PaymentMethodProfile(
        requires_external_reference=True, send_confirmation=True,
        description="Mobile money wallet payment"
    ),
    PaymentMethod.PAYROLL_DEDUCTION: PaymentMethodProfile(
        requires_external_reference=False, send_confirmation=False,
        description="Employer payroll deduction, confirmed in bulk"
    ),
    PaymentMethod.CHEQUE: PaymentMethodProfile(
        requires_external_reference=True, send_confirmation=True,
        description="Cheque deposit, referenced by cheque number"
    ),
}


def _coerce(cls: Type[StorageRecord], data: Dict[str, Any],
            decimals: Iterable[str] = (), dates: Iterable[str] = (),
            datetimes: Iterable[str] = (), enums: Optional[Dict[str, Type[Enum]]] = None) -> Dict[str, Any]:
    """Turn stored JSON values back into Decimal/date/datetime/Enum"""
    known = {f.name for f in fields(cls)}
    result = {k: v for k, v in data.items() if k in known}

    for name in decimals:
        if result.get(name) is not None:
            result[name] = Decimal(result[name])
    for name in dates:
        if isinstance(result.get(name), str):
            result[name] = date.fromisoformat(result[name])
    for name in tuple(datetimes) + ('created_at', 'updated_at'):
        if isinstance(result.get(name), str):
            result[name] = datetime.fromisoformat(result[name])
    for name, enum_type in (enums or {}).items():
        if result.get(name) is not None and not isinstance(result[name], enum_type):
            result[name] = enum_type(result[name])

    return result


@dataclass
class Installment(StorageRecord):
    """One scheduled repayment of a loan"""
    schedule_id: str
    loan_id: str
    installment_number: int
    due_date: date
    principal_due: Decimal
    interest_due: Decimal
    total_due: Decimal
    principal_balance: Decimal          # Remaining principal after this installment
    principal_paid: Decimal = ZERO
    interest_paid: Decimal = ZERO
    total_paid: Decimal = ZERO
    status: InstallmentStatus = InstallmentStatus.PENDING
    days_past_due: int = 0
    paid_date: Optional[date] = None
    version: int = 0

    @property
    def outstanding(self) -> Decimal:
        return self.total_due - self.total_paid

    @property
    def interest_outstanding(self) -> Decimal:
        return self.interest_due - self.interest_paid

    @property
    def principal_outstanding(self) -> Decimal:
        return self.principal_due - self.principal_paid

    @property
    def is_paid(self) -> bool:
        return self.status == InstallmentStatus.PAID

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Installment':
        return cls(**_coerce(
            cls, data,
            decimals=('principal_due', 'interest_due', 'total_due', 'principal_balance',
                      'principal_paid', 'interest_paid', 'total_paid'),
            dates=('due_date', 'paid_date'),
            enums={'status': InstallmentStatus}
        ))


@dataclass
class RepaymentSchedule(StorageRecord):
    """
    Aggregate root for a loan's repayment plan.

    Principal terms are immutable once generated. ``version`` is bumped by
    every operation that mutates the loan's installments, which makes it the
    loan-scoped concurrency token.
    """
    loan_id: str
    client_id: str
    product_code: str
    principal_amount: Decimal
    annual_interest_rate: Decimal
    term_months: int
    frequency: RepaymentFrequency
    first_payment_date: date
    maturity_date: date
    generated_at: datetime
    generated_by: str
    correlation_id: str
    currency: Currency = Currency.ZMW
    version: int = 0
    installments: List[Installment] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        # Installments live in their own table
        result.pop('installments', None)
        result['currency'] = self.currency.code
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RepaymentSchedule':
        values = _coerce(
            cls, data,
            decimals=('principal_amount', 'annual_interest_rate'),
            dates=('first_payment_date', 'maturity_date'),
            datetimes=('generated_at',),
            enums={'frequency': RepaymentFrequency}
        )
        if isinstance(values.get('currency'), str):
            values['currency'] = Currency[values['currency']]
        values.pop('installments', None)
        return cls(**values)

    @property
    def outstanding_principal(self) -> Decimal:
        return sum((i.principal_outstanding for i in self.installments), ZERO)

    @property
    def outstanding_total(self) -> Decimal:
        return sum((i.outstanding for i in self.installments), ZERO)

    @property
    def is_fully_paid(self) -> bool:
        return bool(self.installments) and all(i.is_paid for i in self.installments)


@dataclass
class PaymentTransaction(StorageRecord):
    """A client payment, created once per unique transaction reference"""
    loan_id: str
    client_id: str
    transaction_reference: str
    payment_method: PaymentMethod
    payment_source: PaymentSource
    amount: Decimal
    principal_portion: Decimal
    interest_portion: Decimal
    unapplied_amount: Decimal
    transaction_date: date
    received_at: datetime
    status: PaymentStatus = PaymentStatus.CONFIRMED
    is_reconciled: bool = False
    reconciled_by: Optional[str] = None
    reconciled_at: Optional[datetime] = None
    external_reference: Optional[str] = None
    notes: Optional[str] = None
    created_by: str = ""
    correlation_id: str = ""
    installments_affected: List[int] = field(default_factory=list)
    version: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentTransaction':
        return cls(**_coerce(
            cls, data,
            decimals=('amount', 'principal_portion', 'interest_portion', 'unapplied_amount'),
            dates=('transaction_date',),
            datetimes=('received_at', 'reconciled_at'),
            enums={
                'payment_method': PaymentMethod,
                'payment_source': PaymentSource,
                'status': PaymentStatus,
            }
        ))


@dataclass
class ReconciliationTask(StorageRecord):
    """Follow-up for a payment that did not match expected obligations"""
    payment_transaction_id: str
    loan_id: str
    task_type: ReconciliationTaskType
    expected_amount: Decimal
    actual_amount: Decimal
    variance: Decimal
    description: str
    status: ReconciliationStatus = ReconciliationStatus.PENDING
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    version: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ReconciliationTask':
        return cls(**_coerce(
            cls, data,
            decimals=('expected_amount', 'actual_amount', 'variance'),
            datetimes=('resolved_at',),
            enums={'task_type': ReconciliationTaskType, 'status': ReconciliationStatus}
        ))


@dataclass
class ArrearsClassificationHistory(StorageRecord):
    """Append-only record of a classification change; never mutated"""
    loan_id: str
    previous_classification: ArrearsClassification
    new_classification: ArrearsClassification
    days_past_due: int
    outstanding_balance: Decimal
    provision_rate: Decimal
    provision_amount: Decimal
    is_non_accrual: bool
    classified_at: datetime
    triggered_by: str
    reason: str = ""
    correlation_id: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ArrearsClassificationHistory':
        return cls(**_coerce(
            cls, data,
            decimals=('outstanding_balance', 'provision_rate', 'provision_amount'),
            datetimes=('classified_at',),
            enums={
                'previous_classification': ArrearsClassification,
                'new_classification': ArrearsClassification,
            }
        ))
