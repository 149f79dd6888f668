"""
Pydantic schemas for API requests and responses
"""

from datetime import date
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from .storage import to_storage_value
from .models import (
    ArrearsClassificationHistory, Installment, PaymentTransaction,
    ReconciliationTask, RepaymentSchedule
)


class GenerateScheduleRequest(BaseModel):
    loan_id: str
    client_id: str
    product_code: str
    principal_amount: str = Field(..., description="Decimal amount as string")
    annual_interest_rate: str = Field(..., description="Annual rate as a fraction, e.g. 0.24")
    term_months: int
    first_payment_date: str = Field(..., description="ISO date string")
    currency: Optional[str] = Field(None, description="Currency code (ZMW, USD, ...)")
    correlation_id: Optional[str] = None
    actor: str = "System"

    def payment_date(self) -> date:
        return date.fromisoformat(self.first_payment_date)


class ProcessPaymentRequest(BaseModel):
    loan_id: str
    client_id: str
    transaction_reference: str
    payment_method: str = Field(..., description="Cash, BankTransfer, MobileMoney, PayrollDeduction or Cheque")
    payment_source: str = Field(..., description="Branch, MobileApp, Bank, Payroll or Agent")
    amount: str = Field(..., description="Decimal amount as string")
    transaction_date: Optional[str] = None  # ISO date string
    external_reference: Optional[str] = None
    notes: Optional[str] = None
    actor: str = "System"
    correlation_id: Optional[str] = None

    def value_date(self) -> Optional[date]:
        return date.fromisoformat(self.transaction_date) if self.transaction_date else None


class ReconcilePaymentRequest(BaseModel):
    reconciler: str
    comments: Optional[str] = None


class ClassifyRequest(BaseModel):
    as_of: Optional[str] = None  # ISO date string, defaults to today
    triggered_by: str = "System"

    def as_of_date(self) -> Optional[date]:
        return date.fromisoformat(self.as_of) if self.as_of else None


def installment_to_response(installment: Installment) -> Dict[str, Any]:
    data = installment.to_dict()
    data['outstanding'] = str(installment.outstanding)
    return data


def schedule_to_response(schedule: RepaymentSchedule) -> Dict[str, Any]:
    data = schedule.to_dict()
    data['outstanding_principal'] = str(schedule.outstanding_principal)
    data['outstanding_total'] = str(schedule.outstanding_total)
    data['is_fully_paid'] = schedule.is_fully_paid
    data['installments'] = [installment_to_response(i) for i in schedule.installments]
    return data


def payment_to_response(payment: PaymentTransaction) -> Dict[str, Any]:
    return payment.to_dict()


def task_to_response(task: ReconciliationTask) -> Dict[str, Any]:
    return task.to_dict()


def history_to_response(entries: List[ArrearsClassificationHistory]) -> List[Dict[str, Any]]:
    return [entry.to_dict() for entry in entries]


def to_response(value: Any) -> Any:
    """JSON-safe form of report payloads and dataclass results"""
    return to_storage_value(value)
