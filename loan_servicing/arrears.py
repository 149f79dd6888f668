"""
Arrears Classification Module

Recomputes days past due (DPD) from a loan's installment ledger and moves the
loan through the regulator arrears buckets, which fix its provision rate and
accrual status. History is append-only and only grows when the bucket
actually changes, so repeated sweeps are cheap and side-effect free.
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Sequence, Tuple
import logging
import uuid

from .audit import AuditAction, AuditEntry
from .currency import Currency, ZERO, round_money, is_settled
from .errors import ValidationError
from .logging_config import log_action
from .models import (
    ArrearsClassification, ArrearsClassificationHistory, Installment,
    InstallmentStatus, CLASSIFICATION_TABLE
)
from .notifications import NotificationType
from .outbox import CollaboratorOutbox
from .schedules import RepaymentScheduleService
from .storage import StorageInterface, retry_on_conflict


@dataclass(frozen=True)
class ClassificationRule:
    """One arrears bucket and what it costs"""
    classification: ArrearsClassification
    min_days: int
    max_days: Optional[int]             # None = open-ended
    provision_rate: Decimal
    is_non_accrual: bool

    def matches(self, days_past_due: int) -> bool:
        return days_past_due >= self.min_days and (
            self.max_days is None or days_past_due <= self.max_days
        )


CLASSIFICATION_RULES: Tuple[ClassificationRule, ...] = (
    ClassificationRule(ArrearsClassification.CURRENT, 0, 29, Decimal('0.00'), False),
    ClassificationRule(ArrearsClassification.SPECIAL_MENTION, 30, 89, Decimal('0.00'), False),
    ClassificationRule(ArrearsClassification.SUBSTANDARD, 90, 179, Decimal('0.20'), True),
    ClassificationRule(ArrearsClassification.DOUBTFUL, 180, 364, Decimal('0.50'), True),
    ClassificationRule(ArrearsClassification.LOSS, 365, None, Decimal('1.00'), True),
)

RULES_BY_CLASSIFICATION: Dict[ArrearsClassification, ClassificationRule] = {
    rule.classification: rule for rule in CLASSIFICATION_RULES
}


def determine_classification(days_past_due: int) -> ClassificationRule:
    """Bucket for a DPD count"""
    if days_past_due < 0:
        raise ValidationError(f"Days past due cannot be negative, got {days_past_due}")
    for rule in CLASSIFICATION_RULES:
        if rule.matches(days_past_due):
            return rule
    raise ValidationError(f"No arrears bucket covers {days_past_due} days")


def calculate_days_past_due(installments: Sequence[Installment], as_of: date) -> int:
    """DPD of the earliest installment that is not yet settled, 0 if none"""
    for installment in sorted(installments, key=lambda i: i.installment_number):
        if not is_settled(installment.total_paid, installment.total_due):
            return max(0, (as_of - installment.due_date).days)
    return 0


def calculate_provision(outstanding_principal: Decimal, rule: ClassificationRule,
                        currency: Currency = Currency.ZMW) -> Decimal:
    """Provision for a bucket; a full write-off reserves the exact balance"""
    if rule.provision_rate == Decimal('1'):
        return outstanding_principal
    return round_money(outstanding_principal * rule.provision_rate, currency)


@dataclass
class ClassificationResult:
    """Outcome of classifying one loan"""
    loan_id: str
    previous_classification: ArrearsClassification
    classification: ArrearsClassification
    days_past_due: int
    outstanding_principal: Decimal
    provision_rate: Decimal
    provision_amount: Decimal
    is_non_accrual: bool
    changed: bool
    overdue_installments: int = 0
    history_id: Optional[str] = None


class ArrearsClassificationService:
    """
    Drives the arrears state machine for scheduled loans
    """

    def __init__(
        self,
        storage: StorageInterface,
        schedule_service: RepaymentScheduleService,
        outbox: CollaboratorOutbox,
        max_retries: int = 3,
        workers: int = 1
    ):
        self.storage = storage
        self.schedules = schedule_service
        self.outbox = outbox
        self.max_retries = max_retries
        self.workers = max(1, workers)
        self.logger = logging.getLogger("loan_servicing.arrears")

    def classify_loan(
        self,
        loan_id: str,
        as_of: Optional[date] = None,
        triggered_by: str = "System",
        correlation_id: Optional[str] = None
    ) -> ClassificationResult:
        """
        Reclassify one loan

        Marks unpaid installments that fell due before ``as_of`` as Overdue,
        then records a history row and emits ``LoanReclassified`` only if the
        bucket differs from the loan's latest recorded one (Current if none).

        Raises:
            NotFoundError: If the loan has no schedule
            ConcurrencyConflictError: If the loan stayed contended through every retry
        """
        as_of = as_of or date.today()
        correlation_id = correlation_id or str(uuid.uuid4())

        def apply() -> Tuple[ClassificationResult, Optional[ArrearsClassificationHistory]]:
            schedule = self.schedules.get_schedule_by_loan_id(loan_id)
            days_past_due = calculate_days_past_due(schedule.installments, as_of)
            rule = determine_classification(days_past_due)
            outstanding = max(schedule.outstanding_principal, ZERO)
            provision = calculate_provision(outstanding, rule, schedule.currency)

            overdue = []
            for installment in schedule.installments:
                if is_settled(installment.total_paid, installment.total_due):
                    continue
                if installment.due_date >= as_of:
                    continue
                days = (as_of - installment.due_date).days
                if installment.status != InstallmentStatus.OVERDUE or installment.days_past_due != days:
                    overdue.append(replace(installment, status=InstallmentStatus.OVERDUE, days_past_due=days))

            previous = self.get_current_classification(loan_id)
            history = None
            if rule.classification != previous:
                now = datetime.now(timezone.utc)
                history = ArrearsClassificationHistory(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    loan_id=loan_id,
                    previous_classification=previous,
                    new_classification=rule.classification,
                    days_past_due=days_past_due,
                    outstanding_balance=outstanding,
                    provision_rate=rule.provision_rate,
                    provision_amount=provision,
                    is_non_accrual=rule.is_non_accrual,
                    classified_at=now,
                    triggered_by=triggered_by,
                    reason=f"{days_past_due} days past due as of {as_of.isoformat()}",
                    correlation_id=correlation_id
                )

            if overdue or history:
                with self.storage.atomic():
                    self.schedules.save_loan_state(schedule, overdue)
                    if history:
                        self.storage.save_versioned(CLASSIFICATION_TABLE, history.id, history.to_dict(), None)

            result = ClassificationResult(
                loan_id=loan_id,
                previous_classification=previous,
                classification=rule.classification,
                days_past_due=days_past_due,
                outstanding_principal=outstanding,
                provision_rate=rule.provision_rate,
                provision_amount=provision,
                is_non_accrual=rule.is_non_accrual,
                changed=history is not None,
                overdue_installments=sum(
                    1 for i in schedule.installments if i.status == InstallmentStatus.OVERDUE
                ),
                history_id=history.id if history else None
            )
            return result, history

        result, history = retry_on_conflict(apply, self.max_retries, f"classify loan {loan_id}")

        if history is None:
            self.logger.debug(f"Loan {loan_id} stays {result.classification.value} at {result.days_past_due} DPD")
            return result

        log_action(self.logger, "info",
                   f"Loan {loan_id} reclassified {result.previous_classification.value} -> "
                   f"{result.classification.value} at {result.days_past_due} DPD",
                   loan_id=loan_id, actor=triggered_by, action="classify_loan",
                   correlation_id=correlation_id,
                   extra={"provision_amount": str(result.provision_amount)})

        self.outbox.emit_audit(AuditEntry(
            action=AuditAction.LOAN_RECLASSIFIED,
            entity_type="loan",
            entity_id=loan_id,
            actor=triggered_by,
            correlation_id=correlation_id,
            payload={
                "history_id": history.id,
                "previous_classification": history.previous_classification.value,
                "new_classification": history.new_classification.value,
                "days_past_due": history.days_past_due,
                "outstanding_balance": history.outstanding_balance,
                "provision_rate": history.provision_rate,
                "provision_amount": history.provision_amount,
                "is_non_accrual": history.is_non_accrual,
            }
        ))

        if result.is_non_accrual:
            schedule = self.schedules.get_schedule_by_loan_id(loan_id)
            self.outbox.notify(
                loan_id, schedule.client_id, NotificationType.CLASSIFICATION_CHANGE,
                {
                    "classification": result.classification.value,
                    "days_past_due": result.days_past_due,
                    "outstanding_balance": schedule.outstanding_total,
                },
                correlation_id=correlation_id
            )

        return result

    def classify_all_loans(self, as_of: Optional[date] = None, triggered_by: str = "System") -> int:
        """
        Classify every scheduled loan

        Loans are independent, so with more than one worker they are spread
        over a thread pool. A loan that fails is logged and skipped.

        Returns:
            Number of loans classified successfully
        """
        as_of = as_of or date.today()
        loan_ids = self.schedules.list_loan_ids()
        self.logger.info(f"Classifying {len(loan_ids)} loans as of {as_of.isoformat()} with {self.workers} worker(s)")

        def classify_one(loan_id: str) -> bool:
            try:
                self.classify_loan(loan_id, as_of=as_of, triggered_by=triggered_by)
                return True
            except Exception as e:
                # Log error but continue with other loans
                log_action(self.logger, "error", f"Classification failed for loan {loan_id}: {e}",
                           loan_id=loan_id, actor=triggered_by, action="classify_loan")
                return False

        processed = 0
        if self.workers == 1:
            for loan_id in loan_ids:
                processed += classify_one(loan_id)
        else:
            with ThreadPoolExecutor(max_workers=self.workers) as executor:
                futures = [executor.submit(classify_one, loan_id) for loan_id in loan_ids]
                for future in as_completed(futures):
                    processed += future.result()

        self.logger.info(f"Classification sweep done: {processed} of {len(loan_ids)} loans")
        return processed

    def get_classification_history(self, loan_id: str) -> List[ArrearsClassificationHistory]:
        """Classification changes for a loan, newest first"""
        rows = self.storage.find(CLASSIFICATION_TABLE, {'loan_id': loan_id})
        history = [ArrearsClassificationHistory.from_dict(row) for row in rows]
        # Ascending stable sort then reverse, so on equal timestamps the later write comes first
        history.sort(key=lambda h: h.classified_at)
        history.reverse()
        return history

    def get_current_classification(self, loan_id: str) -> ArrearsClassification:
        history = self.get_classification_history(loan_id)
        return history[0].new_classification if history else ArrearsClassification.CURRENT

    def get_arrears_summary(self) -> Dict[str, int]:
        """Number of scheduled loans in each bucket; every bucket is present"""
        summary = {c.value: 0 for c in ArrearsClassification}
        for loan_id in self.schedules.list_loan_ids():
            summary[self.get_current_classification(loan_id).value] += 1
        return summary
