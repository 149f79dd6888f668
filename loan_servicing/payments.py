"""
Payment Processing Module

Applies client payments to a loan's schedule with exactly-once semantics.
The transaction reference is the idempotency key: the first successful call
claims it in the same atomic write as the installment updates, the payment
record and any overpayment reconciliation task. Later calls with the same
reference return the original payment id without touching anything.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from typing import List, Optional, Tuple, Union
import logging
import uuid

from .allocation import AllocationResult, allocate_payment
from .audit import AuditAction, AuditEntry
from .currency import ZERO, round_money, to_decimal
from .errors import NotFoundError, ValidationError
from .logging_config import log_action
from .models import (
    PaymentMethod, PaymentSource, PaymentStatus, PaymentTransaction,
    ReconciliationStatus, ReconciliationTask, ReconciliationTaskType,
    RepaymentSchedule, PAYMENT_METHOD_PROFILES,
    PAYMENTS_TABLE, PAYMENT_REFERENCE_TABLE, RECONCILIATION_TABLE
)
from .notifications import NotificationType
from .outbox import CollaboratorOutbox
from .schedules import RepaymentScheduleService
from .storage import StorageInterface, retry_on_conflict


class PaymentProcessingService:
    """
    Records payments, allocates them to installments and tracks reconciliation
    """

    def __init__(
        self,
        storage: StorageInterface,
        schedule_service: RepaymentScheduleService,
        outbox: CollaboratorOutbox,
        max_retries: int = 3
    ):
        self.storage = storage
        self.schedules = schedule_service
        self.outbox = outbox
        self.max_retries = max_retries
        self.logger = logging.getLogger("loan_servicing.payments")

    def process_payment(
        self,
        loan_id: str,
        client_id: str,
        transaction_reference: str,
        payment_method: Union[PaymentMethod, str],
        payment_source: Union[PaymentSource, str],
        amount: Union[Decimal, str, int],
        transaction_date: Optional[date] = None,
        external_reference: Optional[str] = None,
        notes: Optional[str] = None,
        actor: str = "System",
        correlation_id: Optional[str] = None
    ) -> str:
        """
        Apply a payment to a loan

        Args:
            loan_id: Loan being repaid
            client_id: Paying client
            transaction_reference: Unique reference (idempotency key)
            payment_method: How the client paid
            payment_source: Channel the payment arrived through
            amount: Amount received, must be positive
            transaction_date: Value date of the payment (defaults to today)
            external_reference: Bank/wallet/cheque reference
            notes: Free-text notes
            actor: User or component recording the payment
            correlation_id: Request correlation identifier

        Returns:
            Payment transaction ID (the original one for a repeated reference)

        Raises:
            ValidationError: If the request is invalid
            NotFoundError: If the loan has no schedule
            ConcurrencyConflictError: If the loan stayed contended through every retry
            PersistenceFailureError: If the store failed; nothing was written
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        reference = (transaction_reference or "").strip()
        if not reference:
            raise ValidationError("Transaction reference is required")

        method = self._coerce_enum(PaymentMethod, payment_method, "payment method")
        source = self._coerce_enum(PaymentSource, payment_source, "payment source")

        try:
            amount = to_decimal(amount)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        if amount <= ZERO:
            raise ValidationError(f"Payment amount must be positive, got {amount}")

        profile = PAYMENT_METHOD_PROFILES[method]
        if profile.requires_external_reference and not (external_reference or "").strip():
            raise ValidationError(f"{method.value} payments require an external reference")

        transaction_date = transaction_date or date.today()

        log_action(self.logger, "info", f"Processing payment {reference} of {amount} on loan {loan_id}",
                   loan_id=loan_id, actor=actor, action="process_payment",
                   correlation_id=correlation_id)

        def apply() -> Tuple[str, Optional[Tuple[PaymentTransaction, RepaymentSchedule,
                                                  AllocationResult, Optional[ReconciliationTask]]]]:
            existing_id = self._find_payment_id(reference)
            if existing_id:
                return existing_id, None

            schedule = self.schedules.get_schedule_by_loan_id(loan_id)
            if round_money(amount, schedule.currency) != amount:
                raise ValidationError(
                    f"Amount {amount} has more precision than {schedule.currency.code} allows"
                )

            allocation = allocate_payment(schedule.installments, amount, transaction_date)

            now = datetime.now(timezone.utc)
            payment = PaymentTransaction(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan_id,
                client_id=client_id,
                transaction_reference=reference,
                payment_method=method,
                payment_source=source,
                amount=amount,
                principal_portion=allocation.principal_portion,
                interest_portion=allocation.interest_portion,
                unapplied_amount=allocation.unapplied_amount,
                transaction_date=transaction_date,
                received_at=now,
                external_reference=external_reference,
                notes=notes,
                created_by=actor,
                correlation_id=correlation_id,
                installments_affected=allocation.installment_numbers
            )

            task = None
            if allocation.has_overpayment:
                task = ReconciliationTask(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    payment_transaction_id=payment.id,
                    loan_id=loan_id,
                    task_type=ReconciliationTaskType.OVER_PAYMENT,
                    expected_amount=allocation.applied_amount,
                    actual_amount=amount,
                    variance=allocation.unapplied_amount,
                    description=(
                        f"Payment {reference} exceeds the outstanding balance by "
                        f"{allocation.unapplied_amount}"
                    )
                )

            with self.storage.atomic():
                self.schedules.save_loan_state(schedule, allocation.updated_installments)
                self.storage.save_versioned(PAYMENT_REFERENCE_TABLE, reference, {
                    'id': reference,
                    'payment_id': payment.id,
                    'loan_id': loan_id,
                    'created_at': now.isoformat(),
                }, None)
                payment.version = self.storage.save_versioned(
                    PAYMENTS_TABLE, payment.id, payment.to_dict(), None
                )
                if task:
                    task.version = self.storage.save_versioned(
                        RECONCILIATION_TABLE, task.id, task.to_dict(), None
                    )

            return payment.id, (payment, schedule, allocation, task)

        payment_id, outcome = retry_on_conflict(apply, self.max_retries, f"payment {reference} on loan {loan_id}")

        if outcome is None:
            log_action(self.logger, "warning", f"Duplicate payment reference {reference}, returning {payment_id}",
                       loan_id=loan_id, actor=actor, action="process_payment",
                       correlation_id=correlation_id)
            return payment_id

        payment, schedule, allocation, task = outcome
        log_action(self.logger, "info", f"Payment {payment_id} applied to loan {loan_id}",
                   loan_id=loan_id, actor=actor, action="process_payment",
                   correlation_id=correlation_id,
                   extra={
                       "payment_id": payment_id,
                       "principal_portion": str(payment.principal_portion),
                       "interest_portion": str(payment.interest_portion),
                       "unapplied_amount": str(payment.unapplied_amount),
                       "installments": payment.installments_affected,
                   })
        if task:
            log_action(self.logger, "warning", f"Overpayment of {task.variance} on payment {payment_id}",
                       loan_id=loan_id, actor=actor, action="reconciliation_task_created",
                       correlation_id=correlation_id, extra={"task_id": task.id})

        self.outbox.emit_audit(AuditEntry(
            action=AuditAction.PAYMENT_PROCESSED,
            entity_type="payment_transaction",
            entity_id=payment.id,
            actor=actor,
            correlation_id=correlation_id,
            payload={
                "loan_id": loan_id,
                "transaction_reference": reference,
                "payment_method": method.value,
                "payment_source": source.value,
                "amount": amount,
                "principal_portion": payment.principal_portion,
                "interest_portion": payment.interest_portion,
                "unapplied_amount": payment.unapplied_amount,
                "installments_affected": payment.installments_affected,
                "reconciliation_task_id": task.id if task else None,
            }
        ))

        if profile.send_confirmation:
            self.outbox.notify(
                loan_id, client_id, NotificationType.PAYMENT_CONFIRMATION,
                {
                    "payment_id": payment.id,
                    "transaction_reference": reference,
                    "amount": amount,
                    "transaction_date": transaction_date,
                    "outstanding_balance": schedule.outstanding_total,
                },
                correlation_id=correlation_id
            )

        return payment_id

    def reconcile_payment(self, payment_id: str, reconciler: str,
                          comments: Optional[str] = None) -> PaymentTransaction:
        """
        Mark a payment as reconciled

        Reconciling an already reconciled payment changes nothing.

        Raises:
            NotFoundError: If the payment does not exist
        """
        if not reconciler:
            raise ValidationError("Reconciler is required")

        def apply() -> Tuple[PaymentTransaction, bool]:
            payment = self.get_payment(payment_id)
            if payment.is_reconciled:
                return payment, False

            now = datetime.now(timezone.utc)
            payment.is_reconciled = True
            payment.status = PaymentStatus.RECONCILED
            payment.reconciled_by = reconciler
            payment.reconciled_at = now
            payment.updated_at = now
            if comments is not None:
                payment.notes = comments

            with self.storage.atomic():
                payment.version = self.storage.save_versioned(
                    PAYMENTS_TABLE, payment.id, payment.to_dict(), payment.version
                )
            return payment, True

        payment, changed = retry_on_conflict(apply, self.max_retries, f"reconcile payment {payment_id}")
        if not changed:
            self.logger.warning(f"Payment {payment_id} is already reconciled")
            return payment

        log_action(self.logger, "info", f"Payment {payment_id} reconciled",
                   loan_id=payment.loan_id, actor=reconciler, action="reconcile_payment",
                   correlation_id=payment.correlation_id)

        self.outbox.emit_audit(AuditEntry(
            action=AuditAction.PAYMENT_RECONCILED,
            entity_type="payment_transaction",
            entity_id=payment.id,
            actor=reconciler,
            correlation_id=payment.correlation_id,
            payload={
                "loan_id": payment.loan_id,
                "transaction_reference": payment.transaction_reference,
                "comments": comments,
            }
        ))
        return payment

    def get_payment(self, payment_id: str) -> PaymentTransaction:
        """
        Raises:
            NotFoundError: If the payment does not exist
        """
        data = self.storage.load(PAYMENTS_TABLE, payment_id)
        if not data:
            raise NotFoundError(f"Payment {payment_id} not found")
        return PaymentTransaction.from_dict(data)

    def get_payment_by_reference(self, transaction_reference: str) -> Optional[PaymentTransaction]:
        payment_id = self._find_payment_id(transaction_reference)
        return self.get_payment(payment_id) if payment_id else None

    def get_unreconciled_payments(self, page_number: int = 1,
                                  page_size: Optional[int] = None) -> List[PaymentTransaction]:
        """
        Payments not yet reconciled, oldest transaction date first

        Args:
            page_number: 1-based page, only used with page_size
            page_size: Page length; None returns everything
        """
        rows = self.storage.find(PAYMENTS_TABLE, {'is_reconciled': False})
        payments = [PaymentTransaction.from_dict(row) for row in rows]
        payments.sort(key=lambda p: (p.transaction_date, p.received_at))

        if page_size is None:
            return payments
        if page_size < 1 or page_number < 1:
            raise ValidationError("Page number and page size must be positive")
        start = (page_number - 1) * page_size
        return payments[start:start + page_size]

    def get_payment_history(self, loan_id: str) -> List[PaymentTransaction]:
        """All payments on a loan, newest first"""
        rows = self.storage.find(PAYMENTS_TABLE, {'loan_id': loan_id})
        payments = [PaymentTransaction.from_dict(row) for row in rows]
        payments.sort(key=lambda p: (p.transaction_date, p.received_at), reverse=True)
        return payments

    def get_payments_between(self, start: date, end: date) -> List[PaymentTransaction]:
        """
        Payments with a transaction date in the inclusive range, oldest first

        Raises:
            ValidationError: If end is before start
        """
        if end < start:
            raise ValidationError(f"Period end {end} is before its start {start}")
        payments = [PaymentTransaction.from_dict(row) for row in self.storage.load_all(PAYMENTS_TABLE)]
        payments = [p for p in payments if start <= p.transaction_date <= end]
        payments.sort(key=lambda p: (p.transaction_date, p.received_at))
        return payments

    def get_reconciliation_tasks(self, status: Optional[ReconciliationStatus] = None,
                                 loan_id: Optional[str] = None) -> List[ReconciliationTask]:
        """Reconciliation tasks, oldest first, optionally filtered"""
        filters = {}
        if status is not None:
            filters['status'] = status.value
        if loan_id is not None:
            filters['loan_id'] = loan_id
        rows = self.storage.find(RECONCILIATION_TABLE, filters)
        tasks = [ReconciliationTask.from_dict(row) for row in rows]
        tasks.sort(key=lambda t: t.created_at)
        return tasks

    def create_reconciliation_task(
        self,
        payment_id: str,
        task_type: ReconciliationTaskType,
        expected_amount: Union[Decimal, str, int],
        description: str,
        actor: str = "System"
    ) -> ReconciliationTask:
        """
        Open a reconciliation task by hand, e.g. a Mismatch raised by an
        operator after comparing a payment against a bank statement.

        Raises:
            NotFoundError: If the payment does not exist
        """
        payment = self.get_payment(payment_id)
        try:
            expected = to_decimal(expected_amount)
        except ValueError as e:
            raise ValidationError(str(e)) from e

        now = datetime.now(timezone.utc)
        task = ReconciliationTask(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            payment_transaction_id=payment.id,
            loan_id=payment.loan_id,
            task_type=task_type,
            expected_amount=expected,
            actual_amount=payment.amount,
            variance=payment.amount - expected,
            description=description
        )
        with self.storage.atomic():
            task.version = self.storage.save_versioned(RECONCILIATION_TABLE, task.id, task.to_dict(), None)

        log_action(self.logger, "info", f"{task_type.value} task {task.id} opened for payment {payment.id}",
                   loan_id=payment.loan_id, actor=actor, action="reconciliation_task_created",
                   correlation_id=payment.correlation_id)
        return task

    def resolve_reconciliation_task(self, task_id: str, resolver: str) -> ReconciliationTask:
        """
        Close a reconciliation task

        Raises:
            NotFoundError: If the task does not exist
        """
        if not resolver:
            raise ValidationError("Resolver is required")

        def apply() -> Tuple[ReconciliationTask, bool]:
            data = self.storage.load(RECONCILIATION_TABLE, task_id)
            if not data:
                raise NotFoundError(f"Reconciliation task {task_id} not found")
            task = ReconciliationTask.from_dict(data)
            if task.status == ReconciliationStatus.RESOLVED:
                return task, False

            now = datetime.now(timezone.utc)
            task.status = ReconciliationStatus.RESOLVED
            task.resolved_by = resolver
            task.resolved_at = now
            task.updated_at = now
            with self.storage.atomic():
                task.version = self.storage.save_versioned(
                    RECONCILIATION_TABLE, task.id, task.to_dict(), task.version
                )
            return task, True

        task, changed = retry_on_conflict(apply, self.max_retries, f"resolve task {task_id}")
        if not changed:
            return task

        log_action(self.logger, "info", f"Reconciliation task {task_id} resolved",
                   loan_id=task.loan_id, actor=resolver, action="resolve_reconciliation_task")
        self.outbox.emit_audit(AuditEntry(
            action=AuditAction.RECONCILIATION_TASK_RESOLVED,
            entity_type="reconciliation_task",
            entity_id=task.id,
            actor=resolver,
            payload={
                "payment_transaction_id": task.payment_transaction_id,
                "task_type": task.task_type.value,
                "variance": task.variance,
            }
        ))
        return task

    @staticmethod
    def _coerce_enum(enum_type, value, label: str):
        if isinstance(value, enum_type):
            return value
        try:
            return enum_type(value)
        except ValueError:
            allowed = ", ".join(m.value for m in enum_type)
            raise ValidationError(f"Unknown {label} '{value}' (expected one of: {allowed})")

    def _find_payment_id(self, transaction_reference: str) -> Optional[str]:
        claim = self.storage.load(PAYMENT_REFERENCE_TABLE, transaction_reference)
        return claim.get('payment_id') if claim else None
