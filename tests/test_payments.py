"""
Test suite for payment processing

Tests exactly-once payment application, validation, overpayment
reconciliation tasks, reconciliation, optimistic-concurrency retries,
atomicity under store failure and isolation from collaborator failures.
"""

import pytest
import threading
from decimal import Decimal
from datetime import date
from unittest.mock import Mock

from loan_servicing.audit import AuditAction, AuditSink
from loan_servicing.config import ServicingConfig
from loan_servicing.currency import Currency
from loan_servicing.engine import ServicingEngine
from loan_servicing.errors import (
    CollaboratorFailureError, ConcurrencyConflictError, NotFoundError,
    PersistenceFailureError, ValidationError
)
from loan_servicing.models import (
    InstallmentStatus, PaymentMethod, PaymentSource, PaymentStatus,
    ReconciliationStatus, ReconciliationTaskType,
    PAYMENTS_TABLE, PAYMENT_REFERENCE_TABLE, RECONCILIATION_TABLE, SCHEDULES_TABLE
)
from loan_servicing.notifications import LogNotificationDispatcher, NotificationDispatcher, NotificationType
from loan_servicing.storage import InMemoryStorage


class ConflictingStorage(InMemoryStorage):
    """Rejects the next N versioned updates of a table as if another writer won"""

    def __init__(self, table=SCHEDULES_TABLE):
        super().__init__()
        self.table = table
        self.conflicts_left = 0

    def save_versioned(self, table, record_id, data, expected_version):
        if table == self.table and expected_version is not None and self.conflicts_left > 0:
            self.conflicts_left -= 1
            raise ConcurrencyConflictError("injected conflict", table, record_id)
        return super().save_versioned(table, record_id, data, expected_version)


class FailingStorage(InMemoryStorage):
    """Fails every write to one table"""

    def __init__(self):
        super().__init__()
        self.fail_table = None

    def save_versioned(self, table, record_id, data, expected_version):
        if table == self.fail_table:
            raise PersistenceFailureError(f"write to {table} rejected")
        return super().save_versioned(table, record_id, data, expected_version)


@pytest.fixture
def storage():
    return ConflictingStorage()


@pytest.fixture
def notifier():
    return LogNotificationDispatcher()


@pytest.fixture
def engine(storage, notifier):
    engine = ServicingEngine(
        config=ServicingConfig(database_url="memory://", max_concurrency_retries=3),
        storage=storage,
        notifier=notifier
    )
    engine.schedules.generate_schedule(
        loan_id="LOAN001",
        client_id="CLIENT001",
        product_code="SALARY-ADVANCE",
        principal="10000.00",
        annual_interest_rate="0.24",
        term_months=12,
        first_payment_date=date(2024, 2, 15)
    )
    return engine


def pay(engine, amount, reference="TXN001", method=PaymentMethod.CASH, loan_id="LOAN001", **kwargs):
    kwargs.setdefault("transaction_date", date(2024, 2, 15))
    return engine.payments.process_payment(
        loan_id=loan_id,
        client_id="CLIENT001",
        transaction_reference=reference,
        payment_method=method,
        payment_source=PaymentSource.BRANCH,
        amount=amount,
        actor="teller01",
        **kwargs
    )


def total_outstanding(engine, loan_id="LOAN001"):
    return engine.schedules.get_schedule_by_loan_id(loan_id).outstanding_total


class TestProcessPayment:
    """Test payment application"""

    def test_exact_first_installment(self, engine):
        """Test paying installment 1 exactly marks it Paid and leaves 2 untouched"""
        payment_id = pay(engine, "945.60")

        payment = engine.payments.get_payment(payment_id)
        assert payment.status == PaymentStatus.CONFIRMED
        assert not payment.is_reconciled
        assert payment.amount == Decimal('945.60')
        assert payment.interest_portion == Decimal('200.00')
        assert payment.principal_portion == Decimal('745.60')
        assert payment.unapplied_amount == Decimal('0')
        assert payment.installments_affected == [1]
        assert payment.created_by == "teller01"

        installments = engine.schedules.get_installments("LOAN001")
        assert installments[0].status == InstallmentStatus.PAID
        assert installments[0].paid_date == date(2024, 2, 15)
        assert installments[1].status == InstallmentStatus.PENDING
        assert installments[1].total_paid == Decimal('0')
        assert engine.payments.get_reconciliation_tasks() == []

    def test_duplicate_reference_applies_once(self, engine, storage):
        """Test a repeated transaction reference returns the original payment"""
        first = pay(engine, "945.60")
        second = pay(engine, "945.60")

        assert first == second
        assert storage.count(PAYMENTS_TABLE) == 1
        installments = engine.schedules.get_installments("LOAN001")
        assert installments[0].total_paid == Decimal('945.60')
        assert installments[1].total_paid == Decimal('0')
        assert len(engine.audit_sink.get_events_by_action(AuditAction.PAYMENT_PROCESSED)) == 1

    def test_schedule_version_bumped(self, engine):
        """Test every payment bumps the loan's concurrency token"""
        before = engine.schedules.get_schedule_by_loan_id("LOAN001").version
        pay(engine, "100.00")
        assert engine.schedules.get_schedule_by_loan_id("LOAN001").version == before + 1

    def test_pay_off_remaining_balance(self, engine):
        """Test paying all remaining dues settles the schedule with no tasks"""
        pay(engine, "945.60", reference="TXN001")
        pay(engine, total_outstanding(engine), reference="TXN002")

        schedule = engine.schedules.get_schedule_by_loan_id("LOAN001")
        assert schedule.is_fully_paid
        assert schedule.outstanding_principal == Decimal('0')
        assert engine.payments.get_reconciliation_tasks() == []

    def test_overpayment_creates_one_task(self, engine, storage):
        """Test leftover beyond tolerance opens exactly one OverPayment task"""
        outstanding = total_outstanding(engine)
        payment_id = pay(engine, outstanding + Decimal('100.00'))

        tasks = engine.payments.get_reconciliation_tasks()
        assert len(tasks) == 1
        task = tasks[0]
        assert task.task_type == ReconciliationTaskType.OVER_PAYMENT
        assert task.status == ReconciliationStatus.PENDING
        assert task.payment_transaction_id == payment_id
        assert task.variance == Decimal('100.00')
        assert task.expected_amount == outstanding
        assert task.actual_amount == outstanding + Decimal('100.00')
        assert engine.payments.get_payment(payment_id).unapplied_amount == Decimal('100.00')
        assert engine.schedules.get_schedule_by_loan_id("LOAN001").is_fully_paid

        pay(engine, outstanding + Decimal('100.00'))
        assert storage.count(RECONCILIATION_TABLE) == 1

    def test_underpayment_creates_no_task(self, engine):
        """Test a short payment leaves the installment partially paid"""
        pay(engine, "500.00")

        assert engine.schedules.get_installments("LOAN001")[0].status == InstallmentStatus.PARTIALLY_PAID
        assert engine.payments.get_reconciliation_tasks() == []

    def test_method_as_string(self, engine):
        """Test payment method and source accept their stored values"""
        payment_id = engine.payments.process_payment(
            loan_id="LOAN001", client_id="CLIENT001", transaction_reference="TXN009",
            payment_method="MobileMoney", payment_source="MobileApp", amount="50.00",
            external_reference="MM-778812"
        )
        payment = engine.payments.get_payment(payment_id)
        assert payment.payment_method == PaymentMethod.MOBILE_MONEY
        assert payment.payment_source == PaymentSource.MOBILE_APP
        assert payment.external_reference == "MM-778812"

    def test_unknown_loan(self, engine):
        """Test paying a loan without a schedule"""
        with pytest.raises(NotFoundError):
            pay(engine, "100.00", loan_id="MISSING")

    def test_whole_unit_currency_loan(self, engine):
        """Test a UGX loan can be settled installment by installment in whole shillings"""
        engine.schedules.generate_schedule(
            loan_id="LOAN-UGX",
            client_id="CLIENT001",
            product_code="SALARY-ADVANCE",
            principal="1000000",
            annual_interest_rate="0.24",
            term_months=12,
            first_payment_date=date(2024, 2, 15),
            currency=Currency.UGX
        )
        due = engine.schedules.get_installments("LOAN-UGX")[0].total_due
        assert due == Decimal('94560')

        with pytest.raises(ValidationError):
            pay(engine, "94559.60", reference="UGX000", loan_id="LOAN-UGX")

        payment_id = pay(engine, str(due), reference="UGX001", loan_id="LOAN-UGX")

        assert engine.payments.get_payment(payment_id).installments_affected == [1]
        installments = engine.schedules.get_installments("LOAN-UGX")
        assert installments[0].status == InstallmentStatus.PAID
        assert installments[1].status == InstallmentStatus.PENDING


class TestPaymentValidation:
    """Test request validation before persistence"""

    @pytest.mark.parametrize("amount", ["0", "-5.00", "abc", "10.005"])
    def test_invalid_amounts(self, engine, storage, amount):
        """Test bad amounts are rejected and nothing is written"""
        with pytest.raises(ValidationError):
            pay(engine, amount)
        assert storage.count(PAYMENTS_TABLE) == 0
        assert storage.count(PAYMENT_REFERENCE_TABLE) == 0

    def test_reference_required(self, engine):
        with pytest.raises(ValidationError):
            pay(engine, "100.00", reference="  ")

    def test_unknown_method(self, engine):
        with pytest.raises(ValidationError, match="payment method"):
            pay(engine, "100.00", method="Bitcoin")

    def test_external_reference_required_by_profile(self, engine):
        """Test methods that settle against an external reference require one"""
        with pytest.raises(ValidationError, match="external reference"):
            pay(engine, "100.00", method=PaymentMethod.BANK_TRANSFER)

        payment_id = pay(engine, "100.00", method=PaymentMethod.BANK_TRANSFER, external_reference="BNK-1")
        assert engine.payments.get_payment(payment_id).payment_method == PaymentMethod.BANK_TRANSFER


class TestNotifications:
    """Test payment confirmations"""

    def test_cash_payment_sends_confirmation(self, engine, notifier):
        payment_id = pay(engine, "945.60")

        assert len(notifier.sent) == 1
        loan_id, client_id, notification_type, payload = notifier.sent[0]
        assert (loan_id, client_id) == ("LOAN001", "CLIENT001")
        assert notification_type == NotificationType.PAYMENT_CONFIRMATION
        assert payload["payment_id"] == payment_id

    def test_payroll_deduction_sends_none(self, engine, notifier):
        pay(engine, "945.60", method=PaymentMethod.PAYROLL_DEDUCTION)
        assert notifier.sent == []


class TestReconciliation:
    """Test reconciliation of payments and tasks"""

    def test_reconcile_payment(self, engine):
        """Test reconciling sets the reconciliation fields"""
        payment_id = pay(engine, "100.00")

        payment = engine.payments.reconcile_payment(payment_id, "finance.clerk", "Matched to bank statement")

        assert payment.is_reconciled
        assert payment.status == PaymentStatus.RECONCILED
        assert payment.reconciled_by == "finance.clerk"
        assert payment.reconciled_at is not None
        assert payment.notes == "Matched to bank statement"
        assert engine.payments.get_payment(payment_id).is_reconciled

        events = engine.audit_sink.get_events_by_action(AuditAction.PAYMENT_RECONCILED)
        assert [e.entity_id for e in events] == [payment_id]

    def test_reconcile_twice_is_noop(self, engine):
        """Test a second reconciliation changes nothing"""
        payment_id = pay(engine, "100.00")
        engine.payments.reconcile_payment(payment_id, "finance.clerk")
        version = engine.payments.get_payment(payment_id).version

        payment = engine.payments.reconcile_payment(payment_id, "someone.else")

        assert payment.reconciled_by == "finance.clerk"
        assert payment.version == version
        assert len(engine.audit_sink.get_events_by_action(AuditAction.PAYMENT_RECONCILED)) == 1

    def test_reconcile_unknown_payment(self, engine):
        with pytest.raises(NotFoundError):
            engine.payments.reconcile_payment("MISSING", "finance.clerk")

    def test_unreconciled_payments(self, engine):
        """Test unreconciled payments are listed oldest first and paged"""
        late = pay(engine, "10.00", reference="TXN-C", transaction_date=date(2024, 3, 1))
        early = pay(engine, "10.00", reference="TXN-A", transaction_date=date(2024, 2, 1))
        middle = pay(engine, "10.00", reference="TXN-B", transaction_date=date(2024, 2, 20))
        engine.payments.reconcile_payment(middle, "finance.clerk")

        assert [p.id for p in engine.payments.get_unreconciled_payments()] == [early, late]
        assert [p.id for p in engine.payments.get_unreconciled_payments(page_number=2, page_size=1)] == [late]
        assert engine.payments.get_unreconciled_payments(page_number=3, page_size=1) == []

        with pytest.raises(ValidationError):
            engine.payments.get_unreconciled_payments(page_number=1, page_size=0)

    def test_payment_history_newest_first(self, engine):
        first = pay(engine, "10.00", reference="TXN-A", transaction_date=date(2024, 2, 1))
        second = pay(engine, "10.00", reference="TXN-B", transaction_date=date(2024, 2, 20))

        assert [p.id for p in engine.payments.get_payment_history("LOAN001")] == [second, first]
        assert engine.payments.get_payment_history("OTHER") == []

    def test_payment_by_reference(self, engine):
        payment_id = pay(engine, "10.00", reference="TXN-A")
        assert engine.payments.get_payment_by_reference("TXN-A").id == payment_id
        assert engine.payments.get_payment_by_reference("TXN-Z") is None

    def test_resolve_task(self, engine):
        """Test resolving an overpayment task"""
        pay(engine, total_outstanding(engine) + Decimal('50.00'))
        task = engine.payments.get_reconciliation_tasks()[0]

        resolved = engine.payments.resolve_reconciliation_task(task.id, "finance.supervisor")

        assert resolved.status == ReconciliationStatus.RESOLVED
        assert resolved.resolved_by == "finance.supervisor"
        assert engine.payments.get_reconciliation_tasks(ReconciliationStatus.PENDING) == []
        assert len(engine.payments.get_reconciliation_tasks(ReconciliationStatus.RESOLVED)) == 1
        assert len(engine.audit_sink.get_events_by_action(AuditAction.RECONCILIATION_TASK_RESOLVED)) == 1

        again = engine.payments.resolve_reconciliation_task(task.id, "someone.else")
        assert again.resolved_by == "finance.supervisor"

    def test_resolve_unknown_task(self, engine):
        with pytest.raises(NotFoundError):
            engine.payments.resolve_reconciliation_task("MISSING", "finance.supervisor")

    def test_manual_mismatch_task(self, engine):
        """Test an operator can open a Mismatch task against a payment"""
        payment_id = pay(engine, "100.00")

        task = engine.payments.create_reconciliation_task(
            payment_id, ReconciliationTaskType.MISMATCH, "120.00", "Bank statement shows 120.00"
        )

        assert task.task_type == ReconciliationTaskType.MISMATCH
        assert task.loan_id == "LOAN001"
        assert task.actual_amount == Decimal('100.00')
        assert task.variance == Decimal('-20.00')
        assert engine.payments.get_reconciliation_tasks(loan_id="LOAN001")[0].id == task.id


class TestConcurrency:
    """Test optimistic concurrency on the loan"""

    def test_retry_after_conflict(self, engine, storage):
        """Test a conflicting write is retried and the payment applied once"""
        storage.conflicts_left = 2

        payment_id = pay(engine, "945.60")

        assert storage.conflicts_left == 0
        assert storage.count(PAYMENTS_TABLE) == 1
        assert engine.payments.get_payment(payment_id).installments_affected == [1]
        assert engine.schedules.get_installments("LOAN001")[0].total_paid == Decimal('945.60')

    def test_conflict_exhaustion(self, engine, storage):
        """Test a loan contended beyond the retry budget surfaces a conflict"""
        storage.conflicts_left = 100

        with pytest.raises(ConcurrencyConflictError):
            pay(engine, "945.60")

        assert storage.conflicts_left == 100 - 4
        assert storage.count(PAYMENTS_TABLE) == 0
        assert storage.count(PAYMENT_REFERENCE_TABLE) == 0
        assert all(i.total_paid == Decimal('0') for i in engine.schedules.get_installments("LOAN001"))

    def test_concurrent_payments_on_one_loan(self, storage, notifier):
        """Test parallel payments on the same loan all land exactly once"""
        engine = ServicingEngine(
            config=ServicingConfig(database_url="memory://", max_concurrency_retries=50),
            storage=storage,
            notifier=notifier
        )
        engine.schedules.generate_schedule(
            loan_id="LOAN001", client_id="CLIENT001", product_code="SALARY-ADVANCE",
            principal="10000.00", annual_interest_rate="0.24", term_months=12,
            first_payment_date=date(2024, 2, 15)
        )

        errors = []

        def worker(n):
            try:
                pay(engine, "100.00", reference=f"TXN{n:03d}")
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        schedule = engine.schedules.get_schedule_by_loan_id("LOAN001")
        paid = sum((i.total_paid for i in schedule.installments), Decimal('0'))
        assert paid == Decimal('800.00')
        assert storage.count(PAYMENTS_TABLE) == 8


class TestAtomicity:
    """Test all-or-nothing payment writes"""

    def test_store_failure_leaves_installments_unchanged(self, notifier):
        """Test a failed payment write rolls back installment updates"""
        storage = FailingStorage()
        engine = ServicingEngine(
            config=ServicingConfig(database_url="memory://"),
            storage=storage,
            notifier=notifier
        )
        engine.schedules.generate_schedule(
            loan_id="LOAN001", client_id="CLIENT001", product_code="SALARY-ADVANCE",
            principal="10000.00", annual_interest_rate="0.24", term_months=12,
            first_payment_date=date(2024, 2, 15)
        )
        version = engine.schedules.get_schedule_by_loan_id("LOAN001").version
        storage.fail_table = PAYMENTS_TABLE

        with pytest.raises(PersistenceFailureError):
            pay(engine, "945.60")

        schedule = engine.schedules.get_schedule_by_loan_id("LOAN001")
        assert schedule.version == version
        assert all(i.total_paid == Decimal('0') for i in schedule.installments)
        assert all(i.status == InstallmentStatus.PENDING for i in schedule.installments)
        assert storage.count(PAYMENT_REFERENCE_TABLE) == 0
        assert engine.audit_sink.get_events_by_action(AuditAction.PAYMENT_PROCESSED) == []

        # Safe to retry once the store recovers
        storage.fail_table = None
        payment_id = pay(engine, "945.60")
        assert engine.payments.get_payment(payment_id).installments_affected == [1]

    def test_store_failure_on_task_rolls_back_payment(self, notifier):
        """Test a failed reconciliation task write undoes the payment too"""
        storage = FailingStorage()
        engine = ServicingEngine(
            config=ServicingConfig(database_url="memory://"),
            storage=storage,
            notifier=notifier
        )
        engine.schedules.generate_schedule(
            loan_id="LOAN001", client_id="CLIENT001", product_code="SALARY-ADVANCE",
            principal="1000.00", annual_interest_rate="0", term_months=2,
            first_payment_date=date(2024, 2, 15)
        )
        storage.fail_table = RECONCILIATION_TABLE

        with pytest.raises(PersistenceFailureError):
            pay(engine, "1500.00")

        assert storage.count(PAYMENTS_TABLE) == 0
        assert all(i.total_paid == Decimal('0') for i in engine.schedules.get_installments("LOAN001"))


class TestCollaboratorFailures:
    """Test audit and notification failures never affect payments"""

    def test_failing_collaborators(self, storage):
        """Test a payment succeeds while audit and notification both fail"""
        audit_sink = Mock(spec=AuditSink)
        audit_sink.record.side_effect = CollaboratorFailureError("audit sink down")
        notifier = Mock(spec=NotificationDispatcher)
        notifier.send_notification.side_effect = CollaboratorFailureError("sms gateway down")

        engine = ServicingEngine(
            config=ServicingConfig(database_url="memory://"),
            storage=storage,
            audit_sink=audit_sink,
            notifier=notifier
        )
        engine.schedules.generate_schedule(
            loan_id="LOAN001", client_id="CLIENT001", product_code="SALARY-ADVANCE",
            principal="10000.00", annual_interest_rate="0.24", term_months=12,
            first_payment_date=date(2024, 2, 15)
        )

        payment_id = pay(engine, "945.60")

        assert engine.payments.get_payment(payment_id).principal_portion == Decimal('745.60')
        assert engine.schedules.get_installments("LOAN001")[0].status == InstallmentStatus.PAID
        assert notifier.send_notification.call_count == 1

        channels = [f.channel for f in engine.outbox.failed_deliveries]
        # schedule audit + payment audit + confirmation
        assert channels == ["audit", "audit", "notification"]

        audit_sink.record.side_effect = None
        notifier.send_notification.side_effect = None
        assert engine.outbox.retry_failed() == 3
        assert engine.outbox.failed_deliveries == []


class TestEndToEnd:
    """Test the full servicing flow of 10000 at 24% over 12 months"""

    def test_generate_pay_installment_then_settle(self, engine):
        installments = engine.schedules.get_installments("LOAN001")
        pay(engine, installments[0].total_due, reference="TXN001")

        installments = engine.schedules.get_installments("LOAN001")
        assert installments[0].status == InstallmentStatus.PAID
        assert installments[1].status == InstallmentStatus.PENDING
        assert installments[1].total_paid == Decimal('0')

        remaining = sum((i.total_due for i in installments[1:]), Decimal('0'))
        pay(engine, remaining, reference="TXN002")

        schedule = engine.schedules.get_schedule_by_loan_id("LOAN001")
        assert all(i.status == InstallmentStatus.PAID for i in schedule.installments)
        assert engine.payments.get_reconciliation_tasks() == []

    def test_generate_pay_installment_then_overpay(self, engine):
        installments = engine.schedules.get_installments("LOAN001")
        pay(engine, installments[0].total_due, reference="TXN001")

        remaining = sum((i.total_due for i in installments[1:]), Decimal('0'))
        pay(engine, remaining + Decimal('100'), reference="TXN002")

        tasks = engine.payments.get_reconciliation_tasks()
        assert len(tasks) == 1
        assert tasks[0].task_type == ReconciliationTaskType.OVER_PAYMENT
        assert abs(tasks[0].variance - Decimal('100')) < Decimal('0.01')
