"""
Repayment Schedule Module

Generates and persists one amortization schedule per loan. Generation is
idempotent by loan id: the loan index table holds an insert-only claim, so a
repeated or concurrent request for the same loan returns the schedule that
was stored first.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from typing import Dict, List, Optional, Sequence, Union
import logging
import uuid

from .amortization import LoanTerms, calculate_installments
from .audit import AuditAction, AuditEntry
from .currency import Currency, to_decimal
from .errors import NotFoundError, ValidationError
from .logging_config import log_action
from .models import (
    Installment, RepaymentFrequency, RepaymentSchedule,
    SCHEDULES_TABLE, SCHEDULE_INDEX_TABLE, INSTALLMENTS_TABLE
)
from .outbox import CollaboratorOutbox
from .storage import StorageInterface, retry_on_conflict


class RepaymentScheduleService:
    """
    Creates repayment schedules and owns reads/writes of a loan's installments
    """

    def __init__(
        self,
        storage: StorageInterface,
        outbox: CollaboratorOutbox,
        max_retries: int = 3,
        default_currency: Currency = Currency.ZMW
    ):
        self.storage = storage
        self.outbox = outbox
        self.max_retries = max_retries
        self.default_currency = default_currency
        self.logger = logging.getLogger("loan_servicing.schedules")

    def generate_schedule(
        self,
        loan_id: str,
        client_id: str,
        product_code: str,
        principal: Union[Decimal, str, int],
        annual_interest_rate: Union[Decimal, str, int],
        term_months: int,
        first_payment_date: date,
        correlation_id: Optional[str] = None,
        actor: str = "System",
        currency: Optional[Currency] = None
    ) -> str:
        """
        Generate the repayment schedule for a loan

        Args:
            loan_id: Loan the schedule belongs to (idempotency key)
            client_id: Borrower
            product_code: Loan product
            principal: Approved principal
            annual_interest_rate: Annual rate as a fraction (0.24 = 24%)
            term_months: Number of monthly installments
            first_payment_date: Due date of installment 1
            correlation_id: Request correlation identifier
            actor: User or component generating the schedule
            currency: Loan currency (the service default when omitted)

        Returns:
            Schedule ID (the existing one if the loan already has a schedule)

        Raises:
            ValidationError: If the terms cannot be amortized
        """
        if not loan_id:
            raise ValidationError("Loan ID is required")
        correlation_id = correlation_id or str(uuid.uuid4())
        currency = currency or self.default_currency

        existing_id = self._find_schedule_id(loan_id)
        if existing_id:
            log_action(self.logger, "warning", f"Schedule already exists for loan {loan_id}",
                       loan_id=loan_id, actor=actor, action="generate_schedule",
                       correlation_id=correlation_id, extra={"schedule_id": existing_id})
            return existing_id

        try:
            terms = LoanTerms(
                principal_amount=to_decimal(principal),
                annual_interest_rate=to_decimal(annual_interest_rate),
                term_months=term_months,
                first_payment_date=first_payment_date,
                frequency=RepaymentFrequency.MONTHLY,
                currency=currency
            )
        except ValueError as e:
            raise ValidationError(str(e)) from e

        rows = calculate_installments(terms)

        now = datetime.now(timezone.utc)
        schedule = RepaymentSchedule(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            client_id=client_id,
            product_code=product_code,
            principal_amount=terms.principal_amount,
            annual_interest_rate=terms.annual_interest_rate,
            term_months=terms.term_months,
            frequency=terms.frequency,
            first_payment_date=terms.first_payment_date,
            maturity_date=terms.maturity_date,
            generated_at=now,
            generated_by=actor,
            correlation_id=correlation_id,
            currency=currency
        )
        schedule.installments = [
            Installment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                schedule_id=schedule.id,
                loan_id=loan_id,
                installment_number=row.installment_number,
                due_date=row.due_date,
                principal_due=row.principal_due,
                interest_due=row.interest_due,
                total_due=row.total_due,
                principal_balance=row.principal_balance
            )
            for row in rows
        ]

        def persist() -> Optional[str]:
            winner = self._find_schedule_id(loan_id)
            if winner:
                return winner

            with self.storage.atomic():
                self.storage.save_versioned(SCHEDULE_INDEX_TABLE, loan_id, {
                    'id': loan_id,
                    'loan_id': loan_id,
                    'schedule_id': schedule.id,
                    'created_at': now.isoformat(),
                }, None)
                schedule.version = self.storage.save_versioned(
                    SCHEDULES_TABLE, schedule.id, schedule.to_dict(), None
                )
                for installment in schedule.installments:
                    installment.version = self.storage.save_versioned(
                        INSTALLMENTS_TABLE, installment.id, installment.to_dict(), None
                    )
            return None

        winner = retry_on_conflict(persist, self.max_retries, f"generate schedule for loan {loan_id}")
        if winner:
            log_action(self.logger, "warning", f"Concurrent schedule generation for loan {loan_id} lost to {winner}",
                       loan_id=loan_id, actor=actor, action="generate_schedule",
                       correlation_id=correlation_id)
            return winner

        log_action(self.logger, "info", f"Generated {len(rows)} installment schedule for loan {loan_id}",
                   loan_id=loan_id, actor=actor, action="generate_schedule",
                   correlation_id=correlation_id,
                   extra={"schedule_id": schedule.id, "principal": str(terms.principal_amount)})

        self.outbox.emit_audit(AuditEntry(
            action=AuditAction.REPAYMENT_SCHEDULE_GENERATED,
            entity_type="repayment_schedule",
            entity_id=schedule.id,
            actor=actor,
            correlation_id=correlation_id,
            payload={
                "loan_id": loan_id,
                "client_id": client_id,
                "product_code": product_code,
                "principal_amount": terms.principal_amount,
                "annual_interest_rate": terms.annual_interest_rate,
                "term_months": terms.term_months,
                "first_payment_date": terms.first_payment_date,
                "maturity_date": schedule.maturity_date,
                "installment_count": len(schedule.installments),
            }
        ))

        return schedule.id

    def get_schedule_by_loan_id(self, loan_id: str) -> RepaymentSchedule:
        """
        Load a loan's schedule with its installments in installment order

        Raises:
            NotFoundError: If the loan has no schedule
        """
        schedule_id = self._find_schedule_id(loan_id)
        data = self.storage.load(SCHEDULES_TABLE, schedule_id) if schedule_id else None
        if not data:
            raise NotFoundError(f"No repayment schedule for loan {loan_id}")

        schedule = RepaymentSchedule.from_dict(data)
        schedule.installments = self._load_installments(schedule.id)
        return schedule

    def get_installments(self, loan_id: str) -> List[Installment]:
        """Installments of a loan's schedule, ordered by installment number"""
        return self.get_schedule_by_loan_id(loan_id).installments

    def list_schedules(self) -> List[RepaymentSchedule]:
        """All schedules (without installments), oldest first"""
        schedules = [RepaymentSchedule.from_dict(row) for row in self.storage.load_all(SCHEDULES_TABLE)]
        schedules.sort(key=lambda s: s.generated_at)
        return schedules

    def list_loan_ids(self) -> List[str]:
        """Every loan that has a schedule"""
        return [s.loan_id for s in self.list_schedules()]

    def save_loan_state(self, schedule: RepaymentSchedule,
                        installments: Sequence[Installment]) -> None:
        """
        Write changed installments and bump the schedule version.

        Must run inside ``storage.atomic()``. The schedule write is a
        compare-and-set on the version the caller loaded, so any other
        operation that touched the same loan in between causes a
        ConcurrencyConflictError.
        """
        now = datetime.now(timezone.utc)
        schedule.updated_at = now
        schedule.version = self.storage.save_versioned(
            SCHEDULES_TABLE, schedule.id, schedule.to_dict(), schedule.version
        )

        by_id: Dict[str, Installment] = {i.id: i for i in schedule.installments}
        for installment in installments:
            installment.updated_at = now
            installment.version = self.storage.save_versioned(
                INSTALLMENTS_TABLE, installment.id, installment.to_dict(), installment.version
            )
            by_id[installment.id] = installment

        schedule.installments = sorted(by_id.values(), key=lambda i: i.installment_number)

    def _find_schedule_id(self, loan_id: str) -> Optional[str]:
        claim = self.storage.load(SCHEDULE_INDEX_TABLE, loan_id)
        return claim.get('schedule_id') if claim else None

    def _load_installments(self, schedule_id: str) -> List[Installment]:
        rows = self.storage.find(INSTALLMENTS_TABLE, {'schedule_id': schedule_id})
        installments = [Installment.from_dict(row) for row in rows]
        installments.sort(key=lambda i: i.installment_number)
        return installments
