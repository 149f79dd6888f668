"""
Portfolio Reporting Module

Read-only portfolio views over the servicing ledger: portfolio at risk,
aging analysis, provisioning by arrears classification, recovery analytics
over a period and the collections dashboard.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .arrears import ArrearsClassificationService, RULES_BY_CLASSIFICATION, calculate_days_past_due, calculate_provision
from .currency import ZERO, round_cents
from .models import ArrearsClassification, RepaymentSchedule
from .payments import PaymentProcessingService
from .schedules import RepaymentScheduleService


HUNDRED = Decimal('100')

AGING_BUCKETS: Tuple[Tuple[str, int, Optional[int]], ...] = (
    ("Current", 0, 0),
    ("1-30 Days", 1, 30),
    ("31-60 Days", 31, 60),
    ("61-90 Days", 61, 90),
    ("91-180 Days", 91, 180),
    ("181-365 Days", 181, 365),
    ("365+ Days", 366, None),
)


def _percentage(part: Decimal, whole: Decimal) -> Decimal:
    if whole <= ZERO:
        return ZERO
    return round_cents(part / whole * HUNDRED)


@dataclass
class ReportResult:
    """Result of a report execution"""
    report_id: str
    generated_at: datetime
    as_of: date
    data: List[Dict[str, Any]] = field(default_factory=list)
    totals: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.metadata:
            self.metadata = {'row_count': len(self.data)}


class PortfolioReporter:
    """
    Portfolio reports for collections and finance
    """

    def __init__(
        self,
        schedule_service: RepaymentScheduleService,
        arrears_service: ArrearsClassificationService,
        payment_service: PaymentProcessingService
    ):
        self.schedules = schedule_service
        self.arrears = arrears_service
        self.payments = payment_service

    def _loaded_schedules(self) -> List[RepaymentSchedule]:
        return [self.schedules.get_schedule_by_loan_id(s.loan_id) for s in self.schedules.list_schedules()]

    def portfolio_at_risk(self, as_of: Optional[date] = None) -> ReportResult:
        """
        PAR30/60/90: outstanding balance of loans whose oldest unpaid
        installment is at least 30/60/90 days late, and its share of the book
        """
        as_of = as_of or date.today()
        total = ZERO
        par = {30: ZERO, 60: ZERO, 90: ZERO}
        loans_in_arrears = 0
        data = []

        for schedule in self._loaded_schedules():
            days_past_due = calculate_days_past_due(schedule.installments, as_of)
            balance = schedule.outstanding_total
            total += balance
            if days_past_due > 0:
                loans_in_arrears += 1
            for threshold in par:
                if days_past_due >= threshold:
                    par[threshold] += balance
            data.append({
                'loan_id': schedule.loan_id,
                'days_past_due': days_past_due,
                'outstanding_balance': balance,
            })

        totals = {
            'total_portfolio_balance': total,
            'total_loans': len(data),
            'loans_in_arrears': loans_in_arrears,
        }
        for threshold, amount in par.items():
            totals[f'par{threshold}_amount'] = amount
            totals[f'par{threshold}_rate'] = _percentage(amount, total)

        return ReportResult(
            report_id="portfolio_at_risk",
            generated_at=datetime.now(timezone.utc),
            as_of=as_of,
            data=data,
            totals=totals
        )

    def aging_analysis(self, as_of: Optional[date] = None) -> ReportResult:
        """Loan count and outstanding balance per days-past-due band"""
        as_of = as_of or date.today()
        buckets = {name: {'bucket': name, 'min_days': low, 'max_days': high,
                          'loan_count': 0, 'outstanding_balance': ZERO}
                   for name, low, high in AGING_BUCKETS}
        total = ZERO

        for schedule in self._loaded_schedules():
            days_past_due = calculate_days_past_due(schedule.installments, as_of)
            balance = schedule.outstanding_total
            total += balance
            for name, low, high in AGING_BUCKETS:
                if days_past_due >= low and (high is None or days_past_due <= high):
                    buckets[name]['loan_count'] += 1
                    buckets[name]['outstanding_balance'] += balance
                    break

        data = list(buckets.values())
        for row in data:
            row['percentage_of_total'] = _percentage(row['outstanding_balance'], total)

        return ReportResult(
            report_id="aging_analysis",
            generated_at=datetime.now(timezone.utc),
            as_of=as_of,
            data=data,
            totals={
                'total_outstanding': total,
                'total_loans': sum(row['loan_count'] for row in data),
            }
        )

    def provisioning_report(self) -> ReportResult:
        """
        Required provisions per arrears classification

        Uses each loan's latest recorded classification (Current if it has
        never been reclassified) and its outstanding principal.
        """
        rows = {
            c: {'classification': c.value, 'loan_count': 0, 'outstanding_principal': ZERO,
                'provision_rate': RULES_BY_CLASSIFICATION[c].provision_rate, 'provision_amount': ZERO}
            for c in ArrearsClassification
        }

        for schedule in self._loaded_schedules():
            classification = self.arrears.get_current_classification(schedule.loan_id)
            outstanding = max(schedule.outstanding_principal, ZERO)
            row = rows[classification]
            row['loan_count'] += 1
            row['outstanding_principal'] += outstanding
            row['provision_amount'] += calculate_provision(
                outstanding, RULES_BY_CLASSIFICATION[classification], schedule.currency
            )

        data = list(rows.values())
        total_outstanding = sum((r['outstanding_principal'] for r in data), ZERO)
        total_provision = sum((r['provision_amount'] for r in data), ZERO)

        return ReportResult(
            report_id="provisioning",
            generated_at=datetime.now(timezone.utc),
            as_of=date.today(),
            data=data,
            totals={
                'total_outstanding': total_outstanding,
                'total_provision_required': total_provision,
                'provision_coverage_ratio': _percentage(total_provision, total_outstanding),
            }
        )

    def recovery_analytics(self, start: date, end: date) -> ReportResult:
        """
        Collections received between two transaction dates (inclusive)

        Rows break the total down by payment method, largest first; totals
        split it into principal, interest and unapplied money.

        Raises:
            ValidationError: If end is before start
        """
        payments = self.payments.get_payments_between(start, end)

        total = sum((p.amount for p in payments), ZERO)
        by_method: Dict[str, Dict[str, Any]] = {}
        for payment in payments:
            row = by_method.setdefault(payment.payment_method.value, {
                'payment_method': payment.payment_method.value,
                'payment_count': 0,
                'total_amount': ZERO,
            })
            row['payment_count'] += 1
            row['total_amount'] += payment.amount

        data = sorted(by_method.values(), key=lambda r: (-r['total_amount'], r['payment_method']))
        for row in data:
            row['percentage_of_total'] = _percentage(row['total_amount'], total)

        return ReportResult(
            report_id="recovery_analytics",
            generated_at=datetime.now(timezone.utc),
            as_of=end,
            data=data,
            totals={
                'start_date': start,
                'end_date': end,
                'total_collected': total,
                'principal_collected': sum((p.principal_portion for p in payments), ZERO),
                'interest_collected': sum((p.interest_portion for p in payments), ZERO),
                'unapplied_collected': sum((p.unapplied_amount for p in payments), ZERO),
                'payments_received': len(payments),
                'average_payment_size': round_cents(total / len(payments)) if payments else ZERO,
            }
        )

    def collections_dashboard(self, as_of: Optional[date] = None, top: int = 10) -> ReportResult:
        """Headline collections figures with the most delinquent loans as rows"""
        as_of = as_of or date.today()
        total = ZERO
        in_arrears = ZERO
        par30 = ZERO
        active_loans = 0
        delinquent = []

        for schedule in self._loaded_schedules():
            days_past_due = calculate_days_past_due(schedule.installments, as_of)
            balance = schedule.outstanding_total
            total += balance
            if not schedule.is_fully_paid:
                active_loans += 1
            if days_past_due >= 30:
                par30 += balance
            if days_past_due > 0:
                in_arrears += balance
                delinquent.append({
                    'loan_id': schedule.loan_id,
                    'client_id': schedule.client_id,
                    'outstanding_balance': balance,
                    'days_past_due': days_past_due,
                })

        delinquent.sort(key=lambda r: (-r['days_past_due'], -r['outstanding_balance'], r['loan_id']))
        data = delinquent[:top]
        for row in data:
            row['classification'] = self.arrears.get_current_classification(row['loan_id']).value

        month_start = as_of.replace(day=1)
        collected = sum((p.amount for p in self.payments.get_payments_between(month_start, as_of)), ZERO)

        return ReportResult(
            report_id="collections_dashboard",
            generated_at=datetime.now(timezone.utc),
            as_of=as_of,
            data=data,
            totals={
                'total_loans': len(self.schedules.list_loan_ids()),
                'active_loans': active_loans,
                'total_outstanding': total,
                'total_in_arrears': in_arrears,
                'arrears_rate': _percentage(in_arrears, total),
                'par30_rate': _percentage(par30, total),
                'collections_this_month': collected,
                'provision_coverage_ratio': self.provisioning_report().totals['provision_coverage_ratio'],
                'loans_by_classification': self.arrears.get_arrears_summary(),
            }
        )
