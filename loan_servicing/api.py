"""
FastAPI REST API Module

Request/response operations for the orchestrator: schedule generation,
payment processing and reconciliation, arrears classification and portfolio
reports. Runs on port 8091 by default.
"""

from dataclasses import asdict
from datetime import date, datetime, timezone
from typing import Optional
from fastapi import FastAPI, HTTPException, Depends, Request, status
import uvicorn

from . import __version__
from .config import get_config
from .currency import Currency
from .engine import ServicingEngine
from .errors import (
    LoanServicingError, ValidationError, NotFoundError,
    ConcurrencyConflictError, PersistenceFailureError
)
from .logging_config import setup_logging
from .models import ReconciliationStatus
from .schemas import (
    ClassifyRequest, GenerateScheduleRequest, ProcessPaymentRequest,
    ReconcilePaymentRequest, history_to_response, payment_to_response,
    schedule_to_response, task_to_response, to_response
)


def http_error(error: Exception) -> HTTPException:
    """Map a servicing error to the HTTP status the orchestrator expects"""
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, ConcurrencyConflictError):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, PersistenceFailureError):
        return HTTPException(status_code=503, detail=str(error))
    if isinstance(error, (ValidationError, ValueError, KeyError)):
        return HTTPException(status_code=400, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))


# Dependency to get the servicing engine
def get_engine(request: Request) -> ServicingEngine:
    return request.app.state.engine


def create_app(engine: Optional[ServicingEngine] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Loan Servicing Engine API",
        description="Amortization, exactly-once payment allocation and arrears classification",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.engine = engine or ServicingEngine()

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "loan_servicing_api",
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    # Schedules
    @app.post("/schedules", status_code=status.HTTP_201_CREATED)
    async def generate_schedule(
        request: GenerateScheduleRequest,
        engine: ServicingEngine = Depends(get_engine)
    ):
        """Generate (or return the existing) repayment schedule for a loan"""
        try:
            currency = Currency[request.currency.upper()] if request.currency else None
            schedule_id = engine.schedules.generate_schedule(
                loan_id=request.loan_id,
                client_id=request.client_id,
                product_code=request.product_code,
                principal=request.principal_amount,
                annual_interest_rate=request.annual_interest_rate,
                term_months=request.term_months,
                first_payment_date=request.payment_date(),
                correlation_id=request.correlation_id,
                actor=request.actor,
                currency=currency
            )
        except (LoanServicingError, ValueError, KeyError) as e:
            raise http_error(e)

        return {"schedule_id": schedule_id, "loan_id": request.loan_id}

    @app.get("/loans/{loan_id}/schedule")
    async def get_schedule(loan_id: str, engine: ServicingEngine = Depends(get_engine)):
        """Get a loan's schedule with installments"""
        try:
            schedule = engine.schedules.get_schedule_by_loan_id(loan_id)
        except LoanServicingError as e:
            raise http_error(e)
        return schedule_to_response(schedule)

    # Payments
    @app.post("/payments", status_code=status.HTTP_201_CREATED)
    async def process_payment(
        request: ProcessPaymentRequest,
        engine: ServicingEngine = Depends(get_engine)
    ):
        """Apply a payment; repeating a transaction reference returns the original payment"""
        try:
            payment_id = engine.payments.process_payment(
                loan_id=request.loan_id,
                client_id=request.client_id,
                transaction_reference=request.transaction_reference,
                payment_method=request.payment_method,
                payment_source=request.payment_source,
                amount=request.amount,
                transaction_date=request.value_date(),
                external_reference=request.external_reference,
                notes=request.notes,
                actor=request.actor,
                correlation_id=request.correlation_id
            )
            payment = engine.payments.get_payment(payment_id)
        except (LoanServicingError, ValueError) as e:
            raise http_error(e)

        return payment_to_response(payment)

    @app.get("/payments/unreconciled")
    async def get_unreconciled_payments(
        page_number: int = 1,
        page_size: Optional[int] = None,
        engine: ServicingEngine = Depends(get_engine)
    ):
        """Payments awaiting reconciliation, oldest first"""
        try:
            payments = engine.payments.get_unreconciled_payments(page_number, page_size)
        except LoanServicingError as e:
            raise http_error(e)
        return {"payments": [payment_to_response(p) for p in payments]}

    @app.post("/payments/{payment_id}/reconcile")
    async def reconcile_payment(
        payment_id: str,
        request: ReconcilePaymentRequest,
        engine: ServicingEngine = Depends(get_engine)
    ):
        """Mark a payment as reconciled"""
        try:
            payment = engine.payments.reconcile_payment(payment_id, request.reconciler, request.comments)
        except LoanServicingError as e:
            raise http_error(e)
        return payment_to_response(payment)

    @app.get("/loans/{loan_id}/payments")
    async def get_payment_history(loan_id: str, engine: ServicingEngine = Depends(get_engine)):
        """Payments on a loan, newest first"""
        payments = engine.payments.get_payment_history(loan_id)
        return {"loan_id": loan_id, "payments": [payment_to_response(p) for p in payments]}

    @app.get("/reconciliation-tasks")
    async def get_reconciliation_tasks(
        status: Optional[str] = None,
        engine: ServicingEngine = Depends(get_engine)
    ):
        """Reconciliation tasks, optionally filtered by status (Pending, Resolved)"""
        try:
            task_status = ReconciliationStatus(status) if status else None
        except ValueError as e:
            raise http_error(e)
        tasks = engine.payments.get_reconciliation_tasks(task_status)
        return {"tasks": [task_to_response(t) for t in tasks]}

    @app.post("/reconciliation-tasks/{task_id}/resolve")
    async def resolve_reconciliation_task(
        task_id: str,
        request: ReconcilePaymentRequest,
        engine: ServicingEngine = Depends(get_engine)
    ):
        """Resolve a reconciliation task"""
        try:
            task = engine.payments.resolve_reconciliation_task(task_id, request.reconciler)
        except LoanServicingError as e:
            raise http_error(e)
        return task_to_response(task)

    # Arrears classification
    @app.post("/loans/{loan_id}/classify")
    async def classify_loan(
        loan_id: str,
        request: Optional[ClassifyRequest] = None,
        engine: ServicingEngine = Depends(get_engine)
    ):
        """Reclassify one loan"""
        request = request or ClassifyRequest()
        try:
            result = engine.arrears.classify_loan(
                loan_id, as_of=request.as_of_date(), triggered_by=request.triggered_by
            )
        except (LoanServicingError, ValueError) as e:
            raise http_error(e)
        return to_response(asdict(result))

    @app.post("/classifications/run")
    async def classify_all_loans(
        request: Optional[ClassifyRequest] = None,
        engine: ServicingEngine = Depends(get_engine)
    ):
        """Reclassify every scheduled loan"""
        request = request or ClassifyRequest()
        try:
            processed = engine.arrears.classify_all_loans(
                as_of=request.as_of_date(), triggered_by=request.triggered_by
            )
        except ValueError as e:
            raise http_error(e)
        return {"loans_processed": processed}

    @app.get("/loans/{loan_id}/classifications")
    async def get_classification_history(loan_id: str, engine: ServicingEngine = Depends(get_engine)):
        """Classification changes for a loan, newest first"""
        return {
            "loan_id": loan_id,
            "current_classification": engine.arrears.get_current_classification(loan_id).value,
            "history": history_to_response(engine.arrears.get_classification_history(loan_id))
        }

    @app.get("/arrears/summary")
    async def get_arrears_summary(engine: ServicingEngine = Depends(get_engine)):
        """Loan count per arrears classification"""
        return {"summary": engine.arrears.get_arrears_summary()}

    # Reports
    @app.get("/reports/portfolio-at-risk")
    async def portfolio_at_risk(as_of: Optional[str] = None, engine: ServicingEngine = Depends(get_engine)):
        """PAR30/60/90"""
        try:
            report = engine.reporter.portfolio_at_risk(ClassifyRequest(as_of=as_of).as_of_date())
        except ValueError as e:
            raise http_error(e)
        return to_response(asdict(report))

    @app.get("/reports/aging")
    async def aging_analysis(as_of: Optional[str] = None, engine: ServicingEngine = Depends(get_engine)):
        """Outstanding balance by days-past-due band"""
        try:
            report = engine.reporter.aging_analysis(ClassifyRequest(as_of=as_of).as_of_date())
        except ValueError as e:
            raise http_error(e)
        return to_response(asdict(report))

    @app.get("/reports/provisioning")
    async def provisioning_report(engine: ServicingEngine = Depends(get_engine)):
        """Required provisions by classification"""
        return to_response(asdict(engine.reporter.provisioning_report()))

    @app.get("/reports/recovery")
    async def recovery_analytics(start: str, end: str, engine: ServicingEngine = Depends(get_engine)):
        """Collections received in a period, by payment method"""
        try:
            report = engine.reporter.recovery_analytics(date.fromisoformat(start), date.fromisoformat(end))
        except (ValidationError, ValueError) as e:
            raise http_error(e)
        return to_response(asdict(report))

    @app.get("/reports/collections-dashboard")
    async def collections_dashboard(as_of: Optional[str] = None, top: int = 10,
                                    engine: ServicingEngine = Depends(get_engine)):
        """Headline collections figures and the most delinquent loans"""
        try:
            if top < 1:
                raise ValidationError(f"top must be positive, got {top}")
            report = engine.reporter.collections_dashboard(ClassifyRequest(as_of=as_of).as_of_date(), top)
        except (ValidationError, ValueError) as e:
            raise http_error(e)
        return to_response(asdict(report))

    return app


# Run server function
def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(config.log_level, config.log_format, config.log_file)
    uvicorn.run(
        create_app(),
        host=host or config.api_host,
        port=port or config.api_port,
        log_level="debug" if debug else "info"
    )
