import logging
from uuid import UUID

from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware

from .attribution import AttributionResolver
from .config import settings
from .credits import CreditAccountant
from .errors import (
    EntityNotFoundError,
    InvalidStateTransitionError,
    NotFoundError,
    ReferralExpiredError,
    TransientStoreError,
)
from .models import (
    AttributionReport,
    CommissionLedgerEntry,
    CreditBalance,
    CustomerCredit,
    LedgerHistoryResponse,
    OrderPaidResult,
    PayableSummary,
    RedeemRequest,
    RedemptionResult,
    ReconciliationReport,
    ReferralRecord,
)
from .orders import OrderCommissionService
from .poster import CommissionPoster
from .reconciliation import ReconciliationJob
from .referrals import ReferralService
from .storage import InMemoryStorage

logging.basicConfig(level=settings.LOG_LEVEL)

app = FastAPI(
    title="Referral Commission API",
    description="Multi-tier referral attribution, commission ledger and customer credit",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

storage = InMemoryStorage()
resolver = AttributionResolver(storage)
referral_service = ReferralService(storage, resolver)
poster = CommissionPoster(storage)
credit_accountant = CreditAccountant(storage)
order_service = OrderCommissionService(storage, referral_service, poster)
reconciliation_job = ReconciliationJob(storage, order_service, credit_accountant)


def _unavailable(e: TransientStoreError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "referral-commissions"}


@app.post("/orders/{order_id}/paid", response_model=OrderPaidResult, tags=["Orders"])
def order_paid(order_id: UUID) -> OrderPaidResult:
    try:
        return order_service.handle_order_paid(order_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except TransientStoreError as e:
        raise _unavailable(e)


@app.get("/customers/{customer_id}/balance", response_model=CreditBalance, tags=["Credits"])
def get_customer_balance(customer_id: UUID) -> CreditBalance:
    try:
        return credit_accountant.safe_balance(customer_id)
    except EntityNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Customer {customer_id} not found")


@app.post("/customers/{customer_id}/redeem", response_model=RedemptionResult, tags=["Credits"])
def redeem_credit(customer_id: UUID, request: RedeemRequest) -> RedemptionResult:
    try:
        return credit_accountant.redeem(customer_id, request.order_id, request.requested_minor)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidStateTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except TransientStoreError as e:
        raise _unavailable(e)


@app.get("/customers/{customer_id}/credits", response_model=list[CustomerCredit], tags=["Credits"])
def get_customer_credits(customer_id: UUID) -> list[CustomerCredit]:
    try:
        return credit_accountant.credit_history(customer_id)
    except EntityNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Customer {customer_id} not found")


@app.get("/referrers/{referrer_id}/attribution", response_model=AttributionReport, tags=["Referrers"])
def get_attribution(referrer_id: UUID) -> AttributionReport:
    try:
        return resolver.attribution_report(referrer_id)
    except EntityNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Referrer {referrer_id} not found")


@app.get("/referrers/{referrer_id}/commissions", response_model=LedgerHistoryResponse, tags=["Referrers"])
def get_commissions(referrer_id: UUID, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
    return poster.ledger_history(referrer_id, limit, offset)


@app.get("/referrers/{referrer_id}/payable", response_model=PayableSummary, tags=["Referrers"])
def get_payable(referrer_id: UUID) -> PayableSummary:
    return poster.payable_summary(referrer_id)


@app.post("/commissions/{entry_id}/approve", response_model=CommissionLedgerEntry, tags=["Commissions"])
def approve_commission(entry_id: UUID) -> CommissionLedgerEntry:
    try:
        return poster.approve(entry_id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Commission {entry_id} not found")
    except InvalidStateTransitionError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@app.post("/commissions/{entry_id}/pay", response_model=CommissionLedgerEntry, tags=["Commissions"])
def pay_commission(entry_id: UUID) -> CommissionLedgerEntry:
    try:
        return poster.mark_paid(entry_id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Commission {entry_id} not found")
    except InvalidStateTransitionError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@app.get("/referrals/{code}", tags=["Referrals"])
def verify_referral(code: str):
    try:
        owner, record = referral_service.verify_code(code)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Referral code {code} not found")
    except ReferralExpiredError as e:
        raise HTTPException(status_code=status.HTTP_410_GONE, detail=str(e))
    return {
        "code": code.upper(),
        "referrer_id": str(owner.id),
        "referrer_kind": owner.kind.value,
        "referrer_name": owner.name,
        "status": record.status.value if record else "active",
        "expires_at": record.expires_at.isoformat() if record and record.expires_at else None,
    }


@app.post("/referrals/{code}/access", response_model=ReferralRecord, tags=["Referrals"])
def access_referral(code: str) -> ReferralRecord:
    try:
        return referral_service.track_access(code)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ReferralExpiredError as e:
        raise HTTPException(status_code=status.HTTP_410_GONE, detail=str(e))


@app.post("/reconciliation/run", response_model=ReconciliationReport, tags=["Reconciliation"])
def run_reconciliation(dry_run: bool = True) -> ReconciliationReport:
    return reconciliation_job.run(dry_run=dry_run)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
