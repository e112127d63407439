"""
Stager Ledger - Production FastAPI Server

Thin HTTP adapter over the credit ledger and subscription services. Status
codes come from the structured error kinds, never from exception text.

Endpoints:
- POST /webhooks/stripe - Signed processor events
- POST /accounts - Provision an account (signup bonus)
- GET /accounts/{id}/balance, /accounts/{id}/ledger - Balance and history
- POST /artifacts, /artifacts/{id}/download - Register and charge downloads
- POST /workflows/{id}/download-all, /workflows/{id}/refinements - Bulk download and refinements
- POST /checkout, /subscriptions/* - Purchases and plan changes
- POST /referrals/validate, /referrals/redeem - Special referral codes
- POST /admin/* - Grants, transfers, refunds, special codes, reconciliation
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import os
import structlog

from fastapi import FastAPI, HTTPException, Depends, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from mangum import Mangum
from pydantic import BaseModel, Field

# Import core components
import sys
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.accounts import AccountService
from core.artifacts import ArtifactRegistry, GenerationResult
from core.charge import ChargeGuard
from core.config import BillingConfig
from core.errors import AccountNotFound, BillingError
from core.ledger import LedgerStore
from core.plans import PlanRegistry
from core.referrals import DEFAULT_CREDITS, DEFAULT_DESCRIPTION, MAX_CODES_PER_BATCH, SpecialReferralService
from billing.admin import AdminService
from billing.catalog import Catalog
from billing.processor import PaymentProcessor
from billing.stripe_integration import StripeIntegration
from billing.subscriptions import SubscriptionController
from billing.webhooks import WebhookReconciler
from persistence.database import Database, get_database

logger = structlog.get_logger()

VERSION = "1.0.0"


# ============================================================================
# Pydantic Models
# ============================================================================

class ProvisionRequest(BaseModel):
    """Create (or fetch) the account for an authenticated user."""
    email: str = Field(..., min_length=3)
    auth_method: str = Field(default="credentials", description="credentials, google, ...")
    referral_code: Optional[str] = Field(None, description="Referral code of the referring account")


class ArtifactRequest(BaseModel):
    """Outcome of one image generation."""
    workflow_id: str
    account_id: str
    success: bool = True
    artifact_id: Optional[str] = None
    image_url: Optional[str] = None
    error: Optional[str] = None


class DownloadRequest(BaseModel):
    account_id: str


class RefinementRequest(BaseModel):
    account_id: str
    edit_index: int = Field(..., ge=0)


class CheckoutRequest(BaseModel):
    account_id: str
    kind: str = Field(..., description="pack or plan")
    item: str = Field(..., description="Pack or plan name")


class PlanChangeRequest(BaseModel):
    account_id: str
    plan: str


class AccountRequest(BaseModel):
    account_id: str


class GrantRequest(BaseModel):
    account: str = Field(..., description="Account id or email")
    amount: int = Field(..., gt=0)
    granted_by: str = "admin"
    note: Optional[str] = None
    idempotency_key: Optional[str] = None


class GrantPlanRequest(BaseModel):
    account: str
    plan: str
    duration_months: int = Field(default=12, gt=0)
    granted_by: str = "admin"


class TransferRequest(BaseModel):
    source: str
    destination: str
    amount: int = Field(..., gt=0)
    granted_by: str = "admin"
    note: Optional[str] = None


class RefundRequest(BaseModel):
    entry_id: str
    note: Optional[str] = None


class ReconcileRequest(BaseModel):
    account: Optional[str] = None
    dry_run: bool = False


class ReferralCodeRequest(BaseModel):
    code: str = Field(..., min_length=1)


class RedeemRequest(BaseModel):
    account_id: str
    code: str = Field(..., min_length=1)


class GenerateCodesRequest(BaseModel):
    count: int = Field(default=1, ge=1, le=MAX_CODES_PER_BATCH)
    credits: int = Field(default=DEFAULT_CREDITS, gt=0)
    description: Optional[str] = DEFAULT_DESCRIPTION
    created_by: str = "admin"


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    database: str
    processor_configured: bool
    uptime_seconds: float


# ============================================================================
# Application State
# ============================================================================

class AppState:
    """Application state container."""

    def __init__(
        self,
        db: Optional[Database] = None,
        processor: Optional[PaymentProcessor] = None,
        config: Optional[BillingConfig] = None,
        catalog: Optional[Catalog] = None,
    ):
        self.config = config or BillingConfig.from_env()
        self.db = db or get_database()
        self.catalog = catalog or Catalog()
        self.processor = processor or StripeIntegration(api_key=self.config.stripe_api_key)

        self.ledger = LedgerStore(self.db)
        self.plans = PlanRegistry(self.db)
        self.accounts = AccountService(self.db, self.ledger, self.config)
        self.artifacts = ArtifactRegistry(self.db)
        self.charges = ChargeGuard(self.db, self.ledger, self.config)
        self.reconciler = WebhookReconciler(self.db, self.ledger, self.plans, self.catalog, self.config)
        self.subscriptions = SubscriptionController(
            self.db, self.processor, self.ledger, self.plans, self.catalog, self.config
        )
        self.referrals = SpecialReferralService(self.db, self.ledger)
        self.admin = AdminService(self.db, self.ledger, self.plans, self.catalog, self.referrals)
        self.start_time = datetime.now(timezone.utc)


app_state: Optional[AppState] = None


# ============================================================================
# Application Factory
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    global app_state
    logger.info("stager_ledger_starting", version=VERSION)
    if app_state is None:
        app_state = AppState()
    yield
    logger.info("stager_ledger_stopping")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="Stager Ledger",
        description="""
# Credit Ledger & Subscription Reconciliation

Every credit movement is an append-only ledger entry written in the same
transaction as the cached balance. Downloads and refinements are charged at
most once. Stripe webhooks are applied exactly once and in order.
        """,
        version=VERSION,
        lifespan=lifespan,
    )

    # CORS middleware
    application.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @application.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError):
        return JSONResponse(status_code=exc.kind.http_status, content=exc.to_dict())

    return application


app = create_app()


# ============================================================================
# Dependencies
# ============================================================================

def get_state() -> AppState:
    """Get application state."""
    if app_state is None:
        raise HTTPException(status_code=503, detail="Application not initialized")
    return app_state


def verify_api_key(x_api_key: str = Header(..., alias="X-API-Key")) -> str:
    """Verify API key."""
    expected = os.environ.get("API_KEY", "dev-key-change-in-production")
    if x_api_key != expected:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


# ============================================================================
# Endpoints
# ============================================================================

@app.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check(state: AppState = Depends(get_state)):
    """Health check endpoint."""
    uptime = (datetime.now(timezone.utc) - state.start_time).total_seconds()
    return HealthResponse(
        status="healthy",
        version=VERSION,
        database="postgres" if state.db.is_postgres else "sqlite",
        processor_configured=state.processor.is_available,
        uptime_seconds=uptime,
    )


@app.post("/webhooks/stripe", tags=["Webhooks"])
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    state: AppState = Depends(get_state),
):
    """
    Apply one signed Stripe event.

    Non-2xx responses ask Stripe to redeliver; stale, duplicate and ignored
    events are acknowledged with 200.
    """
    payload = await request.body()
    result = state.reconciler.handle(payload, stripe_signature)
    return JSONResponse(status_code=result.http_status, content=result.to_dict())


@app.post("/accounts", tags=["Accounts"])
async def provision_account(
    request: ProvisionRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    account = state.accounts.provision(
        request.email,
        auth_method=request.auth_method,
        referral_code=request.referral_code,
    )
    return account.to_dict()


@app.get("/accounts/{account_id}/balance", tags=["Accounts"])
async def get_balance(
    account_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    live = state.plans.get_live(account_id)
    return {
        "account_id": account_id,
        "credits": state.ledger.balance_of(account_id),
        "plan": live.to_dict() if live else None,
    }


@app.get("/accounts/{account_id}/ledger", tags=["Accounts"])
async def get_ledger(
    account_id: str,
    limit: int = 50,
    cursor: Optional[int] = None,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Ledger history, newest first. Pass ``next_cursor`` back as ``cursor``."""
    if state.accounts.get(account_id) is None:
        raise AccountNotFound(f"Account {account_id} not found", account_id=account_id)
    return state.ledger.history(account_id, limit=limit, cursor=cursor).to_dict()


@app.post("/artifacts", tags=["Charges"])
async def record_artifact(
    request: ArtifactRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    artifact = state.artifacts.record_generation(
        request.workflow_id,
        request.account_id,
        GenerationResult(
            success=request.success,
            artifact_id=request.artifact_id,
            image_url=request.image_url,
            error=request.error,
        ),
    )
    return {"artifact": artifact.to_dict() if artifact else None}


@app.post("/artifacts/{artifact_id}/download", tags=["Charges"])
async def download_artifact(
    artifact_id: str,
    request: DownloadRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Charge the first full-resolution download; re-downloads are free."""
    return state.charges.charge_download(request.account_id, artifact_id).to_dict()


@app.post("/workflows/{workflow_id}/download-all", tags=["Charges"])
async def download_workflow(
    workflow_id: str,
    request: DownloadRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Charge every not-yet-downloaded result of a workflow, all or nothing."""
    return state.charges.charge_workflow_download(request.account_id, workflow_id).to_dict()


@app.post("/workflows/{workflow_id}/refinements", tags=["Charges"])
async def charge_refinement(
    workflow_id: str,
    request: RefinementRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return state.charges.charge_refinement(request.account_id, workflow_id, request.edit_index).to_dict()


@app.get("/catalog", tags=["Subscriptions"])
async def get_catalog(state: AppState = Depends(get_state)):
    return state.catalog.to_dict()


@app.post("/checkout", tags=["Subscriptions"])
async def start_checkout(
    request: CheckoutRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return state.subscriptions.start_checkout(request.account_id, request.kind, request.item).to_dict()


@app.post("/subscriptions/change", tags=["Subscriptions"])
async def change_plan(
    request: PlanChangeRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return state.subscriptions.change_plan(request.account_id, request.plan).to_dict()


@app.post("/subscriptions/cancel-downgrade", tags=["Subscriptions"])
async def cancel_scheduled_downgrade(
    request: AccountRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return state.subscriptions.cancel_scheduled_downgrade(request.account_id).to_dict()


@app.post("/subscriptions/cancel", tags=["Subscriptions"])
async def cancel_subscription(
    request: AccountRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return state.subscriptions.cancel_subscription(request.account_id).to_dict()


@app.post("/referrals/validate", tags=["Referrals"])
async def validate_referral_code(
    request: ReferralCodeRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Whether a special code can still be redeemed, and what it is worth."""
    return state.referrals.validate(request.code).to_dict()


@app.post("/referrals/redeem", tags=["Referrals"])
async def redeem_referral_code(
    request: RedeemRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return state.referrals.redeem(request.account_id, request.code).to_dict()


@app.post("/admin/grant", tags=["Admin"])
async def admin_grant(
    request: GrantRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    entry = state.admin.grant_credits(
        request.account,
        request.amount,
        granted_by=request.granted_by,
        note=request.note,
        idempotency_key=request.idempotency_key,
    )
    return entry.to_dict()


@app.post("/admin/grant-plan", tags=["Admin"])
async def admin_grant_plan(
    request: GrantPlanRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    transition, entry = state.admin.grant_plan(
        request.account,
        request.plan,
        granted_by=request.granted_by,
        duration_months=request.duration_months,
    )
    return {"plan": transition.plan.to_dict(), "entry": entry.to_dict()}


@app.post("/admin/transfer", tags=["Admin"])
async def admin_transfer(
    request: TransferRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    outgoing, incoming = state.admin.transfer(
        request.source,
        request.destination,
        request.amount,
        granted_by=request.granted_by,
        note=request.note,
    )
    return {"outgoing": outgoing.to_dict(), "incoming": incoming.to_dict()}


@app.post("/admin/refund", tags=["Admin"])
async def admin_refund(
    request: RefundRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return state.admin.refund(request.entry_id, note=request.note).to_dict()


@app.post("/admin/reconcile", tags=["Admin"])
async def admin_reconcile(
    request: ReconcileRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    return state.admin.reconcile(request.account, dry_run=request.dry_run).to_dict()


@app.post("/admin/special-referral/generate", tags=["Admin"])
async def admin_generate_special_codes(
    request: GenerateCodesRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    codes = state.admin.generate_special_codes(
        request.count,
        credits=request.credits,
        description=request.description,
        created_by=request.created_by,
    )
    return {"codes": [c.to_dict() for c in codes]}


@app.get("/admin/special-referral", tags=["Admin"])
async def admin_list_special_codes(
    include_used: bool = True,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return {"codes": [c.to_dict() for c in state.referrals.list_codes(include_used=include_used)]}


# Serverless entry point (AWS Lambda / Vercel)
handler = Mangum(app)


# ============================================================================
# Run
# ============================================================================

def run():
    """Run the server."""
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(
        "api.server:app",
        host="0.0.0.0",
        port=port,
        reload=os.environ.get("DEBUG", "false").lower() == "true",
    )


if __name__ == "__main__":
    run()
