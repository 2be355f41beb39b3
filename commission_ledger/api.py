from contextlib import asynccontextmanager
from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware

from .errors import (
    CodeNotUsable,
    ConcurrencyConflict,
    DuplicateCodeError,
    IntegrityViolation,
    LedgerError,
    NotFoundError,
)
from .logging_config import get_logger, setup_logging
from .models import (
    AgentBalance,
    AgentEarningsRead,
    AgentRead,
    AgentStatus,
    AgentStatusRequest,
    ApprovePayoutRequest,
    BulkEarningsRequest,
    BulkEarningsUploadRequest,
    BulkPayoutRequest,
    BulkResult,
    BulkUploadResult,
    CodeOptions,
    CodeStatusRequest,
    CodeValidation,
    CommissionRateRequest,
    ConfirmUsageRequest,
    CreateEarningRequest,
    EarningAdjustmentRequest,
    EarningsSummary,
    EarningStatus,
    PayoutMethod,
    PayoutRead,
    PayoutRequest,
    PayoutStats,
    PayoutStatus,
    ReasonRequest,
    ReconciliationReport,
    RecordUsageRequest,
    ReferralCodeRead,
    ReferralCodeStatus,
    ReferralUsageRead,
    RegisterAgentRequest,
    ReviewPayoutRequest,
    SuspendEarningsRequest,
    SystemEarningsSummary,
    UsageConfirmation,
)
from .service import LedgerService

logger = get_logger(__name__)

ledger_service = LedgerService()


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    ledger_service.db.create_tables()
    yield
    ledger_service.db.dispose()


app = FastAPI(
    title="Commission Ledger API",
    description="Referral codes, commission earnings, agent balances and payout approvals",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_service() -> LedgerService:
    return ledger_service


def http_error(e: LedgerError) -> HTTPException:
    if isinstance(e, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(e, (DuplicateCodeError, ConcurrencyConflict)):
        code = status.HTTP_409_CONFLICT
    elif isinstance(e, IntegrityViolation):
        logger.error("integrity_violation", error=e.message, **e.context())
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    else:
        code = status.HTTP_400_BAD_REQUEST

    detail = {"message": e.message, "error": e.__class__.__name__, **e.context()}
    if isinstance(e, CodeNotUsable):
        detail["reason"] = e.reason
    return HTTPException(status_code=code, detail=detail)


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "commission-ledger"}


# Agents


@app.post("/agents", response_model=AgentRead, status_code=status.HTTP_201_CREATED, tags=["Agents"])
def register_agent(request: RegisterAgentRequest, service: LedgerService = Depends(get_service)):
    try:
        return service.agents.register(
            request.user_id, request.commission_rate, request.tier, request.status
        )
    except LedgerError as e:
        raise http_error(e)


@app.get("/agents", response_model=list[AgentRead], tags=["Agents"])
def list_agents(
    agent_status: Optional[AgentStatus] = None,
    limit: int = 50,
    offset: int = 0,
    service: LedgerService = Depends(get_service),
):
    return service.agents.list(agent_status, limit, offset)


@app.get("/agents/{agent_id}", response_model=AgentRead, tags=["Agents"])
def get_agent(agent_id: UUID, service: LedgerService = Depends(get_service)):
    try:
        return service.agents.get(agent_id)
    except LedgerError as e:
        raise http_error(e)


@app.get("/users/{user_id}/agent", response_model=AgentRead, tags=["Agents"])
def get_agent_by_user(user_id: UUID, service: LedgerService = Depends(get_service)):
    try:
        return service.agents.get_by_user(user_id)
    except LedgerError as e:
        raise http_error(e)


@app.put("/agents/{agent_id}/commission-rate", response_model=AgentRead, tags=["Agents"])
def set_commission_rate(
    agent_id: UUID, request: CommissionRateRequest, service: LedgerService = Depends(get_service)
):
    try:
        return service.agents.set_commission_rate(agent_id, request.commission_rate)
    except LedgerError as e:
        raise http_error(e)


@app.put("/agents/{agent_id}/status", response_model=AgentRead, tags=["Agents"])
def set_agent_status(
    agent_id: UUID, request: AgentStatusRequest, service: LedgerService = Depends(get_service)
):
    try:
        return service.agents.set_status(agent_id, request.status)
    except LedgerError as e:
        raise http_error(e)


@app.post("/agents/{agent_id}/earnings/suspend", response_model=AgentRead, tags=["Agents"])
def suspend_earnings(
    agent_id: UUID, request: SuspendEarningsRequest, service: LedgerService = Depends(get_service)
):
    try:
        return service.agents.suspend_earnings(agent_id, request.reason, request.admin_notes)
    except LedgerError as e:
        raise http_error(e)


@app.post("/agents/{agent_id}/earnings/resume", response_model=AgentRead, tags=["Agents"])
def resume_earnings(agent_id: UUID, request: ReasonRequest, service: LedgerService = Depends(get_service)):
    try:
        return service.agents.resume_earnings(agent_id, request.reason)
    except LedgerError as e:
        raise http_error(e)


@app.get("/agents/{agent_id}/balance", response_model=AgentBalance, tags=["Balances"])
def get_agent_balance(agent_id: UUID, service: LedgerService = Depends(get_service)):
    try:
        return service.balances.get_balance(agent_id)
    except LedgerError as e:
        raise http_error(e)


@app.get("/agents/{agent_id}/reconciliation", response_model=ReconciliationReport, tags=["Balances"])
def reconcile_agent(agent_id: UUID, service: LedgerService = Depends(get_service)):
    try:
        return service.balances.reconcile(agent_id)
    except LedgerError as e:
        raise http_error(e)


@app.post("/reconciliation/run", response_model=list[ReconciliationReport], tags=["Balances"])
def reconcile_all(service: LedgerService = Depends(get_service)):
    return service.balances.reconcile_all()


# Referral codes


@app.post(
    "/agents/{agent_id}/referral-codes",
    response_model=ReferralCodeRead,
    status_code=status.HTTP_201_CREATED,
    tags=["Referral Codes"],
)
def issue_referral_code(
    agent_id: UUID, options: CodeOptions, service: LedgerService = Depends(get_service)
):
    try:
        return service.registry.issue(agent_id, options)
    except LedgerError as e:
        raise http_error(e)


@app.get("/agents/{agent_id}/referral-codes", response_model=list[ReferralCodeRead], tags=["Referral Codes"])
def list_referral_codes(
    agent_id: UUID,
    code_status: Optional[ReferralCodeStatus] = None,
    service: LedgerService = Depends(get_service),
):
    return service.registry.list_for_agent(agent_id, code_status)


@app.get("/referral-codes/{code}", response_model=ReferralCodeRead, tags=["Referral Codes"])
def get_referral_code(code: str, service: LedgerService = Depends(get_service)):
    try:
        return service.registry.get_by_code(code)
    except LedgerError as e:
        raise http_error(e)


@app.get("/referral-codes/{code}/validate", response_model=CodeValidation, tags=["Referral Codes"])
def validate_referral_code(code: str, service: LedgerService = Depends(get_service)):
    return service.registry.validate(code)


@app.put("/referral-codes/{code}/status", response_model=ReferralCodeRead, tags=["Referral Codes"])
def change_referral_code_status(
    code: str, request: CodeStatusRequest, service: LedgerService = Depends(get_service)
):
    try:
        return service.registry.change_status(code, request.status)
    except LedgerError as e:
        raise http_error(e)


@app.post(
    "/referral-codes/{code}/uses",
    response_model=ReferralUsageRead,
    status_code=status.HTTP_201_CREATED,
    tags=["Referral Codes"],
)
def record_referral_use(
    code: str, request: RecordUsageRequest, service: LedgerService = Depends(get_service)
):
    try:
        return service.usage.record(
            code,
            request.referred_user,
            idempotency_key=request.idempotency_key,
            ip_address=request.ip_address,
            user_agent=request.user_agent,
        )
    except LedgerError as e:
        raise http_error(e)


# Usages


@app.get("/usages/{usage_id}", response_model=ReferralUsageRead, tags=["Usages"])
def get_usage(usage_id: UUID, service: LedgerService = Depends(get_service)):
    try:
        return service.usage.get(usage_id)
    except LedgerError as e:
        raise http_error(e)


@app.post("/usages/{usage_id}/confirm", response_model=UsageConfirmation, tags=["Usages"])
def confirm_usage(
    usage_id: UUID, request: ConfirmUsageRequest, service: LedgerService = Depends(get_service)
):
    try:
        return service.usage.confirm(usage_id, request.reference_amount)
    except LedgerError as e:
        raise http_error(e)


@app.post("/usages/{usage_id}/cancel", response_model=ReferralUsageRead, tags=["Usages"])
def cancel_usage(usage_id: UUID, service: LedgerService = Depends(get_service)):
    try:
        return service.usage.cancel(usage_id)
    except LedgerError as e:
        raise http_error(e)


@app.post("/usages/{usage_id}/expire", response_model=ReferralUsageRead, tags=["Usages"])
def expire_usage(usage_id: UUID, service: LedgerService = Depends(get_service)):
    try:
        return service.usage.expire(usage_id)
    except LedgerError as e:
        raise http_error(e)


# Earnings


@app.post("/earnings", response_model=AgentEarningsRead, status_code=status.HTTP_201_CREATED, tags=["Earnings"])
def create_earning(request: CreateEarningRequest, service: LedgerService = Depends(get_service)):
    try:
        return service.earnings.create(
            request.agent_id,
            request.type,
            request.amount,
            status=request.status,
            description=request.description,
            reference_id=request.reference_id,
            idempotency_key=request.idempotency_key,
        )
    except LedgerError as e:
        raise http_error(e)


@app.post(
    "/agents/{agent_id}/adjustments",
    response_model=AgentEarningsRead,
    status_code=status.HTTP_201_CREATED,
    tags=["Earnings"],
)
def create_adjustment(
    agent_id: UUID, request: EarningAdjustmentRequest, service: LedgerService = Depends(get_service)
):
    try:
        return service.earnings.create_adjustment(
            agent_id, request.amount, request.kind, request.reason,
            notes=request.notes, reference_id=request.reference_id,
        )
    except LedgerError as e:
        raise http_error(e)


@app.get("/agents/{agent_id}/earnings", response_model=list[AgentEarningsRead], tags=["Earnings"])
def list_agent_earnings(
    agent_id: UUID,
    earning_status: Optional[EarningStatus] = None,
    limit: int = 50,
    offset: int = 0,
    service: LedgerService = Depends(get_service),
):
    return service.earnings.list_for_agent(agent_id, earning_status, limit, offset)


@app.get("/agents/{agent_id}/earnings/summary", response_model=EarningsSummary, tags=["Reports"])
def get_earnings_summary(agent_id: UUID, service: LedgerService = Depends(get_service)):
    try:
        return service.reports.earnings_summary(agent_id)
    except LedgerError as e:
        raise http_error(e)


@app.post("/earnings/bulk/confirm", response_model=BulkResult, tags=["Earnings"])
def bulk_confirm_earnings(request: BulkEarningsRequest, service: LedgerService = Depends(get_service)):
    return service.earnings.bulk_confirm(request.earning_ids)


@app.post("/earnings/bulk/cancel", response_model=BulkResult, tags=["Earnings"])
def bulk_cancel_earnings(request: BulkEarningsRequest, service: LedgerService = Depends(get_service)):
    return service.earnings.bulk_cancel(request.earning_ids, request.reason)


@app.post("/earnings/bulk/upload", response_model=BulkUploadResult, tags=["Earnings"])
def upload_earnings(request: BulkEarningsUploadRequest, service: LedgerService = Depends(get_service)):
    """Record externally computed earnings by agent code. Rows are reported individually."""
    return service.earnings.bulk_upload(
        request.earnings,
        auto_confirm=request.auto_confirm,
        batch_description=request.batch_description,
        metadata=request.metadata,
    )


@app.get("/earnings/{earning_id}", response_model=AgentEarningsRead, tags=["Earnings"])
def get_earning(earning_id: UUID, service: LedgerService = Depends(get_service)):
    try:
        return service.earnings.get(earning_id)
    except LedgerError as e:
        raise http_error(e)


@app.post("/earnings/{earning_id}/confirm", response_model=AgentEarningsRead, tags=["Earnings"])
def confirm_earning(earning_id: UUID, service: LedgerService = Depends(get_service)):
    try:
        return service.earnings.confirm(earning_id)
    except LedgerError as e:
        raise http_error(e)


@app.post("/earnings/{earning_id}/cancel", response_model=AgentEarningsRead, tags=["Earnings"])
def cancel_earning(earning_id: UUID, request: ReasonRequest, service: LedgerService = Depends(get_service)):
    try:
        return service.earnings.cancel(earning_id, request.reason)
    except LedgerError as e:
        raise http_error(e)


@app.post("/earnings/{earning_id}/dispute", response_model=AgentEarningsRead, tags=["Earnings"])
def dispute_earning(earning_id: UUID, request: ReasonRequest, service: LedgerService = Depends(get_service)):
    try:
        return service.earnings.dispute(earning_id, request.reason)
    except LedgerError as e:
        raise http_error(e)


@app.post("/earnings/{earning_id}/reinstate", response_model=AgentEarningsRead, tags=["Earnings"])
def reinstate_earning(earning_id: UUID, request: ReasonRequest, service: LedgerService = Depends(get_service)):
    try:
        return service.earnings.reinstate(earning_id, request.reason)
    except LedgerError as e:
        raise http_error(e)


@app.post("/earnings/{earning_id}/mark-paid", response_model=AgentEarningsRead, tags=["Earnings"])
def mark_earning_paid(earning_id: UUID, service: LedgerService = Depends(get_service)):
    try:
        return service.earnings.mark_paid(earning_id)
    except LedgerError as e:
        raise http_error(e)


# Payouts


@app.post("/payouts", response_model=PayoutRead, status_code=status.HTTP_201_CREATED, tags=["Payouts"])
def request_payout(request: PayoutRequest, service: LedgerService = Depends(get_service)):
    try:
        return service.payouts.request(
            request.agent_id,
            request.amount,
            request.method,
            request.payment_details,
            description=request.description,
            idempotency_key=request.idempotency_key,
        )
    except LedgerError as e:
        raise http_error(e)


@app.get("/payouts", response_model=list[PayoutRead], tags=["Payouts"])
def list_payouts(
    payout_status: Optional[PayoutStatus] = None,
    method: Optional[PayoutMethod] = None,
    page: int = 1,
    limit: int = 20,
    service: LedgerService = Depends(get_service),
):
    return service.payouts.list(payout_status, method, page, limit)


@app.get("/payouts/stats", response_model=PayoutStats, tags=["Reports"])
def get_payout_stats(service: LedgerService = Depends(get_service)):
    return service.reports.payout_stats()


@app.post("/payouts/bulk", response_model=BulkResult, tags=["Payouts"])
def bulk_process_payouts(request: BulkPayoutRequest, service: LedgerService = Depends(get_service)):
    return service.payouts.bulk_process(
        request.payout_ids,
        request.action,
        request.staff_id,
        admin_notes=request.admin_notes,
        review_message=request.review_message,
        individual_messages=request.individual_messages,
    )


@app.get("/agents/{agent_id}/payouts", response_model=list[PayoutRead], tags=["Payouts"])
def list_agent_payouts(
    agent_id: UUID,
    payout_status: Optional[PayoutStatus] = None,
    service: LedgerService = Depends(get_service),
):
    return service.payouts.list_for_agent(agent_id, payout_status)


@app.get("/payouts/{payout_id}", response_model=PayoutRead, tags=["Payouts"])
def get_payout(payout_id: UUID, service: LedgerService = Depends(get_service)):
    try:
        return service.payouts.get(payout_id)
    except LedgerError as e:
        raise http_error(e)


@app.post("/payouts/{payout_id}/approve", response_model=PayoutRead, tags=["Payouts"])
def approve_payout(
    payout_id: UUID, request: ApprovePayoutRequest, service: LedgerService = Depends(get_service)
):
    try:
        return service.payouts.approve(
            payout_id,
            request.staff_id,
            fees=request.fees,
            admin_notes=request.admin_notes,
            transaction_id=request.transaction_id,
        )
    except LedgerError as e:
        raise http_error(e)


@app.post("/payouts/{payout_id}/review", response_model=PayoutRead, tags=["Payouts"])
def flag_payout_for_review(
    payout_id: UUID, request: ReviewPayoutRequest, service: LedgerService = Depends(get_service)
):
    try:
        return service.payouts.flag_for_review(
            payout_id, request.review_message, staff_id=request.staff_id, admin_notes=request.admin_notes
        )
    except LedgerError as e:
        raise http_error(e)


@app.post("/payouts/{payout_id}/return-to-pending", response_model=PayoutRead, tags=["Payouts"])
def return_payout_to_pending(
    payout_id: UUID, staff_id: Optional[UUID] = None, service: LedgerService = Depends(get_service)
):
    try:
        return service.payouts.return_to_pending(payout_id, staff_id)
    except LedgerError as e:
        raise http_error(e)


# Reports


@app.get("/reports/earnings", response_model=SystemEarningsSummary, tags=["Reports"])
def get_system_earnings_summary(service: LedgerService = Depends(get_service)):
    return service.reports.system_earnings_summary()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
