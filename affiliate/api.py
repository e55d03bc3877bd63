from datetime import datetime
from typing import Optional
from uuid import UUID
from fastapi import FastAPI, HTTPException, Response, status
from fastapi.middleware.cors import CORSMiddleware

from .audit import PayoutAuditTrail
from .codes import ReferralCodeRegistry
from .config import configure_logging, settings
from .errors import (
    AffiliateServiceError, ProgramLockedError, ProgramNotConfiguredError,
    RewardNotFoundError, RewardStateConflictError,
)
from .models import (
    AffiliateProgram, AffiliateReward, AffiliateStats, AuditAction, BulkPayoutPaidRequest, CreditBalance,
    InvoicePaidEvent, MaturedRewardsPreview, PayoutActionRequest, PayoutAuditLogEntry,
    PayoutBatchRequest, PayoutBatchResponse,
    PayoutListResponse, ProgramConfigRequest, ReferralAttribution, ReferralCodeSummary,
    RegistrationEvent, RegistrationResult, ReleaseRequest, ReleaseResponse, RewardStatus,
    SubscriptionCancelledEvent,
)
from .programs import ProgramRegistry
from .reports import AffiliateReports
from .service import RewardLedger
from .storage import InMemoryStorage
from .wallet import CreditWallet

configure_logging(settings)

app = FastAPI(
    title="Affiliate Referral Ledger API",
    description="Multi-level referral attribution with pending, cleared and audited rewards",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

storage = InMemoryStorage()
wallet = CreditWallet(storage)
program_registry = ProgramRegistry(storage, settings)
code_registry = ReferralCodeRegistry(storage, program_registry, settings)
reward_ledger = RewardLedger(storage, wallet, settings, programs=program_registry, codes=code_registry)
audit_trail = PayoutAuditTrail(storage, settings, wallet=wallet)
reports = AffiliateReports(storage, settings)


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "affiliate-ledger"}


@app.get("/admin/program", response_model=AffiliateProgram, tags=["Program"])
def get_program() -> AffiliateProgram:
    try:
        return program_registry.require_active_program()
    except ProgramNotConfiguredError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@app.put("/admin/program", response_model=AffiliateProgram, tags=["Program"])
def upsert_program(request: ProgramConfigRequest) -> AffiliateProgram:
    try:
        return program_registry.upsert_program(request)
    except ProgramLockedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@app.post("/events/registration", response_model=RegistrationResult, tags=["Events"])
def registration(event: RegistrationEvent) -> RegistrationResult:
    try:
        return reward_ledger.handle_registration(event)
    except AffiliateServiceError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@app.post("/events/invoice-paid", response_model=list[AffiliateReward], tags=["Events"])
def invoice_paid(event: InvoicePaidEvent) -> list[AffiliateReward]:
    return reward_ledger.handle_invoice_paid(event)


@app.post("/events/subscription-cancelled", response_model=list[ReferralAttribution], tags=["Events"])
def subscription_cancelled(event: SubscriptionCancelledEvent) -> list[ReferralAttribution]:
    return reward_ledger.handle_subscription_cancellation(event)


@app.get("/admin/rewards/release", response_model=MaturedRewardsPreview, tags=["Rewards"])
def preview_release() -> MaturedRewardsPreview:
    return reward_ledger.preview_matured_rewards()


@app.post("/admin/rewards/release", response_model=ReleaseResponse, tags=["Rewards"])
def release_rewards(request: ReleaseRequest) -> ReleaseResponse:
    reference_date = request.reference_date or reward_ledger.clock()
    released = reward_ledger.release_matured_rewards(reference_date)
    return ReleaseResponse(released=released, reference_date=reference_date)


@app.get("/admin/rewards/{reward_id}", response_model=AffiliateReward, tags=["Rewards"])
def get_reward(reward_id: UUID) -> AffiliateReward:
    try:
        return reward_ledger.get_reward(reward_id)
    except RewardNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Reward {reward_id} not found")


@app.get("/admin/payouts", response_model=PayoutListResponse, tags=["Payouts"])
def list_payouts(
    status_filter: RewardStatus = RewardStatus.CLEARED,
    user_id: Optional[UUID] = None,
    page: int = 1,
    page_size: int = 50,
) -> PayoutListResponse:
    return reports.list_payouts(status_filter, user_id, page, page_size)


@app.post("/admin/payouts", response_model=PayoutBatchResponse, tags=["Payouts"])
def create_payout_batch(request: PayoutBatchRequest) -> PayoutBatchResponse:
    try:
        summary = audit_trail.create_payout_batch(
            request.admin_user_id,
            user_ids=request.user_ids,
            reward_ids=request.reward_ids,
            notes=request.notes,
        )
    except RewardNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return PayoutBatchResponse(
        message=f"Payout batch created for {len({s.user_id for s in summary})} users",
        summary=summary,
        total_rewards=sum(s.reward_count for s in summary),
    )


@app.put("/admin/payouts", response_model=list[AffiliateReward], tags=["Payouts"])
def mark_payouts_paid(request: BulkPayoutPaidRequest) -> list[AffiliateReward]:
    try:
        return audit_trail.mark_payouts_paid(request.reward_ids, request.admin_user_id, request.notes)
    except RewardNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except RewardStateConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@app.get("/admin/payouts/export", tags=["Payouts"])
def export_payouts(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    status_filter: Optional[RewardStatus] = None,
) -> Response:
    content = reports.export_rewards_csv(start_date, end_date, status_filter)
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="affiliate-payouts.csv"'},
    )


def _payout_action(action, reward_id: UUID, request: PayoutActionRequest) -> AffiliateReward:
    try:
        return action(reward_id, request.admin_user_id, request.notes)
    except RewardNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Reward {reward_id} not found")
    except RewardStateConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@app.post("/admin/payouts/{reward_id}/approve", response_model=AffiliateReward, tags=["Payouts"])
def approve_payout(reward_id: UUID, request: PayoutActionRequest) -> AffiliateReward:
    return _payout_action(audit_trail.approve_payout, reward_id, request)


@app.post("/admin/payouts/{reward_id}/reject", response_model=AffiliateReward, tags=["Payouts"])
def reject_payout(reward_id: UUID, request: PayoutActionRequest) -> AffiliateReward:
    return _payout_action(audit_trail.reject_payout, reward_id, request)


@app.post("/admin/payouts/{reward_id}/paid", response_model=AffiliateReward, tags=["Payouts"])
def mark_payout_paid(reward_id: UUID, request: PayoutActionRequest) -> AffiliateReward:
    return _payout_action(audit_trail.mark_payout_paid, reward_id, request)


@app.get("/admin/audit-logs", response_model=list[PayoutAuditLogEntry], tags=["Payouts"])
def list_audit_logs(
    user_id: Optional[UUID] = None,
    performed_by: Optional[str] = None,
    action: Optional[AuditAction] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = 100,
) -> list[PayoutAuditLogEntry]:
    if performed_by:
        return audit_trail.list_by_performer(performed_by, limit)
    return audit_trail.list_entries(user_id, action, start_date, end_date, limit)


@app.get("/users/{user_id}/referral-code", response_model=ReferralCodeSummary, tags=["Users"])
def get_referral_code(user_id: UUID) -> ReferralCodeSummary:
    try:
        program = program_registry.require_active_program()
    except ProgramNotConfiguredError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return code_registry.get_or_create_code(user_id, program.id)


@app.get("/users/{user_id}/stats", response_model=AffiliateStats, tags=["Users"])
def get_user_stats(user_id: UUID) -> AffiliateStats:
    return reports.get_stats(user_id)


@app.get("/users/{user_id}/wallet", response_model=CreditBalance, tags=["Users"])
def get_user_wallet(user_id: UUID) -> CreditBalance:
    return wallet.get_balance(user_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
