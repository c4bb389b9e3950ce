"""API endpoints for the points ledger, bonuses, expiry and segmentation."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, NoReturn, Optional
from uuid import UUID

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.api.dependencies.security import require_api_key
from loyalty_api.api.dependencies.tenant import get_session_factory, get_staff_user, get_tenant_id
from loyalty_api.db.session import get_session
from loyalty_api.models import PointsTransaction, PointsTransactionType
from loyalty_api.observability.loyalty import get_loyalty_store
from loyalty_api.services.loyalty import (
    LedgerErrorCode,
    LedgerIntegrityError,
    LoyaltyBonusRules,
    LoyaltyLedgerService,
    LoyaltyReportingService,
    LoyaltySettingsResolver,
    PointsExpiryService,
    RFMSegmentationService,
    TenantNotFoundError,
    decode_time_uuid_cursor,
    encode_time_uuid_cursor,
    next_milestone,
    segment_info,
    tier_progress,
)


router = APIRouter(prefix="/loyalty", tags=["loyalty"], dependencies=[Depends(require_api_key)])


_NOT_FOUND_CODES = {LedgerErrorCode.CUSTOMER_NOT_FOUND, LedgerErrorCode.BILL_NOT_FOUND}


class EarnRequest(BaseModel):
    orderId: Optional[UUID] = Field(None, description="Order the points are earned on")
    orderAmount: Decimal = Field(..., ge=0, description="Order total in the tenant currency")


class EarnResponse(BaseModel):
    pointsEarned: int
    newBalance: int
    tierUpgrade: bool
    newTier: Optional[str]
    transactionId: Optional[UUID]


class RedeemRequest(BaseModel):
    billId: UUID
    points: int


class RedeemResponse(BaseModel):
    success: bool
    discountAmount: float
    newBalance: int
    transactionId: Optional[UUID]


class ManualPointsRequest(BaseModel):
    points: int = Field(..., description="Signed for adjustments, positive for bonuses")
    type: Literal["bonus", "adjustment"] = "adjustment"
    reason: Optional[str] = None
    allowNegative: bool = False


class PointsChangeResponse(BaseModel):
    success: bool
    newBalance: int
    pointsAwarded: int = 0
    transactionId: Optional[UUID] = None
    message: Optional[str] = None
    isMilestone: bool = False


class MilestoneRequest(BaseModel):
    visitNumber: Optional[int] = Field(None, ge=1, description="Defaults to the customer's visit count")


class BirthdayEligibilityResponse(BaseModel):
    canClaim: bool
    isBirthday: bool
    alreadyClaimed: bool
    bonusAmount: int


class NextMilestoneResponse(BaseModel):
    visitNumber: int
    bonusPoints: int
    visitsRemaining: int


class CustomerLoyaltyResponse(BaseModel):
    id: UUID
    name: str
    tier: str
    pointsBalance: int
    pointsValue: float
    lifetimeEarned: int
    lifetimeRedeemed: int
    lifetimeExpired: int
    totalVisits: int
    totalSpent: float
    dateOfBirth: Optional[date]
    nextTier: Optional[str]
    pointsToNextTier: int
    tierProgress: float
    nextMilestone: Optional[NextMilestoneResponse]


class TransactionResponse(BaseModel):
    id: UUID
    type: str
    points: int
    balanceAfter: int
    orderId: Optional[UUID]
    billId: Optional[UUID]
    orderAmount: Optional[float]
    multiplier: Optional[float]
    discountAmount: Optional[float]
    bonusType: Optional[str]
    milestoneVisitNumber: Optional[int]
    expiresAt: Optional[datetime]
    reason: Optional[str]
    adjustedBy: Optional[str]
    createdAt: datetime


class TransactionWindowResponse(BaseModel):
    entries: List[TransactionResponse]
    nextCursor: Optional[str]


class ExpiringPointsEntryResponse(BaseModel):
    transactionId: UUID
    points: int
    expiresAt: datetime
    daysUntilExpiry: int


class ExpiringPointsResponse(BaseModel):
    totalPoints: int
    days: int
    entries: List[ExpiringPointsEntryResponse]


class ExpiryOutlookResponse(BaseModel):
    customersWithPoints: int
    pointsExpiringSoon: int
    transactionsExpiringSoon: int
    customersAtRisk: int
    inactivityDays: int
    pointsExpiryDays: int


class ExpirySweepRequest(BaseModel):
    includeInactivity: bool = True


class BalanceAuditResponse(BaseModel):
    customerId: UUID
    storedBalance: int
    replayedBalance: int
    transactionCount: int
    earned: int
    redeemed: int
    expired: int
    adjusted: int
    consistent: bool


class RFMCustomerResponse(BaseModel):
    customerId: UUID
    name: str
    recencyDays: int
    totalVisits: int
    totalSpent: float
    recency: int
    frequency: int
    monetary: int
    score: int
    segment: str


class RFMSegmentResponse(BaseModel):
    segment: str
    label: str
    description: str
    action: str
    count: int


class RFMAnalysisResponse(BaseModel):
    generatedAt: datetime
    customers: List[RFMCustomerResponse]
    segments: List[RFMSegmentResponse]
    averages: Dict[str, float]


class ProgramSummaryResponse(BaseModel):
    activeCustomers: int
    tierDistribution: Dict[str, int]
    pointsIssued: int
    pointsRedeemed: int
    pointsOutstanding: int
    transactionCounts: Dict[str, int]
    recentTransactions: List[TransactionResponse]


def _optional_float(value: Any) -> Optional[float]:
    return float(value) if value is not None else None


def _serialize_transaction(entry: PointsTransaction) -> TransactionResponse:
    return TransactionResponse(
        id=entry.id,
        type=PointsTransactionType(entry.type).value,
        points=entry.points,
        balanceAfter=entry.balance_after,
        orderId=entry.order_id,
        billId=entry.bill_id,
        orderAmount=_optional_float(entry.order_amount),
        multiplier=_optional_float(entry.multiplier),
        discountAmount=_optional_float(entry.discount_amount),
        bonusType=entry.bonus_type.value if entry.bonus_type else None,
        milestoneVisitNumber=entry.milestone_visit_number,
        expiresAt=entry.expires_at,
        reason=entry.reason,
        adjustedBy=entry.adjusted_by,
        createdAt=entry.created_at,
    )


def _raise_for_result(error_code: LedgerErrorCode | None, error: str | None) -> None:
    if error_code is None:
        return
    status_code = status.HTTP_404_NOT_FOUND if error_code in _NOT_FOUND_CODES else status.HTTP_400_BAD_REQUEST
    raise HTTPException(status_code=status_code, detail={"code": error_code.value, "message": error})


def _raise_not_found(exc: Exception) -> NoReturn:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.get("/settings")
async def read_loyalty_settings(
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_session),
) -> Dict[str, Any]:
    try:
        resolved = await LoyaltySettingsResolver(db).load(tenant_id)
    except TenantNotFoundError as exc:
        _raise_not_found(exc)
    return resolved.as_document()


@router.put("/settings")
async def update_loyalty_settings(
    changes: Dict[str, Any] = Body(...),
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_session),
) -> Dict[str, Any]:
    """Merge a partial camelCase document over the stored settings."""

    try:
        resolved = await LoyaltySettingsResolver(db).update(tenant_id, changes)
    except TenantNotFoundError as exc:
        _raise_not_found(exc)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=exc.errors(include_url=False, include_context=False),
        ) from exc
    await db.commit()
    return resolved.as_document()


@router.get("/customers/{customer_id}", response_model=CustomerLoyaltyResponse)
async def read_customer_loyalty(
    customer_id: UUID,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_session),
) -> CustomerLoyaltyResponse:
    ledger = LoyaltyLedgerService(db)
    try:
        loyalty_settings = await ledger.load_settings(tenant_id)
    except TenantNotFoundError as exc:
        _raise_not_found(exc)
    customer = await ledger.get_customer(customer_id, tenant_id)
    if customer is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Customer not found")

    progress = tier_progress(customer.points_earned_lifetime, customer.tier, loyalty_settings.tier_thresholds)
    milestone = next_milestone(customer.total_visits, loyalty_settings)
    return CustomerLoyaltyResponse(
        id=customer.id,
        name=customer.name,
        tier=progress.current_tier.value,
        pointsBalance=customer.points_balance,
        pointsValue=float(customer.points_balance * loyalty_settings.point_value),
        lifetimeEarned=customer.points_earned_lifetime,
        lifetimeRedeemed=customer.points_redeemed_lifetime,
        lifetimeExpired=customer.points_expired_lifetime,
        totalVisits=customer.total_visits,
        totalSpent=float(customer.total_spent or 0),
        dateOfBirth=customer.date_of_birth,
        nextTier=progress.next_tier.value if progress.next_tier else None,
        pointsToNextTier=progress.points_to_next_tier,
        tierProgress=float(progress.progress),
        nextMilestone=(
            NextMilestoneResponse(
                visitNumber=milestone.visit_number,
                bonusPoints=milestone.bonus_points,
                visitsRemaining=milestone.visits_remaining,
            )
            if milestone
            else None
        ),
    )


@router.post("/customers/{customer_id}/earn", response_model=EarnResponse)
async def earn_points(
    customer_id: UUID,
    payload: EarnRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_session),
) -> EarnResponse:
    try:
        result = await LoyaltyLedgerService(db).earn(customer_id, payload.orderId, payload.orderAmount, tenant_id)
    except TenantNotFoundError as exc:
        _raise_not_found(exc)
    except LedgerIntegrityError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    _raise_for_result(result.error_code, result.error)
    await db.commit()
    return EarnResponse(
        pointsEarned=result.points_earned,
        newBalance=result.new_balance,
        tierUpgrade=result.tier_upgrade,
        newTier=result.new_tier.value if result.new_tier else None,
        transactionId=result.transaction_id,
    )


@router.post("/customers/{customer_id}/redeem", response_model=RedeemResponse)
async def redeem_points(
    customer_id: UUID,
    payload: RedeemRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_session),
) -> RedeemResponse:
    try:
        result = await LoyaltyLedgerService(db).redeem(customer_id, payload.billId, payload.points, tenant_id)
    except TenantNotFoundError as exc:
        _raise_not_found(exc)
    _raise_for_result(result.error_code, result.error)
    await db.commit()
    return RedeemResponse(
        success=result.success,
        discountAmount=float(result.discount_amount),
        newBalance=result.new_balance,
        transactionId=result.transaction_id,
    )


@router.post("/customers/{customer_id}/points", response_model=PointsChangeResponse)
async def change_points_manually(
    customer_id: UUID,
    payload: ManualPointsRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    staff_user: str | None = Depends(get_staff_user),
    db: AsyncSession = Depends(get_session),
) -> PointsChangeResponse:
    """Staff bonus or signed adjustment."""

    if payload.points == 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Points must not be zero")
    if payload.type == "bonus" and payload.points < 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Bonus points must be positive")

    reason = payload.reason or f"Manual {payload.type} by staff"
    ledger = LoyaltyLedgerService(db)
    if payload.type == "bonus":
        bonus = await ledger.award_bonus(customer_id, payload.points, tenant_id, reason=reason, awarded_by=staff_user)
        _raise_for_result(bonus.error_code, bonus.error)
        await db.commit()
        return PointsChangeResponse(
            success=True,
            newBalance=bonus.new_balance,
            pointsAwarded=bonus.points_awarded,
            transactionId=bonus.transaction_id,
        )

    adjustment = await ledger.adjust(
        customer_id,
        payload.points,
        reason,
        staff_user,
        tenant_id,
        allow_negative=payload.allowNegative,
    )
    _raise_for_result(adjustment.error_code, adjustment.error)
    await db.commit()
    return PointsChangeResponse(
        success=True,
        newBalance=adjustment.new_balance,
        pointsAwarded=payload.points,
        transactionId=adjustment.transaction_id,
    )


@router.get("/customers/{customer_id}/transactions", response_model=TransactionWindowResponse)
async def list_customer_transactions(
    customer_id: UUID,
    limit: int = Query(25, ge=1, le=100),
    cursor: str | None = Query(None, description="Opaque cursor for pagination"),
    types: list[str] | None = Query(None, description="Filter transaction types"),
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_session),
) -> TransactionWindowResponse:
    entry_types: list[PointsTransactionType] | None = None
    if types:
        entry_types = []
        for value in types:
            try:
                entry_types.append(PointsTransactionType(value.upper()))
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=f"Unsupported transaction type: {value}") from exc

    decoded_cursor = None
    if cursor:
        try:
            decoded_cursor = decode_time_uuid_cursor(cursor)
        except (ValueError, UnicodeDecodeError) as exc:
            raise HTTPException(status_code=400, detail="Invalid transaction cursor") from exc

    entries, next_cursor = await LoyaltyLedgerService(db).list_transactions(
        customer_id,
        tenant_id,
        limit=limit,
        cursor=decoded_cursor,
        types=entry_types,
    )
    return TransactionWindowResponse(
        entries=[_serialize_transaction(entry) for entry in entries],
        nextCursor=encode_time_uuid_cursor(*next_cursor) if next_cursor else None,
    )


@router.get("/customers/{customer_id}/expiring", response_model=ExpiringPointsResponse)
async def read_expiring_points(
    customer_id: UUID,
    days: int = Query(30, ge=1, le=365),
    tenant_id: UUID = Depends(get_tenant_id),
    session_factory=Depends(get_session_factory),
) -> ExpiringPointsResponse:
    report = await PointsExpiryService(session_factory).get_expiring_points(customer_id, tenant_id, days=days)
    return ExpiringPointsResponse(
        totalPoints=report.total_points,
        days=report.days,
        entries=[
            ExpiringPointsEntryResponse(
                transactionId=entry.transaction_id,
                points=entry.points,
                expiresAt=entry.expires_at,
                daysUntilExpiry=entry.days_until_expiry,
            )
            for entry in report.entries
        ],
    )


@router.get("/customers/{customer_id}/birthday", response_model=BirthdayEligibilityResponse)
async def read_birthday_eligibility(
    customer_id: UUID,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_session),
) -> BirthdayEligibilityResponse:
    try:
        eligibility = await LoyaltyBonusRules(db).can_claim_birthday_bonus(customer_id, tenant_id)
    except TenantNotFoundError as exc:
        _raise_not_found(exc)
    if eligibility is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Customer not found")
    return BirthdayEligibilityResponse(
        canClaim=eligibility.can_claim,
        isBirthday=eligibility.is_birthday,
        alreadyClaimed=eligibility.already_claimed,
        bonusAmount=eligibility.bonus_amount,
    )


@router.post("/customers/{customer_id}/birthday", response_model=PointsChangeResponse)
async def claim_birthday_bonus(
    customer_id: UUID,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_session),
) -> PointsChangeResponse:
    try:
        result = await LoyaltyBonusRules(db).check_and_award_birthday_bonus(customer_id, tenant_id)
    except TenantNotFoundError as exc:
        _raise_not_found(exc)
    _raise_for_result(result.error_code, result.error)
    await db.commit()
    return PointsChangeResponse(
        success=result.success,
        newBalance=result.new_balance,
        pointsAwarded=result.points_awarded,
        transactionId=result.transaction_id,
        message=result.message,
    )


@router.post("/customers/{customer_id}/welcome", response_model=PointsChangeResponse)
async def award_welcome_bonus(
    customer_id: UUID,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_session),
) -> PointsChangeResponse:
    try:
        result = await LoyaltyBonusRules(db).award_welcome_bonus(customer_id, tenant_id)
    except TenantNotFoundError as exc:
        _raise_not_found(exc)
    _raise_for_result(result.error_code, result.error)
    await db.commit()
    return PointsChangeResponse(
        success=result.success,
        newBalance=result.new_balance,
        pointsAwarded=result.points_awarded,
        transactionId=result.transaction_id,
        message=result.message,
    )


@router.post("/customers/{customer_id}/milestones", response_model=PointsChangeResponse)
async def check_visit_milestone(
    customer_id: UUID,
    payload: Optional[MilestoneRequest] = None,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_session),
) -> PointsChangeResponse:
    ledger = LoyaltyLedgerService(db)
    visit_number = payload.visitNumber if payload else None
    if visit_number is None:
        customer = await ledger.get_customer(customer_id, tenant_id)
        if customer is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Customer not found")
        visit_number = customer.total_visits

    try:
        result = await LoyaltyBonusRules(db, ledger=ledger).check_and_award_visit_milestone(
            customer_id, visit_number, tenant_id
        )
    except TenantNotFoundError as exc:
        _raise_not_found(exc)
    _raise_for_result(result.error_code, result.error)
    await db.commit()
    return PointsChangeResponse(
        success=result.success,
        newBalance=result.new_balance,
        pointsAwarded=result.points_awarded,
        transactionId=result.transaction_id,
        message=result.message,
        isMilestone=result.is_milestone,
    )


@router.get("/customers/{customer_id}/audit", response_model=BalanceAuditResponse)
async def audit_customer_balance(
    customer_id: UUID,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_session),
) -> BalanceAuditResponse:
    try:
        audit = await LoyaltyLedgerService(db).audit_balance(customer_id, tenant_id)
    except LedgerIntegrityError as exc:
        _raise_not_found(exc)
    return BalanceAuditResponse(
        customerId=audit.customer_id,
        storedBalance=audit.stored_balance,
        replayedBalance=audit.replayed_balance,
        transactionCount=audit.transaction_count,
        earned=audit.earned,
        redeemed=audit.redeemed,
        expired=audit.expired,
        adjusted=audit.adjusted,
        consistent=audit.consistent,
    )


@router.get("/expiry", response_model=ExpiryOutlookResponse)
async def read_expiry_outlook(
    tenant_id: UUID = Depends(get_tenant_id),
    session_factory=Depends(get_session_factory),
) -> ExpiryOutlookResponse:
    try:
        outlook = await PointsExpiryService(session_factory).expiry_outlook(tenant_id)
    except TenantNotFoundError as exc:
        _raise_not_found(exc)
    return ExpiryOutlookResponse(
        customersWithPoints=outlook.customers_with_points,
        pointsExpiringSoon=outlook.points_expiring_soon,
        transactionsExpiringSoon=outlook.transactions_expiring_soon,
        customersAtRisk=outlook.customers_at_risk,
        inactivityDays=outlook.inactivity_days,
        pointsExpiryDays=outlook.points_expiry_days,
    )


@router.post("/expiry/sweep")
async def run_expiry_sweep(
    payload: Optional[ExpirySweepRequest] = None,
    tenant_id: UUID = Depends(get_tenant_id),
    session_factory=Depends(get_session_factory),
) -> Dict[str, Any]:
    service = PointsExpiryService(session_factory)
    try:
        transactions = await service.sweep_expired_transactions(tenant_id)
        response: Dict[str, Any] = {"transactions": transactions.as_dict()}
        if payload is None or payload.includeInactivity:
            response["inactivity"] = (await service.sweep_inactive_customers(tenant_id)).as_dict()
    except TenantNotFoundError as exc:
        _raise_not_found(exc)
    return response


@router.get("/rfm", response_model=RFMAnalysisResponse)
async def read_rfm_analysis(
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_session),
) -> RFMAnalysisResponse:
    analysis = await RFMSegmentationService(db).run_rfm_analysis(tenant_id)
    segments = []
    for segment, count in sorted(analysis.segment_counts.items(), key=lambda item: -item[1]):
        info = segment_info(segment)
        segments.append(
            RFMSegmentResponse(
                segment=segment.value,
                label=info.label,
                description=info.description,
                action=info.action,
                count=count,
            )
        )
    return RFMAnalysisResponse(
        generatedAt=analysis.generated_at,
        customers=[
            RFMCustomerResponse(
                customerId=row.customer_id,
                name=row.name,
                recencyDays=row.recency_days,
                totalVisits=row.total_visits,
                totalSpent=float(row.total_spent),
                recency=row.rfm.recency,
                frequency=row.rfm.frequency,
                monetary=row.rfm.monetary,
                score=row.rfm.score,
                segment=row.segment.value,
            )
            for row in analysis.customers
        ],
        segments=segments,
        averages={
            "recencyDays": float(analysis.averages.recency_days),
            "visits": float(analysis.averages.visits),
            "spent": float(analysis.averages.spent),
        },
    )


@router.get("/summary", response_model=ProgramSummaryResponse)
async def read_program_summary(
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_session),
) -> ProgramSummaryResponse:
    reporting = LoyaltyReportingService(db)
    summary = await reporting.summarize(tenant_id)
    counts = await reporting.count_by_type(tenant_id)
    return ProgramSummaryResponse(
        activeCustomers=summary.active_customers,
        tierDistribution=summary.tier_distribution,
        pointsIssued=summary.points_issued,
        pointsRedeemed=summary.points_redeemed,
        pointsOutstanding=summary.points_outstanding,
        transactionCounts={kind.value: count for kind, count in counts.items()},
        recentTransactions=[_serialize_transaction(entry) for entry in summary.recent_transactions],
    )


@router.get("/observability")
async def read_loyalty_observability() -> Dict[str, Any]:
    return get_loyalty_store().snapshot().as_dict()
