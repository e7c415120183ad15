"""Subscription routes used by the browser extension: status, usage, export checks."""

from fastapi import APIRouter, Depends

from tablexport.schemas.subscription import (
    CheckExportRequest,
    CheckExportResponse,
    EntitlementData,
    ExportDecision,
    StatusRequest,
    StatusResponse,
    UnlimitedUsageResponse,
    UsageData,
    UsageIncrementResponse,
    UsageResponse,
)
from tablexport.core.auth import SessionUser, require_auth
from tablexport.core.exceptions import AuthorizationDenied, QuotaExceeded, UpstreamFailure
from tablexport.paypal.plans import PRICING_PLANS
from tablexport.services.subscription import (
    EXPORT_GOOGLE_SHEETS,
    UNLIMITED,
    Entitlement,
    SubscriptionResolver,
    can_user_export,
    get_resolver,
)
from tablexport.services.usage import UsageCounter, get_usage_counter

router = APIRouter(prefix="/subscription", tags=["subscription"])

SHEETS_FORMATS = ("google_sheets", "sheets")


def _entitlement_data(user_id: str, entitlement: Entitlement) -> EntitlementData:
    return EntitlementData(
        user_id=user_id,
        status=entitlement.status,
        plan_type=entitlement.plan_type,
        expires_at=entitlement.expires_at,
        daily_limit=entitlement.daily_limit,
        used_today=entitlement.used_today,
        remaining_exports=entitlement.remaining_exports,
        can_export_google_sheets=entitlement.can_export_google_sheets,
        can_export_to_google_drive=entitlement.can_export_to_google_drive,
    )


async def _record_export(counter: UsageCounter, user_id: str) -> None:
    if not await counter.increment(user_id):
        raise UpstreamFailure("Failed to update usage counter")


async def require_pro(
    user: SessionUser = Depends(require_auth),
    resolver: SubscriptionResolver = Depends(get_resolver),
) -> Entitlement:
    """Dependency for Pro-only endpoints; returns the caller's entitlement."""
    entitlement = await resolver.resolve(user.user_id)
    if not entitlement.is_pro:
        raise AuthorizationDenied("Pro subscription required", subscriptionStatus=entitlement.status)
    return entitlement


@router.get("/status", response_model=StatusResponse)
async def get_status(
    user: SessionUser = Depends(require_auth),
    resolver: SubscriptionResolver = Depends(get_resolver),
):
    """Return the caller's entitlement snapshot."""
    entitlement = await resolver.resolve(user.user_id)
    return StatusResponse(data=_entitlement_data(user.user_id, entitlement))


@router.post("/status", response_model=ExportDecision, response_model_exclude_none=True)
async def post_status(
    body: StatusRequest | None = None,
    user: SessionUser = Depends(require_auth),
    resolver: SubscriptionResolver = Depends(get_resolver),
    counter: UsageCounter = Depends(get_usage_counter),
):
    """Check (and optionally record) one export of ``exportType``."""
    body = body or StatusRequest()
    entitlement = await resolver.resolve(user.user_id)
    check = can_user_export(entitlement, body.export_type)

    if not check.can_export:
        return ExportDecision(
            success=False,
            can_export=False,
            reason=check.reason,
            remaining_exports=check.remaining_exports,
        )

    if body.check_only or not body.increment_usage:
        return ExportDecision(can_export=True, remaining_exports=check.remaining_exports)

    await _record_export(counter, user.user_id)
    remaining = UNLIMITED if entitlement.is_unlimited else max(0, check.remaining_exports - 1)
    return ExportDecision(can_export=True, usage_incremented=True, remaining_exports=remaining)


@router.get("/usage", response_model=UsageResponse)
async def get_usage(
    user: SessionUser = Depends(require_auth),
    resolver: SubscriptionResolver = Depends(get_resolver),
):
    entitlement = await resolver.resolve(user.user_id)
    return UsageResponse(
        data=UsageData(
            used_today=entitlement.used_today,
            daily_limit=entitlement.daily_limit,
            remaining_exports=entitlement.remaining_exports,
            status=entitlement.status,
        )
    )


@router.post("/usage", response_model=UsageIncrementResponse | UnlimitedUsageResponse)
async def increment_usage(
    user: SessionUser = Depends(require_auth),
    resolver: SubscriptionResolver = Depends(get_resolver),
    counter: UsageCounter = Depends(get_usage_counter),
):
    """Record one export. 429 once a capped user is at the daily limit."""
    entitlement = await resolver.resolve(user.user_id)

    if entitlement.is_unlimited:
        return UnlimitedUsageResponse(status=entitlement.status)

    if entitlement.limit_reached:
        raise QuotaExceeded(usedToday=entitlement.used_today, dailyLimit=entitlement.daily_limit)

    await _record_export(counter, user.user_id)
    used_today = entitlement.used_today + 1
    return UsageIncrementResponse(
        used_today=used_today,
        daily_limit=entitlement.daily_limit,
        remaining_exports=max(0, entitlement.daily_limit - used_today),
    )


@router.post("/check-export", response_model=CheckExportResponse)
async def check_export(
    body: CheckExportRequest,
    user: SessionUser = Depends(require_auth),
    resolver: SubscriptionResolver = Depends(get_resolver),
):
    """Pre-flight check for one export type/format without recording it."""
    export_type = EXPORT_GOOGLE_SHEETS if body.format in SHEETS_FORMATS else body.export_type
    entitlement = await resolver.resolve(user.user_id)
    check = can_user_export(entitlement, export_type)
    return CheckExportResponse(
        can_export=check.can_export,
        reason=check.reason,
        remaining_exports=check.remaining_exports,
        export_type=export_type,
        format=body.format,
    )


@router.api_route("/pro-features", methods=["GET", "POST"])
async def pro_features(entitlement: Entitlement = Depends(require_pro)):
    plan = PRICING_PLANS["pro"]
    return {
        "success": True,
        "data": {
            "features": list(plan.features),
            "expiresAt": entitlement.expires_at.isoformat() if entitlement.expires_at else None,
        },
    }
