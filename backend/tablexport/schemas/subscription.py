"""Subscription API schemas (camelCase on the wire, as the extension expects)."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------- Requests ----------


class StatusRequest(CamelModel):
    export_type: str = "standard"
    increment_usage: bool = False
    check_only: bool = False


class CheckExportRequest(CamelModel):
    export_type: str = "standard"
    format: str | None = None


# ---------- Responses ----------


class EntitlementData(CamelModel):
    user_id: str
    status: str
    plan_type: str | None
    expires_at: datetime | None
    daily_limit: int
    used_today: int
    remaining_exports: int
    can_export_google_sheets: bool
    can_export_to_google_drive: bool


class StatusResponse(CamelModel):
    success: bool = True
    data: EntitlementData


class ExportDecision(CamelModel):
    success: bool = True
    can_export: bool
    reason: str | None = None
    remaining_exports: int
    usage_incremented: bool | None = None


class CheckExportResponse(CamelModel):
    success: bool = True
    can_export: bool
    reason: str | None = None
    remaining_exports: int
    export_type: str
    format: str | None = None


class UsageData(CamelModel):
    used_today: int
    daily_limit: int
    remaining_exports: int
    status: str


class UsageResponse(CamelModel):
    success: bool = True
    data: UsageData


class UsageIncrementResponse(CamelModel):
    success: bool = True
    used_today: int
    daily_limit: int
    remaining_exports: int


class UnlimitedUsageResponse(CamelModel):
    success: bool = True
    unlimited: bool = True
    status: str
