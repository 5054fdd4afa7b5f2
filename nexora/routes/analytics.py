from datetime import datetime
from typing import Callable, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import FileResponse, HTMLResponse
from sqlalchemy.orm import Session

from ..auth.security import get_current_user
from ..config import settings
from ..db import get_db
from ..models.models import User
from ..schemas.analytics import (
    ExportFormat,
    ExportResult,
    FacilityReport,
    GlobalReport,
    MemberReport,
)
from ..services.analytics.aggregator import AnalyticsAggregator
from ..services.analytics.cache import ReportCache
from ..services.analytics.data_access import AnalyticsDataSource
from ..services.analytics.errors import AnalyticsAccessDenied, AnalyticsNotFound
from ..services.analytics.export import ExportService
from ..utils.dates import utcnow


logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/analytics", tags=["analytics"])


def get_clock() -> Callable[[], datetime]:
    return utcnow


def get_report_cache(request: Request) -> ReportCache:
    return request.app.state.report_cache


def get_aggregator(
    db: Session = Depends(get_db),
    cache: ReportCache = Depends(get_report_cache),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> AnalyticsAggregator:
    return AnalyticsAggregator(
        AnalyticsDataSource(db),
        cache,
        clock=clock,
        redistribute_unassigned=settings.analytics_redistribute_unassigned,
        timeline_limit=settings.analytics_timeline_limit,
        task_list_limit=settings.analytics_task_list_limit,
        tz_name=settings.tz_default,
    )


def get_export_service(clock: Callable[[], datetime] = Depends(get_clock)) -> ExportService:
    return ExportService(
        settings.analytics_export_dir,
        ttl_hours=settings.analytics_export_ttl_hours,
        brand=settings.analytics_export_brand,
        base_url=settings.public_base_url,
        font_dir=settings.analytics_export_font_dir,
        clock=clock,
    )


def _identity(me: User):
    return str(me.id), (me.role or "user")


def _global_report(aggregator: AnalyticsAggregator, me: User, range_token: Optional[str]) -> dict:
    identity_id, role = _identity(me)
    return aggregator.get_global_analytics(identity_id, role, range_token)


def _facility_report(aggregator: AnalyticsAggregator, facility_id: str, me: User, range_token: Optional[str]) -> dict:
    identity_id, role = _identity(me)
    try:
        return aggregator.get_facility_analytics(facility_id, identity_id, role, range_token)
    except AnalyticsAccessDenied as e:
        logger.info("facility_access_denied", facility_id=facility_id, user_id=identity_id)
        raise HTTPException(status_code=403, detail=str(e))
    except AnalyticsNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


def _member_report(
    aggregator: AnalyticsAggregator,
    member_id: str,
    me: User,
    range_token: Optional[str],
    facility_id: Optional[str],
) -> dict:
    identity_id, role = _identity(me)
    if not aggregator.can_access_member_analytics(member_id, identity_id, role):
        logger.info("member_access_denied", member_id=member_id, user_id=identity_id)
        raise HTTPException(status_code=403, detail="Access denied to member analytics")
    return aggregator.get_member_analytics(member_id, identity_id, role, range_token, facility_id)


def _export(
    exporter: ExportService,
    scope: str,
    report: dict,
    fmt: ExportFormat,
    me: User,
):
    if fmt == ExportFormat.html:
        return HTMLResponse(exporter.render_html(scope, report))
    return exporter.export(scope, report, owner_id=_identity(me)[0])


@router.get("/health")
def health():
    return {"status": "ok", "timestamp": utcnow().isoformat(), "service": "analytics"}


@router.get("/global", response_model=GlobalReport)
def global_analytics(
    range: Optional[str] = Query(default=None),
    aggregator: AnalyticsAggregator = Depends(get_aggregator),
    me: User = Depends(get_current_user),
):
    return _global_report(aggregator, me, range)


@router.get("/facility/{facility_id}", response_model=FacilityReport)
def facility_analytics(
    facility_id: str,
    range: Optional[str] = Query(default=None),
    aggregator: AnalyticsAggregator = Depends(get_aggregator),
    me: User = Depends(get_current_user),
):
    return _facility_report(aggregator, facility_id, me, range)


@router.get("/member/{member_id}", response_model=MemberReport)
def member_analytics(
    member_id: str,
    range: Optional[str] = Query(default=None),
    facility_id: Optional[str] = Query(default=None, alias="facilityId"),
    aggregator: AnalyticsAggregator = Depends(get_aggregator),
    me: User = Depends(get_current_user),
):
    return _member_report(aggregator, member_id, me, range, facility_id)


# Exports

@router.get("/export/global", response_model=ExportResult)
def export_global(
    range: Optional[str] = Query(default=None),
    format: ExportFormat = Query(default=ExportFormat.pdf),
    aggregator: AnalyticsAggregator = Depends(get_aggregator),
    exporter: ExportService = Depends(get_export_service),
    me: User = Depends(get_current_user),
):
    return _export(exporter, "global", _global_report(aggregator, me, range), format, me)


@router.get("/export/facility/{facility_id}", response_model=ExportResult)
def export_facility(
    facility_id: str,
    range: Optional[str] = Query(default=None),
    format: ExportFormat = Query(default=ExportFormat.pdf),
    aggregator: AnalyticsAggregator = Depends(get_aggregator),
    exporter: ExportService = Depends(get_export_service),
    me: User = Depends(get_current_user),
):
    return _export(exporter, "facility", _facility_report(aggregator, facility_id, me, range), format, me)


@router.get("/export/member/{member_id}", response_model=ExportResult)
def export_member(
    member_id: str,
    range: Optional[str] = Query(default=None),
    facility_id: Optional[str] = Query(default=None, alias="facilityId"),
    format: ExportFormat = Query(default=ExportFormat.pdf),
    aggregator: AnalyticsAggregator = Depends(get_aggregator),
    exporter: ExportService = Depends(get_export_service),
    me: User = Depends(get_current_user),
):
    return _export(exporter, "member", _member_report(aggregator, member_id, me, range, facility_id), format, me)


@router.get("/exports/{filename}")
def download_export(
    filename: str,
    exporter: ExportService = Depends(get_export_service),
    me: User = Depends(get_current_user),
):
    path = exporter.resolve_download(filename, owner_id=_identity(me)[0])
    if path is None:
        raise HTTPException(status_code=404, detail="Export not found or expired")
    return FileResponse(str(path), media_type="application/pdf", filename=filename)
