from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from pydantic.alias_generators import to_camel


# Enums
class TimeRange(str, Enum):
    one_week = "1w"
    two_weeks = "2w"
    four_weeks = "4w"
    eight_weeks = "8w"
    twelve_weeks = "12w"


class MemberStatus(str, Enum):
    balanced = "balanced"
    caution = "caution"
    overloaded = "overloaded"


class FacilityStatus(str, Enum):
    normal = "normal"
    low = "low"
    critical = "critical"


class InsightType(str, Enum):
    danger = "danger"
    warning = "warning"
    info = "info"
    success = "success"


class InsightSeverity(str, Enum):
    critical = "critical"
    high = "high"
    medium = "medium"
    low = "low"


class ExportFormat(str, Enum):
    pdf = "pdf"
    html = "html"


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True


# Shared
class ReportMeta(CamelModel):
    generated_at: str
    range: TimeRange
    start: Optional[str] = None
    end: Optional[str] = None
    partial: Optional[bool] = None
    facility_id: Optional[str] = None
    access_level: Optional[str] = None


class Insight(CamelModel):
    id: str
    type: InsightType
    severity: InsightSeverity
    message: str
    action: str


class MemberTaskCounts(CamelModel):
    total: int = 0
    ongoing: int = 0
    completed: int = 0
    pending: int = 0
    overdue: int = 0


class MemberSummary(CamelModel):
    id: str
    name: str
    avatar_url: Optional[str] = None
    facility_id: Optional[str] = None
    facility_name: Optional[str] = None
    role: str = "member"
    tasks: MemberTaskCounts
    utilization: float
    status: MemberStatus
    trend: int = 0


class StatusDistribution(CamelModel):
    balanced: int = 0
    caution: int = 0
    overloaded: int = 0


class FacilitySummary(CamelModel):
    id: str
    name: str
    avg_utilization: float
    members_count: int
    projects_count: int
    task_count: int
    status: FacilityStatus
    status_distribution: StatusDistribution


class GlobalTaskCounts(CamelModel):
    done: int = 0
    in_progress: int = 0
    review: int = 0
    pending: int = 0
    overdue: int = 0
    total: int = 0


# Global
class GlobalKPIDelta(CamelModel):
    avg_utilization: float = 0.0
    critical_facilities: int = 0


class GlobalKPIs(CamelModel):
    active_members: int
    total_facilities: int
    avg_utilization: float
    critical_facilities: int
    overloaded_members: int = 0
    total_tasks: int = 0
    delta: GlobalKPIDelta


class GlobalReport(CamelModel):
    meta: ReportMeta
    kpis: GlobalKPIs
    facilities: List[FacilitySummary]
    members: List[MemberSummary]
    global_task_counts: GlobalTaskCounts
    insights: List[Insight]


# Facility
class TaskBrief(CamelModel):
    id: str
    title: str
    project_id: Optional[str] = None
    project_name: Optional[str] = None
    status: str
    priority: Optional[str] = None
    due_date: Optional[str] = None
    assignee_ids: List[str] = []
    classification: str


class FacilityKPIs(CamelModel):
    active_members: int
    total_tasks: int
    completed_tasks: int
    in_progress_tasks: int
    pending_tasks: int
    overdue_tasks: int
    upcoming_deadlines: int
    unassigned_tasks: int
    completion_rate: float
    avg_utilization: float
    status: FacilityStatus
    pending_task_list: List[TaskBrief]
    overdue_task_list: List[TaskBrief]


class FacilityInfo(CamelModel):
    id: str
    name: str
    owner_id: Optional[str] = None
    status: Optional[str] = None
    projects: int
    members_count: int


class FacilityReport(CamelModel):
    meta: ReportMeta
    facility: FacilityInfo
    kpis: FacilityKPIs
    charts: Dict[str, Any]
    members: List[MemberSummary]
    insights: List[Insight]


# Member
class MemberProfile(CamelModel):
    id: str
    name: str
    avatar_url: Optional[str] = None
    email: Optional[str] = None
    facility_id: Optional[str] = None
    facility_name: Optional[str] = None
    role: str = "member"
    capacity: int = 8
    resolved: bool = True


class MemberKPIs(CamelModel):
    total_tasks: int
    ongoing: int
    completed: int
    pending: int
    overdue: int
    upcoming_deadlines: int
    utilization: float
    status: MemberStatus
    trend: int
    unassigned_tasks: Optional[int] = None


class TimelineEntry(CamelModel):
    task_id: str
    title: str
    project_id: Optional[str] = None
    project: str
    start: Optional[str] = None
    end: Optional[str] = None
    status: str
    priority: Optional[str] = None


class MemberReport(CamelModel):
    meta: ReportMeta
    member: MemberProfile
    kpis: MemberKPIs
    charts: Dict[str, Any]
    timeline: List[TimelineEntry]
    insights: List[Insight]


# Export
class ExportResult(CamelModel):
    download_url: str
    filename: str
    expires_at: str
