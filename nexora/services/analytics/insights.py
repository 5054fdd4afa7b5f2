"""
Rule-based insights over assembled analytics payloads.

Rules fire independently, in a fixed order, and the list is cut to
``MAX_INSIGHTS``. When nothing fires a fallback insight is synthesized so
callers always get at least one entry.
"""
from typing import Any, Dict, List


MAX_INSIGHTS = 4

OVERLOAD_UTILIZATION = 100.0
HIGH_UTILIZATION = 90.0
CRITICAL_FACILITY_UTILIZATION = 90.0
LOW_FACILITY_UTILIZATION = 40.0
UNDERUTILIZED_MEMBER = 60.0

INSIGHT_ICONS = {
    "danger": "⚠",
    "warning": "⚠",
    "info": "ℹ",
    "success": "✓",
}

INSIGHT_COLORS = {
    "danger": "#EF4444",
    "warning": "#F59E0B",
    "info": "#3B82F6",
    "success": "#10B981",
}


def insight_icon(insight_type: str) -> str:
    return INSIGHT_ICONS.get(insight_type, INSIGHT_ICONS["info"])


def insight_color(insight_type: str) -> str:
    return INSIGHT_COLORS.get(insight_type, "#6B7280")


def _insight(insight_id: str, insight_type: str, severity: str, message: str, action: str) -> Dict[str, str]:
    return {
        "id": insight_id,
        "type": insight_type,
        "severity": severity,
        "message": message,
        "action": action,
    }


def _pct(value: Any) -> str:
    return f"{float(value or 0):.1f}%"


def _task_totals(members: List[Dict[str, Any]]):
    total = sum(m["tasks"]["total"] for m in members)
    completed = sum(m["tasks"]["completed"] for m in members)
    ongoing = sum(m["tasks"]["ongoing"] for m in members)
    return total, completed, ongoing


def _operations_fallback(ids, subject: str, verb: str, avg: float, member_count: int) -> Dict[str, str]:
    optimal_id, underutilized_id, stable_id = ids
    if 70 <= avg <= 90:
        return _insight(
            optimal_id, "success", "low",
            f"{subject} {verb} optimally with {avg:.1f}% average utilization across {member_count} members.",
            "Continue monitoring and maintain current resource allocation.",
        )
    if avg < 70:
        return _insight(
            underutilized_id, "info", "medium",
            f"{subject} {verb} underutilized with {avg:.1f}% average utilization across {member_count} members.",
            "Consider taking on additional projects or optimizing resource allocation.",
        )
    return _insight(
        stable_id, "success", "low",
        f"{subject} {verb} smoothly with {avg:.1f}% average utilization across {member_count} members.",
        "Continue monitoring and maintain current resource allocation.",
    )


def generate_global_insights(data: Dict[str, Any]) -> List[Dict[str, str]]:
    insights: List[Dict[str, str]] = []
    kpis = data.get("kpis") or {}
    facilities = data.get("facilities") or []
    members = data.get("members") or []

    overloaded = [m for m in members if m["utilization"] >= OVERLOAD_UTILIZATION]
    if overloaded:
        insights.append(_insight(
            "member-overload", "warning", "high",
            f"{len(overloaded)} member(s) are over capacity: "
            + ", ".join(f"{m['name']} ({_pct(m['utilization'])})" for m in overloaded) + ".",
            "Immediately redistribute tasks or increase capacity to prevent burnout.",
        ))

    high = [m for m in members if HIGH_UTILIZATION <= m["utilization"] < OVERLOAD_UTILIZATION]
    if high:
        insights.append(_insight(
            "high-utilization", "warning", "medium",
            f"{len(high)} member(s) approaching capacity limits: "
            + ", ".join(f"{m['name']} ({_pct(m['utilization'])})" for m in high) + ".",
            "Monitor workload closely and prepare for task redistribution.",
        ))

    critical = [f for f in facilities if f["avgUtilization"] >= CRITICAL_FACILITY_UTILIZATION]
    if critical:
        insights.append(_insight(
            "critical-facility", "danger", "critical",
            f"{len(critical)} facility(ies) at critical utilization: "
            + ", ".join(f"{f['name']} ({_pct(f['avgUtilization'])})" for f in critical) + ".",
            "Immediate capacity review and resource reallocation required.",
        ))

    # Facilities without any tasks are idle, not underutilized
    low = [
        f for f in facilities
        if f["avgUtilization"] < LOW_FACILITY_UTILIZATION and f.get("taskCount", 0) > 0
    ]
    if low:
        insights.append(_insight(
            "low-utilization", "info", "medium",
            f"{len(low)} facility(ies) with low utilization: "
            + ", ".join(f"{f['name']} ({_pct(f['avgUtilization'])})" for f in low) + ".",
            "Consider reallocating resources to overloaded facilities or assigning additional projects.",
        ))

    underutilized = [m for m in members if m["utilization"] < UNDERUTILIZED_MEMBER]
    if overloaded and underutilized:
        insights.append(_insight(
            "rebalancing-opportunity", "info", "medium",
            f"Task rebalancing opportunity: {len(overloaded)} overloaded member(s) "
            f"vs {len(underutilized)} underutilized member(s).",
            "Review task distribution and consider moving tasks from overloaded to underutilized members.",
        ))

    total, completed, ongoing = _task_totals(members)
    if total > 0:
        completion_rate = completed / total * 100
        ongoing_rate = ongoing / total * 100
        if completion_rate < 50:
            insights.append(_insight(
                "low-completion-rate", "warning", "medium",
                f"Low overall completion rate: {completion_rate:.1f}% of tasks completed across all facilities.",
                "Review task complexity, deadlines, and resource allocation to improve completion rates.",
            ))
        if ongoing_rate > 40:
            insights.append(_insight(
                "high-ongoing-tasks", "info", "low",
                f"High ongoing task ratio: {ongoing_rate:.1f}% of tasks are in progress.",
                "Monitor task progress and ensure adequate resources for completion.",
            ))

    delta = (kpis.get("delta") or {}).get("avgUtilization") or 0
    if delta > 5:
        insights.append(_insight(
            "increasing-utilization", "warning", "medium",
            f"Overall utilization increased by {delta:.1f}% this period.",
            "Monitor trends and prepare for capacity planning.",
        ))

    if not insights:
        insights.append(_operations_fallback(
            ("optimal-operations", "underutilized-operations", "stable-operations"),
            "Operations", "are running", float(kpis.get("avgUtilization") or 0), len(members),
        ))

    return insights[:MAX_INSIGHTS]


def generate_facility_insights(data: Dict[str, Any]) -> List[Dict[str, str]]:
    insights: List[Dict[str, str]] = []
    kpis = data.get("kpis") or {}
    facility = data.get("facility") or {}
    members = data.get("members") or []
    name = facility.get("name") or "This facility"
    avg = float(kpis.get("avgUtilization") or 0)

    overloaded = [m for m in members if m["utilization"] >= OVERLOAD_UTILIZATION]
    if overloaded:
        insights.append(_insight(
            "facility-overload", "warning", "high",
            f"{len(overloaded)} member(s) in {name} are over capacity: "
            + ", ".join(f"{m['name']} ({_pct(m['utilization'])})" for m in overloaded) + ".",
            "Immediately redistribute tasks or request additional resources to prevent burnout.",
        ))

    high = [m for m in members if HIGH_UTILIZATION <= m["utilization"] < OVERLOAD_UTILIZATION]
    if high:
        insights.append(_insight(
            "facility-high-util", "warning", "medium",
            f"{len(high)} member(s) in {name} approaching capacity: "
            + ", ".join(f"{m['name']} ({_pct(m['utilization'])})" for m in high) + ".",
            "Monitor workload closely and prepare for task redistribution.",
        ))

    if avg >= CRITICAL_FACILITY_UTILIZATION:
        insights.append(_insight(
            "high-facility-util", "danger", "critical",
            f"{name} at critical utilization ({avg:.1f}%) - approaching capacity limits.",
            "Immediate capacity review and resource planning required.",
        ))
    elif avg < LOW_FACILITY_UTILIZATION and (kpis.get("totalTasks") or 0) > 0:
        insights.append(_insight(
            "low-facility-util", "info", "medium",
            f"{name} has low utilization ({avg:.1f}%) - capacity available for additional work.",
            "Consider taking on additional projects or supporting other facilities.",
        ))

    total, completed, ongoing = _task_totals(members)
    if total > 0:
        pending = total - completed - ongoing
        completion_rate = completed / total * 100
        pending_rate = pending / total * 100
        ongoing_rate = ongoing / total * 100
        if pending_rate > 30:
            insights.append(_insight(
                "high-pending-tasks", "warning", "medium",
                f"{pending} pending tasks ({pending_rate:.1f}% of total) in {name}.",
                "Review task prioritization and resource allocation to improve task flow.",
            ))
        if completion_rate < 60:
            insights.append(_insight(
                "low-completion-rate", "warning", "medium",
                f"Low completion rate in {name}: {completion_rate:.1f}% of tasks completed.",
                "Review task complexity, deadlines, and provide additional support to improve completion rates.",
            ))
        if ongoing_rate > 50:
            insights.append(_insight(
                "high-ongoing-tasks", "info", "low",
                f"{ongoing_rate:.1f}% of tasks in {name} are in progress.",
                "Monitor task progress and ensure adequate resources for completion.",
            ))

    if not insights:
        insights.append(_operations_fallback(
            ("facility-optimal", "facility-underutilized", "facility-stable"),
            name, "is operating", avg, len(members),
        ))

    return insights[:MAX_INSIGHTS]


def generate_member_insights(data: Dict[str, Any]) -> List[Dict[str, str]]:
    insights: List[Dict[str, str]] = []
    kpis = data.get("kpis") or {}
    member = data.get("member") or {}
    name = member.get("name") or "This member"
    utilization = float(kpis.get("utilization") or 0)
    trend = kpis.get("trend") or 0
    total = kpis.get("totalTasks") or 0

    if utilization >= OVERLOAD_UTILIZATION:
        insights.append(_insight(
            "member-overload", "danger", "critical",
            f"{name} is at {utilization:.1f}% utilization - risk of burnout.",
            "Immediately redistribute tasks or reduce workload to prevent burnout.",
        ))
    elif utilization >= HIGH_UTILIZATION:
        insights.append(_insight(
            "member-high-util", "warning", "high",
            f"{name} utilization at {utilization:.1f}% - approaching capacity limits.",
            "Monitor workload closely and consider task redistribution.",
        ))
    elif utilization < 40 and total > 0:
        insights.append(_insight(
            "member-low-util", "info", "low",
            f"{name} has low utilization ({utilization:.1f}%) - capacity available for additional tasks.",
            "Consider assigning additional tasks or responsibilities to optimize productivity.",
        ))

    if trend > 10:
        insights.append(_insight(
            "increasing-workload", "warning", "medium",
            f"{name}'s completed work increased by {trend}% this period.",
            "Review recent task assignments and workload distribution.",
        ))
    elif trend < -10:
        insights.append(_insight(
            "decreasing-workload", "info", "low",
            f"{name}'s completed work decreased by {abs(trend)}% this period.",
            "Check for blockers and consider rebalancing assignments.",
        ))

    if total > 0:
        completion_rate = (kpis.get("completed") or 0) / total * 100
        ongoing_rate = (kpis.get("ongoing") or 0) / total * 100
        if completion_rate >= 90:
            insights.append(_insight(
                "high-completion-rate", "success", "low",
                f"{name} has excellent task completion rate ({completion_rate:.1f}%).",
                "Consider for additional responsibilities or leadership opportunities.",
            ))
        elif completion_rate < 60:
            insights.append(_insight(
                "low-completion-rate", "warning", "medium",
                f"{name} has low task completion rate ({completion_rate:.1f}%).",
                "Review task complexity and provide additional support or training.",
            ))
        if ongoing_rate > 50:
            insights.append(_insight(
                "high-ongoing-tasks", "info", "low",
                f"{name} has many ongoing tasks ({ongoing_rate:.1f}% of total).",
                "Monitor task progress and ensure adequate time for completion.",
            ))

    if not insights:
        insights.append(_insight(
            "stable-performance", "success", "low",
            f"{name} is performing well with balanced workload and good task completion.",
            "Continue current task allocation and monitor performance.",
        ))

    return insights[:MAX_INSIGHTS]
