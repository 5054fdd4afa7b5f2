"""
Downloadable analytics reports.

A report payload is rendered twice from one context: to HTML through the
Jinja2 templates (the preview/``format=html`` path) and to PDF through
reportlab platypus. Files land in a per-requester folder of the export
directory and expire after ``ttl_hours``; expired files are swept on every
export.
"""
import hashlib
import io
import os
import re
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import structlog
from jinja2 import Environment, FileSystemLoader, select_autoescape
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFont
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle
from slugify import slugify

from ...utils.dates import format_date, format_time_range, isoformat, utcnow
from .errors import AnalyticsError
from .insights import insight_color, insight_icon


logger = structlog.get_logger(__name__)

TEMPLATES_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "templates")
SCOPES = ("global", "facility", "member")
FILENAME_RE = re.compile(r"^[a-z0-9][a-z0-9\-]*\.pdf$")

BRAND_COLOR = "#6366F1"
MUTED_COLOR = "#6B7280"
STATUS_COLORS = {
    "overloaded": "#EF4444",
    "critical": "#EF4444",
    "caution": "#F59E0B",
    "balanced": "#10B981",
    "normal": "#10B981",
    "low": "#3B82F6",
}


def _register_fonts(font_dir: Optional[str]):
    """Prefer DejaVu from ``font_dir`` for wider glyph coverage, else the built-ins."""
    if font_dir:
        regular = os.path.join(font_dir, "DejaVuSans.ttf")
        bold = os.path.join(font_dir, "DejaVuSans-Bold.ttf")
        if os.path.exists(regular) and os.path.exists(bold):
            pdfmetrics.registerFont(TTFont("DejaVuSans", regular))
            pdfmetrics.registerFont(TTFont("DejaVuSans-Bold", bold))
            return "DejaVuSans", "DejaVuSans-Bold"
    return "Helvetica", "Helvetica-Bold"


def status_color(status: Optional[str]) -> str:
    return STATUS_COLORS.get((status or "").lower(), MUTED_COLOR)


def build_export_filename(scope: str, subject: Optional[str], range_token: str, now: datetime) -> str:
    """``nexora-analytics-{scope}-{slug}-{range}-{YYYY-MM-DD}.pdf``; global reports use ``analytics`` as the slug."""
    slug = "analytics" if scope == "global" else (slugify(subject or "") or "report")
    return f"nexora-analytics-{scope}-{slug}-{range_token}-{now.strftime('%Y-%m-%d')}.pdf"


class ExportService:
    def __init__(
        self,
        export_dir: str,
        *,
        ttl_hours: int = 24,
        brand: str = "Nexora",
        base_url: str = "",
        font_dir: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.export_dir = Path(export_dir)
        self.ttl = timedelta(hours=ttl_hours)
        self.brand = brand
        self.base_url = base_url.rstrip("/")
        self.font_dir = font_dir
        self.clock = clock
        self.env = Environment(
            loader=FileSystemLoader(TEMPLATES_DIR),
            autoescape=select_autoescape(["html", "j2"]),
        )
        self.env.filters["date"] = format_date
        self.env.filters["pct"] = lambda v: f"{float(v or 0):.1f}%"
        self.env.globals.update(insight_icon=insight_icon, insight_color=insight_color, status_color=status_color)

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------

    def _subject_name(self, scope: str, report: Dict[str, Any]) -> Optional[str]:
        if scope == "facility":
            return (report.get("facility") or {}).get("name")
        if scope == "member":
            return (report.get("member") or {}).get("name")
        return None

    def build_context(self, scope: str, report: Dict[str, Any]) -> Dict[str, Any]:
        if scope not in SCOPES:
            raise AnalyticsError(f"Unknown export scope: {scope}")
        meta = report.get("meta") or {}
        now = self.clock()
        range_token = meta.get("range") or "4w"
        subject = self._subject_name(scope, report)
        titles = {
            "global": "Global Analytics Report",
            "facility": f"Facility Report: {subject or 'Unknown facility'}",
            "member": f"Member Report: {subject or 'Unknown member'}",
        }
        return {
            "brand": self.brand,
            "scope": scope,
            "title": titles[scope],
            "subject": subject,
            "range": range_token,
            "period": format_time_range(range_token, now),
            "generated_at": format_date(now),
            "summary": self.summary_text(scope, report),
            "report": report,
            "kpis": report.get("kpis") or {},
            "insights": report.get("insights") or [],
        }

    def summary_text(self, scope: str, report: Dict[str, Any]) -> str:
        kpis = report.get("kpis") or {}
        if scope == "global":
            return (
                f"{kpis.get('activeMembers', 0)} active members across {kpis.get('totalFacilities', 0)} facilities "
                f"averaged {float(kpis.get('avgUtilization') or 0):.1f}% utilization; "
                f"{kpis.get('criticalFacilities', 0)} facilities are at critical load."
            )
        if scope == "facility":
            name = (report.get("facility") or {}).get("name") or "The facility"
            return (
                f"{name} has {kpis.get('totalTasks', 0)} tasks in range at "
                f"{float(kpis.get('avgUtilization') or 0):.1f}% utilization, with "
                f"{kpis.get('overdueTasks', 0)} overdue and {kpis.get('unassignedTasks', 0)} unassigned."
            )
        name = (report.get("member") or {}).get("name") or "The member"
        return (
            f"{name} holds {kpis.get('totalTasks', 0)} tasks at {float(kpis.get('utilization') or 0):.1f}% "
            f"utilization ({kpis.get('status') or 'balanced'}), with a completion trend of {kpis.get('trend', 0)}%."
        )

    # ------------------------------------------------------------------
    # Renderers
    # ------------------------------------------------------------------

    def render_html(self, scope: str, report: Dict[str, Any]) -> str:
        context = self.build_context(scope, report)
        return self.env.get_template(f"{scope}.html.j2").render(**context)

    def _kpi_rows(self, scope: str, kpis: Dict[str, Any]) -> List[List[str]]:
        if scope == "global":
            return [
                ["Active members", str(kpis.get("activeMembers", 0))],
                ["Facilities", str(kpis.get("totalFacilities", 0))],
                ["Average utilization", f"{float(kpis.get('avgUtilization') or 0):.1f}%"],
                ["Critical facilities", str(kpis.get("criticalFacilities", 0))],
                ["Overloaded members", str(kpis.get("overloadedMembers", 0))],
                ["Tasks", str(kpis.get("totalTasks", 0))],
            ]
        if scope == "facility":
            return [
                ["Active members", str(kpis.get("activeMembers", 0))],
                ["Average utilization", f"{float(kpis.get('avgUtilization') or 0):.1f}%"],
                ["Tasks", str(kpis.get("totalTasks", 0))],
                ["Completed", str(kpis.get("completedTasks", 0))],
                ["Pending", str(kpis.get("pendingTasks", 0))],
                ["Overdue", str(kpis.get("overdueTasks", 0))],
                ["Unassigned", str(kpis.get("unassignedTasks", 0))],
            ]
        return [
            ["Utilization", f"{float(kpis.get('utilization') or 0):.1f}%"],
            ["Status", str(kpis.get("status") or "-").title()],
            ["Tasks", str(kpis.get("totalTasks", 0))],
            ["Completed", str(kpis.get("completed", 0))],
            ["Ongoing", str(kpis.get("ongoing", 0))],
            ["Overdue", str(kpis.get("overdue", 0))],
            ["Trend", f"{kpis.get('trend', 0)}%"],
        ]

    def build_pdf(self, scope: str, report: Dict[str, Any]) -> bytes:
        context = self.build_context(scope, report)
        font_name, font_bold = _register_fonts(self.font_dir)

        styles = getSampleStyleSheet()
        title_style = ParagraphStyle("ReportTitle", parent=styles["Normal"],
            fontName=font_bold, fontSize=18, leading=22, textColor=colors.HexColor(BRAND_COLOR), spaceAfter=4)
        meta_style = ParagraphStyle("ReportMeta", parent=styles["Normal"],
            fontName=font_name, fontSize=9, textColor=colors.HexColor(MUTED_COLOR), spaceAfter=12)
        heading_style = ParagraphStyle("SectionHeading", parent=styles["Normal"],
            fontName=font_bold, fontSize=12, leading=16, spaceBefore=10, spaceAfter=6)
        body_style = ParagraphStyle("Body", parent=styles["Normal"], fontName=font_name, fontSize=9, leading=12)

        buf = io.BytesIO()
        doc = SimpleDocTemplate(
            buf, pagesize=A4,
            leftMargin=20 * mm, rightMargin=20 * mm, topMargin=20 * mm, bottomMargin=20 * mm,
            title=context["title"], author=self.brand,
        )
        story: List[Any] = [
            Paragraph(_escape(f"{self.brand} · {context['title']}"), title_style),
            Paragraph(f"Period: {context['period']} ({context['range']}) · Generated {context['generated_at']}", meta_style),
            Paragraph("Executive summary", heading_style),
            Paragraph(_escape(context["summary"]), body_style),
            Paragraph("Key metrics", heading_style),
        ]

        kpi_table = Table(self._kpi_rows(scope, context["kpis"]), colWidths=[70 * mm, 40 * mm], hAlign="LEFT")
        kpi_table.setStyle(TableStyle([
            ("FONTNAME", (0, 0), (-1, -1), font_name),
            ("FONTNAME", (1, 0), (1, -1), font_bold),
            ("FONTSIZE", (0, 0), (-1, -1), 9),
            ("ROWBACKGROUNDS", (0, 0), (-1, -1), [colors.white, colors.HexColor("#F3F4F6")]),
            ("BOTTOMPADDING", (0, 0), (-1, -1), 4),
        ]))
        story.append(kpi_table)

        facilities = report.get("facilities") or []
        if facilities:
            story.append(Paragraph("Facilities", heading_style))
            rows = [["Facility", "Members", "Tasks", "Utilization", "Status"]]
            for f in facilities:
                rows.append([
                    Paragraph(_escape(f.get("name") or "-"), body_style),
                    str(f.get("membersCount", 0)),
                    str(f.get("taskCount", 0)),
                    f"{float(f.get('avgUtilization') or 0):.1f}%",
                    (f.get("status") or "-").title(),
                ])
            table = Table(rows, colWidths=[60 * mm, 25 * mm, 25 * mm, 25 * mm, 25 * mm], repeatRows=1)
            table.setStyle(TableStyle([
                ("FONTNAME", (0, 0), (-1, 0), font_bold),
                ("FONTNAME", (0, 1), (-1, -1), font_name),
                ("FONTSIZE", (0, 0), (-1, -1), 9),
                ("LINEBELOW", (0, 0), (-1, 0), 0.5, colors.HexColor(MUTED_COLOR)),
            ]))
            story.append(table)

        members = report.get("members") or []
        if members:
            story.append(Paragraph("Members", heading_style))
            rows = [["Member", "Facility", "Tasks", "Utilization", "Status"]]
            for m in members:
                rows.append([
                    Paragraph(_escape(m.get("name") or "-"), body_style),
                    Paragraph(_escape(m.get("facilityName") or "-"), body_style),
                    str((m.get("tasks") or {}).get("total", 0)),
                    f"{float(m.get('utilization') or 0):.1f}%",
                    (m.get("status") or "-").title(),
                ])
            table = Table(rows, colWidths=[45 * mm, 45 * mm, 20 * mm, 25 * mm, 25 * mm], repeatRows=1)
            commands = [
                ("FONTNAME", (0, 0), (-1, 0), font_bold),
                ("FONTNAME", (0, 1), (-1, -1), font_name),
                ("FONTSIZE", (0, 0), (-1, -1), 9),
                ("LINEBELOW", (0, 0), (-1, 0), 0.5, colors.HexColor(MUTED_COLOR)),
                ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
            ]
            for i, m in enumerate(members, start=1):
                commands.append(("TEXTCOLOR", (4, i), (4, i), colors.HexColor(status_color(m.get("status")))))
            table.setStyle(TableStyle(commands))
            story.append(table)

        timeline = report.get("timeline") or []
        if timeline:
            story.append(Paragraph("Recent tasks", heading_style))
            rows = [["Task", "Project", "Due", "Status"]]
            for item in timeline:
                rows.append([
                    Paragraph(_escape(item.get("title") or "-"), body_style),
                    Paragraph(_escape(item.get("project") or "No Project"), body_style),
                    format_date(item.get("end")),
                    item.get("status") or "-",
                ])
            table = Table(rows, colWidths=[65 * mm, 45 * mm, 25 * mm, 25 * mm], repeatRows=1)
            table.setStyle(TableStyle([
                ("FONTNAME", (0, 0), (-1, 0), font_bold),
                ("FONTNAME", (0, 1), (-1, -1), font_name),
                ("FONTSIZE", (0, 0), (-1, -1), 9),
                ("LINEBELOW", (0, 0), (-1, 0), 0.5, colors.HexColor(MUTED_COLOR)),
            ]))
            story.append(table)

        story.append(Paragraph("Insights", heading_style))
        for insight in context["insights"]:
            color = insight_color(insight.get("type"))
            story.append(Paragraph(
                f"<font color='{color}'><b>{(insight.get('severity') or '').upper()}</b></font> "
                f"{_escape(insight.get('message'))}",
                body_style,
            ))
            story.append(Paragraph(f"<i>{_escape(insight.get('action'))}</i>", body_style))
            story.append(Spacer(1, 4))

        def _footer(canvas, doc_):
            canvas.saveState()
            canvas.setFont(font_name, 7)
            canvas.setFillColor(colors.HexColor(MUTED_COLOR))
            canvas.drawString(20 * mm, 10 * mm, f"{self.brand} analytics · Confidential · Generated {context['generated_at']}")
            canvas.drawRightString(A4[0] - 20 * mm, 10 * mm, f"Page {doc_.page}")
            canvas.restoreState()

        doc.build(story, onFirstPage=_footer, onLaterPages=_footer)
        return buf.getvalue()

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def owner_dir(self, owner_id: str) -> Path:
        """Per-requester folder; downloads only ever resolve inside the caller's own."""
        digest = hashlib.sha256(str(owner_id).encode()).hexdigest()[:24]
        return self.export_dir / digest

    def purge_expired(self) -> int:
        if not self.export_dir.exists():
            return 0
        cutoff = self.clock() - self.ttl
        removed = 0
        for path in list(self.export_dir.rglob("*")):
            if not path.is_file():
                continue
            modified = datetime.fromtimestamp(path.stat().st_mtime, tz=cutoff.tzinfo)
            if modified < cutoff:
                path.unlink()
                removed += 1
        if removed:
            logger.info("analytics_exports_purged", count=removed)
        return removed

    def export(self, scope: str, report: Dict[str, Any], owner_id: str) -> Dict[str, Any]:
        self.purge_expired()
        folder = self.owner_dir(owner_id)
        folder.mkdir(parents=True, exist_ok=True)

        now = self.clock()
        range_token = (report.get("meta") or {}).get("range") or "4w"
        filename = build_export_filename(scope, self._subject_name(scope, report), range_token, now)
        content = self.build_pdf(scope, report)

        path = folder / filename
        path.write_bytes(content)
        # Expiry is judged against the service clock, so stamp the file with it
        os.utime(path, (now.timestamp(), now.timestamp()))
        logger.info("analytics_export_written", scope=scope, filename=filename, owner_id=owner_id, size=len(content))
        return {
            "downloadUrl": f"{self.base_url}/analytics/exports/{filename}",
            "filename": filename,
            "expiresAt": isoformat(now + self.ttl),
        }

    def resolve_download(self, filename: str, owner_id: str) -> Optional[Path]:
        """Path of a live export owned by ``owner_id``, or None for foreign, unknown, expired or malformed names."""
        if not FILENAME_RE.match(filename or ""):
            return None
        path = self.owner_dir(owner_id) / filename
        if not path.is_file():
            return None
        modified = datetime.fromtimestamp(path.stat().st_mtime, tz=self.clock().tzinfo)
        if modified < self.clock() - self.ttl:
            return None
        return path


def _escape(value: Any) -> str:
    text = str(value or "")
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
