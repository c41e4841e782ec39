from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.resource_models import Report
from services.errors import Forbidden, NotFound, ValidationFailed
from services.user_access_service import REPORT_ROLES, Actor


REPORT_STATES = {"pending", "in_progress", "resolved"}
PRIORITIES = {"low", "medium", "high"}
CATEGORIES = {"hardware", "software", "network", "peripheral", "other"}


def create_report(
    db: Session,
    actor: Actor,
    *,
    machine_number: str,
    title: str,
    description: str,
    priority: str = "medium",
    category: str = "other",
    now: datetime,
) -> Report:
    if actor.role not in REPORT_ROLES:
        raise Forbidden("Only administrators and teachers can file reports.")
    if priority not in PRIORITIES:
        raise ValidationFailed(f"Unknown priority '{priority}'.")
    if category not in CATEGORIES:
        raise ValidationFailed(f"Unknown category '{category}'.")

    report = Report(
        UserID=actor.user_id,
        MachineNumber=machine_number.strip(),
        Title=title.strip(),
        Description=description.strip(),
        Priority=priority,
        Category=category,
        State="pending",
        TechnicianComment="",
        CreatedDate=now,
        UpdatedDate=now,
    )
    db.add(report)
    db.flush()
    return report


def list_reports(db: Session, *, state: str | None = None, user_id: int | None = None) -> list[Report]:
    stmt = select(Report).order_by(Report.CreatedDate.desc(), Report.ReportID.desc())
    if state:
        if state not in REPORT_STATES:
            raise ValidationFailed(f"Unknown report state '{state}'.")
        stmt = stmt.where(Report.State == state)
    if user_id is not None:
        stmt = stmt.where(Report.UserID == user_id)
    return list(db.execute(stmt).scalars().all())


def set_report_state(
    db: Session,
    report_id: int,
    state: str,
    now: datetime,
    technician_comment: str | None = None,
) -> Report:
    report = db.get(Report, report_id)
    if not report:
        raise NotFound("Report", report_id)
    if state not in REPORT_STATES:
        raise ValidationFailed(f"Unknown report state '{state}'.")
    report.State = state
    if technician_comment is not None:
        report.TechnicianComment = technician_comment.strip()
    report.ResolvedAt = now if state == "resolved" else None
    report.UpdatedDate = now
    return report


def serialize_report(report: Report) -> dict:
    return {
        "id": report.ReportID,
        "userId": report.UserID,
        "machineNumber": report.MachineNumber,
        "title": report.Title,
        "description": report.Description,
        "priority": report.Priority,
        "category": report.Category,
        "state": report.State,
        "technicianComment": report.TechnicianComment or "",
        "resolvedAt": report.ResolvedAt,
        "createdAt": report.CreatedDate,
    }
