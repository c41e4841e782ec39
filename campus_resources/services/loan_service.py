from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from models.resource_models import Loan
from services.errors import Forbidden, InsufficientStock, InvalidState, NotFound, ValidationFailed
from services.inventory_ledger import credit, debit, get_tool_or_404, lock_tool
from services.user_access_service import Actor


LOGGER = logging.getLogger("campus_resources.loans")

STATE_ALIASES = {
    "approved": "fulfilled",
}
LOAN_STATES = {"pending", "fulfilled", "overdue", "rejected", "cancelled", "returned"}
HOLDING_STATES = {"fulfilled", "overdue"}
STATE_TRANSITIONS = {
    "pending": {"fulfilled", "rejected", "cancelled"},
    "fulfilled": {"overdue", "returned"},
    "overdue": {"returned"},
    "rejected": set(),
    "cancelled": set(),
    "returned": set(),
}
MAX_LOAN_DAYS = 365


def normalize_state(raw: str | None) -> str:
    state = (raw or "pending").strip().lower()
    return STATE_ALIASES.get(state, state)


def derive_loan_state(loan: Loan, now: datetime) -> str:
    """State as it should be seen at ``now``; never writes."""
    current = normalize_state(loan.State)
    if current == "fulfilled" and loan.ReturnedAt is None and loan.DueAt is not None and loan.DueAt < now:
        return "overdue"
    return current


def apply_runtime_state(loan: Loan, now: datetime) -> str:
    derived = derive_loan_state(loan, now)
    if derived != loan.State:
        loan.State = derived
        loan.UpdatedDate = now
    return derived


def _transition_state(loan: Loan, target: str, action: str, now: datetime) -> None:
    current = normalize_state(loan.State)
    if target not in STATE_TRANSITIONS.get(current, set()):
        raise InvalidState("loan", current, action)
    loan.State = target
    loan.UpdatedDate = now


def get_loan_or_404(db: Session, loan_id: int, now: datetime) -> Loan:
    loan = db.get(Loan, loan_id)
    if not loan:
        raise NotFound("Loan", loan_id)
    apply_runtime_state(loan, now)
    return loan


def _reload_loan(db: Session, loan_id: int) -> Loan:
    loan = db.execute(
        select(Loan).where(Loan.LoanID == loan_id).execution_options(populate_existing=True)
    ).scalars().first()
    if not loan:
        raise NotFound("Loan", loan_id)
    return loan


def get_loan_for_actor(db: Session, loan_id: int, actor: Actor, now: datetime) -> Loan:
    loan = get_loan_or_404(db, loan_id, now)
    if not actor.is_admin and not actor.owns(loan.UserID):
        raise Forbidden("You do not have permission to view this loan.")
    return loan


def mark_overdue_loans(db: Session, now: datetime, user_id: int | None = None) -> int:
    stmt = (
        select(Loan)
        .where(Loan.State == "fulfilled")
        .where(Loan.ReturnedAt.is_(None))
        .where(Loan.DueAt < now)
    )
    if user_id is not None:
        stmt = stmt.where(Loan.UserID == user_id)
    changed = 0
    for loan in db.execute(stmt).scalars().all():
        if apply_runtime_state(loan, now) == "overdue":
            changed += 1
    if changed:
        db.flush()
        LOGGER.info("Loans marked overdue count=%s", changed)
    return changed


def list_loans(db: Session, now: datetime, *, state: str | None = None, user_id: int | None = None) -> list[Loan]:
    mark_overdue_loans(db, now, user_id=user_id)
    stmt = select(Loan).options(selectinload(Loan.Tool)).order_by(Loan.RequestedAt.desc(), Loan.LoanID.desc())
    if state:
        normalized = normalize_state(state)
        if normalized not in LOAN_STATES:
            raise ValidationFailed(f"Unknown loan state '{state}'.")
        stmt = stmt.where(Loan.State == normalized)
    if user_id is not None:
        stmt = stmt.where(Loan.UserID == user_id)
    return list(db.execute(stmt).scalars().all())


def request_loan(
    db: Session,
    actor: Actor,
    *,
    tool_id: int,
    quantity: int,
    days_to_loan: int,
    observations: str | None,
    now: datetime,
) -> Loan:
    quantity = int(quantity)
    days_to_loan = int(days_to_loan)
    if quantity < 1:
        raise ValidationFailed("quantity must be at least 1.")
    if days_to_loan < 1 or days_to_loan > MAX_LOAN_DAYS:
        raise ValidationFailed(f"daysToLoan must be between 1 and {MAX_LOAN_DAYS}.")

    tool = get_tool_or_404(db, tool_id)
    # Early rejection only; units are claimed at approval.
    available = int(tool.StockAvailable or 0)
    if quantity > available:
        raise InsufficientStock(tool.ToolID, quantity, available)

    loan = Loan(
        UserID=actor.user_id,
        ToolID=tool.ToolID,
        Quantity=quantity,
        State="pending",
        RequestedAt=now,
        DueAt=now + timedelta(days=days_to_loan),
        Observations=(observations or "").strip(),
        UpdatedDate=now,
    )
    loan.Tool = tool
    db.add(loan)
    db.flush()
    LOGGER.info("Loan requested loan_id=%s user_id=%s tool_id=%s quantity=%s", loan.LoanID, actor.user_id, tool.ToolID, quantity)
    return loan


def approve_loan(db: Session, loan_id: int, actor: Actor, now: datetime) -> Loan:
    loan = get_loan_or_404(db, loan_id, now)
    tool = lock_tool(db, loan.ToolID)
    # Re-read under the tool lock; a racing approval may already have committed.
    loan = _reload_loan(db, loan_id)
    available = int(tool.StockAvailable or 0)
    if loan.Quantity > available:
        raise InsufficientStock(tool.ToolID, loan.Quantity, available)
    current = normalize_state(loan.State)
    if current != "pending":
        raise InvalidState("loan", current, "approve")
    debit(tool, loan.Quantity, now)

    _transition_state(loan, "fulfilled", "approve", now)
    loan.FulfilledAt = now
    apply_runtime_state(loan, now)
    LOGGER.info("Loan approved loan_id=%s by=%s tool_id=%s quantity=%s", loan.LoanID, actor.user_id, tool.ToolID, loan.Quantity)
    return loan


def reject_loan(db: Session, loan_id: int, reason: str | None, actor: Actor, now: datetime) -> Loan:
    loan = get_loan_or_404(db, loan_id, now)
    _transition_state(loan, "rejected", "reject", now)
    loan.RejectionReason = (reason or "").strip()
    LOGGER.info("Loan rejected loan_id=%s by=%s", loan.LoanID, actor.user_id)
    return loan


def cancel_loan(db: Session, loan_id: int, actor: Actor, now: datetime) -> Loan:
    loan = get_loan_or_404(db, loan_id, now)
    if not actor.is_admin and not actor.owns(loan.UserID):
        raise Forbidden("You do not have permission to cancel this loan.")
    # Nothing to credit: stock is only debited at approval.
    _transition_state(loan, "cancelled", "cancel", now)
    LOGGER.info("Loan cancelled loan_id=%s by=%s", loan.LoanID, actor.user_id)
    return loan


def return_loan(db: Session, loan_id: int, actor: Actor, now: datetime) -> Loan:
    loan = get_loan_or_404(db, loan_id, now)
    current = normalize_state(loan.State)
    if current not in HOLDING_STATES:
        raise InvalidState("loan", current, "return")
    tool = lock_tool(db, loan.ToolID)
    credit(tool, loan.Quantity, now)

    _transition_state(loan, "returned", "return", now)
    loan.ReturnedAt = now
    LOGGER.info("Loan returned loan_id=%s by=%s tool_id=%s quantity=%s", loan.LoanID, actor.user_id, tool.ToolID, loan.Quantity)
    return loan


def serialize_loan(loan: Loan, now: datetime) -> dict:
    tool = loan.Tool
    return {
        "id": loan.LoanID,
        "userId": loan.UserID,
        "toolId": loan.ToolID,
        "quantity": loan.Quantity,
        "state": derive_loan_state(loan, now),
        "requestedAt": loan.RequestedAt,
        "fulfilledAt": loan.FulfilledAt,
        "dueAt": loan.DueAt,
        "returnedAt": loan.ReturnedAt,
        "rejectionReason": loan.RejectionReason,
        "observations": loan.Observations or "",
        "tool": {
            "id": tool.ToolID,
            "name": tool.ToolName,
            "category": tool.Category,
            "location": tool.Location or "",
        } if tool else None,
    }
