from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models.resource_models import Loan, Tool
from services.errors import InsufficientStock, InvalidOperation, InvalidState, NotFound


LOGGER = logging.getLogger("campus_resources.inventory")

# Loans still holding (or about to claim) units of a tool.
OPEN_LOAN_STATES = {"pending", "fulfilled", "overdue"}


def _check_bounds(tool: Tool, total: int, available: int) -> None:
    if total < 0:
        raise InvalidOperation(f"Stock total for tool {tool.ToolID} cannot become negative.")
    if available > total:
        raise InvalidOperation(f"Available stock for tool {tool.ToolID} cannot exceed its total.")


def adjust_stock(tool: Tool, delta: int, now: datetime | None = None) -> Tool:
    """Manual admin increase/decrease of a tool's stock.

    Both counters move by ``delta``. A decrease is limited to the units
    currently on the shelf; units out on loan cannot be written off here.
    """
    delta = int(delta)
    total = int(tool.StockTotal or 0) + delta
    available = int(tool.StockAvailable or 0) + delta
    if available < 0:
        raise InsufficientStock(tool.ToolID, -delta, int(tool.StockAvailable or 0))
    available = min(available, total)
    _check_bounds(tool, total, available)

    tool.StockTotal = total
    tool.StockAvailable = available
    tool.UpdatedDate = now or datetime.now()
    LOGGER.info("Stock adjusted tool_id=%s delta=%s total=%s available=%s", tool.ToolID, delta, total, available)
    return tool


def debit(tool: Tool, quantity: int, now: datetime | None = None) -> Tool:
    quantity = int(quantity)
    if quantity < 1:
        raise InvalidOperation("Quantity to debit must be at least 1.")
    available = int(tool.StockAvailable or 0)
    if quantity > available:
        raise InsufficientStock(tool.ToolID, quantity, available)

    tool.StockAvailable = available - quantity
    tool.UpdatedDate = now or datetime.now()
    LOGGER.info("Stock debited tool_id=%s quantity=%s available=%s", tool.ToolID, quantity, tool.StockAvailable)
    return tool


def credit(tool: Tool, quantity: int, now: datetime | None = None) -> Tool:
    quantity = int(quantity)
    if quantity < 1:
        raise InvalidOperation("Quantity to credit must be at least 1.")
    total = int(tool.StockTotal or 0)
    restored = int(tool.StockAvailable or 0) + quantity
    if restored > total:
        LOGGER.warning("Stock credit clamped tool_id=%s quantity=%s total=%s", tool.ToolID, quantity, total)
        restored = total

    tool.StockAvailable = restored
    tool.UpdatedDate = now or datetime.now()
    LOGGER.info("Stock credited tool_id=%s quantity=%s available=%s", tool.ToolID, quantity, restored)
    return tool


def get_tool_or_404(db: Session, tool_id: int) -> Tool:
    tool = db.get(Tool, tool_id)
    if not tool:
        raise NotFound("Tool", tool_id)
    return tool


def lock_tool(db: Session, tool_id: int) -> Tool:
    """Fresh read of the tool row under ``FOR UPDATE`` where supported.

    Pending changes are flushed first so the refresh cannot discard them.
    """
    db.flush()
    tool = db.execute(
        select(Tool)
        .where(Tool.ToolID == tool_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalars().first()
    if not tool:
        raise NotFound("Tool", tool_id)
    return tool


def create_tool(
    db: Session,
    *,
    name: str,
    category: str,
    stock_total: int,
    description: str | None = None,
    location: str | None = None,
    now: datetime | None = None,
) -> Tool:
    if int(stock_total) < 0:
        raise InvalidOperation("stockTotal cannot be negative.")
    timestamp = now or datetime.now()
    tool = Tool(
        ToolName=name.strip(),
        Category=category.strip(),
        Description=description or "",
        StockTotal=int(stock_total),
        StockAvailable=int(stock_total),
        Location=location or "",
        CreatedDate=timestamp,
        UpdatedDate=timestamp,
    )
    db.add(tool)
    db.flush()
    return tool


def apply_tool_patch(tool: Tool, changes: dict, now: datetime | None = None) -> Tool:
    """Apply only the fields present in ``changes``; a new total goes through the ledger."""
    if changes.get("stockTotal") is not None:
        delta = int(changes["stockTotal"]) - int(tool.StockTotal or 0)
        if delta:
            adjust_stock(tool, delta, now)
    if "name" in changes and changes["name"]:
        tool.ToolName = str(changes["name"]).strip()
    if "category" in changes and changes["category"]:
        tool.Category = str(changes["category"]).strip()
    if "description" in changes:
        tool.Description = changes["description"] or ""
    if "location" in changes:
        tool.Location = changes["location"] or ""
    tool.UpdatedDate = now or datetime.now()
    return tool


def count_open_loans(db: Session, tool_id: int) -> int:
    return int(
        db.execute(
            select(func.count(Loan.LoanID))
            .where(Loan.ToolID == tool_id)
            .where(Loan.State.in_(OPEN_LOAN_STATES))
        ).scalar()
        or 0
    )


def delete_tool(db: Session, tool: Tool) -> None:
    open_loans = count_open_loans(db, tool.ToolID)
    if open_loans:
        raise InvalidState(
            "tool",
            "in use",
            "delete",
            f"Tool {tool.ToolID} has {open_loans} open loan(s) and cannot be deleted.",
        )
    db.delete(tool)


def serialize_tool(tool: Tool) -> dict:
    return {
        "id": tool.ToolID,
        "name": tool.ToolName,
        "category": tool.Category,
        "description": tool.Description or "",
        "stockTotal": int(tool.StockTotal or 0),
        "stockAvailable": int(tool.StockAvailable or 0),
        "location": tool.Location or "",
        "createdAt": tool.CreatedDate,
        "updatedAt": tool.UpdatedDate,
    }
