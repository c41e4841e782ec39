import logging
from datetime import date, datetime
from pathlib import Path
from typing import Callable, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError
from starlette.exceptions import HTTPException as StarletteHTTPException

from app_config import AppConfig, load_config
from db.base import Base
from db.deps import get_resource_db
from db.session import build_engine, build_session_factory
from models.resource_models import Tool
from schemas.loans import CreateLoanDto, RejectLoanRequest
from schemas.reports import CreateReportDto, ReportStatePatch
from schemas.reservations import CreateReservationDto, ReservationStateRequest
from schemas.rooms import RoomActiveRequest, RoomCreate
from schemas.tools import StockAdjustRequest, ToolCreate, ToolPatch
from services.audit_service import enqueue_notification, list_pending_notifications, log_audit
from services.concurrency import commit_with_retry
from services.errors import DomainError
from services.inventory_ledger import (
    adjust_stock,
    apply_tool_patch,
    create_tool,
    delete_tool,
    get_tool_or_404,
    lock_tool,
    serialize_tool,
)
from services.loan_service import (
    approve_loan,
    cancel_loan,
    get_loan_for_actor,
    list_loans,
    reject_loan,
    request_loan,
    return_loan,
    serialize_loan,
)
from services.report_service import create_report, list_reports, serialize_report, set_report_state
from services.reservation_service import (
    cancel_reservation,
    create_reservation,
    list_reservations,
    room_day_reservations,
    serialize_reservation,
    set_reservation_state,
)
from services.room_service import create_room, get_room_or_404, list_active_rooms, serialize_room, set_room_active
from services.user_access_service import Actor, actor_from_session, extract_bearer_token, get_session

APP_LOGGER = logging.getLogger("campus_resources.app")
AUTH_LOGGER = logging.getLogger("campus_resources.auth")

HTTP_ERROR_CODES = {
    401: "Unauthorized",
    403: "Forbidden",
    404: "NotFound",
    405: "MethodNotAllowed",
    503: "Unavailable",
}

router = APIRouter()


def _ok(data=None, message: str | None = None) -> dict:
    body: dict = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return body


def _error_response(status_code: int, message: str, error: str, headers: dict | None = None, **extra) -> JSONResponse:
    content = {"success": False, "message": message, "error": error}
    content.update(extra)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(content), headers=headers)


def _now(request: Request) -> datetime:
    return request.app.state.clock()


def _write(request: Request, db: Session, operation: Callable, label: str, retry_on: tuple = (StaleDataError,)):
    return commit_with_retry(
        db,
        operation,
        attempts=request.app.state.config.write_retry_attempts,
        retry_on=retry_on,
        label=label,
    )


def current_actor(
    request: Request,
    authorization: str | None = Header(None),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
) -> Actor:
    token = extract_bearer_token(authorization, x_session_token)
    if not token:
        raise HTTPException(status_code=401, detail="Not logged in.")
    actor = actor_from_session(get_session(token, request.app.state.config.session_secret_bytes))
    if actor is None:
        AUTH_LOGGER.info("Rejected session token path=%s", request.url.path)
        raise HTTPException(status_code=401, detail="Invalid or expired session.")
    return actor


def require_admin(actor: Actor = Depends(current_actor)) -> Actor:
    if not actor.is_admin:
        raise HTTPException(status_code=403, detail="Admin role required.")
    return actor


@router.get("/healthz")
def healthcheck():
    return _ok({"status": "ok"})


@router.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_resource_db)):
    try:
        db.execute(text("SELECT 1"))
        return _ok({"status": "ok"})
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


# --- tools -------------------------------------------------------------------


@router.get("/tools")
def get_tools(db: Session = Depends(get_resource_db)):
    tools = db.execute(select(Tool).order_by(Tool.ToolName, Tool.ToolID)).scalars().all()
    return _ok([serialize_tool(tool) for tool in tools])


@router.get("/tools/{tool_id}")
def get_tool(tool_id: int, db: Session = Depends(get_resource_db)):
    return _ok(serialize_tool(get_tool_or_404(db, tool_id)))


@router.post("/tools", status_code=201)
def create_tool_route(
    payload: ToolCreate,
    request: Request,
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_resource_db),
):
    now = _now(request)

    def operation():
        tool = create_tool(
            db,
            name=payload.name,
            category=payload.category,
            stock_total=payload.stockTotal,
            description=payload.description,
            location=payload.location,
            now=now,
        )
        log_audit(db, "Tool", tool.ToolID, "Create", f"stockTotal={tool.StockTotal}", user_id=actor.user_id, now=now)
        return serialize_tool(tool)

    return _ok(_write(request, db, operation, "create tool"), "Tool created")


@router.put("/tools/{tool_id}")
def update_tool_route(
    tool_id: int,
    payload: ToolPatch,
    request: Request,
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_resource_db),
):
    now = _now(request)
    changes = payload.model_dump(exclude_unset=True)

    def operation():
        tool = lock_tool(db, tool_id) if changes.get("stockTotal") is not None else get_tool_or_404(db, tool_id)
        apply_tool_patch(tool, changes, now)
        log_audit(db, "Tool", tool.ToolID, "Update", f"fields={','.join(sorted(changes))}", user_id=actor.user_id, now=now)
        return serialize_tool(tool)

    return _ok(_write(request, db, operation, "update tool"), "Tool updated")


@router.delete("/tools/{tool_id}")
def delete_tool_route(
    tool_id: int,
    request: Request,
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_resource_db),
):
    now = _now(request)

    def operation():
        tool = get_tool_or_404(db, tool_id)
        delete_tool(db, tool)
        log_audit(db, "Tool", tool_id, "Delete", f"name={tool.ToolName}", user_id=actor.user_id, now=now)
        return {"id": tool_id}

    return _ok(_write(request, db, operation, "delete tool"), "Tool deleted")


@router.patch("/tools/{tool_id}/stock")
def adjust_tool_stock(
    tool_id: int,
    payload: StockAdjustRequest,
    request: Request,
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_resource_db),
):
    now = _now(request)
    delta = payload.amount if payload.operation == "increase" else -payload.amount

    def operation():
        tool = lock_tool(db, tool_id)
        adjust_stock(tool, delta, now)
        log_audit(
            db,
            "Tool",
            tool.ToolID,
            "StockIncrease" if delta > 0 else "StockDecrease",
            f"amount={payload.amount}; total={tool.StockTotal}; available={tool.StockAvailable}",
            user_id=actor.user_id,
            now=now,
        )
        return serialize_tool(tool)

    return _ok(_write(request, db, operation, "adjust stock"), "Stock updated")


# --- loans -------------------------------------------------------------------


@router.post("/loans", status_code=201)
def create_loan(
    payload: CreateLoanDto,
    request: Request,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_resource_db),
):
    now = _now(request)

    def operation():
        loan = request_loan(
            db,
            actor,
            tool_id=payload.toolId,
            quantity=payload.quantity,
            days_to_loan=payload.daysToLoan,
            observations=payload.observations,
            now=now,
        )
        log_audit(db, "Loan", loan.LoanID, "Request", f"tool={loan.ToolID}; quantity={loan.Quantity}", user_id=actor.user_id, now=now)
        return serialize_loan(loan, now)

    return _ok(_write(request, db, operation, "request loan"), "Loan requested")


@router.get("/loans")
def get_loans(
    request: Request,
    state: Optional[str] = Query(None),
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_resource_db),
):
    now = _now(request)
    data = _write(request, db, lambda: [serialize_loan(loan, now) for loan in list_loans(db, now, state=state)], "list loans")
    return _ok(data)


@router.get("/loans/mine")
def get_my_loans(request: Request, actor: Actor = Depends(current_actor), db: Session = Depends(get_resource_db)):
    now = _now(request)
    data = _write(
        request,
        db,
        lambda: [serialize_loan(loan, now) for loan in list_loans(db, now, user_id=actor.user_id)],
        "list my loans",
    )
    return _ok(data)


@router.get("/loans/{loan_id}")
def get_loan(loan_id: int, request: Request, actor: Actor = Depends(current_actor), db: Session = Depends(get_resource_db)):
    now = _now(request)
    data = _write(request, db, lambda: serialize_loan(get_loan_for_actor(db, loan_id, actor, now), now), "get loan")
    return _ok(data)


@router.patch("/loans/{loan_id}/approve")
def approve_loan_route(
    loan_id: int,
    request: Request,
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_resource_db),
):
    now = _now(request)

    def operation():
        loan = approve_loan(db, loan_id, actor, now)
        log_audit(db, "Loan", loan.LoanID, "Approve", f"quantity={loan.Quantity}; due={loan.DueAt:%Y-%m-%d}", user_id=actor.user_id, now=now)
        enqueue_notification(
            db,
            user_id=loan.UserID,
            entity_type="Loan",
            entity_id=loan.LoanID,
            notification_type="LoanApproved",
            payload=f"Loan {loan.LoanID} approved; return by {loan.DueAt:%Y-%m-%d}.",
            now=now,
        )
        return serialize_loan(loan, now)

    return _ok(_write(request, db, operation, "approve loan"), "Loan approved")


@router.patch("/loans/{loan_id}/reject")
def reject_loan_route(
    loan_id: int,
    request: Request,
    payload: Optional[RejectLoanRequest] = None,
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_resource_db),
):
    now = _now(request)
    reason = payload.reason if payload else None

    def operation():
        loan = reject_loan(db, loan_id, reason, actor, now)
        log_audit(db, "Loan", loan.LoanID, "Reject", loan.RejectionReason or None, user_id=actor.user_id, now=now)
        enqueue_notification(
            db,
            user_id=loan.UserID,
            entity_type="Loan",
            entity_id=loan.LoanID,
            notification_type="LoanRejected",
            payload=f"Loan {loan.LoanID} rejected: {loan.RejectionReason}" if loan.RejectionReason else f"Loan {loan.LoanID} rejected.",
            now=now,
        )
        return serialize_loan(loan, now)

    return _ok(_write(request, db, operation, "reject loan"), "Loan rejected")


@router.patch("/loans/{loan_id}/cancel")
def cancel_loan_route(
    loan_id: int,
    request: Request,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_resource_db),
):
    now = _now(request)

    def operation():
        loan = cancel_loan(db, loan_id, actor, now)
        log_audit(db, "Loan", loan.LoanID, "Cancel", None, user_id=actor.user_id, now=now)
        return serialize_loan(loan, now)

    return _ok(_write(request, db, operation, "cancel loan"), "Loan cancelled")


@router.patch("/loans/{loan_id}/return")
def return_loan_route(
    loan_id: int,
    request: Request,
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_resource_db),
):
    now = _now(request)

    def operation():
        loan = return_loan(db, loan_id, actor, now)
        log_audit(db, "Loan", loan.LoanID, "Return", f"quantity={loan.Quantity}", user_id=actor.user_id, now=now)
        enqueue_notification(
            db,
            user_id=loan.UserID,
            entity_type="Loan",
            entity_id=loan.LoanID,
            notification_type="LoanReturned",
            payload=f"Loan {loan.LoanID} returned.",
            now=now,
        )
        return serialize_loan(loan, now)

    return _ok(_write(request, db, operation, "return loan"), "Loan returned")


# --- rooms -------------------------------------------------------------------


@router.get("/rooms")
def get_rooms(db: Session = Depends(get_resource_db)):
    return _ok([serialize_room(room) for room in list_active_rooms(db)])


@router.get("/rooms/{room_id}")
def get_room(room_id: int, db: Session = Depends(get_resource_db)):
    return _ok(serialize_room(get_room_or_404(db, room_id)))


@router.post("/rooms", status_code=201)
def create_room_route(
    payload: RoomCreate,
    request: Request,
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_resource_db),
):
    now = _now(request)

    def operation():
        room = create_room(
            db,
            name=payload.name,
            capacity=payload.capacity,
            description=payload.description,
            location=payload.location,
            now=now,
        )
        log_audit(db, "Room", room.RoomID, "Create", f"name={room.RoomName}", user_id=actor.user_id, now=now)
        return serialize_room(room)

    return _ok(_write(request, db, operation, "create room", retry_on=(StaleDataError, IntegrityError)), "Room created")


@router.patch("/rooms/{room_id}/active")
def set_room_active_route(
    room_id: int,
    payload: RoomActiveRequest,
    request: Request,
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_resource_db),
):
    now = _now(request)

    def operation():
        room = set_room_active(db, room_id, payload.isActive)
        log_audit(db, "Room", room.RoomID, "Activate" if room.IsActive else "Deactivate", None, user_id=actor.user_id, now=now)
        return serialize_room(room)

    return _ok(_write(request, db, operation, "set room active"), "Room updated")


@router.get("/rooms/{room_id}/availability")
def get_room_availability(
    room_id: int,
    day: date = Query(..., alias="date"),
    db: Session = Depends(get_resource_db),
):
    reservations = room_day_reservations(db, room_id, day)
    return _ok(
        {
            "roomId": room_id,
            "date": day,
            "reserved": [
                {
                    "id": reservation.ReservationID,
                    "startTime": reservation.StartTime,
                    "endTime": reservation.EndTime,
                    "state": reservation.State,
                    "reason": reservation.Reason,
                    "group": reservation.GroupName or "",
                    "subject": reservation.Subject or "",
                    "userId": reservation.UserID,
                }
                for reservation in reservations
            ],
        }
    )


# --- reservations ------------------------------------------------------------


@router.post("/reservations", status_code=201)
def create_reservation_route(
    payload: CreateReservationDto,
    request: Request,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_resource_db),
):
    now = _now(request)

    def operation():
        reservation = create_reservation(
            db,
            actor,
            room_id=payload.roomId,
            reservation_date=payload.reservationDate,
            start_time=payload.startTime,
            end_time=payload.endTime,
            reason=payload.reason,
            group=payload.group,
            subject=payload.subject,
            now=now,
        )
        log_audit(
            db,
            "Reservation",
            reservation.ReservationID,
            "Create",
            f"room={reservation.RoomID}; {reservation.ReservationDate} {reservation.StartTime}-{reservation.EndTime}",
            user_id=actor.user_id,
            now=now,
        )
        return serialize_reservation(reservation)

    # A unique-index or slot-version failure means another writer claimed the
    # slot; the retry re-runs the overlap check and reports the conflict.
    data = _write(request, db, operation, "create reservation", retry_on=(StaleDataError, IntegrityError))
    return _ok(data, "Reservation created")


@router.get("/reservations")
def get_reservations(
    state: Optional[str] = Query(None),
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_resource_db),
):
    return _ok([serialize_reservation(item) for item in list_reservations(db, state=state)])


@router.get("/reservations/mine")
def get_my_reservations(actor: Actor = Depends(current_actor), db: Session = Depends(get_resource_db)):
    return _ok([serialize_reservation(item) for item in list_reservations(db, user_id=actor.user_id)])


@router.patch("/reservations/{reservation_id}/state")
def set_reservation_state_route(
    reservation_id: int,
    payload: ReservationStateRequest,
    request: Request,
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_resource_db),
):
    now = _now(request)

    def operation():
        reservation = set_reservation_state(db, reservation_id, payload.state, actor, now, payload.adminComment)
        log_audit(
            db,
            "Reservation",
            reservation.ReservationID,
            f"State:{reservation.State}",
            reservation.AdminComment or None,
            user_id=actor.user_id,
            now=now,
        )
        enqueue_notification(
            db,
            user_id=reservation.UserID,
            entity_type="Reservation",
            entity_id=reservation.ReservationID,
            notification_type=f"Reservation{reservation.State.capitalize()}",
            payload=(
                f"Reservation {reservation.ReservationID} on {reservation.ReservationDate} "
                f"{reservation.StartTime}-{reservation.EndTime} is now {reservation.State}."
            ),
            now=now,
        )
        return serialize_reservation(reservation)

    return _ok(_write(request, db, operation, "set reservation state"), "Reservation updated")


@router.patch("/reservations/{reservation_id}/cancel")
def cancel_reservation_route(
    reservation_id: int,
    request: Request,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_resource_db),
):
    now = _now(request)

    def operation():
        reservation = cancel_reservation(db, reservation_id, actor, now)
        log_audit(db, "Reservation", reservation.ReservationID, "Cancel", None, user_id=actor.user_id, now=now)
        return serialize_reservation(reservation)

    return _ok(_write(request, db, operation, "cancel reservation"), "Reservation cancelled")


# --- reports -----------------------------------------------------------------


@router.post("/reports", status_code=201)
def create_report_route(
    payload: CreateReportDto,
    request: Request,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_resource_db),
):
    now = _now(request)

    def operation():
        report = create_report(
            db,
            actor,
            machine_number=payload.machineNumber,
            title=payload.title,
            description=payload.description,
            priority=payload.priority,
            category=payload.category,
            now=now,
        )
        log_audit(db, "Report", report.ReportID, "Create", f"machine={report.MachineNumber}", user_id=actor.user_id, now=now)
        return serialize_report(report)

    return _ok(_write(request, db, operation, "create report"), "Report created")


@router.get("/reports/mine")
def get_my_reports(actor: Actor = Depends(current_actor), db: Session = Depends(get_resource_db)):
    return _ok([serialize_report(report) for report in list_reports(db, user_id=actor.user_id)])


@router.get("/reports")
def get_reports(
    state: Optional[str] = Query(None),
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_resource_db),
):
    return _ok([serialize_report(report) for report in list_reports(db, state=state)])


@router.patch("/reports/{report_id}/state")
def set_report_state_route(
    report_id: int,
    payload: ReportStatePatch,
    request: Request,
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_resource_db),
):
    now = _now(request)

    def operation():
        report = set_report_state(db, report_id, payload.state, now, payload.technicianComment)
        log_audit(db, "Report", report.ReportID, f"State:{report.State}", report.TechnicianComment or None, user_id=actor.user_id, now=now)
        return serialize_report(report)

    return _ok(_write(request, db, operation, "set report state"), "Report updated")


@router.get("/notifications/pending")
def get_pending_notifications(
    limit: int = Query(200, ge=1, le=1000),
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_resource_db),
):
    return _ok(list_pending_notifications(db, limit=limit))


# --- application -------------------------------------------------------------


async def _domain_error_handler(request: Request, exc: DomainError):
    APP_LOGGER.info("Request rejected path=%s error=%s message=%s", request.url.path, exc.code, exc.message)
    return _error_response(exc.status_code, exc.message, exc.code)


async def _validation_error_handler(request: Request, exc: RequestValidationError):
    problems = []
    for err in exc.errors():
        field = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        problems.append(f"{field}: {err.get('msg')}" if field else str(err.get("msg")))
    return _error_response(400, "; ".join(problems) or "Invalid request.", "ValidationError")


async def _http_error_handler(request: Request, exc: StarletteHTTPException):
    return _error_response(
        exc.status_code,
        str(exc.detail),
        HTTP_ERROR_CODES.get(exc.status_code, "HTTPError"),
        headers=getattr(exc, "headers", None),
    )


def _ensure_sqlite_directory(database_url: str) -> None:
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite" or not url.database or url.database == ":memory:":
        return
    Path(url.database).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)


def create_app(config: AppConfig | None = None, clock: Callable[[], datetime] | None = None) -> FastAPI:
    config = config or load_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    engine = build_engine(config.database_url)
    if config.auto_create_db:
        _ensure_sqlite_directory(config.database_url)
        Base.metadata.create_all(bind=engine)

    app = FastAPI(title="Campus Resources", debug=False)
    app.state.config = config
    app.state.engine = engine
    app.state.session_factory = build_session_factory(engine)
    app.state.clock = clock or datetime.now

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.cors_allow_origins),
        allow_credentials=config.cors_allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    async def _unhandled_error_handler(request: Request, exc: Exception):
        APP_LOGGER.exception("Unhandled error method=%s path=%s", request.method, request.url.path)
        extra = {"detail": f"{type(exc).__name__}: {exc}"} if config.debug else {}
        return _error_response(500, "Internal server error", "Internal", **extra)

    app.add_exception_handler(DomainError, _domain_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, _http_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)
    app.include_router(router)

    APP_LOGGER.info("Campus resources app ready db=%s", make_url(config.database_url).render_as_string(hide_password=True))
    return app
