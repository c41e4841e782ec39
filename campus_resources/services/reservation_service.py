from __future__ import annotations

import logging
from datetime import date, datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from models.resource_models import Reservation, RoomDaySlot
from schemas.reservations import normalize_time
from services.errors import Forbidden, InvalidState, NotFound, ReservationConflict, ValidationFailed
from services.room_service import get_room_or_404
from services.user_access_service import RESERVATION_ROLES, Actor


LOGGER = logging.getLogger("campus_resources.reservations")

RESERVATION_STATES = {"pending", "approved", "rejected", "cancelled"}
ACTIVE_STATES = ("pending", "approved")
ADMIN_TARGET_STATES = {"approved", "rejected", "cancelled"}
STATE_TRANSITIONS = {
    "pending": {"approved", "rejected", "cancelled"},
    "approved": {"rejected", "cancelled"},
    "rejected": set(),
    "cancelled": set(),
}


def _normalize_interval(start_time: str, end_time: str) -> tuple[str, str]:
    try:
        start = normalize_time(start_time)
        end = normalize_time(end_time)
    except ValueError as exc:
        raise ValidationFailed(str(exc)) from exc
    if start >= end:
        raise ValidationFailed("startTime must be earlier than endTime.")
    return start, end


def find_conflicts(
    db: Session,
    room_id: int,
    reservation_date: date,
    start_time: str,
    end_time: str,
) -> list[Reservation]:
    # Half-open intervals: touching endpoints do not overlap.
    stmt = (
        select(Reservation)
        .where(Reservation.RoomID == room_id)
        .where(Reservation.ReservationDate == reservation_date)
        .where(Reservation.State.in_(ACTIVE_STATES))
        .where(Reservation.StartTime < end_time)
        .where(Reservation.EndTime > start_time)
        .order_by(Reservation.StartTime)
    )
    return list(db.execute(stmt).scalars().all())


def is_available(
    db: Session,
    room_id: int,
    reservation_date: date,
    start_time: str,
    end_time: str,
) -> bool:
    start, end = _normalize_interval(start_time, end_time)
    return not find_conflicts(db, room_id, reservation_date, start, end)


def _select_slot(db: Session, room_id: int, slot_date: date) -> RoomDaySlot | None:
    return db.execute(
        select(RoomDaySlot)
        .where(RoomDaySlot.RoomID == room_id)
        .where(RoomDaySlot.SlotDate == slot_date)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalars().first()


def lock_room_day(db: Session, room_id: int, slot_date: date) -> RoomDaySlot:
    """Locked guard row for one (room, date); created on first use."""
    slot = _select_slot(db, room_id, slot_date)
    if slot is not None:
        return slot

    savepoint = db.begin_nested()
    try:
        slot = RoomDaySlot(RoomID=room_id, SlotDate=slot_date, Revision=0)
        db.add(slot)
        db.flush()
        savepoint.commit()
        return slot
    except IntegrityError:
        # Another writer created the row between our select and insert.
        savepoint.rollback()
        LOGGER.info("Room day slot race room_id=%s date=%s", room_id, slot_date)
    slot = _select_slot(db, room_id, slot_date)
    if slot is None:
        raise NotFound("RoomDaySlot", room_id)
    return slot


def get_reservation_or_404(db: Session, reservation_id: int) -> Reservation:
    reservation = db.get(Reservation, reservation_id)
    if not reservation:
        raise NotFound("Reservation", reservation_id)
    return reservation


def create_reservation(
    db: Session,
    actor: Actor,
    *,
    room_id: int,
    reservation_date: date,
    start_time: str,
    end_time: str,
    reason: str,
    group: str | None = None,
    subject: str | None = None,
    now: datetime,
) -> Reservation:
    if actor.role not in RESERVATION_ROLES:
        raise Forbidden("Only administrators and teachers can reserve rooms.")
    start, end = _normalize_interval(start_time, end_time)
    if not (reason or "").strip():
        raise ValidationFailed("reason is required.")

    room = get_room_or_404(db, room_id)
    if not room.IsActive:
        raise ValidationFailed(f"Room {room_id} is not active.")

    # Serializes creators for this room and date; the revision bump makes a
    # concurrent insert fail its version check instead of double booking.
    slot = lock_room_day(db, room.RoomID, reservation_date)
    if not is_available(db, room.RoomID, reservation_date, start, end):
        raise ReservationConflict(room.RoomID, start, end)

    reservation = Reservation(
        RoomID=room.RoomID,
        UserID=actor.user_id,
        ReservationDate=reservation_date,
        StartTime=start,
        EndTime=end,
        State="pending",
        Reason=reason.strip(),
        GroupName=(group or "").strip() or None,
        Subject=(subject or "").strip() or None,
        AdminComment="",
        CreatedDate=now,
        UpdatedDate=now,
    )
    reservation.Room = room
    slot.Revision = int(slot.Revision or 0) + 1
    db.add(reservation)
    db.flush()
    LOGGER.info(
        "Reservation created reservation_id=%s room_id=%s date=%s start=%s end=%s user_id=%s",
        reservation.ReservationID,
        room.RoomID,
        reservation_date,
        start,
        end,
        actor.user_id,
    )
    return reservation


def _transition(reservation: Reservation, target: str, action: str, now: datetime) -> str:
    current = (reservation.State or "pending").strip().lower()
    if target not in STATE_TRANSITIONS.get(current, set()):
        raise InvalidState("reservation", current, action)
    reservation.State = target
    if target == "approved":
        reservation.ApprovedAt = now
    else:
        reservation.ApprovedAt = None
    reservation.UpdatedDate = now
    return current


def set_reservation_state(
    db: Session,
    reservation_id: int,
    target_state: str,
    actor: Actor,
    now: datetime,
    admin_comment: str | None = None,
) -> Reservation:
    if not actor.is_admin:
        raise Forbidden("Only administrators can change reservation state.")
    target = (target_state or "").strip().lower()
    if target not in ADMIN_TARGET_STATES:
        raise ValidationFailed(f"Invalid reservation state '{target_state}'.")

    reservation = get_reservation_or_404(db, reservation_id)
    previous = _transition(reservation, target, target, now)
    if admin_comment is not None:
        reservation.AdminComment = admin_comment.strip()
    LOGGER.info(
        "Reservation state changed reservation_id=%s from=%s to=%s by=%s",
        reservation.ReservationID,
        previous,
        target,
        actor.user_id,
    )
    return reservation


def cancel_reservation(db: Session, reservation_id: int, actor: Actor, now: datetime) -> Reservation:
    reservation = get_reservation_or_404(db, reservation_id)
    if not actor.is_admin and not actor.owns(reservation.UserID):
        raise Forbidden("You do not have permission to cancel this reservation.")
    current = (reservation.State or "pending").strip().lower()
    if current != "pending":
        raise InvalidState("reservation", current, "cancel")
    _transition(reservation, "cancelled", "cancel", now)
    LOGGER.info("Reservation cancelled reservation_id=%s by=%s", reservation.ReservationID, actor.user_id)
    return reservation


def list_reservations(db: Session, *, state: str | None = None, user_id: int | None = None) -> list[Reservation]:
    stmt = (
        select(Reservation)
        .options(selectinload(Reservation.Room))
        .order_by(Reservation.ReservationDate.desc(), Reservation.StartTime, Reservation.ReservationID)
    )
    if state:
        normalized = state.strip().lower()
        if normalized not in RESERVATION_STATES:
            raise ValidationFailed(f"Unknown reservation state '{state}'.")
        stmt = stmt.where(Reservation.State == normalized)
    if user_id is not None:
        stmt = stmt.where(Reservation.UserID == user_id)
    return list(db.execute(stmt).scalars().all())


def room_day_reservations(db: Session, room_id: int, reservation_date: date) -> list[Reservation]:
    get_room_or_404(db, room_id)
    return list(
        db.execute(
            select(Reservation)
            .where(Reservation.RoomID == room_id)
            .where(Reservation.ReservationDate == reservation_date)
            .where(Reservation.State.in_(ACTIVE_STATES))
            .order_by(Reservation.StartTime)
        ).scalars().all()
    )


def serialize_reservation(reservation: Reservation) -> dict:
    room = reservation.Room
    return {
        "id": reservation.ReservationID,
        "roomId": reservation.RoomID,
        "userId": reservation.UserID,
        "date": reservation.ReservationDate,
        "startTime": reservation.StartTime,
        "endTime": reservation.EndTime,
        "state": reservation.State,
        "reason": reservation.Reason,
        "group": reservation.GroupName or "",
        "subject": reservation.Subject or "",
        "adminComment": reservation.AdminComment or "",
        "approvedAt": reservation.ApprovedAt,
        "createdAt": reservation.CreatedDate,
        "room": {"id": room.RoomID, "name": room.RoomName, "location": room.Location or ""} if room else None,
    }
