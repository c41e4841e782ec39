from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models.resource_models import Room
from services.errors import NotFound, ValidationFailed


LOGGER = logging.getLogger("campus_resources.rooms")


def get_room_or_404(db: Session, room_id: int) -> Room:
    room = db.get(Room, room_id)
    if not room:
        raise NotFound("Room", room_id)
    return room


def list_active_rooms(db: Session) -> list[Room]:
    return list(
        db.execute(select(Room).where(Room.IsActive.is_(True)).order_by(Room.RoomName)).scalars().all()
    )


def create_room(
    db: Session,
    *,
    name: str,
    capacity: int,
    description: str | None = None,
    location: str | None = None,
    now: datetime | None = None,
) -> Room:
    clean_name = (name or "").strip()
    if not clean_name:
        raise ValidationFailed("name is required.")
    if int(capacity) < 1:
        raise ValidationFailed("capacity must be at least 1.")
    existing = db.execute(select(Room.RoomID).where(func.lower(Room.RoomName) == clean_name.lower())).first()
    if existing:
        raise ValidationFailed(f"A room named '{clean_name}' already exists.")

    room = Room(
        RoomName=clean_name,
        Description=description or "",
        Capacity=int(capacity),
        Location=location or "",
        IsActive=True,
        CreatedDate=now or datetime.now(),
    )
    db.add(room)
    db.flush()
    LOGGER.info("Room created room_id=%s name=%s", room.RoomID, clean_name)
    return room


def set_room_active(db: Session, room_id: int, is_active: bool) -> Room:
    room = get_room_or_404(db, room_id)
    room.IsActive = bool(is_active)
    LOGGER.info("Room active flag changed room_id=%s active=%s", room.RoomID, room.IsActive)
    return room


def serialize_room(room: Room) -> dict:
    return {
        "id": room.RoomID,
        "name": room.RoomName,
        "description": room.Description or "",
        "capacity": room.Capacity,
        "location": room.Location or "",
        "isActive": bool(room.IsActive),
        "createdAt": room.CreatedDate,
    }
