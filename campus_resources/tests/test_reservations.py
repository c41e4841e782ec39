import sys
import unittest
from datetime import date, datetime
from pathlib import Path
from unittest import mock

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError


APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from db.base import Base
from db.session import build_engine, build_session_factory
from models.resource_models import Reservation, RoomDaySlot
from services import reservation_service
from services.errors import Forbidden, InvalidState, ReservationConflict, ValidationFailed
from services.reservation_service import (
    cancel_reservation,
    create_reservation,
    is_available,
    list_reservations,
    room_day_reservations,
    serialize_reservation,
    set_reservation_state,
)
from services.room_service import create_room, set_room_active
from services.user_access_service import Actor


NOW = datetime(2024, 1, 10, 8, 0, 0)
DAY = date(2024, 1, 15)
ADMIN = Actor(user_id=1, role="admin")
TEACHER = Actor(user_id=10, role="teacher")
OTHER_TEACHER = Actor(user_id=11, role="teacher")
STUDENT = Actor(user_id=20, role="student")


class ReservationTests(unittest.TestCase):
    def setUp(self):
        self.engine = build_engine("sqlite://")
        Base.metadata.create_all(bind=self.engine)
        self.db = build_session_factory(self.engine)()
        self.room = create_room(self.db, name="Lab X", capacity=24, now=NOW)
        self.other_room = create_room(self.db, name="Lab Y", capacity=12, now=NOW)
        self.db.commit()

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _create(self, start: str, end: str, actor: Actor = TEACHER, room=None, day: date = DAY) -> Reservation:
        reservation = create_reservation(
            self.db,
            actor,
            room_id=(room or self.room).RoomID,
            reservation_date=day,
            start_time=start,
            end_time=end,
            reason="Robotics practice",
            group="3B",
            subject="Physics",
            now=NOW,
        )
        self.db.commit()
        return reservation

    def test_overlap_conflicts_and_touching_boundary_is_admitted(self):
        booked = self._create("09:00", "10:00")
        set_reservation_state(self.db, booked.ReservationID, "approved", ADMIN, NOW)
        self.db.commit()

        with self.assertRaises(ReservationConflict):
            self._create("09:30", "10:30")
        self.db.rollback()

        admitted = self._create("10:00", "11:00")
        self.assertEqual(admitted.State, "pending")
        self.assertEqual((admitted.StartTime, admitted.EndTime), ("10:00", "11:00"))

    def test_pending_reservations_also_block(self):
        self._create("13:00", "15:00")
        with self.assertRaises(ReservationConflict):
            self._create("14:00", "14:30")

    def test_enclosing_interval_conflicts(self):
        self._create("10:00", "10:30")
        self.assertFalse(is_available(self.db, self.room.RoomID, DAY, "09:00", "12:00"))
        self.assertTrue(is_available(self.db, self.room.RoomID, DAY, "08:00", "10:00"))
        self.assertTrue(is_available(self.db, self.room.RoomID, DAY, "10:30", "11:00"))

    def test_create_checks_availability_with_normalized_times(self):
        with mock.patch.object(reservation_service, "is_available", wraps=reservation_service.is_available) as checker:
            self._create("9:00", "10:00")
            with self.assertRaises(ReservationConflict):
                self._create("09:30", "11:00", actor=OTHER_TEACHER)
        self.db.rollback()
        self.assertEqual(checker.call_count, 2)
        self.assertEqual(checker.call_args_list[0].args[1:], (self.room.RoomID, DAY, "09:00", "10:00"))

    def test_terminal_reservations_free_the_slot(self):
        rejected = self._create("09:00", "10:00")
        set_reservation_state(self.db, rejected.ReservationID, "rejected", ADMIN, NOW)
        self.db.commit()
        cancelled = self._create("09:00", "10:00")
        cancel_reservation(self.db, cancelled.ReservationID, TEACHER, NOW)
        self.db.commit()

        again = self._create("09:00", "10:00")
        self.assertEqual(again.State, "pending")

    def test_other_room_and_other_day_do_not_conflict(self):
        self._create("09:00", "10:00")
        self._create("09:00", "10:00", room=self.other_room)
        self._create("09:00", "10:00", day=date(2024, 1, 16))
        self.assertEqual(len(list_reservations(self.db)), 3)

    def test_times_are_normalized(self):
        reservation = self._create("9:00", "9:45")
        self.assertEqual((reservation.StartTime, reservation.EndTime), ("09:00", "09:45"))
        with self.assertRaises(ReservationConflict):
            self._create("09:30", "10:00")

    def test_invalid_interval_is_rejected(self):
        with self.assertRaises(ValidationFailed):
            self._create("11:00", "10:00")
        with self.assertRaises(ValidationFailed):
            self._create("10:00", "10:00")
        with self.assertRaises(ValidationFailed):
            self._create("25:00", "26:00")

    def test_students_cannot_reserve(self):
        with self.assertRaises(Forbidden):
            self._create("09:00", "10:00", actor=STUDENT)

    def test_inactive_room_is_rejected(self):
        set_room_active(self.db, self.room.RoomID, False)
        self.db.commit()
        with self.assertRaises(ValidationFailed):
            self._create("09:00", "10:00")

    def test_approval_stamps_and_revocation_clears(self):
        reservation = self._create("09:00", "10:00")
        set_reservation_state(self.db, reservation.ReservationID, "approved", ADMIN, NOW, admin_comment="Enjoy")
        self.db.commit()
        self.assertEqual(reservation.ApprovedAt, NOW)
        self.assertEqual(reservation.AdminComment, "Enjoy")

        set_reservation_state(self.db, reservation.ReservationID, "rejected", ADMIN, NOW)
        self.db.commit()
        self.assertEqual(reservation.State, "rejected")
        self.assertIsNone(reservation.ApprovedAt)
        self.assertEqual(reservation.AdminComment, "Enjoy")

    def test_set_state_validation(self):
        reservation = self._create("09:00", "10:00")
        with self.assertRaises(ValidationFailed):
            set_reservation_state(self.db, reservation.ReservationID, "pending", ADMIN, NOW)
        with self.assertRaises(Forbidden):
            set_reservation_state(self.db, reservation.ReservationID, "approved", TEACHER, NOW)

        set_reservation_state(self.db, reservation.ReservationID, "cancelled", ADMIN, NOW)
        self.db.commit()
        with self.assertRaises(InvalidState):
            set_reservation_state(self.db, reservation.ReservationID, "approved", ADMIN, NOW)

    def test_cancel_rules(self):
        reservation = self._create("09:00", "10:00")
        with self.assertRaises(Forbidden):
            cancel_reservation(self.db, reservation.ReservationID, OTHER_TEACHER, NOW)

        approved = self._create("11:00", "12:00")
        set_reservation_state(self.db, approved.ReservationID, "approved", ADMIN, NOW)
        self.db.commit()
        with self.assertRaises(InvalidState):
            cancel_reservation(self.db, approved.ReservationID, TEACHER, NOW)

        cancel_reservation(self.db, reservation.ReservationID, ADMIN, NOW)
        self.db.commit()
        self.assertEqual(reservation.State, "cancelled")

    def test_each_insert_bumps_the_room_day_slot(self):
        self._create("08:00", "09:00")
        self._create("09:00", "10:00")
        slot = self.db.execute(
            select(RoomDaySlot).where(RoomDaySlot.RoomID == self.room.RoomID).where(RoomDaySlot.SlotDate == DAY)
        ).scalars().one()
        self.assertEqual(slot.Revision, 2)

    def test_storage_rejects_duplicate_active_start(self):
        self._create("09:00", "10:00")
        self.db.add(
            Reservation(
                RoomID=self.room.RoomID,
                UserID=OTHER_TEACHER.user_id,
                ReservationDate=DAY,
                StartTime="09:00",
                EndTime="09:30",
                State="pending",
                Reason="Skipped the check",
            )
        )
        with self.assertRaises(IntegrityError):
            self.db.commit()
        self.db.rollback()

    def test_storage_allows_duplicate_start_once_terminal(self):
        first = self._create("09:00", "10:00")
        set_reservation_state(self.db, first.ReservationID, "rejected", ADMIN, NOW)
        self.db.commit()
        self.db.add(
            Reservation(
                RoomID=self.room.RoomID,
                UserID=OTHER_TEACHER.user_id,
                ReservationDate=DAY,
                StartTime="09:00",
                EndTime="09:30",
                State="cancelled",
                Reason="History",
            )
        )
        self.db.commit()

    def test_day_listing_and_serialization(self):
        self._create("11:00", "12:00")
        self._create("08:00", "09:00")
        dropped = self._create("09:00", "10:00")
        cancel_reservation(self.db, dropped.ReservationID, TEACHER, NOW)
        self.db.commit()

        rows = room_day_reservations(self.db, self.room.RoomID, DAY)
        self.assertEqual([row.StartTime for row in rows], ["08:00", "11:00"])
        payload = serialize_reservation(rows[0])
        self.assertEqual(payload["date"], DAY)
        self.assertEqual(payload["group"], "3B")
        self.assertEqual(payload["room"]["name"], "Lab X")


if __name__ == "__main__":
    unittest.main()
