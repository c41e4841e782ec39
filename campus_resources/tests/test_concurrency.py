import sys
import tempfile
import unittest
from datetime import date, datetime
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError


APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from db.base import Base
from db.session import build_engine, build_session_factory
from models.resource_models import Loan, Reservation, RoomDaySlot, Tool
from services.concurrency import commit_with_retry
from services.errors import ConcurrentUpdate, InsufficientStock, InvalidState, ReservationConflict
from services.inventory_ledger import create_tool, debit
from services.loan_service import approve_loan, request_loan
from services.reservation_service import create_reservation
from services.room_service import create_room
from services.user_access_service import Actor


NOW = datetime(2024, 1, 15, 9, 0, 0)
DAY = date(2024, 1, 15)
ADMIN = Actor(user_id=1, role="admin")
TEACHER = Actor(user_id=10, role="teacher")
OTHER_TEACHER = Actor(user_id=11, role="teacher")
STUDENT = Actor(user_id=20, role="student")


class ConcurrencyTests(unittest.TestCase):
    """Two sessions on one file database stand in for two request workers."""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.engine = build_engine(f"sqlite:///{Path(self.tmpdir.name) / 'campus.db'}")
        Base.metadata.create_all(bind=self.engine)
        self.factory = build_session_factory(self.engine)
        self.db_a = self.factory()
        self.db_b = self.factory()

    def tearDown(self):
        self.db_a.close()
        self.db_b.close()
        self.engine.dispose()
        self.tmpdir.cleanup()

    def _seed_tool(self, stock: int) -> int:
        with self.factory() as db:
            tool = create_tool(db, name="Soldering station", category="Electronics", stock_total=stock, now=NOW)
            db.commit()
            return tool.ToolID

    def _seed_loan(self, tool_id: int, quantity: int = 1, actor: Actor = STUDENT) -> int:
        with self.factory() as db:
            loan = request_loan(db, actor, tool_id=tool_id, quantity=quantity, days_to_loan=3, observations=None, now=NOW)
            db.commit()
            return loan.LoanID

    def _fresh(self, model, key):
        with self.factory() as db:
            return db.get(model, key)

    def test_stale_debit_is_retried_against_fresh_stock(self):
        tool_id = self._seed_tool(stock=1)
        stale_tool = self.db_b.get(Tool, tool_id)
        self.assertEqual(stale_tool.StockAvailable, 1)

        debit(self.db_a.get(Tool, tool_id), 1, NOW)
        self.db_a.commit()

        attempts = []

        def operation():
            attempts.append(1)
            return debit(self.db_b.get(Tool, tool_id), 1, NOW)

        with self.assertRaises(InsufficientStock):
            commit_with_retry(self.db_b, operation, attempts=3, label="debit")
        self.assertEqual(len(attempts), 2)
        self.assertEqual(stale_tool.StockAvailable, 0)
        self.assertEqual(self._fresh(Tool, tool_id).StockAvailable, 0)

    def test_concurrent_approvals_of_last_unit_admit_exactly_one(self):
        tool_id = self._seed_tool(stock=1)
        loan_id = self._seed_loan(tool_id)
        # Worker B read the loan before worker A approved it.
        stale_loan = self.db_b.get(Loan, loan_id)
        self.assertEqual(stale_loan.State, "pending")

        commit_with_retry(self.db_a, lambda: approve_loan(self.db_a, loan_id, ADMIN, NOW))

        with self.assertRaises(InsufficientStock):
            commit_with_retry(self.db_b, lambda: approve_loan(self.db_b, loan_id, ADMIN, NOW))

        self.assertIs(self.db_b.get(Loan, loan_id), stale_loan)
        self.assertEqual(self._fresh(Tool, tool_id).StockAvailable, 0)
        self.assertEqual(self._fresh(Loan, loan_id).State, "fulfilled")

    def test_approval_read_after_winner_commit_reports_insufficient_stock(self):
        tool_id = self._seed_tool(stock=1)
        loan_id = self._seed_loan(tool_id)

        commit_with_retry(self.db_a, lambda: approve_loan(self.db_a, loan_id, ADMIN, NOW))

        # Worker B starts its request only after A committed.
        with self.factory() as db:
            with self.assertRaises(InsufficientStock):
                commit_with_retry(db, lambda: approve_loan(db, loan_id, ADMIN, NOW))

        self.assertEqual(self._fresh(Tool, tool_id).StockAvailable, 0)
        self.assertEqual(self._fresh(Loan, loan_id).State, "fulfilled")

    def test_two_loans_competing_for_last_unit(self):
        tool_id = self._seed_tool(stock=1)
        first = self._seed_loan(tool_id)
        second = self._seed_loan(tool_id, actor=Actor(user_id=21, role="student"))
        stale_tool = self.db_b.get(Tool, tool_id)
        stale_loan = self.db_b.get(Loan, second)

        commit_with_retry(self.db_a, lambda: approve_loan(self.db_a, first, ADMIN, NOW))
        with self.assertRaises(InsufficientStock):
            commit_with_retry(self.db_b, lambda: approve_loan(self.db_b, second, ADMIN, NOW))

        self.assertEqual(stale_tool.StockAvailable, 0)
        self.assertEqual(stale_loan.State, "pending")
        self.assertEqual(self._fresh(Tool, tool_id).StockAvailable, 0)
        self.assertEqual(self._fresh(Loan, second).State, "pending")

    def test_same_loan_approved_twice_with_spare_stock_is_invalid_state(self):
        tool_id = self._seed_tool(stock=3)
        loan_id = self._seed_loan(tool_id)
        stale_loan = self.db_b.get(Loan, loan_id)

        commit_with_retry(self.db_a, lambda: approve_loan(self.db_a, loan_id, ADMIN, NOW))
        # The locked re-read replaces B's stale pending copy.
        with self.assertRaises(InvalidState):
            commit_with_retry(self.db_b, lambda: approve_loan(self.db_b, loan_id, ADMIN, NOW))
        self.assertEqual(stale_loan.State, "fulfilled")
        self.assertEqual(self._fresh(Tool, tool_id).StockAvailable, 2)

    def test_stale_room_day_slot_blocks_unchecked_insert(self):
        with self.factory() as db:
            room_id = create_room(db, name="Lab X", capacity=20, now=NOW).RoomID
            db.commit()
            create_reservation(
                db, TEACHER, room_id=room_id, reservation_date=DAY, start_time="07:00", end_time="08:00", reason="Early", now=NOW
            )
            db.commit()

        # Worker B saw the slot (and no conflict) before worker A booked 09:00-10:00.
        stale_slot = self.db_b.execute(
            select(RoomDaySlot).where(RoomDaySlot.RoomID == room_id).where(RoomDaySlot.SlotDate == DAY)
        ).scalars().one()

        create_reservation(
            self.db_a, TEACHER, room_id=room_id, reservation_date=DAY, start_time="09:00", end_time="10:00", reason="A", now=NOW
        )
        self.db_a.commit()

        calls = []

        def operation():
            calls.append(1)
            if len(calls) == 1:
                stale_slot.Revision += 1
                self.db_b.add(
                    Reservation(
                        RoomID=room_id,
                        UserID=OTHER_TEACHER.user_id,
                        ReservationDate=DAY,
                        StartTime="09:30",
                        EndTime="10:30",
                        State="pending",
                        Reason="B",
                    )
                )
                return None
            return create_reservation(
                self.db_b,
                OTHER_TEACHER,
                room_id=room_id,
                reservation_date=DAY,
                start_time="09:30",
                end_time="10:30",
                reason="B",
                now=NOW,
            )

        with self.assertRaises(ReservationConflict):
            commit_with_retry(self.db_b, operation, retry_on=(StaleDataError, IntegrityError), label="create reservation")
        self.assertEqual(len(calls), 2)

        with self.factory() as db:
            starts = db.execute(
                select(Reservation.StartTime).where(Reservation.RoomID == room_id).order_by(Reservation.StartTime)
            ).scalars().all()
        self.assertEqual(starts, ["07:00", "09:00"])

    def test_unique_start_backstop_turns_into_conflict(self):
        with self.factory() as db:
            room_id = create_room(db, name="Lab Y", capacity=20, now=NOW).RoomID
            db.commit()
        create_reservation(
            self.db_a, TEACHER, room_id=room_id, reservation_date=DAY, start_time="09:00", end_time="10:00", reason="A", now=NOW
        )
        self.db_a.commit()

        calls = []

        def operation():
            calls.append(1)
            if len(calls) == 1:
                self.db_b.add(
                    Reservation(
                        RoomID=room_id,
                        UserID=OTHER_TEACHER.user_id,
                        ReservationDate=DAY,
                        StartTime="09:00",
                        EndTime="09:45",
                        State="pending",
                        Reason="B",
                    )
                )
                self.db_b.flush()
                return None
            return create_reservation(
                self.db_b,
                OTHER_TEACHER,
                room_id=room_id,
                reservation_date=DAY,
                start_time="09:00",
                end_time="09:45",
                reason="B",
                now=NOW,
            )

        with self.assertRaises(ReservationConflict):
            commit_with_retry(self.db_b, operation, retry_on=(StaleDataError, IntegrityError))
        self.assertEqual(len(calls), 2)

    def test_retries_are_bounded(self):
        calls = []

        def operation():
            calls.append(1)
            raise StaleDataError("row changed underneath")

        with self.assertRaises(ConcurrentUpdate):
            commit_with_retry(self.db_a, operation, attempts=3, label="always stale")
        self.assertEqual(len(calls), 3)


if __name__ == "__main__":
    unittest.main()
