import sys
import unittest
from datetime import date, datetime, timedelta
from pathlib import Path


APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from db.base import Base
from db.session import build_engine, build_session_factory
from models.resource_models import Loan, Reservation
from scripts.db_overview import run_column_checks, run_existence_checks, run_integrity_checks
from services.inventory_ledger import create_tool
from services.room_service import create_room


NOW = datetime(2024, 1, 15, 9, 0, 0)


class DbOverviewTests(unittest.TestCase):
    def setUp(self):
        self.engine = build_engine("sqlite://")
        Base.metadata.create_all(bind=self.engine)
        self.db = build_session_factory(self.engine)()
        self.tool = create_tool(self.db, name="Caliper", category="Measuring", stock_total=2, now=NOW)
        self.room = create_room(self.db, name="Lab Z", capacity=10, now=NOW)
        self.db.commit()

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _failed(self) -> set[str]:
        return {check.name for check in run_integrity_checks(self.engine) if not check.ok}

    def test_fresh_schema_passes(self):
        self.assertTrue(all(check.ok for check in run_existence_checks(self.engine)))
        self.assertTrue(all(check.ok for check in run_column_checks(self.engine)))
        self.assertEqual(self._failed(), set())

    def test_detects_loaned_units_missing_from_ledger(self):
        # A fulfilled loan whose debit never reached the tool row.
        self.db.add(
            Loan(
                UserID=3,
                ToolID=self.tool.ToolID,
                Quantity=1,
                State="fulfilled",
                RequestedAt=NOW,
                FulfilledAt=NOW,
                DueAt=NOW + timedelta(days=2),
            )
        )
        self.db.commit()
        self.assertEqual(self._failed(), {"loans:held_quantity_mismatch"})

    def test_detects_overlapping_active_reservations(self):
        for start, end in (("09:00", "10:00"), ("09:30", "10:30")):
            self.db.add(
                Reservation(
                    RoomID=self.room.RoomID,
                    UserID=4,
                    ReservationDate=date(2024, 1, 15),
                    StartTime=start,
                    EndTime=end,
                    State="approved",
                    Reason="Imported",
                )
            )
        self.db.commit()
        self.assertEqual(self._failed(), {"reservations:active_overlap"})


if __name__ == "__main__":
    unittest.main()
