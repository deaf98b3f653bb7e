import unittest
from datetime import date

import seed_data
from models.inventory_models import CheckoutUser, EquipmentUnit, Reservation, ReservationLine
from scripts.inventory_audit import find_overbooked_models, run_checks
from services.reservation_service import create_reservation
from services.scan_service import ingest_scan
from services.tag_service import assign_equipment_tag


class InventoryAuditTests(unittest.TestCase):
    def setUp(self):
        self.engine, factory = seed_data.make_session()
        self.db = factory()
        self.ids = seed_data.seed_catalog(self.db)

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _failures(self):
        self.db.commit()
        return {check.name for check in run_checks(self.engine) if not check.ok}

    def test_consistent_database_passes(self):
        create_reservation(self.db, seed_data.STUDENT_ID, date(2024, 1, 10), date(2024, 1, 12), [seed_data.line(self.ids["model_x"], self.ids["barometer"], 2)])
        tag_id = assign_equipment_tag(self.db, "Barometer-X-01")
        ingest_scan(self.db, tag_id, "ANT-A")

        self.assertEqual(self._failures(), set())

    def test_overbooking_written_around_the_service_is_reported(self):
        for start, end in ((date(2024, 1, 10), date(2024, 1, 12)), (date(2024, 1, 12), date(2024, 1, 14))):
            reservation = Reservation(RequesterID=seed_data.FACULTY_ID, StartDate=start, EndDate=end, Status="Approved")
            reservation.Lines.append(ReservationLine(ModelID=self.ids["model_x"], TypeID=self.ids["barometer"], Quantity=2))
            self.db.add(reservation)
        self.db.commit()

        self.assertEqual(find_overbooked_models(self.engine), [(self.ids["model_x"], "2024-01-12", 4, 2)])
        self.assertIn("reservations:overbooked_models", self._failures())

    def test_tag_and_type_drift_is_reported(self):
        self.db.get(EquipmentUnit, "Barometer-X-01").TagID = "1005"
        self.db.get(CheckoutUser, seed_data.STUDENT_ID).TagID = "0005"
        self.db.get(EquipmentUnit, "Hygro-1-01").TypeID = self.ids["barometer"]

        failures = self._failures()

        self.assertIn("equipmentunits:tag_outside_namespace", failures)
        self.assertIn("checkoutusers:tag_outside_namespace", failures)
        self.assertIn("equipmentunits:type_model_mismatch", failures)

    def test_location_drift_is_reported(self):
        tag_id = assign_equipment_tag(self.db, "Barometer-X-01")
        ingest_scan(self.db, tag_id, "ANT-A")
        self.db.get(EquipmentUnit, "Barometer-X-01").CurrentRoomReaderID = "ANT-B"

        self.assertIn("equipmentunits:location_drift", self._failures())


if __name__ == "__main__":
    unittest.main()
