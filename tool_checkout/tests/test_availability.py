import unittest
from datetime import date

import seed_data
from models.inventory_models import EquipmentUnit, Reservation, ReservationLine
from services.availability_service import available_count, list_available_models, reserved_quantity
from services.errors import NotFoundError, ValidationError


class AvailabilityTests(unittest.TestCase):
    def setUp(self):
        self.engine, factory = seed_data.make_session()
        self.db = factory()
        self.ids = seed_data.seed_catalog(self.db)

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _book(self, model_id, start, end, quantity, status="Requested"):
        reservation = Reservation(RequesterID=seed_data.STUDENT_ID, StartDate=start, EndDate=end, Status=status)
        reservation.Lines.append(ReservationLine(ModelID=model_id, TypeID=self.ids["barometer"], Quantity=quantity))
        self.db.add(reservation)
        self.db.commit()
        return reservation

    def test_available_count_is_ready_units_without_reservations(self):
        count = available_count(self.db, self.ids["model_x"], self.ids["barometer"], date(2024, 1, 10), date(2024, 1, 12))
        self.assertEqual(count, 2)

    def test_end_dates_are_inclusive_when_checking_overlap(self):
        self._book(self.ids["model_x"], date(2024, 1, 10), date(2024, 1, 12), 1)

        touching_end = available_count(self.db, self.ids["model_x"], None, date(2024, 1, 12), date(2024, 1, 15))
        touching_start = available_count(self.db, self.ids["model_x"], None, date(2024, 1, 5), date(2024, 1, 10))
        after = available_count(self.db, self.ids["model_x"], None, date(2024, 1, 13), date(2024, 1, 15))

        self.assertEqual(touching_end, 1)
        self.assertEqual(touching_start, 1)
        self.assertEqual(after, 2)

    def test_closed_reservations_do_not_consume_units(self):
        self._book(self.ids["model_x"], date(2024, 1, 10), date(2024, 1, 12), 2, status="Cancelled")
        self._book(self.ids["model_x"], date(2024, 1, 10), date(2024, 1, 12), 1, status="Rejected")

        self.assertEqual(reserved_quantity(self.db, self.ids["model_x"], date(2024, 1, 10), date(2024, 1, 12)), 0)
        self.assertEqual(available_count(self.db, self.ids["model_x"], None, date(2024, 1, 10), date(2024, 1, 12)), 2)

    def test_units_under_repair_are_not_available(self):
        for unit in self.db.query(EquipmentUnit).filter(EquipmentUnit.ModelID == self.ids["model_x"]).all():
            unit.MaintenanceStatus = "UnderRepair"
        self.db.commit()

        self.assertEqual(available_count(self.db, self.ids["model_x"], None, date(2024, 1, 10), date(2024, 1, 12)), 0)

    def test_count_never_goes_negative(self):
        self._book(self.ids["model_x"], date(2024, 1, 10), date(2024, 1, 12), 5)
        self.assertEqual(available_count(self.db, self.ids["model_x"], None, date(2024, 1, 10), date(2024, 1, 12)), 0)

    def test_count_is_non_increasing_as_reservations_are_added(self):
        window = (date(2024, 3, 1), date(2024, 3, 5))
        previous = available_count(self.db, self.ids["model_y"], None, *window)
        for start_day in (1, 3, 5):
            self._book(self.ids["model_y"], date(2024, 3, start_day), date(2024, 3, start_day), 1)
            current = available_count(self.db, self.ids["model_y"], None, *window)
            self.assertLessEqual(current, previous)
            self.assertEqual(current, available_count(self.db, self.ids["model_y"], None, *window))
            previous = current
        self.assertEqual(previous, 0)

    def test_type_mismatch_and_unknown_model_are_rejected(self):
        with self.assertRaises(ValidationError):
            available_count(self.db, self.ids["model_x"], self.ids["hygrometer"], date(2024, 1, 1), date(2024, 1, 2))
        with self.assertRaises(NotFoundError):
            available_count(self.db, 9999, None, date(2024, 1, 1), date(2024, 1, 2))

    def test_inverted_window_is_rejected(self):
        with self.assertRaises(ValidationError):
            available_count(self.db, self.ids["model_x"], None, date(2024, 1, 5), date(2024, 1, 1))

    def test_available_models_lists_only_models_with_free_units(self):
        self._book(self.ids["model_x"], date(2024, 1, 10), date(2024, 1, 12), 2)

        rows = list_available_models(self.db, date(2024, 1, 11), date(2024, 1, 11))
        by_name = {row["modelName"]: row for row in rows}

        self.assertNotIn("Barometer-X", by_name)
        self.assertEqual(by_name["Barometer-Y"]["availableCount"], 3)
        self.assertEqual(by_name["Barometer-Y"]["typeName"], "Barometer")
        self.assertEqual(by_name["Hygro-1"]["availableCount"], 1)


if __name__ == "__main__":
    unittest.main()
