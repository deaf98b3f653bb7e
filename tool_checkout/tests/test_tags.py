import unittest
from unittest import mock

import seed_data
from models.inventory_models import CheckoutUser, EquipmentUnit
from services import tag_service
from services.errors import ConflictError, NotFoundError, TagNamespaceExhausted, ValidationError
from services.tag_service import (
    assign_equipment_tag,
    assign_user_tag,
    decode_tag,
    next_available_tag,
    normalize_namespace,
    tag_overview,
)
from seed_data import OTHER_STUDENT_ID, STUDENT_ID


class TagAllocatorTests(unittest.TestCase):
    def setUp(self):
        self.engine, factory = seed_data.make_session()
        self.db = factory()
        self.ids = seed_data.seed_catalog(self.db)

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _set_unit_tag(self, serial_id, tag_id):
        self.db.get(EquipmentUnit, serial_id).TagID = tag_id
        self.db.commit()

    def test_first_ids_are_namespace_floors(self):
        self.assertEqual(next_available_tag(self.db, "Equipment"), "0000")
        self.assertEqual(next_available_tag(self.db, "Student"), "1000")

    def test_smallest_free_id_fills_gaps(self):
        self._set_unit_tag("Barometer-X-01", "0000")
        self._set_unit_tag("Barometer-X-02", "0002")

        self.assertEqual(next_available_tag(self.db, "Equipment"), "0001")
        self.assertEqual(assign_equipment_tag(self.db, "Barometer-Y-01"), "0001")
        self.assertEqual(assign_equipment_tag(self.db, "Barometer-Y-02"), "0003")

    def test_namespaces_do_not_share_ids(self):
        self.db.get(CheckoutUser, STUDENT_ID).TagID = "0000"
        self.db.commit()

        self.assertEqual(next_available_tag(self.db, "Equipment"), "0000")
        user_tag = assign_user_tag(self.db, OTHER_STUDENT_ID)
        self.assertEqual(user_tag, "1000")
        self.assertIn(decode_tag(user_tag), tag_service.TAG_NAMESPACES["Student"])

    def test_exhausted_namespace_is_reported(self):
        self._set_unit_tag("Barometer-X-01", "0000")
        self._set_unit_tag("Barometer-X-02", "0001")

        with mock.patch.dict(tag_service.TAG_NAMESPACES, {"Equipment": range(0, 2)}):
            with self.assertRaises(TagNamespaceExhausted) as ctx:
                next_available_tag(self.db, "Equipment")
            with self.assertRaises(TagNamespaceExhausted):
                assign_equipment_tag(self.db, "Barometer-Y-01")
            self.assertIsNone(tag_overview(self.db)["availableEquipmentTagID"])

        self.assertEqual(ctx.exception.kind, "Exhausted")
        self.assertIsNone(self.db.get(EquipmentUnit, "Barometer-Y-01").TagID)

    def test_unique_conflict_is_retried_with_fresh_scan(self):
        self._set_unit_tag("Barometer-X-01", "0000")
        real_next = tag_service.next_available_tag
        calls = []

        def stale_then_real(db, namespace):
            calls.append(namespace)
            if len(calls) == 1:
                return "0000"
            return real_next(db, namespace)

        with mock.patch.object(tag_service, "next_available_tag", side_effect=stale_then_real):
            tag_id = assign_equipment_tag(self.db, "Barometer-X-02")

        self.assertEqual(tag_id, "0001")
        self.assertEqual(len(calls), 2)

    def test_persistent_conflict_surfaces_after_bounded_retries(self):
        self._set_unit_tag("Barometer-X-01", "0000")

        with mock.patch.object(tag_service, "next_available_tag", return_value="0000") as stale:
            with self.assertRaises(ConflictError):
                assign_equipment_tag(self.db, "Barometer-X-02", attempts=3)

        self.assertEqual(stale.call_count, 3)
        self.assertIsNone(self.db.get(EquipmentUnit, "Barometer-X-02").TagID)

    def test_already_tagged_and_unknown_targets(self):
        assign_equipment_tag(self.db, "Barometer-X-01")
        with self.assertRaises(ValidationError):
            assign_equipment_tag(self.db, "Barometer-X-01")
        with self.assertRaises(NotFoundError):
            assign_equipment_tag(self.db, "NOPE-01")
        with self.assertRaises(NotFoundError):
            assign_user_tag(self.db, "9999")

    def test_namespace_aliases(self):
        self.assertEqual(normalize_namespace("equipment"), "Equipment")
        self.assertEqual(normalize_namespace("User"), "Student")
        with self.assertRaises(ValidationError):
            normalize_namespace("Faculty")

    def test_overview_lists_tagged_entities(self):
        assign_equipment_tag(self.db, "Hygro-1-01")
        assign_user_tag(self.db, STUDENT_ID)

        overview = tag_overview(self.db)

        self.assertEqual(overview["availableEquipmentTagID"], "0001")
        self.assertEqual(overview["availableUserTagID"], "1001")
        self.assertEqual(overview["equipment"], [
            {"typeName": "Hygrometer", "modelName": "Hygro-1", "serialID": "Hygro-1-01", "tagID": "0000"},
        ])
        self.assertEqual(overview["users"][0]["displayName"], "Silva, Ana")


if __name__ == "__main__":
    unittest.main()
