import unittest
from datetime import datetime, timedelta

import seed_data
from models.inventory_models import EquipmentUnit, ScanEvent
from seed_data import OTHER_STUDENT_ID, STUDENT_ID
from services.errors import NotFoundError, ValidationError
from services.scan_service import classify_walk_in, ingest_scan, list_scan_history, user_usage
from services.tag_service import assign_equipment_tag, assign_user_tag


class ScanStateMachineTests(unittest.TestCase):
    def setUp(self):
        self.engine, factory = seed_data.make_session()
        self.db = factory()
        self.ids = seed_data.seed_catalog(self.db)
        self.tag_id = assign_equipment_tag(self.db, "Barometer-X-01")
        self.start = datetime(2024, 1, 10, 9, 0, 0)

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _ping(self, reader_id, minutes=0, tag_id=None):
        return ingest_scan(self.db, tag_id or self.tag_id, reader_id, self.start + timedelta(minutes=minutes))

    def _unit(self):
        unit = self.db.get(EquipmentUnit, "Barometer-X-01")
        self.db.refresh(unit)
        return unit

    def test_same_room_pairs_alternate_in_and_out(self):
        classified = [self._ping(reader, index).IsWalkIn for index, reader in enumerate(["ANT-A", "ANT-A", "ANT-B", "ANT-B"])]
        self.assertEqual(classified, [True, False, True, False])

    def test_room_change_is_an_implicit_walk_in(self):
        self.assertTrue(self._ping("ANT-A", 0).IsWalkIn)
        second = self._ping("ANT-B", 1)

        self.assertTrue(second.IsWalkIn)
        self.assertEqual(self._unit().CurrentRoomReaderID, "ANT-B")

    def test_walk_out_clears_current_location(self):
        self._ping("ANT-A", 0)
        self.assertEqual(self._unit().CurrentRoomReaderID, "ANT-A")

        self._ping("ANT-A", 1)
        self.assertIsNone(self._unit().CurrentRoomReaderID)

        self.assertTrue(self._ping("ANT-A", 2).IsWalkIn)

    def test_events_are_appended_and_never_rewritten(self):
        first = self._ping("ANT-A", 0)
        self._ping("ANT-A", 1)
        self._ping("ANT-B", 2)

        rows = self.db.query(ScanEvent).order_by(ScanEvent.ScanEventID).all()
        self.assertEqual(len(rows), 3)
        self.assertEqual(rows[0].ScanEventID, first.ScanEventID)
        self.assertTrue(rows[0].IsWalkIn)
        self.assertEqual(rows[0].ReaderID, "ANT-A")

    def test_tags_are_tracked_independently(self):
        other_tag = assign_equipment_tag(self.db, "Barometer-X-02")

        self.assertTrue(self._ping("ANT-A", 0).IsWalkIn)
        self.assertTrue(self._ping("ANT-A", 1, tag_id=other_tag).IsWalkIn)
        self.assertFalse(self._ping("ANT-A", 2).IsWalkIn)

    def test_user_tag_is_recorded_with_the_event(self):
        user_tag = assign_user_tag(self.db, seed_data.STUDENT_ID)
        event = ingest_scan(self.db, self.tag_id.lower(), "ANT-A", self.start, user_tag_id=user_tag)
        self.assertEqual(event.EquipmentTagID, self.tag_id)
        self.assertEqual(event.UserTagID, user_tag)

    def test_unknown_tag_or_reader_appends_nothing(self):
        with self.assertRaises(NotFoundError):
            ingest_scan(self.db, "0FFF", "ANT-A")
        with self.assertRaises(NotFoundError):
            ingest_scan(self.db, self.tag_id, "ANT-Z")
        with self.assertRaises(ValidationError):
            ingest_scan(self.db, "1000", "ANT-A")
        with self.assertRaises(ValidationError):
            ingest_scan(self.db, "not-hex", "ANT-A")
        self.assertEqual(self.db.query(ScanEvent).count(), 0)

    def test_history_is_newest_first(self):
        for index, reader in enumerate(["ANT-A", "ANT-A", "ANT-B"]):
            self._ping(reader, index)

        history = list_scan_history(self.db, "Barometer-X-01")

        self.assertEqual([event.ReaderID for event in history], ["ANT-B", "ANT-A", "ANT-A"])
        self.assertEqual(list_scan_history(self.db, "Barometer-X-02"), [])
        with self.assertRaises(NotFoundError):
            list_scan_history(self.db, "NOPE")

    def test_classifier_without_history(self):
        self.assertTrue(classify_walk_in(None, "ANT-A"))
        self.assertFalse(classify_walk_in(ScanEvent(ReaderID="ANT-A", IsWalkIn=True), "ANT-A"))
        self.assertTrue(classify_walk_in(ScanEvent(ReaderID="ANT-A", IsWalkIn=False), "ANT-A"))
        self.assertTrue(classify_walk_in(ScanEvent(ReaderID="ANT-B", IsWalkIn=True), "ANT-A"))

    def test_buffered_ping_is_classified_against_its_predecessor_in_time(self):
        self._ping("ANT-A", 0)
        self._ping("ANT-B", 10)

        buffered = self._ping("ANT-A", 5)

        self.assertFalse(buffered.IsWalkIn)
        self.assertEqual(self._unit().CurrentRoomReaderID, "ANT-B")
        self.assertFalse(self._ping("ANT-B", 11).IsWalkIn)

    def test_history_follows_scan_time_not_arrival_order(self):
        self._ping("ANT-A", 10)
        self._ping("ANT-B", 5)

        history = list_scan_history(self.db, "Barometer-X-01")

        self.assertEqual([event.ReaderID for event in history], ["ANT-A", "ANT-B"])
        self.assertEqual(self._unit().CurrentRoomReaderID, "ANT-A")


class UserUsageTests(unittest.TestCase):
    def setUp(self):
        self.engine, factory = seed_data.make_session()
        self.db = factory()
        self.ids = seed_data.seed_catalog(self.db)
        self.tag_id = assign_equipment_tag(self.db, "Barometer-X-01")
        self.other_tag = assign_equipment_tag(self.db, "Hygro-1-01")
        self.user_tag = assign_user_tag(self.db, STUDENT_ID)
        self.start = datetime(2024, 1, 10, 9, 0, 0)

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _ping(self, tag_id, reader_id, minutes, user_tag=None):
        return ingest_scan(self.db, tag_id, reader_id, self.start + timedelta(minutes=minutes), user_tag_id=user_tag)

    def test_walk_in_with_user_tag_is_current_until_the_unit_moves_on(self):
        self._ping(self.tag_id, "ANT-A", 0, self.user_tag)

        usage = user_usage(self.db, STUDENT_ID, now=self.start + timedelta(hours=1))
        self.assertEqual([item["serialID"] for item in usage["currentlyUsed"]], ["Barometer-X-01"])
        self.assertEqual(usage["currentlyUsed"][0]["roomNumber"], "ENG-101")
        self.assertEqual(usage["currentlyUsed"][0]["modelName"], "Barometer-X")
        self.assertEqual(usage["currentlyUsed"][0]["typeName"], "Barometer")

        self._ping(self.tag_id, "ANT-A", 30)

        usage = user_usage(self.db, STUDENT_ID, now=self.start + timedelta(hours=1))
        self.assertEqual(usage["currentlyUsed"], [])
        self.assertEqual([item["serialID"] for item in usage["recentlyUsed"]], ["Barometer-X-01"])

    def test_recent_usage_keeps_latest_walk_in_per_unit_inside_the_window(self):
        self._ping(self.tag_id, "ANT-A", 0, self.user_tag)
        self._ping(self.tag_id, "ANT-B", 60, self.user_tag)
        self._ping(self.other_tag, "ANT-A", 90)

        usage = user_usage(self.db, STUDENT_ID, now=self.start + timedelta(days=1))
        self.assertEqual(len(usage["recentlyUsed"]), 1)
        self.assertEqual(usage["recentlyUsed"][0]["readerID"], "ANT-B")

        later = user_usage(self.db, STUDENT_ID, now=self.start + timedelta(days=10))
        self.assertEqual(later["recentlyUsed"], [])
        self.assertEqual([item["serialID"] for item in later["currentlyUsed"]], ["Barometer-X-01"])

    def test_users_without_tags_or_records(self):
        self.assertEqual(
            user_usage(self.db, OTHER_STUDENT_ID),
            {"schoolID": OTHER_STUDENT_ID, "currentlyUsed": [], "recentlyUsed": []},
        )
        with self.assertRaises(NotFoundError):
            user_usage(self.db, "4242")


if __name__ == "__main__":
    unittest.main()
