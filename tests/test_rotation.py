from __future__ import annotations

import sys
import unittest
from pathlib import Path

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from rotation import available_stations, can_assign  # noqa: E402

ALL_STATIONS = ["Plock", "Pack", "KM", "Decating", "Rep"]


class CanAssignTests(unittest.TestCase):
    def test_allows_any_station_without_previous_assignment(self) -> None:
        last_station_of = {"emp1": None}

        self.assertTrue(can_assign("emp1", "Plock", last_station_of))
        self.assertTrue(can_assign("emp1", "Pack", last_station_of))

    def test_blocks_the_station_worked_last(self) -> None:
        self.assertFalse(can_assign("emp1", "Plock", {"emp1": "Plock"}))

    def test_allows_every_other_station(self) -> None:
        last_station_of = {"emp1": "Plock"}
        for station in ALL_STATIONS:
            with self.subTest(station=station):
                self.assertEqual(can_assign("emp1", station, last_station_of), station != "Plock")

    def test_unknown_worker_is_unrestricted(self) -> None:
        self.assertTrue(can_assign("unknown-emp", "Plock", {}))

    def test_each_worker_checked_against_their_own_history(self) -> None:
        last_station_of = {"emp1": "Plock", "emp2": "Pack", "emp3": "KM"}

        self.assertFalse(can_assign("emp1", "Plock", last_station_of))
        self.assertTrue(can_assign("emp1", "Pack", last_station_of))
        self.assertFalse(can_assign("emp2", "Pack", last_station_of))
        self.assertTrue(can_assign("emp2", "Plock", last_station_of))
        self.assertFalse(can_assign("emp3", "KM", last_station_of))
        self.assertTrue(can_assign("emp3", "Decating", last_station_of))

    def test_shared_last_station_blocks_both_workers(self) -> None:
        last_station_of = {"emp1": "Plock", "emp2": "Plock"}

        self.assertFalse(can_assign("emp1", "Plock", last_station_of))
        self.assertFalse(can_assign("emp2", "Plock", last_station_of))
        self.assertTrue(can_assign("emp1", "Pack", last_station_of))
        self.assertTrue(can_assign("emp2", "Pack", last_station_of))

    def test_integer_worker_ids(self) -> None:
        self.assertFalse(can_assign(7, "Rep", {7: "Rep"}))
        self.assertTrue(can_assign(8, "Rep", {7: "Rep"}))


class AvailableStationsTests(unittest.TestCase):
    def test_all_stations_without_previous_assignment(self) -> None:
        available = available_stations("emp1", ALL_STATIONS, {"emp1": None})

        self.assertEqual(available, ALL_STATIONS)

    def test_excludes_last_station(self) -> None:
        available = available_stations("emp1", ALL_STATIONS, {"emp1": "Plock"})

        self.assertNotIn("Plock", available)
        self.assertIn("Pack", available)
        self.assertIn("KM", available)
        self.assertEqual(len(available), 4)

    def test_unknown_worker_gets_input_unchanged(self) -> None:
        for stations in ([], ["Rep"], ALL_STATIONS, ["KM", "KM"]):
            with self.subTest(stations=stations):
                self.assertEqual(available_stations("unknown-emp", stations, {}), stations)

    def test_last_station_outside_list_keeps_everything(self) -> None:
        self.assertEqual(available_stations("emp1", ["Pack", "KM"], {"emp1": "Plock"}), ["Pack", "KM"])


if __name__ == "__main__":
    unittest.main()
