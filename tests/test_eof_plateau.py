import unittest
from typing import List

from fake_host import FakeHost
from mpv_reload import EOFPlateauDetector


class EOFPlateauDetectorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.host = FakeHost()
        self.reloads: List[str] = []
        self.ended = 0
        self.detector = EOFPlateauDetector(self.host, self.reloads.append, self.mark_ended)

    def mark_ended(self) -> None:
        self.ended += 1

    def reach_eof(self, time_pos: object, duration: object) -> None:
        self.host.properties["time-pos"] = time_pos
        self.host.properties["duration"] = duration
        self.detector.on_eof_reached("eof-reached", True)

    def test_first_eof_reloads_and_unpauses(self) -> None:
        self.reach_eof(100.4, 100.9)

        self.assertEqual(self.reloads, ["eof"])
        self.assertIn(("set", "pause", False), self.host.commands)
        self.assertEqual(self.detector.last_time_pos, 100)
        self.assertEqual(self.ended, 0)

    def test_eof_at_same_second_ends_playback(self) -> None:
        self.reach_eof(100.2, 100.5)
        self.reach_eof(100.7, 100.8)

        self.assertEqual(self.reloads, ["eof"])
        self.assertEqual(self.ended, 1)
        self.assertEqual(self.detector.last_time_pos, 100)

    def test_eof_after_progress_reloads_again(self) -> None:
        self.reach_eof(100.0, 100.0)
        self.reach_eof(101.3, 101.6)

        self.assertEqual(self.reloads, ["eof", "eof"])
        self.assertEqual(self.detector.last_time_pos, 101)
        self.assertEqual(self.ended, 0)

    def test_eof_before_duration_is_ignored(self) -> None:
        self.reach_eof(42.0, 100.0)
        self.assertEqual(self.reloads, [])
        self.assertIsNone(self.detector.last_time_pos)

    def test_missing_position_is_ignored(self) -> None:
        self.reach_eof(None, 100.0)
        self.reach_eof(100.0, None)
        self.assertEqual(self.reloads, [])
        self.assertEqual(self.ended, 0)

    def test_eof_cleared_event_does_nothing(self) -> None:
        self.host.properties["time-pos"] = 10.0
        self.host.properties["duration"] = 10.0
        self.detector.on_eof_reached("eof-reached", False)
        self.detector.on_eof_reached("eof-reached", None)
        self.assertEqual(self.reloads, [])
        self.assertEqual(self.host.commands, [])


if __name__ == "__main__":
    unittest.main()
