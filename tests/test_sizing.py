import logging
import unittest

from lxc2vm.core.sizing import ShrinkFailed, SizingEngine
from lxc2vm.core.utils import GiB, MiB


class TestShrinkPlan(unittest.TestCase):
    def setUp(self):
        self.engine = SizingEngine(logging.getLogger("test-sizing"))

    def test_scenario_a_margin_and_target(self):
        plan = self.engine.plan(27 * GiB, 1)
        self.assertEqual(plan.metadata_margin_bytes, 2 * GiB)
        self.assertEqual(plan.target_gb, 30)

    def test_partial_gib_rounds_up(self):
        plan = self.engine.plan(27 * GiB + 1, 1)
        self.assertEqual(plan.target_gb, 31)

    def test_margin_floor_is_512mib(self):
        self.assertEqual(SizingEngine.metadata_margin_gb(100 * MiB), 1)
        self.assertEqual(SizingEngine.metadata_margin_gb(40 * GiB), 2)

    def test_clamped_to_two_gib(self):
        plan = self.engine.plan(0, 0)
        self.assertEqual(plan.target_gb, 2)

    def test_target_never_below_used_plus_headroom(self):
        for used_gb in (1, 5, 64, 500):
            plan = self.engine.plan(used_gb * GiB, 3)
            self.assertGreaterEqual(plan.target_gb, used_gb + 3)

    def test_filesystem_minimum_raises_target(self):
        plan = self.engine.plan(10 * GiB, 1, filesystem_minimum_gb=20)
        self.assertEqual(plan.target_gb, 20)

    def test_raise_to_minimum_after_planning(self):
        plan = self.engine.plan(10 * GiB, 1, current_gb=50)
        self.engine.raise_to_minimum(plan, 25)
        self.assertEqual(plan.target_gb, 25)
        self.assertEqual(plan.filesystem_minimum_gb, 25)
        self.assertFalse(plan.skipped)

    def test_raise_to_minimum_can_turn_into_skip(self):
        plan = self.engine.plan(10 * GiB, 1, current_gb=20)
        self.engine.raise_to_minimum(plan, 21)
        self.assertTrue(plan.skipped)


class TestShrinkExecution(unittest.TestCase):
    def setUp(self):
        self.engine = SizingEngine(logging.getLogger("test-sizing"))

    def test_scenario_b_savings(self):
        plan = self.engine.plan(28 * GiB, 1, current_gb=200)
        self.assertEqual(plan.target_gb, 31)
        calls = []
        final = self.engine.execute(plan, calls.append)
        self.assertEqual(final, 31)
        self.assertEqual(calls, [31])
        self.assertEqual(plan.savings_gb, 169)
        self.assertEqual(plan.to_dict()["savings_gb"], 169)

    def test_scenario_c_skip(self):
        plan = self.engine.plan(27 * GiB, 1, current_gb=30)
        self.assertTrue(plan.skipped)
        calls = []
        final = self.engine.execute(plan, calls.append)
        self.assertEqual(final, 30)
        self.assertEqual(calls, [])
        self.assertEqual(plan.savings_gb, 0)

    def test_retry_grows_by_step(self):
        plan = self.engine.plan(28 * GiB, 1, current_gb=200)
        calls = []

        def resize(size):
            calls.append(size)
            if len(calls) < 3:
                raise RuntimeError("resize2fs: No space left on device")

        final = self.engine.execute(plan, resize)
        self.assertEqual(calls, [31, 33, 35])
        self.assertEqual(final, plan.target_gb + 2 * (3 - 1))
        self.assertEqual(plan.attempt_count, 3)
        self.assertEqual(plan.final_gb, 35)

    def test_five_failures_are_fatal(self):
        plan = self.engine.plan(28 * GiB, 1, current_gb=200)
        calls = []

        def resize(size):
            calls.append(size)
            raise RuntimeError("nope")

        with self.assertRaises(ShrinkFailed) as cm:
            self.engine.execute(plan, resize)
        self.assertEqual(calls, [31, 33, 35, 37, 39])
        self.assertIsNone(plan.final_gb)
        self.assertEqual(cm.exception.code, 4)

    def test_retry_stops_at_current_size(self):
        plan = self.engine.plan(28 * GiB, 1, current_gb=34)
        calls = []

        def resize(size):
            calls.append(size)
            raise RuntimeError("nope")

        final = self.engine.execute(plan, resize)
        self.assertEqual(calls, [31, 33])
        self.assertEqual(final, 34)
        self.assertTrue(plan.skipped)


if __name__ == "__main__":
    unittest.main()
