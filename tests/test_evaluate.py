"""Tests for reconstruction metrics."""

import sys
import time
import unittest
from pathlib import Path

import numpy as np

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from cps import evaluate


class TestMetrics(unittest.TestCase):
    """Test metric helpers and the timer."""

    def test_residual_rmse(self):
        self.assertAlmostEqual(evaluate.residual_rmse(np.array([[3.0, -3.0], [3.0, 3.0]])), 3.0)
        self.assertEqual(evaluate.residual_rmse(np.zeros((0, 4))), float("inf"))

    def test_light_matrix_condition(self):
        L = np.diag([2.0, 1.0, 0.5])
        self.assertAlmostEqual(evaluate.light_matrix_condition(L), 4.0)
        L[2, 2] = 0
        self.assertEqual(evaluate.light_matrix_condition(L), float("inf"))

    def test_timer_freezes_on_stop(self):
        with evaluate.Timer("test") as timer:
            time.sleep(0.01)
        elapsed = timer.elapsed
        self.assertGreater(elapsed, 0)
        time.sleep(0.01)
        self.assertEqual(timer.elapsed, elapsed)

    def test_timer_not_started(self):
        timer = evaluate.Timer("idle")
        self.assertEqual(timer.elapsed, 0.0)
        self.assertEqual(timer.stop(), 0.0)

    def test_summary(self):
        metrics = evaluate.ReconstructionMetrics()
        metrics.update("n_images", 4)
        metrics.update("light_rank", 3)
        metrics.update("light_condition", float("inf"))
        metrics.update_stage_timing("solve_surface", 0.5)

        summary = metrics.summary()
        self.assertIn("Images: 4", summary)
        self.assertIn("rank 3, condition inf", summary)
        self.assertIn("solve_surface", summary)

        # to_dict returns a copy
        metrics.to_dict()["stage_timings"]["other"] = 1.0
        self.assertNotIn("other", metrics.to_dict()["stage_timings"])


if __name__ == "__main__":
    unittest.main()
