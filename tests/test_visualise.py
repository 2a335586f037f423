"""Tests for result visualisation."""

import os
import shutil
import sys
import tempfile
import unittest
from pathlib import Path

import cv2
import matplotlib
matplotlib.use("Agg")
import numpy as np
import pytest

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from cps import visualise


class TestImageMapping(unittest.TestCase):
    """Test the mapping of per-pixel results onto images."""

    def setUp(self):
        self.width, self.height = 3, 2
        self.indices = np.array([0, 4])  # (0, 0) and (1, 1)

    def test_scatter_leaves_background_zero(self):
        image = visualise.scatter_to_image(np.array([7.0, 9.0]), self.indices, self.width, self.height)
        self.assertEqual(image.shape, (2, 3, 1))
        np.testing.assert_array_equal(image[:, :, 0], [[7, 0, 0], [0, 9, 0]])

    def test_normal_mapping(self):
        N = np.array([[0.0, 0.0, 1.0], [-1.0, 0.0, 0.0]])
        image = visualise.surface_normal_to_image(N, self.indices, self.width, self.height)

        np.testing.assert_allclose(image[0, 0], [127.5, 127.5, 255.0])
        np.testing.assert_allclose(image[1, 1], [0.0, 127.5, 127.5])
        np.testing.assert_array_equal(image[0, 1], [0, 0, 0])

    def test_albedo_affine_mapping(self):
        """Channel-major albedo is regrouped per pixel and mapped like the normals."""
        R = np.array([0.0, 1.0, 3.0, -1.0])  # channel 0: p0, p1; channel 1: p0, p1
        image = visualise.surface_albedo_to_image(R, self.indices, self.width, self.height, 2)

        self.assertEqual(image.shape, (2, 3, 2))
        np.testing.assert_allclose(image[0, 0], [127.5, 510.0])
        np.testing.assert_allclose(image[1, 1], [255.0, 0.0])

    def test_albedo_minmax_mapping(self):
        R = np.array([10.0, 30.0])
        image = visualise.surface_albedo_to_image(
            R, self.indices, self.width, self.height, 1, mapping="minmax"
        )
        self.assertAlmostEqual(image[0, 0, 0], 0.0)
        self.assertAlmostEqual(image[1, 1, 0], 255.0)

    def test_albedo_minmax_constant(self):
        image = visualise.surface_albedo_to_image(
            np.array([4.0, 4.0]), self.indices, self.width, self.height, 1, mapping="minmax"
        )
        np.testing.assert_array_equal(image, 0)

    def test_unknown_albedo_mapping(self):
        with pytest.raises(ValueError):
            visualise.surface_albedo_to_image(np.ones(2), self.indices, self.width, self.height, 1, "log")

    def test_error_channel_column(self):
        """Channel c of the error image is |Idiff| of image c."""
        Idiff = np.array([
            [-1.0, 5.0, 6.0],   # channel 0, p0
            [2.0, 5.0, 6.0],    # channel 0, p1
            [5.0, -3.0, 6.0],   # channel 1, p0
            [5.0, 4.0, 6.0],    # channel 1, p1
        ])
        image = visualise.reprojection_error_to_image(Idiff, self.indices, self.width, self.height, 2)
        np.testing.assert_allclose(image[0, 0], [1.0, 3.0])
        np.testing.assert_allclose(image[1, 1], [2.0, 4.0])

    def test_error_channel_needs_enough_images(self):
        with pytest.raises(ValueError):
            visualise.reprojection_error_to_image(np.zeros((6, 2)), self.indices, self.width, self.height, 3)

    def test_error_rms_column(self):
        Idiff = np.array([
            [3.0, -3.0],
            [0.0, 0.0],
        ])
        image = visualise.reprojection_error_to_image(
            Idiff, self.indices, self.width, self.height, 1, column="rms"
        )
        self.assertAlmostEqual(image[0, 0, 0], 3.0)
        self.assertAlmostEqual(image[1, 1, 0], 0.0)

    def test_error_shape_mismatch(self):
        with pytest.raises(ValueError):
            visualise.reprojection_error_to_image(np.zeros((3, 3)), self.indices, self.width, self.height, 1)


class TestSaving(unittest.TestCase):
    """Test writing images and figures."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def test_rgb_is_written_in_bgr_order(self):
        image = np.zeros((2, 2, 3))
        image[..., 0] = 300.0  # red, clipped
        image[..., 2] = 10.4   # blue, rounded
        path = os.path.join(self.temp_dir, "nested", "rgb.png")

        visualise.save_image(path, image)
        loaded = cv2.imread(path, cv2.IMREAD_UNCHANGED)

        self.assertEqual(loaded.dtype, np.uint8)
        np.testing.assert_array_equal(loaded[0, 0], [10, 0, 255])

    def test_single_channel_is_written_as_gray(self):
        path = os.path.join(self.temp_dir, "gray.png")
        visualise.save_image(path, np.full((2, 3, 1), -5.0))

        loaded = cv2.imread(path, cv2.IMREAD_UNCHANGED)
        self.assertEqual(loaded.shape, (2, 3))
        np.testing.assert_array_equal(loaded, 0)

    def test_two_channels_are_padded_to_rgb(self):
        path = os.path.join(self.temp_dir, "two.png")
        image = np.zeros((2, 2, 2))
        image[..., 0] = 40.0
        image[..., 1] = 90.0

        visualise.save_image(path, image)
        loaded = cv2.cvtColor(cv2.imread(path), cv2.COLOR_BGR2RGB)

        self.assertEqual(loaded.shape, (2, 2, 3))
        np.testing.assert_array_equal(loaded[1, 1], [40, 90, 0])

    def test_save_normal_image(self):
        path = os.path.join(self.temp_dir, "normal.png")
        N = np.array([[0.0, 0.0, 1.0]])
        image = visualise.save_surface_normal_to_image(N, np.array([1]), 2, 1, path)

        self.assertEqual(image.shape, (1, 2, 3))
        loaded = cv2.cvtColor(cv2.imread(path), cv2.COLOR_BGR2RGB)
        np.testing.assert_array_equal(loaded[0, 1], [128, 128, 255])
        np.testing.assert_array_equal(loaded[0, 0], [0, 0, 0])

    def test_summary_figure(self):
        path = os.path.join(self.temp_dir, "summary.png")
        albedo = np.full((4, 4, 1), 128.0)
        normal = np.full((4, 4, 3), 200.0)
        error = np.zeros((4, 4, 3))

        visualise.create_summary_figure(albedo, normal, error, path, title="Test")
        self.assertTrue(os.path.exists(path))


if __name__ == "__main__":
    unittest.main()
