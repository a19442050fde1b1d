"""
Tests for mask placement and masked compositing.
"""

import os
import sys
import unittest

import numpy as np

sys.path.append(os.path.join(os.path.dirname(__file__), "..", "src"))

from mockup_engine.geometry import Bounds, Quad  # type: ignore
from mockup_engine.masking import draw_masked, mask_to_canvas, quad_clip  # type: ignore
from mockup_engine.perspective import create_drawer  # type: ignore


class TestMaskToCanvas(unittest.TestCase):
    """Masks are placed at their bounds with a default outside colour."""

    def test_placement(self):
        canvas = mask_to_canvas(np.ones((10, 10), dtype=np.float32), Bounds(5, 5, 15, 15), (20, 20))
        self.assertEqual(canvas.shape, (20, 20))
        self.assertEqual(canvas[10, 10], 1.0)
        self.assertEqual(canvas[0, 0], 0.0)
        self.assertEqual(canvas[16, 16], 0.0)

    def test_default_color_outside_bounds(self):
        canvas = mask_to_canvas(np.zeros((10, 10), dtype=np.float32), Bounds(5, 5, 15, 15), (20, 20), 255)
        self.assertEqual(canvas[0, 0], 1.0)
        self.assertEqual(canvas[10, 10], 0.0)

    def test_scale(self):
        canvas = mask_to_canvas(np.ones((10, 10), dtype=np.float32), Bounds(5, 5, 15, 15), (40, 40), scale=2.0)
        self.assertEqual(canvas[20, 20], 1.0)
        self.assertEqual(canvas[29, 29], 1.0)
        self.assertEqual(canvas[5, 5], 0.0)
        self.assertEqual(canvas[31, 31], 0.0)

    def test_partially_outside_canvas(self):
        canvas = mask_to_canvas(np.ones((10, 10), dtype=np.float32), Bounds(-5, -5, 5, 5), (20, 20))
        self.assertEqual(canvas[0, 0], 1.0)
        self.assertEqual(canvas[4, 4], 1.0)
        self.assertEqual(canvas[6, 6], 0.0)

    def test_empty_bounds(self):
        canvas = mask_to_canvas(np.ones((1, 1), dtype=np.float32), Bounds(0, 0, 0, 0), (5, 5), 255)
        self.assertTrue(np.all(canvas == 1.0))


class TestQuadClip(unittest.TestCase):

    def test_coverage_inside_and_outside(self):
        clip = quad_clip(Quad.from_rect(10, 10, 5, 5), (20, 20))
        self.assertEqual(clip[10, 10], 1.0)
        self.assertEqual(clip[0, 0], 0.0)
        self.assertEqual(clip[19, 19], 0.0)

    def test_scale(self):
        clip = quad_clip(Quad.from_rect(10, 10, 5, 5), (40, 40), scale=2.0)
        self.assertEqual(clip[20, 20], 1.0)
        self.assertEqual(clip[5, 5], 0.0)


class TestDrawMasked(unittest.TestCase):
    """A mask limits where the design survives."""

    def setUp(self):
        self.drawer = create_drawer("homography")
        self.design = np.ones((10, 10, 4), dtype=np.float32)

    def test_mask_gates_design(self):
        target = np.zeros((50, 50, 4), dtype=np.float32)
        mask = np.zeros((50, 50), dtype=np.float32)
        mask[:, :25] = 1.0
        self.assertTrue(draw_masked(target, self.drawer, self.design, Quad.from_rect(40, 40, 5, 5), mask=mask))
        self.assertAlmostEqual(float(target[20, 10, 3]), 1.0, places=3)
        self.assertEqual(target[20, 35, 3], 0.0)
        self.assertEqual(target[2, 2, 3], 0.0)

    def test_without_mask_clips_to_quad(self):
        target = np.zeros((50, 50, 4), dtype=np.float32)
        quad = Quad.from_flat([10, 10, 40, 15, 35, 40, 12, 35])
        self.assertTrue(draw_masked(target, self.drawer, self.design, quad))
        self.assertAlmostEqual(float(target[25, 25, 3]), 1.0, places=3)
        self.assertEqual(target[5, 5, 3], 0.0)
        self.assertEqual(target[45, 45, 3], 0.0)

    def test_opacity_applied_after_masking(self):
        target = np.zeros((30, 30, 4), dtype=np.float32)
        draw_masked(target, self.drawer, self.design, Quad.from_rect(20, 20, 5, 5), opacity=0.5)
        self.assertAlmostEqual(float(target[15, 15, 3]), 0.5, places=3)

    def test_degenerate_quad(self):
        target = np.zeros((30, 30, 4), dtype=np.float32)
        quad = Quad.from_flat([0, 0, 10, 0, 20, 0, 0, 10])
        self.assertFalse(draw_masked(target, self.drawer, self.design, quad))
