import unittest

import cv2
import numpy as np

import primitives
from config import PipelineConfig
from measure import (
    ImageDecodeError,
    MeasurementError,
    MeasurementResult,
    detect_edges,
    detect_sheet,
    measure_object,
    measure_region,
    object_area_bounds,
    select_object_contour,
)
from sheet import CalibrationError

PRIMS = primitives.load()

DEBUG_NAMES = {"warped", "equalized", "thresh", "edges", "combined", "closed"}


def _png(img: np.ndarray) -> bytes:
    ok, buf = cv2.imencode(".png", img)
    assert ok
    return buf.tobytes()


def _photo(obj=None, margin: int = 80) -> np.ndarray:
    """A4 sheet at 2 px/mm on a dark table, optionally with a black box (x, y, w, h) on it."""
    img = np.full((594 + 2 * margin, 420 + 2 * margin, 3), 50, np.uint8)
    cv2.rectangle(img, (margin, margin), (margin + 419, margin + 593), (235,) * 3, -1)
    if obj is not None:
        x, y, w, h = obj
        cv2.rectangle(img, (margin + x, margin + y), (margin + x + w - 1, margin + y + h - 1), (0, 0, 0), -1)
    return img


def _box(x: int, y: int, w: int, h: int) -> np.ndarray:
    return np.array([[[x, y]], [[x + w, y]], [[x + w, y + h]], [[x, y + h]]], np.int32)


class AreaBoundsTests(unittest.TestCase):
    def test_floor_applies_on_large_regions(self) -> None:
        min_area, max_area = object_area_bounds(420 * 594, PipelineConfig())
        self.assertEqual(min_area, 1000)
        self.assertAlmostEqual(max_area, 0.9 * 420 * 594)

    def test_fraction_applies_on_small_regions(self) -> None:
        min_area, max_area = object_area_bounds(100 * 100, PipelineConfig())
        self.assertAlmostEqual(min_area, 50)
        self.assertAlmostEqual(max_area, 9000)


class SelectContourTests(unittest.TestCase):
    def test_bounds_are_inclusive(self) -> None:
        square = _box(0, 0, 10, 10)  # area 100
        self.assertIs(select_object_contour([square], 100, 100, PRIMS)[0], square)
        self.assertIs(select_object_contour([square], 50, 100, PRIMS)[0], square)
        self.assertIs(select_object_contour([square], 100, 500, PRIMS)[0], square)

    def test_one_above_max_is_excluded(self) -> None:
        strip = _box(0, 0, 101, 1)  # area 101
        self.assertIsNone(select_object_contour([strip], 10, 100, PRIMS))

    def test_largest_wins_and_first_breaks_ties(self) -> None:
        small = _box(0, 0, 10, 10)
        first = _box(20, 20, 20, 20)
        second = _box(50, 50, 20, 20)
        contour, area = select_object_contour([small, first, second], 10, 1000, PRIMS)
        self.assertIs(contour, first)
        self.assertEqual(area, 400)

    def test_empty(self) -> None:
        self.assertIsNone(select_object_contour([], 0, 100, PRIMS))


class MeasureRegionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.config = PipelineConfig()
        self.region = np.full((594, 420, 3), 235, np.uint8)

    def test_solid_rectangle(self) -> None:
        mask = np.zeros((594, 420), np.uint8)
        mask[200:300, 100:300] = 255  # 200 x 100 px
        px_per_mm = 2.0
        m = measure_region(self.region, mask, px_per_mm, PRIMS, self.config)

        one_px = 1 / px_per_mm
        self.assertAlmostEqual(m.width_mm, 100.0, delta=one_px)
        self.assertAlmostEqual(m.height_mm, 50.0, delta=one_px)
        self.assertAlmostEqual(m.area_mm2, m.width_mm * m.height_mm, delta=0.05 * m.width_mm * m.height_mm)
        self.assertEqual(m.image.shape, (594, 420, 3))
        self.assertIsNotNone(m.contour)

    def test_blank_mask_gives_zero(self) -> None:
        mask = np.zeros((594, 420), np.uint8)
        m = measure_region(self.region, mask, 2.0, PRIMS, self.config)
        self.assertEqual((m.width_mm, m.height_mm, m.area_mm2), (0.0, 0.0, 0.0))
        np.testing.assert_array_equal(m.image, mask)
        self.assertIsNot(m.image, mask)

    def test_sheet_border_is_not_the_object(self) -> None:
        mask = np.full((594, 420), 255, np.uint8)
        m = measure_region(self.region, mask, 2.0, PRIMS, self.config)
        self.assertEqual(m.width_mm, 0.0)

    def test_inputs_are_untouched(self) -> None:
        mask = np.zeros((594, 420), np.uint8)
        mask[200:300, 100:300] = 255
        region_before, mask_before = self.region.copy(), mask.copy()
        measure_region(self.region, mask, 2.0, PRIMS, self.config)
        np.testing.assert_array_equal(self.region, region_before)
        np.testing.assert_array_equal(mask, mask_before)

    def test_scale_must_be_positive(self) -> None:
        mask = np.zeros((10, 10), np.uint8)
        with self.assertRaises(CalibrationError):
            measure_region(self.region, mask, 0.0, PRIMS, self.config)


class MeasureObjectTests(unittest.TestCase):
    def test_measures_box_on_sheet(self) -> None:
        result = measure_object(_png(_photo((100, 150, 160, 80))), PRIMS)
        self.assertIsNotNone(result)
        self.assertAlmostEqual(result.px_per_mm, 2.0, delta=0.02)
        one_px = 1 / result.px_per_mm
        self.assertAlmostEqual(result.width_mm, 80.0, delta=2 * one_px)
        self.assertAlmostEqual(result.height_mm, 40.0, delta=2 * one_px)
        self.assertAlmostEqual(
            result.area_mm2, result.width_mm * result.height_mm, delta=0.05 * result.width_mm * result.height_mm
        )
        self.assertTrue(result.object_detected)
        self.assertEqual(set(result.debug_images), DEBUG_NAMES)
        self.assertTrue(result.image_png.startswith(b"\x89PNG"))

    def test_rotated_sheet_gives_same_scale(self) -> None:
        portrait = measure_object(_png(_photo((100, 150, 160, 80))), PRIMS)
        landscape_img = cv2.rotate(_photo((100, 150, 160, 80)), cv2.ROTATE_90_CLOCKWISE)
        landscape = measure_object(_png(landscape_img), PRIMS)
        self.assertAlmostEqual(portrait.px_per_mm, landscape.px_per_mm, delta=0.01)
        self.assertAlmostEqual(portrait.width_mm, landscape.height_mm, delta=1.0)
        self.assertAlmostEqual(portrait.height_mm, landscape.width_mm, delta=1.0)

    def test_blank_sheet_gives_zero_result(self) -> None:
        result = measure_object(_png(_photo()), PRIMS)
        self.assertIsNotNone(result)
        self.assertEqual((result.width_mm, result.height_mm, result.area_mm2), (0.0, 0.0, 0.0))
        self.assertFalse(result.object_detected)
        self.assertEqual(set(result.debug_images), DEBUG_NAMES)

    def test_no_sheet_returns_none(self) -> None:
        img = np.full((400, 400, 3), 128, np.uint8)
        self.assertIsNone(measure_object(_png(img), PRIMS))

    def test_repeated_runs_are_identical(self) -> None:
        data = _png(_photo((60, 300, 120, 120)))
        a = measure_object(data, PRIMS)
        b = measure_object(data, PRIMS)
        self.assertEqual(
            (a.width_mm, a.height_mm, a.area_mm2, a.px_per_mm),
            (b.width_mm, b.height_mm, b.area_mm2, b.px_per_mm),
        )
        self.assertEqual(a.image_png, b.image_png)

    def test_debug_images_can_be_skipped(self) -> None:
        result = measure_object(_png(_photo((100, 150, 160, 80))), PRIMS, include_debug=False)
        self.assertEqual(result.debug_images, {})

    def test_rectified_pipeline(self) -> None:
        config = PipelineConfig(rectify_perspective=True)
        result = measure_object(_png(_photo((100, 150, 160, 80))), PRIMS, config)
        self.assertAlmostEqual(result.width_mm, 80.0, delta=1.5)
        self.assertAlmostEqual(result.height_mm, 40.0, delta=1.5)

    def test_missing_image(self) -> None:
        with self.assertRaises(ImageDecodeError):
            measure_object(b"", PRIMS)

    def test_undecodable_image(self) -> None:
        with self.assertRaises(ImageDecodeError):
            measure_object(b"definitely not a png", PRIMS)

    def test_primitive_failure_is_wrapped(self) -> None:
        class Broken(Exception):
            pass

        class BrokenPrims:
            error = Broken

            def decode(self, data):
                return np.zeros((10, 10, 3), np.uint8)

            def to_gray(self, img):
                raise Broken("no gray today")

        with self.assertRaises(MeasurementError) as ctx:
            measure_object(b"x", BrokenPrims())
        self.assertIsInstance(ctx.exception.__cause__, Broken)


class DetectSheetTests(unittest.TestCase):
    def test_found(self) -> None:
        detection = detect_sheet(_png(_photo()), PRIMS)
        self.assertTrue(detection.found)
        d = detection.to_dict()
        self.assertEqual(len(d["corners"]), 4)
        self.assertTrue(d["image"].startswith("data:image/png;base64,"))

    def test_not_found_shows_edges(self) -> None:
        img = np.full((300, 300, 3), 128, np.uint8)
        detection = detect_sheet(_png(img), PRIMS)
        self.assertFalse(detection.found)
        self.assertIsNone(detection.to_dict()["corners"])
        edges = cv2.imdecode(np.frombuffer(detection.image_png, np.uint8), cv2.IMREAD_UNCHANGED)
        self.assertEqual(edges.shape, (300, 300))

    def test_edges(self) -> None:
        png = detect_edges(_png(_photo()), PRIMS)
        edges = cv2.imdecode(np.frombuffer(png, np.uint8), cv2.IMREAD_UNCHANGED)
        self.assertEqual(edges.shape, (754, 580))
        self.assertGreater(int(np.count_nonzero(edges)), 0)


class MeasurementResultTests(unittest.TestCase):
    def test_rounding_and_dict(self) -> None:
        result = MeasurementResult(12.345, 6.78, 83.69, 2.00456, b"png", {"closed": b"c"})
        self.assertEqual(result.width_mm, 12.3)
        self.assertEqual(result.height_mm, 6.8)
        self.assertEqual(result.area_mm2, 83.7)
        d = result.to_dict()
        self.assertEqual(d["px_per_mm"], 2.005)
        self.assertTrue(d["object_detected"])
        self.assertEqual(d["image"], "data:image/png;base64,cG5n")
        self.assertEqual(list(d["debug_images"]), ["closed"])


if __name__ == "__main__":
    unittest.main()
