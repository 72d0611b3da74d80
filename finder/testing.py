import io
import json
import shutil
import sys
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from unittest import mock
from pathlib import Path
import numpy as np
import torch
from PIL import Image
from .image_operations import PixelGrid, load_image, makesample, save_image
from .output_operations import format_matches, print_matches
from .pattern_operations import (
    CAPACITY_LIMIT, PatternSample, PatternTooLarge, build_pattern,
)
from . import search_operations
from .search_operations import (
    ToleranceConfig, candidate_bounds, channels_match, colors_match,
    search, search_images, search_pattern, validate_tolerance,
)


def solid_grid(width, height, color):
    return PixelGrid(np.full((height, width, 3), color, dtype=np.uint8))

def random_grid(width, height, seed, low=0, high=256):
    """Deterministic random grid; a small [low, high) range makes repeated matches likely"""
    rng = np.random.default_rng(seed)
    return PixelGrid(rng.integers(low, high, size=(height, width, 3), dtype=np.int64))

def marked_grid(width, height, marks, background=(10, 10, 10)):
    """Solid grid with a few pixels overwritten, marks is {(x, y): (r, g, b)}"""
    pixels = np.full((height, width, 3), background, dtype=np.uint8)
    for (x, y), color in marks.items():
        pixels[y, x] = color
    return PixelGrid(pixels)


class TestPixelGrid(unittest.TestCase):

    def setUp(self):
        self.test_dir = Path(tempfile.mkdtemp())

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def test_dimensions_and_pixel_access(self):
        grid = marked_grid(5, 3, {(4, 2): (1, 2, 3)})
        self.assertEqual((grid.width, grid.height), (5, 3))
        self.assertEqual(grid.pixel_at(4, 2), (1, 2, 3))
        self.assertEqual(grid.pixel_at(0, 0), (10, 10, 10))
        self.assertIsInstance(grid.pixel_at(4, 2)[0], int)

    def test_pixels_are_read_only(self):
        grid = solid_grid(2, 2, (0, 0, 0))
        with self.assertRaises(ValueError):
            grid.pixels[0, 0, 0] = 5

    def test_rejects_bad_shapes(self):
        with self.assertRaises(ValueError):
            PixelGrid(np.zeros((4, 4), dtype=np.uint8))
        with self.assertRaises(ValueError):
            PixelGrid(np.zeros((0, 4, 3), dtype=np.uint8))
        with self.assertRaises(ValueError):
            PixelGrid(np.full((2, 2, 3), 300))

    def test_crop(self):
        grid = random_grid(10, 8, seed=1)
        sub = grid.crop(3, 2, 4, 5)
        self.assertEqual(sub.size, (4, 5))
        self.assertEqual(sub.pixel_at(0, 0), grid.pixel_at(3, 2))
        self.assertEqual(sub.pixel_at(3, 4), grid.pixel_at(6, 6))

    def test_crop_out_of_bounds(self):
        grid = random_grid(10, 8, seed=1)
        with self.assertRaises(ValueError) as context:
            grid.crop(8, 0, 5, 2)
        self.assertIn("exceed image bounds", str(context.exception))

    def test_load_png_round_trip(self):
        grid = random_grid(12, 7, seed=2)
        path = save_image(grid, self.test_dir / 'grid.png')
        loaded = load_image(path)
        self.assertTrue(np.array_equal(loaded.pixels, grid.pixels))

    def test_load_drops_alpha_and_converts_grayscale(self):
        rgba_path = self.test_dir / 'rgba.png'
        Image.new('RGBA', (4, 3), color=(1, 2, 3, 40)).save(rgba_path)
        self.assertEqual(load_image(rgba_path).pixel_at(3, 2), (1, 2, 3))

        gray_path = self.test_dir / 'gray.png'
        Image.new('L', (4, 3), color=77).save(gray_path)
        gray = load_image(gray_path)
        self.assertEqual(gray.pixels.shape, (3, 4, 3))
        self.assertEqual(gray.pixel_at(0, 0), (77, 77, 77))

    def test_load_missing_or_invalid_file(self):
        with self.assertRaises(ValueError):
            load_image(self.test_dir / 'missing.png')

        text_path = self.test_dir / 'notes.png'
        text_path.write_text("not an image")
        with self.assertRaises(ValueError) as context:
            load_image(text_path)
        self.assertIn("Cannot read image file", str(context.exception))

    def test_load_directory(self):
        with self.assertRaises(ValueError):
            load_image(self.test_dir)

    def test_pixel_rows_cached_on_demand(self):
        grid = random_grid(7, 5, seed=16)
        self.assertEqual(grid.pixel_at(6, 3), tuple(int(v) for v in grid.pixels[3, 6]))
        self.assertEqual([row is not None for row in grid._rows],
                         [False, False, False, True, False])
        for y in range(grid.height):
            for x in range(grid.width):
                self.assertEqual(grid.pixel_at(x, y), tuple(int(v) for v in grid.pixels[y, x]))
        self.assertIsInstance(grid._rows[0], bytes)


class TestPatternBuilder(unittest.TestCase):

    def test_threshold_zero_keeps_every_pixel_in_row_major_order(self):
        grid = random_grid(3, 2, seed=3)
        pattern = build_pattern(grid, threshold=0)
        self.assertEqual(len(pattern), 6)
        self.assertEqual([(s.dx, s.dy) for s in pattern],
                         [(0, 0), (1, 0), (2, 0), (0, 1), (1, 1), (2, 1)])
        for sample in pattern:
            self.assertEqual(sample.color, grid.pixel_at(sample.dx, sample.dy))
        self.assertEqual((pattern.width, pattern.height), (3, 2))
        self.assertEqual(pattern.coverage, 1.0)

    def test_threshold_compares_against_last_kept_pixel(self):
        # brightness 30, 33, 36, 120, 121, 0
        row = [(10, 10, 10), (11, 11, 11), (12, 12, 12), (40, 40, 40), (41, 40, 40), (0, 0, 0)]
        grid = PixelGrid(np.array([row], dtype=np.uint8))
        pattern = build_pattern(grid, threshold=5)
        self.assertEqual([s.dx for s in pattern], [0, 2, 3, 5])

    def test_first_pixel_kept_for_any_threshold(self):
        grid = solid_grid(2, 2, (0, 0, 0))
        self.assertEqual(len(build_pattern(grid, threshold=0)), 4)
        for threshold in (1, 765, 10000):
            pattern = build_pattern(grid, threshold=threshold)
            self.assertEqual(list(pattern), [PatternSample(0, 0, 0, 0, 0)])

    def test_capacity_exactly_at_limit_succeeds(self):
        grid = solid_grid(800, 600, (5, 5, 5))
        pattern = build_pattern(grid, threshold=1)
        self.assertEqual(len(pattern), 1)

    def test_capacity_one_pixel_over_fails(self):
        grid = PixelGrid(np.zeros((1, CAPACITY_LIMIT + 1, 3), dtype=np.uint8))
        with self.assertRaises(PatternTooLarge) as context:
            build_pattern(grid)
        self.assertEqual(context.exception.capacity, CAPACITY_LIMIT)
        self.assertEqual(context.exception.width, CAPACITY_LIMIT + 1)

    def test_custom_capacity(self):
        grid = solid_grid(4, 4, (0, 0, 0))
        self.assertEqual(len(build_pattern(grid, capacity=16)), 16)
        with self.assertRaises(PatternTooLarge):
            build_pattern(grid, capacity=15)

    def test_invalid_threshold(self):
        grid = solid_grid(2, 2, (0, 0, 0))
        with self.assertRaises(ValueError):
            build_pattern(grid, threshold=-1)
        with self.assertRaises(ValueError):
            build_pattern(grid, threshold=1.5)
        with self.assertRaises(ValueError):
            build_pattern(grid, threshold=True)

    def test_numpy_integer_threshold(self):
        grid = solid_grid(2, 2, (0, 0, 0))
        self.assertEqual(len(build_pattern(grid, threshold=np.int64(0))), 4)
        self.assertEqual(len(build_pattern(grid, threshold=np.uint16(5))), 1)

    def test_samples_are_immutable(self):
        pattern = build_pattern(solid_grid(2, 2, (0, 0, 0)))
        with self.assertRaises(AttributeError):
            pattern[0].dx = 1


class TestToleranceComparator(unittest.TestCase):

    def test_exact_comparison(self):
        exact = ToleranceConfig(0, 0, 0)
        self.assertTrue(exact.is_exact)
        self.assertTrue(colors_match((1, 2, 3), (1, 2, 3), exact))
        self.assertFalse(colors_match((1, 2, 4), (1, 2, 3), exact))
        self.assertFalse(colors_match((0, 2, 3), (1, 2, 3), exact))

    def test_tolerance_is_inclusive_per_channel(self):
        tolerance = ToleranceConfig(5, 0, 10)
        self.assertTrue(colors_match((105, 50, 90), (100, 50, 100), tolerance))
        self.assertTrue(colors_match((95, 50, 110), (100, 50, 100), tolerance))
        self.assertFalse(colors_match((106, 50, 100), (100, 50, 100), tolerance))
        self.assertFalse(colors_match((100, 51, 100), (100, 50, 100), tolerance))
        self.assertFalse(colors_match((100, 50, 111), (100, 50, 100), tolerance))

    def test_validate_tolerance(self):
        self.assertEqual(validate_tolerance(3), ToleranceConfig(3, 3, 3))
        self.assertEqual(validate_tolerance([1, 2, 3]), ToleranceConfig(1, 2, 3))
        for bad in ((256, 0, 0), (-1, 0, 0), (1, 2), (1.0, 0, 0), None):
            with self.assertRaises(ValueError):
                validate_tolerance(bad)

    def test_validate_tolerance_accepts_numpy_integers(self):
        self.assertEqual(validate_tolerance(np.array([1, 2, 3])), ToleranceConfig(1, 2, 3))
        self.assertEqual(validate_tolerance(np.uint8(4)), ToleranceConfig(4, 4, 4))

    def test_tensor_form_agrees_with_scalar_form(self):
        region_grid = random_grid(6, 5, seed=4, low=95, high=106)
        region = region_grid.to_tensor('cpu')
        color = (100, 100, 100)
        color_tensor = torch.tensor(color, dtype=torch.int16)

        for tolerance in (ToleranceConfig(0, 0, 0), ToleranceConfig(3, 2, 5)):
            limits = None if tolerance.is_exact else torch.tensor(tuple(tolerance), dtype=torch.int16)
            mask = channels_match(region, color_tensor, limits).tolist()
            for y in range(region_grid.height):
                for x in range(region_grid.width):
                    self.assertEqual(mask[y][x],
                                     colors_match(region_grid.pixel_at(x, y), color, tolerance))


class SearchCases:
    """Search behaviour shared by both backends."""

    method = None
    band_rows = 256

    def find(self, big, small, **kwargs):
        return search(big, small, method=self.method, device='cpu',
                      band_rows=self.band_rows, **kwargs)

    def test_distinct_pixel_flush_with_edge_is_not_reported(self):
        # Matching window would start at (2, 1); candidates are x < 2, y < 2
        big = marked_grid(4, 4, {(2, 1): (200, 200, 200)})
        small = marked_grid(2, 2, {(0, 0): (200, 200, 200)})
        self.assertEqual(self.find(big, small), [])

    def test_distinct_pixel_inside_candidate_range(self):
        big = marked_grid(4, 4, {(2, 1): (200, 200, 200)})
        small = marked_grid(2, 2, {(1, 1): (200, 200, 200)})
        self.assertEqual(self.find(big, small), [(1, 0)])

    def test_exact_subblock_is_found(self):
        big = random_grid(30, 20, seed=5)
        small = big.crop(7, 5, 6, 4)
        self.assertIn((7, 5), self.find(big, small))

    def test_subblock_at_far_corner_is_outside_scan_range(self):
        big = random_grid(30, 20, seed=5)
        small = big.crop(24, 16, 6, 4)
        self.assertNotIn((24, 16), self.find(big, small))

    def test_empty_search_space(self):
        big = random_grid(5, 5, seed=6)
        self.assertEqual(self.find(big, random_grid(6, 2, seed=7)), [])
        self.assertEqual(self.find(big, random_grid(2, 6, seed=7)), [])
        self.assertEqual(self.find(big, big), [])

    def test_tolerance_monotonicity(self):
        big = random_grid(20, 16, seed=8, high=4)
        small = big.crop(3, 2, 2, 2)
        previous = set()
        for tolerance in ((0, 0, 0), (1, 0, 0), (1, 1, 0), (2, 1, 1), (3, 3, 3)):
            found = set(self.find(big, small, tolerance=tolerance))
            self.assertTrue(previous <= found, f"tolerance {tolerance} lost matches")
            previous = found
        # Every channel differs by at most 3, so every candidate window matches
        self.assertEqual(len(previous), 18 * 14)

    def test_tolerance_accepts_noisy_copy(self):
        big = random_grid(16, 12, seed=9, low=10, high=240)
        noisy = big.pixels[4:8, 5:10].astype(np.int64)
        noisy[..., 0] += 2
        small = PixelGrid(noisy)
        self.assertNotIn((5, 4), self.find(big, small))
        self.assertNotIn((5, 4), self.find(big, small, tolerance=(1, 0, 0)))
        self.assertNotIn((5, 4), self.find(big, small, tolerance=(0, 2, 2)))
        self.assertIn((5, 4), self.find(big, small, tolerance=(2, 0, 0)))

    def test_threshold_never_loses_exact_match(self):
        big = random_grid(25, 18, seed=10)
        small = big.crop(11, 6, 5, 5)
        for threshold in (0, 1, 10, 100, 400, 765, 1000):
            self.assertIn((11, 6), self.find(big, small, threshold=threshold))

    def test_match_limit_truncates_row_major_results(self):
        big = random_grid(12, 10, seed=11, high=2)
        small = big.crop(0, 0, 2, 1)
        # Red and green always within 1, so a window matches whenever blue does
        everything = self.find(big, small, tolerance=(1, 1, 0))
        self.assertGreater(len(everything), 3)
        for limit in range(1, len(everything) + 2):
            self.assertEqual(self.find(big, small, tolerance=(1, 1, 0), max_matches=limit),
                             everything[:limit])

    def test_results_are_ordered_and_unique(self):
        big = random_grid(14, 11, seed=12, high=2)
        small = big.crop(1, 1, 2, 2)
        found = self.find(big, small)
        self.assertEqual(found, sorted(found, key=lambda point: (point[1], point[0])))
        self.assertEqual(len(found), len(set(found)))

    def test_search_is_idempotent(self):
        big = random_grid(14, 11, seed=13, high=3)
        small = big.crop(2, 3, 3, 2)
        self.assertEqual(self.find(big, small, tolerance=(1, 1, 1)),
                         self.find(big, small, tolerance=(1, 1, 1)))

    def test_pattern_too_large(self):
        big = solid_grid(900, 700, (0, 0, 0))
        small = solid_grid(801, 600, (0, 0, 0))
        with self.assertRaises(PatternTooLarge):
            self.find(big, small)

    def test_invalid_arguments(self):
        big = random_grid(6, 6, seed=14)
        small = big.crop(0, 0, 2, 2)
        with self.assertRaises(ValueError):
            self.find(big, small, tolerance=(256, 0, 0))
        with self.assertRaises(ValueError):
            self.find(big, small, max_matches=-1)


class TestScalarSearch(SearchCases, unittest.TestCase):
    method = 'scalar'


class TestTensorSearch(SearchCases, unittest.TestCase):
    method = 'tensor'
    band_rows = 3


class TestBackendEquivalence(unittest.TestCase):

    def test_backends_agree(self):
        cases = [
            dict(seed=20, high=2, crop=(0, 0, 2, 2), tolerance=(0, 0, 0), threshold=0, max_matches=0),
            dict(seed=21, high=4, crop=(3, 1, 3, 2), tolerance=(1, 2, 0), threshold=0, max_matches=0),
            dict(seed=22, high=3, crop=(5, 5, 2, 3), tolerance=(1, 1, 1), threshold=2, max_matches=7),
            dict(seed=23, high=256, crop=(4, 2, 4, 4), tolerance=(30, 30, 30), threshold=50, max_matches=0),
        ]
        for case in cases:
            with self.subTest(seed=case['seed']):
                big = random_grid(17, 13, seed=case['seed'], high=case['high'])
                small = big.crop(*case['crop'])
                options = dict(tolerance=case['tolerance'], threshold=case['threshold'],
                               max_matches=case['max_matches'])
                expected = search(big, small, method='scalar', **options)
                for band_rows in (1, 4, 256):
                    self.assertEqual(
                        search(big, small, method='tensor', device='cpu', band_rows=band_rows, **options),
                        expected,
                    )

    def test_candidate_bounds(self):
        big = solid_grid(10, 7, (0, 0, 0))
        pattern = build_pattern(solid_grid(3, 7, (0, 0, 0)))
        self.assertEqual(candidate_bounds(big, pattern), (7, 0))
        pattern = build_pattern(solid_grid(12, 2, (0, 0, 0)))
        self.assertEqual(candidate_bounds(big, pattern), (0, 5))

    def test_unknown_method(self):
        big = random_grid(6, 6, seed=15)
        with self.assertRaises(ValueError):
            search(big, big.crop(0, 0, 2, 2), method='fft')

    def test_search_pattern_validates_arguments(self):
        big = random_grid(6, 6, seed=15)
        pattern = build_pattern(big.crop(0, 0, 2, 2))
        for method in ('scalar', 'tensor'):
            with self.assertRaises(ValueError):
                search_pattern(big, pattern, (0, 300, 0), method=method, device='cpu')
            with self.assertRaises(ValueError):
                search_pattern(big, pattern, (0, 0, 0), max_matches=-2, method=method, device='cpu')
        self.assertEqual(search_pattern(big, pattern, np.array([0, 0, 0]), max_matches=np.int64(1),
                                        method='scalar'), [(0, 0)])

    def test_out_of_memory_retries_with_smaller_bands(self):
        big = random_grid(15, 14, seed=24, high=2)
        small = big.crop(2, 3, 2, 2)
        expected = search(big, small, method='scalar')

        real_match_band = search_operations.match_band
        band_sizes = []

        def match_band_running_out_once(*args):
            band_sizes.append(args[5])
            if len(band_sizes) == 1:
                raise RuntimeError("CUDA out of memory")
            return real_match_band(*args)

        with mock.patch.object(search_operations, 'match_band', match_band_running_out_once), \
                redirect_stderr(io.StringIO()) as err:
            found = search(big, small, method='tensor', device='cpu', band_rows=4)

        self.assertEqual(found, expected)
        self.assertEqual(band_sizes[:2], [4, 2])
        self.assertTrue(all(rows <= 2 for rows in band_sizes[1:]))
        self.assertIn("retrying with smaller bands", err.getvalue())

    def test_out_of_memory_on_single_row_is_raised(self):
        big = random_grid(8, 8, seed=25)
        small = big.crop(1, 1, 2, 2)

        def match_band_out_of_memory(*args):
            raise RuntimeError("CUDA out of memory")

        with mock.patch.object(search_operations, 'match_band', match_band_out_of_memory), \
                redirect_stderr(io.StringIO()):
            with self.assertRaises(RuntimeError):
                search(big, small, method='tensor', device='cpu', band_rows=1)

    def test_other_runtime_errors_are_not_retried(self):
        big = random_grid(8, 8, seed=26)
        small = big.crop(1, 1, 2, 2)
        calls = []

        def match_band_failing(*args):
            calls.append(args[5])
            raise RuntimeError("device-side assert triggered")

        with mock.patch.object(search_operations, 'match_band', match_band_failing):
            with self.assertRaises(RuntimeError):
                search(big, small, method='tensor', device='cpu', band_rows=4)
        self.assertEqual(calls, [4])


class TestOutput(unittest.TestCase):

    def test_format_matches(self):
        self.assertEqual(format_matches([]), "")
        self.assertEqual(format_matches([(1, 2)]), "1,2")
        self.assertEqual(format_matches([(1, 2), (30, 4)]), "1,2,30,4")

    def test_print_matches(self):
        out = io.StringIO()
        print_matches([], file=out)
        self.assertEqual(out.getvalue(), "")

        print_matches([(0, 0), (5, 7)], file=out)
        self.assertEqual(out.getvalue(), "0,0,5,7\n")


class TestFileOperations(unittest.TestCase):

    def setUp(self):
        """Set up test fixtures"""
        self.test_dir = Path(tempfile.mkdtemp())
        self.big = random_grid(20, 15, seed=30)
        self.big_path = save_image(self.big, self.test_dir / 'big.png')

    def tearDown(self):
        """Clean up test fixtures"""
        shutil.rmtree(self.test_dir)

    def test_makesample_valid_input(self):
        json_input = json.dumps({"image": str(self.big_path), "x": 4, "y": 3, "w": 5, "h": 6})
        with redirect_stdout(io.StringIO()):
            sample_path = makesample(json_input)

        self.assertEqual(sample_path, self.test_dir / 'big.samples' / '4_3_5_6.png')
        sample = load_image(sample_path)
        self.assertTrue(np.array_equal(sample.pixels, self.big.crop(4, 3, 5, 6).pixels))

    def test_makesample_invalid_json(self):
        with redirect_stdout(io.StringIO()), self.assertRaises(SystemExit):
            makesample('{"invalid": json}')

    def test_makesample_missing_parameters(self):
        json_input = json.dumps({"image": str(self.big_path), "x": 0, "y": 0})
        with redirect_stdout(io.StringIO()), self.assertRaises(SystemExit):
            makesample(json_input)

    def test_makesample_coordinates_out_of_bounds(self):
        json_input = json.dumps({"image": str(self.big_path), "x": 18, "y": 0, "w": 5, "h": 5})
        with self.assertRaises(ValueError) as context:
            makesample(json_input)
        self.assertIn("exceed image bounds", str(context.exception))

    def test_search_images_prints_matches(self):
        small_path = save_image(self.big.crop(6, 2, 4, 3), self.test_dir / 'small.png')
        json_input = json.dumps({
            "big": str(self.big_path),
            "small": str(small_path),
            "tolerance": [0, 0, 0],
            "max": 1,
            "method": "scalar",
        })
        out = io.StringIO()
        with redirect_stdout(out):
            matches = search_images(json_input)
        self.assertEqual(matches, [(6, 2)])
        self.assertEqual(out.getvalue(), "6,2\n")

    def test_find_command_line(self):
        from .find import main

        small_path = save_image(self.big.crop(1, 8, 3, 3), self.test_dir / 'small.png')
        json_input = json.dumps({"big": str(self.big_path), "small": str(small_path)})
        out = io.StringIO()
        with redirect_stdout(out):
            main(['--search', json_input, '--device', 'cpu'])
        self.assertEqual(out.getvalue(), "1,8\n")

        missing = json.dumps({"big": str(self.test_dir / 'missing.png'), "small": str(small_path)})
        with self.assertRaises(SystemExit) as context:
            main(['--search', missing])
        self.assertEqual(context.exception.code, 1)


def run_unit_tests():
    """Run unit tests to verify all functionality works"""
    suite = unittest.defaultTestLoader.loadTestsFromModule(sys.modules[__name__])
    runner = unittest.TextTestRunner(verbosity=2)
    result = runner.run(suite)

    # Exit with error code if tests failed
    if not result.wasSuccessful():
        sys.exit(1)
    else:
        print("All tests passed!")
