#!/usr/bin/env python3
"""
test_subfind.py
Runs the subfind command line against small generated images.
"""

import io
import shutil
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path
import numpy as np
from finder.image_operations import PixelGrid, save_image
import subfind


class TestSubfind(unittest.TestCase):

    def setUp(self):
        self.test_dir = Path(tempfile.mkdtemp())

        # 8x6 grey image with a red/blue marker at (3, 2)
        pixels = np.full((6, 8, 3), 50, dtype=np.uint8)
        pixels[2, 3] = (250, 0, 0)
        pixels[2, 4] = (0, 0, 250)
        self.big_path = save_image(PixelGrid(pixels), self.test_dir / 'big.png')
        self.small_path = save_image(PixelGrid(pixels[1:4, 2:6]), self.test_dir / 'small.png')

        # Plain grey 2x2, found at every candidate position that avoids the marker
        self.grey_path = save_image(PixelGrid(np.full((2, 2, 3), 50, dtype=np.uint8)),
                                    self.test_dir / 'grey.png')

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def run_subfind(self, *args):
        out, err = io.StringIO(), io.StringIO()
        with redirect_stdout(out), redirect_stderr(err):
            subfind.main([str(arg) for arg in args])
        return out.getvalue(), err.getvalue()

    def test_single_match(self):
        out, _ = self.run_subfind(0, 0, 0, self.big_path, self.small_path, '--device', 'cpu')
        self.assertEqual(out, "2,1\n")

    def test_no_match_prints_nothing(self):
        out, _ = self.run_subfind(0, 0, 0, self.small_path, self.big_path)
        self.assertEqual(out, "")

    def test_max_matches(self):
        out, _ = self.run_subfind(0, 0, 0, self.big_path, self.grey_path, '--max', 3, '--method', 'scalar')
        self.assertEqual(out, "0,0,1,0,2,0\n")

    def test_backends_print_the_same(self):
        scalar, _ = self.run_subfind(0, 0, 0, self.big_path, self.grey_path, '--method', 'scalar')
        tensor, _ = self.run_subfind(0, 0, 0, self.big_path, self.grey_path,
                                     '--method', 'tensor', '--device', 'cpu', '--band-rows', 2)
        self.assertEqual(scalar, tensor)

        values = [int(v) for v in scalar.strip().split(",")]
        found = list(zip(values[0::2], values[1::2]))
        # 6 x 4 candidates, minus the 3 x 2 windows that overlap the marker
        self.assertEqual(len(found), 18)
        self.assertNotIn((3, 2), found)

    def test_tolerance_allows_near_colors(self):
        pixels = np.full((2, 2, 3), 53, dtype=np.uint8)
        near_path = save_image(PixelGrid(pixels), self.test_dir / 'near.png')
        out, _ = self.run_subfind(2, 2, 2, self.big_path, near_path, '--max', 1, '--device', 'cpu')
        self.assertEqual(out, "")
        out, _ = self.run_subfind(3, 3, 3, self.big_path, near_path, '--max', 1, '--device', 'cpu')
        self.assertEqual(out, "0,0\n")

    def test_verbose_goes_to_stderr(self):
        out, err = self.run_subfind(0, 0, 0, self.big_path, self.small_path,
                                    '--device', 'cpu', '--verbose')
        self.assertEqual(out, "2,1\n")
        self.assertIn("Pattern:", err)
        self.assertIn("Using device: cpu", err)

    def test_missing_file(self):
        with self.assertRaises(SystemExit) as context:
            self.run_subfind(0, 0, 0, self.test_dir / 'missing.png', self.small_path)
        self.assertEqual(context.exception.code, 1)

    def test_invalid_device(self):
        err = io.StringIO()
        with redirect_stderr(err), self.assertRaises(SystemExit) as context:
            subfind.main(['0', '0', '0', str(self.big_path), str(self.small_path), '--device', 'bogus'])
        self.assertEqual(context.exception.code, 1)
        self.assertIn("Invalid device", err.getvalue())

    def test_directory_instead_of_image(self):
        err = io.StringIO()
        with redirect_stderr(err), self.assertRaises(SystemExit) as context:
            subfind.main(['0', '0', '0', str(self.test_dir), str(self.small_path)])
        self.assertEqual(context.exception.code, 1)
        self.assertIn("Error:", err.getvalue())

    def test_invalid_tolerance(self):
        for bad in ('256', '-1', 'x'):
            with self.assertRaises(SystemExit) as context:
                self.run_subfind(bad, 0, 0, self.big_path, self.small_path)
            self.assertEqual(context.exception.code, 2)

    def test_pattern_too_large(self):
        huge_path = save_image(PixelGrid(np.zeros((601, 800, 3), dtype=np.uint8)),
                               self.test_dir / 'huge.png')
        with self.assertRaises(SystemExit) as context:
            self.run_subfind(0, 0, 0, huge_path, huge_path)
        self.assertEqual(context.exception.code, 1)


if __name__ == "__main__":
    unittest.main()
