#!/usr/bin/env python3
"""
Sub-image finder tool.

Takes per-channel tolerances and two image file paths and reports every
position where the second image occurs inside the first, each channel
allowed to differ by at most its tolerance. Matches are printed as a
single comma separated line: x,y for one match, x,y,x,y,... for several.
Nothing is printed when there is no match.

Usage:
    python subfind.py tolerance_r tolerance_g tolerance_b big.png small.png
"""

import sys
import argparse
from pathlib import Path
from finder.image_operations import load_image
from finder.output_operations import print_matches
from finder.pattern_operations import PatternTooLarge
from finder.search_operations import DEFAULT_BAND_ROWS, METHODS, search


def tolerance_value(value: str) -> int:
    """argparse type for a channel tolerance, 0-255."""
    try:
        tolerance = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid tolerance {value!r}, expected an integer")
    if not 0 <= tolerance <= 255:
        raise argparse.ArgumentTypeError(f"tolerance {tolerance} out of range 0-255")
    return tolerance


def non_negative_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid value {value!r}, expected an integer")
    if number < 0:
        raise argparse.ArgumentTypeError(f"value {number} must not be negative")
    return number


def positive_int(value: str) -> int:
    number = non_negative_int(value)
    if number == 0:
        raise argparse.ArgumentTypeError("value must be at least 1")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Find where the second image occurs within the first"
    )
    parser.add_argument("tolerance_r", type=tolerance_value, help="Red channel tolerance (0-255)")
    parser.add_argument("tolerance_g", type=tolerance_value, help="Green channel tolerance (0-255)")
    parser.add_argument("tolerance_b", type=tolerance_value, help="Blue channel tolerance (0-255)")
    parser.add_argument("large_image", help="Path to the larger image")
    parser.add_argument("small_image", help="Path to the smaller image to find")
    parser.add_argument(
        "--threshold", type=non_negative_int, default=0,
        help="Pattern threshold: skip small-image pixels whose brightness differs "
             "from the last kept pixel by less than this (default: 0, keep all)",
    )
    parser.add_argument(
        "--max", dest="max_matches", type=non_negative_int, default=0,
        help="Stop after this many matches (default: 0, report all)",
    )
    parser.add_argument("--method", choices=METHODS, default="tensor", help="Search backend")
    parser.add_argument("--device", help="Torch device for the tensor backend (default: cuda if available)")
    parser.add_argument(
        "--band-rows", type=positive_int, default=DEFAULT_BAND_ROWS,
        help="Candidate rows evaluated per step by the tensor backend",
    )
    parser.add_argument("--verbose", action="store_true", help="Print progress to stderr")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    # Validate input files
    large_path = Path(args.large_image)
    small_path = Path(args.small_image)

    if not large_path.exists():
        print(f"Error: Large image file {large_path} does not exist", file=sys.stderr)
        sys.exit(1)

    if not small_path.exists():
        print(f"Error: Small image file {small_path} does not exist", file=sys.stderr)
        sys.exit(1)

    try:
        large_img = load_image(large_path)
        small_img = load_image(small_path)

        matches = search(
            large_img,
            small_img,
            tolerance=(args.tolerance_r, args.tolerance_g, args.tolerance_b),
            threshold=args.threshold,
            max_matches=args.max_matches,
            method=args.method,
            device=args.device,
            band_rows=args.band_rows,
            verbose=args.verbose,
        )
    except PatternTooLarge as e:
        print(f"Error: pattern too large: {e}", file=sys.stderr)
        sys.exit(1)
    except (ValueError, RuntimeError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    print_matches(matches)


if __name__ == "__main__":
    main()
