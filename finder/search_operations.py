"""
Sliding-window search of a pattern over a big image.

Two backends give identical results:

* ``scalar`` walks every candidate window and compares pattern samples one
  pixel at a time, abandoning the window at the first mismatch.
* ``tensor`` evaluates a band of candidate rows at once on a torch device,
  narrowing a mask of live windows sample by sample.
"""

import numbers
import sys
import time
from typing import List, NamedTuple, Optional, Tuple
import torch
from .image_operations import load_image, parse_json_params
from .output_operations import print_matches
from .pattern_operations import build_pattern

METHODS = ('tensor', 'scalar')
DEFAULT_BAND_ROWS = 256


class ToleranceConfig(NamedTuple):
    r: int = 0
    g: int = 0
    b: int = 0

    @property
    def is_exact(self) -> bool:
        return self.r == 0 and self.g == 0 and self.b == 0


def validate_tolerance(tolerance) -> ToleranceConfig:
    """Accept a ToleranceConfig, an (r, g, b) sequence or a single int for all channels"""
    if isinstance(tolerance, numbers.Integral) and not isinstance(tolerance, bool):
        tolerance = (tolerance,) * 3
    try:
        r, g, b = tolerance
    except (TypeError, ValueError):
        raise ValueError(f"Tolerance must have three channels, got {tolerance!r}")

    for channel, value in zip('rgb', (r, g, b)):
        if isinstance(value, bool) or not isinstance(value, numbers.Integral) or not 0 <= value <= 255:
            raise ValueError(f"Tolerance for channel {channel} must be an integer 0-255, got {value!r}")
    return ToleranceConfig(r, g, b)


def validate_max_matches(max_matches):
    if isinstance(max_matches, bool) or not isinstance(max_matches, numbers.Integral) or max_matches < 0:
        raise ValueError(f"Maximum match count must be a non-negative integer, got {max_matches!r}")
    return max_matches


def colors_match(big_color, pattern_color, tolerance: ToleranceConfig) -> bool:
    """Per-channel tolerance test, short-circuiting in R, G, B order."""
    if tolerance.is_exact:
        return (big_color[0] == pattern_color[0]
                and big_color[1] == pattern_color[1]
                and big_color[2] == pattern_color[2])
    return (abs(big_color[0] - pattern_color[0]) <= tolerance.r
            and abs(big_color[1] - pattern_color[1]) <= tolerance.g
            and abs(big_color[2] - pattern_color[2]) <= tolerance.b)


def channels_match(region: torch.Tensor, color: torch.Tensor,
                   limits: Optional[torch.Tensor] = None) -> torch.Tensor:
    """Tensor form of colors_match: (rows, cols, 3) region -> (rows, cols) bool mask.

    ``limits`` of None means exact comparison.
    """
    if limits is None:
        return (region == color).all(dim=-1)
    return ((region - color).abs() <= limits).all(dim=-1)


def candidate_bounds(big, pattern) -> Tuple[int, int]:
    """
    Number of candidate top-left columns and rows.

    Candidates are big_x in [0, big.width - pattern.width) and big_y in
    [0, big.height - pattern.height); the placement flush with the right or
    bottom edge is not tried. Because dx < pattern.width, every sampled pixel
    big_x + dx stays below big.width (likewise for y).
    """
    span_x = max(big.width - pattern.width, 0)
    span_y = max(big.height - pattern.height, 0)
    return span_x, span_y


def scan_windows(big, pattern, tolerance: ToleranceConfig, max_matches=0) -> List[Tuple[int, int]]:
    """Reference backend: visit each window in row-major order, one sample at a time."""
    span_x, span_y = candidate_bounds(big, pattern)
    samples = pattern.samples
    pixel_at = big.pixel_at
    matches = []

    for big_y in range(span_y):
        for big_x in range(span_x):
            for dx, dy, r, g, b in samples:
                if not colors_match(pixel_at(big_x + dx, big_y + dy), (r, g, b), tolerance):
                    break
            else:
                matches.append((big_x, big_y))
                if max_matches and len(matches) >= max_matches:
                    return matches

    return matches


def get_device(device=None, verbose=False):
    """Get the requested device, else CUDA when available, else CPU"""
    if device is None:
        device = 'cuda' if torch.cuda.is_available() else 'cpu'
    try:
        device = torch.device(device)
    except RuntimeError as e:
        raise ValueError(f"Invalid device {device!r}: {e}")
    if verbose:
        print(f"Using device: {device}", file=sys.stderr)
    return device


def match_band(big_tensor, pattern, colors, limits, start_y, rows, span_x):
    """Return (row, col) offsets of matching windows in one band, row-major."""
    alive = torch.ones((rows, span_x), dtype=torch.bool, device=big_tensor.device)

    for index, (dx, dy, _, _, _) in enumerate(pattern.samples):
        region = big_tensor[start_y + dy:start_y + dy + rows, dx:dx + span_x]
        alive &= channels_match(region, colors[index], limits)
        if not alive.any():
            return []

    return torch.nonzero(alive).tolist()


def scan_bands(big, pattern, tolerance: ToleranceConfig, max_matches=0,
               device=None, band_rows=DEFAULT_BAND_ROWS, verbose=False) -> List[Tuple[int, int]]:
    """Vectorised backend: evaluate ``band_rows`` candidate rows at a time."""
    if band_rows < 1:
        raise ValueError(f"Band size must be at least 1 row, got {band_rows}")

    span_x, span_y = candidate_bounds(big, pattern)
    if span_x == 0 or span_y == 0:
        return []

    device = get_device(device, verbose)
    big_tensor = big.to_tensor(device)
    colors = torch.tensor([sample.color for sample in pattern.samples],
                          dtype=torch.int16, device=device)
    limits = None
    if not tolerance.is_exact:
        limits = torch.tensor(tuple(tolerance), dtype=torch.int16, device=device)

    matches = []
    start_y = 0
    last_report = time.time()

    while start_y < span_y:
        rows = min(band_rows, span_y - start_y)
        try:
            found = match_band(big_tensor, pattern, colors, limits, start_y, rows, span_x)
        except RuntimeError as e:
            if "out of memory" in str(e).lower() and rows > 1:
                print("GPU memory exceeded, retrying with smaller bands...", file=sys.stderr)
                torch.cuda.empty_cache()
                band_rows = max(rows // 2, 1)
                continue
            raise

        for row, col in found:
            matches.append((col, start_y + row))
            if max_matches and len(matches) >= max_matches:
                return matches

        start_y += rows
        if verbose and time.time() - last_report >= 1.0:
            print(f"Processed rows: {start_y}/{span_y}, matches: {len(matches)}", file=sys.stderr)
            last_report = time.time()

    return matches


def search_pattern(big, pattern, tolerance, max_matches=0, method='tensor',
                   device=None, band_rows=DEFAULT_BAND_ROWS, verbose=False):
    """Find windows of ``big`` matching ``pattern``; first ``max_matches`` only when it is > 0."""
    tolerance = validate_tolerance(tolerance)
    validate_max_matches(max_matches)

    if method == 'scalar':
        return scan_windows(big, pattern, tolerance, max_matches)
    if method == 'tensor':
        return scan_bands(big, pattern, tolerance, max_matches, device, band_rows, verbose)
    raise ValueError(f"Unknown search method {method!r}, expected one of {METHODS}")


def search(big, small, tolerance=(0, 0, 0), threshold=0, max_matches=0, method='tensor',
           device=None, band_rows=DEFAULT_BAND_ROWS, verbose=False):
    """
    Locate ``small`` inside ``big``.

    Returns the top-left (x, y) of each matching window in row-major order.
    Raises PatternTooLarge before scanning when ``small`` exceeds the pattern
    capacity. A big image smaller than the small one yields an empty list.
    """
    pattern = build_pattern(small, threshold)
    if verbose:
        print(f"Pattern: {len(pattern)} samples from {small.width}x{small.height} "
              f"({pattern.coverage:.1%})", file=sys.stderr)

    return search_pattern(big, pattern, tolerance, max_matches, method,
                          device, band_rows, verbose)


def search_images(json_str, device=None, verbose=False):
    """Search for one image file inside another and print the matches"""
    params = parse_json_params(json_str, ['big', 'small'], 'search')

    big = load_image(params['big'])
    small = load_image(params['small'])

    matches = search(
        big, small,
        tolerance=params.get('tolerance', [0, 0, 0]),
        threshold=params.get('threshold', 0),
        max_matches=params.get('max', 0),
        method=params.get('method', 'tensor'),
        device=device,
        verbose=verbose,
    )
    print_matches(matches)
    return matches
