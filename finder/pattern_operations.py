"""
Pattern construction.

A pattern is the small image reduced to the pixels worth comparing: scanning
row by row, a pixel is kept only when its brightness (r + g + b) differs from
the last kept pixel by at least the pattern threshold. Threshold 0 keeps every
pixel. The search engine only ever sees the pattern, never the small image.
"""

import numbers
from typing import NamedTuple, Tuple

# 800 x 600 pixels
CAPACITY_LIMIT = 800 * 600


class PatternTooLarge(ValueError):
    """Raised when the small image has more pixels than a pattern can hold."""

    def __init__(self, width, height, capacity=CAPACITY_LIMIT):
        self.width = width
        self.height = height
        self.capacity = capacity
        super().__init__(
            f"Small image is {width}x{height} ({width * height} pixels), "
            f"pattern capacity is {capacity} pixels"
        )


class PatternSample(NamedTuple):
    dx: int
    dy: int
    r: int
    g: int
    b: int

    @property
    def color(self) -> Tuple[int, int, int]:
        return self.r, self.g, self.b


class Pattern:
    """Ordered, read-only samples taken from a small image of size ``width`` x ``height``."""

    def __init__(self, width, height, samples):
        self.width = width
        self.height = height
        self.samples = tuple(samples)

    def __len__(self):
        return len(self.samples)

    def __iter__(self):
        return iter(self.samples)

    def __getitem__(self, index):
        return self.samples[index]

    @property
    def coverage(self) -> float:
        """Fraction of the small image's pixels kept in the pattern."""
        return len(self.samples) / (self.width * self.height)

    def __repr__(self):
        return f"Pattern({self.width}x{self.height}, {len(self.samples)} samples)"


def check_capacity(width, height, capacity=CAPACITY_LIMIT):
    """Fail before any scanning if the small image cannot fit in a pattern"""
    if width * height > capacity:
        raise PatternTooLarge(width, height, capacity)


def validate_threshold(threshold):
    if isinstance(threshold, bool) or not isinstance(threshold, numbers.Integral):
        raise ValueError(f"Pattern threshold must be an integer, got {threshold!r}")
    if threshold < 0:
        raise ValueError(f"Pattern threshold must be non-negative, got {threshold}")
    return threshold


def build_pattern(small, threshold=0, capacity=CAPACITY_LIMIT) -> Pattern:
    """
    Reduce ``small`` (anything with width, height and pixel rows) to a Pattern.

    Samples are emitted in row-major order (y outer, x inner). The order only
    decides which sample rejects a window first; it never changes the set of
    matches.
    """
    validate_threshold(threshold)
    check_capacity(small.width, small.height, capacity)

    # Strictly below 0 - threshold, so the first pixel is always kept
    last_brightness = -threshold - 1

    samples = []
    for dy, row in enumerate(small.pixels.tolist()):
        for dx, (r, g, b) in enumerate(row):
            brightness = r + g + b
            if abs(brightness - last_brightness) >= threshold:
                samples.append(PatternSample(dx, dy, r, g, b))
                last_brightness = brightness

    return Pattern(small.width, small.height, samples)
