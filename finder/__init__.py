# Finder package
from . import image_operations
from . import pattern_operations
from . import output_operations
from . import search_operations
from . import testing

from .image_operations import PixelGrid, load_image
from .pattern_operations import CAPACITY_LIMIT, Pattern, PatternSample, PatternTooLarge, build_pattern
from .search_operations import ToleranceConfig, colors_match, search, search_pattern
from .output_operations import format_matches

__all__ = [
    'image_operations', 'pattern_operations', 'output_operations', 'search_operations', 'testing',
    'PixelGrid', 'load_image', 'CAPACITY_LIMIT', 'Pattern', 'PatternSample', 'PatternTooLarge',
    'build_pattern', 'ToleranceConfig', 'colors_match', 'search', 'search_pattern', 'format_matches',
]
