"""tilelines - merge linear vector tile features

Merges line features with identical attributes into a minimal, deterministic
set of lines per tile while keeping track of the source ids behind them.
"""

from .ops import merge_line_strings
from .pipeline import merge_tile
from .types import Feature, GeometryTypeError, MergeConfig, MergeStats

__version__ = "0.1.0"
__all__ = [
    "merge_line_strings",
    "merge_tile",
    "Feature",
    "GeometryTypeError",
    "MergeConfig",
    "MergeStats",
]
