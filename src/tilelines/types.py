"""Core data types and configuration for tilelines."""

import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Tuple, Union

from shapely.geometry import LineString, MultiLineString

# Type aliases for cleaner signatures
Coordinate = Tuple[float, float]
LineGeometry = Union[LineString, MultiLineString]
LengthLimit = Callable[[Mapping[str, Any]], float]

DEFAULT_ID_KEY = "osm_way_ids"


class GeometryTypeError(ValueError):
    """Raised when a feature in a line batch does not carry a line geometry."""


@dataclass
class MergeConfig:
    """Configuration for merging the line features of one tile.

    All distances are in tile-local units (a tile spans ``[0, extent]``).
    """

    # Simplification
    tolerance: float = 0.0625
    resimplify: bool = False

    # Clipping (negative buffer disables clipping)
    buffer: float = 4.0
    extent: float = 256.0

    # Length limits
    min_length: float = 0.0
    length_limit: Optional[LengthLimit] = None
    stub_min_length: float = 0.5

    # Endpoint quantization grid
    precision: float = 0.0625

    # Output
    id_key: str = DEFAULT_ID_KEY

    # Processing options
    n_workers: int = 0
    strict_validation: bool = False
    verbose: int = 0

    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        if not _is_finite_number(self.tolerance) or self.tolerance < 0:
            raise ValueError("tolerance must be non-negative")
        if not _is_finite_number(self.buffer):
            raise ValueError("buffer must be a finite number")
        if not _is_finite_number(self.extent) or self.extent <= 0:
            raise ValueError("extent must be positive")
        if not _is_finite_number(self.min_length) or self.min_length < 0:
            raise ValueError("min_length must be non-negative")
        if not _is_finite_number(self.stub_min_length) or self.stub_min_length < 0:
            raise ValueError("stub_min_length must be non-negative")
        if not _is_finite_number(self.precision) or self.precision <= 0:
            raise ValueError("precision must be positive")
        if self.length_limit is not None and not callable(self.length_limit):
            raise ValueError("length_limit must be callable")
        if not self.id_key:
            raise ValueError("id_key must be a non-empty string")
        if self.n_workers < 0:
            raise ValueError("n_workers must be non-negative")

    @property
    def clipping_enabled(self) -> bool:
        return self.buffer >= 0

    def length_limit_for(self, tags: Mapping[str, Any]) -> float:
        """Return the minimum line length for a group with ``tags``.

        Raises:
            ValueError: If the length limit policy yields an unusable value.
        """
        if self.length_limit is None:
            return float(self.min_length)

        try:
            value = self.length_limit(tags)
        except Exception as e:
            raise ValueError(f"length_limit failed for tags {dict(tags)}: {e}") from e

        if isinstance(value, bool) or not _is_finite_number(value):
            raise ValueError(f"length_limit returned non-numeric value {value!r} for tags {dict(tags)}")
        if value < 0:
            raise ValueError(f"length_limit returned negative value {value} for tags {dict(tags)}")
        return float(value)

    def to_dict(self) -> Dict[str, Any]:
        """Plain representation used in reports and config files."""
        return {
            'tolerance': self.tolerance,
            'resimplify': self.resimplify,
            'buffer': self.buffer,
            'extent': self.extent,
            'min_length': self.min_length,
            'length_limit': _describe_length_limit(self.length_limit),
            'stub_min_length': self.stub_min_length,
            'precision': self.precision,
            'id_key': self.id_key,
            'n_workers': self.n_workers,
            'strict_validation': self.strict_validation,
            'verbose': self.verbose,
        }


def _is_finite_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and math.isfinite(value)


def _describe_length_limit(length_limit: Optional[LengthLimit]) -> Any:
    if length_limit is None:
        return None
    if hasattr(length_limit, "to_dict"):
        return length_limit.to_dict()
    return getattr(length_limit, "__name__", repr(length_limit))


@dataclass(frozen=True)
class Feature:
    """A tagged line feature of one tile."""

    id: int
    geometry: LineGeometry
    tags: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, order=True)
class NodeKey:
    """Quantized endpoint key used for line connectivity.

    Two endpoints share a node when they round to the same grid cell.
    """
    ix: int
    iy: int

    def __str__(self) -> str:
        return f"{self.ix}:{self.iy}"


@dataclass(frozen=True)
class MergedLine:
    """A merged line with the source ids behind each of its coordinates."""

    coords: Tuple[Coordinate, ...]
    owners: Tuple[FrozenSet[int], ...]

    def __post_init__(self) -> None:
        if len(self.coords) != len(self.owners):
            raise ValueError("coords and owners must have the same length")

    @property
    def source_ids(self) -> FrozenSet[int]:
        return frozenset().union(*self.owners)

    @property
    def length(self) -> float:
        return _coords_length(self.coords)

    def to_linestring(self) -> LineString:
        return LineString(self.coords)


def _coords_length(coords) -> float:
    total = 0.0
    for (x1, y1), (x2, y2) in zip(coords, coords[1:]):
        total += math.hypot(x2 - x1, y2 - y1)
    return total


@dataclass(frozen=True)
class SkippedGeometry:
    """A geometry excluded from its group, with the reason why."""

    feature_id: int
    reason: str

    def __str__(self) -> str:
        return f"feature {self.feature_id}: {self.reason}"


@dataclass
class MergeStats:
    """Statistics collected during a merge."""

    # Input statistics
    input_count: int = 0
    group_count: int = 0

    # Group outcomes
    passthrough_groups: int = 0
    merged_groups: int = 0
    dropped_groups: int = 0

    # Validation
    skipped: List[SkippedGeometry] = field(default_factory=list)

    # Line statistics
    lines_before_clip: int = 0
    lines_after_clip: int = 0
    vertices_before_simplify: int = 0
    vertices_after_simplify: int = 0

    # Output statistics
    output_count: int = 0

    # Performance metrics
    processing_time: float = 0.0

    @property
    def invalid_geometry_count(self) -> int:
        return len(self.skipped)

    def absorb(self, other: "MergeStats") -> None:
        """Fold the counters of a per-group stats object into this one."""
        self.passthrough_groups += other.passthrough_groups
        self.merged_groups += other.merged_groups
        self.dropped_groups += other.dropped_groups
        self.skipped.extend(other.skipped)
        self.lines_before_clip += other.lines_before_clip
        self.lines_after_clip += other.lines_after_clip
        self.vertices_before_simplify += other.vertices_before_simplify
        self.vertices_after_simplify += other.vertices_after_simplify
        self.output_count += other.output_count


@dataclass(frozen=True)
class TagLengthLimit:
    """Length limit looked up from one tag's value.

    ``TagLengthLimit("highway", {"track": 8.0, "path": 4.0})`` drops tracks
    shorter than 8 tile units and paths shorter than 4.
    """

    key: str
    limits: Mapping[str, float] = field(default_factory=dict)
    default: float = 0.0

    def __call__(self, tags: Mapping[str, Any]) -> float:
        value = tags.get(self.key)
        if value is None:
            return self.default
        return self.limits.get(str(value), self.default)

    def to_dict(self) -> Dict[str, Any]:
        return {'key': self.key, 'limits': dict(self.limits), 'default': self.default}
