"""Core operations for merging the line features of a tile."""

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, FrozenSet, Hashable, Iterable, List, Mapping, Optional, Sequence, Tuple

from shapely import get_coordinates
from shapely.geometry import MultiLineString

from .graph import LoopLineMerger
from .types import (
    Feature,
    GeometryTypeError,
    MergeConfig,
    MergedLine,
    MergeStats,
    SkippedGeometry,
)

logger = logging.getLogger(__name__)

LINE_TYPES = {'LineString', 'MultiLineString'}

# Hilbert curve resolution: 2^15 cells per side
HILBERT_ORDER = 15


# ---------------------------------------------------------------------------
# Grouping
# ---------------------------------------------------------------------------

def _freeze(value: Any) -> Hashable:
    """Hashable, order-insensitive form of a tag value."""
    if isinstance(value, Mapping):
        return frozenset((k, _freeze(v)) for k, v in value.items())
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    if isinstance(value, (set, frozenset)):
        return frozenset(_freeze(v) for v in value)
    return value


def attribute_key(tags: Mapping[str, Any], id_key: str) -> FrozenSet:
    """Key deciding mergeability: the tags without the merged id list."""
    return frozenset((k, _freeze(v)) for k, v in tags.items() if k != id_key)


def group_by_attrs(features: Iterable[Feature], id_key: str) -> List[List[Feature]]:
    """Partition features into groups with equal attributes.

    Groups are returned in order of their first feature's appearance, and
    features keep their input order within a group.

    Raises:
        GeometryTypeError: If a feature's geometry is not a line.
    """
    groups: Dict[FrozenSet, List[Feature]] = {}
    for feature in features:
        geom_type = getattr(feature.geometry, 'geom_type', type(feature.geometry).__name__)
        if geom_type not in LINE_TYPES:
            raise GeometryTypeError(
                f"Feature {feature.id} has {geom_type} geometry; only LineString and MultiLineString can be merged"
            )
        groups.setdefault(attribute_key(feature.tags, id_key), []).append(feature)
    return list(groups.values())


# ---------------------------------------------------------------------------
# Identifier lists
# ---------------------------------------------------------------------------

def format_id_list(ids: Iterable[int]) -> str:
    """Sorted, de-duplicated, comma-joined ids (tile attributes cannot hold lists)."""
    return ",".join(str(i) for i in sorted(set(ids)))


def parse_id_list(value: Any) -> FrozenSet[int]:
    """Parse an id list written by :func:`format_id_list`.

    Raises:
        ValueError: If the value is not a comma-separated list of integers.
    """
    text = str(value).strip()
    if not text:
        raise ValueError("empty id list")
    return frozenset(int(part) for part in text.split(","))


def source_ids_of(feature: Feature, id_key: str) -> FrozenSet[int]:
    """Source ids a feature stands for.

    A previously merged feature stands for every id in its id list.
    """
    if id_key in feature.tags:
        return parse_id_list(feature.tags[id_key])
    return frozenset([feature.id])


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _geometry_problem(feature: Feature, id_key: str) -> Optional[str]:
    geometry = feature.geometry
    if geometry is None or geometry.is_empty:
        return "empty geometry"

    coords = get_coordinates(geometry)
    if not all(math.isfinite(v) for v in coords.flat):
        return "non-finite coordinates"

    parts = geometry.geoms if geometry.geom_type == 'MultiLineString' else [geometry]
    if not any(len(set(part.coords)) >= 2 for part in parts):
        return "fewer than two distinct coordinates"

    if id_key in feature.tags:
        try:
            parse_id_list(feature.tags[id_key])
        except ValueError:
            return f"malformed {id_key} value {feature.tags[id_key]!r}"
    return None


def collect_valid_lines(
    features: Sequence[Feature],
    id_key: str,
    strict: bool = False,
) -> Tuple[List[Feature], List[SkippedGeometry]]:
    """Split a group into features that can be merged and skipped ones.

    Raises:
        ValueError: In strict mode, on the first invalid geometry.
    """
    valid: List[Feature] = []
    skipped: List[SkippedGeometry] = []
    for feature in features:
        problem = _geometry_problem(feature, id_key)
        if problem is None:
            valid.append(feature)
            continue
        if strict:
            raise ValueError(f"Invalid geometry for feature {feature.id}: {problem}")
        logger.warning(f"Skipping feature {feature.id} in line merge: {problem}")
        skipped.append(SkippedGeometry(feature_id=feature.id, reason=problem))
    return valid, skipped


# ---------------------------------------------------------------------------
# Clipping
# ---------------------------------------------------------------------------

def remove_detail_outside_tile(line: MergedLine, buffer: float, extent: float = 256.0) -> List[MergedLine]:
    """Drop the parts of a line that lie outside the buffered tile square.

    A vertex is kept while the segment it starts or the segment before it
    touches the square, so a line only gets split after two consecutive
    segments outside. Runs of a single point are dropped.

    A negative buffer disables clipping.
    """
    if buffer < 0:
        return [line]

    lo, hi = -buffer, extent + buffer
    coords, owners = line.coords, line.owners
    output: List[MergedLine] = []
    current: List[int] = []
    was_in = False

    for i in range(len(coords) - 1):
        (x, y), (next_x, next_y) = coords[i], coords[i + 1]
        now_in = _box_intersects(x, next_x, y, next_y, lo, hi)
        if now_in or was_in:
            current.append(i)
        elif current:
            # flush only after 2 consecutive outs
            _flush_run(coords, owners, current, output)
            current = []
        was_in = now_in

    last = len(coords) - 1
    last_x, last_y = coords[last]
    if was_in or _box_intersects(last_x, last_x, last_y, last_y, lo, hi):
        current.append(last)
    _flush_run(coords, owners, current, output)
    return output


def _box_intersects(x1: float, x2: float, y1: float, y2: float, lo: float, hi: float) -> bool:
    return min(x1, x2) <= hi and max(x1, x2) >= lo and min(y1, y2) <= hi and max(y1, y2) >= lo


def _flush_run(coords, owners, indices: List[int], output: List[MergedLine]) -> None:
    if len(indices) >= 2:
        output.append(MergedLine(
            coords=tuple(coords[i] for i in indices),
            owners=tuple(owners[i] for i in indices),
        ))


def join_clipped_pieces(pieces: List[MergedLine], config: MergeConfig) -> List[MergedLine]:
    """Fuse clipped pieces that meet end to end and simplify them again.

    Clipping can remove one branch of a junction, leaving two pieces that
    meet where no other line ends, and a cut piece can simplify further than
    the line it came from. Both are settled here, so merging the output a
    second time gives the same lines.
    """
    if not config.clipping_enabled or not pieces:
        return pieces

    merger = LoopLineMerger(tolerance=config.tolerance, precision=config.precision)
    for piece in pieces:
        merger.add_line(piece)
    joined = merger.get_merged_lines()
    if len(joined) < len(pieces):
        logger.debug(f"Joined {len(pieces)} clipped pieces into {len(joined)} lines")
    return joined


# ---------------------------------------------------------------------------
# Deterministic ordering
# ---------------------------------------------------------------------------

def hilbert_xy_to_index(order: int, x: int, y: int) -> int:
    """Distance along a Hilbert curve of ``order`` for grid cell (x, y)."""
    n = 1 << order
    d = 0
    s = n >> 1
    while s > 0:
        rx = 1 if x & s else 0
        ry = 1 if y & s else 0
        d += s * s * ((3 * rx) ^ ry)
        if ry == 0:
            if rx == 1:
                x = n - 1 - x
                y = n - 1 - y
            x, y = y, x
        s >>= 1
    return d


def hilbert_index(line: MergedLine, extent: float = 256.0, buffer: float = 0.0) -> int:
    """Hilbert index of a line's first coordinate within the buffered tile."""
    margin = max(buffer, 0.0)
    lo, hi = -margin, extent + margin
    cells = (1 << HILBERT_ORDER) - 1
    x, y = line.coords[0]

    def to_cell(v: float) -> int:
        return min(cells, max(0, int((v - lo) / (hi - lo) * cells)))

    return hilbert_xy_to_index(HILBERT_ORDER, to_cell(x), to_cell(y))


def sort_key(line: MergedLine, extent: float = 256.0, buffer: float = 0.0):
    """Total order on lines: Hilbert index, then coordinates."""
    return (hilbert_index(line, extent, buffer), line.coords)


def sort_by_hilbert_index(lines: Iterable[MergedLine], extent: float = 256.0, buffer: float = 0.0) -> List[MergedLine]:
    return sorted(lines, key=lambda line: sort_key(line, extent, buffer))


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------

def assemble_merged_feature(
    tags: Mapping[str, Any],
    lines: Sequence[MergedLine],
    id_key: str,
) -> Optional[Feature]:
    """Build the merged feature for a group from its sorted lines.

    Returns None when no line survived.
    """
    if not lines:
        return None

    if len(lines) == 1:
        geometry = lines[0].to_linestring()
    else:
        geometry = MultiLineString([line.coords for line in lines])

    ids = sorted(frozenset().union(*(line.source_ids for line in lines)))
    merged_tags = {k: v for k, v in sorted(tags.items()) if k != id_key}
    # Tile attribute values cannot be lists, so ids are stored as "1234,4567"
    merged_tags[id_key] = format_id_list(ids)
    return Feature(id=ids[0], geometry=geometry, tags=merged_tags)


# ---------------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------------

def resolve_length_limits(groups: Sequence[Sequence[Feature]], config: MergeConfig) -> List[float]:
    """Evaluate the length limit policy for every group before merging any.

    Raises:
        ValueError: If the policy fails or returns an unusable value.
    """
    return [config.length_limit_for(attribute_tags(group[0].tags, config.id_key)) for group in groups]


def attribute_tags(tags: Mapping[str, Any], id_key: str) -> Dict[str, Any]:
    return {k: v for k, v in tags.items() if k != id_key}


def can_pass_through(group: Sequence[Feature], length_limit: float, config: MergeConfig) -> bool:
    """Whether a group can skip merging and be emitted unchanged.

    Only a single feature that needs no clipping, cannot be too short and
    needs no simplification qualifies.
    """
    return (
        len(group) == 1
        and not config.clipping_enabled
        and length_limit == 0
        and (not config.resimplify or config.tolerance == 0)
    )


def merge_group(
    group: Sequence[Feature],
    length_limit: float,
    config: MergeConfig,
    stats: Optional[MergeStats] = None,
) -> Optional[Feature]:
    """Merge one attribute group into a single feature.

    Returns None if nothing of the group survives clipping and length limits.
    """
    if stats is None:
        stats = MergeStats()

    first = group[0]
    if can_pass_through(group, length_limit, config):
        stats.passthrough_groups += 1
        stats.output_count += 1
        return first

    valid, skipped = collect_valid_lines(group, config.id_key, config.strict_validation)
    stats.skipped.extend(skipped)

    merger = LoopLineMerger(
        tolerance=config.tolerance,
        min_length=length_limit,
        loop_min_length=length_limit,
        stub_min_length=config.stub_min_length,
        precision=config.precision,
    )
    for feature in valid:
        merger.add(feature.geometry, source_ids_of(feature, config.id_key))

    lines = merger.get_merged_lines()
    stats.vertices_before_simplify += merger.vertices_before_simplify
    stats.vertices_after_simplify += merger.vertices_after_simplify
    stats.lines_before_clip += len(lines)

    pieces: List[MergedLine] = []
    for line in lines:
        pieces.extend(remove_detail_outside_tile(line, config.buffer, config.extent))
    pieces = join_clipped_pieces(pieces, config)
    stats.lines_after_clip += len(pieces)

    feature = assemble_merged_feature(
        first.tags,
        sort_by_hilbert_index(pieces, config.extent, config.buffer),
        config.id_key,
    )
    if feature is None:
        logger.debug(f"Group of {len(group)} features starting with {first.id} left no lines")
        stats.dropped_groups += 1
        return None

    logger.debug(f"Merged {len(group)} features into {len(pieces)} lines with ids {feature.tags[config.id_key]}")
    stats.merged_groups += 1
    stats.output_count += 1
    return feature


def _merge_group_task(args) -> Tuple[Optional[Feature], MergeStats]:
    group, length_limit, config = args
    stats = MergeStats()
    return merge_group(group, length_limit, config, stats), stats


def merge_line_strings(
    features: Sequence[Feature],
    config: MergeConfig = MergeConfig(),
    stats: Optional[MergeStats] = None,
) -> List[Feature]:
    """Merge line features with identical attributes.

    Output features follow the order in which their groups first appear in
    the input. Groups are independent and run on a thread pool when
    ``config.n_workers > 1``.

    Raises:
        GeometryTypeError: If a feature does not carry a line geometry.
        ValueError: On configuration errors, before any group is merged.
    """
    if stats is None:
        stats = MergeStats()

    stats.input_count += len(features)
    groups = group_by_attrs(features, config.id_key)
    stats.group_count += len(groups)
    length_limits = resolve_length_limits(groups, config)

    tasks = [(group, limit, config) for group, limit in zip(groups, length_limits)]
    if config.n_workers > 1 and len(tasks) > 1:
        with ThreadPoolExecutor(max_workers=config.n_workers) as executor:
            results = list(executor.map(_merge_group_task, tasks))
    else:
        results = [_merge_group_task(task) for task in tasks]

    output: List[Feature] = []
    for feature, group_stats in results:
        stats.absorb(group_stats)
        if feature is not None:
            output.append(feature)
    return output
