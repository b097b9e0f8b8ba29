"""Loop-aware line merging over a quantized endpoint graph."""

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

import numpy as np
from shapely import get_coordinates
from shapely.geometry import LineString

from .types import Coordinate, GeometryTypeError, LineGeometry, MergedLine, NodeKey, _coords_length

logger = logging.getLogger(__name__)


@dataclass
class Edge:
    """One line in the merger's geometry arena."""
    coords: List[Coordinate]
    owners: List[FrozenSet[int]]
    start: NodeKey
    end: NodeKey
    alive: bool = True

    @property
    def is_loop(self) -> bool:
        return self.start == self.end

    @property
    def length(self) -> float:
        return _coords_length(self.coords)

    def ending_at(self, node: NodeKey) -> Tuple[List[Coordinate], List[FrozenSet[int]]]:
        """Coordinates and owners oriented so the line ends at ``node``."""
        if self.end == node:
            return list(self.coords), list(self.owners)
        return self.coords[::-1], self.owners[::-1]

    def starting_at(self, node: NodeKey) -> Tuple[List[Coordinate], List[FrozenSet[int]]]:
        """Coordinates and owners oriented so the line starts at ``node``."""
        if self.start == node:
            return list(self.coords), list(self.owners)
        return self.coords[::-1], self.owners[::-1]

    def canonical_coords(self) -> Tuple[Coordinate, ...]:
        forward = tuple(self.coords)
        backward = forward[::-1]
        return min(forward, backward)


class LoopLineMerger:
    """Merges lines that connect end to end into maximal lines.

    Endpoints are quantized to a ``precision`` grid; two endpoints in the same
    grid cell share a node. Lines are only fused across nodes with exactly two
    incident line ends, so junctions stay junctions and closed rings end up as
    a single closed line.

    Every coordinate tracks the set of source ids it came from, so the ids
    behind each output line are known after fusing, simplifying and pruning.
    """

    def __init__(
        self,
        tolerance: float = 0.0,
        min_length: float = 0.0,
        loop_min_length: Optional[float] = None,
        stub_min_length: float = 0.0,
        precision: float = 0.0625,
    ):
        if precision <= 0:
            raise ValueError("precision must be positive")
        self.tolerance = tolerance
        self.min_length = min_length
        self.loop_min_length = min_length if loop_min_length is None else loop_min_length
        self.stub_min_length = stub_min_length
        self.precision = precision
        self._edges: List[Edge] = []
        self._adjacency: Dict[NodeKey, List[int]] = defaultdict(list)
        self.vertices_before_simplify = 0
        self.vertices_after_simplify = 0

    # -- building ---------------------------------------------------------

    def node_key(self, x: float, y: float) -> NodeKey:
        """Quantize a coordinate to its node key."""
        return NodeKey(ix=int(round(x / self.precision)), iy=int(round(y / self.precision)))

    def snap_coords(self, line: LineString) -> List[Coordinate]:
        """Round a line's coordinates to the precision grid.

        Consecutive coordinates that land on the same grid point collapse into one.
        """
        coords = get_coordinates(line)
        snapped = np.round(coords / self.precision) * self.precision
        result: List[Coordinate] = []
        for x, y in snapped:
            point = (float(x) + 0.0, float(y) + 0.0)  # normalizes -0.0
            if not result or result[-1] != point:
                result.append(point)
        return result

    def add(self, geometry: LineGeometry, source_ids: Iterable[int]) -> int:
        """Add a LineString or every part of a MultiLineString.

        Returns:
            Number of edges added. Parts that collapse to a single point are ignored.
        """
        if geometry.geom_type == 'LineString':
            parts = [geometry]
        elif geometry.geom_type == 'MultiLineString':
            parts = list(geometry.geoms)
        else:
            raise GeometryTypeError(f"Cannot merge {geometry.geom_type} geometry")

        owner = frozenset(source_ids)
        added = 0
        for part in parts:
            coords = self.snap_coords(part)
            if len(coords) < 2:
                logger.debug(f"Ignoring degenerate line part from {sorted(owner)}")
                continue
            self._add_edge(coords, [owner] * len(coords))
            added += 1
        return added

    def add_line(self, line: MergedLine) -> None:
        """Add an already merged line, keeping the source ids of each coordinate."""
        self._add_edge(list(line.coords), list(line.owners))

    def _add_edge(self, coords: List[Coordinate], owners: List[FrozenSet[int]]) -> int:
        start = self.node_key(*coords[0])
        end = self.node_key(*coords[-1])
        idx = len(self._edges)
        self._edges.append(Edge(coords=coords, owners=owners, start=start, end=end))
        self._adjacency[start].append(idx)
        self._adjacency[end].append(idx)
        return idx

    def _remove_edge(self, idx: int) -> None:
        edge = self._edges[idx]
        edge.alive = False
        for node in (edge.start, edge.end):
            incident = self._adjacency[node]
            incident.remove(idx)
            if not incident:
                del self._adjacency[node]

    # -- graph queries ----------------------------------------------------

    def degree(self, node: NodeKey) -> int:
        """Number of line ends at ``node``; a closed line counts twice."""
        incident = self._adjacency.get(node)
        return len(incident) if incident else 0

    def alive_edges(self) -> List[int]:
        return [idx for idx, edge in enumerate(self._edges) if edge.alive]

    # -- merge steps ------------------------------------------------------

    def _remove_duplicate_edges(self) -> int:
        """Drop lines identical to another line in either direction."""
        seen: Dict[Tuple[Coordinate, ...], int] = {}
        removed = 0
        for idx in self.alive_edges():
            edge = self._edges[idx]
            key = edge.canonical_coords()
            kept_idx = seen.get(key)
            if kept_idx is None:
                seen[key] = idx
                continue

            kept = self._edges[kept_idx]
            other_owners = edge.owners if edge.coords == kept.coords else edge.owners[::-1]
            kept.owners = [a | b for a, b in zip(kept.owners, other_owners)]
            self._remove_edge(idx)
            removed += 1

        if removed:
            logger.debug(f"Removed {removed} duplicate lines")
        return removed

    def _merge_degree_two(self) -> int:
        """Fuse line pairs across every node with exactly two line ends."""
        merges = 0
        for node in sorted(self._adjacency):
            incident = self._adjacency.get(node)
            if not incident or len(incident) != 2 or incident[0] == incident[1]:
                continue
            self._fuse(incident[0], incident[1], node)
            merges += 1
        return merges

    def _merge(self) -> int:
        """Drop duplicates and fuse at degree-2 nodes until neither changes the graph.

        Returns the number of lines removed or fused.
        """
        changes = self._remove_duplicate_edges()
        while True:
            merges = self._merge_degree_two()
            changes += merges
            if not merges:
                break
            removed = self._remove_duplicate_edges()
            changes += removed
            if not removed:
                break
        return changes

    def _fuse(self, first: int, second: int, node: NodeKey) -> int:
        coords_a, owners_a = self._edges[first].ending_at(node)
        coords_b, owners_b = self._edges[second].starting_at(node)

        coords = coords_a + coords_b[1:]
        owners = owners_a[:-1] + [owners_a[-1] | owners_b[0]] + owners_b[1:]

        self._remove_edge(first)
        self._remove_edge(second)
        return self._add_edge(coords, owners)

    def _break_loops(self) -> int:
        """Remove lines closing loops shorter than ``loop_min_length``.

        A closed line shorter than the limit is removed. For parallel lines
        between the same two nodes, the longer line is removed when it and the
        shortest line together form a loop shorter than the limit.
        """
        doomed = set()
        parallel: Dict[Tuple[NodeKey, NodeKey], List[int]] = defaultdict(list)

        for idx in self.alive_edges():
            edge = self._edges[idx]
            if edge.is_loop:
                if edge.length < self.loop_min_length:
                    doomed.add(idx)
            else:
                parallel[tuple(sorted((edge.start, edge.end)))].append(idx)

        for indices in parallel.values():
            if len(indices) < 2:
                continue
            ordered = sorted(indices, key=self._length_order)
            shortest = self._edges[ordered[0]].length
            for idx in ordered[1:]:
                if shortest + self._edges[idx].length < self.loop_min_length:
                    doomed.add(idx)

        for idx in sorted(doomed):
            self._remove_edge(idx)
        if doomed:
            logger.debug(f"Broke {len(doomed)} short loops")
        return len(doomed)

    def _remove_short_stubs(self) -> int:
        """Remove short dangling lines hanging off junctions.

        A junction never loses so many stubs that fewer than two line ends remain.
        """
        stubs_by_junction: Dict[NodeKey, List[int]] = defaultdict(list)
        for idx in self.alive_edges():
            edge = self._edges[idx]
            if edge.is_loop or edge.length >= self.stub_min_length:
                continue
            start_degree, end_degree = self.degree(edge.start), self.degree(edge.end)
            if start_degree == 1 and end_degree >= 3:
                stubs_by_junction[edge.end].append(idx)
            elif end_degree == 1 and start_degree >= 3:
                stubs_by_junction[edge.start].append(idx)

        doomed = []
        for junction, stubs in stubs_by_junction.items():
            removable = self.degree(junction) - 2
            doomed.extend(sorted(stubs, key=self._length_order)[:removable])

        for idx in sorted(doomed):
            self._remove_edge(idx)
        if doomed:
            logger.debug(f"Removed {len(doomed)} stubs shorter than {self.stub_min_length}")
        return len(doomed)

    def _vertex_count(self) -> int:
        return sum(len(self._edges[idx].coords) for idx in self.alive_edges())

    def _simplify(self) -> None:
        """Douglas-Peucker simplification of every line, keeping endpoints.

        Lines are simplified in their output orientation, again and again until
        no vertex goes, so simplifying the output a second time changes nothing.
        """
        rings = [
            (idx, self._canonical_line(self._edges[idx])) for idx in self.alive_edges()
            if self._edges[idx].is_loop and self.degree(self._edges[idx].start) == 2
        ]
        for idx, line in rings:
            self._reanchor_ring(idx, line)

        for idx in self.alive_edges():
            edge = self._edges[idx]
            while len(edge.coords) > 2 and self._simplify_edge(edge):
                pass

    def _simplify_edge(self, edge: Edge) -> bool:
        """Simplify one line once. Returns True if vertices were removed."""
        line = self._canonical_line(edge)
        coords, owners = list(line.coords), list(line.owners)

        simplified = LineString(coords).simplify(self.tolerance, preserve_topology=False)
        new_coords = [] if simplified.is_empty else [(float(x), float(y)) for x, y in simplified.coords]
        min_size = 4 if edge.is_loop else 2
        if not min_size <= len(new_coords) < len(coords):
            return False
        if new_coords[0] != coords[0] or new_coords[-1] != coords[-1]:
            return False
        new_owners = _retain_owners(coords, owners, new_coords)
        if new_owners is None:
            return False

        if coords[0] != edge.coords[0]:
            new_coords.reverse()
            new_owners.reverse()
        edge.coords = new_coords
        edge.owners = new_owners
        return True

    def _reanchor_ring(self, idx: int, line: MergedLine) -> None:
        """Restart an isolated ring at the vertex its output starts at.

        The start of a ring survives simplification, so simplifying the output
        again keeps the same vertices.
        """
        edge = self._edges[idx]
        node = self.node_key(*line.coords[0])
        if node != edge.start:
            self._remove_edge(idx)
            edge.alive = True
            edge.start = edge.end = node
            self._adjacency[node].extend([idx, idx])
        edge.coords, edge.owners = list(line.coords), list(line.owners)

    def _remove_short_lines(self) -> int:
        """Remove lines shorter than the length limits, round by round.

        Lines joining two junctions are kept regardless of length so the
        network stays connected.
        """
        total = 0
        while True:
            doomed = []
            for idx in self.alive_edges():
                edge = self._edges[idx]
                limit = self.loop_min_length if edge.is_loop else self.min_length
                if limit <= 0 or edge.length >= limit:
                    continue
                if not edge.is_loop and self.degree(edge.start) >= 3 and self.degree(edge.end) >= 3:
                    continue
                doomed.append(idx)

            if not doomed:
                break
            for idx in doomed:
                self._remove_edge(idx)
            total += len(doomed)
            while self._merge() and self.tolerance > 0:
                self._simplify()

        if total:
            logger.debug(f"Removed {total} lines shorter than {self.min_length}")
        return total

    def _length_order(self, idx: int):
        edge = self._edges[idx]
        return (edge.length, edge.canonical_coords())

    # -- output -----------------------------------------------------------

    def _canonical_line(self, edge: Edge) -> MergedLine:
        coords, owners = list(edge.coords), list(edge.owners)

        if edge.is_loop and self.degree(edge.start) == 2:
            # isolated ring: start at its smallest vertex
            ring = coords[:-1]
            ring_owners = [owners[0] | owners[-1]] + owners[1:-1]
            size = len(ring)
            lowest = min(ring)
            candidates = []
            for i in range(size):
                if ring[i] == lowest:
                    candidates.append([(i + k) % size for k in range(size)])
                    candidates.append([(i - k) % size for k in range(size)])
            order = min(candidates, key=lambda indices: [ring[j] for j in indices])
            coords = [ring[j] for j in order] + [ring[order[0]]]
            owners = [ring_owners[j] for j in order] + [ring_owners[order[0]]]
        elif tuple(coords[::-1]) < tuple(coords):
            # open lines start at the smaller endpoint; loops off a junction keep it as endpoints
            coords.reverse()
            owners.reverse()

        return MergedLine(coords=tuple(coords), owners=tuple(owners))

    def get_merged_lines(self) -> List[MergedLine]:
        """Run the merge and return the merged lines in no particular order."""
        self._merge()

        if self.loop_min_length > 0:
            self._break_loops()
            self._merge()

        if self.stub_min_length > 0:
            while self._remove_short_stubs():
                self._merge()

        if self.tolerance > 0:
            self.vertices_before_simplify += self._vertex_count()
            self._simplify()
            # lines fused after simplifying are simplified again
            while self._merge():
                self._simplify()
            self.vertices_after_simplify += self._vertex_count()

        if self.min_length > 0 or self.loop_min_length > 0:
            self._remove_short_lines()

        return [self._canonical_line(self._edges[idx]) for idx in self.alive_edges()]


def _retain_owners(
    coords: List[Coordinate],
    owners: List[FrozenSet[int]],
    kept: List[Coordinate],
) -> Optional[List[FrozenSet[int]]]:
    """Map owners onto the subsequence of coordinates kept by simplification.

    Owners of dropped vertices move to the next kept vertex, so no source id
    is lost by simplifying. Returns None if ``kept`` is not a subsequence.
    """
    result: List[FrozenSet[int]] = []
    pending: FrozenSet[int] = frozenset()
    i = 0
    for point in kept:
        while i < len(coords) and coords[i] != point:
            pending |= owners[i]
            i += 1
        if i == len(coords):
            return None
        result.append(owners[i] | pending)
        pending = frozenset()
        i += 1
    if pending or i != len(coords):
        return None
    return result
