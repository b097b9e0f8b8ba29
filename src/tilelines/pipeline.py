"""Tile-level orchestration for tilelines."""

import logging
import math
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import geopandas as gpd

from .ops import merge_line_strings
from .types import Feature, MergeConfig, MergeStats

logger = logging.getLogger(__name__)


def merge_tile(
    features: Sequence[Feature],
    config: MergeConfig = MergeConfig(),
) -> Tuple[List[Feature], Dict[str, Any]]:
    """Merge the line features of one tile.

    Pipeline per attribute group: merge connected lines -> clip to the
    buffered tile -> sort by Hilbert index -> assemble one feature.

    Args:
        features: Line features of one tile, in tile-local coordinates
        config: Configuration parameters

    Returns:
        Tuple of (merged features, report dict)

    Raises:
        GeometryTypeError: If a feature is not a line
        ValueError: On configuration errors or, in strict mode, invalid geometries
    """
    start_time = time.time()
    stats = MergeStats()

    # Setup logging
    logging.basicConfig(
        level=logging.DEBUG if config.verbose >= 2 else
              logging.INFO if config.verbose >= 1 else
              logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    logger.info(f"Merging {len(features)} line features")

    try:
        result = merge_line_strings(features, config, stats)
    except Exception as e:
        logger.error(f"Line merge failed: {e}")
        raise

    stats.processing_time = time.time() - start_time

    if stats.invalid_geometry_count:
        logger.warning(f"Excluded {stats.invalid_geometry_count} invalid geometries from the merge")
    logger.info(f"Line merge completed in {stats.processing_time:.2f}s")
    logger.info(f"Processed {stats.input_count} features in {stats.group_count} groups → {stats.output_count} features")

    return result, _generate_report(stats, config)


def _generate_report(stats: MergeStats, config: MergeConfig) -> Dict[str, Any]:
    """Generate processing report."""
    return {
        # Input/Output counts
        'input_count': stats.input_count,
        'group_count': stats.group_count,
        'output_count': stats.output_count,

        # Group outcomes
        'passthrough_groups': stats.passthrough_groups,
        'merged_groups': stats.merged_groups,
        'dropped_groups': stats.dropped_groups,

        # Validation
        'invalid_geometry_count': stats.invalid_geometry_count,
        'skipped_geometries': [str(s) for s in stats.skipped],

        # Line statistics
        'lines_before_clip': stats.lines_before_clip,
        'lines_after_clip': stats.lines_after_clip,
        'vertices_before_simplify': stats.vertices_before_simplify,
        'vertices_after_simplify': stats.vertices_after_simplify,

        # Performance metrics
        'processing_time': stats.processing_time,

        'config': config.to_dict(),

        'pipeline_version': '0.1.0',
        'timestamp': time.strftime('%Y-%m-%d %H:%M:%S UTC', time.gmtime()),
    }


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, float) and math.isnan(value))


def features_from_geodataframe(gdf: gpd.GeoDataFrame, id_column: str = "id") -> List[Feature]:
    """Convert GeoDataFrame rows to features.

    Missing values are left out of the tags. Without ``id_column`` the row
    index is used as the feature id.
    """
    features = []
    for idx, row in gdf.iterrows():
        attributes = dict(row.drop(gdf.geometry.name))
        if id_column in attributes:
            feature_id = int(attributes.pop(id_column))
        else:
            feature_id = int(idx)
        tags = {k: v for k, v in attributes.items() if not _is_missing(v)}
        features.append(Feature(id=feature_id, geometry=row.geometry, tags=tags))
    return features


def features_to_geodataframe(
    features: Sequence[Feature],
    id_column: str = "id",
    crs: Optional[str] = None,
) -> gpd.GeoDataFrame:
    """Convert features to a GeoDataFrame with one column per tag."""
    if not features:
        return gpd.GeoDataFrame({id_column: []}, geometry=[], crs=crs)

    rows = [{id_column: f.id, **f.tags, 'geometry': f.geometry} for f in features]
    return gpd.GeoDataFrame(rows, geometry='geometry', crs=crs)


def merge_file(
    input_path: str,
    output_path: str,
    config: MergeConfig = MergeConfig(),
    id_column: str = "id",
) -> Tuple[gpd.GeoDataFrame, Dict[str, Any]]:
    """Merge the line features of one tile stored in a file.

    Coordinates are taken as tile-local units; no reprojection happens.

    Returns:
        Tuple of (merged GeoDataFrame, report dict)

    Raises:
        FileNotFoundError: If input file doesn't exist
        ValueError: If the input cannot be loaded or written
    """
    gdf = _load_input_data(input_path)
    features = features_from_geodataframe(gdf, id_column)

    merged, report = merge_tile(features, config)

    result_gdf = features_to_geodataframe(merged, id_column, crs=gdf.crs)
    _export_results(result_gdf, output_path)
    report['input_path'] = str(input_path)
    report['output_path'] = str(output_path)
    return result_gdf, report


def _load_input_data(input_path: str) -> gpd.GeoDataFrame:
    """Load input data from GeoJSON or any other file geopandas reads."""
    path = Path(input_path)
    if not path.exists():
        raise FileNotFoundError(f"Input file not found: {input_path}")

    logger.info(f"Loading input from {input_path}")

    try:
        gdf = gpd.read_file(input_path)
    except Exception as e:
        raise ValueError(f"Failed to load input file: {e}") from e

    logger.info(f"Loaded {len(gdf)} features")
    return gdf


def _export_results(gdf: gpd.GeoDataFrame, output_path: str) -> None:
    """Export results to GeoJSON format."""
    output_path_obj = Path(output_path)
    output_path_obj.parent.mkdir(parents=True, exist_ok=True)

    logger.info(f"Exporting {len(gdf)} features to {output_path}")

    try:
        gdf.to_file(output_path, driver='GeoJSON')
        logger.info(f"Successfully exported to {output_path}")
    except Exception as e:
        raise ValueError(f"Failed to export results: {e}") from e
