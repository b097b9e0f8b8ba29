"""Command-line interface for tilelines."""

import json
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from .pipeline import merge_file
from .types import MergeConfig, TagLengthLimit

app = typer.Typer(
    name="tilelines",
    help="Merge line features of a vector tile that share identical attributes",
    no_args_is_help=True,
)
console = Console()

# Report rows shown after a merge; the second group only with --verbose
SUMMARY_ROWS = [
    ("Input features", 'input_count'),
    ("Attribute groups", 'group_count'),
    ("Output features", 'output_count'),
    ("Invalid geometries", 'invalid_geometry_count'),
]
DETAIL_ROWS = [
    ("Groups passed through", 'passthrough_groups'),
    ("Groups merged", 'merged_groups'),
    ("Groups dropped", 'dropped_groups'),
    ("Lines before clipping", 'lines_before_clip'),
    ("Lines after clipping", 'lines_after_clip'),
    ("Vertices before simplify", 'vertices_before_simplify'),
    ("Vertices after simplify", 'vertices_after_simplify'),
]


@app.command()
def merge(
    input_path: str = typer.Argument(..., help="Input GeoJSON with one tile's line features (tile-local coordinates)"),
    output_path: str = typer.Argument(..., help="Output GeoJSON path"),
    tolerance: Optional[float] = typer.Option(None, "--tolerance", help="Simplification tolerance (tile units)"),
    buffer: Optional[float] = typer.Option(None, "--buffer", help="Clip margin around the tile; negative disables clipping"),
    min_length: Optional[float] = typer.Option(None, "--min-length", help="Drop merged lines shorter than this"),
    id_column: str = typer.Option("id", "--id-column", help="Input column holding feature ids"),
    workers: Optional[int] = typer.Option(None, "--workers", help="Thread pool size for merging groups"),
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="Increase verbosity (use -v, -vv)"),
    config_file: Optional[str] = typer.Option(None, "--config", help="Load configuration from YAML or JSON file"),
    report_path: Optional[str] = typer.Option(None, "--report", help="Save processing report to JSON file"),
) -> None:
    """Merge line features with identical attributes.

    Settings not given as options come from --config, then from the defaults.

    Examples:

        tilelines merge tile.geojson merged.geojson --buffer -1 --min-length 8

        tilelines merge tile.geojson merged.geojson --config config.yaml --report report.json
    """
    try:
        config = load_config_file(config_file) if config_file else MergeConfig()
        overrides = _given(tolerance=tolerance, buffer=buffer, min_length=min_length, n_workers=workers)
        config = replace(config, verbose=max(verbose, config.verbose), **overrides)

        _, report = merge_file(input_path, output_path, config, id_column=id_column)
        print_report(report, config.verbose)

        if report_path:
            Path(report_path).write_text(json.dumps(report, indent=2, default=str))
            console.print(f"Report saved to {report_path}")

    except Exception as e:
        console.print(f"Error: {e}", style="bold red")
        if verbose >= 2:
            console.print_exception()
        sys.exit(1)


@app.command()
def config(
    output_path: str = typer.Argument(..., help="Output path for configuration file"),
    format: str = typer.Option("yaml", "--format", help="Output format: yaml or json"),
) -> None:
    """Generate a default configuration file."""
    dumpers = {
        'yaml': lambda values: yaml.safe_dump(values, default_flow_style=False),
        'json': lambda values: json.dumps(values, indent=2),
    }
    dump = dumpers.get(format.lower())
    if dump is None:
        console.print(f"Unsupported format: {format}", style="bold red")
        sys.exit(1)

    Path(output_path).write_text(dump(MergeConfig().to_dict()))
    console.print(f"Default configuration saved to {output_path}")


def _given(**options: Any) -> Dict[str, Any]:
    return {name: value for name, value in options.items() if value is not None}


def load_config_file(config_path: str) -> MergeConfig:
    """Load configuration from YAML or JSON file.

    A ``length_limit`` mapping with ``key``, ``limits`` and ``default``
    becomes a :class:`TagLengthLimit`.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    suffix = path.suffix.lower()
    if suffix in ['.yml', '.yaml']:
        config_dict = yaml.safe_load(path.read_text()) or {}
    elif suffix == '.json':
        config_dict = json.loads(path.read_text())
    else:
        raise ValueError(f"Unsupported config file format: {path.suffix}")

    length_limit = config_dict.pop('length_limit', None)
    if length_limit is not None:
        if not isinstance(length_limit, dict) or 'key' not in length_limit:
            raise ValueError("length_limit must be a mapping with at least a 'key' entry")
        config_dict['length_limit'] = TagLengthLimit(
            key=length_limit['key'],
            limits={str(k): float(v) for k, v in (length_limit.get('limits') or {}).items()},
            default=float(length_limit.get('default', 0.0)),
        )

    return MergeConfig(**config_dict)


def print_report(report: dict, verbose: int = 0) -> None:
    """Print the merge counts as a table, with per-stage counts when verbose."""
    table = Table(title=f"Merged in {report['processing_time']:.2f}s", show_header=False)
    table.add_column(style="cyan")
    table.add_column(style="magenta", justify="right")

    rows = SUMMARY_ROWS + DETAIL_ROWS if verbose >= 1 else SUMMARY_ROWS
    for label, key in rows:
        table.add_row(label, str(report[key]))
    console.print(table)

    for skipped in report.get('skipped_geometries', []):
        console.print(f"Skipped {skipped}", style="yellow")


if __name__ == "__main__":
    app()
