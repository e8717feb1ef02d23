"""
Command-line interface for the application.

This module provides the main entry point for the CLI.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from observation_atlas import __version__
from observation_atlas.config import get_settings
from observation_atlas.datasources.observations import points_from_json
from observation_atlas.engine import AtlasEngine
from observation_atlas.flows.markers import load_markers, refresh_markers
from observation_atlas.flows.tiles import build_tiles
from observation_atlas.log import configure_logging
from observation_atlas.schemas import (
    Bounds,
    CircleShape,
    PolygonShape,
    Shape,
    parse_sources,
)


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="observation-atlas",
        description="Tile aggregation and progressive loading for biodiversity observations",
    )
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("info", help="Show application info")

    # 'refresh' command - fetch markers and build tile layers
    refresh_parser = subparsers.add_parser("refresh", help="Fetch markers and build tile layers")
    refresh_parser.add_argument(
        "--force",
        action="store_true",
        help="Fetch even if cached markers are still fresh",
    )

    # 'tiles' command - bucket cached markers for one viewport
    tiles_parser = subparsers.add_parser("tiles", help="Compute tiles for a viewport")
    tiles_parser.add_argument(
        "--zoom",
        type=float,
        default=5,
        help="Map zoom level (default: 5)",
    )
    tiles_parser.add_argument(
        "--bbox",
        type=str,
        default=None,
        help="Viewport as south,west,north,east (default: whole world)",
    )
    tiles_parser.add_argument(
        "--input",
        type=Path,
        default=None,
        help="JSON file of marker rows (default: the marker cache)",
    )

    # 'fetch' command - first merged page of observations
    fetch_parser = subparsers.add_parser("fetch", help="Fetch a merged observation page")
    fetch_parser.add_argument(
        "--sources",
        type=str,
        default="",
        help="Comma-separated sources (default: all)",
    )
    fetch_parser.add_argument(
        "--pages",
        type=int,
        default=1,
        help="Number of rounds to load (default: 1)",
    )
    fetch_parser.add_argument(
        "--page-size",
        type=int,
        default=None,
        help="Items per source per round (default: ATLAS_PAGE_SIZE)",
    )

    # 'polygon' command - stats inside a shape
    polygon_parser = subparsers.add_parser("polygon", help="Stats and tiles inside a shape")
    shape_group = polygon_parser.add_mutually_exclusive_group(required=True)
    shape_group.add_argument(
        "--boundary",
        type=str,
        help="Polygon ring as lng,lat|lng,lat|...",
    )
    shape_group.add_argument(
        "--circle",
        type=str,
        help="Circle as lng,lat,radius_m",
    )
    polygon_parser.add_argument(
        "--sources",
        type=str,
        default="",
        help="Comma-separated sources (default: all)",
    )

    return parser


def parse_bbox(value: str | None) -> Bounds | None:
    """Parse ``south,west,north,east``."""
    if not value:
        return None
    south, west, north, east = (float(v) for v in value.split(","))
    return Bounds(south=south, west=west, north=north, east=east)


def parse_shape(args: argparse.Namespace) -> Shape:
    if args.circle:
        lng, lat, radius = (float(v) for v in args.circle.split(","))
        return CircleShape(center=(lng, lat), radius=radius)
    ring = []
    for pair in args.boundary.split("|"):
        lng, lat = (float(v) for v in pair.split(","))
        ring.append((lng, lat))
    return PolygonShape(ring=tuple(ring))


def cmd_info(_args: argparse.Namespace) -> int:
    """Handle the 'info' command."""
    settings = get_settings()
    print(f"Application: {settings.app_name}")
    print(f"Version: {__version__}")
    print(f"Environment: {settings.app_env}")
    print(f"API: {settings.api_base_url}")
    print(f"Cache: {settings.cache_dir} ({settings.cache_ttl_hours:g}h)")
    print(f"Debug: {settings.debug}")
    return 0


def cmd_refresh(args: argparse.Namespace) -> int:
    """Handle the 'refresh' command: fetch markers then build tile layers."""
    settings = get_settings()
    print(f"Fetching markers from {settings.api_base_url}...")
    refresh_markers(force=args.force)

    print("Building tiles...")
    build_tiles()

    print("Done.")
    return 0


def cmd_tiles(args: argparse.Namespace) -> int:
    """Handle the 'tiles' command: print viewport tiles as GeoJSON."""
    try:
        bounds = parse_bbox(args.bbox)
    except ValueError as e:
        print(f"Invalid --bbox: {e}", file=sys.stderr)
        return 1

    if args.input is not None:
        try:
            points = points_from_json(json.loads(args.input.read_text()))
        except (OSError, json.JSONDecodeError) as e:
            print(f"Cannot read {args.input}: {e}", file=sys.stderr)
            return 1
    else:
        points = load_markers()
    if not points:
        print("No markers loaded. Run 'observation-atlas refresh' first.", file=sys.stderr)
        return 1

    engine = AtlasEngine(get_settings())
    engine.load_points(points)
    tiles = engine.compute_tiles(None, args.zoom, bounds)
    collection = {
        "type": "FeatureCollection",
        "properties": {"resolution": engine.resolution.name.lower()},
        "features": [t.to_feature() for t in tiles],
    }
    print(json.dumps(collection, indent=2))
    return 0


async def _fetch_pages(sources: str, rounds: int, page_size: int | None = None) -> int:
    settings = get_settings()
    if page_size:
        settings = settings.model_copy(update={"page_size": page_size})
    async with AtlasEngine(settings) as engine:
        page = await engine.fetch_merged_page(parse_sources(sources))
        for _ in range(rounds - 1):
            if not page.has_more:
                break
            page = await engine.fetch_merged_page(None, cursors=page.cursors)

    for item in page.items:
        when = item.observed_at or item.created_at
        print(f"{item.dedup_key:<24} {when or '-'!s:<26} {item.title}")
    print(f"{len(page.items)} of {page.total_count} observations, more: {page.has_more}")
    if page.failed_sources:
        print(f"Unavailable: {', '.join(page.failed_sources)}", file=sys.stderr)
    return 0


def cmd_fetch(args: argparse.Namespace) -> int:
    """Handle the 'fetch' command."""
    return asyncio.run(_fetch_pages(args.sources, max(1, args.pages), args.page_size))


async def _polygon(shape: Shape, sources: str) -> int:
    async with AtlasEngine(get_settings()) as engine:
        engine.load_points(load_markers())
        result = await engine.apply_polygon(shape, parse_sources(sources))

    print(json.dumps(result.stats.model_dump(), indent=2))
    print(f"{len(result.tiles)} tiles")
    return 0


def cmd_polygon(args: argparse.Namespace) -> int:
    """Handle the 'polygon' command."""
    try:
        shape = parse_shape(args)
    except ValueError as e:
        print(f"Invalid shape: {e}", file=sys.stderr)
        return 1
    return asyncio.run(_polygon(shape, args.sources))


def main() -> int:
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return 0

    settings = get_settings()
    configure_logging("DEBUG" if getattr(args, "debug", False) else settings.log_level)

    commands = {
        "info": cmd_info,
        "refresh": cmd_refresh,
        "tiles": cmd_tiles,
        "fetch": cmd_fetch,
        "polygon": cmd_polygon,
    }

    handler = commands.get(args.command)
    if handler:
        return handler(args)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
