"""
Tests for CLI functionality.

These tests verify the command-line interface logic.
"""

from __future__ import annotations

import argparse
import json
from io import StringIO
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from observation_atlas.cli import (
    cmd_fetch,
    cmd_info,
    cmd_polygon,
    cmd_refresh,
    cmd_tiles,
    create_parser,
    main,
    parse_bbox,
    parse_shape,
)
from observation_atlas.coordinator import MergedPage
from observation_atlas.exceptions import SourceUnavailable
from observation_atlas.schemas import CircleShape, PolygonShape, Source

from .conftest import make_observation, make_point


class TestCreateParser:
    """Tests for create_parser function."""

    def test_creates_parser(self) -> None:
        parser = create_parser()
        assert isinstance(parser, argparse.ArgumentParser)
        assert parser.prog == "observation-atlas"

    def test_parser_has_version(self) -> None:
        with pytest.raises(SystemExit):
            create_parser().parse_args(["--version"])

    def test_parser_has_debug_flag(self) -> None:
        args = create_parser().parse_args(["--debug", "info"])
        assert args.debug is True

    def test_tiles_defaults(self) -> None:
        args = create_parser().parse_args(["tiles"])
        assert args.zoom == 5
        assert args.bbox is None

    def test_fetch_options(self) -> None:
        args = create_parser().parse_args(["fetch", "--sources", "fobi,kupunesia", "--pages", "2"])
        assert args.sources == "fobi,kupunesia"
        assert args.pages == 2
        assert args.page_size is None

    def test_polygon_requires_shape(self) -> None:
        with pytest.raises(SystemExit):
            create_parser().parse_args(["polygon"])

    def test_refresh_force(self) -> None:
        assert create_parser().parse_args(["refresh", "--force"]).force is True


class TestParsing:
    def test_bbox(self) -> None:
        bounds = parse_bbox("-11,95,6,141")
        assert bounds is not None
        assert (bounds.south, bounds.west, bounds.north, bounds.east) == (-11, 95, 6, 141)

    def test_bbox_empty(self) -> None:
        assert parse_bbox(None) is None

    def test_bbox_invalid(self) -> None:
        with pytest.raises(ValueError):
            parse_bbox("1,2,3")

    def test_circle(self) -> None:
        args = argparse.Namespace(circle="106.8,-6.2,500", boundary=None)
        assert parse_shape(args) == CircleShape(center=(106.8, -6.2), radius=500)

    def test_boundary(self) -> None:
        args = argparse.Namespace(circle=None, boundary="0,0|1,0|1,1")
        assert parse_shape(args) == PolygonShape(ring=((0, 0), (1, 0), (1, 1)))


class TestCmdInfo:
    def test_prints_app_info(self) -> None:
        with patch("sys.stdout", new=StringIO()) as mock_stdout:
            assert cmd_info(argparse.Namespace()) == 0
            output = mock_stdout.getvalue()
        assert "Application" in output
        assert "Version" in output


class TestCmdRefresh:
    def test_calls_markers_then_tiles(self) -> None:
        call_order: list[str] = []

        def mock_refresh(**_kwargs: object) -> dict[str, object]:
            call_order.append("markers")
            return {}

        def mock_build() -> dict[str, object]:
            call_order.append("tiles")
            return {}

        with (
            patch("observation_atlas.cli.refresh_markers", side_effect=mock_refresh) as refresh,
            patch("observation_atlas.cli.build_tiles", side_effect=mock_build),
        ):
            assert cmd_refresh(argparse.Namespace(force=True)) == 0
        assert call_order == ["markers", "tiles"]
        refresh.assert_called_once_with(force=True)


class TestCmdTiles:
    def test_no_markers(self) -> None:
        with patch("observation_atlas.cli.load_markers", return_value=[]):
            assert cmd_tiles(argparse.Namespace(zoom=5, bbox=None, input=None)) == 1

    def test_bad_bbox(self) -> None:
        assert cmd_tiles(argparse.Namespace(zoom=5, bbox="north", input=None)) == 1

    def test_prints_geojson(self) -> None:
        points = [make_point(1, -6.2, 106.8), make_point(2, -6.21, 106.81)]
        with (
            patch("observation_atlas.cli.load_markers", return_value=points),
            patch("sys.stdout", new=StringIO()) as mock_stdout,
        ):
            assert cmd_tiles(argparse.Namespace(zoom=0, bbox="-7,106,-6,107", input=None)) == 0
            output = json.loads(mock_stdout.getvalue())
        assert output["properties"]["resolution"] == "extremely_large"
        assert sum(f["properties"]["count"] for f in output["features"]) == 2

    def test_reads_input_file(self, tmp_path: Path) -> None:
        path = tmp_path / "markers.json"
        path.write_text(
            json.dumps(
                [
                    {"id": 1, "source": "burungnesia", "latitude": -6.2, "longitude": 106.8},
                    {"id": 2, "source": "fobi", "latitude": 40.0, "longitude": 20.0},
                ]
            )
        )
        with (
            patch("observation_atlas.cli.load_markers") as mock_load,
            patch("sys.stdout", new=StringIO()) as mock_stdout,
        ):
            assert cmd_tiles(argparse.Namespace(zoom=0, bbox=None, input=path)) == 0
            output = json.loads(mock_stdout.getvalue())
        mock_load.assert_not_called()
        assert len(output["features"]) == 2

    def test_missing_input_file(self, tmp_path: Path) -> None:
        args = argparse.Namespace(zoom=0, bbox=None, input=tmp_path / "missing.json")
        assert cmd_tiles(args) == 1


class TestCmdFetch:
    def test_prints_page(self) -> None:
        page = MergedPage(
            items=[make_observation(1, Source.FOBI, observed_at="2026-01-01T00:00:00+00:00")],
            cursors=[],
            has_more=False,
            total_count=1,
            failed_sources=[Source.KUPUNESIA],
        )
        with (
            patch("observation_atlas.cli.AtlasEngine.fetch_merged_page", new=AsyncMock(return_value=page)),
            patch("sys.stdout", new=StringIO()) as mock_stdout,
            patch("sys.stderr", new=StringIO()) as mock_stderr,
        ):
            assert cmd_fetch(argparse.Namespace(sources="fobi", pages=3, page_size=None)) == 0
            output = mock_stdout.getvalue()
        assert "fobi:1" in output
        assert "1 of 1 observations" in output
        assert "kupunesia" in mock_stderr.getvalue()


class TestCmdPolygon:
    def test_invalid_shape_args(self) -> None:
        args = argparse.Namespace(circle="1,2", boundary=None, sources="")
        assert cmd_polygon(args) == 1

    def test_local_stats(self) -> None:
        points = [make_point(1, 0.5, 0.5, Source.FOBI), make_point(2, 9, 9, Source.FOBI)]
        args = argparse.Namespace(circle=None, boundary="0,0|1,0|1,1|0,1", sources="fobi")
        with (
            patch("observation_atlas.cli.load_markers", return_value=points),
            patch(
                "observation_atlas.polygon.fetch_polygon_stats",
                side_effect=SourceUnavailable("p", "u"),
            ),
            patch(
                "observation_atlas.polygon.fetch_grids_in_polygon",
                side_effect=SourceUnavailable("g", "u"),
            ),
            patch("sys.stdout", new=StringIO()) as mock_stdout,
        ):
            assert cmd_polygon(args) == 0
            output = mock_stdout.getvalue()
        assert '"observations": 1' in output
        assert "1 tiles" in output


class TestMain:
    """Tests for main function."""

    def test_no_command_shows_help(self) -> None:
        with patch("sys.argv", ["observation-atlas"]):
            assert main() == 0

    @pytest.mark.parametrize("command", ["info", "refresh", "tiles", "fetch"])
    def test_dispatches(self, command: str) -> None:
        with (
            patch("sys.argv", ["observation-atlas", command]),
            patch(f"observation_atlas.cli.cmd_{command}", return_value=0) as mock_cmd,
            patch("observation_atlas.cli.configure_logging"),
        ):
            assert main() == 0
            mock_cmd.assert_called_once()

    def test_debug_configures_logging(self) -> None:
        with (
            patch("sys.argv", ["observation-atlas", "--debug", "info"]),
            patch("observation_atlas.cli.cmd_info", return_value=0),
            patch("observation_atlas.cli.configure_logging") as mock_logging,
        ):
            main()
        mock_logging.assert_called_once_with("DEBUG")

    def test_unknown_command_shows_help(self) -> None:
        with (
            patch("sys.argv", ["observation-atlas", "info"]),
            patch("observation_atlas.cli.create_parser") as mock_parser,
            patch("observation_atlas.cli.configure_logging"),
        ):
            mock_parser.return_value.parse_args.return_value = argparse.Namespace(command="unknown")
            assert main() == 1
