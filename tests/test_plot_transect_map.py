import csv

import matplotlib
matplotlib.use("Agg")

import gpxpy
import gpxpy.gpx
import matplotlib.pyplot as plt
import pytest
from unittest.mock import patch
from mpl_toolkits.axes_grid1.anchored_artists import AnchoredSizeBar

import plot_transect_map as module
from plot_transect_map import (
    export_interactive_map,
    export_map,
    export_waypoints_csv,
    figure_size_inches,
    fit_bounds_to_aspect,
    format_distance,
    main,
    nice_scale_length,
    parse_arguments,
    plot_transect_map,
    validate_arguments,
)
from transect_waypoints import (
    Waypoint,
    assign_transects,
    calculate_bounding_box,
    expand_bounding_box,
    waypoints_to_geodataframe,
)


@pytest.fixture
def survey_waypoints():
    return assign_transects([
        Waypoint("T1.1", 129.99452, 33.44370, "Shore quadrat"),
        Waypoint("T1.2", 129.99800, 33.44420),
        Waypoint("T2.1", 130.01000, 33.44500),
        Waypoint("T3.1", 130.02000, 33.44700),
        Waypoint("T3.2", 130.02643, 33.44757),
        Waypoint("Waypoint1", 130.00500, 33.44600),
    ])


@pytest.fixture
def survey_gpx(tmp_path, survey_waypoints):
    gpx = gpxpy.gpx.GPX()
    for wpt in survey_waypoints:
        gpx.waypoints.append(gpxpy.gpx.GPXWaypoint(latitude=wpt.latitude, longitude=wpt.longitude, name=wpt.name))
    gpx_file = tmp_path / "survey.gpx"
    gpx_file.write_text(gpx.to_xml())
    return gpx_file


class TestFigureSize:

    def test_inches(self):
        assert figure_size_inches(6, 4, "in", 300) == (6, 4)

    def test_centimetres(self):
        width, height = figure_size_inches(25.4, 12.7, "cm", 300)
        assert width == pytest.approx(10)
        assert height == pytest.approx(5)

    def test_millimetres(self):
        width, height = figure_size_inches(254, 127, "mm", 300)
        assert (width, height) == pytest.approx((10, 5))

    def test_pixels_depend_on_dpi(self):
        assert figure_size_inches(400, 300, "px", 100) == (4, 3)

    def test_unknown_units(self):
        with pytest.raises(ValueError):
            figure_size_inches(1, 1, "furlong", 300)


class TestMapFraming:

    def test_fit_wide_bounds_to_square(self):
        assert fit_bounds_to_aspect((0, 0, 4, 2), 1) == (0, -1, 4, 3)

    def test_fit_tall_bounds_to_wide(self):
        assert fit_bounds_to_aspect((0, 0, 2, 2), 2) == (-1, 0, 3, 2)

    def test_fit_zero_height(self):
        assert fit_bounds_to_aspect((0, 5, 4, 5), 2) == (0, 4, 4, 6)

    def test_fit_zero_area(self):
        with pytest.raises(ValueError):
            fit_bounds_to_aspect((1, 1, 1, 1), 1.5)

    @pytest.mark.parametrize("limit, expected", [
        (1, 1),
        (7.5, 5),
        (250, 200),
        (999, 500),
        (1000, 1000),
        (1890, 1000),
        (0.3, 0.2),
        (9.9999999, 5),
        (99.99999999, 50),
    ])
    def test_nice_scale_length(self, limit, expected):
        assert nice_scale_length(limit) == pytest.approx(expected)
        assert nice_scale_length(limit) <= limit

    def test_format_distance(self):
        assert format_distance(500) == "500 m"
        assert format_distance(2000) == "2 km"
        assert format_distance(2500) == "2.5 km"


class TestArguments:

    def test_no_arguments_prints_usage(self, capsys):
        with pytest.raises(SystemExit) as exc:
            parse_arguments([])
        assert exc.value.code == 0
        assert "Usage:" in capsys.readouterr().out

    def test_defaults(self):
        args = parse_arguments(["data/survey.gpx"])

        assert args.output == "data/survey_map.png"
        assert args.margin == -0.2
        assert (args.width, args.height, args.units, args.dpi) == (16, 12, "cm", 300)
        assert args.basemap == "OpenStreetMap.Mapnik"
        assert not args.no_basemap
        assert not args.strict_transects

    def test_valid_arguments(self, survey_gpx, tmp_path):
        args = parse_arguments([str(survey_gpx), "--output", str(tmp_path / "map.png")])
        validate_arguments(args)

    @pytest.mark.parametrize("extra", [
        ["--units", "furlong"],
        ["--dpi", "0"],
        ["--width", "-1"],
        ["--output", "missing_dir/map.png"],
    ])
    def test_invalid_arguments(self, survey_gpx, extra):
        args = parse_arguments([str(survey_gpx)] + extra)
        with pytest.raises(SystemExit):
            validate_arguments(args)

    def test_existing_output_warns(self, survey_gpx, tmp_path, capsys):
        output = tmp_path / "map.png"
        output.write_bytes(b"old map")
        args = parse_arguments([str(survey_gpx), "--output", str(output)])

        validate_arguments(args)

        out = capsys.readouterr().out
        assert "⚠️" in out
        assert str(output) in out

    def test_missing_input(self, tmp_path):
        args = parse_arguments([str(tmp_path / "nope.gpx")])
        with pytest.raises(SystemExit):
            validate_arguments(args)

    def test_input_must_be_gpx(self, tmp_path):
        not_gpx = tmp_path / "survey.txt"
        not_gpx.write_text("hello")
        args = parse_arguments([str(not_gpx)])
        with pytest.raises(SystemExit):
            validate_arguments(args)


class TestRendering:

    def test_plot_transect_map_without_basemap(self, survey_waypoints):
        bbox = expand_bounding_box(calculate_bounding_box(survey_waypoints), -0.2)
        gdf = waypoints_to_geodataframe(survey_waypoints)

        fig = plot_transect_map(gdf, bbox, basemap=None, title="Survey", label_points=True,
                                width=400, height=300, units="px", dpi=100)
        ax = fig.axes[0]
        labels = [text.get_text() for text in ax.get_legend().get_texts()]

        assert labels == ["Transect 1 (2)", "Transect 2 (1)", "Transect 3 (2)", "Unassigned (1)"]
        assert ax.get_legend().get_title().get_text() == "Transect"
        assert any(text.get_text() == "T3.2" for text in ax.texts)
        xmin, xmax = ax.get_xlim()
        ymin, ymax = ax.get_ylim()
        assert (xmax - xmin) / (ymax - ymin) == pytest.approx(4 / 3)
        plt.close(fig)

    def test_plot_transect_map_draws_scale_bar_and_north_arrow(self, survey_waypoints):
        bbox = expand_bounding_box(calculate_bounding_box(survey_waypoints), -0.2)
        gdf = waypoints_to_geodataframe(survey_waypoints)

        fig = plot_transect_map(gdf, bbox, basemap=None, width=400, height=300, units="px", dpi=100)
        ax = fig.axes[0]

        assert any(isinstance(artist, AnchoredSizeBar) for artist in ax.artists)
        assert any(text.get_text() == "N" for text in ax.texts)
        plt.close(fig)

    def test_plot_transect_map_adds_basemap(self, survey_waypoints):
        bbox = expand_bounding_box(calculate_bounding_box(survey_waypoints), -0.2)
        gdf = waypoints_to_geodataframe(survey_waypoints)

        with patch.object(module.ctx, "add_basemap") as add_basemap:
            fig = plot_transect_map(gdf, bbox, basemap="OpenStreetMap.Mapnik", width=4, height=3, units="in", dpi=50)

        add_basemap.assert_called_once()
        assert add_basemap.call_args.kwargs["crs"] == "EPSG:3857"
        plt.close(fig)

    def test_single_waypoint_map(self):
        waypoints = assign_transects([Waypoint("T2.1", 130.0, 33.4)])
        bbox = expand_bounding_box(calculate_bounding_box(waypoints), -0.2)

        fig = plot_transect_map(waypoints_to_geodataframe(waypoints), bbox, basemap=None,
                                width=200, height=200, units="px", dpi=100)
        assert [t.get_text() for t in fig.axes[0].get_legend().get_texts()] == ["Transect 2 (1)"]
        plt.close(fig)

    def test_export_map_pixel_size(self, tmp_path, survey_waypoints):
        bbox = expand_bounding_box(calculate_bounding_box(survey_waypoints), -0.2)
        gdf = waypoints_to_geodataframe(survey_waypoints)
        fig = plot_transect_map(gdf, bbox, basemap=None, width=4, height=3, units="in", dpi=100)

        output = tmp_path / "map.png"
        export_map(fig, output, dpi=100)
        plt.close(fig)

        image = plt.imread(output)
        assert image.shape[:2] == (300, 400)


class TestSupplementaryOutputs:

    def test_export_waypoints_csv(self, tmp_path, survey_waypoints):
        output = tmp_path / "waypoints.csv"
        export_waypoints_csv(survey_waypoints, output)

        with open(output, newline='') as f:
            rows = list(csv.DictReader(f))

        assert [r["group"] for r in rows] == [
            "Transect 1", "Transect 1", "Transect 2", "Transect 3", "Transect 3", "Unassigned",
        ]
        assert rows[0]["name"] == "T1.1"
        assert float(rows[0]["longitude"]) == 129.99452
        assert rows[0]["description"] == "Shore quadrat"

    def test_export_interactive_map(self, tmp_path, survey_waypoints):
        output = tmp_path / "map.html"
        bbox = calculate_bounding_box(survey_waypoints)
        export_interactive_map(survey_waypoints, bbox, output)

        html = output.read_text()
        assert "Transect 1 (2)" in html
        assert "Unassigned (1)" in html
        assert "Shore quadrat" in html

    def test_interactive_map_escapes_popup_text(self, tmp_path):
        waypoints = assign_transects([Waypoint("T1.1", 130.0, 33.4, "Rocks <north> & sand")])
        output = tmp_path / "map.html"
        export_interactive_map(waypoints, calculate_bounding_box(waypoints), output)

        html = output.read_text()
        assert "Rocks &lt;north&gt; &amp; sand" in html
        assert "<north>" not in html


class TestMain:

    def test_main_end_to_end(self, tmp_path, survey_gpx):
        output = tmp_path / "map.png"
        csv_output = tmp_path / "waypoints.csv"
        html_output = tmp_path / "map.html"

        main([
            str(survey_gpx),
            "--output", str(output),
            "--no-basemap",
            "--width", "400", "--height", "300", "--units", "px", "--dpi", "100",
            "--csv-output", str(csv_output),
            "--html-output", str(html_output),
        ])

        assert plt.imread(output).shape[:2] == (300, 400)
        assert csv_output.exists()
        assert html_output.exists()

    def test_main_fails_without_transect_waypoints(self, tmp_path, capsys):
        gpx = gpxpy.gpx.GPX()
        gpx.waypoints.append(gpxpy.gpx.GPXWaypoint(latitude=33.4, longitude=130.0, name="Waypoint1"))
        gpx_file = tmp_path / "unlabelled.gpx"
        gpx_file.write_text(gpx.to_xml())

        with pytest.raises(SystemExit) as exc:
            main([str(gpx_file), "--no-basemap"])

        assert exc.value.code == 1
        assert "No waypoint names match" in capsys.readouterr().out
        assert not (tmp_path / "unlabelled_map.png").exists()

    def test_main_fails_on_empty_gpx(self, tmp_path):
        gpx_file = tmp_path / "empty.gpx"
        gpx_file.write_text(gpxpy.gpx.GPX().to_xml())

        with pytest.raises(SystemExit):
            main([str(gpx_file), "--no-basemap"])
