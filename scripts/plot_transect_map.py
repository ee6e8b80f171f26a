"""
plot_transect_map.py

This script loads survey waypoints from a GPX file, assigns each waypoint to a transect from its
"T<transect>.<plot>" label and renders a static map image of the waypoints styled by transect.

Features:
- Parses GPX files to extract waypoints (name, position, description, time).
- Classifies waypoints into Transect 1/2/3 from their name prefix; anything else is unassigned.
- Frames the map on the waypoints' bounding box, expanded by a signed margin.
- Draws an OpenStreetMap (or other contextily provider) basemap, a legend, a scale bar and a north arrow.
- Exports the map as a raster image at a given width, height, unit and DPI.
- Optionally writes an interactive HTML map and a CSV table of the classified waypoints.

Usage:
    python plot_transect_map.py INPUT.gpx [--output OUTPUT.png] [options]

Options:
    --margin FLOAT           Bounding box margin; >0 grows each axis by that fraction of its span,
                             <0 pads both axes by that fraction of the shortest span (default: -0.2)
    --width FLOAT            Image width in --units (default: 16)
    --height FLOAT           Image height in --units (default: 12)
    --units {in,cm,mm,px}    Units for width and height (default: cm)
    --dpi INT                Image resolution in dots per inch (default: 300)
    --basemap NAME           contextily provider name (default: OpenStreetMap.Mapnik)
    --no-basemap             Render without basemap tiles (no network access)
    --title TEXT             Map title
    --label-points           Label each waypoint with its name
    --strict-transects       Match the full transect number, so "T10.1" is not put on Transect 1
    --html-output PATH       Also write an interactive HTML map
    --csv-output PATH        Also write the classified waypoints as CSV
    --verbose                Enable debug logging
"""

import argparse
import html
import logging
import math
import os
import sys

import contextily as ctx
import folium
import geopandas as gpd
from matplotlib.font_manager import FontProperties
import matplotlib.pyplot as plt
import pandas as pd
from geopy.distance import geodesic
from mpl_toolkits.axes_grid1.anchored_artists import AnchoredSizeBar
from shapely.geometry import box

from transect_waypoints import (
    TRANSECT_RULES,
    UNASSIGNED_LABEL,
    assign_transects,
    calculate_bounding_box,
    expand_bounding_box,
    group_waypoints,
    summarise_groups,
    waypoints_to_geodataframe,
    extract_waypoints,
)

# Set up logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

WEB_MERCATOR = "EPSG:3857"
DEFAULT_BASEMAP = "OpenStreetMap.Mapnik"
DEFAULT_MARGIN = -0.2
DEFAULT_WIDTH = 16
DEFAULT_HEIGHT = 12
DEFAULT_UNITS = "cm"
DEFAULT_DPI = 300

UNIT_TO_INCHES = {
    "in": 1.0,
    "cm": 1 / 2.54,
    "mm": 1 / 25.4,
}
SUPPORTED_UNITS = sorted(UNIT_TO_INCHES) + ["px"]

GROUP_STYLES = {
    "Transect 1": {"color": "#e6194b", "marker": "o"},  # red
    "Transect 2": {"color": "#3cb44b", "marker": "s"},  # green
    "Transect 3": {"color": "#0082c8", "marker": "^"},  # blue
    UNASSIGNED_LABEL: {"color": "#808080", "marker": "x"},
}


def parse_arguments(argv=None):
    """
    Parse command-line arguments.

    Returns:
        argparse.Namespace: Parsed arguments with output path determined.
    """
    argv = sys.argv[1:] if argv is None else argv
    if not argv:
        print(__doc__)
        sys.exit(0)

    parser = argparse.ArgumentParser(description="Render GPX survey waypoints as a map grouped by transect")
    parser.add_argument('input', help='Path to input GPX file')
    parser.add_argument(
        '--output',
        help='Path to save the map image. Defaults to appending _map.png to the input file name.',
        default=None
    )
    parser.add_argument('--margin', type=float, default=DEFAULT_MARGIN,
                        help=f'Signed bounding box margin (default: {DEFAULT_MARGIN})')
    parser.add_argument('--width', type=float, default=DEFAULT_WIDTH, help=f'Image width (default: {DEFAULT_WIDTH})')
    parser.add_argument('--height', type=float, default=DEFAULT_HEIGHT, help=f'Image height (default: {DEFAULT_HEIGHT})')
    parser.add_argument('--units', default=DEFAULT_UNITS, help=f'Units for width and height: {", ".join(SUPPORTED_UNITS)} (default: {DEFAULT_UNITS})')
    parser.add_argument('--dpi', type=int, default=DEFAULT_DPI, help=f'Image resolution in dots per inch (default: {DEFAULT_DPI})')
    parser.add_argument('--basemap', default=DEFAULT_BASEMAP, help=f'contextily basemap provider (default: {DEFAULT_BASEMAP})')
    parser.add_argument('--no-basemap', action='store_true', help='Render without basemap tiles')
    parser.add_argument('--title', default=None, help='Map title')
    parser.add_argument('--label-points', action='store_true', help='Label each waypoint with its name')
    parser.add_argument('--strict-transects', action='store_true', help='Match the full transect number instead of the name prefix')
    parser.add_argument('--html-output', default=None, help='Path to save an interactive HTML map')
    parser.add_argument('--csv-output', default=None, help='Path to save the classified waypoints as CSV')
    parser.add_argument('--verbose', action='store_true', help='Enable debug logging')

    args = parser.parse_args(argv)

    # Determine the output path if not provided
    if args.output is None:
        args.output = os.path.splitext(args.input)[0] + '_map.png'

    return args


def validate_arguments(args):
    """
    Validate all input files and arguments.

    Args:
        args (argparse.Namespace): Parsed command-line arguments.

    Raises:
        SystemExit: If any validation fails.
    """
    if not os.path.exists(args.input):
        print(f"❌ Error: Input GPX file not found: {args.input}")
        sys.exit(1)

    if not os.path.isfile(args.input):
        print(f"❌ Error: Input path is not a file: {args.input}")
        sys.exit(1)

    if not args.input.lower().endswith('.gpx'):
        print(f"❌ Error: Input file must be a GPX file: {args.input}")
        sys.exit(1)

    for path in (args.output, args.html_output, args.csv_output):
        if not path:
            continue
        output_dir = os.path.dirname(path)
        if output_dir and not os.path.exists(output_dir):
            print(f"❌ Error: Output directory does not exist: {output_dir}")
            sys.exit(1)
        if os.path.exists(path):
            print(f"⚠️  Warning: Output file already exists and will be overwritten: {path}")

    if args.width <= 0 or args.height <= 0:
        print(f"❌ Error: Width and height must be positive: {args.width} x {args.height}")
        sys.exit(1)

    if args.dpi <= 0:
        print(f"❌ Error: DPI must be positive: {args.dpi}")
        sys.exit(1)

    if args.units not in SUPPORTED_UNITS:
        print(f"❌ Error: Unknown units '{args.units}', expected one of: {', '.join(SUPPORTED_UNITS)}")
        sys.exit(1)


def figure_size_inches(width, height, units, dpi):
    """
    Convert a target image size into a matplotlib figure size.

    Args:
        width, height (float): Image size in the given units.
        units (str): One of "in", "cm", "mm" or "px".
        dpi (int): Resolution; only used to convert pixels.

    Returns:
        tuple: (width, height) in inches.
    """
    if units == "px":
        return width / dpi, height / dpi
    if units not in UNIT_TO_INCHES:
        raise ValueError(f"Unknown units: {units}")
    factor = UNIT_TO_INCHES[units]
    return width * factor, height * factor


def project_bounding_box(bbox, crs=WEB_MERCATOR):
    """Project a WGS84 bounding box, returning (xmin, ymin, xmax, ymax) in the target CRS."""
    projected = gpd.GeoSeries([box(*bbox)], crs="EPSG:4326").to_crs(crs)
    return tuple(float(v) for v in projected.total_bounds)


def fit_bounds_to_aspect(bounds, aspect):
    """
    Grow the shorter side of the bounds so that width / height equals aspect.

    The original bounds stay centred inside the result.
    """
    xmin, ymin, xmax, ymax = bounds
    width, height = xmax - xmin, ymax - ymin
    if width <= 0 and height <= 0:
        raise ValueError("Cannot frame a map on a zero-area bounding box; use a non-zero margin")

    if height == 0 or width / height > aspect:
        extra = (width / aspect - height) / 2
        return xmin, ymin - extra, xmax, ymax + extra

    extra = (height * aspect - width) / 2
    return xmin - extra, ymin, xmax + extra, ymax


def nice_scale_length(max_metres):
    """Largest 1, 2 or 5 x 10^n metre length not exceeding max_metres."""
    if max_metres <= 0:
        raise ValueError(f"Scale length limit must be positive: {max_metres}")
    magnitude = 10 ** math.floor(math.log10(max_metres))
    for step in (5, 2, 1):
        if step * magnitude <= max_metres:
            return step * magnitude
    return magnitude


def format_distance(metres):
    if metres >= 1000:
        km = metres / 1000
        return f"{km:g} km"
    return f"{metres:g} m"


def resolve_basemap(name):
    """Look up a contextily (xyzservices) provider by name, e.g. "OpenStreetMap.Mapnik"."""
    return ctx.providers.query_name(name)


def add_scale_bar(ax, bbox, bounds):
    """
    Draw a scale bar of a round ground distance in the lower left corner.

    Web Mercator units are not metres on the ground, so the bar length is derived from the geodesic
    width of the map at its centre latitude.
    """
    centre_lat = (bbox.ymin + bbox.ymax) / 2
    ground_width = geodesic((centre_lat, bbox.xmin), (centre_lat, bbox.xmax)).m
    projected_width = bounds[2] - bounds[0]
    if ground_width <= 0 or projected_width <= 0:
        logger.warning("Map has no width; skipping scale bar")
        return None

    length_m = nice_scale_length(ground_width / 4)
    length_units = length_m * projected_width / ground_width
    scale_bar = AnchoredSizeBar(
        ax.transData,
        length_units,
        format_distance(length_m),
        'lower left',
        pad=0.5,
        sep=4,
        frameon=True,
        size_vertical=projected_width / 300,
        fontproperties=FontProperties(size=8),
    )
    ax.add_artist(scale_bar)
    return scale_bar


def add_north_arrow(ax, x=0.06, y=0.94, length=0.08):
    ax.annotate(
        'N',
        xy=(x, y),
        xytext=(x, y - length),
        xycoords='axes fraction',
        arrowprops=dict(facecolor='black', width=4, headwidth=10),
        ha='center',
        va='center',
        fontsize=12,
        fontweight='bold',
    )


def plot_transect_map(gdf, bbox, basemap=DEFAULT_BASEMAP, title=None, label_points=False,
                      width=DEFAULT_WIDTH, height=DEFAULT_HEIGHT, units=DEFAULT_UNITS, dpi=DEFAULT_DPI):
    """
    Plot classified waypoints over a basemap.

    Args:
        gdf (geopandas.GeoDataFrame): Waypoints with a "group" column, in any CRS.
        bbox (BoundingBox): Map extent in WGS84 degrees (already expanded).
        basemap (str): contextily provider name, or None for no basemap.
        title (str): Optional map title.
        label_points (bool): Annotate each point with its name.
        width, height, units, dpi: Output image size, see figure_size_inches.

    Returns:
        matplotlib.figure.Figure: The rendered figure.
    """
    print("Plotting transect map")
    figsize = figure_size_inches(width, height, units, dpi)
    fig, ax = plt.subplots(figsize=figsize, dpi=dpi)
    fig.subplots_adjust(left=0, right=1, bottom=0, top=1)

    projected = gdf.to_crs(WEB_MERCATOR)
    bounds = fit_bounds_to_aspect(project_bounding_box(bbox), figsize[0] / figsize[1])

    legend_order = [group for _, group in TRANSECT_RULES] + [UNASSIGNED_LABEL]
    for group in legend_order:
        members = projected[projected["group"] == group]
        if members.empty:
            continue
        style = GROUP_STYLES[group]
        members.plot(
            ax=ax,
            color=style["color"],
            marker=style["marker"],
            markersize=40,
            edgecolor="black" if style["marker"] != "x" else None,
            linewidth=0.5 if style["marker"] != "x" else 1.5,
            label=f"{group} ({len(members)})",
            zorder=3,
        )
        logger.debug(f"Plotted {len(members)} waypoints for {group}")

    if label_points:
        for name, point in zip(projected["name"], projected.geometry):
            if name:
                ax.annotate(name, xy=(point.x, point.y), xytext=(3, 3), textcoords='offset points',
                            fontsize=6, zorder=4)

    ax.set_xlim(bounds[0], bounds[2])
    ax.set_ylim(bounds[1], bounds[3])
    ax.set_aspect('equal')

    if basemap:
        print(f"  ↳ Adding basemap: {basemap}")
        ctx.add_basemap(ax, source=resolve_basemap(basemap), crs=WEB_MERCATOR, zorder=1)
        # add_basemap can nudge the limits to the tile grid
        ax.set_xlim(bounds[0], bounds[2])
        ax.set_ylim(bounds[1], bounds[3])

    ax.legend(title="Transect", loc='upper right', fontsize=8, title_fontsize=9, framealpha=0.9)
    add_scale_bar(ax, bbox, bounds)
    add_north_arrow(ax)
    if title:
        ax.set_title(title, y=0.95, fontsize=12, fontweight='bold')
    ax.set_axis_off()
    return fig


def export_map(fig, output_path, dpi=DEFAULT_DPI):
    """
    Save the figure as a raster image. The format follows the file extension.
    """
    print(f"Exporting map: {output_path}")
    fig.savefig(output_path, dpi=dpi)
    width, height = fig.get_size_inches() * dpi
    print(f"  ↳ Map written ({round(width)} x {round(height)} px at {dpi} dpi)")


def export_waypoints_csv(waypoints, output_path):
    """Write the classified waypoints as a CSV table."""
    df = pd.DataFrame({
        "name": [w.name for w in waypoints],
        "longitude": [w.longitude for w in waypoints],
        "latitude": [w.latitude for w in waypoints],
        "description": [w.description for w in waypoints],
        "time": [w.time.isoformat() if w.time else None for w in waypoints],
        "group": [w.group_label for w in waypoints],
    })
    df.to_csv(output_path, index=False)
    print(f"✅ Waypoint table written: {output_path} ({len(df)} rows)")
    return df


def export_interactive_map(waypoints, bbox, output_path):
    """
    Write an interactive folium map with one toggleable layer per transect.
    """
    centre = [(bbox.ymin + bbox.ymax) / 2, (bbox.xmin + bbox.xmax) / 2]
    m = folium.Map(location=centre, tiles='OpenStreetMap')
    m.fit_bounds([[bbox.ymin, bbox.xmin], [bbox.ymax, bbox.xmax]])

    for group, members in group_waypoints(waypoints).items():
        label = group or UNASSIGNED_LABEL
        color = GROUP_STYLES[label]["color"]
        layer = folium.FeatureGroup(name=f"{label} ({len(members)})")
        for wpt in members:
            popup = f"<b>{html.escape(wpt.name or '')}</b>"
            if wpt.description:
                popup += f"<br>{html.escape(wpt.description)}"
            if wpt.time:
                popup += f"<br>{wpt.time.isoformat()}"
            folium.CircleMarker(
                [wpt.latitude, wpt.longitude],
                radius=6,
                color=color,
                fill=True,
                fill_color=color,
                fill_opacity=0.8,
                popup=popup,
                tooltip=wpt.name,
            ).add_to(layer)
        layer.add_to(m)

    folium.LayerControl().add_to(m)
    m.save(output_path)
    print(f"✅ Interactive map written: {output_path}")
    return m


def main(argv=None):
    """
    Main entry point of the script.
    """
    args = parse_arguments(argv)
    validate_arguments(args)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    waypoints = extract_waypoints(args.input)
    if not waypoints:
        print(f"❌ Error: No waypoints found in {args.input}")
        sys.exit(1)

    assign_transects(waypoints, strict=args.strict_transects)
    summary = summarise_groups(waypoints)
    for label, count in summary.items():
        print(f"  ↳ {label}: {count} waypoint(s)")

    if all(w.group is None for w in waypoints):
        print("❌ Error: No waypoint names match the transect pattern T<transect>.<plot>")
        sys.exit(1)

    bbox = calculate_bounding_box(waypoints)
    map_bbox = expand_bounding_box(bbox, args.margin)
    print(f"  ↳ Bounding box (lon, lat): {tuple(round(v, 5) for v in map_bbox)}")

    gdf = waypoints_to_geodataframe(waypoints)
    fig = plot_transect_map(
        gdf,
        map_bbox,
        basemap=None if args.no_basemap else args.basemap,
        title=args.title,
        label_points=args.label_points,
        width=args.width,
        height=args.height,
        units=args.units,
        dpi=args.dpi,
    )
    export_map(fig, args.output, args.dpi)
    plt.close(fig)

    if args.csv_output:
        export_waypoints_csv(waypoints, args.csv_output)
    if args.html_output:
        export_interactive_map(waypoints, map_bbox, args.html_output)


if __name__ == '__main__':
    main()
