"""
transect_waypoints.py

Waypoint loading, transect classification and bounding box helpers used by plot_transect_map.py.

Waypoints recorded in the field are labelled "T<transect>.<plot>" (e.g. "T3.2" is plot 2 on transect 3).
The label prefix is used to assign each waypoint to a transect group for styling on the map.
"""

from collections import namedtuple
from dataclasses import dataclass
from datetime import datetime
import logging
import math
import re
import sys
from typing import Dict, List, Optional

import geopandas as gpd
import gpxpy
import gpxpy.gpx
from shapely.geometry import Point

logger = logging.getLogger(__name__)

# Ordered: first matching prefix wins
TRANSECT_RULES = [
    ("T1.", "Transect 1"),
    ("T2.", "Transect 2"),
    ("T3.", "Transect 3"),
]
TRANSECT_NUMBER_PATTERN = re.compile(r"^T(\d+)\.")
UNASSIGNED_LABEL = "Unassigned"

# Fallback span in degrees (~100 m) for boxes with zero width or height
MIN_SPAN_DEGREES = 0.001

BoundingBox = namedtuple("BoundingBox", ["xmin", "ymin", "xmax", "ymax"])


@dataclass
class Waypoint:
    """A single recorded survey point."""
    name: Optional[str]
    longitude: float
    latitude: float
    description: Optional[str] = None
    time: Optional[datetime] = None
    group: Optional[str] = None

    @property
    def group_label(self) -> str:
        return self.group or UNASSIGNED_LABEL


def extract_waypoints(input: str) -> List[Waypoint]:
    """
    Extract waypoints from a GPX file.

    Args:
        input (str): Path to the GPX file.

    Returns:
        list: List of Waypoint objects in file order, with no group assigned yet.

    Raises:
        SystemExit: If the file cannot be read, is not valid GPX or has waypoints without coordinates.
    """
    try:
        with open(input, 'r', encoding='utf-8') as gpx_file:
            gpx = gpxpy.parse(gpx_file)
    except FileNotFoundError:
        print(f"❌ Error: Cannot read GPX file: {input}")
        sys.exit(1)
    except gpxpy.gpx.GPXException as e:
        print(f"❌ Error: Invalid GPX file format: {e}")
        sys.exit(1)
    except Exception as e:
        print(f"❌ Error: Unexpected error reading GPX file: {e}")
        sys.exit(1)

    waypoints = []
    for wpt in gpx.waypoints:
        if wpt.latitude is None or wpt.longitude is None:
            print(f"❌ Waypoint '{wpt.name}' is missing latitude or longitude.")
            sys.exit(1)
        waypoints.append(Waypoint(
            name=wpt.name,
            longitude=wpt.longitude,
            latitude=wpt.latitude,
            description=wpt.description,
            time=wpt.time,
        ))

    print(f"✅ Input GPX file validated: {input} ({len(waypoints)} waypoints found)")
    return waypoints


def classify_transect(name: Optional[str], strict: bool = False) -> Optional[str]:
    """
    Assign a transect group from a waypoint label.

    The default rule is a plain prefix check, so "T10.1" also matches "T1.". Such labels are
    logged as ambiguous. With strict=True the full transect number must match instead.

    Args:
        name (str): Waypoint label, e.g. "T3.2".
        strict (bool): Match on the whole transect number rather than the prefix.

    Returns:
        str or None: Group label such as "Transect 3", or None when unassigned.
    """
    if not name:
        return None

    match = TRANSECT_NUMBER_PATTERN.match(name)
    number = match.group(1) if match else None

    for prefix, group in TRANSECT_RULES:
        rule_number = prefix[1:-1]
        if strict:
            if number == rule_number:
                return group
            continue
        if name.startswith(prefix):
            if number != rule_number:
                logger.warning(f"Ambiguous label '{name}' matched prefix '{prefix}' (transect {number}), "
                               f"assigning to {group}. Use --strict-transects to match exactly.")
            return group

    return None


def assign_transects(waypoints: List[Waypoint], strict: bool = False) -> List[Waypoint]:
    """Set the derived transect group on every waypoint."""
    for wpt in waypoints:
        wpt.group = classify_transect(wpt.name, strict=strict)
    return waypoints


def group_waypoints(waypoints: List[Waypoint]) -> Dict[Optional[str], List[Waypoint]]:
    """
    Group waypoints by transect, in rule order with unassigned last.

    Args:
        waypoints (list): Classified waypoints.

    Returns:
        dict: Mapping of group (None for unassigned) to waypoints. Empty groups are left out.
    """
    order = [group for _, group in TRANSECT_RULES] + [None]
    grouped = {group: [] for group in order}
    for wpt in waypoints:
        grouped.setdefault(wpt.group, []).append(wpt)

    return {group: members for group, members in grouped.items() if members}


def summarise_groups(waypoints: List[Waypoint]) -> Dict[str, int]:
    return {
        (group or UNASSIGNED_LABEL): len(members)
        for group, members in group_waypoints(waypoints).items()
    }


def calculate_bounding_box(waypoints: List[Waypoint]) -> BoundingBox:
    """
    Calculate the minimal bounding box enclosing the waypoints.

    Raises:
        ValueError: If no waypoints are given.
    """
    if not waypoints:
        raise ValueError("No waypoints provided")

    lons = [w.longitude for w in waypoints]
    lats = [w.latitude for w in waypoints]
    bbox = BoundingBox(min(lons), min(lats), max(lons), max(lats))
    logger.debug(f"Bounding box (lon, lat): {bbox}")
    return bbox


def expand_bounding_box(bbox: BoundingBox, margin: float, inward: bool = False,
                        min_span: float = MIN_SPAN_DEGREES) -> BoundingBox:
    """
    Expand (or shrink) a bounding box symmetrically so points are not clipped at the image edges.

    A positive margin grows each axis by that fraction of its own span. A negative margin pads
    both axes by the same absolute amount, |margin| times the shortest span, which keeps long
    thin boxes from being squashed. Zero spans fall back to min_span.

    Args:
        bbox (BoundingBox): Box in degrees.
        margin (float): Signed margin factor. 0 returns the box unchanged.
        inward (bool): Subtract the pad instead. Each side stops at the centre of its axis.
        min_span (float): Span in degrees used in place of a zero width or height.

    Returns:
        BoundingBox: The adjusted box.

    Raises:
        ValueError: If margin is not a finite number.
    """
    if not math.isfinite(margin):
        raise ValueError(f"Margin must be a finite number: {margin}")
    if margin == 0:
        return bbox

    width = bbox.xmax - bbox.xmin
    height = bbox.ymax - bbox.ymin

    if margin > 0:
        pad_x = margin * (width or min_span) / 2
        pad_y = margin * (height or min_span) / 2
    else:
        spans = [span for span in (width, height) if span > 0]
        shortest = min(spans) if spans else min_span
        pad_x = pad_y = -margin * shortest / 2

    if not inward:
        return BoundingBox(bbox.xmin - pad_x, bbox.ymin - pad_y, bbox.xmax + pad_x, bbox.ymax + pad_y)

    cx = (bbox.xmin + bbox.xmax) / 2
    cy = (bbox.ymin + bbox.ymax) / 2
    return BoundingBox(
        min(bbox.xmin + pad_x, cx),
        min(bbox.ymin + pad_y, cy),
        max(bbox.xmax - pad_x, cx),
        max(bbox.ymax - pad_y, cy),
    )


def waypoints_to_geodataframe(waypoints: List[Waypoint]) -> gpd.GeoDataFrame:
    """Build a WGS84 point GeoDataFrame with one row per waypoint."""
    records = {
        "name": [w.name for w in waypoints],
        "description": [w.description for w in waypoints],
        "time": [w.time for w in waypoints],
        "group": [w.group_label for w in waypoints],
    }
    geometry = [Point(w.longitude, w.latitude) for w in waypoints]
    return gpd.GeoDataFrame(records, geometry=geometry, crs="EPSG:4326")
