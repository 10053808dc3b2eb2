"""KML import/export for tracks.

One track maps to one `Placemark` holding a `LineString` (or a
`MultiGeometry` of them). Importing a document creates one local track per
such Placemark and reports the new ids; callers decide what a count other
than one means.
"""

from __future__ import annotations

import logging
import time
import xml.etree.ElementTree as ET
from typing import List, Optional

from tracksync.store.tracks import Track, TrackPoint, TrackStore

logger = logging.getLogger(__name__)

KML_NS = "http://www.opengis.net/kml/2.2"


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _child_text(elem: ET.Element, name: str) -> str:
    for child in elem:
        if _local(child.tag) == name:
            return (child.text or "").strip()
    return ""


def _parse_coordinates(text: str) -> List[TrackPoint]:
    points: List[TrackPoint] = []
    for token in (text or "").split():
        parts = token.split(",")
        if len(parts) < 2:
            continue
        try:
            lon = float(parts[0])
            lat = float(parts[1])
            alt = float(parts[2]) if len(parts) > 2 and parts[2] else None
        except ValueError:
            continue
        points.append(TrackPoint(latitude=lat, longitude=lon, altitude=alt))
    return points


def _placemark_track(placemark: ET.Element) -> Optional[Track]:
    lines = [el for el in placemark.iter() if _local(el.tag) == "LineString"]
    if not lines:
        return None

    points: List[TrackPoint] = []
    for line in lines:
        points.extend(_parse_coordinates(_child_text(line, "coordinates")))

    category = ""
    for data in placemark.iter():
        if _local(data.tag) == "Data" and data.get("name") == "category":
            category = _child_text(data, "value")
            break

    return Track(
        name=_child_text(placemark, "name"),
        description=_child_text(placemark, "description"),
        category=category,
        points=points,
    )


def _format_coord(p: TrackPoint) -> str:
    if p.altitude is None:
        return f"{p.longitude:.6f},{p.latitude:.6f}"
    return f"{p.longitude:.6f},{p.latitude:.6f},{p.altitude:.1f}"


class KmlCodec:
    def __init__(self, store: TrackStore):
        self.store = store

    def parse(self, content: bytes) -> List[Track]:
        """Tracks found in a KML document; empty when it is not parseable."""
        try:
            root = ET.fromstring(content)
        except ET.ParseError as e:
            logger.warning("kml_parse_failed %s", e)
            return []
        if _local(root.tag) != "kml":
            logger.warning("kml_unexpected_root %s", _local(root.tag))
            return []

        tracks = []
        for placemark in root.iter():
            if _local(placemark.tag) != "Placemark":
                continue
            track = _placemark_track(placemark)
            if track is not None:
                tracks.append(track)
        return tracks

    def decode(self, content: bytes) -> List[int]:
        """Import every track in `content` into the store; returns the new ids."""
        now_ms = int(time.time() * 1000)
        ids = []
        for track in self.parse(content):
            track.modified_time = now_ms
            ids.append(self.store.insert_track(track))
        return ids

    def encode(self, track: Track) -> bytes:
        points = track.points
        if not points and track.id is not None:
            points = self.store.points(track.id)

        ET.register_namespace("", KML_NS)
        kml = ET.Element(f"{{{KML_NS}}}kml")
        doc = ET.SubElement(kml, f"{{{KML_NS}}}Document")
        ET.SubElement(doc, f"{{{KML_NS}}}name").text = track.name

        placemark = ET.SubElement(doc, f"{{{KML_NS}}}Placemark")
        ET.SubElement(placemark, f"{{{KML_NS}}}name").text = track.name
        ET.SubElement(placemark, f"{{{KML_NS}}}description").text = track.description
        if track.category:
            extended = ET.SubElement(placemark, f"{{{KML_NS}}}ExtendedData")
            data = ET.SubElement(extended, f"{{{KML_NS}}}Data", name="category")
            ET.SubElement(data, f"{{{KML_NS}}}value").text = track.category

        line = ET.SubElement(placemark, f"{{{KML_NS}}}LineString")
        ET.SubElement(line, f"{{{KML_NS}}}tessellate").text = "1"
        ET.SubElement(line, f"{{{KML_NS}}}coordinates").text = " ".join(_format_coord(p) for p in points)

        return ET.tostring(kml, encoding="utf-8", xml_declaration=True)

    @staticmethod
    def file_title(track: Track) -> str:
        name = (track.name or "").strip() or f"track-{track.id}"
        return name if name.lower().endswith(".kml") else f"{name}.kml"
