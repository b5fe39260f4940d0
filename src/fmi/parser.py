"""Decode FMI WFS timeseries documents into typed weather records.

A stored-query response is a ``wfs:FeatureCollection`` of ``wfs:member``
blocks. Each member carries the full timeseries of one parameter for one
station (observations) or one grid point (forecasts)::

    wfs:member
      omso:PointTimeSeriesObservation
        om:observedProperty xlink:href="...&param=temperature&..."
        om:featureOfInterest
          sams:SF_SpatialSamplingFeature
            sam:sampledFeature/target:LocationCollection/target:member/target:Location
              gml:identifier, gml:name codeSpace=".../locationcode/name" ...
            sams:shape/gml:Point(gml:name, gml:pos) | gml:MultiPoint
        om:result/wml2:MeasurementTimeseries/wml2:point/wml2:MeasurementTVP
          wml2:time, wml2:value

Elements are matched on their local name so namespace version bumps upstream
do not break decoding. Individual bad time/value pairs are skipped; only a
document that is not a feature collection at all is an error.
"""

from __future__ import annotations

import logging
import math
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable, Iterator, Optional

from .aggregate import build_daily_forecasts, build_hourly_forecasts
from .errors import MalformedDocumentError
from .models import (
    DailyForecast,
    HourlyForecast,
    Observation,
    ObservationResult,
    RawSample,
    Station,
)

logger = logging.getLogger("wby.server.fmi.parser")

XLINK_HREF = "{http://www.w3.org/1999/xlink}href"
NAME_CODESPACE_SUFFIX = "/locationcode/name"
WMO_CODESPACE_SUFFIX = "/locationcode/wmo"
RFC3339_PATTERN = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})[Tt](\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?(?:([Zz])|([+-])(\d{2}):(\d{2}))$"
)

# Upstream has renamed parameters over time; map every spelling onto one name.
PARAMETER_ALIASES: dict[str, str] = {
    "t2m": "temperature",
    "ws_10min": "windspeedms",
    "windgust": "windgust",
    "gustspeed": "windgust",
    "maximumwind": "windgust",
    "wg_10min": "windgust",
    "wd_10min": "winddirection",
    "rh": "humidity",
    "td": "dewpoint",
    "p_sea": "pressure",
    "precipitationamount": "precipitation1h",
    "r_1h": "precipitation1h",
    "ri_10min": "precipitationintensity",
    "snow_aws": "snowdepth",
    "vis": "visibility",
    "cloudcover": "totalcloudcover",
    "n_man": "totalcloudcover",
    "weathercode": "weather",
    "wawa": "weather",
}

OBSERVATION_FIELDS: dict[str, str] = {
    "temperature": "temperature",
    "windspeedms": "wind_speed",
    "windgust": "wind_gust",
    "winddirection": "wind_direction",
    "humidity": "humidity",
    "dewpoint": "dew_point",
    "pressure": "pressure",
    "precipitation1h": "precipitation_1h",
    "precipitationintensity": "precipitation_intensity",
    "snowdepth": "snow_depth",
    "visibility": "visibility",
    "totalcloudcover": "total_cloud_cover",
    "weather": "weather_code",
}


@dataclass(slots=True)
class LocationMetadata:
    """Station / grid point metadata as published alongside one member."""

    identifier: Optional[str] = None
    names: list[tuple[str, str]] = field(default_factory=list)
    point_name: Optional[str] = None
    position: Optional[str] = None

    @property
    def wmo_code(self) -> Optional[str]:
        wmo: Optional[str] = None
        for code_space, value in self.names:
            if _code_space_endswith(code_space, WMO_CODESPACE_SUFFIX):
                wmo = value
        return wmo


@dataclass(slots=True)
class TimeseriesDocument:
    samples: list[RawSample] = field(default_factory=list)
    locations: dict[str, LocationMetadata] = field(default_factory=dict)

    def samples_for(self, parameters: Iterable[str]) -> list[RawSample]:
        wanted = set(parameters)
        return [sample for sample in self.samples if sample.parameter in wanted]


def _local(tag: str) -> str:
    if tag.startswith("{"):
        return tag.rsplit("}", 1)[1]
    return tag


def _children(element: ET.Element, name: str) -> Iterator[ET.Element]:
    for child in element:
        if _local(child.tag) == name:
            yield child


def _child(element: Optional[ET.Element], *path: str) -> Optional[ET.Element]:
    current = element
    for name in path:
        if current is None:
            return None
        current = next(_children(current, name), None)
    return current


def _text(element: Optional[ET.Element]) -> str:
    if element is None or element.text is None:
        return ""
    return element.text.strip()


def _code_space_endswith(code_space: str, suffix: str) -> bool:
    return code_space.strip().lower().endswith(suffix)


def extract_parameter(href: str) -> str:
    """Return the parameter token of an observed-property reference.

    Upstream publishes either ``...?param=temperature&language=eng`` style links
    or plain paths ending in the parameter name.
    """
    for part in href.split("&"):
        key, sep, value = part.rpartition("param=")
        if sep and (key == "" or key.endswith("?")):
            return value
    return href.rstrip().split("/")[-1]


def canonical_parameter(name: str) -> str:
    lowered = name.strip().lower()
    return PARAMETER_ALIASES.get(lowered, lowered)


def parse_timestamp(text: str) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp; anything without an explicit offset is rejected.

    Only the full ``YYYY-MM-DDTHH:MM:SS[.frac](Z|+HH:MM)`` form is accepted.
    Fractions beyond microseconds are truncated.
    """
    match = RFC3339_PATTERN.fullmatch(text.strip())
    if match is None:
        return None
    year, month, day, hour, minute, second, fraction, zulu, sign, off_hours, off_minutes = match.groups()
    try:
        if zulu:
            tz = timezone.utc
        else:
            offset = timedelta(hours=int(off_hours), minutes=int(off_minutes))
            tz = timezone(-offset if sign == "-" else offset)
        parsed = datetime(
            int(year),
            int(month),
            int(day),
            int(hour),
            int(minute),
            int(second),
            int((fraction or "0")[:6].ljust(6, "0")),
            tzinfo=tz,
        )
    except ValueError:
        return None
    return parsed.astimezone(timezone.utc)


def parse_value(text: str) -> Optional[float]:
    try:
        value = float(text.strip())
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value):
        return None
    return value


def is_likely_code_value(value: str) -> bool:
    return bool(value) and value.isascii() and value.isdigit()


def resolve_station_name(location: LocationMetadata) -> str:
    """Pick a human-readable station name.

    A ``.../locationcode/name`` entry wins, unless it is purely numeric and a
    non-numeric display name is also present. Otherwise fall back to the WMO
    code, the point's own ``gml:name`` (or the first point of a multi-point
    shape), any other published code, and finally the numeric identifier.
    """
    name = ""
    other = ""
    for code_space, value in location.names:
        if not value:
            continue
        if _code_space_endswith(code_space, NAME_CODESPACE_SUFFIX):
            if not name or is_likely_code_value(name):
                name = value
        elif not other and not _code_space_endswith(code_space, WMO_CODESPACE_SUFFIX):
            other = value
    candidates = (
        name,
        location.wmo_code,
        location.point_name,
        other,
        location.identifier,
    )
    for candidate in candidates:
        if candidate and candidate.strip():
            return candidate.strip()
    return ""


def parse_position(position: Optional[str]) -> tuple[float, float]:
    parts = (position or "").split()
    if len(parts) != 2:
        return 0.0, 0.0
    lat = parse_value(parts[0])
    lon = parse_value(parts[1])
    return (lat if lat is not None else 0.0), (lon if lon is not None else 0.0)


def _read_location(observation: ET.Element) -> LocationMetadata:
    feature = _child(observation, "featureOfInterest", "SF_SpatialSamplingFeature")
    metadata = LocationMetadata()
    collection = _child(feature, "sampledFeature", "LocationCollection")
    if collection is not None:
        for member in _children(collection, "member"):
            location = _child(member, "Location")
            if location is None:
                continue
            identifier = _text(_child(location, "identifier"))
            if identifier:
                metadata.identifier = identifier
            for name in _children(location, "name"):
                value = _text(name)
                if value:
                    metadata.names.append((name.get("codeSpace", ""), value))

    shape = _child(feature, "shape")
    point = _child(shape, "Point")
    if point is not None:
        metadata.point_name = _text(_child(point, "name")) or None
        metadata.position = _text(_child(point, "pos")) or None
    if metadata.position is None:
        first = _child(shape, "MultiPoint", "pointMembers", "Point")
        if first is None:
            first = _child(shape, "MultiPoint", "pointMember", "Point")
        if first is not None:
            metadata.position = _text(_child(first, "pos")) or None
            if metadata.point_name is None:
                metadata.point_name = _text(_child(first, "name")) or None
    return metadata


def _iter_time_value_pairs(observation: ET.Element) -> Iterator[tuple[str, str]]:
    series = _child(observation, "result", "MeasurementTimeseries")
    if series is None:
        return
    for point in _children(series, "point"):
        tvp = _child(point, "MeasurementTVP")
        if tvp is None:
            continue
        yield _text(_child(tvp, "time")), _text(_child(tvp, "value"))


def _load_root(data: bytes) -> ET.Element:
    try:
        root = ET.fromstring(data)
    except ET.ParseError as exc:
        raise MalformedDocumentError(f"unparseable WFS document: {exc}") from exc
    if _local(root.tag) != "FeatureCollection":
        raise MalformedDocumentError(f"expected FeatureCollection, got {_local(root.tag)}")
    return root


def decode_timeseries(data: bytes) -> TimeseriesDocument:
    """Flatten a stored-query response into raw samples plus location metadata."""
    root = _load_root(data)
    document = TimeseriesDocument()
    skipped = 0
    for member in _children(root, "member"):
        observation = _child(member, "PointTimeSeriesObservation")
        if observation is None:
            continue
        observed_property = _child(observation, "observedProperty")
        href = observed_property.get(XLINK_HREF, "") if observed_property is not None else ""
        parameter = canonical_parameter(extract_parameter(href))
        if not parameter:
            continue
        location = _read_location(observation)
        entity_key = location.identifier or location.position or ""
        document.locations.setdefault(entity_key, location)

        for time_text, value_text in _iter_time_value_pairs(observation):
            timestamp = parse_timestamp(time_text)
            if timestamp is None:
                skipped += 1
                continue
            document.samples.append(RawSample(entity_key, parameter, timestamp, parse_value(value_text)))
    if skipped:
        logger.debug("Skipped %s time/value pairs with unparseable timestamps", skipped)
    return document


def parse_observations(data: bytes) -> ObservationResult:
    document = decode_timeseries(data)

    stations: dict[int, Station] = {}
    observations: dict[tuple[int, datetime], Observation] = {}
    station_ids: dict[str, Optional[int]] = {}

    for entity_key, location in document.locations.items():
        try:
            station_id = int(location.identifier or "")
        except ValueError:
            logger.debug("Ignoring location without numeric identifier: %r", entity_key)
            station_ids[entity_key] = None
            continue
        station_ids[entity_key] = station_id
        if station_id in stations:
            continue
        lat, lon = parse_position(location.position)
        stations[station_id] = Station(
            station_id=station_id,
            name=resolve_station_name(location),
            latitude=lat,
            longitude=lon,
            wmo_code=location.wmo_code,
        )

    for sample in document.samples:
        station_id = station_ids.get(sample.entity_key)
        if station_id is None:
            continue
        key = (station_id, sample.timestamp)
        observation = observations.get(key)
        if observation is None:
            observation = Observation(station_id=station_id, observed_at=sample.timestamp)
            observations[key] = observation
        attribute = OBSERVATION_FIELDS.get(sample.parameter)
        if attribute is not None:
            if sample.value is not None:
                setattr(observation, attribute, sample.value)
        elif sample.value is not None:
            observation.extra[sample.parameter] = sample.value

    result = ObservationResult(
        stations=sorted(stations.values(), key=lambda station: station.station_id),
        observations=sorted(
            (obs for obs in observations.values() if obs.has_any_value()),
            key=lambda obs: (obs.observed_at, obs.station_id),
        ),
    )
    return result


def parse_forecast(
    data: bytes,
    grid_lat: float,
    grid_lon: float,
    *,
    fetched_at: Optional[datetime] = None,
) -> list[DailyForecast]:
    document = decode_timeseries(data)
    stamp = fetched_at or datetime.now(timezone.utc)
    return build_daily_forecasts(document.samples, grid_lat, grid_lon, stamp)


def parse_hourly_forecast(
    data: bytes,
    limit: int,
    *,
    fetched_at: Optional[datetime] = None,
) -> list[HourlyForecast]:
    document = decode_timeseries(data)
    return build_hourly_forecasts(document.samples, limit, fetched_at)


__all__ = [
    "LocationMetadata",
    "TimeseriesDocument",
    "canonical_parameter",
    "decode_timeseries",
    "extract_parameter",
    "parse_forecast",
    "parse_hourly_forecast",
    "parse_observations",
    "parse_position",
    "parse_timestamp",
    "parse_value",
    "resolve_station_name",
]
