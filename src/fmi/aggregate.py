"""Roll hourly forecast samples up into daily summaries and an hourly view.

Every daily field is declared once in ``DAILY_FIELDS`` as a pair of source
parameter and aggregation kind. Adding a parameter to the daily summary is a
single registry entry plus the matching ``DailyForecast`` attribute.
"""

from __future__ import annotations

import math
from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Iterable, Optional, Sequence

from .models import DailyForecast, HourlyForecast, RawSample


class Aggregation(str, Enum):
    MEAN = "mean"
    CIRCULAR_MEAN = "circular_mean"
    SUM = "sum"
    MAX = "max"
    MIN = "min"
    MODE = "mode"


@dataclass(frozen=True, slots=True)
class DailyField:
    attribute: str
    parameter: str
    kind: Aggregation


DAILY_FIELDS: tuple[DailyField, ...] = (
    DailyField("temp_high", "temperature", Aggregation.MAX),
    DailyField("temp_low", "temperature", Aggregation.MIN),
    DailyField("temp_avg", "temperature", Aggregation.MEAN),
    DailyField("wind_speed", "windspeedms", Aggregation.MEAN),
    DailyField("wind_direction", "winddirection", Aggregation.CIRCULAR_MEAN),
    DailyField("humidity_avg", "humidity", Aggregation.MEAN),
    DailyField("precipitation_mm", "precipitation1h", Aggregation.SUM),
    DailyField("precipitation_1h_sum", "precipitation1h", Aggregation.SUM),
    DailyField("dew_point_avg", "dewpoint", Aggregation.MEAN),
    DailyField("fog_intensity_avg", "fogintensity", Aggregation.MEAN),
    DailyField("frost_probability_avg", "frostprobability", Aggregation.MEAN),
    DailyField("severe_frost_probability_avg", "severefrostprobability", Aggregation.MEAN),
    DailyField("geop_height_avg", "geopheight", Aggregation.MEAN),
    DailyField("pressure_avg", "pressure", Aggregation.MEAN),
    DailyField("high_cloud_cover_avg", "highcloudcover", Aggregation.MEAN),
    DailyField("low_cloud_cover_avg", "lowcloudcover", Aggregation.MEAN),
    DailyField("medium_cloud_cover_avg", "mediumcloudcover", Aggregation.MEAN),
    DailyField("middle_and_low_cloud_cover_avg", "middleandlowcloudcover", Aggregation.MEAN),
    DailyField("total_cloud_cover_avg", "totalcloudcover", Aggregation.MEAN),
    DailyField("hourly_maximum_gust_max", "hourlymaximumgust", Aggregation.MAX),
    DailyField("hourly_maximum_wind_speed_max", "hourlymaximumwindspeed", Aggregation.MAX),
    DailyField("pop_avg", "pop", Aggregation.MEAN),
    DailyField("probability_thunderstorm_avg", "probabilitythunderstorm", Aggregation.MEAN),
    DailyField("potential_precipitation_form_mode", "potentialprecipitationform", Aggregation.MODE),
    DailyField("potential_precipitation_type_mode", "potentialprecipitationtype", Aggregation.MODE),
    DailyField("precipitation_form_mode", "precipitationform", Aggregation.MODE),
    DailyField("precipitation_type_mode", "precipitationtype", Aggregation.MODE),
    DailyField("radiation_global_avg", "radiationglobal", Aggregation.MEAN),
    DailyField("radiation_lw_avg", "radiationlw", Aggregation.MEAN),
    DailyField("weather_number_mode", "weathernumber", Aggregation.MODE),
    DailyField("weather_symbol3_mode", "weathersymbol3", Aggregation.MODE),
    DailyField("wind_ums_avg", "windums", Aggregation.MEAN),
    DailyField("wind_vms_avg", "windvms", Aggregation.MEAN),
    DailyField("wind_vector_ms_avg", "windvectorms", Aggregation.MEAN),
)

# Hourly passthrough: parameter -> HourlyForecast attribute.
HOURLY_FIELDS: dict[str, str] = {
    "temperature": "temperature",
    "windspeedms": "wind_speed",
    "winddirection": "wind_direction",
    "humidity": "humidity",
    "precipitation1h": "precipitation_1h",
}
SYMBOL_PARAMETER = "weathersymbol3"


def mean(values: Sequence[float]) -> Optional[float]:
    if not values:
        return None
    return sum(values) / len(values)


def total(values: Sequence[float]) -> Optional[float]:
    if not values:
        return None
    return float(sum(values))


def maximum(values: Sequence[float]) -> Optional[float]:
    if not values:
        return None
    return max(values)


def minimum(values: Sequence[float]) -> Optional[float]:
    if not values:
        return None
    return min(values)


def circular_mean(values: Sequence[float]) -> Optional[float]:
    """Mean bearing in degrees, normalized to ``[0, 360)``.

    Each bearing is treated as a unit vector; the angle of the summed vector is
    the mean. Opposing bearings that cancel out exactly have no mean direction
    and yield ``None``.
    """
    if not values:
        return None
    sin_sum = 0.0
    cos_sum = 0.0
    for value in values:
        rad = math.radians(value)
        sin_sum += math.sin(rad)
        cos_sum += math.cos(rad)
    if math.isclose(sin_sum, 0.0, abs_tol=1e-9) and math.isclose(cos_sum, 0.0, abs_tol=1e-9):
        return None
    bearing = math.degrees(math.atan2(sin_sum, cos_sum)) % 360.0
    # atan2 of a vanishing negative sine lands on 360.0 after the modulo
    if bearing >= 360.0 or math.isclose(bearing, 360.0, abs_tol=1e-9):
        bearing = 0.0
    return bearing


def mode_rounded(values: Iterable[float]) -> Optional[float]:
    """Most frequent value after rounding to an integer code; ties go to the smallest code."""
    counts = Counter(_round_half_away(value) for value in values)
    if not counts:
        return None
    best_code, _ = min(counts.items(), key=lambda item: (-item[1], item[0]))
    return float(best_code)


def _round_half_away(value: float) -> int:
    # half away from zero, unlike round()
    return int(math.floor(abs(value) + 0.5)) * (1 if value >= 0 else -1)


_AGGREGATORS = {
    Aggregation.MEAN: mean,
    Aggregation.CIRCULAR_MEAN: circular_mean,
    Aggregation.SUM: total,
    Aggregation.MAX: maximum,
    Aggregation.MIN: minimum,
    Aggregation.MODE: mode_rounded,
}


def aggregate(kind: Aggregation, values: Sequence[float]) -> Optional[float]:
    return _AGGREGATORS[kind](values)


def symbol_label(code: Optional[float]) -> Optional[str]:
    if code is None:
        return None
    return str(_round_half_away(code))


def group_by_day(samples: Iterable[RawSample]) -> dict[date, dict[str, list[float]]]:
    """Bucket present sample values by UTC calendar date and parameter."""
    days: dict[date, dict[str, list[float]]] = defaultdict(lambda: defaultdict(list))
    for sample in samples:
        if sample.value is None:
            continue
        day = sample.timestamp.astimezone(timezone.utc).date()
        days[day][sample.parameter].append(sample.value)
    return days


def build_daily_forecasts(
    samples: Iterable[RawSample],
    grid_lat: float,
    grid_lon: float,
    fetched_at: datetime,
) -> list[DailyForecast]:
    forecasts: list[DailyForecast] = []
    for day, values in sorted(group_by_day(samples).items()):
        forecast = DailyForecast(grid_lat=grid_lat, grid_lon=grid_lon, forecast_date=day, fetched_at=fetched_at)
        for field in DAILY_FIELDS:
            setattr(forecast, field.attribute, aggregate(field.kind, values.get(field.parameter, [])))
        forecast.symbol = symbol_label(forecast.weather_symbol3_mode)
        forecasts.append(forecast)
    return forecasts


def build_hourly_forecasts(
    samples: Iterable[RawSample],
    limit: int,
    fetched_at: Optional[datetime] = None,
) -> list[HourlyForecast]:
    by_time: dict[datetime, HourlyForecast] = {}
    for sample in samples:
        if sample.value is None:
            continue
        if sample.parameter == SYMBOL_PARAMETER:
            attribute = "symbol"
            value: object = symbol_label(sample.value)
        else:
            attribute = HOURLY_FIELDS.get(sample.parameter)
            value = sample.value
        if attribute is None:
            continue
        entry = by_time.get(sample.timestamp)
        if entry is None:
            entry = HourlyForecast(forecast_time=sample.timestamp, fetched_at=fetched_at)
            by_time[sample.timestamp] = entry
        setattr(entry, attribute, value)

    items = [entry for _, entry in sorted(by_time.items()) if entry.has_any_value()]
    if limit > 0:
        items = items[:limit]
    return items


__all__ = [
    "Aggregation",
    "DailyField",
    "DAILY_FIELDS",
    "HOURLY_FIELDS",
    "aggregate",
    "build_daily_forecasts",
    "build_hourly_forecasts",
    "circular_mean",
    "group_by_day",
    "maximum",
    "mean",
    "minimum",
    "mode_rounded",
    "symbol_label",
    "total",
]
