"""FMI open-data access: WFS timeseries decoding and daily aggregation."""

from .errors import FmiError, FmiTransportError, MalformedDocumentError
from .models import DailyForecast, HourlyForecast, Observation, ObservationResult, Station, UVDataPoint
from .parser import parse_forecast, parse_hourly_forecast, parse_observations

__all__ = [
    "FmiError",
    "FmiTransportError",
    "MalformedDocumentError",
    "Station",
    "Observation",
    "ObservationResult",
    "DailyForecast",
    "HourlyForecast",
    "UVDataPoint",
    "parse_observations",
    "parse_forecast",
    "parse_hourly_forecast",
]
