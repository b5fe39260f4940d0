from datetime import date, datetime, timedelta, timezone

import pytest

from fmi.aggregate import (
    Aggregation,
    aggregate,
    build_daily_forecasts,
    build_hourly_forecasts,
    circular_mean,
    group_by_day,
    mode_rounded,
    symbol_label,
)
from fmi.models import RawSample

FETCHED = datetime(2024, 3, 1, 6, 0, tzinfo=timezone.utc)


def _sample(parameter: str, ts: datetime, value) -> RawSample:
    return RawSample("grid", parameter, ts, value)


def test_circular_mean_wraps_around_north() -> None:
    result = circular_mean([350.0, 10.0])

    assert result is not None
    assert min(result, 360.0 - result) == pytest.approx(0.0, abs=1e-6)
    assert 0.0 <= result < 360.0


def test_circular_mean_edge_cases() -> None:
    assert circular_mean([]) is None
    assert circular_mean([90.0, 270.0]) is None
    assert circular_mean([45.0]) == pytest.approx(45.0)
    assert circular_mean([170.0, 190.0]) == pytest.approx(180.0)
    assert circular_mean([270.0, 300.0]) == pytest.approx(285.0)


def test_mode_prefers_smallest_code_on_tie() -> None:
    assert mode_rounded([1, 1, 2, 2]) == 1.0
    assert mode_rounded([3, 3, 3, 1]) == 3.0
    assert mode_rounded([2.4, 1.6, 2.0]) == 2.0
    assert mode_rounded([]) is None


def test_mode_rounds_half_away_from_zero() -> None:
    assert mode_rounded([2.5]) == 3.0
    assert mode_rounded([-2.5]) == -3.0


def test_aggregate_dispatch() -> None:
    values = [-5.0, -8.0, -2.0]

    assert aggregate(Aggregation.MAX, values) == -2.0
    assert aggregate(Aggregation.MIN, values) == -8.0
    assert aggregate(Aggregation.MEAN, values) == pytest.approx(-5.0)
    assert aggregate(Aggregation.SUM, [0.2, 0.3]) == pytest.approx(0.5)
    for kind in Aggregation:
        assert aggregate(kind, []) is None


def test_symbol_label() -> None:
    assert symbol_label(None) is None
    assert symbol_label(21.0) == "21"
    assert symbol_label(1.5) == "2"


def test_group_by_day_uses_utc_dates() -> None:
    helsinki_evening = datetime(2024, 3, 1, 23, 30, tzinfo=timezone(timedelta(hours=2)))
    samples = [
        _sample("temperature", helsinki_evening, 1.0),
        _sample("temperature", datetime(2024, 3, 1, 22, 0, tzinfo=timezone.utc), None),
    ]

    days = group_by_day(samples)

    assert list(days) == [date(2024, 3, 1)]
    assert days[date(2024, 3, 1)]["temperature"] == [1.0]


def test_daily_summary_for_a_single_day() -> None:
    base = datetime(2024, 3, 1, 0, 0, tzinfo=timezone.utc)
    samples = [
        _sample("temperature", base, -5.0),
        _sample("temperature", base + timedelta(hours=1), -8.0),
        _sample("temperature", base + timedelta(hours=2), -2.0),
        _sample("precipitation1h", base, 0.4),
        _sample("precipitation1h", base + timedelta(hours=1), 0.6),
        _sample("winddirection", base, 350.0),
        _sample("winddirection", base + timedelta(hours=1), 10.0),
        _sample("hourlymaximumgust", base, 9.0),
        _sample("hourlymaximumgust", base + timedelta(hours=1), 14.5),
        _sample("weathersymbol3", base, 31.0),
        _sample("weathersymbol3", base + timedelta(hours=1), 31.0),
        _sample("weathersymbol3", base + timedelta(hours=2), 1.0),
    ]

    (day,) = build_daily_forecasts(samples, 60.17, 24.94, FETCHED)

    assert day.forecast_date == date(2024, 3, 1)
    assert day.temp_high == -2.0
    assert day.temp_low == -8.0
    assert day.temp_avg == pytest.approx(-5.0)
    assert day.precipitation_mm == pytest.approx(1.0)
    assert day.precipitation_1h_sum == pytest.approx(1.0)
    assert min(day.wind_direction, 360.0 - day.wind_direction) == pytest.approx(0.0, abs=1e-6)
    assert day.hourly_maximum_gust_max == 14.5
    assert day.weather_symbol3_mode == 31.0
    assert day.symbol == "31"
    assert day.humidity_avg is None
    assert day.fetched_at == FETCHED


def test_daily_forecasts_are_sorted_by_day() -> None:
    samples = [
        _sample("temperature", datetime(2024, 3, 3, 12, tzinfo=timezone.utc), 3.0),
        _sample("temperature", datetime(2024, 3, 1, 12, tzinfo=timezone.utc), 1.0),
        _sample("temperature", datetime(2024, 3, 2, 12, tzinfo=timezone.utc), 2.0),
    ]

    daily = build_daily_forecasts(samples, 60.17, 24.94, FETCHED)

    assert [forecast.temp_avg for forecast in daily] == [1.0, 2.0, 3.0]


def test_hourly_forecasts_merge_parameters_per_timestamp() -> None:
    base = datetime(2024, 3, 1, 6, 0, tzinfo=timezone.utc)
    samples = [
        _sample("temperature", base + timedelta(hours=1), 2.0),
        _sample("temperature", base, 1.0),
        _sample("windspeedms", base, 4.0),
        _sample("weathersymbol3", base, 2.0),
        _sample("humidity", base + timedelta(hours=2), None),
        _sample("pressure", base + timedelta(hours=3), 1010.0),
    ]

    hourly = build_hourly_forecasts(samples, 0, FETCHED)

    assert [entry.forecast_time for entry in hourly] == [base, base + timedelta(hours=1)]
    assert hourly[0].temperature == 1.0
    assert hourly[0].wind_speed == 4.0
    assert hourly[0].symbol == "2"
    assert hourly[0].fetched_at == FETCHED
    assert build_hourly_forecasts(samples, 1)[0].forecast_time == base
    assert len(build_hourly_forecasts(samples, 1)) == 1
