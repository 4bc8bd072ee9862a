"""Tests for the metric table, collector and upstream request accounting."""

from dataclasses import replace

import pytest
from prometheus_client import CollectorRegistry
from prometheus_client.parser import text_string_to_metric_families

import metrics
import snapshot as snapshot_module
from conftest import VEHICLE_DATA_URL, make_response, vehicle_entry
from metrics import METRICS, TeslaCollector, render, sanitize_endpoint, track_response
from snapshot import NoSnapshotError, Snapshot, SnapshotFetcher

EXPECTED_VALUES = {
    "tesla_is_online": 1.0,
    "tesla_charge_state_battery_level": 87.0,
    "tesla_charge_state_battery_range": 208.15,
    "tesla_charge_state_est_battery_range": 153.79,
    "tesla_charge_state_ideal_battery_range": 210.5,
    "tesla_charge_state_charge_rate": 22.0,
    "tesla_charge_state_minutes_to_full_charge": 45.0,
    "tesla_charge_state_charger_voltage": 240.0,
    "tesla_charge_state_charger_power": 11.0,
    "tesla_charge_state_charger_actual_current": 32.0,
    "tesla_drive_state_speed": 0.0,
    "tesla_drive_state_power": -11.0,
    "tesla_drive_state_latitude": 41.097174,
    "tesla_drive_state_longitude": -73.770422,
    "tesla_drive_state_heading": 284.0,
    "tesla_drive_state_shift_state": 0.0,
    "tesla_vehicle_state_odometer": 7469.486058,
    "tesla_climate_state_inside_temp": 19.5,
    "tesla_climate_state_outside_temp": 11.0,
    "tesla_climate_state_driver_temp_setting": 21.7,
    "tesla_climate_state_passenger_temp_setting": 21.5,
}


class StubFetcher:
    def __init__(self, snapshot=None, error=None):
        self.snapshot = snapshot
        self.error = error
        self.fetches = 0

    def get_snapshot(self):
        self.fetches += 1
        if self.error is not None:
            raise self.error
        return self.snapshot

    def get_latest(self):
        if self.error is not None:
            raise self.error
        return self.snapshot


def scrape(snapshot):
    registry = CollectorRegistry()
    registry.register(TeslaCollector(StubFetcher(snapshot)))
    text = render(registry)
    samples = {}
    for family in text_string_to_metric_families(text):
        for sample in family.samples:
            samples[sample.name] = sample
    return text, samples


def test_metric_table_has_21_unique_names() -> None:
    names = [metric.name for metric in METRICS]
    assert len(names) == 21
    assert len(set(names)) == 21
    assert set(names) == set(EXPECTED_VALUES)


def test_full_snapshot_renders_every_metric(full_snapshot) -> None:
    _, samples = scrape(full_snapshot)

    assert set(samples) == set(EXPECTED_VALUES)
    for name, value in EXPECTED_VALUES.items():
        assert samples[name].value == pytest.approx(value), name
        assert samples[name].labels == {"car_name": "Bellwood Auto", "car_state": "Charging"}


def test_missing_field_omits_only_that_metric(full_snapshot) -> None:
    _, samples = scrape(replace(full_snapshot, inside_temp=None))

    assert "tesla_climate_state_inside_temp" not in samples
    assert len(samples) == 20
    assert samples["tesla_climate_state_outside_temp"].value == 11.0


def test_missing_values_are_not_zero_filled(full_snapshot) -> None:
    text, _ = scrape(replace(full_snapshot, speed=None, odometer=None))

    assert "tesla_drive_state_speed" not in text
    assert "tesla_vehicle_state_odometer" not in text


def test_offline_vehicle() -> None:
    text, samples = scrape(Snapshot.offline(vehicle_entry("asleep")))

    assert list(samples) == ["tesla_is_online"]
    assert samples["tesla_is_online"].value == 0.0
    assert samples["tesla_is_online"].labels["car_state"] == "Offline"
    assert "tesla_charge_state" not in text
    assert "tesla_drive_state" not in text


def test_shift_state_mapping(full_snapshot) -> None:
    for gear, value in (("P", 0.0), ("R", 1.0), ("N", 2.0), ("D", 3.0)):
        _, samples = scrape(replace(full_snapshot, shift_state=gear))
        assert samples["tesla_drive_state_shift_state"].value == value

    _, samples = scrape(replace(full_snapshot, shift_state="?"))
    assert "tesla_drive_state_shift_state" not in samples


def test_collector_propagates_missing_data() -> None:
    registry = CollectorRegistry()
    registry.register(TeslaCollector(StubFetcher(error=NoSnapshotError("down"))))

    with pytest.raises(NoSnapshotError):
        render(registry)


def test_polling_collector_never_fetches(full_snapshot) -> None:
    fetcher = StubFetcher(full_snapshot)
    registry = CollectorRegistry()
    registry.register(TeslaCollector(fetcher, polling=True))

    assert "tesla_is_online" in render(registry)
    assert fetcher.fetches == 0


class CountingAPI:
    def __init__(self, data):
        self.data = data
        self.data_calls = 0

    def get_vehicle_list(self):
        return [vehicle_entry()]

    def get_vehicle_data(self, vehicle_id):
        self.data_calls += 1
        return self.data


def test_scrapes_between_polls_reuse_the_polled_snapshot(monkeypatch, vehicle_data) -> None:
    now = [1000.0]
    monkeypatch.setattr(snapshot_module.time, "time", lambda: now[0])
    api = CountingAPI(vehicle_data)
    fetcher = SnapshotFetcher(api, cache_ttl=30, max_stale=900)
    registry = CollectorRegistry()
    registry.register(TeslaCollector(fetcher, polling=True))

    fetcher.refresh()
    for _ in range(10):
        now[0] += 60
        assert "tesla_is_online" in render(registry)

    assert api.data_calls == 1

    now[0] += 900
    with pytest.raises(NoSnapshotError):
        render(registry)
    assert api.data_calls == 1


@pytest.mark.parametrize("url,expected", [
    (
        "https://owner-api.teslamotors.com/api/1/vehicles/41614331478102467/vehicle_data",
        "https://owner-api.teslamotors.com/api/1/vehicles/<ID>/vehicle_data",
    ),
    (
        "https://owner-api.teslamotors.com/api/1/vehicles/5YJ3E1EA4KF311487/wake_up",
        "https://owner-api.teslamotors.com/api/1/vehicles/<VIN>/wake_up",
    ),
    (
        "https://auth.tesla.com/oauth2/v3/token?grant_type=refresh_token",
        "https://auth.tesla.com/oauth2/v3/token",
    ),
    (
        "https://owner-api.teslamotors.com/api/1/vehicles",
        "https://owner-api.teslamotors.com/api/1/vehicles",
    ),
])
def test_sanitize_endpoint(url, expected) -> None:
    assert sanitize_endpoint(url) == expected


def test_track_response_counts_requests() -> None:
    response = make_response(200, {"response": {}}, url=VEHICLE_DATA_URL)
    response.request = type("Request", (), {"method": "GET"})()
    labels = {
        "method": "GET",
        "endpoint": "https://owner-api.teslamotors.com/api/1/vehicles/<ID>/vehicle_data",
        "status_code": "200",
    }
    before = metrics.REGISTRY.get_sample_value("http_requests_total", labels) or 0.0

    track_response(response)

    assert metrics.REGISTRY.get_sample_value("http_requests_total", labels) == before + 1
