import re
from typing import Callable, NamedTuple, Optional
from urllib.parse import urlparse

from prometheus_client import CollectorRegistry, Counter, generate_latest
from prometheus_client.core import GaugeMetricFamily

from auth import log
from snapshot import Snapshot, SnapshotFetcher

REGISTRY = CollectorRegistry()

LABEL_NAMES = ['car_name', 'car_state']

SHIFT_STATES = {'P': 0.0, 'R': 1.0, 'N': 2.0, 'D': 3.0}

# Upstream (owner API / SSO) calls made by the exporter
HTTP_REQUESTS_TOTAL = Counter(
    'http_requests_total',
    'Total HTTP requests made',
    ['method', 'endpoint', 'status_code'],
    registry=REGISTRY
)


class MetricDefinition(NamedTuple):
    name: str
    documentation: str
    extract: Callable[[Snapshot], Optional[float]]


def field(name):
    return lambda snapshot: getattr(snapshot, name)


def shift_state(snapshot):
    return SHIFT_STATES.get(snapshot.shift_state) if snapshot.shift_state else None


METRICS = (
    MetricDefinition('tesla_is_online', 'Vehicle online (1=online, 0=asleep/offline)',
                     lambda snapshot: 1.0 if snapshot.online else 0.0),

    # Charge state
    MetricDefinition('tesla_charge_state_battery_level', 'Battery Level (%)', field('battery_level')),
    MetricDefinition('tesla_charge_state_battery_range', 'Battery Range (Miles)', field('battery_range')),
    MetricDefinition('tesla_charge_state_est_battery_range', 'Estimated Battery Range (Miles)',
                     field('est_battery_range')),
    MetricDefinition('tesla_charge_state_ideal_battery_range', 'Ideal Battery Range (Miles)',
                     field('ideal_battery_range')),
    MetricDefinition('tesla_charge_state_charge_rate', 'Battery Charge Rate', field('charge_rate')),
    MetricDefinition('tesla_charge_state_minutes_to_full_charge', 'Time to Full Charge (Minutes)',
                     field('minutes_to_full_charge')),
    MetricDefinition('tesla_charge_state_charger_voltage', 'Charger Voltage', field('charger_voltage')),
    MetricDefinition('tesla_charge_state_charger_power', 'Charger Power', field('charger_power')),
    MetricDefinition('tesla_charge_state_charger_actual_current', 'Charger Actual Current',
                     field('charger_actual_current')),

    # Drive state
    MetricDefinition('tesla_drive_state_speed', 'Vehicle speed (MPH)', field('speed')),
    MetricDefinition('tesla_drive_state_power', 'Vehicle Power', field('power')),
    MetricDefinition('tesla_drive_state_latitude', 'Vehicle Latitude', field('latitude')),
    MetricDefinition('tesla_drive_state_longitude', 'Vehicle Longitude', field('longitude')),
    MetricDefinition('tesla_drive_state_heading', 'Vehicle Heading', field('heading')),
    MetricDefinition('tesla_drive_state_shift_state', 'Gear (0=P, 1=R, 2=N, 3=D)', shift_state),

    MetricDefinition('tesla_vehicle_state_odometer', 'Vehicle odometer (Miles)', field('odometer')),

    # Climate
    MetricDefinition('tesla_climate_state_inside_temp', 'Inside Temperature (DegC)', field('inside_temp')),
    MetricDefinition('tesla_climate_state_outside_temp', 'Outside Temperature (DegC)', field('outside_temp')),
    MetricDefinition('tesla_climate_state_driver_temp_setting', "Driver's Temperature Setting (DegC)",
                     field('driver_temp_setting')),
    MetricDefinition('tesla_climate_state_passenger_temp_setting', "Passenger's Temperature Setting (DegC)",
                     field('passenger_temp_setting')),
)


def snapshot_metrics(snapshot: Snapshot):
    """Yield a gauge family per metric the snapshot has a value for."""
    labels = [snapshot.car_name, snapshot.car_state]
    for metric in METRICS:
        value = metric.extract(snapshot)
        if value is None:
            continue
        gauge = GaugeMetricFamily(metric.name, metric.documentation, labels=LABEL_NAMES)
        gauge.add_metric(labels, value)
        yield gauge


class TeslaCollector:
    """Pulls the latest snapshot on every scrape.

    With ``polling`` set a background poller owns the fetching and a scrape
    only reads what it stored last; otherwise a scrape may fetch.

    NoSnapshotError propagates out of collect() so the HTTP layer can
    answer with a 5xx instead of an empty page.
    """

    def __init__(self, fetcher: SnapshotFetcher, polling: bool = False):
        self.fetcher = fetcher
        self.polling = polling

    def collect(self):
        if self.polling:
            snapshot = self.fetcher.get_latest()
        else:
            snapshot = self.fetcher.get_snapshot()
        yield from snapshot_metrics(snapshot)


def render(registry: CollectorRegistry = REGISTRY) -> str:
    return generate_latest(registry).decode('utf-8')


def sanitize_endpoint(url):
    """
    Sanitize URL to avoid high cardinality in Prometheus labels.
    Removes query parameters, replaces VINs and vehicle IDs with placeholders.
    """
    parsed = urlparse(url)
    path = parsed.path

    # VINs are 17 characters, I/O/Q excluded, with at least one letter
    path = re.sub(r'/(?=[0-9]*[A-HJ-NPR-Z])[A-HJ-NPR-Z0-9]{17}(?=/|$)', '/<VIN>', path)
    path = re.sub(r'/\d{5,}(?=/|$)', '/<ID>', path)

    return f"{parsed.scheme}://{parsed.netloc}{path}"


def track_response(response, *args, **kwargs):
    """requests response hook recording every upstream call."""
    method = response.request.method if response.request is not None else 'UNKNOWN'
    endpoint = sanitize_endpoint(response.url)
    HTTP_REQUESTS_TOTAL.labels(
        method=method,
        endpoint=endpoint,
        status_code=str(response.status_code)
    ).inc()
    log(f"HTTP {method} {endpoint} -> {response.status_code} ({response.elapsed.total_seconds():.3f}s)", 'debug')
