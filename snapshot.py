import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from auth import TeslaAPI, TeslaApiError, VehicleUnavailable, WakeTimeout, log

PARKED = 'Parked'
CHARGING = 'Charging'
DRIVING = 'Driving'
OFFLINE = 'Offline'

DRIVING_GEARS = ('R', 'D', 'N')


class NoSnapshotError(Exception):
    """No vehicle data is available to serve."""


def safe_float(value):
    """Convert to float safely, return None for null/non-numeric"""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


@dataclass(frozen=True)
class Snapshot:
    car_name: str
    vehicle_state: str
    online: bool

    battery_level: Optional[float] = None
    battery_range: Optional[float] = None
    est_battery_range: Optional[float] = None
    ideal_battery_range: Optional[float] = None
    charge_rate: Optional[float] = None
    minutes_to_full_charge: Optional[float] = None
    charger_voltage: Optional[float] = None
    charger_power: Optional[float] = None
    charger_actual_current: Optional[float] = None
    charging_state: Optional[str] = None
    fast_charger_present: bool = False

    speed: Optional[float] = None
    power: Optional[float] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    heading: Optional[float] = None
    shift_state: Optional[str] = None

    odometer: Optional[float] = None

    inside_temp: Optional[float] = None
    outside_temp: Optional[float] = None
    driver_temp_setting: Optional[float] = None
    passenger_temp_setting: Optional[float] = None

    fetched_at: float = field(default_factory=lambda: time.time())

    @classmethod
    def offline(cls, vehicle: Dict) -> 'Snapshot':
        return cls(
            car_name=vehicle.get('display_name') or str(vehicle.get('id', 'unknown')),
            vehicle_state=vehicle.get('state') or 'offline',
            online=False,
        )

    @classmethod
    def from_vehicle_data(cls, data: Dict) -> 'Snapshot':
        state = data.get('state') or 'unknown'
        charge = data.get('charge_state') or {}
        drive = data.get('drive_state') or {}
        climate = data.get('climate_state') or {}
        vehicle = data.get('vehicle_state') or {}

        shift_state = drive.get('shift_state')
        if drive and not shift_state:
            # API reports null while in park
            shift_state = 'P'

        return cls(
            car_name=data.get('display_name') or vehicle.get('vehicle_name') or str(data.get('id', 'unknown')),
            vehicle_state=state,
            online=state == 'online',
            battery_level=safe_float(charge.get('battery_level')),
            battery_range=safe_float(charge.get('battery_range')),
            est_battery_range=safe_float(charge.get('est_battery_range')),
            ideal_battery_range=safe_float(charge.get('ideal_battery_range')),
            charge_rate=safe_float(charge.get('charge_rate')),
            minutes_to_full_charge=safe_float(charge.get('minutes_to_full_charge')),
            charger_voltage=safe_float(charge.get('charger_voltage')),
            charger_power=safe_float(charge.get('charger_power')),
            charger_actual_current=safe_float(charge.get('charger_actual_current')),
            charging_state=charge.get('charging_state'),
            fast_charger_present=bool(charge.get('fast_charger_present')),
            speed=safe_float(drive.get('speed')),
            power=safe_float(drive.get('power')),
            latitude=safe_float(drive.get('latitude')),
            longitude=safe_float(drive.get('longitude')),
            heading=safe_float(drive.get('heading')),
            shift_state=shift_state,
            odometer=safe_float(vehicle.get('odometer')),
            inside_temp=safe_float(climate.get('inside_temp')),
            outside_temp=safe_float(climate.get('outside_temp')),
            driver_temp_setting=safe_float(climate.get('driver_temp_setting')),
            passenger_temp_setting=safe_float(climate.get('passenger_temp_setting')),
        )

    @property
    def car_state(self) -> str:
        if not self.online:
            return OFFLINE
        if self.shift_state in DRIVING_GEARS or (self.speed or 0.0) > 0:
            return DRIVING
        if self.charging_state in (None, 'Disconnected'):
            return PARKED
        return CHARGING

    @property
    def age(self) -> float:
        return time.time() - self.fetched_at


def poll_wait(snapshot: Optional[Snapshot]) -> int:
    """Seconds until the next poll, based on what the car is doing."""
    if snapshot is None:
        return 60
    state = snapshot.car_state
    if state == DRIVING:
        return 5
    if state == CHARGING:
        return 5 if snapshot.fast_charger_present else 15
    return 15 * 60


class SnapshotFetcher:
    """Fetches and caches the latest Snapshot for one vehicle."""

    def __init__(self, api: TeslaAPI, vehicle_name: Optional[str] = None,
                 cache_ttl: float = 30, max_stale: float = 900, wake_on_poll: bool = False):
        self.api = api
        self.vehicle_name = vehicle_name
        self.cache_ttl = cache_ttl
        self.max_stale = max_stale
        self.wake_on_poll = wake_on_poll
        self._lock = threading.Lock()
        self._snapshot: Optional[Snapshot] = None

    @property
    def latest(self) -> Optional[Snapshot]:
        return self._snapshot

    def select_vehicle(self, vehicles: List[Dict]) -> Dict:
        if not vehicles:
            raise TeslaApiError("No vehicles found")
        if self.vehicle_name:
            wanted = str(self.vehicle_name)
            for vehicle in vehicles:
                if wanted in (vehicle.get('display_name'), vehicle.get('vin'),
                              str(vehicle.get('id')), vehicle.get('id_s')):
                    return vehicle
            raise TeslaApiError(f"Vehicle '{wanted}' not found")
        return vehicles[0]

    def fetch(self) -> Snapshot:
        """Always hit the API; does not touch the cache."""
        vehicle = self.select_vehicle(self.api.get_vehicle_list())
        vehicle_id = vehicle.get('id')

        if vehicle.get('state') != 'online':
            if not self.wake_on_poll:
                log(f"Vehicle '{vehicle.get('display_name')}' is {vehicle.get('state')}", 'debug')
                return Snapshot.offline(vehicle)
            try:
                self.api.wake_vehicle_poll(vehicle_id)
            except (WakeTimeout, VehicleUnavailable):
                log(f"Vehicle '{vehicle.get('display_name')}' did not wake up", 'warning')
                return Snapshot.offline(vehicle)

        try:
            data = self.api.get_vehicle_data(vehicle_id)
        except VehicleUnavailable:
            log(f"Vehicle '{vehicle.get('display_name')}' unavailable", 'warning')
            return Snapshot.offline(vehicle)
        return Snapshot.from_vehicle_data(data)

    def refresh(self) -> Snapshot:
        with self._lock:
            return self._refresh()

    def _refresh(self) -> Snapshot:
        try:
            snapshot = self.fetch()
        except TeslaApiError as e:
            log(f"Fetch failed: {e}", 'error')
            previous = self._snapshot
            if previous is not None and previous.age < self.max_stale:
                log(f"Serving last snapshot ({previous.age:.0f}s old)", 'warning')
                return previous
            raise NoSnapshotError(str(e)) from e

        self._snapshot = snapshot
        log(f"Collected vehicle metrics: Vehicle=\"{snapshot.car_name}\" CarState={snapshot.car_state}")
        return snapshot

    def get_snapshot(self) -> Snapshot:
        with self._lock:
            cached = self._snapshot
            if cached is not None and cached.age < self.cache_ttl:
                return cached
            return self._refresh()

    def get_latest(self) -> Snapshot:
        """Serve what the poller last stored, never fetching.

        Does not take the fetch lock, so a scrape is not held up by a poll
        that is waiting on a wake_up.
        """
        latest = self._snapshot
        if latest is None:
            raise NoSnapshotError("No snapshot collected yet")
        if latest.age >= self.max_stale:
            raise NoSnapshotError(f"Last snapshot is {latest.age:.0f}s old")
        return latest
