"""Shared pytest fixtures for exporter tests."""

import json
from pathlib import Path

import pytest
import requests

from auth import TeslaAPI, TeslaAuth
from snapshot import Snapshot

_FIXTURES_DIR = Path(__file__).resolve().parent / "fixtures"

API = "https://owner-api.teslamotors.com"
VEHICLES_URL = f"{API}/api/1/vehicles"
VEHICLE_ID = 41614331478102467
VEHICLE_DATA_URL = f"{API}/api/1/vehicles/{VEHICLE_ID}/vehicle_data"
WAKE_URL = f"{API}/api/1/vehicles/{VEHICLE_ID}/wake_up"
TOKEN_URL = TeslaAuth.TOKEN_URL


def make_response(status, payload=None, url=""):
    response = requests.Response()
    response.status_code = status
    response._content = json.dumps(payload).encode("utf-8") if payload is not None else b""
    response.url = url
    return response


class FakeUpstream:
    """Stands in for Session.request, answering per (method, url).

    Each route replays its queued responses in order and then keeps
    returning the last one.
    """

    def __init__(self):
        self.routes = {}
        self.calls = []

    def add(self, method, url, *responses):
        self.routes.setdefault((method, url), []).extend(responses)

    def count(self, method, url):
        return sum(1 for m, u, _ in self.calls if (m, u) == (method, url))

    def __call__(self, method, url, **kwargs):
        self.calls.append((method.upper(), url, kwargs))
        queue = self.routes[(method.upper(), url)]
        return queue.pop(0) if len(queue) > 1 else queue[0]


def vehicle_entry(state="online"):
    return {
        "id": VEHICLE_ID,
        "id_s": str(VEHICLE_ID),
        "vin": "5YJ3E1EA4KF311487",
        "display_name": "Bellwood Auto",
        "state": state,
    }


@pytest.fixture()
def vehicle_data():
    with open(_FIXTURES_DIR / "vehicle_data.json", encoding="utf-8") as fh:
        return json.load(fh)


@pytest.fixture()
def upstream():
    return FakeUpstream()


@pytest.fixture()
def auth(tmp_path, upstream):
    session = requests.Session()
    session.request = upstream
    config = {
        "access_token": "old-access",
        "refresh_token": "old-refresh",
        "token_file": str(tmp_path / "tesla_token.json"),
    }
    return TeslaAuth(config, session=session)


@pytest.fixture()
def api(auth):
    return TeslaAPI(auth)


@pytest.fixture()
def full_snapshot():
    return Snapshot(
        car_name="Bellwood Auto",
        vehicle_state="online",
        online=True,
        battery_level=87.0,
        battery_range=208.15,
        est_battery_range=153.79,
        ideal_battery_range=210.5,
        charge_rate=22.0,
        minutes_to_full_charge=45.0,
        charger_voltage=240.0,
        charger_power=11.0,
        charger_actual_current=32.0,
        charging_state="Charging",
        speed=0.0,
        power=-11.0,
        latitude=41.097174,
        longitude=-73.770422,
        heading=284.0,
        shift_state="P",
        odometer=7469.486058,
        inside_temp=19.5,
        outside_temp=11.0,
        driver_temp_setting=21.7,
        passenger_temp_setting=21.5,
    )
