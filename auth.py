import requests
import json
import os
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

LOG_LEVEL = os.getenv('LOG_LEVEL', 'info').lower()


def log(msg, level='info'):
    ts = datetime.now().isoformat()
    if LOG_LEVEL == 'debug' or level == 'info':
        print(f"[{ts}] [{level.upper()}] {msg}")


class TeslaApiError(Exception):
    """Upstream call failed (network, non-2xx, unexpected payload)."""

    def __init__(self, message: str, status_code: Optional[int] = None, endpoint: str = ""):
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class LoginFailure(TeslaApiError):
    """Access token rejected and the refresh token could not replace it."""

    def __init__(self, message: str = "Failed to login", **kwargs):
        super().__init__(message, **kwargs)


class VehicleUnavailable(TeslaApiError):
    """Vehicle is asleep or offline and cannot answer data requests."""


class WakeTimeout(TeslaApiError):
    """Vehicle did not come online after repeated wake_up calls."""


class TeslaAuth:
    # OAuth2 endpoint (owner API tokens are issued by the SSO service)
    TOKEN_URL = "https://auth.tesla.com/oauth2/v3/token"
    CLIENT_ID = "ownerapi"
    SCOPE = "openid email offline_access"

    TOKEN_EXPIRY_SAFETY_MARGIN_SECONDS = 60
    REQUEST_TIMEOUT_SECONDS = 10

    def __init__(self, config: Dict, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or requests.Session()
        self.token_file = Path(config.get('token_file') or "tesla_token.json")
        self.timeout = config.get('request_timeout_seconds', self.REQUEST_TIMEOUT_SECONDS)
        self.access_token: Optional[str] = config.get('access_token')
        self.refresh_token_value: Optional[str] = config.get('refresh_token')
        self.expires_at: float = 0.0
        self.refresh_count = 0
        self._refresh_lock = threading.Lock()

    def load_token(self) -> bool:
        """Prefer the token file over configured tokens; it holds the rotated pair."""
        if self.token_file.exists():
            try:
                token_data = json.loads(self.token_file.read_text())
                if 'refresh_token' in token_data:
                    self.access_token = token_data.get('access_token')
                    self.refresh_token_value = token_data['refresh_token']
                    self.expires_at = token_data.get('expires_at', 0.0)
                    log(f"Token loaded from {self.token_file.name}")
                else:
                    log(f"{self.token_file.name} has no refresh_token - ignoring", 'warning')
            except (ValueError, OSError) as e:
                log(f"Token parse error: {e}", 'error')

        if not self.refresh_token_value:
            log("No refresh_token configured", 'error')
            return False
        return True

    def save_token(self, token_data: Dict) -> None:
        """Always keep the NEW refresh_token from the API response"""
        self.access_token = token_data['access_token']
        self.refresh_token_value = token_data.get('refresh_token', self.refresh_token_value)
        self.expires_at = (
            time.time() +
            token_data.get('expires_in', 0) -
            self.TOKEN_EXPIRY_SAFETY_MARGIN_SECONDS
        )
        stored = dict(token_data)
        stored['refresh_token'] = self.refresh_token_value
        stored['expires_at'] = self.expires_at
        try:
            self.token_file.write_text(json.dumps(stored, indent=2))
            log("Token saved (new refresh_token stored)")
        except OSError as e:
            log(f"Could not write {self.token_file}: {e}", 'error')

    def is_expired(self) -> bool:
        if not self.access_token:
            return True
        return bool(self.expires_at) and time.time() >= self.expires_at

    def refresh_token(self, stale_access_token: Optional[str]) -> None:
        """Single refresh attempt, serialised across threads.

        When ``stale_access_token`` no longer matches the current token another
        caller has already refreshed while we waited on the lock.
        """
        with self._refresh_lock:
            if self.access_token != stale_access_token:
                log("Token already refreshed by another request", 'debug')
                return

            log("Refreshing token...")
            refresh_data = {
                'grant_type': 'refresh_token',
                'client_id': self.CLIENT_ID,
                'refresh_token': self.refresh_token_value,
                'scope': self.SCOPE,
            }
            self.refresh_count += 1

            try:
                response = self.session.post(
                    self.TOKEN_URL,
                    json=refresh_data,
                    timeout=self.timeout,
                )
            except requests.exceptions.RequestException as e:
                log(f"Network error during refresh: {e}", 'error')
                raise TeslaApiError(f"Token refresh failed: {e}", endpoint=self.TOKEN_URL) from e

            if response.status_code in (400, 401):
                log(f"Refresh rejected: {response.status_code} - {response.text[:200]}", 'error')
                raise LoginFailure(status_code=response.status_code, endpoint=self.TOKEN_URL)
            if response.status_code != 200:
                log(f"Refresh failed: {response.status_code} - {response.text[:200]}", 'error')
                raise TeslaApiError(
                    f"Token refresh failed: {response.status_code}",
                    status_code=response.status_code,
                    endpoint=self.TOKEN_URL,
                )

            try:
                self.save_token(response.json())
            except (ValueError, KeyError) as e:
                log(f"Invalid token response: {e}", 'error')
                raise TeslaApiError(f"Invalid token response: {e}", endpoint=self.TOKEN_URL) from e
            log("Token refreshed")


class TeslaAPI:
    BASE_URL = "https://owner-api.teslamotors.com"
    USER_AGENT = "tesla-exporter"

    WAKE_ATTEMPTS = 6
    WAKE_DELAY_SECONDS = 5

    def __init__(self, auth: TeslaAuth):
        self.auth = auth
        self.session = auth.session
        self.session.headers.update({
            'User-Agent': self.USER_AGENT,
            'Accept': 'application/json',
        })

    def _request(self, method: str, path: str) -> Dict:
        """Call the owner API, refreshing the token once on 401."""
        url = f"{self.BASE_URL}{path}"

        refreshed = False
        if self.auth.is_expired():
            self.auth.refresh_token(self.auth.access_token)
            refreshed = True

        sent_token = self.auth.access_token
        response = self._send(method, url, sent_token)
        if response.status_code == 401:
            if refreshed:
                log(f"401 on {path} with a fresh token", 'error')
                raise LoginFailure(status_code=401, endpoint=path)
            log(f"401 on {path} - attempting refresh", 'warning')
            self.auth.refresh_token(sent_token)
            response = self._send(method, url, self.auth.access_token)
            log(f"Retry [{path}]: {response.status_code}", 'warning')
            if response.status_code == 401:
                raise LoginFailure(status_code=401, endpoint=path)

        if response.status_code == 408:
            raise VehicleUnavailable("Request Timeout vehicle unavailable", status_code=408, endpoint=path)

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.status_code != 200:
            error = payload.get('error', '') if isinstance(payload, dict) else ''
            if error and error.startswith('vehicle unavailable'):
                raise VehicleUnavailable(error, status_code=response.status_code, endpoint=path)
            log(f"[{path}] {response.status_code} {error or response.text[:200]}", 'error')
            raise TeslaApiError(
                f"Unknown Error: {response.status_code} {error}".strip(),
                status_code=response.status_code,
                endpoint=path,
            )

        if not isinstance(payload, dict) or 'response' not in payload:
            raise TeslaApiError("Missing 'response' in reply", status_code=200, endpoint=path)
        log(f"[{path}] OK", 'debug')
        return payload['response']

    def _send(self, method: str, url: str, access_token: Optional[str]) -> requests.Response:
        try:
            return self.session.request(
                method,
                url,
                headers={'Authorization': f"Bearer {access_token}"},
                timeout=self.auth.timeout,
            )
        except requests.exceptions.RequestException as e:
            log(f"Network error on {url}: {e}", 'error')
            raise TeslaApiError(f"Network error: {e}", endpoint=url) from e

    def get_vehicle_list(self) -> List[Dict]:
        vehicles = self._request('GET', "/api/1/vehicles")
        log(f"Found {len(vehicles)} vehicles: {[v.get('display_name') for v in vehicles]}", 'debug')
        return vehicles

    def get_vehicle_data(self, vehicle_id) -> Dict:
        return self._request('GET', f"/api/1/vehicles/{vehicle_id}/vehicle_data")

    def wake_vehicle(self, vehicle_id) -> Dict:
        return self._request('POST', f"/api/1/vehicles/{vehicle_id}/wake_up")

    def wake_vehicle_poll(self, vehicle_id) -> Dict:
        vehicle = self.wake_vehicle(vehicle_id)
        attempts = 0
        while vehicle.get('state') != 'online' and attempts < self.WAKE_ATTEMPTS:
            time.sleep(self.WAKE_DELAY_SECONDS)
            vehicle = self.wake_vehicle(vehicle_id)
            attempts += 1
        if vehicle.get('state') != 'online':
            raise WakeTimeout("Cannot wake vehicle", endpoint=f"/api/1/vehicles/{vehicle_id}/wake_up")
        log(f"Vehicle {vehicle_id} awake after {attempts} retries")
        return vehicle
