#!/usr/bin/env python3

import os
import sys
import threading
import time
from wsgiref.simple_server import WSGIRequestHandler, make_server

import yaml
from prometheus_client import make_wsgi_app
from prometheus_client.exposition import ThreadingWSGIServer

from auth import TeslaAPI, TeslaAuth, log
from metrics import REGISTRY, TeslaCollector, track_response
from snapshot import NoSnapshotError, SnapshotFetcher, poll_wait

DEFAULTS = {
    'token_file': 'tesla_token.json',
    'exporter_listen_addr': '127.0.0.1',
    'exporter_listen_port': 9102,
    'poll_interval_seconds': 0,
    'adaptive_polling': False,
    'cache_ttl_seconds': 30,
    'max_stale_seconds': 900,
    'wake_on_poll': False,
    'request_timeout_seconds': 10,
}

# env var -> (config key, type)
ENV_OVERRIDES = {
    'TESLA_ACCESS_TOKEN': ('access_token', str),
    'TESLA_REFRESH_TOKEN': ('refresh_token', str),
    'TESLA_TOKEN_FILE': ('token_file', str),
    'TESLA_VEHICLE_NAME': ('vehicle_name', str),
    'TESLA_WAKE_ON_POLL': ('wake_on_poll', lambda v: v.lower() in ('1', 'true', 'yes')),
    'EXPORTER_LISTEN_ADDR': ('exporter_listen_addr', str),
    'EXPORTER_LISTEN_PORT': ('exporter_listen_port', int),
    'POLL_INTERVAL_SECONDS': ('poll_interval_seconds', float),
    'CACHE_TTL_SECONDS': ('cache_ttl_seconds', float),
    'MAX_STALE_SECONDS': ('max_stale_seconds', float),
}

INDEX_PAGE = b"""<html>
<head><title>Tesla Exporter</title></head>
<body>
<h1>Tesla Exporter</h1>
<p><a href="/metrics">Metrics</a></p>
</body>
</html>
"""


def load_config(config_path=None, environ=None):
    """File values first, then environment overrides. The file is optional."""
    config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
    environ = os.environ if environ is None else environ
    config = dict(DEFAULTS)

    try:
        with open(config_path, 'r') as f:
            config.update(yaml.safe_load(f) or {})
        log(f"Config loaded from {config_path}", 'debug')
    except FileNotFoundError:
        log(f"{config_path} not found - using environment only", 'debug')
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in configuration file: {e}")

    for env_name, (key, cast) in ENV_OVERRIDES.items():
        if environ.get(env_name):
            try:
                config[key] = cast(environ[env_name])
            except ValueError:
                raise ValueError(f"Invalid value for {env_name}: {environ[env_name]!r}")
    return config


def make_app(registry=REGISTRY):
    """prometheus_client's WSGI app on /metrics, 503 while there is no data."""
    metrics_app = make_wsgi_app(registry)

    def app(environ, start_response):
        path = environ.get('PATH_INFO', '/')
        if path == '/':
            start_response('200 OK', [('Content-Type', 'text/html')])
            return [INDEX_PAGE]
        if path != '/metrics':
            start_response('404 Not Found', [('Content-Type', 'text/plain')])
            return [b'Not Found']

        # collect() runs before metrics_app calls start_response
        try:
            return metrics_app(environ, start_response)
        except NoSnapshotError as e:
            log(f"No vehicle data to serve: {e}", 'error')
            start_response('503 Service Unavailable', [('Content-Type', 'text/plain')])
            return [b'No vehicle data available\n']

    return app


class QuietHandler(WSGIRequestHandler):
    def log_message(self, format, *args):
        log(f"{self.address_string()} {format % args}", 'debug')


def start_server(port, addr='127.0.0.1', registry=REGISTRY):
    httpd = make_server(addr, port, make_app(registry),
                        server_class=ThreadingWSGIServer, handler_class=QuietHandler)
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    return httpd


def poll_loop(fetcher, config, stop_event):
    while not stop_event.is_set():
        snapshot = None
        try:
            snapshot = fetcher.refresh()
        except NoSnapshotError as e:
            log(f"Poll error: {e}", 'error')
        except Exception as e:
            log(f"Unexpected poll error: {e}", 'error')
        if config.get('adaptive_polling'):
            wait = poll_wait(snapshot)
        else:
            wait = config['poll_interval_seconds']
        log(f"Next poll in {wait}s", 'debug')
        stop_event.wait(wait)


def build(config):
    auth = TeslaAuth(config)
    if not auth.load_token():
        return None
    auth.session.hooks['response'].append(track_response)
    api = TeslaAPI(auth)
    return SnapshotFetcher(
        api,
        vehicle_name=config.get('vehicle_name'),
        cache_ttl=config['cache_ttl_seconds'],
        max_stale=config['max_stale_seconds'],
        wake_on_poll=config['wake_on_poll'],
    )


def main():
    log("Tesla Exporter starting", 'info')
    try:
        config = load_config()
    except ValueError as e:
        log(f"Config error: {e}", 'error')
        sys.exit(1)

    fetcher = build(config)
    if fetcher is None:
        log("Set TESLA_REFRESH_TOKEN or provide a token file", 'error')
        sys.exit(1)

    polling = bool(config.get('adaptive_polling')) or config['poll_interval_seconds'] > 0
    REGISTRY.register(TeslaCollector(fetcher, polling=polling))

    listen_addr = config['exporter_listen_addr']
    listen_port = int(config['exporter_listen_port'])
    httpd = start_server(listen_port, addr=listen_addr, registry=REGISTRY)
    log(f"Exporter ready → http://{listen_addr}:{listen_port}/metrics", 'info')

    stop_event = threading.Event()
    try:
        if polling:
            log("Background polling enabled", 'info')
            poll_loop(fetcher, config, stop_event)
        else:
            log("Fetching on demand per scrape", 'info')
            while True:
                time.sleep(3600)
    except KeyboardInterrupt:
        log("Exiting", 'info')
    finally:
        stop_event.set()
        httpd.shutdown()


if __name__ == "__main__":
    main()
