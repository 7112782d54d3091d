# routekeeper/config.py
import copy
import os
from typing import List, Optional, Tuple

import yaml
from dotenv import load_dotenv

from .errors import ConfigurationError
from .models import Asset

DEFAULTS: dict = {
    'server': {'host': '0.0.0.0', 'port': 3000},
    'upstream': {'url': None, 'exchange': 'binance', 'timeout_ms': 10000, 'quote_timeout_s': 15},
    'assets': [],
    'pairs': [],
    'schedule': {
        'refresh_interval_s': 60,
        'heartbeat_interval_s': 5,
        'uptime_interval_s': 1,
        'backoff_initial_s': 5,
        'backoff_max_s': 60,
        'staleness_threshold_s': None,   # defaults to 2x refresh interval
        'shutdown_grace_s': 10,
    },
    'readiness': {'failure_threshold': 3},
    'optimizer': {'max_hops': 4},
    'storage': {
        'log_dir': 'logs',
        'heartbeat_log': 'heartbeat.log',
        'snapshot_file': 'routes.json',
        'activity_log': 'activity.csv',
    },
    'logging': {'level': 'INFO'},
    'system': {'test_mode': False},
    'synthetic': {'fee_bps': 0, 'rates': []},
}


def _merge(base: dict, override: dict) -> dict:
    out = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = value
    return out


def _truthy(raw: str) -> bool:
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


def apply_env(config: dict, environ=None) -> dict:
    """Environment wins over the YAML file."""
    env = os.environ if environ is None else environ
    url = env.get('UPSTREAM_URL') or env.get('INFURA_URL')
    if url:
        config['upstream']['url'] = url
    port = env.get('PORT') or env.get('port')
    if port:
        config['server']['port'] = port
    if env.get('TEST_MODE'):
        config['system']['test_mode'] = _truthy(env['TEST_MODE'])
    if env.get('LOG_LEVEL'):
        config['logging']['level'] = env['LOG_LEVEL'].upper()
    return config


def validate(config: dict) -> dict:
    try:
        config['server']['port'] = int(config['server']['port'])
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid port: {config['server']['port']!r}") from None
    if not 0 < config['server']['port'] < 65536:
        raise ConfigurationError(f"Port out of range: {config['server']['port']}")

    sched = config['schedule']
    for key in ('refresh_interval_s', 'heartbeat_interval_s', 'uptime_interval_s',
                'backoff_initial_s', 'backoff_max_s', 'shutdown_grace_s'):
        try:
            sched[key] = float(sched[key])
        except (TypeError, ValueError):
            raise ConfigurationError(f"schedule.{key} must be a number") from None
        if sched[key] <= 0:
            raise ConfigurationError(f"schedule.{key} must be positive")
    if sched['staleness_threshold_s'] is None:
        sched['staleness_threshold_s'] = sched['refresh_interval_s'] * 2

    if int(config['readiness']['failure_threshold']) < 1:
        raise ConfigurationError("readiness.failure_threshold must be at least 1")

    if not config['assets']:
        raise ConfigurationError("No assets configured")
    symbols = set()
    for entry in config['assets']:
        if not isinstance(entry, dict) or not entry.get('symbol'):
            raise ConfigurationError(f"Asset entry needs a symbol: {entry!r}")
        symbols.add(entry['symbol'])
    for pair in config['pairs']:
        if not isinstance(pair, (list, tuple)) or len(pair) != 2:
            raise ConfigurationError(f"Pair must be [from, to]: {pair!r}")
        unknown = [s for s in pair if s not in symbols]
        if unknown:
            raise ConfigurationError(f"Pair {pair} references unknown asset(s) {unknown}")
    return config


def load_config(path: str = "config.yaml", environ=None, use_dotenv: bool = True) -> dict:
    """
    Reads the YAML file, layers defaults underneath and environment on top,
    then validates. Raises ConfigurationError on anything unusable.
    """
    if use_dotenv:
        load_dotenv()
    raw: dict = {}
    if path and os.path.exists(path):
        try:
            with open(path, "r") as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Malformed config file {path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigurationError(f"Config file {path} must contain a mapping")
    config = apply_env(_merge(DEFAULTS, raw), environ)
    return validate(config)


def parse_assets(config: dict) -> List[Asset]:
    return [Asset(e['symbol'], int(e.get('decimals', 18))) for e in config['assets']]


def parse_pairs(config: dict) -> List[Tuple[str, str]]:
    return [(a, b) for a, b in config['pairs']]


def storage_path(config: dict, key: str) -> str:
    storage = config['storage']
    return os.path.join(storage['log_dir'], storage[key])


def require_upstream(config: dict) -> Optional[str]:
    """Outside test mode the upstream url must be set before serving."""
    url = config['upstream'].get('url')
    if not url and not config['system']['test_mode']:
        raise ConfigurationError("UPSTREAM_URL is not configured")
    return url
