"""Agent configuration: packaged defaults, an optional user file, then env vars."""
import os
from pathlib import Path

import yaml

from utils.errors import ConfigError

CONFIG_DIR = Path(__file__).parent
_DEFAULT_CONFIG = CONFIG_DIR / "default_config.yaml"
DEFAULT_SOURCES_PATH = CONFIG_DIR / "sources.yaml"
DEFAULT_RULES_PATH = CONFIG_DIR / "alert_rules.yaml"

# (variable, key path, cast)
ENV_OVERRIDES = [
    ("DBWATCH_DB_PATH", ("database", "path"), str),
    ("DBWATCH_LOG_LEVEL", ("logging", "level"), str),
    ("DBWATCH_SOURCES_PATH", ("sources_path",), str),
    ("DBWATCH_RULES_PATH", ("rules_path",), str),
    ("DBWATCH_RENOTIFY_SECONDS", ("alerts", "renotify_seconds"), int),
]

_REQUIRED_SECTIONS = ("agent", "collection", "database", "retention", "alerts", "targets")


def _read_yaml(path):
    with open(path) as f:
        return yaml.safe_load(f) or {}


def merge_dicts(base, override):
    """Return ``base`` with ``override`` layered on top, nested mappings merged key by key."""
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = merge_dicts(current, value)
        else:
            merged[key] = value
    return merged


def _apply_env(config):
    for var, keys, cast in ENV_OVERRIDES:
        raw = os.environ.get(var)
        if not raw:
            continue
        try:
            value = cast(raw)
        except ValueError:
            raise ConfigError(f"{var}={raw!r} is not a valid {cast.__name__}")
        section = config
        for k in keys[:-1]:
            section = section.setdefault(k, {})
        section[keys[-1]] = value


def load_config(path=None):
    """Build the effective config dict. Raises ConfigError on any problem."""
    config = _read_yaml(_DEFAULT_CONFIG)
    if path:
        if not Path(path).exists():
            raise ConfigError(f"Config file not found: {path}")
        config = merge_dicts(config, _read_yaml(path))

    _apply_env(config)
    config["sources_path"] = str(config.get("sources_path") or DEFAULT_SOURCES_PATH)
    config["rules_path"] = str(config.get("rules_path") or DEFAULT_RULES_PATH)

    validate_config(config)
    return config


def _positive(config, section, key, allow_zero=False):
    value = float(config[section][key])
    if value < 0 or (value == 0 and not allow_zero):
        bound = ">= 0" if allow_zero else "> 0"
        raise ConfigError(f"{section}.{key} must be {bound}")


def validate_config(config):
    missing = [s for s in _REQUIRED_SECTIONS if s not in config]
    if missing:
        raise ConfigError(f"Missing required config section(s): {', '.join(missing)}")

    targets = config["targets"] or {}
    if not isinstance(targets, dict) or not targets:
        raise ConfigError("At least one target must be configured under 'targets'")
    for name, target in targets.items():
        if not isinstance(target, dict) or not target.get("url"):
            raise ConfigError(f"Target '{name}' needs a 'url'")

    _positive(config, "collection", "default_interval")
    _positive(config, "collection", "default_timeout")
    _positive(config, "retention", "horizon_days")
    _positive(config, "alerts", "renotify_seconds", allow_zero=True)
    if int(config["agent"]["meta_alert_after"]) < 1:
        raise ConfigError("agent.meta_alert_after must be >= 1")
