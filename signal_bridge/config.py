"""
Configuration

Settings come from settings.yaml (if present) with environment overrides.
Validated once at startup; the bridge refuses to start half-configured.
"""

import logging
import os
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import yaml

from .errors import ConfigurationError
from .triggers import DEFAULT_AI_PREFIX

logger = logging.getLogger(__name__)

CONFIG_PATHS = [
    Path('./config/settings.yaml'),
    Path('../config/settings.yaml'),
    Path.home() / '.config/signal-bridge/settings.yaml',
]

DEFAULTS = {
    'ai_prefix': DEFAULT_AI_PREFIX,
    'poll_interval': 5,
    'sweep_interval': 60,
    'pending_ttl': 300,
    'completion_timeout': 30,
    'receive_timeout': 15,
    'send_timeout': 30,
    'shutdown_grace': 60,
}

NUMERIC_KEYS = tuple(k for k in DEFAULTS if k != 'ai_prefix')

# env var -> (section, key); section None means top level
ENV_OVERRIDES = {
    'AGENT_URL': (None, 'agent_url'),
    'AI_PREFIX': (None, 'ai_prefix'),
    'SIGNAL_ACCOUNT': ('signal', 'account'),
    'SIGNAL_CLI_PATH': ('paths', 'signal_cli'),
}


def load_config(path: Optional[Path] = None) -> dict:
    """Load settings.yaml from `path` or the first default location found."""
    candidates = [Path(path)] if path else CONFIG_PATHS

    for candidate in candidates:
        if candidate.exists():
            logger.info(f"Loading config: {candidate}")
            try:
                with open(candidate, encoding='utf-8') as f:
                    data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid YAML in {candidate}: {e}") from e
            if data is None:
                return {}
            if not isinstance(data, dict):
                raise ConfigurationError(f"{candidate} must contain a mapping")
            return data

    if path:
        raise ConfigurationError(f"Config file not found: {path}")

    logger.info("No settings.yaml found, using environment only")
    return {}


def apply_env_overrides(config: dict, environ=None) -> dict:
    """Environment variables win over file settings."""
    environ = os.environ if environ is None else environ
    for var, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(var)
        if value is None:
            continue
        if section:
            # a bare `signal:` key loads as None
            if config.get(section) is None:
                config[section] = {}
            if not isinstance(config[section], dict):
                raise ConfigurationError(f"'{section}' must be a mapping (needed for {var})")
            config[section][key] = value
        else:
            config[key] = value
    return config


def validate_agent_url(url) -> str:
    """The agent URL must be an absolute http(s) address."""
    if not url:
        raise ConfigurationError("agent_url is required (set AGENT_URL or agent_url in settings.yaml)")
    parsed = urlparse(str(url))
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        raise ConfigurationError(f"invalid agent URL: {url} (must start with http:// or https://)")
    return str(url)


def validate_config(config: dict) -> dict:
    """Fill defaults and check every value. Raises ConfigurationError."""
    for key, value in DEFAULTS.items():
        if config.get(key) is None:
            config[key] = value

    config['agent_url'] = validate_agent_url(config.get('agent_url'))

    prefix = str(config['ai_prefix']).strip()
    if not prefix:
        raise ConfigurationError("ai_prefix must not be empty")
    config['ai_prefix'] = prefix

    for key in NUMERIC_KEYS:
        try:
            value = float(config[key])
        except (TypeError, ValueError):
            raise ConfigurationError(f"{key} must be a number, got {config[key]!r}")
        if value <= 0:
            raise ConfigurationError(f"{key} must be positive, got {value}")
        config[key] = value

    for section in ('signal', 'paths'):
        if config.get(section) is None:
            config[section] = {}
        if not isinstance(config[section], dict):
            raise ConfigurationError(f"'{section}' must be a mapping")

    triggers = config.get('triggers')
    if triggers is not None:
        if not isinstance(triggers, list) or not triggers:
            raise ConfigurationError("triggers must be a non-empty list")
        for entry in triggers:
            if not isinstance(entry, dict) or not entry.get('prefix'):
                raise ConfigurationError(f"trigger entry needs a prefix: {entry!r}")

    return config


def load_settings(path: Optional[Path] = None, environ=None) -> dict:
    """load_config + env overrides + validation."""
    config = load_config(path)
    apply_env_overrides(config, environ)
    return validate_config(config)
