import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from jsonschema import validate as jsonschema_validate, ValidationError as SchemaValidationError

from deployer_core.errors import ConfigurationError
from deployer_core.models import KeyEquals, NoFilter


DEFAULT_ENV_FILE = '/etc/swarm-ecr-deployer/.env'

CONFIG_SCHEMA = {
    'type': 'object',
    'properties': {
        'queue_name': {'type': 'string', 'minLength': 1},
        'filter_label': {'type': 'string'},
        'wait_seconds': {'type': 'integer', 'minimum': 0, 'maximum': 20},
        'max_messages': {'type': 'integer', 'minimum': 1, 'maximum': 10},
        'error_backoff': {'type': 'number', 'minimum': 0},
        'max_consecutive_failures': {'type': 'integer', 'minimum': 1},
    },
}

# env var -> (config key, converter)
ENV_OVERRIDES = {
    'QUEUE_NAME': ('queue_name', str),
    'FILTER_LABEL': ('filter_label', str),
    'WAIT_SECONDS': ('wait_seconds', int),
    'MAX_MESSAGES': ('max_messages', int),
    'ERROR_BACKOFF': ('error_backoff', float),
    'MAX_CONSECUTIVE_FAILURES': ('max_consecutive_failures', int),
}


@dataclass
class Settings:
    """Process-wide configuration, fixed at startup."""
    queue_name: str
    label_filter: Any = field(default_factory=NoFilter)  # NoFilter or KeyEquals
    wait_seconds: int = 20
    max_messages: int = 10
    error_backoff: float = 5.0
    max_consecutive_failures: int = 5
    quiet: bool = False
    verbosity: int = 0
    log_format: str = 'plain'
    log_dir: Optional[str] = None
    metrics_port: Optional[int] = None
    metrics_addr: str = '0.0.0.0'
    webhook_url: Optional[str] = None


def parse_label_filter(text: Optional[str]):
    """Parse a ``key=value`` filter; None or empty means every service."""
    if not text:
        return NoFilter()
    key, sep, value = text.partition('=')
    if not sep or not key:
        raise ConfigurationError(f"Filter label {text} expected to be on format key=value")
    return KeyEquals(key, value)


def load_env_file(env_file: Optional[str] = None) -> bool:
    env_file = env_file or os.getenv('ENV_FILE', DEFAULT_ENV_FILE)
    if env_file and os.path.exists(env_file):
        return load_dotenv(env_file)
    return False


def load_config_file(config_file: Optional[str]) -> Dict[str, Any]:
    if not config_file:
        return {}
    try:
        with open(config_file, 'r') as f:
            config = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Invalid configuration file {config_file}: {e}") from e
    validate_config(config, config_file)
    return config


def validate_config(config: Dict[str, Any], source: str) -> None:
    try:
        jsonschema_validate(config, CONFIG_SCHEMA)
    except SchemaValidationError as e:
        raise ConfigurationError(f"Configuration validation error in {source}: {e.message}") from e


def env_overrides(environ=None) -> Dict[str, Any]:
    environ = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}
    for var, (key, convert) in ENV_OVERRIDES.items():
        raw = environ.get(var)
        if raw is None or raw == '':
            continue
        try:
            overrides[key] = convert(raw)
        except ValueError as e:
            raise ConfigurationError(f"Environment variable {var}={raw!r} is invalid: {e}") from e
    validate_config(overrides, 'environment')
    return overrides


def build_settings(args, environ=None) -> Settings:
    """Merge defaults, config file, environment and CLI (later wins)."""
    environ = os.environ if environ is None else environ
    config: Dict[str, Any] = {}
    config.update(load_config_file(getattr(args, 'config', None) or environ.get('CONFIG_FILE')))
    config.update(env_overrides(environ))
    if getattr(args, 'queue_name', None):
        config['queue_name'] = args.queue_name
    if getattr(args, 'filter_label', None):
        config['filter_label'] = args.filter_label

    if not config.get('queue_name'):
        raise ConfigurationError("A queue name is required (--queue or QUEUE_NAME)")

    metrics_port = environ.get('METRICS_PORT')
    try:
        metrics_port = int(metrics_port) if metrics_port else None
    except ValueError as e:
        raise ConfigurationError(f"METRICS_PORT={metrics_port!r} is not a port number") from e

    settings = Settings(
        queue_name=config['queue_name'],
        label_filter=parse_label_filter(config.get('filter_label')),
        quiet=bool(getattr(args, 'quiet', False)),
        verbosity=int(getattr(args, 'verbose', 0) or 0),
        log_format=environ.get('LOG_FORMAT', 'plain').lower(),
        log_dir=environ.get('LOG_DIR') or None,
        metrics_port=metrics_port,
        metrics_addr=environ.get('METRICS_ADDR', '0.0.0.0'),
        webhook_url=environ.get('WEBHOOK_URL') or None,
    )
    for key in ('wait_seconds', 'max_messages', 'error_backoff', 'max_consecutive_failures'):
        if key in config:
            setattr(settings, key, config[key])
    return settings
