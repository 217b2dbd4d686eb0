"""
YAML configuration for the trading bot.

Secrets stay out of the file: any string may carry ${NAME} or
${NAME:fallback} placeholders that are filled from the environment when the
file is loaded.
"""
import os
import re
from datetime import time
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

CONFIG_PATH_ENV = "GAP_PULLBACK_CONFIG"
DEFAULT_CONFIG_PATH = "config/config.yaml"

_PLACEHOLDER = re.compile(r'\$\{(?P<name>[^}:]+)(?::(?P<fallback>[^}]*))?\}')
_MISSING = object()


def _fill_placeholder(match: re.Match) -> str:
    return os.environ.get(match.group('name'), match.group('fallback') or "")


def resolve_env_vars(value: Any) -> Any:
    """
    Fill ${NAME} / ${NAME:fallback} placeholders in every string of a
    loaded YAML tree. Unset names without a fallback become "".
    """
    if isinstance(value, str):
        return _PLACEHOLDER.sub(_fill_placeholder, value)
    if isinstance(value, dict):
        return {key: resolve_env_vars(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return type(value)(resolve_env_vars(item) for item in value)
    return value


def default_config_path() -> str:
    """Config path from $GAP_PULLBACK_CONFIG, else config/config.yaml."""
    return os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Read the bot configuration.

    Args:
        config_path: YAML file; defaults to default_config_path()

    Returns:
        Configuration tree with placeholders resolved; {} for an empty file

    Raises:
        FileNotFoundError: If the file does not exist
        yaml.YAMLError: If the file is not valid YAML
    """
    path = Path(config_path or default_config_path())
    if not path.is_file():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    raw = yaml.safe_load(path.read_text(encoding='utf-8'))
    return resolve_env_vars(raw or {})


def validate_config(config: Dict[str, Any]) -> None:
    """
    Validate numeric ranges and trading-clock ordering.

    Broker credentials are not checked here; a client without
    them reports is_configured() == False and the bot refuses to start.

    Args:
        config: Configuration dictionary

    Raises:
        ValueError: If configuration is invalid
    """
    screening = config.get('screening', {})
    if to_decimal(screening.get('min_gap_pct', 2.0)) >= to_decimal(screening.get('max_gap_pct', 7.0)):
        raise ValueError("screening.min_gap_pct must be < screening.max_gap_pct")
    if int(screening.get('max_watchlist_size', 10)) < 1:
        raise ValueError("screening.max_watchlist_size must be >= 1")

    entry = config.get('entry', {})
    if to_decimal(entry.get('min_pullback_pct', 1.5)) >= to_decimal(entry.get('max_pullback_pct', 3.0)):
        raise ValueError("entry.min_pullback_pct must be < entry.max_pullback_pct")
    if int(entry.get('min_pullback_minutes', 3)) > int(entry.get('max_pullback_minutes', 15)):
        raise ValueError("entry.min_pullback_minutes must be <= entry.max_pullback_minutes")

    positive_fields = [
        'entry.high_threshold_pct',
        'entry.min_pullback_pct',
        'entry.bounce_threshold_pct',
        'exit.tp1_pct',
        'exit.tp3_pct',
        'risk.stop_loss_pct',
        'risk.trailing_stop_pct',
    ]
    for field in positive_fields:
        value = get_config_value(config, field)
        if value is not None and to_decimal(value) <= 0:
            raise ValueError(f"{field} must be > 0")

    ratio = to_decimal(get_config_value(config, 'risk.position_size_ratio', 0.1))
    if ratio <= 0 or ratio > 1:
        raise ValueError("risk.position_size_ratio must be in (0, 1]")

    if int(get_config_value(config, 'bot.max_positions', 5)) < 1:
        raise ValueError("bot.max_positions must be >= 1")

    trading = config.get('trading', {})
    boundaries = [
        ('pre_market_start', '08:30'),
        ('market_open', '09:00'),
        ('screening_end', '09:10'),
        ('final_exit', '11:20'),
        ('trading_end', '11:30'),
    ]
    previous = None
    for name, default in boundaries:
        current = parse_time_of_day(trading.get(name, default))
        if previous is not None and current <= previous[1]:
            raise ValueError(f"trading.{name} must be later than trading.{previous[0]}")
        previous = (name, current)


def get_config_value(config: Dict[str, Any], path: str, default: Any = None) -> Any:
    """Look up 'section.key' in the config tree, returning default when absent."""
    node: Any = config
    for key in path.split('.'):
        node = node.get(key, _MISSING) if isinstance(node, dict) else _MISSING
        if node is _MISSING:
            return default
    return node


def to_decimal(value: Any) -> Decimal:
    """Convert a YAML scalar to Decimal without float artifacts."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def parse_time_of_day(value: Any) -> time:
    """
    Parse an "HH:MM" string into a time.

    YAML 1.1 reads unquoted 08:30 as sexagesimal minutes, so ints are
    accepted too.
    """
    if isinstance(value, time):
        return value
    if isinstance(value, int):
        return time(value // 60, value % 60)
    hour, minute = map(int, str(value).split(':'))
    return time(hour, minute)
