"""
Utility functions for the signal backtester.
"""

import logging
import logging.handlers
import os
import re
from pathlib import Path
from typing import Dict
import yaml
import colorlog

from shared.constants import (
    DEFAULT_ALLOW_PARTIAL_FILL,
    DEFAULT_CLOSE_ON_EXPIRY,
    DEFAULT_INITIAL_CAPITAL,
    DEFAULT_MAX_POSITIONS,
    DEFAULT_POSITION_SIZE,
    DEFAULT_RISK_FREE_RATE,
    DEFAULT_TRANSACTION_COST,
)
from shared.exceptions import ConfigError
from shared.types import AppConfig

# ${NAME} or ${NAME:-fallback}
_ENV_REF = re.compile(r'\$\{(\w+)(?::-([^}]*))?\}')

BACKTEST_DEFAULTS = {
    'initial_capital': DEFAULT_INITIAL_CAPITAL,
    'position_size': DEFAULT_POSITION_SIZE,
    'transaction_cost': DEFAULT_TRANSACTION_COST,
    'max_positions': DEFAULT_MAX_POSITIONS,
    'close_on_expiry': DEFAULT_CLOSE_ON_EXPIRY,
    'allow_partial_fill': DEFAULT_ALLOW_PARTIAL_FILL,
    'risk_free_rate': DEFAULT_RISK_FREE_RATE,
}


def _resolve_env_vars(obj):
    """Recursively substitute environment references in string values.

    ``${NAME}`` is left untouched when NAME is unset; ``${NAME:-x}`` falls
    back to ``x``.
    """
    if isinstance(obj, str):
        def replacer(m):
            value = os.environ.get(m.group(1))
            if value is not None:
                return value
            return m.group(2) if m.group(2) is not None else m.group(0)
        return _ENV_REF.sub(replacer, obj)
    if isinstance(obj, dict):
        return {k: _resolve_env_vars(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_resolve_env_vars(i) for i in obj]
    return obj


def load_config(config_file: str = 'config.yaml') -> Dict:
    """
    Load the YAML config, resolve environment references and fill in
    backtest defaults for any key the file leaves out.

    Args:
        config_file: Path to config file

    Returns:
        Configuration dictionary
    """
    from dotenv import load_dotenv
    load_dotenv()

    config_path = Path(config_file)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_file}")

    with open(config_path, 'r') as f:
        config = yaml.safe_load(f) or {}

    config = _resolve_env_vars(config)
    if isinstance(config.get('backtest'), dict):
        config['backtest'] = {**BACKTEST_DEFAULTS, **config['backtest']}
    return config


def _level(name, default=logging.INFO) -> int:
    return getattr(logging, str(name).upper(), default) if name else default


def setup_logging(config: Dict):
    """
    Configure the root logger from the ``logging:`` section.

    Keys: ``level``, ``file`` (rotating file handler, off when empty),
    ``max_bytes`` / ``backup_count`` for rotation, ``console`` (colored
    stderr handler, on by default) and ``levels``, a mapping of logger
    name to level for per-module overrides such as
    ``{backtest.ledger: WARNING}`` on long runs.
    """
    log_config = config.get('logging') or {}
    handlers = []

    if log_config.get('file'):
        log_file = Path(log_config['file'])
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=int(log_config.get('max_bytes', 10 * 1024 * 1024)),
            backupCount=int(log_config.get('backup_count', 5)),
        )
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))
        handlers.append(file_handler)

    if log_config.get('console', True):
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(colorlog.ColoredFormatter(
            '%(log_color)s%(asctime)s %(levelname)-8s%(reset)s %(name)s: %(message)s',
            datefmt='%H:%M:%S',
            log_colors={
                'DEBUG': 'cyan',
                'INFO': 'green',
                'WARNING': 'yellow',
                'ERROR': 'red',
                'CRITICAL': 'red,bg_white',
            },
        ))
        handlers.append(console_handler)

    logging.basicConfig(
        level=_level(log_config.get('level')),
        handlers=handlers,
        force=True,
    )

    for name, level in (log_config.get('levels') or {}).items():
        logging.getLogger(name).setLevel(_level(level))


def validate_config(config: AppConfig) -> None:
    """
    Validate configuration.  Raises ``ConfigError`` on invalid input.

    Args:
        config: Configuration dictionary
    """
    required_sections = ['backtest', 'logging']

    for section in required_sections:
        if section not in config:
            raise ConfigError(f"Missing required config section: {section}")

    bt = config['backtest'] or {}

    try:
        initial_capital = float(bt.get('initial_capital', 1))
        position_size = float(bt.get('position_size', 1))
        transaction_cost = float(bt.get('transaction_cost', 0))
        max_positions = bt.get('max_positions', 1)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid backtest parameter: {e}")

    if initial_capital <= 0:
        raise ConfigError("initial_capital must be positive")

    if position_size <= 0:
        raise ConfigError("position_size must be positive")

    if transaction_cost < 0:
        raise ConfigError("transaction_cost must be non-negative")

    if not isinstance(max_positions, int) or isinstance(max_positions, bool) or max_positions < 1:
        raise ConfigError("max_positions must be an integer >= 1")

    for flag in ('close_on_expiry', 'allow_partial_fill'):
        if flag in bt and not isinstance(bt[flag], bool):
            raise ConfigError(f"{flag} must be true or false")
