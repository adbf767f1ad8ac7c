"""Configuration loading from CLI args, env vars, and optional YAML file."""

import os
import logging
from dataclasses import dataclass

import yaml

logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes")


@dataclass(frozen=True)
class Config:
    use_polled_snapshot: bool = False   # dmesg polling instead of the journal feed
    console_disabled: bool = False
    full_kernel_output: bool = False
    output_path: str | None = None
    output_prefix: str = "dmerged"
    poll_interval: float = 1.0
    drain_timeout: float = 2.0
    log_level: str = "WARNING"


def load_yaml_config(path: str | None) -> dict:
    """Load settings from a YAML file. Returns empty dict if no path."""
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        logger.info("Loaded YAML config from %s", path)
        return data
    except FileNotFoundError:
        logger.warning("Config file %s not found, using defaults", path)
        return {}


def _resolve(cli_value, env_name: str, yaml_data: dict, yaml_key: str, default):
    """Pick a raw value: CLI beats env beats YAML beats default."""
    if cli_value is not None:
        return cli_value
    env_value = os.environ.get(env_name)
    if env_value is not None:
        return env_value
    return yaml_data.get(yaml_key, default)


def load_config(cli_args, yaml_data: dict) -> Config:
    """Build Config from defaults <- YAML <- env vars <- CLI args."""
    def cli(name):
        return getattr(cli_args, name, None)

    output_path = _resolve(cli("output"), "DMERG_OUTPUT", yaml_data, "output", Config.output_path)
    log_level = str(
        _resolve(cli("log_level"), "LOG_LEVEL", yaml_data, "log_level", Config.log_level)
    ).upper()
    if log_level not in LOG_LEVELS:
        raise ValueError(f"Unknown log level: {log_level}")
    poll_interval = float(
        _resolve(cli("poll_interval"), "DMERG_POLL_INTERVAL", yaml_data, "poll_interval",
                 Config.poll_interval)
    )
    if not poll_interval > 0:
        raise ValueError(f"Poll interval must be positive: {poll_interval}")

    return Config(
        use_polled_snapshot=_parse_bool(
            _resolve(cli("dmesg"), "DMERG_DMESG", yaml_data, "dmesg", Config.use_polled_snapshot)
        ),
        console_disabled=_parse_bool(
            _resolve(cli("console_off"), "DMERG_CONSOLE_OFF", yaml_data, "console_off",
                     Config.console_disabled)
        ),
        full_kernel_output=_parse_bool(
            _resolve(cli("full"), "DMERG_FULL", yaml_data, "full", Config.full_kernel_output)
        ),
        output_path=str(output_path) if output_path else None,
        output_prefix=str(
            _resolve(None, "DMERG_OUTPUT_PREFIX", yaml_data, "output_prefix", Config.output_prefix)
        ),
        poll_interval=poll_interval,
        drain_timeout=float(
            _resolve(None, "DMERG_DRAIN_TIMEOUT", yaml_data, "drain_timeout", Config.drain_timeout)
        ),
        log_level=log_level,
    )
