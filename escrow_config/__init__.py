"""
escrow_config -- single public entrypoint for escrow configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  Services receive engine parameter objects
    built from the returned ``EscrowEngineConfig`` by
    ``escrow_config.bridges``.

Architecture position:
    Configuration -- YAML-driven, validated at load time.  This package
    sits above ``escrow_kernel`` / ``escrow_engines`` and below
    ``escrow_services``.  The kernel and the engines MUST NEVER import
    from ``escrow_config``.

Invariants enforced:
    - Single entrypoint: all runtime config flows through ``get_active_config()``.
    - Load-time validation: an invalid set never reaches the engines.
    - Deterministic identity: the same YAML always yields the same checksum.

Failure modes:
    - ``FileNotFoundError`` -- the configuration file does not exist.
    - ``ConfigurationError`` -- malformed YAML, bad values or failed validation.

Audit relevance:
    Every successful ``get_active_config()`` call emits an
    ``escrow_config_trace`` log entry with the config_id, version and
    checksum, tying every release back to the configuration that priced it.
"""

from __future__ import annotations

import os
from pathlib import Path

import yaml

from escrow_config.loader import load_config
from escrow_config.schema import EscrowEngineConfig
from escrow_config.validator import ConfigValidationResult, validate_configuration
from escrow_kernel.exceptions import ConfigurationError
from escrow_kernel.logging_config import get_logger

__all__ = [
    "ConfigValidationResult",
    "EscrowEngineConfig",
    "get_active_config",
    "validate_configuration",
]

logger = get_logger("config")

CONFIG_PATH_ENV = "ESCROW_CONFIG_PATH"

# Default configuration set shipped with the package
_DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "default.yaml"


def _resolve_path(config_path: Path | str | None) -> Path:
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get(CONFIG_PATH_ENV)
    if env_path:
        return Path(env_path)
    return _DEFAULT_CONFIG_PATH


def get_active_config(config_path: Path | str | None = None) -> EscrowEngineConfig:
    """The ONLY public configuration entrypoint.

    The file is ``config_path`` when given, else ``$ESCROW_CONFIG_PATH``,
    else the packaged ``sets/default.yaml``.

    Raises:
        FileNotFoundError: If the configuration file does not exist.
        ConfigurationError: If the file cannot be parsed or fails validation.
    """
    path = _resolve_path(config_path)

    try:
        config = load_config(path)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"invalid YAML in {path}: {exc}") from exc
    except KeyError as exc:
        raise ConfigurationError(f"missing required key {exc} in {path}") from exc

    validation = validate_configuration(config)
    for warning in validation.warnings:
        logger.warning("escrow_config_warning", extra={"warning": warning})
    if not validation.is_valid:
        raise ConfigurationError(
            "Configuration validation failed:\n"
            + "\n".join(f"  - {e}" for e in validation.errors)
        )

    logger.info(
        "escrow_config_trace",
        extra={
            "trace_type": "escrow_config_trace",
            "config_id": config.config_id,
            "config_version": config.version,
            "checksum": config.checksum,
            "config_path": str(path),
            "fee_schedule": config.fees.default_schedule,
        },
    )
    return config
