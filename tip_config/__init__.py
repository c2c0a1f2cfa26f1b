"""
tip_config -- single public entrypoint for tip bank configuration.

Responsibility:
    ``get_active_config()`` is the only way services obtain per-location
    settings. YAML loading is internal tooling.

Architecture position:
    Configuration -- sits above ``tip_kernel`` and below ``tip_services``.
    The kernel never imports from ``tip_config``; services translate
    settings into constructor arguments (currency, tolerance, negative
    balance permission).

Failure modes:
    - ``FileNotFoundError`` -- neither ``<location_id>.yaml`` nor
      ``default.yaml`` exists in the sets directory.
    - ``ConfigurationError`` -- the file failed parsing or validation.

Audit relevance:
    Every successful call emits a ``TIP_CONFIG_TRACE`` log entry carrying
    the location, currency, policy and checksum in force.
"""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path

from tip_config.loader import ConfigurationError, load_settings
from tip_config.schema import ChargebackPolicy, TipBankSettings
from tip_kernel.logging_config import get_logger

_logger = get_logger("config")

_DEFAULT_CONFIG_DIR = Path(__file__).parent / "sets"


def get_active_config(location_id: str = "default", config_dir: Path | None = None) -> TipBankSettings:
    """Settings for ``location_id``, falling back to ``default.yaml``.

    Settings from a file that names no location of its own (the default
    set included) take on the requested ``location_id``.
    """
    sets_dir = Path(config_dir) if config_dir is not None else _DEFAULT_CONFIG_DIR
    if not sets_dir.is_dir():
        raise FileNotFoundError(f"Configuration sets directory not found: {sets_dir}")

    path = sets_dir / f"{location_id}.yaml"
    if not path.exists():
        path = sets_dir / "default.yaml"
    if not path.exists():
        raise FileNotFoundError(f"No configuration for location {location_id!r} in {sets_dir}")

    settings = load_settings(path)
    if settings.location_id == "default" and location_id != "default":
        settings = replace(settings, location_id=location_id)

    _logger.info(
        "TIP_CONFIG_TRACE",
        extra={
            "trace_type": "TIP_CONFIG_TRACE",
            "location_id": settings.location_id,
            "config_file": path.name,
            "currency": settings.currency,
            "allow_negative_balances": settings.allow_negative_balances,
            "chargeback_policy": settings.chargeback_policy.value,
            "checksum": settings.checksum,
        },
    )
    return settings


__all__ = [
    "ChargebackPolicy",
    "ConfigurationError",
    "TipBankSettings",
    "get_active_config",
]
