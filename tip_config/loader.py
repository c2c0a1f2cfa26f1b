"""
Configuration loader (``tip_config.loader``).

Reads one YAML settings file per location and parses it into a frozen
``TipBankSettings``. Build/test tooling: runtime callers go through
``tip_config.get_active_config()``.

Failure modes
-------------
* Missing file  -> ``FileNotFoundError`` propagates.
* Malformed YAML, unknown keys or bad values  -> ``ConfigurationError``.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from tip_config.schema import ChargebackPolicy, TipBankSettings
from tip_kernel.domain.enums import SplitMode
from tip_kernel.domain.money import validate_currency
from tip_kernel.exceptions import TipKernelError

_KNOWN_KEYS = frozenset(
    {
        "location_id",
        "currency",
        "allow_negative_balances",
        "split_tolerance",
        "chargeback_policy",
        "default_split_mode",
    }
)


class ConfigurationError(TipKernelError):
    """A settings file could not be parsed or failed validation."""

    code = "CONFIGURATION_INVALID"

    def __init__(self, path: Path | str, reason: str):
        self.path = str(path)
        self.reason = reason
        super().__init__(f"{path}: {reason}")


def load_yaml_file(path: Path) -> dict[str, Any]:
    with open(path) as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ConfigurationError(path, f"invalid YAML: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(path, "top level must be a mapping")
    return data


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON form; identifies a settings version."""
    canonical = json.dumps(data, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def parse_settings(data: dict[str, Any], *, path: Path | str = "<memory>") -> TipBankSettings:
    unknown = sorted(set(data) - _KNOWN_KEYS)
    if unknown:
        raise ConfigurationError(path, f"unknown keys {unknown}")

    try:
        currency = validate_currency(str(data.get("currency", "USD")))
    except ValueError as exc:
        raise ConfigurationError(path, str(exc)) from exc

    allow_negative = data.get("allow_negative_balances", False)
    if not isinstance(allow_negative, bool):
        raise ConfigurationError(path, "allow_negative_balances must be true or false")

    try:
        tolerance = Decimal(str(data.get("split_tolerance", "0.01")))
    except InvalidOperation as exc:
        raise ConfigurationError(path, "split_tolerance is not a number") from exc
    if not tolerance.is_finite() or tolerance < 0 or tolerance >= 1:
        raise ConfigurationError(path, "split_tolerance must be in [0, 1)")

    try:
        policy = ChargebackPolicy(data.get("chargeback_policy", ChargebackPolicy.BUSINESS_ABSORBS.value))
        split_mode = SplitMode(data.get("default_split_mode", SplitMode.EQUAL.value))
    except ValueError as exc:
        raise ConfigurationError(path, str(exc)) from exc

    return TipBankSettings(
        location_id=str(data.get("location_id", "default")),
        currency=currency,
        allow_negative_balances=allow_negative,
        split_tolerance=tolerance,
        chargeback_policy=policy,
        default_split_mode=split_mode,
        checksum=compute_checksum(data),
    )


def load_settings(path: Path) -> TipBankSettings:
    return parse_settings(load_yaml_file(path), path=path)
