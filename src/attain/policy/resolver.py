"""Settings resolver — the single source of runtime calculation parameters.

Parameters are read from ``calculation_settings.json`` in a config
directory, then overridden by environment variables. An optional ``.env``
file is read with python-dotenv; real environment variables win over it.

Recognised overrides:
    ATTAIN_TOLERANCE_ABS, ATTAIN_TOLERANCE_PCT, ATTAIN_FALSE_GREEN_ABS,
    ATTAIN_ROUNDING_DECIMALS, ATTAIN_ROUNDING_MODE,
    ATTAIN_CONCURRENCY_LIMIT, ATTAIN_PAGE_SIZE, ATTAIN_SHARD_COUNT
"""

from __future__ import annotations

import copy
import decimal
import json
import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from dotenv import dotenv_values

from attain.errors import ConfigurationError


SETTINGS_FILE = "calculation_settings.json"

DEFAULT_SETTINGS: Dict[str, Any] = {
    "rounding": {"decimals": 2, "mode": "ROUND_HALF_UP"},
    "reconciliation": {
        "tolerance_abs": "0",
        "tolerance_pct": "0.5",
        "false_green_threshold_abs": "0",
        "severity_tolerance_pct": "5",
        "severity_amber_pct": "15",
        "shard_count": 1,
    },
    "batch": {"concurrency_limit": None, "page_size": 1000},
}

ROUNDING_MODES = {
    "ROUND_HALF_UP": decimal.ROUND_HALF_UP,
    "ROUND_HALF_EVEN": decimal.ROUND_HALF_EVEN,
    "ROUND_HALF_DOWN": decimal.ROUND_HALF_DOWN,
    "ROUND_UP": decimal.ROUND_UP,
    "ROUND_DOWN": decimal.ROUND_DOWN,
    "ROUND_CEILING": decimal.ROUND_CEILING,
    "ROUND_FLOOR": decimal.ROUND_FLOOR,
}

_ENV_OVERRIDES = {
    "ATTAIN_TOLERANCE_ABS": ("reconciliation", "tolerance_abs"),
    "ATTAIN_TOLERANCE_PCT": ("reconciliation", "tolerance_pct"),
    "ATTAIN_FALSE_GREEN_ABS": ("reconciliation", "false_green_threshold_abs"),
    "ATTAIN_SHARD_COUNT": ("reconciliation", "shard_count"),
    "ATTAIN_ROUNDING_DECIMALS": ("rounding", "decimals"),
    "ATTAIN_ROUNDING_MODE": ("rounding", "mode"),
    "ATTAIN_CONCURRENCY_LIMIT": ("batch", "concurrency_limit"),
    "ATTAIN_PAGE_SIZE": ("batch", "page_size"),
}


@dataclass(frozen=True)
class RoundingPolicy:
    """Quantization applied once to each component's final payout."""
    decimals: int = 2
    mode: str = "ROUND_HALF_UP"

    @property
    def quantum(self) -> Decimal:
        return Decimal(1).scaleb(-self.decimals)

    def apply(self, value: Decimal) -> Decimal:
        return value.quantize(self.quantum, rounding=ROUNDING_MODES[self.mode])


@dataclass(frozen=True)
class ReconciliationTolerance:
    """When two amounts count as matching, and how mismatches are graded.

    A delta is within tolerance when |delta| <= absolute OR
    |delta_pct| <= percent. Percentages are expressed in percent (0.5 = 0.5%).
    """
    absolute: Decimal = Decimal("0")
    percent: Decimal = Decimal("0.5")
    false_green_absolute: Decimal = Decimal("0")
    severity_tolerance_pct: Decimal = Decimal("5")
    severity_amber_pct: Decimal = Decimal("15")
    shard_count: int = 1


@dataclass(frozen=True)
class BatchSettings:
    concurrency_limit: Optional[int] = None
    page_size: int = 1000

    def effective_workers(self) -> int:
        """Worker count: the configured limit, or the executor default, capped by page size."""
        limit = self.concurrency_limit or min(32, (os.cpu_count() or 1) + 4)
        return max(1, min(limit, self.page_size))


def _merge(base: Dict[str, Any], overlay: Mapping[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in overlay.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _decimal(section: Mapping[str, Any], key: str) -> Decimal:
    raw = section.get(key)
    try:
        value = Decimal(str(raw))
    except (InvalidOperation, ValueError) as exc:
        raise ConfigurationError(f"setting '{key}' is not numeric: {raw!r}") from exc
    if value < 0:
        raise ConfigurationError(f"setting '{key}' must be >= 0, got {value}")
    return value


def _int(section: Mapping[str, Any], key: str, allow_none: bool = False) -> Optional[int]:
    raw = section.get(key)
    if raw is None or raw == "":
        if allow_none:
            return None
        raise ConfigurationError(f"setting '{key}' is required")
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"setting '{key}' is not an integer: {raw!r}") from exc
    if value < 1 and not (key == "decimals" and value == 0):
        raise ConfigurationError(f"setting '{key}' must be positive, got {value}")
    return value


class SettingsResolver:
    """Resolves typed settings from merged config and environment.

    Usage:
        resolver = SettingsResolver.from_config_dir(config_dir)
        policy = resolver.rounding()
        tolerance = resolver.tolerance()
    """

    def __init__(self, params: Optional[Mapping[str, Any]] = None) -> None:
        self._params = _merge(DEFAULT_SETTINGS, params or {})
        # Validate eagerly so misconfiguration surfaces before any batch runs
        self.rounding()
        self.tolerance()
        self.batch_settings()

    @classmethod
    def from_config_dir(
        cls,
        config_dir: Path,
        env_file: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> SettingsResolver:
        path = Path(config_dir) / SETTINGS_FILE
        params: Dict[str, Any] = {}
        if path.exists():
            try:
                params = json.loads(path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as exc:
                raise ConfigurationError(f"Invalid JSON in {path}: {exc}") from exc

        overrides: Dict[str, Optional[str]] = {}
        if env_file is not None and Path(env_file).exists():
            overrides.update(dotenv_values(env_file))
        overrides.update(os.environ if environ is None else environ)

        for env_name, (section, key) in _ENV_OVERRIDES.items():
            value = overrides.get(env_name)
            if value is not None and value != "":
                params.setdefault(section, {})[key] = value
        return cls(params)

    @classmethod
    def defaults(cls) -> SettingsResolver:
        return cls()

    def rounding(self) -> RoundingPolicy:
        section = self._params["rounding"]
        mode = str(section.get("mode", "ROUND_HALF_UP")).upper()
        if mode not in ROUNDING_MODES:
            raise ConfigurationError(f"unknown rounding mode: {mode}")
        return RoundingPolicy(decimals=_int(section, "decimals"), mode=mode)

    def tolerance(self) -> ReconciliationTolerance:
        section = self._params["reconciliation"]
        tolerance_pct = _decimal(section, "severity_tolerance_pct")
        amber_pct = _decimal(section, "severity_amber_pct")
        if amber_pct < tolerance_pct:
            raise ConfigurationError("severity_amber_pct must be >= severity_tolerance_pct")
        return ReconciliationTolerance(
            absolute=_decimal(section, "tolerance_abs"),
            percent=_decimal(section, "tolerance_pct"),
            false_green_absolute=_decimal(section, "false_green_threshold_abs"),
            severity_tolerance_pct=tolerance_pct,
            severity_amber_pct=amber_pct,
            shard_count=_int(section, "shard_count"),
        )

    def batch_settings(self) -> BatchSettings:
        section = self._params["batch"]
        return BatchSettings(
            concurrency_limit=_int(section, "concurrency_limit", allow_none=True),
            page_size=_int(section, "page_size"),
        )

    def as_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self._params)
