"""Tests for the settings resolver — config file, .env file and environment overrides."""

import json
import pytest
from decimal import Decimal
from pathlib import Path

from attain.errors import ConfigurationError
from attain.policy.resolver import RoundingPolicy, SettingsResolver


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"


@pytest.fixture
def resolver() -> SettingsResolver:
    return SettingsResolver.from_config_dir(CONFIG_DIR, environ={})


class TestShippedConfig:
    def test_rounding(self, resolver: SettingsResolver) -> None:
        assert resolver.rounding() == RoundingPolicy(decimals=2, mode="ROUND_HALF_UP")

    def test_tolerance(self, resolver: SettingsResolver) -> None:
        tolerance = resolver.tolerance()
        assert tolerance.absolute == Decimal("0")
        assert tolerance.percent == Decimal("0.5")
        assert tolerance.severity_tolerance_pct < tolerance.severity_amber_pct
        assert tolerance.shard_count == 1

    def test_batch(self, resolver: SettingsResolver) -> None:
        batch = resolver.batch_settings()
        assert batch.concurrency_limit is None
        assert batch.page_size == 1000
        assert batch.effective_workers() >= 1

    def test_missing_directory_uses_defaults(self, tmp_path: Path) -> None:
        resolver = SettingsResolver.from_config_dir(tmp_path, environ={})
        assert resolver.as_dict() == SettingsResolver.defaults().as_dict()


class TestOverrides:
    def test_environment_wins(self) -> None:
        resolver = SettingsResolver.from_config_dir(CONFIG_DIR, environ={
            "ATTAIN_TOLERANCE_PCT": "1.5",
            "ATTAIN_ROUNDING_DECIMALS": "0",
            "ATTAIN_CONCURRENCY_LIMIT": "3",
        })
        assert resolver.tolerance().percent == Decimal("1.5")
        assert resolver.rounding().decimals == 0
        assert resolver.batch_settings().effective_workers() == 3

    def test_env_file_read_with_dotenv(self, tmp_path: Path) -> None:
        env_file = tmp_path / ".env"
        env_file.write_text("ATTAIN_TOLERANCE_ABS=2.50\nATTAIN_SHARD_COUNT=4\n", encoding="utf-8")
        resolver = SettingsResolver.from_config_dir(CONFIG_DIR, env_file=env_file, environ={})
        assert resolver.tolerance().absolute == Decimal("2.50")
        assert resolver.tolerance().shard_count == 4

    def test_real_environment_beats_env_file(self, tmp_path: Path) -> None:
        env_file = tmp_path / ".env"
        env_file.write_text("ATTAIN_TOLERANCE_ABS=2.50\n", encoding="utf-8")
        resolver = SettingsResolver.from_config_dir(
            CONFIG_DIR, env_file=env_file, environ={"ATTAIN_TOLERANCE_ABS": "9"},
        )
        assert resolver.tolerance().absolute == Decimal("9")

    def test_empty_value_ignored(self) -> None:
        resolver = SettingsResolver.from_config_dir(CONFIG_DIR, environ={"ATTAIN_PAGE_SIZE": ""})
        assert resolver.batch_settings().page_size == 1000

    def test_page_size_caps_workers(self) -> None:
        resolver = SettingsResolver.from_config_dir(CONFIG_DIR, environ={
            "ATTAIN_CONCURRENCY_LIMIT": "16", "ATTAIN_PAGE_SIZE": "2",
        })
        assert resolver.batch_settings().effective_workers() == 2


class TestInvalid:
    @pytest.mark.parametrize("name,value", [
        ("ATTAIN_TOLERANCE_PCT", "lots"),
        ("ATTAIN_TOLERANCE_ABS", "-1"),
        ("ATTAIN_ROUNDING_MODE", "BANKERS"),
        ("ATTAIN_CONCURRENCY_LIMIT", "0"),
        ("ATTAIN_PAGE_SIZE", "ten"),
        ("ATTAIN_SHARD_COUNT", "0"),
    ])
    def test_rejected_eagerly(self, name: str, value: str) -> None:
        with pytest.raises(ConfigurationError):
            SettingsResolver.from_config_dir(CONFIG_DIR, environ={name: value})

    def test_amber_below_tolerance_band(self) -> None:
        with pytest.raises(ConfigurationError, match="severity_amber_pct"):
            SettingsResolver({"reconciliation": {"severity_tolerance_pct": "20", "severity_amber_pct": "10"}})

    def test_invalid_json(self, tmp_path: Path) -> None:
        (tmp_path / "calculation_settings.json").write_text("{", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="Invalid JSON"):
            SettingsResolver.from_config_dir(tmp_path, environ={})

    def test_partial_file_merges_with_defaults(self, tmp_path: Path) -> None:
        (tmp_path / "calculation_settings.json").write_text(
            json.dumps({"rounding": {"mode": "round_half_even"}}), encoding="utf-8",
        )
        resolver = SettingsResolver.from_config_dir(tmp_path, environ={})
        assert resolver.rounding() == RoundingPolicy(decimals=2, mode="ROUND_HALF_EVEN")
        assert resolver.tolerance().percent == Decimal("0.5")


class TestRoundingPolicy:
    def test_half_up(self) -> None:
        assert RoundingPolicy().apply(Decimal("2.345")) == Decimal("2.35")

    def test_half_even(self) -> None:
        assert RoundingPolicy(mode="ROUND_HALF_EVEN").apply(Decimal("2.345")) == Decimal("2.34")
