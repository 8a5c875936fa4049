"""Attain CLI — run calculations and reconciliations over JSON files.

Usage:
    python -m attain.cli validate-plan --plan plan.json
    python -m attain.cli calculate --plan plan.json --period period.json \\
        --entities entities.json --rows rows.json --out batch.json
    python -m attain.cli reconcile --expected batch.json --actual reference.json \\
        --segment-key store_id --out report.json

Exit codes: 0 on success, 1 on configuration or load errors.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import date
from pathlib import Path
from typing import Any, List, Optional

from attain.errors import ConfigurationError, ResultSetLoadError
from attain.models.entity import CommittedRow, Entity, Period
from attain.models.serialization import jsonable
from attain.plans.loader import load_rule_set_file
from attain.policy.resolver import SettingsResolver
from attain.reconciliation.engine import ReconciliationEngine
from attain.reconciliation.result_sets import ResultSet
from attain.service import AttainService

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = Path(__file__).resolve().parents[2] / "config"


def _settings(args: argparse.Namespace) -> SettingsResolver:
    return SettingsResolver.from_config_dir(args.config, env_file=args.env_file)


def _read_json(path: Path) -> Any:
    try:
        return json.loads(Path(path).read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Invalid JSON in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigurationError(f"Cannot read {path}: {exc}") from exc


def _emit(payload: Any, out: Optional[Path]) -> None:
    text = json.dumps(jsonable(payload), indent=2, sort_keys=True)
    if out is not None:
        Path(out).write_text(text + "\n", encoding="utf-8")
        logger.info("wrote %s", out)
    else:
        print(text)


def _load_period(path: Path) -> Period:
    raw = _read_json(path)
    try:
        return Period(
            period_id=str(raw["period_id"]),
            tenant_id=str(raw["tenant_id"]),
            canonical_key=str(raw.get("canonical_key", raw["period_id"])),
            start_date=date.fromisoformat(raw["start_date"]),
            end_date=date.fromisoformat(raw["end_date"]),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid period in {path}: {exc}") from exc


def _load_entities(path: Path, tenant_id: str) -> List[Entity]:
    raw = _read_json(path)
    if not isinstance(raw, list):
        raise ConfigurationError(f"{path}: expected a list of entities")
    entities = []
    for item in raw:
        if not isinstance(item, dict) or not item.get("entity_id"):
            raise ConfigurationError(f"{path}: every entity needs an entity_id")
        entities.append(Entity(
            entity_id=str(item["entity_id"]),
            tenant_id=str(item.get("tenant_id", tenant_id)),
            external_id=str(item.get("external_id", item["entity_id"])),
            display_name=str(item.get("display_name", "")),
            attributes=dict(item.get("attributes") or {}),
        ))
    return entities


def _load_rows(path: Path, tenant_id: str, period_id: str) -> List[CommittedRow]:
    """Rows are ``{entity_id, row_data}`` objects, or flat objects with an entity_id key."""
    raw = _read_json(path)
    if not isinstance(raw, list):
        raise ConfigurationError(f"{path}: expected a list of rows")
    rows = []
    for item in raw:
        if not isinstance(item, dict):
            raise ConfigurationError(f"{path}: every row must be an object")
        if "row_data" in item:
            data = dict(item["row_data"] or {})
        else:
            data = {k: v for k, v in item.items() if k not in ("entity_id", "period_id", "tenant_id")}
        rows.append(CommittedRow(
            tenant_id=str(item.get("tenant_id", tenant_id)),
            period_id=str(item.get("period_id", period_id)),
            entity_id=None if item.get("entity_id") is None else str(item["entity_id"]),
            row_data=data,
        ))
    return rows


def cmd_validate_plan(args: argparse.Namespace) -> int:
    rule_set = load_rule_set_file(args.plan)
    _emit({
        "valid": True,
        "rule_set_id": rule_set.rule_set_id,
        "version": rule_set.version,
        "variants": [
            {"name": v.name, "components": [c.name for c in v.components]}
            for v in rule_set.ordered_variants()
        ],
    }, None)
    return 0


def cmd_calculate(args: argparse.Namespace) -> int:
    rule_set = load_rule_set_file(args.plan)
    period = _load_period(args.period)
    tenant_id = rule_set.tenant_id

    service = AttainService(_settings(args))
    registered = service.register_rule_set(rule_set)
    if not registered.success:
        for err in registered.errors:
            print(f"Error: {err}", file=sys.stderr)
        return 1
    service.register_period(period)
    service.register_entities(_load_entities(args.entities, tenant_id))
    service.commit_rows(_load_rows(args.rows, tenant_id, period.period_id))

    result = service.run_calculation(tenant_id, rule_set.rule_set_id, period.period_id)
    if not result.success:
        for err in result.errors:
            print(f"Error: {err}", file=sys.stderr)
        return 1

    batch = service.store.get_batch(result.data["batch_id"])
    _emit({"batch": batch.summary(), "results": batch.to_records()}, args.out)
    if args.out is not None:
        print(json.dumps({k: v for k, v in batch.summary().items() if k != "manifest"}, indent=2))
    return 0


def cmd_reconcile(args: argparse.Namespace) -> int:
    expected = ResultSet.from_file(args.expected, segment_key=args.segment_key)
    actual = ResultSet.from_file(args.actual, segment_key=args.segment_key)
    report = ReconciliationEngine(_settings(args).tolerance()).compare(expected, actual)
    _emit(report.to_dict(), args.out)
    if args.out is not None:
        print(json.dumps({
            "aggregate": report.aggregate.status,
            "depth_reached": report.depth_reached.value,
            "false_green": report.false_green,
            "counts": report.counts(),
        }, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="attain",
        description="Attain — incentive compensation calculation and reconciliation",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG,
        help="Path to config directory (default: config/)",
    )
    parser.add_argument("--env-file", type=Path, help="Optional .env file with ATTAIN_* overrides")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command")

    # validate-plan
    p_val = sub.add_parser("validate-plan", help="Validate a rule set document")
    p_val.add_argument("--plan", type=Path, required=True, help="Rule set JSON")

    # calculate
    p_calc = sub.add_parser("calculate", help="Calculate a period for a set of entities")
    p_calc.add_argument("--plan", type=Path, required=True, help="Rule set JSON")
    p_calc.add_argument("--period", type=Path, required=True, help="Period JSON")
    p_calc.add_argument("--entities", type=Path, required=True, help="Entities JSON list")
    p_calc.add_argument("--rows", type=Path, required=True, help="Committed rows JSON list")
    p_calc.add_argument("--out", type=Path, help="Write batch and results here")

    # reconcile
    p_rec = sub.add_parser("reconcile", help="Compare two result sets")
    p_rec.add_argument("--expected", type=Path, required=True, help="Expected result records JSON")
    p_rec.add_argument("--actual", type=Path, required=True, help="Actual result records JSON")
    p_rec.add_argument("--segment-key", help="Grouping key for segment comparison")
    p_rec.add_argument("--out", type=Path, help="Write the report here")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "validate-plan": cmd_validate_plan,
        "calculate": cmd_calculate,
        "reconcile": cmd_reconcile,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    try:
        return handler(args)
    except (ConfigurationError, ResultSetLoadError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
