#!/usr/bin/env python3
"""Recalculate the worked example bundle and check it against its expected payouts."""

import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / "src"))

from attain.calculation.runner import BatchRunner, group_rows  # noqa: E402
from attain.cli import _load_entities, _load_period, _load_rows  # noqa: E402
from attain.plans.loader import load_rule_set_file  # noqa: E402
from attain.policy.resolver import SettingsResolver  # noqa: E402

EXAMPLES_DIR = ROOT / "examples" / "worked_examples"
CONFIG_DIR = ROOT / "config"


def load_json(path: Path) -> dict:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def verify(examples_dir: Path = EXAMPLES_DIR) -> list[str]:
    errors: list[str] = []
    rule_set = load_rule_set_file(examples_dir / "retail_plan.json")
    period = _load_period(examples_dir / "period.json")
    entities = _load_entities(examples_dir / "entities.json", rule_set.tenant_id)
    rows = _load_rows(examples_dir / "rows.json", rule_set.tenant_id, period.period_id)
    expected = load_json(examples_dir / "expected.json")

    runner = BatchRunner(SettingsResolver.from_config_dir(CONFIG_DIR))
    batch = runner.run_batch(
        rule_set.tenant_id,
        rule_set,
        period,
        entities,
        group_rows(rows, rule_set.tenant_id, period.period_id),
    )

    for entity_id, want in sorted(expected["entities"].items()):
        outcome = batch.manifest.outcomes.get(entity_id)
        if outcome != want["outcome"]:
            errors.append(f"{entity_id}: outcome {outcome}, expected {want['outcome']}")
            continue
        if "total" not in want:
            continue
        result = batch.result_for(entity_id)
        if str(result.total_payout) != want["total"]:
            errors.append(f"{entity_id}: total {result.total_payout}, expected {want['total']}")
        if result.variant_name != want["variant"]:
            errors.append(f"{entity_id}: variant {result.variant_name}, expected {want['variant']}")

    if str(batch.total_payout) != expected["total_payout"]:
        errors.append(f"batch total {batch.total_payout}, expected {expected['total_payout']}")
    return errors


def main() -> int:
    errors = verify()
    if errors:
        print("Worked example verification FAILED:")
        for err in errors:
            print(f"  - {err}")
        return 1
    print("Worked example verification passed.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
