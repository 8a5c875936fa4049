"""Tests that the shipped worked example still recalculates to its expected payouts."""

import importlib.util
from pathlib import Path


TOOL = Path(__file__).resolve().parents[1] / "tools" / "verify_examples.py"


def _load_tool():
    spec = importlib.util.spec_from_file_location("verify_examples", TOOL)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TestWorkedExamples:
    def test_verify_reports_no_errors(self) -> None:
        assert _load_tool().verify() == []

    def test_main_exit_code(self, capsys) -> None:
        assert _load_tool().main() == 0
        assert "passed" in capsys.readouterr().out
