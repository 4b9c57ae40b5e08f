"""Tests for the command line interface"""

import json

import pytest
from click.testing import CliRunner

from extractopt import __version__
from extractopt.cli import main
from tests.mocks.sample_instructions import COMPLETE


@pytest.fixture
def runner():
    return CliRunner()


def _write_comparison(path, **overrides):
    data = {
        "templateKey": "vendor_invoices",
        "fields": [{"fieldKey": "po_number", "fieldName": "PO Number", "accuracy": 1.0}],
    }
    data.update(overrides)
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


def test_version(runner):
    """Test the version command"""
    result = runner.invoke(main, ["version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_validate_rejects_generic_instruction(runner):
    """Test that a rejected instruction exits non-zero"""
    result = runner.invoke(main, ["validate", "Extract the vendor name."])

    assert result.exit_code == 1
    assert "rejected" in result.output


def test_validate_accepts_complete_instruction(runner):
    """Test that an accepted instruction exits zero"""
    result = runner.invoke(main, ["validate", COMPLETE])

    assert result.exit_code == 0
    assert "accepted" in result.output


def test_validate_reads_file(runner, tmp_path):
    """Test validating an instruction stored in a file"""
    path = tmp_path / "instruction.txt"
    path.write_text(COMPLETE, encoding="utf-8")

    result = runner.invoke(main, ["validate", "--file", str(path)])

    assert result.exit_code == 0


def test_validate_requires_input(runner):
    """Test the usage error when no instruction is given"""
    result = runner.invoke(main, ["validate"])

    assert result.exit_code == 2


def test_template_prints_fallback(runner):
    """Test printing a fallback instruction"""
    result = runner.invoke(main, ["template", "Vendor Name"])

    assert result.exit_code == 0
    assert "Payee" in result.output


def test_optimize_skips_perfect_comparison(runner, tmp_path, monkeypatch):
    """Test a run with nothing to optimize writes a skipped summary"""
    monkeypatch.setenv("BOX_ACCESS_TOKEN", "test-token")
    comparison = _write_comparison(tmp_path / "comparison.json")
    output = tmp_path / "summary.json"

    result = runner.invoke(main, ["optimize", "--comparison", str(comparison), "--output", str(output)])

    assert result.exit_code == 0, result.output
    summary = json.loads(output.read_text(encoding="utf-8"))
    assert summary["skippedReason"] == "No failing fields to optimize"
    assert summary["fieldSummaries"] == []


def test_optimize_precheck_failure_exits_non_zero(runner, tmp_path):
    """Test that a comparison without a template fails the run"""
    comparison = _write_comparison(tmp_path / "comparison.json", templateKey=None)

    result = runner.invoke(main, ["optimize", "--comparison", str(comparison)])

    assert result.exit_code == 1
    assert "failed" in result.output


def test_optimize_rejects_unknown_config_keys(runner, tmp_path):
    """Test that config typos stop the command"""
    comparison = _write_comparison(tmp_path / "comparison.json")
    config = tmp_path / "config.yaml"
    config.write_text("max_iteration: 3\n", encoding="utf-8")

    result = runner.invoke(main, ["optimize", "--comparison", str(comparison), "--config", str(config)])

    assert result.exit_code == 1
    assert "Invalid config" in result.output


def test_optimize_rejects_malformed_comparison(runner, tmp_path):
    """Test that a comparison file that is not JSON is reported"""
    comparison = tmp_path / "comparison.json"
    comparison.write_text("not json", encoding="utf-8")

    result = runner.invoke(main, ["optimize", "--comparison", str(comparison)])

    assert result.exit_code == 1
    assert "Error parsing comparison JSON" in result.output
