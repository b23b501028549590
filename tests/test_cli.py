from __future__ import annotations

import re
import textwrap
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from recon.cli import app

RUNNER = CliRunner()
_ATOM_TEMP_ID = re.compile(r"(temp-[0-9a-f]{8}-[0-9a-f-]{27})")


@pytest.fixture()
def project(tmp_path: Path) -> Path:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "cart.py").write_text("def total(items):\n    return sum(items)\n", encoding="utf-8")
    (tmp_path / "tests").mkdir()
    (tmp_path / "tests" / "test_cart.py").write_text(
        textwrap.dedent(
            """\
            from src.cart import total


            def test_total_sums_items():
                assert total([1, 2]) == 3


            # @atom IA-001
            def test_total_of_empty_cart():
                assert total([]) == 0
            """
        ),
        encoding="utf-8",
    )
    return tmp_path


def _invoke(*args: str):
    result = RUNNER.invoke(app, list(args))
    assert result.exit_code == 0, result.output
    return result


def test_init_writes_template_and_refuses_overwrite(project: Path) -> None:
    config = project / "recon.yaml"

    _invoke("init", "--config", str(config))
    data = yaml.safe_load(config.read_text(encoding="utf-8"))

    assert data["reconciliation"]["quality_threshold"] == 80
    assert data["paths"]["db_path"] == "data/recon.sqlite"
    second = RUNNER.invoke(app, ["init", "--config", str(config)])
    assert second.exit_code == 1
    assert "already exists" in second.output


def test_run_review_and_apply_offline(project: Path) -> None:
    config = str(project / "recon.yaml")
    _invoke("init", "--config", config)

    ran = _invoke("run", "--config", config, "--no-use-remote")
    match = re.search(r"Run (REC-[0-9a-f]+) \[completed\]", ran.output)
    assert match, ran.output
    run_key = match.group(1)
    assert "Using offline stub client." in ran.output
    assert "- Orphan tests: 1, inferred atoms: 1" in ran.output

    listed = _invoke("runs", "--config", config)
    assert run_key in listed.output

    shown = _invoke("show", run_key, "--config", config)
    temp_ids = _ATOM_TEMP_ID.findall(shown.output)
    assert len(temp_ids) == 1
    assert "test_total_sums_items" in shown.output

    reviewed = _invoke("review", run_key, "--accept", temp_ids[0], "--config", config)
    assert f"{temp_ids[0]} -> accepted" in reviewed.output

    applied = _invoke("apply", run_key, "--config", config)
    assert "Applied 1 atoms, 0 molecules, 1 test links." in applied.output
    assert "IA-001" in applied.output


def test_run_with_review_then_resume(project: Path) -> None:
    config = str(project / "recon.yaml")
    _invoke("init", "--config", config)

    suspended = _invoke("run", "--config", config, "--no-use-remote", "--require-review", "--run-key", "REC-review")
    assert "REC-review is waiting for review" in suspended.output

    decisions = project / "decisions.yaml"
    decisions.write_text(yaml.safe_dump({"comment": "looks fine"}), encoding="utf-8")
    resumed = _invoke("resume", "REC-review", "--decisions", str(decisions), "--config", config, "--no-use-remote")
    assert "Run REC-review [completed]" in resumed.output


def test_show_unknown_run_fails(project: Path) -> None:
    config = str(project / "recon.yaml")
    _invoke("init", "--config", config)

    result = RUNNER.invoke(app, ["show", "REC-missing", "--config", config])

    assert result.exit_code == 1
    assert "not found" in result.output
