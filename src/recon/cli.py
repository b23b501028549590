"""CLI commands for running reconciliations and reviewing their recommendations."""

from __future__ import annotations

import copy
import json
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
import yaml

from .memory.schema import RecommendationStatus, RunMode
from .memory.store import PatchApplicationError, ReconciliationStore, StoreError
from .models import LLMClient, LLMClientError, ResponsesClient
from .orchestrator import ReconciliationOrchestrator
from .phases.base import CriticalPhaseError, ReconciliationError, ReviewRequired
from .state import (
    DeltaBaseline,
    ReconciliationInput,
    ReconciliationOptions,
    ReconciliationResult,
    ReviewInput,
)

APP_HELP = "Reconcile a test suite against its registry of intent atoms."
DEFAULT_CONFIG_NAME = "recon.yaml"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "project": {
        "name": "",
        "repo_root": ".",
    },
    "reconciliation": {
        "mode": "fullscan",
        "quality_threshold": 80,
        "max_tests": 5000,
        "max_files": 10000,
        "max_iterations": 50,
        "max_llm_calls": 1000,
        "batch_size": 5,
        "require_review": False,
        "interrupt_on_review": True,
        "clustering_method": "domain_concept",
        "include_paths": [],
        "exclude_paths": [],
        "test_patterns": [],
        "annotation_lookback": 5,
    },
    "models": {
        "default": "gpt-5-mini",
        "timeout": 120,
        "max_attempts": 3,
        "retry_delay": 0.5,
    },
    "paths": {
        "data": "data",
        "db_path": "data/recon.sqlite",
        "logs": "data/logs",
    },
}

app = typer.Typer(help=APP_HELP)


def _copy_config_template() -> Dict[str, Any]:
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def _write_config(config_path: Path, config_data: Dict[str, Any]) -> None:
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(config_data, handle, sort_keys=False)


def load_config(config_path: Path) -> Dict[str, Any]:
    """Load YAML configuration from disk and return it as a dictionary."""
    if not config_path.exists():
        raise typer.BadParameter(f"Config file not found: {config_path}")

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        typer.echo(f"Failed to parse config: {error}")
        raise typer.Exit(code=1) from error

    if not isinstance(data, dict):
        typer.echo("Configuration must be a mapping at the top level.")
        raise typer.Exit(code=1)

    return data


def _resolve_paths(config: Dict[str, Any], config_path: Path) -> Dict[str, Any]:
    """Make repo_root and the paths section absolute relative to the config file."""
    resolved = copy.deepcopy(config)
    base = config_path.parent.resolve()
    project_cfg = resolved.setdefault("project", {})
    repo_root = Path(project_cfg.get("repo_root") or ".")
    project_cfg["repo_root"] = str(repo_root if repo_root.is_absolute() else (base / repo_root).resolve())
    paths_cfg = resolved.setdefault("paths", {})
    for key in ("data", "db_path", "logs"):
        value = paths_cfg.get(key)
        if value and not Path(value).is_absolute():
            paths_cfg[key] = str(base / value)
    return resolved


def _open_store(config: Dict[str, Any]) -> ReconciliationStore:
    return ReconciliationStore.from_config(config)


class _OfflineLLMClient(LLMClient):
    """Local stub that synthesizes deterministic atom JSON from the prompt."""

    _NAME_LINE = re.compile(r"^Name: (?P<name>.+)$", re.MULTILINE)

    def __init__(self) -> None:
        super().__init__("offline", max_attempts=1)

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        prompt = ""
        for message in payload.get("input") or []:
            if message.get("role") == "user":
                prompt = message["content"][0]["text"]
        match = self._NAME_LINE.search(prompt)
        name = match.group("name") if match else "unnamed test"
        return json.dumps(self._build_response(name))

    @staticmethod
    def _build_response(test_name: str) -> Dict[str, Any]:
        leaf = test_name.split("::")[-1]
        words = re.sub(r"^(test_?|it |should )", "", leaf, flags=re.IGNORECASE)
        words = re.sub(r"[_\s]+", " ", words).strip() or leaf
        return {
            "description": f"The system {words}",
            "category": "functional",
            "confidence": 0.6,
            "observable_outcomes": [f"Observable result: {words}"],
            "reasoning": "Derived offline from the test name",
            "ambiguity_reasons": ["Inferred without a language model"],
        }


def _build_client(config: Dict[str, Any], *, use_remote: bool) -> LLMClient:
    """Select either the remote Responses client or the offline stub."""
    models_cfg = config.get("models") or {}
    model_name = str(models_cfg.get("default", "gpt-5-mini"))
    offline_model = model_name.lower() == "offline" or model_name.lower().endswith("-offline")

    if use_remote and not offline_model:
        typer.echo(f"Using Responses client ({model_name}).")
        client_kwargs: Dict[str, Any] = {}
        timeout_value = models_cfg.get("timeout")
        if isinstance(timeout_value, (int, float)) and timeout_value > 0:
            client_kwargs["timeout"] = float(timeout_value)
        max_attempts_value = models_cfg.get("max_attempts")
        if isinstance(max_attempts_value, int) and max_attempts_value > 0:
            client_kwargs["max_attempts"] = max_attempts_value
        retry_delay_value = models_cfg.get("retry_delay")
        if isinstance(retry_delay_value, (int, float)) and retry_delay_value >= 0:
            client_kwargs["retry_delay"] = float(retry_delay_value)
        base_url_value = models_cfg.get("base_url")
        if isinstance(base_url_value, str) and base_url_value.strip():
            client_kwargs["base_url"] = base_url_value.strip()
        try:
            return ResponsesClient(model=model_name, **client_kwargs)
        except ValueError as error:
            if "api key" in str(error).lower():
                typer.echo(
                    "No API key given. Set RECON_API_KEY or OPENAI_API_KEY, "
                    "or re-run with --no-use-remote to use the offline stub."
                )
            else:
                typer.echo(f"Failed to initialise Responses client: {error}")
            raise typer.Exit(code=1)
        except LLMClientError as error:
            typer.echo(f"Failed to initialise Responses client: {error}")
            raise typer.Exit(code=1)

    typer.echo("Using offline stub client.")
    return _OfflineLLMClient()


def _render_result(result: ReconciliationResult) -> None:
    summary = result.summary
    typer.echo(f"Run {result.run_key} [{result.status.value}]")
    typer.echo(
        f"- Orphan tests: {summary.total_orphan_tests}, inferred atoms: {summary.inferred_atoms_count}, "
        f"molecules: {summary.inferred_molecules_count}"
    )
    typer.echo(
        f"- Quality gate: {summary.quality_pass_count} pass, {summary.quality_fail_count} fail"
    )
    if summary.changed_atom_linked_tests_count:
        typer.echo(f"- Changed linked tests (audit only): {summary.changed_atom_linked_tests_count}")
    if result.delta_summary and result.delta_summary.fallback_to_fullscan:
        typer.echo(f"- Delta fell back to full scan: {result.delta_summary.fallback_reason}")
    typer.echo(f"- Patch operations: {len(result.patch.operations)}")
    typer.echo(f"- LLM calls: {summary.llm_call_count}, duration: {summary.duration_ms} ms")
    if result.errors:
        typer.echo("Errors:")
        for entry in result.errors:
            typer.echo(f"  - {entry}")


def _render_review_request(interrupt: ReviewRequired) -> None:
    request = interrupt.request
    typer.echo(f"Run {request.run_key} is waiting for review: {request.reason}")
    for atom in request.atoms:
        marker = "pass" if atom.get("passes") else "fail"
        typer.echo(f"  [{marker}] {atom['temp_id']}: {atom['description']}")
    typer.echo(f"Resume with: recon resume {request.run_key} --decisions <file>")


@app.command()
def init(
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help="Path to the configuration file."),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing configuration."),
) -> None:
    """Write a starter configuration file."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"Configuration already exists at {config_path}; use --force to overwrite.")
        raise typer.Exit(code=1)
    _write_config(config_path, _copy_config_template())
    typer.echo(f"Created configuration at {config_path}.")


@app.command()
def run(
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help="Path to the configuration file."),
    mode: Optional[RunMode] = typer.Option(None, "--mode", help="fullscan or delta."),
    run_key: Optional[str] = typer.Option(None, "--run-key", help="Key to record this run under."),
    baseline_run: Optional[str] = typer.Option(
        None, "--baseline-run", help="Run key whose commit is the delta baseline."
    ),
    require_review: bool = typer.Option(
        False, "--require-review", help="Suspend for human review before finalising."
    ),
    use_remote: bool = typer.Option(
        True,
        "--use-remote/--no-use-remote",
        help="Call the model API instead of the offline stub (requires API key).",
    ),
) -> None:
    """Run a reconciliation over the configured repository."""
    config_path = Path(config)
    config_data = _resolve_paths(load_config(config_path), config_path)
    options = ReconciliationOptions.from_config(config_data)
    if require_review:
        options.require_review = True
    section = config_data.get("reconciliation") or {}
    run_mode = mode or RunMode(section.get("mode", RunMode.FULLSCAN.value))
    client = _build_client(config_data, use_remote=use_remote)

    with _open_store(config_data) as store:
        baseline = None
        if run_mode == RunMode.DELTA:
            baseline = DeltaBaseline(run_key=baseline_run)
            if baseline_run:
                prior = store.get_run_by_key(baseline_run)
                if prior is None:
                    typer.echo(f"Baseline run {baseline_run} not found; delta will fall back to full scan.")
                else:
                    baseline.commit_hash = prior.current_commit
        orchestrator = ReconciliationOrchestrator.from_config(config_data, client=client, store=store)
        request = ReconciliationInput(
            root_directory=config_data["project"]["repo_root"],
            mode=run_mode,
            run_key=run_key,
            baseline=baseline,
            options=options,
        )
        try:
            result = orchestrator.invoke(request)
        except ReviewRequired as interrupt:
            _render_review_request(interrupt)
            return
        except CriticalPhaseError as error:
            typer.echo(f"Run aborted: {error}")
            raise typer.Exit(code=1) from error
    _render_result(result)


@app.command()
def resume(
    run_key: str = typer.Argument(..., help="Key of the suspended run."),
    decisions: Optional[Path] = typer.Option(
        None, "--decisions", "-d", help="YAML or JSON file with atom_decisions/molecule_decisions."
    ),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help="Path to the configuration file."),
    use_remote: bool = typer.Option(True, "--use-remote/--no-use-remote"),
) -> None:
    """Resume a run suspended for human review."""
    config_path = Path(config)
    config_data = _resolve_paths(load_config(config_path), config_path)
    review = ReviewInput()
    if decisions is not None:
        with decisions.open("r", encoding="utf-8") as handle:
            review = ReviewInput.model_validate(yaml.safe_load(handle) or {})
    client = _build_client(config_data, use_remote=use_remote)
    with _open_store(config_data) as store:
        orchestrator = ReconciliationOrchestrator.from_config(config_data, client=client, store=store)
        try:
            result = orchestrator.resume(run_key, review)
        except ReviewRequired as interrupt:
            _render_review_request(interrupt)
            return
        except ReconciliationError as error:
            typer.echo(str(error))
            raise typer.Exit(code=1) from error
    _render_result(result)


@app.command()
def runs(
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help="Path to the configuration file."),
    limit: int = typer.Option(20, "--limit", help="Number of runs to show."),
) -> None:
    """List stored runs, newest first."""
    config_path = Path(config)
    config_data = _resolve_paths(load_config(config_path), config_path)
    with _open_store(config_data) as store:
        records = store.list_runs(limit=limit)
    if not records:
        typer.echo("No runs recorded.")
        return
    for record in records:
        typer.echo(
            f"{record.run_key}  {record.status.value:<15} {record.mode.value:<8} "
            f"{record.created_at.isoformat()}  ops={len(record.patch_ops)}"
        )


@app.command()
def show(
    run_key: str = typer.Argument(..., help="Run to display."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help="Path to the configuration file."),
) -> None:
    """Print a run's atom and molecule recommendations."""
    config_path = Path(config)
    config_data = _resolve_paths(load_config(config_path), config_path)
    with _open_store(config_data) as store:
        record = store.get_run_by_key(run_key)
        if record is None:
            typer.echo(f"Run {run_key} not found.")
            raise typer.Exit(code=1)
        atoms = store.list_atom_recommendations(record.id)
        molecules = store.list_molecule_recommendations(record.id)
    typer.echo(f"Run {record.run_key} [{record.status.value}]")
    for atom in atoms:
        score = f"{atom.quality_score:.0f}" if atom.quality_score is not None else "-"
        typer.echo(
            f"  {atom.temp_id} [{atom.status.value}] q={score} c={atom.confidence:.2f} "
            f"{atom.description} ({atom.source_test_file}:{atom.source_test_name})"
        )
    for molecule in molecules:
        typer.echo(
            f"  {molecule.temp_id} [{molecule.status.value}] {molecule.name}: "
            f"{len(molecule.atom_temp_ids)} atoms"
        )


@app.command()
def review(
    run_key: str = typer.Argument(..., help="Run whose recommendations are resolved."),
    accept: List[str] = typer.Option(None, "--accept", "-a", help="Temp id to accept (repeatable)."),
    reject: List[str] = typer.Option(None, "--reject", "-r", help="Temp id to reject (repeatable)."),
    reviewer: str = typer.Option("cli", "--reviewer", help="Name recorded as the resolver."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help="Path to the configuration file."),
) -> None:
    """Accept or reject recommendations; their tests become closed."""
    config_path = Path(config)
    config_data = _resolve_paths(load_config(config_path), config_path)
    with _open_store(config_data) as store:
        record = store.get_run_by_key(run_key)
        if record is None:
            typer.echo(f"Run {run_key} not found.")
            raise typer.Exit(code=1)
        molecule_ids = {molecule.temp_id for molecule in store.list_molecule_recommendations(record.id)}
        decisions = [(temp_id, RecommendationStatus.ACCEPTED) for temp_id in accept or []]
        decisions += [(temp_id, RecommendationStatus.REJECTED) for temp_id in reject or []]
        for temp_id, status in decisions:
            try:
                if temp_id in molecule_ids:
                    store.resolve_molecule_recommendation(record.id, temp_id, status)
                else:
                    store.resolve_atom_recommendation(record.id, temp_id, status, resolved_by=reviewer)
            except StoreError as error:
                typer.echo(str(error))
                raise typer.Exit(code=1) from error
            typer.echo(f"{temp_id} -> {status.value}")


@app.command()
def apply(
    run_key: str = typer.Argument(..., help="Run whose accepted recommendations are applied."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help="Path to the configuration file."),
) -> None:
    """Turn accepted recommendations into atoms, molecules and test links atomically."""
    config_path = Path(config)
    config_data = _resolve_paths(load_config(config_path), config_path)
    with _open_store(config_data) as store:
        record = store.get_run_by_key(run_key)
        if record is None:
            typer.echo(f"Run {run_key} not found.")
            raise typer.Exit(code=1)
        try:
            result = store.apply_recommendations(record.id)
        except PatchApplicationError as error:
            typer.echo(f"Nothing applied: {error}")
            raise typer.Exit(code=1) from error
    typer.echo(
        f"Applied {len(result.atom_ids)} atoms, {len(result.molecule_ids)} molecules, "
        f"{result.links_created} test links."
    )
    for atom_id in result.atom_ids:
        typer.echo(f"  {atom_id}")


if __name__ == "__main__":
    app()
