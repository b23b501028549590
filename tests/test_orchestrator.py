from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Sequence

import pytest

from recon.memory.schema import RecommendationStatus, RunMode, RunStatus, TestRecord
from recon.memory.store import ReconciliationStore, StoreError
from recon.models import LLMClient
from recon.orchestrator import ReconciliationOrchestrator
from recon.phases import PhaseName
from recon.phases import synthesize_molecules
from recon.phases.base import CriticalPhaseError, PhaseContext, ReconciliationError, ReviewRequired
from recon.router import PhaseRouter
from recon.state import (
    DeltaBaseline,
    GraphState,
    ReconciliationInput,
    ReconciliationOptions,
    ReviewDecision,
    ReviewInput,
    ReviewRequest,
)
from recon.tools.vcs import ChangedFile, ChangedFiles


class FakeGit:
    """Git stand-in reporting a fixed set of changed files."""

    def __init__(self, files: List[ChangedFile], *, valid: bool = True) -> None:
        self._files = files
        self._valid = valid
        self.calls: List[tuple[str, str]] = []

    def is_valid_commit(self, ref: str | None) -> bool:
        return self._valid and bool(ref)

    def changed_files(self, base: str, head: str = "HEAD") -> ChangedFiles:
        self.calls.append((base, head))
        return ChangedFiles(base=base, head=head, files=list(self._files))


def _request(mode: RunMode = RunMode.FULLSCAN, **options: Any) -> ReconciliationInput:
    baseline = options.pop("baseline", None)
    return ReconciliationInput(
        root_directory="/repo",
        mode=mode,
        run_key=options.pop("run_key", None),
        baseline=baseline,
        options=ReconciliationOptions(**options),
    )


def _source_tests(result) -> List[str]:
    return sorted(operation.source_test_name for operation in result.patch.operations_of("createAtom"))


@pytest.fixture()
def make_orchestrator(snapshot, llm_client, registry):
    def _make(**overrides: Any) -> ReconciliationOrchestrator:
        options: Dict[str, Any] = {
            "content": snapshot,
            "client": llm_client,
            "cancellation": registry,
        }
        options.update(overrides)
        return ReconciliationOrchestrator(**options)

    return _make


# Full scan -------------------------------------------------------------------------


def test_fullscan_proposes_one_atom_per_orphan_test(make_orchestrator, store) -> None:
    orchestrator = make_orchestrator(store=store)

    result = orchestrator.invoke(_request())

    assert result.status is RunStatus.COMPLETED
    assert _source_tests(result) == [
        "test_login_accepts_admin",
        "test_login_rejects_guest",
        "test_total_sums_items",
    ]
    assert len(result.patch.operations_of("attachTestToAtom")) == 3
    assert len(result.patch.operations_of("createMolecule")) == 2
    assert result.summary.total_orphan_tests == 3
    assert result.summary.llm_call_count == 3
    assert result.patch.metadata.partial is False
    assert result.patch.metadata.commit_hash == "abc123"
    assert result.errors == []

    runs = store.list_runs()
    assert [run.run_key for run in runs] == [result.run_key]
    assert runs[0].id == result.run_id
    assert runs[0].status is RunStatus.COMPLETED
    assert len(runs[0].patch_ops) == len(result.patch.operations)
    assert len(store.list_atom_recommendations(result.run_id)) == 3
    assert len(store.list_test_records(result.run_id)) == 3
    assert store.load_checkpoint(result.run_key) is None


def test_fullscan_without_store_still_returns_a_patch(make_orchestrator) -> None:
    result = make_orchestrator().invoke(_request(run_key="REC-nostore"))

    assert result.run_id is None
    assert result.run_key == "REC-nostore"
    assert result.status is RunStatus.COMPLETED
    assert len(result.patch.operations_of("createAtom")) == 3


def test_low_quality_atoms_are_kept_out_of_the_patch(snapshot, registry, store, scripted_client) -> None:
    def weak(_: str) -> Dict[str, Any]:
        return {"description": "Something happens", "confidence": 0.2, "quality_score": 30}

    orchestrator = ReconciliationOrchestrator(
        content=snapshot, client=scripted_client(weak), cancellation=registry, store=store
    )

    result = orchestrator.invoke(_request())

    assert result.status is RunStatus.COMPLETED
    assert result.patch.operations == []
    assert result.summary.quality_fail_count == 3
    assert len(store.list_atom_recommendations(result.run_id)) == 3


# Delta -----------------------------------------------------------------------------


def test_delta_reports_orphans_and_changed_linked_tests(make_orchestrator) -> None:
    git = FakeGit([ChangedFile("tests/test_cart.py", "M"), ChangedFile("src/cart.py", "M")])
    orchestrator = make_orchestrator(git=git)
    baseline = DeltaBaseline(run_key="REC-base", commit_hash="0123456789abcdef")

    result = orchestrator.invoke(_request(RunMode.DELTA, baseline=baseline))

    assert git.calls == [("0123456789abcdef", "HEAD")]
    assert _source_tests(result) == ["test_total_sums_items"]
    assert result.summary.changed_atom_linked_tests_count == 1
    delta = result.delta_summary
    assert delta is not None
    assert delta.fallback_to_fullscan is False
    assert delta.changed_test_files == 1
    assert delta.new_orphan_tests == 1
    assert delta.changed_atom_linked_tests == 1
    assert result.patch.metadata.baseline_commit_hash == "0123456789abcdef"
    assert result.patch.metadata.mode is RunMode.DELTA


def test_delta_without_baseline_matches_fullscan(make_orchestrator) -> None:
    fullscan = make_orchestrator().invoke(_request())
    delta = make_orchestrator().invoke(_request(RunMode.DELTA))

    assert delta.status is RunStatus.COMPLETED
    assert delta.delta_summary is not None
    assert delta.delta_summary.fallback_to_fullscan is True
    assert "no baseline" in (delta.delta_summary.fallback_reason or "")
    assert _source_tests(delta) == _source_tests(fullscan)


def test_delta_with_unknown_commit_falls_back(make_orchestrator) -> None:
    orchestrator = make_orchestrator(git=FakeGit([], valid=False))
    baseline = DeltaBaseline(run_key="REC-base", commit_hash="deadbeef")

    result = orchestrator.invoke(_request(RunMode.DELTA, baseline=baseline))

    assert result.delta_summary.fallback_to_fullscan is True
    assert len(result.patch.operations_of("createAtom")) == 3


def test_delta_crash_falls_back_to_fullscan(make_orchestrator) -> None:
    router = PhaseRouter()

    def exploding(state: GraphState, context: PhaseContext) -> Dict[str, Any]:
        raise RuntimeError("diff parser crashed")

    router.register(PhaseName.DISCOVER_DELTA, exploding)
    orchestrator = make_orchestrator(router=router)

    result = orchestrator.invoke(_request(RunMode.DELTA))

    assert result.status is RunStatus.COMPLETED
    assert "diff parser crashed" in (result.delta_summary.fallback_reason or "")
    assert len(result.patch.operations_of("createAtom")) == 3


def test_closed_tests_do_not_resurface_in_delta(make_orchestrator, store) -> None:
    first = make_orchestrator(store=store).invoke(_request())
    for record in store.list_atom_recommendations(first.run_id):
        if record.source_test_name == "test_total_sums_items":
            store.resolve_atom_recommendation(first.run_id, record.temp_id, RecommendationStatus.ACCEPTED)

    git = FakeGit([ChangedFile("tests/test_cart.py", "M")])
    baseline = DeltaBaseline(run_key=first.run_key, commit_hash="abc123")
    second = make_orchestrator(store=store, git=git).invoke(_request(RunMode.DELTA, baseline=baseline))

    assert second.status is RunStatus.COMPLETED
    assert second.delta_summary.closed_tests_excluded == 1
    assert second.delta_summary.new_orphan_tests == 0
    assert second.patch.operations == []
    assert len(store.list_runs()) == 2


# Failure handling ------------------------------------------------------------------


def test_non_critical_failure_keeps_earlier_results(make_orchestrator, store) -> None:
    router = PhaseRouter()

    def failing(state: GraphState, context: PhaseContext) -> Dict[str, Any]:
        raise RuntimeError("clustering exploded")

    router.register(PhaseName.SYNTHESIZE_MOLECULES, failing)
    result = make_orchestrator(store=store, router=router).invoke(_request())

    assert result.status is RunStatus.FAILED
    assert len(result.errors) == 1
    assert "synthesize_molecules: clustering exploded" in result.errors[0]
    assert result.patch.metadata.partial is True
    assert len(result.patch.operations_of("createAtom")) == 3
    stored = store.get_run_by_key(result.run_key)
    assert stored.status is RunStatus.FAILED
    assert stored.errors == result.errors
    assert len(store.list_atom_recommendations(stored.id)) == 3


def test_critical_failure_aborts_the_run(make_orchestrator, store) -> None:
    router = PhaseRouter()

    def broken(state: GraphState, context: PhaseContext) -> Dict[str, Any]:
        raise OSError("permission denied")

    router.register("structure", broken)

    with pytest.raises(CriticalPhaseError) as raised:
        make_orchestrator(store=store, router=router).invoke(_request(run_key="REC-crit"))

    assert raised.value.phase == "structure"
    assert raised.value.run_key == "REC-crit"
    assert store.list_runs() == []


def test_critical_delta_failure_clears_checkpoints(make_orchestrator, store, monkeypatch) -> None:
    router = PhaseRouter()

    def exploding(state: GraphState, context: PhaseContext) -> Dict[str, Any]:
        raise RuntimeError("diff parser crashed")

    def no_fallback(state: GraphState, context: PhaseContext, reason: str) -> Dict[str, Any]:
        raise OSError("repository vanished")

    router.register(PhaseName.DISCOVER_DELTA, exploding)
    monkeypatch.setattr("recon.orchestrator.fallback_to_fullscan", no_fallback)

    with pytest.raises(CriticalPhaseError) as raised:
        make_orchestrator(store=store, router=router).invoke(_request(RunMode.DELTA, run_key="REC-gone"))

    assert raised.value.phase == "discover_delta"
    assert store.load_checkpoint("REC-gone") is None


def test_final_persistence_crash_is_raised(make_orchestrator) -> None:
    router = PhaseRouter()

    def broken(state: GraphState, context: PhaseContext) -> Dict[str, Any]:
        raise ValueError("cannot build result")

    router.register(PhaseName.PERSIST, broken)

    with pytest.raises(ReconciliationError):
        make_orchestrator(router=router).invoke(_request())


class _FailingStore(ReconciliationStore):
    def create_run_with_records(self, run, atoms, molecules, tests):
        raise StoreError("disk full")


def test_store_failures_do_not_fail_the_run(make_orchestrator, tmp_path: Path) -> None:
    with _FailingStore(tmp_path / "broken.sqlite") as broken:
        result = make_orchestrator(store=broken).invoke(_request())

    assert result.status is RunStatus.COMPLETED
    assert result.run_id is None
    assert result.errors == []
    assert len(result.patch.operations_of("createAtom")) == 3


class _CountingStore(ReconciliationStore):
    def __init__(self, db_path: Path) -> None:
        super().__init__(db_path)
        self.run_creations = 0

    def create_run_with_records(self, run, atoms, molecules, tests):
        self.run_creations += 1
        return super().create_run_with_records(run, atoms, molecules, tests)


class _FlakyStore(ReconciliationStore):
    failures = 1

    def _insert_test_records(self, records: Sequence[TestRecord]) -> None:
        if self.failures:
            self.failures -= 1
            raise sqlite3.OperationalError("database is locked")
        super()._insert_test_records(records)


def test_interim_run_is_created_once_across_review(make_orchestrator, tmp_path: Path) -> None:
    with _CountingStore(tmp_path / "counting.sqlite") as counting:
        with pytest.raises(ReviewRequired) as raised:
            make_orchestrator(store=counting).invoke(_request(require_review=True))
        result = make_orchestrator(store=counting).resume(raised.value.run_key, ReviewInput())

        assert result.status is RunStatus.COMPLETED
        assert counting.run_creations == 1
        assert [run.id for run in counting.list_runs()] == [result.run_id]


def test_failed_interim_write_is_completed_by_final_persist(make_orchestrator, tmp_path: Path) -> None:
    with _FlakyStore(tmp_path / "flaky.sqlite") as flaky:
        first = make_orchestrator(store=flaky).invoke(_request())

        assert first.status is RunStatus.COMPLETED
        assert first.run_id is not None
        stored = flaky.get_run(first.run_id)
        assert stored.status is RunStatus.COMPLETED
        assert len(stored.patch_ops) == len(first.patch.operations)
        assert len(flaky.list_test_records(first.run_id)) == 3
        for record in flaky.list_atom_recommendations(first.run_id):
            flaky.resolve_atom_recommendation(first.run_id, record.temp_id, RecommendationStatus.ACCEPTED)

        git = FakeGit([ChangedFile("tests/test_auth.py", "M"), ChangedFile("tests/test_cart.py", "M")])
        baseline = DeltaBaseline(run_key=first.run_key, commit_hash="abc123")
        second = make_orchestrator(store=flaky, git=git).invoke(_request(RunMode.DELTA, baseline=baseline))

    assert second.delta_summary.closed_tests_excluded == 3
    assert second.delta_summary.new_orphan_tests == 0
    assert second.patch.operations == []


def test_reused_run_key_leaves_the_earlier_run_untouched(
    make_orchestrator, snapshot, registry, store, scripted_client
) -> None:
    first = make_orchestrator(store=store).invoke(_request(run_key="REC-same"))

    def weak(_: str) -> Dict[str, Any]:
        return {"description": "Something happens", "confidence": 0.2, "quality_score": 30}

    second = ReconciliationOrchestrator(
        content=snapshot, client=scripted_client(weak), cancellation=registry, store=store
    ).invoke(_request(run_key="REC-same"))

    assert second.status is RunStatus.COMPLETED
    assert second.run_id is None
    stored = store.get_run(first.run_id)
    assert stored.status is RunStatus.COMPLETED
    assert len(stored.patch_ops) == len(first.patch.operations) == 8
    assert stored.summary["inferred_atoms_count"] == 3
    assert len(store.list_runs()) == 1
    assert len(store.list_atom_recommendations(first.run_id)) == 3


def test_iteration_bound_routes_to_persist(make_orchestrator) -> None:
    result = make_orchestrator().invoke(_request(max_iterations=2))

    assert result.metadata["phases_completed"] == ["structure", "discover_fullscan", "persist"]
    assert result.patch.operations == []


# Review ----------------------------------------------------------------------------


def test_review_interrupt_then_resume(make_orchestrator, store) -> None:
    with pytest.raises(ReviewRequired) as raised:
        make_orchestrator(store=store).invoke(_request(require_review=True))

    request = raised.value.request
    run_key = raised.value.run_key
    assert len(request.atoms) == 3
    checkpoint = store.load_checkpoint(run_key)
    assert checkpoint is not None
    assert checkpoint.phase == "verify"
    assert store.get_run_by_key(run_key).status is RunStatus.RUNNING

    rejected = request.atoms[0]["temp_id"]
    review = ReviewInput(atom_decisions=[ReviewDecision(temp_id=rejected, decision="reject")])
    result = make_orchestrator(store=store).resume(run_key, review)

    assert result.status is RunStatus.COMPLETED
    assert result.run_key == run_key
    assert len(result.patch.operations_of("createAtom")) == 2
    assert rejected not in {op.temp_id for op in result.patch.operations_of("createAtom")}
    assert len(store.list_runs()) == 1
    statuses = {rec.temp_id: rec.status for rec in store.list_atom_recommendations(result.run_id)}
    assert statuses[rejected] is RecommendationStatus.REJECTED
    assert store.load_checkpoint(run_key) is None


def test_review_without_interrupt_finishes_pending(make_orchestrator, store) -> None:
    result = make_orchestrator(store=store).invoke(
        _request(require_review=True, interrupt_on_review=False)
    )

    assert result.status is RunStatus.PENDING_REVIEW
    assert result.metadata["review_required"] is True
    assert store.get_run_by_key(result.run_key).status is RunStatus.PENDING_REVIEW


def test_resume_unknown_run_raises(make_orchestrator) -> None:
    with pytest.raises(ReconciliationError):
        make_orchestrator().resume("REC-missing")


class _GuardedClient(LLMClient):
    """Client whose guardrail hands every prompt to a human."""

    def __init__(self) -> None:
        super().__init__("guarded", max_attempts=1, retry_delay=0.0)

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        raise ReviewRequired(ReviewRequest(run_key="REC-guard", reason="guardrail needs a human"))


def test_interrupt_during_inference_reaches_the_caller(snapshot, registry, store) -> None:
    orchestrator = ReconciliationOrchestrator(
        content=snapshot, client=_GuardedClient(), cancellation=registry, store=store
    )

    with pytest.raises(ReviewRequired) as raised:
        orchestrator.invoke(_request(run_key="REC-guard"))

    assert raised.value.request.reason == "guardrail needs a human"
    checkpoint = store.load_checkpoint("REC-guard")
    assert checkpoint is not None
    assert checkpoint.phase == "infer_atoms"
    assert store.list_runs() == []


# Cancellation ----------------------------------------------------------------------


def test_cancel_before_start(make_orchestrator, registry) -> None:
    registry.request("REC-early")

    result = make_orchestrator().invoke(_request(run_key="REC-early"))

    assert result.status is RunStatus.CANCELLED
    assert result.patch.operations == []
    assert result.patch.metadata.partial is True
    assert not registry.is_requested("REC-early")


def test_cancel_mid_run_keeps_inferred_atoms(make_orchestrator, registry, store) -> None:
    router = PhaseRouter()
    orchestrator = make_orchestrator(store=store, router=router)

    def cancel_then_cluster(state: GraphState, context: PhaseContext) -> Dict[str, Any]:
        orchestrator.cancel(state.run_key)
        return synthesize_molecules.run(state, context)

    router.register(PhaseName.SYNTHESIZE_MOLECULES, cancel_then_cluster)

    result = orchestrator.invoke(_request())

    assert result.status is RunStatus.CANCELLED
    assert result.patch.metadata.partial is True
    assert len(result.patch.operations_of("createAtom")) == 3
    assert result.patch.operations_of("createMolecule") == []
    assert store.get_run_by_key(result.run_key).status is RunStatus.CANCELLED
    assert not registry.is_requested(result.run_key)
