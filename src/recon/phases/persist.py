"""Final persistence: build the patch, finalise the run and produce the result."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from ..memory.schema import RunStatus, TERMINAL_RUN_STATUSES, utc_now
from ..memory.store import ReconciliationStore, StoreError
from ..patch import GateOutcome, PatchMetadata, ReconciliationPatch, build_patch
from ..state import (
    GraphState,
    ReconciliationResult,
    ReconciliationSummary,
    mint_run_key,
)
from .base import PhaseContext
from .interim_persist import build_run_record, save_run

LOGGER = logging.getLogger(__name__)


def terminal_status(state: GraphState) -> RunStatus:
    if state.cancelled:
        return RunStatus.CANCELLED
    if state.errors:
        return RunStatus.FAILED
    if state.pending_human_review:
        return RunStatus.PENDING_REVIEW
    return RunStatus.COMPLETED


def build_summary(state: GraphState, outcome: GateOutcome, duration_ms: int) -> ReconciliationSummary:
    return ReconciliationSummary(
        total_orphan_tests=len(state.orphan_tests),
        inferred_atoms_count=len(state.inferred_atoms),
        inferred_molecules_count=len(state.inferred_molecules),
        quality_pass_count=outcome.pass_count,
        quality_fail_count=outcome.fail_count,
        changed_atom_linked_tests_count=len(state.changed_atom_linked_tests),
        duration_ms=duration_ms,
        llm_call_count=state.llm_call_count,
    )


def _save(
    store: ReconciliationStore,
    state: GraphState,
    run_key: str,
    status: RunStatus,
    patch: ReconciliationPatch,
    summary: ReconciliationSummary,
) -> str:
    """Finalise this run's row, writing the full record set when interim saved nothing.

    Only the row written by this run's interim phase is ever updated; a
    stored run that merely shares ``run_key`` is left untouched.
    """
    final_fields: Dict[str, Any] = {
        "status": status,
        "patch_ops": [operation.model_dump(mode="json") for operation in patch.operations],
        "summary": summary.model_dump(mode="json"),
        "errors": list(state.errors),
        "current_commit": state.current_commit,
        "completed_at": utc_now() if status in TERMINAL_RUN_STATUSES else None,
    }
    existing = store.get_run(state.interim_run_id) if state.interim_run_id else None

    if existing is None:
        owner = store.get_run_by_key(run_key)
        if owner is not None:
            raise StoreError(f"Run key {run_key} already belongs to stored run {owner.id}")
        LOGGER.info("No interim run for %s; creating the full record set", run_key)
        record = build_run_record(state, run_key, status).model_copy(update=final_fields)
        return save_run(store, state, record).id

    scores = {atom.temp_id: atom.quality_score for atom in state.inferred_atoms}
    for recommendation in store.list_atom_recommendations(existing.id):
        score = scores.get(recommendation.temp_id)
        if score is not None and score != recommendation.quality_score:
            store.update_atom_recommendation(recommendation.id, quality_score=score)
    store.update_run(existing.id, **final_fields)
    return existing.id


def run(state: GraphState, context: PhaseContext) -> Dict[str, Any]:
    options = state.input.options
    run_key = state.interim_run_key or state.input.run_key or mint_run_key()
    baseline = state.input.baseline
    status = terminal_status(state)

    metadata = PatchMetadata(
        run_key=run_key,
        created_at=utc_now(),
        mode=state.input.mode,
        commit_hash=state.current_commit,
        baseline_commit_hash=baseline.commit_hash if baseline else None,
        partial=state.cancelled or bool(state.errors),
    )
    patch, outcome = build_patch(
        state.inferred_atoms,
        state.inferred_molecules,
        metadata,
        threshold=options.quality_threshold,
    )
    duration_ms = _elapsed_ms(state.start_time)
    summary = build_summary(state, outcome, duration_ms)

    run_id: Optional[str] = None
    decisions = []
    if context.store is not None:
        try:
            run_id = _save(context.store, state, run_key, status, patch, summary)
        except Exception as error:
            LOGGER.warning("Final persistence failed for %s: %s", run_key, error, exc_info=True)
            decisions.append(f"persist: run {run_key} could not be saved ({error})")

    result = ReconciliationResult(
        run_id=run_id,
        run_key=run_key,
        status=status,
        patch=patch,
        summary=summary,
        delta_summary=state.delta_summary,
        invariant_findings=[],
        metadata={
            "duration_ms": duration_ms,
            "llm_call_count": state.llm_call_count,
            "mode": state.input.mode.value,
            "commit_hash": state.current_commit,
            "baseline_commit_hash": metadata.baseline_commit_hash,
            "review_required": state.pending_human_review,
            "phases_completed": [*state.completed_phases, "persist"],
        },
        errors=list(state.errors),
    )
    decisions.append(
        f"persist: run {run_key} finished as {status.value} with {len(patch.operations)} operations"
    )
    LOGGER.info(decisions[-1])
    return {"output": result, "decisions": decisions}


def _elapsed_ms(start: datetime) -> int:
    return max(int((utc_now() - start).total_seconds() * 1000), 0)


__all__ = ["build_summary", "run", "terminal_status"]
