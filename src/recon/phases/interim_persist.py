"""Interim persistence: save inference output before verification.

The run row, recommendations and test records are written in one transaction
under the run key so that model work survives a crash in any later phase. Failures
are logged and never abort the run.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Any, Dict, List, Optional, Tuple

from ..memory.schema import (
    AtomRecommendation,
    MoleculeRecommendation,
    ReconciliationRun,
    RunStatus,
    TestRecord,
)
from ..memory.store import ReconciliationStore, new_record_id
from ..state import GraphState, mint_run_key
from .base import PhaseContext

LOGGER = logging.getLogger(__name__)


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def build_run_record(state: GraphState, run_key: str, status: RunStatus) -> ReconciliationRun:
    baseline = state.input.baseline
    return ReconciliationRun(
        id=new_record_id(),
        run_key=run_key,
        mode=state.input.mode,
        root_directory=state.input.root_directory,
        baseline_run_key=baseline.run_key if baseline else None,
        baseline_commit=baseline.commit_hash if baseline else None,
        current_commit=state.current_commit,
        options=state.input.options.model_dump(mode="json"),
        status=status,
    )


def build_recommendation_records(
    state: GraphState,
    run_id: str,
) -> Tuple[List[AtomRecommendation], List[MoleculeRecommendation], List[TestRecord]]:
    """Build the atom, molecule and test rows for ``run_id`` from the current state."""
    atom_records = [
        AtomRecommendation(
            id=new_record_id(),
            run_id=run_id,
            temp_id=atom.temp_id,
            description=atom.description,
            category=atom.category,
            confidence=atom.confidence,
            quality_score=atom.quality_score,
            observable_outcomes=list(atom.observable_outcomes),
            reasoning=atom.reasoning,
            ambiguity_reasons=list(atom.ambiguity_reasons),
            source_test_file=atom.source_test.file_path,
            source_test_name=atom.source_test.test_name,
            source_test_line=atom.source_test.line_number,
        )
        for atom in state.inferred_atoms
    ]
    id_map = {record.temp_id: record.id for record in atom_records}

    molecule_records = [
        MoleculeRecommendation(
            id=new_record_id(),
            run_id=run_id,
            temp_id=molecule.temp_id,
            name=molecule.name,
            description=molecule.description,
            atom_temp_ids=list(molecule.atom_temp_ids),
            atom_recommendation_ids=[
                id_map[temp_id] for temp_id in molecule.atom_temp_ids if temp_id in id_map
            ],
            confidence=molecule.confidence,
            reasoning=molecule.reasoning,
        )
        for molecule in state.inferred_molecules
    ]

    by_test: Dict[Tuple[str, str], str] = {
        (atom.source_test.file_path, atom.source_test.test_name): id_map[atom.temp_id]
        for atom in state.inferred_atoms
    }
    test_records: List[TestRecord] = [
        TestRecord(
            id=new_record_id(),
            run_id=run_id,
            file_path=test.file_path,
            test_name=test.test_name,
            line_number=test.line_number,
            content_hash=content_hash(test.test_code),
            atom_recommendation_id=by_test.get((test.file_path, test.test_name)),
            is_delta_change=test.is_delta_change,
        )
        for test in state.orphan_tests
    ]
    return atom_records, molecule_records, test_records


def save_run(
    store: ReconciliationStore,
    state: GraphState,
    run: ReconciliationRun,
) -> ReconciliationRun:
    """Write ``run`` and its full record set in a single transaction."""
    atoms, molecules, tests = build_recommendation_records(state, run.id)
    return store.create_run_with_records(run, atoms, molecules, tests)


def run(state: GraphState, context: PhaseContext) -> Dict[str, Any]:
    if not state.inferred_atoms:
        return {"decisions": ["interim_persist: no inferred atoms, nothing saved"]}
    store: Optional[ReconciliationStore] = context.store
    if store is None:
        return {"decisions": ["interim_persist: no store configured, nothing saved"]}
    if state.interim_run_id:
        return {"decisions": [f"interim_persist: run {state.interim_run_key} already saved"]}

    run_key = state.input.run_key or mint_run_key()
    try:
        record = save_run(store, state, build_run_record(state, run_key, RunStatus.RUNNING))
    except Exception as error:
        LOGGER.warning("Interim persistence failed for %s: %s", run_key, error, exc_info=True)
        return {"decisions": [f"interim_persist: failed for {run_key}, continuing ({error})"]}

    LOGGER.info("Interim run %s saved with %s atom recommendations", run_key, len(state.inferred_atoms))
    return {
        "interim_run_id": record.id,
        "interim_run_key": run_key,
        "decisions": [
            f"interim_persist: saved run {run_key} with {len(state.inferred_atoms)} atoms and "
            f"{len(state.inferred_molecules)} molecules"
        ],
    }


__all__ = ["build_recommendation_records", "build_run_record", "content_hash", "run", "save_run"]
