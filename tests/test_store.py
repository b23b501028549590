from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import pytest

from recon.memory.schema import (
    AtomRecommendation,
    Checkpoint,
    MoleculeRecommendation,
    ReconciliationRun,
    RecommendationStatus,
    RunStatus,
    TestRecord,
    TestRecordStatus,
)
from recon.memory.store import PatchApplicationError, ReconciliationStore, StoreError, new_record_id


def _run_record(run_key: str = "REC-1") -> ReconciliationRun:
    return ReconciliationRun(id=new_record_id(), run_key=run_key, root_directory="/repo")


def _run(store, run_key: str = "REC-1") -> ReconciliationRun:
    return store.create_run_with_records(_run_record(run_key), [], [], [])


def _atom(run_id: str, temp_id: str, test_name: str) -> AtomRecommendation:
    return AtomRecommendation(
        id=new_record_id(),
        run_id=run_id,
        temp_id=temp_id,
        description=f"Atom for {test_name}",
        confidence=0.9,
        quality_score=90,
        source_test_file="tests/test_cart.py",
        source_test_name=test_name,
        source_test_line=4,
    )


def _records(run: ReconciliationRun, molecule: Optional[Tuple[str, List[str]]] = None):
    first = _atom(run.id, "temp-a", "test_total")
    second = _atom(run.id, "temp-b", "test_empty")
    by_temp_id = {atom.temp_id: atom for atom in (first, second)}
    molecules: List[MoleculeRecommendation] = []
    if molecule is not None:
        name, members = molecule
        molecules.append(
            MoleculeRecommendation(
                id=new_record_id(),
                run_id=run.id,
                temp_id="temp-mol-1",
                name=name,
                atom_temp_ids=members,
                atom_recommendation_ids=[by_temp_id[temp_id].id for temp_id in members],
            )
        )
    tests = [
        TestRecord(
            id=new_record_id(),
            run_id=run.id,
            file_path="tests/test_cart.py",
            test_name=atom.source_test_name,
            line_number=4,
            atom_recommendation_id=atom.id,
        )
        for atom in (first, second)
    ]
    return first, second, molecules, tests


def _seed(store, run_key: str = "REC-1", *, molecule: Optional[Tuple[str, List[str]]] = None):
    run = _run_record(run_key)
    first, second, molecules, tests = _records(run, molecule)
    stored = store.create_run_with_records(run, [first, second], molecules, tests)
    return stored, first, second


class _LockedTestRecordsStore(ReconciliationStore):
    def _insert_test_records(self, records: Sequence[TestRecord]) -> None:
        raise sqlite3.OperationalError("database is locked")


def test_run_round_trip_and_update(store) -> None:
    run = _run(store)

    updated = store.update_run(run.id, status=RunStatus.COMPLETED, errors=["boom"], summary={"n": 1})

    assert updated.status is RunStatus.COMPLETED
    assert updated.errors == ["boom"]
    assert store.get_run_by_key("REC-1").id == run.id
    assert [record.run_key for record in store.list_runs(limit=5)] == ["REC-1"]


def test_duplicate_run_key_is_rejected(store) -> None:
    _run(store)

    with pytest.raises(StoreError):
        _run(store)


def test_run_and_records_are_written_together(store) -> None:
    run, first, _ = _seed(store, molecule=("Cart Functionality", ["temp-a", "temp-b"]))

    assert [record.temp_id for record in store.list_atom_recommendations(run.id)] == ["temp-a", "temp-b"]
    assert store.list_molecule_recommendations(run.id)[0].atom_recommendation_ids[0] == first.id
    assert len(store.list_test_records(run.id)) == 2


def test_failed_record_write_rolls_back_the_run(tmp_path: Path) -> None:
    run = _run_record("REC-locked")
    first, second, molecules, tests = _records(run)

    with _LockedTestRecordsStore(tmp_path / "locked.sqlite") as locked:
        with pytest.raises(sqlite3.OperationalError):
            locked.create_run_with_records(run, [first, second], molecules, tests)

        assert locked.get_run_by_key("REC-locked") is None
        assert locked.list_atom_recommendations(run.id) == []


def test_update_run_rejects_unknown_fields(store) -> None:
    run = _run(store)

    with pytest.raises(StoreError):
        store.update_run(run.id, run_key="other")


def test_resolving_a_recommendation_closes_its_tests(store) -> None:
    run, first, second = _seed(store)

    store.resolve_atom_recommendation(run.id, "temp-a", RecommendationStatus.ACCEPTED, resolved_by="qa")
    store.resolve_atom_recommendation(run.id, "temp-b", RecommendationStatus.REJECTED)

    closed = store.find_closed_tests(["tests/test_cart.py", "tests/other.py"])
    assert closed == {("tests/test_cart.py", "test_total"), ("tests/test_cart.py", "test_empty")}
    statuses = {record.test_name: record.status for record in store.list_test_records(run.id)}
    assert statuses == {"test_total": TestRecordStatus.ACCEPTED, "test_empty": TestRecordStatus.REJECTED}


def test_pending_tests_are_not_closed(store) -> None:
    _seed(store)

    assert store.find_closed_tests(["tests/test_cart.py"]) == set()
    assert store.find_closed_tests([]) == set()


def test_resolving_unknown_recommendation_raises(store) -> None:
    run = _run(store)

    with pytest.raises(StoreError):
        store.resolve_atom_recommendation(run.id, "temp-missing", RecommendationStatus.ACCEPTED)


def test_apply_creates_atoms_molecules_and_links(store) -> None:
    run, _, _ = _seed(store, molecule=("Cart Functionality", ["temp-a", "temp-b"]))
    store.resolve_atom_recommendation(run.id, "temp-a", RecommendationStatus.ACCEPTED)
    store.resolve_atom_recommendation(run.id, "temp-b", RecommendationStatus.ACCEPTED)
    store.resolve_molecule_recommendation(run.id, "temp-mol-1", RecommendationStatus.ACCEPTED)

    result = store.apply_recommendations(run.id)

    assert result.atom_ids == ["IA-001", "IA-002"]
    assert result.molecule_ids == ["M-001"]
    assert result.links_created == 2
    assert store.list_molecules()[0].atom_ids == ["IA-001", "IA-002"]
    assert {link.test_name for link in store.list_test_links()} == {"test_total", "test_empty"}


def test_apply_is_idempotent_for_already_applied_atoms(store) -> None:
    run, _, _ = _seed(store)
    store.resolve_atom_recommendation(run.id, "temp-a", RecommendationStatus.ACCEPTED)
    store.apply_recommendations(run.id)

    again = store.apply_recommendations(run.id)

    assert again.atom_ids == []
    assert len(store.list_atoms()) == 1


def test_failed_apply_leaves_no_partial_state(store) -> None:
    run, _, _ = _seed(store, molecule=("Orphaned", ["temp-b"]))
    store.resolve_atom_recommendation(run.id, "temp-a", RecommendationStatus.ACCEPTED)
    store.resolve_molecule_recommendation(run.id, "temp-mol-1", RecommendationStatus.ACCEPTED)

    with pytest.raises(PatchApplicationError):
        store.apply_recommendations(run.id)

    assert store.list_atoms() == []
    assert store.list_test_links() == []
    assert all(record.atom_id is None for record in store.list_atom_recommendations(run.id))


def test_apply_unknown_run_raises(store) -> None:
    with pytest.raises(PatchApplicationError):
        store.apply_recommendations("missing")


def test_checkpoints_return_latest_and_can_be_cleared(store) -> None:
    store.save_checkpoint(Checkpoint(id=new_record_id(), run_key="REC-1", phase="context"))
    store.save_checkpoint(
        Checkpoint(id=new_record_id(), run_key="REC-1", phase="verify", payload={"k": 1})
    )

    latest = store.load_checkpoint("REC-1")
    assert latest is not None
    assert latest.phase == "verify"
    assert latest.payload == {"k": 1}
    assert store._conn.execute("SELECT COUNT(*) FROM checkpoints").fetchone()[0] == 1

    store.delete_checkpoints("REC-1")
    assert store.load_checkpoint("REC-1") is None
