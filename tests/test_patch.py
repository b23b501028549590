from __future__ import annotations

import pytest

from recon.memory.schema import RunMode
from recon.patch import PatchMetadata, apply_quality_gate, atom_gate_score, build_patch
from recon.state import InferredAtom, InferredMolecule, SourceTestRef


def _atom(temp_id: str, *, quality=None, confidence: float = 0.5) -> InferredAtom:
    return InferredAtom(
        temp_id=temp_id,
        description=f"Behavior {temp_id}",
        confidence=confidence,
        quality_score=quality,
        source_test=SourceTestRef(file_path="tests/test_x.py", test_name=f"test_{temp_id}", line_number=3),
    )


def test_gate_score_takes_the_better_of_quality_and_confidence() -> None:
    assert atom_gate_score(_atom("a", quality=50, confidence=0.9)) == pytest.approx(90)
    assert atom_gate_score(_atom("b", quality=95, confidence=0.1)) == 95
    assert atom_gate_score(_atom("c", quality=None, confidence=0.3)) == pytest.approx(30)


def test_patch_keeps_only_eligible_atoms_in_order() -> None:
    atoms = [_atom("high", quality=95), _atom("low", quality=50)]
    molecule = InferredMolecule(temp_id="temp-mol-1", name="X Functionality", atom_temp_ids=["high", "low"])
    metadata = PatchMetadata(run_key="REC-1", mode=RunMode.FULLSCAN)

    patch, outcome = build_patch(atoms, [molecule], metadata, threshold=80)

    assert [op.type for op in patch.operations] == ["createAtom", "createMolecule", "attachTestToAtom"]
    assert patch.operations[0].temp_id == "high"
    assert patch.operations[1].atom_temp_ids == ["high"]
    assert patch.operations[2].atom_temp_id == "high"
    assert patch.operations[2].inject_annotation is True
    assert outcome.pass_count == 1
    assert outcome.fail_count == 1


def test_molecule_without_eligible_members_is_dropped() -> None:
    atoms = [_atom("low", quality=10, confidence=0.1)]
    molecule = InferredMolecule(temp_id="temp-mol-1", name="X", atom_temp_ids=["low"])

    outcome = apply_quality_gate(atoms, [molecule], 80)
    patch, _ = build_patch(atoms, [molecule], PatchMetadata(run_key="REC-1"), threshold=80)

    assert outcome.molecule_members == {}
    assert patch.operations == []


def test_threshold_boundary_is_inclusive() -> None:
    patch, outcome = build_patch([_atom("edge", quality=80)], [], PatchMetadata(run_key="k"), threshold=80)

    assert outcome.passed_atom_ids == ["edge"]
    assert len(patch.operations_of("createAtom")) == 1
