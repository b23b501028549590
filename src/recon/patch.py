"""Patch operations proposed by a run and the quality gate that selects them."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Annotated, Dict, List, Literal, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field

from .memory.schema import RunMode, utc_now

if TYPE_CHECKING:
    from .state import InferredAtom, InferredMolecule

DEFAULT_QUALITY_THRESHOLD = 80.0


class _Operation(BaseModel):
    model_config = ConfigDict(extra="forbid")


class CreateAtomOperation(_Operation):
    """Propose a new atom, referenced by its run-scoped temporary id."""

    type: Literal["createAtom"] = "createAtom"
    temp_id: str
    description: str
    category: str
    confidence: float
    quality_score: Optional[float] = None
    observable_outcomes: List[str] = Field(default_factory=list)
    reasoning: str = ""
    ambiguity_reasons: List[str] = Field(default_factory=list)
    source_test_file: str
    source_test_name: str
    source_test_line: int = 0


class CreateMoleculeOperation(_Operation):
    type: Literal["createMolecule"] = "createMolecule"
    temp_id: str
    name: str
    description: str = ""
    atom_temp_ids: List[str] = Field(default_factory=list)
    confidence: float = 0.0
    reasoning: str = ""


class AttachTestToAtomOperation(_Operation):
    """Link the source test to the proposed atom once approved."""

    type: Literal["attachTestToAtom"] = "attachTestToAtom"
    test_file_path: str
    test_name: str
    test_line_number: int = 0
    atom_temp_id: str
    inject_annotation: bool = True


PatchOperation = Annotated[
    Union[CreateAtomOperation, CreateMoleculeOperation, AttachTestToAtomOperation],
    Field(discriminator="type"),
]


class PatchMetadata(BaseModel):
    model_config = ConfigDict(extra="forbid")

    run_key: str
    created_at: datetime = Field(default_factory=utc_now)
    mode: RunMode = RunMode.FULLSCAN
    commit_hash: Optional[str] = None
    baseline_commit_hash: Optional[str] = None
    partial: bool = False


class ReconciliationPatch(BaseModel):
    """Ordered list of proposed operations awaiting human approval."""

    model_config = ConfigDict(extra="forbid")

    operations: List[PatchOperation] = Field(default_factory=list)
    metadata: PatchMetadata

    def operations_of(self, kind: str) -> List[BaseModel]:
        return [operation for operation in self.operations if operation.type == kind]


class GateOutcome(BaseModel):
    """Which candidates survived the quality gate."""

    model_config = ConfigDict(extra="forbid")

    passed_atom_ids: List[str] = Field(default_factory=list)
    failed_atom_ids: List[str] = Field(default_factory=list)
    molecule_members: Dict[str, List[str]] = Field(default_factory=dict)

    @property
    def pass_count(self) -> int:
        return len(self.passed_atom_ids)

    @property
    def fail_count(self) -> int:
        return len(self.failed_atom_ids)


def atom_gate_score(atom: "InferredAtom") -> float:
    """Score an atom for gating: the better of its quality score and scaled confidence."""
    quality = atom.quality_score if atom.quality_score is not None else 0.0
    return max(quality, atom.confidence * 100.0)


def is_atom_eligible(atom: "InferredAtom", threshold: float = DEFAULT_QUALITY_THRESHOLD) -> bool:
    return atom_gate_score(atom) >= threshold


def apply_quality_gate(
    atoms: Sequence["InferredAtom"],
    molecules: Sequence["InferredMolecule"],
    threshold: float = DEFAULT_QUALITY_THRESHOLD,
) -> GateOutcome:
    """Partition atoms by eligibility and strip ineligible molecule members.

    A molecule is kept only when at least one of its members passes; it is
    then listed with the passing members alone.
    """
    outcome = GateOutcome()
    eligible: set[str] = set()
    for atom in atoms:
        if is_atom_eligible(atom, threshold):
            outcome.passed_atom_ids.append(atom.temp_id)
            eligible.add(atom.temp_id)
        else:
            outcome.failed_atom_ids.append(atom.temp_id)

    for molecule in molecules:
        members = [temp_id for temp_id in molecule.atom_temp_ids if temp_id in eligible]
        if members:
            outcome.molecule_members[molecule.temp_id] = members
    return outcome


def build_patch(
    atoms: Sequence["InferredAtom"],
    molecules: Sequence["InferredMolecule"],
    metadata: PatchMetadata,
    *,
    threshold: float = DEFAULT_QUALITY_THRESHOLD,
) -> tuple[ReconciliationPatch, GateOutcome]:
    """Build the quality-gated patch: atoms, then molecules, then test attachments."""
    outcome = apply_quality_gate(atoms, molecules, threshold)
    passed = set(outcome.passed_atom_ids)
    operations: List[BaseModel] = []

    for atom in atoms:
        if atom.temp_id not in passed:
            continue
        operations.append(
            CreateAtomOperation(
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
        )

    for molecule in molecules:
        members = outcome.molecule_members.get(molecule.temp_id)
        if not members:
            continue
        operations.append(
            CreateMoleculeOperation(
                temp_id=molecule.temp_id,
                name=molecule.name,
                description=molecule.description,
                atom_temp_ids=members,
                confidence=molecule.confidence,
                reasoning=molecule.reasoning,
            )
        )

    for atom in atoms:
        if atom.temp_id not in passed:
            continue
        operations.append(
            AttachTestToAtomOperation(
                test_file_path=atom.source_test.file_path,
                test_name=atom.source_test.test_name,
                test_line_number=atom.source_test.line_number,
                atom_temp_id=atom.temp_id,
            )
        )

    return ReconciliationPatch(operations=operations, metadata=metadata), outcome


__all__ = [
    "AttachTestToAtomOperation",
    "CreateAtomOperation",
    "CreateMoleculeOperation",
    "DEFAULT_QUALITY_THRESHOLD",
    "GateOutcome",
    "PatchMetadata",
    "PatchOperation",
    "ReconciliationPatch",
    "apply_quality_gate",
    "atom_gate_score",
    "build_patch",
    "is_atom_eligible",
]
