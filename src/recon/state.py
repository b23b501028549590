"""Working state threaded through the reconciliation phases."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from .memory.schema import RunMode, RunStatus, utc_now
from .patch import DEFAULT_QUALITY_THRESHOLD, ReconciliationPatch

DEFAULT_MAX_TESTS = 5000
DEFAULT_MAX_FILES = 10000


class StateModel(BaseModel):
    """Base model for checkpointable working state."""

    model_config = ConfigDict(extra="forbid", frozen=False)


def mint_run_key() -> str:
    """Return a fresh human-readable run key."""
    return f"REC-{uuid.uuid4().hex[:8]}"


class ReconciliationOptions(StateModel):
    """Tunables for one run."""

    quality_threshold: float = DEFAULT_QUALITY_THRESHOLD
    max_tests: int = DEFAULT_MAX_TESTS
    max_files: int = DEFAULT_MAX_FILES
    max_iterations: int = 50
    max_llm_calls: int = 1000
    batch_size: int = 5
    require_review: bool = False
    interrupt_on_review: bool = True
    force_interrupt_on_quality_fail: bool = False
    clustering_method: Literal["module", "category", "namespace", "domain_concept", "semantic"] = (
        "domain_concept"
    )
    semantic_similarity: float = 0.3
    include_paths: List[str] = Field(default_factory=list)
    exclude_paths: List[str] = Field(default_factory=list)
    test_patterns: List[str] = Field(default_factory=list)
    annotation_lookback: int = 5
    index_docs: bool = True
    max_doc_chunks: int = 50

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "ReconciliationOptions":
        section = config.get("reconciliation") or {}
        known = {name: section[name] for name in cls.model_fields if name in section}
        return cls(**known)


class DeltaBaseline(StateModel):
    """Prior run used as the comparison point for a delta run."""

    run_key: Optional[str] = None
    commit_hash: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return bool(self.run_key and self.commit_hash)

    def describe(self) -> str:
        return f"{self.run_key or '?'}@{(self.commit_hash or '?')[:12]}"


class ReconciliationInput(StateModel):
    root_directory: str
    mode: RunMode = RunMode.FULLSCAN
    run_key: Optional[str] = None
    baseline: Optional[DeltaBaseline] = None
    options: ReconciliationOptions = Field(default_factory=ReconciliationOptions)


class RepoStructure(StateModel):
    files: List[str] = Field(default_factory=list)
    test_files: List[str] = Field(default_factory=list)
    source_files: List[str] = Field(default_factory=list)


class OrphanTest(StateModel):
    """A test with no atom annotation."""

    file_path: str
    test_name: str
    line_number: int
    test_code: str = ""
    related_source_files: List[str] = Field(default_factory=list)
    is_delta_change: bool = False

    @property
    def test_key(self) -> str:
        return f"{self.file_path}:{self.test_name}"


class ChangedAtomLinkedTest(StateModel):
    """An already-linked test whose file changed since the baseline; audit only."""

    file_path: str
    test_name: str
    line_number: int
    linked_atom_id: str
    change_type: Literal["added", "modified"] = "modified"

    @property
    def test_key(self) -> str:
        return f"{self.file_path}:{self.test_name}"


class DeltaSummary(StateModel):
    baseline_run_key: Optional[str] = None
    baseline_commit: Optional[str] = None
    baseline: Optional[str] = None
    changed_test_files: int = 0
    new_orphan_tests: int = 0
    changed_atom_linked_tests: int = 0
    closed_tests_excluded: int = 0
    fallback_to_fullscan: bool = False
    fallback_reason: Optional[str] = None


class DocChunk(StateModel):
    file_path: str
    content: str
    keywords: List[str] = Field(default_factory=list)


class TestContext(StateModel):
    """Supporting material gathered for one orphan test."""

    __test__ = False

    test_key: str
    summary: str
    assertions: List[str] = Field(default_factory=list)
    imports: List[str] = Field(default_factory=list)
    domain_concepts: List[str] = Field(default_factory=list)
    related_code: List[str] = Field(default_factory=list)
    related_docs: List[str] = Field(default_factory=list)
    raw_context: Optional[str] = None


class SourceTestRef(StateModel):
    file_path: str
    test_name: str
    line_number: int = 0


class InferredAtom(StateModel):
    """Candidate atom; ``temp_id`` is only meaningful within its run."""

    temp_id: str
    description: str
    category: str = "functional"
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    quality_score: Optional[float] = Field(default=None, ge=0.0, le=100.0)
    observable_outcomes: List[str] = Field(default_factory=list)
    source_test: SourceTestRef
    reasoning: str = ""
    ambiguity_reasons: List[str] = Field(default_factory=list)
    related_docs: List[str] = Field(default_factory=list)


class InferredMolecule(StateModel):
    temp_id: str
    name: str
    description: str = ""
    atom_temp_ids: List[str] = Field(default_factory=list)
    confidence: float = 0.0
    reasoning: str = ""


class ReviewDecision(StateModel):
    temp_id: str
    decision: Literal["approve", "reject"]
    description: Optional[str] = None


class ReviewInput(StateModel):
    """Human answers supplied when resuming a suspended run."""

    atom_decisions: List[ReviewDecision] = Field(default_factory=list)
    molecule_decisions: List[ReviewDecision] = Field(default_factory=list)
    comment: Optional[str] = None


class ReviewRequest(StateModel):
    """What a reviewer needs to see before the run may continue."""

    run_key: str
    reason: str
    atoms: List[Dict[str, Any]] = Field(default_factory=list)
    molecules: List[Dict[str, Any]] = Field(default_factory=list)
    pass_count: int = 0
    fail_count: int = 0
    quality_threshold: float = DEFAULT_QUALITY_THRESHOLD


class ReconciliationSummary(StateModel):
    total_orphan_tests: int = 0
    inferred_atoms_count: int = 0
    inferred_molecules_count: int = 0
    quality_pass_count: int = 0
    quality_fail_count: int = 0
    changed_atom_linked_tests_count: int = 0
    duration_ms: int = 0
    llm_call_count: int = 0


class ReconciliationResult(StateModel):
    """Outcome handed back to the caller of a run."""

    run_id: Optional[str] = None
    run_key: str
    status: RunStatus
    patch: ReconciliationPatch
    summary: ReconciliationSummary = Field(default_factory=ReconciliationSummary)
    delta_summary: Optional[DeltaSummary] = None
    invariant_findings: List[Dict[str, Any]] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    errors: List[str] = Field(default_factory=list)


class GraphState(StateModel):
    """Accumulated state for one run; each phase returns a partial update."""

    input: ReconciliationInput
    root_directory: str = ""
    repo_structure: Optional[RepoStructure] = None
    current_commit: Optional[str] = None
    orphan_tests: List[OrphanTest] = Field(default_factory=list)
    changed_atom_linked_tests: List[ChangedAtomLinkedTest] = Field(default_factory=list)
    delta_summary: Optional[DeltaSummary] = None
    documentation_index: List[DocChunk] = Field(default_factory=list)
    context_per_test: Dict[str, TestContext] = Field(default_factory=dict)
    inferred_atoms: List[InferredAtom] = Field(default_factory=list)
    inferred_molecules: List[InferredMolecule] = Field(default_factory=list)
    current_phase: Optional[str] = None
    completed_phases: List[str] = Field(default_factory=list)
    iteration_count: int = 0
    llm_call_count: int = 0
    errors: List[str] = Field(default_factory=list)
    decisions: List[str] = Field(default_factory=list)
    pending_human_review: bool = False
    human_review_input: Optional[ReviewInput] = None
    was_resumed: bool = False
    cancelled: bool = False
    output: Optional[ReconciliationResult] = None
    interim_run_id: Optional[str] = None
    interim_run_key: Optional[str] = None
    start_time: datetime = Field(default_factory=utc_now)

    @property
    def run_key(self) -> Optional[str]:
        return self.interim_run_key or self.input.run_key

    def merge(self, update: Mapping[str, Any]) -> "GraphState":
        """Apply a phase's partial update; list logs are appended, other fields replaced."""
        for name, value in update.items():
            if name not in GraphState.model_fields:
                raise KeyError(f"Unknown state field: {name}")
            if name in {"errors", "decisions"}:
                getattr(self, name).extend(value)
            else:
                setattr(self, name, value)
        return self


__all__ = [
    "ChangedAtomLinkedTest",
    "DEFAULT_MAX_FILES",
    "DEFAULT_MAX_TESTS",
    "DeltaBaseline",
    "DeltaSummary",
    "DocChunk",
    "GraphState",
    "InferredAtom",
    "InferredMolecule",
    "OrphanTest",
    "ReconciliationInput",
    "ReconciliationOptions",
    "ReconciliationResult",
    "ReconciliationSummary",
    "RepoStructure",
    "ReviewDecision",
    "ReviewInput",
    "ReviewRequest",
    "SourceTestRef",
    "TestContext",
    "mint_run_key",
]
