"""Typed records persisted by the reconciliation store."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class RunMode(str, Enum):
    """How the test suite is compared against the atom registry."""

    FULLSCAN = "fullscan"
    DELTA = "delta"


class RunStatus(str, Enum):
    """Lifecycle states for a reconciliation run."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PENDING_REVIEW = "pending_review"
    CANCELLED = "cancelled"


TERMINAL_RUN_STATUSES = frozenset(
    {
        RunStatus.COMPLETED,
        RunStatus.FAILED,
        RunStatus.PENDING_REVIEW,
        RunStatus.CANCELLED,
    }
)


class RecommendationStatus(str, Enum):
    """Review states for atom and molecule recommendations."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class TestRecordStatus(str, Enum):
    """Review state of a discovered test.

    Accepted and rejected tests are closed and never resurface as orphans.
    """

    __test__ = False

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


CLOSED_TEST_STATUSES = frozenset({TestRecordStatus.ACCEPTED, TestRecordStatus.REJECTED})


class ReconciliationRun(RecordModel):
    """One pipeline execution, created by interim persistence and finalised later."""

    id: str
    run_key: str
    mode: RunMode = RunMode.FULLSCAN
    root_directory: str
    baseline_run_key: Optional[str] = None
    baseline_commit: Optional[str] = None
    current_commit: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)
    status: RunStatus = RunStatus.RUNNING
    summary: Dict[str, Any] = Field(default_factory=dict)
    patch_ops: List[Dict[str, Any]] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None


class AtomRecommendation(RecordModel):
    """Durable copy of an inferred atom awaiting human review."""

    id: str
    run_id: str
    temp_id: str
    description: str
    category: str = "functional"
    confidence: float = 0.0
    quality_score: Optional[float] = None
    observable_outcomes: List[str] = Field(default_factory=list)
    reasoning: str = ""
    ambiguity_reasons: List[str] = Field(default_factory=list)
    source_test_file: str
    source_test_name: str
    source_test_line: int = 0
    status: RecommendationStatus = RecommendationStatus.PENDING
    atom_id: Optional[str] = None
    resolved_by: Optional[str] = None
    resolution_note: Optional[str] = None
    resolved_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class MoleculeRecommendation(RecordModel):
    """Durable copy of a proposed molecule, with member ids resolved."""

    id: str
    run_id: str
    temp_id: str
    name: str
    description: str = ""
    atom_temp_ids: List[str] = Field(default_factory=list)
    atom_recommendation_ids: List[str] = Field(default_factory=list)
    confidence: float = 0.0
    reasoning: str = ""
    status: RecommendationStatus = RecommendationStatus.PENDING
    molecule_id: Optional[str] = None
    resolved_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class TestRecord(RecordModel):
    """A test seen by a run, optionally linked to the atom recommendation it produced."""

    __test__ = False

    id: str
    run_id: str
    file_path: str
    test_name: str
    line_number: int = 0
    content_hash: Optional[str] = None
    status: TestRecordStatus = TestRecordStatus.PENDING
    atom_recommendation_id: Optional[str] = None
    had_atom_annotation: bool = False
    is_delta_change: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Atom(RecordModel):
    """Canonical intent atom created when an accepted recommendation is applied."""

    id: str
    description: str
    category: str = "functional"
    observable_outcomes: List[str] = Field(default_factory=list)
    confidence: float = 0.0
    quality_score: Optional[float] = None
    source_run_id: Optional[str] = None
    source_recommendation_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


class Molecule(RecordModel):
    """Canonical grouping of atoms."""

    id: str
    name: str
    description: str = ""
    atom_ids: List[str] = Field(default_factory=list)
    source_recommendation_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


class TestAtomLink(RecordModel):
    """Link between a test and the canonical atom it verifies."""

    __test__ = False

    id: str
    atom_id: str
    file_path: str
    test_name: str
    line_number: int = 0
    created_at: datetime = Field(default_factory=utc_now)


class Checkpoint(RecordModel):
    """Serialized pipeline state written between phases."""

    id: str
    run_key: str
    phase: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
