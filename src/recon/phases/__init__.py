"""Shared phase enumerations and execution ordering."""

from __future__ import annotations

from enum import Enum


class PhaseName(str, Enum):
    """Enumeration of the reconciliation phases."""

    STRUCTURE = "structure"
    DISCOVER_FULLSCAN = "discover_fullscan"
    DISCOVER_DELTA = "discover_delta"
    CONTEXT = "context"
    INFER_ATOMS = "infer_atoms"
    SYNTHESIZE_MOLECULES = "synthesize_molecules"
    INTERIM_PERSIST = "interim_persist"
    VERIFY = "verify"
    PERSIST = "persist"


# The discovery slot is resolved at run time to the full-scan or delta variant.
PHASE_SEQUENCE = [
    PhaseName.STRUCTURE,
    PhaseName.DISCOVER_FULLSCAN,
    PhaseName.CONTEXT,
    PhaseName.INFER_ATOMS,
    PhaseName.SYNTHESIZE_MOLECULES,
    PhaseName.INTERIM_PERSIST,
    PhaseName.VERIFY,
    PhaseName.PERSIST,
]

CRITICAL_PHASES = frozenset(
    {
        PhaseName.STRUCTURE,
        PhaseName.DISCOVER_FULLSCAN,
        PhaseName.DISCOVER_DELTA,
    }
)


__all__ = ["CRITICAL_PHASES", "PHASE_SEQUENCE", "PhaseName"]
