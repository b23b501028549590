"""Routing logic that maps phase names to their concrete implementations."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List

from .memory.schema import RunMode
from .phases import CRITICAL_PHASES, PHASE_SEQUENCE, PhaseName
from .phases import context as context_phase
from .phases import discover_delta, discover_fullscan, infer_atoms, interim_persist, persist
from .phases import structure, synthesize_molecules, verify
from .phases.base import PhaseContext
from .state import GraphState

PhaseRunner = Callable[[GraphState, PhaseContext], Dict[str, Any]]


@dataclass(slots=True)
class PhaseEntry:
    """Metadata describing how to execute a single phase."""

    runner: PhaseRunner
    critical: bool = False


class PhaseRouter:
    """Dispatch table mapping phase names to their handlers."""

    def __init__(self) -> None:
        runners: Dict[PhaseName, PhaseRunner] = {
            PhaseName.STRUCTURE: structure.run,
            PhaseName.DISCOVER_FULLSCAN: discover_fullscan.run,
            PhaseName.DISCOVER_DELTA: discover_delta.run,
            PhaseName.CONTEXT: context_phase.run,
            PhaseName.INFER_ATOMS: infer_atoms.run,
            PhaseName.SYNTHESIZE_MOLECULES: synthesize_molecules.run,
            PhaseName.INTERIM_PERSIST: interim_persist.run,
            PhaseName.VERIFY: verify.run,
            PhaseName.PERSIST: persist.run,
        }
        self._registry: Dict[PhaseName, PhaseEntry] = {
            name: PhaseEntry(runner, critical=name in CRITICAL_PHASES)
            for name, runner in runners.items()
        }

    def register(self, phase: PhaseName | str, runner: PhaseRunner) -> None:
        """Replace the runner for ``phase``, keeping its critical flag."""
        name = self.normalize_phase(phase)
        self._registry[name] = PhaseEntry(runner, critical=name in CRITICAL_PHASES)

    def dispatch(self, phase: PhaseName | str, state: GraphState, context: PhaseContext) -> Dict[str, Any]:
        entry = self._registry[self.normalize_phase(phase)]
        return entry.runner(state, context)

    def is_critical(self, phase: PhaseName | str) -> bool:
        return self._registry[self.normalize_phase(phase)].critical

    def available_phases(self) -> Iterable[PhaseName]:
        return self._registry.keys()

    @staticmethod
    def sequence_for(state: GraphState) -> List[PhaseName]:
        """Resolve the discovery slot: delta mode routes through delta discovery."""
        discovery = (
            PhaseName.DISCOVER_DELTA
            if state.input.mode == RunMode.DELTA
            else PhaseName.DISCOVER_FULLSCAN
        )
        return [discovery if phase == PhaseName.DISCOVER_FULLSCAN else phase for phase in PHASE_SEQUENCE]

    @staticmethod
    def normalize_phase(phase: PhaseName | str) -> PhaseName:
        """Resolve ``phase`` into a concrete ``PhaseName`` enum member."""
        if isinstance(phase, PhaseName):
            return phase
        try:
            return PhaseName(phase)
        except ValueError as error:
            raise KeyError(f"Unknown phase: {phase}") from error


__all__ = ["PhaseEntry", "PhaseRouter", "PhaseRunner"]
