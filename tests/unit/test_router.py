from __future__ import annotations

import pytest

from recon.memory.schema import RunMode
from recon.phases import PhaseName
from recon.router import PhaseRouter
from recon.state import GraphState, ReconciliationInput


def _state(mode: RunMode) -> GraphState:
    return GraphState(input=ReconciliationInput(root_directory="/repo", mode=mode))


def test_discovery_slot_follows_the_run_mode() -> None:
    fullscan = PhaseRouter.sequence_for(_state(RunMode.FULLSCAN))
    delta = PhaseRouter.sequence_for(_state(RunMode.DELTA))

    assert fullscan[1] is PhaseName.DISCOVER_FULLSCAN
    assert delta[1] is PhaseName.DISCOVER_DELTA
    assert fullscan[-1] is PhaseName.PERSIST
    assert len(fullscan) == len(delta) == 8


def test_registry_covers_every_phase_and_keeps_critical_flags() -> None:
    router = PhaseRouter()

    assert set(router.available_phases()) == set(PhaseName)
    assert router.is_critical("structure")
    assert router.is_critical(PhaseName.DISCOVER_DELTA)
    assert not router.is_critical("infer_atoms")

    router.register("structure", lambda state, context: {})
    assert router.is_critical("structure")


def test_unknown_phase_is_rejected() -> None:
    with pytest.raises(KeyError):
        PhaseRouter.normalize_phase("deploy")
