"""Phase sequencer driving one reconciliation run from manifest to patch."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .memory.schema import Checkpoint, RunStatus
from .memory.store import ReconciliationStore, StoreError, new_record_id
from .models.llm_client import LLMClient
from .phases import PhaseName
from .phases.base import (
    CriticalPhaseError,
    PartialPhaseError,
    PhaseContext,
    ReconciliationError,
    ReviewRequired,
    RunCancelled,
    error_entry,
)
from .phases.discover_delta import fallback_to_fullscan
from .router import PhaseRouter
from .state import GraphState, ReconciliationInput, ReconciliationResult, ReviewInput, mint_run_key
from .tools.cancellation import CancellationRegistry, default_registry
from .tools.content import ContentProvider, FilesystemContentProvider
from .tools.vcs import GitRepository

LOGGER = logging.getLogger(__name__)


class ReconciliationOrchestrator:
    """Run the reconciliation phases in order with uniform failure handling.

    ``invoke`` returns a :class:`ReconciliationResult` for completed, failed
    (non-critical), cancelled and pending-review runs. It raises
    :class:`CriticalPhaseError` when a critical phase fails and
    :class:`ReviewRequired` when the run is suspended for review; the latter is
    answered with :meth:`resume`.
    """

    def __init__(
        self,
        *,
        content: ContentProvider,
        store: Optional[ReconciliationStore] = None,
        client: Optional[LLMClient] = None,
        cancellation: Optional[CancellationRegistry] = None,
        git: Optional[GitRepository] = None,
        logs_root: Path | str | None = None,
        router: Optional[PhaseRouter] = None,
    ) -> None:
        self._context = PhaseContext(
            content=content,
            store=store,
            client=client,
            git=git,
            cancellation=cancellation or default_registry(),
            logs_root=Path(logs_root) if logs_root is not None else None,
        )
        self._router = router or PhaseRouter()
        self._checkpoints: Dict[str, Checkpoint] = {}

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        *,
        client: Optional[LLMClient],
        repo_root: Path | str | None = None,
        store: Optional[ReconciliationStore] = None,
    ) -> "ReconciliationOrchestrator":
        """Convenience constructor used by the CLI."""
        project = config.get("project") or {}
        root = Path(repo_root or project.get("repo_root") or ".")
        paths = config.get("paths") or {}
        logs = paths.get("logs") or Path(paths.get("data") or "data") / "logs"
        return cls(
            content=FilesystemContentProvider(root),
            store=store or ReconciliationStore.from_config(config),
            client=client,
            logs_root=logs,
        )

    @property
    def router(self) -> PhaseRouter:
        return self._router

    @property
    def store(self) -> Optional[ReconciliationStore]:
        return self._context.store

    # Public API ------------------------------------------------------------------------
    def invoke(self, request: ReconciliationInput) -> ReconciliationResult:
        """Run every phase for ``request`` and return the final result."""
        request = request.model_copy(deep=True)
        request.run_key = request.run_key or mint_run_key()
        state = GraphState(input=request, root_directory=request.root_directory)
        LOGGER.info("Starting %s run %s on %s", request.mode.value, request.run_key, request.root_directory)
        return self._execute(state, self._router.sequence_for(state)[0])

    def resume(self, run_key: str, review_input: Optional[ReviewInput] = None) -> ReconciliationResult:
        """Continue a suspended run from its last checkpoint with the reviewer's answers."""
        checkpoint = self._load_checkpoint(run_key)
        if checkpoint is None:
            raise ReconciliationError(f"No checkpoint found for run {run_key}")
        state = GraphState.model_validate(checkpoint.payload)
        state.was_resumed = True
        state.human_review_input = review_input or ReviewInput()
        LOGGER.info("Resuming run %s at phase %s", run_key, checkpoint.phase)
        return self._execute(state, PhaseName(checkpoint.phase))

    def cancel(self, run_key: str) -> None:
        """Request cooperative cancellation of a run."""
        self._context.cancellation.request(run_key)

    # Execution loop --------------------------------------------------------------------
    def _execute(self, state: GraphState, start: PhaseName) -> ReconciliationResult:
        sequence = self._router.sequence_for(state)
        if start not in sequence:
            raise ReconciliationError(f"Phase {start.value} is not part of this run")
        index = sequence.index(start)
        persist_index = sequence.index(PhaseName.PERSIST)
        options = state.input.options

        while index < len(sequence):
            phase = sequence[index]
            if phase != PhaseName.PERSIST:
                if state.iteration_count >= options.max_iterations:
                    state.decisions.append(
                        f"orchestrator: iteration bound {options.max_iterations} reached before {phase.value}"
                    )
                    index = persist_index
                    continue
                if self._context.cancellation.is_requested(state.run_key):
                    self._mark_cancelled(state, phase.value)
                    index = persist_index
                    continue

            state.current_phase = phase.value
            try:
                update = self._run_phase(phase, state)
            except ReviewRequired:
                self._save_checkpoint(state, phase)
                raise
            except RunCancelled as cancelled:
                state.merge(cancelled.partial)
                self._mark_cancelled(state, phase.value)
                index = persist_index
                continue
            except CriticalPhaseError:
                self._clear_checkpoints(state)
                self._context.cancellation.clear(state.run_key or "")
                raise
            except Exception as error:
                partial: Dict[str, Any] = {}
                cause: BaseException = error
                if isinstance(error, PartialPhaseError):
                    partial, cause = error.partial, error.cause
                if phase == PhaseName.PERSIST:
                    raise ReconciliationError(f"Final persistence crashed: {cause}") from error
                LOGGER.error("Phase %s failed: %s", phase.value, cause, exc_info=True)
                state.merge(partial)
                state.errors.append(error_entry(phase.value, str(cause)))
                index = persist_index
                continue

            state.merge(update)
            state.completed_phases.append(phase.value)
            state.iteration_count += 1
            index += 1
            if index < len(sequence):
                self._save_checkpoint(state, sequence[index])

        return self._finish(state)

    def _run_phase(self, phase: PhaseName, state: GraphState) -> Dict[str, Any]:
        """Dispatch one phase, converting critical failures and delta failures."""
        try:
            return self._router.dispatch(phase, state, self._context)
        except (ReviewRequired, RunCancelled):
            raise
        except Exception as error:
            if not self._router.is_critical(phase):
                raise
            if phase == PhaseName.DISCOVER_DELTA:
                LOGGER.warning("Delta discovery failed, using full scan: %s", error)
                try:
                    return fallback_to_fullscan(state, self._context, f"delta discovery failed: {error}")
                except (ReviewRequired, RunCancelled):
                    raise
                except Exception as fallback_error:
                    error = fallback_error
            LOGGER.error("Critical phase %s failed: %s", phase.value, error, exc_info=True)
            raise CriticalPhaseError(phase.value, state.run_key, error) from error

    def _mark_cancelled(self, state: GraphState, phase: str) -> None:
        LOGGER.info("Run %s cancelled during %s", state.run_key, phase)
        state.cancelled = True
        state.decisions.append(f"orchestrator: cancelled during {phase}")

    def _finish(self, state: GraphState) -> ReconciliationResult:
        result = state.output
        if result is None:
            raise ReconciliationError(f"Run {state.run_key} ended without a result")
        if result.status != RunStatus.PENDING_REVIEW:
            self._clear_checkpoints(state)
        self._context.cancellation.clear(result.run_key)
        if state.input.run_key and state.input.run_key != result.run_key:
            self._context.cancellation.clear(state.input.run_key)
        return result

    # Checkpoints -----------------------------------------------------------------------
    def _save_checkpoint(self, state: GraphState, next_phase: PhaseName) -> None:
        run_key = state.run_key
        if not run_key:
            return
        checkpoint = Checkpoint(
            id=new_record_id(),
            run_key=run_key,
            phase=next_phase.value,
            payload=state.model_dump(mode="json"),
        )
        self._checkpoints[run_key] = checkpoint
        if self._context.store is None:
            return
        try:
            self._context.store.save_checkpoint(checkpoint)
        except StoreError as error:
            LOGGER.warning("Could not save checkpoint for %s: %s", run_key, error)

    def _load_checkpoint(self, run_key: str) -> Optional[Checkpoint]:
        if self._context.store is not None:
            stored = self._context.store.load_checkpoint(run_key)
            if stored is not None:
                return stored
        return self._checkpoints.get(run_key)

    def _clear_checkpoints(self, state: GraphState) -> None:
        keys: List[str] = [key for key in {state.input.run_key, state.interim_run_key} if key]
        for key in keys:
            self._checkpoints.pop(key, None)
            if self._context.store is not None:
                try:
                    self._context.store.delete_checkpoints(key)
                except StoreError as error:
                    LOGGER.warning("Could not clear checkpoints for %s: %s", key, error)


__all__ = ["ReconciliationOrchestrator"]
