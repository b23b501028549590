"""Infer one candidate atom per orphan test via the language model."""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..models.llm_client import LLMClientError, LLMRequest
from ..prompts import ATOM_CATEGORIES, ATOM_SYSTEM_PROMPT, render_atom_prompt
from ..state import GraphState, InferredAtom, OrphanTest, SourceTestRef, TestContext
from .base import (
    PartialPhaseError,
    PhaseContext,
    ReviewRequired,
    RunCancelled,
    check_cancelled,
    invoke_model,
)

LOGGER = logging.getLogger(__name__)

FALLBACK_CONFIDENCE = 0.3
FALLBACK_REASONING = "Fallback atom - requires manual review"
DEFAULT_CONFIDENCE = 0.5


@dataclass(slots=True)
class AtomInferenceResponse:
    """Schema the model must answer with for a single test."""

    description: str
    category: str = "functional"
    confidence: float = DEFAULT_CONFIDENCE
    quality_score: Optional[float] = None
    observable_outcomes: List[str] = field(default_factory=list)
    reasoning: str = ""
    ambiguity_reasons: List[str] = field(default_factory=list)


@dataclass(slots=True)
class AtomInferenceRequest:
    run_key: Optional[str]
    test_key: str
    file_path: str
    test_name: str
    line_number: int


def new_temp_atom_id() -> str:
    return f"temp-{uuid.uuid4()}"


def normalise_confidence(value: Any) -> float:
    """Map model confidence onto [0, 1]: percentages are scaled, nonsense becomes 0.5."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE
    if 0.0 <= number <= 1.0:
        return number
    if 1.0 < number <= 100.0:
        return number / 100.0
    return DEFAULT_CONFIDENCE


def normalise_quality(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if 0.0 <= number <= 100.0:
        return number
    return None


def normalise_category(value: str) -> str:
    category = (value or "").strip().lower()
    return category if category in ATOM_CATEGORIES else "functional"


def fallback_atom(test: OrphanTest) -> InferredAtom:
    """Low-confidence placeholder used when the model cannot produce an atom."""
    return InferredAtom(
        temp_id=new_temp_atom_id(),
        description=f"Behavior verified by test: {test.test_name}",
        category="functional",
        confidence=FALLBACK_CONFIDENCE,
        observable_outcomes=["Test passes as expected"],
        source_test=SourceTestRef(
            file_path=test.file_path,
            test_name=test.test_name,
            line_number=test.line_number,
        ),
        reasoning=FALLBACK_REASONING,
        ambiguity_reasons=["LLM inference failed, using fallback"],
    )


def atom_from_response(
    test: OrphanTest,
    response: AtomInferenceResponse,
    context: Optional[TestContext] = None,
) -> InferredAtom:
    description = response.description.strip()
    if not description:
        return fallback_atom(test)
    return InferredAtom(
        temp_id=new_temp_atom_id(),
        description=description,
        category=normalise_category(response.category),
        confidence=normalise_confidence(response.confidence),
        quality_score=normalise_quality(response.quality_score),
        observable_outcomes=[item for item in response.observable_outcomes if item.strip()],
        source_test=SourceTestRef(
            file_path=test.file_path,
            test_name=test.test_name,
            line_number=test.line_number,
        ),
        reasoning=response.reasoning,
        ambiguity_reasons=[item for item in response.ambiguity_reasons if item.strip()],
        related_docs=list(context.related_docs) if context else [],
    )


def infer_atom(
    test: OrphanTest,
    state: GraphState,
    context: PhaseContext,
    *,
    max_attempts: Optional[int] = None,
    on_attempt: Optional[Callable[[int], None]] = None,
) -> InferredAtom:
    """Infer a single atom; model failures yield the fallback atom."""
    if context.client is None:
        return fallback_atom(test)
    test_context = state.context_per_test.get(test.test_key)
    llm_request = LLMRequest(
        prompt=render_atom_prompt(test, test_context),
        response_model=AtomInferenceResponse,
        system_prompt=ATOM_SYSTEM_PROMPT,
        metadata={"phase": "infer_atoms", "test": test.test_key},
        max_attempts=max_attempts,
    )
    request = AtomInferenceRequest(
        run_key=state.run_key,
        test_key=test.test_key,
        file_path=test.file_path,
        test_name=test.test_name,
        line_number=test.line_number,
    )
    try:
        response = invoke_model(
            "infer_atoms",
            request,
            llm_request,
            client=context.client,
            logs_root=context.logs_root,
            on_attempt=on_attempt,
        )
    except LLMClientError as error:
        LOGGER.warning("Inference failed for %s, using fallback atom: %s", test.test_key, error)
        return fallback_atom(test)
    return atom_from_response(test, response, test_context)


def run(state: GraphState, context: PhaseContext) -> Dict[str, Any]:
    """Infer atoms batch by batch without exceeding the model call budget.

    Every model attempt, retries included, is charged to the budget. Each
    batch is sized so that its worst case still fits in what remains.
    """
    options = state.input.options
    budget = max(options.max_llm_calls - state.llm_call_count, 0)
    batch_size = max(options.batch_size, 1)
    client_attempts = context.client.max_attempts if context.client is not None else 0
    decisions: List[str] = []
    atoms: List[InferredAtom] = []
    calls = 0
    lock = threading.Lock()

    def _count_attempt(_attempt: int) -> None:
        nonlocal calls
        with lock:
            calls += 1

    def _partial() -> Dict[str, Any]:
        return {
            "inferred_atoms": list(atoms),
            "llm_call_count": state.llm_call_count + calls,
            "decisions": list(decisions),
        }

    pending = list(state.orphan_tests)
    with ThreadPoolExecutor(max_workers=batch_size) as executor:
        while pending:
            try:
                check_cancelled(state, context, "infer_atoms")
            except RunCancelled as cancelled:
                raise RunCancelled(cancelled.run_key, cancelled.phase, partial=_partial()) from None
            attempt_cap: Optional[int] = None
            if context.client is not None:
                remaining = budget - calls
                if remaining <= 0:
                    break
                batch = pending[: min(batch_size, remaining)]
                attempt_cap = max(1, min(client_attempts, remaining // len(batch)))
            else:
                batch = pending[:batch_size]
            futures = [
                executor.submit(
                    infer_atom,
                    test,
                    state,
                    context,
                    max_attempts=attempt_cap,
                    on_attempt=_count_attempt,
                )
                for test in batch
            ]
            try:
                results = [future.result() for future in futures]
            except ReviewRequired:
                raise
            except RunCancelled as cancelled:
                raise RunCancelled(cancelled.run_key, cancelled.phase, partial=_partial()) from None
            except Exception as error:
                raise PartialPhaseError("infer_atoms", _partial(), error) from error
            atoms.extend(results)
            pending = pending[len(batch) :]
            LOGGER.debug("Inferred %s/%s atoms", len(atoms), len(state.orphan_tests))

    if pending:
        decisions.append(
            f"infer_atoms: LLM call budget of {options.max_llm_calls} reached; "
            f"{len(pending)} tests left uninferred"
        )
        LOGGER.warning(decisions[-1])
    fallbacks = sum(1 for atom in atoms if atom.reasoning == FALLBACK_REASONING)
    decisions.append(f"infer_atoms: inferred {len(atoms)} atoms ({fallbacks} fallback)")
    LOGGER.info(decisions[-1])
    return _partial()


__all__ = [
    "AtomInferenceRequest",
    "AtomInferenceResponse",
    "atom_from_response",
    "fallback_atom",
    "infer_atom",
    "new_temp_atom_id",
    "normalise_confidence",
    "run",
]
