"""Verify phase: score atoms, decide on human review, apply review answers."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from ..memory.schema import RecommendationStatus
from ..memory.store import StoreError
from ..patch import apply_quality_gate, atom_gate_score
from ..prompts import ATOM_CATEGORIES
from ..state import GraphState, InferredAtom, ReviewInput, ReviewRequest
from .base import PhaseContext, ReviewRequired, check_cancelled

LOGGER = logging.getLogger(__name__)

REVIEWER = "review"


def rule_quality_score(atom: InferredAtom) -> float:
    """Score an atom out of 100 from the completeness of its fields."""
    score = 0.0
    description = atom.description.strip()
    if len(description) >= 20:
        score += 25
    elif description:
        score += 25 * len(description) / 20
    if atom.observable_outcomes:
        score += 15
    if atom.category in ATOM_CATEGORIES:
        score += 15
    if atom.reasoning.strip():
        score += 10
    score += 15 * atom.confidence
    if not atom.ambiguity_reasons:
        score += 10
    if atom.source_test.file_path and atom.source_test.test_name:
        score += 10
    return round(min(score, 100.0), 2)


def score_atoms(atoms: List[InferredAtom]) -> List[InferredAtom]:
    """Fill in a rule-based quality score wherever the model gave none."""
    return [
        atom
        if atom.quality_score is not None
        else atom.model_copy(update={"quality_score": rule_quality_score(atom)})
        for atom in atoms
    ]


def apply_review(state: GraphState, review: ReviewInput, context: PhaseContext) -> Dict[str, Any]:
    """Apply approve/reject answers to the candidate atoms and molecules."""
    atom_decisions = {decision.temp_id: decision for decision in review.atom_decisions}
    rejected = {temp_id for temp_id, item in atom_decisions.items() if item.decision == "reject"}

    atoms: List[InferredAtom] = []
    for atom in state.inferred_atoms:
        if atom.temp_id in rejected:
            continue
        decision = atom_decisions.get(atom.temp_id)
        if decision is not None and decision.description:
            atom = atom.model_copy(update={"description": decision.description})
        atoms.append(atom)

    rejected_molecules = {
        item.temp_id for item in review.molecule_decisions if item.decision == "reject"
    }
    molecules = []
    for molecule in state.inferred_molecules:
        if molecule.temp_id in rejected_molecules:
            continue
        members = [temp_id for temp_id in molecule.atom_temp_ids if temp_id not in rejected]
        if members:
            molecules.append(molecule.model_copy(update={"atom_temp_ids": members}))

    if context.store is not None and state.interim_run_id:
        _record_review(context, state.interim_run_id, review)

    message = (
        f"verify: review applied, {len(rejected)} atoms rejected, "
        f"{len(atom_decisions) - len(rejected)} approved"
    )
    if review.comment:
        message += f" ({review.comment})"
    return {
        "inferred_atoms": atoms,
        "inferred_molecules": molecules,
        "pending_human_review": False,
        "decisions": [message],
    }


def _record_review(context: PhaseContext, run_id: str, review: ReviewInput) -> None:
    store = context.store
    assert store is not None
    for decision in review.atom_decisions:
        status = (
            RecommendationStatus.ACCEPTED
            if decision.decision == "approve"
            else RecommendationStatus.REJECTED
        )
        try:
            record = store.resolve_atom_recommendation(
                run_id, decision.temp_id, status, resolved_by=REVIEWER
            )
            if decision.description:
                store.update_atom_recommendation(record.id, description=decision.description)
        except StoreError as error:
            LOGGER.warning("Could not record review of %s: %s", decision.temp_id, error)


def run(state: GraphState, context: PhaseContext) -> Dict[str, Any]:
    check_cancelled(state, context, "verify")
    options = state.input.options
    atoms = score_atoms(state.inferred_atoms)

    if state.was_resumed and state.human_review_input is not None:
        scored = state.model_copy(update={"inferred_atoms": atoms})
        return apply_review(scored, state.human_review_input, context)

    outcome = apply_quality_gate(atoms, state.inferred_molecules, options.quality_threshold)
    decisions = [
        f"verify: {outcome.pass_count} atoms pass the quality gate, {outcome.fail_count} fail "
        f"(threshold {options.quality_threshold:g})"
    ]
    update: Dict[str, Any] = {"inferred_atoms": atoms, "decisions": decisions}

    reason = None
    if options.require_review and atoms:
        reason = "review requested for this run"
    elif options.force_interrupt_on_quality_fail and outcome.fail_count > outcome.pass_count:
        reason = f"{outcome.fail_count} atoms failed the quality gate versus {outcome.pass_count} passing"
    if reason is None or state.was_resumed:
        return update

    if options.interrupt_on_review:
        passed = set(outcome.passed_atom_ids)
        request = ReviewRequest(
            run_key=state.run_key or "",
            reason=reason,
            atoms=[
                {
                    "temp_id": atom.temp_id,
                    "description": atom.description,
                    "category": atom.category,
                    "score": atom_gate_score(atom),
                    "passes": atom.temp_id in passed,
                    "source_test": f"{atom.source_test.file_path}:{atom.source_test.test_name}",
                }
                for atom in atoms
            ],
            molecules=[
                {
                    "temp_id": molecule.temp_id,
                    "name": molecule.name,
                    "atom_temp_ids": list(molecule.atom_temp_ids),
                }
                for molecule in state.inferred_molecules
            ],
            pass_count=outcome.pass_count,
            fail_count=outcome.fail_count,
            quality_threshold=options.quality_threshold,
        )
        LOGGER.info("Suspending run %s for human review: %s", state.run_key, reason)
        raise ReviewRequired(request)

    update["pending_human_review"] = True
    decisions.append(f"verify: human review required ({reason})")
    return update


__all__ = ["apply_review", "rule_quality_score", "run", "score_atoms"]
