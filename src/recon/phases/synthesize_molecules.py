"""Group inferred atoms into named molecules."""

from __future__ import annotations

import logging
import posixpath
import re
import uuid
from collections import Counter
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..state import GraphState, InferredAtom, InferredMolecule, TestContext
from .base import PhaseContext, check_cancelled

LOGGER = logging.getLogger(__name__)

_GENERIC_DIRS = {"src", "lib", "app", "test", "tests", "__tests__", "spec", "specs", "unit", "e2e"}
_TOKEN = re.compile(r"[a-z][a-z0-9]{3,}")
_STOPWORDS = {"when", "with", "that", "this", "from", "should", "must", "returns", "system", "user"}


def new_temp_molecule_id() -> str:
    return f"temp-mol-{uuid.uuid4()}"


def _module_key(atom: InferredAtom) -> str:
    directory = posixpath.dirname(atom.source_test.file_path)
    return posixpath.basename(directory) or "root"


def _namespace_key(atom: InferredAtom) -> str:
    parts = [part for part in atom.source_test.file_path.split("/")[:-1] if part not in _GENERIC_DIRS]
    return parts[0] if parts else "root"


def _category_key(atom: InferredAtom) -> str:
    return atom.category or "functional"


def tokens(text: str) -> set[str]:
    return {token for token in _TOKEN.findall(text.lower()) if token not in _STOPWORDS}


def jaccard(left: set[str], right: set[str]) -> float:
    if not left or not right:
        return 0.0
    return len(left & right) / len(left | right)


def _group_by(atoms: Sequence[InferredAtom], key: Callable[[InferredAtom], str]) -> Dict[str, List[InferredAtom]]:
    groups: Dict[str, List[InferredAtom]] = {}
    for atom in atoms:
        groups.setdefault(key(atom), []).append(atom)
    return groups


def _group_semantic(atoms: Sequence[InferredAtom], threshold: float) -> Dict[str, List[InferredAtom]]:
    clusters: List[tuple[set[str], List[InferredAtom]]] = []
    for atom in atoms:
        atom_tokens = tokens(atom.description)
        for seed, members in clusters:
            if jaccard(seed, atom_tokens) >= threshold:
                members.append(atom)
                seed.update(atom_tokens)
                break
        else:
            clusters.append((set(atom_tokens), [atom]))

    groups: Dict[str, List[InferredAtom]] = {}
    for _, members in clusters:
        counts = Counter(token for member in members for token in tokens(member.description))
        key = counts.most_common(1)[0][0] if counts else "general"
        while key in groups:
            key = f"{key}-{len(groups)}"
        groups[key] = members
    return groups


def cluster_atoms(
    atoms: Sequence[InferredAtom],
    method: str,
    *,
    contexts: Optional[Dict[str, TestContext]] = None,
    similarity: float = 0.3,
) -> Dict[str, List[InferredAtom]]:
    """Return clusters of atoms keyed by the feature they share."""
    if method == "module":
        return _group_by(atoms, _module_key)
    if method == "category":
        return _group_by(atoms, _category_key)
    if method == "namespace":
        return _group_by(atoms, _namespace_key)
    if method == "semantic":
        return _group_semantic(atoms, similarity)

    contexts = contexts or {}

    def _concept_key(atom: InferredAtom) -> str:
        context = contexts.get(f"{atom.source_test.file_path}:{atom.source_test.test_name}")
        if context and context.domain_concepts:
            return context.domain_concepts[0]
        return _module_key(atom)

    return _group_by(atoms, _concept_key)


def molecule_name(key: str, members: Sequence[InferredAtom]) -> str:
    label = key.replace("_", " ").replace("-", " ").strip().title() or "General"
    categories = {member.category for member in members}
    if categories == {"security"}:
        return f"{label} Security"
    if categories == {"performance"}:
        return f"{label} Performance"
    return f"{label} Functionality"


def build_molecules(clusters: Dict[str, List[InferredAtom]], method: str) -> List[InferredMolecule]:
    molecules: List[InferredMolecule] = []
    for key, members in clusters.items():
        if not members:
            continue
        confidence = sum(member.confidence for member in members) / len(members)
        molecules.append(
            InferredMolecule(
                temp_id=new_temp_molecule_id(),
                name=molecule_name(key, members),
                description=f"Groups {len(members)} atom(s) related to {key}",
                atom_temp_ids=[member.temp_id for member in members],
                confidence=round(confidence, 4),
                reasoning=f"Clustered by {method} ({key})",
            )
        )
    return molecules


def run(state: GraphState, context: PhaseContext) -> Dict[str, Any]:
    check_cancelled(state, context, "synthesize_molecules")
    options = state.input.options
    clusters = cluster_atoms(
        state.inferred_atoms,
        options.clustering_method,
        contexts=state.context_per_test,
        similarity=options.semantic_similarity,
    )
    molecules = build_molecules(clusters, options.clustering_method)
    message = (
        f"synthesize_molecules: {len(molecules)} molecules from {len(state.inferred_atoms)} atoms "
        f"by {options.clustering_method}"
    )
    LOGGER.info(message)
    return {"inferred_molecules": molecules, "decisions": [message]}


__all__ = [
    "build_molecules",
    "cluster_atoms",
    "jaccard",
    "molecule_name",
    "new_temp_molecule_id",
    "run",
    "tokens",
]
