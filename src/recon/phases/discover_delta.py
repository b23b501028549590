"""Delta discovery: only tests in files changed since the baseline commit.

Tests already linked to an atom are reported as changed-linked tests for audit
and never sent to inference. Tests that a prior run accepted or rejected are
closed and dropped from the orphan set. Whenever the delta cannot be computed
the phase degrades to a full scan and says why in the delta summary.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from ..state import ChangedAtomLinkedTest, DeltaSummary, GraphState
from ..tools.vcs import GitRepository
from . import discover_fullscan
from .base import PhaseContext, check_cancelled
from .structure import is_test_file

LOGGER = logging.getLogger(__name__)


def _resolve_git(context: PhaseContext) -> Optional[GitRepository]:
    if context.git is not None:
        return context.git
    return getattr(context.content, "git", None)


def fallback_to_fullscan(state: GraphState, context: PhaseContext, reason: str) -> Dict[str, Any]:
    LOGGER.warning("Delta discovery falling back to full scan: %s", reason)
    update = discover_fullscan.run(state, context)
    baseline = state.input.baseline
    update["delta_summary"] = DeltaSummary(
        baseline_run_key=baseline.run_key if baseline else None,
        baseline_commit=baseline.commit_hash if baseline else None,
        baseline=baseline.describe() if baseline else None,
        new_orphan_tests=len(update["orphan_tests"]),
        fallback_to_fullscan=True,
        fallback_reason=reason,
    )
    update["decisions"] = [f"discover_delta: fell back to full scan ({reason})", *update["decisions"]]
    return update


def run(state: GraphState, context: PhaseContext) -> Dict[str, Any]:
    check_cancelled(state, context, "discover_delta")
    options = state.input.options
    baseline = state.input.baseline
    if baseline is None or not baseline.is_complete:
        return fallback_to_fullscan(state, context, "no baseline run key and commit supplied")

    git = _resolve_git(context)
    if git is None:
        return fallback_to_fullscan(state, context, "repository is not a git checkout")
    if not git.is_valid_commit(baseline.commit_hash):
        return fallback_to_fullscan(state, context, f"baseline commit {baseline.commit_hash} not found")

    changes = git.changed_files(baseline.commit_hash or "", "HEAD")
    if not changes.success:
        return fallback_to_fullscan(state, context, f"git diff failed: {changes.error}")

    added = changes.added_paths()
    changed_tests = [
        path
        for path in changes.paths()
        if is_test_file(path, options) and context.content.exists(path)
    ]
    LOGGER.info(
        "Delta since %s: %s changed files, %s changed test files",
        baseline.describe(),
        len(changes.files),
        len(changed_tests),
    )

    scan = discover_fullscan.scan_test_files(
        changed_tests,
        state,
        context,
        phase="discover_delta",
        delta_paths=frozenset(changed_tests),
    )

    changed_linked: List[ChangedAtomLinkedTest] = [
        ChangedAtomLinkedTest(
            file_path=test.file_path,
            test_name=test.test_name,
            line_number=test.line_number,
            linked_atom_id=test.linked_atom_ids[0],
            change_type="added" if test.file_path in added else "modified",
        )
        for test in scan.linked
    ]
    for test in changed_linked:
        LOGGER.info(
            "Changed test %s is linked to %s; recorded for audit only",
            test.test_key,
            test.linked_atom_id,
        )

    orphans = scan.orphans
    closed_excluded = 0
    if context.store is not None and orphans:
        closed = context.store.find_closed_tests(changed_tests)
        kept = [test for test in orphans if (test.file_path, test.test_name) not in closed]
        closed_excluded = len(orphans) - len(kept)
        orphans = kept

    summary = DeltaSummary(
        baseline_run_key=baseline.run_key,
        baseline_commit=baseline.commit_hash,
        baseline=baseline.describe(),
        changed_test_files=len(changed_tests),
        new_orphan_tests=len(orphans),
        changed_atom_linked_tests=len(changed_linked),
        closed_tests_excluded=closed_excluded,
    )
    decisions = [
        f"discover_delta: {len(orphans)} new orphan tests, {len(changed_linked)} changed "
        f"linked tests across {len(changed_tests)} changed test files"
    ]
    if closed_excluded:
        decisions.append(f"discover_delta: excluded {closed_excluded} closed tests")
    return {
        "orphan_tests": orphans,
        "changed_atom_linked_tests": changed_linked,
        "delta_summary": summary,
        "decisions": decisions,
    }


__all__ = ["fallback_to_fullscan", "run"]
