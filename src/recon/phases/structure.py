"""Structure phase: build the file manifest the rest of the run works from."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Sequence

from ..state import GraphState, ReconciliationOptions, RepoStructure
from ..tools.content import DEFAULT_EXCLUDE_PATTERNS, is_excluded, matches_any
from ..tools.scanner import DEFAULT_SOURCE_PATTERNS, DEFAULT_TEST_PATTERNS
from .base import PhaseContext, check_cancelled

LOGGER = logging.getLogger(__name__)


def test_patterns_for(options: ReconciliationOptions) -> Sequence[str]:
    return options.test_patterns or DEFAULT_TEST_PATTERNS


def is_test_file(path: str, options: ReconciliationOptions) -> bool:
    """Return ``True`` when ``path`` is a test file admitted by the path filters."""
    if not matches_any(path, test_patterns_for(options)):
        return False
    if options.include_paths and not matches_any(path, options.include_paths) and not any(
        path.startswith(prefix.rstrip("/") + "/") for prefix in options.include_paths
    ):
        return False
    if options.exclude_paths and is_excluded(path, options.exclude_paths):
        return False
    return True


def run(state: GraphState, context: PhaseContext) -> Dict[str, Any]:
    check_cancelled(state, context, "structure")
    options = state.input.options
    files = context.content.walk(
        "",
        exclude_patterns=DEFAULT_EXCLUDE_PATTERNS,
        max_files=options.max_files,
    )
    if len(files) >= options.max_files:
        LOGGER.warning("File manifest truncated at %s entries", options.max_files)

    test_files: List[str] = []
    source_files: List[str] = []
    for path in files:
        if is_test_file(path, options):
            test_files.append(path)
        elif matches_any(path, DEFAULT_SOURCE_PATTERNS) and not matches_any(
            path, test_patterns_for(options)
        ):
            source_files.append(path)

    LOGGER.info(
        "Repository manifest: %s files, %s test files, %s source files",
        len(files),
        len(test_files),
        len(source_files),
    )
    return {
        "root_directory": state.input.root_directory,
        "repo_structure": RepoStructure(
            files=files,
            test_files=test_files,
            source_files=source_files,
        ),
        "current_commit": context.content.commit_hash(),
    }


__all__ = ["is_test_file", "run", "test_patterns_for"]
