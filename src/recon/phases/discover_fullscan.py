"""Full-scan discovery: classify every test in the manifest as orphan or linked."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List

from ..state import GraphState, OrphanTest, RepoStructure
from ..tools.scanner import DiscoveredTest, find_related_source_files, parse_test_file
from .base import PhaseContext, check_cancelled

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ScanResult:
    """Tests found in a set of files, split by atom linkage."""

    orphans: List[OrphanTest] = field(default_factory=list)
    linked: List[DiscoveredTest] = field(default_factory=list)
    files_scanned: int = 0
    truncated: bool = False


def scan_test_files(
    paths: Iterable[str],
    state: GraphState,
    context: PhaseContext,
    *,
    phase: str,
    delta_paths: frozenset[str] = frozenset(),
) -> ScanResult:
    """Parse ``paths`` and return orphan tests plus already-linked tests.

    Cancellation is checked before each file. Parsing stops once
    ``max_tests`` orphans have been collected.
    """
    options = state.input.options
    structure = state.repo_structure or RepoStructure()
    result = ScanResult()

    for path in paths:
        check_cancelled(state, context, phase)
        source = context.content.read_or_none(path)
        if source is None:
            LOGGER.warning("Skipping unreadable test file %s", path)
            continue
        parsed = parse_test_file(path, source, annotation_lookback=options.annotation_lookback)
        result.files_scanned += 1
        related = find_related_source_files(path, parsed.imports, structure.source_files)
        for test in parsed.tests:
            if test.is_linked:
                result.linked.append(test)
                continue
            if len(result.orphans) >= options.max_tests:
                result.truncated = True
                break
            result.orphans.append(
                OrphanTest(
                    file_path=test.file_path,
                    test_name=test.test_name,
                    line_number=test.line_number,
                    test_code=test.code,
                    related_source_files=list(related),
                    is_delta_change=path in delta_paths,
                )
            )
        if result.truncated:
            LOGGER.warning("Orphan discovery stopped at max_tests=%s", options.max_tests)
            break
    return result


def run(state: GraphState, context: PhaseContext) -> Dict[str, Any]:
    structure = state.repo_structure
    if structure is None:
        raise RuntimeError("Repository structure is missing; the structure phase must run first")

    result = scan_test_files(structure.test_files, state, context, phase="discover_fullscan")
    decisions = [
        f"discover_fullscan: {len(result.orphans)} orphan tests, "
        f"{len(result.linked)} linked tests in {result.files_scanned} files"
    ]
    if result.truncated:
        decisions.append(
            f"discover_fullscan: orphan set truncated at max_tests={state.input.options.max_tests}"
        )
    LOGGER.info(decisions[0])
    return {
        "orphan_tests": result.orphans,
        "changed_atom_linked_tests": [],
        "decisions": decisions,
    }


__all__ = ["ScanResult", "run", "scan_test_files"]
