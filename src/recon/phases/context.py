"""Context phase: gather per-test material used to prompt atom inference."""

from __future__ import annotations

import logging
import posixpath
import re
from typing import Any, Dict, Iterable, List, Sequence

from ..state import DocChunk, GraphState, OrphanTest, TestContext
from .base import PhaseContext, check_cancelled

LOGGER = logging.getLogger(__name__)

DOC_CONTENT_LIMIT = 2000
MAX_RELATED_DOCS = 3

DOMAIN_KEYWORDS = (
    "auth",
    "login",
    "logout",
    "password",
    "token",
    "session",
    "permission",
    "role",
    "user",
    "account",
    "payment",
    "invoice",
    "order",
    "cart",
    "checkout",
    "email",
    "notification",
    "cache",
    "config",
    "validation",
    "search",
    "upload",
    "export",
    "import",
    "report",
    "schedule",
    "security",
    "performance",
    "rate",
    "limit",
    "retry",
    "timeout",
)

_HEADING = re.compile(r"^#{1,6}\s+(.+?)\s*#*\s*$", re.MULTILINE)
_BACKTICK = re.compile(r"`([^`\n]{2,60})`")
_BOLD = re.compile(r"\*\*([^*\n]{2,60})\*\*")
_PY_ASSERT = re.compile(r"^\s*(assert\b.*|self\.assert\w+\(.*|pytest\.raises\(.*)$")
_JS_EXPECT = re.compile(r"^\s*(expect\(.*)$")
_IMPORT = re.compile(
    r"""^\s*(?:from\s+([\w.]+)\s+import|import\s+([\w.]+)\s*$|.*?require\(\s*['"]([^'"]+)['"]|import\s.*?from\s+['"]([^'"]+)['"])""",
    re.MULTILINE,
)
_WORD = re.compile(r"[A-Za-z][a-z]+|[A-Z]+(?![a-z])")
_STOPWORDS = {"test", "tests", "should", "when", "then", "with", "that", "the", "and", "for", "it"}


# Documentation index ---------------------------------------------------------------


def extract_keywords(markdown: str) -> List[str]:
    """Keywords of a markdown document: headings, inline code and bold terms."""
    keywords: List[str] = []
    for pattern in (_HEADING, _BACKTICK, _BOLD):
        for match in pattern.finditer(markdown):
            keyword = match.group(1).strip().lower()
            if keyword and keyword not in keywords:
                keywords.append(keyword)
    return keywords


def build_documentation_index(context: PhaseContext, *, max_chunks: int) -> List[DocChunk]:
    paths = [
        path
        for path in context.content.walk("docs", include_extensions=(".md",))
        if path.endswith(".md")
    ]
    chunks: List[DocChunk] = []
    for path in sorted(paths):
        if len(chunks) >= max_chunks:
            break
        text = context.content.read_or_none(path)
        if not text:
            continue
        chunks.append(
            DocChunk(
                file_path=path,
                content=text[:DOC_CONTENT_LIMIT],
                keywords=extract_keywords(text),
            )
        )
    return chunks


# Per-test analysis -----------------------------------------------------------------


def _name_words(name: str) -> List[str]:
    words = []
    for word in _WORD.findall(name.replace("_", " ")):
        lowered = word.lower()
        if len(lowered) > 2 and lowered not in _STOPWORDS and lowered not in words:
            words.append(lowered)
    return words


def _assertions(code: str, python: bool) -> List[str]:
    pattern = _PY_ASSERT if python else _JS_EXPECT
    return [match.group(1).strip() for line in code.splitlines() if (match := pattern.match(line))]


def _imports(code: str) -> List[str]:
    found: List[str] = []
    for match in _IMPORT.finditer(code):
        module = next(group for group in match.groups() if group)
        if module not in found:
            found.append(module)
    return found


def _domain_concepts(test: OrphanTest) -> List[str]:
    concepts = _name_words(test.test_name)
    lowered_code = test.test_code.lower()
    for keyword in DOMAIN_KEYWORDS:
        if keyword in lowered_code and keyword not in concepts:
            concepts.append(keyword)
    return concepts


def _related_docs(concepts: Iterable[str], index: Sequence[DocChunk]) -> List[str]:
    wanted = set(concepts)
    scored = []
    for chunk in index:
        overlap = sum(1 for keyword in chunk.keywords if any(word in keyword for word in wanted))
        if overlap:
            scored.append((overlap, chunk.file_path))
    scored.sort(key=lambda item: (-item[0], item[1]))
    return [path for _, path in scored[:MAX_RELATED_DOCS]]


def analyse_test(test: OrphanTest, index: Sequence[DocChunk]) -> TestContext:
    python = test.file_path.endswith(".py")
    assertions = _assertions(test.test_code, python)
    concepts = _domain_concepts(test)
    related_code = [posixpath.basename(path) for path in test.related_source_files]
    related_docs = _related_docs(concepts, index)
    summary = (
        f"{test.test_name} in {test.file_path} makes {len(assertions)} assertion(s)"
        + (f" covering {', '.join(concepts[:5])}" if concepts else "")
    )
    raw_lines = [summary]
    if related_code:
        raw_lines.append(f"Related code: {', '.join(related_code)}")
    for path in related_docs:
        chunk = next(chunk for chunk in index if chunk.file_path == path)
        raw_lines.append(f"Documentation ({path}):\n{chunk.content[:500]}")
    return TestContext(
        test_key=test.test_key,
        summary=summary,
        assertions=assertions,
        imports=_imports(test.test_code),
        domain_concepts=concepts,
        related_code=related_code,
        related_docs=related_docs,
        raw_context="\n".join(raw_lines),
    )


def fallback_context(test: OrphanTest) -> TestContext:
    """Minimal context used when a test cannot be analysed."""
    return TestContext(
        test_key=test.test_key,
        summary=f"Test {test.test_name} in {test.file_path}",
        domain_concepts=_name_words(test.test_name),
    )


def run(state: GraphState, context: PhaseContext) -> Dict[str, Any]:
    options = state.input.options
    index: List[DocChunk] = []
    if options.index_docs:
        index = build_documentation_index(context, max_chunks=options.max_doc_chunks)
        LOGGER.info("Indexed %s documentation chunks", len(index))

    contexts: Dict[str, TestContext] = {}
    fallbacks = 0
    for test in state.orphan_tests:
        check_cancelled(state, context, "context")
        try:
            contexts[test.test_key] = analyse_test(test, index)
        except (ValueError, StopIteration) as error:
            LOGGER.debug("Falling back to minimal context for %s: %s", test.test_key, error)
            contexts[test.test_key] = fallback_context(test)
            fallbacks += 1

    decisions = [f"context: analysed {len(contexts)} tests ({fallbacks} fallback)"]
    return {
        "documentation_index": index,
        "context_per_test": contexts,
        "decisions": decisions,
    }


__all__ = [
    "DOMAIN_KEYWORDS",
    "analyse_test",
    "build_documentation_index",
    "extract_keywords",
    "fallback_context",
    "run",
]
