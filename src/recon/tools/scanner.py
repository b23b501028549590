"""Locate individual tests inside test files and the sources they exercise."""

from __future__ import annotations

import logging
import posixpath
import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Dict, Iterable, List, Optional, Sequence

import libcst as cst
from libcst import metadata

LOGGER = logging.getLogger(__name__)

DEFAULT_TEST_PATTERNS = (
    "**/test_*.py",
    "**/*_test.py",
    "**/*.spec.ts",
    "**/*.test.ts",
    "**/*.spec.tsx",
    "**/*.test.tsx",
    "**/*.e2e-spec.ts",
    "**/*.spec.js",
    "**/*.test.js",
)
DEFAULT_SOURCE_PATTERNS = (
    "**/*.py",
    "**/*.ts",
    "**/*.tsx",
    "**/*.js",
    "**/*.jsx",
)

ANNOTATION_PATTERN = re.compile(r"@atom\s+(IA-\d+)")
_JS_TEST_PATTERN = re.compile(
    r"^\s*(?:it|test)(?:\.(?:only|skip|concurrent))?\s*\(\s*(['\"`])(?P<name>.+?)\1"
)
_JS_IMPORT_PATTERN = re.compile(
    r"""(?:import\s[^'"]*?from\s*|import\s*\(\s*|require\s*\(\s*)['"](?P<module>[^'"]+)['"]"""
)
_JS_EXTENSIONS = (".ts", ".tsx", ".js", ".jsx")
_TEST_SUFFIXES = (".spec", ".test", ".e2e-spec")


@dataclass(slots=True)
class DiscoveredTest:
    """A single test case located in a test file."""

    file_path: str
    test_name: str
    line_number: int
    code: str
    linked_atom_ids: List[str] = field(default_factory=list)

    @property
    def is_linked(self) -> bool:
        return bool(self.linked_atom_ids)


@dataclass(slots=True)
class ParsedTestFile:
    path: str
    tests: List[DiscoveredTest] = field(default_factory=list)
    imports: List[str] = field(default_factory=list)


def is_python_path(path: str) -> bool:
    return path.endswith(".py")


def parse_test_file(path: str, source: str, *, annotation_lookback: int = 5) -> ParsedTestFile:
    """Extract tests and imported modules from ``source``."""
    if is_python_path(path):
        return _parse_python(path, source, annotation_lookback)
    return _parse_script(path, source, annotation_lookback)


def find_annotations(lines: Sequence[str], start_line: int, end_line: int, lookback: int) -> List[str]:
    """Return atom ids annotated above or on the first line of a test.

    ``start_line`` is where the test (including decorators) begins and
    ``end_line`` the line holding its name, both 1-based.
    """
    first = max(start_line - lookback, 1)
    found: List[str] = []
    for index in range(first, end_line + 1):
        if index > len(lines):
            break
        for match in ANNOTATION_PATTERN.finditer(lines[index - 1]):
            if match.group(1) not in found:
                found.append(match.group(1))
    return found


# Python ----------------------------------------------------------------------------


class _PythonTestCollector(cst.CSTVisitor):
    """Collect ``test_*`` functions and ``Test*`` class methods with positions."""

    METADATA_DEPENDENCIES = (metadata.PositionProvider,)

    def __init__(self) -> None:
        self._class_stack: List[str] = []
        self._function_depth = 0
        self.found: List[tuple[str, int, int, int]] = []
        self.imports: List[str] = []

    def visit_ClassDef(self, node: cst.ClassDef) -> None:
        self._class_stack.append(node.name.value)

    def leave_ClassDef(self, original_node: cst.ClassDef) -> None:
        self._class_stack.pop()

    def visit_FunctionDef(self, node: cst.FunctionDef) -> None:
        name = node.name.value
        in_test_class = bool(self._class_stack) and self._class_stack[-1].startswith("Test")
        top_level = not self._class_stack
        if self._function_depth == 0 and name.startswith("test") and (top_level or in_test_class):
            span = self.get_metadata(metadata.PositionProvider, node)
            name_line = self.get_metadata(metadata.PositionProvider, node.name).start.line
            start_line = span.start.line
            if node.decorators:
                decorator = self.get_metadata(metadata.PositionProvider, node.decorators[0])
                start_line = min(start_line, decorator.start.line)
            qualified = "::".join([*self._class_stack, name])
            self.found.append((qualified, start_line, name_line, span.end.line))
        self._function_depth += 1

    def leave_FunctionDef(self, original_node: cst.FunctionDef) -> None:
        self._function_depth -= 1

    def visit_Import(self, node: cst.Import) -> None:
        for alias in node.names:
            self.imports.append(_dotted_name(alias.name))

    def visit_ImportFrom(self, node: cst.ImportFrom) -> None:
        dots = "." * len(node.relative)
        module = _dotted_name(node.module) if node.module is not None else ""
        self.imports.append(f"{dots}{module}")


def _dotted_name(node: cst.BaseExpression) -> str:
    if isinstance(node, cst.Name):
        return node.value
    if isinstance(node, cst.Attribute):
        return f"{_dotted_name(node.value)}.{node.attr.value}"
    return ""


def _parse_python(path: str, source: str, lookback: int) -> ParsedTestFile:
    parsed = ParsedTestFile(path=path)
    try:
        module = cst.parse_module(source)
    except cst.ParserSyntaxError as error:
        LOGGER.warning("Skipping unparsable test file %s: %s", path, error)
        return parsed

    collector = _PythonTestCollector()
    metadata.MetadataWrapper(module).visit(collector)
    lines = source.splitlines()
    seen: Dict[str, int] = {}
    for name, start, name_line, end in collector.found:
        code = "\n".join(lines[start - 1 : end])
        parsed.tests.append(
            DiscoveredTest(
                file_path=path,
                test_name=_unique_name(name, name_line, seen),
                line_number=name_line,
                code=code,
                linked_atom_ids=find_annotations(lines, start, name_line, lookback),
            )
        )
    parsed.imports = [entry for entry in collector.imports if entry]
    return parsed


# JavaScript / TypeScript -----------------------------------------------------------


def _parse_script(path: str, source: str, lookback: int) -> ParsedTestFile:
    parsed = ParsedTestFile(path=path)
    lines = source.splitlines()
    seen: Dict[str, int] = {}
    for index, line in enumerate(lines, start=1):
        match = _JS_TEST_PATTERN.match(line)
        if not match:
            continue
        parsed.tests.append(
            DiscoveredTest(
                file_path=path,
                test_name=_unique_name(match.group("name"), index, seen),
                line_number=index,
                code=_block_from(lines, index),
                linked_atom_ids=find_annotations(lines, index, index, lookback),
            )
        )
    parsed.imports = [match.group("module") for match in _JS_IMPORT_PATTERN.finditer(source)]
    return parsed


def _block_from(lines: Sequence[str], start: int, *, limit: int = 200) -> str:
    """Return the lines of the call starting at ``start`` by balancing brackets."""
    depth = 0
    opened = False
    collected: List[str] = []
    for line in lines[start - 1 : start - 1 + limit]:
        collected.append(line)
        for char in line:
            if char in "({":
                depth += 1
                opened = True
            elif char in ")}":
                depth -= 1
        if opened and depth <= 0:
            break
    return "\n".join(collected)


def _unique_name(name: str, line: int, seen: Dict[str, int]) -> str:
    if name not in seen:
        seen[name] = line
        return name
    return f"{name} [line {line}]"


# Related sources -------------------------------------------------------------------


def source_name_for_test(path: str) -> Optional[str]:
    """Map a test file name to the file name of the module it most likely tests."""
    pure = PurePosixPath(path)
    name = pure.name
    if name.endswith(".py"):
        stem = name[:-3]
        if stem.startswith("test_"):
            return f"{stem[5:]}.py"
        if stem.endswith("_test"):
            return f"{stem[:-5]}.py"
        return None
    for extension in _JS_EXTENSIONS:
        if not name.endswith(extension):
            continue
        stem = name[: -len(extension)]
        for suffix in _TEST_SUFFIXES:
            if stem.endswith(suffix):
                return f"{stem[: -len(suffix)]}{extension}"
    return None


def find_related_source_files(
    test_path: str,
    imports: Iterable[str],
    source_files: Sequence[str],
    *,
    limit: int = 10,
) -> List[str]:
    """Return source files linked to ``test_path`` by naming convention or imports."""
    known = set(source_files)
    related: List[str] = []

    def _add(candidate: str) -> None:
        normalised = posixpath.normpath(candidate)
        if normalised in known and normalised not in related:
            related.append(normalised)

    target_name = source_name_for_test(test_path)
    if target_name:
        sibling = posixpath.join(posixpath.dirname(test_path), target_name)
        _add(sibling)
        for candidate in source_files:
            if PurePosixPath(candidate).name == target_name:
                _add(candidate)

    test_dir = posixpath.dirname(test_path)
    for module in imports:
        for candidate in _import_candidates(test_dir, module, is_python_path(test_path)):
            _add(candidate)

    return related[:limit]


def _import_candidates(test_dir: str, module: str, python: bool) -> List[str]:
    if python:
        stripped = module.lstrip(".")
        level = len(module) - len(stripped)
        relative = stripped.replace(".", "/")
        if level:
            base = test_dir
            for _ in range(level - 1):
                base = posixpath.dirname(base)
            roots = [base]
        else:
            roots = ["", "src"]
        candidates: List[str] = []
        for root in roots:
            stem = posixpath.join(root, relative) if relative else root
            if not stem:
                continue
            candidates.append(f"{stem}.py")
            candidates.append(posixpath.join(stem, "__init__.py"))
        return candidates

    if not module.startswith("."):
        return []
    stem = posixpath.join(test_dir, module)
    candidates = [stem]
    candidates.extend(f"{stem}{extension}" for extension in _JS_EXTENSIONS)
    candidates.extend(posixpath.join(stem, f"index{extension}") for extension in _JS_EXTENSIONS)
    return candidates


__all__ = [
    "ANNOTATION_PATTERN",
    "DEFAULT_SOURCE_PATTERNS",
    "DEFAULT_TEST_PATTERNS",
    "DiscoveredTest",
    "ParsedTestFile",
    "find_annotations",
    "find_related_source_files",
    "parse_test_file",
    "source_name_for_test",
]
