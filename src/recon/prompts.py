"""Prompt templates shared by the inference phases."""

from __future__ import annotations

from typing import Optional, Sequence

from .state import OrphanTest, TestContext

JSON_RESPONSE_INSTRUCTION = (
    "Return only JSON. Emit a single JSON object that satisfies the documented response schema. "
    "Do not include markdown fences, explanations, or trailing text. "
    "Use double-quoted keys and strings."
)

ATOM_SYSTEM_PROMPT = (
    "You reverse-engineer intent atoms from tests. An intent atom is one discrete, testable "
    "statement of behavior the system must exhibit. Describe WHAT the system guarantees in "
    "terms a product owner would recognise, never HOW the test or the code is written. "
    "Every observable outcome must be something a user or caller can see."
)

ATOM_CATEGORIES = ("functional", "security", "performance", "reliability", "usability", "data")

_CODE_LIMIT = 6000


def render_phase_brief(phase: str) -> str:
    """Return the brief heading every phase prompt starts with."""
    return (
        "## Phase Brief\n"
        f"You are executing the `{phase}` phase of a test-to-intent reconciliation. "
        "Review the provided context and return structured JSON that matches the response schema."
    )


def _bullets(title: str, items: Sequence[str]) -> str:
    body = "\n".join(f"- {item}" for item in items if item.strip())
    return f"## {title}\n{body}" if body else ""


def render_atom_prompt(test: OrphanTest, context: Optional[TestContext]) -> str:
    """Prompt asking the model for a single atom inferred from ``test``."""
    code = test.test_code
    if len(code) > _CODE_LIMIT:
        code = code[:_CODE_LIMIT] + "\n# ... truncated"
    sections = [
        render_phase_brief("infer_atoms"),
        f"## Test\nName: {test.test_name}\nLocation: {test.file_path}:{test.line_number}",
        f"## Test Source\n{code}",
    ]
    if test.related_source_files:
        sections.append(_bullets("Related Source Files", test.related_source_files))
    if context is not None:
        sections.append(f"## Analysis\n{context.summary}")
        sections.append(_bullets("Assertions", context.assertions))
        sections.append(_bullets("Domain Concepts", context.domain_concepts))
        if context.raw_context:
            sections.append(f"## Supporting Context\n{context.raw_context}")
    sections.append(
        "## Response\n"
        "Fields: description, category (one of "
        + ", ".join(ATOM_CATEGORIES)
        + "), confidence (0-1), quality_score (0-100), observable_outcomes (list), reasoning, "
        "ambiguity_reasons (list, empty when the intent is clear).\n"
        + JSON_RESPONSE_INSTRUCTION
    )
    return "\n\n".join(section for section in sections if section)


__all__ = [
    "ATOM_CATEGORIES",
    "ATOM_SYSTEM_PROMPT",
    "JSON_RESPONSE_INSTRUCTION",
    "render_atom_prompt",
    "render_phase_brief",
]
