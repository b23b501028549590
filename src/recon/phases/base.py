"""Shared helpers for running phases and emitting structured logs."""

from __future__ import annotations

import hashlib
import json
import logging
import re
from dataclasses import asdict, dataclass, field, is_dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from ..memory.store import ReconciliationStore
from ..models.llm_client import LLMClient, LLMClientError, LLMRequest
from ..state import GraphState, ReviewRequest
from ..tools.cancellation import CancellationRegistry, default_registry
from ..tools.content import ContentProvider
from ..tools.vcs import GitRepository

T = TypeVar("T")

LOGGER = logging.getLogger(__name__)


class ReconciliationError(RuntimeError):
    """Base error for reconciliation pipeline failures."""


class CriticalPhaseError(ReconciliationError):
    """A phase the rest of the run depends on has failed; the run is aborted."""

    def __init__(self, phase: str, run_key: Optional[str], cause: BaseException) -> None:
        super().__init__(f"Critical phase '{phase}' failed: {cause}")
        self.phase = phase
        self.run_key = run_key
        self.cause = cause


class ReviewRequired(ReconciliationError):
    """Interrupt: the run is suspended until a human answers ``request``.

    This is never recorded as an error; the orchestrator checkpoints and
    re-raises it to the caller.
    """

    def __init__(self, request: ReviewRequest) -> None:
        super().__init__(f"Run {request.run_key} requires human review: {request.reason}")
        self.request = request

    @property
    def run_key(self) -> str:
        return self.request.run_key


class PartialPhaseError(ReconciliationError):
    """A phase failed after producing some results; ``partial`` is still merged."""

    def __init__(self, phase: str, partial: dict[str, Any], cause: BaseException) -> None:
        super().__init__(f"{phase} failed after partial progress: {cause}")
        self.phase = phase
        self.partial = partial
        self.cause = cause


class RunCancelled(ReconciliationError):
    """Raised cooperatively when cancellation was requested for the run."""

    def __init__(
        self,
        run_key: Optional[str],
        phase: str,
        *,
        partial: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(f"Run {run_key} cancelled during {phase}")
        self.run_key = run_key
        self.phase = phase
        self.partial = partial or {}


@dataclass(slots=True)
class PhaseContext:
    """Collaborators available to every phase."""

    content: ContentProvider
    store: Optional[ReconciliationStore] = None
    client: Optional[LLMClient] = None
    git: Optional[GitRepository] = None
    cancellation: CancellationRegistry = field(default_factory=default_registry)
    logs_root: Optional[Path] = None


def check_cancelled(state: GraphState, context: PhaseContext, phase: str) -> None:
    """Raise :class:`RunCancelled` when the run's key has been flagged."""
    if context.cancellation.is_requested(state.run_key):
        raise RunCancelled(state.run_key, phase)


def error_entry(phase: str, message: str, *, at: Optional[datetime] = None) -> str:
    """Format an error-log line as ``[<iso timestamp>] <phase>: <message>``."""
    timestamp = (at or datetime.now(timezone.utc)).isoformat()
    return f"[{timestamp}] {phase}: {message}"


def invoke_model(
    phase: str,
    request: Any,
    llm_request: LLMRequest[T],
    *,
    client: LLMClient,
    logs_root: Optional[Path] = None,
    on_attempt: Optional[Callable[[int], None]] = None,
) -> T:
    """Call ``client`` and record every attempt in a JSON phase log.

    ``on_attempt`` is told about each model call as it completes.
    """
    attempts: list[dict[str, Any]] = []

    def _attempt_logger(
        payload: dict[str, Any],
        raw: str | None,
        parsed: Any,
        error: Exception | None,
        attempt: int,
    ) -> None:
        attempts.append(
            {
                "attempt": attempt,
                "payload": _json_safe(payload),
                "raw": raw,
                "parsed": _json_safe(parsed),
                "error": str(error) if error else None,
            }
        )
        if on_attempt is not None:
            on_attempt(attempt)

    try:
        result, _ = client.invoke_structured(llm_request, logger=_attempt_logger)
    except LLMClientError as error:
        _write_phase_log(logs_root, phase, request, llm_request, attempts, error=error)
        raise

    _write_phase_log(logs_root, phase, request, llm_request, attempts, result=result)
    return result


def _write_phase_log(
    logs_root: Optional[Path],
    phase: str,
    request: Any,
    llm_request: LLMRequest[Any],
    attempts: list[dict[str, Any]],
    *,
    result: Any | None = None,
    error: Exception | None = None,
) -> None:
    """Persist a structured phase execution log for later debugging."""
    if logs_root is None:
        return
    target_dir = logs_root / "phases"
    try:
        target_dir.mkdir(parents=True, exist_ok=True)
    except OSError:
        return

    request_payload = _json_safe(request)
    entry: dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "phase": phase,
        "request": request_payload,
        "prompt": llm_request.prompt,
        "metadata": _json_safe(llm_request.metadata),
        "attempts": attempts,
    }
    if result is not None:
        entry["result"] = _json_safe(result)
    if error is not None:
        entry["error"] = str(error)

    parts = ["phase", phase]
    if isinstance(request_payload, dict):
        for key in ("run_key", "test_key"):
            value = request_payload.get(key)
            if value:
                parts.append(_slug(str(value)))
    parts.append(datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ"))
    log_path = target_dir / ("__".join(parts) + ".json")
    try:
        with log_path.open("w", encoding="utf-8") as handle:
            json.dump(entry, handle, indent=2, sort_keys=True, ensure_ascii=False)
    except OSError:
        LOGGER.debug("Could not write phase log %s", log_path, exc_info=True)


def _json_safe(value: Any) -> Any:
    """Coerce complex objects into JSON-serialisable representations."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return value.as_posix()
    if is_dataclass(value) and not isinstance(value, type):
        return _json_safe(asdict(value))
    if hasattr(value, "model_dump"):
        return _json_safe(value.model_dump(mode="json"))
    if isinstance(value, dict):
        return {str(key): _json_safe(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_json_safe(item) for item in value]
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="ignore")
    return str(value)


def _slug(value: str, *, fallback: str = "item", max_length: int = 80) -> str:
    """Normalise identifiers for use in log filenames."""
    cleaned = re.sub(r"[^A-Za-z0-9]+", "-", value).strip("-")
    slug = cleaned or fallback
    if len(slug) <= max_length:
        return slug
    digest = hashlib.sha256(slug.encode("utf-8")).hexdigest()[:8]
    prefix_length = max(max_length - len(digest) - 1, 1)
    prefix = slug[:prefix_length].rstrip("-") or slug[:prefix_length]
    return f"{prefix}-{digest}"


__all__ = [
    "CriticalPhaseError",
    "PartialPhaseError",
    "PhaseContext",
    "ReconciliationError",
    "ReviewRequired",
    "RunCancelled",
    "check_cancelled",
    "error_entry",
    "invoke_model",
]
