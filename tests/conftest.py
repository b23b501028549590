from __future__ import annotations

import json
import re
import sys
import threading
import textwrap
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from recon.memory.store import ReconciliationStore  # noqa: E402
from recon.models.llm_client import LLMClient  # noqa: E402
from recon.tools.cancellation import CancellationRegistry  # noqa: E402
from recon.tools.content import SnapshotContentProvider  # noqa: E402

_NAME_LINE = re.compile(r"^Name: (?P<name>.+)$", re.MULTILINE)


class ScriptedLLMClient(LLMClient):
    """Deterministic client answering every atom prompt from ``responder``."""

    def __init__(self, responder: Optional[Callable[[str], Dict[str, Any]]] = None) -> None:
        super().__init__("scripted", max_attempts=1, retry_delay=0.0)
        self._responder = responder or default_atom_response
        self._lock = threading.Lock()
        self.prompts: List[str] = []

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        prompt = ""
        for message in payload.get("input") or []:
            if message.get("role") == "user":
                prompt = message["content"][0]["text"]
        with self._lock:
            self.prompts.append(prompt)
        match = _NAME_LINE.search(prompt)
        return json.dumps(self._responder(match.group("name") if match else ""))


def default_atom_response(test_name: str) -> Dict[str, Any]:
    leaf = test_name.split("::")[-1].replace("test_", "").replace("_", " ")
    return {
        "description": f"The service {leaf} for every caller",
        "category": "functional",
        "confidence": 0.85,
        "quality_score": 85,
        "observable_outcomes": [f"{leaf} is observable"],
        "reasoning": "Derived from the assertions",
        "ambiguity_reasons": [],
    }


SAMPLE_FILES: Dict[str, str] = {
    "src/auth.py": "def login(user, password):\n    return user == 'admin'\n",
    "src/cart.py": "def total(items):\n    return sum(items)\n",
    "tests/test_auth.py": textwrap.dedent(
        """\
        from src.auth import login


        def test_login_accepts_admin():
            assert login("admin", "secret")


        def test_login_rejects_guest():
            assert not login("guest", "secret")
        """
    ),
    "tests/test_cart.py": textwrap.dedent(
        """\
        from src.cart import total


        def test_total_sums_items():
            assert total([1, 2]) == 3


        # @atom IA-001
        def test_total_of_empty_cart():
            assert total([]) == 0
        """
    ),
    "docs/cart.md": "# Cart\n\nThe `total` of a cart is the sum of item prices.\n",
}


@pytest.fixture()
def sample_files() -> Dict[str, str]:
    return dict(SAMPLE_FILES)


@pytest.fixture()
def snapshot(sample_files: Dict[str, str]) -> SnapshotContentProvider:
    return SnapshotContentProvider(sample_files, commit="abc123")


@pytest.fixture()
def llm_client() -> ScriptedLLMClient:
    return ScriptedLLMClient()


@pytest.fixture()
def registry() -> CancellationRegistry:
    return CancellationRegistry()


@pytest.fixture()
def store(tmp_path: Path):
    with ReconciliationStore(tmp_path / "recon.sqlite") as opened:
        yield opened


@pytest.fixture()
def scripted_client() -> Callable[..., ScriptedLLMClient]:
    return ScriptedLLMClient
