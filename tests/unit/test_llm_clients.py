from __future__ import annotations

import json
from typing import Any, Dict, List

import pytest

from recon.models import LLMClient, LLMRequest, LLMRetryError, ResponsesClient
from recon.phases.infer_atoms import AtomInferenceResponse


class _QueuedClient(LLMClient):
    def __init__(self, replies: List[str]) -> None:
        super().__init__("queued", max_attempts=len(replies), retry_delay=0.0)
        self._replies = list(replies)
        self.payloads: List[Dict[str, Any]] = []

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        self.payloads.append(payload)
        return self._replies.pop(0)


def _request() -> LLMRequest[AtomInferenceResponse]:
    return LLMRequest(prompt="Name: test_x", response_model=AtomInferenceResponse, system_prompt="sys")


def test_fenced_json_with_camel_case_keys_is_accepted() -> None:
    reply = '```json\n{"description": "Totals are summed", "qualityScore": 88,}\n```'
    client = _QueuedClient([reply])

    result = client.invoke(_request())

    assert result.description == "Totals are summed"
    assert result.quality_score == 88
    assert result.observable_outcomes == []


def test_json_embedded_in_chatter_is_salvaged() -> None:
    client = _QueuedClient(['Here you go: {"description": "Carts can be emptied", "confidence": 0.7} hope it helps'])

    result = client.invoke(_request())

    assert result.confidence == pytest.approx(0.7)


def test_invalid_reply_is_retried_then_fails() -> None:
    client = _QueuedClient(["not json at all", '{"category": "security"}'])

    with pytest.raises(LLMRetryError):
        client.invoke(_request())
    assert len(client.payloads) == 2


def test_retry_recovers_after_bad_first_reply() -> None:
    client = _QueuedClient(["", '{"description": "Login requires a password"}'])

    assert client.invoke(_request()).description == "Login requires a password"


def test_payload_carries_model_and_system_prompt() -> None:
    client = _QueuedClient(['{"description": "ok"}'])

    client.invoke(_request())

    payload = client.payloads[0]
    assert payload["model"] == "queued"
    roles = [message["role"] for message in payload["input"]]
    assert roles == ["system", "user"]


def _envelope(text: str) -> str:
    return json.dumps(
        {
            "id": "resp_mock",
            "object": "response",
            "status": "completed",
            "output": [
                {
                    "id": "msg_mock",
                    "type": "message",
                    "role": "assistant",
                    "content": [{"type": "output_text", "text": text}],
                }
            ],
        }
    )


def test_responses_client_extracts_output_text() -> None:
    def transport(_: Dict[str, Any]) -> str:
        return _envelope(json.dumps({"description": "Refunds restore the balance", "confidence": 92}))

    client = ResponsesClient(model="gpt-5-mini", transport=transport)

    result = client.invoke(_request())

    assert result.description == "Refunds restore the balance"
    assert result.confidence == 92


def test_responses_client_accepts_plain_json_bodies() -> None:
    client = ResponsesClient(transport=lambda _: json.dumps({"description": "Plain body"}))

    assert client.invoke(_request()).description == "Plain body"


def test_responses_client_requires_key_without_transport(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("RECON_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    with pytest.raises(ValueError):
        ResponsesClient()
