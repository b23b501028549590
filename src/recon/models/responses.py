"""Production client that speaks an OpenAI-compatible JSON Responses API."""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Callable, Dict, Iterable, Optional

from .llm_client import LLMClient, LLMResponseFormatError, LLMTransportError

__all__ = ["ResponsesClient", "Transport"]

LOGGER = logging.getLogger(__name__)

Transport = Callable[[Dict[str, Any]], str]


class ResponsesClient(LLMClient):
    """Thin adapter around the Responses API.

    ``transport`` may be injected (tests do this); by default requests are
    POSTed with ``urllib``.
    """

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: str = "https://api.openai.com/v1/responses",
        model: str = "gpt-5-mini",
        transport: Optional[Transport] = None,
        timeout: float = 60.0,
        max_attempts: int = 3,
        retry_delay: float = 0.5,
    ) -> None:
        super().__init__(model=model, max_attempts=max_attempts, retry_delay=retry_delay)
        self._api_key = api_key or os.getenv("RECON_API_KEY") or os.getenv("OPENAI_API_KEY")
        self._base_url = base_url
        timeout_override = os.getenv("RECON_LLM_TIMEOUT")
        if timeout_override:
            try:
                parsed = float(timeout_override)
            except ValueError:
                LOGGER.warning("Ignoring invalid RECON_LLM_TIMEOUT=%r", timeout_override)
            else:
                if parsed > 0:
                    timeout = parsed
        self._timeout = timeout
        self._transport = transport or self._http_transport

        if transport is None and not self._api_key:
            raise ValueError("An API key is required when using the default transport.")

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        """Send the request over the configured transport."""
        try:
            raw_response = self._transport(payload)
        except LLMTransportError:
            raise
        except (OSError, ValueError) as error:
            raise LLMTransportError(f"Transport rejected the request: {error}") from error

        text = self._extract_output_text(raw_response)
        if text is None:
            raise LLMResponseFormatError("Response did not contain output text.")
        return text

    def _http_transport(self, payload: Dict[str, Any]) -> str:
        """Default HTTP transport."""
        import urllib.error
        import urllib.request

        LOGGER.debug("POST %s model=%s", self._base_url, payload.get("model"))
        request = urllib.request.Request(
            self._base_url,
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self._api_key}",
            },
            method="POST",
        )

        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                raw = response.read()
                status = getattr(response, "status", 200)
        except TimeoutError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError("Model response timed out.") from error
        except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
            message = error.read().decode("utf-8", errors="ignore")
            raise LLMTransportError(f"HTTP {error.code}: {message}") from error
        except urllib.error.URLError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError(f"Failed to reach model endpoint: {error.reason}") from error

        if status >= 400:
            raise LLMTransportError(f"Unexpected HTTP status {status}")

        return raw.decode("utf-8")

    def _extract_output_text(self, raw_response: str) -> Optional[str]:
        """Pull the model's text out of a Responses API envelope."""
        if not raw_response:
            return None

        try:
            data = json.loads(raw_response)
        except json.JSONDecodeError:
            return raw_response

        if not isinstance(data, dict):
            return raw_response

        output_text = data.get("output_text")
        if isinstance(output_text, str) and output_text.strip():
            return output_text

        for container in (
            data.get("output"),
            (data.get("response") or {}).get("output") if isinstance(data.get("response"), dict) else None,
            data.get("choices"),
        ):
            text = self._first_text(container)
            if text:
                return text

        # Plain JSON answers (no envelope) are returned unchanged.
        return raw_response

    @staticmethod
    def _first_text(container: Any) -> Optional[str]:
        if not container:
            return None
        items: Iterable[Any] = [container] if isinstance(container, dict) else container
        for item in items:
            if not isinstance(item, dict):
                continue
            contents = item.get("content")
            if isinstance(contents, list):
                for content in contents:
                    if not isinstance(content, dict):
                        continue
                    if isinstance(content.get("json"), (dict, list)):
                        return json.dumps(content["json"])
                    text = content.get("text")
                    if isinstance(text, str) and text.strip():
                        return text
            message = item.get("message")
            if isinstance(message, dict):
                text = message.get("content")
                if isinstance(text, str) and text.strip():
                    return text
            text = item.get("text")
            if isinstance(text, str) and text.strip():
                return text
        return None
