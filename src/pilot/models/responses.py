"""Client that speaks the JSON Responses API over HTTP."""

from __future__ import annotations

import json
import logging
import os
import urllib.error
import urllib.request
from typing import Any, Callable, Dict, Optional

from .llm_client import LLMClient, LLMResponseFormatError, LLMTransportError

__all__ = ["ResponsesClient"]

LOGGER = logging.getLogger(__name__)

Transport = Callable[[Dict[str, Any]], str]

MAX_METADATA_LENGTH = 512


def _truncate_metadata(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Clip metadata values to the length the endpoint accepts."""
    metadata = payload.get("metadata")
    if not isinstance(metadata, dict):
        return payload
    clipped = {
        key: (f"{value[: MAX_METADATA_LENGTH - 3]}..." if isinstance(value, str) and len(value) > MAX_METADATA_LENGTH else value)
        for key, value in metadata.items()
    }
    return {**payload, "metadata": clipped}


class ResponsesClient(LLMClient):
    """Thin adapter around a Responses-style JSON endpoint."""

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
        self._api_key = api_key or os.getenv("PILOT_API_KEY") or os.getenv("OPENAI_API_KEY")
        self._base_url = base_url
        timeout_override = os.getenv("PILOT_TIMEOUT")
        if timeout_override:
            try:
                parsed = float(timeout_override)
                if parsed > 0:
                    timeout = parsed
            except ValueError:
                LOGGER.warning("Ignoring invalid PILOT_TIMEOUT value %r", timeout_override)
        self._timeout = timeout
        self._transport = transport or self._http_transport

        if transport is None and not self._api_key:
            raise ValueError("An API key is required when using the default transport.")

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        payload = _truncate_metadata(payload)
        try:
            raw_response = self._transport(payload)
        except LLMTransportError:
            raise
        except Exception as error:  # pragma: no cover - defensive path
            raise LLMTransportError(f"Transport rejected the request: {error}") from error

        normalised = self._extract_model_payload(raw_response)
        if normalised is None:
            raise LLMResponseFormatError("Response did not contain JSON output text.")
        return normalised

    def _http_transport(self, payload: Dict[str, Any]) -> str:
        LOGGER.debug("Sending planning request to %s (model=%s)", self._base_url, payload.get("model"))
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
            raise LLMTransportError("Responses API timed out.") from error
        except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
            message = error.read().decode("utf-8", errors="ignore")
            raise LLMTransportError(f"HTTP {error.code}: {message}") from error
        except urllib.error.URLError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError(f"Failed to reach Responses endpoint: {error.reason}") from error

        if status >= 400:
            raise LLMTransportError(f"Unexpected HTTP status {status}")

        return raw.decode("utf-8")

    def _extract_model_payload(self, raw_response: str) -> Optional[str]:
        """Extract the JSON content returned by the Responses API."""
        if not raw_response:
            return None

        try:
            data = json.loads(raw_response)
        except json.JSONDecodeError:
            return raw_response

        if isinstance(data, dict):
            text_payload = self._first_text_content(data.get("output") or data.get("outputs"))
            if text_payload:
                return text_payload

            container = data.get("response")
            if isinstance(container, dict):
                text_payload = self._first_text_content(container.get("output") or container.get("outputs"))
                if text_payload:
                    return text_payload

            text_payload = self._first_text_content(data.get("content") or data.get("choices"))
            if text_payload:
                return text_payload

        return raw_response

    @staticmethod
    def _first_text_content(container: Any) -> Optional[str]:
        if not container:
            return None

        if isinstance(container, dict):
            container = [container]

        for item in container:
            if not isinstance(item, dict):
                continue

            contents = item.get("content")
            if isinstance(contents, list):
                for content_item in contents:
                    if not isinstance(content_item, dict):
                        continue
                    json_payload = content_item.get("json")
                    if isinstance(json_payload, (dict, list)):
                        return json.dumps(json_payload)
                    text = content_item.get("text")
                    if isinstance(text, str) and text.strip():
                        return text

            text_value = item.get("text")
            if isinstance(text_value, str) and text_value.strip():
                return text_value

            message = item.get("message") if isinstance(item.get("message"), dict) else None
            if message:
                text = message.get("content") or message.get("text")
                if isinstance(text, str) and text.strip():
                    return text

        return None
