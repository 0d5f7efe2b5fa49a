"""HTTP client for the OpenAI-compatible multimodal inference service.

Uses httpx with configurable timeouts. tenacity retries only cold-start
failures (503, connection errors) and only when INFERENCE_RETRY_ATTEMPTS > 1;
by default a failed call surfaces immediately so the extraction pipeline can
move to its fallback branch.
"""

import base64
import json
import logging
from collections.abc import Iterator

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config import settings

logger = logging.getLogger(__name__)

STREAM_DONE = "[DONE]"


class TransportError(Exception):
    """An inference-service call failed before producing a usable reply."""


class InferenceServiceUnavailable(TransportError):
    """Inference service is temporarily unavailable (retryable: 503, connection error)."""


class InferenceServiceError(TransportError):
    """Inference service returned a non-retryable error (400, 500, malformed body)."""


class InferenceClient:
    """HTTP client for chat completions with an optional image attachment."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        model_id: str | None = None,
        chat_model_id: str | None = None,
        timeout: int | None = None,
        connect_timeout: int | None = None,
        retry_attempts: int | None = None,
        retry_delay: float | None = None,
        retry_backoff: float | None = None,
    ):
        self._base_url = (base_url or settings.INFERENCE_SERVICE_URL).rstrip("/")
        self._model_id = model_id or settings.MODEL_ID
        self._chat_model_id = chat_model_id or settings.CHAT_MODEL_ID or self._model_id
        self._retry_attempts = retry_attempts if retry_attempts is not None else settings.INFERENCE_RETRY_ATTEMPTS
        self._retry_delay = retry_delay if retry_delay is not None else settings.INFERENCE_RETRY_DELAY
        self._retry_backoff = retry_backoff if retry_backoff is not None else settings.INFERENCE_RETRY_BACKOFF

        read_timeout = timeout if timeout is not None else settings.INFERENCE_TIMEOUT_SECONDS
        conn_timeout = connect_timeout if connect_timeout is not None else settings.INFERENCE_CONNECT_TIMEOUT

        key = api_key if api_key is not None else settings.INFERENCE_API_KEY
        headers = {"Authorization": f"Bearer {key}"} if key else {}

        self._client = httpx.Client(
            base_url=self._base_url,
            headers=headers,
            timeout=httpx.Timeout(
                connect=float(conn_timeout),
                read=float(read_timeout),
                write=30.0,
                pool=30.0,
            ),
        )

    @property
    def model_id(self) -> str:
        return self._model_id

    def close(self):
        self._client.close()

    def complete(
        self,
        prompt: str,
        image: bytes | None = None,
        *,
        mime_type: str = "image/png",
        max_tokens: int | None = None,
        temperature: float | None = None,
        system: str | None = None,
    ) -> str:
        """Run one batch completion and return the reply text.

        Raises InferenceServiceUnavailable or InferenceServiceError.
        """
        payload = self._payload(
            self._model_id, prompt, image, mime_type, max_tokens, temperature, system,
        )
        return self._complete_with_retry(payload)

    def stream_complete(
        self,
        prompt: str,
        *,
        system: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> Iterator[str]:
        """Stream a text-only completion, yielding content deltas as they arrive.

        Not retried: a failure mid-stream raises a TransportError to the consumer.
        """
        payload = self._payload(
            self._chat_model_id, prompt, None, "", max_tokens, temperature, system,
        )
        payload["stream"] = True

        try:
            with self._client.stream("POST", "/v1/chat/completions", json=payload) as resp:
                if resp.status_code != 200:
                    resp.read()
                    self._raise_for_status(resp)

                for line in resp.iter_lines():
                    delta = _parse_stream_line(line)
                    if delta is None:
                        continue
                    if delta == STREAM_DONE:
                        return
                    yield delta
        except httpx.HTTPError as e:
            logger.error("Inference stream failed: %s", e)
            raise InferenceServiceUnavailable(f"Inference stream failed: {e}") from e

    def _payload(
        self,
        model: str,
        prompt: str,
        image: bytes | None,
        mime_type: str,
        max_tokens: int | None,
        temperature: float | None,
        system: str | None,
    ) -> dict:
        if image is not None:
            image_b64 = base64.b64encode(image).decode()
            content: str | list = [
                {"type": "text", "text": prompt},
                {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{image_b64}"}},
            ]
        else:
            content = prompt

        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": content})

        payload: dict = {"model": model, "messages": messages}
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        if temperature is not None:
            payload["temperature"] = temperature
        return payload

    def _complete_with_retry(self, payload: dict) -> str:
        """Retry wrapper, configured dynamically based on settings."""

        @retry(
            retry=retry_if_exception_type(InferenceServiceUnavailable),
            stop=stop_after_attempt(max(1, self._retry_attempts)),
            wait=wait_exponential(
                multiplier=self._retry_delay,
                exp_base=self._retry_backoff,
                max=60,
            ),
            reraise=True,
            before_sleep=lambda state: logger.warning(
                "Inference service unavailable, retrying in %.1fs (attempt %d/%d)",
                state.next_action.sleep,  # type: ignore[union-attr]
                state.attempt_number,
                self._retry_attempts,
            ),
        )
        def _do_complete() -> str:
            return self._send_complete(payload)

        return _do_complete()

    def _send_complete(self, payload: dict) -> str:
        """Send a single completion request."""
        try:
            resp = self._client.post("/v1/chat/completions", json=payload)
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            logger.warning("Inference service connection failed: %s", e)
            raise InferenceServiceUnavailable(f"Cannot connect to inference service: {e}") from e
        except httpx.ReadTimeout as e:
            logger.warning("Inference service read timeout: %s", e)
            raise InferenceServiceUnavailable(f"Inference service read timeout: {e}") from e
        except httpx.HTTPError as e:
            logger.error("Inference service HTTP error: %s", e)
            raise InferenceServiceError(f"Inference service HTTP error: {e}") from e

        if resp.status_code != 200:
            self._raise_for_status(resp)

        try:
            data = resp.json()
            return data["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as e:
            logger.error("Malformed inference response: %s", e)
            raise InferenceServiceError(f"Malformed inference response: {e}") from e

    def _raise_for_status(self, resp: httpx.Response) -> None:
        detail = _error_detail(resp)
        if resp.status_code == 503:
            logger.warning("Inference service returned 503: %s", detail)
            raise InferenceServiceUnavailable(detail)

        logger.error("Inference service error %d: %s", resp.status_code, detail)
        raise InferenceServiceError(detail)

    def health(self) -> dict:
        """Check inference service health. Returns health dict, never raises."""
        try:
            resp = self._client.get("/health", timeout=10.0)
            return {"status": "healthy" if resp.status_code == 200 else "unhealthy", "ready": resp.status_code == 200}
        except Exception as e:
            logger.warning("Inference health check failed: %s", e)
            return {"status": "unreachable", "ready": False, "error": str(e)}


def _error_detail(resp: httpx.Response) -> str:
    """Pull a human-readable message out of an error body (OpenAI or FastAPI shape)."""
    try:
        body = resp.json()
    except ValueError:
        return f"HTTP {resp.status_code}"

    if isinstance(body, dict):
        if isinstance(body.get("error"), dict):
            return str(body["error"].get("message", f"HTTP {resp.status_code}"))
        if "detail" in body:
            return str(body["detail"])
    return f"HTTP {resp.status_code}"


def _parse_stream_line(line: str) -> str | None:
    """Decode one SSE line into a content delta, STREAM_DONE, or None to skip."""
    if not line.startswith("data:"):
        return None

    data = line[len("data:"):].strip()
    if data == STREAM_DONE:
        return STREAM_DONE

    try:
        chunk = json.loads(data)
        content = chunk["choices"][0].get("delta", {}).get("content")
    except (ValueError, KeyError, IndexError, TypeError, AttributeError):
        logger.debug("Skipping malformed stream chunk: %s", data[:200])
        return None

    return content or None
