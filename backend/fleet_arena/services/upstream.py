"""Streaming chat-completion client for a single upstream model.

Classes:
    UpstreamDelta, UpstreamFinish, UpstreamError: Events yielded by UpstreamClient.stream.
    UpstreamStatusError: Non-2xx answer from the provider, tagged transient or permanent.
    UpstreamClient: Issues the streaming request with timeout, retry and backoff.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Sequence, Union

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from fleet_arena.core.config import Settings, get_settings
from fleet_arena.services.keys import KeyRing

_LOGGER = logging.getLogger(__name__)

TRANSIENT_STATUSES = frozenset({429, 503})
_DATA_PREFIX = "data: "
_DONE_SENTINEL = "[DONE]"


@dataclass(slots=True)
class UpstreamDelta:
    delta: str


@dataclass(slots=True)
class UpstreamFinish:
    finish_reason: str
    full_content: str
    latency_ms: int


@dataclass(slots=True)
class UpstreamError:
    message: str
    timed_out: bool = False


UpstreamEvent = Union[UpstreamDelta, UpstreamFinish, UpstreamError]


class UpstreamStatusError(Exception):
    def __init__(self, status_code: int, message: str, retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after

    @property
    def transient(self) -> bool:
        return self.status_code in TRANSIENT_STATUSES


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Return the Retry-After hint in seconds, ignoring HTTP-date and junk values."""

    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    if not math.isfinite(seconds) or seconds < 0:
        return None
    return seconds


def parse_stream_line(line: str) -> Optional[tuple[str, Optional[str]]]:
    """Parse one line of the incremental protocol.

    Returns ``(delta, finish_reason)`` for a data line, ``None`` for lines that carry
    nothing (blank, comments, ``[DONE]``). Raises ``ValueError`` for malformed payloads.
    """

    if not line.startswith(_DATA_PREFIX):
        return None
    raw = line[len(_DATA_PREFIX):].strip()
    if raw == _DONE_SENTINEL:
        return None
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise ValueError("payload is not an object")
    choices = payload.get("choices") or []
    if not choices:
        return "", None
    choice = choices[0] or {}
    delta = (choice.get("delta") or {}).get("content") or ""
    if not isinstance(delta, str):
        raise ValueError("delta content is not a string")
    return delta, choice.get("finish_reason") or None


async def _read_error(response: httpx.Response) -> str:
    try:
        body = (await response.aread()).decode("utf-8", errors="replace")
    except httpx.HTTPError:
        return f"HTTP {response.status_code}"
    finally:
        await response.aclose()
    message: Any = body
    try:
        data = json.loads(body)
    except ValueError:
        data = None
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            message = error["message"]
        elif data.get("message"):
            message = data["message"]
    message = str(message).strip()
    if not message:
        return f"HTTP {response.status_code}"
    return f"{response.status_code} {message[:300]}"


class UpstreamClient:
    """Stream one chat completion from the OpenRouter-compatible endpoint.

    A single wall-clock budget covers every attempt, the backoff sleeps between
    them and the streaming read. Only 429 and 503 answers are retried.
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        key_ring: Optional[KeyRing] = None,
        *,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._settings = settings or get_settings()
        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(None, connect=10.0))
        self._keys = key_ring or KeyRing.from_secret(self._settings.openrouter_api_key)
        self._sleep = sleep

    @property
    def timeout_seconds(self) -> float:
        return self._settings.model_timeout_seconds

    def timeout_message(self) -> str:
        return f"Model timed out, no response within {self.timeout_seconds:g} s"

    async def aclose(self) -> None:
        await self._http.aclose()

    async def stream(
        self,
        model_id: str,
        messages: Sequence[dict[str, str]],
        *,
        log_tag: str = "[stream]",
    ) -> AsyncIterator[UpstreamEvent]:
        started = time.perf_counter()
        deadline = asyncio.get_running_loop().time() + self.timeout_seconds
        chunks: list[str] = []
        response: Optional[httpx.Response] = None
        try:
            async with asyncio.timeout_at(deadline):
                response = await self._open(model_id, messages, log_tag)
            lines = response.aiter_lines()
            while True:
                async with asyncio.timeout_at(deadline):
                    line = await anext(lines, None)
                if line is None:
                    break
                try:
                    parsed = parse_stream_line(line)
                except ValueError as exc:
                    _LOGGER.warning("%s malformed stream line raw=%r err=%s", log_tag, line[:120], exc)
                    continue
                if parsed is None:
                    continue
                delta, finish_reason = parsed
                if delta:
                    chunks.append(delta)
                    yield UpstreamDelta(delta)
                if finish_reason:
                    yield UpstreamFinish(finish_reason, "".join(chunks), _elapsed_ms(started))
                    return
            if chunks:
                yield UpstreamFinish("stop", "".join(chunks), _elapsed_ms(started))
            else:
                yield UpstreamError("Stream ended without a finish reason")
        except TimeoutError:
            _LOGGER.warning("%s model timed out model=%s limit_s=%s", log_tag, model_id, self.timeout_seconds)
            yield UpstreamError(self.timeout_message(), timed_out=True)
        except UpstreamStatusError as exc:
            _LOGGER.error("%s OpenRouter error model=%s error=%s", log_tag, model_id, exc)
            yield UpstreamError(str(exc))
        except httpx.HTTPError as exc:
            _LOGGER.error("%s network error model=%s err=%s", log_tag, model_id, exc)
            yield UpstreamError(f"Network error reaching OpenRouter: {exc}")
        except Exception as exc:
            _LOGGER.exception("%s unexpected error model=%s", log_tag, model_id)
            yield UpstreamError(str(exc) or exc.__class__.__name__)
        finally:
            if response is not None:
                await response.aclose()

    async def _open(self, model_id: str, messages: Sequence[dict[str, str]], log_tag: str) -> httpx.Response:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._settings.max_retries + 1),
            wait=self._backoff,
            retry=retry_if_exception(_is_transient),
            sleep=self._sleep,
            before_sleep=lambda state: _log_retry(log_tag, model_id, state, self._settings.max_retries),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._send_once(model_id, messages)
        raise AssertionError("unreachable")  # pragma: no cover

    async def _send_once(self, model_id: str, messages: Sequence[dict[str, str]]) -> httpx.Response:
        request = self._http.build_request(
            "POST",
            self._settings.openrouter_url,
            headers={
                "Authorization": f"Bearer {self._keys.next_key()}",
                "Content-Type": "application/json",
                "HTTP-Referer": self._settings.app_url,
                "X-Title": "Fleet Arena",
            },
            json={
                "model": model_id,
                "messages": list(messages),
                "stream": True,
                "max_tokens": self._settings.max_output_tokens,
            },
        )
        response = await self._http.send(request, stream=True)
        if response.is_success:
            return response
        retry_after = parse_retry_after(response.headers.get("Retry-After"))
        message = await _read_error(response)
        raise UpstreamStatusError(response.status_code, message, retry_after=retry_after)

    def _backoff(self, retry_state: RetryCallState) -> float:
        cap = self._settings.retry_cap_seconds
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        hint = getattr(exc, "retry_after", None)
        if hint is not None:
            return min(hint, cap)
        return min(self._settings.retry_base_seconds * 2 ** (retry_state.attempt_number - 1), cap)


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, UpstreamStatusError) and exc.transient


def _log_retry(log_tag: str, model_id: str, state: RetryCallState, max_retries: int) -> None:
    exc = state.outcome.exception() if state.outcome else None
    wait = state.next_action.sleep if state.next_action else 0.0
    _LOGGER.warning(
        "%s OpenRouter %s, retry %d/%d in %.1fs model=%s",
        log_tag,
        getattr(exc, "status_code", "?"),
        state.attempt_number,
        max_retries,
        wait,
        model_id,
    )


def _elapsed_ms(started: float) -> int:
    return int(round((time.perf_counter() - started) * 1000))
