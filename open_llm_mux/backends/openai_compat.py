from __future__ import annotations

import json
import logging
from collections.abc import AsyncGenerator, AsyncIterator, Mapping, Sequence
from typing import Any, Literal

import httpx

from open_llm_mux.backend import GenerateResult, StreamEvent, StreamResult, UrlPattern
from open_llm_mux.errors import BackendError

logger = logging.getLogger("open_llm_mux")

ModelKind = Literal["chat", "completion"]

_PASSTHROUGH_FIELDS = ("messages", "prompt", "stream")


def build_timeout(
    timeout_seconds: float,
    *,
    connect_timeout_seconds: float | None = None,
) -> httpx.Timeout:
    connect_timeout = (
        max(0.1, float(connect_timeout_seconds))
        if connect_timeout_seconds is not None
        else max(0.1, min(5.0, timeout_seconds))
    )
    return httpx.Timeout(
        timeout=max(0.1, float(timeout_seconds)),
        connect=connect_timeout,
    )


def _decode_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def _error_message(status_code: int, body: Any) -> str:
    if isinstance(body, Mapping):
        error = body.get("error")
        if isinstance(error, Mapping) and error.get("message"):
            return f"upstream returned {status_code}: {error['message']}"
    return f"upstream returned {status_code}"


def _usage(raw: Any) -> dict[str, int]:
    if not isinstance(raw, Mapping):
        return {}
    return {
        "input_tokens": int(raw.get("prompt_tokens") or 0),
        "output_tokens": int(raw.get("completion_tokens") or 0),
    }


class _UpstreamEventStream:
    """Stream events that owns the upstream response.

    ``aclose`` releases the response even when no event was pulled yet; an
    unstarted generator never reaches its ``finally``.
    """

    def __init__(
        self, events: AsyncGenerator[StreamEvent, None], upstream: httpx.Response
    ) -> None:
        self._events = events
        self._upstream = upstream

    def __aiter__(self) -> _UpstreamEventStream:
        return self

    async def __anext__(self) -> StreamEvent:
        return await self._events.__anext__()

    async def aclose(self) -> None:
        try:
            await self._events.aclose()
        finally:
            await self._upstream.aclose()


class OpenAICompatibleModel:
    """Language model backed by an OpenAI-compatible HTTP endpoint.

    ``kind="chat"`` posts to ``/chat/completions`` with ``messages``;
    ``kind="completion"`` posts to ``/completions`` with ``prompt``.
    """

    def __init__(
        self,
        *,
        model_id: str,
        base_url: str,
        api_key: str | None,
        client: httpx.AsyncClient,
        provider: str = "openai",
        kind: ModelKind = "chat",
        supported_urls: Mapping[str, Sequence[UrlPattern]] | None = None,
        default_options: Mapping[str, Any] | None = None,
    ) -> None:
        self.model_id = model_id
        self.provider = f"{provider}.{kind}"
        self.kind = kind
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._client = client
        self._supported_urls = {key: list(value) for key, value in (supported_urls or {}).items()}
        self._default_options = dict(default_options or {})

    @property
    def supported_urls(self) -> dict[str, list[UrlPattern]]:
        return self._supported_urls

    @property
    def _path(self) -> str:
        return "/chat/completions" if self.kind == "chat" else "/completions"

    def _headers(self) -> dict[str, str]:
        headers = {"content-type": "application/json"}
        if self._api_key:
            headers["authorization"] = f"Bearer {self._api_key}"
        return headers

    def _payload(self, request: Mapping[str, Any], *, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {**self._default_options, "model": self.model_id}
        if self.kind == "chat":
            payload["messages"] = list(request.get("messages") or [])
        else:
            payload["prompt"] = request.get("prompt") or ""
        for key, value in request.items():
            if key in _PASSTHROUGH_FIELDS or value is None:
                continue
            payload[key] = value
        payload["stream"] = stream
        return payload

    def _build_request(self, request: Mapping[str, Any], *, stream: bool) -> httpx.Request:
        return self._client.build_request(
            method="POST",
            url=f"{self._base_url}{self._path}",
            json=self._payload(request, stream=stream),
            headers=self._headers(),
        )

    def _raise_for_status(self, response: httpx.Response, body: Any) -> None:
        if response.status_code < 400:
            return
        logger.info(
            "backend_error provider=%s model=%s status=%d",
            self.provider,
            self.model_id,
            response.status_code,
        )
        raise BackendError(
            _error_message(response.status_code, body),
            status_code=response.status_code,
            body=body,
        )

    def _content(self, choice: Mapping[str, Any]) -> list[dict[str, Any]]:
        if self.kind == "chat":
            message = choice.get("message") or {}
            text = message.get("content") if isinstance(message, Mapping) else None
        else:
            text = choice.get("text")
        return [{"type": "text", "text": text}] if text else []

    async def generate(self, request: Mapping[str, Any]) -> GenerateResult:
        response = await self._client.send(self._build_request(request, stream=False))
        body = _decode_body(response)
        self._raise_for_status(response, body)
        if not isinstance(body, Mapping):
            raise BackendError(
                "upstream returned a non-JSON body",
                status_code=response.status_code,
                body=body,
            )
        choices = body.get("choices")
        first = choices[0] if isinstance(choices, list) and choices else None
        choice = first if isinstance(first, Mapping) else {}
        return GenerateResult(
            content=self._content(choice),
            finish_reason=str(choice.get("finish_reason") or "unknown"),
            usage=_usage(body.get("usage")),
            warnings=[],
            provider_metadata={},
            response={"id": body.get("id"), "model": body.get("model")},
        )

    async def stream(self, request: Mapping[str, Any]) -> StreamResult:
        upstream = await self._client.send(
            self._build_request(request, stream=True), stream=True
        )
        if upstream.status_code >= 400:
            try:
                await upstream.aread()
                body = _decode_body(upstream)
            finally:
                await upstream.aclose()
            self._raise_for_status(upstream, body)
        return StreamResult(
            stream=_UpstreamEventStream(self._iter_events(upstream), upstream),
            response={"status": upstream.status_code},
        )

    async def _iter_sse_data_json(
        self, upstream: httpx.Response
    ) -> AsyncIterator[dict[str, Any]]:
        async for line in upstream.aiter_lines():
            if not line or not line.startswith("data:"):
                continue
            payload = line[5:].strip()
            if not payload or payload == "[DONE]":
                continue
            try:
                parsed = json.loads(payload)
            except ValueError:
                continue
            if isinstance(parsed, dict):
                yield parsed

    async def _iter_events(
        self, upstream: httpx.Response
    ) -> AsyncGenerator[StreamEvent, None]:
        finish_reason = "unknown"
        usage: dict[str, int] = {}
        try:
            async for chunk in self._iter_sse_data_json(upstream):
                if chunk.get("usage"):
                    usage = _usage(chunk["usage"])
                choices = chunk.get("choices")
                for choice in choices if isinstance(choices, list) else []:
                    if not isinstance(choice, Mapping):
                        continue
                    if self.kind == "chat":
                        raw_delta = choice.get("delta")
                        delta = raw_delta.get("content") if isinstance(raw_delta, Mapping) else None
                    else:
                        delta = choice.get("text")
                    if isinstance(delta, str) and delta:
                        yield StreamEvent(type="text-delta", delta=delta)
                    if choice.get("finish_reason"):
                        finish_reason = str(choice["finish_reason"])
            yield StreamEvent(
                type="finish",
                finish_reason=finish_reason,
                usage=usage,
                provider_metadata={},
            )
        finally:
            await upstream.aclose()

    def __repr__(self) -> str:
        return f"OpenAICompatibleModel(provider={self.provider!r}, model_id={self.model_id!r})"


class OpenAICompatibleProvider:
    """Builds models for one API key; satisfies ``ModelProvider``."""

    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str,
        provider: str = "openai",
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 120.0,
        connect_timeout_seconds: float | None = None,
        supported_urls: Mapping[str, Sequence[UrlPattern]] | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url
        self.provider = provider
        self.client = client or httpx.AsyncClient(
            timeout=build_timeout(
                timeout_seconds,
                connect_timeout_seconds=connect_timeout_seconds,
            ),
            limits=httpx.Limits(max_connections=64, max_keepalive_connections=16),
        )
        self.supported_urls = supported_urls

    def _model(self, model_id: str, kind: ModelKind, options: dict[str, Any]) -> OpenAICompatibleModel:
        return OpenAICompatibleModel(
            model_id=model_id,
            base_url=self.base_url,
            api_key=self.api_key,
            client=self.client,
            provider=self.provider,
            kind=kind,
            supported_urls=self.supported_urls,
            default_options=options,
        )

    def __call__(self, model_id: str, **options: Any) -> OpenAICompatibleModel:
        return self._model(model_id, "chat", options)

    def chat_model(self, model_id: str, **options: Any) -> OpenAICompatibleModel:
        return self._model(model_id, "chat", options)

    def completion_model(self, model_id: str, **options: Any) -> OpenAICompatibleModel:
        return self._model(model_id, "completion", options)

    async def close(self) -> None:
        await self.client.aclose()


__all__ = [
    "OpenAICompatibleModel",
    "OpenAICompatibleProvider",
    "build_timeout",
]
