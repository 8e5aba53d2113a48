from __future__ import annotations

import re
from collections.abc import AsyncIterator, Awaitable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

UrlPattern = re.Pattern[str] | str
CapabilitySet = dict[str, list[UrlPattern]]
ProviderMetadata = dict[str, dict[str, Any]]


@dataclass(slots=True)
class GenerateResult:
    content: list[dict[str, Any]]
    finish_reason: str
    usage: dict[str, int] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    provider_metadata: ProviderMetadata | None = None
    response: dict[str, Any] | None = None

    @property
    def text(self) -> str:
        return "".join(
            str(part.get("text") or "")
            for part in self.content
            if part.get("type") == "text"
        )


@dataclass(slots=True)
class StreamEvent:
    type: str
    delta: str | None = None
    finish_reason: str | None = None
    usage: dict[str, int] | None = None
    provider_metadata: ProviderMetadata | None = None


@dataclass(slots=True)
class StreamResult:
    stream: AsyncIterator[StreamEvent]
    request: dict[str, Any] | None = None
    response: dict[str, Any] | None = None


@runtime_checkable
class LanguageModel(Protocol):
    provider: str
    model_id: str

    @property
    def supported_urls(
        self,
    ) -> Mapping[str, Sequence[UrlPattern]] | Awaitable[Mapping[str, Sequence[UrlPattern]]]: ...

    async def generate(self, request: Any) -> GenerateResult: ...

    async def stream(self, request: Any) -> StreamResult: ...


def is_language_model(value: Any) -> bool:
    if value is None or isinstance(value, Mapping):
        return False
    if not isinstance(getattr(value, "provider", None), str):
        return False
    if not isinstance(getattr(value, "model_id", None), str):
        return False
    for operation in ("generate", "stream"):
        method = getattr(value, operation, None)
        if method is None or not callable(method):
            return False
    return hasattr(value, "supported_urls")


__all__ = [
    "CapabilitySet",
    "GenerateResult",
    "LanguageModel",
    "ProviderMetadata",
    "StreamEvent",
    "StreamResult",
    "UrlPattern",
    "is_language_model",
]
