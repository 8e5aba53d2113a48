from __future__ import annotations

import asyncio
import inspect
import re
from collections.abc import Generator, Mapping, Sequence
from typing import Any

from open_llm_mux.backend import CapabilitySet, LanguageModel, UrlPattern
from open_llm_mux.candidates import Candidate


def pattern_key(pattern: UrlPattern) -> str:
    if isinstance(pattern, re.Pattern):
        return f"/{pattern.pattern}/{int(pattern.flags)}"
    return str(pattern)


def intersect_capabilities(
    capability_sets: Sequence[Mapping[str, Sequence[UrlPattern]] | None],
) -> CapabilitySet:
    """Keep the patterns every capability set declares, per category.

    Categories come from the first set. A category that is empty or absent
    in any set is dropped; pattern objects are taken from the first set.
    """
    result: CapabilitySet = {}
    if not capability_sets:
        return result
    first = capability_sets[0] or {}

    for category, patterns in first.items():
        surviving = {pattern_key(pattern): pattern for pattern in patterns}
        for other in capability_sets[1:]:
            if not surviving:
                break
            declared = {pattern_key(pattern) for pattern in (other or {}).get(category) or []}
            for key in list(surviving):
                if key not in declared:
                    del surviving[key]
        if surviving:
            result[category] = list(surviving.values())
    return result


async def resolve_supported_urls(
    model: LanguageModel,
) -> Mapping[str, Sequence[UrlPattern]]:
    declared: Any = model.supported_urls
    if inspect.isawaitable(declared):
        declared = await declared
    return declared or {}


class LazySupportedUrls:
    """Awaitable intersection of the candidates' supported URL patterns.

    Resolution runs once, on first await; later awaits return the cached
    set. Awaiting it repeatedly or from concurrent tasks is safe.
    """

    def __init__(self, candidates: Sequence[Candidate]) -> None:
        self._candidates = tuple(candidates)
        self._lock: asyncio.Lock | None = None
        self._resolved: CapabilitySet | None = None

    @property
    def resolved(self) -> CapabilitySet | None:
        return self._resolved

    async def resolve(self) -> CapabilitySet:
        if self._resolved is not None:
            return self._resolved
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            if self._resolved is None:
                declared = await asyncio.gather(
                    *(resolve_supported_urls(candidate.model) for candidate in self._candidates)
                )
                self._resolved = intersect_capabilities(declared)
        return self._resolved

    def __await__(self) -> Generator[Any, None, CapabilitySet]:
        return self.resolve().__await__()


__all__ = [
    "LazySupportedUrls",
    "intersect_capabilities",
    "pattern_key",
    "resolve_supported_urls",
]
