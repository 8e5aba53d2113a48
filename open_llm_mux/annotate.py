from __future__ import annotations

import dataclasses
from collections.abc import AsyncIterator, Mapping
from typing import Any, Generic, TypeVar

from open_llm_mux.backend import ProviderMetadata
from open_llm_mux.candidates import Candidate

MUX_NAMESPACE = "open-llm-mux"
MUX_MODEL_ID = "mux"

T = TypeVar("T")
E = TypeVar("E")


def selection_metadata(index: int, candidate: Candidate) -> dict[str, Any]:
    metadata: dict[str, Any] = {
        "selected_index": index,
        "provider": candidate.model.provider,
        "model_id": candidate.model.model_id,
    }
    if candidate.name is not None:
        metadata["selected_name"] = candidate.name
    return metadata


def add_mux_metadata(
    existing: Mapping[str, Any] | None,
    index: int,
    candidate: Candidate,
) -> ProviderMetadata:
    return {**(existing or {}), MUX_NAMESPACE: selection_metadata(index, candidate)}


def _metadata_of(value: Any) -> Mapping[str, Any] | None:
    if isinstance(value, Mapping):
        return value.get("provider_metadata")
    return getattr(value, "provider_metadata", None)


def annotate_result(result: T, index: int, candidate: Candidate) -> T:
    """Return a copy of ``result`` whose ``provider_metadata`` names the candidate.

    Dataclass results are copied with :func:`dataclasses.replace`; mappings
    are shallow-copied. No other field is touched.
    """
    merged = add_mux_metadata(_metadata_of(result), index, candidate)
    if isinstance(result, Mapping):
        return {**result, "provider_metadata": merged}  # type: ignore[return-value]
    if dataclasses.is_dataclass(result) and not isinstance(result, type):
        return dataclasses.replace(result, provider_metadata=merged)  # type: ignore[call-arg]
    raise TypeError(
        f"Cannot attach selection metadata to {type(result).__name__}; "
        "expected a dataclass or mapping with provider_metadata."
    )


def _event_type(event: Any) -> Any:
    if isinstance(event, Mapping):
        return event.get("type")
    return getattr(event, "type", None)


class AnnotatedStream(Generic[E]):
    """Pass-through async iterator that stamps the ``finish`` event.

    Each ``__anext__`` pulls exactly one element from the wrapped iterator,
    so ordering, element count and backpressure are those of the source.
    """

    def __init__(self, stream: AsyncIterator[E], index: int, candidate: Candidate):
        self._stream = stream
        self._index = index
        self._candidate = candidate

    def __aiter__(self) -> AnnotatedStream[E]:
        return self

    async def __anext__(self) -> E:
        event = await self._stream.__anext__()
        if _event_type(event) == "finish":
            return annotate_result(event, self._index, self._candidate)
        return event

    async def aclose(self) -> None:
        aclose = getattr(self._stream, "aclose", None)
        if aclose is not None:
            await aclose()


__all__ = [
    "AnnotatedStream",
    "MUX_MODEL_ID",
    "MUX_NAMESPACE",
    "add_mux_metadata",
    "annotate_result",
    "selection_metadata",
]
