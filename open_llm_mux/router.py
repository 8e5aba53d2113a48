from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import replace
from typing import Any

from open_llm_mux.annotate import (
    MUX_MODEL_ID,
    MUX_NAMESPACE,
    AnnotatedStream,
    annotate_result,
)
from open_llm_mux.backend import GenerateResult, StreamResult
from open_llm_mux.candidates import Candidate, CandidateInput, normalize_candidates
from open_llm_mux.capabilities import LazySupportedUrls
from open_llm_mux.dispatch import (
    AuditHook,
    DispatchEngine,
    DispatchState,
    SelectionObserver,
)
from open_llm_mux.strategies import SelectionStrategy, StrategyName, resolve_strategy


class MuxModel:
    """A language model that fans each call out to one of several candidates.

    It satisfies the same contract as its candidates, so a ``MuxModel`` can
    itself be a candidate of another ``MuxModel``.
    """

    provider = MUX_NAMESPACE
    model_id = MUX_MODEL_ID

    def __init__(
        self,
        models: Sequence[CandidateInput],
        *,
        strategy: SelectionStrategy | StrategyName | str | None = None,
        retry_on_error: bool = False,
        on_select: SelectionObserver | None = None,
        state: DispatchState | None = None,
        audit_hook: AuditHook | None = None,
    ) -> None:
        self.candidates: tuple[Candidate, ...] = normalize_candidates(models)
        self._engine = DispatchEngine(
            candidates=self.candidates,
            strategy=resolve_strategy(strategy),
            retry_on_error=retry_on_error,
            on_select=on_select,
            state=state,
            audit_hook=audit_hook,
        )
        self._supported_urls = LazySupportedUrls(self.candidates)

    @property
    def supported_urls(self) -> LazySupportedUrls:
        return self._supported_urls

    @property
    def state(self) -> DispatchState:
        return self._engine.state

    @property
    def retry_on_error(self) -> bool:
        return self._engine.retry_on_error

    async def generate(self, request: Any) -> GenerateResult:
        dispatched = await self._engine.dispatch(
            lambda candidate: candidate.model.generate(request),
            operation="generate",
        )
        return annotate_result(dispatched.result, dispatched.index, dispatched.candidate)

    async def stream(self, request: Any) -> StreamResult:
        dispatched = await self._engine.dispatch(
            lambda candidate: candidate.model.stream(request),
            operation="stream",
        )
        result = dispatched.result
        if isinstance(result, Mapping):
            wrapped = AnnotatedStream(result["stream"], dispatched.index, dispatched.candidate)
            return {**result, "stream": wrapped}  # type: ignore[return-value]
        return replace(
            result,
            stream=AnnotatedStream(result.stream, dispatched.index, dispatched.candidate),
        )

    def __repr__(self) -> str:
        labels = ",".join(candidate.label for candidate in self.candidates)
        return f"MuxModel(candidates=[{labels}], retry_on_error={self.retry_on_error})"


def mux_models(
    models: Sequence[CandidateInput],
    *,
    strategy: SelectionStrategy | StrategyName | str | None = "round_robin",
    retry_on_error: bool = False,
    on_select: SelectionObserver | None = None,
    audit_hook: AuditHook | None = None,
) -> MuxModel:
    return MuxModel(
        models,
        strategy=strategy,
        retry_on_error=retry_on_error,
        on_select=on_select,
        audit_hook=audit_hook,
    )


__all__ = ["MuxModel", "mux_models"]
