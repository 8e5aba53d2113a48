from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any, Protocol

from open_llm_mux.backend import LanguageModel, is_language_model
from open_llm_mux.dispatch import AuditHook, DispatchState, SelectionObserver
from open_llm_mux.errors import EmptyCandidateSetError, InvalidProviderError
from open_llm_mux.router import MuxModel
from open_llm_mux.strategies import SelectionStrategy, StrategyName, resolve_strategy


class ModelProvider(Protocol):
    """What a per-key provider factory must return.

    Calling the provider builds its default (chat) model; the named methods
    build the explicit model kinds.
    """

    def __call__(self, model_id: str, **options: Any) -> LanguageModel: ...

    def chat_model(self, model_id: str, **options: Any) -> LanguageModel: ...

    def completion_model(self, model_id: str, **options: Any) -> LanguageModel: ...


ProviderFactory = Callable[[str, int], ModelProvider]


class ApiKeyMux:
    """One provider per API key, recombined into muxed models.

    Every model built here shares a single ``DispatchState`` and a single
    strategy instance, so round-robin fairness holds across all of them.
    """

    def __init__(
        self,
        providers: Sequence[ModelProvider],
        *,
        strategy: SelectionStrategy | StrategyName | str | None = None,
        retry_on_error: bool = True,
        on_select: SelectionObserver | None = None,
        audit_hook: AuditHook | None = None,
    ) -> None:
        if not providers:
            raise EmptyCandidateSetError("mux_api_keys requires at least one API key.")
        self.providers = tuple(providers)
        self.retry_on_error = retry_on_error
        self.state = DispatchState()
        self._strategy = resolve_strategy(strategy)
        self._on_select = on_select
        self._audit_hook = audit_hook

    def __call__(self, model_id: str, **options: Any) -> MuxModel:
        return self._fan_out("__call__", model_id, options)

    def chat_model(self, model_id: str, **options: Any) -> MuxModel:
        return self._fan_out("chat_model", model_id, options)

    def completion_model(self, model_id: str, **options: Any) -> MuxModel:
        return self._fan_out("completion_model", model_id, options)

    def _fan_out(
        self,
        operation: str,
        model_id: str,
        options: dict[str, Any],
    ) -> MuxModel:
        models: list[Any] = []
        for index, provider in enumerate(self.providers):
            method = provider if operation == "__call__" else getattr(provider, operation, None)
            if not callable(method):
                raise InvalidProviderError(
                    index=index,
                    operation=operation,
                    message=f"mux_api_keys provider at index {index} is missing a callable {operation}.",
                )
            models.append(method(model_id, **options))
        return self._compose(operation, models)

    def _compose(self, operation: str, models: list[Any]) -> MuxModel:
        for index, model in enumerate(models):
            if not is_language_model(model):
                raise InvalidProviderError(
                    index=index,
                    operation=operation,
                    message=(
                        f"mux_api_keys provider at index {index} {operation} "
                        "did not return a language model."
                    ),
                )
        return MuxModel(
            models,
            strategy=self._strategy,
            retry_on_error=self.retry_on_error,
            on_select=self._on_select,
            state=self.state,
            audit_hook=self._audit_hook,
        )


def mux_api_keys(
    keys: Sequence[str],
    create_provider: ProviderFactory,
    *,
    strategy: SelectionStrategy | StrategyName | str | None = "round_robin",
    retry_on_error: bool = True,
    on_select: SelectionObserver | None = None,
    audit_hook: AuditHook | None = None,
) -> ApiKeyMux:
    if not keys:
        raise EmptyCandidateSetError("mux_api_keys requires at least one API key.")
    providers = [create_provider(key, index) for index, key in enumerate(keys)]
    return ApiKeyMux(
        providers,
        strategy=strategy,
        retry_on_error=retry_on_error,
        on_select=on_select,
        audit_hook=audit_hook,
    )


__all__ = ["ApiKeyMux", "ModelProvider", "ProviderFactory", "mux_api_keys"]
