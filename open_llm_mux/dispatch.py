from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Generic, TypeVar

from open_llm_mux.backend import LanguageModel
from open_llm_mux.candidates import Candidate
from open_llm_mux.classifier import collect_status_codes, is_retry_eligible
from open_llm_mux.errors import AllCandidatesFailedError
from open_llm_mux.strategies import (
    SelectionContext,
    SelectionStrategy,
    normalize_index,
    trial_order,
)

logger = logging.getLogger("open_llm_mux")

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Selection:
    index: int
    name: str | None
    model: LanguageModel


@dataclass(frozen=True, slots=True)
class AttemptOutcome:
    index: int
    error: BaseException | None = None


@dataclass(slots=True)
class Dispatched(Generic[T]):
    index: int
    candidate: Candidate
    result: T
    attempts: list[AttemptOutcome] = field(default_factory=list)


AuditHook = Callable[[dict[str, Any]], None]
SelectionObserver = Callable[[Selection], None]


class DispatchState:
    """Attempt counter and last successful index for one router.

    Every read-modify-write happens under ``_lock`` and never spans an
    ``await``; candidate calls run outside the lock.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._attempt = 0
        self._last_index: int | None = None

    @property
    def attempt(self) -> int:
        with self._lock:
            return self._attempt

    @property
    def last_index(self) -> int | None:
        with self._lock:
            return self._last_index

    def choose_start_index(
        self,
        candidates: tuple[Candidate, ...],
        strategy: SelectionStrategy,
    ) -> tuple[int, int]:
        with self._lock:
            attempt = self._attempt
            self._attempt += 1
            choice = strategy(
                SelectionContext(
                    candidates=candidates,
                    attempt=attempt,
                    last_index=self._last_index,
                )
            )
        return attempt, normalize_index(choice, len(candidates))

    def record_success(self, index: int) -> None:
        with self._lock:
            self._last_index = index


class DispatchEngine:
    def __init__(
        self,
        *,
        candidates: tuple[Candidate, ...],
        strategy: SelectionStrategy,
        retry_on_error: bool,
        on_select: SelectionObserver | None = None,
        state: DispatchState | None = None,
        audit_hook: AuditHook | None = None,
    ) -> None:
        self.candidates = candidates
        self.strategy = strategy
        self.retry_on_error = retry_on_error
        self.on_select = on_select
        self.state = state or DispatchState()
        self.audit_hook = audit_hook

    def _audit(self, event: str, **fields: Any) -> None:
        if self.audit_hook is None:
            return
        try:
            self.audit_hook({"event": event, **fields})
        except Exception as exc:
            logger.debug("mux_audit_hook_failed event=%s error=%s", event, str(exc))

    def _indices_to_try(self, start_index: int) -> list[int]:
        if not self.retry_on_error:
            return [start_index]
        return trial_order(start_index, len(self.candidates))

    async def dispatch(
        self,
        invoke: Callable[[Candidate], Awaitable[T]],
        *,
        operation: str = "generate",
    ) -> Dispatched[T]:
        attempt, start_index = self.state.choose_start_index(
            self.candidates, self.strategy
        )
        indices = self._indices_to_try(start_index)
        outcomes: list[AttemptOutcome] = []
        errors: list[BaseException] = []

        for position, index in enumerate(indices):
            candidate = self.candidates[index]
            try:
                result = await invoke(candidate)
            except Exception as exc:
                outcomes.append(AttemptOutcome(index=index, error=exc))
                status_codes = collect_status_codes(exc)
                if not self.retry_on_error or not is_retry_eligible(exc):
                    logger.info(
                        "mux_error operation=%s attempt=%d index=%d candidate=%s status=%s",
                        operation,
                        attempt,
                        index,
                        candidate.label,
                        status_codes[0] if status_codes else None,
                    )
                    self._audit(
                        "mux_error",
                        operation=operation,
                        attempt=attempt,
                        index=index,
                        candidate=candidate.label,
                        status_codes=status_codes,
                        error_type=exc.__class__.__name__,
                    )
                    raise
                errors.append(exc)
                if position < len(indices) - 1:
                    logger.info(
                        "mux_retry operation=%s attempt=%d index=%d candidate=%s status=%s",
                        operation,
                        attempt,
                        index,
                        candidate.label,
                        status_codes[0] if status_codes else None,
                    )
                    self._audit(
                        "mux_retry",
                        operation=operation,
                        attempt=attempt,
                        index=index,
                        candidate=candidate.label,
                        status_codes=status_codes,
                    )
                continue

            outcomes.append(AttemptOutcome(index=index))
            self.state.record_success(index)
            if self.on_select is not None:
                self.on_select(
                    Selection(index=index, name=candidate.name, model=candidate.model)
                )
            logger.debug(
                "mux_select operation=%s attempt=%d index=%d candidate=%s tries=%d",
                operation,
                attempt,
                index,
                candidate.label,
                len(outcomes),
            )
            self._audit(
                "mux_select",
                operation=operation,
                attempt=attempt,
                index=index,
                candidate=candidate.label,
                provider=candidate.model.provider,
                model_id=candidate.model.model_id,
                tries=len(outcomes),
                tried=[outcome.index for outcome in outcomes],
            )
            return Dispatched(
                index=index,
                candidate=candidate,
                result=result,
                attempts=outcomes,
            )

        logger.warning(
            "mux_exhausted operation=%s attempt=%d failures=%d",
            operation,
            attempt,
            len(errors),
        )
        self._audit(
            "mux_exhausted",
            operation=operation,
            attempt=attempt,
            failures=len(errors),
            tried=[outcome.index for outcome in outcomes],
        )
        if len(errors) == 1:
            raise errors[0]
        raise AllCandidatesFailedError(errors) from errors[-1]


__all__ = [
    "AttemptOutcome",
    "AuditHook",
    "DispatchEngine",
    "DispatchState",
    "Dispatched",
    "Selection",
    "SelectionObserver",
]
