from __future__ import annotations

import asyncio
from typing import Any

import pytest

from open_llm_mux.annotate import MUX_MODEL_ID, MUX_NAMESPACE
from open_llm_mux.backend import GenerateResult, is_language_model
from open_llm_mux.candidates import normalize_candidates
from open_llm_mux.dispatch import DispatchEngine, Selection
from open_llm_mux.errors import AllCandidatesFailedError, EmptyCandidateSetError
from open_llm_mux.router import MuxModel, mux_models
from open_llm_mux.strategies import SelectionContext
from tests.fake_models import FakeModel, always, status_error


def test_mux_model_satisfies_language_model_contract() -> None:
    mux = mux_models([FakeModel("a")])
    assert is_language_model(mux) is True
    assert mux.provider == MUX_NAMESPACE
    assert mux.model_id == MUX_MODEL_ID


def test_mux_models_requires_at_least_one_model() -> None:
    with pytest.raises(EmptyCandidateSetError):
        mux_models([])


def test_retry_moves_to_next_candidate_on_eligible_error() -> None:
    a = FakeModel("a", fail_with=status_error(429, "rate limit exceeded"))
    b = FakeModel("b")
    mux = mux_models([a, b], strategy=always(0), retry_on_error=True)

    result = asyncio.run(mux.generate({"prompt": "hi"}))

    assert result.provider_metadata is not None
    assert result.provider_metadata[MUX_NAMESPACE]["selected_index"] == 1
    assert result.content == [{"type": "text", "text": "b:m"}]
    assert a.generate_calls == 1
    assert b.generate_calls == 1


def test_non_eligible_error_propagates_without_trying_others() -> None:
    unauthorized = status_error(401, "unauthorized")
    a = FakeModel("a", fail_with=unauthorized)
    b = FakeModel("b")
    mux = mux_models([a, b], strategy=always(0), retry_on_error=True)

    with pytest.raises(Exception) as exc:
        asyncio.run(mux.generate({}))

    assert exc.value is unauthorized
    assert b.generate_calls == 0


def test_error_without_status_propagates_immediately() -> None:
    a = FakeModel("a", fail_with=RuntimeError("socket closed"))
    b = FakeModel("b")
    mux = mux_models([a, b], strategy=always(0), retry_on_error=True)

    with pytest.raises(RuntimeError, match="socket closed"):
        asyncio.run(mux.generate({}))
    assert b.generate_calls == 0


def test_retry_disabled_makes_exactly_one_attempt() -> None:
    a = FakeModel("a", fail_with=status_error(503))
    b = FakeModel("b")
    mux = mux_models([a, b], strategy=always(0), retry_on_error=False)

    with pytest.raises(Exception) as exc:
        asyncio.run(mux.generate({}))

    assert getattr(exc.value, "status_code", None) == 503
    assert a.generate_calls == 1
    assert b.generate_calls == 0


def test_single_failed_attempt_is_not_wrapped() -> None:
    rate_limited = status_error(429)
    mux = mux_models([FakeModel("a", fail_with=rate_limited)], retry_on_error=True)

    with pytest.raises(Exception) as exc:
        asyncio.run(mux.generate({}))

    assert exc.value is rate_limited
    assert exc.value.status_code == 429  # type: ignore[attr-defined]


def test_all_eligible_failures_are_aggregated_in_trial_order() -> None:
    errors = [status_error(500, "a"), status_error(429, "b"), status_error(503, "c")]
    models = [FakeModel(label, fail_with=error) for label, error in zip("abc", errors)]
    mux = mux_models(models, strategy=always(1), retry_on_error=True)

    with pytest.raises(AllCandidatesFailedError) as exc:
        asyncio.run(mux.generate({}))

    assert list(exc.value.errors) == [errors[1], errors[2], errors[0]]
    assert all(model.generate_calls == 1 for model in models)


def test_late_non_eligible_error_stops_the_walk() -> None:
    fatal = status_error(401, "bad key")
    a = FakeModel("a", fail_with=status_error(429))
    b = FakeModel("b", fail_with=fatal)
    c = FakeModel("c")
    mux = mux_models([a, b, c], strategy=always(0), retry_on_error=True)

    with pytest.raises(Exception) as exc:
        asyncio.run(mux.generate({}))

    assert exc.value is fatal
    assert c.generate_calls == 0


def test_no_candidate_is_called_after_success() -> None:
    models = [FakeModel(label) for label in "abc"]
    mux = mux_models(models, strategy=always(1), retry_on_error=True)

    asyncio.run(mux.generate({}))

    assert [model.generate_calls for model in models] == [0, 1, 0]


def test_attempt_counts_logical_calls_and_last_index_tracks_success() -> None:
    contexts: list[tuple[int, int | None]] = []

    def recording(context: SelectionContext) -> int:
        contexts.append((context.attempt, context.last_index))
        return 0

    a = FakeModel("a", fail_with=status_error(500))
    b = FakeModel("b")
    mux = mux_models([a, b], strategy=recording, retry_on_error=True)

    async def _run() -> None:
        await mux.generate({})
        await mux.generate({})

    asyncio.run(_run())

    assert contexts == [(0, None), (1, 1)]
    assert mux.state.attempt == 2
    assert mux.state.last_index == 1


def test_last_index_unchanged_when_call_fails() -> None:
    models = [FakeModel("a"), FakeModel("b", fail_with=status_error(401))]
    picks = iter([0, 1])
    mux = mux_models(models, strategy=lambda _context: next(picks), retry_on_error=True)

    async def _run() -> None:
        await mux.generate({})
        with pytest.raises(Exception):
            await mux.generate({})

    asyncio.run(_run())

    assert mux.state.last_index == 0
    assert mux.state.attempt == 2


def test_misbehaving_custom_strategy_is_normalized() -> None:
    models = [FakeModel(label) for label in "abc"]

    def _served_by(choice: Any) -> int:
        mux = mux_models(models, strategy=lambda _context: choice)
        result = asyncio.run(mux.generate({}))
        assert result.provider_metadata is not None
        return result.provider_metadata[MUX_NAMESPACE]["selected_index"]

    assert _served_by(4) == 1
    assert _served_by(-1) == 2
    assert _served_by(float("nan")) == 0
    assert _served_by("2") == 0
    assert _served_by(None) == 0


def test_on_select_receives_the_serving_candidate() -> None:
    selections: list[Selection] = []
    a = FakeModel("a", fail_with=status_error(429))
    b = FakeModel("b")
    mux = mux_models(
        [{"model": a, "name": "first"}, {"model": b, "name": "second"}],
        strategy=always(0),
        retry_on_error=True,
        on_select=selections.append,
    )

    asyncio.run(mux.generate({}))

    assert selections == [Selection(index=1, name="second", model=b)]


def test_on_select_not_called_when_every_candidate_fails() -> None:
    selections: list[Selection] = []
    mux = mux_models(
        [FakeModel("a", fail_with=status_error(500)), FakeModel("b", fail_with=status_error(500))],
        retry_on_error=True,
        on_select=selections.append,
    )

    with pytest.raises(AllCandidatesFailedError):
        asyncio.run(mux.generate({}))
    assert selections == []


def test_default_round_robin_spreads_consecutive_calls() -> None:
    models = [FakeModel(label) for label in "abc"]
    mux = mux_models(models)

    async def _run() -> list[int]:
        served = []
        for _ in range(6):
            result = await mux.generate({})
            assert result.provider_metadata is not None
            served.append(result.provider_metadata[MUX_NAMESPACE]["selected_index"])
        return served

    served = asyncio.run(_run())

    assert sorted(served[:3]) == [0, 1, 2]
    assert served[3:] == served[:3]
    assert [model.generate_calls for model in models] == [2, 2, 2]


def test_concurrent_calls_get_distinct_attempt_numbers() -> None:
    attempts: list[int] = []

    def recording(context: SelectionContext) -> int:
        attempts.append(context.attempt)
        return context.attempt

    class _SlowModel(FakeModel):
        async def generate(self, request: Any) -> GenerateResult:
            await asyncio.sleep(0)
            return await super().generate(request)

    models = [_SlowModel(label) for label in "abcd"]
    mux = mux_models(models, strategy=recording)

    async def _run() -> list[GenerateResult]:
        return await asyncio.gather(*(mux.generate({}) for _ in range(8)))

    results = asyncio.run(_run())

    assert sorted(attempts) == list(range(8))
    assert mux.state.attempt == 8
    assert [model.generate_calls for model in models] == [2, 2, 2, 2]
    assert len(results) == 8


def test_mux_models_compose_recursively() -> None:
    inner_failing = mux_models(
        [FakeModel("a", fail_with=status_error(429)), FakeModel("b", fail_with=status_error(503))],
        strategy=always(0),
        retry_on_error=True,
    )
    outer = mux_models(
        [{"model": inner_failing, "name": "pool-1"}, {"model": FakeModel("c"), "name": "pool-2"}],
        strategy=always(0),
        retry_on_error=True,
    )

    result = asyncio.run(outer.generate({}))

    assert result.provider_metadata is not None
    assert result.provider_metadata[MUX_NAMESPACE]["selected_name"] == "pool-2"
    assert result.text == "c:m"


def test_audit_hook_records_retry_and_selection_events() -> None:
    events: list[dict[str, Any]] = []
    mux = MuxModel(
        [FakeModel("a", fail_with=status_error(429)), FakeModel("b")],
        strategy=always(0),
        retry_on_error=True,
        audit_hook=events.append,
    )

    asyncio.run(mux.generate({}))

    assert [event["event"] for event in events] == ["mux_retry", "mux_select"]
    assert events[0]["index"] == 0
    assert events[0]["status_codes"] == [429.0]
    assert events[1]["index"] == 1
    assert events[1]["tries"] == 2
    assert events[1]["tried"] == [0, 1]
    assert events[1]["provider"] == "fake:b"


def test_audit_hook_failure_does_not_break_the_call() -> None:
    def broken_hook(_event: dict[str, Any]) -> None:
        raise RuntimeError("disk full")

    mux = MuxModel([FakeModel("a")], audit_hook=broken_hook)
    result = asyncio.run(mux.generate({}))
    assert result.text == "a:m"


def test_dispatch_records_each_attempt_outcome() -> None:
    first_error = status_error(503)
    candidates = normalize_candidates(
        [FakeModel("a"), FakeModel("b", fail_with=first_error), FakeModel("c")]
    )
    engine = DispatchEngine(
        candidates=candidates,
        strategy=always(1),
        retry_on_error=True,
    )

    dispatched = asyncio.run(
        engine.dispatch(lambda candidate: candidate.model.generate({}))
    )

    assert dispatched.index == 2
    assert [outcome.index for outcome in dispatched.attempts] == [1, 2]
    assert dispatched.attempts[0].error is first_error
    assert dispatched.attempts[1].error is None
