from __future__ import annotations

import asyncio
import re
from typing import Any

from open_llm_mux.capabilities import (
    LazySupportedUrls,
    intersect_capabilities,
    pattern_key,
)
from open_llm_mux.candidates import normalize_candidates
from open_llm_mux.router import mux_models
from tests.fake_models import FakeModel


def test_intersection_keeps_patterns_common_to_every_candidate() -> None:
    result = intersect_capabilities(
        [
            {"img": ["p1", "p2"]},
            {"img": ["p1"]},
            {"img": ["p1", "p3"]},
        ]
    )
    assert result == {"img": ["p1"]}


def test_category_missing_or_empty_anywhere_is_dropped() -> None:
    result = intersect_capabilities(
        [
            {"image/*": ["a"], "application/pdf": ["b"], "audio/*": ["c"]},
            {"image/*": ["a"], "audio/*": []},
            {"image/*": ["a"], "application/pdf": ["b"], "audio/*": ["c"]},
        ]
    )
    assert result == {"image/*": ["a"]}


def test_categories_only_in_later_candidates_are_not_advertised() -> None:
    result = intersect_capabilities([{"img": ["p1"]}, {"img": ["p1"], "pdf": ["p2"]}])
    assert result == {"img": ["p1"]}


def test_regex_patterns_compare_by_source_and_flags() -> None:
    https = re.compile(r"^https://.*$")
    result = intersect_capabilities(
        [
            {"image/*": [https, re.compile(r"^data:")]},
            {"image/*": [re.compile(r"^https://.*$"), re.compile(r"^data:", re.IGNORECASE)]},
        ]
    )
    assert result == {"image/*": [https]}
    assert result["image/*"][0] is https
    assert pattern_key(https) == pattern_key(re.compile(r"^https://.*$"))
    assert pattern_key("^x$") == "^x$"


def test_intersection_of_nothing_is_empty() -> None:
    assert intersect_capabilities([]) == {}
    assert intersect_capabilities([{}, {"img": ["p1"]}]) == {}
    assert intersect_capabilities([None, {"img": ["p1"]}]) == {}


def test_lazy_supported_urls_resolves_sync_and_async_declarations_once() -> None:
    resolutions = {"count": 0}

    async def _declared() -> dict[str, list[Any]]:
        resolutions["count"] += 1
        await asyncio.sleep(0)
        return {"img": ["p1", "p2"]}

    class _AsyncModel(FakeModel):
        @property
        def supported_urls(self) -> Any:
            return _declared()

    candidates = normalize_candidates(
        [FakeModel("a", supported_urls={"img": ["p2", "p1"]}), _AsyncModel("b")]
    )
    lazy = LazySupportedUrls(candidates)

    async def _run() -> list[Any]:
        return await asyncio.gather(lazy, lazy, lazy.resolve())

    first, second, third = asyncio.run(_run())

    assert first == {"img": ["p2", "p1"]}
    assert first is second is third
    assert lazy.resolved == first
    assert resolutions["count"] == 1


def test_mux_model_exposes_awaitable_supported_urls() -> None:
    mux = mux_models(
        [
            FakeModel("a", supported_urls={"img": ["p1", "p2"]}),
            FakeModel("b", supported_urls={"img": ["p1"]}),
            FakeModel("c", supported_urls={"img": ["p1", "p3"]}),
        ]
    )

    async def _run() -> tuple[Any, Any]:
        return await mux.supported_urls, await mux.supported_urls

    first, again = asyncio.run(_run())

    assert first == {"img": ["p1"]}
    assert again is first


def test_nested_mux_capabilities_resolve_through_inner_mux() -> None:
    inner = mux_models(
        [
            FakeModel("a", supported_urls={"img": ["p1", "p2"]}),
            FakeModel("b", supported_urls={"img": ["p1", "p2"], "pdf": ["x"]}),
        ]
    )
    outer = mux_models([inner, FakeModel("c", supported_urls={"img": ["p2"]})])

    async def _run() -> Any:
        return await outer.supported_urls

    assert asyncio.run(_run()) == {"img": ["p2"]}
