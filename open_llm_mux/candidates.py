from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from open_llm_mux.backend import LanguageModel
from open_llm_mux.errors import EmptyCandidateSetError


@dataclass(frozen=True, slots=True)
class Candidate:
    model: LanguageModel
    name: str | None = None

    @property
    def label(self) -> str:
        if self.name:
            return self.name
        return f"{self.model.provider}:{self.model.model_id}"


CandidateInput = LanguageModel | Candidate | Mapping[str, Any]


def _as_candidate(entry: CandidateInput) -> Candidate:
    if isinstance(entry, Candidate):
        return entry
    if isinstance(entry, Mapping) and "model" in entry:
        name = entry.get("name")
        return Candidate(model=entry["model"], name=None if name is None else str(name))
    return Candidate(model=entry)  # type: ignore[arg-type]


def normalize_candidates(models: Sequence[CandidateInput]) -> tuple[Candidate, ...]:
    if not models:
        raise EmptyCandidateSetError()
    return tuple(_as_candidate(entry) for entry in models)


__all__ = ["Candidate", "CandidateInput", "normalize_candidates"]
