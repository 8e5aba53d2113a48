from __future__ import annotations

from open_llm_mux.annotate import MUX_MODEL_ID, MUX_NAMESPACE
from open_llm_mux.backend import (
    CapabilitySet,
    GenerateResult,
    LanguageModel,
    StreamEvent,
    StreamResult,
    is_language_model,
)
from open_llm_mux.candidates import Candidate, normalize_candidates
from open_llm_mux.classifier import RETRY_STATUS_CODES, is_retry_eligible
from open_llm_mux.credentials import ApiKeyMux, ModelProvider, mux_api_keys
from open_llm_mux.dispatch import DispatchState, Selection
from open_llm_mux.errors import (
    AllCandidatesFailedError,
    BackendError,
    EmptyCandidateSetError,
    InvalidProviderError,
    MuxError,
)
from open_llm_mux.router import MuxModel, mux_models
from open_llm_mux.strategies import (
    SelectionContext,
    SelectionStrategy,
    random_strategy,
    round_robin_strategy,
)

__all__ = [
    "AllCandidatesFailedError",
    "ApiKeyMux",
    "BackendError",
    "Candidate",
    "CapabilitySet",
    "DispatchState",
    "EmptyCandidateSetError",
    "GenerateResult",
    "InvalidProviderError",
    "LanguageModel",
    "MUX_MODEL_ID",
    "MUX_NAMESPACE",
    "ModelProvider",
    "MuxError",
    "MuxModel",
    "RETRY_STATUS_CODES",
    "Selection",
    "SelectionContext",
    "SelectionStrategy",
    "StreamEvent",
    "StreamResult",
    "is_language_model",
    "is_retry_eligible",
    "mux_api_keys",
    "mux_models",
    "normalize_candidates",
    "random_strategy",
    "round_robin_strategy",
]
