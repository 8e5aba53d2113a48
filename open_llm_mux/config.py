from __future__ import annotations

import os
import re
from collections.abc import Callable
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from open_llm_mux.backends.openai_compat import OpenAICompatibleProvider
from open_llm_mux.credentials import ApiKeyMux, mux_api_keys
from open_llm_mux.dispatch import AuditHook, SelectionObserver
from open_llm_mux.router import MuxModel
from open_llm_mux.settings import Settings, get_settings
from open_llm_mux.utils.yaml_utils import load_yaml_dict


def _resolve_env_or_value(env_name: str | None, value: str | None) -> str | None:
    if env_name:
        env_value = os.getenv(env_name, "").strip()
        if env_value:
            return env_value
    return value


def _compile_patterns(raw: dict[str, list[str]]) -> dict[str, list[re.Pattern[str]]]:
    return {category: [re.compile(pattern) for pattern in patterns] for category, patterns in raw.items()}


class BackendCommonFields(BaseModel):
    provider: str = "openai"
    base_url: str
    model: str
    kind: Literal["chat", "completion"] = "chat"
    supported_urls: dict[str, list[str]] = Field(default_factory=dict)

    @field_validator("supported_urls")
    @classmethod
    def _patterns_must_compile(cls, value: dict[str, list[str]]) -> dict[str, list[str]]:
        for category, patterns in value.items():
            for pattern in patterns:
                try:
                    re.compile(pattern)
                except re.error as exc:
                    raise ValueError(
                        f"Invalid supported_urls pattern for '{category}': {pattern!r} ({exc})"
                    ) from exc
        return value

    def compiled_supported_urls(self) -> dict[str, list[re.Pattern[str]]]:
        return _compile_patterns(self.supported_urls)


class CandidateConfig(BackendCommonFields):
    name: str | None = None
    api_key: str | None = None
    api_key_env: str | None = None
    enabled: bool = True

    def resolved_api_key(self) -> str | None:
        return _resolve_env_or_value(self.api_key_env, self.api_key)


class ApiKeysConfig(BackendCommonFields):
    keys: list[str] = Field(default_factory=list)
    keys_env: list[str] = Field(default_factory=list)

    def resolved_keys(self) -> list[str]:
        resolved = [key.strip() for key in self.keys if key.strip()]
        for env_name in self.keys_env:
            env_value = os.getenv(env_name, "").strip()
            if env_value:
                resolved.append(env_value)
        return resolved


class MuxConfig(BaseModel):
    strategy: Literal["round_robin", "random"] = "round_robin"
    retry_on_error: bool | None = None
    candidates: list[CandidateConfig] = Field(default_factory=list)
    api_keys: ApiKeysConfig | None = None

    @model_validator(mode="after")
    def _exactly_one_source(self) -> MuxConfig:
        if self.candidates and self.api_keys is not None:
            raise ValueError("Configure either 'candidates' or 'api_keys', not both.")
        if not self.candidates and self.api_keys is None:
            raise ValueError("Configure at least one entry under 'candidates' or 'api_keys'.")
        return self

    @property
    def mode(self) -> Literal["candidates", "api_keys"]:
        return "api_keys" if self.api_keys is not None else "candidates"

    def effective_retry_on_error(self) -> bool:
        if self.retry_on_error is not None:
            return self.retry_on_error
        return self.mode == "api_keys"

    def enabled_candidates(self) -> list[CandidateConfig]:
        return [candidate for candidate in self.candidates if candidate.enabled]


def load_mux_config(config_path: str | Path) -> MuxConfig:
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(
            f"Mux config not found at '{config_path}'. "
            "Create it with 'mux init' or set MUX_CONFIG_PATH."
        )
    payload = load_yaml_dict(
        path,
        error_message=(
            f"Mux config '{config_path}' must be a YAML mapping with "
            "'candidates' or 'api_keys'."
        ),
    )
    return MuxConfig.model_validate(payload)


ProviderBuilder = Callable[..., OpenAICompatibleProvider]


def _build_candidates_router(
    config: MuxConfig,
    *,
    settings: Settings,
    on_select: SelectionObserver | None,
    audit_hook: AuditHook | None,
    provider_builder: ProviderBuilder,
) -> MuxModel:
    models: list[dict[str, Any]] = []
    for candidate in config.enabled_candidates():
        provider = provider_builder(
            api_key=candidate.resolved_api_key(),
            base_url=candidate.base_url,
            provider=candidate.provider,
            timeout_seconds=settings.backend_timeout_seconds,
            connect_timeout_seconds=settings.backend_connect_timeout_seconds,
            supported_urls=candidate.compiled_supported_urls(),
        )
        if candidate.kind == "completion":
            model = provider.completion_model(candidate.model)
        else:
            model = provider.chat_model(candidate.model)
        models.append({"model": model, "name": candidate.name})
    return MuxModel(
        models,
        strategy=config.strategy,
        retry_on_error=config.effective_retry_on_error(),
        on_select=on_select,
        audit_hook=audit_hook,
    )


def _build_api_keys_mux(
    config: MuxConfig,
    *,
    settings: Settings,
    on_select: SelectionObserver | None,
    audit_hook: AuditHook | None,
    provider_builder: ProviderBuilder,
) -> ApiKeyMux:
    api_keys = config.api_keys
    assert api_keys is not None
    supported_urls = api_keys.compiled_supported_urls()

    def create_provider(api_key: str, index: int) -> OpenAICompatibleProvider:
        return provider_builder(
            api_key=api_key,
            base_url=api_keys.base_url,
            provider=api_keys.provider,
            timeout_seconds=settings.backend_timeout_seconds,
            connect_timeout_seconds=settings.backend_connect_timeout_seconds,
            supported_urls=supported_urls,
        )

    return mux_api_keys(
        api_keys.resolved_keys(),
        create_provider,
        strategy=config.strategy,
        retry_on_error=config.effective_retry_on_error(),
        on_select=on_select,
        audit_hook=audit_hook,
    )


def build_router(
    config: MuxConfig,
    *,
    settings: Settings | None = None,
    on_select: SelectionObserver | None = None,
    audit_hook: AuditHook | None = None,
    provider_builder: ProviderBuilder = OpenAICompatibleProvider,
) -> MuxModel:
    """Build the composite model described by ``config``.

    In ``api_keys`` mode the configured model is built once per key through a
    shared :class:`ApiKeyMux`.
    """
    resolved_settings = settings or get_settings()
    if config.mode == "api_keys":
        api_keys = config.api_keys
        assert api_keys is not None
        mux = _build_api_keys_mux(
            config,
            settings=resolved_settings,
            on_select=on_select,
            audit_hook=audit_hook,
            provider_builder=provider_builder,
        )
        if api_keys.kind == "completion":
            return mux.completion_model(api_keys.model)
        return mux.chat_model(api_keys.model)
    return _build_candidates_router(
        config,
        settings=resolved_settings,
        on_select=on_select,
        audit_hook=audit_hook,
        provider_builder=provider_builder,
    )


__all__ = [
    "ApiKeysConfig",
    "CandidateConfig",
    "MuxConfig",
    "build_router",
    "load_mux_config",
]
