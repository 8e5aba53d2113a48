from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, cast

import yaml

from open_llm_mux.annotate import MUX_NAMESPACE
from open_llm_mux.backends.openai_compat import OpenAICompatibleProvider
from open_llm_mux.config import build_router, load_mux_config
from open_llm_mux.gateway.audit import JsonlAuditLogger
from open_llm_mux.settings import get_settings
from open_llm_mux.utils.yaml_utils import write_yaml_dict

DEFAULT_CONFIG_PATH = "mux.yaml"
DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "gpt-4.1-mini"


def _config_path(args: argparse.Namespace) -> Path:
    return Path(args.path or get_settings().mux_config_path)


def _add_config_path_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--path",
        default=None,
        help=f"Mux config path (default: $MUX_CONFIG_PATH or {DEFAULT_CONFIG_PATH}).",
    )


def cmd_init(args: argparse.Namespace) -> int:
    if args.mode == "api_keys":
        template: dict[str, Any] = {
            "strategy": "round_robin",
            "retry_on_error": True,
            "api_keys": {
                "provider": "openai",
                "base_url": DEFAULT_BASE_URL,
                "model": DEFAULT_MODEL,
                "keys_env": ["OPENAI_API_KEY_1", "OPENAI_API_KEY_2"],
            },
        }
    else:
        template = {
            "strategy": "round_robin",
            "retry_on_error": False,
            "candidates": [
                {
                    "name": "primary",
                    "provider": "openai",
                    "base_url": DEFAULT_BASE_URL,
                    "model": DEFAULT_MODEL,
                    "api_key_env": "OPENAI_API_KEY",
                },
                {
                    "name": "local",
                    "provider": "ollama",
                    "base_url": "http://localhost:11434/v1",
                    "model": "llama3.1",
                },
            ],
        }

    output_path = _config_path(args)
    if output_path.exists() and not args.force:
        raise ValueError(
            f"Refusing to overwrite existing file: {output_path}. Use --force to overwrite."
        )
    write_yaml_dict(output_path, template)
    print(f"Wrote mux config: {output_path}")
    return 0


def cmd_validate_config(args: argparse.Namespace) -> int:
    config_path = _config_path(args)
    config = load_mux_config(config_path)
    if config.mode == "api_keys":
        assert config.api_keys is not None
        count = len(config.api_keys.resolved_keys())
        if count == 0:
            raise ValueError("api_keys mode resolved no keys; check keys / keys_env.")
    else:
        count = len(config.enabled_candidates())
        if count == 0:
            raise ValueError("All candidates are disabled.")
    print(
        f"Mux config is valid: {config_path} "
        f"(mode={config.mode}, candidates={count}, strategy={config.strategy}, "
        f"retry_on_error={config.effective_retry_on_error()})"
    )
    return 0


async def _run_generate(args: argparse.Namespace) -> dict[str, Any]:
    settings = get_settings()
    config = load_mux_config(_config_path(args))
    providers: list[OpenAICompatibleProvider] = []

    def provider_builder(**kwargs: Any) -> OpenAICompatibleProvider:
        provider = OpenAICompatibleProvider(**kwargs)
        providers.append(provider)
        return provider

    audit_logger = JsonlAuditLogger(
        settings.mux_audit_log_path,
        enabled=settings.mux_audit_log_enabled,
    )
    router = build_router(
        config,
        settings=settings,
        audit_hook=audit_logger,
        provider_builder=provider_builder,
    )

    messages: list[dict[str, str]] = []
    if args.system:
        messages.append({"role": "system", "content": args.system})
    messages.append({"role": "user", "content": args.prompt})
    request: dict[str, Any] = {"messages": messages, "prompt": args.prompt}
    if args.max_tokens is not None:
        request["max_tokens"] = args.max_tokens

    try:
        if args.stream:
            result = await router.stream(request)
            metadata: dict[str, Any] = {}
            async for event in result.stream:
                if event.type == "text-delta" and event.delta:
                    print(event.delta, end="", flush=True)
                elif event.type == "finish":
                    metadata = dict((event.provider_metadata or {}).get(MUX_NAMESPACE) or {})
            print()
            return metadata

        generated = await router.generate(request)
        print(generated.text)
        return dict((generated.provider_metadata or {}).get(MUX_NAMESPACE) or {})
    finally:
        for provider in providers:
            await provider.close()
        audit_logger.close()


def cmd_generate(args: argparse.Namespace) -> int:
    metadata = asyncio.run(_run_generate(args))
    if args.show_selection:
        print(yaml.safe_dump({"selection": metadata}, sort_keys=False).rstrip())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mux",
        description="Configure and exercise an open-llm-mux composite model.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_cmd = subparsers.add_parser("init", help="Create a mux config file.")
    init_cmd.add_argument(
        "--mode",
        choices=["candidates", "api_keys"],
        default="candidates",
    )
    init_cmd.add_argument("--force", action="store_true")
    _add_config_path_argument(init_cmd)
    init_cmd.set_defaults(handler=cmd_init)

    validate_cmd = subparsers.add_parser(
        "validate-config",
        help="Validate a mux config file.",
    )
    _add_config_path_argument(validate_cmd)
    validate_cmd.set_defaults(handler=cmd_validate_config)

    generate_cmd = subparsers.add_parser(
        "generate",
        help="Send one prompt through the configured mux.",
    )
    _add_config_path_argument(generate_cmd)
    generate_cmd.add_argument("--prompt", required=True)
    generate_cmd.add_argument("--system")
    generate_cmd.add_argument("--max-tokens", type=int)
    generate_cmd.add_argument("--stream", action="store_true")
    generate_cmd.add_argument(
        "--no-selection",
        dest="show_selection",
        action="store_false",
        help="Do not print which candidate served the request.",
    )
    generate_cmd.set_defaults(handler=cmd_generate)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    handler = cast(Callable[[argparse.Namespace], int], args.handler)

    try:
        return handler(args)
    except Exception as exc:  # pragma: no cover - covered via CLI tests
        parser.exit(2, f"error: {exc}\n")


if __name__ == "__main__":
    raise SystemExit(main())
