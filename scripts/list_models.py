#!/usr/bin/env python3
"""
List the text models the configured credential can call.

Reads LLM_PROVIDER and the provider's API key from the environment / .env,
fetches the same catalog the fallback resolver uses, and prints which model
a rejected request would fall back to.

Usage:
    python scripts/list_models.py
    python scripts/list_models.py --provider openai --tier fast
"""
import argparse
import asyncio
import sys
from pathlib import Path

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from drafting.catalog import list_models, select_fallback
from drafting.llm import _get_llm_config, require_credentials
from shared.context import NodeContext
from shared.errors import ConfigurationError, UpstreamError


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="List callable text models")
    parser.add_argument("--provider", help="gemini, openai, anthropic or ollama (default: LLM_PROVIDER)")
    parser.add_argument("--tier", choices=["quality", "fast"], help="Fallback tier (default: LLM_TIER)")
    parser.add_argument("--all", action="store_true", help="Also show models that cannot generate text")
    return parser.parse_args(argv)


async def main(argv=None) -> int:
    args = parse_args(argv)
    ctx = NodeContext()
    config = _get_llm_config(ctx, provider_preference=args.provider)
    tier = args.tier or config.get("tier") or "quality"

    print("=" * 60)
    print(f"Provider: {config['provider']}")
    print(f"Configured model: {config['model']}")
    print(f"Tier: {tier}")
    print("=" * 60)

    try:
        require_credentials(config)
        entries = await list_models(config)
    except (ConfigurationError, UpstreamError) as e:
        print(f"✗ {e}")
        return 1

    callable_names = {e.name for e in entries if e.supports_generation}
    for entry in sorted(entries, key=lambda e: e.name):
        if entry.supports_generation:
            marker = "*" if entry.name == config["model"] else " "
            print(f"  {marker} {entry.name}")
        elif args.all:
            print(f"    {entry.name}  (not a text model)")

    print("=" * 60)
    print(f"{len(callable_names)} callable text models ({len(entries)} listed)")

    if config["model"] in callable_names:
        print(f"✓ Configured model is available: {config['model']}")
    else:
        fallback = select_fallback(entries, config["model"], tier, config["provider"])
        if fallback:
            print(f"! Configured model not listed; requests would fall back to: {fallback}")
        else:
            print("✗ Configured model not listed and no fallback available")
            return 1

    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
