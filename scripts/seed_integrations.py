#!/usr/bin/env python3
"""CLI script to seed one integration row per supported provider.

Usage:
    uv run python scripts/seed_integrations.py
    uv run python scripts/seed_integrations.py --provider whatsapp --base-url https://graph.facebook.com \
        --secret accessToken=EAAG... --config phoneNumberId=1234567890 --config verifyToken=s3cret

Connects directly to the database using DATABASE_URL from environment or .env file.
Existing rows are left untouched; secrets and config keys given on the
command line are written to the selected provider.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path so we can import src.app
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))

DEFAULT_INTEGRATIONS = {
    "zoho": ("Zoho CRM", "Pull leads from Zoho CRM."),
    "suitecrm": ("SuiteCRM", "Pull leads and opportunities from SuiteCRM."),
    "espocrm": ("EspoCRM", "Pull leads from EspoCRM."),
    "orocrm": ("OroCRM", "Pull leads from OroCRM."),
    "whatsapp": ("WhatsApp Business", "Inbound messages and outbound sends via the Cloud API."),
}


def _parse_pairs(pairs: list[str], parser: argparse.ArgumentParser, flag: str) -> dict[str, str]:
    parsed: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            parser.error(f"{flag} expects KEY=VALUE, got {pair!r}")
        parsed[key] = value
    return parsed


async def seed(
    provider: str | None,
    base_url: str | None,
    secrets: dict[str, str],
    config: dict[str, str],
) -> None:
    """Create missing integration rows, then apply any overrides."""
    from src.app.config import get_settings
    from src.app.core.crypto import SecretCipher
    from src.app.core.database import get_engine, get_session, init_db
    from src.app.integrations.registry import IntegrationRegistry
    from src.app.integrations.repository import IntegrationRepository
    from src.app.integrations.schemas import IntegrationUpdate

    await init_db()

    settings = get_settings()
    cipher = SecretCipher(settings.SECRET_ENCRYPTION_KEY) if settings.SECRET_ENCRYPTION_KEY else None
    registry = IntegrationRegistry(IntegrationRepository(get_session), cipher=cipher)

    for slug, (name, description) in DEFAULT_INTEGRATIONS.items():
        integration = await registry.ensure_integration(slug, name, description=description)
        print(f"  {slug:<10} {integration.id}  active={integration.is_active}")

    if provider:
        integration = await registry.get_integration_by_provider(provider)
        overrides = dict(config)
        if base_url:
            overrides["baseUrl"] = base_url
        if overrides:
            await registry.update_integration(
                integration.id,
                IntegrationUpdate(config=integration.config.merged(**overrides)),
            )
            print(f"Config updated for {provider}: {', '.join(sorted(overrides))}")
        for key_name, value in secrets.items():
            await registry.set_integration_secret(integration.id, key_name, value)
        if secrets:
            print(f"Secrets stored for {provider}: {', '.join(sorted(secrets))}")
            if cipher is None:
                print("  WARNING: SECRET_ENCRYPTION_KEY is not set; secrets were stored unencrypted")

    # Clean up
    engine = get_engine()
    await engine.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed integration rows")
    parser.add_argument(
        "--provider",
        choices=sorted(DEFAULT_INTEGRATIONS),
        default=None,
        help="Provider to receive --base-url/--secret/--config values",
    )
    parser.add_argument("--base-url", default=None, help="Provider base URL (config.baseUrl)")
    parser.add_argument(
        "--secret", action="append", default=[], metavar="KEY=VALUE", help="Secret to store"
    )
    parser.add_argument(
        "--config", action="append", default=[], metavar="KEY=VALUE", help="Config key to set"
    )
    args = parser.parse_args()

    secrets = _parse_pairs(args.secret, parser, "--secret")
    config = _parse_pairs(args.config, parser, "--config")
    if (secrets or config or args.base_url) and not args.provider:
        parser.error("--base-url, --secret and --config require --provider")

    print("Seeding integrations:")
    asyncio.run(seed(args.provider, args.base_url, secrets, config))


if __name__ == "__main__":
    main()
