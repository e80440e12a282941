"""Close.io sync: command line entry point.

Outgoing (platform -> Close.io), triggered per change-notification batch:
  python agent.py sync-accounts --input account_batch.json
  python agent.py sync-users --input user_batch.json

Incoming (Close.io -> platform), triggered per poll cycle:
  python agent.py fetch-leads

Health check (Close.io API key and platform URL):
  python agent.py check

A batch file is a JSON list of update messages, or an object with a
"messages" list. Settings come from --settings or SYNC_SETTINGS_PATH.
Identity links persist in PostgreSQL when DATABASE_URL is set; otherwise
an in-memory cache is used and links only last for the run.
"""
import argparse
import asyncio
import json
import logging
import os
import sys
from collections import Counter
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from pydantic import ValidationError

from db.cache import DatabaseCache, MemoryCache
from db.connection import dispose_engine
from schemas import AccountUpdateMessage, Classification, Envelope, UserUpdateMessage
from sync.errors import ConfigurationError
from sync.sync_agent import SyncAgent
from sync_config import load_settings
from tools.closeio_client import ServiceClient
from tools.platform_client import PlatformClient
from tools.throttle import ThrottleRegistry

load_dotenv()

logger = logging.getLogger(__name__)


def build_agent(settings_path: Optional[str] = None) -> SyncAgent:
    """Wire settings, cache and clients into a SyncAgent."""
    settings = load_settings(settings_path)
    if os.environ.get("DATABASE_URL"):
        cache = DatabaseCache()
    else:
        logger.warning("DATABASE_URL not set, identity links will not persist across runs")
        cache = MemoryCache()
    throttles = ThrottleRegistry()
    service_client = ServiceClient(
        settings.api_key,
        throttle=throttles.for_key(settings.api_key) if settings.api_key else None,
    )
    return SyncAgent(settings, cache, service_client, PlatformClient())


def _load_batch(path: str) -> List[Dict[str, Any]]:
    data = json.loads(Path(path).read_text())
    if isinstance(data, dict):
        data = data.get("messages", [])
    return data


def _summarize(envelopes: List[Envelope]) -> Dict[str, Any]:
    outcomes = Counter()
    for envelope in envelopes:
        if envelope.classification is None:
            outcomes["mapping_error"] += 1
        elif envelope.classification == Classification.SKIP:
            outcomes["skip"] += 1
        else:
            result = envelope.ops_result.value if envelope.ops_result else "error"
            outcomes[f"{envelope.classification.value}_{result}"] += 1
    return {"processed": len(envelopes), "outcomes": dict(outcomes)}


async def run_sync_accounts(agent: SyncAgent, batch_path: str) -> Dict[str, Any]:
    messages = [AccountUpdateMessage.model_validate(m) for m in _load_batch(batch_path)]
    envelopes = await agent.send_account_messages(messages)
    return _summarize(envelopes)


async def run_sync_users(agent: SyncAgent, batch_path: str) -> Dict[str, Any]:
    messages = [UserUpdateMessage.model_validate(m) for m in _load_batch(batch_path)]
    envelopes = await agent.send_user_messages(messages)
    return _summarize(envelopes)


async def run_fetch_leads(agent: SyncAgent) -> Dict[str, Any]:
    last_sync_at = await agent.fetch_updated_leads()
    return {"ok": last_sync_at is not None, "last_sync_at": last_sync_at}


async def run_check(agent: SyncAgent) -> Dict[str, Any]:
    """Report whether both sides of the connector are reachable."""
    authenticated = await asyncio.to_thread(agent.service_client.is_authenticated)
    platform_configured = agent.is_platform_configured()
    return {
        "ok": authenticated and platform_configured,
        "closeio_authenticated": authenticated,
        "platform_configured": platform_configured,
    }


async def _run(args: argparse.Namespace) -> Dict[str, Any]:
    agent = build_agent(args.settings)
    try:
        if args.command == "sync-accounts":
            return await run_sync_accounts(agent, args.input)
        if args.command == "sync-users":
            return await run_sync_users(agent, args.input)
        if args.command == "check":
            return await run_check(agent)
        return await run_fetch_leads(agent)
    finally:
        await dispose_engine()


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Synchronize platform accounts/users with Close.io leads/contacts"
    )
    parser.add_argument("--settings", default=None, help="Path to the JSON settings document")
    sub = parser.add_subparsers(dest="command")

    accounts = sub.add_parser("sync-accounts", help="Send account update messages to Close.io")
    accounts.add_argument("--input", required=True, help="JSON file with account update messages")

    users = sub.add_parser("sync-users", help="Send user update messages to Close.io")
    users.add_argument("--input", required=True, help="JSON file with user update messages")

    sub.add_parser("fetch-leads", help="Import recently updated Close.io leads")
    sub.add_parser("check", help="Verify the Close.io API key and platform configuration")

    return parser


if __name__ == "__main__":
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    parser = _build_arg_parser()
    args = parser.parse_args()

    if args.command not in ("sync-accounts", "sync-users", "fetch-leads", "check"):
        parser.print_help()
        sys.exit(1)

    try:
        summary = asyncio.run(_run(args))
    except (ConfigurationError, ValidationError) as exc:
        logger.error("Sync aborted: %s", exc)
        sys.exit(2)

    print(json.dumps(summary, indent=2))
