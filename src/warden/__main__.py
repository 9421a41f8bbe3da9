from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import asdict

from dotenv import load_dotenv

from .config import load_settings
from .database import initialize_database
from .logging_setup import setup_logging
from .moderation.classifier import classify
from .moderation.config_schema import default_rules
from .moderation.flagging import decide
from .moderation.models import ContentSubmission, ContentType
from .services.audit_store import ModerationAuditStore
from .services.flagging_stats_store import FlaggingStatsStore
from .services.rules_config_store import RulesConfigStore


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="warden", description="Content moderation pipeline tools")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the moderation schema in WARDEN_SQLITE_PATH")
    sub.add_parser("stats", help="Print the stored flagging statistics")

    p = sub.add_parser("classify", help="Classify text with the seed rules and print the outcome")
    p.add_argument("text")
    p.add_argument("--type", default=ContentType.POST.value, choices=[t.value for t in ContentType])
    return parser


async def _init_db(settings) -> int:
    stores = [
        ModerationAuditStore(settings.sqlite_path),
        FlaggingStatsStore(settings.sqlite_path),
        RulesConfigStore(settings.sqlite_path),
    ]
    await initialize_database(settings.sqlite_path, stores)
    return 0


async def _stats(settings) -> int:
    store = FlaggingStatsStore(settings.sqlite_path)
    await initialize_database(settings.sqlite_path, [store])
    stats = await store.load()
    print(json.dumps(stats.to_dict(), indent=2))
    return 0


def _classify(settings, text: str, content_type: str) -> int:
    submission = ContentSubmission(content_id="cli", content_type=ContentType(content_type), author_id="cli", text=text)
    result = classify(submission)
    rules = default_rules(
        auto_reject_threshold=settings.auto_reject_threshold,
        auto_flag_threshold=settings.auto_flag_threshold,
        multiple_reports_threshold=settings.multiple_reports_threshold,
    )
    action = decide(result, rules)
    print(json.dumps({"result": result.to_dict(), "action": asdict(action)}, indent=2, default=str))
    return 0


def main(argv=None) -> int:
    load_dotenv()
    settings = load_settings()
    setup_logging(settings.log_level, json_format=settings.log_json)

    args = _build_parser().parse_args(argv)
    if args.command == "init-db":
        return asyncio.run(_init_db(settings))
    if args.command == "stats":
        return asyncio.run(_stats(settings))
    return _classify(settings, args.text, args.type)


if __name__ == "__main__":
    sys.exit(main())
