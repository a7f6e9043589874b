"""
CLI main entry point.
"""

import argparse
import json
import logging
import sys
from datetime import date
from pathlib import Path

from dateutil.relativedelta import relativedelta

from ..classification import ClassificationPipeline, TaxonomyError
from ..config import Config, ConfigValidationError, create_default_config, load_config
from ..events import EventClusterMiner
from ..llm import AIClassificationService, AIConfigurationError
from ..matching import MatchScorer
from ..recurrence import RecurrenceEngine
from ..schemas.ledger import TransactionRecord
from ..state_store import StateStore, TransactionNotFoundError

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _iso_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Invalid date {value!r}, expected YYYY-MM-DD") from e


def create_cli() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="ledger-core",
        description="Recurring transactions, classification and matching for a personal ledger",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # process-recurring command
    recurring_parser = subparsers.add_parser(
        "process-recurring", help="Generate due occurrences of recurring templates"
    )
    recurring_parser.add_argument(
        "--date",
        type=_iso_date,
        required=True,
        help="Target date (YYYY-MM-DD), usually the local today",
    )
    recurring_parser.add_argument(
        "--last-processed",
        type=_iso_date,
        default=None,
        help="Date of the previous successful run; earlier occurrences are not re-created",
    )
    recurring_parser.add_argument("--owner", type=str, default=None, help="Only this owner")
    recurring_parser.add_argument(
        "--no-backfill",
        action="store_true",
        help="Without --last-processed, only create occurrences falling on --date",
    )

    # classify command
    classify_parser = subparsers.add_parser(
        "classify", help="Classify transactions from a JSON file"
    )
    classify_parser.add_argument(
        "--input",
        type=Path,
        required=True,
        help="JSON file with a list of transactions",
    )
    classify_parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Write results here instead of stdout",
    )
    classify_parser.add_argument("--owner", type=str, default=None, help="Owner of rules/history")

    # match command
    match_parser = subparsers.add_parser(
        "match", help="Match a stored transaction to a recurring template"
    )
    match_parser.add_argument("--transaction-id", type=int, required=True, help="Transaction ID")

    # archetypes command
    archetypes_parser = subparsers.add_parser(
        "archetypes", help="Mine spending events into budget archetypes"
    )
    archetypes_parser.add_argument("--owner", type=str, default=None, help="Owner to analyze")
    archetypes_parser.add_argument(
        "--months",
        type=int,
        default=None,
        help="History window in months (default: events.history_months)",
    )

    # status command
    subparsers.add_parser("status", help="Show store statistics")

    # init-config command
    init_parser = subparsers.add_parser("init-config", help="Write a default config file")
    init_parser.add_argument(
        "--force", action="store_true", help="Overwrite an existing config file"
    )

    return parser


def cmd_process_recurring(
    config: Config,
    target: date,
    last_processed: date | None,
    owner: str | None,
    backfill: bool = True,
) -> int:
    """Process due recurring templates."""
    print(f"🔁 Processing recurring templates due by {target.isoformat()}...")

    store = StateStore(config.state_db_path)
    engine = RecurrenceEngine(store, config)
    report = engine.process(
        target, last_processed_date=last_processed, owner=owner, backfill=backfill
    )

    print(f"  ✓ Created:  {report.processed}")
    print(f"  ⏭ Skipped:  {report.skipped}")
    print(f"  ⏹ Retired:  {report.retired}")
    for error in report.errors:
        print(f"  ❌ [{error['template_id']}] {error['title']}: {error['error']}")

    return 1 if report.errors else 0


def _load_transactions(path: Path) -> list[TransactionRecord]:
    with open(path) as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("transactions", [])
    return [TransactionRecord.from_dict(item) for item in data]


def cmd_classify(
    config: Config,
    input_path: Path,
    output_path: Path | None,
    owner: str | None,
) -> int:
    """Classify transactions from a JSON file."""
    try:
        transactions = _load_transactions(input_path)
    except (OSError, json.JSONDecodeError, ValueError) as e:
        print(f"❌ Failed to read {input_path}: {e}")
        return 1

    store = StateStore(config.state_db_path)
    categories = store.list_categories(owner=owner)
    rules = store.list_rules(owner=owner)
    history = store.list_transactions(owner=owner)

    ai_service = AIClassificationService(config) if config.ai.enabled else None
    try:
        pipeline = ClassificationPipeline(config, ai_service=ai_service)
        report = pipeline.classify(transactions, rules, categories, history=history)
    except (AIConfigurationError, TaxonomyError) as e:
        print(f"❌ {e}")
        return 1
    finally:
        if ai_service is not None:
            ai_service.close()

    output = json.dumps(report.to_dict(), indent=2)
    if output_path:
        output_path.write_text(output)
        print(f"✓ Classified {len(report.transactions)} transaction(s) -> {output_path}")
    else:
        print(output)

    for error in report.errors:
        logger.warning("Classification error: %s", error)
    return 0


def cmd_match(config: Config, transaction_id: int) -> int:
    """Match a stored transaction to a recurring template."""
    store = StateStore(config.state_db_path)
    scorer = MatchScorer(config)

    try:
        result = scorer.link_transaction(store, transaction_id)
    except TransactionNotFoundError as e:
        print(f"❌ {e}")
        return 1

    print(f"\n🔗 Transaction {transaction_id}: {result.status.value} ({result.confidence})")
    for candidate in result.candidates[:5]:
        signals = ", ".join(f"{s.signal}={s.score:.0f}" for s in candidate.signals)
        print(f"  [{candidate.template_id}] {candidate.title}: {candidate.total} ({signals})")
    return 0


def cmd_archetypes(config: Config, owner: str | None, months: int | None) -> int:
    """Mine spending events into budget archetypes."""
    store = StateStore(config.state_db_path)
    miner = EventClusterMiner(config, store)

    since = None
    if months is not None:
        since = date.today() - relativedelta(months=months)

    archetypes = miner.analyze(owner=owner, since=since)
    if not archetypes:
        print("ℹ️  No spending events found")
        return 0

    print("\n🧭 Budget Archetypes")
    print("=" * 40)
    for archetype in archetypes:
        print(
            f"  {archetype.name}: ~{archetype.recommended_amount} over "
            f"{archetype.typical_duration} day(s), seen {archetype.occurrences}x "
            f"(confidence {archetype.confidence})"
        )
    return 0


def cmd_status(config: Config) -> int:
    """Show store statistics."""
    store = StateStore(config.state_db_path)
    stats = store.get_stats()

    print("\n📊 Ledger Status")
    print("=" * 40)
    print(f"  Templates total:        {stats['templates_total']}")
    print(f"  Templates active:       {stats['templates_active']}")
    print(f"  Transactions total:     {stats['transactions_total']}")
    print(f"  Generated occurrences:  {stats['transactions_generated']}")
    print(f"  Uncategorized:          {stats['transactions_uncategorized']}")
    print(f"  Classification rules:   {stats['rules_total']}")
    print()

    return 0


def cmd_init_config(config_path: Path, force: bool) -> int:
    """Write a default config file."""
    if config_path.exists() and not force:
        print(f"❌ {config_path} already exists (use --force to overwrite)")
        return 1
    create_default_config(config_path)
    print(f"✓ Wrote default config to {config_path}")
    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    setup_logging(parsed.verbose)

    if not parsed.command:
        parser.print_help()
        return 1

    if parsed.command == "init-config":
        return cmd_init_config(parsed.config, parsed.force)

    # Load config
    try:
        config = load_config(parsed.config)
    except Exception as e:
        print(f"❌ Failed to load config: {e}")
        return 1

    problems = config.validate()
    if problems:
        error = ConfigValidationError("; ".join(problems))
        print(f"❌ Invalid config: {error}")
        return 1

    # Route to command
    if parsed.command == "process-recurring":
        return cmd_process_recurring(
            config,
            parsed.date,
            parsed.last_processed,
            parsed.owner,
            backfill=not parsed.no_backfill,
        )
    elif parsed.command == "classify":
        return cmd_classify(config, parsed.input, parsed.output, parsed.owner)
    elif parsed.command == "match":
        return cmd_match(config, parsed.transaction_id)
    elif parsed.command == "archetypes":
        return cmd_archetypes(config, parsed.owner, parsed.months)
    elif parsed.command == "status":
        return cmd_status(config)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
