"""CLI entrypoint: python -m hypedelta <command> [args]."""

from __future__ import annotations

import asyncio
import logging
import logging.handlers
import os
import sys
from pathlib import Path

from hypedelta.config import get_db_path, load_config
from hypedelta.db import get_connection, get_recent_runs, init_db


def setup_logging(config: dict) -> None:
    """Configure logging with console + rotating file output."""
    root = logging.getLogger()
    root.setLevel(logging.INFO)

    fmt = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console = logging.StreamHandler()
    console.setFormatter(fmt)
    root.addHandler(console)

    # Rotate at 5MB, keep 3 backups
    log_dir = Path(get_db_path(config)).parent
    log_dir.mkdir(parents=True, exist_ok=True)
    file_handler = logging.handlers.RotatingFileHandler(
        str(log_dir / "hypedelta.log"), maxBytes=5 * 1024 * 1024, backupCount=3,
    )
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    for noisy in ("httpx", "httpcore", "trafilatura", "feedparser"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


logger = logging.getLogger("hypedelta")


def _int_arg(args: list[str], default: int) -> int:
    if not args:
        return default
    try:
        return int(args[0])
    except ValueError:
        print(f"Expected an integer, got '{args[0]}'")
        sys.exit(1)


def cmd_init_db(config: dict, args: list[str]) -> None:
    """Initialize the SQLite database."""
    db_path = get_db_path(config)
    init_db(db_path)
    print(f"Database initialized at {db_path}")


def cmd_seed(config: dict, args: list[str]) -> None:
    """Upsert the sources listed under sources.seed."""
    from hypedelta.ingest.fetcher import seed_sources

    db_path = get_db_path(config)
    init_db(db_path)
    conn = get_connection(db_path)
    try:
        count = seed_sources(conn, config)
    finally:
        conn.close()
    print(f"Seeded {count} sources")


async def cmd_fetch(config: dict, args: list[str]) -> None:
    """Fetch all active sources: fetch [days]."""
    from hypedelta.operations import Operations

    report = await Operations(config).fetch(_int_arg(args, 1))
    for entry in report.successful:
        print(f"  {entry['source']}: {entry['items']} items")
    for entry in report.failed:
        print(f"  {entry['source']}: FAILED ({entry['error']})")
    print(f"\nTotal: {report.total_items} items, {len(report.failed)} sources failed")


async def cmd_monitor(config: dict, args: list[str]) -> None:
    """Poll timeline sources for recent posts: monitor [minutes]."""
    from hypedelta.operations import Operations

    results = await Operations(config).monitor(_int_arg(args, 15))
    for source, items in results:
        print(f"  {source.label}: {len(items)} new items")


async def cmd_process(config: dict, args: list[str]) -> None:
    """Analyse unprocessed content: process [limit]."""
    from hypedelta.operations import Operations

    result = await Operations(config).process(_int_arg(args, 100))
    print(
        f"{result.input_items} items -> {result.after_prefilter} after pre-filter -> "
        f"{result.filtered_items} relevant -> {result.claims_stored} claims "
        f"({result.predictions_recorded} predictions)"
    )


async def cmd_synthesize(config: dict, args: list[str]) -> None:
    """Synthesize recent claims: synthesize [days]."""
    from hypedelta.operations import Operations

    result = await Operations(config).synthesize(_int_arg(args, 7))
    print(f"Synthesis #{result.id}: {len(result.syntheses)} topics")
    for s in result.syntheses:
        print(f"  {s.topic:<18} {s.claim_count:>4} claims  delta {s.hype_delta.delta:+.2f}")
    if result.hype_assessment.summary:
        print(f"\n{result.hype_assessment.summary}")


async def cmd_pipeline(config: dict, args: list[str]) -> None:
    """Fetch, process and synthesize in one go."""
    from hypedelta.operations import Operations

    results = await Operations(config).run_pipeline()
    print(
        f"Fetched {results['fetch'].total_items} items, "
        f"stored {results['process'].claims_stored} claims, "
        f"synthesized {len(results['synthesis'].syntheses)} topics"
    )


def cmd_status(config: dict, args: list[str]) -> None:
    """Show content counts and recent runs."""
    from hypedelta.stores import ClaimStore, ContentStore, SourceStore

    db_path = get_db_path(config)
    init_db(db_path)
    conn = get_connection(db_path)
    try:
        sources = SourceStore(conn).get_all()
        content = ContentStore(conn).count()
        topics = ClaimStore(conn).topic_summary(days=7)
        runs = get_recent_runs(conn, limit=10)
    finally:
        conn.close()

    active = sum(1 for s in sources if s.active)
    print(f"Sources: {len(sources)} ({active} active)   Content items: {content}")
    if topics:
        print("\nClaims in the last 7 days:")
        for t in topics:
            print(f"  {t['topic']:<18} {t['claim_count']:>5}")

    if not runs:
        print("\nNo pipeline runs yet.")
        return
    print(f"\n{'Run':>4} {'Kind':<11} {'Status':<10} {'In':>6} {'Out':>6} {'Cost':>8} Started")
    print("-" * 70)
    for r in runs:
        print(
            f"{r['id']:>4} {r['kind']:<11} {r['status']:<10} "
            f"{r['items_in'] or 0:>6} {r['items_out'] or 0:>6} "
            f"${r['llm_cost_usd'] or 0:>7.3f} {r['started_at']}"
        )


def cmd_predictions(config: dict, args: list[str]) -> None:
    """List pending predictions, or: predictions verify <id> <status> [score]."""
    from hypedelta.predictions import PredictionTracker, PredictionNotFoundError, PredictionStateError

    db_path = get_db_path(config)
    init_db(db_path)
    conn = get_connection(db_path)
    try:
        tracker = PredictionTracker(conn)
        if args and args[0] == "verify":
            if len(args) < 3:
                print("Usage: python -m hypedelta predictions verify <id> <status> [score]")
                sys.exit(1)
            score = float(args[3]) if len(args) > 3 else None
            try:
                p = tracker.update_status(args[1], args[2], accuracy_score=score)
            except (PredictionStateError, PredictionNotFoundError) as exc:
                print(f"Error: {exc}")
                sys.exit(1)
            print(f"{p.id} -> {p.status}")
            return

        stats = tracker.get_accuracy_stats()
        pending = tracker.get_pending(limit=20)
    finally:
        conn.close()

    print(
        f"Predictions: {stats['total']} total, {stats['pending']} pending, "
        f"{stats['verified']} verified, {stats['falsified']} falsified, "
        f"average accuracy {stats['average_accuracy']:.2f}"
    )
    for p in pending:
        due = p.target_date.date().isoformat() if p.target_date else "open"
        print(f"  {p.id}  [{due}] {p.author}: {p.prediction_text[:90]}")


async def cmd_schedule(config: dict, args: list[str]) -> None:
    """Run the scheduler until interrupted."""
    from hypedelta.operations import Operations
    from hypedelta.scheduler import build_scheduler

    scheduler = build_scheduler(config, Operations(config))
    await scheduler.run_forever()


COMMANDS = {
    "init-db": cmd_init_db,
    "seed": cmd_seed,
    "fetch": cmd_fetch,
    "monitor": cmd_monitor,
    "process": cmd_process,
    "synthesize": cmd_synthesize,
    "pipeline": cmd_pipeline,
    "status": cmd_status,
    "predictions": cmd_predictions,
    "schedule": cmd_schedule,
}


def main() -> None:
    from hypedelta.operations import OperationConflictError

    if len(sys.argv) < 2 or sys.argv[1] not in COMMANDS:
        available = ", ".join(COMMANDS)
        print(f"Usage: python -m hypedelta {{{available}}} [args]")
        sys.exit(1)

    command = sys.argv[1]
    config = load_config(os.environ.get("CONFIG_PATH", "config.yaml"))
    setup_logging(config)
    handler = COMMANDS[command]

    try:
        if asyncio.iscoroutinefunction(handler):
            asyncio.run(handler(config, sys.argv[2:]))
        else:
            handler(config, sys.argv[2:])
    except OperationConflictError as exc:
        print(str(exc))
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
