"""CLI entrypoint for estate-sync."""

import argparse
import json
import signal
import sys


def _print_summary(title: str, summary) -> None:
    print(f"\n✓ {title}")
    print(f"  Imported: {summary.imported}")
    print(f"  Updated: {summary.updated}")
    print(f"  Removed: {summary.removed}")
    print(f"  Analytics: {summary.analytics_computed}")
    if summary.cancelled:
        print("  Stopped early (cancelled or out of budget)")
    if summary.errors:
        print(f"  Errors: {len(summary.errors)}")
        for error in summary.errors[:10]:
            print(f"    - {error}")


def _prepare_db():
    from sqlalchemy.orm import Session

    from estate_sync.db.seed import seed_reference_data
    from estate_sync.db.session import _get_default_engine, init_db

    init_db()
    with Session(_get_default_engine()) as session:
        seed_reference_data(session)


def _orchestrator(args):
    from pathlib import Path

    from estate_sync.scheduler import SyncOrchestrator

    orchestrator = SyncOrchestrator(config_path=Path(args.config))
    # Ctrl+C cancels the pass at the next item boundary
    signal.signal(signal.SIGINT, lambda signum, frame: orchestrator.cancel())
    return orchestrator


def cmd_sync(args):
    """Run one full sync pass now."""
    from estate_sync.errors import ConcurrentRunError
    from estate_sync.scheduler import setup_logging

    setup_logging()
    _prepare_db()
    orchestrator = _orchestrator(args)

    try:
        summary = orchestrator.trigger_manual_sync()
    except ConcurrentRunError as e:
        print(f"\n✗ Sync not started: {e}")
        sys.exit(1)

    _print_summary("Sync complete", summary)


def cmd_sweep(args):
    """Run the re-validation sweep now."""
    from estate_sync.scheduler import setup_logging

    setup_logging()
    orchestrator = _orchestrator(args)
    summary = orchestrator.run_sweep()
    if summary is None:
        print("\n✗ Sweep not started: already running")
        sys.exit(1)
    _print_summary("Sweep complete", summary)


def cmd_analytics(args):
    """Show (and if stale, recompute) analytics for listings."""
    from estate_sync.analysis import AnalyticsEngine
    from estate_sync.db.session import get_session_factory
    from estate_sync.errors import ListingNotFound

    with get_session_factory()() as session:
        engine = AnalyticsEngine(session)

        if args.recompute:
            results = engine.calculate_batch(args.listing_ids)
            for listing_id, status in results.items():
                print(f"  {listing_id}: {status}")
            return

        for listing_id in args.listing_ids:
            try:
                row = engine.get_analytics(listing_id)
            except ListingNotFound as e:
                print(f"✗ {e}")
                continue
            print(f"Listing {listing_id}:")
            print(f"  Rating: {row.investment_rating} (risk: {row.risk_level})")
            print(f"  Strategy: {row.recommended_strategy}")
            print(f"  Rental ROI: {row.rental_roi_annual}% (payback {row.rental_payback_years}y)")
            print(f"  Flip ROI: {row.flip_roi}% over {row.flip_timeframe_months} months")
            print(f"  Safe-haven: {row.safe_haven_score}/10, liquidity {row.liquidity_score}/10")
            print(f"  3y forecast: {row.price_forecast_3y}%")
            print(f"  Valid until: {row.expires_at.isoformat()}")


def cmd_status(args):
    """Show the latest sync runs."""
    from sqlalchemy import select

    from estate_sync.db.models import SyncRun
    from estate_sync.db.session import get_session_factory

    with get_session_factory()() as session:
        runs = session.execute(
            select(SyncRun).order_by(SyncRun.started_at.desc()).limit(args.limit)
        ).scalars()
        rows = [
            {
                "run_id": run.run_id,
                "kind": run.kind,
                "started_at": run.started_at.isoformat(),
                "finished_at": run.finished_at.isoformat() if run.finished_at else None,
                "imported": run.imported,
                "updated": run.updated,
                "removed": run.removed,
                "analytics_computed": run.analytics_computed,
                "errors": len(run.errors or []),
            }
            for run in runs
        ]

    if not rows:
        print("No sync runs recorded")
        return
    print(json.dumps(rows, indent=2, ensure_ascii=False))


def cmd_db(args):
    """Database management commands."""
    from sqlalchemy import func, select
    from sqlalchemy.orm import Session

    from estate_sync.db.models import Base
    from estate_sync.db.seed import seed_reference_data
    from estate_sync.db.session import (
        _get_default_engine,
        clear_db,
        init_db,
        reset_engine,
    )

    if args.db_command == "info":
        engine = _get_default_engine()
        print(f"Database URL: {engine.url}")
        print(f"Database Type: {engine.dialect.name}")
        print()

        with Session(engine) as session:
            print("Table Row Counts:")
            for table in Base.metadata.sorted_tables:
                count = session.execute(select(func.count()).select_from(table)).scalar()
                print(f"  {table.name}: {count}")

    elif args.db_command == "init":
        init_db()
        print("✓ Tables created")

    elif args.db_command == "seed":
        init_db()
        with Session(_get_default_engine()) as session:
            regions, tiers = seed_reference_data(session)
        print(f"✓ Seeded {regions} regions and {tiers} price tiers")

    elif args.db_command == "clear":
        if not args.yes:
            engine = _get_default_engine()
            print(f"⚠️  WARNING: This will delete ALL data from {engine.url}")
            print("   This operation cannot be undone!")
            response = input("\nAre you sure? Type 'yes' to confirm: ")
            if response.lower() != "yes":
                print("Aborted.")
                sys.exit(0)

        clear_db()
        print("✓ Database cleared successfully")

    elif args.db_command == "reset":
        reset_engine()
        print("✓ Database engine reset (connections cleared)")

    else:
        print("Specify a db command: info, init, seed, clear, reset")
        sys.exit(1)


def cmd_run(args):
    """Run the scheduler in the foreground, or a single pass with --once."""
    from estate_sync.scheduler import setup_logging

    setup_logging()
    _prepare_db()
    orchestrator = _orchestrator(args)

    if args.once:
        print("Running full sync pass once...")
        summary = orchestrator.run_full_pass()
        if summary is None:
            print("✗ Another pass is running")
            sys.exit(1)
        _print_summary("Sync complete", summary)
        if summary.errors:
            sys.exit(1)
        return

    if not orchestrator.config.schedule_enabled:
        print("✗ Scheduling is disabled in configuration.")
        print("  Enable it in config.yaml (scheduling.enabled: true)")
        print("  or set ESTATE_SCHEDULE_ENABLED=true")
        sys.exit(1)

    # Ctrl+C ends the foreground loop
    signal.signal(signal.SIGINT, signal.default_int_handler)
    orchestrator.start()
    status = orchestrator.get_status()
    print("✓ Scheduler started")
    print(f"  Next full pass: {status['next_scheduled_run']}")
    print(f"  Next sweep: {status['next_sweep_run']}")
    print(f"  Cities: {', '.join(orchestrator.config.cities)}")
    print("\nPress Ctrl+C to stop...")

    try:
        import time
        while True:
            time.sleep(1)
    except (KeyboardInterrupt, SystemExit):
        print("\n\nShutting down...")
        orchestrator.shutdown()


def main():
    parser = argparse.ArgumentParser(description="Real-estate listings sync pipeline")
    parser.add_argument("--config", default="config.yaml", help="Path to config.yaml")
    sub = parser.add_subparsers(dest="command")

    # sync
    p_sync = sub.add_parser("sync", help="Run a full sync pass now")
    p_sync.set_defaults(func=cmd_sync)

    # sweep
    p_sweep = sub.add_parser("sweep", help="Re-validate stored listings and prune rejections")
    p_sweep.set_defaults(func=cmd_sweep)

    # analytics
    p_analytics = sub.add_parser("analytics", help="Show investment analytics for listings")
    p_analytics.add_argument("listing_ids", type=int, nargs="+", help="Listing IDs")
    p_analytics.add_argument(
        "--recompute", action="store_true", help="Recompute even if the cached row is fresh"
    )
    p_analytics.set_defaults(func=cmd_analytics)

    # run
    p_run = sub.add_parser("run", help="Run the scheduler")
    p_run.add_argument(
        "--once",
        action="store_true",
        help="Run one full pass and exit (don't start scheduler)",
    )
    p_run.set_defaults(func=cmd_run)

    # status
    p_status = sub.add_parser("status", help="Show recent sync runs")
    p_status.add_argument("--limit", type=int, default=5)
    p_status.set_defaults(func=cmd_status)

    # db
    p_db = sub.add_parser("db", help="Database management")
    db_sub = p_db.add_subparsers(dest="db_command")
    db_sub.add_parser("info", help="Show database connection and row counts")
    db_sub.add_parser("init", help="Create tables")
    db_sub.add_parser("seed", help="Create tables and seed regions and price tiers")
    db_clear = db_sub.add_parser("clear", help="Delete all data from the database")
    db_clear.add_argument(
        "-y", "--yes",
        action="store_true",
        help="Skip confirmation prompt",
    )
    db_sub.add_parser("reset", help="Reset database engine (clear cached connections)")
    p_db.set_defaults(func=cmd_db)

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)
    args.func(args)


if __name__ == "__main__":
    main()
