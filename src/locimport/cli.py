#!/usr/bin/env python3
"""CLI entry point for locimport package.

Usage:
    python -m locimport preview <csv_file>
    python -m locimport import <csv_file> [--facility <id>] [--base-url <url>] [--db locimport.db]
    python -m locimport types
    python -m locimport sample [--output sample_locations.csv]
    python -m locimport history [--db locimport.db]
    python -m locimport errors <run_id> [--db locimport.db]
    python -m locimport init-config [--output locimport.toml]
    python -m locimport serve-mcp [--db locimport.db]
"""

import argparse
import signal
import sys

DEFAULT_CONFIG = "locimport.toml"


def main():
    parser = argparse.ArgumentParser(
        prog="locimport",
        description="Import location hierarchies from CSV into a Care facility.",
    )
    sub = parser.add_subparsers(dest="command")

    # --- preview ---
    preview_parser = sub.add_parser("preview", help="Parse a CSV and print the location tree")
    preview_parser.add_argument("csv_file", help="Location CSV file")

    # --- import ---
    import_parser = sub.add_parser("import", help="Create the locations from a CSV file")
    import_parser.add_argument("csv_file", help="Location CSV file")
    import_parser.add_argument("--config", default=DEFAULT_CONFIG, help="Path to locimport.toml")
    import_parser.add_argument("--facility", default="", help="Facility id (overrides config)")
    import_parser.add_argument("--base-url", default="", help="Backend base URL (overrides config)")
    import_parser.add_argument("--db", default="", help="Ledger database path (overrides config)")
    import_parser.add_argument(
        "--fresh", action="store_true",
        help="Ignore ids recorded by earlier runs and create everything again",
    )

    # --- types ---
    sub.add_parser("types", help="List the accepted location type labels")

    # --- sample ---
    sample_parser = sub.add_parser("sample", help="Write a sample location CSV")
    sample_parser.add_argument("--output", default="sample_locations.csv", help="Output file path")

    # --- history ---
    history_parser = sub.add_parser("history", help="Show recent import runs")
    history_parser.add_argument("--db", default="locimport.db", help="Ledger database path")
    history_parser.add_argument("--limit", type=int, default=20, help="Max runs to show")

    # --- errors ---
    errors_parser = sub.add_parser("errors", help="Show failed entries of an import run")
    errors_parser.add_argument("run_id", type=int, help="Run id (see history)")
    errors_parser.add_argument("--db", default="locimport.db", help="Ledger database path")

    # --- init-config ---
    config_parser = sub.add_parser("init-config", help="Generate a locimport.toml config")
    config_parser.add_argument("--output", default=DEFAULT_CONFIG, help="Config file output path")
    config_parser.add_argument("--facility", default="", help="Facility id to write into the config")
    config_parser.add_argument("--base-url", default="", help="Backend base URL to write into the config")

    # --- serve-mcp ---
    mcp_parser = sub.add_parser("serve-mcp", help="Start MCP server for assistant integration")
    mcp_parser.add_argument("--db", default="locimport.db", help="Ledger database path")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.command == "preview":
        _handle_preview(args)
    elif args.command == "import":
        _handle_import(args)
    elif args.command == "types":
        _handle_types(args)
    elif args.command == "sample":
        _handle_sample(args)
    elif args.command == "history":
        _handle_history(args)
    elif args.command == "errors":
        _handle_errors(args)
    elif args.command == "init-config":
        _handle_init_config(args)
    elif args.command == "serve-mcp":
        _handle_serve_mcp(args)


def _parse_or_exit(csv_file: str):
    from locimport.hierarchy import parse_sheet
    from locimport.sources.csv_file import FormatError, read_location_csv

    try:
        sheet = read_location_csv(csv_file)
    except FileNotFoundError:
        print(f"Error: file not found: {csv_file}", file=sys.stderr)
        sys.exit(1)
    except FormatError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    parsed = parse_sheet(sheet)
    if parsed.skipped_lines:
        lines = ", ".join(str(n) for n in parsed.skipped_lines[:10])
        more = "" if len(parsed.skipped_lines) <= 10 else ", ..."
        print(
            f"Warning: skipped {len(parsed.skipped_lines)} row(s) narrower than the header "
            f"(lines {lines}{more})",
            file=sys.stderr,
        )
    return parsed


def _handle_preview(args):
    from locimport.hierarchy import max_depth, render_outline

    parsed = _parse_or_exit(args.csv_file)
    if not parsed.forest:
        print("No locations to preview")
        return

    print(render_outline(parsed.forest))
    print(f"\nTotal locations: {parsed.total}  (depth {max_depth(parsed.forest)})")

    if parsed.unknown_labels:
        print("\nUnknown type labels (imported as room):")
        for label, count in parsed.unknown_labels.most_common():
            print(f"  {label:<20} {count:>4}")


def _print_batch(outcome):
    where = " / ".join(outcome.parent_path) or "(root)"
    if outcome.error:
        print(f"  batch {outcome.number:>3}: {where}  FAILED: {outcome.error}")
        return
    line = (
        f"  batch {outcome.number:>3}: {where}  "
        f"{len(outcome.assigned)}/{len(outcome.entries)} created"
    )
    if outcome.failures:
        line += f", {len(outcome.failures)} failed"
    print(line)


def _print_failures(failures):
    print(f"\n  Failed entries ({len(failures)}):")
    for f in failures:
        where = " / ".join(f.path) or f.reference_id
        code = f" [{f.status_code}]" if f.status_code is not None else ""
        print(f"    {where}{code}: {f.message}")


def _print_report(report, reused: int):
    pending = sum(len(item.nodes) for item in report.pending)

    print(f"\n{'='*50}")
    print(f"Import {report.status}")
    print(f"{'='*50}")
    print(f"  {'batches':<25} {report.batches:>6}")
    print(f"  {'created':<25} {report.created:>6}")
    if reused:
        print(f"  {'already present':<25} {reused:>6}")
    if report.failures:
        print(f"  {'failed':<25} {len(report.failures):>6}")
    if pending:
        print(f"  {'not attempted':<25} {pending:>6}")
    if report.error:
        print(f"\n  Error: {report.error}")
    if report.failures:
        _print_failures(report.failures)
    if not report.ok:
        print("\n  Run the same import again to resume; created locations are remembered.")


def _handle_import(args):
    from locimport.client import CareBatchClient
    from locimport.config import ConfigError, load_config
    from locimport.db import ImportLedger, forest_hash
    from locimport.hierarchy import attach_ids, collect_ids, count_nodes
    from locimport.scheduler import Committer

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    facility_id = args.facility or config.facility_id
    if not facility_id:
        print("Error: no facility id; pass --facility or set api.facility_id", file=sys.stderr)
        sys.exit(1)
    base_url = args.base_url or config.base_url
    db_path = args.db or config.ledger

    parsed = _parse_or_exit(args.csv_file)
    if not parsed.forest:
        print("Nothing to import.")
        return

    with ImportLedger(db_path) as ledger, CareBatchClient(
        base_url, facility_id, token=config.token, timeout=config.timeout
    ) as client:
        ledger.init_schema()

        forest = parsed.forest
        if not args.fresh:
            forest = attach_ids(forest, ledger.known_ids(facility_id))
        reused = len(collect_ids(forest))

        run_id = ledger.start_run(
            facility_id, parsed.source, forest_hash(parsed.forest), count_nodes(forest)
        )
        committer = Committer(client, max_batch_size=config.batch_size)

        print(f"\n--- Importing {parsed.total} locations into facility {facility_id} (run {run_id}) ---")

        def on_batch(outcome):
            ledger.record_batch(run_id, outcome)
            _print_batch(outcome)

        # Ctrl-C lets the batch in flight finish, then stops
        def on_interrupt(signum, frame):
            print("\nInterrupted: stopping after the current batch.", file=sys.stderr)
            committer.cancel()

        previous = signal.signal(signal.SIGINT, on_interrupt)
        try:
            report = committer.commit(forest, on_batch=on_batch)
        finally:
            signal.signal(signal.SIGINT, previous)

        ledger.finish_run(run_id, report)

    _print_report(report, reused)
    if not report.ok:
        sys.exit(2)


def _handle_types(args):
    from locimport.models import LOCATION_FORM_LABELS, mode_for

    print(f"{'Label':<15} {'Form':<6} {'Mode':<10}")
    print(f"{'-'*15} {'-'*6} {'-'*10}")
    for label, form in LOCATION_FORM_LABELS.items():
        print(f"{label:<15} {form:<6} {mode_for(form):<10}")
    print("\nAny other label is imported as a room.")


def _handle_sample(args):
    from pathlib import Path

    from locimport.sources.csv_file import SAMPLE_CSV

    Path(args.output).write_text(SAMPLE_CSV)
    print(f"Sample written to {args.output}")


def _handle_history(args):
    from locimport.db import ImportLedger

    with ImportLedger(args.db) as ledger:
        ledger.init_schema()
        rows = ledger.runs(limit=args.limit)

    if not rows:
        print("No imports recorded.")
        return

    print(f"\n{'Run':>5}  {'Facility':<20}  {'Status':<10}  {'Created':>7}  {'Failed':>6}  {'Started':<20}")
    print(f"{'─'*5}  {'─'*20}  {'─'*10}  {'─'*7}  {'─'*6}  {'─'*20}")
    for r in rows:
        started = (r.get("started_at") or "")[:19]
        print(
            f"{r['id']:>5}  {r['facility_id'][:20]:<20}  {r['status']:<10}  "
            f"{r['created_count']:>7}  {r['failed_count']:>6}  {started:<20}"
        )

    print(f"\n({len(rows)} runs)")


def _handle_errors(args):
    from locimport.db import ImportLedger

    with ImportLedger(args.db) as ledger:
        ledger.init_schema()
        run = ledger.get_run(args.run_id)
        if run is None:
            print(f"Run {args.run_id} not found.")
            sys.exit(1)
        rows = ledger.errors(args.run_id)

    if run.get("error"):
        print(f"Run {args.run_id} stopped: {run['error']}")
    if not rows:
        print(f"No failed entries in run {args.run_id}.")
        return

    for r in rows:
        where = " / ".join(r["path"]) or r["reference_id"]
        code = f" [{r['status_code']}]" if r["status_code"] is not None else ""
        print(f"  batch {r['batch_number']:>3}  {where}{code}: {r['message']}")


def _handle_init_config(args):
    from locimport.config import ImportConfig, generate_config

    config = ImportConfig()
    if args.facility:
        config.facility_id = args.facility
    if args.base_url:
        config.base_url = args.base_url
    path = generate_config(args.output, config)
    print(f"Config generated at {path}")


def _handle_serve_mcp(args):
    import os

    os.environ["LOCIMPORT_DB"] = args.db

    from locimport.mcp.server import mcp

    mcp.run()


if __name__ == "__main__":
    main()
