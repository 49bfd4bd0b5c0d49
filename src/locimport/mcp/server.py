"""MCP server for locimport: inspect location CSVs and past imports.

Run with: python -m locimport.mcp.server
Configure env: LOCIMPORT_DB=/path/to/locimport.db

All tools are read-only: they never talk to the facility backend.
"""

from __future__ import annotations

import os

from mcp.server.fastmcp import FastMCP

from locimport.db import ImportLedger, encode_path
from locimport.hierarchy import iter_nodes, max_depth, parse_sheet, render_outline
from locimport.models import LOCATION_FORM_LABELS, mode_for
from locimport.sources.csv_file import FormatError, read_location_csv

DB_PATH = os.environ.get("LOCIMPORT_DB", "locimport.db")

mcp = FastMCP(
    "locimport",
    instructions=(
        "Location import assistant for Care facilities.\n\n"
        "Key capabilities:\n"
        "- list_location_types: Accepted type labels and the form/mode each maps to\n"
        "- preview_location_csv: Parse a CSV and return the location tree it describes\n"
        "- get_import_history: Recent import runs with status and counts\n"
        "- get_import_errors: Failed entries of one run, with backend messages\n"
        "- get_assigned_ids: Server ids already created for a facility\n\n"
        "Use preview_location_csv before suggesting an import, and check unknown_labels: "
        "those rows are imported as rooms."
    ),
)


def _get_ledger() -> ImportLedger:
    ledger = ImportLedger(DB_PATH)
    ledger.init_schema()
    return ledger


@mcp.tool()
def list_location_types() -> list[dict]:
    """List accepted type labels with their form tag and materialization mode."""
    return [
        {"label": label, "form": form, "mode": mode_for(form)}
        for label, form in LOCATION_FORM_LABELS.items()
    ]


@mcp.tool()
def preview_location_csv(path: str) -> dict | str:
    """Parse a location CSV and describe the hierarchy it would create.

    Args:
        path: Path to a CSV with (location, type, description) column groups.

    Returns the outline text, every node with its path, form and mode, the
    total count, rows skipped for being too short, and unknown type labels.
    """
    try:
        parsed = parse_sheet(read_location_csv(path))
    except FileNotFoundError:
        return f"Error: file not found: {path}"
    except FormatError as e:
        return f"Error: {e}"

    return {
        "outline": render_outline(parsed.forest),
        "nodes": [
            {
                "path": list(p),
                "form": n.form,
                "mode": n.mode,
                "description": n.description,
            }
            for p, n in iter_nodes(parsed.forest)
        ],
        "total": parsed.total,
        "depth": max_depth(parsed.forest),
        "skipped_lines": parsed.skipped_lines,
        "unknown_labels": dict(parsed.unknown_labels),
    }


@mcp.tool()
def get_import_history(limit: int = 20) -> list[dict]:
    """Recent import runs, newest first.

    Args:
        limit: Max runs to return.
    """
    ledger = _get_ledger()
    try:
        return ledger.runs(limit=limit)
    finally:
        ledger.close()


@mcp.tool()
def get_import_errors(run_id: int) -> dict:
    """Failed entries and the transport error (if any) of one import run.

    Args:
        run_id: Run id from get_import_history.
    """
    ledger = _get_ledger()
    try:
        run = ledger.get_run(run_id)
        if run is None:
            return {"error": f"run {run_id} not found"}
        return {
            "run": run,
            "batches": ledger.batches(run_id),
            "failed_entries": ledger.errors(run_id),
        }
    finally:
        ledger.close()


@mcp.tool()
def get_assigned_ids(facility_id: str, path_prefix: list[str] | None = None) -> list[dict]:
    """Server ids recorded for a facility's locations.

    Args:
        facility_id: Facility the locations were imported into.
        path_prefix: Optional list of names; only locations under it are returned.
    """
    prefix = tuple(path_prefix or ())
    ledger = _get_ledger()
    try:
        known = ledger.known_ids(facility_id)
    finally:
        ledger.close()
    return [
        {"path": list(p), "key": encode_path(p), "server_id": sid}
        for p, sid in sorted(known.items())
        if p[: len(prefix)] == prefix
    ]


def main():
    mcp.run()


if __name__ == "__main__":
    main()
