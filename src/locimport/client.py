"""Batch-request client for the Care facility backend.

The backend accepts up to 20 sub-requests per call and answers with one
result per sub-request, in order, each tagged with the caller's
reference_id. When any sub-request fails the whole call comes back as HTTP
400, but the body still carries the per-request results.
"""

from __future__ import annotations

from typing import Any, Protocol, Sequence

import httpx

from locimport import __version__
from locimport.models import MAX_BATCH_SIZE, CreateEntry, EntryResult

BATCH_PATH = "/api/v1/batch_requests/"
LOCATION_PATH = "/api/v1/facility/{facility_id}/location/"

DEFAULT_ERROR_MESSAGE = "validation failed"


class TransportError(Exception):
    """The batch call itself failed; no per-entry outcome is known."""


class BatchClient(Protocol):
    """Anything that can create a batch of locations."""

    def submit(self, entries: Sequence[CreateEntry]) -> list[EntryResult]:
        """Create every entry and return one result per entry, in order."""
        ...


def error_message(data: Any) -> str:
    """Pull a readable message out of a failed sub-request's data.

    Handles {"errors": [{"loc": [...], "msg": ...}]}, a list of such
    objects, {"detail": ...}, and plain strings.
    """
    if isinstance(data, str) and data:
        return data

    errors: list = []
    if isinstance(data, list):
        for d in data:
            if isinstance(d, dict) and isinstance(d.get("errors"), list):
                errors.extend(d["errors"])
    elif isinstance(data, dict):
        if isinstance(data.get("errors"), list):
            errors = data["errors"]
        elif data.get("detail"):
            return str(data["detail"])

    parts = []
    for e in errors:
        if isinstance(e, str):
            parts.append(e)
            continue
        if not isinstance(e, dict):
            continue
        msg = e.get("msg") or e.get("error") or ""
        loc = e.get("loc")
        if loc:
            parts.append(f"{' > '.join(str(x) for x in loc)}: {msg}")
        elif msg:
            parts.append(str(msg))
    return ", ".join(parts) or DEFAULT_ERROR_MESSAGE


def parse_batch_results(results: list) -> list[EntryResult]:
    """Convert raw batch results into EntryResult objects, keeping order."""
    out = []
    for r in results:
        if not isinstance(r, dict):
            r = {}
        ref = str(r.get("reference_id") or "")
        status = r.get("status_code")
        data = r.get("data")
        success = isinstance(status, int) and 200 <= status < 300
        if success and isinstance(data, dict) and data.get("id"):
            out.append(EntryResult(ref, server_id=str(data["id"]), status_code=status))
        elif success:
            out.append(EntryResult(ref, status_code=status, error="response did not include an id"))
        else:
            out.append(EntryResult(ref, status_code=status, error=error_message(data)))
    return out


class CareBatchClient:
    """Creates locations for one facility through the batch endpoint."""

    def __init__(
        self,
        base_url: str,
        facility_id: str,
        token: str | None = None,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
        max_entries: int = MAX_BATCH_SIZE,
    ):
        if not facility_id:
            raise ValueError("facility_id is required")
        self.base_url = base_url.rstrip("/")
        self.facility_id = facility_id
        self.max_entries = max_entries
        self.location_url = LOCATION_PATH.format(facility_id=facility_id)

        headers = {
            "User-Agent": f"locimport/{__version__}",
            "Accept": "application/json",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"

        # Redirects are not followed: a redirected POST would drop the body
        self._client = httpx.Client(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            follow_redirects=False,
            transport=transport,
        )

    def build_payload(self, entries: Sequence[CreateEntry]) -> dict:
        return {
            "requests": [
                {
                    "url": self.location_url,
                    "method": "POST",
                    "reference_id": e.reference_id,
                    "body": e.body,
                }
                for e in entries
            ]
        }

    def submit(self, entries: Sequence[CreateEntry]) -> list[EntryResult]:
        if len(entries) > self.max_entries:
            raise ValueError(
                f"{len(entries)} entries exceeds the batch limit of {self.max_entries}"
            )

        try:
            response = self._client.post(BATCH_PATH, json=self.build_payload(entries))
        except httpx.HTTPError as exc:
            raise TransportError(f"batch request failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise TransportError(
                f"batch request returned HTTP {response.status_code} with a non-JSON body"
            ) from exc

        results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(results, list):
            raise TransportError(
                f"batch request returned HTTP {response.status_code} without per-request results"
            )
        return parse_batch_results(results)

    def close(self) -> None:
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
