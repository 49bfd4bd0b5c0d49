"""Shared test fixtures for locimport tests."""

import pytest

from locimport.client import TransportError
from locimport.db import ImportLedger
from locimport.models import EntryResult

SAMPLE_HEADER = [
    "Building", "type", "description",
    "Room", "type", "description",
    "Bed", "type", "description",
]


class FakeBatchClient:
    """In-memory BatchClient that records every call.

    Ids are handed out as loc-1, loc-2, ... in submission order.

    Args:
        fail: name -> error message for entries the backend should reject.
        transport_error_on: 1-based call number that raises TransportError.
        keyed: when False, results carry no reference_id (positional only).
    """

    def __init__(self, fail=None, transport_error_on=None, keyed=True):
        self.fail = dict(fail or {})
        self.transport_error_on = transport_error_on
        self.keyed = keyed
        self.calls = []
        self.created = {}  # server id -> create body
        self._next = 0
        self.on_submit = None

    def submit(self, entries):
        self.calls.append(list(entries))
        if self.on_submit is not None:
            self.on_submit(len(self.calls))
        if self.transport_error_on == len(self.calls):
            raise TransportError("connection reset by peer")

        results = []
        for e in entries:
            ref = e.reference_id if self.keyed else ""
            if e.reference_id in self.fail:
                results.append(EntryResult(ref, status_code=400, error=self.fail[e.reference_id]))
                continue
            self._next += 1
            server_id = f"loc-{self._next}"
            self.created[server_id] = e.body
            results.append(EntryResult(ref, server_id=server_id, status_code=200))
        return results

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def entry_counts(self):
        return [len(c) for c in self.calls]

    def names(self, call_index):
        return [e.reference_id for e in self.calls[call_index]]


@pytest.fixture
def fake_client():
    return FakeBatchClient()


@pytest.fixture
def sample_rows():
    """The two ICU bed rows plus a reception row under the same building."""
    return [
        ["Main Building", "building", "Main hospital building",
         "ICU", "ward", "Intensive Care Unit", "Bed 1", "bed", "ICU Bed 1"],
        ["Main Building", "building", "Main hospital building",
         "ICU", "ward", "Intensive Care Unit", "Bed 2", "bed", "ICU Bed 2"],
        ["Main Building", "building", "Main hospital building",
         "Reception", "room", "Main reception area", "Waiting Area", "area", "Patient waiting space"],
    ]


@pytest.fixture
def sample_csv(tmp_path, sample_rows):
    """The sample rows written to a CSV file with a header."""
    lines = [",".join(SAMPLE_HEADER)]
    for row in sample_rows:
        lines.append(",".join(f'"{c}"' for c in row))
    path = tmp_path / "locations.csv"
    path.write_text("\n".join(lines) + "\n")
    return path


@pytest.fixture
def tmp_ledger(tmp_path):
    """Create a temporary ledger database with schema initialized."""
    ledger = ImportLedger(str(tmp_path / "ledger.db"))
    ledger.init_schema()
    yield ledger
    ledger.close()
