"""Data model for location imports.

ImportNode is the parsed, pre-commit form of one location. The scheduler
types (queue items, create entries, per-entry results) live here too so the
client, the scheduler and the ledger share one vocabulary.
"""

from __future__ import annotations

from dataclasses import dataclass, field

# Type-label vocabulary (case-insensitive) -> location form tag
LOCATION_FORM_LABELS: dict[str, str] = {
    "bed": "bd",
    "building": "bu",
    "cabinet": "ca",
    "corridor": "co",
    "house": "ho",
    "jurisdiction": "jdn",
    "level": "lvl",
    "road": "rd",
    "room": "ro",
    "site": "si",
    "vehicle": "ve",
    "virtual": "vi",
    "ward": "wa",
    "wing": "wi",
}

DEFAULT_FORM = "ro"
INSTANCE_FORM = "bd"  # beds are singular instances, everything else is a kind

MODE_INSTANCE = "instance"
MODE_KIND = "kind"

MAX_BATCH_SIZE = 20  # backend limit on create entries per batch call

DEFAULT_STATUS = "active"
DEFAULT_OPERATIONAL_STATUS = "C"
DEFAULT_AVAILABILITY_STATUS = "available"


def resolve_form(label: str | None) -> str:
    """Map a type label to its form tag, falling back to room."""
    if not label:
        return DEFAULT_FORM
    return LOCATION_FORM_LABELS.get(label.strip().lower(), DEFAULT_FORM)


def is_known_label(label: str | None) -> bool:
    return bool(label) and label.strip().lower() in LOCATION_FORM_LABELS


def mode_for(form: str) -> str:
    return MODE_INSTANCE if form == INSTANCE_FORM else MODE_KIND


@dataclass(frozen=True)
class ImportNode:
    """One location in the import hierarchy."""

    name: str
    form: str = DEFAULT_FORM
    description: str = ""
    status: str = DEFAULT_STATUS
    operational_status: str = DEFAULT_OPERATIONAL_STATUS
    availability_status: str = DEFAULT_AVAILABILITY_STATUS
    children: tuple[ImportNode, ...] = ()
    server_id: str | None = None  # set once the backend has created it

    @property
    def mode(self) -> str:
        return mode_for(self.form)

    def to_body(self, parent_id: str | None) -> dict:
        """Build the location create body for the backend."""
        body: dict = {}
        if parent_id is not None:
            body["parent"] = parent_id
        body.update(
            {
                "organizations": [],
                "status": self.status,
                "operational_status": self.operational_status,
                "name": self.name,
                "description": self.description,
                "form": self.form,
                "mode": self.mode,
                "availability_status": self.availability_status,
            }
        )
        return body


Path = tuple[str, ...]  # ancestor names + own name, root first


@dataclass(frozen=True)
class BatchItem:
    """Sibling nodes whose common parent is already persisted (or root)."""

    parent_id: str | None
    parent_path: Path = ()
    nodes: tuple[ImportNode, ...] = ()


@dataclass(frozen=True)
class CreateEntry:
    """One create request inside a batch call."""

    reference_id: str  # correlation key: the node name
    path: Path
    body: dict = field(default_factory=dict)


@dataclass(frozen=True)
class EntryError:
    """A failed create entry, reported with its correlation key."""

    reference_id: str
    message: str
    status_code: int | None = None
    path: Path = ()


@dataclass(frozen=True)
class EntryResult:
    """Outcome of one create entry: an identifier or an error."""

    reference_id: str
    server_id: str | None = None
    status_code: int | None = None
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.server_id is not None and not self.error
