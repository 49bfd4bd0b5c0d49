"""Dependency-ordered batch commit of an import forest.

The commit is an explicit state machine. ``seed()`` builds the initial
state from a forest and ``step()`` advances it by exactly one transition:
either a queue restructuring, or the submission of one batch, or the
application of that batch's results. ``step()`` never performs I/O; it
returns a ``SubmitBatch`` action and the caller (``Committer`` below, or a
test) decides how to run it.

Queue discipline:

- the front item is always processed first;
- a front item with more than ``max_batch_size`` nodes is split, the first
  chunk going back to the front and the remainder to the back of the queue;
- children of a committed batch are appended at the back, one item per
  parent, so a child is never submitted before its parent's id is known.

States: ``idle`` (not seeded), ``draining``, ``done``, ``failed``,
``cancelled``. The last three are terminal.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from typing import Callable, Iterator, Mapping, Sequence

from locimport.client import BatchClient, TransportError
from locimport.hierarchy import Forest, attach_ids
from locimport.models import (
    MAX_BATCH_SIZE,
    BatchItem,
    CreateEntry,
    EntryError,
    EntryResult,
    ImportNode,
    Path,
)

IDLE = "idle"
DRAINING = "draining"
DONE = "done"
FAILED = "failed"
CANCELLED = "cancelled"

TERMINAL_STATES = (DONE, FAILED, CANCELLED)


@dataclass(frozen=True)
class SubmitBatch:
    """Action: create these entries under one parent, in one call."""

    parent_id: str | None
    parent_path: Path
    entries: tuple[CreateEntry, ...]


@dataclass(frozen=True)
class CommitState:
    status: str = IDLE
    queue: tuple[BatchItem, ...] = ()
    in_flight: SubmitBatch | None = None
    assigned: Mapping[Path, str] = field(default_factory=dict)  # ids created this run
    failures: tuple[EntryError, ...] = ()
    error: str = ""  # transport failure message
    batches: int = 0
    created: int = 0
    max_batch_size: int = MAX_BATCH_SIZE


def seed(forest: Forest, max_batch_size: int = MAX_BATCH_SIZE) -> CommitState:
    """Initial state for committing a forest."""
    if not 1 <= max_batch_size <= MAX_BATCH_SIZE:
        raise ValueError(f"max_batch_size must be between 1 and {MAX_BATCH_SIZE}")
    if not forest:
        return CommitState(status=DONE, max_batch_size=max_batch_size)
    return CommitState(
        status=DRAINING,
        queue=(BatchItem(parent_id=None, parent_path=(), nodes=tuple(forest)),),
        max_batch_size=max_batch_size,
    )


def _known_id(state: CommitState, path: Path, node: ImportNode) -> str | None:
    return node.server_id or state.assigned.get(path)


def step(
    state: CommitState, results: Sequence[EntryResult] | None = None
) -> tuple[CommitState, SubmitBatch | None]:
    """Advance the commit by one transition.

    Call with ``results`` only to deliver the outcome of the in-flight
    batch. Terminal states are returned unchanged.
    """
    if state.status in TERMINAL_STATES:
        return state, None
    if state.status == IDLE:
        raise ValueError("commit state has not been seeded")

    if state.in_flight is not None:
        if results is None:
            raise ValueError("a batch is in flight; deliver its results first")
        return _apply_results(state, results), None
    if results is not None:
        raise ValueError("results delivered but no batch is in flight")

    if not state.queue:
        return replace(state, status=DONE), None

    front, rest = state.queue[0], state.queue[1:]
    size = state.max_batch_size

    if len(front.nodes) > size:
        clean = replace(front, nodes=front.nodes[:size])
        overflow = replace(front, nodes=front.nodes[size:])
        return replace(state, queue=(clean,) + rest + (overflow,)), None

    entries = tuple(
        CreateEntry(
            reference_id=node.name,
            path=front.parent_path + (node.name,),
            body=node.to_body(front.parent_id),
        )
        for node in front.nodes
        if _known_id(state, front.parent_path + (node.name,), node) is None
    )

    if not entries:
        # Everything here already exists; only its children need work
        children = tuple(
            BatchItem(
                parent_id=_known_id(state, front.parent_path + (n.name,), n),
                parent_path=front.parent_path + (n.name,),
                nodes=n.children,
            )
            for n in front.nodes
            if n.children
        )
        return replace(state, queue=rest + children), None

    action = SubmitBatch(front.parent_id, front.parent_path, entries)
    return replace(state, in_flight=action, batches=state.batches + 1), action


def match_results(
    entries: Sequence[CreateEntry], results: Sequence[EntryResult]
) -> dict[str, EntryResult]:
    """Pair results with entries by reference id, falling back to position."""
    by_key = {r.reference_id: r for r in results if r.reference_id}
    matched = {}
    for i, entry in enumerate(entries):
        if entry.reference_id in by_key:
            matched[entry.reference_id] = by_key[entry.reference_id]
        elif i < len(results) and not results[i].reference_id:
            matched[entry.reference_id] = results[i]
    return matched


def _apply_results(state: CommitState, results: Sequence[EntryResult]) -> CommitState:
    front, rest = state.queue[0], state.queue[1:]
    matched = match_results(state.in_flight.entries, results)

    assigned = dict(state.assigned)
    failures = list(state.failures)
    children = []
    created = 0

    for node in front.nodes:
        path = front.parent_path + (node.name,)
        node_id = _known_id(state, path, node)
        if node_id is None:
            result = matched.get(node.name)
            if result is None:
                failures.append(EntryError(node.name, "no result returned for entry", None, path))
                continue
            if not result.ok:
                failures.append(
                    EntryError(node.name, result.error or "validation failed", result.status_code, path)
                )
                continue
            node_id = result.server_id
            assigned[path] = node_id
            created += 1
        if node.children:
            children.append(BatchItem(parent_id=node_id, parent_path=path, nodes=node.children))

    queue = rest + tuple(children)
    if len(failures) > len(state.failures):
        status = FAILED
    elif not queue:
        status = DONE
    else:
        status = DRAINING

    return replace(
        state,
        status=status,
        queue=queue,
        in_flight=None,
        assigned=assigned,
        failures=tuple(failures),
        created=state.created + created,
    )


def fail(state: CommitState, error: str) -> CommitState:
    """The in-flight batch could not be delivered; it stays queued, unresolved."""
    return replace(state, status=FAILED, in_flight=None, error=error)


def cancel(state: CommitState, results: Sequence[EntryResult] | None = None) -> CommitState:
    """Stop the commit.

    When the batch in flight has returned, pass its ``results``: the ids it
    assigned and the entries it rejected are recorded, but its children are
    not queued. Without results the in-flight batch stays unresolved.
    """
    if state.status in (DONE, FAILED):
        return state
    if state.in_flight is not None and results is not None:
        applied = _apply_results(state, results)
        return replace(applied, status=CANCELLED, queue=state.queue[1:])
    return replace(state, status=CANCELLED, in_flight=None)


@dataclass
class BatchOutcome:
    """What happened to one submitted batch."""

    number: int
    parent_id: str | None
    parent_path: Path
    entries: tuple[CreateEntry, ...]
    results: list[EntryResult] = field(default_factory=list)
    assigned: dict[Path, str] = field(default_factory=dict)
    failures: list[EntryError] = field(default_factory=list)
    error: str = ""

    @property
    def ok(self) -> bool:
        return not self.failures and not self.error


@dataclass
class CommitReport:
    """Final result of a commit run."""

    status: str
    forest: Forest
    assigned: dict[Path, str] = field(default_factory=dict)
    failures: list[EntryError] = field(default_factory=list)
    pending: list[BatchItem] = field(default_factory=list)
    batches: int = 0
    created: int = 0
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.status == DONE


class Committer:
    """Drives the commit state machine against a BatchClient.

    One batch is in flight at a time. ``cancel()`` may be called from a
    batch callback, a signal handler or another thread; it takes effect
    before the next submission. A batch that completes after it still has
    its ids recorded (and is reported), but its children are not submitted.
    """

    def __init__(self, client: BatchClient, max_batch_size: int = MAX_BATCH_SIZE):
        self.client = client
        self.max_batch_size = max_batch_size
        self.state = CommitState(max_batch_size=max_batch_size)
        self._forest: Forest = ()
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def outcomes(self, forest: Forest) -> Iterator[BatchOutcome]:
        """Commit the forest, yielding one BatchOutcome per submitted batch.

        Each call starts a fresh run; a cancel from an earlier run is cleared.
        """
        self._cancelled.clear()
        self._forest = tuple(forest)
        self.state = seed(self._forest, self.max_batch_size)

        while self.state.status == DRAINING:
            if self._cancelled.is_set():
                self.state = cancel(self.state)
                return

            self.state, action = step(self.state)
            if action is None:
                continue

            number = self.state.batches
            try:
                results = self.client.submit(action.entries)
            except TransportError as exc:
                self.state = fail(self.state, str(exc))
                yield BatchOutcome(
                    number, action.parent_id, action.parent_path, action.entries, error=str(exc)
                )
                return

            before = self.state
            if self._cancelled.is_set():
                # Ids the server already assigned are kept; nothing more is queued
                self.state = cancel(self.state, results)
                yield self._outcome(number, action, before, results)
                return

            self.state, _ = step(self.state, results)
            yield self._outcome(number, action, before, results)

    def _outcome(
        self,
        number: int,
        action: SubmitBatch,
        before: CommitState,
        results: Sequence[EntryResult],
    ) -> BatchOutcome:
        return BatchOutcome(
            number,
            action.parent_id,
            action.parent_path,
            action.entries,
            results=list(results),
            assigned={p: i for p, i in self.state.assigned.items() if p not in before.assigned},
            failures=list(self.state.failures[len(before.failures):]),
        )

    def commit(
        self, forest: Forest, on_batch: Callable[[BatchOutcome], None] | None = None
    ) -> CommitReport:
        """Commit the forest and return the final report."""
        for outcome in self.outcomes(forest):
            if on_batch is not None:
                on_batch(outcome)
        return self.report()

    def report(self) -> CommitReport:
        s = self.state
        return CommitReport(
            status=s.status,
            forest=attach_ids(self._forest, s.assigned),
            assigned=dict(s.assigned),
            failures=list(s.failures),
            pending=list(s.queue),
            batches=s.batches,
            created=s.created,
            error=s.error,
        )
