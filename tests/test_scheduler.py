"""Tests for locimport.scheduler, the batch commit state machine."""

import pytest

from locimport.hierarchy import attach_ids, collect_ids, count_nodes, iter_nodes, parse_rows
from locimport.models import BatchItem, EntryResult, ImportNode
from locimport.scheduler import (
    CANCELLED,
    DONE,
    DRAINING,
    FAILED,
    IDLE,
    CommitState,
    Committer,
    cancel,
    fail,
    match_results,
    seed,
    step,
)

from conftest import FakeBatchClient


def _wide_forest(roots=3, children=25, grandchildren=0):
    forest = []
    for r in range(roots):
        kids = tuple(
            ImportNode(
                name=f"R{r}-C{c}",
                children=tuple(ImportNode(name=f"R{r}-C{c}-G{g}", form="bd") for g in range(grandchildren)),
            )
            for c in range(children)
        )
        forest.append(ImportNode(name=f"R{r}", form="bu", children=kids))
    return tuple(forest)


def _drain(state, client):
    """Run the pure state machine to completion against a client."""
    while state.status == DRAINING:
        state, action = step(state)
        if action is not None:
            state, _ = step(state, client.submit(action.entries))
    return state


class TestSeed:
    def test_empty_forest_is_done(self):
        assert seed(()).status == DONE

    def test_root_item(self, sample_rows):
        forest = parse_rows(sample_rows)
        state = seed(forest)
        assert state.status == DRAINING
        assert state.queue == (BatchItem(parent_id=None, parent_path=(), nodes=forest),)

    def test_batch_size_bounds(self):
        with pytest.raises(ValueError):
            seed((), max_batch_size=21)
        with pytest.raises(ValueError):
            seed((), max_batch_size=0)


class TestStep:
    def test_first_step_submits_roots(self, sample_rows):
        state, action = step(seed(parse_rows(sample_rows)))
        assert action is not None
        assert action.parent_id is None
        assert [e.reference_id for e in action.entries] == ["Main Building"]
        assert "parent" not in action.entries[0].body
        assert state.in_flight == action
        assert state.batches == 1

    def test_step_is_pure(self, sample_rows):
        start = seed(parse_rows(sample_rows))
        state, action = step(start)
        assert start.in_flight is None
        assert start.batches == 0
        again, again_action = step(start)
        assert again == state
        assert again_action == action

    def test_results_enqueue_children(self, sample_rows):
        state, action = step(seed(parse_rows(sample_rows)))
        state, none = step(state, [EntryResult("Main Building", server_id="b-1", status_code=200)])
        assert none is None
        assert state.in_flight is None
        assert state.assigned == {("Main Building",): "b-1"}
        assert len(state.queue) == 1
        item = state.queue[0]
        assert item.parent_id == "b-1"
        assert item.parent_path == ("Main Building",)
        assert [n.name for n in item.nodes] == ["ICU", "Reception"]

    def test_child_bodies_carry_parent_id(self, sample_rows):
        state, _ = step(seed(parse_rows(sample_rows)))
        state, _ = step(state, [EntryResult("Main Building", server_id="b-1", status_code=200)])
        state, action = step(state)
        assert {e.body["parent"] for e in action.entries} == {"b-1"}
        assert action.entries[0].path == ("Main Building", "ICU")

    def test_leaf_batch_finishes(self):
        state, _ = step(seed((ImportNode(name="Solo"),)))
        state, _ = step(state, [EntryResult("Solo", server_id="s-1", status_code=200)])
        assert state.status == DONE
        assert state.created == 1

    def test_deliver_without_in_flight_raises(self, sample_rows):
        with pytest.raises(ValueError):
            step(seed(parse_rows(sample_rows)), [])

    def test_step_while_in_flight_raises(self, sample_rows):
        state, _ = step(seed(parse_rows(sample_rows)))
        with pytest.raises(ValueError):
            step(state)

    def test_idle_raises(self):
        with pytest.raises(ValueError):
            step(CommitState(status=IDLE))

    def test_terminal_states_unchanged(self):
        for status in (DONE, FAILED, CANCELLED):
            state = CommitState(status=status)
            assert step(state) == (state, None)


class TestOverflow:
    def test_split_reinserts_clean_chunk_first(self):
        nodes = tuple(ImportNode(name=f"N{i}") for i in range(25))
        state = CommitState(status=DRAINING, queue=(BatchItem("p", ("P",), nodes),))
        state, action = step(state)
        assert action is None
        assert [len(item.nodes) for item in state.queue] == [20, 5]
        assert state.queue[0].nodes == nodes[:20]
        assert state.queue[1].nodes == nodes[20:]

    def test_remainder_goes_behind_queued_items(self):
        big = tuple(ImportNode(name=f"A{i}") for i in range(25))
        small = tuple(ImportNode(name=f"B{i}") for i in range(3))
        state = CommitState(
            status=DRAINING,
            queue=(BatchItem("a", ("A",), big), BatchItem("b", ("B",), small)),
        )
        client = FakeBatchClient()
        _drain(state, client)
        assert client.entry_counts == [20, 3, 5]
        assert client.names(1) == ["B0", "B1", "B2"]

    def test_no_call_exceeds_limit(self):
        forest = _wide_forest(roots=45, children=23, grandchildren=2)
        client = FakeBatchClient()
        report = Committer(client).commit(forest)
        assert report.status == DONE
        assert max(client.entry_counts) <= 20
        assert sum(client.entry_counts) == count_nodes(forest)

    def test_smaller_configured_batch_size(self):
        client = FakeBatchClient()
        Committer(client, max_batch_size=7).commit(_wide_forest(roots=2, children=10))
        assert max(client.entry_counts) <= 7


class TestOrdering:
    def test_every_parent_created_in_earlier_call(self):
        forest = _wide_forest(roots=4, children=22, grandchildren=3)
        client = FakeBatchClient()
        report = Committer(client).commit(forest)
        assert report.ok

        call_of = {}
        n = 0
        for index, call in enumerate(client.calls):
            for _ in call:
                n += 1
                call_of[f"loc-{n}"] = index

        for index, call in enumerate(client.calls):
            for entry in call:
                parent = entry.body.get("parent")
                if parent is not None:
                    assert call_of[parent] < index

    def test_each_node_created_once(self, sample_rows):
        client = FakeBatchClient()
        report = Committer(client).commit(parse_rows(sample_rows))
        names = [e.reference_id for call in client.calls for e in call]
        assert sorted(names) == sorted(n.name for _, n in iter_nodes(parse_rows(sample_rows)))
        assert report.created == 6
        assert report.batches == 4

    def test_report_forest_is_fully_annotated(self, sample_rows):
        client = FakeBatchClient()
        report = Committer(client).commit(parse_rows(sample_rows))
        assert all(node.server_id for _, node in iter_nodes(report.forest))
        assert collect_ids(report.forest) == report.assigned

    def test_bed_created_as_instance(self, sample_rows):
        client = FakeBatchClient()
        Committer(client).commit(parse_rows(sample_rows))
        beds = [b for b in client.created.values() if b["form"] == "bd"]
        assert len(beds) == 2
        assert all(b["mode"] == "instance" for b in beds)


class TestResume:
    def test_persisted_nodes_not_resubmitted(self, sample_rows):
        forest = attach_ids(
            parse_rows(sample_rows),
            {("Main Building",): "b-1", ("Main Building", "ICU"): "w-1"},
        )
        client = FakeBatchClient()
        report = Committer(client).commit(forest)

        names = [e.reference_id for call in client.calls for e in call]
        assert "Main Building" not in names
        assert "ICU" not in names
        assert report.created == 4

        bed_parents = {e.body["parent"] for call in client.calls for e in call
                       if e.reference_id.startswith("Bed")}
        assert bed_parents == {"w-1"}
        reception = [e for call in client.calls for e in call if e.reference_id == "Reception"]
        assert reception[0].body["parent"] == "b-1"

    def test_fully_persisted_forest_makes_no_calls(self, sample_rows):
        forest = parse_rows(sample_rows)
        ids = {path: f"id-{i}" for i, (path, _) in enumerate(iter_nodes(forest))}
        client = FakeBatchClient()
        report = Committer(client).commit(attach_ids(forest, ids))
        assert client.calls == []
        assert report.status == DONE
        assert report.created == 0

    def test_mixed_batch_only_creates_missing(self):
        forest = (
            ImportNode(name="A", server_id="a-1", children=(ImportNode(name="A1"),)),
            ImportNode(name="B"),
        )
        client = FakeBatchClient()
        Committer(client).commit(forest)
        assert client.names(0) == ["B"]
        assert client.names(1) == ["A1"]
        assert client.calls[1][0].body["parent"] == "a-1"


class TestFailures:
    def test_entry_failure_halts_but_keeps_siblings(self, sample_rows):
        client = FakeBatchClient(fail={"ICU": "Location with this name already exists"})
        report = Committer(client).commit(parse_rows(sample_rows))

        assert report.status == FAILED
        assert len(client.calls) == 2
        assert [f.reference_id for f in report.failures] == ["ICU"]
        assert report.failures[0].path == ("Main Building", "ICU")
        assert report.failures[0].status_code == 400
        assert "already exists" in report.failures[0].message

        assert ("Main Building", "Reception") in report.assigned
        # Reception's child is queued but not submitted
        assert len(report.pending) == 1
        assert report.pending[0].parent_path == ("Main Building", "Reception")
        assert report.pending[0].parent_id == report.assigned[("Main Building", "Reception")]
        # The failed ward's beds are not queued at all
        pending_names = [n.name for item in report.pending for n in item.nodes]
        assert "Bed 1" not in pending_names

    def test_retry_after_entry_failure(self, sample_rows):
        forest = parse_rows(sample_rows)
        first = Committer(FakeBatchClient(fail={"ICU": "boom"})).commit(forest)

        retry_client = FakeBatchClient()
        second = Committer(retry_client).commit(attach_ids(forest, first.assigned))
        names = [e.reference_id for call in retry_client.calls for e in call]
        assert sorted(names) == ["Bed 1", "Bed 2", "ICU", "Waiting Area"]
        assert second.ok

    def test_transport_error_keeps_batch_unresolved(self, sample_rows):
        client = FakeBatchClient(transport_error_on=2)
        report = Committer(client).commit(parse_rows(sample_rows))

        assert report.status == FAILED
        assert "connection reset" in report.error
        assert report.failures == []
        assert report.assigned == {("Main Building",): "loc-1"}
        assert [n.name for n in report.pending[0].nodes] == ["ICU", "Reception"]
        assert len(client.calls) == 2

    def test_fail_transition(self, sample_rows):
        state, _ = step(seed(parse_rows(sample_rows)))
        failed = fail(state, "timeout")
        assert failed.status == FAILED
        assert failed.in_flight is None
        assert failed.queue == state.queue
        assert step(failed) == (failed, None)

    def test_missing_result_is_a_failure(self):
        state, _ = step(seed((ImportNode(name="A"), ImportNode(name="B"))))
        state, _ = step(state, [EntryResult("A", server_id="a-1", status_code=200)])
        assert state.status == FAILED
        assert state.assigned == {("A",): "a-1"}
        assert state.failures[0].reference_id == "B"

    def test_outcome_reports_per_batch(self, sample_rows):
        client = FakeBatchClient(fail={"Reception": "bad"})
        outcomes = list(Committer(client).outcomes(parse_rows(sample_rows)))
        assert [o.number for o in outcomes] == [1, 2]
        assert outcomes[0].ok
        assert outcomes[0].assigned == {("Main Building",): "loc-1"}
        assert not outcomes[1].ok
        assert list(outcomes[1].assigned) == [("Main Building", "ICU")]
        assert [f.reference_id for f in outcomes[1].failures] == ["Reception"]


class TestMatching:
    def test_positional_results(self, sample_rows):
        client = FakeBatchClient(keyed=False)
        report = Committer(client).commit(parse_rows(sample_rows))
        assert report.ok
        assert report.created == 6

    def test_key_beats_position(self):
        from locimport.models import CreateEntry

        entries = [CreateEntry("A", ("A",)), CreateEntry("B", ("B",))]
        results = [EntryResult("B", server_id="b"), EntryResult("A", server_id="a")]
        matched = match_results(entries, results)
        assert matched["A"].server_id == "a"
        assert matched["B"].server_id == "b"


class TestCancel:
    def test_cancel_between_batches(self, sample_rows):
        client = FakeBatchClient()
        committer = Committer(client)
        report = committer.commit(parse_rows(sample_rows), on_batch=lambda o: committer.cancel())
        assert report.status == CANCELLED
        assert len(client.calls) == 1
        assert report.assigned == {("Main Building",): "loc-1"}

    def test_in_flight_batch_ids_kept_children_not_submitted(self, sample_rows):
        client = FakeBatchClient()
        committer = Committer(client)
        client.on_submit = lambda n: committer.cancel() if n == 2 else None
        outcomes = []
        report = committer.commit(parse_rows(sample_rows), on_batch=outcomes.append)

        assert report.status == CANCELLED
        assert len(client.calls) == 2
        assert report.assigned == {
            ("Main Building",): "loc-1",
            ("Main Building", "ICU"): "loc-2",
            ("Main Building", "Reception"): "loc-3",
        }
        assert report.created == 3
        assert report.pending == []
        assert committer.cancelled
        # The late batch is still reported so its ids can be recorded
        assert [o.number for o in outcomes] == [1, 2]
        assert list(outcomes[1].assigned) == [("Main Building", "ICU"), ("Main Building", "Reception")]
        assert report.batches == len(outcomes)

    def test_resume_after_in_flight_cancel_does_not_resubmit(self, sample_rows):
        forest = parse_rows(sample_rows)
        client = FakeBatchClient()
        committer = Committer(client)
        client.on_submit = lambda n: committer.cancel() if n == 2 else None
        first = committer.commit(forest)

        retry_client = FakeBatchClient()
        second = Committer(retry_client).commit(attach_ids(forest, first.assigned))
        names = sorted(e.reference_id for call in retry_client.calls for e in call)
        assert names == ["Bed 1", "Bed 2", "Waiting Area"]
        assert second.ok

    def test_committer_reusable_after_cancel(self, sample_rows):
        client = FakeBatchClient()
        committer = Committer(client)
        committer.commit(parse_rows(sample_rows), on_batch=lambda o: committer.cancel())
        assert committer.cancelled

        report = committer.commit((ImportNode(name="Annex"),))
        assert report.status == DONE
        assert client.names(len(client.calls) - 1) == ["Annex"]

    def test_cancel_transition(self, sample_rows):
        state, _ = step(seed(parse_rows(sample_rows)))
        cancelled = cancel(state)
        assert cancelled.status == CANCELLED
        assert cancelled.in_flight is None
        assert cancelled.assigned == {}
        done = CommitState(status=DONE)
        assert cancel(done) is done

    def test_cancel_with_results_records_ids_only(self, sample_rows):
        state, _ = step(seed(parse_rows(sample_rows)))
        cancelled = cancel(state, [EntryResult("Main Building", server_id="b-1", status_code=200)])
        assert cancelled.status == CANCELLED
        assert cancelled.in_flight is None
        assert cancelled.assigned == {("Main Building",): "b-1"}
        assert cancelled.created == 1
        assert cancelled.queue == ()

    def test_cancel_with_rejected_entry_stays_cancelled(self):
        state, _ = step(seed((ImportNode(name="A"), ImportNode(name="B"))))
        cancelled = cancel(state, [
            EntryResult("A", server_id="a-1", status_code=200),
            EntryResult("B", status_code=400, error="bad"),
        ])
        assert cancelled.status == CANCELLED
        assert cancelled.assigned == {("A",): "a-1"}
        assert [f.reference_id for f in cancelled.failures] == ["B"]
