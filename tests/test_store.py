"""
Tests for the view store.

Covers local edits and op coalescing, snapshots, events, paging and the
save/re-queue cycle against the in-memory data source.
"""

import asyncio

import pytest
import pytest_asyncio

from recordsync_datasource import ArrayDataSource
from recordsync_errors import ReadOnlyFieldError, TransportError
from recordsync_models import PageMode, PageState, ViewConfig
from recordsync_store import ViewStore


class RecordingSource(ArrayDataSource):
    """Array source that counts mutate() calls and can fail on demand."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.mutate_calls = []
        self.fail_next = False

    async def mutate(self, ops, view_meta=None):
        self.mutate_calls.append([op.opId for op in ops])
        if self.fail_next:
            self.fail_next = False
            raise TransportError("network down")
        return await super().mutate(ops, view_meta)


class GatedSource(ArrayDataSource):
    """Array source whose mutate() waits until released, then optionally fails."""

    def __init__(self, *args, fail=False, **kwargs):
        super().__init__(*args, **kwargs)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self.fail = fail

    async def mutate(self, ops, view_meta=None):
        self.entered.set()
        await self.release.wait()
        if self.fail:
            self.fail = False
            raise TransportError("connection reset")
        return await super().mutate(ops, view_meta)


@pytest.fixture
def recording_source(items):
    return RecordingSource(items, entity_type="Item")


@pytest_asyncio.fixture
async def loaded_store(plain_model, recording_source, item_view):
    store = ViewStore(plain_model, recording_source, item_view)
    await store.load_first()
    return store


def paged_view(mode, limit=2):
    return ViewConfig(name="items", resource="items", entityType="Item",
                      defaultPage=PageState(mode=mode, limit=limit))


class TestLocalEdits:
    """Tests for synchronous mutators."""

    @pytest.mark.asyncio
    async def test_set_field_coalesces_updates(self, loaded_store):
        """Two edits of one record produce one update op."""
        loaded_store.set_field(0, "name", "a1")
        loaded_store.set_field(0, "status", "done")
        loaded_store.set_field(0, "name", "a2")

        ops = loaded_store.get_pending_ops()
        assert len(ops) == 1
        assert ops[0].type == "update"
        assert ops[0].entity.id == "1"
        assert ops[0].patch == {"name": "a2", "status": "done"}
        assert ops[0].baseVersion == "1"
        assert loaded_store.get_record(0)["name"] == "a2"

    @pytest.mark.asyncio
    async def test_set_field_index_out_of_range(self, loaded_store):
        with pytest.raises(IndexError):
            loaded_store.set_field(10, "name", "x")

    @pytest.mark.asyncio
    async def test_add_record_assigns_temp_id(self, loaded_store):
        index = loaded_store.add_record({"name": "delta"})

        assert index == 3
        assert loaded_store.get_record(3)["id"] == "tmp-1"
        op = loaded_store.get_pending_ops()[0]
        assert op.type == "create"
        assert op.entity.id == "tmp-1"
        assert op.data == {"name": "delta"}

    @pytest.mark.asyncio
    async def test_edit_of_new_record_merges_into_create(self, loaded_store):
        loaded_store.add_record({"name": "delta"}, at_index=0)
        loaded_store.set_field(0, "status", "open")

        ops = loaded_store.get_pending_ops()
        assert len(ops) == 1
        assert ops[0].data == {"name": "delta", "status": "open"}

    @pytest.mark.asyncio
    async def test_remove_records_dedupes_indexes(self, loaded_store):
        events = []
        loaded_store.subscribe(events.append)

        removed = loaded_store.remove_records([0, 0, 7, 1])

        assert removed == 2
        assert loaded_store.get_length() == 1
        assert len(events) == 1
        assert events[0].path == ["remove", [1, 0]]
        ops = loaded_store.get_pending_ops()
        assert sorted(op.entity.id for op in ops) == ["1", "2"]
        assert all(op.type == "delete" and op.baseVersion == "1" for op in ops)

    @pytest.mark.asyncio
    async def test_removal_order_does_not_matter(self, plain_model, items, item_view):
        """Removing [1, 0] and [0, 1] leaves the same records and deletes."""
        outcomes = []
        for indexes in ([1, 0], [0, 1]):
            store = ViewStore(plain_model, ArrayDataSource(items, entity_type="Item"), item_view)
            await store.load_first()

            store.remove_records(indexes)

            remaining = [store.get_record(i)["id"] for i in range(store.get_length())]
            deletes = sorted(op.entity.id for op in store.get_pending_ops() if op.type == "delete")
            outcomes.append((remaining, deletes))

        assert outcomes[0] == outcomes[1] == (["3"], ["1", "2"])

    @pytest.mark.asyncio
    async def test_remove_unsaved_record_drops_create(self, loaded_store):
        loaded_store.add_record({"name": "delta"})
        loaded_store.set_field(3, "status", "open")

        loaded_store.remove_records([3])

        assert loaded_store.get_pending_ops() == []

    @pytest.mark.asyncio
    async def test_remove_drops_pending_update(self, loaded_store):
        loaded_store.set_field(1, "name", "b2")

        loaded_store.remove_records([1])

        ops = loaded_store.get_pending_ops()
        assert [(op.type, op.entity.id) for op in ops] == [("delete", "2")]

    @pytest.mark.asyncio
    async def test_update_queues_changed_fields(self, loaded_store):
        record = dict(loaded_store.get_record(2).record, status="done")

        loaded_store.update(2, record)

        assert loaded_store.get_pending_ops()[0].patch == {"status": "done"}
        assert loaded_store.update(9, record) is None

    @pytest.mark.asyncio
    async def test_record_without_key_is_not_queued(self, plain_model, item_view):
        store = ViewStore(plain_model, ArrayDataSource(), item_view, records=[{"name": "loose"}])

        store.set_field(0, "name", "changed")

        assert store.get_record(0)["name"] == "changed"
        assert store.get_pending_ops() == []


class TestSnapshots:
    """Tests for diff/commit/reset."""

    @pytest.mark.asyncio
    async def test_diff_commit_reset(self, loaded_store):
        loaded_store.set_field(0, "name", "z")

        assert loaded_store.diff() == [{"index": 0, "field": "name", "from": "alpha", "to": "z"}]

        loaded_store.commit()
        assert loaded_store.diff() == []
        assert len(loaded_store.get_pending_ops()) == 1

        loaded_store.set_field(0, "name", "zz")
        loaded_store.reset()
        assert loaded_store.get_record(0)["name"] == "z"
        assert loaded_store.get_pending_ops() == []

    @pytest.mark.asyncio
    async def test_diff_reports_added_record(self, loaded_store):
        loaded_store.add_record({"name": "delta"})

        changes = loaded_store.diff()

        assert changes == [{"index": 3, "added": True, "to": {"name": "delta", "id": "tmp-1"}}]

    @pytest.mark.asyncio
    async def test_reset_emits_single_event(self, loaded_store):
        loaded_store.add_record({"name": "delta"})
        events = []
        loaded_store.subscribe(events.append)

        loaded_store.reset()

        assert [e.path for e in events] == [["reset"]]
        assert loaded_store.get_length() == 3


class TestEvents:
    """Tests for the event bus."""

    @pytest.mark.asyncio
    async def test_field_event_path(self, loaded_store):
        events = []
        loaded_store.subscribe(events.append)

        loaded_store.set_field(1, "name", "b2")

        assert events[0].path == [1, "name"]
        assert events[0].value == "b2"
        assert events[0].store is loaded_store

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_block_others(self, loaded_store):
        received = []

        def broken(event):
            raise RuntimeError("boom")

        loaded_store.subscribe(broken)
        loaded_store.subscribe(received.append)

        loaded_store.set_field(0, "name", "x")

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_unsubscribe(self, loaded_store):
        received = []
        unsubscribe = loaded_store.subscribe(received.append)

        unsubscribe()
        loaded_store.set_field(0, "name", "x")

        assert received == []


class TestPaging:
    """Tests for load_first/page_next/page_prev/search."""

    @pytest.mark.asyncio
    async def test_cursor_paging(self, plain_model, array_source):
        store = ViewStore(plain_model, array_source, paged_view(PageMode.CURSOR))

        await store.load_first()
        assert [store.get_record(i)["id"] for i in range(store.get_length())] == ["1", "2"]
        assert store.get_paging_state().pageInfo.nextCursor == "2"

        assert await store.page_next() is True
        assert [store.get_record(i)["id"] for i in range(store.get_length())] == ["3"]
        paging = store.get_paging_state()
        assert paging.pageInfo.prevCursor == "0"
        assert paging.pageState.pageIndex == 1

        assert await store.page_next() is False

        assert await store.page_prev() is True
        assert store.get_length() == 2
        assert store.get_paging_state().pageState.pageIndex == 0

    @pytest.mark.asyncio
    async def test_offset_paging(self, plain_model, array_source):
        store = ViewStore(plain_model, array_source, paged_view(PageMode.OFFSET))

        await store.load_first()
        assert await store.page_prev() is False
        assert await store.page_next() is True
        assert store.get_paging_state().pageState.offset == 2
        assert store.get_length() == 1
        assert await store.page_next() is False

    @pytest.mark.asyncio
    async def test_page_mode(self, plain_model, array_source):
        store = ViewStore(plain_model, array_source, paged_view(PageMode.PAGE))

        await store.load_first()
        assert await store.page_next() is True
        assert store.get_paging_state().pageState.page == 1
        assert await store.page_prev() is True
        assert store.get_paging_state().pageState.page == 0

    @pytest.mark.asyncio
    async def test_search_sets_criteria(self, loaded_store):
        events = []
        loaded_store.subscribe(events.append)

        await loaded_store.search({"filter": {"status": "open"}, "sort": [{"field": "name", "dir": "desc"}]})

        assert [loaded_store.get_record(i)["name"] for i in range(loaded_store.get_length())] == ["gamma", "alpha"]
        status = loaded_store.get_status()
        assert status.criteria.filter == {"status": "open"}
        assert status.state == "success"
        assert status.pageInfo.totalCount == 2
        assert [e.path for e in events] == [["reset"]]

    @pytest.mark.asyncio
    async def test_reload_keeps_pending_ops(self, loaded_store):
        loaded_store.set_field(0, "name", "x")

        await loaded_store.load_first()

        assert len(loaded_store.get_pending_ops()) == 1


class TestSave:
    """Tests for save() and reconciliation."""

    @pytest.mark.asyncio
    async def test_empty_save_skips_source(self, loaded_store, recording_source):
        result = await loaded_store.save()

        assert result.applied == []
        assert recording_source.mutate_calls == []

    @pytest.mark.asyncio
    async def test_successful_save_commits(self, loaded_store, recording_source):
        events = []
        loaded_store.subscribe(events.append)
        loaded_store.set_field(0, "name", "a2")
        loaded_store.add_record({"name": "delta"})

        result = await loaded_store.save()

        assert len(result.applied) == 2
        assert loaded_store.get_pending_ops() == []
        assert loaded_store.get_record(0)["version"] == "2"
        assert loaded_store.get_record(3)["id"] == "4"
        assert loaded_store.diff() == []
        assert events[-1].path == ["commit"]
        assert loaded_store.get_status().state == "success"
        assert [r["name"] for r in recording_source.records] == ["a2", "beta", "gamma", "delta"]

    @pytest.mark.asyncio
    async def test_failed_save_requeues_batch(self, loaded_store, recording_source):
        loaded_store.set_field(0, "name", "a2")
        recording_source.fail_next = True

        with pytest.raises(TransportError):
            await loaded_store.save()

        ops = loaded_store.get_pending_ops()
        assert [op.opId for op in ops] == ["op-1"]
        assert loaded_store.get_status().state == "error"

        await loaded_store.save()

        assert recording_source.mutate_calls == [["op-1"], ["op-1"]]
        assert recording_source.records[0]["version"] == "2"

    @pytest.mark.asyncio
    async def test_failed_save_merges_later_edits(self, loaded_store, recording_source):
        loaded_store.set_field(0, "name", "a2")
        recording_source.fail_next = True
        with pytest.raises(TransportError):
            await loaded_store.save()

        loaded_store.set_field(0, "status", "done")

        ops = loaded_store.get_pending_ops()
        assert len(ops) == 1
        assert ops[0].patch == {"name": "a2", "status": "done"}

    @pytest.mark.asyncio
    async def test_edits_during_save_form_next_batch(self, plain_model, items, item_view):
        source = GatedSource(items, entity_type="Item")
        store = ViewStore(plain_model, source, item_view)
        await store.load_first()
        store.set_field(0, "name", "first")

        task = asyncio.create_task(store.save())
        await source.entered.wait()
        store.set_field(0, "name", "second")
        source.release.set()
        await task

        ops = store.get_pending_ops()
        assert len(ops) == 1
        assert ops[0].patch == {"name": "second"}
        assert ops[0].baseVersion == "2"
        assert store.get_record(0)["name"] == "second"

        await store.save()
        assert source.records[0]["name"] == "second"

    @pytest.mark.asyncio
    async def test_queued_edits_stay_out_of_baseline(self, plain_model, items, item_view):
        """An edit made while mutate() is awaited is still unsaved afterwards."""
        source = GatedSource(items, entity_type="Item")
        store = ViewStore(plain_model, source, item_view)
        await store.load_first()
        store.set_field(0, "name", "a2")

        task = asyncio.create_task(store.save())
        await source.entered.wait()
        store.set_field(1, "name", "UNSAVED")
        source.release.set()
        await task

        assert store.diff() == [{"index": 1, "field": "name", "from": "beta", "to": "UNSAVED"}]

        store.reset()

        assert store.get_record(0)["name"] == "a2"
        assert store.get_record(1)["name"] == "beta"
        assert store.get_pending_ops() == []

    @pytest.mark.asyncio
    async def test_removing_record_while_create_fails(self, plain_model, items, item_view):
        """A new record removed during a failed save never reaches the source."""
        source = GatedSource(items, entity_type="Item", fail=True)
        store = ViewStore(plain_model, source, item_view)
        await store.load_first()
        store.add_record({"name": "new"})

        task = asyncio.create_task(store.save())
        await source.entered.wait()
        store.remove_records([3])
        source.release.set()
        with pytest.raises(TransportError):
            await task

        assert store.get_pending_ops() == []

        result = await store.save()

        assert result.applied == []
        assert result.rejected == []
        assert [r["id"] for r in source.records] == ["1", "2", "3"]

    @pytest.mark.asyncio
    async def test_removing_record_while_create_succeeds(self, plain_model, items, item_view):
        """The delete queued against the temporary id follows the server id."""
        source = GatedSource(items, entity_type="Item")
        store = ViewStore(plain_model, source, item_view)
        await store.load_first()
        store.add_record({"name": "new"})

        task = asyncio.create_task(store.save())
        await source.entered.wait()
        store.remove_records([3])
        source.release.set()
        await task

        ops = store.get_pending_ops()
        assert [(op.type, op.entity.id, op.baseVersion) for op in ops] == [("delete", "4", "1")]
        assert store.diff() == [{"index": 3, "deleted": True, "from": {"name": "new", "id": "4", "version": "1"}}]

        await store.save()

        assert [r["id"] for r in source.records] == ["1", "2", "3"]
        assert store.diff() == []

    @pytest.mark.asyncio
    async def test_resolved_conflict_resends_only_that_op(self, loaded_store, recording_source):
        """Applied ops are sent once; the re-queued op is sent again alone."""
        recording_source._data[1]["version"] = "5"
        loaded_store.set_field(0, "name", "a2")
        loaded_store.set_field(1, "name", "b2")

        result = await loaded_store.save()

        assert [a.opId for a in result.applied] == ["op-1"]
        assert [c.opId for c in result.conflicts] == ["op-2"]

        loaded_store.resolve_conflict("op-2", keep="local")
        await loaded_store.save()

        assert recording_source.mutate_calls == [["op-1", "op-2"], ["op-2"]]
        assert recording_source.records[1]["name"] == "b2"
        assert recording_source.records[1]["version"] == "6"
        assert loaded_store.diff() == []

    @pytest.mark.asyncio
    async def test_conflict_is_requeued(self, plain_model, items, item_view):
        source = ArrayDataSource(items, entity_type="Item")
        first = ViewStore(plain_model, source, item_view)
        second = ViewStore(plain_model, source, item_view)
        await first.load_first()
        await second.load_first()

        first.set_field(0, "name", "from-first")
        await first.save()
        second.set_field(0, "name", "from-second")
        result = await second.save()

        assert result.applied == []
        conflict = result.conflicts[0]
        assert conflict.latestVersion == "2"
        assert [op.opId for op in second.get_pending_ops()] == [conflict.opId]
        assert second.get_conflicts()[0].opId == conflict.opId
        assert second.get_status().state == "error"

        second.resolve_conflict(conflict.opId, keep="local")
        await second.save()

        assert source.records[0]["name"] == "from-second"
        assert source.records[0]["version"] == "3"
        assert second.get_conflicts() == []

    @pytest.mark.asyncio
    async def test_resolve_conflict_keeping_server(self, plain_model, items, item_view):
        source = ArrayDataSource(items, entity_type="Item")
        first = ViewStore(plain_model, source, item_view)
        second = ViewStore(plain_model, source, item_view)
        await first.load_first()
        await second.load_first()
        first.set_field(0, "name", "from-first")
        await first.save()
        second.set_field(0, "name", "from-second")
        result = await second.save()

        second.resolve_conflict(result.conflicts[0].opId, keep="server")

        assert second.get_pending_ops() == []
        assert second.get_record(0)["name"] == "from-first"
        assert second.diff() == []
        with pytest.raises(KeyError):
            second.resolve_conflict(result.conflicts[0].opId)

    @pytest.mark.asyncio
    async def test_partial_save_keeps_applied_ops_out(self, loaded_store, recording_source):
        loaded_store.set_field(0, "name", "a2")
        loaded_store.remove_records([2])
        recording_source._data.pop()

        result = await loaded_store.save()

        assert [a.opId for a in result.applied] == ["op-1"]
        assert [r.error.code for r in result.rejected] == ["not_found"]
        assert [op.type for op in loaded_store.get_pending_ops()] == ["delete"]
        assert loaded_store.get_record(0)["version"] == "2"
        assert loaded_store.diff() == [{
            "index": 2,
            "deleted": True,
            "from": {"id": "3", "name": "gamma", "status": "open", "version": "1"},
        }]


class TestComputedInStore:
    """Tests for computed fields seen through the store."""

    def make_store(self, invoice_model):
        records = [{"id": "1", "qty": 2, "price": 10, "tax": 0.5, "version": "1"}]
        return ViewStore(invoice_model, ArrayDataSource(records), ViewConfig(), records=records)

    def test_computed_values_follow_edits(self, invoice_model):
        store = self.make_store(invoice_model)

        assert store.get_record(0)["total"] == 30
        store.set_field(0, "qty", 4)
        assert store.get_record(0)["subtotal"] == 40
        assert store.get_record(0)["total"] == 60

    def test_declared_dependencies_invalidate(self):
        """A value derived from two fields follows edits to either one."""
        model = {
            "fields": {
                "price": {},
                "discount": {},
                "priceAfterDiscount": {
                    "computed": True,
                    "dependsOn": ["price", "discount"],
                    "compute": lambda r, ctx: r["price"] * (1 - r["discount"]),
                },
            }
        }
        records = [{"id": "1", "price": 100, "discount": 0.2, "version": "1"}]
        store = ViewStore(model, ArrayDataSource(records), ViewConfig(), records=records)

        assert store.get_record(0)["priceAfterDiscount"] == 80
        store.set_field(0, "price", 200)
        assert store.get_record(0)["priceAfterDiscount"] == 160

    def test_computed_fields_are_read_only(self, invoice_model):
        store = self.make_store(invoice_model)

        with pytest.raises(ReadOnlyFieldError):
            store.set_field(0, "total", 1)

    def test_record_view_iterates_stored_keys(self, invoice_model):
        store = self.make_store(invoice_model)
        view = store.get_record(0)

        assert "subtotal" not in list(view)
        assert view.record == {"id": "1", "qty": 2, "price": 10, "tax": 0.5, "version": "1"}

    def test_add_record_strips_computed_keys(self, invoice_model):
        store = self.make_store(invoice_model)

        store.add_record({"qty": 1, "price": 1, "tax": 0, "total": 999})

        assert "total" not in store.get_pending_ops()[0].data
        assert store.get_record(1)["total"] == 1

    def test_to_json_materializes(self, invoice_model):
        store = self.make_store(invoice_model)

        assert store.to_json() == [
            {"id": "1", "qty": 2, "price": 10, "tax": 0.5, "version": "1", "subtotal": 20, "total": 30.0}
        ]
