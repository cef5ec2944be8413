"""Tests for the store facade and units of work."""

import datetime
import json
import threading

import pytest

from relstore import history as _hist
from relstore import (
    ConflictError,
    DeletePolicy,
    EntityNotFoundError,
    SchemaError,
    StateError,
    Store,
    TrackerState,
    ValidationError,
)


def _children(store, parent_key):
    return [row.child_key for row in store.rows_for_parent("book_authors", parent_key)]


def _state(store):
    return (
        [(e.kind, e.key, e.attributes) for kind in store.kinds() for e in store.all(kind)],
        [r for t in store.graph.tables() for r in t.all()],
    )


class TestSchema:

    def test_from_schema(self):
        store = Store.from_schema({
            "entities": ["authors", "books"],
            "relationships": [
                {"name": "book_authors", "parent": "books", "child": "authors",
                 "on_delete": "Cascade"},
            ],
        })
        assert store.kinds() == ["authors", "books"]
        rel = store.graph.relationship("book_authors")
        assert rel.on_delete is DeletePolicy.CASCADE

    def test_from_schema_defaults_to_restrict(self):
        store = Store.from_schema({
            "entities": ["a", "b"],
            "relationships": [{"name": "ab", "parent": "a", "child": "b"}],
        })
        assert store.relationships()[0].on_delete is DeletePolicy.RESTRICT

    @pytest.mark.parametrize("schema", [
        {"entities": "authors"},
        {"entities": ["a", "a"]},
        {"entities": ["a"], "relationships": [{"name": "x", "parent": "a"}]},
        {"entities": ["a"], "relationships": ["x"]},
        {"entities": ["a"], "relationships": [{"name": "x", "parent": "a", "child": "b"}]},
    ])
    def test_from_schema_rejects(self, schema):
        with pytest.raises(SchemaError):
            Store.from_schema(schema)

    def test_unknown_kind(self, store):
        with pytest.raises(EntityNotFoundError):
            store.all("publishers")


class TestUnitOfWork:

    def test_insert_then_get(self, store):
        with store.create_unit_of_work() as uow:
            author = uow.add("authors", name="Ann")
            uow.commit()
        assert store.get("authors", author.key) == author

    def test_reads_see_pending_changes(self, seeded):
        store, a1, a2, a3, b1, b2 = seeded
        uow = store.create_unit_of_work()
        new = uow.add("authors", name="Author4")
        uow.update("authors", a1, name="Renamed")
        uow.delete("authors", a3, unlink=True)
        assert uow.get("authors", new.key)["name"] == "Author4"
        assert uow.get("authors", a1)["name"] == "Renamed"
        with pytest.raises(EntityNotFoundError):
            uow.get("authors", a3)
        assert [e.key for e in uow.all("authors")] == [a1, a2, new.key]
        assert [e.key for e in uow.find("authors", name="Renamed")] == [a1]
        assert store.get("authors", a1)["name"] == "Author1"

    def test_update_unchanged_is_noop(self, seeded):
        store, a1, *_ = seeded
        uow = store.create_unit_of_work()
        uow.update("authors", a1, name="Author1")
        assert uow.diff().is_empty

    def test_update_bumps_version(self, seeded):
        store, a1, *_ = seeded
        with store.create_unit_of_work("rename") as uow:
            uow.update("authors", a1, name="Renamed")
            uow.commit()
        assert store.get("authors", a1)["name"] == "Renamed"
        assert store.get("authors", a1).version == 2

    def test_rollback_discards(self, seeded):
        store, a1, a2, a3, b1, b2 = seeded
        before = _state(store)
        uow = store.create_unit_of_work()
        uow.add("authors", name="Ghost")
        uow.collection("book_authors", b2).clear()
        uow.rollback()
        assert _state(store) == before
        with pytest.raises(StateError):
            uow.commit()

    def test_leaving_block_discards(self, seeded):
        store, a1, a2, a3, b1, b2 = seeded
        before = _state(store)
        with store.create_unit_of_work() as uow:
            uow.unlink("book_authors", b1, a1)
        assert uow.state is TrackerState.IDLE
        assert _state(store) == before

    def test_closed_after_commit(self, store):
        uow = store.create_unit_of_work()
        uow.add("authors")
        uow.commit()
        assert uow.state is TrackerState.IDLE
        with pytest.raises(StateError):
            uow.add("authors")

    def test_abandoned_keys_are_not_reused(self, store):
        abandoned = store.create_unit_of_work()
        ghost = abandoned.add("authors")
        abandoned.rollback()
        with store.create_unit_of_work() as uow:
            author = uow.add("authors")
            uow.commit()
        assert author.key > ghost.key

    def test_link_requires_endpoints(self, seeded):
        store, a1, a2, a3, b1, b2 = seeded
        uow = store.create_unit_of_work()
        with pytest.raises(ValidationError, match="Foreign key not found"):
            uow.link("book_authors", b1, 99)
        with pytest.raises(ValidationError):
            uow.link("book_authors", 99, a1)

    def test_committed_reads_are_read_only(self, seeded):
        store, a1, a2, a3, b1, b2 = seeded
        author = store.get("authors", a1)
        with pytest.raises(TypeError):
            author.attributes["name"] = "Changed"
        (row,) = store.rows_for_parent("book_authors", b1)
        with pytest.raises(TypeError):
            row.attributes["role"] = "editor"
        assert store.get("authors", a1)["name"] == "Author1"
        assert store.get("authors", a1).version == 1
        assert store.history(entity_id=a1, operation="UPDATE") == []

    def test_added_entity_keeps_its_own_copy(self, store):
        attributes = {"name": "Ann"}
        with store.create_unit_of_work() as uow:
            author = uow.add("authors", **attributes)
            attributes["name"] = "Bob"
            uow.commit()
        assert store.get("authors", author.key)["name"] == "Ann"

    def test_unlink_missing_edge(self, seeded):
        store, a1, a2, a3, b1, b2 = seeded
        uow = store.create_unit_of_work()
        with pytest.raises(EntityNotFoundError):
            uow.unlink("book_authors", b1, a2)

    def test_link_existing_edge_is_idempotent(self, seeded):
        store, a1, a2, a3, b1, b2 = seeded
        uow = store.create_unit_of_work()
        uow.link("book_authors", b1, a1)
        assert uow.diff().is_empty

    def test_link_attributes(self, seeded):
        store, a1, a2, a3, b1, b2 = seeded
        with store.create_unit_of_work() as uow:
            uow.link("book_authors", b1, a1, role="editor")
            uow.commit()
        row = store.association_table("book_authors").get(b1, a1)
        assert row.attributes == {"role": "editor"}
        assert len(store.association_table("book_authors")) == 3


class TestCollections:

    def test_collection_view(self, seeded):
        store, a1, a2, a3, b1, b2 = seeded
        uow = store.create_unit_of_work()
        authors = uow.collection("book_authors", b2)
        assert list(authors) == [a2, a3]
        assert len(authors) == 2
        assert a3 in authors
        authors.remove(a3)
        authors.add(a1)
        assert authors.keys() == [a1, a2]
        assert [r.child_key for r in authors.rows()] == [a1, a2]

    def test_clear_and_repopulate_same_keys_commits_nothing(self, seeded):
        store, a1, a2, a3, b1, b2 = seeded
        before = _state(store)
        with store.create_unit_of_work() as uow:
            authors = uow.collection("book_authors", b2)
            authors.clear()
            authors.add(a2)
            authors.add(a3)
            assert uow.diff().is_empty
            commit = uow.commit()
        assert commit.change_count == 0
        assert _state(store) == before

    def test_replace_with_empty_under_restrict(self, seeded):
        store, a1, a2, a3, b1, b2 = seeded
        with store.create_unit_of_work() as uow:
            uow.collection("book_authors", b1).replace([])
            uow.commit()
        assert _children(store, b1) == []
        assert store.get("authors", a1)

    def test_replace_subset_under_restrict(self, seeded):
        store, a1, a2, a3, b1, b2 = seeded
        row_a3 = store.association_table("book_authors").get(b2, a3)
        with store.create_unit_of_work() as uow:
            uow.collection("book_authors", b2).replace([a3])
            uow.commit()
        assert _children(store, b2) == [a3]
        assert store.association_table("book_authors").get(b2, a3).version == row_a3.version

    def test_clear_then_add_other_author(self, seeded):
        store, a1, a2, a3, b1, b2 = seeded
        with store.create_unit_of_work("reassign") as uow:
            authors = uow.collection("book_authors", b1)
            authors.clear()
            authors.add(a2)
            uow.commit()
        assert _children(store, b1) == [a2]
        assert _children(store, b2) == [a2, a3]
        assert [r.parent_key for r in store.rows_for_child("book_authors", a2)] == [b1, b2]

    def test_replace_requires_existing_parent(self, seeded):
        store, a1, *_ = seeded
        uow = store.create_unit_of_work()
        with pytest.raises(ValidationError, match="Foreign key not found"):
            uow.replace_collection("book_authors", 99, [])
        with pytest.raises(ValidationError):
            uow.replace_collection("book_authors", 99, [a1])
        assert uow.diff().is_empty

    def test_replace_on_closed_unit_raises(self, seeded):
        store, a1, a2, a3, b1, b2 = seeded
        uow = store.create_unit_of_work()
        uow.rollback()
        with pytest.raises(StateError):
            uow.replace_collection("book_authors", b1, [])

    def test_replace_preview(self, seeded):
        store, a1, a2, a3, b1, b2 = seeded
        uow = store.create_unit_of_work()
        diff = uow.collection("book_authors", b1).replace([a2])
        assert diff.added == [a2]
        assert diff.removed == [a1]
        assert diff.conflicts == ()

    def test_assign_without_intent_conflicts_under_restrict(self, seeded):
        store, a1, a2, a3, b1, b2 = seeded
        before = _state(store)
        uow = store.create_unit_of_work()
        diff = uow.collection("book_authors", b1).assign([a2])
        assert len(diff.conflicts) == 1
        with pytest.raises(ConflictError) as exc_info:
            uow.commit()
        assert exc_info.value.policy == "restrict"
        assert exc_info.value.keys == (b1, a1)
        assert _state(store) == before
        assert uow.state is TrackerState.TRACKING

    def test_failed_commit_can_be_corrected(self, seeded):
        store, a1, a2, a3, b1, b2 = seeded
        uow = store.create_unit_of_work()
        uow.assign_collection("book_authors", b1, [a2])
        with pytest.raises(ConflictError):
            uow.commit()
        uow.unlink("book_authors", b1, a1)
        uow.commit()
        assert _children(store, b1) == [a2]

    def test_assign_under_cascade_removes_missing(self, make_store):
        store = make_store(DeletePolicy.CASCADE)
        with store.create_unit_of_work() as uow:
            a1 = uow.add("authors")
            a2 = uow.add("authors")
            b = uow.add("books")
            uow.link("book_authors", b.key, a1.key)
            uow.commit()
        with store.create_unit_of_work() as uow:
            uow.assign_collection("book_authors", b.key, [a2.key])
            uow.commit()
        assert _children(store, b.key) == [a2.key]
        reasons = [r.reason for r in store.history(operation="DELETE")]
        assert reasons == ["dropped"]

    def test_assign_keeping_edge_is_noop(self, seeded):
        store, a1, a2, a3, b1, b2 = seeded
        uow = store.create_unit_of_work()
        uow.assign_collection("book_authors", b2, [a3, a2])
        assert uow.diff().is_empty


class TestDeletePolicies:

    def test_restrict_blocks_delete(self, seeded):
        store, a1, a2, a3, b1, b2 = seeded
        before = _state(store)
        uow = store.create_unit_of_work()
        uow.delete("authors", a1)
        with pytest.raises(ConflictError) as exc_info:
            uow.commit()
        assert exc_info.value.policy == "restrict"
        assert _state(store) == before

    def test_restrict_allows_delete_after_unlink(self, seeded):
        store, a1, a2, a3, b1, b2 = seeded
        with store.create_unit_of_work() as uow:
            uow.delete("authors", a1, unlink=True)
            uow.commit()
        assert _children(store, b1) == []
        with pytest.raises(EntityNotFoundError):
            store.get("authors", a1)

    def test_restrict_parent_delete_after_replace(self, seeded):
        store, a1, a2, a3, b1, b2 = seeded
        with store.create_unit_of_work() as uow:
            uow.replace_collection("book_authors", b2, [])
            uow.delete("books", b2)
            uow.commit()
        assert store.references("authors", a2) == []
        assert [b.key for b in store.all("books")] == [b1]

    def test_cascade_removes_rows(self, make_store):
        store = make_store(DeletePolicy.CASCADE)
        with store.create_unit_of_work() as uow:
            a = uow.add("authors")
            b1 = uow.add("books")
            b2 = uow.add("books")
            uow.link("book_authors", b1.key, a.key)
            uow.link("book_authors", b2.key, a.key)
            uow.commit()
        with store.create_unit_of_work() as uow:
            uow.delete("authors", a.key)
            uow.commit()
        assert len(store.association_table("book_authors")) == 0
        assert len(store.all("books")) == 2

    def test_set_null_orphans_rows(self, make_store):
        store = make_store(DeletePolicy.SET_NULL)
        with store.create_unit_of_work() as uow:
            a = uow.add("authors")
            b = uow.add("books")
            uow.link("book_authors", b.key, a.key)
            uow.commit()
        with store.create_unit_of_work() as uow:
            uow.delete("books", b.key)
            uow.commit()
        assert len(store.association_table("book_authors")) == 0
        assert store.history(operation="DELETE", entity_type="book_authors")[0].reason == "orphaned"

    def test_delete_new_entity_takes_its_links(self, seeded):
        store, a1, a2, a3, b1, b2 = seeded
        before = _state(store)
        with store.create_unit_of_work() as uow:
            a4 = uow.add("authors")
            uow.link("book_authors", b1, a4.key)
            uow.delete("authors", a4.key)
            assert uow.diff().is_empty
            uow.commit()
        assert _state(store) == before


class TestAtomicity:

    def test_conflict_leaves_tables_unchanged(self, seeded):
        store, a1, a2, a3, b1, b2 = seeded
        before = _state(store)
        commits = len(store.commits())
        uow = store.create_unit_of_work()
        uow.add("authors", name="New")
        uow.update("books", b1, title="Changed")
        uow.link("book_authors", b1, a3)
        uow.delete("authors", a2)
        with pytest.raises(ConflictError):
            uow.commit()
        assert _state(store) == before
        assert len(store.commits()) == commits

    def test_failure_while_applying_restores(self, seeded, monkeypatch):
        store, a1, a2, a3, b1, b2 = seeded
        before = _state(store)

        def explode(plan):
            raise RuntimeError("disk on fire")

        uow = store.create_unit_of_work()
        uow.update("authors", a1, name="Changed")
        uow.collection("book_authors", b1).replace([a2])
        monkeypatch.setattr(store.graph, "apply_rows", explode)
        with pytest.raises(RuntimeError):
            uow.commit()
        assert _state(store) == before

    def test_failure_while_recording_history_restores(self, seeded, monkeypatch):
        store, a1, a2, a3, b1, b2 = seeded
        before = _state(store)
        commits = store.commits()
        records = store.history()

        def explode(log, commit, plan):
            raise RuntimeError("history unavailable")

        uow = store.create_unit_of_work()
        author = uow.add("authors", name="New")
        uow.link("book_authors", b1, author.key)
        monkeypatch.setattr(_hist, "record_plan", explode)
        with pytest.raises(RuntimeError):
            uow.commit()
        assert _state(store) == before
        assert store.commits() == commits
        assert store.history() == records
        assert uow.state is TrackerState.TRACKING

        monkeypatch.undo()
        commit = uow.commit()
        assert commit.id == len(commits) + 1
        assert store.get("authors", author.key)["name"] == "New"
        assert author.key in _children(store, b1)

    def test_date_attribute_commits_once(self, store):
        with store.create_unit_of_work() as uow:
            author = uow.add("authors", name="X", born=datetime.date(2000, 1, 1))
            commit = uow.commit()
        assert store.get("authors", author.key)["born"] == datetime.date(2000, 1, 1)
        assert [c.id for c in store.commits()] == [commit.id]
        (record,) = store.history(entity_type="authors")
        assert json.loads(record.new_value) == {"name": "X", "born": "2000-01-01"}


class TestConcurrency:

    def test_stale_collection_conflicts(self, seeded):
        store, a1, a2, a3, b1, b2 = seeded
        stale = store.create_unit_of_work("stale")
        stale.collection("book_authors", b1)

        with store.create_unit_of_work("other") as other:
            other.link("book_authors", b1, a3)
            other.commit()

        stale.replace_collection("book_authors", b1, [a2])
        with pytest.raises(ConflictError) as exc_info:
            stale.commit()
        assert exc_info.value.policy == "concurrency"

    def test_stale_entity_conflicts(self, seeded):
        store, a1, *_ = seeded
        stale = store.create_unit_of_work()
        stale.get("authors", a1)
        with store.create_unit_of_work() as other:
            other.update("authors", a1, name="Other")
            other.commit()
        stale.update("authors", a1, born=1900)
        with pytest.raises(ConflictError, match="changed since"):
            stale.commit()

    def test_untouched_reads_do_not_conflict(self, seeded):
        store, a1, a2, *_ = seeded
        uow = store.create_unit_of_work()
        uow.get("authors", a1)
        with store.create_unit_of_work() as other:
            other.update("authors", a1, name="Other")
            other.commit()
        uow.update("authors", a2, name="Fine")
        uow.commit()
        assert store.get("authors", a2)["name"] == "Fine"

    def test_commits_are_serialized(self, store):
        with store.create_unit_of_work() as uow:
            books = [uow.add("books", title=f"B{i}") for i in range(8)]
            author = uow.add("authors")
            uow.commit()

        errors = []

        def link(book):
            try:
                with store.create_unit_of_work() as u:
                    u.link("book_authors", book.key, author.key)
                    u.commit()
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=link, args=(b,)) for b in books]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert errors == []
        assert len(store.rows_for_child("book_authors", author.key)) == 8


class TestScenario:
    """Seeded authors and books, then book1's authors replaced by author2."""

    def test_replace_book_authors(self, seeded):
        store, a1, a2, a3, b1, b2 = seeded
        with store.create_unit_of_work("replace book1 authors") as uow:
            book = uow.get("books", b1)
            authors = uow.collection("book_authors", book.key)
            authors.clear()
            authors.add(a2)
            commit = uow.commit()

        assert _children(store, b1) == [a2]
        assert _children(store, b2) == [a2, a3]
        assert [a.key for a in store.all("authors")] == [a1, a2, a3]
        assert commit.change_count == 2

        records = store.history(commit_id=commit.id)
        assert [(r.operation, r.entity_id, r.reason) for r in records] == [
            ("DELETE", f"{b1}->{a1}", "removed"),
            ("CREATE", f"{b1}->{a2}", None),
        ]
        findings = store.validate()
        assert [(r.rule_id, r.entity_id) for r in findings] == [("VAL-ENT-001", str(a1))]
