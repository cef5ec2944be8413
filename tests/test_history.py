"""Tests for the commit log / edit history."""

import datetime
import time

import pytest

from relstore import ConflictError, DeletePolicy


class TestHistoryCreate:

    def test_create_records_history(self, store):
        with store.create_unit_of_work() as uow:
            author = uow.add("authors", name="Ann")
            uow.commit()
        hist = store.history(entity_type="authors", entity_id=author.key)
        assert [h.operation for h in hist] == ["CREATE"]
        assert hist[0].new_value == '{"name": "Ann"}'

    def test_link_records_row_create(self, seeded):
        store, a1, a2, a3, b1, b2 = seeded
        hist = store.history(entity_type="book_authors")
        assert sorted(h.entity_id for h in hist) == [f"{b1}->{a1}", f"{b2}->{a2}", f"{b2}->{a3}"]


class TestHistoryUpdate:

    def test_update_records_field_change(self, seeded):
        store, a1, *_ = seeded
        with store.create_unit_of_work() as uow:
            uow.update("authors", a1, name="Renamed", born=1950)
            uow.commit()
        hist = store.history(entity_type="authors", entity_id=a1, operation="UPDATE")
        assert [h.field_name for h in hist] == ["born", "name"]
        rec = hist[1]
        # History stores JSON-encoded values
        assert rec.old_value == '"Author1"'
        assert rec.new_value == '"Renamed"'
        assert hist[0].old_value == "null"

    def test_row_attribute_update(self, seeded):
        store, a1, a2, a3, b1, b2 = seeded
        with store.create_unit_of_work() as uow:
            uow.link("book_authors", b1, a1, role="editor")
            uow.commit()
        hist = store.history(entity_type="book_authors", operation="UPDATE")
        assert [(h.entity_id, h.field_name, h.new_value) for h in hist] == [
            (f"{b1}->{a1}", "role", '"editor"'),
        ]


class TestHistoryDelete:

    def test_delete_records_history(self, seeded):
        store, a1, a2, a3, b1, b2 = seeded
        with store.create_unit_of_work() as uow:
            uow.delete("books", b1, unlink=True)
            uow.commit()
        hist = store.history(entity_type="books", entity_id=b1)
        assert any(h.operation == "DELETE" for h in hist)
        rows = store.history(entity_type="book_authors", operation="DELETE")
        assert [(h.entity_id, h.reason) for h in rows] == [(f"{b1}->{a1}", "removed")]

    def test_cascade_reason(self, make_store):
        store = make_store(DeletePolicy.CASCADE)
        with store.create_unit_of_work() as uow:
            a = uow.add("authors")
            b = uow.add("books")
            uow.link("book_authors", b.key, a.key)
            uow.commit()
        with store.create_unit_of_work() as uow:
            uow.delete("books", b.key)
            uow.commit()
        rows = store.history(entity_type="book_authors", operation="DELETE")
        assert [h.reason for h in rows] == ["cascade"]


class TestCommits:

    def test_commit_records(self, seeded):
        store, *_ = seeded
        commits = store.commits()
        assert [(c.id, c.name) for c in commits] == [(1, "seed")]
        assert commits[0].change_count == 8

    def test_failed_commit_not_recorded(self, seeded):
        store, a1, *_ = seeded
        uow = store.create_unit_of_work()
        uow.delete("authors", a1)
        with pytest.raises(ConflictError):
            uow.commit()
        assert len(store.commits()) == 1
        assert not store.history(operation="DELETE")

    def test_filter_by_commit(self, seeded):
        store, a1, *_ = seeded
        with store.create_unit_of_work("second") as uow:
            uow.update("authors", a1, name="X")
            commit = uow.commit()
        hist = store.history(commit_id=commit.id)
        assert len(hist) == 1
        assert hist[0].commit_id == 2


class TestHistoryTimestamp:

    def test_filter_by_timestamp(self, store):
        with store.create_unit_of_work() as uow:
            first = uow.add("authors", name="First")
            uow.commit()

        time.sleep(0.01)
        middle = datetime.datetime.now(datetime.timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")
        time.sleep(0.01)

        with store.create_unit_of_work() as uow:
            second = uow.add("authors", name="Second")
            uow.commit()

        changes = store.history(since=middle)
        assert any(h.entity_id == str(second.key) for h in changes)
        assert not any(h.entity_id == str(first.key) for h in changes)
