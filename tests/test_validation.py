"""Tests for the store integrity checks."""

from relstore import AssociationRow
from relstore.validator import validate_relationship


class TestValidateClean:

    def test_validate_clean(self, seeded):
        store, *_ = seeded
        results = store.validate()
        errors = [r for r in results if r.severity == "ERROR"]
        assert errors == []
        assert results == []


class TestDanglingRows:

    def test_missing_parent_detected(self, seeded):
        store, a1, *_ = seeded
        # Bypass the unit of work to corrupt the table
        store.association_table("book_authors").upsert(
            AssociationRow("book_authors", 99, a1)
        )
        results = validate_relationship(store, "book_authors")
        assert [(r.rule_id, r.entity_id) for r in results] == [("VAL-ASC-001", f"99->{a1}")]
        assert results[0].details == {"kind": "books", "key": 99}

    def test_missing_child_detected(self, seeded):
        store, a1, a2, a3, b1, b2 = seeded
        store.association_table("book_authors").upsert(
            AssociationRow("book_authors", b1, 42)
        )
        results = store.validate()
        assert any(r.rule_id == "VAL-ASC-002" and r.severity == "ERROR" for r in results)

    def test_index_mismatch_detected(self, seeded):
        store, a1, a2, a3, b1, b2 = seeded
        table = store.association_table("book_authors")
        table._by_child[a3].discard(b2)
        results = store.validate()
        assert [r.rule_id for r in results if r.severity == "ERROR"] == ["VAL-ASC-003"]


class TestUnlinkedEntities:

    def test_entity_without_edges_warns(self, seeded):
        store, a1, a2, a3, b1, b2 = seeded
        with store.create_unit_of_work() as uow:
            uow.unlink("book_authors", b1, a1)
            uow.commit()
        results = store.validate()
        assert sorted((r.entity_type, r.entity_id) for r in results) == [
            ("authors", str(a1)),
            ("books", str(b1)),
        ]
        assert all(r.severity == "WARNING" for r in results)
