"""Shared test fixtures for relstore."""

import pytest

from relstore import DeletePolicy, Store


def _library(policy=DeletePolicy.RESTRICT):
    store = Store("library")
    store.define_entity("authors")
    store.define_entity("books")
    store.define_relationship("book_authors", "books", "authors", on_delete=policy)
    return store


@pytest.fixture
def make_store():
    """Factory for an empty books/authors store with a given delete policy."""
    return _library


@pytest.fixture
def store():
    """Empty books/authors store, restrict on delete."""
    return _library()


@pytest.fixture
def seeded(store):
    """Three authors and two books; book1 by author1, book2 by author2 and 3."""
    with store.create_unit_of_work("seed") as uow:
        a1 = uow.add("authors", name="Author1")
        a2 = uow.add("authors", name="Author2")
        a3 = uow.add("authors", name="Author3")
        b1 = uow.add("books", title="Book1")
        b2 = uow.add("books", title="Book2")
        uow.link("book_authors", b1.key, a1.key)
        uow.link("book_authors", b2.key, a2.key)
        uow.link("book_authors", b2.key, a3.key)
        uow.commit()
    return store, a1.key, a2.key, a3.key, b1.key, b2.key
