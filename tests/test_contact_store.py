"""
Tests for contact_store.py - SQLite and in-memory contact stores.
"""

import sqlite3
from datetime import datetime

import pytest

from contact_store import SqliteContactStore
from db_models import Contact, LinkPrecedence, Primary, Secondary
from db_setup import get_db_connection
from exceptions import DuplicateContact, StoreUnavailable, StoreWriteFailed
from identity import IdentityView, identify


class TestSqliteContactStore:
    """SQLite-backed store."""

    def test_save_assigns_id_and_timestamps(self, sqlite_store):
        saved = sqlite_store.save(Contact(email="a@x", phone_number="1"))

        assert saved.id == 1
        assert saved.created_at == datetime(2023, 4, 1, 0, 0, 0)
        assert saved.updated_at == saved.created_at

    def test_round_trip(self, sqlite_store):
        primary = sqlite_store.save(Contact(email="a@x", phone_number="1"))
        secondary = sqlite_store.save(
            Contact(email="b@x", phone_number="1", link=Secondary(primary.id))
        )

        loaded = sqlite_store.find_by_id(secondary.id)

        assert loaded == secondary
        assert loaded.link_precedence is LinkPrecedence.SECONDARY
        assert loaded.linked_id == primary.id

    def test_lookups(self, sqlite_store):
        a = sqlite_store.save(Contact(email="a@x", phone_number="1"))
        b = sqlite_store.save(Contact(email="b@x", phone_number="1", link=Secondary(a.id)))
        c = sqlite_store.save(Contact(email="c@x", phone_number="2"))

        assert [x.id for x in sqlite_store.find_by_email("b@x")] == [b.id]
        assert [x.id for x in sqlite_store.find_by_phone_number("1")] == [a.id, b.id]
        assert [x.id for x in sqlite_store.find_by_linked_id(a.id)] == [b.id]
        assert [x.id for x in sqlite_store.find_by_emails(["c@x", "a@x"])] == [a.id, c.id]
        assert [x.id for x in sqlite_store.find_by_ids([c.id, a.id, c.id])] == [a.id, c.id]
        assert sqlite_store.find_by_id(99) is None
        assert sqlite_store.find_by_emails([]) == []

    def test_update_refreshes_updated_at_only(self, sqlite_store):
        a = sqlite_store.save(Contact(email="a@x"))
        b = sqlite_store.save(Contact(phone_number="1"))

        demoted = sqlite_store.save(Contact(
            id=b.id, phone_number="1", link=Secondary(a.id), created_at=b.created_at,
        ))

        loaded = sqlite_store.find_by_id(b.id)
        assert loaded.linked_id == a.id
        assert loaded.created_at == b.created_at
        assert loaded.updated_at == demoted.updated_at > b.updated_at

    def test_update_of_missing_contact_fails(self, sqlite_store):
        with pytest.raises(StoreWriteFailed):
            sqlite_store.save(Contact(id=5, email="a@x"))

    def test_insert_keeps_given_id_and_created_at(self, sqlite_store):
        created_at = datetime(2020, 1, 1, 12, 30)

        inserted = sqlite_store.insert(Contact(id=10, email="a@x", created_at=created_at))

        loaded = sqlite_store.find_by_id(10)
        assert loaded.created_at == created_at
        assert inserted == loaded

    def test_duplicate_pair_is_rejected(self, sqlite_store):
        sqlite_store.save(Contact(email="a@x", phone_number="1"))

        with pytest.raises(DuplicateContact):
            sqlite_store.save(Contact(email="a@x", phone_number="1"))

    def test_duplicate_id_is_rejected(self, sqlite_store):
        sqlite_store.insert(Contact(id=3, email="a@x"))

        with pytest.raises(DuplicateContact):
            sqlite_store.insert(Contact(id=3, email="b@x"))

    def test_check_violation_is_a_write_failure(self, sqlite_store):
        with pytest.raises(StoreWriteFailed) as excinfo:
            sqlite_store.save(Contact())

        assert not isinstance(excinfo.value, DuplicateContact)

    def test_deleted_rows_are_invisible(self, sqlite_store, db_path):
        a = sqlite_store.save(Contact(email="a@x"))
        conn = get_db_connection(db_path)
        conn.execute("UPDATE Contact SET deletedAt = ? WHERE id = ?", ("2023-05-01T00:00:00", a.id))
        conn.close()

        assert sqlite_store.find_by_email("a@x") == []
        assert sqlite_store.find_by_id(a.id) is None

    def test_transaction_rolls_back_on_error(self, sqlite_store):
        with pytest.raises(RuntimeError):
            with sqlite_store.transaction():
                sqlite_store.save(Contact(email="a@x"))
                raise RuntimeError("boom")

        assert sqlite_store.find_by_email("a@x") == []

    def test_transaction_commits(self, sqlite_store, db_path):
        with sqlite_store.transaction():
            sqlite_store.save(Contact(email="a@x"))
            with sqlite_store.transaction():
                sqlite_store.save(Contact(email="b@x"))

        other = SqliteContactStore(db_path)
        assert [c.email for c in other.find_by_emails(["a@x", "b@x"])] == ["a@x", "b@x"]

    def test_transaction_holds_write_lock(self, sqlite_store, db_path):
        with sqlite_store.transaction():
            sqlite_store.save(Contact(email="a@x"))
            conn = sqlite3.connect(db_path, timeout=0)
            with pytest.raises(sqlite3.OperationalError):
                conn.execute("BEGIN IMMEDIATE")
            conn.close()

    def test_missing_table_is_unavailable(self, tmp_path):
        store = SqliteContactStore(str(tmp_path / "empty.db"))

        with pytest.raises(StoreUnavailable):
            store.find_by_email("a@x")

    def test_schema_rejects_secondary_without_link(self, db_path):
        conn = get_db_connection(db_path)
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute(
                "INSERT INTO Contact (email, linkPrecedence) VALUES (?, ?)",
                ("a@x", LinkPrecedence.SECONDARY.value),
            )
        conn.close()

    def test_lorraine_then_mcfly(self, sqlite_store):
        identify(sqlite_store, "lorraine@hillvalley.edu", "123456")

        view = identify(sqlite_store, "mcfly@hillvalley.edu", "123456")

        assert view == IdentityView(
            primary_id=1,
            emails=["lorraine@hillvalley.edu", "mcfly@hillvalley.edu"],
            phone_numbers=["123456"],
            secondary_ids=[2],
        )

    def test_merge_persists(self, sqlite_store):
        a = sqlite_store.save(Contact(email="a@x"))
        b = sqlite_store.save(Contact(phone_number="111"))

        identify(sqlite_store, "a@x", "111")

        assert sqlite_store.find_by_id(a.id).link == Primary()
        assert sqlite_store.find_by_id(b.id).link == Secondary(a.id)
        assert len(sqlite_store.find_by_linked_id(a.id)) == 2


class TestInMemoryContactStore:
    """Dict-backed store used by the core tests."""

    def test_returns_copies(self, store):
        saved = store.save(Contact(email="a@x"))

        loaded = store.find_by_id(saved.id)
        loaded.email = "changed@x"

        assert store.find_by_id(saved.id).email == "a@x"

    def test_ids_are_never_reused(self, store):
        store.insert(Contact(id=5, email="a@x"))

        assert store.save(Contact(email="b@x")).id == 6

    def test_duplicate_pair_is_rejected(self, store):
        store.save(Contact(email="a@x", phone_number="1"))

        with pytest.raises(DuplicateContact):
            store.save(Contact(email="a@x", phone_number="1"))

    def test_transaction_restores_state(self, store):
        store.save(Contact(email="a@x"))

        with pytest.raises(RuntimeError):
            with store.transaction():
                store.save(Contact(email="b@x"))
                raise RuntimeError("boom")

        assert [c.email for c in store.all()] == ["a@x"]
        assert store.save(Contact(email="c@x")).id == 2
