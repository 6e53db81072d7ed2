"""Record store collaborators for the identity core.

``SqliteContactStore`` is the production store. ``InMemoryContactStore``
holds contacts in a dict and is what the core is tested against.
"""

import copy
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Protocol

from db_models import Contact, LinkPrecedence, Primary, Secondary
from db_setup import get_db_connection
from exceptions import DuplicateContact, StoreUnavailable, StoreWriteFailed

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class ContactStore(Protocol):
    """Lookups and writes the identity core issues against stored contacts."""

    def find_by_email(self, email: str) -> List[Contact]:
        ...

    def find_by_phone_number(self, phone: str) -> List[Contact]:
        ...

    def find_by_linked_id(self, primary_id: int) -> List[Contact]:
        """Return the secondaries whose linkedId is ``primary_id``."""
        ...

    def find_by_id(self, contact_id: int) -> Optional[Contact]:
        ...

    def find_by_emails(self, emails: Iterable[str]) -> List[Contact]:
        ...

    def find_by_phone_numbers(self, phones: Iterable[str]) -> List[Contact]:
        ...

    def find_by_linked_ids(self, primary_ids: Iterable[int]) -> List[Contact]:
        ...

    def find_by_ids(self, contact_ids: Iterable[int]) -> List[Contact]:
        ...

    def save(self, contact: Contact) -> Contact:
        """Insert a new contact (``id`` is None) or update an existing one."""
        ...

    def insert(self, contact: Contact) -> Contact:
        """Insert keeping a caller-supplied ``id`` and ``created_at``."""
        ...

    def transaction(self):
        """Context manager: commit on exit, roll back on error."""
        ...


def _parse_timestamp(value) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _row_to_contact(row) -> Contact:
    if row["linkPrecedence"] == LinkPrecedence.SECONDARY.value:
        link = Secondary(row["linkedId"])
    else:
        link = Primary()
    return Contact(
        id=row["id"],
        email=row["email"],
        phone_number=row["phoneNumber"],
        link=link,
        created_at=_parse_timestamp(row["createdAt"]),
        updated_at=_parse_timestamp(row["updatedAt"]),
        deleted_at=_parse_timestamp(row["deletedAt"]),
    )


class SqliteContactStore:
    """Contact store backed by the ``Contact`` table.

    Inside ``transaction()`` every call shares one connection holding
    SQLite's write lock (``BEGIN IMMEDIATE``), so overlapping identify
    requests run one after another. Outside a transaction each call opens
    its own short-lived connection.
    """

    def __init__(self, db_path: Optional[str] = None, clock: Clock = datetime.now):
        self.db_path = db_path
        self.clock = clock
        self._conn: Optional[sqlite3.Connection] = None

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if self._conn is not None:
            yield
            return

        try:
            conn = get_db_connection(self.db_path)
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"Could not connect to {self.db_path}: {exc}") from exc
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as exc:
            conn.close()
            raise StoreUnavailable(f"Could not open a transaction: {exc}") from exc

        self._conn = conn
        try:
            yield
        except BaseException:
            logger.debug("Rolling back contact transaction on %s", self.db_path)
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        else:
            try:
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise StoreWriteFailed(f"Could not commit transaction: {exc}") from exc
        finally:
            self._conn = None
            conn.close()

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        if self._conn is not None:
            yield self._conn
            return
        conn = get_db_connection(self.db_path)
        try:
            yield conn
        finally:
            conn.close()

    def _select(self, where: str, params) -> List[Contact]:
        query = f"""
            SELECT * FROM Contact
            WHERE deletedAt IS NULL AND ({where})
            ORDER BY createdAt ASC, id ASC
        """
        try:
            with self._connection() as conn:
                rows = conn.execute(query, tuple(params)).fetchall()
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"Contact lookup failed: {exc}") from exc
        return [_row_to_contact(row) for row in rows]

    def _select_in(self, column: str, values: Iterable) -> List[Contact]:
        values = list(dict.fromkeys(v for v in values if v is not None))
        if not values:
            return []
        placeholders = ", ".join("?" * len(values))
        return self._select(f"{column} IN ({placeholders})", values)

    def find_by_email(self, email: str) -> List[Contact]:
        return self.find_by_emails([email])

    def find_by_phone_number(self, phone: str) -> List[Contact]:
        return self.find_by_phone_numbers([phone])

    def find_by_linked_id(self, primary_id: int) -> List[Contact]:
        return self.find_by_linked_ids([primary_id])

    def find_by_id(self, contact_id: int) -> Optional[Contact]:
        found = self.find_by_ids([contact_id])
        return found[0] if found else None

    def find_by_emails(self, emails: Iterable[str]) -> List[Contact]:
        return self._select_in("email", emails)

    def find_by_phone_numbers(self, phones: Iterable[str]) -> List[Contact]:
        return self._select_in("phoneNumber", phones)

    def find_by_linked_ids(self, primary_ids: Iterable[int]) -> List[Contact]:
        return self._select_in("linkedId", primary_ids)

    def find_by_ids(self, contact_ids: Iterable[int]) -> List[Contact]:
        return self._select_in("id", contact_ids)

    def _write(self, query: str, params) -> sqlite3.Cursor:
        try:
            with self._connection() as conn:
                return conn.execute(query, params)
        except sqlite3.IntegrityError as exc:
            # UNIQUE covers both the id primary key and the email/phone pair index
            if str(exc).startswith("UNIQUE constraint failed"):
                raise DuplicateContact(f"Contact already exists: {exc}") from exc
            raise StoreWriteFailed(f"Contact violates a store constraint: {exc}") from exc
        except sqlite3.Error as exc:
            raise StoreWriteFailed(f"Contact write failed: {exc}") from exc

    def insert(self, contact: Contact) -> Contact:
        now = self.clock()
        created_at = contact.created_at or now
        cursor = self._write("""
            INSERT INTO Contact (id, phoneNumber, email, linkedId, linkPrecedence, createdAt, updatedAt)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (
            contact.id,
            contact.phone_number,
            contact.email,
            contact.linked_id,
            contact.link_precedence.value,
            created_at.isoformat(),
            now.isoformat(),
        ))
        contact_id = contact.id if contact.id is not None else cursor.lastrowid
        return replace(contact, id=contact_id, created_at=created_at, updated_at=now)

    def save(self, contact: Contact) -> Contact:
        if contact.id is None:
            return self.insert(contact)

        now = self.clock()
        cursor = self._write("""
            UPDATE Contact
            SET email = ?, phoneNumber = ?, linkedId = ?, linkPrecedence = ?, updatedAt = ?
            WHERE id = ?
        """, (
            contact.email,
            contact.phone_number,
            contact.linked_id,
            contact.link_precedence.value,
            now.isoformat(),
            contact.id,
        ))
        if cursor.rowcount == 0:
            raise StoreWriteFailed(f"Contact {contact.id} does not exist")
        return replace(contact, updated_at=now)


class InMemoryContactStore:
    """Stores contacts in a dict keyed by id. Lookups return copies."""

    def __init__(self, clock: Clock = datetime.now) -> None:
        self.clock = clock
        self._by_id: Dict[int, Contact] = {}
        self._next_id = 1
        self._in_transaction = False

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if self._in_transaction:
            yield
            return
        snapshot = (copy.deepcopy(self._by_id), self._next_id)
        self._in_transaction = True
        try:
            yield
        except BaseException:
            self._by_id, self._next_id = snapshot
            raise
        finally:
            self._in_transaction = False

    def all(self) -> List[Contact]:
        return self._matching(lambda contact: True)

    def _matching(self, predicate) -> List[Contact]:
        found = [
            contact for contact in self._by_id.values()
            if contact.deleted_at is None and predicate(contact)
        ]
        found.sort(key=lambda contact: contact.sort_key)
        return [copy.copy(contact) for contact in found]

    def find_by_email(self, email: str) -> List[Contact]:
        return self.find_by_emails([email])

    def find_by_phone_number(self, phone: str) -> List[Contact]:
        return self.find_by_phone_numbers([phone])

    def find_by_linked_id(self, primary_id: int) -> List[Contact]:
        return self.find_by_linked_ids([primary_id])

    def find_by_id(self, contact_id: int) -> Optional[Contact]:
        found = self.find_by_ids([contact_id])
        return found[0] if found else None

    def find_by_emails(self, emails: Iterable[str]) -> List[Contact]:
        wanted = {email for email in emails if email is not None}
        return self._matching(lambda contact: contact.email in wanted) if wanted else []

    def find_by_phone_numbers(self, phones: Iterable[str]) -> List[Contact]:
        wanted = {phone for phone in phones if phone is not None}
        return self._matching(lambda contact: contact.phone_number in wanted) if wanted else []

    def find_by_linked_ids(self, primary_ids: Iterable[int]) -> List[Contact]:
        wanted = {primary_id for primary_id in primary_ids if primary_id is not None}
        return self._matching(lambda contact: contact.linked_id in wanted) if wanted else []

    def find_by_ids(self, contact_ids: Iterable[int]) -> List[Contact]:
        wanted = {contact_id for contact_id in contact_ids if contact_id is not None}
        return self._matching(lambda contact: contact.id in wanted) if wanted else []

    def insert(self, contact: Contact) -> Contact:
        if contact.id is not None and contact.id in self._by_id:
            raise DuplicateContact(f"Contact {contact.id} already exists")
        if contact.email is not None and contact.phone_number is not None:
            for existing in self._by_id.values():
                if (
                    existing.deleted_at is None
                    and existing.email == contact.email
                    and existing.phone_number == contact.phone_number
                ):
                    raise DuplicateContact(
                        f"Contact {existing.id} already holds this email and phone number"
                    )

        now = self.clock()
        contact_id = contact.id if contact.id is not None else self._next_id
        self._next_id = max(self._next_id, contact_id + 1)
        stored = replace(
            contact,
            id=contact_id,
            created_at=contact.created_at or now,
            updated_at=now,
        )
        self._by_id[contact_id] = stored
        return copy.copy(stored)

    def save(self, contact: Contact) -> Contact:
        if contact.id is None:
            return self.insert(contact)
        if contact.id not in self._by_id:
            raise StoreWriteFailed(f"Contact {contact.id} does not exist")

        stored = replace(
            contact,
            created_at=self._by_id[contact.id].created_at,
            updated_at=self.clock(),
        )
        self._by_id[contact.id] = stored
        return copy.copy(stored)
