"""Identity resolution over a contact store.

An identify request carries an email and/or a phone number. ``discover``
collects every stored contact transitively connected to it (shared email,
shared phone, or primary/secondary link). ``reconcile`` makes the oldest
member the single primary of that cluster, folds every other member under
it, and records the request as a new secondary when it adds a new
combination of known details. ``aggregate`` turns the cluster into the
consolidated view returned to the caller.
"""

import logging
from collections import deque
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional, Set, Tuple

from contact_store import ContactStore
from db_models import Contact, Link, Primary, Secondary
from exceptions import InconsistentCluster, InvalidInput

logger = logging.getLogger(__name__)


@dataclass
class IdentityView:
    primary_id: int
    emails: List[str]
    phone_numbers: List[str]
    secondary_ids: List[int]


def _require_detail(email: Optional[str], phone: Optional[str]) -> None:
    if email is None and phone is None:
        raise InvalidInput("Either email or phoneNumber must be provided")


def discover(store: ContactStore, email: Optional[str] = None,
             phone: Optional[str] = None) -> List[Contact]:
    """Return every stored contact connected to the given email/phone.

    Breadth-first over the contact graph, re-reading links from the store
    rather than trusting a record's ``linked_id`` to point at the current
    primary. Each BFS wave issues at most one batched lookup per kind, and
    no email, phone or id is looked up twice.
    """
    _require_detail(email, phone)

    visited: Dict[int, Contact] = {}
    queue = deque()

    def visit(found: Iterable[Contact]) -> None:
        for contact in found:
            if contact.id not in visited:
                visited[contact.id] = contact
                queue.append(contact)

    seen_emails: Set[str] = set()
    seen_phones: Set[str] = set()
    expanded_primaries: Set[int] = set()
    fetched_parents: Set[int] = set()

    def unseen(values: Iterable, seen: Set) -> List:
        fresh = [value for value in set(values) if value is not None and value not in seen]
        seen.update(fresh)
        return fresh

    visit(store.find_by_emails(unseen([email], seen_emails)))
    visit(store.find_by_phone_numbers(unseen([phone], seen_phones)))

    waves = 0
    while queue:
        waves += 1
        wave = list(queue)
        queue.clear()

        primary_ids = [contact.id for contact in wave if contact.is_primary]
        parent_ids = [contact.linked_id for contact in wave if not contact.is_primary]

        # A secondary pulls in its primary and all of that primary's secondaries.
        parents = store.find_by_ids(unseen(parent_ids, fetched_parents))
        visit(parents)
        primary_ids.extend(parent.id for parent in parents)
        visit(store.find_by_linked_ids(unseen(primary_ids, expanded_primaries)))

        visit(store.find_by_emails(unseen((c.email for c in wave), seen_emails)))
        visit(store.find_by_phone_numbers(unseen((c.phone_number for c in wave), seen_phones)))

    logger.debug(
        "Discovered %d contact(s) in %d wave(s)", len(visited), waves,
    )
    return list(visited.values())


def assign_links(cluster: Iterable[Contact]) -> Dict[int, Link]:
    """Map each member id to the link it should hold once reconciled."""
    members = sorted(cluster, key=lambda contact: contact.sort_key)
    primary = members[0]
    folded = Secondary(primary.id)
    return {
        contact.id: Primary() if contact.id == primary.id else folded
        for contact in members
    }


def reconcile(store: ContactStore, cluster: Iterable[Contact], email: Optional[str] = None,
              phone: Optional[str] = None) -> Tuple[Contact, List[Contact]]:
    members = sorted(cluster, key=lambda contact: contact.sort_key)
    if not members:
        raise ValueError("Cannot reconcile an empty cluster")

    links = assign_links(members)
    primary = members[0]

    if not primary.is_primary:
        logger.info("Promoting contact %s to primary of its cluster", primary.id)
        primary = store.save(replace(primary, link=links[primary.id]))
        members[0] = primary

    for index, contact in enumerate(members):
        if contact.id != primary.id and contact.is_primary:
            logger.info("Merging primary contact %s into primary %s", contact.id, primary.id)
            members[index] = store.save(replace(contact, link=links[contact.id]))

    for index, contact in enumerate(members):
        if not contact.is_primary and contact.link != links[contact.id]:
            logger.info(
                "Relinking contact %s from %s to primary %s",
                contact.id, contact.linked_id, primary.id,
            )
            members[index] = store.save(replace(contact, link=links[contact.id]))

    if email is not None and phone is not None:
        exact = any(c.email == email and c.phone_number == phone for c in members)
        email_seen = any(c.email == email for c in members)
        phone_seen = any(c.phone_number == phone for c in members)

        if not exact and (email_seen or phone_seen):
            created = store.save(Contact(
                email=email,
                phone_number=phone,
                link=Secondary(primary.id),
            ))
            logger.info("Created secondary contact %s under primary %s", created.id, primary.id)
            members.append(created)

    _check_consistent(primary, members)
    return primary, members


def _check_consistent(primary: Contact, members: List[Contact]) -> None:
    primaries = [contact.id for contact in members if contact.is_primary]
    if primaries != [primary.id]:
        raise InconsistentCluster(
            f"Cluster of primary {primary.id} has primaries {primaries}"
        )
    strays = [
        contact.id for contact in members
        if not contact.is_primary and contact.linked_id != primary.id
    ]
    if strays:
        raise InconsistentCluster(
            f"Contacts {strays} are not linked to primary {primary.id}"
        )


def aggregate(primary: Contact, members: Iterable[Contact]) -> IdentityView:
    """Build the consolidated view, primary's details first."""
    others = sorted(
        (contact for contact in members if contact.id != primary.id),
        key=lambda contact: contact.sort_key,
    )
    ordered = [primary] + others

    emails = dict.fromkeys(c.email for c in ordered if c.email is not None)
    phones = dict.fromkeys(c.phone_number for c in ordered if c.phone_number is not None)
    secondary_ids = dict.fromkeys(contact.id for contact in others)

    return IdentityView(
        primary_id=primary.id,
        emails=list(emails),
        phone_numbers=list(phones),
        secondary_ids=list(secondary_ids),
    )


def identify(store: ContactStore, email: Optional[str] = None,
             phone: Optional[str] = None) -> IdentityView:
    """Resolve an email/phone fragment to its consolidated identity."""
    _require_detail(email, phone)

    with store.transaction():
        cluster = discover(store, email, phone)

        if not cluster:
            contact = store.save(Contact(email=email, phone_number=phone))
            logger.info("Created primary contact %s", contact.id)
            return aggregate(contact, [contact])

        primary, members = reconcile(store, cluster, email, phone)
        return aggregate(primary, members)
