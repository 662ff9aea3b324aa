"""Identity reconciliation over primary/secondary contact clusters.

A cluster is every contact reachable by sharing an email or a phone number.
It is stored as a depth-1 tree: one PRIMARY row and SECONDARY rows whose
`linkedId` points straight at it. `reconcile` keeps that shape while it
links new signatures, merges clusters that a signature bridges, and builds
the consolidated view.
"""

from typing import Dict, Iterable, List, Optional

import structlog

from db_models import ContactRecord, ContactResponse, IdentifyRequest, LinkPrecedence
from db_setup import ContactStore, SQLiteContactStore
from errors import InvariantViolationError

logger = structlog.get_logger()


def oldest(records: Iterable[ContactRecord]) -> ContactRecord:
    """Oldest record by createdAt, smallest id on ties."""
    return min(records, key=lambda record: record.age_key)


def find_candidates(store: ContactStore, request: IdentifyRequest) -> List[ContactRecord]:
    """Records matching the request's email or phone, deduplicated by id."""
    candidates: Dict[int, ContactRecord] = {}
    if request.email:
        for record in store.find_by_email(request.email):
            candidates[record.id] = record
    if request.phoneNumber:
        for record in store.find_by_phone(request.phoneNumber):
            candidates[record.id] = record
    return sorted(candidates.values(), key=lambda record: record.age_key)


def has_new_information(request: IdentifyRequest, candidates: List[ContactRecord]) -> bool:
    emails = {record.email for record in candidates}
    phones = {record.phoneNumber for record in candidates}
    new_email = bool(request.email) and request.email not in emails
    new_phone = bool(request.phoneNumber) and request.phoneNumber not in phones
    return new_email or new_phone


def merge_primaries(store: ContactStore, primaries: List[ContactRecord]) -> ContactRecord:
    """Keep the oldest primary and fold every other cluster into it.

    Secondaries of a demoted primary are relinked to the survivor in the same
    transaction, so clusters never grow past one level.
    """
    survivor = oldest(primaries)
    for primary in primaries:
        if primary.id == survivor.id:
            continue
        for record in store.find_cluster(primary.id):
            if record.id == primary.id:
                continue
            store.save(record.model_copy(update={"linkedId": survivor.id}))
        store.save(
            primary.model_copy(
                update={"linkPrecedence": LinkPrecedence.SECONDARY, "linkedId": survivor.id}
            )
        )
        logger.info("Demoted primary contact", contact_id=primary.id, primary_contact_id=survivor.id)
    return survivor


def resolve_primary(store: ContactStore, candidates: List[ContactRecord]) -> ContactRecord:
    """Find the single primary the candidates belong to, merging if needed.

    Matched secondaries are followed to their primary. A secondary whose
    primary is gone (soft-deleted) is an orphan and gets adopted by the
    resolved primary; if every candidate is an orphan the oldest of them is
    promoted.
    """
    primaries: Dict[int, ContactRecord] = {}
    orphans: List[ContactRecord] = []

    for record in candidates:
        if record.is_primary:
            primaries[record.id] = record
            continue
        parent = store.find_by_id(record.linkedId) if record.linkedId is not None else None
        if parent is None:
            orphans.append(record)
        elif parent.is_primary:
            primaries[parent.id] = parent
        else:
            raise InvariantViolationError(
                "Secondary contact linked to another secondary",
                context={"contact_id": record.id, "linked_id": parent.id},
            )

    if len(primaries) > 1:
        logger.info("Merging primary contacts", contact_ids=sorted(primaries))
        primary = merge_primaries(store, list(primaries.values()))
    elif primaries:
        primary = next(iter(primaries.values()))
    else:
        promoted = oldest(orphans)
        primary = store.save(
            promoted.model_copy(update={"linkPrecedence": LinkPrecedence.PRIMARY, "linkedId": None})
        )
        orphans = [record for record in orphans if record.id != promoted.id]
        logger.warning("Promoted orphaned secondary to primary", contact_id=primary.id)

    for orphan in orphans:
        store.save(orphan.model_copy(update={"linkedId": primary.id}))
        logger.warning("Relinked orphaned secondary", contact_id=orphan.id, primary_contact_id=primary.id)

    return primary


def _unique(values: Iterable[Optional[str]]) -> List[str]:
    seen: List[str] = []
    for value in values:
        if value and value not in seen:
            seen.append(value)
    return seen


def build_view(cluster: List[ContactRecord], primary_id: int) -> ContactResponse:
    """Consolidated view of a cluster rooted at `primary_id`.

    The primary's email and phone come first, the rest follow in id order.
    """
    if not cluster:
        raise InvariantViolationError("Cluster has no contacts", context={"primary_contact_id": primary_id})

    primaries = [record for record in cluster if record.is_primary]
    if len(primaries) != 1 or primaries[0].id != primary_id:
        raise InvariantViolationError(
            "Cluster must have exactly one primary",
            context={"primary_contact_id": primary_id, "primary_ids": [record.id for record in primaries]},
        )
    primary = primaries[0]

    secondaries = sorted(
        (record for record in cluster if not record.is_primary),
        key=lambda record: record.id,
    )
    for record in secondaries:
        if record.linkedId != primary.id:
            raise InvariantViolationError(
                "Cluster deeper than one level",
                context={"primary_contact_id": primary.id, "contact_id": record.id, "linked_id": record.linkedId},
            )

    ordered = [primary] + secondaries
    return ContactResponse(
        primaryContactId=primary.id,
        emails=_unique(record.email for record in ordered),
        phoneNumbers=_unique(record.phoneNumber for record in ordered),
        secondaryContactIds=[record.id for record in secondaries],
    )


class ReconciliationEngine:
    """Runs each reconciliation as one store transaction."""

    def __init__(self, store: SQLiteContactStore):
        self.store = store

    def reconcile(self, request: IdentifyRequest) -> ContactResponse:
        with self.store.transaction() as repo:
            return reconcile(repo, request)


def reconcile(store: ContactStore, request: IdentifyRequest) -> ContactResponse:
    """Link the request to an existing cluster, merge clusters, or start a new one."""
    candidates = find_candidates(store, request)

    if not candidates:
        record = store.save(
            ContactRecord(
                email=request.email,
                phoneNumber=request.phoneNumber,
                linkPrecedence=LinkPrecedence.PRIMARY,
            )
        )
        logger.info("Created primary contact", contact_id=record.id)
        return build_view([record], record.id)

    primary = resolve_primary(store, candidates)

    if has_new_information(request, candidates):
        record = store.save(
            ContactRecord(
                email=request.email,
                phoneNumber=request.phoneNumber,
                linkedId=primary.id,
                linkPrecedence=LinkPrecedence.SECONDARY,
            )
        )
        logger.info("Created secondary contact", contact_id=record.id, primary_contact_id=primary.id)
    else:
        logger.debug("No new contact information", primary_contact_id=primary.id)

    return build_view(store.find_cluster(primary.id), primary.id)
