"""
Per-unit append-only ledger with hash chaining.

Each entry hashes {item_id, action, actor_id, actor_name, location,
previous_hash, sequence, timestamp}; previous_hash links to the prior entry of the same unit
(GENESIS_HASH for the first one). Entries are never updated or deleted, and a
broken chain is reported by verify_chain, never repaired.
"""
import hashlib
import json
import logging
from typing import Optional, List

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import models
from .errors import ChainIntegrityError, LedgerAppendError, NotFoundError

logger = logging.getLogger(__name__)

GENESIS_HASH = '0' * 64

# status a unit ends up in after each action
ACTION_STATUS = {
    models.ACTION_MANUFACTURED: models.UNIT_MANUFACTURED,
    models.ACTION_SHIPPED: models.UNIT_IN_TRANSIT,
    models.ACTION_RECEIVED: models.UNIT_IN_INVENTORY,
    models.ACTION_STORED: models.UNIT_IN_INVENTORY,
    models.ACTION_SOLD: models.UNIT_SOLD,
    models.ACTION_RECALLED: models.UNIT_RECALLED,
}


def hash_data(data: dict) -> str:
    """SHA256 over canonical JSON (sorted keys, compact separators)."""
    json_str = json.dumps(data, sort_keys=True, separators=(',', ':'), default=str)
    return hashlib.sha256(json_str.encode('utf-8')).hexdigest()


def entry_payload(item_id, action, actor_id, actor_name, location, previous_hash, sequence, timestamp) -> dict:
    return {
        'item_id': int(item_id),
        'action': action,
        'actor_id': int(actor_id) if actor_id is not None else None,
        'actor_name': actor_name or '',
        'location': location or '',
        'previous_hash': previous_hash,
        'sequence': int(sequence),
        'timestamp': timestamp.isoformat(),
    }


def compute_entry_hash(entry: models.LedgerEntry) -> str:
    """Recompute an entry's hash from its stored fields."""
    return hash_data(entry_payload(
        entry.item_id, entry.action, entry.actor_id, entry.actor_name, entry.location,
        entry.previous_hash, entry.sequence, entry.created_at,
    ))


def lock_unit(session: Session, item_id: int) -> models.ProductUnit:
    """Load the unit row with a write lock held until the transaction ends.

    This serializes appends for one unit: a second writer blocks here until
    the first commits, then re-reads the chain head.
    """
    unit = (
        session.query(models.ProductUnit)
        .filter(models.ProductUnit.id == item_id)
        .populate_existing()
        .with_for_update()
        .first()
    )
    if not unit:
        raise NotFoundError(f'Product unit {item_id} not found', step='lock_unit')
    return unit


def get_chain_head(session: Session, item_id: int) -> Optional[models.LedgerEntry]:
    return (
        session.query(models.LedgerEntry)
        .filter(models.LedgerEntry.item_id == item_id)
        .order_by(models.LedgerEntry.sequence.desc())
        .first()
    )


def append_entry(
    session: Session,
    item_id: int,
    action: str,
    actor_id: Optional[int] = None,
    actor_name: Optional[str] = None,
    location: Optional[str] = None,
    unit: Optional[models.ProductUnit] = None,
    commit: bool = True,
) -> models.LedgerEntry:
    """
    Append one ledger entry for a unit and move the unit to the matching status.

    Args:
        session: Database session
        item_id: ProductUnit id
        action: Manufactured, Shipped, Received, Stored, Sold, Recalled
        actor_id: User performing the action
        actor_name: Display name frozen into the entry
        location: Free-text location
        unit: Already locked unit row (skips the lock query)
        commit: Commit on success. With commit=False the caller owns the
            transaction and must roll back on LedgerAppendError.

    Returns:
        LedgerEntry object
    """
    if action not in ACTION_STATUS:
        raise ValueError(f'Unknown ledger action: {action}')
    try:
        if unit is None:
            unit = lock_unit(session, item_id)
        head = get_chain_head(session, item_id)
        previous_hash = head.current_hash if head else GENESIS_HASH
        sequence = head.sequence + 1 if head else 1
        timestamp = models.utcnow()

        entry = models.LedgerEntry(
            item_id=item_id,
            sequence=sequence,
            action=action,
            actor_id=actor_id,
            actor_name=actor_name,
            location=location,
            previous_hash=previous_hash,
            created_at=timestamp,
        )
        entry.current_hash = hash_data(entry_payload(
            item_id, action, actor_id, actor_name, location, previous_hash, sequence, timestamp,
        ))
        unit.status = ACTION_STATUS[action]
        session.add(entry)
        session.flush()
        if commit:
            session.commit()
            session.refresh(entry)
    except IntegrityError as exc:
        # a second entry at the same position means the chain head moved under us
        if commit:
            session.rollback()
        logger.critical('ledger fork for item %s (%s): %s', item_id, action, exc)
        raise ChainIntegrityError(f'Conflicting {action} entry for item {item_id}; manual review required', step='ledger_append') from exc
    except SQLAlchemyError as exc:
        if commit:
            session.rollback()
        logger.error('ledger append failed for item %s (%s): %s', item_id, action, exc)
        raise LedgerAppendError(f'Could not append {action} entry for item {item_id}', step='ledger_append') from exc

    logger.info('ledger item=%s seq=%s action=%s hash=%s', item_id, entry.sequence, action, entry.current_hash[:12])
    return entry


def get_item_history(session: Session, item_id: int, fresh: bool = False) -> List[models.LedgerEntry]:
    q = session.query(models.LedgerEntry).filter(models.LedgerEntry.item_id == item_id)
    if fresh:
        # re-read stored values even for entries already in the identity map
        q = q.populate_existing()
    return (
        q
        .order_by(models.LedgerEntry.sequence.asc())
        .all()
    )


def verify_chain(session: Session, item_id: int) -> dict:
    """
    Walk a unit's entries in sequence order and recompute every hash.

    Returns:
        {'valid': bool, 'broken_at': entry id or None, 'reason': str, 'entries': int}
    """
    entries = get_item_history(session, item_id, fresh=True)
    expected_previous = GENESIS_HASH
    for position, entry in enumerate(entries, start=1):
        reason = None
        if entry.sequence != position:
            reason = f'sequence gap: expected {position}, found {entry.sequence}'
        elif entry.previous_hash != expected_previous:
            reason = 'previous_hash does not match the prior entry'
        elif compute_entry_hash(entry) != entry.current_hash:
            reason = 'current_hash does not match the stored fields'
        if reason:
            logger.error('ledger chain broken for item %s at entry %s: %s', item_id, entry.id, reason)
            return {'valid': False, 'broken_at': entry.id, 'reason': reason, 'entries': len(entries)}
        expected_previous = entry.current_hash
    return {'valid': True, 'broken_at': None, 'reason': 'Chain integrity verified', 'entries': len(entries)}


def export_chain_proof(session: Session, item_id: int, entry_id: int) -> dict:
    """Position and hashes of one entry plus the chain verdict, for checking outside the system."""
    entry = (
        session.query(models.LedgerEntry)
        .filter(models.LedgerEntry.id == entry_id, models.LedgerEntry.item_id == item_id)
        .first()
    )
    if not entry:
        raise NotFoundError(f'Ledger entry {entry_id} not found for item {item_id}')
    history = get_item_history(session, item_id)
    verdict = verify_chain(session, item_id)
    return {
        'item_id': item_id,
        'entry_id': entry.id,
        'sequence': entry.sequence,
        'action': entry.action,
        'current_hash': entry.current_hash,
        'previous_hash': entry.previous_hash,
        'created_at': entry.created_at.isoformat(),
        'payload': entry_payload(
            entry.item_id, entry.action, entry.actor_id, entry.actor_name, entry.location,
            entry.previous_hash, entry.sequence, entry.created_at,
        ),
        'chain_is_valid': verdict['valid'],
        'chain_broken_at': verdict['broken_at'],
        'total_entries_in_chain': len(history),
    }
