"""
Audit Chain — per-user, append-only, hash-linked orchestration ledger.

Every state transition in the approval and signing machines appends one
entry. Entry n carries the event_hash of entry n-1 as previous_hash; entry 1
carries the "genesis" sentinel. event_hash is SHA-256 over the canonical
JSON of the entry, so re-walking a user's chain detects tampering or a
missed write.
"""

import hashlib
import json
import logging
from datetime import datetime
from uuid import uuid4

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from spendgate.database import utcnow
from spendgate.models import AuditLog
from spendgate.schemas.audit_events import AuditEvent

logger = logging.getLogger(__name__)

GENESIS_HASH = "genesis"

# Concurrent appends for one user collide on (user_id, sequence)
_MAX_APPEND_ATTEMPTS = 5


def compute_event_hash(
    user_id: str,
    sequence: int,
    event_type: str,
    timestamp: datetime,
    event_data: dict,
    previous_hash: str,
) -> str:
    """SHA-256 over the canonical serialization of an entry."""
    payload = {
        "user_id": user_id,
        "sequence": sequence,
        "event_type": event_type,
        "timestamp": timestamp.isoformat(),
        "event_data": event_data,
        "previous_hash": previous_hash,
    }
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(raw.encode()).hexdigest()


class AuditChain:
    """Append-only per-user hash chain."""

    def __init__(self, session: AsyncSession, clock=utcnow):
        self.session = session
        self.clock = clock

    async def _get_last_entry(self, user_id: str) -> AuditLog | None:
        result = await self.session.execute(
            select(AuditLog)
            .where(AuditLog.user_id == user_id)
            .order_by(AuditLog.sequence.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def append(
        self,
        user_id: str,
        event: AuditEvent,
        *,
        intent_id: str | None = None,
        plan_id: str | None = None,
        approval_id: str | None = None,
        signing_request_id: str | None = None,
    ) -> AuditLog:
        """Append `event` to the user's chain and return the stored entry."""
        event_data = event.model_dump(mode="json")

        for attempt in range(1, _MAX_APPEND_ATTEMPTS + 1):
            last = await self._get_last_entry(user_id)
            sequence = last.sequence + 1 if last else 1
            previous_hash = last.event_hash if last else GENESIS_HASH
            timestamp = self.clock()

            entry = AuditLog(
                event_id=str(uuid4()),
                user_id=user_id,
                sequence=sequence,
                event_type=event.event_type,
                intent_id=intent_id,
                plan_id=plan_id,
                approval_id=approval_id,
                signing_request_id=signing_request_id,
                event_data=event_data,
                previous_hash=previous_hash,
                event_hash=compute_event_hash(
                    user_id, sequence, event.event_type, timestamp, event_data, previous_hash,
                ),
                anchored_to_chain=False,
                timestamp=timestamp,
            )
            try:
                async with self.session.begin_nested():
                    self.session.add(entry)
            except IntegrityError:
                logger.info(
                    "Audit sequence %d for %s taken (attempt %d), retrying",
                    sequence, user_id, attempt,
                )
                continue
            return entry

        raise RuntimeError(f"Could not append audit entry for {user_id} after {_MAX_APPEND_ATTEMPTS} attempts")

    async def verify_chain(self, user_id: str) -> dict:
        """Walk the user's chain from sequence 1 and recompute every hash."""
        result = await self.session.execute(
            select(AuditLog)
            .where(AuditLog.user_id == user_id)
            .order_by(AuditLog.sequence.asc())
        )
        entries = list(result.scalars())

        if not entries:
            return {"valid": True, "entries_checked": 0, "first_invalid": None, "reason": None}

        for i, entry in enumerate(entries):
            if entry.sequence != i + 1:
                return {
                    "valid": False,
                    "entries_checked": i + 1,
                    "first_invalid": entry.event_id,
                    "reason": "sequence gap",
                }

            expected_prev = entries[i - 1].event_hash if i > 0 else GENESIS_HASH
            if entry.previous_hash != expected_prev:
                return {
                    "valid": False,
                    "entries_checked": i + 1,
                    "first_invalid": entry.event_id,
                    "reason": "previous_hash mismatch",
                }

            expected_hash = compute_event_hash(
                entry.user_id,
                entry.sequence,
                entry.event_type,
                entry.timestamp,
                entry.event_data,
                entry.previous_hash,
            )
            if entry.event_hash != expected_hash:
                return {
                    "valid": False,
                    "entries_checked": i + 1,
                    "first_invalid": entry.event_id,
                    "reason": "event_hash mismatch (data tampered)",
                }

        return {"valid": True, "entries_checked": len(entries), "first_invalid": None, "reason": None}

    async def get_entries(
        self,
        user_id: str,
        event_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[AuditLog]:
        """Newest-first entries for one user."""
        query = select(AuditLog).where(AuditLog.user_id == user_id)
        if event_type:
            query = query.where(AuditLog.event_type == event_type)
        query = query.order_by(AuditLog.sequence.desc()).offset(offset).limit(limit)
        result = await self.session.execute(query)
        return list(result.scalars())

    async def count_entries(self, user_id: str, event_type: str | None = None) -> int:
        query = select(func.count()).select_from(AuditLog).where(AuditLog.user_id == user_id)
        if event_type:
            query = query.where(AuditLog.event_type == event_type)
        result = await self.session.execute(query)
        return result.scalar() or 0
