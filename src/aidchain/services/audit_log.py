"""Append-only delivery history (audit log).

This service writes one record per successful workflow transition, in the
same unit of work as the state change, and reads a delivery's full ordered
history back for compliance review. There is no update or delete API.

Each record is chained to the previous record of the same delivery by a
SHA-256 hash over a canonical JSON representation, so an edited, removed or
reordered record is detected by verify_history().
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import select

from aidchain.db.models.audit import DeliveryHistory

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

    from aidchain.db.models.base import DeliveryStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class HistoryEntry:
    """Immutable view of one delivery history record.

    Attributes:
        history_id: Unique identifier of the record.
        delivery_id: Delivery the transition belongs to.
        seq_no: Position within the delivery's history, starting at 1.
        action: Workflow action that caused the transition.
        from_status: Status before the transition (None for creation).
        to_status: Status after the transition.
        user_id: Acting user.
        notes: Free-text notes supplied with the action.
        created_at: When the transition was committed.
        record_hash: Hash of this record.
        prev_hash: Hash of the previous record (None for the first).
    """

    history_id: uuid.UUID
    delivery_id: uuid.UUID
    seq_no: int
    action: str
    from_status: DeliveryStatus | None
    to_status: DeliveryStatus
    user_id: uuid.UUID
    notes: str | None
    created_at: datetime
    record_hash: str
    prev_hash: str | None

    @classmethod
    def from_record(cls, record: DeliveryHistory) -> HistoryEntry:
        return cls(
            history_id=record.history_id,
            delivery_id=record.delivery_id,
            seq_no=record.seq_no,
            action=record.action,
            from_status=record.from_status,
            to_status=record.to_status,
            user_id=record.user_id,
            notes=record.notes,
            created_at=record.created_at,
            record_hash=record.record_hash,
            prev_hash=record.prev_hash,
        )


@dataclass(frozen=True, slots=True)
class HistoryVerificationResult:
    """Result of verifying a delivery's history chain.

    Attributes:
        valid: True if the chain is intact.
        checked_records: Number of records verified.
        errors: Detected integrity violations.
    """

    valid: bool
    checked_records: int
    errors: list[str]


def compute_record_hash(
    *,
    delivery_id: uuid.UUID,
    seq_no: int,
    action: str,
    from_status: DeliveryStatus | None,
    to_status: DeliveryStatus,
    user_id: uuid.UUID,
    notes: str | None,
    prev_hash: str | None,
    created_at: datetime,
) -> str:
    """Compute the SHA-256 hash of a history record's canonical form.

    Returns:
        Hex-encoded SHA-256 hash (64 characters).
    """
    canonical = {
        "action": action,
        # Normalized to UTC; the database may return another session offset
        "created_at": created_at.astimezone(UTC).isoformat(),
        "delivery_id": str(delivery_id),
        "from_status": from_status.value if from_status is not None else None,
        "notes": notes,
        "prev_hash": prev_hash,
        "seq_no": seq_no,
        "to_status": to_status.value,
        "user_id": str(user_id),
    }
    canonical_json = json.dumps(canonical, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical_json.encode("utf-8")).hexdigest()


def verify_history_records(records: Sequence[DeliveryHistory]) -> HistoryVerificationResult:
    """Verify sequence continuity and hash linkage of ordered records.

    Args:
        records: History records of one delivery, ordered by seq_no.

    Returns:
        HistoryVerificationResult listing every violation found.
    """
    errors: list[str] = []
    prev_hash: str | None = None

    for expected_seq, record in enumerate(records, start=1):
        if record.seq_no != expected_seq:
            errors.append(f"Sequence gap: expected {expected_seq}, found {record.seq_no}")

        if record.prev_hash != prev_hash:
            errors.append(
                f"Chain break at seq_no={record.seq_no}: "
                f"prev_hash={record.prev_hash}, expected {prev_hash}"
            )

        computed = compute_record_hash(
            delivery_id=record.delivery_id,
            seq_no=record.seq_no,
            action=record.action,
            from_status=record.from_status,
            to_status=record.to_status,
            user_id=record.user_id,
            notes=record.notes,
            prev_hash=record.prev_hash,
            created_at=record.created_at,
        )
        if computed != record.record_hash:
            errors.append(
                f"Hash mismatch at seq_no={record.seq_no}: "
                f"stored={record.record_hash}, computed={computed}"
            )

        prev_hash = record.record_hash

    return HistoryVerificationResult(
        valid=not errors,
        checked_records=len(records),
        errors=errors,
    )


class DeliveryAuditLog:
    """Append-only transition ledger for deliveries.

    Appends are serialized per delivery by the delivery's own version check;
    the (delivery_id, seq_no) unique constraint backs this up.
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize the audit log.

        Args:
            session: SQLAlchemy async session for database operations.
        """
        self._session = session

    async def append(
        self,
        *,
        delivery_id: uuid.UUID,
        action: str,
        from_status: DeliveryStatus | None,
        to_status: DeliveryStatus,
        user_id: uuid.UUID,
        notes: str | None = None,
        created_at: datetime | None = None,
    ) -> HistoryEntry:
        """Append a transition record.

        The record is added to the session only; it is persisted with the
        rest of the transition when the caller flushes and commits.

        Args:
            delivery_id: Delivery that transitioned.
            action: Workflow action name.
            from_status: Status before the transition (None for creation).
            to_status: Status after the transition.
            user_id: Acting user.
            notes: Optional free-text notes.
            created_at: Transition time. Defaults to now.

        Returns:
            The appended entry.
        """
        latest = await self._get_latest_record(delivery_id)
        seq_no = latest.seq_no + 1 if latest is not None else 1
        prev_hash = latest.record_hash if latest is not None else None
        created_at = created_at or datetime.now(UTC)

        record_hash = compute_record_hash(
            delivery_id=delivery_id,
            seq_no=seq_no,
            action=action,
            from_status=from_status,
            to_status=to_status,
            user_id=user_id,
            notes=notes,
            prev_hash=prev_hash,
            created_at=created_at,
        )

        record = DeliveryHistory(
            history_id=uuid.uuid4(),
            created_at=created_at,
            delivery_id=delivery_id,
            seq_no=seq_no,
            from_status=from_status,
            to_status=to_status,
            action=action,
            user_id=user_id,
            notes=notes,
            prev_hash=prev_hash,
            record_hash=record_hash,
        )
        self._session.add(record)

        logger.debug(
            "History record appended",
            extra={
                "delivery_id": str(delivery_id),
                "seq_no": seq_no,
                "to_status": to_status.value,
            },
        )

        return HistoryEntry.from_record(record)

    async def get_history(self, delivery_id: uuid.UUID) -> list[HistoryEntry]:
        """Fetch the full ordered history of a delivery.

        Args:
            delivery_id: Delivery to read.

        Returns:
            Entries ordered from creation to the latest transition.
        """
        records = await self._get_records(delivery_id)
        return [HistoryEntry.from_record(record) for record in records]

    async def verify_history(self, delivery_id: uuid.UUID) -> HistoryVerificationResult:
        """Verify the hash chain of a delivery's history.

        Args:
            delivery_id: Delivery to verify.

        Returns:
            HistoryVerificationResult with validity and any errors found.
        """
        records = await self._get_records(delivery_id)
        result = verify_history_records(records)
        if not result.valid:
            logger.error(
                "Delivery history integrity check failed",
                extra={"delivery_id": str(delivery_id), "errors": result.errors},
            )
        return result

    async def _get_records(self, delivery_id: uuid.UUID) -> Sequence[DeliveryHistory]:
        query = (
            select(DeliveryHistory)
            .where(DeliveryHistory.delivery_id == delivery_id)
            .order_by(DeliveryHistory.seq_no)
        )
        result = await self._session.execute(query)
        return result.scalars().all()

    async def _get_latest_record(self, delivery_id: uuid.UUID) -> DeliveryHistory | None:
        query = (
            select(DeliveryHistory)
            .where(DeliveryHistory.delivery_id == delivery_id)
            .order_by(DeliveryHistory.seq_no.desc())
            .limit(1)
        )
        result = await self._session.execute(query)
        return result.scalar_one_or_none()
