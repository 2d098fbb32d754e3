"""
Counter rows for the audit chain's ``seq`` column.

Each named sequence is one row in ``sequence_counters``. Allocation locks
that row (``SELECT ... FOR UPDATE`` on PostgreSQL; the SQLite write
transaction serializes the same way), bumps it and flushes. The new value
becomes visible to other transactions only when the caller commits, and a
rollback gives it back, so the audit chain stays gapless.
"""

from sqlalchemy import BigInteger, String, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, Session, mapped_column

from escrow_kernel.db.base import Base
from escrow_kernel.logging_config import get_logger

logger = get_logger("services.sequence")


class SequenceCounter(Base):
    __tablename__ = "sequence_counters"

    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


class SequenceService:
    """Allocates strictly increasing integers per sequence name.

    Never commits; the caller owns the transaction.
    """

    AUDIT_EVENT = "audit_event"

    def __init__(self, session: Session):
        self._session = session

    def next_value(self, sequence_name: str) -> int:
        counter = self._lock(sequence_name) or self._create(sequence_name)
        counter.current_value += 1
        self._session.flush()

        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def current_value(self, sequence_name: str) -> int | None:
        """Last allocated value, or None when the sequence was never used."""
        return self._session.execute(
            select(SequenceCounter.current_value).where(SequenceCounter.name == sequence_name)
        ).scalar_one_or_none()

    def _lock(self, sequence_name: str) -> SequenceCounter | None:
        return self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _create(self, sequence_name: str) -> SequenceCounter:
        # Two first writers can race on the unique name; the loser re-reads.
        savepoint = self._session.begin_nested()
        try:
            counter = SequenceCounter(name=sequence_name, current_value=0)
            self._session.add(counter)
            self._session.flush()
        except IntegrityError:
            savepoint.rollback()
            logger.debug("sequence_counter_race_retry", extra={"sequence_name": sequence_name})
            counter = self._lock(sequence_name)
            if counter is None:
                raise
            return counter
        savepoint.commit()
        return counter
