import uuid
from datetime import datetime

from sqlalchemy import String, Integer, BigInteger, DateTime, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from reqflow.database import Base


class SequenceCounter(Base):
    """
    Document-number counter, one row per (kind, year).

    Locking this row serializes number allocation for the kind. Numbering is
    global, so there is no org_id here.
    """

    __tablename__ = "sequence_counters"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    kind: Mapped[str] = mapped_column(String(10), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __table_args__ = (
        UniqueConstraint("kind", "year", name="uq_sequence_kind_year"),
    )
