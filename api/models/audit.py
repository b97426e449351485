"""Append-only audit log ORM model.

Every row is written once. The hash in ``hash_signature`` covers the
serialized ``body`` (which carries its own logId and timestamp), so each
entry is tamper-evident on its own; entries are not chained to each other.
"""

from datetime import datetime

from sqlalchemy import String, DateTime, event
from sqlalchemy.orm import Mapped, mapped_column

from db.database import Base, JSONType


class AuditLog(Base):
    __tablename__ = "audit_logs"

    log_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    collection: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)

    # Denormalized filter keys for the compliance export
    task_id: Mapped[str | None] = mapped_column(String(64), index=True)
    user_id: Mapped[str | None] = mapped_column(String(128), index=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)

    body: Mapped[dict] = mapped_column(JSONType, nullable=False)
    hash_signature: Mapped[str] = mapped_column(String(64), nullable=False)


class AuditLogImmutableError(RuntimeError):
    pass


@event.listens_for(AuditLog, "before_update")
def _refuse_update(mapper, connection, target):
    raise AuditLogImmutableError(f"audit log entry {target.log_id} is write-once")


@event.listens_for(AuditLog, "before_delete")
def _refuse_delete(mapper, connection, target):
    raise AuditLogImmutableError(f"audit log entry {target.log_id} cannot be deleted")
