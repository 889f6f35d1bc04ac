from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    String,
    Boolean,
    TIMESTAMP,
    Text,
    JSON,
)
from sqlalchemy.sql import func

from app.core.database import Base


# =========================
# User
# =========================
class User(Base):
    __tablename__ = "users_table"

    id = Column(Integer, primary_key=True, autoincrement=True)

    email = Column(String, nullable=False, unique=True, index=True)
    password = Column(String, nullable=False)
    role = Column(String, nullable=False, server_default="developer", index=True)

    # Default reviewer preselected for this developer's requests
    team_lead_id = Column(
        Integer,
        ForeignKey("users_table.id", ondelete="SET NULL"),
        nullable=True,
    )

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


# =========================
# DBInstance (managed target database)
# =========================
class DBInstance(Base):
    """
    A MongoDB database developers may query through the gateway.

    The connection target is stored encrypted and never leaves the
    service through any read schema.
    """

    __tablename__ = "db_instances"

    id = Column(Integer, primary_key=True, autoincrement=True)

    name = Column(String, nullable=False, unique=True, index=True)
    description = Column(Text, nullable=True)

    encoded_connection_target = Column(Text, nullable=False)
    database_name = Column(String, nullable=False)

    is_active = Column(Boolean, nullable=False, default=True, index=True)

    created_by_id = Column(
        Integer,
        ForeignKey("users_table.id", ondelete="SET NULL"),
        nullable=True,
    )

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at = Column(
        TIMESTAMP(timezone=True),
        nullable=True,
        onupdate=func.now(),
    )


# =========================
# AccessRequest (the approval workflow record)
# =========================
class AccessRequest(Base):
    """
    One submitted query and everything that happened to it.

    status, execution_result and execution_error are written only by
    app.core.query.lifecycle. Terminal rows are never updated again;
    a resubmission is a new row pointing back via resubmitted_from_id.
    """

    __tablename__ = "access_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)

    developer_id = Column(
        Integer,
        ForeignKey("users_table.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    team_lead_id = Column(
        Integer,
        ForeignKey("users_table.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    db_instance_id = Column(
        Integer,
        ForeignKey("db_instances.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    # Kept after the instance is deleted, for the audit trail
    db_instance_name = Column(String, nullable=False)

    collection_name = Column(String, nullable=False, index=True)
    query_type = Column(String, nullable=False)
    query = Column(Text, nullable=False)
    reason = Column(Text, nullable=False)

    status = Column(String, nullable=False, default="pending", index=True)

    review_comment = Column(Text, nullable=True)
    reviewed_by_id = Column(
        Integer,
        ForeignKey("users_table.id", ondelete="SET NULL"),
        nullable=True,
    )

    execution_result = Column(JSON(none_as_null=True), nullable=True)
    execution_error = Column(Text, nullable=True)
    result_truncated = Column(Boolean, nullable=False, default=False)
    auto_executed = Column(Boolean, nullable=False, default=False)

    resubmitted_from_id = Column(
        Integer,
        ForeignKey("access_requests.id", ondelete="SET NULL"),
        nullable=True,
    )

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        index=True,
    )
    decided_at = Column(TIMESTAMP(timezone=True), nullable=True)
    executed_at = Column(TIMESTAMP(timezone=True), nullable=True)
