"""SQLAlchemy ORM models."""

from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    func,
    Index,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


class ClusterORM(Base):
    """One row per cluster; the full record lives in ``document``.

    The scalar columns duplicate fields of the document for listing and
    filtering without decoding it.
    """

    __tablename__ = "clusters"

    id = Column(String(36), primary_key=True)
    cluster_name = Column(String(63), nullable=False, unique=True)
    cluster_id = Column(String(16), nullable=False)
    cloud_provider = Column(String(20), nullable=False)
    git_provider = Column(String(20), nullable=False)
    status = Column(String(50), nullable=False, index=True)
    in_progress = Column(Boolean, nullable=False, default=False)
    last_condition = Column(Text, nullable=True, default="")
    document = Column(JSON, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_clusters_provider_status", "cloud_provider", "status"),
    )
