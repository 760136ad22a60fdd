import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Index, Integer, String, Text
from sqlalchemy.sql import func

from gastozap.models.usage import Base


class RagSearchLog(Base):
    __tablename__ = "rag_search_logs"
    __table_args__ = (
        Index("ix_rag_search_logs_tenant_created", "tenant_id", "created_at"),
        Index("ix_rag_search_logs_success_created", "success", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(64), nullable=False)
    step = Column(String(32), nullable=False)
    query = Column(Text, nullable=False)
    query_normalized = Column(Text, nullable=False)
    matches = Column(JSON, nullable=True)
    match_count = Column(Integer, nullable=False, default=0)
    best_match = Column(String(255), nullable=True)
    best_score = Column(Float, nullable=True)
    threshold = Column(Float, nullable=False)
    success = Column(Boolean, nullable=False, default=False)
    response_time_ms = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
