import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()


class AIUsageLog(Base):
    __tablename__ = "ai_usage_logs"
    __table_args__ = (
        Index("ix_ai_usage_logs_tenant_created", "tenant_id", "created_at"),
        Index("ix_ai_usage_logs_provider_created", "provider", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(64), nullable=True)
    provider = Column(String(32), nullable=False)
    model = Column(String(128), nullable=False, default="")
    operation = Column(String(32), nullable=False)
    prompt_tokens = Column(Integer, nullable=False, default=0)
    completion_tokens = Column(Integer, nullable=False, default=0)
    total_tokens = Column(Integer, nullable=False, default=0)
    latency_ms = Column(Float, nullable=False, default=0.0)
    success = Column(Boolean, nullable=False, default=True)
    cache_hit = Column(Boolean, nullable=False, default=False)
    estimated_cost_usd = Column(Numeric(12, 6), nullable=False, default=0)
    input_hash = Column(String(64), nullable=True)
    error = Column(Text, nullable=True)
    usage_meta = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
