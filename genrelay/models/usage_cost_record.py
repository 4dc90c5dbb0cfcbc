"""Internal cost ledger for profitability analysis. Never exposed to end users."""
import uuid
from datetime import datetime
from sqlalchemy import Column, String, Integer, Float, Boolean, DateTime, ForeignKey
from genrelay.database import Base


class UsageCostRecord(Base):
    __tablename__ = "usage_cost_records"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    chat_id = Column(String(36), nullable=True, index=True)
    action = Column(String(32), nullable=False, index=True)  # "chat" | "search"
    model_key = Column(String(100), nullable=True)
    input_tokens = Column(Integer, nullable=False, default=0)
    output_tokens = Column(Integer, nullable=False, default=0)
    # Admission-time estimate kept beside the settled cost so the two can be compared
    estimated_cost_usd = Column(Float, nullable=False, default=0.0)
    cost_usd = Column(Float, nullable=False, default=0.0)
    is_partial = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
