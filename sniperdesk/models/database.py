"""
Database models for persisted engine state.
One row per logical state key (learning_state, risk_state).
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON
from sqlalchemy.orm import declarative_base
from datetime import datetime

Base = declarative_base()


class StateSnapshot(Base):
    """Latest serialized state of a long-lived engine"""
    __tablename__ = "state_snapshots"

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String, unique=True, index=True, nullable=False)  # learning_state, risk_state
    version = Column(Integer, default=0)
    payload = Column(JSON, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
