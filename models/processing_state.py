# models/processing_state.py
from datetime import datetime, timezone

from sqlalchemy import Column, String, BigInteger, DateTime, Text

from models import Base


def _utcnow():
    return datetime.now(timezone.utc)


class ProcessingState(Base):
    """Durable collection progress, one row per tracked entity"""
    __tablename__ = 'processing_state'

    entity_id = Column(String(200), primary_key=True)
    payload = Column(Text, nullable=False)  # serialized CollectionState
    last_processed_block = Column(BigInteger, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    def __repr__(self):
        return f"<ProcessingState {self.entity_id}: {self.last_processed_block}>"
