# sentinel/models/sync_queue_item.py
"""
Pending remote work. Rows are ephemeral: deleted on success or once the
retry budget is spent.
"""

from sqlalchemy import Column, DateTime, Integer, JSON, String, Text
from sentinel.database import Base


class SyncQueueItem(Base):
    __tablename__ = "sync_queue"

    id = Column(String(100), primary_key=True)
    event_id = Column(String(64), nullable=False, index=True)
    kind = Column(String(20), nullable=False)
    payload = Column(JSON, nullable=False)
    priority = Column(Integer, nullable=False, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_attempt = Column(DateTime)
    error = Column(Text)
    created_at = Column(DateTime, nullable=False)

    def __repr__(self):
        return f"<SyncQueueItem {self.id} kind={self.kind} prio={self.priority} attempts={self.attempts}>"
