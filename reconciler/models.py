from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, String
from reconciler.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class Document(Base):
    __tablename__ = "documents"

    id = Column(String, primary_key=True)              # "drafts.<id>" for working copies
    doc_type = Column(String, nullable=False, index=True)  # order | invoice | customer | product
    session_key = Column(String, unique=True, nullable=True)  # published orders only
    data = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
