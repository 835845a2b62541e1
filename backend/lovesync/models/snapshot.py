from sqlalchemy import Column, Integer, String, Text
from .base import Base, TimestampMixin


class CollectionSnapshot(Base, TimestampMixin):
    __tablename__ = "collection_snapshots"

    key = Column(String(200), primary_key=True)  # e.g. "loveSiteMessage"
    payload = Column(Text, nullable=False, default="[]")  # JSON array of serialized records
    record_count = Column(Integer, nullable=False, default=0)
