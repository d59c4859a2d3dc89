from sqlalchemy import Column, String, Integer, BigInteger, Text, JSON
from .base import Base


class OfflineDataRow(Base):
    """Cached snapshot of a server-owned entity, keyed ``{module}_{key}``."""
    __tablename__ = "offline_data"

    key = Column(String(255), primary_key=True)
    module = Column(String(100), nullable=False, index=True)
    data = Column(JSON, nullable=True)
    last_modified = Column(BigInteger, nullable=False, index=True)  # epoch ms, logical clock
    version = Column(Integer, nullable=False, default=1)

    def to_record(self) -> dict:
        return {
            "key": self.key,
            "module": self.module,
            "data": self.data,
            "last_modified": self.last_modified,
            "version": self.version,
        }

    @classmethod
    def from_record(cls, record: dict) -> "OfflineDataRow":
        return cls(
            key=record["key"],
            module=record["module"],
            data=record.get("data"),
            last_modified=record["last_modified"],
            version=record.get("version", 1),
        )


class OfflineOperationRow(Base):
    """Queued mutation awaiting replay against the remote API."""
    __tablename__ = "offline_operations"

    id = Column(String(255), primary_key=True)
    type = Column(String(10), nullable=False)  # CREATE, UPDATE, DELETE
    module = Column(String(100), nullable=False, index=True)
    data = Column(JSON, nullable=True)
    timestamp = Column(BigInteger, nullable=False, index=True)  # enqueue time, epoch ms
    retry_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    def to_record(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "module": self.module,
            "data": self.data,
            "timestamp": self.timestamp,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
        }

    @classmethod
    def from_record(cls, record: dict) -> "OfflineOperationRow":
        return cls(
            id=record["id"],
            type=record["type"],
            module=record["module"],
            data=record.get("data"),
            timestamp=record["timestamp"],
            retry_count=record.get("retry_count", 0),
            last_error=record.get("last_error"),
        )


class SyncMetadataRow(Base):
    __tablename__ = "sync_metadata"

    key = Column(String(100), primary_key=True)
    timestamp = Column(BigInteger, nullable=True)
    value = Column(JSON, nullable=True)

    def to_record(self) -> dict:
        return {"key": self.key, "timestamp": self.timestamp, "value": self.value}

    @classmethod
    def from_record(cls, record: dict) -> "SyncMetadataRow":
        return cls(
            key=record["key"],
            timestamp=record.get("timestamp"),
            value=record.get("value"),
        )
