from datetime import datetime
from pathlib import Path

from sqlalchemy import create_engine, Column, String, DateTime, Index
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()


class DeviceRecord(Base):
    __tablename__ = "devices"

    id = Column(String(64), primary_key=True)
    ip = Column(String(45), nullable=False)
    build_time = Column(String(64), default="")
    status = Column(String(16), default="offline")
    region = Column(String(100), default="")
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (Index("idx_devices_ip", "ip"),)


def create_session_factory(database_url: str):
    """Create the engine and a session factory, creating tables if they don't exist."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        db_path = database_url.replace("sqlite:///", "", 1)
        if db_path and db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(database_url, connect_args=connect_args)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
