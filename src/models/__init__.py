# Quorum Broker Models Package
from .database import Base, engine, SessionLocal, build_engine
from .audit import BrokerEventRecord, AuditSink

__all__ = [
    "Base",
    "engine",
    "SessionLocal",
    "build_engine",
    "BrokerEventRecord",
    "AuditSink",
]
