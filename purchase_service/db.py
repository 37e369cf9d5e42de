from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from common.settings import settings

def build_engine(url: str):
    if url.startswith("sqlite"):
        engine = create_engine(url, connect_args={"check_same_thread": False, "timeout": 15})

        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine
    return create_engine(url, pool_pre_ping=True, isolation_level="READ COMMITTED")

def build_session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)

engine = build_engine(settings.database_url)
SessionLocal = build_session_factory(engine)
