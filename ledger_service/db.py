from functools import lru_cache
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from common.settings import settings
from ledger_service.models import Base

def make_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        # file-backed sqlite is shared across worker threads; writers wait on the lock
        return create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})
    return create_engine(url, pool_pre_ping=True, isolation_level="READ COMMITTED")

def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)

def init_db(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine)

@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return make_engine(settings.sqlalchemy_url())

@lru_cache(maxsize=1)
def get_session_factory() -> sessionmaker:
    return make_session_factory(get_engine())
