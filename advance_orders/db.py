from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from advance_orders.config import settings


class Base(DeclarativeBase):
    pass


engine = create_engine(settings.database_url, pool_pre_ping=True, future=True)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def init_db(bind=None) -> None:
    # Import for side effects: registers every table on Base.metadata.
    from advance_orders import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
