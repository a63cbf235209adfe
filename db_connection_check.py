import sys

from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError

from advance_orders.config import settings
from advance_orders.db import init_db


def main(create_tables: bool = False) -> None:
    database_url = settings.database_url
    print(f"DATABASE_URL={database_url}")
    engine = create_engine(database_url, pool_pre_ping=True)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        print("DB connection OK")
        if create_tables:
            init_db(engine)
            print("Tables created")
    except SQLAlchemyError as exc:
        print("DB connection FAILED")
        print(exc)


if __name__ == "__main__":
    main(create_tables="--create-tables" in sys.argv[1:])
