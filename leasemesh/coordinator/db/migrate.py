from sqlalchemy import create_engine

from db.orm import Base


def apply_migrations(db_url: str) -> None:
    engine = create_engine(db_url, future=True)
    try:
        Base.metadata.create_all(engine)
    finally:
        engine.dispose()
