from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
import os

# Settlement ledger database; override via environment.
# Default is a local sqlite file so the service runs without setup.
SQLALCHEMY_DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+pysqlite:///./settlement.db")

_connect_args = {"check_same_thread": False} if SQLALCHEMY_DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args=_connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

class Base(DeclarativeBase):
	pass


def create_tables(bind=None) -> None:
	"""Create every ledger table that does not exist yet."""
	import settlement.models.db  # noqa: F401  (registers the models on Base.metadata)
	Base.metadata.create_all(bind=bind or engine)
