import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from payflow.config import BASE_DIR  # noqa: F401  (loads .env)
from payflow.errors import ConfigurationError

DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    raise ConfigurationError("DATABASE_URL is not set. Check your .env file.")

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
