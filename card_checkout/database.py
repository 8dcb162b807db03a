from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from card_checkout.config import settings

# Settings falls back to a local SQLite file when DATABASE_URL is unset
DATABASE_URL = settings.database_url
SQLITE = DATABASE_URL.startswith("sqlite")

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if SQLITE else {},
    pool_pre_ping=not SQLITE,
)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
Base = declarative_base()
