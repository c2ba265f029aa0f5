from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker
from app.config import settings

_is_sqlite = settings.DATABASE_URL.startswith("sqlite")

# Create engine
engine = create_engine(
    settings.DATABASE_URL,
    pool_pre_ping=True,
    echo=settings.DEBUG and settings.LOG_LEVEL.upper() == "DEBUG",
    connect_args={"check_same_thread": False} if _is_sqlite else {}
)

# Set session timezone on connect
@event.listens_for(engine, "connect")
def set_timezone(dbapi_conn, connection_record):
    if _is_sqlite:
        return
    cursor = dbapi_conn.cursor()
    cursor.execute(f"SET timezone='{settings.TIMEZONE}'")
    cursor.close()

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for models
Base = declarative_base()


# Dependency to get a DB session
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
