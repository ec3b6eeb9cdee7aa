from sqlalchemy import create_engine, Column, Integer, String, Text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
import structlog

from backend.image_processor.app.config import Settings

logger = structlog.get_logger(__name__)

# Create base class for ORM models
Base = declarative_base()


class Image(Base):
    __tablename__ = "images"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    category = Column(String(100), nullable=False)
    location = Column(String(255), nullable=False)
    photographer = Column(String(255), nullable=False)
    s3_url = Column(String(1024), nullable=False)
    s3_key = Column(String(512), nullable=False)


def create_db_engine(settings: Settings) -> Engine:
    """
    Create the bounded connection pool owned by the hosting process.

    Checkouts beyond pool_size wait for a connection to be returned.
    """
    logger.info("Creating database connection pool", pool_size=settings.db_pool_size)
    return create_engine(
        settings.sqlalchemy_url,
        pool_size=settings.db_pool_size,
        max_overflow=0,
        pool_pre_ping=True,
        pool_recycle=3600
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine):
    """Initialize database tables"""
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables initialized successfully")
    except Exception as e:
        logger.error("Failed to initialize database", error=str(e))
        raise
