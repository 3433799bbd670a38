import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional
from urllib.parse import quote_plus

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from invoicechain.config.chain_config import ChainConfig
from invoicechain.db.models import Base

# Configure logging
logger = logging.getLogger(__name__)

REQUIRED_TABLES = ['invoice_records', 'step_jobs']


class Database:
    """
    Database connection manager for InvoiceChain

    Handles SQLite and PostgreSQL connections with connection pooling and
    creates the schema on first connection. An explicit SQLAlchemy URL can
    be passed instead of configuration, which is how the tests get an
    in-memory SQLite database.
    """

    def __init__(self, config: Optional[ChainConfig] = None, url: Optional[str] = None):
        """
        Initialize database connection

        Args:
            config: ChainConfig instance. If None, uses the process-wide configuration.
            url: Optional SQLAlchemy URL overriding the configured database
        """
        self.config = config or ChainConfig.instance()
        self.url = url
        self.engine: Optional[Engine] = None
        self.Session: Optional[sessionmaker] = None
        self._initialize()

    def _build_engine(self) -> Engine:
        """Create the engine for the configured database type"""
        if self.url:
            if self.url in ('sqlite://', 'sqlite:///:memory:'):
                # One shared connection so every session sees the same memory database
                return create_engine(
                    self.url,
                    poolclass=StaticPool,
                    connect_args={'check_same_thread': False}
                )
            return create_engine(self.url)

        db_config = self.config.get_database_config()
        db_type = db_config.get('type', 'sqlite')

        if db_type == 'sqlite':
            db_path = Path(db_config.get('path', 'invoicechain.db'))

            # Ensure directory exists
            db_path.parent.mkdir(parents=True, exist_ok=True)

            return create_engine(
                f'sqlite:///{db_path}',
                poolclass=QueuePool,
                pool_size=5,
                max_overflow=10,
                pool_timeout=30,
                pool_recycle=1800,
                connect_args={
                    'timeout': 30,  # Connection timeout in seconds
                    'check_same_thread': False  # Worker threads share the pool
                }
            )

        if db_type in ['postgresql', 'postgres']:
            postgres_config = db_config.get('postgres', {})

            host = postgres_config.get('host', 'localhost')
            port = postgres_config.get('port', 5432)
            database = postgres_config.get('database', 'invoicechain')
            user = postgres_config.get('user', 'postgres')
            password = postgres_config.get('password', '')
            sslmode = postgres_config.get('sslmode', 'prefer')

            # URL-encode user and password to handle special characters
            connection_url = (
                f'postgresql://{quote_plus(user)}:{quote_plus(password)}'
                f'@{host}:{port}/{database}?sslmode={sslmode}'
            )
            return create_engine(
                connection_url,
                poolclass=QueuePool,
                pool_size=5,
                max_overflow=10,
                pool_timeout=30,
                pool_recycle=1800
            )

        raise RuntimeError(f"Unsupported database type: {db_type}")

    def _initialize(self) -> None:
        """Initialize database connection, session factory and schema"""
        max_retries = 3
        retry_delay = 1  # seconds

        for attempt in range(max_retries):
            try:
                self.engine = self._build_engine()

                if self.engine.dialect.name == 'sqlite':
                    @event.listens_for(self.engine, "connect")
                    def set_sqlite_pragma(dbapi_connection, connection_record):
                        cursor = dbapi_connection.cursor()
                        cursor.execute("PRAGMA foreign_keys=ON")
                        cursor.close()

                # Test connection
                with self.engine.connect() as conn:
                    conn.execute(text("SELECT 1"))

                self.Session = sessionmaker(
                    bind=self.engine,
                    expire_on_commit=False,
                    autocommit=False,
                    autoflush=False
                )

                Base.metadata.create_all(self.engine)

                tables = inspect(self.engine).get_table_names()
                missing_tables = [table for table in REQUIRED_TABLES if table not in tables]
                if missing_tables:
                    raise RuntimeError(f"Failed to create required tables: {', '.join(missing_tables)}")

                logger.info("Database tables initialized successfully")
                return

            except SQLAlchemyError as e:
                if attempt < max_retries - 1:
                    logger.warning(
                        f"Database connection attempt {attempt + 1} failed: {str(e)}. "
                        f"Retrying in {retry_delay} seconds..."
                    )
                    time.sleep(retry_delay)
                    retry_delay *= 2  # Exponential backoff
                else:
                    raise RuntimeError(f"Failed to connect to database after {max_retries} attempts: {str(e)}")

    def session(self) -> Session:
        """
        Get a database session

        Returns:
            SQLAlchemy session (usable as a context manager)
        """
        return self.Session()

    @contextmanager
    def transaction(self) -> Generator[Session, None, None]:
        """
        Get a database session with transaction management

        Commits on success, rolls back and re-raises on error.

        Yields:
            SQLAlchemy session
        """
        session = self.Session()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Database transaction error: {str(e)}")
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        """Close all database connections"""
        if self.engine:
            self.engine.dispose()
