from contextlib import contextmanager
import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base, Session
from gamehub.config.settings import settings

logger = logging.getLogger(__name__)

# SQLite는 이벤트 루프 스레드 외부(TestClient 등)에서도 접근하므로 스레드 검사 해제
connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

# Create the SQLAlchemy engine using the DATABASE_URL from settings
engine = create_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO, connect_args=connect_args)

# Create a configured "Session" class
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

# Create a Base class for declarative class definitions
Base = declarative_base()

# Dependency function to get a DB session per request
def get_db():
    db = SessionLocal()
    try:
        yield db # Provide the session to the endpoint
    finally:
        db.close() # Ensure the session is closed after the request

@contextmanager
def session_scope(session_factory):
    """서비스 계층용 명시적 트랜잭션 컨텍스트 매니저 (성공 시 commit, 오류 시 rollback)"""
    db: Session = session_factory()
    try:
        yield db
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Transaction rollback due to error: {e}")
        raise
    finally:
        db.close()
