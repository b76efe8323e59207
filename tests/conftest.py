import sys
import os
import pytest

# 설정은 gamehub 임포트 시점에 로드되므로 먼저 테스트 환경 변수를 지정
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REDIS_URL"] = ""
os.environ["ENVIRONMENT"] = "test"
os.environ["SESSION_SWEEP_INTERVAL_SECONDS"] = "0"
os.environ["WATCHER_STRATEGY"] = "event"

# 테스트 실행 전에 프로젝트 루트 경로를 sys.path에 추가
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, project_root)

from fastapi.testclient import TestClient

from gamehub.database import Base, get_db
from gamehub.models import user, game, access, game_session, wallet, game_history  # noqa: F401
from gamehub.scripts.initialize_db import seed_demo_data
from gamehub.services.gateway import GatewayRegistry
from gamehub.services.sessions import SessionRegistry
from gamehub.services.watcher import EventSurfaceWatcher
from gamehub.api.deps import get_session_registry

from tests.test_utils import engine, TestingSessionLocal, FakeGateway

# --- Database Setup for Testing ---
@pytest.fixture(scope="function", autouse=True)
def setup_test_database():
    """테스트마다 테이블을 새로 만들고 데모 카탈로그를 채웁니다."""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        seed_demo_data(db)
    finally:
        db.close()
    yield
    Base.metadata.drop_all(bind=engine)

@pytest.fixture
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()

# --- Provider gateway fakes ---
@pytest.fixture
def provider_log():
    return []

@pytest.fixture
def fake_gateways(provider_log):
    return {family: FakeGateway(family, provider_log) for family in ("invest", "honor", "oroplay")}

@pytest.fixture
def gateways(fake_gateways):
    return GatewayRegistry(dict(fake_gateways), timeout=1.0)

@pytest.fixture
def sleeps():
    """롤백 재시도 대기 시간 기록"""
    return []

@pytest.fixture
def registry(gateways, sleeps):
    async def record_sleep(seconds):
        sleeps.append(seconds)

    return SessionRegistry(
        TestingSessionLocal,
        gateways,
        watcher=EventSurfaceWatcher(),
        rollback_attempts=3,
        rollback_backoff=2.0,
        ready_timeout_minutes=10,
        heartbeat_timeout=30.0,
        sleep=record_sleep
    )

# --- API client ---
def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()

@pytest.fixture
def client(registry):
    """DB와 세션 레지스트리를 테스트용으로 교체한 TestClient (lifespan 미실행)"""
    from gamehub.main import app
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_registry] = lambda: registry
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
