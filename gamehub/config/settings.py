from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Dict, Any

class Settings(BaseSettings):
    # 일반 설정
    DEBUG: bool = True
    ENVIRONMENT: str = "development"
    SECRET_KEY: str = "developmentsecretkey"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # 데이터베이스 설정
    DATABASE_URL: str = "sqlite:///./gamehub.db"
    DATABASE_ECHO: bool = False

    # 보안 설정
    ALLOWED_HOSTS: str = "*"

    # 캐싱 설정 (빈 문자열이면 Redis 없이 L1 메모리 캐시만 사용)
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_TTL: int = 60

    # 게임 제공사 게이트웨이 설정
    # 예: {"invest": {"base_url": "https://api.invest.example", "api_key": "...", "api_secret": "..."}}
    PROVIDER_ENDPOINTS: Dict[str, Dict[str, Any]] = {}
    PROVIDER_CALL_TIMEOUT_SECONDS: float = 10.0

    # 게임 실행 실패 시 입금 원복 재시도
    LAUNCH_ROLLBACK_ATTEMPTS: int = 3
    LAUNCH_ROLLBACK_BACKOFF_SECONDS: float = 2.0

    # ready 세션 타임아웃 및 정리 주기 (0이면 백그라운드 정리 비활성화)
    READY_SESSION_TIMEOUT_MINUTES: int = 10
    SESSION_SWEEP_INTERVAL_SECONDS: int = 60

    # 게임창 감시 설정: "heartbeat" (서버측 폴링) 또는 "event" (명시적 종료 알림만)
    WATCHER_STRATEGY: str = "heartbeat"
    WATCHER_POLL_INTERVAL_SECONDS: float = 1.0
    SURFACE_HEARTBEAT_TIMEOUT_SECONDS: float = 30.0

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="allow"
    )

@lru_cache()
def get_settings() -> Settings:
    """
    애플리케이션 설정을 가져옵니다. lru_cache는 환경 변수가 바뀌지 않는 한
    설정을 한 번만 로드하도록 보장합니다.
    """
    return Settings()

# 환경변수 기본값 설정
settings = get_settings()
