from fastapi import FastAPI
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.middleware.httpsredirect import HTTPSRedirectMiddleware
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager # lifespan을 위해 추가
import asyncio
import logging
import os
import uvicorn

from gamehub.api import games, admin
from gamehub.api.deps import get_session_registry, shutdown_services
from gamehub.database import engine, Base
# Import all models that use Base so they are registered before create_all
from gamehub.models import user, game, access, game_session, wallet, game_history  # noqa: F401
from gamehub.config.settings import settings

# 로깅 설정
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# --- Lifespan 관리자 ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("애플리케이션 시작 - Lifespan")
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("DB 테이블 생성 완료 (또는 이미 존재).")
    except Exception as e:
        logger.error(f"DB 테이블 생성 중 오류 발생: {e}", exc_info=True)
        raise

    # 오래된 ready 세션 / ending 세션 정리 루프
    sweeper = None
    if settings.SESSION_SWEEP_INTERVAL_SECONDS > 0:
        registry = get_session_registry()
        sweeper = asyncio.create_task(registry.run_sweeper(settings.SESSION_SWEEP_INTERVAL_SECONDS))

    logger.info("애플리케이션 준비 완료.")
    yield # 애플리케이션 실행

    logger.info("애플리케이션 종료 - Lifespan")
    if sweeper is not None:
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass
    # 게임창 감시 작업 및 제공사 HTTP 클라이언트 정리
    await shutdown_services()

# --- FastAPI 애플리케이션 생성 ---
app = FastAPI(
    title="GameHub API",
    description="Game catalog visibility and single-session game launching against external providers.",
    version="1.0.0",
    lifespan=lifespan
)

# HTTPS 리다이렉션 미들웨어 추가 (프로덕션 환경에서만 활성화)
if settings.ENVIRONMENT.lower() == "production":
    app.add_middleware(HTTPSRedirectMiddleware)
    logger.info("HTTPS 리다이렉션 미들웨어 활성화됨")

# 신뢰할 수 있는 호스트 미들웨어 추가
app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=settings.ALLOWED_HOSTS.split(",")
)

# CORS 설정
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(games.router)
app.include_router(admin.router)

@app.get("/", tags=["Root"])
async def read_root():
    """
    Root endpoint providing a basic health check message.
    """
    return {"message": "GameHub API is running"}

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run("gamehub.main:app", host="0.0.0.0", port=port, reload=True)
