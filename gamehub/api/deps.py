# gamehub/api/deps.py
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt # Use jose library which is recommended by FastAPI docs for JWT
from pydantic import BaseModel, ValidationError
from typing import Optional
import logging

from gamehub.config.settings import settings
from gamehub.database import get_db, SessionLocal  # noqa: F401 (get_db는 라우터에서 deps 경유로 사용)
from gamehub.cache import get_redis_client
from gamehub.services.gateway import GatewayRegistry
from gamehub.services.sessions import SessionRegistry

# 로깅 설정
logger = logging.getLogger(__name__)

# 토큰 발급은 상위 인증 서비스가 담당하며, 여기서는 Swagger UI 표시용 URL만 지정
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token", auto_error=False)

class TokenData(BaseModel):
    sub: str # 'sub' 클레임 (user_id)
    role: str = "user"

async def get_current_token(token: Optional[str] = Depends(oauth2_scheme)) -> TokenData:
    """
    Validates the JWT token from the Authorization header.

    Raises:
        HTTPException 401: If the token is invalid, expired, or missing credentials.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    # 토큰이 없는 경우 명시적으로 오류 발생
    if token is None:
        logger.warning("인증 토큰 누락")
        raise credentials_exception

    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        return TokenData(**payload)
    except JWTError as e:
        # 만료, 서명 오류 등
        logger.warning(f"JWT 검증 오류: {e}")
        raise credentials_exception
    except ValidationError as e:
        # sub 클레임 누락 등
        logger.warning(f"토큰 데이터 유효성 검증 실패: {e}")
        raise credentials_exception

async def get_current_user_id(token: TokenData = Depends(get_current_token)) -> str:
    return token.sub

async def require_admin(token: TokenData = Depends(get_current_token)) -> TokenData:
    if token.role != "admin":
        logger.warning(f"관리자 권한 없는 접근: user={token.sub}, role={token.role}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required"
        )
    return token

# ==================== 서비스 싱글톤 ====================
_gateway_registry: Optional[GatewayRegistry] = None
_session_registry: Optional[SessionRegistry] = None

def get_gateway_registry() -> GatewayRegistry:
    global _gateway_registry
    if _gateway_registry is None:
        _gateway_registry = GatewayRegistry.from_settings(settings)
    return _gateway_registry

def get_session_registry() -> SessionRegistry:
    """애플리케이션 전체에서 하나의 세션 레지스트리를 공유합니다. (테스트에서는 dependency_overrides로 교체)"""
    global _session_registry
    if _session_registry is None:
        _session_registry = SessionRegistry.from_settings(
            settings,
            SessionLocal,
            get_gateway_registry(),
            cache=get_redis_client()
        )
    return _session_registry

async def shutdown_services() -> None:
    global _gateway_registry, _session_registry
    if _session_registry is not None:
        await _session_registry.aclose()
        _session_registry = None
    if _gateway_registry is not None:
        await _gateway_registry.aclose()
        _gateway_registry = None
