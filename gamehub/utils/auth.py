from datetime import datetime, timedelta
from typing import Optional
from jose import jwt

from gamehub.config.settings import get_settings

# 설정 가져오기
settings = get_settings()

def create_access_token(user_id: str, role: str = "user", expires_minutes: Optional[int] = None) -> str:
    """
    게임 API용 JWT 액세스 토큰을 생성합니다.

    Args:
        user_id: 토큰 subject (players.id)
        role: "user" 또는 "admin"
        expires_minutes: 만료 시간(분), 미지정 시 ACCESS_TOKEN_EXPIRE_MINUTES

    Returns:
        str: 서명된 JWT
    """
    minutes = expires_minutes if expires_minutes is not None else settings.ACCESS_TOKEN_EXPIRE_MINUTES
    payload = {
        "sub": user_id,
        "role": role,
        "exp": datetime.utcnow() + timedelta(minutes=minutes)
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
