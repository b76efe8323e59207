from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.orm import Session
from typing import List, Optional
import logging

from gamehub.api.deps import get_db, require_admin, get_session_registry, TokenData
from gamehub.api.games import SessionErrors
from gamehub.schemas.api import GameSessionOut, ExpireSessionsResponse, SurfaceClosedResponse, ProviderSessionState
from gamehub.schemas.game import VisibilityResult
from gamehub.services.errors import ProviderError, SessionNotFound, CatalogNotFound, UnknownProviderFamily
from gamehub.services.sessions import SessionRegistry
from gamehub.services.visibility import VisibilityService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admin",
    tags=["Admin"],
    responses={403: {"description": "Admin only"}},
)

@router.get("/sessions", response_model=List[GameSessionOut])
async def list_sessions(
    status: Optional[str] = Query(None, description="ready, active, ending"),
    admin: TokenData = Depends(require_admin),
    registry: SessionRegistry = Depends(get_session_registry)
):
    """종료되지 않은 게임 세션 목록"""
    return [GameSessionOut.model_validate(s) for s in registry.list_open_sessions(status=status)]

@router.post("/sessions/{session_id}/force-end", response_model=SurfaceClosedResponse)
async def force_end_session(
    session_id: str = Path(..., description="게임 세션 ID"),
    admin: TokenData = Depends(require_admin),
    registry: SessionRegistry = Depends(get_session_registry)
):
    logger.warning(f"Admin {admin.sub} force ending session {session_id}")
    try:
        torn_down = await registry.force_end(session_id)
    except SessionNotFound:
        raise SessionErrors.session_not_found(session_id)
    except UnknownProviderFamily as e:
        raise SessionErrors.unknown_family(e)
    except ProviderError as e:
        raise SessionErrors.provider_error(e)
    return SurfaceClosedResponse(session_id=session_id, torn_down=torn_down, status=registry.get_session(session_id).status)

@router.post("/sessions/expire", response_model=ExpireSessionsResponse)
async def expire_sessions(
    admin: TokenData = Depends(require_admin),
    registry: SessionRegistry = Depends(get_session_registry)
):
    """오래된 ready 세션 정리 및 ending 세션 재시도를 즉시 실행합니다."""
    expired, failed = await registry.expire_stale_sessions()
    return ExpireSessionsResponse(expired=expired, failed=failed)

@router.get("/sessions/{session_id}/provider-state", response_model=ProviderSessionState)
async def provider_state(
    session_id: str = Path(..., description="게임 세션 ID"),
    admin: TokenData = Depends(require_admin),
    registry: SessionRegistry = Depends(get_session_registry)
):
    try:
        return await registry.query_provider_state(session_id)
    except SessionNotFound:
        raise SessionErrors.session_not_found(session_id)
    except UnknownProviderFamily as e:
        raise SessionErrors.unknown_family(e)
    except ProviderError as e:
        raise SessionErrors.provider_error(e)

@router.get("/visibility/{user_id}/games/{game_id}", response_model=VisibilityResult)
async def user_game_visibility(
    user_id: str = Path(..., description="사용자 ID"),
    game_id: int = Path(..., description="게임 ID"),
    admin: TokenData = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """특정 사용자 기준 게임 노출 판정 (user_override_locked로 사용자 설정 잠김 여부 확인)"""
    try:
        return VisibilityService(db).resolve_game(user_id, game_id)
    except CatalogNotFound as e:
        raise SessionErrors.not_found(e)
