from fastapi import APIRouter, Depends, HTTPException, Query, Path, status
from sqlalchemy.orm import Session
from typing import List, Optional
import logging

from gamehub.api.deps import get_db, get_current_user_id, get_session_registry
from gamehub.schemas.api import (
    GameLaunchRequest, LaunchResult,
    PopupReport, PopupReportResponse,
    SurfaceClosedResponse, ActiveSessionResponse, GameSessionOut
)
from gamehub.schemas.game import GameOut, ProviderOut, GameListResponse, VisibilityResult
from gamehub.services.errors import ProviderError, SessionNotFound, CatalogNotFound, UnknownProviderFamily
from gamehub.services.sessions import SessionRegistry
from gamehub.services.visibility import VisibilityService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/games",
    tags=["Games"],
    responses={404: {"description": "Not found"}},
)

# ==================== 에러 처리 클래스 ====================
class SessionErrors:
    """일관된 에러 응답을 생성하는 클래스"""

    @staticmethod
    def not_found(error: CatalogNotFound) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{error.kind} not found"
        )

    @staticmethod
    def session_not_found(session_id: str) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Open game session {session_id} not found"
        )

    @staticmethod
    def unknown_family(error: UnknownProviderFamily) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No gateway for provider family '{error.family}'"
        )

    @staticmethod
    def provider_error(error: ProviderError) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Provider '{error.family}' failed during {error.operation}"
        )


def _owned_session(registry: SessionRegistry, session_id: str, user_id: str):
    try:
        game_session = registry.get_session(session_id)
    except SessionNotFound:
        raise SessionErrors.session_not_found(session_id)
    # 다른 사용자의 세션은 존재 여부도 노출하지 않음
    if game_session.user_id != user_id:
        raise SessionErrors.session_not_found(session_id)
    return game_session

# ==================== 목록 ====================

@router.get("/", response_model=GameListResponse)
async def list_games(
    category: Optional[str] = Query(None, description="casino, slot, minigame"),
    api_tag: Optional[str] = Query(None, description="제공사 계열"),
    provider_id: Optional[int] = Query(None, description="제공사 ID"),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """사용자에게 노출되는 게임 목록 (점검중 게임은 상태와 함께 포함)"""
    try:
        rows = VisibilityService(db).list_visible_games(user_id, category=category, api_tag=api_tag, provider_id=provider_id)
    except CatalogNotFound as e:
        raise SessionErrors.not_found(e)
    games = [GameOut(
        id=game.id,
        provider_id=game.provider_id,
        api_tag=game.api_tag,
        name=game.name,
        category=game.category,
        is_featured=bool(game.is_featured),
        priority=game.priority or 0,
        rtp=float(game.rtp) if game.rtp is not None else None,
        state=result.state
    ) for game, result in rows]
    return GameListResponse(games=games, total=len(games))

@router.get("/providers", response_model=List[ProviderOut])
async def list_providers(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """노출되는 제공사 목록. 통합 제공사는 하나의 항목으로 반환됩니다."""
    try:
        return [ProviderOut(**entry) for entry in VisibilityService(db).list_visible_providers(user_id)]
    except CatalogNotFound as e:
        raise SessionErrors.not_found(e)

# ==================== 노출 판정 ====================

@router.get("/{game_id}/visibility", response_model=VisibilityResult)
async def game_visibility(
    game_id: int = Path(..., description="게임 ID"),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    try:
        return VisibilityService(db).resolve_game(user_id, game_id)
    except CatalogNotFound as e:
        raise SessionErrors.not_found(e)

@router.get("/providers/{provider_id}/visibility", response_model=VisibilityResult)
async def provider_visibility(
    provider_id: int = Path(..., description="제공사 ID"),
    api_tag: str = Query(..., description="제공사 계열"),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    try:
        return VisibilityService(db).resolve_provider(user_id, api_tag, provider_id)
    except CatalogNotFound as e:
        raise SessionErrors.not_found(e)

@router.get("/provider-groups/{group_id}/visibility", response_model=VisibilityResult)
async def provider_group_visibility(
    group_id: int = Path(..., description="통합 제공사 ID"),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    try:
        return VisibilityService(db).resolve_provider_group(user_id, group_id)
    except CatalogNotFound as e:
        raise SessionErrors.not_found(e)

# ==================== 게임 실행 / 세션 ====================

@router.post("/launch", response_model=LaunchResult)
async def launch_game(
    request: GameLaunchRequest,
    user_id: str = Depends(get_current_user_id),
    registry: SessionRegistry = Depends(get_session_registry)
):
    """
    게임을 실행합니다.

    권한/충돌/잔액 부족/제공사 오류는 success=false와 error_kind로 반환됩니다.
    같은 게임을 다시 요청하면 기존 URL이 재사용(reused=true)되며 재입금하지 않습니다.
    """
    logger.info(f"Launch requested: user={user_id}, game={request.game_id}")
    return await registry.launch_game(user_id, request.game_id)

@router.get("/sessions/active", response_model=ActiveSessionResponse)
async def active_session(
    user_id: str = Depends(get_current_user_id),
    registry: SessionRegistry = Depends(get_session_registry)
):
    game_session = registry.get_open_session(user_id)
    if game_session is None:
        return ActiveSessionResponse(is_active=False)
    return ActiveSessionResponse(
        is_active=True,
        game_name=registry.game_display_name(game_session.game_id),
        session=GameSessionOut.model_validate(game_session)
    )

@router.post("/sessions/{session_id}/popup", response_model=PopupReportResponse)
async def report_popup(
    report: PopupReport,
    session_id: str = Path(..., description="게임 세션 ID"),
    user_id: str = Depends(get_current_user_id),
    registry: SessionRegistry = Depends(get_session_registry)
):
    """게임창 오픈 결과 보고. 차단된 경우에도 세션과 입금은 유지됩니다."""
    try:
        return await registry.mark_popup(session_id, user_id, report.opened)
    except SessionNotFound:
        raise SessionErrors.session_not_found(session_id)

@router.post("/sessions/{session_id}/heartbeat")
async def session_heartbeat(
    session_id: str = Path(..., description="게임 세션 ID"),
    user_id: str = Depends(get_current_user_id),
    registry: SessionRegistry = Depends(get_session_registry)
):
    try:
        watched = registry.heartbeat(session_id, user_id)
    except SessionNotFound:
        raise SessionErrors.session_not_found(session_id)
    return {"session_id": session_id, "watched": watched}

@router.post("/sessions/{session_id}/closed", response_model=SurfaceClosedResponse)
async def surface_closed(
    session_id: str = Path(..., description="게임 세션 ID"),
    user_id: str = Depends(get_current_user_id),
    registry: SessionRegistry = Depends(get_session_registry)
):
    """게임창이 닫혔음을 알립니다. 출금/정산 후 세션이 종료됩니다."""
    _owned_session(registry, session_id, user_id)
    try:
        torn_down = await registry.notify_surface_closed(session_id)
    except ProviderError as e:
        raise SessionErrors.provider_error(e)
    except UnknownProviderFamily as e:
        raise SessionErrors.unknown_family(e)
    except SessionNotFound:
        raise SessionErrors.session_not_found(session_id)
    game_session = registry.get_session(session_id)
    return SurfaceClosedResponse(session_id=session_id, torn_down=torn_down, status=game_session.status)
