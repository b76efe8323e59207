"""
게임 세션 레지스트리 (사용자당 단일 세션 상태 머신)

상태: (없음) → ready → active → ending → ended
팝업 결과(opened/blocked)는 세션 상태와 별도 컬럼(popup_status)으로 관리합니다.

게임 실행 순서:
    노출 판정 → 기존 세션 처리(재사용/거부/전환) → 잔액 확인 → 입금 → URL 발급 → 세션 생성(ready)

- 같은 게임 재요청: 저장된 URL을 그대로 반환하며 재입금하지 않음
- 다른 제공사 계열: SessionConflict (제공사 호출 없음)
- 같은 계열 다른 게임: 이전 세션 출금이 끝난 뒤에 새 세션 입금
- 세션 정리(teardown)는 세션당 하나의 작업으로 합쳐짐 (창 종료/전환/강제 종료 경합)
"""
import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from gamehub.cache import RedisClient
from gamehub.database import session_scope
from gamehub.models.game import Game
from gamehub.models.game_session import GameSession, SessionStatus, PopupStatus, OPEN_STATUSES
from gamehub.models.user import Player
from gamehub.schemas.api import LaunchResult, PopupReportResponse, ProviderSessionState
from gamehub.services.balance import BalanceSynchronizer
from gamehub.services.errors import (
    LaunchErrorKind, ProviderError, SessionNotFound, CatalogNotFound, UnknownProviderFamily,
    POPUP_BLOCKED_GUIDANCE, PROVIDER_ERROR_MESSAGE, SESSION_CONFLICT_MESSAGE
)
from gamehub.services.gateway import GatewayRegistry
from gamehub.services.visibility import VisibilityService
from gamehub.services.watcher import (
    WatchRegistry, SurfaceWatcher, PollingSurfaceWatcher, EventSurfaceWatcher, HeartbeatSurface
)

logger = logging.getLogger(__name__)

UNKNOWN_GAME_NAME = "Unknown game"

END_REASON_SURFACE_CLOSED = "surface_closed"
END_REASON_SWITCH = "switch"
END_REASON_FORCED = "forced"
END_REASON_READY_TIMEOUT = "ready_timeout"
END_REASON_LAUNCH_FAILED = "launch_failed"
END_REASON_RETRY = "retry"


class SessionRegistry:
    """사용자별 게임 세션의 생성/재사용/전환/정리를 담당하는 서비스"""

    def __init__(
        self,
        session_factory,
        gateways: GatewayRegistry,
        watcher: Optional[SurfaceWatcher] = None,
        rollback_attempts: int = 3,
        rollback_backoff: float = 2.0,
        ready_timeout_minutes: int = 10,
        heartbeat_timeout: float = 30.0,
        cache: Optional[RedisClient] = None,
        sleep=asyncio.sleep
    ):
        self.session_factory = session_factory
        self.gateways = gateways
        self.balance = BalanceSynchronizer(
            session_factory, gateways,
            rollback_attempts=rollback_attempts,
            rollback_backoff=rollback_backoff,
            sleep=sleep
        )
        self.watches = WatchRegistry(watcher or EventSurfaceWatcher(), self._on_surface_closed)
        self.ready_timeout = timedelta(minutes=ready_timeout_minutes)
        self.heartbeat_timeout = heartbeat_timeout
        self.cache = cache
        self._user_locks: Dict[str, asyncio.Lock] = {}
        # 잠금을 보유 중이거나 기다리는 실행 요청 수 (0이 되면 잠금 제거)
        self._lock_users: Dict[str, int] = {}
        self._teardowns: Dict[str, asyncio.Future] = {}

    @classmethod
    def from_settings(cls, settings, session_factory, gateways: GatewayRegistry,
                      cache: Optional[RedisClient] = None) -> "SessionRegistry":
        if settings.WATCHER_STRATEGY == "event":
            watcher = EventSurfaceWatcher()
        else:
            watcher = PollingSurfaceWatcher(settings.WATCHER_POLL_INTERVAL_SECONDS)
        return cls(
            session_factory,
            gateways,
            watcher=watcher,
            rollback_attempts=settings.LAUNCH_ROLLBACK_ATTEMPTS,
            rollback_backoff=settings.LAUNCH_ROLLBACK_BACKOFF_SECONDS,
            ready_timeout_minutes=settings.READY_SESSION_TIMEOUT_MINUTES,
            heartbeat_timeout=settings.SURFACE_HEARTBEAT_TIMEOUT_SECONDS,
            cache=cache
        )

    def _acquire_user_lock(self, user_id: str) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = self._user_locks[user_id] = asyncio.Lock()
        self._lock_users[user_id] = self._lock_users.get(user_id, 0) + 1
        return lock

    def _release_user_lock(self, user_id: str) -> None:
        remaining = self._lock_users[user_id] - 1
        if remaining:
            self._lock_users[user_id] = remaining
        else:
            del self._lock_users[user_id]
            del self._user_locks[user_id]

    # ==================== 조회 ====================

    @staticmethod
    def _query_open(db, user_id: str) -> Optional[GameSession]:
        return db.query(GameSession).filter(
            GameSession.user_id == user_id,
            GameSession.status.in_(OPEN_STATUSES)
        ).first()

    def get_open_session(self, user_id: str) -> Optional[GameSession]:
        with session_scope(self.session_factory) as db:
            return self._query_open(db, user_id)

    def get_session(self, session_id: str) -> GameSession:
        with session_scope(self.session_factory) as db:
            game_session = db.query(GameSession).filter(GameSession.id == session_id).first()
        if game_session is None:
            raise SessionNotFound(session_id)
        return game_session

    def list_open_sessions(self, status: Optional[str] = None) -> List[GameSession]:
        with session_scope(self.session_factory) as db:
            query = db.query(GameSession).filter(GameSession.status.in_(OPEN_STATUSES))
            if status:
                query = query.filter(GameSession.status == status)
            return query.order_by(GameSession.launched_at.desc()).all()

    def game_display_name(self, game_id: int) -> str:
        """게임 표시 이름. 조회 실패 시 기본 이름으로 대체합니다."""
        cache_key = f"game_name:{game_id}"
        if self.cache is not None:
            cached = self.cache.get(cache_key)
            if cached:
                return cached

        name = None
        try:
            with session_scope(self.session_factory) as db:
                game = db.query(Game).filter(Game.id == game_id).first()
                name = game.name if game is not None else None
        except SQLAlchemyError as e:
            logger.error(f"Failed to load display name of game {game_id}: {e}")

        if not name:
            logger.warning(f"No display name for game {game_id}, using fallback")
            return UNKNOWN_GAME_NAME
        if self.cache is not None:
            self.cache.set(cache_key, name)
        return name

    # ==================== 게임 실행 ====================

    async def launch_game(self, user_id: str, game_id: int) -> LaunchResult:
        lock = self._acquire_user_lock(user_id)
        try:
            async with lock:
                return await self._launch(user_id, game_id)
        finally:
            self._release_user_lock(user_id)

    async def _launch(self, user_id: str, game_id: int) -> LaunchResult:
        # 1. 노출 판정 (자금 이동 전)
        with session_scope(self.session_factory) as db:
            service = VisibilityService(db)
            try:
                game = service.get_game(game_id)
                visibility = service.resolve_game(user_id, game_id)
            except CatalogNotFound as e:
                logger.warning(f"Launch refused for user {user_id}: {e}")
                return LaunchResult(success=False, error_kind=LaunchErrorKind.NOT_FOUND, message=str(e))
            family, provider_id = game.api_tag, game.provider_id
            existing = self._query_open(db, user_id)

        if not visibility.playable:
            logger.warning(
                f"Launch refused for user {user_id}, game {game_id}: "
                f"{visibility.state.value} at {visibility.deciding_scope.value} scope"
            )
            return LaunchResult(
                success=False,
                error_kind=LaunchErrorKind.PERMISSION_DENIED,
                message=f"This game is currently {visibility.state.value}.",
                deciding_scope=visibility.deciding_scope.value
            )

        # 2. 기존 세션 처리
        if existing is not None:
            if existing.status == SessionStatus.ENDING.value or existing.id in self._teardowns:
                logger.info(f"Session {existing.id} of user {user_id} is still ending, completing it first")
                try:
                    await self.end_session(existing.id, reason=END_REASON_RETRY)
                except (ProviderError, UnknownProviderFamily) as e:
                    return self._provider_failure(user_id, game_id, e)
            elif existing.api_tag != family:
                running_game = self.game_display_name(existing.game_id)
                logger.warning(
                    f"Launch refused for user {user_id}: '{existing.api_tag}' session {existing.id} "
                    f"is running, requested family '{family}'"
                )
                return LaunchResult(
                    success=False,
                    session_id=existing.id,
                    error_kind=LaunchErrorKind.SESSION_CONFLICT,
                    message=SESSION_CONFLICT_MESSAGE.format(game_name=running_game),
                    running_game=running_game
                )
            elif existing.game_id == game_id and existing.launch_url:
                logger.info(f"Reusing launch URL of session {existing.id} for user {user_id}")
                return LaunchResult(
                    success=True,
                    launch_url=existing.launch_url,
                    session_id=existing.id,
                    reused=True
                )
            else:
                logger.info(f"Switching user {user_id} from game {existing.game_id} to {game_id} within '{family}'")
                try:
                    await self.end_session(existing.id, reason=END_REASON_SWITCH)
                except (ProviderError, UnknownProviderFamily) as e:
                    return self._provider_failure(user_id, game_id, e)

        # 3. 잔액 확인
        with session_scope(self.session_factory) as db:
            player = db.query(Player).filter(Player.id == user_id).first()
            amount = Decimal(player.balance or 0) if player is not None else Decimal("0")
        if amount <= 0:
            logger.warning(f"Launch refused for user {user_id}: ledger balance {amount}")
            return LaunchResult(
                success=False,
                error_kind=LaunchErrorKind.INSUFFICIENT_BALANCE,
                message="Your balance is empty. Top up before starting a game."
            )

        # 4. 입금 → URL 발급 → 세션 생성
        return await self._start_session(user_id, game_id, family, provider_id, amount)

    def _provider_failure(self, user_id: str, game_id: int, error: Exception) -> LaunchResult:
        logger.error(f"Launch of game {game_id} for user {user_id} failed at provider: {error}")
        return LaunchResult(
            success=False,
            error_kind=LaunchErrorKind.PROVIDER_ERROR,
            message=PROVIDER_ERROR_MESSAGE
        )

    async def _start_session(self, user_id: str, game_id: int, family: str,
                             provider_id: Optional[int], amount: Decimal) -> LaunchResult:
        session_id = uuid.uuid4().hex
        try:
            gateway = self.gateways.get(family)
        except UnknownProviderFamily as e:
            logger.error(f"Launch of game {game_id} for user {user_id} failed: {e}")
            return LaunchResult(success=False, error_kind=LaunchErrorKind.PROVIDER_ERROR, message=PROVIDER_ERROR_MESSAGE)

        try:
            await self.balance.deposit(session_id, user_id, family, amount)
        except ProviderError as e:
            return self._provider_failure(user_id, game_id, e)

        try:
            ticket = await gateway.get_launch_url(user_id, game_id)
        except ProviderError as e:
            await self._abort_launch(session_id, user_id, game_id, family, provider_id, amount)
            return self._provider_failure(user_id, game_id, e)

        now = datetime.utcnow()
        try:
            with session_scope(self.session_factory) as db:
                db.add(GameSession(
                    id=session_id,
                    user_id=user_id,
                    game_id=game_id,
                    api_tag=family,
                    provider_id=provider_id,
                    status=SessionStatus.READY.value,
                    launch_url=ticket.launch_url,
                    provider_session_id=ticket.session_id,
                    balance_snapshot=amount,
                    launched_at=now,
                    ready_at=now,
                    last_activity_at=now
                ))
        except IntegrityError:
            logger.warning(f"Concurrent launch detected for user {user_id}; rolling back session {session_id}")
            await self._abort_launch(session_id, user_id, game_id, family, provider_id, amount)
            return LaunchResult(
                success=False,
                error_kind=LaunchErrorKind.RACE_CONFLICT,
                message="Another game launch is already in progress."
            )

        logger.info(f"Session {session_id} ready for user {user_id}, game {game_id} ('{family}')")
        return LaunchResult(success=True, launch_url=ticket.launch_url, session_id=session_id)

    async def _abort_launch(self, session_id: str, user_id: str, game_id: int, family: str,
                            provider_id: Optional[int], amount: Decimal) -> None:
        """입금을 원복합니다. 원복도 실패하면 ending 세션으로 남겨 이후 정리에서 회수합니다."""
        if await self.balance.rollback_deposit(session_id, user_id, family):
            return
        try:
            with session_scope(self.session_factory) as db:
                db.add(GameSession(
                    id=session_id,
                    user_id=user_id,
                    game_id=game_id,
                    api_tag=family,
                    provider_id=provider_id,
                    status=SessionStatus.ENDING.value,
                    balance_snapshot=amount,
                    end_reason=END_REASON_LAUNCH_FAILED
                ))
            logger.critical(f"Session {session_id} kept in 'ending' so its stranded deposit can be recovered")
        except IntegrityError:
            logger.critical(
                f"Stranded deposit of {amount} for user {user_id} in '{family}' (session {session_id}) "
                f"could not be recorded; manual reconciliation required"
            )

    # ==================== 팝업/감시 ====================

    def _get_owned_open(self, db, session_id: str, user_id: Optional[str]) -> GameSession:
        query = db.query(GameSession).filter(GameSession.id == session_id)
        if user_id is not None:
            query = query.filter(GameSession.user_id == user_id)
        game_session = query.first()
        if game_session is None or game_session.status not in (SessionStatus.READY.value, SessionStatus.ACTIVE.value):
            raise SessionNotFound(session_id)
        return game_session

    async def mark_popup(self, session_id: str, user_id: Optional[str], opened: bool) -> PopupReportResponse:
        """
        게임창 오픈 결과를 기록합니다.

        차단된 경우 세션을 정리하지 않고 popup_status만 blocked로 남겨,
        재시도 시 같은 URL을 재사용하도록 합니다.
        """
        now = datetime.utcnow()
        with session_scope(self.session_factory) as db:
            game_session = self._get_owned_open(db, session_id, user_id)
            if opened:
                game_session.popup_status = PopupStatus.OPENED.value
                if game_session.status == SessionStatus.READY.value:
                    game_session.status = SessionStatus.ACTIVE.value
                    game_session.activated_at = now
            else:
                game_session.popup_status = PopupStatus.BLOCKED.value
            game_session.last_activity_at = now

        if opened:
            self.watches.register(session_id, HeartbeatSurface(self.heartbeat_timeout))
            logger.info(f"Session {session_id} active, surface opened")
            return PopupReportResponse(
                session_id=session_id,
                status=game_session.status,
                popup_status=game_session.popup_status
            )

        logger.warning(f"Popup blocked for session {session_id}; keeping session and launch URL")
        return PopupReportResponse(
            session_id=session_id,
            status=game_session.status,
            popup_status=game_session.popup_status,
            error_kind=LaunchErrorKind.POPUP_BLOCKED,
            message=POPUP_BLOCKED_GUIDANCE,
            launch_url=game_session.launch_url
        )

    def heartbeat(self, session_id: str, user_id: Optional[str] = None) -> bool:
        with session_scope(self.session_factory) as db:
            game_session = self._get_owned_open(db, session_id, user_id)
            game_session.last_activity_at = datetime.utcnow()
        return self.watches.beat(session_id)

    async def notify_surface_closed(self, session_id: str) -> bool:
        """외부 화면 종료 신호. 중복 신호는 무시되고 정리는 한 번만 수행됩니다."""
        return await self.watches.notify_closed(session_id)

    async def _on_surface_closed(self, session_id: str) -> bool:
        return await self.end_session(session_id, reason=END_REASON_SURFACE_CLOSED)

    # ==================== 세션 정리 ====================

    async def end_session(self, session_id: str, reason: str = END_REASON_SURFACE_CLOSED) -> bool:
        """
        세션을 ending → ended로 정리합니다. 진행 중인 정리가 있으면 그 작업에 합류합니다.

        Returns:
            이번 호출(또는 합류한 작업)이 실제로 출금을 수행했으면 True, 이미 종료된 세션이면 False

        Raises:
            SessionNotFound: 세션이 없는 경우
            ProviderError: 출금 실패 (세션은 ending으로 남음)
        """
        task = self._teardowns.get(session_id)
        if task is None:
            task = asyncio.ensure_future(self._teardown(session_id, reason))
            self._teardowns[session_id] = task
        else:
            logger.info(f"Joining in-flight teardown of session {session_id}")
        return await asyncio.shield(task)

    async def _teardown(self, session_id: str, reason: str) -> bool:
        try:
            with session_scope(self.session_factory) as db:
                game_session = db.query(GameSession).filter(GameSession.id == session_id).first()
                if game_session is not None and game_session.status != SessionStatus.ENDED.value:
                    if game_session.status != SessionStatus.ENDING.value:
                        game_session.status = SessionStatus.ENDING.value
                    if not game_session.end_reason:
                        game_session.end_reason = reason
            if game_session is None:
                raise SessionNotFound(session_id)
            if game_session.status == SessionStatus.ENDED.value:
                logger.info(f"Session {session_id} already ended")
                self.watches.unregister(session_id)
                return False

            await self.balance.withdraw_and_reconcile(session_id)
            self.watches.unregister(session_id)
            logger.info(f"Session {session_id} ended ({game_session.end_reason})")
            return True
        except (ProviderError, UnknownProviderFamily) as e:
            logger.error(f"Teardown of session {session_id} failed, session stays ending: {e}")
            raise
        finally:
            self._teardowns.pop(session_id, None)

    async def force_end(self, session_id: str) -> bool:
        logger.warning(f"Force ending session {session_id}")
        return await self.end_session(session_id, reason=END_REASON_FORCED)

    async def expire_stale_sessions(self, now: Optional[datetime] = None) -> Tuple[int, int]:
        """
        제한 시간 동안 실행되지 않은 ready 세션을 정리하고, ending에 머문 세션의 정리를 재시도합니다.

        Returns:
            (정리된 세션 수, 실패한 세션 수)
        """
        cutoff = (now or datetime.utcnow()) - self.ready_timeout
        with session_scope(self.session_factory) as db:
            stale = [row.id for row in db.query(GameSession.id).filter(
                GameSession.status == SessionStatus.READY.value,
                GameSession.ready_at < cutoff
            ).all()]
            stuck = [row.id for row in db.query(GameSession.id).filter(
                GameSession.status == SessionStatus.ENDING.value
            ).all()]

        expired, failed = 0, 0
        targets = [(sid, END_REASON_READY_TIMEOUT) for sid in stale] + [(sid, END_REASON_RETRY) for sid in stuck]
        for session_id, reason in targets:
            try:
                if await self.end_session(session_id, reason=reason):
                    expired += 1
            except (ProviderError, UnknownProviderFamily):
                failed += 1
        if targets:
            logger.info(f"Session sweep: {expired} ended, {failed} failed ({len(stale)} stale ready, {len(stuck)} ending)")
        return expired, failed

    async def run_sweeper(self, interval: float) -> None:
        """백그라운드 정리 루프 (lifespan에서 실행)"""
        logger.info(f"Session sweeper started (every {interval}s)")
        while True:
            await asyncio.sleep(interval)
            try:
                await self.expire_stale_sessions()
            except Exception as e:
                logger.error(f"Session sweep failed: {e}", exc_info=True)

    async def query_provider_state(self, session_id: str) -> ProviderSessionState:
        """제공사가 보고 있는 사용자 세션 상태 (관리자 확인용)"""
        game_session = self.get_session(session_id)
        gateway = self.gateways.get(game_session.api_tag)
        return await gateway.query_active_session(game_session.user_id)

    async def aclose(self) -> None:
        await self.watches.aclose()
