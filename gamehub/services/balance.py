"""
세션 단위 원장 ↔ 제공사 지갑 잔액 동기화

- deposit: 제공사 입금 성공 후 원장 차감 + LedgerEntry(deposit)
- withdraw_and_reconcile: 제공사 전액 출금 후 원장 복원 + LedgerEntry(withdraw), 세션 종료
- rollback_deposit: 게임 URL 발급 실패 시 방금 입금한 금액을 재시도하며 회수

세션 ID + 이동 유형이 원장 이동의 멱등성 키입니다. DB 트랜잭션은 제공사 호출 전에 항상 커밋합니다.
"""
import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from gamehub.database import session_scope
from gamehub.models.game_session import GameSession, SessionStatus
from gamehub.models.game_history import PlayRecord
from gamehub.models.user import Player
from gamehub.models.wallet import LedgerEntry, ENTRY_DEPOSIT, ENTRY_WITHDRAW, ENTRY_ROLLBACK
from gamehub.schemas.api import DepositResult, WithdrawResult
from gamehub.services.errors import ProviderError, SessionNotFound, DuplicateTransfer, CatalogNotFound

logger = logging.getLogger(__name__)


class BalanceSynchronizer:
    def __init__(self, session_factory, gateways, rollback_attempts: int = 3,
                 rollback_backoff: float = 2.0, sleep=asyncio.sleep):
        self.session_factory = session_factory
        self.gateways = gateways
        self.rollback_attempts = max(1, rollback_attempts)
        self.rollback_backoff = rollback_backoff
        self._sleep = sleep

    @staticmethod
    def _has_entry(db, session_id: str, entry_type: str) -> bool:
        return db.query(LedgerEntry.id).filter(
            LedgerEntry.session_id == session_id,
            LedgerEntry.entry_type == entry_type
        ).first() is not None

    @staticmethod
    def _get_player(db, user_id: str) -> Player:
        player = db.query(Player).filter(Player.id == user_id).with_for_update().first()
        if player is None:
            raise CatalogNotFound("user", user_id)
        return player

    def _record(self, db, session_id: str, user_id: str, family: str, entry_type: str, amount: Decimal) -> LedgerEntry:
        """원장 잔액을 갱신하고 이동 기록을 남깁니다. (deposit은 차감, 나머지는 복원)"""
        player = self._get_player(db, user_id)
        before = Decimal(player.balance or 0)
        after = before - amount if entry_type == ENTRY_DEPOSIT else before + amount
        player.balance = after
        entry = LedgerEntry(
            session_id=session_id,
            user_id=user_id,
            api_tag=family,
            entry_type=entry_type,
            amount=amount,
            balance_before=before,
            balance_after=after
        )
        db.add(entry)
        return entry

    async def deposit(self, session_id: str, user_id: str, family: str, amount: Decimal) -> DepositResult:
        """원장 잔액을 제공사 지갑으로 입금합니다. 같은 세션에 두 번째 입금은 거부합니다."""
        with session_scope(self.session_factory) as db:
            duplicate = self._has_entry(db, session_id, ENTRY_DEPOSIT)
        if duplicate:
            logger.warning(f"Deposit already recorded for session {session_id}, refusing second deposit")
            raise DuplicateTransfer(session_id, ENTRY_DEPOSIT)

        gateway = self.gateways.get(family)
        result = await gateway.deposit(user_id, amount)

        with session_scope(self.session_factory) as db:
            entry = self._record(db, session_id, user_id, family, ENTRY_DEPOSIT, amount)
        logger.info(
            f"Deposited {amount} to '{family}' for user {user_id} "
            f"(session {session_id}, ledger {entry.balance_before} -> {entry.balance_after})"
        )
        return result

    async def withdraw_and_reconcile(self, session_id: str) -> Optional[WithdrawResult]:
        """
        제공사 지갑 잔액 전체를 원장으로 회수하고 세션을 ended로 전환합니다.

        제공사 호출이 실패하면 ProviderError를 그대로 전달하며 세션은 ending 상태로 남습니다.
        이미 종료된 세션이면 None을 반환합니다.
        """
        with session_scope(self.session_factory) as db:
            game_session = db.query(GameSession).filter(GameSession.id == session_id).first()
            if game_session is not None and game_session.status not in (SessionStatus.ENDED.value, SessionStatus.ENDING.value):
                game_session.status = SessionStatus.ENDING.value
        if game_session is None:
            raise SessionNotFound(session_id)
        if game_session.status == SessionStatus.ENDED.value:
            logger.info(f"Session {session_id} already ended, nothing to withdraw")
            return None

        user_id, family = game_session.user_id, game_session.api_tag
        gateway = self.gateways.get(family)
        result = await gateway.withdraw(user_id)

        now = datetime.utcnow()
        with session_scope(self.session_factory) as db:
            entry = self._record(db, session_id, user_id, family, ENTRY_WITHDRAW, result.amount)
            if result.bet_total is not None or result.win_total is not None:
                bet_total = result.bet_total or Decimal("0")
                win_total = result.win_total or Decimal("0")
                db.add(PlayRecord(
                    session_id=session_id,
                    user_id=user_id,
                    game_id=game_session.game_id,
                    api_tag=family,
                    bet_total=bet_total,
                    win_total=win_total,
                    net=win_total - bet_total
                ))
            db.query(GameSession).filter(GameSession.id == session_id).update({
                GameSession.status: SessionStatus.ENDED.value,
                GameSession.ended_at: now,
                GameSession.last_activity_at: now
            }, synchronize_session=False)
        logger.info(
            f"Withdrew {result.amount} from '{family}' for user {user_id} "
            f"(session {session_id}, ledger {entry.balance_before} -> {entry.balance_after})"
        )
        return result

    async def rollback_deposit(self, session_id: str, user_id: str, family: str) -> bool:
        """
        게임 실행 실패 시 입금 원복. 최대 rollback_attempts회, attempt × backoff초 간격으로 재시도합니다.

        Returns:
            회수 성공 여부 (실패 시 원장과 제공사 지갑이 불일치하므로 수동 확인 필요)
        """
        gateway = self.gateways.get(family)
        for attempt in range(1, self.rollback_attempts + 1):
            try:
                result = await gateway.withdraw(user_id)
            except ProviderError as e:
                logger.warning(f"Rollback withdraw attempt {attempt}/{self.rollback_attempts} failed for session {session_id}: {e}")
                if attempt < self.rollback_attempts:
                    await self._sleep(attempt * self.rollback_backoff)
                continue

            with session_scope(self.session_factory) as db:
                self._record(db, session_id, user_id, family, ENTRY_ROLLBACK, result.amount)
            logger.info(f"Rolled back deposit of session {session_id}: {result.amount} returned to user {user_id}")
            return True

        logger.critical(
            f"Deposit rollback failed for session {session_id} (user {user_id}, family '{family}') "
            f"after {self.rollback_attempts} attempts; provider wallet still holds the funds"
        )
        return False
