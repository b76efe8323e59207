from sqlalchemy import Column, Integer, String, DECIMAL, ForeignKey, DateTime, Index, text
from datetime import datetime
import enum

from gamehub.database import Base


class SessionStatus(str, enum.Enum):
    READY = "ready"
    ACTIVE = "active"
    ENDING = "ending"
    ENDED = "ended"


class PopupStatus(str, enum.Enum):
    """게임창 오픈 결과 (세션 상태와 별도 축으로 관리)"""
    OPENED = "opened"
    BLOCKED = "blocked"


OPEN_STATUSES = (SessionStatus.READY.value, SessionStatus.ACTIVE.value, SessionStatus.ENDING.value)


class GameSession(Base):
    __tablename__ = "game_sessions"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(50), ForeignKey("players.id"), nullable=False, index=True)
    game_id = Column(Integer, nullable=False, index=True)
    api_tag = Column(String(30), nullable=False)
    provider_id = Column(Integer, nullable=True)
    status = Column(String(10), nullable=False, default=SessionStatus.READY.value, index=True)
    popup_status = Column(String(10), nullable=True)
    launch_url = Column(String(2000), nullable=True)
    provider_session_id = Column(String(100), nullable=True)
    # 세션 시작 시 제공사 지갑으로 입금한 원장 잔액
    balance_snapshot = Column(DECIMAL(12, 2), nullable=False, default=0)
    end_reason = Column(String(30), nullable=True)  # 'surface_closed', 'switch', 'forced', 'ready_timeout', 'launch_failed'

    launched_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    ready_at = Column(DateTime, default=datetime.utcnow, nullable=True)
    activated_at = Column(DateTime, nullable=True)
    last_activity_at = Column(DateTime, default=datetime.utcnow, nullable=True)
    ended_at = Column(DateTime, nullable=True)

    __table_args__ = (
        # 사용자당 종료되지 않은 세션은 하나만 허용 (부분 유니크 인덱스)
        Index(
            'uq_game_sessions_user_open', user_id, unique=True,
            sqlite_where=text("status != 'ended'"),
            postgresql_where=text("status != 'ended'")
        ),
        Index('ix_game_sessions_status_ready', status, ready_at),
    )
