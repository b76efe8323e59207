from sqlalchemy import Column, Integer, String, DECIMAL, DateTime, ForeignKey, Index
from datetime import datetime

from gamehub.database import Base


class PlayRecord(Base):
    """세션 종료 시 제공사가 보고한 베팅/당첨 합계"""
    __tablename__ = "play_records"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String(64), nullable=False, unique=True)
    user_id = Column(String(50), ForeignKey("players.id"), nullable=False, index=True)
    game_id = Column(Integer, nullable=False, index=True)
    api_tag = Column(String(30), nullable=False)
    bet_total = Column(DECIMAL(12, 2), nullable=False, default=0)
    win_total = Column(DECIMAL(12, 2), nullable=False, default=0)
    net = Column(DECIMAL(12, 2), nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    __table_args__ = (
        Index('ix_play_records_user_date', user_id, created_at.desc()),
    )
