from sqlalchemy import Column, String, Integer, DECIMAL, ForeignKey, TIMESTAMP, func
from sqlalchemy.orm import relationship
from gamehub.database import Base
import logging

logger = logging.getLogger(__name__)

class Partner(Base):
    """조직 계층 (Lv1 글로벌 관리자 → 지역 운영사 → ... → 매장)"""
    __tablename__ = "partners"

    id = Column(String(50), primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    parent_id = Column(String(50), ForeignKey("partners.id"), nullable=True, index=True)
    level = Column(Integer, nullable=False, default=1)

    parent = relationship("Partner", remote_side=[id])

class Player(Base):
    __tablename__ = "players"

    id = Column(String(50), primary_key=True, index=True)
    username = Column(String(50), unique=True, index=True, nullable=False)
    # 소속 매장 (매장이 없는 사용자는 매장 범위 오버라이드가 적용되지 않음)
    store_id = Column(String(50), ForeignKey("partners.id"), nullable=True, index=True)
    # 원장 보유금: 평상시 기준 잔액, 게임 세션 동안에는 제공사 지갑으로 입금된 만큼 줄어듦
    balance = Column(DECIMAL(12, 2), nullable=False, default=0, server_default='0.00')
    currency = Column(String(3), nullable=False, default="KRW")
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now(), nullable=True)

    store = relationship("Partner")
