from sqlalchemy import Column, Integer, String, ForeignKey, TIMESTAMP, func, Index
from gamehub.database import Base

# 접근 제어 종류
ACCESS_KIND_PROVIDER = "provider"
ACCESS_KIND_GAME = "game"
ACCESS_KIND_MAINTENANCE = "maintenance"

class AccessOverride(Base):
    """
    매장/사용자 범위의 노출 제한 레코드.

    범위 키는 (store_id, user_id, api_tag, provider_id, game_id) 입니다.
    store_id만 있으면 매장 범위, user_id만 있으면 사용자 범위입니다.
    provider 종류에서 provider_id가 NULL이면 해당 api_tag 전체에 적용됩니다.
    관리자 화면(외부 협력 모듈)이 생성/삭제하며 이 서비스는 읽기만 합니다.
    """
    __tablename__ = "access_overrides"

    id = Column(Integer, primary_key=True, autoincrement=True)
    store_id = Column(String(50), ForeignKey("partners.id"), nullable=True, index=True)
    user_id = Column(String(50), ForeignKey("players.id"), nullable=True, index=True)
    api_tag = Column(String(30), nullable=False)
    provider_id = Column(Integer, nullable=True)
    game_id = Column(Integer, nullable=True)
    access_kind = Column(String(20), nullable=False)  # 'provider', 'game', 'maintenance'
    state = Column(String(20), nullable=False, default="hidden")  # 'visible', 'maintenance', 'hidden'
    created_at = Column(TIMESTAMP, server_default=func.now(), nullable=False)

    __table_args__ = (
        Index('ix_access_overrides_store_api', store_id, api_tag),
        Index('ix_access_overrides_user_api', user_id, api_tag),
    )
