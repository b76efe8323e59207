from sqlalchemy import Column, Integer, String, Boolean, Float, ForeignKey, Index, UniqueConstraint
from gamehub.database import Base

# 관리자 레벨 상태값
GAME_STATUSES = ("visible", "maintenance", "hidden")
GAME_CATEGORIES = ("casino", "slot", "minigame")

class Provider(Base):
    __tablename__ = "game_providers"

    id = Column(Integer, primary_key=True)
    # API/제공사 계열 태그 (예: "invest", "oroplay", "honor")
    api_tag = Column(String(30), primary_key=True)
    name = Column(String(100), nullable=False)
    status = Column(String(20), nullable=False, default="visible")
    is_visible = Column(Boolean, nullable=False, default=True)

class ProviderGroup(Base):
    """여러 (api_tag, provider_id) 조합을 하나로 보여주는 통합 제공사"""
    __tablename__ = "provider_groups"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False, unique=True)

class ProviderGroupMember(Base):
    __tablename__ = "provider_group_members"

    id = Column(Integer, primary_key=True, autoincrement=True)
    group_id = Column(Integer, ForeignKey("provider_groups.id"), nullable=False, index=True)
    api_tag = Column(String(30), nullable=False)
    provider_id = Column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint('group_id', 'api_tag', 'provider_id', name='uq_provider_group_member'),
    )

class Game(Base):
    __tablename__ = "games"

    id = Column(Integer, primary_key=True)
    provider_id = Column(Integer, nullable=False, index=True)
    api_tag = Column(String(30), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    category = Column(String(20), nullable=False, default="casino")
    status = Column(String(20), nullable=False, default="visible")
    is_visible = Column(Boolean, nullable=False, default=True)
    is_featured = Column(Boolean, nullable=False, default=False)
    priority = Column(Integer, nullable=False, default=0)
    rtp = Column(Float, nullable=True)

    __table_args__ = (
        # 제공사별 게임 목록 조회 최적화
        Index('ix_games_provider', api_tag, provider_id),
    )
