# gamehub/scripts/initialize_db.py
import sys
import os
# 프로젝트 루트를 Python 경로에 추가 (gamehub 디렉토리의 상위 디렉토리)
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..'))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

from decimal import Decimal
import logging

from gamehub.database import SessionLocal, engine, Base
from gamehub.models.user import Partner, Player
from gamehub.models.game import Provider, ProviderGroup, ProviderGroupMember, Game
from gamehub.models import access, game_session, wallet, game_history  # noqa: F401 (create_all 대상 등록)

logger = logging.getLogger(__name__)

# 조직 계층: 본사(Lv1) → 운영사(Lv2) → 매장(Lv3)
DEMO_PARTNERS = [
    ("hq", "Head Office", None, 1),
    ("op-seoul", "Seoul Operator", "hq", 2),
    ("store-1", "Gangnam Store", "op-seoul", 3),
    ("store-2", "Hongdae Store", "op-seoul", 3),
]

DEMO_PLAYERS = [
    ("user-1", "alice", "store-1", Decimal("10000.00")),
    ("user-2", "bob", "store-2", Decimal("5000.00")),
    ("user-3", "carol", None, Decimal("3000.00")),
    ("user-broke", "dave", "store-1", Decimal("0.00")),
]

# (id, api_tag, name)
DEMO_PROVIDERS = [
    (1, "invest", "Invest Live"),
    (2, "honor", "Pragmatic Play"),
    (3, "oroplay", "Pragmatic Play"),
    (4, "honor", "Evolution"),
]

# 같은 제공사를 여러 계열에서 제공하는 경우 하나로 묶어 노출
DEMO_GROUPS = [
    (1, "Pragmatic Play", [("honor", 2), ("oroplay", 3)]),
]

# (id, api_tag, provider_id, name, category, status, priority)
DEMO_GAMES = [
    (101, "invest", 1, "Lucky Baccarat", "casino", "visible", 10),
    (102, "invest", 1, "Power Ladder", "minigame", "maintenance", 0),
    (201, "honor", 2, "Sweet Bonanza", "slot", "visible", 30),
    (202, "honor", 2, "Gates of Olympus", "slot", "visible", 20),
    (301, "oroplay", 3, "Sugar Rush", "slot", "visible", 5),
    (401, "honor", 4, "Lightning Roulette", "casino", "visible", 15),
]

def seed_demo_data(db) -> bool:
    """데모 조직/사용자/카탈로그를 추가합니다. 이미 게임이 있으면 건너뜁니다."""
    existing_games = db.query(Game).count()
    if existing_games > 0:
        logger.info(f"{existing_games} games already exist. Skipping initialization.")
        return False

    for partner_id, name, parent_id, level in DEMO_PARTNERS:
        db.add(Partner(id=partner_id, name=name, parent_id=parent_id, level=level))
    db.flush()
    for user_id, username, store_id, balance in DEMO_PLAYERS:
        db.add(Player(id=user_id, username=username, store_id=store_id, balance=balance))
    for provider_id, api_tag, name in DEMO_PROVIDERS:
        db.add(Provider(id=provider_id, api_tag=api_tag, name=name, status="visible", is_visible=True))
    for group_id, name, members in DEMO_GROUPS:
        db.add(ProviderGroup(id=group_id, name=name))
        for api_tag, provider_id in members:
            db.add(ProviderGroupMember(group_id=group_id, api_tag=api_tag, provider_id=provider_id))
    for game_id, api_tag, provider_id, name, category, status, priority in DEMO_GAMES:
        db.add(Game(
            id=game_id,
            api_tag=api_tag,
            provider_id=provider_id,
            name=name,
            category=category,
            status=status,
            is_visible=True,
            priority=priority
        ))
    db.commit()
    logger.info(f"Seeded {len(DEMO_PARTNERS)} partners, {len(DEMO_PLAYERS)} players, {len(DEMO_GAMES)} games.")
    return True

def initialize_games_data():
    """Initialize demo data in the database."""
    # 데이터베이스 테이블 생성 (없으면)
    try:
        logger.info("Creating database tables if they don't exist...")
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables checked/created.")
    except Exception as e:
        logger.error(f"Error creating database tables: {e}", exc_info=True)
        return # 테이블 생성 실패 시 중단

    db = SessionLocal()
    try:
        seed_demo_data(db)
    except Exception as e:
        logger.error(f"Error initializing demo data: {e}", exc_info=True)
        db.rollback()
    finally:
        db.close()

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    initialize_games_data()
