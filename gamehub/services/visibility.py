"""
게임/제공사 노출 판정

관리자 → 운영사 → 매장 → 사용자 순으로 범위를 평가하고, 처음으로
hidden 또는 maintenance를 선언한 범위가 결과를 결정합니다. 좁은 범위는
넓은 범위의 제한을 더 좁힐 수만 있고 풀 수는 없습니다.

판정 함수(resolve_*)는 순수 함수이며 DB 접근은 VisibilityService가 담당합니다.
"""
from typing import Optional, Dict, Any, List, Tuple, Iterable, Callable
import logging

from sqlalchemy.orm import Session
from sqlalchemy import or_, and_

from gamehub.models.access import AccessOverride, ACCESS_KIND_PROVIDER, ACCESS_KIND_GAME, ACCESS_KIND_MAINTENANCE
from gamehub.models.game import Game, Provider, ProviderGroup, ProviderGroupMember
from gamehub.models.user import Player
from gamehub.schemas.game import VisibilityState, VisibilityScope, VisibilityResult
from gamehub.services.errors import CatalogNotFound

logger = logging.getLogger(__name__)

_RESTRICTION_RANK = {
    VisibilityState.VISIBLE: 0,
    VisibilityState.MAINTENANCE: 1,
    VisibilityState.HIDDEN: 2,
}

SCOPE_ORDER = (VisibilityScope.ADMIN, VisibilityScope.OPERATOR, VisibilityScope.STORE, VisibilityScope.USER)

VISIBLE = VisibilityResult(state=VisibilityState.VISIBLE)


def _as_state(value) -> VisibilityState:
    try:
        return VisibilityState(value)
    except ValueError:
        # 알 수 없는 상태값은 숨김으로 취급
        logger.warning(f"Unknown visibility state '{value}', treating as hidden")
        return VisibilityState.HIDDEN


def most_restrictive(states: Iterable) -> VisibilityState:
    result = VisibilityState.VISIBLE
    for state in states:
        state = _as_state(state)
        if _RESTRICTION_RANK[state] > _RESTRICTION_RANK[result]:
            result = state
    return result


def _override_state(override: AccessOverride) -> VisibilityState:
    if override.access_kind == ACCESS_KIND_MAINTENANCE:
        return VisibilityState.MAINTENANCE
    return _as_state(override.state)


def override_matches_game(override: AccessOverride, game: Game) -> bool:
    if override.api_tag != game.api_tag:
        return False
    if override.provider_id is not None and override.provider_id != game.provider_id:
        return False
    if override.access_kind == ACCESS_KIND_PROVIDER:
        return override.game_id is None
    if override.access_kind == ACCESS_KIND_GAME:
        return override.game_id == game.id
    if override.access_kind == ACCESS_KIND_MAINTENANCE:
        return override.game_id is None or override.game_id == game.id
    return False


def override_matches_provider(override: AccessOverride, provider: Provider) -> bool:
    if override.api_tag != provider.api_tag or override.game_id is not None:
        return False
    if override.provider_id is not None and override.provider_id != provider.id:
        return False
    return override.access_kind in (ACCESS_KIND_PROVIDER, ACCESS_KIND_MAINTENANCE)


def _scope_state(overrides: Iterable[AccessOverride], matches: Callable[[AccessOverride], bool]) -> VisibilityState:
    return most_restrictive(_override_state(o) for o in overrides if matches(o))


def _decide(scope_states: List[Tuple[VisibilityScope, VisibilityState]]) -> VisibilityResult:
    for scope, state in scope_states:
        if state != VisibilityState.VISIBLE:
            return VisibilityResult(
                state=state,
                deciding_scope=scope,
                user_override_locked=scope != VisibilityScope.USER
            )
    return VISIBLE


def split_overrides(overrides: Iterable[AccessOverride], user: Player) -> Tuple[List[AccessOverride], List[AccessOverride]]:
    """오버라이드 목록을 (매장 범위, 사용자 범위)로 나눕니다."""
    store_scope, user_scope = [], []
    for o in overrides:
        if o.user_id is None and o.store_id is not None and o.store_id == user.store_id:
            store_scope.append(o)
        elif o.store_id is None and o.user_id == user.id:
            user_scope.append(o)
    return store_scope, user_scope


def resolve_game(
    game: Game,
    provider: Optional[Provider],
    store_overrides: List[AccessOverride],
    user_overrides: List[AccessOverride]
) -> VisibilityResult:
    """게임 하나의 노출 상태를 판정합니다. (부수효과 없음)"""
    admin_state = most_restrictive([game.status] + ([provider.status] if provider is not None else []))
    operator_visible = bool(game.is_visible) and (provider is None or bool(provider.is_visible))
    matches = lambda o: override_matches_game(o, game)
    return _decide([
        (VisibilityScope.ADMIN, admin_state),
        (VisibilityScope.OPERATOR, VisibilityState.VISIBLE if operator_visible else VisibilityState.HIDDEN),
        (VisibilityScope.STORE, _scope_state(store_overrides, matches)),
        (VisibilityScope.USER, _scope_state(user_overrides, matches)),
    ])


def resolve_provider(
    provider: Provider,
    store_overrides: List[AccessOverride],
    user_overrides: List[AccessOverride]
) -> VisibilityResult:
    matches = lambda o: override_matches_provider(o, provider)
    return _decide([
        (VisibilityScope.ADMIN, _as_state(provider.status)),
        (VisibilityScope.OPERATOR, VisibilityState.VISIBLE if provider.is_visible else VisibilityState.HIDDEN),
        (VisibilityScope.STORE, _scope_state(store_overrides, matches)),
        (VisibilityScope.USER, _scope_state(user_overrides, matches)),
    ])


def resolve_provider_group(
    members: List[Provider],
    store_overrides: List[AccessOverride],
    user_overrides: List[AccessOverride]
) -> VisibilityResult:
    """
    통합 제공사: 모든 구성원을 판정한 뒤 가장 제한적인 결과를 채택합니다.
    제한 수준이 같으면 더 넓은 범위에서 결정된 결과를 유지합니다.
    """
    if not members:
        return VisibilityResult(state=VisibilityState.HIDDEN, deciding_scope=VisibilityScope.ADMIN, user_override_locked=True)

    result = None
    for provider in members:
        candidate = resolve_provider(provider, store_overrides, user_overrides)
        if result is None:
            result = candidate
            continue
        rank, current_rank = _RESTRICTION_RANK[candidate.state], _RESTRICTION_RANK[result.state]
        if rank > current_rank or (
            rank == current_rank
            and candidate.deciding_scope is not None
            and SCOPE_ORDER.index(candidate.deciding_scope) < SCOPE_ORDER.index(result.deciding_scope)
        ):
            result = candidate
    return result


class VisibilityService:
    """카탈로그/오버라이드를 읽어 노출 판정 함수에 전달합니다. (읽기 전용)"""

    def __init__(self, db: Session):
        self.db = db

    def get_user(self, user_id: str) -> Player:
        user = self.db.query(Player).filter(Player.id == user_id).first()
        if user is None:
            raise CatalogNotFound("user", user_id)
        return user

    def get_game(self, game_id: int) -> Game:
        game = self.db.query(Game).filter(Game.id == game_id).first()
        if game is None:
            raise CatalogNotFound("game", game_id)
        return game

    def get_provider(self, api_tag: str, provider_id: int) -> Optional[Provider]:
        return self.db.query(Provider).filter(
            Provider.api_tag == api_tag,
            Provider.id == provider_id
        ).first()

    def load_overrides(self, user: Player) -> Tuple[List[AccessOverride], List[AccessOverride]]:
        """사용자에게 적용되는 (매장 범위, 사용자 범위) 오버라이드를 조회합니다."""
        conditions = [and_(AccessOverride.user_id == user.id, AccessOverride.store_id.is_(None))]
        if user.store_id is not None:
            conditions.append(and_(AccessOverride.store_id == user.store_id, AccessOverride.user_id.is_(None)))
        overrides = self.db.query(AccessOverride).filter(or_(*conditions)).all()
        return split_overrides(overrides, user)

    def resolve_game(self, user_id: str, game_id: int) -> VisibilityResult:
        user = self.get_user(user_id)
        game = self.get_game(game_id)
        provider = self.get_provider(game.api_tag, game.provider_id)
        store_overrides, user_overrides = self.load_overrides(user)
        return resolve_game(game, provider, store_overrides, user_overrides)

    def resolve_provider(self, user_id: str, api_tag: str, provider_id: int) -> VisibilityResult:
        user = self.get_user(user_id)
        provider = self.get_provider(api_tag, provider_id)
        if provider is None:
            raise CatalogNotFound("provider", f"{api_tag}:{provider_id}")
        store_overrides, user_overrides = self.load_overrides(user)
        return resolve_provider(provider, store_overrides, user_overrides)

    def _group_members(self, group_id: int) -> List[Provider]:
        rows = self.db.query(ProviderGroupMember).filter(ProviderGroupMember.group_id == group_id).all()
        members = []
        for row in rows:
            provider = self.get_provider(row.api_tag, row.provider_id)
            if provider is None:
                logger.warning(f"Provider group {group_id} references missing provider {row.api_tag}:{row.provider_id}")
                continue
            members.append(provider)
        return members

    def resolve_provider_group(self, user_id: str, group_id: int) -> VisibilityResult:
        user = self.get_user(user_id)
        if self.db.query(ProviderGroup).filter(ProviderGroup.id == group_id).first() is None:
            raise CatalogNotFound("provider_group", group_id)
        store_overrides, user_overrides = self.load_overrides(user)
        return resolve_provider_group(self._group_members(group_id), store_overrides, user_overrides)

    def list_visible_games(
        self,
        user_id: str,
        category: Optional[str] = None,
        api_tag: Optional[str] = None,
        provider_id: Optional[int] = None
    ) -> List[Tuple[Game, VisibilityResult]]:
        """숨김 게임은 제외하고 점검중 게임은 상태와 함께 반환합니다."""
        user = self.get_user(user_id)
        store_overrides, user_overrides = self.load_overrides(user)
        providers = {(p.api_tag, p.id): p for p in self.db.query(Provider).all()}

        query = self.db.query(Game)
        if category:
            query = query.filter(Game.category == category)
        if api_tag:
            query = query.filter(Game.api_tag == api_tag)
        if provider_id is not None:
            query = query.filter(Game.provider_id == provider_id)

        visible = []
        for game in query.order_by(Game.priority.desc(), Game.id).all():
            result = resolve_game(game, providers.get((game.api_tag, game.provider_id)), store_overrides, user_overrides)
            if result.state != VisibilityState.HIDDEN:
                visible.append((game, result))
        logger.debug(f"{len(visible)} games visible for user {user_id}")
        return visible

    def list_visible_providers(self, user_id: str) -> List[Dict[str, Any]]:
        """통합 제공사는 하나의 항목으로, 나머지 제공사는 개별 항목으로 반환합니다."""
        user = self.get_user(user_id)
        store_overrides, user_overrides = self.load_overrides(user)

        grouped = set()
        entries = []
        for group in self.db.query(ProviderGroup).order_by(ProviderGroup.id).all():
            members = self._group_members(group.id)
            grouped.update((p.api_tag, p.id) for p in members)
            if not members:
                continue
            result = resolve_provider_group(members, store_overrides, user_overrides)
            if result.state != VisibilityState.HIDDEN:
                entries.append({
                    "id": members[0].id,
                    "api_tag": members[0].api_tag,
                    "name": group.name,
                    "state": result.state,
                    "group_id": group.id,
                    "member_count": len(members)
                })

        for provider in self.db.query(Provider).order_by(Provider.api_tag, Provider.id).all():
            if (provider.api_tag, provider.id) in grouped:
                continue
            result = resolve_provider(provider, store_overrides, user_overrides)
            if result.state != VisibilityState.HIDDEN:
                entries.append({
                    "id": provider.id,
                    "api_tag": provider.api_tag,
                    "name": provider.name,
                    "state": result.state,
                    "group_id": None,
                    "member_count": 1
                })
        return entries
