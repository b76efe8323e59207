from enum import Enum
from typing import Optional, List
from pydantic import BaseModel, ConfigDict


class VisibilityState(str, Enum):
    VISIBLE = "visible"
    MAINTENANCE = "maintenance"
    HIDDEN = "hidden"


class VisibilityScope(str, Enum):
    ADMIN = "admin"
    OPERATOR = "operator"
    STORE = "store"
    USER = "user"


class VisibilityResult(BaseModel):
    state: VisibilityState
    deciding_scope: Optional[VisibilityScope] = None
    # 매장 이상 범위에서 이미 제한된 경우 사용자 범위 설정은 변경 불가
    user_override_locked: bool = False

    model_config = ConfigDict(frozen=True)

    @property
    def playable(self) -> bool:
        return self.state == VisibilityState.VISIBLE


class GameOut(BaseModel):
    id: int
    provider_id: int
    api_tag: str
    name: str
    category: str
    is_featured: bool = False
    priority: int = 0
    rtp: Optional[float] = None
    state: VisibilityState

    model_config = ConfigDict(from_attributes=True)


class ProviderOut(BaseModel):
    id: int
    api_tag: str
    name: str
    state: VisibilityState
    group_id: Optional[int] = None
    member_count: int = 1


class GameListResponse(BaseModel):
    games: List[GameOut]
    total: int
