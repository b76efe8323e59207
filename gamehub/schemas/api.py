from typing import Optional
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from decimal import Decimal

from gamehub.services.errors import LaunchErrorKind

# ==== 제공사 게이트웨이 계약 ====

class LaunchTicket(BaseModel):
    launch_url: str
    session_id: Optional[str] = None  # 제공사측 세션 ID

class DepositResult(BaseModel):
    ok: bool = True
    balance: Optional[Decimal] = None  # 입금 후 제공사 지갑 잔액
    error: Optional[str] = None

class WithdrawResult(BaseModel):
    ok: bool = True
    amount: Decimal = Decimal("0")
    # 제공사가 베팅/당첨 합계를 알려주는 경우에만 채워짐
    bet_total: Optional[Decimal] = None
    win_total: Optional[Decimal] = None
    error: Optional[str] = None

class ProviderSessionState(BaseModel):
    is_active: bool = False
    family: Optional[str] = None
    game_id: Optional[int] = None
    status: Optional[str] = None
    launch_url: Optional[str] = None
    session_id: Optional[str] = None

# ==== 게임 실행 요청/응답 ====

class GameLaunchRequest(BaseModel):
    game_id: int = Field(..., description="실행할 게임 ID")

class LaunchResult(BaseModel):
    success: bool
    launch_url: Optional[str] = None
    session_id: Optional[str] = None
    reused: bool = False
    error_kind: Optional[LaunchErrorKind] = None
    message: Optional[str] = None
    deciding_scope: Optional[str] = None
    running_game: Optional[str] = None

class PopupReport(BaseModel):
    opened: bool = Field(..., description="게임창 오픈 성공 여부")

class PopupReportResponse(BaseModel):
    session_id: str
    status: str
    popup_status: str
    error_kind: Optional[LaunchErrorKind] = None
    message: Optional[str] = None
    launch_url: Optional[str] = None

class SurfaceClosedResponse(BaseModel):
    session_id: str
    torn_down: bool
    status: Optional[str] = None

class GameSessionOut(BaseModel):
    id: str
    user_id: str
    game_id: int
    api_tag: str
    provider_id: Optional[int] = None
    status: str
    popup_status: Optional[str] = None
    launch_url: Optional[str] = None
    balance_snapshot: Decimal
    end_reason: Optional[str] = None
    launched_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

class ActiveSessionResponse(BaseModel):
    is_active: bool
    game_name: Optional[str] = None
    session: Optional[GameSessionOut] = None

class ExpireSessionsResponse(BaseModel):
    expired: int
    failed: int
