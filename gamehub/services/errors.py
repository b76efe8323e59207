"""
게임 세션/노출 관련 오류 정의

권한/충돌 검사는 예외 대신 LaunchResult의 error_kind로 반환하고,
자금 이동 실패(ProviderError)는 항상 호출자에게 전달합니다.
"""
from enum import Enum
from typing import Optional


class LaunchErrorKind(str, Enum):
    PERMISSION_DENIED = "permission_denied"
    SESSION_CONFLICT = "session_conflict"
    POPUP_BLOCKED = "popup_blocked"
    PROVIDER_ERROR = "provider_error"
    RACE_CONFLICT = "race_conflict"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    NOT_FOUND = "not_found"


# 사용자 안내 메시지
POPUP_BLOCKED_GUIDANCE = "Pop-up was blocked. Allow pop-ups for this site and click the game again; the same game link will be reused."
PROVIDER_ERROR_MESSAGE = "The game provider could not complete the request. No funds were left in the game wallet; please try again later."
SESSION_CONFLICT_MESSAGE = "'{game_name}' is still running. Close that game before starting a game from a different provider."


class GameHubError(Exception):
    """서비스 계층 공통 예외"""


class ProviderError(GameHubError):
    """제공사 게이트웨이 호출 실패 또는 타임아웃"""

    def __init__(self, family: str, operation: str, message: str = "", timed_out: bool = False):
        self.family = family
        self.operation = operation
        self.timed_out = timed_out
        detail = message or ("timed out" if timed_out else "failed")
        super().__init__(f"{family}.{operation}: {detail}")


class SessionNotFound(GameHubError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"game session {session_id} not found")


class DuplicateTransfer(GameHubError):
    """같은 세션에 대해 같은 유형의 원장 이동이 이미 기록된 경우"""

    def __init__(self, session_id: str, entry_type: str):
        self.session_id = session_id
        self.entry_type = entry_type
        super().__init__(f"{entry_type} already recorded for session {session_id}")


class UnknownProviderFamily(GameHubError):
    def __init__(self, family: Optional[str]):
        self.family = family
        super().__init__(f"no gateway configured for provider family '{family}'")


class CatalogNotFound(GameHubError):
    """사용자/게임/제공사 조회 실패"""

    def __init__(self, kind: str, key):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} {key} not found")
