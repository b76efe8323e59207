"""
제공사 게이트웨이

각 제공사 계열(api_tag)별 어댑터가 getLaunchUrl / deposit / withdraw /
queryActiveSession 계약을 구현합니다. GatewayRegistry는 계열별 어댑터를 보관하고
모든 호출에 타임아웃과 오류 변환(ProviderError)을 적용합니다.
"""
import asyncio
import hashlib
import hmac
import json
import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Dict, Any, Optional

import httpx

from gamehub.schemas.api import LaunchTicket, DepositResult, WithdrawResult, ProviderSessionState
from gamehub.services.errors import ProviderError, UnknownProviderFamily

logger = logging.getLogger(__name__)


class ProviderGateway(ABC):
    """제공사 게이트웨이 계약"""

    family: str = ""

    @abstractmethod
    async def get_launch_url(self, user_id: str, game_id: int) -> LaunchTicket:
        ...

    @abstractmethod
    async def deposit(self, user_id: str, family: str, amount: Decimal) -> DepositResult:
        ...

    @abstractmethod
    async def withdraw(self, user_id: str, family: str) -> WithdrawResult:
        ...

    @abstractmethod
    async def query_active_session(self, user_id: str) -> ProviderSessionState:
        ...

    async def aclose(self) -> None:
        return None


class HttpProviderGateway(ProviderGateway):
    """
    JSON/HTTP 기반 제공사 어댑터.

    요청 본문은 api_secret으로 HMAC-SHA256 서명하여 X-Signature 헤더로 전달합니다.
    """

    def __init__(self, family: str, base_url: str, api_key: str = "", api_secret: str = "",
                 client: Optional[httpx.AsyncClient] = None):
        self.family = family
        self.api_key = api_key
        self.api_secret = api_secret
        self._client = client or httpx.AsyncClient(base_url=base_url)

    def _headers(self, body: bytes) -> Dict[str, str]:
        signature = hmac.new(self.api_secret.encode(), body, hashlib.sha256).hexdigest()
        return {
            "Content-Type": "application/json",
            "X-Api-Key": self.api_key,
            "X-Signature": signature
        }

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        body = json.dumps(payload, default=str).encode()
        response = await self._client.post(path, content=body, headers=self._headers(body))
        response.raise_for_status()
        return response.json()

    async def get_launch_url(self, user_id: str, game_id: int) -> LaunchTicket:
        data = await self._post("/game/launch", {"user_id": user_id, "game_id": game_id})
        return LaunchTicket(launch_url=data["launch_url"], session_id=data.get("session_id"))

    async def deposit(self, user_id: str, family: str, amount: Decimal) -> DepositResult:
        data = await self._post("/wallet/deposit", {"user_id": user_id, "amount": str(amount)})
        return DepositResult(ok=data.get("ok", True), balance=data.get("balance"), error=data.get("error"))

    async def withdraw(self, user_id: str, family: str) -> WithdrawResult:
        # 잔액 전체 출금
        data = await self._post("/wallet/withdraw", {"user_id": user_id})
        return WithdrawResult(
            ok=data.get("ok", True),
            amount=Decimal(str(data.get("amount", "0"))),
            bet_total=data.get("bet_total"),
            win_total=data.get("win_total"),
            error=data.get("error")
        )

    async def query_active_session(self, user_id: str) -> ProviderSessionState:
        response = await self._client.get(f"/sessions/{user_id}", headers=self._headers(b""))
        response.raise_for_status()
        data = response.json()
        return ProviderSessionState(family=self.family, **{k: v for k, v in data.items() if k != "family"})

    async def aclose(self) -> None:
        await self._client.aclose()


class GuardedGateway:
    """어댑터 호출마다 타임아웃을 적용하고 실패를 ProviderError로 변환합니다."""

    def __init__(self, adapter: ProviderGateway, family: str, timeout: float):
        self.adapter = adapter
        self.family = family
        self.timeout = timeout

    async def _call(self, operation: str, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"Provider call {self.family}.{operation} timed out after {self.timeout}s")
            raise ProviderError(self.family, operation, timed_out=True)
        except ProviderError:
            raise
        except Exception as e:
            logger.error(f"Provider call {self.family}.{operation} failed: {e}", exc_info=True)
            raise ProviderError(self.family, operation, str(e)) from e

    async def get_launch_url(self, user_id: str, game_id: int) -> LaunchTicket:
        ticket = await self._call("get_launch_url", self.adapter.get_launch_url(user_id, game_id))
        if not ticket.launch_url:
            raise ProviderError(self.family, "get_launch_url", "empty launch url")
        return ticket

    async def deposit(self, user_id: str, amount: Decimal) -> DepositResult:
        result = await self._call("deposit", self.adapter.deposit(user_id, self.family, amount))
        if not result.ok:
            raise ProviderError(self.family, "deposit", result.error or "rejected")
        return result

    async def withdraw(self, user_id: str) -> WithdrawResult:
        result = await self._call("withdraw", self.adapter.withdraw(user_id, self.family))
        if not result.ok:
            raise ProviderError(self.family, "withdraw", result.error or "rejected")
        return result

    async def query_active_session(self, user_id: str) -> ProviderSessionState:
        return await self._call("query_active_session", self.adapter.query_active_session(user_id))


class GatewayRegistry:
    """제공사 계열(api_tag) → 어댑터"""

    def __init__(self, adapters: Optional[Dict[str, ProviderGateway]] = None, timeout: float = 10.0):
        self._adapters: Dict[str, ProviderGateway] = dict(adapters or {})
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings) -> "GatewayRegistry":
        registry = cls(timeout=settings.PROVIDER_CALL_TIMEOUT_SECONDS)
        for family, config in settings.PROVIDER_ENDPOINTS.items():
            registry.register(family, HttpProviderGateway(
                family=family,
                base_url=config["base_url"],
                api_key=config.get("api_key", ""),
                api_secret=config.get("api_secret", "")
            ))
            logger.info(f"Provider gateway registered for family '{family}'")
        return registry

    def register(self, family: str, adapter: ProviderGateway) -> None:
        self._adapters[family] = adapter

    def families(self):
        return list(self._adapters)

    def get(self, family: str) -> GuardedGateway:
        adapter = self._adapters.get(family)
        if adapter is None:
            raise UnknownProviderFamily(family)
        return GuardedGateway(adapter, family, self.timeout)

    async def aclose(self) -> None:
        for family, adapter in self._adapters.items():
            try:
                await adapter.aclose()
            except Exception as e:
                logger.warning(f"Failed to close gateway for family '{family}': {e}")
