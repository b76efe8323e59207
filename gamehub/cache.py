import redis
from typing import Optional
import logging
import threading
import time

from gamehub.config.settings import settings

logger = logging.getLogger(__name__)

# 캐시 TTL(Time To Live) 상수 정의 - 리소스 유형별 TTL
CACHE_TTL = {
    'game_name': 1800,    # 30분 (게임 표시 이름)
    'default': 300        # 기본 5분
}

class CacheTier:
    """캐시 계층을 정의합니다."""
    L1 = 'l1'  # 메모리 캐시 (가장 빠름, 짧은 TTL)
    L2 = 'l2'  # Redis 캐시 (중간, 보통 TTL)

class MemoryCache:
    """간단한 인메모리 캐시 구현 (L1 캐시)"""
    def __init__(self, max_size=1000):
        self.cache = {}
        self.max_size = max_size
        self.lock = threading.RLock()

    def get(self, key):
        with self.lock:
            item = self.cache.get(key)
            if not item:
                return None

            # TTL 만료 확인
            expiry, value = item
            if expiry and expiry < time.time():
                del self.cache[key]
                return None

            return value

    def set(self, key, value, ttl=None):
        with self.lock:
            # 캐시가 최대 크기에 도달하면 가장 오래된 항목 제거
            if len(self.cache) >= self.max_size and key not in self.cache:
                oldest_key = next(iter(self.cache))
                del self.cache[oldest_key]

            expiry = None
            if ttl:
                expiry = time.time() + ttl

            self.cache[key] = (expiry, value)
            return True

class RedisClient:
    """
    Redis 클라이언트 클래스로 2계층 캐싱 기능을 제공합니다.

    REDIS_URL이 비어 있거나 서버에 연결할 수 없으면 L1 메모리 캐시만 사용합니다.

    Attributes:
        client: Redis 연결 클라이언트 (없으면 None)
        memory_cache: 인메모리 캐시 (L1)
        default_ttl: 기본 TTL (초 단위)
        prefix: 캐시 키 접두사
    """
    def __init__(self, url: Optional[str] = None, prefix: str = "gamehub"):
        self.prefix = prefix
        self.memory_cache = MemoryCache(max_size=5000)
        self.default_ttl = settings.REDIS_TTL
        self.client = None

        url = settings.REDIS_URL if url is None else url
        if not url:
            logger.info("REDIS_URL이 설정되지 않아 메모리 캐시만 사용합니다.")
            return

        try:
            self.client = redis.Redis.from_url(url, decode_responses=True, socket_timeout=2)
            self.client.ping()
            logger.info(f"Redis 서버에 성공적으로 연결되었습니다. URL: {url}")
        except redis.ConnectionError as e:
            logger.warning(f"Redis 연결 오류: {e}")
            logger.warning("Redis 없이 진행합니다. 메모리 캐시만 사용됩니다.")
            self.client = None
        except Exception as e:
            logger.warning(f"Redis 초기화 오류: {e}")
            self.client = None

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}" if self.prefix else key

    def get(self, key: str, tier: str = CacheTier.L2) -> Optional[str]:
        """
        지정된 캐시 계층에서 키에 해당하는 값을 반환합니다.

        Args:
            key: 조회할 키
            tier: 캐시 계층 (L1: 메모리, L2: Redis)

        Returns:
            키에 해당하는 값 또는 None (키가 없는 경우)
        """
        full_key = self._key(key)
        memory_value = self.memory_cache.get(full_key)
        if memory_value is not None:
            logger.debug(f"L1 캐시 적중: {full_key}")
            return memory_value

        if tier == CacheTier.L2 and self.client is not None:
            try:
                redis_value = self.client.get(full_key)
                if redis_value is not None:
                    logger.debug(f"L2 캐시 적중: {full_key}")
                    # L1에는 더 짧은 TTL로 저장
                    self.memory_cache.set(full_key, redis_value, ttl=min(self.default_ttl, 60))
                    return redis_value
            except redis.RedisError as e:
                logger.error(f"Redis GET 오류 (키: {full_key}): {e}")

        return None

    def set(self, key: str, value: str, ttl: Optional[int] = None, tier: str = CacheTier.L2) -> bool:
        """
        지정된 캐시 계층에 값을 저장합니다. ttl 미지정 시 키 접두사(리소스 유형)별 기본값을 사용합니다.
        """
        if ttl is None:
            resource_type = key.split(':')[0] if ':' in key else 'default'
            ttl = CACHE_TTL.get(resource_type, self.default_ttl)

        full_key = self._key(key)

        self.memory_cache.set(full_key, value, ttl=min(ttl, 60))

        success = True
        if tier == CacheTier.L2 and self.client is not None:
            try:
                success = bool(self.client.set(full_key, value, ex=ttl))
            except redis.RedisError as e:
                logger.error(f"Redis SET 오류 (키: {full_key}): {e}")
                success = False
        return success

# 싱글톤 Redis 클라이언트 인스턴스
_redis_client = None

def get_redis_client() -> RedisClient:
    """싱글톤 Redis 클라이언트 인스턴스를 반환합니다."""
    global _redis_client
    if _redis_client is None:
        _redis_client = RedisClient()
    return _redis_client
