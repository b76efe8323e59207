"""
게임창(외부 화면) 종료 감시

WatchRegistry는 세션 ID → {화면 핸들, 감시 작업}을 소유하며, 종료 감지 시
세션 정리 콜백을 세션당 한 번만 호출합니다. 감지 방식은 SurfaceWatcher 전략으로 교체할 수 있습니다.
"""
import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)

OnClosed = Callable[[str], Awaitable[bool]]


class SurfaceHandle(ABC):
    """외부에서 열린 게임 화면"""

    @abstractmethod
    async def is_closed(self) -> bool:
        ...


class HeartbeatSurface(SurfaceHandle):
    """서버측 핸들: 제한 시간 동안 heartbeat가 없으면 닫힌 것으로 봅니다."""

    def __init__(self, timeout: float, clock: Callable[[], float] = time.monotonic):
        self.timeout = timeout
        self._clock = clock
        self.last_beat = clock()

    def beat(self) -> None:
        self.last_beat = self._clock()

    async def is_closed(self) -> bool:
        return self._clock() - self.last_beat > self.timeout


class SurfaceWatcher(ABC):
    @abstractmethod
    def watch(self, session_id: str, handle: SurfaceHandle, on_closed: OnClosed) -> Optional[asyncio.Task]:
        """감시를 시작하고 취소 가능한 작업을 반환합니다. (폴링하지 않는 전략은 None)"""


class PollingSurfaceWatcher(SurfaceWatcher):
    def __init__(self, interval: float = 1.0):
        self.interval = interval

    def watch(self, session_id: str, handle: SurfaceHandle, on_closed: OnClosed) -> Optional[asyncio.Task]:
        return asyncio.get_running_loop().create_task(self._poll(session_id, handle, on_closed))

    async def _poll(self, session_id: str, handle: SurfaceHandle, on_closed: OnClosed) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                closed = await handle.is_closed()
            except Exception as e:
                logger.warning(f"Surface check failed for session {session_id}: {e}")
                continue
            if not closed:
                continue

            logger.info(f"Surface closed for session {session_id}")
            try:
                await on_closed(session_id)
            except Exception as e:
                # 세션은 ending으로 남고 정리 작업(sweep)이 재시도
                logger.error(f"Teardown after surface close failed for session {session_id}: {e}")
            return


class EventSurfaceWatcher(SurfaceWatcher):
    """폴링 없음. 종료는 notify_closed 호출로만 전달됩니다."""

    def watch(self, session_id: str, handle: SurfaceHandle, on_closed: OnClosed) -> Optional[asyncio.Task]:
        return None


@dataclass
class WatchEntry:
    session_id: str
    handle: SurfaceHandle
    task: Optional[asyncio.Task] = None


class WatchRegistry:
    def __init__(self, watcher: SurfaceWatcher, on_closed: OnClosed):
        self.watcher = watcher
        self._on_closed = on_closed
        self._entries: Dict[str, WatchEntry] = {}
        # 세션별 1회성 종료 플래그
        self._closing = set()

    def __len__(self) -> int:
        return len(self._entries)

    def register(self, session_id: str, handle: SurfaceHandle) -> WatchEntry:
        if session_id in self._entries:
            self.unregister(session_id)
        entry = WatchEntry(session_id=session_id, handle=handle)
        entry.task = self.watcher.watch(session_id, handle, self.notify_closed)
        self._entries[session_id] = entry
        logger.debug(f"Watching surface of session {session_id}")
        return entry

    def unregister(self, session_id: str) -> bool:
        entry = self._entries.pop(session_id, None)
        self._closing.discard(session_id)
        if entry is None:
            return False
        task = entry.task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        return True

    def get(self, session_id: str) -> Optional[WatchEntry]:
        return self._entries.get(session_id)

    def beat(self, session_id: str) -> bool:
        entry = self._entries.get(session_id)
        if entry is None or not isinstance(entry.handle, HeartbeatSurface):
            return False
        entry.handle.beat()
        return True

    async def notify_closed(self, session_id: str) -> bool:
        """
        화면 종료 신호 처리. 같은 세션에 대한 두 번째 신호는 무시합니다.
        정리가 실패하면 플래그를 해제하여 다음 신호가 다시 시도할 수 있게 합니다.
        """
        if session_id in self._closing:
            logger.warning(f"Duplicate close signal for session {session_id} ignored")
            return False
        self._closing.add(session_id)
        try:
            return bool(await self._on_closed(session_id))
        except Exception:
            # 성공/세션 해제 외에 실패 시에도 해제함 (ending 세션은 다음 종료 신호나 정리 루프가 재시도)
            self._closing.discard(session_id)
            raise

    async def aclose(self) -> None:
        tasks = [e.task for e in self._entries.values() if e.task is not None and not e.task.done()]
        self._entries.clear()
        self._closing.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
