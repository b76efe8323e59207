"""
게임 세션 레지스트리 테스트
- 실행/재사용/충돌/전환 상태 전이
- 입금/출금 호출 순서와 횟수
- 실패 시 세션 상태 (ending 유지, 입금 원복)
- 오래된 ready 세션 정리
"""
import asyncio
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from gamehub.cache import RedisClient
from gamehub.models.access import ACCESS_KIND_GAME
from gamehub.models.game_session import GameSession
from gamehub.models.wallet import ENTRY_DEPOSIT, ENTRY_WITHDRAW, ENTRY_ROLLBACK
from gamehub.services.errors import LaunchErrorKind, ProviderError, DuplicateTransfer, SessionNotFound
from gamehub.services.gateway import GatewayRegistry
from gamehub.services.sessions import SessionRegistry, UNKNOWN_GAME_NAME
from gamehub.services.watcher import EventSurfaceWatcher, HeartbeatSurface

from tests.test_utils import (
    TestingSessionLocal, calls, fund_calls, fetch_session, open_sessions, balance_of,
    ledger_entries, play_record, add_override, update_game, update_session
)


def run(coro):
    return asyncio.run(coro)


async def launch_and_open(registry, user_id, game_id):
    result = await registry.launch_game(user_id, game_id)
    assert result.success, result
    await registry.mark_popup(result.session_id, user_id, opened=True)
    return result


def test_launch_creates_ready_session(registry, provider_log):
    print("\n===== 게임 실행 → ready 세션 =====")
    result = run(registry.launch_game("user-1", 201))

    assert result.success
    assert result.reused is False
    assert result.launch_url.startswith("https://honor.example/play/201")

    game_session = fetch_session(result.session_id)
    assert game_session.status == "ready"
    assert game_session.popup_status is None
    assert game_session.launch_url == result.launch_url
    assert game_session.balance_snapshot == Decimal("10000.00")

    # 원장 잔액은 세션 동안 제공사 지갑으로 이동
    assert balance_of("user-1") == Decimal("0")
    assert [e.entry_type for e in ledger_entries(result.session_id)] == [ENTRY_DEPOSIT]
    # 입금이 URL 발급보다 먼저
    ops = [entry[1] for entry in provider_log if entry[0] == "end"]
    assert ops == ["deposit", "get_launch_url"]


def test_popup_opened_activates_session(registry):
    async def scenario():
        result = await registry.launch_game("user-1", 201)
        response = await registry.mark_popup(result.session_id, "user-1", opened=True)
        return result, response

    result, response = run(scenario())

    assert response.status == "active"
    assert response.popup_status == "opened"
    assert response.error_kind is None
    assert fetch_session(result.session_id).activated_at is not None
    assert isinstance(registry.watches.get(result.session_id).handle, HeartbeatSurface)
    assert registry.heartbeat(result.session_id, "user-1") is True


def test_switch_within_family_withdraws_before_deposit(registry, provider_log):
    """같은 계열 다른 게임: 이전 세션 출금 완료 후 새 세션 입금"""
    async def scenario():
        first = await launch_and_open(registry, "user-1", 201)
        second = await registry.launch_game("user-1", 202)
        return first, second

    first, second = run(scenario())

    assert second.success
    assert second.session_id != first.session_id
    assert second.launch_url != first.launch_url

    old = fetch_session(first.session_id)
    new = fetch_session(second.session_id)
    assert old.status == "ended"
    assert old.end_reason == "switch"
    assert new.status == "ready"
    assert old.ended_at <= new.launched_at

    withdraw_end = provider_log.index(("end", "withdraw", "honor", "user-1"))
    deposit_begins = [i for i, entry in enumerate(provider_log) if entry[:2] == ("begin", "deposit")]
    assert len(deposit_begins) == 2
    assert withdraw_end < deposit_begins[1]

    assert [s.id for s in open_sessions("user-1")] == [second.session_id]
    assert new.balance_snapshot == Decimal("10000.00")


def test_popup_blocked_keeps_session_and_reuses_url(registry, provider_log):
    async def scenario():
        result = await registry.launch_game("user-1", 301)
        blocked = await registry.mark_popup(result.session_id, "user-1", opened=False)
        retry = await registry.launch_game("user-1", 301)
        return result, blocked, retry

    result, blocked, retry = run(scenario())

    assert blocked.error_kind == LaunchErrorKind.POPUP_BLOCKED
    assert blocked.launch_url == result.launch_url
    assert "pop-up" in blocked.message.lower()

    game_session = fetch_session(result.session_id)
    assert game_session.status == "ready"
    assert game_session.popup_status == "blocked"
    assert game_session.launch_url == result.launch_url

    assert retry.success and retry.reused
    assert retry.launch_url == result.launch_url
    assert retry.session_id == result.session_id
    assert len(calls(provider_log, "deposit")) == 1


def test_repeated_launch_never_deposits_twice(registry, provider_log):
    async def scenario():
        return [await registry.launch_game("user-1", 201) for _ in range(4)]

    results = run(scenario())

    assert len({r.session_id for r in results}) == 1
    assert [r.reused for r in results] == [False, True, True, True]
    assert len(calls(provider_log, "deposit")) == 1
    assert len(calls(provider_log, "get_launch_url")) == 1


def test_concurrent_launches_for_same_user_are_serialized(registry, provider_log, fake_gateways):
    fake_gateways["honor"].delays["deposit"] = 0.05

    async def scenario():
        return await asyncio.gather(
            registry.launch_game("user-1", 201),
            registry.launch_game("user-1", 201),
        )

    first, second = run(scenario())

    assert first.success and second.success
    assert first.session_id == second.session_id
    assert second.reused
    assert len(calls(provider_log, "deposit")) == 1
    assert len(open_sessions("user-1")) == 1
    assert registry._user_locks == {}
    assert registry._lock_users == {}


def test_user_locks_released_after_launch(registry):
    """실행이 끝난 사용자의 잠금은 남지 않음 (존재하지 않는 사용자 포함)"""
    async def scenario():
        for i in range(200):
            await registry.launch_game(f"ghost-{i}", 201)
        return await registry.launch_game("user-1", 201)

    result = run(scenario())

    assert result.success
    assert registry._user_locks == {}
    assert registry._lock_users == {}


def test_other_family_launch_conflicts_without_gateway_calls(registry, provider_log):
    async def scenario():
        first = await launch_and_open(registry, "user-1", 101)
        provider_log.clear()
        return first, await registry.launch_game("user-1", 301)

    first, conflict = run(scenario())

    assert conflict.success is False
    assert conflict.error_kind == LaunchErrorKind.SESSION_CONFLICT
    assert conflict.running_game == "Lucky Baccarat"
    assert "Lucky Baccarat" in conflict.message
    assert provider_log == []
    assert fetch_session(first.session_id).status == "active"


def test_duplicate_close_signals_withdraw_once(registry, provider_log, fake_gateways):
    """창 종료 신호가 정리 완료 전에 두 번 오면 출금은 한 번"""
    fake_gateways["honor"].delays["withdraw"] = 0.05

    async def scenario():
        result = await launch_and_open(registry, "user-1", 201)
        outcomes = await asyncio.gather(
            registry.notify_surface_closed(result.session_id),
            registry.notify_surface_closed(result.session_id),
        )
        return result, outcomes

    result, outcomes = run(scenario())

    assert sorted(outcomes) == [False, True]
    assert len(calls(provider_log, "withdraw", stage="begin")) == 1
    game_session = fetch_session(result.session_id)
    assert game_session.status == "ended"
    assert game_session.end_reason == "surface_closed"
    assert [e.entry_type for e in ledger_entries(result.session_id)] == [ENTRY_DEPOSIT, ENTRY_WITHDRAW]
    assert balance_of("user-1") == Decimal("10000.00")
    assert registry.watches.get(result.session_id) is None


def test_close_racing_with_force_end_joins_one_teardown(registry, provider_log, fake_gateways):
    fake_gateways["honor"].delays["withdraw"] = 0.05

    async def scenario():
        result = await launch_and_open(registry, "user-1", 201)
        outcomes = await asyncio.gather(
            registry.notify_surface_closed(result.session_id),
            registry.force_end(result.session_id),
        )
        return result, outcomes

    result, outcomes = run(scenario())

    assert outcomes == [True, True]
    assert len(calls(provider_log, "withdraw", stage="begin")) == 1
    assert fetch_session(result.session_id).status == "ended"


def test_close_racing_with_switch_joins_one_teardown(registry, provider_log, fake_gateways):
    """창 종료 정리 중에 같은 계열 다른 게임 실행: 출금 한 번, 출금 후 새 입금"""
    fake_gateways["honor"].delays["withdraw"] = 0.05

    async def scenario():
        first = await launch_and_open(registry, "user-1", 201)
        closed, switched = await asyncio.gather(
            registry.notify_surface_closed(first.session_id),
            registry.launch_game("user-1", 202),
        )
        return first, closed, switched

    first, closed, switched = run(scenario())

    assert closed is True
    assert switched.success
    assert switched.session_id != first.session_id

    begins = fund_calls(provider_log)
    assert [entry[1] for entry in begins] == ["deposit", "withdraw", "deposit"]
    withdraw_end = provider_log.index(("end", "withdraw", "honor", "user-1"))
    assert withdraw_end < provider_log.index(begins[2])

    old = fetch_session(first.session_id)
    assert old.status == "ended"
    assert old.end_reason == "surface_closed"
    assert [s.id for s in open_sessions("user-1")] == [switched.session_id]
    assert balance_of("user-1") == Decimal("0")


def test_close_after_end_is_noop(registry, provider_log):
    async def scenario():
        result = await launch_and_open(registry, "user-1", 201)
        await registry.notify_surface_closed(result.session_id)
        again = await registry.notify_surface_closed(result.session_id)
        return again

    assert run(scenario()) is False
    assert len(calls(provider_log, "withdraw")) == 1


def test_withdraw_failure_leaves_session_ending(registry, provider_log, fake_gateways):
    fake_gateways["honor"].failures["withdraw"] = 1

    async def scenario():
        result = await launch_and_open(registry, "user-1", 201)
        with pytest.raises(ProviderError):
            await registry.notify_surface_closed(result.session_id)
        return result

    result = run(scenario())

    game_session = fetch_session(result.session_id)
    assert game_session.status == "ending"
    assert game_session.ended_at is None
    assert balance_of("user-1") == Decimal("0")

    # 플래그가 해제되어 재시도 가능
    assert run(registry.notify_surface_closed(result.session_id)) is True
    assert fetch_session(result.session_id).status == "ended"
    assert balance_of("user-1") == Decimal("10000.00")


def test_launch_completes_stuck_ending_session_first(registry, provider_log, fake_gateways):
    fake_gateways["honor"].failures["withdraw"] = 1

    async def scenario():
        first = await launch_and_open(registry, "user-1", 201)
        with pytest.raises(ProviderError):
            await registry.notify_surface_closed(first.session_id)
        # 다른 계열 게임이라도 ending 세션 회수가 먼저 진행됨
        second = await registry.launch_game("user-1", 301)
        return first, second

    first, second = run(scenario())

    assert second.success
    assert fetch_session(first.session_id).status == "ended"
    assert fetch_session(second.session_id).api_tag == "oroplay"
    assert fetch_session(second.session_id).balance_snapshot == Decimal("10000.00")


def test_launch_fails_when_ending_session_cannot_be_recovered(registry, provider_log, fake_gateways):
    fake_gateways["honor"].failures["withdraw"] = 2

    async def scenario():
        first = await launch_and_open(registry, "user-1", 201)
        with pytest.raises(ProviderError):
            await registry.notify_surface_closed(first.session_id)
        return first, await registry.launch_game("user-1", 202)

    first, second = run(scenario())

    assert second.error_kind == LaunchErrorKind.PROVIDER_ERROR
    assert fetch_session(first.session_id).status == "ending"
    assert len(calls(provider_log, "deposit")) == 1


@pytest.mark.parametrize("status", ["active", "ending"])
def test_unconfigured_family_on_previous_session_is_provider_error(status, provider_log, fake_gateways):
    """이전 세션의 제공사 계열 게이트웨이가 없으면 전환/회수는 provider_error"""
    db = TestingSessionLocal()
    try:
        db.add(GameSession(id="orphan", user_id="user-1", game_id=202, api_tag="honor", status=status))
        db.commit()
    finally:
        db.close()
    without_honor = {family: gw for family, gw in fake_gateways.items() if family != "honor"}
    registry = SessionRegistry(
        TestingSessionLocal,
        GatewayRegistry(without_honor, timeout=1.0),
        watcher=EventSurfaceWatcher()
    )

    result = run(registry.launch_game("user-1", 201))

    assert result.success is False
    assert result.error_kind == LaunchErrorKind.PROVIDER_ERROR
    assert fetch_session("orphan").status == "ending"
    assert provider_log == []
    assert balance_of("user-1") == Decimal("10000.00")


def test_withdraw_records_play_deltas(registry, fake_gateways):
    fake_gateways["honor"].bet_total = Decimal("500")
    fake_gateways["honor"].win_total = Decimal("200")

    async def scenario():
        result = await launch_and_open(registry, "user-1", 201)
        await registry.notify_surface_closed(result.session_id)
        return result

    result = run(scenario())

    record = play_record(result.session_id)
    assert record is not None
    assert record.game_id == 201
    assert record.net == Decimal("-300")


def test_no_play_record_without_deltas(registry):
    async def scenario():
        result = await launch_and_open(registry, "user-1", 201)
        await registry.notify_surface_closed(result.session_id)
        return result

    assert play_record(run(scenario()).session_id) is None


# ==================== 실행 실패 ====================

def test_launch_url_failure_rolls_back_deposit(registry, provider_log, fake_gateways, sleeps):
    fake_gateways["honor"].failures["get_launch_url"] = 1

    result = run(registry.launch_game("user-1", 201))

    assert result.success is False
    assert result.error_kind == LaunchErrorKind.PROVIDER_ERROR
    assert open_sessions("user-1") == []
    assert balance_of("user-1") == Decimal("10000.00")
    assert len(calls(provider_log, "withdraw")) == 1
    assert sleeps == []


def test_failed_rollback_keeps_ending_session_for_recovery(registry, provider_log, fake_gateways, sleeps):
    fake_gateways["honor"].failures["get_launch_url"] = 1
    fake_gateways["honor"].failures["withdraw"] = 3

    result = run(registry.launch_game("user-1", 201))

    assert result.error_kind == LaunchErrorKind.PROVIDER_ERROR
    # 재시도 간격: attempt × backoff
    assert sleeps == [2.0, 4.0]
    stuck = open_sessions("user-1")
    assert len(stuck) == 1
    assert stuck[0].status == "ending"
    assert stuck[0].end_reason == "launch_failed"
    assert balance_of("user-1") == Decimal("0")

    # 정리 작업이 남은 입금을 회수
    assert run(registry.expire_stale_sessions()) == (1, 0)
    assert fetch_session(stuck[0].id).status == "ended"
    assert balance_of("user-1") == Decimal("10000.00")


def test_deposit_failure_creates_no_session(registry, provider_log, fake_gateways):
    fake_gateways["honor"].failures["deposit"] = 1

    result = run(registry.launch_game("user-1", 201))

    assert result.error_kind == LaunchErrorKind.PROVIDER_ERROR
    assert open_sessions("user-1") == []
    assert balance_of("user-1") == Decimal("10000.00")
    assert calls(provider_log, "get_launch_url", stage="begin") == []


def test_gateway_timeout_is_provider_error_with_unchanged_state(provider_log, fake_gateways, sleeps):
    fake_gateways["honor"].delays["deposit"] = 0.5
    registry = SessionRegistry(
        TestingSessionLocal,
        GatewayRegistry(dict(fake_gateways), timeout=0.05),
        watcher=EventSurfaceWatcher()
    )

    result = run(registry.launch_game("user-1", 201))

    assert result.error_kind == LaunchErrorKind.PROVIDER_ERROR
    assert open_sessions("user-1") == []
    assert balance_of("user-1") == Decimal("10000.00")
    assert fake_gateways["honor"].wallets == {}


def test_guarded_gateway_marks_timeouts(fake_gateways):
    fake_gateways["invest"].delays["withdraw"] = 0.5
    gateway = GatewayRegistry(dict(fake_gateways), timeout=0.05).get("invest")

    with pytest.raises(ProviderError) as exc_info:
        run(gateway.withdraw("user-1"))

    assert exc_info.value.timed_out is True
    assert exc_info.value.operation == "withdraw"


def test_concurrent_session_from_other_process_is_race_conflict(registry, provider_log, fake_gateways):
    honor = fake_gateways["honor"]
    original = honor.get_launch_url

    async def launch_while_other_process_inserts(user_id, game_id):
        db = TestingSessionLocal()
        try:
            db.add(GameSession(id="other-process", user_id=user_id, game_id=202, api_tag="honor", status="ready"))
            db.commit()
        finally:
            db.close()
        return await original(user_id, game_id)

    honor.get_launch_url = launch_while_other_process_inserts

    result = run(registry.launch_game("user-1", 201))

    assert result.error_kind == LaunchErrorKind.RACE_CONFLICT
    assert [s.id for s in open_sessions("user-1")] == ["other-process"]
    # 방금 입금한 금액은 원복
    assert len(calls(provider_log, "withdraw")) == 1
    assert balance_of("user-1") == Decimal("10000.00")


# ==================== 실행 거부 ====================

def test_insufficient_balance_refused_before_gateway(registry, provider_log):
    result = run(registry.launch_game("user-broke", 201))

    assert result.error_kind == LaunchErrorKind.INSUFFICIENT_BALANCE
    assert provider_log == []


def test_permission_denied_before_any_funds_move(registry, provider_log):
    add_override(store_id="store-1", api_tag="honor", provider_id=2, game_id=201, access_kind=ACCESS_KIND_GAME, state="hidden")

    hidden = run(registry.launch_game("user-1", 201))
    maintenance = run(registry.launch_game("user-1", 102))

    assert hidden.error_kind == LaunchErrorKind.PERMISSION_DENIED
    assert hidden.deciding_scope == "store"
    assert maintenance.error_kind == LaunchErrorKind.PERMISSION_DENIED
    assert maintenance.deciding_scope == "admin"
    assert provider_log == []


def test_unknown_game_is_not_found(registry, provider_log):
    result = run(registry.launch_game("user-1", 999))

    assert result.error_kind == LaunchErrorKind.NOT_FOUND
    assert provider_log == []


# ==================== 정리/관리 ====================

def test_expire_stale_ready_sessions(registry):
    async def scenario():
        ready = await registry.launch_game("user-1", 201)
        active = await launch_and_open(registry, "user-2", 301)
        expired = await registry.expire_stale_sessions(now=datetime.utcnow() + timedelta(minutes=11))
        return ready, active, expired

    ready, active, expired = run(scenario())

    assert expired == (1, 0)
    game_session = fetch_session(ready.session_id)
    assert game_session.status == "ended"
    assert game_session.end_reason == "ready_timeout"
    assert fetch_session(active.session_id).status == "active"
    assert balance_of("user-1") == Decimal("10000.00")


def test_fresh_ready_sessions_are_kept(registry):
    async def scenario():
        result = await registry.launch_game("user-1", 201)
        return result, await registry.expire_stale_sessions()

    result, expired = run(scenario())

    assert expired == (0, 0)
    assert fetch_session(result.session_id).status == "ready"


def test_force_end(registry):
    async def scenario():
        result = await launch_and_open(registry, "user-1", 401)
        return result, await registry.force_end(result.session_id)

    result, ended = run(scenario())

    assert ended is True
    game_session = fetch_session(result.session_id)
    assert game_session.status == "ended"
    assert game_session.end_reason == "forced"


def test_end_unknown_session_raises(registry):
    with pytest.raises(SessionNotFound):
        run(registry.end_session("missing"))


def test_query_provider_state(registry):
    async def scenario():
        result = await registry.launch_game("user-1", 201)
        return await registry.query_provider_state(result.session_id)

    state = run(scenario())

    assert state.is_active is True
    assert state.family == "honor"


def test_list_open_sessions(registry):
    async def scenario():
        await registry.launch_game("user-1", 201)
        await launch_and_open(registry, "user-2", 101)

    run(scenario())

    assert len(registry.list_open_sessions()) == 2
    assert [s.user_id for s in registry.list_open_sessions(status="active")] == ["user-2"]


def test_popup_report_for_ended_session_rejected(registry):
    async def scenario():
        result = await launch_and_open(registry, "user-1", 201)
        await registry.notify_surface_closed(result.session_id)
        await registry.mark_popup(result.session_id, "user-1", opened=False)

    with pytest.raises(SessionNotFound):
        run(scenario())


def test_deposit_refused_twice_for_same_session(registry, provider_log):
    run(registry.balance.deposit("session-x", "user-1", "honor", Decimal("100")))

    with pytest.raises(DuplicateTransfer):
        run(registry.balance.deposit("session-x", "user-1", "honor", Decimal("100")))

    assert len(calls(provider_log, "deposit", stage="begin")) == 1
    assert balance_of("user-1") == Decimal("9900.00")


# ==================== 표시 이름 ====================

def test_game_display_name_fallback(registry):
    assert registry.game_display_name(201) == "Sweet Bonanza"
    assert registry.game_display_name(999) == UNKNOWN_GAME_NAME


def test_game_display_name_cached(registry):
    registry.cache = RedisClient(url="")

    assert registry.game_display_name(201) == "Sweet Bonanza"
    update_game(201, name="Renamed")
    assert registry.game_display_name(201) == "Sweet Bonanza"
