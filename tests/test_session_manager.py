import asyncio
import time
from datetime import datetime, timedelta, timezone

import pytest

from admingate.service.errors import SessionCreationFailed
from admingate.service.session import SessionManager
from admingate.storage.errors import StoreError

RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
IP = "203.0.113.7"
UA = "Mozilla/5.0 (X11; Linux x86_64)"


def _later(minutes: int):
    moment = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    return lambda: moment


async def test_create_then_validate_returns_fresh_session(manager, admin):
    sid = await manager.create_session(admin.id, IP, UA)
    assert len(sid) == 64
    int(sid, 16)

    session = await manager.validate_session(sid)
    assert session is not None
    assert session.user_id == admin.id
    assert session.ip_address == IP
    assert session.user_agent == UA
    assert session.is_authenticated is False
    assert session.two_factor_verified is False
    assert session.expires_at - session.created_at == timedelta(minutes=30)


async def test_session_ids_are_unique(manager, admin):
    ids = {await manager.create_session(admin.id, IP, UA) for _ in range(20)}
    assert len(ids) == 20


async def test_create_session_custom_validity(manager, admin):
    sid = await manager.create_session(admin.id, IP, UA, validity_minutes=5)
    session = await manager.validate_session(sid)
    assert session.expires_at - session.created_at == timedelta(minutes=5)


async def test_create_session_persists_to_store(manager, memory_store, admin):
    sid = await manager.create_session(admin.id, IP, UA)
    stored = memory_store.find_session(sid)
    assert stored is not None
    assert stored.user_id == admin.id


async def test_create_session_store_failure_raises(manager, memory_store, admin, monkeypatch):
    def broken_save(session):
        raise StoreError("disk full")

    monkeypatch.setattr(memory_store, "save_session", broken_save)
    with pytest.raises(SessionCreationFailed) as excinfo:
        await manager.create_session(admin.id, IP, UA)
    assert isinstance(excinfo.value.__cause__, StoreError)
    assert excinfo.value.status_code == 500
    assert manager.sessions == {}


async def test_create_session_rejects_non_positive_validity(manager, admin):
    with pytest.raises(SessionCreationFailed):
        await manager.create_session(admin.id, IP, UA, validity_minutes=0)


async def test_validate_unknown_or_empty_id(manager):
    assert await manager.validate_session("does-not-exist") is None
    assert await manager.validate_session("") is None


async def test_expired_session_is_rejected_and_removed(manager, memory_store, admin, monkeypatch):
    sid = await manager.create_session(admin.id, IP, UA)
    monkeypatch.setattr(manager, "_now", _later(31))

    stats = manager.get_session_stats()
    assert stats.total_sessions == 1
    assert stats.expired_sessions == 1
    assert stats.active_sessions == 0

    assert await manager.validate_session(sid) is None
    assert memory_store.find_session(sid) is None
    stats = manager.get_session_stats()
    assert stats.active_sessions == 0
    assert stats.total_sessions == 0


async def test_validate_loads_from_store_when_not_cached(memory_store, two_factor, guard, manager, admin):
    sid = await manager.create_session(admin.id, IP, UA)
    other = SessionManager(memory_store, two_factor, guard)
    assert other.sessions == {}

    session = await other.validate_session(sid)
    assert session is not None
    assert session.id == sid
    assert sid in other.sessions


async def test_validate_skips_expired_rows_in_store(memory_store, two_factor, guard, manager, admin, monkeypatch):
    sid = await manager.create_session(admin.id, IP, UA)
    other = SessionManager(memory_store, two_factor, guard)
    monkeypatch.setattr(other, "_now", _later(45))
    assert await other.validate_session(sid) is None
    assert sid not in other.sessions


async def test_validate_store_failure_returns_none(memory_store, two_factor, guard, manager, admin, monkeypatch):
    sid = await manager.create_session(admin.id, IP, UA)
    other = SessionManager(memory_store, two_factor, guard)

    def broken_find(session_id, *, active_at=None):
        raise StoreError("connection reset")

    monkeypatch.setattr(memory_store, "find_session", broken_find)
    assert await other.validate_session(sid) is None


async def test_update_session_writes_store_and_cache(manager, memory_store, admin):
    sid = await manager.create_session(admin.id, IP, UA)
    assert await manager.update_session(sid, is_authenticated=True)

    assert manager.sessions[sid].is_authenticated is True
    assert memory_store.find_session(sid).is_authenticated is True
    assert memory_store.find_session(sid).two_factor_verified is False


async def test_update_session_without_fields_is_noop(manager, admin):
    sid = await manager.create_session(admin.id, IP, UA)
    assert await manager.update_session(sid)
    assert manager.sessions[sid].is_authenticated is False


async def test_update_session_requires_cached_session(memory_store, two_factor, guard, manager, admin):
    sid = await manager.create_session(admin.id, IP, UA)
    other = SessionManager(memory_store, two_factor, guard)

    assert await other.update_session(sid, is_authenticated=True) is False
    assert memory_store.find_session(sid).is_authenticated is False

    # Once this process has seen the session, updates go through
    await other.validate_session(sid)
    assert await other.update_session(sid, is_authenticated=True)
    assert memory_store.find_session(sid).is_authenticated is True


async def test_update_session_store_failure_leaves_cache_untouched(manager, memory_store, admin, monkeypatch):
    sid = await manager.create_session(admin.id, IP, UA)

    def broken_update(session_id, **fields):
        raise StoreError("read-only replica")

    monkeypatch.setattr(memory_store, "update_session", broken_update)
    assert await manager.update_session(sid, is_authenticated=True) is False
    assert manager.sessions[sid].is_authenticated is False


async def test_destroy_session(manager, memory_store, admin):
    sid = await manager.create_session(admin.id, IP, UA)
    assert await manager.destroy_session(sid)
    assert await manager.validate_session(sid) is None
    assert memory_store.find_session(sid) is None
    # Destroying something already gone is fine
    assert await manager.destroy_session(sid)


async def test_destroy_session_store_failure(manager, memory_store, admin, monkeypatch):
    sid = await manager.create_session(admin.id, IP, UA)

    def broken_delete(session_id):
        raise StoreError("timeout")

    monkeypatch.setattr(memory_store, "delete_session", broken_delete)
    assert await manager.destroy_session(sid) is False
    assert sid not in manager.sessions


async def test_destroy_all_user_sessions_spares_other_users(manager, memory_store, admin, plain_admin):
    mine = [await manager.create_session(admin.id, IP, UA) for _ in range(3)]
    theirs = await manager.create_session(plain_admin.id, "198.51.100.2", UA)

    assert await manager.destroy_all_user_sessions(admin.id)

    for sid in mine:
        assert await manager.validate_session(sid) is None
        assert memory_store.find_session(sid) is None
    survivor = await manager.validate_session(theirs)
    assert survivor is not None
    assert survivor.user_id == plain_admin.id


async def test_destroy_all_user_sessions_reaches_uncached_rows(memory_store, two_factor, guard, manager, admin):
    sid = await manager.create_session(admin.id, IP, UA)
    other = SessionManager(memory_store, two_factor, guard)
    assert await other.destroy_all_user_sessions(admin.id)
    assert memory_store.find_session(sid) is None


async def test_destroy_all_user_sessions_store_failure(manager, memory_store, admin, monkeypatch):
    await manager.create_session(admin.id, IP, UA)

    def broken(user_id):
        raise StoreError("timeout")

    monkeypatch.setattr(memory_store, "delete_user_sessions", broken)
    assert await manager.destroy_all_user_sessions(admin.id) is False


async def test_verify_two_factor_with_current_code(manager, memory_store, admin, two_factor):
    sid = await manager.create_session(admin.id, IP, UA)
    await manager.update_session(sid, is_authenticated=True)

    code = two_factor.generate_token(RFC_SECRET)
    assert await manager.verify_two_factor(sid, code)

    session = await manager.validate_session(sid)
    assert session.two_factor_verified is True
    assert memory_store.find_session(sid).two_factor_verified is True


async def test_verify_two_factor_rejects_wrong_code(manager, admin, two_factor):
    sid = await manager.create_session(admin.id, IP, UA)
    now = time.time()
    wrong = next(
        candidate
        for candidate in ("000000", "111111", "222222")
        if not two_factor.verify_token(RFC_SECRET, candidate, now=now)
    )
    assert await manager.verify_two_factor(sid, wrong) is False
    assert (await manager.validate_session(sid)).two_factor_verified is False


async def test_replayed_code_rejected_on_same_session(manager, admin, two_factor, guard):
    sid = await manager.create_session(admin.id, IP, UA)
    code = two_factor.generate_token(RFC_SECRET)

    assert await manager.verify_two_factor(sid, code)
    assert await guard.is_used(code)
    assert await manager.verify_two_factor(sid, code) is False


async def test_replayed_code_rejected_on_another_session(manager, admin, two_factor):
    first = await manager.create_session(admin.id, IP, UA)
    second = await manager.create_session(admin.id, IP, UA)
    code = two_factor.generate_token(RFC_SECRET)

    assert await manager.verify_two_factor(first, code)
    assert await manager.verify_two_factor(second, code) is False
    assert (await manager.validate_session(second)).two_factor_verified is False


async def test_replay_ignores_whitespace_variants(manager, admin, two_factor):
    first = await manager.create_session(admin.id, IP, UA)
    second = await manager.create_session(admin.id, IP, UA)
    code = two_factor.generate_token(RFC_SECRET)

    assert await manager.verify_two_factor(first, f"{code[:3]} {code[3:]}")
    assert await manager.verify_two_factor(second, code) is False


async def test_code_accepted_again_after_replay_window(manager, admin, two_factor, clock):
    first = await manager.create_session(admin.id, IP, UA)
    second = await manager.create_session(admin.id, IP, UA)
    code = two_factor.generate_token(RFC_SECRET)

    assert await manager.verify_two_factor(first, code)
    clock.advance(301)
    # Only the guard's clock moved; the code is still valid by wall time
    assert await manager.verify_two_factor(second, code)


async def test_concurrent_replays_admit_one(manager, admin, two_factor):
    sids = [await manager.create_session(admin.id, IP, UA) for _ in range(5)]
    code = two_factor.generate_token(RFC_SECRET)
    results = await asyncio.gather(*(manager.verify_two_factor(sid, code) for sid in sids))
    assert results.count(True) == 1


async def test_backup_code_is_single_use(manager, memory_store, admin):
    first = await manager.create_session(admin.id, IP, UA)
    second = await manager.create_session(admin.id, IP, UA)

    assert await manager.verify_two_factor(first, "", backup_code="abcd1234")
    assert memory_store.get_admin(admin.id).two_factor_backup_codes == [
        "EFGH5678",
        "JKLM9012",
    ]
    assert await manager.verify_two_factor(second, "", backup_code="ABCD1234") is False
    assert await manager.verify_two_factor(second, "", backup_code="efgh5678")
    assert memory_store.get_admin(admin.id).two_factor_backup_codes == ["JKLM9012"]


async def test_backup_code_lost_race_is_rejected(manager, memory_store, admin, monkeypatch):
    first = await manager.create_session(admin.id, IP, UA)
    second = await manager.create_session(admin.id, IP, UA)
    stale = memory_store.get_admin(admin.id)

    assert await manager.verify_two_factor(first, "", backup_code="ABCD1234")

    # A second request that loaded the admin before the first one persisted
    monkeypatch.setattr(memory_store, "get_admin", lambda user_id: stale)
    assert await manager.verify_two_factor(second, "", backup_code="ABCD1234") is False
    monkeypatch.undo()
    assert memory_store.get_admin(admin.id).two_factor_backup_codes == [
        "EFGH5678",
        "JKLM9012",
    ]


async def test_backup_code_takes_precedence_over_token(manager, memory_store, admin, two_factor):
    sid = await manager.create_session(admin.id, IP, UA)
    code = two_factor.generate_token(RFC_SECRET)
    # A valid TOTP does not rescue a bad backup code
    assert await manager.verify_two_factor(sid, code, backup_code="NOPE0000") is False
    assert len(memory_store.get_admin(admin.id).two_factor_backup_codes) == 3


async def test_verify_two_factor_requires_enabled_2fa(manager, plain_admin, two_factor):
    sid = await manager.create_session(plain_admin.id, IP, UA)
    code = two_factor.generate_token(RFC_SECRET)
    assert await manager.verify_two_factor(sid, code) is False


async def test_verify_two_factor_unknown_session_or_user(manager, two_factor):
    code = two_factor.generate_token(RFC_SECRET)
    assert await manager.verify_two_factor("missing", code) is False

    sid = await manager.create_session("ghost-user", IP, UA)
    assert await manager.verify_two_factor(sid, code) is False


async def test_verify_two_factor_store_failure_is_quiet(manager, memory_store, admin, two_factor, monkeypatch):
    sid = await manager.create_session(admin.id, IP, UA)

    def broken(user_id):
        raise StoreError("connection refused")

    monkeypatch.setattr(memory_store, "get_admin", broken)
    assert await manager.verify_two_factor(sid, two_factor.generate_token(RFC_SECRET)) is False


async def test_verify_two_factor_backup_swap_failure_is_quiet(manager, memory_store, admin, monkeypatch):
    sid = await manager.create_session(admin.id, IP, UA)

    def broken(user_id, expected, remaining):
        raise StoreError("deadlock detected")

    monkeypatch.setattr(memory_store, "replace_backup_codes", broken)
    assert await manager.verify_two_factor(sid, "", backup_code="ABCD1234") is False
    assert (await manager.validate_session(sid)).two_factor_verified is False


async def test_update_session_failed_write_changes_nothing(manager, memory_store, admin, monkeypatch):
    sid = await manager.create_session(admin.id, IP, UA)

    def broken_persist():
        raise StoreError("disk full")

    monkeypatch.setattr(memory_store, "_persist_state", broken_persist)
    assert await manager.update_session(sid, is_authenticated=True) is False
    assert manager.sessions[sid].is_authenticated is False
    assert memory_store.find_session(sid).is_authenticated is False


async def test_backup_code_survives_failed_write(manager, memory_store, admin, monkeypatch):
    sid = await manager.create_session(admin.id, IP, UA)

    def broken_persist():
        raise StoreError("disk full")

    monkeypatch.setattr(memory_store, "_persist_state", broken_persist)
    assert await manager.verify_two_factor(sid, "", backup_code="ABCD1234") is False
    assert memory_store.get_admin(admin.id).two_factor_backup_codes == [
        "ABCD1234",
        "EFGH5678",
        "JKLM9012",
    ]

    monkeypatch.undo()
    assert await manager.verify_two_factor(sid, "", backup_code="ABCD1234")


async def test_audit_session_same_fingerprint(manager, admin):
    sid = await manager.create_session(admin.id, IP, UA)
    assert await manager.audit_session(sid, IP, UA)
    assert await manager.validate_session(sid) is not None


async def test_audit_session_ip_change_destroys_session(manager, memory_store, admin):
    sid = await manager.create_session(admin.id, IP, UA)
    assert await manager.audit_session(sid, "192.0.2.99", UA) is False
    assert await manager.validate_session(sid) is None
    assert memory_store.find_session(sid) is None


async def test_audit_session_user_agent_change_is_advisory(manager, admin):
    sid = await manager.create_session(admin.id, IP, UA)
    assert await manager.audit_session(sid, IP, "curl/8.4.0")
    assert await manager.validate_session(sid) is not None


async def test_audit_unknown_session(manager):
    assert await manager.audit_session("missing", IP, UA) is False


async def test_is_fully_authenticated_with_two_factor(manager, admin, two_factor):
    sid = await manager.create_session(admin.id, IP, UA)
    assert await manager.is_fully_authenticated(sid) is False

    await manager.update_session(sid, is_authenticated=True)
    assert await manager.is_fully_authenticated(sid) is False

    assert await manager.verify_two_factor(sid, two_factor.generate_token(RFC_SECRET))
    assert await manager.is_fully_authenticated(sid)


async def test_is_fully_authenticated_without_two_factor(manager, plain_admin):
    sid = await manager.create_session(plain_admin.id, IP, UA)
    await manager.update_session(sid, is_authenticated=True)
    assert await manager.is_fully_authenticated(sid)


async def test_is_fully_authenticated_unknown_owner(manager):
    sid = await manager.create_session("ghost-user", IP, UA)
    await manager.update_session(sid, is_authenticated=True)
    assert await manager.is_fully_authenticated(sid) is False
    assert await manager.is_fully_authenticated("missing") is False


async def test_session_stats_count_cache(manager, admin, plain_admin):
    assert manager.get_session_stats().total_sessions == 0
    await manager.create_session(admin.id, IP, UA)
    await manager.create_session(plain_admin.id, IP, UA)
    stats = manager.get_session_stats()
    assert stats.active_sessions == 2
    assert stats.total_sessions == 2
    assert stats.expired_sessions == 0


async def test_create_session_sweeps_expired_cache_entries(manager, admin, monkeypatch):
    await manager.create_session(admin.id, IP, UA, validity_minutes=1)
    monkeypatch.setattr(manager, "_now", _later(2))
    await manager.create_session(admin.id, IP, UA)
    stats = manager.get_session_stats()
    assert stats.total_sessions == 1
    assert stats.active_sessions == 1


async def test_purge_expired_clears_store_and_cache(memory_store, two_factor, guard, manager, admin, monkeypatch):
    short = await manager.create_session(admin.id, IP, UA, validity_minutes=1)
    other = SessionManager(memory_store, two_factor, guard)
    stored_only = await other.create_session(admin.id, IP, UA, validity_minutes=1)
    keeper = await manager.create_session(admin.id, IP, UA, validity_minutes=60)

    monkeypatch.setattr(manager, "_now", _later(5))
    assert await manager.purge_expired() == 2
    assert short not in manager.sessions
    assert memory_store.find_session(short) is None
    assert memory_store.find_session(stored_only) is None
    assert memory_store.find_session(keeper) is not None


async def test_purge_expired_store_failure_returns_zero(manager, memory_store, admin, monkeypatch):
    await manager.create_session(admin.id, IP, UA)

    def broken(now):
        raise StoreError("timeout")

    monkeypatch.setattr(memory_store, "delete_expired_sessions", broken)
    assert await manager.purge_expired() == 0


async def test_maybe_cleanup_is_throttled(manager, admin, monkeypatch):
    await manager.create_session(admin.id, IP, UA, validity_minutes=1)
    monkeypatch.setattr(manager, "_now", _later(2))
    # Interval is measured from construction; two minutes is not enough
    assert await manager.maybe_cleanup() == 0
    assert await manager.maybe_cleanup(interval_minutes=1) == 1
    # Just ran, so the next call inside the interval does nothing
    assert await manager.maybe_cleanup(interval_minutes=1) == 0
