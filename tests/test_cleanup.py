"""Tests for the periodic refresh token cleanup worker."""

import asyncio

import pytest

from collabboard.service.auth import SessionManager
from collabboard.service.cleanup import CleanupService
from collabboard.service.tokens import TokenCodec
from collabboard.storage.memory import MemoryStore

REFRESH_TTL = 3600
PASSWORD = "correct-horse-battery"


@pytest.fixture
def sessions(clock):
    codec = TokenCodec(
        "access-secret-for-cleanup-tests-0123456789",
        "refresh-secret-for-cleanup-tests-0123456789",
        refresh_ttl_seconds=REFRESH_TTL,
        clock=clock,
    )
    return SessionManager(MemoryStore(persist=False), codec)


class TestCleanupService:
    async def test_run_once_purges_expired_tokens(self, sessions, clock):
        alice = await sessions.register("Alice", "alice@example.com", PASSWORD)
        clock.advance(REFRESH_TTL + 1)
        service = CleanupService(sessions)

        report = await service.run_once()

        assert report.total_tokens_removed == 1
        assert service.last_report is report
        assert sessions.store.list_tokens(alice.user.id) == set()

    async def test_start_sweeps_immediately_and_stop_cancels(self, sessions, clock):
        alice = await sessions.register("Alice", "alice@example.com", PASSWORD)
        clock.advance(REFRESH_TTL + 1)
        service = CleanupService(sessions, interval_hours=1)

        await service.start()
        assert service.running
        for _ in range(100):
            if service.last_report is not None:
                break
            await asyncio.sleep(0.01)
        await service.stop()

        assert not service.running
        assert service.last_report.total_tokens_removed == 1
        assert sessions.store.list_tokens(alice.user.id) == set()

    async def test_second_start_is_noop(self, sessions):
        service = CleanupService(sessions, interval_hours=1)

        await service.start()
        first_task = service._task
        await service.start()

        assert service._task is first_task
        await service.stop()

    async def test_scheduled_failure_is_logged_not_raised(self, sessions, monkeypatch):
        def boom():
            raise RuntimeError("store offline")

        monkeypatch.setattr(sessions, "cleanup_all_expired_tokens", boom)
        service = CleanupService(sessions)

        assert await service.run_once() is None

    async def test_manual_cleanup_propagates_failure(self, sessions, monkeypatch):
        def boom():
            raise RuntimeError("store offline")

        monkeypatch.setattr(sessions, "cleanup_all_expired_tokens", boom)
        service = CleanupService(sessions)

        with pytest.raises(RuntimeError):
            await service.manual_cleanup()

    async def test_manual_cleanup_runs_without_start(self, sessions, clock):
        await sessions.register("Alice", "alice@example.com", PASSWORD)
        await sessions.register("Bob", "bob@example.com", PASSWORD)
        clock.advance(REFRESH_TTL + 1)

        report = await CleanupService(sessions).manual_cleanup()

        assert report.users_affected == 2
        assert report.total_tokens_removed == 2
