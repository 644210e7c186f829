import asyncio

import pytest

from authcore.service.pruning import SessionPruner


class TestSessionPruner:
    async def test_run_once_prunes_and_counts(self, session_manager, local_user, clock):
        session_manager.issue_initial_session(local_user.id, local_user.email)
        session_manager.issue_initial_session(local_user.id, local_user.email)
        clock.advance(days=8)

        pruner = SessionPruner(session_manager, interval=60)
        assert await pruner.run_once() == 2
        assert await pruner.run_once() == 0
        assert pruner.total_pruned == 2

    async def test_start_and_stop(self, session_manager, local_user):
        pair = session_manager.issue_initial_session(local_user.id, local_user.email)
        session_manager.logout(pair.refresh_token)

        pruner = SessionPruner(session_manager, interval=3600)
        await pruner.start()
        assert pruner.running
        await pruner.start()

        for _ in range(50):
            if pruner.total_pruned:
                break
            await asyncio.sleep(0.01)
        await pruner.stop()

        assert not pruner.running
        assert pruner.total_pruned == 1

    async def test_loop_survives_errors(self):
        calls = []

        class FlakySessions:
            def prune_expired(self):
                calls.append(1)
                if len(calls) == 1:
                    raise RuntimeError("database unavailable")
                return 0

        pruner = SessionPruner(FlakySessions(), interval=1)
        pruner.interval = 0.01
        await pruner.start()
        for _ in range(100):
            if len(calls) >= 2:
                break
            await asyncio.sleep(0.01)
        await pruner.stop()
        assert len(calls) >= 2

    def test_interval_must_be_positive(self, session_manager):
        with pytest.raises(ValueError):
            SessionPruner(session_manager, interval=0)
