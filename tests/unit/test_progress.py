"""Tests for the progress channel."""

from __future__ import annotations

from weighsync.sync.progress import ProgressChannel
from weighsync.sync.protocol import SyncProgress, SyncStage


def _event(stage: SyncStage = SyncStage.SYNCING) -> SyncProgress:
    return SyncProgress(stage, 50, "Merging data...")


class TestProgressChannel:
    async def test_sync_and_async_handlers(self) -> None:
        channel = ProgressChannel()
        seen: list[str] = []

        def on_sync(event: SyncProgress) -> None:
            seen.append(f"sync:{event.stage}")

        async def on_async(event: SyncProgress) -> None:
            seen.append(f"async:{event.stage}")

        channel.subscribe(on_sync)
        channel.subscribe(on_async)
        await channel.publish(_event())

        assert seen == ["sync:syncing", "async:syncing"]
        assert channel.last_event == _event()

    async def test_unsubscribe(self) -> None:
        channel = ProgressChannel()
        seen: list[SyncProgress] = []
        unsubscribe = channel.subscribe(seen.append)
        assert channel.subscriber_count == 1

        unsubscribe()
        unsubscribe()
        await channel.publish(_event())

        assert seen == []
        assert channel.subscriber_count == 0

    async def test_failing_handler_does_not_stop_others(self) -> None:
        channel = ProgressChannel()
        seen: list[SyncProgress] = []

        def broken(event: SyncProgress) -> None:
            raise RuntimeError("widget gone")

        channel.subscribe(broken)
        channel.subscribe(seen.append)
        await channel.publish(_event(SyncStage.COMPLETED))

        assert len(seen) == 1

    async def test_handler_may_unsubscribe_during_publish(self) -> None:
        channel = ProgressChannel()
        seen: list[SyncProgress] = []
        unsubscribe = None

        def once(event: SyncProgress) -> None:
            seen.append(event)
            unsubscribe()

        unsubscribe = channel.subscribe(once)
        await channel.publish(_event())
        await channel.publish(_event())

        assert len(seen) == 1
