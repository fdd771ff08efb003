"""
Tests for the batch processor.
"""

from unittest.mock import patch

import pytest

from opstate.core.batch import BatchConfig, BatchProcessor
from opstate.core.exceptions import BatchProcessingError, ConfigurationError


class Recorder:
    """Async processor that records every batch it receives."""

    def __init__(self, fail: bool = False):
        self.batches = []
        self.fail = fail

    async def __call__(self, batch):
        self.batches.append(list(batch))
        if self.fail:
            raise RuntimeError("storage unavailable")


# ============================================================================
# BatchConfig Tests
# ============================================================================


class TestBatchConfig:
    """Tests for BatchConfig."""

    def test_default_values(self):
        config = BatchConfig()

        assert config.batch_size == 10
        assert config.flush_interval == 1.0

    def test_rejects_zero_batch_size(self):
        with pytest.raises(ConfigurationError):
            BatchConfig(batch_size=0)

    def test_rejects_negative_interval(self):
        with pytest.raises(ConfigurationError):
            BatchConfig(flush_interval=-1)


# ============================================================================
# BatchProcessor Tests
# ============================================================================


class TestBatchProcessor:
    """Tests for BatchProcessor flushing."""

    @pytest.mark.asyncio
    async def test_size_threshold_flushes_immediately(self, scheduler):
        processor = Recorder()
        batcher = BatchProcessor(
            processor, BatchConfig(batch_size=2, flush_interval=1.0), scheduler=scheduler
        )

        batcher.add("a")
        batcher.add("b")

        # Queue is handed off synchronously
        assert batcher.pending_count == 0
        assert scheduler.pending_timers == 0

        await scheduler.settle()
        assert processor.batches == [["a", "b"]]

    @pytest.mark.asyncio
    async def test_interval_flush(self, scheduler):
        processor = Recorder()
        batcher = BatchProcessor(
            processor, BatchConfig(batch_size=10, flush_interval=0.05), scheduler=scheduler
        )

        batcher.add(1)
        batcher.add(2)
        await scheduler.advance(0.04)
        assert processor.batches == []

        await scheduler.advance(0.02)
        assert processor.batches == [[1, 2]]
        assert batcher.pending_count == 0

    @pytest.mark.asyncio
    async def test_interval_timer_armed_once(self, scheduler):
        batcher = BatchProcessor(
            Recorder(), BatchConfig(batch_size=10, flush_interval=0.05), scheduler=scheduler
        )

        for i in range(5):
            batcher.add(i)

        assert scheduler.pending_timers == 1

    @pytest.mark.asyncio
    async def test_items_split_across_batches(self, scheduler):
        processor = Recorder()
        batcher = BatchProcessor(
            processor, BatchConfig(batch_size=3, flush_interval=0.1), scheduler=scheduler
        )

        for i in range(7):
            batcher.add(i)
        await scheduler.advance(0.1)

        assert processor.batches == [[0, 1, 2], [3, 4, 5], [6]]
        assert sum(len(b) for b in processor.batches) == 7

    @pytest.mark.asyncio
    async def test_flush_and_empty_flush(self, scheduler):
        processor = Recorder()
        batcher = BatchProcessor(processor, BatchConfig(batch_size=10), scheduler=scheduler)

        batcher.add("x")
        await batcher.flush()
        await batcher.flush()

        assert processor.batches == [["x"]]
        assert scheduler.pending_timers == 0

    @pytest.mark.asyncio
    async def test_processor_errors_are_logged_not_raised(self, scheduler):
        batcher = BatchProcessor(
            Recorder(fail=True), BatchConfig(batch_size=1), scheduler=scheduler
        )

        with patch("opstate.core.batch.logger") as mock_logger:
            batcher.add("a")
            await scheduler.settle()

        mock_logger.error.assert_called_once()
        assert mock_logger.error.call_args[0][0] == "batch_processing_failed"
        assert isinstance(batcher.last_error, BatchProcessingError)
        assert isinstance(batcher.last_error.cause, RuntimeError)
        assert batcher.get_stats()["failures"] == 1

    @pytest.mark.asyncio
    async def test_sync_processor(self, scheduler):
        batches = []
        batcher = BatchProcessor(batches.append, BatchConfig(batch_size=2), scheduler=scheduler)

        batcher.add(1)
        batcher.add(2)
        await scheduler.settle()

        assert batches == [[1, 2]]

    @pytest.mark.asyncio
    async def test_close_waits_for_in_flight(self, scheduler):
        processor = Recorder()
        batcher = BatchProcessor(
            processor, BatchConfig(batch_size=2, flush_interval=5), scheduler=scheduler
        )

        batcher.add(1)
        batcher.add(2)
        batcher.add(3)
        await batcher.close()

        # The remainder is flushed inline, so it may land before the spawned batch
        assert sorted(processor.batches) == [[1, 2], [3]]
        assert batcher.get_stats()["in_flight"] == 0
        assert scheduler.pending_timers == 0

    @pytest.mark.asyncio
    async def test_stats(self, scheduler):
        batcher = BatchProcessor(Recorder(), BatchConfig(batch_size=2), scheduler=scheduler)

        for i in range(4):
            batcher.add(i)
        await scheduler.settle()

        stats = batcher.get_stats()
        assert stats["batches"] == 2
        assert stats["items"] == 4
        assert stats["pending"] == 0
