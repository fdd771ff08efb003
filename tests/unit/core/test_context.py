"""
Tests for OperationContext wiring.
"""

from unittest.mock import MagicMock, patch

import pytest

from opstate.core.config import CacheSettings, DedupSettings, Settings
from opstate.core.context import OperationContext
from opstate.core.exceptions import ConfigurationError
from opstate.core.runner import GLOBAL_LOADER_KEY


class TestOperationContext:
    """Tests for OperationContext."""

    def test_components_built_from_settings(self):
        settings = Settings(
            cache=CacheSettings(max_size=7),
            dedup=DedupSettings(max_retries=1, retry_delay=0.2),
        )

        ctx = OperationContext(settings=settings)

        assert ctx.cache.max_size == 7
        assert ctx.deduplicator.config.max_retries == 1
        assert ctx.deduplicator.config.retry_delay == 0.2

    def test_contexts_do_not_share_state(self):
        first, second = OperationContext(), OperationContext()

        first.cache.set("k", 1)
        first.loading_registry.set_loading("a", True)

        assert second.cache.has("k") is False
        assert second.loading_registry.is_any_loading() is False

    def test_from_settings_logs(self, settings, scheduler):
        with patch("opstate.core.context.logger") as mock_logger:
            ctx = OperationContext.from_settings(settings, scheduler=scheduler)

        assert ctx.scheduler is scheduler
        mock_logger.info.assert_called_once()
        assert mock_logger.info.call_args[0][0] == "operation_context_created"

    def test_runner_config_from_preset(self, context):
        config = context.runner_config("image", retries=0)

        assert config.timeout == 60.0
        assert config.retries == 0

    def test_unknown_preset(self, context):
        with pytest.raises(KeyError):
            context.runner_config("nonexistent")

    @pytest.mark.asyncio
    async def test_create_runner_shares_registry(self, context):
        on_success = MagicMock()
        runner = context.create_runner("api", timeout=0, on_success=on_success)
        seen = []

        async def fetch():
            seen.append(context.loading_registry.is_loading(GLOBAL_LOADER_KEY))
            return "listing"

        await runner.execute(fetch)

        assert runner.name == "api"
        assert runner.config.timeout == 0
        assert seen == [True]
        on_success.assert_called_once_with("listing")

    @pytest.mark.asyncio
    async def test_create_error_runner(self, context):
        async def load_inbox():
            raise ConnectionError("inbox down")

        runner = context.create_error_runner(load_inbox)

        assert await runner.execute() is None
        assert runner.name == "load_inbox"
        assert isinstance(runner.error, ConnectionError)

    def test_factories_use_context_settings(self, context):
        sequential = context.create_sequential("form")
        parallel = context.create_parallel("search", max_concurrency=3)
        group = context.create_group(["a", "b"], preset="api")

        assert sequential.runner.config.timeout == 15.0
        assert parallel.config.timeout == 10.0
        assert parallel.max_concurrency == 3
        assert group["a"].config.retries == 3

    def test_create_batch_processor(self, context):
        processor = context.create_batch_processor(MagicMock())
        custom = context.create_batch_processor(
            MagicMock(), batch_size=2, flush_interval=0
        )

        assert processor.config.batch_size == 10
        assert processor.config.flush_interval == 1.0
        assert custom.config.batch_size == 2
        assert custom.config.flush_interval == 0

    def test_create_batch_processor_rejects_zero_batch_size(self, context):
        with pytest.raises(ConfigurationError):
            context.create_batch_processor(MagicMock(), batch_size=0)

    def test_create_retry_handler(self, context):
        handler = context.create_retry_handler(MagicMock(), on_exhausted=MagicMock())

        assert handler.policy.max_retries == 3
        assert handler.policy.compute_delay(1) == 2.0
