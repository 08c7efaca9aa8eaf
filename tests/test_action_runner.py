"""
Tests for the stdio action runner
"""
import json
import os
import tempfile
from unittest.mock import AsyncMock, Mock

import pytest

from action_pipeline.action_handler import ActionHandler
from action_pipeline.config import ActionHandlerConfig, ErrorStrategy
from action_pipeline.navigation import RecordingNavigator, WebBrowserNavigator
from action_runner import process_line, process_request, setup_components


@pytest.fixture
def handler():
    return ActionHandler(ActionHandlerConfig(detect_leaks=False))


class TestProcessRequest:
    """Test cases for process_request"""

    @pytest.mark.asyncio
    async def test_valid_request(self, handler):
        """Test that a valid line produces a JSON-serialisable summary"""
        line = json.dumps({"result": {"id": "r1", "title": "One"}, "query": "one"})

        response = await process_request(line, handler)

        assert response["success"] is True
        assert response["prevented"] is False
        assert response["context_id"].startswith("ctx_")
        json.dumps(response)

    @pytest.mark.asyncio
    async def test_options_passed_through(self):
        """Test that query and action_type reach the handler"""
        processed = Mock()
        processed.to_dict.return_value = {"success": True}
        handler = Mock()
        handler.process_action = AsyncMock(return_value=processed)

        await process_request(
            json.dumps({"result": {"id": "r1", "title": "One"}, "query": "q", "action_type": "preview"}),
            handler
        )

        result, options = handler.process_action.call_args.args
        assert result.id == "r1"
        assert options.query == "q"
        assert options.action_type == "preview"

    @pytest.mark.asyncio
    async def test_non_json_ignored(self, handler):
        assert await process_request("not json at all", handler) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [
        [1, 2],
        {"query": "no result"},
        {"result": "r1"},
    ])
    async def test_malformed_request(self, handler, payload):
        response = await process_request(json.dumps(payload), handler)

        assert "error" in response

    @pytest.mark.asyncio
    async def test_result_without_id(self, handler):
        response = await process_request(json.dumps({"result": {"title": "no id"}}), handler)

        assert "missing required field" in response["error"]

    @pytest.mark.asyncio
    async def test_throw_strategy_reported(self):
        """Test that raised pipeline errors become error lines"""
        handler = ActionHandler(ActionHandlerConfig(detect_leaks=False, error_strategy=ErrorStrategy.THROW))
        handler.register_action_callback("action:callback", Mock(side_effect=RuntimeError("boom")))

        response = await process_request(json.dumps({"result": {"id": "r1", "title": "One"}}), handler)

        assert response["success"] is False
        assert response["result_id"] == "r1"
        assert "boom" in response["error"]


class TestProcessLine:
    """Test cases for decoding raw stdin lines"""

    @pytest.mark.asyncio
    async def test_invalid_utf8_skipped(self, handler):
        """Test that undecodable bytes are skipped and later lines still run"""
        assert await process_line(b"\xff\xfe bad\n", handler) is None

        response = await process_line(b'{"result": {"id": "a", "title": "A"}}\n', handler)

        assert response["success"] is True

    @pytest.mark.asyncio
    async def test_blank_line_skipped(self, handler):
        assert await process_line(b"   \n", handler) is None


class TestSetupComponents:
    """Test cases for setup_components"""

    def test_setup_from_file(self):
        with tempfile.NamedTemporaryFile(mode='w', suffix='.json', delete=False) as f:
            json.dump({"handler": {"max_concurrent_actions": 4}}, f)
            temp_file = f.name

        try:
            config, handler = setup_components(temp_file)

            assert config.handler.max_concurrent_actions == 4
            assert handler.config.max_concurrent_actions == 4
            assert isinstance(handler.interceptor.navigator, RecordingNavigator)

            _, browser_handler = setup_components(temp_file, open_browser=True)
            assert isinstance(browser_handler.interceptor.navigator, WebBrowserNavigator)
        finally:
            os.unlink(temp_file)

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError):
            setup_components("missing-pipeline.json")
