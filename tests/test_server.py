"""Tests for the MCP server surface."""

from __future__ import annotations

import pytest

mcp = pytest.importorskip("mcp")

from context_weave.server import _validate_required, build_server


class TestBuildServer:
    @pytest.mark.asyncio
    async def test_registers_tools(self, engine_config):
        server = build_server(engine_config)
        names = {tool.name for tool in await server.list_tools()}
        assert names == {
            "assemble_context",
            "get_context",
            "reindex",
            "index_file",
            "file_event",
            "add_message",
            "conversation_context",
            "track_usage_pattern",
            "status",
        }


class TestValidation:
    def test_missing_values_rejected(self):
        with pytest.raises(ValueError, match="Missing required field: path"):
            _validate_required("path", "   ")
        with pytest.raises(ValueError):
            _validate_required("path", None)

    def test_present_value_accepted(self):
        _validate_required("path", "a.py")
