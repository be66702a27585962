from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from mcp.server.fastmcp import FastMCP

from context_weave.config import EngineConfig
from context_weave.engine import ContextEngine, FileEvent
from context_weave.models import ContextSource, ContextType

LOG = logging.getLogger("server")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _validate_required(name: str, value: Optional[str]) -> None:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValueError(f"Missing required field: {name}")


def _json_payload(model) -> dict:
    return model.model_dump(mode="json")


class _EngineHandle:
    """Creates and initializes the engine on first use."""

    def __init__(self, config: EngineConfig) -> None:
        self._config = config
        self._engine: ContextEngine | None = None
        self._lock = asyncio.Lock()

    async def get(self) -> ContextEngine:
        async with self._lock:
            if self._engine is None:
                engine = ContextEngine(self._config)
                await engine.initialize()
                self._engine = engine
        return self._engine


def build_server(config: EngineConfig | None = None) -> FastMCP:
    server = FastMCP("context-weave")
    handle = _EngineHandle(config or EngineConfig.from_env())

    @server.tool(
        description="Assemble a token-bounded, relevance-ranked context bundle from the given sources."
    )
    async def assemble_context(
        query: str = "",
        sources: Optional[List[str]] = None,
        maxTokens: Optional[int] = None,
        includeProjectInfo: bool = False,
        conversationId: Optional[str] = None,
        selectionOnly: bool = False,
    ) -> dict:
        engine = await handle.get()
        result = await engine.assemble_context(
            query=query,
            sources=[ContextSource(s) for s in sources] if sources is not None else None,
            max_tokens=maxTokens,
            include_project_info=includeProjectInfo,
            conversation_id=conversationId,
            selection_only=selectionOnly,
        )
        return _json_payload(result)

    @server.tool(
        description="Get context for a query using the default sources and budget of a context type "
        "(code_completion, chat, agent)."
    )
    async def get_context(query: str, contextType: str = "chat", conversationId: Optional[str] = None) -> dict:
        engine = await handle.get()
        result = await engine.get_context(
            query=query,
            context_type=ContextType(contextType),
            conversation_id=conversationId,
            include_project_info=True,
        )
        return _json_payload(result)

    @server.tool(description="Queue every not-yet-indexed source file in the workspace for indexing.")
    async def reindex() -> dict:
        engine = await handle.get()
        queued = await engine.reindex_workspace()
        return {"queued": queued}

    @server.tool(description="Index a single file immediately and report the outcome.")
    async def index_file(path: str) -> dict:
        _validate_required("path", path)
        engine = await handle.get()
        result = await engine.index_file(path)
        return {
            "ok": result.ok,
            "item": _json_payload(result.value) if result.value is not None else None,
            "error": str(result.error) if result.error is not None else None,
        }

    @server.tool(description="Report a workspace file event: created, changed or deleted.")
    async def file_event(event: str, path: str) -> dict:
        _validate_required("path", path)
        engine = await handle.get()
        return {"accepted": engine.on_file_event(FileEvent(event), path)}

    @server.tool(description="Append a message to a conversation and return its id.")
    async def add_message(conversationId: str, role: str, content: str) -> dict:
        _validate_required("conversationId", conversationId)
        engine = await handle.get()
        message_id = await engine.add_message(conversationId, role, content)
        return {"messageId": message_id}

    @server.tool(description="Render a conversation as text, most relevant messages first when a query is given.")
    async def conversation_context(conversationId: str, query: str = "", maxTokens: int = 2000) -> dict:
        _validate_required("conversationId", conversationId)
        engine = await handle.get()
        text = await engine.get_conversation_context(conversationId, query, maxTokens)
        return {"context": text}

    @server.tool(description="Record a usage pattern with optional examples.")
    async def track_usage_pattern(pattern: str, examples: Optional[List[str]] = None) -> dict:
        _validate_required("pattern", pattern)
        engine = await handle.get()
        return {"saved": engine.track_usage_pattern(pattern, examples)}

    @server.tool(description="Engine status: connectivity, store readiness and indexing progress.")
    async def status() -> dict:
        engine = await handle.get()
        return engine.status()

    return server


def main() -> None:
    config = EngineConfig.from_env()
    configure_logging(config.log_level)
    server = build_server(config)
    server.run()


if __name__ == "__main__":
    main()
