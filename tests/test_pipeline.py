"""Tests for the background indexing pipeline."""

from __future__ import annotations

import asyncio
import os
import time

import pytest

from context_weave.config import IndexingConfig
from context_weave.errors import IndexingFailure, NetworkDegraded
from context_weave.models import CodeEntity, EntityKind, ItemType, ProjectMeta, stable_id, vector_id_for
from context_weave.network import StaticNetwork
from context_weave.indexing.pipeline import IndexingPipeline
from context_weave.rag.embedding_provider import EmbeddingService

from conftest import FakeLocalEmbedder

FOO_BAR = "def foo():\n    return 1\n\n\ndef bar():\n    return 2\n"


def _pipeline(store, embeddings, workspace, network, config, **kw):
    return IndexingPipeline(store, embeddings, workspace, network, config, **kw)


@pytest.fixture
def pipeline(store, embeddings, workspace, online, fast_indexing):
    return _pipeline(store, embeddings, workspace, online, fast_indexing)


class TestIndexFile:
    @pytest.mark.asyncio
    async def test_file_and_entities_get_vectors(self, pipeline, store, vector_store, workspace):
        path = workspace.root / "a.py"
        path.write_text(FOO_BAR)

        result = await pipeline.index_file(path)

        assert result.ok
        item = result.value
        assert item.type == ItemType.FILE
        assert item.line_start == 0
        assert item.line_end == len(FOO_BAR.split("\n")) - 1
        assert item.size == len(FOO_BAR)
        assert store.get_context_item(stable_id(str(path))) is not None
        assert {e.name for e in store.entities_for_file(str(path))} == {"foo", "bar"}
        assert vector_store.count() == 3
        foo_id = CodeEntity.make_id(str(path), EntityKind.FUNCTION, "foo")
        assert store.get_code_entity(foo_id).vector_id == str(vector_id_for(foo_id))
        assert str(path) in pipeline.indexed_files

    @pytest.mark.asyncio
    async def test_reindex_bumps_frequency_without_duplicate_vectors(self, pipeline, store, vector_store, workspace):
        path = workspace.root / "a.py"
        path.write_text(FOO_BAR)
        await pipeline.index_file(path)
        await pipeline.index_file(path)

        foo_id = CodeEntity.make_id(str(path), EntityKind.FUNCTION, "foo")
        assert store.get_code_entity(foo_id).frequency == 2
        assert vector_store.count() == 3
        assert vector_store.replaces == 3

    @pytest.mark.asyncio
    async def test_relative_path_resolves_against_root(self, pipeline, workspace):
        (workspace.root / "rel.py").write_text("x = 1\n")
        result = await pipeline.index_file("rel.py")
        assert result.ok
        assert result.value.path == str(workspace.root / "rel.py")

    @pytest.mark.asyncio
    async def test_oversized_file_skipped(self, store, embeddings, workspace, online, vector_store):
        config = IndexingConfig(max_file_size=10)
        pipeline = _pipeline(store, embeddings, workspace, online, config)
        path = workspace.root / "big.py"
        path.write_text("x = 1\n" * 10)

        result = await pipeline.index_file(path)

        assert result.ok
        assert result.value is None
        assert store.get_context_item(stable_id(str(path))) is None
        assert vector_store.count() == 0

    @pytest.mark.asyncio
    async def test_binary_content_fails(self, pipeline, workspace):
        path = workspace.root / "weird.py"
        path.write_bytes(b"abc\x00def")
        result = await pipeline.index_file(path)
        assert not result.ok
        assert isinstance(result.error, IndexingFailure)

    @pytest.mark.asyncio
    async def test_missing_file_fails(self, pipeline, workspace):
        result = await pipeline.index_file(workspace.root / "gone.py")
        assert not result.ok

    @pytest.mark.asyncio
    async def test_offline_without_local_embedder_skips_vectors(
        self, store, embedding_config, workspace, fast_indexing, vector_store
    ):
        offline = StaticNetwork(False)
        embeddings = EmbeddingService([], offline, embedding_config)
        pipeline = _pipeline(store, embeddings, workspace, offline, fast_indexing)
        path = workspace.root / "a.py"
        path.write_text(FOO_BAR)

        result = await pipeline.index_file(path)

        assert result.ok
        assert len(store.entities_for_file(str(path))) == 2
        assert vector_store.count() == 0
        assert isinstance(result.error, NetworkDegraded)
        assert result.value.path == str(path)

    @pytest.mark.asyncio
    async def test_offline_with_local_embedder_writes_vectors(
        self, store, embedding_config, workspace, fast_indexing, vector_store
    ):
        offline = StaticNetwork(False)
        embeddings = EmbeddingService([FakeLocalEmbedder()], offline, embedding_config)
        pipeline = _pipeline(store, embeddings, workspace, offline, fast_indexing)
        path = workspace.root / "a.py"
        path.write_text(FOO_BAR)

        await pipeline.index_file(path)

        assert vector_store.count() == 3

    @pytest.mark.asyncio
    async def test_extractor_override(self, store, embeddings, workspace, online, fast_indexing):
        class NoSymbols:
            def extract(self, code):
                from context_weave.indexing.extractors import Extraction

                return Extraction()

        pipeline = _pipeline(store, embeddings, workspace, online, fast_indexing, extractors={"python": NoSymbols()})
        path = workspace.root / "a.py"
        path.write_text(FOO_BAR)
        await pipeline.index_file(path)
        assert store.entities_for_file(str(path)) == []


class TestQueue:
    @pytest.mark.asyncio
    async def test_excluded_paths_rejected(self, pipeline, workspace):
        assert pipeline.queue_file_for_indexing(workspace.root / "node_modules" / "x.js") is False
        assert pipeline.queue_file_for_indexing(workspace.root / "logo.png") is False
        assert pipeline.pending == []

    @pytest.mark.asyncio
    async def test_queue_deduplicates(self, pipeline, workspace):
        path = workspace.root / "a.py"
        path.write_text(FOO_BAR)
        pipeline.queue_file_for_indexing(path)
        pipeline.queue_file_for_indexing(path)
        assert pipeline.pending == [str(path)]
        pipeline.dispose()

    @pytest.mark.asyncio
    async def test_debounce_then_processes(self, pipeline, store, workspace):
        paths = []
        for i in range(5):
            p = workspace.root / f"m{i}.py"
            p.write_text(f"def f{i}():\n    pass\n")
            paths.append(p)
            pipeline.queue_file_for_indexing(p)

        # nothing runs before the debounce fires
        assert store.indexed_file_paths() == set()
        await asyncio.sleep(0.05)
        for _ in range(100):
            if not pipeline.pending and not pipeline.is_processing:
                break
            await asyncio.sleep(0.01)
        await pipeline.wait_idle()

        assert store.indexed_file_paths() == {str(p) for p in paths}
        assert pipeline.pending == []

    @pytest.mark.asyncio
    async def test_priority_moves_to_front(self, store, embeddings, workspace, online):
        config = IndexingConfig(batch_delay_s=10.0, batch_size=1, next_batch_delay_s=10.0)
        pipeline = _pipeline(store, embeddings, workspace, online, config)
        first = workspace.root / "first.py"
        urgent = workspace.root / "urgent.py"
        first.write_text("x = 1\n")
        urgent.write_text("y = 2\n")

        pipeline.queue_file_for_indexing(first)
        pipeline.queue_file_for_indexing(urgent, priority=True)
        assert pipeline.pending[0] == str(urgent)
        await pipeline.wait_idle()

        assert store.indexed_file_paths() == {str(urgent)}
        assert pipeline.pending == [str(first)]
        pipeline.dispose()

    @pytest.mark.asyncio
    async def test_drain_processes_everything(self, store, embeddings, workspace, online):
        config = IndexingConfig(batch_delay_s=10.0, batch_size=2, next_batch_delay_s=10.0)
        pipeline = _pipeline(store, embeddings, workspace, online, config)
        for i in range(5):
            p = workspace.root / f"d{i}.py"
            p.write_text("pass\n")
            pipeline.queue_file_for_indexing(p)

        await pipeline.drain()

        assert len(store.indexed_file_paths()) == 5
        pipeline.dispose()

    @pytest.mark.asyncio
    async def test_dispose_stops_queueing(self, pipeline, workspace):
        pipeline.dispose()
        assert pipeline.queue_file_for_indexing(workspace.root / "a.py") is False

    @pytest.mark.asyncio
    async def test_remove_file(self, pipeline, store, vector_store, workspace):
        path = workspace.root / "a.py"
        path.write_text(FOO_BAR)
        await pipeline.index_file(path)

        assert pipeline.remove_file(path)
        assert str(path) not in pipeline.indexed_files
        assert store.get_context_item(stable_id(str(path))) is None
        assert vector_store.count() == 0


class TestSweep:
    @pytest.mark.asyncio
    async def test_sweep_indexes_project_info(self, pipeline, store, vector_store, workspace):
        (workspace.root / "pyproject.toml").write_text('[project]\nname = "demo"\n')

        await pipeline.index_workspace_in_background()

        item = store.get_context_item("project-info")
        assert item.type == ItemType.PROJECT_INFO
        assert isinstance(item.metadata, ProjectMeta)
        assert item.vector_id == str(vector_id_for("project-info"))
        assert vector_store.count() == 1
        pipeline.dispose()

    @pytest.mark.asyncio
    async def test_project_info_offline_is_degraded(
        self, store, embedding_config, workspace, fast_indexing, vector_store
    ):
        offline = StaticNetwork(False)
        embeddings = EmbeddingService([], offline, embedding_config)
        pipeline = _pipeline(store, embeddings, workspace, offline, fast_indexing)

        result = await pipeline.index_project_info()

        assert result.ok
        assert isinstance(result.error, NetworkDegraded)
        assert store.get_context_item("project-info") is not None
        assert vector_store.count() == 0

    @pytest.mark.asyncio
    async def test_sweep_queues_unindexed_sources(self, pipeline, workspace):
        (workspace.root / "src").mkdir()
        (workspace.root / "src" / "a.py").write_text("pass\n")
        (workspace.root / "b.ts").write_text("export const b = 1;\n")
        (workspace.root / "notes.md").write_text("# notes\n")
        (workspace.root / "node_modules").mkdir()
        (workspace.root / "node_modules" / "dep.js").write_text("x\n")

        queued = await pipeline.index_workspace_in_background()

        assert queued == 2
        assert sorted(pipeline.pending) == sorted(
            [str(workspace.root / "src" / "a.py"), str(workspace.root / "b.ts")]
        )
        pipeline.dispose()

    @pytest.mark.asyncio
    async def test_sweep_skips_indexed(self, pipeline, workspace):
        path = workspace.root / "a.py"
        path.write_text("pass\n")
        await pipeline.index_file(path)
        assert await pipeline.index_workspace_in_background() == 0

    @pytest.mark.asyncio
    async def test_sweep_respects_file_cap(self, store, embeddings, workspace, online):
        config = IndexingConfig(max_sweep_files=3, batch_delay_s=10.0)
        pipeline = _pipeline(store, embeddings, workspace, online, config)
        for i in range(6):
            (workspace.root / f"f{i}.py").write_text("pass\n")
        assert await pipeline.index_workspace_in_background() == 3
        pipeline.dispose()

    @pytest.mark.asyncio
    async def test_start_loads_indexed_and_schedules_sweep(self, store, embeddings, workspace, online, fast_indexing):
        done = workspace.root / "done.py"
        done.write_text("pass\n")
        first = _pipeline(store, embeddings, workspace, online, fast_indexing)
        await first.index_file(done)

        todo = workspace.root / "todo.py"
        todo.write_text("pass\n")
        second = _pipeline(store, embeddings, workspace, online, fast_indexing)
        second.start()
        assert str(done) in second.indexed_files
        for _ in range(100):
            if str(todo) in second.indexed_files:
                break
            await asyncio.sleep(0.02)
        second.dispose()
        await second.wait_idle()
        assert str(todo) in second.indexed_files


class TestImportance:
    def test_recent_source_near_root(self, pipeline, workspace):
        path = str(workspace.root / "main.py")
        assert pipeline.calculate_importance(path, time.time()) == pytest.approx(1.0)

    def test_old_doc_deep_in_tree(self, pipeline, workspace):
        path = str(workspace.root / "a" / "b" / "c" / "notes.md")
        old = time.time() - 30 * 24 * 3600
        assert pipeline.calculate_importance(path, old) == pytest.approx(0.5)

    def test_week_old_source_under_src(self, pipeline, workspace):
        path = str(workspace.root / "pkg" / "src" / "deep" / "mod.py")
        mtime = time.time() - 3 * 24 * 3600
        # 0.5 base + 0.2 source + 0.1 week + 0.1 src/
        assert pipeline.calculate_importance(path, mtime) == pytest.approx(0.9)

    def test_no_mtime(self, pipeline, workspace):
        path = os.path.join(str(workspace.root), "x", "y", "z.md")
        assert pipeline.calculate_importance(path) == pytest.approx(0.5)
