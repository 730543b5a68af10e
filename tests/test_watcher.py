"""Tests for the file watcher and incremental rebuilds."""

import asyncio

import pytest

from mailforge.orchestrator import Orchestrator
from mailforge.watcher import (
    ChangeClass,
    ChangeEvent,
    ChangeStream,
    Watcher,
    classify,
    plan,
    subscribe,
)


class TestClassify:
    def test_source_directories(self, tmp_path):
        src = tmp_path / "projects" / "default"
        assert classify(src / "pages" / "index.html", src) == ChangeClass.PAGE
        assert classify(src / "layouts" / "default.html", src) == ChangeClass.TEMPLATE
        assert classify(src / "partials" / "nav" / "menu.html", src) == ChangeClass.TEMPLATE
        assert classify(src / "helpers" / "money.py", src) == ChangeClass.TEMPLATE
        assert classify(src / "assets" / "scss" / "_grid.scss", src) == ChangeClass.STYLE
        assert classify(src / "assets" / "img" / "logo.png", src) == ChangeClass.IMAGE

    def test_ignored_paths(self, tmp_path):
        src = tmp_path / "projects" / "default"
        assert classify(src / "pages" / "archive" / "old.html", src) is None
        assert classify(src / "assets" / "img" / "archive" / "old.png", src) is None
        assert classify(src / "README.md", src) is None
        assert classify(src / "pages", src) is None
        assert classify(tmp_path / "elsewhere.html", src) is None

    def test_library_dirs_are_styles(self, tmp_path):
        src = tmp_path / "projects" / "default"
        library = tmp_path / "scss"
        assert classify(library / "_buttons.scss", src, [library]) == ChangeClass.STYLE


class TestPlan:
    def test_union_of_plans(self, tmp_path):
        tasks, invalidate = plan(
            [
                ChangeEvent(tmp_path / "a", ChangeClass.PAGE),
                ChangeEvent(tmp_path / "b", ChangeClass.IMAGE),
            ]
        )
        assert tasks == {"compile-pages", "inline", "process-images"}
        assert invalidate is False

    def test_template_changes_invalidate(self, tmp_path):
        tasks, invalidate = plan([ChangeEvent(tmp_path / "a", ChangeClass.TEMPLATE)])
        assert tasks == {"compile-pages", "inline"}
        assert invalidate is True

    def test_style_changes(self, tmp_path):
        tasks, _ = plan([ChangeEvent(tmp_path / "a", ChangeClass.STYLE)])
        assert tasks == {"compile-styles", "compile-pages", "inline"}


class TestChangeStream:
    def test_bursts_are_coalesced(self, tmp_path):
        async def scenario():
            stream = ChangeStream()
            stream.put(tmp_path / "a")
            stream.put(tmp_path / "b")
            batches = stream.batches(0.05)
            first = await anext(batches)
            stream.put(tmp_path / "c", "created")
            second = await anext(batches)
            return first, second

        first, second = asyncio.run(scenario())
        assert first == [(tmp_path / "a", "modified"), (tmp_path / "b", "modified")]
        assert second == [(tmp_path / "c", "created")]

    def test_subscribe_reports_file_events(self, tmp_path):
        async def scenario():
            stream = subscribe([tmp_path])
            try:
                (tmp_path / "page.html").write_text("x")
                return await asyncio.wait_for(stream.queue.get(), 5)
            finally:
                stream.close()

        path, kind = asyncio.run(scenario())
        assert path.name == "page.html"
        assert kind in ("created", "modified")


class TestWatcher:
    def test_partial_edit_rebuilds_every_page_once(self, settings, project):
        async def scenario():
            stream = ChangeStream()
            orchestrator = Orchestrator(settings, change_stream=stream)
            await orchestrator.graph.run(["inline"])

            runs = []

            async def rebuild(tasks):
                runs.append(set(tasks))
                return await orchestrator.rebuild(tasks)

            watcher = Watcher(
                project,
                [],
                run=rebuild,
                invalidate=orchestrator.context.cache.invalidate,
                reload=orchestrator.context.hub.reload,
                window=0.05,
                stream=stream,
            )

            partial = project / "partials" / "footer.html"
            partial.write_text("<span>footer v2</span>")
            # saved twice within the coalescing window
            stream.put(partial)
            stream.put(partial)
            batch = await anext(stream.batches(0.05))
            await watcher.handle(batch)
            return orchestrator, runs, watcher

        orchestrator, runs, watcher = asyncio.run(scenario())

        assert runs == [{"compile-pages", "inline"}]
        assert watcher.rebuilds == 1
        assert orchestrator.context.hub.reloads == 1
        assert orchestrator.context.cache.generation == 1
        assert orchestrator.context.report.processed == ["index.html", "news.html"]
        news = (settings.output_dir / "news.html").read_text()
        assert "footer v2" in news

    def test_irrelevant_batch_does_nothing(self, project):
        runs, reloads = [], []

        async def run(tasks):
            runs.append(tasks)

        watcher = Watcher(project, [], run, lambda: None, lambda: reloads.append(1))
        assert asyncio.run(watcher.handle([(project / "notes.txt", "modified")])) is False
        assert runs == [] and reloads == []

    def test_errors_do_not_end_the_loop(self, project):
        runs, reloads = [], []

        async def run(tasks):
            runs.append(tasks)
            if len(runs) == 1:
                raise RuntimeError("stylesheet broke")

        async def scenario():
            stream = ChangeStream()
            watcher = Watcher(
                project, [], run, lambda: None, lambda: reloads.append(1), window=0.01, stream=stream
            )
            task = asyncio.create_task(watcher.run_forever())
            stream.put(project / "assets" / "scss" / "app.scss")
            await asyncio.sleep(0.2)
            stream.put(project / "pages" / "index.html")
            await asyncio.sleep(0.2)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())
        assert len(runs) == 2
        assert reloads == [1]
