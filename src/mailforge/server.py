"""Preview server - serves the output tree with live reload.

HTML responses get a small script that listens on ``/__livereload`` (a
Server-Sent Events stream) and reloads the page whenever the watcher
finishes a rebuild.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from pathlib import Path
from typing import AsyncGenerator

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import FileResponse, HTMLResponse, StreamingResponse

from mailforge.utils import console

log = logging.getLogger(__name__)

RELOAD_PATH = "/__livereload"

RELOAD_SCRIPT = f"""<script>
(function () {{
  var source = new EventSource("{RELOAD_PATH}");
  source.addEventListener("reload", function () {{ window.location.reload(); }});
}})();
</script>"""


def sse_format(event: str, data: str) -> str:
    """Format data as Server-Sent Event."""
    return f"event: {event}\ndata: {data}\n\n"


class ReloadHub:
    """Broadcasts reload signals to every connected preview client."""

    def __init__(self) -> None:
        self.clients: set[asyncio.Queue[int]] = set()
        self.reloads = 0

    def reload(self) -> None:
        self.reloads += 1
        log.info(f"Reloading {len(self.clients)} client(s)")
        for queue in list(self.clients):
            queue.put_nowait(self.reloads)

    async def events(self) -> AsyncGenerator[str, None]:
        queue: asyncio.Queue[int] = asyncio.Queue()
        self.clients.add(queue)
        try:
            yield sse_format("hello", str(self.reloads))
            while True:
                count = await queue.get()
                yield sse_format("reload", str(count))
        finally:
            self.clients.discard(queue)


def inject_reload_script(markup: str) -> str:
    index = markup.lower().rfind("</body>")
    if index == -1:
        return markup + RELOAD_SCRIPT
    return markup[:index] + RELOAD_SCRIPT + markup[index:]


def create_app(output_dir: Path, hub: ReloadHub) -> FastAPI:
    app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)
    root = output_dir.resolve()

    @app.get(RELOAD_PATH)
    async def livereload():
        return StreamingResponse(hub.events(), media_type="text/event-stream")

    @app.get("/{path:path}")
    async def serve_file(path: str):
        target = (root / path).resolve()
        if not target.is_relative_to(root):
            raise HTTPException(status_code=404)
        if target.is_dir():
            target = target / "index.html"
        if not target.is_file():
            raise HTTPException(status_code=404, detail=f"{path} not found")

        if target.suffix == ".html":
            markup = await asyncio.to_thread(target.read_text, encoding="utf-8")
            return HTMLResponse(inject_reload_script(markup))
        media_type = mimetypes.guess_type(target.name)[0]
        return FileResponse(target, media_type=media_type)

    return app


class PreviewServer:
    """Runs the preview app with uvicorn as a background task."""

    def __init__(self, output_dir: Path, hub: ReloadHub, host: str = "localhost", port: int = 3000):
        self.hub = hub
        self.host = host
        self.port = port
        self.app = create_app(output_dir, hub)
        self.server = uvicorn.Server(
            uvicorn.Config(self.app, host=host, port=port, log_level="warning")
        )
        self.task: asyncio.Task | None = None

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}/"

    async def start(self) -> None:
        if self.task is not None:
            return
        self.task = asyncio.create_task(self.server.serve())
        console.print(f"[green]Preview at[/green] {self.url}")

    async def stop(self) -> None:
        if self.task is None:
            return
        self.server.should_exit = True
        await self.task
        self.task = None
