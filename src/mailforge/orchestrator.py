"""Build orchestrator - the task graph for one project.

Tasks and their upstream dependencies:

    clean
    compile-pages     clean
    compile-styles    compile-pages
    process-images    clean
    inline            compile-pages, compile-styles, process-images
    server            inline
    watch             server
    zip               inline
    creds             inline
    upload-images     creds
    litmus            upload-images
    mail              upload-images

Pipelines name a single target task: build, serve, package, litmus, mail.
State shared between tasks (compiled documents, the stylesheet, loaded
credentials) lives on a BuildContext rather than being re-read from disk.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from mailforge.assets import ImageCompressor, atomic_write, package_all, process_images
from mailforge.compiler import BuildCache, CompileReport, Normalizer, PageCompiler
from mailforge.config import BuildSettings, Credentials, load_credentials
from mailforge.exceptions import (
    CleanError,
    ConfigurationError,
    MailforgeError,
    TaskFailedError,
)
from mailforge.graph import TaskGraph, TaskResult
from mailforge.inliner import Inliner
from mailforge.publish import (
    LitmusClient,
    MailSender,
    ObjectStore,
    RenderTestService,
    S3ObjectStore,
    SmtpMailSender,
    rewrite_image_urls,
    upload_images,
)
from mailforge.server import PreviewServer, ReloadHub
from mailforge.source import SourceTree
from mailforge.styles import CompiledStylesheet, StylePreprocessor, eliminate_dead_rules
from mailforge.watcher import ChangeStream, Watcher

log = logging.getLogger(__name__)

PIPELINES: dict[str, str] = {
    "build": "inline",
    "serve": "watch",
    "package": "zip",
    "litmus": "litmus",
    "mail": "mail",
}


@dataclass
class BuildContext:
    """Mutable state threaded through the tasks of one process."""

    settings: BuildSettings
    cache: BuildCache = field(default_factory=BuildCache)
    hub: ReloadHub = field(default_factory=ReloadHub)
    tree: SourceTree | None = None
    report: CompileReport | None = None
    stylesheet: CompiledStylesheet | None = None
    credentials: Credentials | None = None
    server: PreviewServer | None = None
    published: list[str] = field(default_factory=list)
    targets: set[str] = field(default_factory=set)


class Orchestrator:
    """Registers the build tasks and runs pipelines.

    Collaborators default to implementations built from the credentials
    file; tests inject their own.
    """

    def __init__(
        self,
        settings: BuildSettings,
        compressor: ImageCompressor | None = None,
        object_store: ObjectStore | None = None,
        render_test: RenderTestService | None = None,
        mailer: MailSender | None = None,
        change_stream: ChangeStream | None = None,
    ):
        self.settings = settings
        self.context = BuildContext(settings=settings)
        self.compressor = compressor or ImageCompressor()
        self.object_store = object_store
        self.render_test = render_test
        self.mailer = mailer
        self.change_stream = change_stream
        self.normalizer = Normalizer()

        self.graph = TaskGraph()
        self._register()
        self.graph.validate()

    def _register(self) -> None:
        add = self.graph.add
        add("clean", self.clean, description="Remove the output tree")
        add("compile-pages", self.compile_pages, ["clean"], "Compile pages into flat markup")
        add("compile-styles", self.compile_styles, ["compile-pages"], "Compile the stylesheet")
        add("process-images", self.process_images, ["clean"], "Compress images")
        add(
            "inline",
            self.inline,
            ["compile-pages", "compile-styles", "process-images"],
            "Inline CSS (production only)",
        )
        add("server", self.start_server, ["inline"], "Start the preview server")
        add("watch", self.watch, ["server"], "Rebuild on change")
        add("zip", self.zip, ["inline"], "Package documents")
        add("creds", self.load_creds, ["inline"], "Load credentials")
        add("upload-images", self.upload_images, ["creds"], "Upload images")
        add("litmus", self.litmus, ["upload-images"], "Submit render tests")
        add("mail", self.mail, ["upload-images"], "Send sample e-mails")

    # -- running --------------------------------------------------------------

    async def run(self, pipeline: str) -> list[TaskResult]:
        """Run a named pipeline to completion."""
        if pipeline not in PIPELINES:
            raise MailforgeError(f"Unknown pipeline '{pipeline}'")
        try:
            self.context.targets = self.graph.closure([PIPELINES[pipeline]])
            return await self.graph.run([PIPELINES[pipeline]])
        finally:
            if self.context.server is not None:
                await self.context.server.stop()
                self.context.server = None

    async def rebuild(self, tasks: set[str]) -> list[TaskResult]:
        return await self.graph.run_only(tasks)

    @property
    def page_errors(self) -> list[MailforgeError]:
        return list(self.context.report.errors) if self.context.report else []

    # -- build tasks ----------------------------------------------------------

    async def clean(self) -> None:
        output = self.settings.output_dir

        def remove() -> None:
            if output.exists():
                shutil.rmtree(output)

        try:
            await asyncio.to_thread(remove)
        except OSError as e:
            raise CleanError(str(output), e.strerror or str(e)) from e

    async def compile_pages(self) -> None:
        source_dir = self.settings.source_dir
        if not source_dir.is_dir():
            raise MailforgeError(f"Project directory not found: {source_dir}")

        def compile_all() -> CompileReport:
            tree = SourceTree.scan(source_dir)
            self.context.tree = tree
            compiler = PageCompiler(
                tree,
                self.context.cache,
                default_layout=self.settings.default_layout,
                transforms=[self.normalizer],
            )
            report = compiler.compile_all()
            for document in report.documents:
                atomic_write(self.settings.output_dir / document.path, document.markup)
            self._remove_stale_pages(previous, report)
            return report

        previous = self.context.report
        report = await asyncio.to_thread(compile_all)
        self.context.report = report
        if report.errors:
            log.warning(f"{len(report.errors)} of {len(report.processed)} page(s) failed to compile")

    def _remove_stale_pages(self, previous: CompileReport | None, report: CompileReport) -> None:
        """Delete outputs of pages that were removed or no longer compile."""
        if previous is None:
            return
        current = {d.path for d in report.documents}
        for path in sorted({d.path for d in previous.documents} - current):
            target = self.settings.output_dir / path
            if target.is_file():
                target.unlink()
                log.info(f"Removed stale output {path}")

    async def compile_styles(self) -> None:
        def compile_stylesheet() -> CompiledStylesheet:
            preprocessor = StylePreprocessor(self.settings.style_dir, self.settings.library_dirs)
            stylesheet = preprocessor.compile(self.settings.stylesheet)
            if self.settings.production:
                text = eliminate_dead_rules(stylesheet, self._markup()).css
            else:
                text = stylesheet.pretty
            atomic_write(self.settings.output_dir / self.settings.stylesheet_href, text)
            return stylesheet

        self.context.stylesheet = await asyncio.to_thread(compile_stylesheet)

    async def process_images(self) -> None:
        def process() -> None:
            tree = SourceTree.scan(self.settings.source_dir)
            process_images(tree, self.settings.output_dir, self.compressor)

        await asyncio.to_thread(process)

    async def inline(self) -> None:
        if not self.settings.production:
            log.debug("Development build: documents keep the stylesheet link")
            return
        if self.context.stylesheet is None or self.context.report is None:
            raise TaskFailedError("inline", "pages and styles must be compiled first")

        def inline_all() -> None:
            documents = self.context.report.documents
            # context.stylesheet is unpruned; documents may be newer than the css file
            stylesheet = eliminate_dead_rules(self.context.stylesheet, self._markup())
            inliner = Inliner(stylesheet, self.settings.stylesheet_href)
            for document in documents:
                atomic_write(
                    self.settings.output_dir / document.path, inliner.inline(document.markup)
                )

        await asyncio.to_thread(inline_all)

    def _markup(self) -> list[str]:
        report = self.context.report
        return [d.markup for d in report.documents] if report else []

    # -- serve tasks ----------------------------------------------------------

    async def start_server(self) -> None:
        server = PreviewServer(
            self.settings.output_dir, self.context.hub, self.settings.host, self.settings.port
        )
        await server.start()
        self.context.server = server

    async def watch(self) -> None:
        watcher = Watcher(
            self.settings.source_dir,
            [p for p in self.settings.library_dirs if p.is_dir()],
            run=self.rebuild,
            invalidate=self.context.cache.invalidate,
            reload=self.context.hub.reload,
            window=self.settings.debounce,
            stream=self.change_stream,
        )
        await watcher.run_forever()

    # -- package and publish tasks ----------------------------------------------

    async def zip(self) -> None:
        archives = await asyncio.to_thread(package_all, self.settings.output_dir)
        log.info(f"Packaged {len(archives)} document(s)")

    async def load_creds(self) -> None:
        credentials = await asyncio.to_thread(load_credentials, self.settings.credentials_path)
        self._check_credentials(credentials, self.context.targets)
        self.context.credentials = credentials

    def _check_credentials(self, credentials: Credentials, tasks: set[str]) -> None:
        """Fail before any upload when a section the tasks need is missing."""
        path = str(self.settings.credentials_path)
        if "litmus" in tasks and self.render_test is None and credentials.litmus is None:
            raise ConfigurationError(path, "missing 'litmus' section")
        if "mail" in tasks:
            if credentials.mail is None:
                raise ConfigurationError(path, "missing 'mail' section")
            if self.mailer is None and credentials.mail.smtp is None:
                raise ConfigurationError(path, "missing 'mail.smtp' section")
            if not self.settings.recipient and not credentials.mail.to:
                raise ConfigurationError(path, "no mail recipients configured")

    def _credentials(self) -> Credentials:
        if self.context.credentials is None:
            raise TaskFailedError("creds", "credentials were not loaded")
        return self.context.credentials

    async def upload_images(self) -> None:
        credentials = self._credentials()
        store = self.object_store
        if store is None:
            if credentials.aws is None:
                log.warning("No aws section in credentials; images keep local paths")
                return
            store = S3ObjectStore(credentials.aws)
        urls = await upload_images(store, self.settings.output_dir / "assets" / "img")
        log.info(f"Uploaded {len(urls)} image(s)")

    def _documents(self) -> list[tuple[str, str]]:
        """(name, markup) of every output document, URLs rewritten."""
        base = self._credentials().image_base_url
        output = self.settings.output_dir
        documents = []
        for path in sorted(output.rglob("*.html")):
            markup = path.read_text(encoding="utf-8")
            documents.append((path.relative_to(output).as_posix(), rewrite_image_urls(markup, base)))
        return documents

    async def litmus(self) -> None:
        credentials = self._credentials()
        self._check_credentials(credentials, {"litmus"})
        service = self.render_test or LitmusClient(credentials.litmus)

        for name, markup in await asyncio.to_thread(self._documents):
            self.context.published.append(await service.submit(Path(name).stem, markup))

    async def mail(self) -> None:
        credentials = self._credentials()
        self._check_credentials(credentials, {"mail"})
        config = credentials.mail
        recipients = [self.settings.recipient] if self.settings.recipient else list(config.to)
        sender = self.mailer or SmtpMailSender(config, str(self.settings.credentials_path))

        for name, markup in await asyncio.to_thread(self._documents):
            await sender.send(config.subject, markup, recipients)
            self.context.published.append(name)
