"""Output assets - atomic writes, image processing and document archives."""

from __future__ import annotations

import logging
import os
import tempfile
import zipfile
from pathlib import Path, PurePosixPath
from urllib.parse import unquote, urlparse

from bs4 import BeautifulSoup

from mailforge.exceptions import ExternalServiceError
from mailforge.source import SourceTree, is_archived

log = logging.getLogger(__name__)

IMAGE_PREFIX = "assets/img"


def atomic_write(path: Path, data: bytes | str) -> None:
    """Write a file via a temp file in the same directory and os.replace."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class ImageCompressor:
    """Image compression contract.

    The default implementation copies bytes unchanged; subclasses plug in
    a real optimizer.
    """

    name = "copy"

    def compress(self, data: bytes, name: str) -> bytes:
        return data


def remove_stale(directory: Path, keep: list[Path]) -> None:
    """Delete files under directory that are not in keep."""
    if not directory.is_dir():
        return
    wanted = set(keep)
    for path in sorted(directory.rglob("*"), reverse=True):
        if path.is_file() and path not in wanted:
            path.unlink()
            log.info(f"Removed stale output {path.relative_to(directory).as_posix()}")
        elif path.is_dir() and not any(path.iterdir()):
            path.rmdir()


def process_images(
    tree: SourceTree, output_dir: Path, compressor: ImageCompressor | None = None
) -> list[Path]:
    """Compress every non-archived image into output_dir/assets/img.

    Files already in the image output without a source are removed.

    Raises:
        ExternalServiceError: If the compressor fails on a file.
    """
    compressor = compressor or ImageCompressor()
    written: list[Path] = []
    for logical, entry in sorted(tree.images.items()):
        if is_archived(logical):
            continue
        try:
            data = compressor.compress(entry.content, logical)
        except Exception as e:
            raise ExternalServiceError(
                f"image compressor ({compressor.name})", f"{logical}: {e}"
            ) from e
        target = output_dir / IMAGE_PREFIX / logical
        atomic_write(target, data)
        written.append(target)
    remove_stale(output_dir / IMAGE_PREFIX, written)
    log.debug(f"Processed {len(written)} image(s)")
    return written


def referenced_images(markup: str) -> list[str]:
    """Local image paths referenced by <img src>, relative to the output root."""
    soup = BeautifulSoup(markup, "html.parser")
    found: list[str] = []
    for img in soup.find_all("img"):
        src = str(img.get("src") or "").strip()
        parsed = urlparse(src)
        if not src or parsed.scheme or parsed.netloc:
            continue
        path = PurePosixPath(unquote(parsed.path).lstrip("/"))
        parts = [p for p in path.parts if p not in (".", "..")]
        if not parts:
            continue
        logical = str(PurePosixPath(*parts))
        if logical not in found:
            found.append(logical)
    return found


def package_document(document: Path, output_dir: Path) -> Path:
    """Bundle one document and the images it references into <doc>.zip.

    The archive holds ``<doc>/<doc>.html`` and each referenced image under
    ``<doc>/<relative path>``. Missing images are logged and skipped.
    """
    name = document.stem
    markup = document.read_text(encoding="utf-8")
    target = output_dir / f"{name}.zip"

    fd, tmp = tempfile.mkstemp(dir=output_dir, prefix=f".{name}.", suffix=".zip.tmp")
    os.close(fd)
    try:
        with zipfile.ZipFile(tmp, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            zf.writestr(f"{name}/{document.name}", markup)
            for logical in referenced_images(markup):
                image = output_dir / logical
                if not image.is_file():
                    log.warning(f"{document.name}: referenced image {logical} not found")
                    continue
                zf.write(image, f"{name}/{logical}")
        os.replace(tmp, target)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise

    log.info(f"Packaged {target.name}")
    return target


def package_all(output_dir: Path) -> list[Path]:
    """One archive per top-level .html document in output_dir."""
    documents = sorted(p for p in output_dir.glob("*.html") if p.is_file())
    return [package_document(doc, output_dir) for doc in documents]
