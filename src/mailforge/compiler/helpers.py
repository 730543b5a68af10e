"""Template helpers - project-local Python functions exposed to templates.

Every public callable defined in ``helpers/*.py`` is registered on the
Jinja environment both as a filter and as a global, under its own name::

    # helpers/money.py
    def price(cents):
        return f"${cents / 100:.2f}"

    {{ 1999 | price }}   or   {{ price(1999) }}
"""

from __future__ import annotations

import importlib.util
import logging
import sys
import types
from pathlib import Path, PurePosixPath
from typing import Any, Callable

from mailforge.exceptions import MailforgeError
from mailforge.source import SourceTree

log = logging.getLogger(__name__)


def _import_helper(name: str, filename: Path) -> types.ModuleType:
    spec = importlib.util.spec_from_file_location(f"mailforge_helpers.{name}", filename)
    if spec is None or spec.loader is None:
        raise MailforgeError(f"helper {filename} cannot be imported")
    module = importlib.util.module_from_spec(spec)
    sys.modules[spec.name] = module
    try:
        spec.loader.exec_module(module)
    except Exception as e:
        sys.modules.pop(spec.name, None)
        raise MailforgeError(f"helper {filename} failed to load: {e}") from e
    return module


def load_helpers(tree: SourceTree) -> dict[str, Callable[..., Any]]:
    """Load helper functions from the tree's helpers namespace.

    Later files (in path order) override earlier ones on name clashes.
    """
    helpers: dict[str, Callable[..., Any]] = {}
    base = tree.directory("helpers")

    for path in sorted(tree.helpers):
        stem = str(PurePosixPath(path).with_suffix("")).replace("/", ".")
        module = _import_helper(stem, base / path)

        for attr, value in vars(module).items():
            if attr.startswith("_") or not callable(value):
                continue
            # skip names imported into the helper module
            if getattr(value, "__module__", module.__name__) != module.__name__:
                continue
            helpers[attr] = value
            log.debug(f"Registered helper {attr} from {path}")

    return helpers
