"""Page compilation - templates resolved into flat, normalized markup."""

from mailforge.compiler.normalizer import Normalizer, normalize
from mailforge.compiler.templates import (
    BuildCache,
    CompiledDocument,
    CompileReport,
    PageCompiler,
)

__all__ = [
    "BuildCache",
    "CompiledDocument",
    "CompileReport",
    "Normalizer",
    "PageCompiler",
    "normalize",
]
