"""On-board lua script assembly and validation."""

from .assembly import Fragment, LuaAssembler, build_date_helper, revision_helper
from .lint import LintOutputReducer, LintReport, lint_script

__all__ = [
    "Fragment",
    "LintOutputReducer",
    "LintReport",
    "LuaAssembler",
    "build_date_helper",
    "lint_script",
    "revision_helper",
]
