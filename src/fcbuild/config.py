"""Builder configuration and per-run build arguments."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Literal, TypeVar

from fcbuild.models import (
    BuildSpec,
    FilePatch,
    LuaSpec,
    MonitorStep,
    ParameterPatch,
    UploadStep,
)

RevisionPolicy = Literal["auto", "required", "optional"]

T = TypeVar("T")

DEFAULT_PROTOCOL_GENERATOR = (
    "python3 modules/mavlink/pymavlink/tools/mavgen.py --lang=Lua --wire-protocol=2.0 "
    "--output={output} modules/mavlink/message_definitions/v1.0/all.xml"
)


@dataclass(frozen=True, slots=True)
class BuilderConfig:
    base_dir: Path = field(default_factory=Path.cwd)
    shell: str = "bash"
    settle_delay: float = 5.0
    build_tool: str = "./waf"
    lint_command: str = "luacheck"
    lint_config: str = "libraries/AP_Scripting/tests/luacheck.lua"
    uploader: str = "Tools/scripts/uploader.py"
    uploader_python: str = "python3"
    monitor: str = "mavproxy.py"
    protocol_generator: str = DEFAULT_PROTOCOL_GENERATOR
    default_local: str = "./ardupilot"
    revision_policy: RevisionPolicy = "auto"

    @property
    def repo_dir(self) -> Path:
        return self.base_dir / "repos"

    @property
    def build_dir(self) -> Path:
        return self.base_dir / "build"

    def absolute(self, location: str | Path) -> Path:
        """Anchor ``./``-relative locations at the base directory."""
        text = str(location)
        if text.startswith("./"):
            return self.base_dir / text[2:]
        return Path(text)


@dataclass(frozen=True, slots=True)
class BuildArguments:
    """Run-time overrides layered on top of every build spec."""

    build_bootloader: bool | None = None
    reset_repo: bool | None = None
    parameters: Mapping[str, str] = field(default_factory=dict)
    enable_lua: bool | None = None
    hwdef: tuple[str, ...] = ()
    upload_to_board: UploadStep | bool | None = None
    open_monitor: MonitorStep | bool | None = None


def apply_arguments(spec: BuildSpec, args: BuildArguments | None) -> BuildSpec:
    """Return a new spec with *args* applied; *spec* is left untouched."""
    if args is None:
        return spec
    updated = spec

    if args.build_bootloader is not None:
        updated = replace(
            updated,
            build_options=replace(updated.build_options, bootloader=args.build_bootloader),
        )
    if args.reset_repo is not None:
        updated = replace(updated, source=replace(updated.source, reset=args.reset_repo))

    if args.parameters:
        patch = updated.parameters or ParameterPatch()
        for name, value in args.parameters.items():
            patch = patch.with_parameter(name, value)
        updated = replace(updated, parameters=patch)

    if args.enable_lua is not None:
        lua = updated.lua or LuaSpec()
        updated = replace(updated, lua=replace(lua, enable_scripting=args.enable_lua))

    if args.hwdef:
        hwdef = updated.hwdef or FilePatch()
        updated = replace(updated, hwdef=replace(hwdef, append=(*hwdef.append, *args.hwdef)))

    final_steps = updated.final_steps
    if args.upload_to_board is not None:
        upload = _step_override(args.upload_to_board, UploadStep)
        final_steps = replace(final_steps, upload=upload)
    if args.open_monitor is not None:
        monitor = _step_override(args.open_monitor, MonitorStep)
        final_steps = replace(final_steps, monitor=monitor)
    if final_steps is not updated.final_steps:
        updated = replace(updated, final_steps=final_steps)

    return updated


def _step_override(value: T | bool, factory: Callable[[], T]) -> T | None:
    if value is True:
        return factory()
    if value is False:
        return None
    return value


__all__ = [
    "BuildArguments",
    "BuilderConfig",
    "DEFAULT_PROTOCOL_GENERATOR",
    "RevisionPolicy",
    "apply_arguments",
]
