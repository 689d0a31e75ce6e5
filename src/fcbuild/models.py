"""Core typed dataclasses for build definitions and pipeline state."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import StrEnum
from pathlib import Path
from typing import Literal

from fcbuild.errors import ConfigurationError

PipelineStatus = Literal["pending", "running", "completed", "failed"]

UNKNOWN_REVISION = "unknown"

_SPECIAL_CHARACTERS = re.compile(r"[/\\?%*:|\"<>]")


def sanitize_name(value: str) -> str:
    """Strip path-hostile characters and replace spaces with underscores."""
    return _SPECIAL_CHARACTERS.sub("", value).replace(" ", "_")


class Target(StrEnum):
    COPTER = "copter"
    HELI = "heli"
    PLANE = "plane"
    ROVER = "rover"
    SUB = "sub"
    ANTENNA_TRACKER = "antennatracker"
    AP_PERIPH = "AP_Periph"


class Stage(StrEnum):
    """Pipeline stages in execution order."""

    FETCH = "fetch"
    RELOCATE = "relocate"
    SOURCE_CONTROL = "source-control-ops"
    RESOLVE_REVISION = "resolve-revision"
    PATCH_LUA_BINDINGS = "patch-lua-bindings"
    ASSEMBLE_LUA_SCRIPTS = "assemble-lua-scripts"
    PATCH_HWDEF = "patch-hardware-def"
    PATCH_BOOTLOADER_HWDEF = "patch-bootloader-hardware-def"
    PATCH_PARAMETERS = "patch-parameters"
    PATCH_BOOTLOADER_BINARY = "patch-bootloader-binary"
    CONFIGURE_AND_BUILD = "configure-and-build"
    COPY_ARTIFACTS = "copy-artifacts"
    UPLOAD = "upload"
    OPEN_MONITOR = "open-companion-monitor"


@dataclass(frozen=True, slots=True)
class Binaries:
    elf: str
    bin: str
    apj: str


_BINARY_STEMS: dict[str, str] = {
    Target.COPTER: "arducopter",
    Target.HELI: "arducopter-heli",
    Target.PLANE: "arduplane",
    Target.ROVER: "ardurover",
    Target.SUB: "ardusub",
    Target.ANTENNA_TRACKER: "antennatracker",
    Target.AP_PERIPH: "AP_Periph",
}


def default_binaries(target: str) -> Binaries | None:
    stem = _BINARY_STEMS.get(target)
    if stem is None:
        return None
    return Binaries(elf=f"{stem}.elf", bin=f"{stem}.bin", apj=f"{stem}.apj")


@dataclass(frozen=True, slots=True)
class Board:
    board: str
    friendly_name: str
    hwdef_directory: str

    @classmethod
    def chibios(cls, board: str, *, friendly_name: str | None = None) -> Board:
        return cls(
            board=board,
            friendly_name=friendly_name or board,
            hwdef_directory=f"libraries/AP_HAL_ChibiOS/hwdef/{board}",
        )


@dataclass(frozen=True, slots=True)
class RemoteSource:
    repo: str
    branch: str


@dataclass(frozen=True, slots=True)
class LocalSource:
    location: str


@dataclass(frozen=True, slots=True)
class SourceSpec:
    remote: RemoteSource | None = None
    local: LocalSource | None = None
    reset: bool = False
    checkout: str | None = None
    update_submodules: bool = False
    use_build_folder: bool = True

    def __post_init__(self) -> None:
        if self.remote is not None and self.local is not None:
            raise ConfigurationError(
                "A build source cannot be both remote and local.",
                hint="Set either `remote` or `local` on the source spec.",
                context={"remote": self.remote.repo, "local": self.local.location},
            )

    def with_default(self, location: str) -> SourceSpec:
        if self.remote is not None or self.local is not None:
            return self
        return replace(self, local=LocalSource(location=location))


@dataclass(frozen=True, slots=True)
class FilePatch:
    """Delete, replace, then append lines to one configuration file."""

    clear: bool = False
    replace_file: str | None = None
    append: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ParameterPatch:
    clear: bool = False
    replace_file: str | None = None
    append: Mapping[str, str] = field(default_factory=dict)

    def with_parameter(self, name: str, value: str) -> ParameterPatch:
        return replace(self, append={**self.append, name: value})

    def as_file_patch(self) -> FilePatch:
        lines = tuple(f"{name} {value}" for name, value in self.append.items())
        return FilePatch(clear=self.clear, replace_file=self.replace_file, append=lines)


@dataclass(frozen=True, slots=True)
class BootloaderPatch:
    replace_file: str


@dataclass(frozen=True, slots=True)
class LuaInjections:
    build_date: bool = False
    revision: bool = False


@dataclass(frozen=True, slots=True)
class ProtocolMessages:
    """Generated protocol-message modules to splice into a script."""

    messages: tuple[str, ...]
    generator: str | None = None


@dataclass(frozen=True, slots=True)
class LuaScript:
    files: tuple[str, ...] = ()
    output_name: str | None = None
    helper_functions: tuple[str, ...] = ()
    inject: LuaInjections = field(default_factory=LuaInjections)
    protocol_messages: ProtocolMessages | None = None
    validate_syntax: bool = True
    copy_to: str | None = None

    def resolved_output_name(self, index: int) -> str:
        if self.output_name:
            return self.output_name
        if len(self.files) == 1:
            return Path(self.files[0]).name
        return f"output_{index}.lua"


@dataclass(frozen=True, slots=True)
class LuaSpec:
    include: bool = True
    enable_scripting: bool = True
    scripts: tuple[LuaScript, ...] = ()


@dataclass(frozen=True, slots=True)
class BuildOptions:
    static: bool = False
    debug: bool = False
    bootloader: bool = False
    upload: bool = False
    upload_dest: str | None = None
    dist_clean: bool = False
    extra_configure_args: tuple[str, ...] = ()
    extra_build_args: tuple[str, ...] = ()
    pre_build_commands: tuple[str, ...] = ()
    post_build_commands: tuple[str, ...] = ()
    log_output: bool = True


@dataclass(frozen=True, slots=True)
class UploadStep:
    binary: str | None = None
    destination: str | None = None
    extra_args: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class MonitorStep:
    master: str | None = None
    baud_rate: int | None = None
    extra_args: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class FinalSteps:
    copy_binaries: str | None = None
    upload: UploadStep | None = None
    monitor: MonitorStep | None = None


@dataclass(frozen=True, slots=True)
class BuildSpec:
    """Immutable description of one firmware build."""

    board: Board
    target: str
    name: str | None = None
    source: SourceSpec = field(default_factory=SourceSpec)
    parameters: ParameterPatch | None = None
    lua: LuaSpec | None = None
    lua_bindings: FilePatch | None = None
    hwdef: FilePatch | None = None
    bootloader_hwdef: FilePatch | None = None
    bootloader_binary: BootloaderPatch | None = None
    build_options: BuildOptions = field(default_factory=BuildOptions)
    final_steps: FinalSteps = field(default_factory=FinalSteps)

    def __post_init__(self) -> None:
        if not self.target:
            raise ConfigurationError("BuildSpec requires a build target.")
        if not self.board.board:
            raise ConfigurationError("BuildSpec requires a board identifier.")

    @property
    def identity(self) -> str:
        return sanitize_name(self.name or f"{self.board.friendly_name}-{self.target}")


@dataclass(frozen=True, slots=True)
class DerivedConfig:
    """Configuration values computed by earlier stages for later ones."""

    parameters: ParameterPatch | None = None


@dataclass(slots=True)
class PipelineState:
    repo_location: Path
    build_location: Path
    tool_directory: Path
    hwdef_directory: Path
    revision: str | None = None
    status: PipelineStatus = "pending"
    stage: Stage | None = None
    failure_reason: str | None = None
    relocated: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == "completed"


__all__ = [
    "Binaries",
    "Board",
    "BootloaderPatch",
    "BuildOptions",
    "BuildSpec",
    "DerivedConfig",
    "FilePatch",
    "FinalSteps",
    "LocalSource",
    "LuaInjections",
    "LuaScript",
    "LuaSpec",
    "MonitorStep",
    "ParameterPatch",
    "PipelineState",
    "PipelineStatus",
    "ProtocolMessages",
    "RemoteSource",
    "SourceSpec",
    "Stage",
    "Target",
    "UNKNOWN_REVISION",
    "UploadStep",
    "default_binaries",
    "sanitize_name",
]
