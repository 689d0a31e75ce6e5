"""Public package entrypoint for the flight-controller firmware builder."""

from .config import BuildArguments, BuilderConfig, apply_arguments
from .errors import (
    ConfigurationError,
    ErrorCode,
    FcBuildError,
    LintError,
    ProcessChannelError,
    StageError,
)
from .models import (
    Board,
    BootloaderPatch,
    BuildOptions,
    BuildSpec,
    FilePatch,
    FinalSteps,
    LocalSource,
    LuaInjections,
    LuaScript,
    LuaSpec,
    MonitorStep,
    ParameterPatch,
    PipelineState,
    ProtocolMessages,
    RemoteSource,
    SourceSpec,
    Stage,
    Target,
    UploadStep,
)
from .observability import BuildEvent, ConsoleReporter, StructuredLogger
from .orchestrator import MultiPipelineOrchestrator, run_batch
from .pipeline import BuildPipeline
from .process import CommandResult, ProcessSupervisor
from .report import BatchReport, PipelineOutcome

__all__ = [
    "BatchReport",
    "Board",
    "BootloaderPatch",
    "BuildArguments",
    "BuildEvent",
    "BuildOptions",
    "BuildPipeline",
    "BuildSpec",
    "BuilderConfig",
    "CommandResult",
    "ConfigurationError",
    "ConsoleReporter",
    "ErrorCode",
    "FcBuildError",
    "FilePatch",
    "FinalSteps",
    "LintError",
    "LocalSource",
    "LuaInjections",
    "LuaScript",
    "LuaSpec",
    "MonitorStep",
    "MultiPipelineOrchestrator",
    "ParameterPatch",
    "PipelineOutcome",
    "PipelineState",
    "ProcessChannelError",
    "ProcessSupervisor",
    "ProtocolMessages",
    "RemoteSource",
    "SourceSpec",
    "Stage",
    "StageError",
    "StructuredLogger",
    "Target",
    "UploadStep",
    "apply_arguments",
    "run_batch",
]
