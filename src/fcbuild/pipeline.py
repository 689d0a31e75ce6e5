"""Staged firmware build pipeline for one board/target.

Stages run strictly in :class:`~fcbuild.models.Stage` order. Each stage can be
skipped by its build spec, and the first stage error aborts the rest of the
pipeline. Values that one stage computes for a later one travel in a
:class:`~fcbuild.models.DerivedConfig` returned from each stage; the input
:class:`~fcbuild.models.BuildSpec` is never modified.
"""

from __future__ import annotations

import asyncio
import contextlib
import shlex
import shutil
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import replace
from datetime import date
from pathlib import Path

from fcbuild.config import BuildArguments, BuilderConfig, apply_arguments
from fcbuild.errors import ConfigurationError, FcBuildError, StageError
from fcbuild.lua.assembly import LuaAssembler
from fcbuild.models import (
    UNKNOWN_REVISION,
    BuildSpec,
    DerivedConfig,
    FilePatch,
    ParameterPatch,
    PipelineState,
    Stage,
    default_binaries,
    sanitize_name,
)
from fcbuild.observability import EventLevel, StructuredLogger
from fcbuild.patching import apply_file_patch
from fcbuild.process import CommandResult, ProcessSupervisor
from fcbuild.templating import resolve_path

StageRunner = Callable[[DerivedConfig], Awaitable[DerivedConfig]]

LUA_BINDINGS_FILE = "libraries/AP_Scripting/generator/description/bindings.desc"
HWDEF_FILE = "hwdef.dat"
BOOTLOADER_HWDEF_FILE = "hwdef-bl.dat"
PARAMETER_DEFAULTS_FILE = "defaults.parm"
SCRIPTING_ENABLE_PARAMETER = "SCR_ENABLE"

STAGES: tuple[Stage, ...] = tuple(Stage)


class BuildPipeline:
    """Runs every stage for one :class:`BuildSpec` and records the outcome."""

    def __init__(
        self,
        spec: BuildSpec,
        *,
        config: BuilderConfig | None = None,
        arguments: BuildArguments | None = None,
        logger: StructuredLogger | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.config = config or BuilderConfig()
        spec = apply_arguments(spec, arguments)
        self.spec = replace(spec, source=spec.source.with_default(self.config.default_local))
        self.logger = logger or StructuredLogger()
        self._today = today
        self.state = self._initial_state()

    @property
    def name(self) -> str:
        return self.spec.identity

    @property
    def failure_reason(self) -> str | None:
        return self.state.failure_reason

    @property
    def succeeded(self) -> bool:
        return self.state.succeeded

    @property
    def repo_name(self) -> str:
        remote = self.spec.source.remote
        if remote is None:
            assert self.spec.source.local is not None
            return f"local_{sanitize_name(self.spec.source.local.location)}"
        return f"{sanitize_name(remote.repo)}@{sanitize_name(remote.branch)}"

    @property
    def clone_command(self) -> str | None:
        remote = self.spec.source.remote
        if remote is None:
            return None
        return (
            f"git clone --recursive -b {shlex.quote(remote.branch)} "
            f"{shlex.quote(remote.repo)} {shlex.quote(str(self.state.repo_location))}"
        )

    @property
    def binary_directory(self) -> Path:
        folder = "bootloader" if self.spec.build_options.bootloader else "bin"
        return self.state.build_location / "build" / self.spec.board.board / folder

    def resolve(self, template: str) -> Path:
        return resolve_path(template, self.state, board=self.spec.board.board, config=self.config)

    def configure_arguments(self) -> list[str]:
        options = self.spec.build_options
        args = list(options.extra_configure_args)
        args.extend(["--board", self.spec.board.board, "--target", self.spec.target])
        if options.static:
            args.append("--static")
        if options.bootloader:
            args.append("--bootloader")
        if options.upload_dest:
            args.extend(["--rsync-dest", options.upload_dest])
        if options.debug:
            args.append("--debug")
        return args

    def build_arguments(self) -> list[str]:
        options = self.spec.build_options
        args = list(options.extra_build_args)
        if options.upload:
            args.append("--upload")
        return args

    async def build(self, *, raise_on_failure: bool = True) -> PipelineState:
        """Run all stages in order and return the final state.

        The first failure is recorded on the state and, unless
        *raise_on_failure* is false, re-raised.
        """
        self.state = self._initial_state()
        self.state.status = "running"
        self.logger.log(level="begin", message=f"Begin building {self.name}")

        derived = DerivedConfig(parameters=self.spec.parameters)
        try:
            for stage in STAGES:
                self.state.stage = stage
                if not self._should_run(stage, derived):
                    self.logger.verbose(f"Skipping stage {stage}", stage=stage)
                    continue
                self.logger.verbose(f"Running stage {stage}", stage=stage)
                derived = await self._runner(stage)(derived)
        except Exception as exc:
            self._fail(exc)
            if raise_on_failure:
                raise
            return self.state

        self.state.status = "completed"
        self.state.stage = None
        self.logger.info("Build complete!")
        self.logger.log(level="complete", message="Build successful", extra={"success": True})
        return self.state

    async def fetch(self) -> bool:
        """Clone the remote source unless it is already present.

        Returns whether a clone was performed.
        """
        remote = self.spec.source.remote
        if remote is None:
            return False
        destination = self.state.repo_location
        if destination.exists():
            self.logger.info(
                f"Repo {remote.repo} {remote.branch} already exists at {destination}",
                stage=Stage.FETCH,
            )
            return False

        destination.parent.mkdir(parents=True, exist_ok=True)
        self.logger.info(
            f"Downloading repo from {remote.repo} {remote.branch} to {destination}",
            stage=Stage.FETCH,
        )
        command = self.clone_command
        assert command is not None
        # git reports progress on stderr
        result = await self._run_isolated(command, stage=Stage.FETCH, stderr_level="info")
        if not result.ok:
            raise StageError(
                "Cloning the source repository failed.",
                hint="Check the remote URL, the branch name and network access.",
                context=self._context(
                    Stage.FETCH, command=command, exit_code=str(result.exit_code)
                ),
            )
        self.logger.info(
            f"Repo {remote.repo} {remote.branch} finished downloading to {destination}",
            stage=Stage.FETCH,
        )
        return True

    def record_failure(self, exc: Exception, *, stage: Stage | None = None) -> None:
        """Mark the pipeline failed without running it, e.g. after a shared fetch failed."""
        self.state.stage = stage
        self._fail(exc)

    def _initial_state(self) -> PipelineState:
        source = self.spec.source
        if source.remote is not None:
            repo_location = self.config.repo_dir / self.repo_name
        elif source.local is not None and source.local.location:
            repo_location = self.config.absolute(source.local.location)
        else:
            raise ConfigurationError(
                "There is no remote or local source defined to build from.",
                hint="Set a source on the build spec or a default_local location.",
                context={"pipeline": self.name},
            )
        if source.use_build_folder:
            build_location = self.config.build_dir / self.name / self.repo_name
        else:
            build_location = repo_location
        return PipelineState(
            repo_location=repo_location,
            build_location=build_location,
            tool_directory=build_location,
            hwdef_directory=build_location / self.spec.board.hwdef_directory,
            relocated=not source.use_build_folder,
        )

    def _should_run(self, stage: Stage, derived: DerivedConfig) -> bool:
        spec = self.spec
        source = spec.source
        final_steps = spec.final_steps
        checks: dict[Stage, bool] = {
            Stage.FETCH: source.remote is not None,
            Stage.RELOCATE: source.use_build_folder,
            Stage.SOURCE_CONTROL: bool(
                source.checkout or source.reset or source.update_submodules
            ),
            Stage.RESOLVE_REVISION: self._revision_needed()
            or self.config.revision_policy == "required",
            Stage.PATCH_LUA_BINDINGS: spec.lua_bindings is not None,
            Stage.ASSEMBLE_LUA_SCRIPTS: spec.lua is not None,
            Stage.PATCH_HWDEF: spec.hwdef is not None,
            Stage.PATCH_BOOTLOADER_HWDEF: spec.bootloader_hwdef is not None,
            Stage.PATCH_PARAMETERS: derived.parameters is not None,
            Stage.PATCH_BOOTLOADER_BINARY: spec.bootloader_binary is not None,
            Stage.CONFIGURE_AND_BUILD: True,
            Stage.COPY_ARTIFACTS: final_steps.copy_binaries is not None,
            Stage.UPLOAD: final_steps.upload is not None,
            Stage.OPEN_MONITOR: final_steps.monitor is not None,
        }
        return checks[stage]

    def _runner(self, stage: Stage) -> StageRunner:
        runners: dict[Stage, StageRunner] = {
            Stage.FETCH: self._stage_fetch,
            Stage.RELOCATE: self._stage_relocate,
            Stage.SOURCE_CONTROL: self._stage_source_control,
            Stage.RESOLVE_REVISION: self._stage_resolve_revision,
            Stage.PATCH_LUA_BINDINGS: self._stage_patch_lua_bindings,
            Stage.ASSEMBLE_LUA_SCRIPTS: self._stage_assemble_lua_scripts,
            Stage.PATCH_HWDEF: self._stage_patch_hwdef,
            Stage.PATCH_BOOTLOADER_HWDEF: self._stage_patch_bootloader_hwdef,
            Stage.PATCH_PARAMETERS: self._stage_patch_parameters,
            Stage.PATCH_BOOTLOADER_BINARY: self._stage_patch_bootloader_binary,
            Stage.CONFIGURE_AND_BUILD: self._stage_configure_and_build,
            Stage.COPY_ARTIFACTS: self._stage_copy_artifacts,
            Stage.UPLOAD: self._stage_upload,
            Stage.OPEN_MONITOR: self._stage_open_monitor,
        }
        return runners[stage]

    async def _stage_fetch(self, derived: DerivedConfig) -> DerivedConfig:
        await self.fetch()
        return derived

    async def _stage_relocate(self, derived: DerivedConfig) -> DerivedConfig:
        repo = self.state.repo_location
        build = self.state.build_location
        self.logger.info(f"Copying repo from {repo} to {build}", stage=Stage.RELOCATE)
        self._require_directory(repo, Stage.RELOCATE)
        await asyncio.to_thread(_replace_tree, repo, build, symlinks=True)
        self.state.relocated = True
        return derived

    async def _stage_source_control(self, derived: DerivedConfig) -> DerivedConfig:
        source = self.spec.source
        stage = Stage.SOURCE_CONTROL
        location = self.state.build_location
        self._require_directory(location, stage)
        # git reports checkout and submodule progress on stderr
        async with self._shell(
            stage, cwd=location, strict=True, stdout_level="verbose", stderr_level="info"
        ) as shell:
            if source.checkout:
                self.logger.info(f"Checking out {source.checkout} at {location}", stage=stage)
                await self._run_checked(shell, f"git checkout {shlex.quote(source.checkout)}", stage)
            if source.reset:
                self.logger.info(f"Resetting git repository at {location}", stage=stage)
                await self._run_checked(shell, "git reset --hard", stage)
            if source.update_submodules:
                self.logger.info("Updating submodules", stage=stage)
                await self._run_checked(shell, "git submodule update --init --recursive", stage)
            await self._finish(shell, stage)
        return derived

    async def _stage_resolve_revision(self, derived: DerivedConfig) -> DerivedConfig:
        stage = Stage.RESOLVE_REVISION
        revision = await self._read_revision()
        if revision is not None:
            self.state.revision = revision
            self.logger.info(f"Resolved source revision {revision}", stage=stage)
            return derived

        if self._revision_fatal():
            raise StageError(
                "Unable to resolve the source revision.",
                hint="Make sure the build location is a git checkout with at least one commit.",
                context=self._context(stage, location=str(self.state.build_location)),
            )
        self.state.revision = UNKNOWN_REVISION
        self.logger.warn(
            f"Unable to resolve the source revision, using '{UNKNOWN_REVISION}'", stage=stage
        )
        return derived

    async def _stage_patch_lua_bindings(self, derived: DerivedConfig) -> DerivedConfig:
        assert self.spec.lua_bindings is not None
        self._patch(
            self.state.build_location / LUA_BINDINGS_FILE,
            self.spec.lua_bindings,
            label="lua bindings",
            stage=Stage.PATCH_LUA_BINDINGS,
        )
        return derived

    async def _stage_assemble_lua_scripts(self, derived: DerivedConfig) -> DerivedConfig:
        lua = self.spec.lua
        assert lua is not None
        stage = Stage.ASSEMBLE_LUA_SCRIPTS
        scripting_directory = self.state.hwdef_directory / "scripts"

        if lua.enable_scripting:
            self.logger.info(
                f"Adding {SCRIPTING_ENABLE_PARAMETER}=1 to parameter definition", stage=stage
            )
            parameters = derived.parameters or ParameterPatch()
            derived = replace(
                derived, parameters=parameters.with_parameter(SCRIPTING_ENABLE_PARAMETER, "1")
            )

        if not lua.include:
            if scripting_directory.exists():
                await asyncio.to_thread(shutil.rmtree, scripting_directory)
            self.logger.info("Removed the scripting directory as lua is not included", stage=stage)
            return derived
        if not lua.scripts:
            return derived

        scripting_directory.mkdir(parents=True, exist_ok=True)
        assembler = LuaAssembler(
            scripting_directory=scripting_directory,
            build_location=self.state.build_location,
            logger=self.logger,
            stage=stage,
            resolve=self.resolve,
            shell=self.config.shell,
            lint_command=self.config.lint_command,
            lint_config=self.config.lint_config,
            protocol_generator=self.config.protocol_generator,
        )
        for index, script in enumerate(lua.scripts):
            await assembler.assemble(
                script, index, today=self._today(), revision=self.state.revision
            )
        return derived

    async def _stage_patch_hwdef(self, derived: DerivedConfig) -> DerivedConfig:
        assert self.spec.hwdef is not None
        self._patch(
            self.state.hwdef_directory / HWDEF_FILE,
            self.spec.hwdef,
            label="HWDef",
            stage=Stage.PATCH_HWDEF,
        )
        return derived

    async def _stage_patch_bootloader_hwdef(self, derived: DerivedConfig) -> DerivedConfig:
        assert self.spec.bootloader_hwdef is not None
        self._patch(
            self.state.hwdef_directory / BOOTLOADER_HWDEF_FILE,
            self.spec.bootloader_hwdef,
            label="bootloader HWDef",
            stage=Stage.PATCH_BOOTLOADER_HWDEF,
        )
        return derived

    async def _stage_patch_parameters(self, derived: DerivedConfig) -> DerivedConfig:
        assert derived.parameters is not None
        self._patch(
            self.state.hwdef_directory / PARAMETER_DEFAULTS_FILE,
            derived.parameters.as_file_patch(),
            label="parameter defaults",
            stage=Stage.PATCH_PARAMETERS,
        )
        return derived

    async def _stage_patch_bootloader_binary(self, derived: DerivedConfig) -> DerivedConfig:
        patch = self.spec.bootloader_binary
        assert patch is not None
        stage = Stage.PATCH_BOOTLOADER_BINARY
        board = self.spec.board.board
        target = self.state.build_location / "Tools" / "bootloaders" / f"{board}_bl.bin"
        source = self.resolve(patch.replace_file)
        if not source.is_file():
            raise StageError(
                "Replacement bootloader binary does not exist.",
                hint="Check the bootloader replace_file path template.",
                context=self._context(stage, path=str(source)),
            )
        target.unlink(missing_ok=True)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target)
        self.logger.info(f"Replaced bootloader {target} with {source}", stage=stage)
        return derived

    async def _stage_configure_and_build(self, derived: DerivedConfig) -> DerivedConfig:
        stage = Stage.CONFIGURE_AND_BUILD
        options = self.spec.build_options
        tool = self.config.build_tool
        location = self.state.tool_directory
        self._require_directory(location, stage)
        output_level: EventLevel = "info" if options.log_output else "verbose"
        error_level: EventLevel = "error" if options.log_output else "verbose"

        self.logger.info("Begin building the firmware!", stage=stage)
        async with self._shell(
            stage,
            cwd=location,
            strict=True,
            stdout_level=output_level,
            stderr_level=error_level,
        ) as shell:
            if options.dist_clean:
                self.logger.info("Running distclean", stage=stage)
                await self._run_checked(shell, f"{tool} distclean", stage)

            configure = " ".join(shlex.quote(arg) for arg in self.configure_arguments())
            self.logger.info(f"Running configure with params: {configure}", stage=stage)
            await self._run_checked(shell, f"{tool} configure {configure}", stage)

            for command in options.pre_build_commands:
                self.logger.info(f"Running pre build command: {command}", stage=stage)
                await self._run_checked(shell, command, stage)

            build_target = "bootloader" if options.bootloader else self.spec.target
            build_args = " ".join(shlex.quote(arg) for arg in self.build_arguments())
            self.logger.info(f"Running build for {build_target} with params: {build_args}", stage=stage)
            await self._run_checked(shell, f"{tool} {build_target} {build_args}".rstrip(), stage)

            for command in options.post_build_commands:
                self.logger.info(f"Running post build command: {command}", stage=stage)
                await self._run_checked(shell, command, stage)

            await self._finish(shell, stage)
        return derived

    async def _stage_copy_artifacts(self, derived: DerivedConfig) -> DerivedConfig:
        stage = Stage.COPY_ARTIFACTS
        destination_template = self.spec.final_steps.copy_binaries
        assert destination_template is not None
        source = self.binary_directory
        destination = self.resolve(destination_template)
        self.logger.info(f"Copying binaries from {source} to {destination}", stage=stage)
        self._require_directory(source, stage)
        await asyncio.to_thread(_replace_tree, source, destination)
        return derived

    async def _stage_upload(self, derived: DerivedConfig) -> DerivedConfig:
        stage = Stage.UPLOAD
        step = self.spec.final_steps.upload
        assert step is not None
        binary = step.binary
        if binary is None:
            defaults = default_binaries(self.spec.target)
            if defaults is None:
                raise StageError(
                    "No binary to upload was specified.",
                    hint="Set final_steps.upload.binary for custom targets.",
                    context=self._context(stage, target=self.spec.target),
                )
            binary = defaults.apj
        binary_path = self.binary_directory / binary

        args = list(step.extra_args)
        if step.destination:
            args.extend(["--port", step.destination])
        uploader = self.state.build_location / self.config.uploader
        command = " ".join(
            shlex.quote(part)
            for part in (self.config.uploader_python, str(uploader), *args, str(binary_path))
        )
        self.logger.info(
            f"Uploading {binary_path} to the board with arguments {' '.join(args)}", stage=stage
        )
        result = await self._run_isolated(command, stage=stage)
        if not result.ok:
            raise StageError(
                f"Upload failed with code {result.exit_code}",
                hint="Check the board connection and the upload destination.",
                context=self._context(stage, command=command),
            )
        return derived

    async def _stage_open_monitor(self, derived: DerivedConfig) -> DerivedConfig:
        stage = Stage.OPEN_MONITOR
        step = self.spec.final_steps.monitor
        assert step is not None
        if self.spec.final_steps.upload is not None and self.config.settle_delay > 0:
            self.logger.verbose(
                f"Waiting {self.config.settle_delay}s for the board to reboot", stage=stage
            )
            await asyncio.sleep(self.config.settle_delay)

        args = list(step.extra_args)
        if step.master:
            args.extend(["--master", step.master])
        if step.baud_rate is not None:
            args.extend(["--baudrate", str(step.baud_rate)])
        command = " ".join(shlex.quote(part) for part in (self.config.monitor, *args))
        self.logger.info(f"Opening the monitor with arguments {' '.join(args)}", stage=stage)
        result = await self._run_isolated(command, stage=stage)
        if not result.ok:
            raise StageError(
                f"Monitor failed with code {result.exit_code}",
                context=self._context(stage, command=command),
            )
        return derived

    def _patch(self, target: Path, patch: FilePatch, *, label: str, stage: Stage) -> None:
        apply_file_patch(
            target,
            patch,
            label=label,
            resolve=self.resolve,
            logger=self.logger,
            stage=stage,
        )

    def _revision_needed(self) -> bool:
        lua = self.spec.lua
        if lua is None or not lua.include:
            return False
        return any(script.inject.revision for script in lua.scripts)

    def _revision_fatal(self) -> bool:
        policy = self.config.revision_policy
        if policy == "required":
            return True
        if policy == "optional":
            return False
        return self._revision_needed()

    async def _read_revision(self) -> str | None:
        stage = Stage.RESOLVE_REVISION
        location = self.state.build_location
        if not location.is_dir():
            return None
        chunks: list[bytes] = []
        async with self._shell(
            stage, cwd=location, stdout_level=None, stderr_level="verbose"
        ) as shell:
            shell.on_output(chunks.append)
            result = await shell.send_and_wait("git rev-parse HEAD", terminate_after=True)
        text = b"".join(chunks).decode("utf-8", errors="replace").strip()
        if not result.ok or not text:
            return None
        return text[:6]

    @contextlib.asynccontextmanager
    async def _shell(
        self,
        stage: Stage,
        *,
        cwd: Path | None = None,
        strict: bool = False,
        stdout_level: EventLevel | None = "info",
        stderr_level: EventLevel | None = "error",
    ) -> AsyncIterator[ProcessSupervisor]:
        supervisor = ProcessSupervisor(name=f"{self.name}:{stage}")
        if stdout_level is not None:
            supervisor.on_output(lambda chunk: self._forward(chunk, stdout_level, stage))
        if stderr_level is not None:
            supervisor.on_error_output(lambda chunk: self._forward(chunk, stderr_level, stage))
        supervisor.on_closed(
            lambda code: self.logger.verbose(f"Process exited with {code}", stage=stage)
        )
        async with supervisor:
            await supervisor.spawn(
                self.config.shell,
                ["-e"] if strict else [],
                working_directory=cwd,
            )
            yield supervisor

    async def _run_isolated(
        self,
        command: str,
        *,
        stage: Stage,
        cwd: Path | None = None,
        stderr_level: EventLevel = "error",
    ) -> CommandResult:
        async with self._shell(stage, cwd=cwd, stderr_level=stderr_level) as shell:
            return await shell.send_and_wait(command, terminate_after=True)

    async def _run_checked(self, shell: ProcessSupervisor, command: str, stage: Stage) -> None:
        result = await shell.send_and_wait(command)
        if result.ok:
            return
        if not result.sent:
            message = f"Could not send command to the build shell: {command}"
        else:
            message = f"Build process failed with code {result.exit_code} running {command}"
        raise StageError(
            message,
            context=self._context(stage, command=command, exit_code=str(result.exit_code)),
        )

    async def _finish(self, shell: ProcessSupervisor, stage: Stage) -> None:
        shell.request_exit()
        code = await shell.wait_closed()
        if code not in (0, None):
            raise StageError(
                f"Shell exited with code {code}",
                context=self._context(stage, exit_code=str(code)),
            )

    def _forward(self, chunk: bytes, level: EventLevel, stage: Stage) -> None:
        text = chunk.decode("utf-8", errors="replace").rstrip("\n")
        if text:
            self.logger.log(level=level, message=text, stage=stage)

    def _require_directory(self, path: Path, stage: Stage) -> None:
        if path.is_dir():
            return
        self.logger.error(f"The folder at {path} does not exist", stage=stage)
        raise StageError(
            "Expected source directory is missing.",
            hint="Fetch the repository or fix the local source location.",
            context=self._context(stage, path=str(path)),
        )

    def _context(self, stage: Stage, **values: str) -> dict[str, str]:
        return {"pipeline": self.name, "stage": str(stage), **values}

    def _fail(self, exc: Exception) -> None:
        reason = exc.message if isinstance(exc, FcBuildError) else str(exc) or type(exc).__name__
        self.state.status = "failed"
        self.state.failure_reason = reason
        self.logger.error(f"Build failed! {exc}", stage=self.state.stage)
        self.logger.log(
            level="complete",
            message="Build failed",
            stage=self.state.stage,
            extra={"success": False, "reason": reason},
        )


def _replace_tree(source: Path, destination: Path, *, symlinks: bool = False) -> None:
    if destination.exists():
        shutil.rmtree(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)
    shutil.copytree(source, destination, symlinks=symlinks)


__all__ = ["BuildPipeline", "STAGES"]
