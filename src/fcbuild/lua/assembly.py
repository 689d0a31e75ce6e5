"""Assembly of on-board lua scripts from ordered, provenance-tagged fragments."""

from __future__ import annotations

import asyncio
import shutil
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import date
from pathlib import Path

from fcbuild.errors import LintError, StageError
from fcbuild.lua.lint import LintReport, lint_script
from fcbuild.models import LuaScript, ProtocolMessages
from fcbuild.observability import StructuredLogger
from fcbuild.process import ProcessSupervisor

PROTOCOL_CORE_MODULE = "mavlink_msgs.lua"


@dataclass(frozen=True, slots=True)
class Fragment:
    label: str
    content: str


def format_build_date(day: date) -> str:
    return day.strftime("%d/%m/%Y")


def build_date_helper(day: date) -> str:
    return f"function build_date() return '{format_build_date(day)}' end"


def revision_helper(revision: str) -> str:
    return f"function application_sha() return '{revision}' end"


def helper_fragments(script: LuaScript, *, today: date, revision: str | None) -> list[Fragment]:
    helpers = list(script.helper_functions)
    if script.inject.build_date:
        helpers.append(build_date_helper(today))
    if script.inject.revision:
        if revision is None:
            raise StageError(
                "Revision helper requested but no revision was resolved.",
                hint="Enable revision resolution or drop inject.revision.",
            )
        helpers.append(revision_helper(revision))
    return [Fragment(label=f"Helper {index}", content=text) for index, text in enumerate(helpers)]


def file_fragments(paths: Iterable[Path]) -> list[Fragment]:
    fragments: list[Fragment] = []
    for path in paths:
        if not path.is_file():
            raise StageError(
                "Lua source file does not exist.",
                hint="Check the lua script file path templates.",
                context={"path": str(path)},
            )
        fragments.append(Fragment(label=f"File {path}", content=path.read_text(encoding="utf-8")))
    return fragments


def protocol_fragments(output_dir: Path, messages: Sequence[str]) -> list[Fragment]:
    """Pick the generated modules for *messages*, shared core module first."""
    fragments: list[Fragment] = []
    core = output_dir / PROTOCOL_CORE_MODULE
    if core.is_file():
        fragments.append(
            Fragment(label=f"Protocol {PROTOCOL_CORE_MODULE}", content=core.read_text(encoding="utf-8"))
        )
    for message in messages:
        module = output_dir / f"mavlink_msg_{message}.lua"
        if not module.is_file():
            raise StageError(
                f"No generated protocol module for message {message}.",
                hint="Check the message name against the protocol definitions.",
                context={"path": str(module)},
            )
        fragments.append(
            Fragment(label=f"Protocol message {message}", content=module.read_text(encoding="utf-8"))
        )
    return fragments


def write_fragments(output: Path, fragments: Iterable[Fragment]) -> Path:
    """Write each fragment as ``--- label``, its content, then a blank line."""
    output.parent.mkdir(parents=True, exist_ok=True)
    with output.open("w", encoding="utf-8") as handle:
        for fragment in fragments:
            content = fragment.content if fragment.content.endswith("\n") else f"{fragment.content}\n"
            handle.write(f"--- {fragment.label}\n{content}\n")
    return output


@dataclass(slots=True)
class LuaAssembler:
    """Builds every declared script into one board scripting directory."""

    scripting_directory: Path
    build_location: Path
    logger: StructuredLogger
    stage: str
    resolve: Callable[[str], Path]
    shell: str = "bash"
    lint_command: str = "luacheck"
    lint_config: str = "libraries/AP_Scripting/tests/luacheck.lua"
    protocol_generator: str = ""

    async def assemble(
        self,
        script: LuaScript,
        index: int,
        *,
        today: date,
        revision: str | None,
    ) -> Path:
        output = self.scripting_directory / script.resolved_output_name(index)
        self.logger.info(f"Creating lua file at {output}", stage=self.stage)

        fragments = helper_fragments(script, today=today, revision=revision)
        if script.protocol_messages is not None:
            fragments.extend(await self._protocol_modules(script.protocol_messages, index))
        fragments.extend(file_fragments(self.resolve(path) for path in script.files))

        for fragment in fragments:
            self.logger.verbose(f"Writing {fragment.label} to lua file", stage=self.stage)
        write_fragments(output, fragments)

        if script.copy_to:
            destination = self.resolve(script.copy_to)
            if destination.is_dir():
                destination = destination / output.name
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(output, destination)
            self.logger.info(f"Copied {output} to {destination}", stage=self.stage)

        if script.validate_syntax:
            report = await lint_script(
                output,
                lint_command=self.lint_command,
                lint_config=self.lint_config,
                working_directory=self.build_location,
                logger=self.logger,
                stage=self.stage,
                shell=self.shell,
            )
            self._check(report, output)
        return output

    def _check(self, report: LintReport, output: Path) -> None:
        for number, text in report.warnings.items():
            self.logger.warn(f"{output.name}:{number} {text}", stage=self.stage)
        if not report.failed:
            return

        for level, line in report.annotate(output.read_text(encoding="utf-8")):
            self.logger.log(level=level, message=line, stage=self.stage)
        for line in report.summary():
            self.logger.error(line, stage=self.stage)
        self.logger.error(
            f"Lua validation error in {output}. Will not continue with build", stage=self.stage
        )
        raise LintError(
            f"Lua validation failed for {output.name}.",
            hint="Fix the reported lines and rebuild.",
            context={
                "stage": self.stage,
                "path": str(output),
                "errors": str(len(report.errors)),
                "exit_code": str(report.exit_code),
            },
        )

    async def _protocol_modules(self, spec: ProtocolMessages, index: int) -> list[Fragment]:
        output_dir = self.build_location / "build" / "lua_protocol" / str(index)
        if output_dir.exists():
            await asyncio.to_thread(shutil.rmtree, output_dir)
        output_dir.mkdir(parents=True)
        template = spec.generator or self.protocol_generator
        command = template.format(output=output_dir)
        self.logger.info(f"Generating protocol modules with {command}", stage=self.stage)

        async with ProcessSupervisor(name="protocol-generator") as supervisor:
            supervisor.on_output(
                lambda chunk: self.logger.verbose(chunk.decode("utf-8", errors="replace"), stage=self.stage)
            )
            supervisor.on_error_output(
                lambda chunk: self.logger.error(chunk.decode("utf-8", errors="replace"), stage=self.stage)
            )
            await supervisor.spawn(self.shell, working_directory=self.build_location)
            result = await supervisor.send_and_wait(command, terminate_after=True)

        if not result.ok:
            raise StageError(
                "Protocol module generation failed.",
                hint="Check the generator command and the message definitions.",
                context={
                    "stage": self.stage,
                    "command": command,
                    "exit_code": str(result.exit_code),
                },
            )
        return protocol_fragments(output_dir, spec.messages)


__all__ = [
    "Fragment",
    "LuaAssembler",
    "build_date_helper",
    "file_fragments",
    "format_build_date",
    "helper_fragments",
    "protocol_fragments",
    "revision_helper",
    "write_fragments",
]
