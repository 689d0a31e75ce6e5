"""Lint-tool invocation and reduction of its streamed diagnostics.

The lint tool prints diagnostics as ``path:line:col: message`` and groups them
under section headers such as ``Errors:`` and ``Warnings:``. Diagnostics are
attributed to whichever section was announced last, unless the message carries
an explicit ``(Ennn)``/``(Wnnn)`` code.
"""

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from fcbuild.errors import StageError
from fcbuild.observability import EventLevel, StructuredLogger
from fcbuild.process import LineAssembler, ProcessSupervisor

Section = Literal["error", "warning"]

_SECTION_HEADER = re.compile(r"^\W*(error|warning)s?\W*$", re.IGNORECASE)
_CODE = re.compile(r"^\((?P<kind>[EW])\d+\)")

# luacheck: 0 clean, 1 warnings only, 2 errors; anything higher is a tool failure
_NON_FATAL_EXIT_CODES = frozenset({0, 1})


@dataclass(slots=True)
class LintReport:
    path: str
    errors: dict[int, str] = field(default_factory=dict)
    warnings: dict[int, str] = field(default_factory=dict)
    exit_code: int | None = None

    @property
    def failed(self) -> bool:
        if self.errors:
            return True
        return self.exit_code is not None and self.exit_code not in _NON_FATAL_EXIT_CODES

    def annotate(self, source: str) -> list[tuple[EventLevel, str]]:
        """Return ``(level, text)`` pairs echoing *source* with inline diagnostics."""
        annotated: list[tuple[EventLevel, str]] = []
        for number, line in enumerate(source.split("\n"), start=1):
            if number in self.errors:
                annotated.append(("error", f"{number}: {line} >>ERROR>> {self.errors[number]}"))
            elif number in self.warnings:
                annotated.append(("warn", f"{number}: {line} >>WARNING>> {self.warnings[number]}"))
            else:
                annotated.append(("info", f"{number}: {line}"))
        return annotated

    def summary(self) -> list[str]:
        lines = [f"line {number}: {text}" for number, text in sorted(self.errors.items())]
        lines.extend(
            f"line {number} (warning): {text}" for number, text in sorted(self.warnings.items())
        )
        return lines


class LintOutputReducer:
    """Fold streamed lint output into per-line error and warning maps."""

    def __init__(self, path: str) -> None:
        self.path = path
        self.section: Section = "error"
        self._lines = LineAssembler()
        self._errors: dict[int, str] = {}
        self._warnings: dict[int, str] = {}

    def feed(self, chunk: bytes | str) -> None:
        for line in self._lines.feed(chunk):
            self._consume(line)

    def finish(self, exit_code: int | None) -> LintReport:
        for line in self._lines.flush():
            self._consume(line)
        return LintReport(
            path=self.path,
            errors=dict(sorted(self._errors.items())),
            warnings=dict(sorted(self._warnings.items())),
            exit_code=exit_code,
        )

    def _consume(self, line: str) -> None:
        header = _SECTION_HEADER.match(line)
        if header:
            self.section = "error" if header.group(1).lower() == "error" else "warning"
            return

        marker = f"{self.path}:"
        index = line.find(marker)
        if index == -1:
            return
        parts = line[index + len(marker) :].split(":", 2)
        if len(parts) < 3 or not parts[0].strip().isdigit():
            return
        number = int(parts[0])
        message = parts[2].strip()
        entry = f"{number}:{parts[1].strip()} {message}"

        bucket = self._errors if self._section_for(message) == "error" else self._warnings
        previous = bucket.get(number)
        bucket[number] = f"{previous}, {entry}" if previous else entry

    def _section_for(self, message: str) -> Section:
        code = _CODE.match(message)
        if code:
            return "error" if code.group("kind") == "E" else "warning"
        return self.section


async def lint_script(
    path: Path,
    *,
    lint_command: str,
    lint_config: str,
    working_directory: Path,
    logger: StructuredLogger,
    stage: str,
    shell: str = "bash",
) -> LintReport:
    """Run the lint tool over *path* and reduce its output."""
    target = str(path)
    command = f"{lint_command} {shlex.quote(target)} --config {shlex.quote(lint_config)}"
    reducer = LintOutputReducer(target)

    def on_output(chunk: bytes) -> None:
        reducer.feed(chunk)
        logger.info(chunk.decode("utf-8", errors="replace"), stage=stage)

    def on_error(chunk: bytes) -> None:
        logger.error(chunk.decode("utf-8", errors="replace"), stage=stage)

    logger.info(f"Validating lua syntax with {command}", stage=stage)
    async with ProcessSupervisor(name=f"lint:{path.name}") as supervisor:
        supervisor.on_output(on_output)
        supervisor.on_error_output(on_error)
        await supervisor.spawn(shell, working_directory=working_directory)
        result = await supervisor.send_and_wait(command, terminate_after=True)
        if not result.sent:
            raise StageError(
                "Could not start the lint tool.",
                hint="Ensure the lint tool is installed and the shell is available.",
                context={"stage": stage, "command": command},
            )
        logger.verbose(f"Lint process exited with {result.exit_code}", stage=stage)
        return reducer.finish(result.exit_code)


__all__ = ["LintOutputReducer", "LintReport", "lint_script"]
