"""Run a batch of build pipelines and aggregate their outcomes.

Every pipeline logs into its own :class:`StructuredLogger`; the orchestrator
re-emits those events into its own logger tagged with the pipeline identity as
``scope``. Events the orchestrator raises itself carry no scope.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable, Sequence
from dataclasses import replace
from typing import Any, TextIO

from fcbuild.config import BuildArguments, BuilderConfig
from fcbuild.errors import ConfigurationError
from fcbuild.models import BuildSpec, Stage
from fcbuild.observability import BuildEvent, ConsoleChannel, ConsoleReporter, StructuredLogger
from fcbuild.pipeline import BuildPipeline
from fcbuild.report import BatchReport, PipelineOutcome


class MultiPipelineOrchestrator:
    def __init__(
        self,
        builds: Iterable[BuildPipeline | BuildSpec],
        *,
        config: BuilderConfig | None = None,
        arguments: BuildArguments | None = None,
        logger: StructuredLogger | None = None,
        console: ConsoleChannel = "verbose",
        console_stream: TextIO | None = None,
    ) -> None:
        self.config = config or BuilderConfig()
        self.logger = logger or StructuredLogger()
        self.pipelines: list[BuildPipeline] = []
        names: set[str] = set()
        for build in builds:
            if isinstance(build, BuildSpec):
                build = BuildPipeline(build, config=self.config, arguments=arguments)
            if build.logger is self.logger:
                raise ConfigurationError(
                    "A pipeline cannot share the orchestrator's logger.",
                    hint="Give each pipeline its own StructuredLogger.",
                    context={"pipeline": build.name},
                )
            if build.name in names:
                # identities key the scratch tree and the report entry
                raise ConfigurationError(
                    f"Duplicate pipeline identity {build.name!r}.",
                    hint="Give builds for the same board and target distinct names.",
                    context={"pipeline": build.name},
                )
            names.add(build.name)
            build.logger.subscribe(self._forwarder(build.name))
            self.pipelines.append(build)

        if console != "disabled":
            self.logger.subscribe(ConsoleReporter(channel=console, stream=console_stream))

    def fetch_groups(self) -> dict[str, list[BuildPipeline]]:
        """Group remote-source pipelines by their clone command."""
        groups: dict[str, list[BuildPipeline]] = {}
        for pipeline in self.pipelines:
            command = pipeline.clone_command
            if command is not None:
                groups.setdefault(command, []).append(pipeline)
        return groups

    async def fetch_all(self) -> list[BuildPipeline]:
        """Run one fetch per distinct clone command and wait for all of them.

        Returns the pipelines whose fetch failed; they are already marked failed.
        """
        groups = self.fetch_groups()
        if not groups:
            return []
        self.logger.info(f"Fetching {len(groups)} source repositories")
        commands = list(groups)
        results = await asyncio.gather(
            *(groups[command][0].fetch() for command in commands),
            return_exceptions=True,
        )

        blocked: list[BuildPipeline] = []
        for command, result in zip(commands, results):
            if not isinstance(result, BaseException):
                continue
            if not isinstance(result, Exception):
                raise result
            self.logger.error(f"Fetch failed for {command}: {result}")
            for pipeline in groups[command]:
                pipeline.record_failure(result, stage=Stage.FETCH)
                blocked.append(pipeline)
        return blocked

    async def run(self, *, concurrent: bool = True) -> BatchReport:
        total = len(self.pipelines)
        mode = "concurrently" if concurrent else "sequentially"
        self.logger.log(level="begin", message=f"Building {total} board(s) {mode}")

        blocked = await self.fetch_all()
        runnable = [pipeline for pipeline in self.pipelines if pipeline not in blocked]
        if concurrent:
            await asyncio.gather(*(self._run_one(pipeline) for pipeline in runnable))
        else:
            for pipeline in runnable:
                await self._run_one(pipeline)

        report = self.report()
        lines = report.summary()
        self.logger.info(lines[0])
        for line in lines[1:]:
            self.logger.error(line)
        self.logger.log(
            level="all_complete",
            message=lines[0],
            extra={"succeeded": report.succeeded, "failed": report.failed},
        )
        return report

    def report(self) -> BatchReport:
        return BatchReport(
            outcomes=tuple(
                PipelineOutcome.from_state(
                    pipeline.name,
                    board=pipeline.spec.board.board,
                    target=pipeline.spec.target,
                    state=pipeline.state,
                )
                for pipeline in self.pipelines
            )
        )

    async def _run_one(self, pipeline: BuildPipeline) -> None:
        await pipeline.build(raise_on_failure=False)

    def _forwarder(self, name: str) -> Callable[[BuildEvent], None]:
        def forward(event: BuildEvent) -> None:
            self.logger.emit(replace(event, scope=name))

        return forward


def run_batch(
    builds: Sequence[BuildPipeline | BuildSpec],
    *,
    concurrent: bool = True,
    **options: Any,
) -> BatchReport:
    """Synchronous entry point: build *builds* and return the batch report."""
    orchestrator = MultiPipelineOrchestrator(builds, **options)
    return asyncio.run(orchestrator.run(concurrent=concurrent))


__all__ = ["MultiPipelineOrchestrator", "run_batch"]
