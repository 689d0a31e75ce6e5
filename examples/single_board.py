"""Build one board from a remote branch with a custom lua script and flash it."""

import asyncio
from pathlib import Path

from fcbuild import (
    Board,
    BuilderConfig,
    BuildPipeline,
    BuildSpec,
    ConsoleReporter,
    FilePatch,
    FinalSteps,
    LuaInjections,
    LuaScript,
    LuaSpec,
    MonitorStep,
    ParameterPatch,
    RemoteSource,
    SourceSpec,
    UploadStep,
)


def build_cube_orange() -> None:
    config = BuilderConfig(base_dir=Path("work"))
    spec = BuildSpec(
        board=Board.chibios("CubeOrange", friendly_name="Cube Orange"),
        target="copter",
        source=SourceSpec(
            remote=RemoteSource(repo="https://github.com/ArduPilot/ardupilot.git", branch="Copter-4.5"),
            update_submodules=True,
        ),
        parameters=ParameterPatch(append={"SERIAL2_PROTOCOL": "2", "LOG_BACKEND_TYPE": "3"}),
        hwdef=FilePatch(append=("define HAL_LOGGING_ENABLED 1",)),
        lua=LuaSpec(
            scripts=(
                LuaScript(
                    files=("./scripts/common.lua", "./scripts/mission.lua"),
                    output_name="mission.lua",
                    inject=LuaInjections(build_date=True, revision=True),
                    copy_to="./artifacts/${BOARD}",
                ),
            )
        ),
        final_steps=FinalSteps(
            copy_binaries="./artifacts/${BOARD}/bin",
            upload=UploadStep(destination="/dev/ttyACM0"),
            monitor=MonitorStep(master="/dev/ttyACM0", baud_rate=115200),
        ),
    )

    pipeline = BuildPipeline(spec, config=config)
    pipeline.logger.subscribe(ConsoleReporter(channel="info"))
    state = asyncio.run(pipeline.build())
    pipeline.logger.to_json_lines(config.base_dir / "logs" / f"{pipeline.name}.jsonl")
    print(f"{pipeline.name}: {state.status} at revision {state.revision}")


if __name__ == "__main__":
    build_cube_orange()
