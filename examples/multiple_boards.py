"""Build several boards concurrently from one shared checkout and export a report."""

from pathlib import Path

from fcbuild import (
    Board,
    BuildArguments,
    BuilderConfig,
    BuildOptions,
    BuildSpec,
    FinalSteps,
    RemoteSource,
    SourceSpec,
    run_batch,
)

ARDUPILOT = RemoteSource(repo="https://github.com/ArduPilot/ardupilot.git", branch="master")


def board_spec(board: str, target: str) -> BuildSpec:
    return BuildSpec(
        board=Board.chibios(board),
        target=target,
        # every spec shares one clone; each build gets its own scratch copy
        source=SourceSpec(remote=ARDUPILOT, reset=True),
        build_options=BuildOptions(extra_build_args=("-j4",)),
        final_steps=FinalSteps(copy_binaries="./artifacts/${BOARD}-" + target),
    )


def build_fleet() -> None:
    config = BuilderConfig(base_dir=Path("work"), revision_policy="optional")
    report = run_batch(
        [
            board_spec("CubeOrange", "copter"),
            board_spec("MatekH743", "plane"),
            board_spec("Pixhawk6X", "rover"),
        ],
        config=config,
        arguments=BuildArguments(parameters={"BRD_SAFETY_DEFLT": "0"}),
        console="info",
    )
    report.to_json(config.base_dir / "report.json")
    report.to_cbor(config.base_dir / "report.cbor")
    for line in report.summary():
        print(line)


if __name__ == "__main__":
    build_fleet()
