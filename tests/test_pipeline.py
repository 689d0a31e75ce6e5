import asyncio
import shutil
import time
from dataclasses import replace
from pathlib import Path

import pytest

from conftest import BOARD, HWDEF_DIR, FakeTools, SourceTree

from fcbuild.config import BuildArguments, BuilderConfig
from fcbuild.errors import ConfigurationError, StageError
from fcbuild.models import (
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
    RemoteSource,
    SourceSpec,
    Stage,
    UploadStep,
)
from fcbuild import pipeline as pipeline_module
from fcbuild.pipeline import BuildPipeline


def _local_spec(path: Path, **overrides: object) -> BuildSpec:
    return BuildSpec(
        board=Board.chibios(BOARD),
        target="copter",
        name="cube",
        source=SourceSpec(local=LocalSource(location=str(path))),
        **overrides,  # type: ignore[arg-type]
    )


def _waf_calls(fake_tools: FakeTools) -> list[str]:
    return fake_tools.waf_log.read_text(encoding="utf-8").splitlines()


def test_full_local_build_patches_copy_and_runs_final_steps(
    tmp_path: Path,
    source_tree: SourceTree,
    fake_tools: FakeTools,
    builder_config: BuilderConfig,
) -> None:
    lua_file = tmp_path / "mission.lua"
    lua_file.write_text("return update()\n", encoding="utf-8")
    custom_bootloader = tmp_path / "custom_bl.bin"
    custom_bootloader.write_bytes(b"custom-bootloader")
    spec = _local_spec(
        source_tree.path,
        parameters=ParameterPatch(append={"SERIAL1_BAUD": "115"}),
        lua=LuaSpec(
            scripts=(
                LuaScript(
                    files=(str(lua_file),),
                    inject=LuaInjections(build_date=True, revision=True),
                ),
            )
        ),
        hwdef=FilePatch(append=("define HAL_A 1",)),
        bootloader_binary=BootloaderPatch(replace_file=str(custom_bootloader)),
        final_steps=FinalSteps(
            copy_binaries="./binaries/${BOARD}",
            upload=UploadStep(destination="/dev/ttyACM0"),
            monitor=MonitorStep(master="/dev/ttyACM1", baud_rate=115200),
        ),
    )
    pipeline = BuildPipeline(spec, config=builder_config)

    state = asyncio.run(pipeline.build())

    assert state.status == "completed"
    assert pipeline.succeeded is True
    assert state.revision == source_tree.commit[:6]
    build = state.build_location
    assert build == builder_config.build_dir / "cube" / pipeline.repo_name
    hwdef = build / HWDEF_DIR
    assert (hwdef / "hwdef.dat").read_text(encoding="utf-8").endswith("\n\ndefine HAL_A 1\n")
    assert (hwdef / "defaults.parm").read_text(encoding="utf-8") == (
        "SERIAL1_BAUD 57\n\nSERIAL1_BAUD 115\nSCR_ENABLE 1\n"
    )
    script = (hwdef / "scripts" / "mission.lua").read_text(encoding="utf-8")
    assert f"function application_sha() return '{source_tree.commit[:6]}' end" in script
    assert "function build_date()" in script
    assert script.index("application_sha") < script.index("return update()")
    assert (build / "Tools/bootloaders" / f"{BOARD}_bl.bin").read_bytes() == b"custom-bootloader"

    assert _waf_calls(fake_tools) == ["configure --board CubeOrange --target copter", "copter"]
    binaries = builder_config.base_dir / "binaries" / BOARD
    assert (binaries / "arducopter.apj").exists()
    upload = fake_tools.upload_log.read_text(encoding="utf-8").strip()
    assert upload == f"--port /dev/ttyACM0 {build}/build/{BOARD}/bin/arducopter.apj"
    monitor = fake_tools.monitor_log.read_text(encoding="utf-8").strip()
    assert monitor == "--master /dev/ttyACM1 --baudrate 115200"

    # source tree and input spec are untouched
    assert (source_tree.hwdef / "hwdef.dat").read_text(encoding="utf-8") == (
        "include ../CubeOrange-base/hwdef.inc\n"
    )
    assert not (source_tree.hwdef / "scripts").exists()
    assert dict(pipeline.spec.parameters.append) == {"SERIAL1_BAUD": "115"}  # type: ignore[union-attr]


def test_build_emits_begin_first_and_complete_last(
    source_tree: SourceTree, fake_tools: FakeTools, builder_config: BuilderConfig
) -> None:
    pipeline = BuildPipeline(_local_spec(source_tree.path), config=builder_config)
    seen: list[str] = []
    pipeline.logger.subscribe(lambda event: seen.append(event.level))

    asyncio.run(pipeline.build())

    assert seen[0] == "begin"
    assert seen[-1] == "complete"
    assert pipeline.logger.records[-1]["extra"] == {"success": True}
    skipped = [
        record["stage"]
        for record in pipeline.logger.records
        if record["message"].startswith("Skipping stage")
    ]
    assert Stage.FETCH in skipped
    assert Stage.UPLOAD in skipped
    assert Stage.CONFIGURE_AND_BUILD not in skipped


def test_build_tool_failure_records_reason_and_stage(
    source_tree: SourceTree, fake_tools: FakeTools, builder_config: BuilderConfig
) -> None:
    spec = _local_spec(
        source_tree.path,
        build_options=BuildOptions(extra_configure_args=("--explode",)),
        final_steps=FinalSteps(copy_binaries="./binaries"),
    )
    pipeline = BuildPipeline(spec, config=builder_config)

    with pytest.raises(StageError) as excinfo:
        asyncio.run(pipeline.build())

    assert "failed with code 3" in excinfo.value.message
    assert pipeline.state.status == "failed"
    assert pipeline.state.stage == Stage.CONFIGURE_AND_BUILD
    assert pipeline.failure_reason == excinfo.value.message
    errors = [record["message"] for record in pipeline.logger.records_for_level("error")]
    assert "configure exploded" in errors
    last = pipeline.logger.records[-1]
    assert last["level"] == "complete"
    assert last["extra"]["success"] is False
    assert not (builder_config.base_dir / "binaries").exists()


def test_build_without_raise_returns_failed_state(
    tmp_path: Path, fake_tools: FakeTools, builder_config: BuilderConfig
) -> None:
    pipeline = BuildPipeline(_local_spec(tmp_path / "missing"), config=builder_config)

    state = asyncio.run(pipeline.build(raise_on_failure=False))

    assert state.status == "failed"
    assert state.stage == Stage.RELOCATE
    assert state.failure_reason == "Expected source directory is missing."


def test_missing_source_without_build_folder_fails_before_tool_runs(
    tmp_path: Path, fake_tools: FakeTools, builder_config: BuilderConfig
) -> None:
    spec = BuildSpec(
        board=Board.chibios(BOARD),
        target="copter",
        source=SourceSpec(local=LocalSource(location=str(tmp_path / "missing")), use_build_folder=False),
    )
    pipeline = BuildPipeline(spec, config=builder_config)

    state = asyncio.run(pipeline.build(raise_on_failure=False))

    assert state.stage == Stage.CONFIGURE_AND_BUILD
    assert not fake_tools.waf_log.exists()


def test_remote_source_is_cloned_once_and_checked_out(
    source_tree: SourceTree, fake_tools: FakeTools, builder_config: BuilderConfig
) -> None:
    spec = BuildSpec(
        board=Board.chibios(BOARD),
        target="copter",
        source=SourceSpec(
            remote=RemoteSource(repo=str(source_tree.path), branch="main"),
            checkout=source_tree.commit,
            reset=True,
            update_submodules=True,
        ),
    )
    pipeline = BuildPipeline(spec, config=builder_config)

    async def scenario() -> tuple[bool, bool]:
        first = await pipeline.fetch()
        second = await pipeline.fetch()
        await pipeline.build()
        return first, second

    first, second = asyncio.run(scenario())

    assert (first, second) == (True, False)
    assert pipeline.state.repo_location == builder_config.repo_dir / pipeline.repo_name
    assert (pipeline.state.repo_location / ".git").is_dir()
    assert pipeline.succeeded is True
    messages = [record["message"] for record in pipeline.logger.records]
    assert any(message.startswith(f"Checking out {source_tree.commit}") for message in messages)
    assert any("already exists" in message for message in messages)


def test_clone_command_and_repo_name(tmp_path: Path) -> None:
    config = BuilderConfig(base_dir=tmp_path)
    spec = BuildSpec(
        board=Board.chibios(BOARD),
        target="copter",
        source=SourceSpec(remote=RemoteSource(repo="https://example.com/ardupilot.git", branch="Copter-4.5")),
    )
    pipeline = BuildPipeline(spec, config=config)

    assert pipeline.repo_name == "httpsexample.comardupilot.git@Copter-4.5"
    assert pipeline.clone_command == (
        "git clone --recursive -b Copter-4.5 https://example.com/ardupilot.git "
        f"{tmp_path}/repos/httpsexample.comardupilot.git@Copter-4.5"
    )


def test_local_source_has_no_clone_command(tmp_path: Path) -> None:
    pipeline = BuildPipeline(
        BuildSpec(board=Board.chibios(BOARD), target="copter"),
        config=BuilderConfig(base_dir=tmp_path),
    )

    assert pipeline.clone_command is None
    assert pipeline.state.repo_location == tmp_path / "ardupilot"
    assert asyncio.run(pipeline.fetch()) is False


def test_empty_default_location_is_a_configuration_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        BuildPipeline(
            BuildSpec(board=Board.chibios(BOARD), target="copter"),
            config=BuilderConfig(base_dir=tmp_path, default_local=""),
        )


def test_configure_and_build_arguments(tmp_path: Path) -> None:
    spec = BuildSpec(
        board=Board.chibios(BOARD),
        target="plane",
        build_options=BuildOptions(
            static=True,
            debug=True,
            upload=True,
            upload_dest="host:/firmware",
            extra_configure_args=("--enable-x",),
            extra_build_args=("-j4",),
        ),
    )
    pipeline = BuildPipeline(spec, config=BuilderConfig(base_dir=tmp_path))

    assert pipeline.configure_arguments() == [
        "--enable-x",
        "--board",
        BOARD,
        "--target",
        "plane",
        "--static",
        "--rsync-dest",
        "host:/firmware",
        "--debug",
    ]
    assert pipeline.build_arguments() == ["-j4", "--upload"]
    assert spec.build_options.extra_configure_args == ("--enable-x",)


def test_bootloader_build_uses_bootloader_target_and_output(
    source_tree: SourceTree, fake_tools: FakeTools, builder_config: BuilderConfig
) -> None:
    spec = _local_spec(
        source_tree.path,
        bootloader_hwdef=FilePatch(append=("define BL_X 1",)),
        final_steps=FinalSteps(copy_binaries="${BUILD_DIR}/../bootloader-out"),
    )
    pipeline = BuildPipeline(
        spec,
        config=builder_config,
        arguments=BuildArguments(build_bootloader=True),
    )

    state = asyncio.run(pipeline.build())

    assert _waf_calls(fake_tools) == [
        "configure --board CubeOrange --target copter --bootloader",
        "bootloader",
    ]
    hwdef_bl = state.hwdef_directory / "hwdef-bl.dat"
    assert hwdef_bl.read_text(encoding="utf-8") == "FLASH_SIZE_KB 2048\n\ndefine BL_X 1\n"
    copied = state.build_location.parent / "bootloader-out"
    assert (copied / "AP_Bootloader.bin").exists()


def test_dist_clean_and_build_hooks_run_in_order(
    source_tree: SourceTree, fake_tools: FakeTools, builder_config: BuilderConfig
) -> None:
    marker = fake_tools.waf_log
    spec = _local_spec(
        source_tree.path,
        build_options=BuildOptions(
            dist_clean=True,
            pre_build_commands=(f"echo pre >> {marker}",),
            post_build_commands=(f"echo post >> {marker}",),
        ),
    )

    asyncio.run(BuildPipeline(spec, config=builder_config).build())

    assert _waf_calls(fake_tools) == [
        "distclean",
        "configure --board CubeOrange --target copter",
        "pre",
        "copter",
        "post",
    ]


def test_lua_exclusion_removes_scripts_but_still_enables_scripting(
    source_tree: SourceTree, fake_tools: FakeTools, builder_config: BuilderConfig
) -> None:
    scripts = source_tree.hwdef / "scripts"
    scripts.mkdir()
    (scripts / "stale.lua").write_text("stale()\n", encoding="utf-8")
    pipeline = BuildPipeline(
        _local_spec(source_tree.path, lua=LuaSpec(include=False)),
        config=builder_config,
    )

    state = asyncio.run(pipeline.build())

    assert not (state.hwdef_directory / "scripts").exists()
    parameters = (state.hwdef_directory / "defaults.parm").read_text(encoding="utf-8")
    assert parameters.endswith("\nSCR_ENABLE 1\n")


def test_lua_bindings_are_replaced(
    tmp_path: Path, source_tree: SourceTree, fake_tools: FakeTools, builder_config: BuilderConfig
) -> None:
    bindings = tmp_path / "bindings.desc"
    bindings.write_text("singleton custom\n", encoding="utf-8")
    spec = _local_spec(source_tree.path, lua_bindings=FilePatch(replace_file=str(bindings)))

    state = asyncio.run(BuildPipeline(spec, config=builder_config).build())

    patched = state.build_location / "libraries/AP_Scripting/generator/description/bindings.desc"
    assert patched.read_text(encoding="utf-8") == "singleton custom\n"


def test_lint_failure_aborts_before_build(
    tmp_path: Path, source_tree: SourceTree, fake_tools: FakeTools, builder_config: BuilderConfig
) -> None:
    broken = tmp_path / "broken.lua"
    broken.write_text("BROKEN\n", encoding="utf-8")
    pipeline = BuildPipeline(
        _local_spec(source_tree.path, lua=LuaSpec(scripts=(LuaScript(files=(str(broken),)),))),
        config=builder_config,
    )

    state = asyncio.run(pipeline.build(raise_on_failure=False))

    assert state.stage == Stage.ASSEMBLE_LUA_SCRIPTS
    assert state.failure_reason == "Lua validation failed for broken.lua."
    assert not fake_tools.waf_log.exists()


def test_upload_without_default_binary_fails(
    source_tree: SourceTree, fake_tools: FakeTools, builder_config: BuilderConfig
) -> None:
    spec = replace(
        _local_spec(source_tree.path, final_steps=FinalSteps(upload=UploadStep())),
        target="AP_Custom",
    )
    pipeline = BuildPipeline(spec, config=builder_config)

    state = asyncio.run(pipeline.build(raise_on_failure=False))

    assert state.stage == Stage.UPLOAD
    assert state.failure_reason == "No binary to upload was specified."
    assert not fake_tools.upload_log.exists()


def test_settle_delay_precedes_monitor_after_upload(
    source_tree: SourceTree, fake_tools: FakeTools, builder_config: BuilderConfig
) -> None:
    config = replace(builder_config, settle_delay=0.01)
    spec = _local_spec(
        source_tree.path,
        final_steps=FinalSteps(upload=UploadStep(), monitor=MonitorStep()),
    )
    pipeline = BuildPipeline(spec, config=config)

    asyncio.run(pipeline.build())

    messages = [record["message"] for record in pipeline.logger.records]
    wait = messages.index("Waiting 0.01s for the board to reboot")
    assert messages.index("Opening the monitor with arguments ") > wait
    assert fake_tools.upload_log.exists()
    assert fake_tools.monitor_log.exists()


def _plain_tree(tmp_path: Path, source_tree: SourceTree) -> Path:
    plain = tmp_path / "plain"
    shutil.copytree(source_tree.path, plain, ignore=shutil.ignore_patterns(".git"))
    return plain


def test_required_revision_policy_fails_without_git(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    source_tree: SourceTree,
    fake_tools: FakeTools,
    builder_config: BuilderConfig,
) -> None:
    monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path))
    config = replace(builder_config, revision_policy="required")
    pipeline = BuildPipeline(_local_spec(_plain_tree(tmp_path, source_tree)), config=config)

    state = asyncio.run(pipeline.build(raise_on_failure=False))

    assert state.stage == Stage.RESOLVE_REVISION
    assert state.failure_reason == "Unable to resolve the source revision."


def test_optional_revision_policy_falls_back_to_unknown(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    source_tree: SourceTree,
    fake_tools: FakeTools,
    builder_config: BuilderConfig,
) -> None:
    monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path))
    lua_file = tmp_path / "sha.lua"
    lua_file.write_text("return application_sha()\n", encoding="utf-8")
    config = replace(builder_config, revision_policy="optional")
    spec = _local_spec(
        _plain_tree(tmp_path, source_tree),
        lua=LuaSpec(scripts=(LuaScript(files=(str(lua_file),), inject=LuaInjections(revision=True)),)),
    )
    pipeline = BuildPipeline(spec, config=config)

    state = asyncio.run(pipeline.build())

    assert state.revision == "unknown"
    script = (state.hwdef_directory / "scripts" / "sha.lua").read_text(encoding="utf-8")
    assert "return 'unknown'" in script
    assert pipeline.logger.records_for_level("warn")


def test_auto_revision_policy_fails_when_script_needs_revision(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    source_tree: SourceTree,
    fake_tools: FakeTools,
    builder_config: BuilderConfig,
) -> None:
    monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path))
    lua_file = tmp_path / "sha.lua"
    lua_file.write_text("return application_sha()\n", encoding="utf-8")
    spec = _local_spec(
        _plain_tree(tmp_path, source_tree),
        lua=LuaSpec(scripts=(LuaScript(files=(str(lua_file),), inject=LuaInjections(revision=True)),)),
    )
    pipeline = BuildPipeline(spec, config=builder_config)

    state = asyncio.run(pipeline.build(raise_on_failure=False))

    assert state.stage == Stage.RESOLVE_REVISION
    assert state.status == "failed"


def test_auto_revision_policy_skips_resolution_when_unused(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    source_tree: SourceTree,
    fake_tools: FakeTools,
    builder_config: BuilderConfig,
) -> None:
    monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path))
    pipeline = BuildPipeline(_local_spec(_plain_tree(tmp_path, source_tree)), config=builder_config)

    state = asyncio.run(pipeline.build())

    assert state.succeeded is True
    assert state.revision is None


def test_tree_copies_run_off_the_event_loop(
    source_tree: SourceTree,
    fake_tools: FakeTools,
    builder_config: BuilderConfig,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    replace_tree = pipeline_module._replace_tree

    def slow_replace_tree(source: Path, destination: Path, *, symlinks: bool = False) -> None:
        time.sleep(0.5)
        replace_tree(source, destination, symlinks=symlinks)

    monkeypatch.setattr(pipeline_module, "_replace_tree", slow_replace_tree)
    spec = _local_spec(
        source_tree.path, final_steps=FinalSteps(copy_binaries="./binaries/${BOARD}")
    )
    pipeline = BuildPipeline(spec, config=builder_config)

    async def scenario():
        task = asyncio.create_task(pipeline.build())
        longest_gap = 0.0
        last = time.monotonic()
        while not task.done():
            await asyncio.sleep(0.01)
            now = time.monotonic()
            longest_gap = max(longest_gap, now - last)
            last = now
        return await task, longest_gap

    state, longest_gap = asyncio.run(scenario())

    assert state.status == "completed"
    assert (builder_config.base_dir / "binaries" / BOARD / "arducopter.apj").exists()
    assert longest_gap < 0.4
