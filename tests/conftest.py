"""Shared test fixtures."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path

import pytest

from fcbuild.config import BuilderConfig

BOARD = "CubeOrange"
HWDEF_DIR = f"libraries/AP_HAL_ChibiOS/hwdef/{BOARD}"

FAKE_WAF = """#!/usr/bin/env bash
echo "$*" >> "{log}"
case "$1" in
  distclean)
    rm -rf build
    ;;
  configure)
    for arg in "$@"; do
      if [ "$arg" = "--explode" ]; then
        echo "configure exploded" >&2
        exit 3
      fi
    done
    while [ $# -gt 0 ]; do
      if [ "$1" = "--board" ]; then
        echo "$2" > .fake_board
      fi
      shift
    done
    echo "Configured"
    ;;
  *)
    board=$(cat .fake_board)
    if [ "$1" = "bootloader" ]; then
      out="build/$board/bootloader"
      mkdir -p "$out"
      echo "bl" > "$out/AP_Bootloader.bin"
    else
      out="build/$board/bin"
      mkdir -p "$out"
      echo "apj" > "$out/arducopter.apj"
      echo "bin" > "$out/arducopter.bin"
    fi
    echo "Build finished"
    ;;
esac
"""

FAKE_LUACHECK = """#!/usr/bin/env bash
file="$1"
echo "$*" >> "{log}"
if grep -q "BROKEN" "$file"; then
  line=$(grep -n "BROKEN" "$file" | head -n 1 | cut -d: -f1)
  echo "Checking $file"
  echo ""
  echo "    $file:$line:5: expected '=' near 'BROKEN'"
  echo ""
  echo "Total: 0 warnings / 1 error in 1 file"
  exit 2
fi
if grep -q "UNUSED" "$file"; then
  line=$(grep -n "UNUSED" "$file" | head -n 1 | cut -d: -f1)
  echo "Warnings:"
  echo "    $file:$line:7: (W211) unused variable 'UNUSED'"
  exit 1
fi
echo "Checking $file OK"
"""

FAKE_RECORDER = """#!/usr/bin/env bash
echo "$*" >> "{log}"
"""


@dataclass(frozen=True)
class FakeTools:
    root: Path
    waf: Path
    luacheck: Path
    monitor: Path
    waf_log: Path
    lint_log: Path
    monitor_log: Path
    upload_log: Path


@dataclass(frozen=True)
class SourceTree:
    path: Path
    commit: str

    @property
    def hwdef(self) -> Path:
        return self.path / HWDEF_DIR


def _write_script(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    path.chmod(0o755)
    return path


def run_git(argv: list[str], *, cwd: Path) -> str:
    completed = subprocess.run(
        ["git", *argv],
        cwd=cwd,
        check=False,
        text=True,
        capture_output=True,
    )
    if completed.returncode != 0:
        raise RuntimeError(f"git {' '.join(argv)} failed: {completed.stderr.strip()}")
    return completed.stdout.strip()


@pytest.fixture
def fake_tools(tmp_path: Path) -> FakeTools:
    root = tmp_path / "tools"
    logs = tmp_path / "logs"
    logs.mkdir()
    waf_log = logs / "waf.log"
    lint_log = logs / "luacheck.log"
    monitor_log = logs / "monitor.log"
    return FakeTools(
        root=root,
        waf=_write_script(root / "waf", FAKE_WAF.format(log=waf_log)),
        luacheck=_write_script(root / "luacheck", FAKE_LUACHECK.format(log=lint_log)),
        monitor=_write_script(root / "mavproxy", FAKE_RECORDER.format(log=monitor_log)),
        waf_log=waf_log,
        lint_log=lint_log,
        monitor_log=monitor_log,
        upload_log=logs / "upload.log",
    )


@pytest.fixture
def source_tree(tmp_path: Path, fake_tools: FakeTools) -> SourceTree:
    """A committed, minimal ardupilot-shaped git repository."""
    path = tmp_path / "ardupilot"
    hwdef = path / HWDEF_DIR
    hwdef.mkdir(parents=True)
    (hwdef / "hwdef.dat").write_text("include ../CubeOrange-base/hwdef.inc\n", encoding="utf-8")
    (hwdef / "hwdef-bl.dat").write_text("FLASH_SIZE_KB 2048\n", encoding="utf-8")
    (hwdef / "defaults.parm").write_text("SERIAL1_BAUD 57\n", encoding="utf-8")
    bindings = path / "libraries/AP_Scripting/generator/description/bindings.desc"
    bindings.parent.mkdir(parents=True)
    bindings.write_text("include AP_Common/Location.h\n", encoding="utf-8")
    bootloaders = path / "Tools/bootloaders"
    bootloaders.mkdir(parents=True)
    (bootloaders / f"{BOARD}_bl.bin").write_bytes(b"stock-bootloader")
    _write_script(
        path / "Tools/scripts/uploader.py",
        FAKE_RECORDER.format(log=fake_tools.upload_log),
    )

    run_git(["init"], cwd=path)
    run_git(["checkout", "-b", "main"], cwd=path)
    run_git(["config", "user.email", "fcbuild@example.com"], cwd=path)
    run_git(["config", "user.name", "fcbuild Test"], cwd=path)
    run_git(["add", "."], cwd=path)
    run_git(["commit", "-m", "initial"], cwd=path)
    return SourceTree(path=path, commit=run_git(["rev-parse", "HEAD"], cwd=path))


@pytest.fixture
def builder_config(tmp_path: Path, fake_tools: FakeTools) -> BuilderConfig:
    return BuilderConfig(
        base_dir=tmp_path / "work",
        settle_delay=0,
        build_tool=str(fake_tools.waf),
        lint_command=str(fake_tools.luacheck),
        uploader_python="bash",
        monitor=str(fake_tools.monitor),
    )
