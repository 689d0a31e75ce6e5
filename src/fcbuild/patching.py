"""Delete / replace / append patching of plain-text configuration files."""

from __future__ import annotations

import shutil
from collections.abc import Callable
from pathlib import Path

from fcbuild.errors import StageError
from fcbuild.models import FilePatch
from fcbuild.observability import StructuredLogger


def apply_file_patch(
    target: Path,
    patch: FilePatch,
    *,
    label: str,
    resolve: Callable[[str], Path],
    logger: StructuredLogger,
    stage: str,
) -> Path:
    """Apply *patch* to *target*.

    Removal happens first (``clear`` or any replacement), then the replacement
    copy, then appends. Appends always start with one blank line and write each
    entry verbatim on its own line.
    """
    logger.info(f"Processing the {label} file", stage=stage)

    if patch.clear or patch.replace_file:
        logger.verbose(f"Removing file {target}", stage=stage)
        target.unlink(missing_ok=True)
        logger.info(f"Removed the {label} file", stage=stage)

    if patch.replace_file:
        source = resolve(patch.replace_file)
        if not source.is_file():
            raise StageError(
                f"Replacement {label} file does not exist.",
                hint="Check the replace_file path template.",
                context={"stage": stage, "path": str(source)},
            )
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target)
        logger.info(f"Copied {source} to {target}", stage=stage)

    if patch.append:
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("a", encoding="utf-8") as handle:
            handle.write("\n")
            for line in patch.append:
                logger.info(f'Adding "{line}" to the {label} file', stage=stage)
                handle.write(f"{line}\n")

    return target


__all__ = ["apply_file_patch"]
