"""Path templates resolved against live pipeline state.

A template is a plain string that may contain any of:

``${BUILD_DIR}``
    the scratch build root (only known once the tree has been relocated),
``${REPO_DIR}``
    the resolved source root,
``${BOARD}``
    the board identifier passed to the build tool.

Templates are resolved at the point of use and never cached. Leading ``./``
anchors the result at the builder's base directory.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from fcbuild.config import BuilderConfig
from fcbuild.errors import StageError
from fcbuild.models import PipelineState

BUILD_DIR_TOKEN = "${BUILD_DIR}"
REPO_DIR_TOKEN = "${REPO_DIR}"
BOARD_TOKEN = "${BOARD}"


@dataclass(frozen=True, slots=True)
class PathTemplate:
    template: str

    def __str__(self) -> str:
        return self.template

    def uses(self, token: str) -> bool:
        return token in self.template

    def render(self, state: PipelineState, *, board: str) -> str:
        text = self.template
        if self.uses(BUILD_DIR_TOKEN):
            if not state.relocated:
                raise StageError(
                    f"Cannot resolve {BUILD_DIR_TOKEN} before the source tree is relocated.",
                    hint="Only reference the build directory from stages after relocation.",
                    context={"template": self.template},
                )
            text = text.replace(BUILD_DIR_TOKEN, str(state.build_location))
        text = text.replace(REPO_DIR_TOKEN, str(state.repo_location))
        return text.replace(BOARD_TOKEN, board)


def resolve_path(
    template: str,
    state: PipelineState,
    *,
    board: str,
    config: BuilderConfig,
) -> Path:
    return config.absolute(PathTemplate(template).render(state, board=board))


__all__ = [
    "BOARD_TOKEN",
    "BUILD_DIR_TOKEN",
    "PathTemplate",
    "REPO_DIR_TOKEN",
    "resolve_path",
]
