from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import cbor2

from fcbuild.models import PipelineState


@dataclass(frozen=True, slots=True)
class PipelineOutcome:
    name: str
    board: str
    target: str
    status: str
    build_location: str
    revision: str | None = None
    stage: str | None = None
    failure_reason: str | None = None

    @classmethod
    def from_state(cls, name: str, *, board: str, target: str, state: PipelineState) -> PipelineOutcome:
        return cls(
            name=name,
            board=board,
            target=target,
            status=state.status,
            build_location=str(state.build_location),
            revision=state.revision,
            stage=str(state.stage) if state.stage is not None else None,
            failure_reason=state.failure_reason,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "board": self.board,
            "target": self.target,
            "status": self.status,
            "build_location": self.build_location,
            "revision": self.revision,
            "stage": self.stage,
            "failure_reason": self.failure_reason,
        }


@dataclass(frozen=True, slots=True)
class BatchReport:
    """Success/failure partition of one orchestrated batch."""

    outcomes: tuple[PipelineOutcome, ...] = field(default_factory=tuple)

    @property
    def succeeded(self) -> list[str]:
        return [outcome.name for outcome in self.outcomes if outcome.failure_reason is None]

    @property
    def failed(self) -> dict[str, str]:
        return {
            outcome.name: outcome.failure_reason
            for outcome in self.outcomes
            if outcome.failure_reason is not None
        }

    @property
    def ok(self) -> bool:
        return not self.failed

    def summary(self) -> list[str]:
        total = len(self.outcomes)
        if self.ok:
            return [f"All {total} board(s) built successfully!"]
        lines = [f"{len(self.succeeded)}/{total} board(s) were built successfully"]
        lines.extend(f"Build {name} failed: {reason}" for name, reason in self.failed.items())
        return lines

    def _payload(self) -> dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "failed": self.failed,
            "pipelines": [outcome.to_dict() for outcome in self.outcomes],
        }

    def to_json(self, path: str | Path | None = None) -> str:
        encoded = json.dumps(self._payload(), indent=2, sort_keys=True) + "\n"
        if path is not None:
            Path(path).write_text(encoded, encoding="utf-8")
        return encoded

    def to_cbor(self, path: str | Path | None = None) -> bytes:
        encoded = cbor2.dumps(self._payload(), canonical=True)
        if path is not None:
            Path(path).write_bytes(encoded)
        return encoded


__all__ = ["BatchReport", "PipelineOutcome"]
