"""
State — the pipeline's linear state machine.

    START → TOOLCHAIN_RESOLVED → TOOLCHAIN_INSTALLED → SOURCE_COMPILED
          → RUNTIME_ASSEMBLED → READY

Any non-terminal state may move to FAILED.  READY and FAILED are terminal;
a failed run is re-run from scratch, never resumed.
"""
from enum import Enum, unique

from node_image.errors import IllegalTransitionError


@unique
class PipelineState(str, Enum):
    START = "START"
    TOOLCHAIN_RESOLVED = "TOOLCHAIN_RESOLVED"
    TOOLCHAIN_INSTALLED = "TOOLCHAIN_INSTALLED"
    SOURCE_COMPILED = "SOURCE_COMPILED"
    RUNTIME_ASSEMBLED = "RUNTIME_ASSEMBLED"
    READY = "READY"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineState.READY, PipelineState.FAILED)


ORDER = [
    PipelineState.START,
    PipelineState.TOOLCHAIN_RESOLVED,
    PipelineState.TOOLCHAIN_INSTALLED,
    PipelineState.SOURCE_COMPILED,
    PipelineState.RUNTIME_ASSEMBLED,
    PipelineState.READY,
]


def next_state(current: PipelineState) -> PipelineState:
    """The only forward successor of *current*."""
    if current.is_terminal:
        raise IllegalTransitionError(f"{current.value} is terminal")
    return ORDER[ORDER.index(current) + 1]


def check_transition(current: PipelineState, target: PipelineState) -> PipelineState:
    """Validate ``current → target``; returns *target* or raises."""
    if current.is_terminal:
        raise IllegalTransitionError(f"cannot leave terminal state {current.value}")
    if target == PipelineState.FAILED:
        return target
    if target != next_state(current):
        raise IllegalTransitionError(f"{current.value} → {target.value} skips or rewinds")
    return target
