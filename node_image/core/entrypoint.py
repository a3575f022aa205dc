"""
Entrypoint contract — the container's one startup command.

The script's contents belong to the packaged application.  The pipeline
only guarantees it is present, executable, at a fixed path, and invoked
with no arguments.
"""
from enum import Enum, unique
from typing import List

from node_image.core.stage import Stage
from node_image.errors import AssemblyError
from node_image.policy.profile import PipelineProfile

STEP = "assemble_runtime"


@unique
class EntrypointWarning(str, Enum):
    NO_SHEBANG = "ENTRYPOINT_NO_SHEBANG"
    CRLF_LINE_ENDINGS = "ENTRYPOINT_CRLF_LINE_ENDINGS"


def validate_entrypoint(data: bytes) -> List[str]:
    """Check the script body; returns warning reasons, raises if unusable."""
    if not data.strip():
        raise AssemblyError("entrypoint script is empty", step=STEP)

    warns: List[str] = []
    first_line = data.split(b"\n", 1)[0]
    if not first_line.startswith(b"#!"):
        warns.append(EntrypointWarning.NO_SHEBANG.value)
    if b"\r\n" in data:
        warns.append(EntrypointWarning.CRLF_LINE_ENDINGS.value)
    return warns


def entrypoint_command(profile: PipelineProfile) -> List[str]:
    """Exec-form startup command; flags are the script's own concern."""
    return [profile.entrypoint_path]


def place_entrypoint(stage: Stage, profile: PipelineProfile, data: bytes) -> List[str]:
    """Validate, write with mode 0755, and confirm it is executable in place."""
    warns = validate_entrypoint(data)
    try:
        stage.put_file(profile.entrypoint_path, data, mode=0o755)
    except OSError as e:
        raise AssemblyError(f"could not place {profile.entrypoint_path}: {e}", step=STEP) from e
    if not stage.is_executable(profile.entrypoint_path):
        raise AssemblyError(f"{profile.entrypoint_path} is not executable", step=STEP)
    return warns
