"""
Runtime image assembler — minimal runtime stage around the compiled binary.

Order inside the runtime stage:
  1. trust roots only (install → purge leftovers → clean caches)
  2. ``<root>/bin`` and ``<root>/data``; data must be writable
  3. home-relative config alias → data directory
  4. entrypoint (from the builder stage) and binary (from the published
     artifact), both 0755
  5. package gate, layout manifest, layout gate
  6. commit with VOLUME / CMD / ENV / labels

The alias is created only after the data directory exists and before
anything that reads it runs.
"""
from __future__ import annotations

import json
import logging
import posixpath
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from node_image.core.entrypoint import entrypoint_command, place_entrypoint
from node_image.core.packages import Apt
from node_image.core.stage import Stage, env_lines
from node_image.errors import AssemblyError
from node_image.io.schema import (
    ArtifactMeta,
    GateReport,
    ImageInfo,
    LayoutEntry,
    RuntimeLayout,
    SourceIdentity,
    ToolchainIdentity,
    hash_bytes,
)
from node_image.policy.profile import PipelineProfile
from node_image.policy.verdict import Verdict, gate_layout, gate_runtime_packages

logger = logging.getLogger(__name__)

STEP = "assemble_runtime"


@dataclass
class AssemblyResult:
    gate: GateReport
    layout: RuntimeLayout
    image: Optional[ImageInfo] = None
    entrypoint_warnings: List[str] = field(default_factory=list)


# =============================================================================
# Packages
# =============================================================================

def install_trust_roots(stage: Stage, profile: PipelineProfile) -> Tuple[Set[str], Set[str]]:
    """
    Install only the runtime package set, then purge and clean.

    Returns (base_packages, final_packages) for the package gate.
    """
    apt = Apt(stage, env=profile.runtime_env(), step=STEP)
    base = apt.installed()
    apt.provision(profile.runtime_packages)
    apt.purge_unrequired()
    apt.clean()
    final = apt.installed()
    logger.info(
        "[%s] Runtime packages: %d base, %d added",
        stage.role, len(base), len(final - base),
    )
    return base, final


def toolchain_present(stage: Stage, profile: PipelineProfile) -> bool:
    try:
        return any(
            stage.path_info(p) is not None
            for p in (profile.rustup_home, profile.cargo_home)
        )
    except OSError as e:
        raise AssemblyError(f"could not inspect toolchain roots: {e}", step=STEP) from e


# =============================================================================
# Layout
# =============================================================================

def create_layout(stage: Stage, profile: PipelineProfile) -> None:
    """Directories, then the writable check, then the alias."""
    try:
        stage.make_dirs(profile.bin_dir, profile.data_dir)
    except OSError as e:
        raise AssemblyError(f"could not create {profile.install_root} layout: {e}", step=STEP) from e

    info = stage.path_info(profile.data_dir)
    if info is None or info.kind != "dir":
        raise AssemblyError(f"{profile.data_dir} does not exist after mkdir", step=STEP)
    if not stage.is_writable(profile.data_dir):
        raise AssemblyError(f"{profile.data_dir} is not writable", step=STEP)

    create_config_alias(stage, profile)


def create_config_alias(stage: Stage, profile: PipelineProfile) -> None:
    """``<config_alias> → <data_dir>``; an identical existing link is accepted."""
    try:
        existing = stage.path_info(profile.config_alias)
    except OSError as e:
        raise AssemblyError(f"could not inspect {profile.config_alias}: {e}", step=STEP) from e
    if existing is not None:
        if existing.kind == "symlink" and existing.link_target == profile.data_dir:
            return
        raise AssemblyError(
            f"{profile.config_alias} already exists as {existing.kind}"
            + (f" → {existing.link_target}" if existing.link_target else ""),
            step=STEP,
        )

    try:
        stage.make_dirs(posixpath.dirname(profile.config_alias))
        stage.symlink(profile.data_dir, profile.config_alias)
    except OSError as e:
        raise AssemblyError(f"could not link {profile.config_alias}: {e}", step=STEP) from e


# =============================================================================
# Artifact handoff
# =============================================================================

def copy_entrypoint(builder: Stage, runtime: Stage, profile: PipelineProfile) -> Tuple[str, List[str]]:
    """Builder's ``<workdir>/<entrypoint>`` → runtime's fixed path."""
    src = f"{profile.source_workdir}/{profile.entrypoint_name}"
    try:
        data = builder.get_file(src)
    except (FileNotFoundError, IsADirectoryError):
        raise AssemblyError(f"builder stage has no entrypoint at {src}", step=STEP) from None
    except OSError as e:
        raise AssemblyError(f"could not read {src} from builder stage: {e}", step=STEP) from e
    warns = place_entrypoint(runtime, profile, data)
    return hash_bytes(data), warns


def copy_binary(runtime: Stage, profile: PipelineProfile, artifact: ArtifactMeta) -> str:
    """Published artifact → runtime's fixed binary path, checked against its sha256."""
    path = Path(artifact.host_path)
    if not path.is_file():
        raise AssemblyError(f"compiled binary missing at {path}", step=STEP)
    data = path.read_bytes()
    digest = hash_bytes(data)
    if digest != artifact.sha256:
        raise AssemblyError(
            f"compiled binary changed since publication "
            f"(expected {artifact.sha256[:12]}, got {digest[:12]})",
            step=STEP,
        )
    try:
        runtime.put_file(profile.binary_path, data, mode=0o755)
    except OSError as e:
        raise AssemblyError(f"could not place {profile.binary_path}: {e}", step=STEP) from e
    return digest


def describe_layout(stage: Stage, profile: PipelineProfile) -> RuntimeLayout:
    """Read back what was placed; file contents are hashed from the stage."""
    entries: List[LayoutEntry] = []
    for path in sorted({
        profile.install_root,
        profile.bin_dir,
        profile.data_dir,
        profile.binary_path,
        profile.entrypoint_path,
        profile.config_alias,
    }):
        try:
            info = stage.path_info(path)
            if info is None:
                continue
            sha = hash_bytes(stage.get_file(path)) if info.kind == "file" else None
        except OSError as e:
            raise AssemblyError(f"could not inspect {path}: {e}", step=STEP) from e
        entries.append(LayoutEntry(
            path=path,
            kind=info.kind,
            mode=format(info.mode, "o"),
            sha256=sha,
            link_target=info.link_target,
        ))
    return RuntimeLayout(
        entries=entries,
        volume=profile.data_dir,
        command=entrypoint_command(profile),
    )


# =============================================================================
# Image
# =============================================================================

def image_labels(
    profile: PipelineProfile,
    artifact: ArtifactMeta,
    source: Optional[SourceIdentity] = None,
    toolchain: Optional[ToolchainIdentity] = None,
) -> Dict[str, str]:
    """Deterministic labels: same inputs, same labels."""
    labels = {
        "org.opencontainers.image.title": profile.binary_name,
        "node_image.profile": profile.profile_id,
        "node_image.binary.sha256": artifact.sha256,
    }
    if source is not None:
        labels["node_image.source.sha256"] = source.snapshot_sha256
    if toolchain is not None:
        labels["node_image.toolchain"] = toolchain.rustc_version
    return labels


def image_changes(profile: PipelineProfile, labels: Dict[str, str]) -> List[str]:
    """Dockerfile-style instructions applied at commit time."""
    changes = env_lines(profile.runtime_env())
    changes.append(f"VOLUME {json.dumps([profile.data_dir])}")
    changes.append(f"CMD {json.dumps(entrypoint_command(profile))}")
    for key, value in sorted(labels.items()):
        changes.append(f"LABEL {key}={json.dumps(value)}")
    return changes


# =============================================================================
# Orchestration
# =============================================================================

def assemble_runtime(
    builder: Stage,
    runtime: Stage,
    profile: PipelineProfile,
    artifact: ArtifactMeta,
    source: Optional[SourceIdentity] = None,
    toolchain: Optional[ToolchainIdentity] = None,
    commit: bool = True,
) -> AssemblyResult:
    """Build the runtime stage and (optionally) commit it as the final image."""
    base, final = install_trust_roots(runtime, profile)

    create_layout(runtime, profile)
    _, entry_warns = copy_entrypoint(builder, runtime, profile)
    copy_binary(runtime, profile, artifact)

    gate = gate_runtime_packages(base, final, profile, toolchain_present(runtime, profile))
    if gate.verdict == Verdict.REJECT.value:
        raise AssemblyError(
            f"runtime package gate rejected the image: {', '.join(gate.reasons)} "
            f"(build-only: {', '.join(gate.build_only_packages) or 'none'})",
            step=STEP,
        )
    if gate.verdict == Verdict.WARN.value:
        logger.warning("[%s] Runtime gate WARN: %s", runtime.role, ", ".join(gate.reasons))

    layout = describe_layout(runtime, profile)
    verdict, reasons = gate_layout(layout, profile)
    if verdict == Verdict.REJECT:
        raise AssemblyError(f"runtime layout rejected: {', '.join(reasons)}", step=STEP)

    result = AssemblyResult(gate=gate, layout=layout, entrypoint_warnings=entry_warns)
    if not commit:
        return result

    labels = image_labels(profile, artifact, source, toolchain)
    try:
        image_id = runtime.commit(
            profile.image_repository,
            profile.image_tag,
            image_changes(profile, labels),
        )
    except Exception as e:
        raise AssemblyError(f"commit of {profile.image_ref} failed: {e}", step=STEP) from e

    result.image = ImageInfo(
        image_id=image_id,
        ref=profile.image_ref,
        volumes=[profile.data_dir],
        command=entrypoint_command(profile),
        env=profile.runtime_env(),
        labels=labels,
    )
    return result
