"""
Compiler — copy the source tree into the builder and run a release build.

Produces exactly one binary at ``<workdir>/target/release/<name>``.  The
binary is only published to the host once the build exited cleanly and
the output parsed as an ELF executable; publication is write-then-rename
so a reader never sees a half-written file.
"""
from __future__ import annotations

import hashlib
import io
import logging
import os
from pathlib import Path
from typing import Optional, Tuple

from elftools.common.exceptions import ELFError
from elftools.elf.elffile import ELFFile

from node_image.core.stage import Stage
from node_image.errors import CompilationError
from node_image.io.schema import ArtifactMeta, ElfMeta, SourceIdentity, hash_bytes, hash_file
from node_image.policy.profile import PipelineProfile

logger = logging.getLogger(__name__)

STEP = "compile_source"
MANIFEST = "Cargo.toml"
LOCKFILE = "Cargo.lock"
EXECUTABLE_TYPES = ("ET_EXEC", "ET_DYN")


# =============================================================================
# Source snapshot
# =============================================================================

def catalog_source(src_dir: Path, workdir: str, excludes=frozenset()) -> SourceIdentity:
    """
    Validate the source tree and compute its snapshot identity.

    Hash over sorted (relative path, content) pairs, skipping any path
    with a component in *excludes*.
    """
    if not src_dir.is_dir():
        raise CompilationError(f"source tree not found: {src_dir}", step=STEP)
    if not (src_dir / MANIFEST).is_file():
        raise CompilationError(f"no {MANIFEST} in {src_dir}", step=STEP)

    h = hashlib.sha256()
    count = 0
    try:
        for path in sorted(src_dir.rglob("*")):
            rel = path.relative_to(src_dir)
            if excludes.intersection(rel.parts):
                continue
            if path.is_symlink() or not path.is_file():
                continue
            h.update(rel.as_posix().encode("utf-8"))
            h.update(path.read_bytes())
            count += 1
    except OSError as e:
        raise CompilationError(f"could not read source tree {src_dir}: {e}", step=STEP) from e

    lockfile = src_dir / LOCKFILE
    return SourceIdentity(
        root=str(src_dir),
        workdir=workdir,
        file_count=count,
        snapshot_sha256=h.hexdigest(),
        manifest_sha256=hash_file(src_dir / MANIFEST),
        lockfile_sha256=hash_file(lockfile) if lockfile.is_file() else None,
    )


# =============================================================================
# ELF validation
# =============================================================================

def inspect_elf(data: bytes) -> Tuple[bool, ElfMeta]:
    """
    Parse *data* as ELF and extract minimal metadata.
    Returns (is_executable_or_pie, meta).
    """
    try:
        elf = ELFFile(io.BytesIO(data))
        elf_type = elf.header["e_type"]
        machine = elf.header["e_machine"]

        build_id = None
        section = elf.get_section_by_name(".note.gnu.build-id")
        if section is not None:
            for note in section.iter_notes():
                if note["n_type"] == "NT_GNU_BUILD_ID":
                    build_id = note["n_desc"]
    except ELFError as e:
        logger.warning("ELF validation failed: %s", e)
        return False, ElfMeta()

    meta = ElfMeta(elf_type=elf_type, machine=machine, build_id=build_id)
    return elf_type in EXECUTABLE_TYPES, meta


# =============================================================================
# Publication
# =============================================================================

def publish_artifact(data: bytes, dest: Path) -> Path:
    """Write *data* to *dest* atomically with mode 0755."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    tmp = dest.with_name(f".{dest.name}.partial")
    try:
        with open(tmp, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, 0o755)
        os.replace(tmp, dest)
    finally:
        if tmp.exists():
            tmp.unlink()
    return dest


# =============================================================================
# Build
# =============================================================================

def compile_source(
    stage: Stage,
    profile: PipelineProfile,
    src_dir: Path,
    publish_dir: Path,
    source: Optional[SourceIdentity] = None,
) -> Tuple[SourceIdentity, ArtifactMeta]:
    """
    Copy *src_dir* into the builder, run ``cargo build --release`` and
    publish the resulting binary into *publish_dir*.
    """
    if source is None:
        source = catalog_source(src_dir, profile.source_workdir, profile.source_excludes)

    try:
        stage.put_tree(src_dir, profile.source_workdir, excludes=profile.source_excludes)
    except OSError as e:
        raise CompilationError(f"could not copy source tree into builder: {e}", step=STEP) from e

    logger.info("[%s] cargo build --release in %s", stage.role, profile.source_workdir)
    result = stage.exec(
        ["cargo", "build", "--release"],
        env=profile.toolchain_env(),
        workdir=profile.source_workdir,
        timeout=profile.build_timeout,
    )
    if result.exit_code == 124:
        raise CompilationError(f"build timed out after {profile.build_timeout}s", step=STEP)
    if not result.ok:
        raise CompilationError(
            f"cargo build exited with {result.exit_code}:\n{result.tail()}",
            step=STEP,
        )

    try:
        data = stage.get_file(profile.build_output_path)
    except (FileNotFoundError, IsADirectoryError):
        raise CompilationError(
            f"build succeeded but produced no binary at {profile.build_output_path}",
            step=STEP,
        ) from None
    except OSError as e:
        raise CompilationError(f"could not read back {profile.build_output_path}: {e}", step=STEP) from e

    is_exec, elf_meta = inspect_elf(data)
    if not is_exec:
        raise CompilationError(
            f"{profile.build_output_path} is not an ELF executable "
            f"(type={elf_meta.elf_type or 'unparseable'})",
            step=STEP,
        )

    dest = publish_artifact(data, publish_dir / profile.binary_name)
    artifact = ArtifactMeta(
        name=profile.binary_name,
        host_path=str(dest),
        sha256=hash_bytes(data),
        size_bytes=len(data),
        elf=elf_meta,
        build_duration_ms=result.duration_ms,
    )
    logger.info("Published %s (%d bytes, sha256=%s)", dest, artifact.size_bytes, artifact.sha256[:12])
    return source, artifact
