"""
Schema — Pydantic models for the pipeline receipt.

One receipt per run: pipeline_receipt.json.  It records the state
trajectory, what was resolved, which toolchain built what source, the
published binary, the runtime layout, the committed image, and the
first failure if there was one.

Runtime contract fields (present in every receipt):
  package_name, pipeline_version, schema_version, profile_id.
"""
from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from node_image import PIPELINE_NAME, PIPELINE_VERSION, SCHEMA_VERSION


# ── Run trajectory ───────────────────────────────────────────────────────────

class StateTransition(BaseModel):
    state: str
    at: str


class ErrorInfo(BaseModel):
    """First (and only) failure of a run."""
    kind: str                # CONFIGURATION | PROVISIONING | COMPILATION | ASSEMBLY
    step: Optional[str] = None
    message: str
    retryable: bool = False


class RunInfo(BaseModel):
    run_id: str
    created_at: str
    finished_at: Optional[str] = None
    state: str = "START"
    transitions: List[StateTransition] = Field(default_factory=list)


# ── Builder stage ────────────────────────────────────────────────────────────

class TargetInfo(BaseModel):
    """Resolved architecture and where its installer comes from."""
    machine_id: str
    arch: str
    rust_target: str
    installer_url: str
    platform: str


class ToolchainIdentity(BaseModel):
    """Version lines reported by the installed toolchain."""
    channel: str
    rustup_version: str
    cargo_version: str
    rustc_version: str
    installer_sha256: Optional[str] = None


class SourceIdentity(BaseModel):
    """Snapshot of the source tree copied into the builder."""
    root: str
    workdir: str
    file_count: int
    snapshot_sha256: str   # over sorted (path, content) pairs
    manifest_sha256: Optional[str] = None   # Cargo.toml
    lockfile_sha256: Optional[str] = None   # Cargo.lock, if present


class ElfMeta(BaseModel):
    elf_type: str = ""     # ET_EXEC | ET_DYN
    machine: str = ""      # EM_X86_64 | EM_AARCH64
    build_id: Optional[str] = None


class ArtifactMeta(BaseModel):
    """The compiled binary as published on the host."""
    name: str
    host_path: str
    sha256: str
    size_bytes: int
    elf: ElfMeta = Field(default_factory=ElfMeta)
    build_duration_ms: int = 0


# ── Runtime stage ────────────────────────────────────────────────────────────

class GateReport(BaseModel):
    """Verdict over the runtime stage's installed package set."""
    verdict: str              # ACCEPT | WARN | REJECT
    reasons: List[str] = Field(default_factory=list)
    requested_packages: List[str] = Field(default_factory=list)
    added_packages: List[str] = Field(default_factory=list)
    build_only_packages: List[str] = Field(default_factory=list)
    base_package_count: int = 0


class LayoutEntry(BaseModel):
    path: str
    kind: str                 # file | dir | symlink
    mode: str                 # octal string, e.g. "755"
    sha256: Optional[str] = None
    link_target: Optional[str] = None


class RuntimeLayout(BaseModel):
    """Deterministic manifest of what the runtime contract placed."""
    entries: List[LayoutEntry] = Field(default_factory=list)
    volume: str
    command: List[str]

    def entry(self, path: str) -> Optional[LayoutEntry]:
        for e in self.entries:
            if e.path == path:
                return e
        return None


class ImageInfo(BaseModel):
    image_id: str
    ref: str
    volumes: List[str] = Field(default_factory=list)
    command: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    labels: Dict[str, str] = Field(default_factory=dict)


# ── Top-level receipt ────────────────────────────────────────────────────────

class PipelineReceipt(BaseModel):
    """Single authoritative record of one pipeline run."""

    package_name: str = PIPELINE_NAME
    pipeline_version: str = PIPELINE_VERSION
    schema_version: str = SCHEMA_VERSION
    profile_id: str

    run: RunInfo
    target: Optional[TargetInfo] = None
    toolchain: Optional[ToolchainIdentity] = None
    source: Optional[SourceIdentity] = None
    binary: Optional[ArtifactMeta] = None
    entrypoint_warnings: List[str] = Field(default_factory=list)
    runtime_gate: Optional[GateReport] = None
    layout: Optional[RuntimeLayout] = None
    image: Optional[ImageInfo] = None
    error: Optional[ErrorInfo] = None

    @property
    def state(self) -> str:
        return self.run.state

    @property
    def succeeded(self) -> bool:
        return self.run.state == "READY"


# =============================================================================
# Helpers
# =============================================================================

def hash_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def hash_file(path: Path) -> str:
    """SHA-256 of a file."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()


def now_iso() -> str:
    """Current UTC time as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()
