"""
Verdict — ACCEPT / WARN / REJECT gates over the assembled runtime stage.

Two gates:
  1. Package gate (gate_runtime_packages) — did anything build-only leak
     into the runtime stage?
  2. Layout gate (gate_layout) — does the placed filesystem honour the
     runtime contract?

Gates look only at observed facts and the profile; they never touch a stage.
"""
from enum import Enum, unique
from typing import Iterable, List, Set, Tuple

from node_image.io.schema import GateReport, RuntimeLayout
from node_image.policy.profile import PipelineProfile


@unique
class Verdict(str, Enum):
    ACCEPT = "ACCEPT"
    WARN = "WARN"
    REJECT = "REJECT"


@unique
class PackageRejectReason(str, Enum):
    BUILD_PACKAGE_PRESENT = "BUILD_PACKAGE_PRESENT"
    TOOLCHAIN_ROOT_PRESENT = "TOOLCHAIN_ROOT_PRESENT"
    REQUESTED_PACKAGE_MISSING = "REQUESTED_PACKAGE_MISSING"


@unique
class PackageWarnReason(str, Enum):
    EXTRA_RUNTIME_PACKAGE = "EXTRA_RUNTIME_PACKAGE"


@unique
class LayoutRejectReason(str, Enum):
    BINARY_MISSING = "BINARY_MISSING"
    BINARY_NOT_EXECUTABLE = "BINARY_NOT_EXECUTABLE"
    ENTRYPOINT_MISSING = "ENTRYPOINT_MISSING"
    ENTRYPOINT_NOT_EXECUTABLE = "ENTRYPOINT_NOT_EXECUTABLE"
    DATA_DIR_MISSING = "DATA_DIR_MISSING"
    ALIAS_MISSING = "ALIAS_MISSING"
    ALIAS_WRONG_TARGET = "ALIAS_WRONG_TARGET"
    COMMAND_MISMATCH = "COMMAND_MISMATCH"


# Package names that only ever belong in a build environment.
BUILD_ONLY_NAMES = frozenset({
    "build-essential", "make", "pkg-config", "binutils",
    "rustc", "cargo", "wget", "xz-utils",
})
BUILD_ONLY_PREFIXES = ("gcc", "g++", "cpp", "clang", "llvm", "libclang")


def is_build_only(package: str, profile: PipelineProfile) -> bool:
    """True if *package* is build tooling rather than something the runtime needs."""
    if package in profile.runtime_packages:
        return False
    if package in profile.build_packages:
        return True
    if package in BUILD_ONLY_NAMES or package.endswith("-dev"):
        return True
    return package.startswith(BUILD_ONLY_PREFIXES)


# ── Package gate ─────────────────────────────────────────────────────────────

def gate_runtime_packages(
    base: Iterable[str],
    final: Iterable[str],
    profile: PipelineProfile,
    toolchain_present: bool = False,
) -> GateReport:
    """
    Compare the runtime stage's package set before and after setup.

    Only *added* packages are judged; whatever the base image ships is the
    baseline.  Any build-only addition or a toolchain root → REJECT.
    Additions beyond the requested set (their dependency closure) → WARN.
    """
    base_set: Set[str] = set(base)
    final_set: Set[str] = set(final)
    added = sorted(final_set - base_set)
    requested = sorted(set(profile.runtime_packages))

    rejects: List[str] = []
    warns: List[str] = []

    build_only = [p for p in added if is_build_only(p, profile)]
    if build_only:
        rejects.append(PackageRejectReason.BUILD_PACKAGE_PRESENT.value)
    if toolchain_present:
        rejects.append(PackageRejectReason.TOOLCHAIN_ROOT_PRESENT.value)
    if any(p not in final_set for p in requested):
        rejects.append(PackageRejectReason.REQUESTED_PACKAGE_MISSING.value)

    extra = [p for p in added if p not in requested and p not in build_only]
    if extra:
        warns.append(PackageWarnReason.EXTRA_RUNTIME_PACKAGE.value)

    if rejects:
        verdict, reasons = Verdict.REJECT, rejects + warns
    elif warns:
        verdict, reasons = Verdict.WARN, warns
    else:
        verdict, reasons = Verdict.ACCEPT, []

    return GateReport(
        verdict=verdict.value,
        reasons=reasons,
        requested_packages=requested,
        added_packages=added,
        build_only_packages=build_only,
        base_package_count=len(base_set),
    )


# ── Layout gate ──────────────────────────────────────────────────────────────

def gate_layout(layout: RuntimeLayout, profile: PipelineProfile) -> Tuple[Verdict, List[str]]:
    """
    Check the runtime contract: one executable binary, one executable
    entrypoint, the data directory, and the alias pointing into it.
    """
    reasons: List[str] = []

    binary = layout.entry(profile.binary_path)
    if binary is None or binary.kind != "file":
        reasons.append(LayoutRejectReason.BINARY_MISSING.value)
    elif not int(binary.mode, 8) & 0o111:
        reasons.append(LayoutRejectReason.BINARY_NOT_EXECUTABLE.value)

    entry = layout.entry(profile.entrypoint_path)
    if entry is None or entry.kind != "file":
        reasons.append(LayoutRejectReason.ENTRYPOINT_MISSING.value)
    elif not int(entry.mode, 8) & 0o111:
        reasons.append(LayoutRejectReason.ENTRYPOINT_NOT_EXECUTABLE.value)

    data = layout.entry(profile.data_dir)
    if data is None or data.kind != "dir":
        reasons.append(LayoutRejectReason.DATA_DIR_MISSING.value)

    alias = layout.entry(profile.config_alias)
    if alias is None or alias.kind != "symlink":
        reasons.append(LayoutRejectReason.ALIAS_MISSING.value)
    elif alias.link_target != profile.data_dir:
        reasons.append(LayoutRejectReason.ALIAS_WRONG_TARGET.value)

    if layout.command != [profile.entrypoint_path]:
        reasons.append(LayoutRejectReason.COMMAND_MISMATCH.value)

    if reasons:
        return Verdict.REJECT, reasons
    return Verdict.ACCEPT, []
