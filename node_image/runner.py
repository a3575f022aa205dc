"""
Pipeline runner — top-level orchestration: source tree → runtime image + receipt.

Each step is a function ``(ctx, receipt) -> receipt``: it reads what it
needs from the immutable profile and the receipt so far, performs its side
effects in the stage it owns, and returns an updated copy of the receipt or
raises a ``PipelineError``.  ``run_pipeline`` chains the steps, moves the
run to FAILED on the first error, and always runs cleanup.

    python -m node_image.runner ./snarkOS --arch amd64 --tag v3.0.0
"""
from __future__ import annotations

import argparse
import dataclasses
import logging
import shutil
import sys
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Type

import httpx

from node_image.core.arch import ToolchainLocator, resolve_locator
from node_image.core.assembler import assemble_runtime
from node_image.core.compiler import catalog_source, compile_source
from node_image.core.provision import provision_toolchain
from node_image.core.stage import DockerStageFactory, Stage
from node_image.core.state import PipelineState, check_transition
from node_image.errors import (
    AssemblyError,
    CompilationError,
    ConfigurationError,
    PipelineError,
    ProvisioningError,
)
from node_image.io.dockerfile import render_dockerfile
from node_image.io.schema import (
    ErrorInfo,
    PipelineReceipt,
    RunInfo,
    StateTransition,
    TargetInfo,
    now_iso,
)
from node_image.io.writer import write_receipt
from node_image.policy.profile import PipelineProfile

logger = logging.getLogger(__name__)


@dataclass
class RunContext:
    """Live handles for one run.  Everything configurable lives in ``profile``."""
    profile: PipelineProfile
    source_dir: Path
    output_dir: Path
    stage_factory: object
    machine_id: Optional[str] = None
    http_client: Optional[httpx.Client] = None
    locator: Optional[ToolchainLocator] = None
    builder: Optional[Stage] = None
    runtime: Optional[Stage] = None

    @property
    def publish_dir(self) -> Path:
        return self.output_dir / "bin"


Step = Callable[[RunContext, PipelineReceipt], PipelineReceipt]


# ── State bookkeeping ────────────────────────────────────────────────────────

def transition(receipt: PipelineReceipt, target: PipelineState) -> PipelineReceipt:
    """Return a copy of *receipt* moved to *target*, with the move recorded."""
    current = PipelineState(receipt.run.state)
    check_transition(current, target)
    run = receipt.run.model_copy(update={
        "state": target.value,
        "transitions": receipt.run.transitions + [
            StateTransition(state=target.value, at=now_iso())
        ],
    })
    return receipt.model_copy(update={"run": run})


def fail(receipt: PipelineReceipt, error: PipelineError) -> PipelineReceipt:
    failed = transition(receipt, PipelineState.FAILED)
    return failed.model_copy(update={
        "error": ErrorInfo(
            kind=error.kind.value,
            step=error.step,
            message=error.message,
            retryable=error.retryable,
        ),
    })


# ── Steps ────────────────────────────────────────────────────────────────────

def resolve_toolchain(ctx: RunContext, receipt: PipelineReceipt) -> PipelineReceipt:
    """Map the machine identifier to an installer locator.  No I/O beyond that."""
    machine_id = ctx.machine_id
    if machine_id is None:
        try:
            machine_id = ctx.stage_factory.machine_id()
        except (AttributeError, OSError) as e:
            raise ConfigurationError(
                f"no machine identifier given and the Docker daemon could not be asked: {e}",
                step="resolve_toolchain",
            ) from e
        logger.info("Docker daemon reports architecture %r", machine_id)

    locator = resolve_locator(machine_id, ctx.profile.dist_base_url, ctx.profile.installer_name)
    ctx.locator = locator
    return receipt.model_copy(update={
        "target": TargetInfo(
            machine_id=machine_id,
            arch=locator.arch.value,
            rust_target=locator.rust_target,
            installer_url=locator.installer_url,
            platform=locator.platform,
        ),
    })


def install_toolchain(ctx: RunContext, receipt: PipelineReceipt) -> PipelineReceipt:
    """Start the builder stage and provision the toolchain in it."""
    assert ctx.locator is not None
    try:
        ctx.builder = ctx.stage_factory.start("builder", ctx.profile.base_image, ctx.locator.platform)
    except OSError as e:
        raise ProvisioningError(str(e), step="install_toolchain") from e

    identity = provision_toolchain(ctx.builder, ctx.profile, ctx.locator, ctx.http_client)
    return receipt.model_copy(update={"toolchain": identity})


def compile_sources(ctx: RunContext, receipt: PipelineReceipt) -> PipelineReceipt:
    assert ctx.builder is not None
    source, artifact = compile_source(
        ctx.builder,
        ctx.profile,
        ctx.source_dir,
        ctx.publish_dir,
        source=receipt.source,
    )
    return receipt.model_copy(update={"source": source, "binary": artifact})


def assemble_image(ctx: RunContext, receipt: PipelineReceipt) -> PipelineReceipt:
    """Fresh runtime stage from the pristine base image; only artifacts cross over."""
    assert ctx.builder is not None and receipt.binary is not None
    platform = ctx.locator.platform if ctx.locator else None
    try:
        ctx.runtime = ctx.stage_factory.start("runtime", ctx.profile.base_image, platform)
    except OSError as e:
        raise AssemblyError(str(e), step="assemble_runtime") from e

    result = assemble_runtime(
        ctx.builder,
        ctx.runtime,
        ctx.profile,
        receipt.binary,
        source=receipt.source,
        toolchain=receipt.toolchain,
    )
    return receipt.model_copy(update={
        "runtime_gate": result.gate,
        "layout": result.layout,
        "image": result.image,
        "entrypoint_warnings": result.entrypoint_warnings,
    })


def finalize(ctx: RunContext, receipt: PipelineReceipt) -> PipelineReceipt:
    if receipt.image is None:
        raise AssemblyError("no image was committed", step="finalize")
    logger.info("Image ready: %s (%s)", receipt.image.ref, receipt.image.image_id)
    return receipt


STEPS: List[Tuple[PipelineState, Step]] = [
    (PipelineState.TOOLCHAIN_RESOLVED, resolve_toolchain),
    (PipelineState.TOOLCHAIN_INSTALLED, install_toolchain),
    (PipelineState.SOURCE_COMPILED, compile_sources),
    (PipelineState.RUNTIME_ASSEMBLED, assemble_image),
    (PipelineState.READY, finalize),
]

# Error type for anything unexpected a step lets escape, keyed by its target state.
STEP_ERRORS: Dict[PipelineState, Type[PipelineError]] = {
    PipelineState.TOOLCHAIN_RESOLVED: ConfigurationError,
    PipelineState.TOOLCHAIN_INSTALLED: ProvisioningError,
    PipelineState.SOURCE_COMPILED: CompilationError,
    PipelineState.RUNTIME_ASSEMBLED: AssemblyError,
    PipelineState.READY: AssemblyError,
}


# ── Cleanup ──────────────────────────────────────────────────────────────────

def cleanup(ctx: RunContext, receipt: Optional[PipelineReceipt]) -> None:
    """
    Remove both stages.  On anything but READY, also remove the run's
    published binaries: a failed run leaves nothing a later step could trust.
    """
    for stage in (ctx.runtime, ctx.builder):
        if stage is None:
            continue
        try:
            stage.remove()
        except Exception as e:
            logger.warning("Could not remove %s stage: %s", stage.role, e)
    ctx.runtime = ctx.builder = None

    if receipt is None or not receipt.succeeded:
        if ctx.publish_dir.exists():
            shutil.rmtree(ctx.publish_dir)
            logger.info("Removed unpublished artifacts in %s", ctx.publish_dir)


# ── Entry point ──────────────────────────────────────────────────────────────

def run_pipeline(
    source_dir: Path,
    profile: Optional[PipelineProfile] = None,
    machine_id: Optional[str] = None,
    output_root: Optional[Path] = None,
    run_id: Optional[str] = None,
    stage_factory=None,
    http_client: Optional[httpx.Client] = None,
) -> PipelineReceipt:
    """
    Run the whole pipeline once, from a clean start.

    Parameters
    ----------
    source_dir : Path
        Host source tree (must contain ``Cargo.toml``).
    profile : PipelineProfile, optional
        Defaults to ``PipelineProfile.default()``.
    machine_id : str, optional
        Target architecture identifier; asked of the Docker daemon if None.
    output_root : Path, optional
        Receipt and published binary go under ``<output_root>/<run_id>``.
        Defaults to ``./node_image_runs``.
    stage_factory : optional
        Anything with ``start(role, image, platform) -> Stage``.
        Defaults to ``DockerStageFactory()``.

    Returns
    -------
    PipelineReceipt — state is READY or FAILED.
    """
    if profile is None:
        profile = PipelineProfile.default()
    if stage_factory is None:
        stage_factory = DockerStageFactory()
    run_id = run_id or str(uuid.uuid4())
    output_root = output_root or Path("node_image_runs")

    ctx = RunContext(
        profile=profile,
        source_dir=Path(source_dir),
        output_dir=output_root / run_id,
        stage_factory=stage_factory,
        machine_id=machine_id,
        http_client=http_client,
    )
    receipt = PipelineReceipt(
        profile_id=profile.profile_id,
        run=RunInfo(
            run_id=run_id,
            created_at=now_iso(),
            transitions=[StateTransition(state=PipelineState.START.value, at=now_iso())],
        ),
    )
    logger.info("Pipeline run %s: %s → %s", run_id, source_dir, profile.image_ref)

    try:
        # Validate the source before touching any stage or the network.
        try:
            receipt = receipt.model_copy(update={
                "source": catalog_source(ctx.source_dir, profile.source_workdir, profile.source_excludes),
            })
        except PipelineError as e:
            logger.error("Source check failed: %s", e)
            receipt = fail(receipt, e)

        for target, step in STEPS:
            if PipelineState(receipt.run.state).is_terminal:
                break
            try:
                receipt = step(ctx, receipt)
            except PipelineError as e:
                logger.error("Step %s failed: %s", step.__name__, e)
                receipt = fail(receipt, e)
                break
            except Exception as e:
                logger.error("Step %s raised %s", step.__name__, type(e).__name__, exc_info=True)
                error = STEP_ERRORS[target](f"{type(e).__name__}: {e}", step=step.__name__)
                receipt = fail(receipt, error)
                break
            receipt = transition(receipt, target)
            logger.info("Run %s → %s", run_id, target.value)
    finally:
        cleanup(ctx, receipt)

    receipt = receipt.model_copy(update={
        "run": receipt.run.model_copy(update={"finished_at": now_iso()}),
    })
    write_receipt(receipt, ctx.output_dir)
    return receipt


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="node_image — build a minimal runtime image for a Cargo project",
    )
    parser.add_argument("source_dir", type=Path, help="Source tree containing Cargo.toml")
    parser.add_argument(
        "--arch",
        default=None,
        help="Target architecture (amd64, arm64, x86_64, aarch64); default: ask the Docker daemon",
    )
    parser.add_argument("--tag", default=None, help="Image tag (default: profile tag)")
    parser.add_argument(
        "-o", "--output-dir",
        type=Path,
        default=None,
        help="Directory for run receipts and published binaries",
    )
    parser.add_argument(
        "--emit-dockerfile",
        type=Path,
        default=None,
        metavar="PATH",
        help="Write the equivalent two-stage Dockerfile to PATH and exit",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    from node_image.config import get_settings

    settings = get_settings()
    profile = PipelineProfile.from_settings(settings)
    if args.tag:
        profile = dataclasses.replace(profile, image_tag=args.tag)

    if args.emit_dockerfile:
        args.emit_dockerfile.write_text(render_dockerfile(profile))
        print(f"Dockerfile written to {args.emit_dockerfile}")
        return 0

    if not args.source_dir.is_dir():
        logger.error("Source directory not found: %s", args.source_dir)
        return 2

    receipt = run_pipeline(
        args.source_dir,
        profile=profile,
        machine_id=args.arch or settings.machine_id,
        output_root=args.output_dir or settings.artifacts_path,
    )

    print(f"Run:   {receipt.run.run_id}")
    print(f"State: {receipt.run.state}")
    if receipt.image:
        print(f"Image: {receipt.image.ref} ({receipt.image.image_id})")
    if receipt.error:
        print(f"Error: [{receipt.error.kind}] {receipt.error.message}", file=sys.stderr)
    return 0 if receipt.succeeded else 1


if __name__ == "__main__":
    sys.exit(main())
