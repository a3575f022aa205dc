"""
Toolchain provisioner — build packages, installer download, rustup install.

The installer is downloaded on the host with httpx and handed to the
builder stage as a file, run unattended, then deleted.  The toolchain
roots are left world-writable so later build steps running as another
user can still write to them.

Network policy: fixed timeout, no internal retries unless the profile asks
for them (``fetch_retries``), in which case attempts back off
exponentially.  Retrying a whole failed run is the caller's job.
"""
import logging
import time
from typing import Callable, Optional

import httpx

from node_image.core.arch import ToolchainLocator
from node_image.core.packages import Apt
from node_image.core.stage import Stage
from node_image.errors import InstallerFetchError, ToolchainInstallError
from node_image.io.schema import ToolchainIdentity, hash_bytes
from node_image.policy.profile import PipelineProfile

logger = logging.getLogger(__name__)

STEP = "install_toolchain"
INSTALLER_DIR = "/tmp"


def fetch_installer(
    url: str,
    timeout: float = 300.0,
    retries: int = 0,
    backoff: float = 2.0,
    client: Optional[httpx.Client] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> bytes:
    """
    Download the installer and return its bytes.

    Raises InstallerFetchError (retryable) once ``1 + retries`` attempts
    have failed.
    """
    own_client = client is None
    if own_client:
        client = httpx.Client(timeout=timeout, follow_redirects=True)

    attempts = 1 + max(retries, 0)
    last_error: Optional[Exception] = None
    try:
        for attempt in range(attempts):
            if attempt:
                delay = backoff * (2 ** (attempt - 1))
                logger.warning("Retrying installer fetch in %.1fs (attempt %d/%d)", delay, attempt + 1, attempts)
                sleep(delay)
            try:
                resp = client.get(url)
                resp.raise_for_status()
            except httpx.HTTPError as e:
                last_error = e
                logger.error("Installer fetch failed: %s: %s", url, e)
                continue
            if not resp.content:
                last_error = ValueError("empty response body")
                logger.error("Installer fetch returned an empty body: %s", url)
                continue
            logger.info("Fetched installer %s (%d bytes)", url, len(resp.content))
            return resp.content
    finally:
        if own_client:
            client.close()

    raise InstallerFetchError(
        f"could not fetch {url} after {attempts} attempt(s): {last_error}",
        step=STEP,
    )


def _version_line(stage: Stage, profile: PipelineProfile, tool: str) -> str:
    result = stage.exec([tool, "--version"], env=profile.toolchain_env())
    if not result.ok:
        raise ToolchainInstallError(
            f"`{tool} --version` failed after install (exit {result.exit_code}):\n{result.tail()}",
            step=STEP,
        )
    lines = result.stdout.strip().splitlines()
    return lines[0] if lines else "unknown"


def install_toolchain(
    stage: Stage,
    profile: PipelineProfile,
    locator: ToolchainLocator,
    installer: bytes,
) -> ToolchainIdentity:
    """Run the downloaded installer inside *stage* and report what it installed."""
    env = profile.toolchain_env()
    installer_path = f"{INSTALLER_DIR}/{profile.installer_name}"

    try:
        stage.put_file(installer_path, installer, mode=0o755)
    except OSError as e:
        raise ToolchainInstallError(f"could not place installer at {installer_path}: {e}", step=STEP) from e
    if not stage.is_executable(installer_path):
        raise ToolchainInstallError(f"{installer_path} is not executable", step=STEP)

    logger.info("[%s] Installing %s toolchain for %s", stage.role, profile.toolchain_channel, locator.rust_target)
    result = stage.exec(
        [
            installer_path, "-y", "--no-modify-path",
            "--default-toolchain", profile.toolchain_channel,
        ],
        env=env,
    )
    # The installer is discarded whether or not it succeeded.
    stage.exec(["rm", "-f", installer_path])
    if not result.ok:
        raise ToolchainInstallError(
            f"installer exited with {result.exit_code}:\n{result.tail()}",
            step=STEP,
        )

    chmod = stage.exec(["chmod", "-R", "a+w", profile.rustup_home, profile.cargo_home])
    if not chmod.ok:
        raise ToolchainInstallError(
            f"could not open toolchain roots for writing:\n{chmod.tail()}",
            step=STEP,
        )

    identity = ToolchainIdentity(
        channel=profile.toolchain_channel,
        rustup_version=_version_line(stage, profile, "rustup"),
        cargo_version=_version_line(stage, profile, "cargo"),
        rustc_version=_version_line(stage, profile, "rustc"),
        installer_sha256=hash_bytes(installer),
    )
    logger.info("[%s] Toolchain ready: %s", stage.role, identity.rustc_version)
    return identity


def provision_toolchain(
    stage: Stage,
    profile: PipelineProfile,
    locator: ToolchainLocator,
    http_client: Optional[httpx.Client] = None,
) -> ToolchainIdentity:
    """Build packages → installer download → unattended install."""
    Apt(stage, env=profile.toolchain_env(), step=STEP).provision(profile.build_packages)

    installer = fetch_installer(
        locator.installer_url,
        timeout=profile.fetch_timeout,
        retries=profile.fetch_retries,
        backoff=profile.fetch_backoff,
        client=http_client,
    )
    return install_toolchain(stage, profile, locator, installer)
