"""
Profile — immutable pipeline configuration.

The profile carries every path, package set and name the steps consume,
so the steps themselves read no ambient environment.  Changing the base
image or the installed package sets is a profile change, not a code change.
"""
from dataclasses import dataclass
from typing import Dict, FrozenSet, Tuple

DEFAULT_BUILD_PACKAGES: Tuple[str, ...] = (
    "ca-certificates",
    "gcc",
    "libc6-dev",
    "wget",
    "build-essential",
    "clang",
    "libssl-dev",
    "make",
    "pkg-config",
    "xz-utils",
)

DEFAULT_RUNTIME_PACKAGES: Tuple[str, ...] = ("ca-certificates",)


@dataclass(frozen=True)
class PipelineProfile:
    """Describes what gets built, where it lands and how stages are set up."""

    # Identity
    profile_id: str

    # Stages
    base_image: str = "ubuntu:24.04"
    build_packages: Tuple[str, ...] = DEFAULT_BUILD_PACKAGES
    runtime_packages: Tuple[str, ...] = DEFAULT_RUNTIME_PACKAGES

    # Toolchain
    rustup_home: str = "/usr/local/rustup"
    cargo_home: str = "/usr/local/cargo"
    toolchain_channel: str = "stable"
    dist_base_url: str = "https://static.rust-lang.org/rustup/dist"
    installer_name: str = "rustup-init"

    # Network policy for the installer download
    fetch_timeout: float = 300.0
    fetch_retries: int = 0
    fetch_backoff: float = 2.0

    # Compilation
    source_workdir: str = "/usr/src/snarkOS"
    binary_name: str = "snarkos"
    source_excludes: FrozenSet[str] = frozenset({".git", "target"})
    build_timeout: int = 3600

    # Runtime layout
    install_root: str = "/aleo"
    entrypoint_name: str = "entrypoint.sh"
    config_alias: str = "/root/.aleo"

    # Output image
    image_repository: str = "snarkos"
    image_tag: str = "latest"

    @classmethod
    def default(cls) -> "PipelineProfile":
        """The stock profile: ubuntu 24.04, stable Rust, snarkos under /aleo."""
        return cls(profile_id="ubuntu-24.04-rust-stable-snarkos")

    @classmethod
    def from_settings(cls, settings) -> "PipelineProfile":
        """Build a profile from a ``PipelineSettings`` instance."""
        return cls(
            profile_id=settings.profile_id,
            base_image=settings.base_image,
            build_packages=tuple(settings.build_packages),
            runtime_packages=tuple(settings.runtime_packages),
            toolchain_channel=settings.toolchain_channel,
            dist_base_url=settings.dist_base_url,
            fetch_timeout=settings.fetch_timeout,
            fetch_retries=settings.fetch_retries,
            fetch_backoff=settings.fetch_backoff,
            binary_name=settings.binary_name,
            build_timeout=settings.build_timeout,
            image_repository=settings.image_repository,
            image_tag=settings.image_tag,
        )

    # ── derived paths ────────────────────────────────────────────────────

    @property
    def bin_dir(self) -> str:
        return f"{self.install_root}/bin"

    @property
    def data_dir(self) -> str:
        return f"{self.install_root}/data"

    @property
    def binary_path(self) -> str:
        return f"{self.bin_dir}/{self.binary_name}"

    @property
    def entrypoint_path(self) -> str:
        return f"{self.install_root}/{self.entrypoint_name}"

    @property
    def build_output_path(self) -> str:
        """Where ``cargo build --release`` leaves the binary in the builder."""
        return f"{self.source_workdir}/target/release/{self.binary_name}"

    @property
    def image_ref(self) -> str:
        return f"{self.image_repository}:{self.image_tag}"

    def toolchain_env(self) -> Dict[str, str]:
        """Environment for every builder-stage command."""
        return {
            "RUSTUP_HOME": self.rustup_home,
            "CARGO_HOME": self.cargo_home,
            "PATH": (
                f"{self.cargo_home}/bin:/usr/local/sbin:/usr/local/bin:"
                "/usr/sbin:/usr/bin:/sbin:/bin"
            ),
            "DEBIAN_FRONTEND": "noninteractive",
        }

    def runtime_env(self) -> Dict[str, str]:
        """Environment for runtime-stage commands and the committed image."""
        return {"DEBIAN_FRONTEND": "noninteractive"}
