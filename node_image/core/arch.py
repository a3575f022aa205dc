"""
Architecture resolver — machine identifier → toolchain distribution locator.

The supported set is a closed enum.  Every member must have a table
entry (checked at import), and anything that does not parse to a member
is a hard configuration error: there is no default architecture.
"""
import logging
from dataclasses import dataclass
from enum import Enum, unique
from typing import Dict, List, Optional

from node_image.errors import UnsupportedArchitectureError

logger = logging.getLogger(__name__)


@unique
class Arch(str, Enum):
    """Supported CPU families, named the way dpkg names them."""
    AMD64 = "amd64"
    ARM64 = "arm64"


# Kernel / Docker daemon spellings of the same families.
_ALIASES: Dict[str, Arch] = {
    "x86_64": Arch.AMD64,
    "x86-64": Arch.AMD64,
    "aarch64": Arch.ARM64,
}

RUST_TARGETS: Dict[Arch, str] = {
    Arch.AMD64: "x86_64-unknown-linux-gnu",
    Arch.ARM64: "aarch64-unknown-linux-gnu",
}

_missing = [a.value for a in Arch if a not in RUST_TARGETS]
if _missing:
    raise ImportError(f"RUST_TARGETS has no entry for: {', '.join(_missing)}")


@dataclass(frozen=True)
class ToolchainLocator:
    """Where to fetch the toolchain installer for one architecture."""
    arch: Arch
    rust_target: str
    installer_url: str

    @property
    def platform(self) -> str:
        """Docker platform string for stages built for this architecture."""
        return f"linux/{self.arch.value}"


def supported_identifiers() -> List[str]:
    return [a.value for a in Arch]


def parse_arch(machine_id: Optional[str]) -> Arch:
    """
    Parse a machine identifier into an ``Arch``.

    Accepts dpkg names (``amd64``), kernel names (``x86_64``) and
    dpkg-style prefixed names (``musl-linux-arm64``), case-insensitive.
    """
    raw = (machine_id or "").strip()
    if not raw:
        raise UnsupportedArchitectureError(raw, supported_identifiers())

    key = raw.lower()
    if key in _ALIASES:
        return _ALIASES[key]
    try:
        return Arch(key)
    except ValueError:
        pass

    # dpkg may report "<abi>-<os>-<cpu>"; only the last component names the CPU.
    suffix = key.rsplit("-", 1)[-1]
    if suffix in _ALIASES:
        return _ALIASES[suffix]
    try:
        return Arch(suffix)
    except ValueError:
        raise UnsupportedArchitectureError(raw, supported_identifiers()) from None


def locator_for(arch: Arch, dist_base_url: str, installer_name: str = "rustup-init") -> ToolchainLocator:
    rust_target = RUST_TARGETS[arch]
    url = f"{dist_base_url.rstrip('/')}/{rust_target}/{installer_name}"
    return ToolchainLocator(arch=arch, rust_target=rust_target, installer_url=url)


def resolve_locator(
    machine_id: Optional[str],
    dist_base_url: str,
    installer_name: str = "rustup-init",
) -> ToolchainLocator:
    """Resolve a machine identifier to its installer locator, or fail fast."""
    arch = parse_arch(machine_id)
    locator = locator_for(arch, dist_base_url, installer_name)
    logger.info("Resolved %r → %s (%s)", machine_id, arch.value, locator.rust_target)
    return locator


def detect_machine_id(client) -> str:
    """
    Architecture reported by the Docker daemon, e.g. ``x86_64``.

    Local query only; nothing is pulled or downloaded.
    """
    return str(client.info().get("Architecture", ""))
