"""
Packages — thin wrapper over apt inside a stage.

apt itself is treated as opaque: the pipeline only asks it to refresh,
upgrade, install a set, purge leftovers, clean caches, and report what
is installed.
"""
import logging
from typing import Iterable, Mapping, Optional, Set

from node_image.core.stage import ExecResult, Stage
from node_image.errors import PackageInstallError

logger = logging.getLogger(__name__)

CONFOLD = ["-o", "DPkg::Options::=--force-confold"]


class Apt:
    """apt operations against one stage."""

    def __init__(self, stage: Stage, env: Optional[Mapping[str, str]] = None, step: str = "packages"):
        self.stage = stage
        self.env = dict(env or {"DEBIAN_FRONTEND": "noninteractive"})
        self.step = step

    def _run(self, cmd, what: str) -> ExecResult:
        result = self.stage.exec(cmd, env=self.env)
        if not result.ok:
            raise PackageInstallError(
                f"{what} failed (exit {result.exit_code}):\n{result.tail()}",
                step=self.step,
            )
        return result

    def refresh(self) -> None:
        self._run(["apt", "update", "-y"], "apt update")

    def upgrade(self) -> None:
        self._run(["apt", "dist-upgrade", *CONFOLD, "-y"], "apt dist-upgrade")

    def install(self, packages: Iterable[str]) -> None:
        pkgs = list(dict.fromkeys(packages))
        if not pkgs:
            return
        logger.info("[%s] Installing %s", self.stage.role, " ".join(pkgs))
        self._run(
            ["apt", "install", *CONFOLD, "--no-install-recommends", "-y", *pkgs],
            "apt install",
        )

    def purge_unrequired(self) -> None:
        """Remove automatically pulled packages nothing explicitly needs."""
        self._run(
            [
                "apt", "purge", "--auto-remove",
                "-o", "APT::AutoRemove::RecommendsImportant=false", "-y",
            ],
            "apt purge",
        )

    def clean(self) -> None:
        self._run(["apt", "clean"], "apt clean")
        self._run(
            ["find", "/var/lib/apt/lists", "-mindepth", "1", "-delete"],
            "clear apt lists",
        )

    def installed(self) -> Set[str]:
        """Names of packages dpkg reports as installed."""
        result = self._run(
            ["dpkg-query", "-W", "-f=${db:Status-Abbrev}|${Package}\n"],
            "dpkg-query",
        )
        names: Set[str] = set()
        for line in result.stdout.splitlines():
            status, _, name = line.partition("|")
            if status.startswith("ii") and name:
                names.add(name.strip())
        return names

    def provision(self, packages: Iterable[str]) -> None:
        """refresh → upgrade → install, the usual stage setup sequence."""
        self.refresh()
        self.upgrade()
        self.install(packages)
