"""
Stage — one isolated build filesystem plus command execution.

A stage is a container started from the base image.  Builder and runtime
stages never share a filesystem; the only way bytes move between them is
``get_file`` on one and ``put_file`` on the other.

``Stage`` is the interface the pipeline steps talk to.  ``DockerStage``
implements it on top of the Docker SDK.
"""
from __future__ import annotations

import io
import logging
import shlex
import tarfile
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence

import docker
from docker.errors import DockerException, ImageNotFound, NotFound

from node_image.core.arch import detect_machine_id

logger = logging.getLogger(__name__)

# Fixed archive metadata so identical inputs give identical layers.
_ARCHIVE_MTIME = 0


@dataclass(frozen=True)
class ExecResult:
    """Outcome of one command run inside a stage."""
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def tail(self, lines: int = 40) -> str:
        """Last lines of stderr (or stdout if stderr is empty) for diagnostics."""
        text = self.stderr.strip() or self.stdout.strip()
        return "\n".join(text.splitlines()[-lines:])


@dataclass(frozen=True)
class PathInfo:
    """What lives at a path inside a stage."""
    kind: str              # "file" | "dir" | "symlink" | "other"
    mode: int              # permission bits, e.g. 0o755
    link_target: Optional[str] = None


class Stage(ABC):
    """An isolated filesystem namespace the pipeline can run commands in."""

    role: str = "stage"

    @abstractmethod
    def exec(
        self,
        cmd: Sequence[str],
        env: Optional[Mapping[str, str]] = None,
        workdir: Optional[str] = None,
        timeout: Optional[int] = None,
    ) -> ExecResult:
        """Run *cmd* and return its result; never raises on non-zero exit."""

    @abstractmethod
    def put_file(self, path: str, data: bytes, mode: int = 0o644) -> None:
        """Write *data* to *path*; the parent directory must exist.  Raises OSError."""

    @abstractmethod
    def put_tree(self, src: Path, dest: str, excludes: Iterable[str] = ()) -> None:
        """Copy the host directory *src* to *dest* (created if missing)."""

    @abstractmethod
    def get_file(self, path: str) -> bytes:
        """Read a regular file; FileNotFoundError if absent, OSError on backend failure."""

    @abstractmethod
    def make_dirs(self, *paths: str) -> None:
        ...

    @abstractmethod
    def symlink(self, target: str, link: str) -> None:
        ...

    @abstractmethod
    def path_info(self, path: str) -> Optional[PathInfo]:
        """Describe *path* without following a final symlink; None if absent."""

    @abstractmethod
    def is_writable(self, path: str) -> bool:
        ...

    @abstractmethod
    def is_executable(self, path: str) -> bool:
        ...

    @abstractmethod
    def commit(self, repository: str, tag: str, changes: List[str]) -> str:
        """Snapshot the stage as an image; returns the image id."""

    @abstractmethod
    def remove(self) -> None:
        """Discard the stage and everything in it."""


# =============================================================================
# Archive helpers
# =============================================================================

def _tar_info(name: str, size: int, mode: int) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name=name)
    info.size = size
    info.mode = mode
    info.mtime = _ARCHIVE_MTIME
    info.uid = info.gid = 0
    info.uname = info.gname = "root"
    return info


def single_file_archive(name: str, data: bytes, mode: int) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        tar.addfile(_tar_info(name, len(data), mode), io.BytesIO(data))
    return buf.getvalue()


def tree_archive(src: Path, excludes: FrozenSet[str] = frozenset()) -> bytes:
    """Tar *src* in sorted order, skipping any path component in *excludes*."""

    def _normalize(info: tarfile.TarInfo) -> tarfile.TarInfo:
        info.mtime = _ARCHIVE_MTIME
        info.uid = info.gid = 0
        info.uname = info.gname = "root"
        return info

    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        for path in sorted(src.rglob("*")):
            rel = path.relative_to(src)
            if excludes.intersection(rel.parts):
                continue
            tar.add(str(path), arcname=rel.as_posix(), recursive=False, filter=_normalize)
    return buf.getvalue()


def read_single_file(archive: bytes, path: str) -> bytes:
    with tarfile.open(fileobj=io.BytesIO(archive), mode="r") as tar:
        members = tar.getmembers()
        if not members:
            raise FileNotFoundError(path)
        member = members[0]
        if member.isdir():
            raise IsADirectoryError(path)
        if not member.isfile():
            raise FileNotFoundError(f"{path} is not a regular file")
        fh = tar.extractfile(member)
        if fh is None:
            raise FileNotFoundError(path)
        return fh.read()


_STAT_KINDS = {
    "regular file": "file",
    "regular empty file": "file",
    "directory": "dir",
    "symbolic link": "symlink",
}


# =============================================================================
# Docker implementation
# =============================================================================

class DockerStage(Stage):
    """A stage backed by a long-lived container that idles until removed."""

    def __init__(self, container, role: str):
        self.container = container
        self.role = role

    @property
    def short_id(self) -> str:
        return getattr(self.container, "short_id", "?")

    def exec(
        self,
        cmd: Sequence[str],
        env: Optional[Mapping[str, str]] = None,
        workdir: Optional[str] = None,
        timeout: Optional[int] = None,
    ) -> ExecResult:
        argv = list(cmd)
        if timeout:
            argv = ["timeout", str(timeout)] + argv
        logger.debug("[%s] $ %s", self.role, shlex.join(argv))

        t0 = time.monotonic()
        try:
            result = self.container.exec_run(
                argv,
                environment=dict(env) if env else None,
                workdir=workdir,
                demux=True,
            )
        except DockerException as e:
            duration = int((time.monotonic() - t0) * 1000)
            return ExecResult(exit_code=-1, stdout="", stderr=str(e), duration_ms=duration)
        duration = int((time.monotonic() - t0) * 1000)

        out, err = result.output if result.output else (None, None)
        return ExecResult(
            exit_code=result.exit_code if result.exit_code is not None else -1,
            stdout=(out or b"").decode("utf-8", errors="replace"),
            stderr=(err or b"").decode("utf-8", errors="replace"),
            duration_ms=duration,
        )

    def _check(self, cmd: Sequence[str]) -> ExecResult:
        result = self.exec(cmd)
        if not result.ok:
            raise OSError(f"{shlex.join(cmd)} failed ({result.exit_code}): {result.tail(5)}")
        return result

    def _put_archive(self, dest: str, archive: bytes) -> None:
        try:
            accepted = self.container.put_archive(dest, archive)
        except DockerException as e:
            raise OSError(f"put_archive into {dest} failed: {e}") from e
        if not accepted:
            raise OSError(f"put_archive into {dest} was refused")

    def put_file(self, path: str, data: bytes, mode: int = 0o644) -> None:
        p = PurePosixPath(path)
        self._put_archive(str(p.parent), single_file_archive(p.name, data, mode))

    def put_tree(self, src: Path, dest: str, excludes: Iterable[str] = ()) -> None:
        self.make_dirs(dest)
        archive = tree_archive(src, frozenset(excludes))
        logger.info("[%s] Copying %s → %s (%d bytes)", self.role, src, dest, len(archive))
        self._put_archive(dest, archive)

    def get_file(self, path: str) -> bytes:
        try:
            stream, _stat = self.container.get_archive(path)
            archive = b"".join(stream)
        except NotFound:
            raise FileNotFoundError(path) from None
        except DockerException as e:
            raise OSError(f"get_archive of {path} failed: {e}") from e
        return read_single_file(archive, path)

    def make_dirs(self, *paths: str) -> None:
        if paths:
            self._check(["mkdir", "-p", "--", *paths])

    def symlink(self, target: str, link: str) -> None:
        self._check(["ln", "-s", "--", target, link])

    def path_info(self, path: str) -> Optional[PathInfo]:
        result = self.exec(["stat", "-c", "%F|%a", "--", path])
        if not result.ok:
            return None
        kind_raw, _, mode_raw = result.stdout.strip().partition("|")
        kind = _STAT_KINDS.get(kind_raw, "other")
        link_target = None
        if kind == "symlink":
            link_target = self._check(["readlink", "--", path]).stdout.strip()
        return PathInfo(kind=kind, mode=int(mode_raw, 8), link_target=link_target)

    def is_writable(self, path: str) -> bool:
        return self.exec(["test", "-w", path]).ok

    def is_executable(self, path: str) -> bool:
        return self.exec(["test", "-x", path]).ok

    def commit(self, repository: str, tag: str, changes: List[str]) -> str:
        try:
            image = self.container.commit(repository=repository, tag=tag, changes=changes)
        except DockerException as e:
            raise OSError(f"commit of {repository}:{tag} failed: {e}") from e
        logger.info("[%s] Committed %s:%s as %s", self.role, repository, tag, image.id)
        return image.id

    def remove(self) -> None:
        try:
            self.container.remove(force=True)
        except NotFound:
            pass


class DockerStageFactory:
    """Starts stages as idle containers from a base image."""

    def __init__(self, client=None):
        self._client = client

    @property
    def client(self):
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise OSError(f"Docker daemon unreachable: {e}") from e
        return self._client

    def machine_id(self) -> str:
        """Architecture the daemon runs on, e.g. ``x86_64``."""
        try:
            return detect_machine_id(self.client)
        except DockerException as e:
            raise OSError(f"could not query Docker daemon: {e}") from e

    def ensure_image(self, image: str, platform: Optional[str] = None) -> None:
        try:
            self.client.images.get(image)
            return
        except ImageNotFound:
            pass
        logger.info("Pulling %s (%s)", image, platform or "native")
        self.client.images.pull(image, platform=platform)

    def start(self, role: str, image: str, platform: Optional[str] = None) -> DockerStage:
        """Start a container that idles so the pipeline can exec into it."""
        try:
            self.ensure_image(image, platform)
            container = self.client.containers.run(
                image,
                command=["sleep", "infinity"],
                detach=True,
                platform=platform,
            )
        except DockerException as e:
            raise OSError(f"could not start {role} stage from {image}: {e}") from e
        logger.info("[%s] Started stage %s from %s", role, container.short_id, image)
        return DockerStage(container, role)


def env_lines(env: Dict[str, str]) -> List[str]:
    """``ENV`` commit changes for an environment mapping, sorted."""
    return [f"ENV {k}={v}" for k, v in sorted(env.items())]
