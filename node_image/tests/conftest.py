"""
Shared pytest fixtures for node_image tests.

No Docker daemon and no network: stages are in-memory ``FakeStage``
objects that interpret the handful of commands the pipeline issues
(apt, dpkg-query, the installer, cargo, version queries), and the
installer download goes through an ``httpx.MockTransport``.

The compiled "binary" is the running interpreter, which is a real ELF
executable on Linux; ELF-dependent tests are skipped elsewhere.
"""
import hashlib
import os
import posixpath
import sys
import textwrap
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import httpx
import pytest

from node_image.core.stage import ExecResult, PathInfo, Stage
from node_image.policy.profile import PipelineProfile

BASE_PACKAGES = frozenset({"apt", "base-files", "bash", "coreutils", "dpkg", "libc6"})

INSTALLER_BYTES = b"#!/bin/sh\n# rustup-init stand-in\nexit 0\n"

VERSION_LINES = {
    "rustup": "rustup 1.27.1 (54dd3d00f 2024-04-24)",
    "cargo": "cargo 1.82.0 (8f40fc59f 2024-08-21)",
    "rustc": "rustc 1.82.0 (f6e511eec 2024-10-15)",
}

ENTRYPOINT_SH = textwrap.dedent("""\
    #!/bin/bash
    exec /aleo/bin/snarkos start --nodisplay
""")

CARGO_TOML = textwrap.dedent("""\
    [package]
    name = "snarkos"
    version = "3.0.0"
    edition = "2021"
""")


# =============================================================================
# Fake stage backend
# =============================================================================

class FakeStage(Stage):
    """
    In-memory stage: files, directories and symlinks in dicts, plus a
    tiny interpreter for the commands the pipeline runs.

    ``script(prefix, ...)`` overrides the result of any command starting
    with *prefix*.
    """

    def __init__(
        self,
        role: str,
        image: str = "ubuntu:24.04",
        platform: Optional[str] = None,
        packages: Iterable[str] = BASE_PACKAGES,
        build_outputs: Optional[Dict[str, bytes]] = None,
        dependencies: Optional[Dict[str, List[str]]] = None,
    ):
        self.role = role
        self.image = image
        self.platform = platform
        self.files: Dict[str, Tuple[bytes, int]] = {}
        self.dirs: Dict[str, int] = {"/": 0o755, "/root": 0o700, "/tmp": 0o1777, "/usr": 0o755}
        self.links: Dict[str, str] = {}
        self.readonly: Set[str] = set()
        self.packages: Set[str] = set(packages)
        self.dependencies: Dict[str, List[str]] = dict(dependencies or {})
        self.build_outputs: Dict[str, bytes] = dict(build_outputs or {})
        self.commands: List[List[str]] = []
        self.envs: List[Dict[str, str]] = []
        self.scripted: List[Tuple[Tuple[str, ...], ExecResult]] = []
        self.commits: List[Tuple[str, str, List[str]]] = []
        self.removed = False

    # ── scripting ────────────────────────────────────────────────────────

    def script(self, prefix: Sequence[str], exit_code: int = 1, stdout: str = "", stderr: str = "") -> None:
        self.scripted.append((tuple(prefix), ExecResult(exit_code, stdout, stderr)))

    def ran(self, *prefix: str) -> bool:
        return any(tuple(cmd[:len(prefix)]) == prefix for cmd in self.commands)

    # ── Stage interface ──────────────────────────────────────────────────

    def exec(self, cmd, env=None, workdir=None, timeout=None) -> ExecResult:
        cmd = list(cmd)
        self.commands.append(cmd)
        self.envs.append(dict(env or {}))
        for prefix, result in self.scripted:
            if tuple(cmd[:len(prefix)]) == prefix:
                return result
        return self._interpret(cmd, workdir)

    def _interpret(self, cmd: List[str], workdir: Optional[str]) -> ExecResult:
        prog, args = cmd[0], cmd[1:]
        if prog == "apt":
            return self._apt(args)
        if prog == "dpkg-query":
            lines = [f"ii |{name}" for name in sorted(self.packages)]
            return ExecResult(0, "\n".join(lines) + "\n", "")
        if prog in VERSION_LINES and args == ["--version"]:
            if "/usr/local/cargo/bin" in self.dirs:
                return ExecResult(0, VERSION_LINES[prog] + "\n", "")
            return ExecResult(127, "", f"{prog}: command not found")
        if prog == "cargo" and args[:1] == ["build"]:
            for path, data in self.build_outputs.items():
                self.make_dirs(posixpath.dirname(path))
                self.files[path] = (data, 0o755)
            return ExecResult(0, "", "    Finished `release` profile [optimized]\n", duration_ms=1234)
        if prog == "rm":
            for path in args:
                if not path.startswith("-"):
                    self.files.pop(path, None)
            return ExecResult(0, "", "")
        if prog in self.files and prog.endswith("rustup-init"):
            self.make_dirs("/usr/local/rustup", "/usr/local/cargo/bin")
            return ExecResult(0, "info: default toolchain set to 'stable'\n", "")
        return ExecResult(0, "", "")

    def _apt(self, args: List[str]) -> ExecResult:
        sub, rest = args[0], args[1:]
        if sub == "install":
            names = []
            skip = False
            for a in rest:
                if skip:
                    skip = False
                    continue
                if a == "-o":
                    skip = True
                    continue
                if not a.startswith("-"):
                    names.append(a)
            for name in names:
                self.packages.add(name)
                self.packages.update(self.dependencies.get(name, []))
        return ExecResult(0, "", "")

    def put_file(self, path: str, data: bytes, mode: int = 0o644) -> None:
        parent = posixpath.dirname(path)
        if parent not in self.dirs:
            raise OSError(f"{parent} does not exist")
        self.files[path] = (data, mode)

    def put_tree(self, src: Path, dest: str, excludes: Iterable[str] = ()) -> None:
        excludes = frozenset(excludes)
        self.make_dirs(dest)
        for path in sorted(src.rglob("*")):
            rel = path.relative_to(src)
            if excludes.intersection(rel.parts):
                continue
            target = f"{dest}/{rel.as_posix()}"
            if path.is_dir():
                self.make_dirs(target)
            elif path.is_file():
                self.files[target] = (path.read_bytes(), path.stat().st_mode & 0o777)

    def get_file(self, path: str) -> bytes:
        if path in self.dirs:
            raise IsADirectoryError(path)
        if path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path][0]

    def make_dirs(self, *paths: str) -> None:
        for path in paths:
            if path in self.files or path in self.links:
                raise OSError(f"mkdir: {path}: File exists")
            while path not in self.dirs:
                self.dirs[path] = 0o755
                path = posixpath.dirname(path)

    def symlink(self, target: str, link: str) -> None:
        if link in self.links or link in self.files or link in self.dirs:
            raise OSError(f"ln: {link}: File exists")
        if posixpath.dirname(link) not in self.dirs:
            raise OSError(f"ln: {link}: No such file or directory")
        self.links[link] = target

    def path_info(self, path: str) -> Optional[PathInfo]:
        if path in self.links:
            return PathInfo(kind="symlink", mode=0o777, link_target=self.links[path])
        if path in self.files:
            return PathInfo(kind="file", mode=self.files[path][1])
        if path in self.dirs:
            return PathInfo(kind="dir", mode=self.dirs[path])
        return None

    def is_writable(self, path: str) -> bool:
        return (path in self.dirs or path in self.files) and path not in self.readonly

    def is_executable(self, path: str) -> bool:
        return path in self.files and bool(self.files[path][1] & 0o111)

    def commit(self, repository: str, tag: str, changes: List[str]) -> str:
        self.commits.append((repository, tag, list(changes)))
        h = hashlib.sha256()
        for path in sorted(self.files):
            h.update(path.encode())
            h.update(self.files[path][0])
        for line in changes:
            h.update(line.encode())
        return f"sha256:{h.hexdigest()}"

    def remove(self) -> None:
        self.removed = True


class FakeStageFactory:
    """Records every stage it starts; ``configure`` hooks run per role."""

    def __init__(
        self,
        machine: Optional[str] = "x86_64",
        build_outputs: Optional[Dict[str, bytes]] = None,
        configure: Optional[Dict[str, Callable[[FakeStage], None]]] = None,
        fail_start: Iterable[str] = (),
    ):
        self.machine = machine
        self.build_outputs = dict(build_outputs or {})
        self.configure = dict(configure or {})
        self.fail_start = set(fail_start)
        self.started: List[FakeStage] = []

    def machine_id(self) -> str:
        if self.machine is None:
            raise OSError("Docker daemon unreachable")
        return self.machine

    def start(self, role: str, image: str, platform: Optional[str] = None) -> FakeStage:
        if role in self.fail_start:
            raise OSError(f"could not start {role} stage from {image}")
        stage = FakeStage(
            role,
            image=image,
            platform=platform,
            build_outputs=self.build_outputs if role == "builder" else None,
        )
        if role in self.configure:
            self.configure[role](stage)
        self.started.append(stage)
        return stage

    def stage(self, role: str) -> Optional[FakeStage]:
        for s in self.started:
            if s.role == role:
                return s
        return None


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def profile() -> PipelineProfile:
    return PipelineProfile.default()


@pytest.fixture(scope="session")
def elf_bytes() -> bytes:
    """A real ELF executable: the running interpreter."""
    path = os.path.realpath(sys.executable)
    data = Path(path).read_bytes()
    if data[:4] != b"\x7fELF":
        pytest.skip(f"{path} is not an ELF file")
    return data


@pytest.fixture
def source_tree(tmp_path) -> Path:
    """Minimal Cargo project with an entrypoint script and ignorable dirs."""
    root = tmp_path / "snarkOS"
    (root / "src").mkdir(parents=True)
    (root / "Cargo.toml").write_text(CARGO_TOML)
    (root / "Cargo.lock").write_text("# lockfile\nversion = 3\n")
    (root / "src" / "main.rs").write_text('fn main() { println!("snarkos"); }\n')
    entry = root / "entrypoint.sh"
    entry.write_text(ENTRYPOINT_SH)
    entry.chmod(0o755)
    (root / "target" / "release").mkdir(parents=True)
    (root / "target" / "release" / "stale").write_bytes(b"old build")
    (root / ".git").mkdir()
    (root / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
    return root


@pytest.fixture
def stage_factory(elf_bytes, profile) -> FakeStageFactory:
    return FakeStageFactory(build_outputs={profile.build_output_path: elf_bytes})


@pytest.fixture
def builder(elf_bytes, profile) -> FakeStage:
    return FakeStage("builder", build_outputs={profile.build_output_path: elf_bytes})


@pytest.fixture
def runtime() -> FakeStage:
    return FakeStage("runtime")


class InstallerServer:
    """httpx.MockTransport handler serving the installer and recording requests."""

    def __init__(self, status_code: int = 200, content: bytes = INSTALLER_BYTES):
        self.status_code = status_code
        self.content = content
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, content=self.content)

    @property
    def urls(self) -> List[str]:
        return [str(r.url) for r in self.requests]


@pytest.fixture
def installer_server() -> InstallerServer:
    return InstallerServer()


@pytest.fixture
def http_client(installer_server):
    client = httpx.Client(transport=httpx.MockTransport(installer_server))
    yield client
    client.close()
