"""
Tests for node_image.core.compiler — source snapshot, build, ELF check, publication.
"""
import os

import pytest

from node_image.core.compiler import catalog_source, compile_source, inspect_elf, publish_artifact
from node_image.errors import CompilationError, ErrorKind
from node_image.io.schema import hash_bytes


class TestCatalogSource:

    def test_identity(self, source_tree, profile):
        ident = catalog_source(source_tree, profile.source_workdir, profile.source_excludes)
        # Cargo.toml, Cargo.lock, entrypoint.sh, src/main.rs
        assert ident.file_count == 4
        assert ident.workdir == "/usr/src/snarkOS"
        assert ident.lockfile_sha256 is not None
        assert len(ident.snapshot_sha256) == 64

    def test_excluded_dirs_do_not_change_snapshot(self, source_tree, profile):
        before = catalog_source(source_tree, profile.source_workdir, profile.source_excludes)
        (source_tree / "target" / "release" / "snarkos").write_bytes(b"\x7fELF...")
        (source_tree / ".git" / "index").write_bytes(b"index")
        after = catalog_source(source_tree, profile.source_workdir, profile.source_excludes)
        assert before.snapshot_sha256 == after.snapshot_sha256

    def test_content_change_changes_snapshot(self, source_tree, profile):
        before = catalog_source(source_tree, profile.source_workdir, profile.source_excludes)
        (source_tree / "src" / "main.rs").write_text("fn main() {}\n")
        after = catalog_source(source_tree, profile.source_workdir, profile.source_excludes)
        assert before.snapshot_sha256 != after.snapshot_sha256

    def test_missing_manifest(self, tmp_path, profile):
        with pytest.raises(CompilationError, match="no Cargo.toml"):
            catalog_source(tmp_path, profile.source_workdir)

    def test_missing_directory(self, tmp_path, profile):
        with pytest.raises(CompilationError, match="not found"):
            catalog_source(tmp_path / "nope", profile.source_workdir)


class TestInspectElf:

    def test_executable(self, elf_bytes):
        ok, meta = inspect_elf(elf_bytes)
        assert ok is True
        assert meta.elf_type in ("ET_EXEC", "ET_DYN")
        assert meta.machine.startswith("EM_")

    def test_not_elf(self):
        ok, meta = inspect_elf(b"#!/bin/sh\necho not a binary\n")
        assert ok is False
        assert meta.elf_type == ""


class TestPublishArtifact:

    def test_atomic_publish(self, tmp_path):
        dest = publish_artifact(b"binary", tmp_path / "bin" / "snarkos")
        assert dest.read_bytes() == b"binary"
        assert os.stat(dest).st_mode & 0o777 == 0o755
        assert sorted(p.name for p in dest.parent.iterdir()) == ["snarkos"]

    def test_overwrites_previous(self, tmp_path):
        dest = tmp_path / "snarkos"
        publish_artifact(b"one", dest)
        publish_artifact(b"two", dest)
        assert dest.read_bytes() == b"two"


class TestCompileSource:

    def test_success_publishes_one_binary(self, builder, profile, source_tree, tmp_path, elf_bytes):
        publish_dir = tmp_path / "out" / "bin"
        source, artifact = compile_source(builder, profile, source_tree, publish_dir)

        assert [p.name for p in publish_dir.iterdir()] == ["snarkos"]
        assert artifact.sha256 == hash_bytes(elf_bytes)
        assert artifact.size_bytes == len(elf_bytes)
        assert artifact.build_duration_ms == 1234
        assert source.file_count == 4

    def test_source_copied_without_excludes(self, builder, profile, source_tree, tmp_path):
        compile_source(builder, profile, source_tree, tmp_path / "bin")
        assert "/usr/src/snarkOS/Cargo.toml" in builder.files
        assert "/usr/src/snarkOS/entrypoint.sh" in builder.files
        assert "/usr/src/snarkOS/.git/HEAD" not in builder.files
        assert "/usr/src/snarkOS/target/release/stale" not in builder.files

    def test_build_runs_in_workdir_with_env(self, builder, profile, source_tree, tmp_path):
        compile_source(builder, profile, source_tree, tmp_path / "bin")
        idx = builder.commands.index(["cargo", "build", "--release"])
        assert builder.envs[idx]["CARGO_HOME"] == profile.cargo_home

    def test_build_failure_publishes_nothing(self, builder, profile, source_tree, tmp_path):
        builder.script(["cargo", "build"], exit_code=101, stderr="error[E0425]: cannot find value `x`")
        publish_dir = tmp_path / "bin"
        with pytest.raises(CompilationError) as exc:
            compile_source(builder, profile, source_tree, publish_dir)
        assert exc.value.kind == ErrorKind.COMPILATION
        assert "E0425" in exc.value.message
        assert not publish_dir.exists()

    def test_timeout(self, builder, profile, source_tree, tmp_path):
        builder.script(["cargo", "build"], exit_code=124)
        with pytest.raises(CompilationError, match="timed out"):
            compile_source(builder, profile, source_tree, tmp_path / "bin")

    def test_no_binary(self, profile, source_tree, tmp_path):
        from .conftest import FakeStage

        empty = FakeStage("builder")
        with pytest.raises(CompilationError, match="no binary"):
            compile_source(empty, profile, source_tree, tmp_path / "bin")

    def test_non_elf_output_rejected(self, profile, source_tree, tmp_path):
        from .conftest import FakeStage

        stage = FakeStage("builder", build_outputs={profile.build_output_path: b"#!/bin/sh\n"})
        publish_dir = tmp_path / "bin"
        with pytest.raises(CompilationError, match="not an ELF executable"):
            compile_source(stage, profile, source_tree, publish_dir)
        assert not publish_dir.exists()
