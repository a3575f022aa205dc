"""
Tests for node_image.core.provision — installer download and toolchain install.
"""
import httpx
import pytest

from node_image.core.arch import resolve_locator
from node_image.core.provision import fetch_installer, install_toolchain, provision_toolchain
from node_image.errors import (
    ErrorKind,
    InstallerFetchError,
    PackageInstallError,
    ToolchainInstallError,
)
from node_image.io.schema import hash_bytes

from .conftest import INSTALLER_BYTES, VERSION_LINES, InstallerServer

URL = "https://static.rust-lang.org/rustup/dist/x86_64-unknown-linux-gnu/rustup-init"


def _client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


class TestFetchInstaller:

    def test_returns_body(self, http_client, installer_server):
        data = fetch_installer(URL, client=http_client)
        assert data == INSTALLER_BYTES
        assert installer_server.urls == [URL]

    def test_no_retries_by_default(self):
        server = InstallerServer(status_code=503)
        with pytest.raises(InstallerFetchError) as exc:
            fetch_installer(URL, client=_client(server), sleep=lambda s: None)
        assert len(server.requests) == 1
        assert exc.value.retryable is True
        assert exc.value.kind == ErrorKind.PROVISIONING
        assert exc.value.step == "install_toolchain"

    def test_retries_back_off_exponentially(self):
        server = InstallerServer(status_code=500)
        delays = []
        with pytest.raises(InstallerFetchError):
            fetch_installer(URL, retries=3, backoff=1.5, client=_client(server), sleep=delays.append)
        assert len(server.requests) == 4
        assert delays == [1.5, 3.0, 6.0]

    def test_recovers_on_later_attempt(self):
        responses = [httpx.Response(502), httpx.Response(200, content=b"ok")]

        def handler(request):
            return responses.pop(0)

        data = fetch_installer(URL, retries=1, client=_client(handler), sleep=lambda s: None)
        assert data == b"ok"

    def test_empty_body_is_a_failure(self):
        server = InstallerServer(content=b"")
        with pytest.raises(InstallerFetchError, match="empty response body"):
            fetch_installer(URL, client=_client(server))

    def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(InstallerFetchError, match="connection refused"):
            fetch_installer(URL, client=_client(handler))


class TestInstallToolchain:

    def _locator(self, profile):
        return resolve_locator("amd64", profile.dist_base_url)

    def test_identity_and_cleanup(self, builder, profile):
        identity = install_toolchain(builder, profile, self._locator(profile), INSTALLER_BYTES)

        assert identity.channel == "stable"
        assert identity.rustc_version == VERSION_LINES["rustc"]
        assert identity.cargo_version == VERSION_LINES["cargo"]
        assert identity.installer_sha256 == hash_bytes(INSTALLER_BYTES)
        # installer discarded, roots opened for writing
        assert "/tmp/rustup-init" not in builder.files
        assert builder.ran("chmod", "-R", "a+w", profile.rustup_home, profile.cargo_home)

    def test_installer_runs_unattended_with_toolchain_env(self, builder, profile):
        install_toolchain(builder, profile, self._locator(profile), INSTALLER_BYTES)

        idx = builder.commands.index(
            ["/tmp/rustup-init", "-y", "--no-modify-path", "--default-toolchain", "stable"]
        )
        env = builder.envs[idx]
        assert env["RUSTUP_HOME"] == profile.rustup_home
        assert env["CARGO_HOME"] == profile.cargo_home
        assert env["PATH"].startswith(f"{profile.cargo_home}/bin:")

    def test_failed_installer_is_still_removed(self, builder, profile):
        builder.script(["/tmp/rustup-init"], exit_code=1, stderr="error: could not download")
        with pytest.raises(ToolchainInstallError, match="could not download"):
            install_toolchain(builder, profile, self._locator(profile), INSTALLER_BYTES)
        assert "/tmp/rustup-init" not in builder.files

    def test_version_query_failure(self, builder, profile):
        builder.script(["rustc", "--version"], exit_code=127, stderr="rustc: not found")
        with pytest.raises(ToolchainInstallError, match="rustc --version"):
            install_toolchain(builder, profile, self._locator(profile), INSTALLER_BYTES)


class TestProvisionToolchain:

    def test_packages_then_download_then_install(self, builder, profile, http_client, installer_server):
        locator = resolve_locator("arm64", profile.dist_base_url)
        provision_toolchain(builder, profile, locator, http_client)

        assert set(profile.build_packages) <= builder.packages
        assert installer_server.urls == [locator.installer_url]
        assert "aarch64-unknown-linux-gnu" in locator.installer_url
        first_install = next(i for i, c in enumerate(builder.commands) if c[:2] == ["apt", "install"])
        assert builder.commands[0] == ["apt", "update", "-y"]
        assert builder.commands[first_install][-len(profile.build_packages):] == list(profile.build_packages)

    def test_package_failure_stops_before_download(self, builder, profile, http_client, installer_server):
        builder.script(["apt", "install"], exit_code=100, stderr="E: Unable to locate package clang")
        locator = resolve_locator("amd64", profile.dist_base_url)
        with pytest.raises(PackageInstallError, match="Unable to locate package"):
            provision_toolchain(builder, profile, locator, http_client)
        assert installer_server.requests == []

    def test_installer_placement_failure(self, builder, profile):
        def refuse(path, data, mode=0o644):
            raise OSError("put_archive into /tmp was refused")

        builder.put_file = refuse
        with pytest.raises(ToolchainInstallError, match="was refused"):
            install_toolchain(builder, profile, resolve_locator("amd64", profile.dist_base_url), INSTALLER_BYTES)
