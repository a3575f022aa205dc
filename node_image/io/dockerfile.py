"""
Dockerfile — render the two-stage Dockerfile equivalent of a profile.

For environments that prefer ``docker build`` over driving the stages
from Python.  The architecture ``case`` arms come from the resolver
table, so adding an architecture updates both paths at once.
"""
import json
from typing import List

from node_image.core.arch import RUST_TARGETS
from node_image.core.entrypoint import entrypoint_command
from node_image.policy.profile import PipelineProfile

CONFOLD = "-o DPkg::Options::=--force-confold"


def _continued(lines: List[str], indent: str = "        ") -> str:
    return " \\\n".join(f"{indent}{line}" for line in lines)


def render_builder_stage(profile: PipelineProfile) -> str:
    case_arms = [
        f"{arch.value}) rustArch='{target}' ;;"
        for arch, target in RUST_TARGETS.items()
    ]
    case_arms.append('*) echo >&2 "unsupported architecture: ${dpkgArch}"; exit 1 ;;')

    installer = profile.installer_name
    return "\n".join([
        f"FROM {profile.base_image} AS builder",
        "",
        f"ENV RUSTUP_HOME={profile.rustup_home} \\",
        f"    CARGO_HOME={profile.cargo_home} \\",
        f"    PATH={profile.cargo_home}/bin:$PATH \\",
        "    DEBIAN_FRONTEND=noninteractive",
        "",
        "RUN set -eux ; \\",
        "    apt update -y && \\",
        f"    apt dist-upgrade {CONFOLD} -y && \\",
        f"    apt install {CONFOLD} --no-install-recommends -y \\",
        _continued(list(profile.build_packages)) + " && \\",
        '    dpkgArch="$(dpkg --print-architecture)"; \\',
        '    case "${dpkgArch##*-}" in \\',
        _continued(case_arms) + " \\",
        "    esac; \\",
        f'    url="{profile.dist_base_url.rstrip("/")}/${{rustArch}}/{installer}"; \\',
        '    wget "$url"; \\',
        f"    chmod +x {installer}; \\",
        f"    ./{installer} -y --no-modify-path --default-toolchain {profile.toolchain_channel}; \\",
        f"    rm {installer}; \\",
        "    chmod -R a+w $RUSTUP_HOME $CARGO_HOME; \\",
        "    rustup --version; \\",
        "    cargo --version; \\",
        "    rustc --version",
        "",
        f"WORKDIR {profile.source_workdir}",
        "",
        "COPY . .",
        "",
        "RUN cargo build --release",
    ])


def render_runtime_stage(profile: PipelineProfile) -> str:
    runtime_pkgs = " ".join(profile.runtime_packages)
    return "\n".join([
        f"FROM {profile.base_image}",
        "",
        "ENV DEBIAN_FRONTEND=noninteractive",
        "",
        'SHELL ["/bin/bash", "-c"]',
        "",
        f"VOLUME {json.dumps([profile.data_dir])}",
        "",
        "RUN set -ex && \\",
        "    apt update && \\",
        f"    apt dist-upgrade {CONFOLD} -y && \\",
        f"    apt install {CONFOLD} --no-install-recommends -y {runtime_pkgs} && \\",
        "    apt purge --auto-remove -o APT::AutoRemove::RecommendsImportant=false -y && \\",
        "    apt clean && \\",
        "    rm -rf /var/lib/apt/lists/* && \\",
        f"    mkdir -p {profile.bin_dir} {profile.data_dir} && \\",
        f"    ln -s {profile.data_dir} {profile.config_alias}",
        "",
        f"COPY --from=builder {profile.source_workdir}/{profile.entrypoint_name} {profile.install_root}/",
        "",
        f"COPY --from=builder {profile.build_output_path} {profile.bin_dir}/",
        "",
        f"CMD {json.dumps(entrypoint_command(profile))}",
    ])


def render_dockerfile(profile: PipelineProfile) -> str:
    """Full two-stage Dockerfile text, newline-terminated."""
    return "\n".join([
        render_builder_stage(profile),
        "",
        "#---",
        render_runtime_stage(profile),
    ]) + "\n"
