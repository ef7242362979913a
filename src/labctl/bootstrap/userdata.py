"""Instance user-data that hands the host over to ``labctl bootstrap run``."""
from __future__ import annotations

import shlex

import yaml

from .. import __version__
from ..config import BootstrapConfig, LabSettings

HOST_CONFIG_PATH = "/etc/labctl/labctl.yml"
BIN_DIR = "/usr/local/bin"
# Amazon Linux 2 only packages Python 3.7, so labctl runs on a managed interpreter.
HOST_PYTHON = "3.11"
UV_INSTALL_URL = "https://astral.sh/uv/install.sh"
TOOL_DIR = "/opt/labctl"


def host_config(settings: LabSettings, bootstrap: BootstrapConfig) -> dict[str, object]:
    """Return the configuration document the host-side runner reads."""
    return {
        "lab": {"name": settings.name, "ports": dict(settings.ports)},
        "bootstrap": {
            "log_file": str(bootstrap.log_file),
            "marker_dir": str(bootstrap.marker_dir),
            "docker_users": list(bootstrap.docker_users),
            "sonarqube_image": bootstrap.sonarqube_image,
            "sonarqube_container": bootstrap.sonarqube_container,
            "jenkins_repo_url": bootstrap.jenkins_repo_url,
            "jenkins_key_url": bootstrap.jenkins_key_url,
            "trivy_install_url": bootstrap.trivy_install_url,
            "trivy_bin_dir": str(bootstrap.trivy_bin_dir),
            "sysctl": dict(bootstrap.sysctl),
            "policies": dict(bootstrap.policies),
            "probe_timeout": bootstrap.probe_timeout,
        },
    }


def render_user_data(
    settings: LabSettings,
    bootstrap: BootstrapConfig,
    *,
    version: str = __version__,
) -> str:
    """Render the first-boot script for the lab instance.

    The output contains no timestamps or random values, so identical settings
    always produce identical user-data (and therefore identical plans).
    """
    document = yaml.safe_dump(host_config(settings, bootstrap), sort_keys=True)
    log_file = shlex.quote(str(bootstrap.log_file))
    requirement = shlex.quote(f"labctl=={version}")
    return "\n".join(
        [
            "#!/bin/bash",
            "# Generated by labctl. Runs once on first boot.",
            "set -euo pipefail",
            "mkdir -p /etc/labctl",
            f"cat > {HOST_CONFIG_PATH} <<'LABCTL_CONFIG'",
            document.rstrip("\n"),
            "LABCTL_CONFIG",
            f"export UV_INSTALL_DIR={BIN_DIR} UV_TOOL_BIN_DIR={BIN_DIR} UV_NO_MODIFY_PATH=1",
            f"export UV_TOOL_DIR={TOOL_DIR}/tools UV_PYTHON_INSTALL_DIR={TOOL_DIR}/python",
            f"curl -LsSf {UV_INSTALL_URL} | sh",
            f"{BIN_DIR}/uv tool install --python {HOST_PYTHON} {requirement}",
            f"LABCTL_CONFIG_FILE={HOST_CONFIG_PATH} {BIN_DIR}/labctl bootstrap run "
            f"--log-file {log_file}",
            "",
        ]
    )


__all__ = ["HOST_CONFIG_PATH", "HOST_PYTHON", "host_config", "render_user_data"]
