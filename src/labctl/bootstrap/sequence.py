"""The lab host's bootstrap sequence (Amazon Linux 2).

Installs the prerequisites, Java 17, Docker, Jenkins, a SonarQube container
with persistent volumes and Trivy, raises the kernel limits SonarQube's
Elasticsearch needs, and restarts Jenkins once so it picks up the docker
group membership. Steps run strictly in this order.
"""
from __future__ import annotations

import shlex
from collections.abc import Mapping

from ..config import BootstrapConfig, ConfigError
from .steps import (
    BootstrapStep,
    FailurePolicy,
    HostCommand,
    all_of,
    cmd,
    command_available,
    container_exists,
    container_running,
    docker_volume_exists,
    extras_offers,
    file_contains,
    marker_present,
    negate,
    package_installed,
    path_exists,
    service_active,
    service_enabled,
    sysctl_at_least,
    user_exists,
    user_in_group,
)

PREREQUISITE_PACKAGES = ("git", "wget", "unzip", "curl", "ca-certificates", "jq")
JAVA_PACKAGE = "java-17-amazon-corretto-devel"
JENKINS_REPO_FILE = "/etc/yum.repos.d/jenkins.repo"
SYSCTL_CONF = "/etc/sysctl.conf"
SONARQUBE_VOLUMES = {
    "sonarqube_data": "/opt/sonarqube/data",
    "sonarqube_extensions": "/opt/sonarqube/extensions",
    "sonarqube_logs": "/opt/sonarqube/logs",
}
JENKINS_RESTART_MARKER = "jenkins-restart.done"


def lab_sequence(
    config: BootstrapConfig,
    ports: Mapping[str, int] | None = None,
) -> list[BootstrapStep]:
    """Return the ordered bootstrap steps, applying configured policy overrides."""
    sonarqube_port = int((ports or {}).get("sonarqube", 9000))
    steps = [
        BootstrapStep(
            name="system-packages",
            description="Update the system and install prerequisites",
            commands=(
                cmd("yum", "update", "-y"),
                cmd("yum", "install", "-y", *PREREQUISITE_PACKAGES),
            ),
            check=all_of(*(package_installed(pkg) for pkg in PREREQUISITE_PACKAGES)),
            policy=FailurePolicy.FATAL,
        ),
        BootstrapStep(
            name="java",
            description="Install Java 17 (Amazon Corretto)",
            commands=(
                cmd("amazon-linux-extras", "enable", "corretto17", allow_failure=True),
                cmd("yum", "install", "-y", JAVA_PACKAGE),
            ),
            check=package_installed(JAVA_PACKAGE),
            policy=FailurePolicy.FATAL,
        ),
        BootstrapStep(
            name="docker-install",
            description="Install Docker",
            commands=(
                cmd("amazon-linux-extras", "install", "docker", "-y", when=extras_offers("docker")),
                cmd("yum", "install", "-y", "docker", when=negate(extras_offers("docker"))),
            ),
            check=command_available("docker"),
            policy=FailurePolicy.FATAL,
        ),
        BootstrapStep(
            name="docker-service",
            description="Enable and start the Docker service",
            commands=(
                cmd("systemctl", "enable", "docker"),
                cmd("systemctl", "start", "docker"),
            ),
            check=all_of(service_enabled("docker"), service_active("docker")),
            policy=FailurePolicy.FATAL,
        ),
        BootstrapStep(
            name="docker-group",
            description="Add service users to the docker group",
            commands=tuple(
                cmd("usermod", "-a", "-G", "docker", user, when=user_exists(user))
                for user in config.docker_users
            ),
            check=all_of(*(user_in_group(user, "docker") for user in config.docker_users)),
            policy=FailurePolicy.WARN,
        ),
        BootstrapStep(
            name="jenkins-repo",
            description="Register the Jenkins package repository",
            commands=(
                cmd("wget", "-q", "-O", JENKINS_REPO_FILE, config.jenkins_repo_url),
                cmd("rpm", "--import", config.jenkins_key_url),
            ),
            check=path_exists(JENKINS_REPO_FILE),
            policy=FailurePolicy.FATAL,
        ),
        BootstrapStep(
            name="jenkins-install",
            description="Install Jenkins",
            commands=(cmd("yum", "install", "-y", "jenkins"),),
            check=package_installed("jenkins"),
            policy=FailurePolicy.FATAL,
        ),
        BootstrapStep(
            name="jenkins-service",
            description="Enable and start the Jenkins service",
            commands=(
                cmd("systemctl", "enable", "jenkins"),
                cmd("systemctl", "start", "jenkins"),
            ),
            check=all_of(service_enabled("jenkins"), service_active("jenkins")),
            policy=FailurePolicy.FATAL,
        ),
        BootstrapStep(
            name="sonarqube-volumes",
            description="Create persistent Docker volumes for SonarQube",
            commands=tuple(
                cmd("docker", "volume", "create", volume, allow_failure=True)
                for volume in SONARQUBE_VOLUMES
            ),
            check=all_of(*(docker_volume_exists(volume) for volume in SONARQUBE_VOLUMES)),
            policy=FailurePolicy.WARN,
        ),
        BootstrapStep(
            name="sonarqube-container",
            description="Run the SonarQube container",
            commands=(
                cmd(
                    "docker",
                    "rm",
                    "-f",
                    config.sonarqube_container,
                    when=container_exists(config.sonarqube_container),
                ),
                cmd("docker", "pull", config.sonarqube_image),
                _sonarqube_run(config, sonarqube_port),
            ),
            check=container_running(config.sonarqube_container),
            policy=FailurePolicy.FATAL,
        ),
        BootstrapStep(
            name="trivy",
            description="Install Trivy",
            commands=(
                HostCommand(
                    argv=(
                        f"curl -sfL {shlex.quote(config.trivy_install_url)} "
                        f"| sh -s -- -b {shlex.quote(str(config.trivy_bin_dir))}"
                    ),
                    shell=True,
                ),
            ),
            check=command_available("trivy"),
            policy=FailurePolicy.FATAL,
        ),
        BootstrapStep(
            name="kernel-limits",
            description="Raise kernel limits for SonarQube",
            commands=_kernel_limit_commands(config.sysctl),
            check=all_of(
                *(sysctl_at_least(key, value) for key, value in config.sysctl.items()),
                *(file_contains(SYSCTL_CONF, key) for key in config.sysctl),
            ),
            policy=FailurePolicy.WARN,
        ),
        BootstrapStep(
            name="jenkins-restart",
            description="Restart Jenkins to apply group membership and PATH changes",
            commands=(
                cmd("systemctl", "daemon-reload"),
                cmd("systemctl", "restart", "jenkins"),
            ),
            check=marker_present(config.marker_dir, JENKINS_RESTART_MARKER),
            policy=FailurePolicy.FATAL,
            marker=config.marker_dir / JENKINS_RESTART_MARKER,
        ),
    ]
    return _apply_policy_overrides(steps, config.policies)


def _sonarqube_run(config: BootstrapConfig, port: int) -> HostCommand:
    argv = [
        "docker",
        "run",
        "-d",
        "--name",
        config.sonarqube_container,
        "--restart",
        "unless-stopped",
        "-p",
        f"{port}:9000",
    ]
    for volume, mount in SONARQUBE_VOLUMES.items():
        argv.extend(["-v", f"{volume}:{mount}"])
    argv.extend(["-e", "SONAR_ES_BOOTSTRAP_CHECKS_DISABLE=true", config.sonarqube_image])
    return HostCommand(argv=tuple(argv))


def _kernel_limit_commands(sysctl: Mapping[str, int]) -> tuple[HostCommand, ...]:
    commands: list[HostCommand] = []
    for key, value in sysctl.items():
        commands.append(cmd("sysctl", "-w", f"{key}={value}", allow_failure=True))
    for key, value in sysctl.items():
        commands.append(
            HostCommand(
                argv=f"echo {shlex.quote(f'{key}={value}')} | tee -a {SYSCTL_CONF}",
                shell=True,
                when=negate(file_contains(SYSCTL_CONF, key)),
            )
        )
    return tuple(commands)


def _apply_policy_overrides(
    steps: list[BootstrapStep],
    policies: Mapping[str, str],
) -> list[BootstrapStep]:
    known = {step.name for step in steps}
    unknown = sorted(set(policies) - known)
    if unknown:
        raise ConfigError(
            f"bootstrap.policies names unknown step(s): {', '.join(unknown)}. "
            f"Known steps: {', '.join(step.name for step in steps)}."
        )
    resolved: list[BootstrapStep] = []
    for step in steps:
        override = policies.get(step.name)
        if override is None:
            resolved.append(step)
            continue
        resolved.append(
            BootstrapStep(
                name=step.name,
                description=step.description,
                commands=step.commands,
                check=step.check,
                policy=FailurePolicy(override),
                marker=step.marker,
            )
        )
    return resolved


__all__ = ["JENKINS_RESTART_MARKER", "SONARQUBE_VOLUMES", "lab_sequence"]
