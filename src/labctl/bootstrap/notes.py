"""What to do once the lab host is up."""
from __future__ import annotations

from collections.abc import Mapping, Sequence

JENKINS_ADMIN_PASSWORD_FILE = "/var/lib/jenkins/secrets/initialAdminPassword"
SONARQUBE_DEFAULT_LOGIN = ("admin", "admin")
SONARQUBE_WARMUP = "2-3 minutes"
UNKNOWN_HOST = "<instance-ip>"


def service_urls(host: str, ports: Mapping[str, int]) -> dict[str, str]:
    """Return ``http://`` URLs for every published service except SSH."""
    return {
        service: f"http://{host}:{port}"
        for service, port in sorted(ports.items())
        if service != "ssh"
    }


def next_steps(urls: Mapping[str, str], docker_users: Sequence[str]) -> list[str]:
    """Return the numbered hand-over instructions for a bootstrapped host."""
    user, password = SONARQUBE_DEFAULT_LOGIN
    steps: list[str] = []
    if "jenkins" in urls:
        steps.append(f"Open Jenkins at {urls['jenkins']}.")
    steps.append(f"Unlock Jenkins with: sudo cat {JENKINS_ADMIN_PASSWORD_FILE}")
    if "sonarqube" in urls:
        steps.append(
            f"Open SonarQube at {urls['sonarqube']} and sign in as {user}/{password}; "
            "change the password when prompted."
        )
    steps.append(
        f"Allow SonarQube {SONARQUBE_WARMUP} after the container starts to finish initialising."
    )
    if docker_users:
        steps.append(
            f"Log out and back in so {', '.join(docker_users)} pick up the docker group "
            "membership."
        )
    return [f"{number}. {step}" for number, step in enumerate(steps, start=1)]


__all__ = [
    "JENKINS_ADMIN_PASSWORD_FILE",
    "SONARQUBE_DEFAULT_LOGIN",
    "SONARQUBE_WARMUP",
    "UNKNOWN_HOST",
    "next_steps",
    "service_urls",
]
