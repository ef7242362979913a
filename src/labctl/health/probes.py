"""Probe registration for ``labctl verify`` and the bootstrap verification pass."""

from __future__ import annotations

from collections.abc import Callable, Sequence

from .models import (
    HealthImpact,
    ProbeCategory,
    ProbeContext,
    ProbeDefinition,
    ProbeResult,
    ProbeStatus,
)

# Version commands; ``java -version`` reports on stderr.
VERSION_COMMANDS = {
    "docker": ("docker", "--version"),
    "java": ("java", "-version"),
    "trivy": ("trivy", "--version"),
}
CONTAINER_FORMAT = "{{.Names}}\t{{.Image}}\t{{.Status}}"


def collect_probes(context: ProbeContext) -> Sequence[ProbeDefinition]:
    """Return the probes that make up a verification pass, in run order."""
    probes: list[ProbeDefinition] = [
        _make_probe("service-docker", "service", _probe_service("docker", fatal=True)),
        _make_probe("service-jenkins", "service", _probe_service("jenkins", fatal=False)),
        _make_probe("container-sonarqube", "container", _probe_sonarqube_container),
        _make_probe("binary-java", "binary", _probe_binary("java")),
        _make_probe("binary-trivy", "binary", _probe_binary("trivy")),
    ]
    for service, port in sorted(context.ports.items(), key=lambda item: (item[1], item[0])):
        if service == "ssh":
            continue
        probes.append(_make_probe(f"port-{service}", "port", _probe_port(service, port)))
    return tuple(probes)


def _make_probe(
    probe_id: str,
    category: ProbeCategory,
    handler: Callable[[ProbeContext], ProbeResult],
) -> ProbeDefinition:
    return ProbeDefinition(id=probe_id, category=category, run=handler)


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


def _probe_service(unit: str, *, fatal: bool) -> Callable[[ProbeContext], ProbeResult]:
    def _run(context: ProbeContext) -> ProbeResult:
        active = context.shell.succeeds(
            ["systemctl", "is-active", "--quiet", unit], privileged=True
        )
        if active:
            return ProbeResult(
                id=f"service-{unit}",
                category="service",
                status=ProbeStatus.GREEN,
                impact=HealthImpact.OK,
                message=f"{unit} is active.",
            )
        return ProbeResult(
            id=f"service-{unit}",
            category="service",
            status=ProbeStatus.RED if fatal else ProbeStatus.YELLOW,
            impact=HealthImpact.PROVIDER if fatal else HealthImpact.OK,
            message=f"{unit} is not active.",
            remediation=f"Inspect 'journalctl -u {unit}' and start it with "
            f"'systemctl start {unit}'.",
        )

    return _run


# ---------------------------------------------------------------------------
# Versions
# ---------------------------------------------------------------------------


def tool_version(context: ProbeContext, tool: str) -> str | None:
    """Return the first line *tool* prints about its version, or ``None``."""
    completed = context.shell.run(list(VERSION_COMMANDS[tool]), check=False)
    if completed.returncode != 0:
        return None
    for stream in (completed.stdout, completed.stderr):
        for line in (stream or "").splitlines():
            if line.strip():
                return line.strip()
    return None


# ---------------------------------------------------------------------------
# Containers
# ---------------------------------------------------------------------------


def _probe_sonarqube_container(context: ProbeContext) -> ProbeResult:
    name = context.sonarqube_container
    listing = context.shell.output(
        ["docker", "ps", "--format", CONTAINER_FORMAT], privileged=True
    )
    if listing is None:
        return ProbeResult(
            id="container-sonarqube",
            category="container",
            status=ProbeStatus.RED,
            impact=HealthImpact.PROVIDER,
            message="Unable to list docker containers.",
            remediation="Check that the docker service is running.",
        )
    containers = []
    for line in listing.splitlines():
        container, _, rest = line.partition("\t")
        image, _, status = rest.partition("\t")
        containers.append({"name": container, "image": image, "status": status})
    data = {"docker_version": tool_version(context, "docker"), "containers": containers}
    running = next((entry for entry in containers if entry["name"] == name), None)
    if running is not None:
        return ProbeResult(
            id="container-sonarqube",
            category="container",
            status=ProbeStatus.GREEN,
            impact=HealthImpact.OK,
            message=f"Container {name} is running ({running['status'] or 'up'}).",
            data=data,
        )
    return ProbeResult(
        id="container-sonarqube",
        category="container",
        status=ProbeStatus.RED,
        impact=HealthImpact.PROVIDER,
        message=f"Container {name} is not running.",
        remediation="Re-run 'labctl bootstrap run' or inspect 'docker logs "
        f"{name}'.",
        data=data,
    )


# ---------------------------------------------------------------------------
# Binaries
# ---------------------------------------------------------------------------


def _probe_binary(command: str) -> Callable[[ProbeContext], ProbeResult]:
    def _run(context: ProbeContext) -> ProbeResult:
        if not context.shell.command_exists(command):
            return ProbeResult(
                id=f"binary-{command}",
                category="binary",
                status=ProbeStatus.RED,
                impact=HealthImpact.ENVIRONMENT,
                message=f"{command} not found on PATH.",
                remediation="Re-run 'labctl bootstrap run'.",
            )
        version = tool_version(context, command)
        return ProbeResult(
            id=f"binary-{command}",
            category="binary",
            status=ProbeStatus.GREEN,
            impact=HealthImpact.OK,
            message=f"{command} is available ({version or 'version unknown'}).",
            data={"version": version},
        )

    return _run


# ---------------------------------------------------------------------------
# Ports
# ---------------------------------------------------------------------------


def _probe_port(service: str, port: int) -> Callable[[ProbeContext], ProbeResult]:
    def _run(context: ProbeContext) -> ProbeResult:
        host = context.options.host
        try:
            context.options.connect(host, port, context.options.connect_timeout)
        except OSError as exc:
            return ProbeResult(
                id=f"port-{service}",
                category="port",
                status=ProbeStatus.YELLOW,
                impact=HealthImpact.OK,
                message=f"{service} is not accepting connections on {host}:{port}: {exc}",
                remediation=f"{service} may still be starting; retry 'labctl verify' shortly.",
                data={"host": host, "port": port},
            )
        return ProbeResult(
            id=f"port-{service}",
            category="port",
            status=ProbeStatus.GREEN,
            impact=HealthImpact.OK,
            message=f"{service} is listening on {host}:{port}.",
            data={"host": host, "port": port},
        )

    return _run


__all__ = ["CONTAINER_FORMAT", "VERSION_COMMANDS", "collect_probes", "tool_version"]
