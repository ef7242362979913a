"""Tests for the verification probes and engine."""
from __future__ import annotations

import subprocess

import pytest

from labctl.bootstrap import HostShell
from labctl.health import Connector, HealthEngine
from labctl.health.models import (
    HealthImpact,
    ProbeContext,
    ProbeDefinition,
    ProbeOptions,
    ProbeResult,
    ProbeStatus,
    aggregate_results,
)
from labctl.health.probes import collect_probes

PORTS = {"ssh": 22, "sonarqube": 9000, "jenkins": 8080}

JAVA_VERSION = 'openjdk version "17.0.10" 2024-01-16 LTS'
DOCKER_VERSION = "Docker version 25.0.3, build 4debf41"
TRIVY_VERSION = "Version: 0.50.1"


class HealthyHost:
    """Answers every probe command as a fully bootstrapped host would."""

    def __init__(self, *, inactive: tuple[str, ...] = (), missing: tuple[str, ...] = ()) -> None:
        self.inactive = set(inactive)
        self.missing = set(missing)
        self.containers = "sonarqube\tsonarqube:lts-community\tUp 3 minutes"

    def __call__(self, argv: list[str]) -> subprocess.CompletedProcess[str]:
        args = argv[1:] if argv[0] == "sudo" else argv
        if args[:2] == ["systemctl", "is-active"]:
            return self._result(argv, 3 if args[-1] in self.inactive else 0)
        if args[:2] == ["docker", "ps"]:
            return self._result(argv, 0, self.containers)
        if args == ["java", "-version"]:
            return self._result(argv, 0, stderr=f"{JAVA_VERSION}\nOpenJDK Runtime Environment\n")
        if args == ["docker", "--version"]:
            return self._result(argv, 0, f"{DOCKER_VERSION}\n")
        if args == ["trivy", "--version"]:
            return self._result(argv, 0, f"{TRIVY_VERSION}\nVulnerability DB:\n")
        if args[0] == "bash":
            name = args[-1].split()[-1]
            return self._result(argv, 1 if name in self.missing else 0, f"/usr/bin/{name}")
        return self._result(argv, 0)

    @staticmethod
    def _result(
        argv: list[str], code: int, stdout: str = "", stderr: str = ""
    ) -> subprocess.CompletedProcess[str]:
        return subprocess.CompletedProcess(argv, code, stdout=stdout, stderr=stderr)


@pytest.fixture
def attempts() -> list[tuple[str, int]]:
    """Ports the fake connector was asked to open."""
    return []


def _accepting(attempts: list[tuple[str, int]]) -> Connector:
    def connect(host: str, port: int, timeout: float) -> None:
        attempts.append((host, port))

    return connect


def _context(host: HealthyHost, connect: Connector | None = None) -> ProbeContext:
    return ProbeContext(
        shell=HostShell(runner=host, use_sudo=False),
        ports=PORTS,
        options=ProbeOptions(connect=connect or _accepting([])),
    )


def test_probe_order_skips_ssh_and_sorts_ports() -> None:
    """Services, container and binaries come first, then ports by number."""
    probes = collect_probes(_context(HealthyHost()))

    assert [probe.id for probe in probes] == [
        "service-docker",
        "service-jenkins",
        "container-sonarqube",
        "binary-java",
        "binary-trivy",
        "port-jenkins",
        "port-sonarqube",
    ]


def test_healthy_host_passes(attempts: list[tuple[str, int]]) -> None:
    """Every probe is green on a healthy host."""
    context = _context(HealthyHost(), _accepting(attempts))

    report = HealthEngine(context).run(collect_probes(context), metadata={"command": "verify"})

    assert report.summary.status is ProbeStatus.GREEN
    assert report.summary.exit_code == 0
    assert report.summary.line() == "Verification pass: 7 passed, 0 warned, 0 failed."
    assert attempts == [("127.0.0.1", 8080), ("127.0.0.1", 9000)]
    payload = report.to_dict()
    assert payload["metadata"]["command"] == "verify"  # type: ignore[index]
    assert payload["metadata"]["probe_count"] == 7  # type: ignore[index]
    assert all(result.duration_ms is not None for result in report.results)


def test_binary_probes_report_versions() -> None:
    """Tool versions are captured, including ``java -version`` on stderr."""
    context = _context(HealthyHost())

    report = HealthEngine(context).run(collect_probes(context))

    by_id = {result.id: result for result in report.results}
    assert by_id["binary-java"].data == {"version": JAVA_VERSION}
    assert by_id["binary-java"].message == f"java is available ({JAVA_VERSION})."
    assert by_id["binary-trivy"].data == {"version": TRIVY_VERSION}


def test_container_probe_lists_containers_and_docker_version() -> None:
    """The container check carries the ``docker ps`` table and Docker's version."""
    host = HealthyHost()
    host.containers += "\nbuildkit\tmoby/buildkit:latest\tUp 1 hour"
    context = _context(host)

    report = HealthEngine(context).run(collect_probes(context))

    container = {result.id: result for result in report.results}["container-sonarqube"]
    assert container.message == "Container sonarqube is running (Up 3 minutes)."
    assert container.data == {
        "docker_version": DOCKER_VERSION,
        "containers": [
            {"name": "sonarqube", "image": "sonarqube:lts-community", "status": "Up 3 minutes"},
            {"name": "buildkit", "image": "moby/buildkit:latest", "status": "Up 1 hour"},
        ],
    }


def test_closed_port_only_warns() -> None:
    """A port that refuses connections is yellow and does not change the exit code."""

    def refuse(host: str, port: int, timeout: float) -> None:
        if port == 9000:
            raise ConnectionRefusedError("connection refused")

    context = _context(HealthyHost(), refuse)

    report = HealthEngine(context).run(collect_probes(context))

    by_id = {result.id: result for result in report.results}
    assert by_id["port-sonarqube"].status is ProbeStatus.YELLOW
    assert by_id["port-sonarqube"].data == {"host": "127.0.0.1", "port": 9000}
    assert report.summary.status is ProbeStatus.YELLOW
    assert report.summary.exit_code == 0


def test_inactive_docker_is_a_provider_failure() -> None:
    """Docker down is red; Jenkins down only warns."""
    context = _context(HealthyHost(inactive=("docker", "jenkins")))

    report = HealthEngine(context).run(collect_probes(context))

    by_id = {result.id: result for result in report.results}
    assert by_id["service-docker"].status is ProbeStatus.RED
    assert by_id["service-jenkins"].status is ProbeStatus.YELLOW
    assert report.summary.exit_code == HealthImpact.PROVIDER.value


def test_missing_binary_is_an_environment_failure() -> None:
    """A missing trivy binary maps to the environment exit code."""
    context = _context(HealthyHost(missing=("trivy",)))

    report = HealthEngine(context).run(collect_probes(context))

    by_id = {result.id: result for result in report.results}
    assert by_id["binary-trivy"].status is ProbeStatus.RED
    assert by_id["binary-trivy"].remediation == "Re-run 'labctl bootstrap run'."
    assert report.summary.exit_code == HealthImpact.ENVIRONMENT.value


def test_missing_container_is_reported() -> None:
    """The SonarQube container must appear in ``docker ps``."""
    host = HealthyHost()
    host.containers = "other\tnginx:latest\tUp 1 hour"
    context = _context(host)

    report = HealthEngine(context).run(collect_probes(context))

    by_id = {result.id: result for result in report.results}
    assert by_id["container-sonarqube"].message == "Container sonarqube is not running."


def test_probe_exception_becomes_red_result_and_pass_continues() -> None:
    """A probe that raises is reported and the probes after it still run."""

    def explode(context: ProbeContext) -> ProbeResult:
        raise RuntimeError("kaboom")

    def fine(context: ProbeContext) -> ProbeResult:
        return ProbeResult("other", "port", ProbeStatus.GREEN, HealthImpact.OK, "fine")

    probes = [
        ProbeDefinition(id="custom", category="service", run=explode),
        ProbeDefinition(id="after", category="binary", run=fine),
    ]

    report = HealthEngine(_context(HealthyHost())).run(probes)

    first, second = report.results
    assert first.status is ProbeStatus.RED
    assert first.impact is HealthImpact.PROVIDER
    assert "kaboom" in first.message
    assert (second.id, second.category) == ("after", "binary")
    assert second.duration_ms is not None


def test_worst_result_decides_summary() -> None:
    """Aggregation takes the worst status and the highest impact."""
    results = [
        ProbeResult("a", "port", ProbeStatus.YELLOW, HealthImpact.OK, "warn"),
        ProbeResult("b", "binary", ProbeStatus.RED, HealthImpact.ENVIRONMENT, "fail"),
        ProbeResult("c", "service", ProbeStatus.GREEN, HealthImpact.OK, "ok"),
    ]

    summary = aggregate_results(results)

    assert summary.status is ProbeStatus.RED
    assert summary.exit_code == 3
    assert summary.line() == "Verification fail: 1 passed, 1 warned, 1 failed."
