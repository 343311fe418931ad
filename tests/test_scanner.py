"""Tests for the scanner adapter (dockgate/services/scanner.py)."""

import json

import pytest

from dockgate.exceptions import ScannerOutputError
from dockgate.services.docker_runtime import ContainerOutput, PullProgress, RuntimeContext
from dockgate.services.scanner import (
    DockerScanner,
    ScannerSettings,
    parse_cli_args,
    parse_grype_output,
    parse_trivy_output,
)
from dockgate.services.settings_service import SettingsService
from dockgate.services.vulnerability_policy import ScanSummary

CTX = RuntimeContext(environment_id=None)

GRYPE_REPORT = {
    "matches": [
        {
            "vulnerability": {
                "id": "CVE-2024-0001",
                "severity": "Critical",
                "description": "Heap overflow",
                "dataSource": "https://nvd.nist.gov/vuln/detail/CVE-2024-0001",
                "fix": {"versions": ["1.2.4"]},
            },
            "artifact": {"name": "openssl", "version": "1.2.3"},
        },
        {
            "vulnerability": {"id": "CVE-2024-0002", "severity": "High", "fix": {"versions": []}},
            "artifact": {"name": "zlib", "version": "1.0"},
        },
        {
            "vulnerability": {"id": "CVE-2024-0003", "severity": "Negligible"},
            "artifact": {"name": "bash", "version": "5.1"},
        },
        {
            "vulnerability": {"id": "CVE-2024-0004", "severity": "Weird"},
            "artifact": {"name": "curl", "version": "8.0"},
        },
    ]
}

TRIVY_REPORT = {
    "Results": [
        {
            "Target": "nginx:1.25 (debian 12)",
            "Vulnerabilities": [
                {
                    "VulnerabilityID": "CVE-2024-1000",
                    "PkgName": "libc6",
                    "InstalledVersion": "2.36",
                    "FixedVersion": "2.37",
                    "Severity": "HIGH",
                    "References": ["https://example.test/CVE-2024-1000"],
                },
                {
                    "VulnerabilityID": "CVE-2024-1001",
                    "PkgName": "libssl3",
                    "InstalledVersion": "3.0",
                    "Severity": "MEDIUM",
                    "PrimaryURL": "https://avd.aquasec.com/nvd/cve-2024-1001",
                },
            ],
        },
        {"Target": "app.jar", "Vulnerabilities": None},
    ]
}


class TestParsers:
    """Test suite for scanner report parsing."""

    def test_parse_grype(self):
        vulnerabilities, summary = parse_grype_output(json.dumps(GRYPE_REPORT))

        assert summary == ScanSummary(critical=1, high=1, negligible=1, unknown=1)
        assert len(vulnerabilities) == 4
        first = vulnerabilities[0]
        assert first.id == "CVE-2024-0001"
        assert first.severity == "critical"
        assert first.package == "openssl"
        assert first.fixed_version == "1.2.4"
        assert first.link == "https://nvd.nist.gov/vuln/detail/CVE-2024-0001"
        assert vulnerabilities[1].fixed_version is None

    def test_parse_grype_no_matches(self):
        vulnerabilities, summary = parse_grype_output('{"matches": []}')
        assert vulnerabilities == []
        assert summary == ScanSummary()

    def test_parse_trivy(self):
        vulnerabilities, summary = parse_trivy_output(json.dumps(TRIVY_REPORT))

        assert summary == ScanSummary(high=1, medium=1)
        assert [v.id for v in vulnerabilities] == ["CVE-2024-1000", "CVE-2024-1001"]
        assert vulnerabilities[0].link == "https://example.test/CVE-2024-1000"
        assert vulnerabilities[1].link == "https://avd.aquasec.com/nvd/cve-2024-1001"
        assert vulnerabilities[0].to_dict()["fixedVersion"] == "2.37"

    def test_non_json_output_reports_first_line(self):
        with pytest.raises(ScannerOutputError, match="Scanner output error: unknown flag: --bogus"):
            parse_grype_output("unknown flag: --bogus\nUsage: grype ...")

    def test_truncated_json_hints_at_format_flag(self):
        with pytest.raises(ScannerOutputError, match="--format json"):
            parse_trivy_output('{"Results": [')


class TestParseCliArgs:
    """Test suite for CLI argument substitution."""

    def test_substitutes_image(self):
        assert parse_cli_args("-o json -v {image}", "nginx:1.25") == ["-o", "json", "-v", "nginx:1.25"]

    def test_respects_quotes(self):
        args = parse_cli_args('image --ignore-policy "/policies/my policy.rego" {image}', "app:1")
        assert args == ["image", "--ignore-policy", "/policies/my policy.rego", "app:1"]


class TestScannerSettings:
    """Test suite for ScannerSettings."""

    def test_scanners(self):
        assert ScannerSettings(scanner="none").scanners == ()
        assert ScannerSettings(scanner="grype").scanners == ("grype",)
        assert ScannerSettings(scanner="both").scanners == ("grype", "trivy")
        assert ScannerSettings(scanner="none").enabled is False

    async def test_load_prefers_environment_override(self, db):
        await SettingsService.set(db, "vulnerability_scanner", "grype")
        await SettingsService.set(db, "vulnerability_scanner", "trivy", environment_id=3)

        assert (await ScannerSettings.load(db, 3)).scanner == "trivy"
        assert (await ScannerSettings.load(db, 4)).scanner == "grype"

    async def test_load_rejects_unknown_scanner(self, db):
        await SettingsService.set(db, "vulnerability_scanner", "clair")
        assert (await ScannerSettings.load(db, None)).scanner == "none"


class ScanRuntime:
    """Runtime double serving canned scanner container output."""

    def __init__(self, outputs: dict[str, str], has_images: bool = True):
        self.outputs = outputs
        self.has_images = has_images
        self.runs: list[dict] = []
        self.pulled: list[str] = []
        self.volumes: list[str] = []

    async def image_exists(self, ctx, reference):
        return self.has_images

    async def pull_image(self, ctx, image):
        self.pulled.append(image)
        yield PullProgress(status="Downloaded newer image")

    async def ensure_volume(self, ctx, name):
        self.volumes.append(name)

    async def run_container(self, ctx, image, command, binds, environment, name):
        self.runs.append({"image": image, "command": command, "binds": binds, "environment": environment})
        scanner = "grype" if "grype" in image else "trivy"
        yield ContainerOutput("stderr", f"{scanner} vulnerability db loaded")
        yield ContainerOutput("stdout", self.outputs[scanner], exit_code=0)

    async def get_image_id_by_tag(self, ctx, reference):
        return "sha256:scanned"


async def drain(scanner, reference, settings):
    progress = [item async for item in scanner.scan_image(CTX, reference, settings)]
    return progress, progress[-1]


class TestDockerScanner:
    """Test suite for DockerScanner.scan_image."""

    async def test_single_scanner(self):
        runtime = ScanRuntime({"grype": json.dumps(GRYPE_REPORT)})
        scanner = DockerScanner(runtime)

        progress, final = await drain(scanner, "nginx:1.25-dockgate-pending", ScannerSettings(scanner="grype"))

        assert final.stage == "complete"
        assert len(final.results) == 1
        result = final.results[0]
        assert result.scanner == "grype"
        assert result.image_id == "sha256:scanned"
        assert result.summary.critical == 1
        assert runtime.runs[0]["command"] == ["-o", "json", "-v", "nginx:1.25-dockgate-pending"]
        assert runtime.volumes == ["dockgate-grype-db"]
        assert any(p.output == "grype vulnerability db loaded" for p in progress)

    async def test_pulls_missing_scanner_image(self):
        runtime = ScanRuntime({"trivy": json.dumps(TRIVY_REPORT)}, has_images=False)

        progress, _ = await drain(DockerScanner(runtime), "app:1", ScannerSettings(scanner="trivy"))

        assert runtime.pulled == ["aquasec/trivy:latest"]
        assert "pulling-scanner" in [p.stage for p in progress]

    async def test_both_scanners_return_both_results(self):
        runtime = ScanRuntime({"grype": json.dumps(GRYPE_REPORT), "trivy": json.dumps(TRIVY_REPORT)})

        _, final = await drain(DockerScanner(runtime), "app:1", ScannerSettings(scanner="both"))

        assert [r.scanner for r in final.results] == ["grype", "trivy"]

    async def test_both_scanners_tolerate_one_failure(self):
        runtime = ScanRuntime({"grype": "not json", "trivy": json.dumps(TRIVY_REPORT)})

        _, final = await drain(DockerScanner(runtime), "app:1", ScannerSettings(scanner="both"))

        assert [r.scanner for r in final.results] == ["trivy"]

    async def test_both_scanners_failing_raises(self):
        runtime = ScanRuntime({"grype": "not json", "trivy": "also not json"})

        with pytest.raises(RuntimeError, match="All scanners failed"):
            await drain(DockerScanner(runtime), "app:1", ScannerSettings(scanner="both"))

    async def test_single_scanner_failure_propagates(self):
        runtime = ScanRuntime({"grype": "Error: image not found"})

        with pytest.raises(ScannerOutputError, match="image not found"):
            await drain(DockerScanner(runtime), "app:1", ScannerSettings(scanner="grype"))
