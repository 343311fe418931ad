"""Vulnerability scanner adapter.

Runs Grype and/or Trivy in one-shot containers against an image reference and
parses their JSON reports into per-scanner severity summaries. Scanner
databases are cached in named volumes between runs.
"""

import json
import logging
import shlex
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from dockgate.exceptions import ScannerOutputError
from dockgate.services.docker_runtime import DockerRuntime, RuntimeContext
from dockgate.services.settings_service import (
    DEFAULT_GRYPE_ARGS,
    DEFAULT_TRIVY_ARGS,
    SettingsService,
)
from dockgate.services.vulnerability_policy import ScanSummary

logger = logging.getLogger(__name__)

SCANNER_TYPES = ("none", "grype", "trivy", "both")

GRYPE_VOLUME_NAME = "dockgate-grype-db"
TRIVY_VOLUME_NAME = "dockgate-trivy-db"


@dataclass(frozen=True)
class ScannerSettings:
    scanner: str = "none"
    grype_args: str = DEFAULT_GRYPE_ARGS
    trivy_args: str = DEFAULT_TRIVY_ARGS
    grype_image: str = "anchore/grype:latest"
    trivy_image: str = "aquasec/trivy:latest"

    @property
    def enabled(self) -> bool:
        return self.scanner != "none"

    @property
    def scanners(self) -> tuple[str, ...]:
        if self.scanner == "both":
            return ("grype", "trivy")
        if self.scanner in ("grype", "trivy"):
            return (self.scanner,)
        return ()

    @classmethod
    async def load(cls, db: AsyncSession, environment_id: int | None) -> "ScannerSettings":
        """Scanner choice is per environment; CLI args and images are global."""
        scanner = await SettingsService.get_for_environment(
            db, "vulnerability_scanner", environment_id, default="none"
        )
        if scanner not in SCANNER_TYPES:
            logger.warning(f"Unknown vulnerability scanner '{scanner}', scanning disabled")
            scanner = "none"

        return cls(
            scanner=scanner,
            grype_args=await SettingsService.get(db, "default_grype_args", DEFAULT_GRYPE_ARGS),
            trivy_args=await SettingsService.get(db, "default_trivy_args", DEFAULT_TRIVY_ARGS),
            grype_image=await SettingsService.get(db, "grype_image", "anchore/grype:latest"),
            trivy_image=await SettingsService.get(db, "trivy_image", "aquasec/trivy:latest"),
        )


@dataclass(frozen=True)
class Vulnerability:
    id: str
    severity: str
    package: str
    version: str
    scanner: str
    fixed_version: str | None = None
    description: str | None = None
    link: str | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "severity": self.severity,
            "package": self.package,
            "version": self.version,
            "fixedVersion": self.fixed_version,
            "description": self.description,
            "link": self.link,
            "scanner": self.scanner,
        }


@dataclass(frozen=True)
class ScannerResult:
    """One scanner's findings for one image."""

    scanner: str
    image_id: str
    image_name: str
    summary: ScanSummary
    vulnerabilities: tuple[Vulnerability, ...] = ()
    scanned_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    duration_ms: int = 0
    error: str | None = None


@dataclass(frozen=True)
class ScanProgress:
    """Progress report from a running scan.

    The last item of a scan has ``stage == "complete"`` and carries the results.
    """

    stage: str  # checking, pulling-scanner, scanning, parsing, complete
    message: str = ""
    scanner: str | None = None
    output: str | None = None
    results: tuple[ScannerResult, ...] | None = None


def _count(summary: dict[str, int], severity: str) -> None:
    key = severity if severity in summary else "unknown"
    summary[key] += 1


def _empty_counts() -> dict[str, int]:
    return {"critical": 0, "high": 0, "medium": 0, "low": 0, "negligible": 0, "unknown": 0}


def _load_report(output: str, scanner: str, format_hint: str) -> dict:
    try:
        return json.loads(output)
    except json.JSONDecodeError:
        first_line = output.strip().split("\n")[0].strip() if output.strip() else ""
        logger.error(f"[{scanner}] Failed to parse output: {output[:500]}")
        if first_line and not first_line.startswith("{"):
            raise ScannerOutputError(f"Scanner output error: {first_line}")
        raise ScannerOutputError(
            f"Failed to parse scanner output - ensure CLI args include \"{format_hint}\""
        )


def parse_grype_output(output: str) -> tuple[list[Vulnerability], ScanSummary]:
    data = _load_report(output, "grype", "-o json")
    counts = _empty_counts()
    vulnerabilities = []

    for match in data.get("matches") or []:
        vuln = match.get("vulnerability") or {}
        artifact = match.get("artifact") or {}
        severity = (vuln.get("severity") or "unknown").lower()
        fix_versions = (vuln.get("fix") or {}).get("versions") or []
        vulnerabilities.append(
            Vulnerability(
                id=vuln.get("id") or "Unknown",
                severity=severity,
                package=artifact.get("name") or "Unknown",
                version=artifact.get("version") or "Unknown",
                scanner="grype",
                fixed_version=fix_versions[0] if fix_versions else None,
                description=vuln.get("description"),
                link=vuln.get("dataSource"),
            )
        )
        _count(counts, severity)

    return vulnerabilities, ScanSummary(**counts)


def parse_trivy_output(output: str) -> tuple[list[Vulnerability], ScanSummary]:
    data = _load_report(output, "trivy", "--format json")
    counts = _empty_counts()
    vulnerabilities = []

    for result in data.get("Results") or []:
        for vuln in result.get("Vulnerabilities") or []:
            severity = (vuln.get("Severity") or "unknown").lower()
            references = vuln.get("References") or []
            vulnerabilities.append(
                Vulnerability(
                    id=vuln.get("VulnerabilityID") or "Unknown",
                    severity=severity,
                    package=vuln.get("PkgName") or "Unknown",
                    version=vuln.get("InstalledVersion") or "Unknown",
                    scanner="trivy",
                    fixed_version=vuln.get("FixedVersion"),
                    description=vuln.get("Description"),
                    link=vuln.get("PrimaryURL") or (references[0] if references else None),
                )
            )
            _count(counts, severity)

    return vulnerabilities, ScanSummary(**counts)


PARSERS = {"grype": parse_grype_output, "trivy": parse_trivy_output}


def parse_cli_args(args: str, image: str) -> list[str]:
    """Substitute ``{image}`` and split the argument string like a shell would."""
    return shlex.split(args.replace("{image}", image))


class DockerScanner:
    """Scan images by running scanner containers on the same Docker host."""

    def __init__(self, runtime: DockerRuntime) -> None:
        self.runtime = runtime

    async def scan_image(
        self,
        ctx: RuntimeContext,
        reference: str,
        settings: ScannerSettings,
    ) -> AsyncIterator[ScanProgress]:
        """Scan ``reference`` with the configured scanner(s).

        With a single scanner its failure propagates. With ``both``, a
        failure only propagates when every scanner failed.
        """
        results: list[ScannerResult] = []
        errors: list[Exception] = []

        for scanner in settings.scanners:
            try:
                async for progress in self._scan_with(ctx, scanner, reference, settings):
                    if progress.results:
                        results.extend(progress.results)
                    else:
                        yield progress
            except Exception as e:
                logger.error(f"{scanner} scan of {reference} failed: {e}")
                errors.append(e)
                if settings.scanner != "both":
                    raise

        if errors and not results:
            raise RuntimeError(
                "All scanners failed: " + "; ".join(str(error) for error in errors)
            )

        yield ScanProgress(stage="complete", message="Scan complete", results=tuple(results))

    async def _scan_with(
        self,
        ctx: RuntimeContext,
        scanner: str,
        reference: str,
        settings: ScannerSettings,
    ) -> AsyncIterator[ScanProgress]:
        started = time.monotonic()
        scanner_image = settings.grype_image if scanner == "grype" else settings.trivy_image
        args = settings.grype_args if scanner == "grype" else settings.trivy_args

        yield ScanProgress(stage="checking", message=f"Checking {scanner} scanner availability...", scanner=scanner)

        if not await self.runtime.image_exists(ctx, scanner_image):
            yield ScanProgress(
                stage="pulling-scanner", message=f"Pulling scanner image {scanner_image}...", scanner=scanner
            )
            async for _ in self.runtime.pull_image(ctx, scanner_image):
                pass

        volume = GRYPE_VOLUME_NAME if scanner == "grype" else TRIVY_VOLUME_NAME
        cache_path = f"/cache/{scanner}"
        await self.runtime.ensure_volume(ctx, volume)
        cache_env = "GRYPE_DB_CACHE_DIR" if scanner == "grype" else "TRIVY_CACHE_DIR"

        yield ScanProgress(stage="scanning", message=f"Scanning {reference} with {scanner}...", scanner=scanner)

        stdout = ""
        exit_code = None
        async for output in self.runtime.run_container(
            ctx,
            image=scanner_image,
            command=parse_cli_args(args, reference),
            binds=["/var/run/docker.sock:/var/run/docker.sock:ro", f"{volume}:{cache_path}"],
            environment=[f"{cache_env}={cache_path}"],
            name=f"dockgate-{scanner}-{int(time.time() * 1000)}",
        ):
            if output.stream == "stdout":
                stdout = output.text
                exit_code = output.exit_code
            else:
                yield ScanProgress(
                    stage="scanning",
                    message=f"Scanning {reference} with {scanner}...",
                    scanner=scanner,
                    output=output.text,
                )

        yield ScanProgress(stage="parsing", message="Parsing scan results...", scanner=scanner)
        if exit_code not in (0, None):
            logger.warning(f"{scanner} exited with status {exit_code} scanning {reference}")

        vulnerabilities, summary = PARSERS[scanner](stdout)
        image_id = await self.runtime.get_image_id_by_tag(ctx, reference) or reference

        result = ScannerResult(
            scanner=scanner,
            image_id=image_id,
            image_name=reference,
            summary=summary,
            vulnerabilities=tuple(vulnerabilities),
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        logger.info(f"{scanner} scan of {reference}: {summary.describe()}")

        yield ScanProgress(
            stage="complete", message=f"{scanner} scan complete", scanner=scanner, results=(result,)
        )
