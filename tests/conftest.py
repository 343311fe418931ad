"""Pytest configuration and fixtures."""

import os
from collections.abc import AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Set DATABASE_URL for tests BEFORE importing dockgate.db
# This prevents the module from trying to create /data directory
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"

from dockgate.db import Base  # noqa: E402
from dockgate.exceptions import ContainerNotFoundError  # noqa: E402
from dockgate.models import *  # noqa: E402,F401,F403
from dockgate.services.docker_runtime import (  # noqa: E402
    ContainerCreateSpec,
    ContainerSnapshot,
    ContainerSummary,
    CreatedContainer,
    PullProgress,
    RestartPolicy,
    RuntimeContext,
)
from dockgate.services.scanner import ScannerResult, ScanProgress  # noqa: E402
from dockgate.services.vulnerability_policy import ScanSummary  # noqa: E402


@pytest.fixture(scope="function")
async def db_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture(scope="function")
async def db(db_engine) -> AsyncGenerator[AsyncSession]:
    """Create a test database session with automatic rollback."""
    async_session_maker = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def mock_async_session_local(db):
    """Mock AsyncSessionLocal to return the test database session.

    Batch updates open their own session with AsyncSessionLocal(); this makes
    them use the test's in-memory database instead.
    """
    from unittest.mock import patch

    class MockAsyncSessionLocal:
        """Mock async context manager for database sessions."""

        def __call__(self):
            return self

        async def __aenter__(self):
            return db

        async def __aexit__(self, exc_type, exc_val, exc_tb):
            # Don't close the session - let the test fixture manage it
            return False

    mock_session_local = MockAsyncSessionLocal()

    with patch("dockgate.services.batch_updater.AsyncSessionLocal", mock_session_local), \
         patch("dockgate.main.AsyncSessionLocal", mock_session_local):
        yield mock_session_local


class FakeRuntime:
    """In-memory Docker host.

    ``images`` maps image references to image ids; pulling an image points
    its reference at ``pull_targets[image]`` (or leaves it unchanged).
    """

    def __init__(self):
        self.containers: dict[str, ContainerSnapshot] = {}
        self.images: dict[str, str] = {}
        self.pull_targets: dict[str, str] = {}
        self.failures: dict[str, Exception] = {}
        self.calls: list[tuple] = []
        # image id -> repo digests; reference -> digest the registry serves
        self.repo_digests: dict[str, list[str]] = {}
        self.registry_digests: dict[str, str] = {}

    def add_container(
        self,
        container_id: str,
        name: str,
        image: str = "nginx:1.25",
        image_id: str = "sha256:old",
        running: bool = True,
        **kwargs,
    ) -> ContainerSnapshot:
        snapshot = ContainerSnapshot(
            id=container_id,
            name=name,
            running=running,
            image=image,
            image_id=image_id,
            **kwargs,
        )
        self.containers[container_id] = snapshot
        self.images.setdefault(image, image_id)
        return snapshot

    def _check(self, method: str) -> None:
        if method in self.failures:
            raise self.failures[method]

    def call_names(self) -> list[str]:
        return [call[0] for call in self.calls]

    def temp_tags(self) -> list[str]:
        return [ref for ref in self.images if ref.endswith("-dockgate-pending")]

    async def list_containers(self, ctx: RuntimeContext, all: bool = True) -> list[ContainerSummary]:
        return [
            ContainerSummary(s.id, s.name, s.image, "running" if s.running else "exited")
            for s in self.containers.values()
        ]

    async def inspect_container(self, ctx: RuntimeContext, container_id: str) -> ContainerSnapshot:
        self.calls.append(("inspect_container", container_id))
        if container_id not in self.containers:
            raise ContainerNotFoundError(container_id)
        return self.containers[container_id]

    async def pull_image(self, ctx: RuntimeContext, image: str):
        self.calls.append(("pull_image", image))
        yield PullProgress(status="Pulling from library/nginx", id="1.25")
        yield PullProgress(status=None, id="layer")
        self._check("pull_image")
        yield PullProgress(status="Downloading", id="a1b2c3", progress="[==>  ] 1MB/4MB")
        if image in self.pull_targets:
            self.images[image] = self.pull_targets[image]

    async def tag_image(self, ctx: RuntimeContext, image_id: str, repo: str, tag: str) -> None:
        self.calls.append(("tag_image", image_id, repo, tag))
        self._check("tag_image")
        self.images[f"{repo}:{tag}"] = image_id

    async def get_image_id_by_tag(self, ctx: RuntimeContext, reference: str) -> str | None:
        self.calls.append(("get_image_id_by_tag", reference))
        return self.images.get(reference)

    async def get_repo_digests(self, ctx: RuntimeContext, image_id: str) -> list[str] | None:
        self.calls.append(("get_repo_digests", image_id))
        if image_id in self.repo_digests:
            return self.repo_digests[image_id]
        return [] if image_id in self.images.values() else None

    async def get_registry_digest(self, ctx: RuntimeContext, reference: str) -> str | None:
        self.calls.append(("get_registry_digest", reference))
        self._check("get_registry_digest")
        return self.registry_digests.get(reference)

    async def remove_image(self, ctx: RuntimeContext, reference: str, force: bool = False) -> None:
        self.calls.append(("remove_image", reference))
        self._check("remove_image")
        self.images.pop(reference, None)

    async def stop_container(self, ctx: RuntimeContext, container_id: str) -> None:
        self.calls.append(("stop_container", container_id))
        self._check("stop_container")

    async def remove_container(self, ctx: RuntimeContext, container_id: str, force: bool = True) -> None:
        self.calls.append(("remove_container", container_id))
        self._check("remove_container")
        self.containers.pop(container_id, None)

    async def create_container(self, ctx: RuntimeContext, spec: ContainerCreateSpec) -> CreatedContainer:
        self.calls.append(("create_container", spec))
        self._check("create_container")
        return CreatedContainer(self, ctx, f"new-{spec.name}", spec.name)

    async def start_container(self, ctx: RuntimeContext, container_id: str) -> None:
        self.calls.append(("start_container", container_id))
        self._check("start_container")


class FakeScanner:
    """Scanner returning canned summaries keyed by scanned reference."""

    def __init__(self):
        self.summaries: dict[str, ScanSummary] = {}
        self.failures: dict[str, Exception] = {}
        self.scanned: list[str] = []

    async def scan_image(self, ctx, reference, settings):
        self.scanned.append(reference)
        for scanner in settings.scanners:
            yield ScanProgress(
                stage="scanning",
                message=f"Scanning {reference} with {scanner}...",
                scanner=scanner,
                output=f"{scanner}: loading database",
            )
        if reference in self.failures:
            raise self.failures[reference]

        summary = self.summaries.get(reference, ScanSummary())
        results = tuple(
            ScannerResult(scanner=scanner, image_id=reference, image_name=reference, summary=summary)
            for scanner in settings.scanners
        )
        yield ScanProgress(stage="complete", message="Scan complete", results=results)


@pytest.fixture
def fake_runtime():
    return FakeRuntime()


@pytest.fixture
def fake_scanner():
    return FakeScanner()


@pytest.fixture
def make_snapshot():
    """Factory fixture for ContainerSnapshot with sensible defaults."""

    def _make_snapshot(**kwargs):
        defaults = {
            "id": "abc123def456",
            "name": "web",
            "running": True,
            "image": "nginx:1.25",
            "image_id": "sha256:old",
            "restart_policy": RestartPolicy(name="unless-stopped"),
        }
        return ContainerSnapshot(**{**defaults, **kwargs})

    return _make_snapshot


@pytest.fixture
async def app(fake_runtime):
    """FastAPI app wired to the fake Docker runtime."""
    from dockgate.main import app as application

    original_runtime = application.state.runtime
    application.state.runtime = fake_runtime
    yield application
    application.state.runtime = original_runtime


@pytest.fixture
async def client(app, db, mock_async_session_local):
    """Create async test client backed by the test database."""
    from httpx import ASGITransport, AsyncClient

    from dockgate.db import get_db

    async def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def run_batch(fake_runtime, fake_scanner, mock_async_session_local):
    """Run a batch against the fakes and return every event it produced."""
    from dockgate.services.batch_updater import BatchUpdater
    from dockgate.services.vulnerability_policy import VulnerabilityCriteria

    async def _run_batch(container_ids, criteria="never", environment_id=None):
        updater = BatchUpdater(
            fake_runtime,
            environment_id=environment_id,
            scanner=fake_scanner,
            session_factory=mock_async_session_local,
        )
        return [event async for event in updater.run(container_ids, VulnerabilityCriteria(criteria))]

    return _run_batch


@pytest.fixture
async def enable_scanner(db):
    """Turn on vulnerability scanning with the given scanner."""
    from dockgate.services.settings_service import SettingsService

    async def _enable(scanner="grype", environment_id=None):
        await SettingsService.set(db, "vulnerability_scanner", scanner, environment_id=environment_id)

    return _enable
