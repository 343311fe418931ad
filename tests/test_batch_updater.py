"""Tests for batch orchestration (dockgate/services/batch_updater.py)."""

from unittest.mock import AsyncMock, patch

from prometheus_client import REGISTRY

from dockgate.schemas.update import ProgressEvent
from dockgate.services.batch_updater import collect_results
from dockgate.services.docker_runtime import UnexpectedPayloadError
from dockgate.services.vulnerability_policy import ScanSummary


def sample(name, labels=None):
    return REGISTRY.get_sample_value(name, labels or {}) or 0


class TestBatchOrdering:
    """Test suite for event ordering within a batch."""

    async def test_start_first_and_complete_last(self, fake_runtime, run_batch):
        fake_runtime.add_container("c1", "web")
        fake_runtime.add_container("c2", "db", image="postgres:16")

        events = await run_batch(["c1", "c2"])

        assert events[0].type == "start"
        assert events[0].total == 2
        assert events[0].message == "Starting update of 2 containers"
        assert events[-1].type == "complete"
        assert [e.type for e in events].count("complete") == 1

    async def test_containers_never_interleave(self, fake_runtime, run_batch):
        for index in range(3):
            fake_runtime.add_container(f"c{index}", f"app{index}", image=f"app{index}:1")

        events = await run_batch(["c0", "c1", "c2"])

        container_order = [e.container_id for e in events[1:-1]]
        # Each container's events form one contiguous run
        runs = [cid for i, cid in enumerate(container_order) if i == 0 or container_order[i - 1] != cid]
        assert runs == ["c0", "c1", "c2"]
        assert [e.current for e in events if e.outcome] == [1, 2, 3]

    async def test_start_message_mentions_scanning(self, fake_runtime, run_batch, enable_scanner):
        await enable_scanner("trivy")
        fake_runtime.add_container("c1", "web")

        events = await run_batch(["c1"])

        assert events[0].message == "Starting update of 1 container with vulnerability scanning"


class TestBatchSummary:
    """Test suite for outcome counting."""

    async def test_counters_sum_to_input(self, fake_runtime, fake_scanner, run_batch, enable_scanner):
        await enable_scanner("grype")
        fake_runtime.add_container("ok", "web")
        fake_runtime.add_container("self", "dockgate", image="dockgate/dockgate:latest")
        fake_runtime.add_container("bad", "api", image="api:2")
        fake_runtime.pull_targets["api:2"] = "sha256:api-new"
        fake_scanner.summaries["api:2-dockgate-pending"] = ScanSummary(critical=3)

        ids = ["ok", "missing", "self", "bad"]
        events = await run_batch(ids, criteria="critical_high")

        summary = events[-1].summary
        assert (summary.success, summary.failed, summary.skipped, summary.blocked) == (1, 1, 1, 1)
        assert summary.success + summary.failed + summary.blocked + summary.skipped == len(ids)
        assert summary.total == 4
        assert events[-1].message == "Updated 1 of 4 containers (1 blocked) (1 skipped)"

    async def test_one_terminal_event_per_container(self, fake_runtime, run_batch):
        fake_runtime.add_container("c1", "web")
        fake_runtime.failures["stop_container"] = RuntimeError("timeout")

        events = await run_batch(["c1", "c1", "missing"])

        outcomes = [e.outcome for e in events if e.outcome]
        assert outcomes == ["failed", "failed", "failed"]

    async def test_unexpected_exception_becomes_failed(self, fake_runtime, run_batch):
        fake_runtime.add_container("c2", "web")
        fake_runtime.inspect_container = AsyncMock(
            side_effect=[UnexpectedPayloadError("Docker inspect payload is missing 'Config'"), fake_runtime.containers["c2"]]
        )

        events = await run_batch(["c1", "c2"])

        failed = [e for e in events if e.outcome == "failed"]
        assert len(failed) == 1
        assert failed[0].container_id == "c1"
        assert failed[0].error == "Docker inspect payload is missing 'Config'"
        assert events[-1].summary.success == 1

    async def test_setup_failure_still_completes(self, run_batch):
        with patch(
            "dockgate.services.batch_updater.ScannerSettings.load",
            new_callable=AsyncMock,
            side_effect=RuntimeError("database is locked"),
        ):
            events = await run_batch(["c1", "c2"])

        assert [e.type for e in events] == ["start", "error", "complete"]
        assert events[1].error == "Failed to prepare update: database is locked"
        assert events[-1].summary.failed == 2

    async def test_outcome_metrics(self, fake_runtime, run_batch):
        fake_runtime.add_container("c1", "web")
        before_success = sample("dockgate_container_updates_total", {"outcome": "success"})
        before_failed = sample("dockgate_container_updates_total", {"outcome": "failed"})
        before_batches = sample("dockgate_update_batches_total")

        await run_batch(["c1", "missing"])

        assert sample("dockgate_container_updates_total", {"outcome": "success"}) == before_success + 1
        assert sample("dockgate_container_updates_total", {"outcome": "failed"}) == before_failed + 1
        assert sample("dockgate_update_batches_total") == before_batches + 1


class TestCollectResults:
    """Test suite for collect_results."""

    async def test_collects_terminal_events(self):
        async def events():
            yield ProgressEvent(type="start", total=2)
            yield ProgressEvent(type="progress", step="pulling", container_id="c1", container_name="web")
            yield ProgressEvent(type="progress", step="done", container_id="c1", container_name="web", success=True)
            yield ProgressEvent(
                type="blocked", step="blocked", container_id="c2", container_name="api", block_reason="Found 1 critical vulnerabilities"
            )
            yield ProgressEvent(
                type="complete", summary={"total": 2, "success": 1, "blocked": 1}
            )

        response = await collect_results(events())

        assert response.summary.success == 1
        assert [(r.container_id, r.outcome) for r in response.results] == [("c1", "success"), ("c2", "blocked")]
        assert response.results[1].block_reason == "Found 1 critical vulnerabilities"
        body = response.model_dump(by_alias=True, exclude_none=True)
        assert body["results"][1]["blockReason"] == "Found 1 critical vulnerabilities"
        assert "error" not in body["results"][0]

    async def test_aborted_stream_still_returns_summary(self):
        async def events():
            yield ProgressEvent(type="start", total=3)
            yield ProgressEvent(type="progress", step="done", container_id="c1", container_name="web", success=True)
            raise RuntimeError("connection lost")

        response = await collect_results(events())

        assert response.summary.model_dump() == {"total": 3, "success": 1, "failed": 2, "blocked": 0, "skipped": 0}
        assert [r.container_id for r in response.results] == ["c1"]


class TestRollbackFailure:
    """Test suite for batches whose database connection dies mid-batch."""

    async def test_failed_rollback_does_not_abort_batch(self, db, fake_runtime, run_batch):
        fake_runtime.add_container("c2", "web")
        fake_runtime.inspect_container = AsyncMock(
            side_effect=[RuntimeError("boom"), fake_runtime.containers["c2"]]
        )

        with patch.object(db, "rollback", AsyncMock(side_effect=RuntimeError("connection lost"))):
            events = await run_batch(["c1", "c2"])

        assert events[-1].type == "complete"
        assert (events[-1].summary.success, events[-1].summary.failed) == (1, 1)
        assert [(e.container_id, e.outcome) for e in events if e.outcome] == [("c1", "failed"), ("c2", "success")]
        assert next(e for e in events if e.outcome == "failed").error == "boom"
