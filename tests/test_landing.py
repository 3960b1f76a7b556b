"""
Tests for the landing phase (LandingPoller).

Covers bounded polling, skip handling, per-keyword error isolation and the
checkpoint cadence.
"""

from unittest.mock import patch

import pytest

from audit_log import AuditLog
from fakes import FakeSerpClient, organic, paid, serp_page
from rank_pipeline import (
    CheckpointStore,
    LandingPoller,
    PollTimeoutError,
    STATUS_COMPLETED,
    STATUS_ERROR,
    STATUS_SKIPPED,
    SubmittedTask,
    TakeoffItem,
    TakeoffSubmitter,
    WorkItem,
)

GARLAND = "https://dallas.aaacwildliferemoval.com/service-area/garland/"


def _takeoff(keyword_count, office="dallas", location="Garland", failed=()):
    item = WorkItem(location=location, service="Bat Removal", intended_url=GARLAND, geo_coordinate="32.9,-96.6")
    tasks = {}
    for index in range(keyword_count):
        keyword = f"kw{index}"
        item.keywords.append(keyword)
        if keyword in failed:
            tasks[keyword] = SubmittedTask.failed(keyword, "HTTP 500: boom")
        else:
            tasks[keyword] = SubmittedTask.submitted(keyword, f"T{index + 1}")
    return {office: [TakeoffItem(item=item, tasks=tasks)]}


@pytest.mark.unit
class TestPollTask:
    """Bounded polling."""

    def test_returns_ready_task(self, config):
        client = FakeSerpClient(ready_after=2)
        poller = LandingPoller(config, client)

        with patch("rank_pipeline.time.sleep") as mock_sleep:
            task = poller.poll_task("T1")

        assert task["id"] == "T1"
        assert client.polled == ["T1", "T1", "T1"]
        assert mock_sleep.call_count == 2

    def test_exactly_thirty_attempts_then_timeout(self, config):
        client = FakeSerpClient(never_ready={"T1"})
        poller = LandingPoller(config, client)

        with patch("rank_pipeline.time.sleep") as mock_sleep:
            with pytest.raises(PollTimeoutError) as excinfo:
                poller.poll_task("T1")

        assert len(client.polled) == 30
        assert excinfo.value.attempts == 30
        assert mock_sleep.call_count == 29

    def test_sleeps_for_poll_interval(self, monkeypatch):
        from rank_pipeline import Config

        monkeypatch.setenv("POLL_INTERVAL_SECONDS", "10")
        poller = LandingPoller(Config(), FakeSerpClient(ready_after=1))

        with patch("rank_pipeline.time.sleep") as mock_sleep:
            poller.poll_task("T1")

        mock_sleep.assert_called_once_with(10.0)

    def test_exceptions_count_against_budget(self, config):
        class FlakyClient(FakeSerpClient):
            def get_task(self, task_id):
                self.polled.append(task_id)
                raise ConnectionError("reset by peer")

        client = FlakyClient()
        config.poll_max_attempts = 5

        with patch("rank_pipeline.time.sleep"):
            with pytest.raises(PollTimeoutError):
                LandingPoller(config, client).poll_task("T9")

        assert len(client.polled) == 5

    def test_empty_result_list_is_not_ready(self, config):
        client = FakeSerpClient(results={"T1": []})
        config.poll_max_attempts = 3

        with patch("rank_pipeline.time.sleep"):
            with pytest.raises(PollTimeoutError):
                LandingPoller(config, client).poll_task("T1")


@pytest.mark.unit
class TestLandKeyword:
    """Per-keyword terminal states."""

    def test_unsubmitted_keyword_skipped_without_polling(self, config):
        client = FakeSerpClient()
        item = WorkItem(location="Garland", service="Bat Removal")

        result = LandingPoller(config, client).land_keyword(item, SubmittedTask.failed("kw", "HTTP 500: boom"))

        assert result.status == STATUS_SKIPPED
        assert result.rankings == []
        assert result.error_description == "HTTP 500: boom"
        assert client.polled == []

    def test_completed_with_rankings(self, config):
        client = FakeSerpClient(results={"T1": [serp_page(paid(1, GARLAND), organic(3, GARLAND))]})
        item = WorkItem(location="Garland", service="Bat Removal", intended_url=GARLAND)

        result = LandingPoller(config, client).land_keyword(item, SubmittedTask.submitted("kw", "T1"))

        assert result.status == STATUS_COMPLETED
        assert [(r.rank, r.url) for r in result.rankings] == [(3, GARLAND)]
        assert result.task_id == "T1"

    def test_timeout_recorded_as_error(self, config):
        client = FakeSerpClient(never_ready={"T1"})
        item = WorkItem(location="Garland", service="Bat Removal")

        with patch("rank_pipeline.time.sleep"):
            result = LandingPoller(config, client).land_keyword(item, SubmittedTask.submitted("kw", "T1"))

        assert result.status == STATUS_ERROR
        assert "30 poll attempts" in result.error_description
        assert result.task_id == "T1"

    def test_ready_result_dumped_to_audit_log(self, config):
        client = FakeSerpClient(results={"T1": [serp_page(organic(3, GARLAND))]})
        audit = AuditLog(config.data_dir)
        item = WorkItem(location="Garland", service="Bat Removal", intended_url=GARLAND)

        LandingPoller(config, client, audit=audit).land_keyword(item, SubmittedTask.submitted("kw", "T1"))

        records = audit.read_results()
        assert records[0]["task_id"] == "T1"
        assert records[0]["tracked_url"] == GARLAND
        assert records[0]["task"]["result"][0]["items"][0]["rank_group"] == 3


@pytest.mark.unit
@pytest.mark.checkpoint
class TestLandingRun:
    """Full landing passes."""

    def test_timeout_does_not_block_later_keywords(self, config):
        client = FakeSerpClient(never_ready={"T1"}, results={"T2": [serp_page(organic(2, GARLAND))]})

        with patch("rank_pipeline.time.sleep"):
            results = LandingPoller(config, client).run(_takeoff(2))

        landed = results["dallas"][0].results
        assert landed["kw0"].status == STATUS_ERROR
        assert landed["kw1"].status == STATUS_COMPLETED
        assert landed["kw1"].rankings[0].rank == 2

    def test_checkpoint_cadence_for_45_keywords(self, config):
        store = CheckpointStore(config.data_dir)
        saved_at = []
        original_save = store.save

        def recording_save(document, processed, total):
            saved_at.append(processed)
            return original_save(document, processed, total)

        store.save = recording_save

        LandingPoller(config, FakeSerpClient(), store=store).run(_takeoff(45))

        assert saved_at == [20, 40, 45]
        assert store.save_count == 3

    def test_skipped_and_errors_count_as_processed(self, config):
        results = LandingPoller(config, FakeSerpClient()).run(_takeoff(3, failed={"kw1"}))

        statuses = {kw: r.status for kw, r in results["dallas"][0].results.items()}
        assert statuses == {"kw0": STATUS_COMPLETED, "kw1": STATUS_SKIPPED, "kw2": STATUS_COMPLETED}
        progress = CheckpointStore(config.data_dir).progress_file.read_text(encoding="utf-8")
        assert '"processed": 3' in progress

    def test_every_item_present_in_output(self, config):
        takeoff = _takeoff(1)
        takeoff["houston"] = [TakeoffItem(item=WorkItem(location="Katy", service="Rat Removal"))]

        results = LandingPoller(config, FakeSerpClient()).run(takeoff)

        assert results["houston"][0].item.location == "Katy"
        assert results["houston"][0].results == {}

    def test_final_save_written_when_below_cadence(self, config):
        LandingPoller(config, FakeSerpClient()).run(_takeoff(3))

        assert CheckpointStore(config.data_dir).load() is not None


@pytest.mark.unit
def test_garland_wildlife_removal_scenario(config):
    item = WorkItem(
        location="Garland",
        service="wildlife removal",
        geo_coordinate="32.91,-96.63",
        keywords=["wildlife removal near Garland"],
    )
    client = FakeSerpClient(
        results={"T1": [serp_page(organic(3, GARLAND), organic(1, "https://example.com"))]}
    )

    takeoff = {"dallas": [TakeoffSubmitter(config, client).submit_item(item)]}
    assert takeoff["dallas"][0].tasks["wildlife removal near Garland"].to_dict() == {
        "task_id": "T1",
        "status": "submitted",
    }

    results = LandingPoller(config, client).run(takeoff)

    result = results["dallas"][0].to_dict()["keywords"]["wildlife removal near Garland"]
    assert result["status"] == "completed"
    assert result["rankings"] == [{"rank": 3, "url": GARLAND}]
