from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient

from research_tracker.services.lifecycle import JobLifecycle
from research_tracker.services.mutator import JobMutator
from research_tracker.services.store import InMemoryRepository
from research_tracker.workers.reconciler import Reconciler, SweepSummary, needs_reconciliation, orphan_cutoff

from conftest import FakeLanguageModel, FakeProcessor, signed_headers, status_event

ACME_RESEARCH = {"executive_summary": "Acme builds anvils.", "employee_count": "50-100"}

OUTCOME_FIELDS = (
    "state",
    "external_run_id",
    "result_payload",
    "derived_score",
    "derived_narrative",
    "derived_attribute",
    "failure_reason",
)


def _reconciler(
    repository: InMemoryRepository,
    processor: FakeProcessor,
    language_model: FakeLanguageModel,
    **options,
) -> Reconciler:
    client = processor.client()
    lifecycle = JobLifecycle(repository, client, language_model.analyzer())
    return Reconciler(repository, client, lifecycle, **options)


def _processing_job(repository: InMemoryRepository, processor: FakeProcessor, url: str, run_id: str) -> str:
    async def scenario() -> str:
        job = await repository.create_job(url)
        await JobMutator(repository).mark_processing(job.id, run_id)
        return job.id

    processor.seed_run(run_id)
    return asyncio.run(scenario())


def _outcome(repository: InMemoryRepository, job_id: str) -> dict:
    record = asyncio.run(repository.get_job(job_id)).to_dict()
    return {field: record[field] for field in OUTCOME_FIELDS}


def test_needs_reconciliation_only_for_processing_jobs_with_run_id(processor: FakeProcessor) -> None:
    repository = InMemoryRepository()
    pending = asyncio.run(repository.create_job("https://acme.example"))
    processing_id = _processing_job(repository, processor, "https://globex.example", "trun_1")

    assert not needs_reconciliation(pending)
    assert needs_reconciliation(asyncio.run(repository.get_job(processing_id)))


def test_orphan_cutoff_subtracts_threshold() -> None:
    now = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
    assert orphan_cutoff(900, now=now) == datetime(2025, 1, 1, 11, 45, tzinfo=timezone.utc)


def test_sweep_completes_job_without_any_webhook(
    repository: InMemoryRepository, processor: FakeProcessor, language_model: FakeLanguageModel
) -> None:
    job_id = _processing_job(repository, processor, "https://acme.example", "trun_1")
    output = processor.complete("trun_1", ACME_RESEARCH)

    summary = asyncio.run(_reconciler(repository, processor, language_model).sweep())

    assert summary == SweepSummary(examined=1, completed=1)
    job = asyncio.run(repository.get_job(job_id))
    assert job.state == "completed"
    assert job.result_payload == output
    assert job.derived_score == 8


def test_sweep_fails_job_with_processor_error_message(
    repository: InMemoryRepository, processor: FakeProcessor, language_model: FakeLanguageModel
) -> None:
    job_id = _processing_job(repository, processor, "https://acme.example", "trun_1")
    processor.fail("trun_1", "timeout")

    summary = asyncio.run(_reconciler(repository, processor, language_model).sweep())

    assert summary.failed == 1
    job = asyncio.run(repository.get_job(job_id))
    assert job.state == "failed"
    assert job.failure_reason == "timeout"


def test_sweep_leaves_running_jobs_untouched(
    repository: InMemoryRepository, processor: FakeProcessor, language_model: FakeLanguageModel
) -> None:
    job_id = _processing_job(repository, processor, "https://acme.example", "trun_1")
    before = asyncio.run(repository.get_job(job_id))

    summary = asyncio.run(_reconciler(repository, processor, language_model).sweep())

    assert summary == SweepSummary(examined=1, unchanged=1)
    assert asyncio.run(repository.get_job(job_id)) == before


def test_one_failing_job_does_not_stop_the_sweep(
    repository: InMemoryRepository, processor: FakeProcessor, language_model: FakeLanguageModel
) -> None:
    broken_id = _processing_job(repository, processor, "https://broken.example", "trun_1")
    healthy_id = _processing_job(repository, processor, "https://healthy.example", "trun_2")
    processor.broken_runs.add("trun_1")
    processor.complete("trun_2", ACME_RESEARCH)

    summary = asyncio.run(_reconciler(repository, processor, language_model, max_concurrency=1).sweep())

    assert summary.examined == 2
    assert summary.errors == 1
    assert summary.completed == 1
    assert asyncio.run(repository.get_job(broken_id)).state == "processing"
    assert asyncio.run(repository.get_job(healthy_id)).state == "completed"


def test_slow_job_times_out_without_blocking_others(
    repository: InMemoryRepository, processor: FakeProcessor, language_model: FakeLanguageModel
) -> None:
    slow_id = _processing_job(repository, processor, "https://slow.example", "trun_1")
    fast_id = _processing_job(repository, processor, "https://fast.example", "trun_2")
    processor.slow_runs.add("trun_1")
    processor.fail("trun_2", "quota exceeded")

    reconciler = _reconciler(repository, processor, language_model, job_timeout_seconds=0.2)
    summary = asyncio.run(reconciler.sweep())

    assert summary.errors == 1
    assert summary.failed == 1
    assert asyncio.run(repository.get_job(slow_id)).state == "processing"
    assert asyncio.run(repository.get_job(fast_id)).failure_reason == "quota exceeded"


def test_sweep_removes_orphan_pending_jobs(
    repository: InMemoryRepository, processor: FakeProcessor, language_model: FakeLanguageModel
) -> None:
    orphan = asyncio.run(repository.create_job("https://orphan.example"))
    reconciler = _reconciler(repository, processor, language_model, orphan_pending_after_seconds=900)

    fresh = asyncio.run(reconciler.sweep())
    later = asyncio.run(reconciler.sweep(now=datetime.now(timezone.utc) + timedelta(hours=1)))

    assert fresh.orphans_removed == 0
    assert later.orphans_removed == 1
    assert orphan.id not in repository.jobs


def test_webhook_and_reconciler_reach_the_same_record(
    client: TestClient,
    repository: InMemoryRepository,
    processor: FakeProcessor,
    language_model: FakeLanguageModel,
) -> None:
    via_webhook = client.post("/companies", json={"url": "https://acme.example"}).json()
    via_sweep = client.post("/companies", json={"url": "https://globex.example"}).json()
    processor.complete(via_webhook["external_run_id"], ACME_RESEARCH)

    body = status_event(via_webhook["id"], via_webhook["external_run_id"], "completed")
    assert client.post("/webhook", content=body, headers=signed_headers(body)).status_code == 200

    processor.complete(via_sweep["external_run_id"], ACME_RESEARCH)
    summary = asyncio.run(_reconciler(repository, processor, language_model).sweep())

    assert summary == SweepSummary(examined=1, completed=1)
    webhook_outcome = _outcome(repository, via_webhook["id"])
    sweep_outcome = _outcome(repository, via_sweep["id"])
    webhook_outcome.pop("external_run_id")
    sweep_outcome.pop("external_run_id")
    assert webhook_outcome == sweep_outcome


def test_reconciling_a_finalized_job_changes_nothing(
    repository: InMemoryRepository, processor: FakeProcessor, language_model: FakeLanguageModel
) -> None:
    job_id = _processing_job(repository, processor, "https://acme.example", "trun_1")
    processor.complete("trun_1", ACME_RESEARCH)
    reconciler = _reconciler(repository, processor, language_model)
    asyncio.run(reconciler.sweep())
    finalized = asyncio.run(repository.get_job(job_id))

    outcome = asyncio.run(reconciler.reconcile_job(finalized))

    assert outcome.action == "already_terminal"
    assert asyncio.run(repository.get_job(job_id)) == finalized
    assert len(language_model.calls) == 1


def test_sweep_pages_past_batch_size_to_newer_jobs(
    repository: InMemoryRepository, processor: FakeProcessor, language_model: FakeLanguageModel
) -> None:
    oldest_id = _processing_job(repository, processor, "https://oldest.example", "trun_1")
    older_id = _processing_job(repository, processor, "https://older.example", "trun_2")
    newest_id = _processing_job(repository, processor, "https://newest.example", "trun_3")
    processor.complete("trun_3", ACME_RESEARCH)

    summary = asyncio.run(_reconciler(repository, processor, language_model, batch_size=2).sweep())

    assert summary == SweepSummary(examined=3, completed=1, unchanged=2)
    assert asyncio.run(repository.get_job(newest_id)).state == "completed"
    assert asyncio.run(repository.get_job(oldest_id)).state == "processing"
    assert asyncio.run(repository.get_job(older_id)).state == "processing"


def test_processing_jobs_are_listed_in_keyset_pages(processor: FakeProcessor) -> None:
    repository = InMemoryRepository()
    ids = [
        _processing_job(repository, processor, f"https://company{index}.example", f"trun_{index}")
        for index in range(5)
    ]

    first = asyncio.run(repository.list_processing_jobs(limit=2))
    second = asyncio.run(repository.list_processing_jobs(limit=2, after=(first[-1].updated_at, first[-1].id)))
    third = asyncio.run(repository.list_processing_jobs(limit=2, after=(second[-1].updated_at, second[-1].id)))

    listed = first + second + third
    assert [len(first), len(second), len(third)] == [2, 2, 1]
    assert sorted(job.id for job in listed) == sorted(ids)
    assert [(job.updated_at, job.id) for job in listed] == sorted((job.updated_at, job.id) for job in listed)


def test_sweep_never_exceeds_max_concurrency(
    repository: InMemoryRepository, processor: FakeProcessor, language_model: FakeLanguageModel
) -> None:
    for index in range(6):
        _processing_job(repository, processor, f"https://company{index}.example", f"trun_{index}")
    processor.status_delay = 0.02

    summary = asyncio.run(_reconciler(repository, processor, language_model, max_concurrency=2).sweep())

    assert summary == SweepSummary(examined=6, unchanged=6)
    assert processor.peak_in_flight == 2
