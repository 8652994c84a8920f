"""ScanLifecycleController tests: admission, execution, pause/resume, finalization."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from src.db.models import Scan, ScoreHistory, Site
from src.scans.errors import (
    EngineFailure,
    NotFoundError,
    PersistenceError,
    RateLimitExceeded,
    ScanConflictError,
    ScanStateError,
    ValidationError,
)
from src.scans.models import PageAudit, ScanStatus

from tests.fakes import FakeEngine, FakeResolver, audit_logs, audit_with, page_urls

pytestmark = pytest.mark.asyncio

TWO_HOURS = 2 * 3600


async def _run(controller, site_id, scan_type="axe", **kwargs) -> Scan:
    scan = await controller.create_scan(site_id, scan_type, **kwargs)
    await controller.supervisor.join(scan.id)
    return await controller.repository.get_scan(scan.id)


# -- admission -----------------------------------------------------------


async def test_missing_site_id(make_controller):
    controller = make_controller([FakeEngine("axe")])
    with pytest.raises(ValidationError, match="site_id is required"):
        await controller.create_scan(None, "axe")


async def test_invalid_scan_type(make_controller, make_site):
    site = await make_site()
    controller = make_controller([FakeEngine("axe")])
    with pytest.raises(ValidationError, match="Invalid scan_type"):
        await controller.create_scan(site.id, "wave")


async def test_unknown_site(make_controller):
    controller = make_controller([FakeEngine("axe")])
    with pytest.raises(NotFoundError, match="Site not found"):
        await controller.create_scan(404, "axe")


async def test_site_without_sitemap(make_controller, make_site):
    site = await make_site(sitemap_url=None)
    controller = make_controller([FakeEngine("axe")])
    with pytest.raises(ValidationError, match="sitemap URL"):
        await controller.create_scan(site.id, "axe")


async def test_scan_type_defaults_to_both(make_controller, make_site):
    site = await make_site()
    controller = make_controller([FakeEngine("axe"), FakeEngine("lighthouse")])
    scan = await _run(controller, site.id, scan_type=None)
    assert scan.scan_type == "both"


async def test_active_scan_conflicts(make_controller, make_site, repository):
    site = await make_site()
    existing = await repository.create_scan(site.id, "axe", "multi_page")
    controller = make_controller([FakeEngine("axe")])

    with pytest.raises(ScanConflictError) as excinfo:
        await controller.create_scan(site.id, "axe")
    assert excinfo.value.status_code == 409
    assert excinfo.value.extra["scan_id"] == existing.id


async def test_rate_limit_blocks_new_scan(make_controller, make_site, settings):
    settings.scan_rate_limit = 2
    site = await make_site()
    controller = make_controller([FakeEngine("axe")])

    await _run(controller, site.id)
    await _run(controller, site.id)
    with pytest.raises(RateLimitExceeded) as excinfo:
        await controller.create_scan(site.id, "axe")

    assert excinfo.value.status_code == 429
    assert excinfo.value.extra["remaining"] == 0
    assert "reset_time" in excinfo.value.extra


async def test_both_records_two_tokens(make_controller, make_site, redis_client):
    site = await make_site()
    controller = make_controller([FakeEngine("axe"), FakeEngine("lighthouse")])
    await _run(controller, site.id, scan_type="both")
    assert await redis_client.zcard(f"scan:ratelimit:{site.id}") == 2


async def test_concurrent_creates_admit_one_scan(make_controller, make_site, settings, redis_client):
    settings.scan_rate_limit = 1
    site = await make_site()
    controller = make_controller([FakeEngine("axe")])

    results = await asyncio.gather(
        controller.create_scan(site.id, "axe"),
        controller.create_scan(site.id, "axe"),
        return_exceptions=True,
    )

    created = [r for r in results if isinstance(r, Scan)]
    rejected = [r for r in results if isinstance(r, (ScanConflictError, RateLimitExceeded))]
    assert len(created) == 1
    assert len(rejected) == 1
    assert await redis_client.zcard(f"scan:ratelimit:{site.id}") == 1


async def test_concurrent_create_conflicts_with_running_scan(make_controller, make_site):
    site = await make_site()
    gate = asyncio.Event()
    controller = make_controller([FakeEngine("axe", gate=gate)])

    results = await asyncio.gather(
        controller.create_scan(site.id, "axe"),
        controller.create_scan(site.id, "axe"),
        return_exceptions=True,
    )
    gate.set()

    created = [r for r in results if isinstance(r, Scan)]
    conflicts = [r for r in results if isinstance(r, ScanConflictError)]
    assert len(created) == 1
    assert len(conflicts) == 1
    assert conflicts[0].extra["scan_id"] == created[0].id
    await controller.supervisor.join(created[0].id)


async def test_tokens_are_released_when_scan_row_cannot_be_saved(
    make_controller, make_site, redis_client
):
    site = await make_site()
    controller = make_controller([FakeEngine("axe")])
    controller.repository.create_scan = AsyncMock(side_effect=PersistenceError("disk I/O error"))

    with pytest.raises(PersistenceError):
        await controller.create_scan(site.id, "both")

    assert await redis_client.zcard(f"scan:ratelimit:{site.id}") == 0
    assert await redis_client.exists(f"scan:lock:{site.id}") == 0


async def test_create_emits_start_message_and_audit_event(make_controller, make_site, session_maker):
    site = await make_site()
    controller = make_controller([FakeEngine("axe")])
    scan = await _run(controller, site.id)

    progress = await controller.progress.messages(scan.id)
    assert progress[0] == "🚀 Scan started for https://example.org"
    assert "📋 Parsing sitemap..." in progress
    assert "✅ Found 3 pages in sitemap" in progress
    assert progress[-1] == "✨ Multi-page scan complete!"

    actions = [log.action for log in await audit_logs(session_maker)]
    assert actions == ["scan_started", "scan_completed"]


# -- multi-page execution ------------------------------------------------


async def test_three_page_aggregation(make_controller, make_site, repository, session_maker):
    site = await make_site()
    urls = page_urls(3)
    axe = FakeEngine(
        "axe",
        results={
            urls[0]: audit_with(["a", "b"]),
            urls[1]: audit_with(["a", "b", "c", "d", "e"]),
            urls[2]: audit_with([]),
        },
    )
    controller = make_controller([axe], urls=urls)

    scan = await _run(controller, site.id)

    assert scan.status == ScanStatus.COMPLETED.value
    assert scan.axe_score == 88
    assert scan.lighthouse_score is None
    assert scan.total_violations_sum == 7
    assert scan.worst_page_url == urls[1]
    assert scan.worst_page_violation_count == 5
    assert len(scan.worst_page_violations) == 5
    assert scan.pages_total == 3
    assert scan.pages_scanned == 3
    assert scan.completed_at is not None

    violations = await repository.list_violations(scan.id)
    assert len(violations) == 7
    assert {v.page_url for v in violations} == {urls[0], urls[1]}

    async with session_maker() as session:
        refreshed = await session.get(Site, site.id)
        history = (await session.execute(select(func.count()).select_from(ScoreHistory))).scalar_one()
    assert refreshed.axe_score == 88
    assert refreshed.axe_last_updated is not None
    assert refreshed.lighthouse_score is None
    assert history == 1


async def test_both_runs_lighthouse_pass_then_axe_pass(make_controller, make_site):
    site = await make_site()
    calls: list = []
    urls = page_urls(2)
    controller = make_controller(
        [FakeEngine("axe", calls=calls), FakeEngine("lighthouse", calls=calls, default=PageAudit(score=90))],
        urls=urls,
    )

    scan = await _run(controller, site.id, scan_type="both")

    assert calls == [
        ("lighthouse", urls[0]),
        ("lighthouse", urls[1]),
        ("axe", urls[0]),
        ("axe", urls[1]),
    ]
    assert scan.lighthouse_score == 90
    assert scan.axe_score == 100


async def test_failed_pages_are_recorded_and_skipped(make_controller, make_site, repository):
    site = await make_site()
    urls = page_urls(3)
    axe = FakeEngine(
        "axe",
        results={urls[1]: EngineFailure("axe", urls[1], "navigation timeout")},
        default=audit_with(["x"]),
    )
    controller = make_controller([axe], urls=urls)

    scan = await _run(controller, site.id)

    assert scan.status == ScanStatus.COMPLETED.value
    assert scan.axe_score == 95
    assert scan.pages_scanned == 3
    pages = await repository.page_results(scan.id)
    assert [p.status for p in pages] == ["success", "failed", "success"]
    assert pages[1].error_message == "navigation timeout"


async def test_every_page_failing_fails_the_scan(make_controller, make_site):
    site = await make_site()
    axe = FakeEngine("axe", default=EngineFailure("axe", "", "browser crashed"))
    controller = make_controller([axe])

    scan = await _run(controller, site.id)

    assert scan.status == ScanStatus.FAILED.value
    assert "browser crashed" in scan.error_message


async def test_sitemap_failure_fails_the_scan(make_controller, make_site, session_maker):
    site = await make_site()
    controller = make_controller(
        [FakeEngine("axe")], resolver=FakeResolver(error="Failed to fetch sitemap: 503 Service Unavailable")
    )

    scan = await _run(controller, site.id)

    assert scan.status == ScanStatus.FAILED.value
    assert scan.error_message == "Failed to parse sitemap: Failed to fetch sitemap: 503 Service Unavailable"
    assert (await controller.progress.messages(scan.id))[-1].startswith("❌ Scan error:")
    assert "scan_failed" in [log.action for log in await audit_logs(session_maker)]


async def test_milestones_every_ten_pages(make_controller, make_site):
    site = await make_site()
    controller = make_controller([FakeEngine("axe")], urls=page_urls(25))

    scan = await _run(controller, site.id)

    milestones = [m for m in await controller.progress.messages(scan.id) if "pages scanned" in m]
    assert milestones == [
        "✅ [Axe] 10/25 pages scanned",
        "✅ [Axe] 20/25 pages scanned",
        "✅ [Axe] 25/25 pages scanned",
    ]


async def test_persistence_failure_on_completion_marks_failed(make_controller, make_site):
    site = await make_site()
    controller = make_controller([FakeEngine("axe")])
    controller.repository.complete_scan = AsyncMock(side_effect=PersistenceError("database is locked"))

    scan = await _run(controller, site.id)

    assert scan.status == ScanStatus.FAILED.value
    assert "database is locked" in scan.error_message


async def test_unexpected_error_marks_failed(make_controller, make_site):
    site = await make_site()
    controller = make_controller([FakeEngine("axe")])
    controller.repository.checkpoint = AsyncMock(side_effect=RuntimeError("kaboom"))

    scan = await _run(controller, site.id)

    assert scan.status == ScanStatus.FAILED.value
    assert scan.error_message == "kaboom"


async def test_engine_crash_on_one_page_is_a_page_failure(make_controller, make_site, repository):
    site = await make_site()
    urls = page_urls(3)
    axe = FakeEngine("axe", results={urls[0]: RuntimeError("target closed")})
    controller = make_controller([axe], urls=urls)

    scan = await _run(controller, site.id)

    assert scan.status == ScanStatus.COMPLETED.value
    assert axe.urls() == urls
    pages = await repository.page_results(scan.id)
    assert [p.status for p in pages] == ["failed", "success", "success"]
    assert pages[0].error_message == "target closed"
    assert "⚠️ [Axe] Page 1 failed: target closed" in await controller.progress.messages(scan.id)


# -- timeout, pause and resume -------------------------------------------


def _expire_after_first_call(clock):
    def on_call(engine, url):
        if len(engine.calls) == 1:
            clock.advance(TWO_HOURS + 1)

    return on_call


async def test_timeout_pauses_with_resume_index(make_controller, make_site, clock, session_maker):
    site = await make_site()
    urls = page_urls(10)
    axe = FakeEngine("axe", on_call=_expire_after_first_call(clock))
    controller = make_controller([axe], urls=urls)

    scan = await _run(controller, site.id)

    assert scan.status == ScanStatus.PAUSED.value
    assert scan.resume_index == 1
    assert scan.resume_engine == "axe"
    assert scan.pages_scanned == 1
    assert scan.paused_at is not None
    assert axe.urls() == [urls[0]]
    assert (await controller.progress.messages(scan.id))[-1] == (
        "⏸️ Scan paused at page 1. You can resume later."
    )
    assert "scan_paused" in [log.action for log in await audit_logs(session_maker)]


async def test_resume_continues_without_reauditing(make_controller, make_site, clock, repository):
    site = await make_site()
    urls = page_urls(10)
    axe = FakeEngine("axe", on_call=_expire_after_first_call(clock))
    controller = make_controller([axe], urls=urls)
    paused = await _run(controller, site.id)

    resumed = await controller.resume_scan(paused.id)
    assert resumed.status == ScanStatus.IN_PROGRESS.value
    await controller.supervisor.join(paused.id)
    scan = await repository.get_scan(paused.id)

    assert scan.status == ScanStatus.COMPLETED.value
    assert axe.urls() == urls
    assert scan.pages_scanned == 10
    assert len(await repository.page_results(scan.id)) == 10
    assert "▶️ Resuming scan from page 2..." in await controller.progress.messages(scan.id)


async def test_resume_second_pass_skips_finished_first_pass(make_controller, make_site, clock, repository):
    site = await make_site()
    urls = page_urls(3)
    calls: list = []
    lighthouse = FakeEngine("lighthouse", calls=calls, default=PageAudit(score=80))

    def expire_on_second_axe_page(engine, url):
        if url == urls[1]:
            clock.advance(TWO_HOURS + 1)

    axe = FakeEngine("axe", calls=calls, on_call=expire_on_second_axe_page)
    controller = make_controller([lighthouse, axe], urls=urls)

    paused = await _run(controller, site.id, scan_type="both")
    assert paused.status == ScanStatus.PAUSED.value
    assert (paused.resume_engine, paused.resume_index) == ("axe", 2)

    calls.clear()
    await controller.resume_scan(paused.id)
    await controller.supervisor.join(paused.id)
    scan = await repository.get_scan(paused.id)

    assert calls == [("axe", urls[2])]
    assert scan.status == ScanStatus.COMPLETED.value
    assert scan.lighthouse_score == 80
    assert scan.axe_score == 100


async def test_timeout_is_checked_when_a_pass_starts(make_controller, make_site, clock):
    site = await make_site()
    urls = page_urls(2)

    def expire_on_last_page(engine, url):
        if url == urls[-1]:
            clock.advance(TWO_HOURS + 1)

    lighthouse = FakeEngine("lighthouse", on_call=expire_on_last_page)
    axe = FakeEngine("axe")
    controller = make_controller([lighthouse, axe], urls=urls)

    scan = await _run(controller, site.id, scan_type="both")

    assert scan.status == ScanStatus.PAUSED.value
    assert (scan.resume_engine, scan.resume_index) == ("axe", 0)
    assert axe.calls == []
    progress = await controller.progress.messages(scan.id)
    assert progress[-2] == "🔍 Starting Axe multi-page accessibility scan..."


async def test_resume_after_sitemap_shrank(make_controller, make_site, repository):
    site = await make_site()
    urls = page_urls(6)
    scan = await repository.create_scan(site.id, "axe", "multi_page")
    for index, url in enumerate(urls[:5]):
        await repository.save_page_result(
            scan.id, engine="axe", page_index=index, page_url=url, status="success", score=100
        )
    await repository.transition(
        scan.id,
        [ScanStatus.PENDING],
        ScanStatus.PAUSED,
        pages_total=6,
        pages_scanned=5,
        resume_index=5,
        resume_engine="axe",
    )
    axe = FakeEngine("axe")
    controller = make_controller([axe], urls=urls[:3])

    await controller.resume_scan(scan.id)
    await controller.supervisor.join(scan.id)
    final = await repository.get_scan(scan.id)

    assert final.status == ScanStatus.COMPLETED.value
    assert final.error_message is None
    assert final.pages_total == 3
    assert final.pages_scanned == 3
    assert axe.calls == []


async def test_resume_from_explicit_index(make_controller, make_site, clock, repository):
    site = await make_site()
    urls = page_urls(5)
    axe = FakeEngine("axe", on_call=_expire_after_first_call(clock))
    controller = make_controller([axe], urls=urls)
    paused = await _run(controller, site.id)

    await controller.resume_scan(paused.id, resume_from_index=3)
    await controller.supervisor.join(paused.id)

    assert axe.urls() == [urls[0], urls[3], urls[4]]


async def test_restart_clears_prior_progress(make_controller, make_site, clock, repository):
    site = await make_site()
    urls = page_urls(4)
    axe = FakeEngine("axe", on_call=_expire_after_first_call(clock), default=audit_with(["a"]))
    controller = make_controller([axe], urls=urls)
    paused = await _run(controller, site.id)
    assert paused.pages_scanned == 1

    await controller.resume_scan(paused.id, restart=True)
    await controller.supervisor.join(paused.id)
    scan = await repository.get_scan(paused.id)

    assert axe.urls() == [urls[0]] + urls
    assert scan.status == ScanStatus.COMPLETED.value
    assert scan.pages_scanned == 4
    assert scan.total_violations_sum == 4
    assert len(await repository.list_violations(scan.id)) == 4
    assert "🔄 Restarting scan from beginning..." in await controller.progress.messages(scan.id)


async def test_resume_validation(make_controller, make_site, clock, repository):
    site = await make_site()
    axe = FakeEngine("axe", on_call=_expire_after_first_call(clock))
    controller = make_controller([axe], urls=page_urls(3))
    paused = await _run(controller, site.id)

    with pytest.raises(ValidationError):
        await controller.resume_scan(paused.id, resume_from_index=1, restart=True)
    with pytest.raises(ValidationError):
        await controller.resume_scan(paused.id, resume_from_index=3)
    with pytest.raises(NotFoundError):
        await controller.resume_scan(9999)

    completed = await repository.create_scan(site.id, "axe", "multi_page")
    await repository.transition(completed.id, [ScanStatus.PENDING], ScanStatus.COMPLETED)
    with pytest.raises(ScanStateError, match="Cannot resume scan with status 'completed'"):
        await controller.resume_scan(completed.id)


async def test_resume_does_not_consume_rate_limit(make_controller, make_site, clock, redis_client):
    site = await make_site()
    axe = FakeEngine("axe", on_call=_expire_after_first_call(clock))
    controller = make_controller([axe], urls=page_urls(3))
    paused = await _run(controller, site.id)

    await controller.resume_scan(paused.id)
    await controller.supervisor.join(paused.id)

    assert await redis_client.zcard(f"scan:ratelimit:{site.id}") == 1


# -- single-page mode ----------------------------------------------------


async def test_single_page_partial_failure_keeps_successful_engine(make_controller, make_site, repository):
    site = await make_site(sitemap_url=None)
    lighthouse = FakeEngine(
        "lighthouse", default=EngineFailure("lighthouse", site.url, "PageSpeed API unavailable")
    )
    axe = FakeEngine("axe", default=audit_with(["color-contrast", "image-alt"]))
    controller = make_controller([lighthouse, axe])

    scan = await _run(controller, site.id, scan_type="both", single_page=True)

    assert scan.status == ScanStatus.COMPLETED.value
    assert scan.axe_score == 90
    assert scan.lighthouse_score is None
    assert scan.pages_total == 1
    pages = {p.engine: p for p in await repository.page_results(scan.id)}
    assert pages["lighthouse"].status == "failed"
    assert pages["axe"].status == "success"
    assert len(await repository.list_violations(scan.id)) == 2
    assert "❌ Lighthouse failed: PageSpeed API unavailable" in await controller.progress.messages(scan.id)


async def test_single_page_engine_crash_keeps_other_engine(make_controller, make_site, repository):
    site = await make_site(sitemap_url=None)
    controller = make_controller(
        [
            FakeEngine("lighthouse", default=RuntimeError("chrome crashed")),
            FakeEngine("axe", default=audit_with(["label"])),
        ]
    )

    scan = await _run(controller, site.id, scan_type="both", single_page=True)

    assert scan.status == ScanStatus.COMPLETED.value
    assert scan.axe_score == 95
    assert scan.lighthouse_score is None
    pages = {p.engine: p for p in await repository.page_results(scan.id)}
    assert pages["lighthouse"].error_message == "chrome crashed"
    assert "❌ Lighthouse failed: chrome crashed" in await controller.progress.messages(scan.id)


async def test_single_page_all_engines_failing(make_controller, make_site):
    site = await make_site(sitemap_url=None)
    controller = make_controller(
        [
            FakeEngine("lighthouse", default=EngineFailure("lighthouse", site.url, "quota exceeded")),
            FakeEngine("axe", default=EngineFailure("axe", site.url, "net::ERR_NAME_NOT_RESOLVED")),
        ]
    )

    scan = await _run(controller, site.id, scan_type="both", single_page=True)

    assert scan.status == ScanStatus.FAILED.value
    assert "quota exceeded" in scan.error_message


# -- orphan reclamation --------------------------------------------------


async def _orphan(repository, site_id, resume_index=0):
    scan = await repository.create_scan(site_id, "axe", "multi_page")
    await repository.transition(
        scan.id, [ScanStatus.PENDING], ScanStatus.IN_PROGRESS, resume_index=resume_index, resume_engine="axe"
    )
    return scan


async def test_orphans_resume_from_checkpoint(make_controller, make_site, repository):
    site = await make_site()
    urls = page_urls(4)
    axe = FakeEngine("axe")
    controller = make_controller([axe], urls=urls)
    orphan = await _orphan(repository, site.id, resume_index=2)

    assert await controller.reclaim_orphans(resume=True) == 1
    await controller.supervisor.join(orphan.id)

    scan = await repository.get_scan(orphan.id)
    assert axe.urls() == urls[2:]
    assert scan.status == ScanStatus.COMPLETED.value


async def test_orphans_fail_when_resume_disabled(make_controller, make_site, repository):
    site = await make_site()
    controller = make_controller([FakeEngine("axe")])
    orphan = await _orphan(repository, site.id)

    await controller.reclaim_orphans(resume=False)

    scan = await repository.get_scan(orphan.id)
    assert scan.status == ScanStatus.FAILED.value
    assert scan.error_message == "Scan interrupted by service restart"
