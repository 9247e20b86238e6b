import json
import threading

import pytest

import story_engine
from character_refs import CharacterAsset
from generation_scheduler import (
    CANCELLED,
    SUCCEEDED,
    GenerationScheduler,
    PlanRequest,
    RetryPolicy,
)
from script_parser import PageSpec, PageStatus, parse_script
from story_engine import OTHER, RATE_LIMITED, GenerationError, GenerationResult
from usage_ledger import UsageLedger

PRO = story_engine.IMAGE_MODEL_PRIMARY
FAST = story_engine.IMAGE_MODEL_FAST


class ScriptedService:
    """Calls behaviour(model, prompt_text, call_index) for every request."""

    def __init__(self, behaviour=None):
        self.behaviour = behaviour or (lambda model, prompt, n: GenerationResult(image_bytes=b"img", mime_type="image/png"))
        self.calls = []
        self._lock = threading.Lock()

    def generate(self, model, parts, response_schema=None, **kwargs):
        prompt = parts[-1]["text"]
        with self._lock:
            self.calls.append((model, prompt))
            n = len(self.calls)
        outcome = self.behaviour(model, prompt, n)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _pages(n, prompt="scene"):
    return [PageSpec(i, "T1", f"{prompt} {i}") for i in range(1, n + 1)]


def _ledger(count=0):
    return UsageLedger(count=count, today=lambda: "2026-01-01")


def _scheduler(service, ledger=None, sleeps=None, **kwargs):
    kwargs.setdefault("model_chain", [PRO])
    kwargs.setdefault("retry_policy", RetryPolicy(max_retries=3, base_delay=2.0, jitter=1.0, max_delay=60.0))
    return GenerationScheduler(
        service,
        ledger if ledger is not None else _ledger(),
        sleep=(sleeps.append if sleeps is not None else (lambda s: None)),
        rand=lambda: 0.0,
        clock=lambda: 100.0,
        **kwargs
    )


def test_batch_generates_every_page_and_counts_usage():
    service = ScriptedService()
    ledger = _ledger()
    seen = []
    scheduler = _scheduler(service, ledger, concurrency=3, status_callback=lambda p: seen.append((p.page_number, p.status)))
    pages = _pages(10)

    result = scheduler.run_batch(pages, [])

    assert sorted(result.completed) == list(range(1, 11))
    assert result.failed == [] and result.cancelled == []
    assert all(p.status == PageStatus.COMPLETED and p.result_artifact == b"img" for p in pages)
    assert ledger.current() == 10
    assert seen.count((1, PageStatus.COMPLETED)) == 1
    assert (1, PageStatus.GENERATING) in seen


def test_budget_warning_blocks_until_forced():
    def behaviour(model, prompt, n):
        if prompt.endswith(" 3") or prompt.endswith(" 7"):
            return GenerationError("Safety block", OTHER)
        return GenerationResult(image_bytes=b"img", mime_type="image/png")

    service = ScriptedService(behaviour)
    ceiling = story_engine.model_info(PRO)["daily_free"]
    ledger = _ledger(count=ceiling)
    scheduler = _scheduler(service, ledger, concurrency=3)
    pages = _pages(10)

    warned = scheduler.run_batch(pages, [])

    assert warned.budget_warning is not None
    assert warned.budget_warning.exceeded
    assert not warned.submitted
    assert service.calls == []
    assert all(p.status == PageStatus.IDLE for p in pages)

    forced = scheduler.run_batch(pages, [], force=True)

    assert len(service.calls) == 10
    assert sorted(forced.failed) == [3, 7]
    assert len(forced.completed) == 8
    assert ledger.current() == ceiling + 8


def test_rate_limit_backs_off_exponentially_then_succeeds():
    def behaviour(model, prompt, n):
        if n <= 2:
            return GenerationError("429", RATE_LIMITED)
        return GenerationResult(image_bytes=b"img", mime_type="image/png")

    sleeps = []
    service = ScriptedService(behaviour)
    scheduler = _scheduler(service, sleeps=sleeps)
    page = _pages(1)[0]

    assert scheduler.run_single(page, []) == SUCCEEDED
    assert sleeps == [2.0, 4.0]
    assert len(service.calls) == 3
    assert page.status == PageStatus.COMPLETED


def test_retry_after_hint_lengthens_backoff():
    def behaviour(model, prompt, n):
        if n == 1:
            return GenerationError("429", RATE_LIMITED, retry_after=30.0)
        return GenerationResult(image_bytes=b"img")

    sleeps = []
    _scheduler(ScriptedService(behaviour), sleeps=sleeps).run_single(_pages(1)[0], [])
    assert sleeps == [30.0]


def test_retry_policy_caps_delay():
    policy = RetryPolicy(base_delay=10.0, jitter=0.0, max_delay=25.0)
    assert policy.next_delay(0) == 10.0
    assert policy.next_delay(2) == 25.0
    assert policy.next_delay(0, retry_after=90.0) == 25.0


def test_exhausted_retries_fall_back_to_next_model():
    def behaviour(model, prompt, n):
        if model == PRO:
            return GenerationError("429", RATE_LIMITED)
        return GenerationResult(image_bytes=b"fast", mime_type="image/png")

    sleeps = []
    service = ScriptedService(behaviour)
    scheduler = _scheduler(service, sleeps=sleeps, model_chain=[PRO, FAST],
                           retry_policy=RetryPolicy(max_retries=2, base_delay=1.0, jitter=0.0))
    page = _pages(1)[0]

    scheduler.run_single(page, [])

    assert [m for m, _ in service.calls] == [PRO, PRO, PRO, FAST]
    assert sleeps == [1.0, 2.0]
    assert page.result_artifact == b"fast"


def test_other_errors_skip_retries():
    def behaviour(model, prompt, n):
        if model == PRO:
            return GenerationError("bad request", OTHER)
        return GenerationResult(image_bytes=b"fast")

    sleeps = []
    service = ScriptedService(behaviour)
    scheduler = _scheduler(service, sleeps=sleeps, model_chain=[PRO, FAST])

    scheduler.run_single(_pages(1)[0], [])

    assert [m for m, _ in service.calls] == [PRO, FAST]
    assert sleeps == []


def test_unclassified_exceptions_are_failures_not_crashes():
    service = ScriptedService(lambda model, prompt, n: RuntimeError("connection reset"))
    ledger = _ledger()
    page = _pages(1)[0]

    result = _scheduler(service, ledger).run_batch([page], [])

    assert result.failed == [1]
    assert page.status == PageStatus.ERROR
    assert page.last_error == "connection reset"
    assert ledger.current() == 0


def test_failure_after_whole_chain_keeps_last_error():
    def behaviour(model, prompt, n):
        return GenerationError(f"{model} refused", OTHER)

    page = _pages(1)[0]
    _scheduler(ScriptedService(behaviour), model_chain=[PRO, FAST]).run_batch([page], [])

    assert page.status == PageStatus.ERROR
    assert page.last_error == f"{FAST} refused"


def test_cancel_during_backoff_keeps_completed_pages():
    def behaviour(model, prompt, n):
        if prompt.endswith(" 2"):
            return GenerationError("429", RATE_LIMITED)
        return GenerationResult(image_bytes=b"img")

    service = ScriptedService(behaviour)
    ledger = _ledger()
    holder = {}
    scheduler = GenerationScheduler(
        service, ledger, model_chain=[PRO], concurrency=1,
        sleep=lambda s: holder["scheduler"].cancel(), rand=lambda: 0.0,
    )
    holder["scheduler"] = scheduler
    pages = _pages(3)

    result = scheduler.run_batch(pages, [])

    assert result.completed == [1]
    assert sorted(result.cancelled) == [2, 3]
    assert pages[0].status == PageStatus.COMPLETED
    assert pages[1].status == PageStatus.IDLE
    assert pages[2].status == PageStatus.IDLE
    assert len(service.calls) == 2
    assert ledger.current() == 1


def test_cancel_interrupts_real_wait():
    service = ScriptedService(lambda model, prompt, n: GenerationError("429", RATE_LIMITED, retry_after=60.0))
    scheduler = GenerationScheduler(service, _ledger(), model_chain=[PRO], rand=lambda: 0.0,
                                    retry_policy=RetryPolicy(max_delay=120.0))
    page = _pages(1)[0]
    outcome = {}

    worker = threading.Thread(target=lambda: outcome.setdefault("value", scheduler.run_single(page, [])))
    worker.start()
    while not service.calls:
        worker.join(0.01)
    scheduler.cancel()
    worker.join(5)

    assert not worker.is_alive()
    assert outcome["value"] == CANCELLED


def test_conservative_mode_paces_submissions():
    sleeps = []
    scheduler = _scheduler(ScriptedService(), sleeps=sleeps, model_chain=[FAST], concurrency=3, conservative=True)

    assert scheduler.concurrency == 1
    scheduler.run_batch(_pages(3), [])

    assert sleeps == [story_engine.model_info(FAST)["safe_delay"]] * 2


def test_default_concurrency_comes_from_catalog():
    assert _scheduler(ScriptedService(), model_chain=[FAST]).concurrency == 3
    assert _scheduler(ScriptedService(), model_chain=[PRO]).concurrency == 1


def test_completed_pages_are_not_resubmitted():
    service = ScriptedService()
    pages = _pages(3)
    pages[1].status = PageStatus.COMPLETED
    pages[1].result_artifact = b"old"

    _scheduler(service).run_batch(pages, [])

    assert len(service.calls) == 2
    assert pages[1].result_artifact == b"old"


def test_run_single_with_prompt_override_and_references():
    service = ScriptedService()
    pool = [CharacterAsset("Alex.png", b"alex")]
    page = PageSpec(4, "T2", "old prompt")

    _scheduler(service).run_single(page, pool, prompt_override="[Alex] smiles")

    assert page.prompt == "[Alex] smiles"
    assert page.resolved_refs == ["Alex.png"]
    assert service.calls[0][1].endswith("[Alex] smiles")


PLAN_PRO = story_engine.PLAN_MODEL_PRIMARY
PLAN_FAST = story_engine.PLAN_MODEL_FALLBACK


def test_generate_plan_repairs_and_fills_missing_pages():
    truncated = json.dumps([
        {"pageNumber": "Cover", "template": "TC", "prompt": "cover art"},
        {"pageNumber": "Page 1", "template": "T01_CHAPTER_COVER", "prompt": 'Hook, with "quotes"'},
    ])[:-1] + ', {"pageNumber": "Page 2", "templ'
    service = ScriptedService(lambda model, prompt, n: GenerationResult(text=truncated))
    scheduler = _scheduler(service, plan_model_chain=[PLAN_PRO, PLAN_FAST])

    result = scheduler.generate_plan(PlanRequest(scenario="storm", page_count=3, include_cover=True))

    assert result.model == PLAN_PRO
    assert [r["pageNumber"] for r in result.rows] == ["Cover", "Page 1", "Page 2", "Page 3"]
    assert result.skipped == 2
    pages = parse_script(result.csv)
    assert [p.page_number for p in pages] == [0, 1, 2, 3]
    assert pages[1].prompt == 'Hook, with "quotes"'
    assert pages[2].template == "T01_FULL"


def test_generate_plan_falls_back_on_bad_json():
    good = json.dumps([{"pageNumber": "Page 1", "template": "T1", "prompt": "one"}])

    def behaviour(model, prompt, n):
        return GenerationResult(text="sorry, no" if model == PLAN_PRO else good)

    scheduler = _scheduler(ScriptedService(behaviour), plan_model_chain=[PLAN_PRO, PLAN_FAST])
    result = scheduler.generate_plan(PlanRequest(scenario="s", page_count=1))

    assert result.model == PLAN_FAST
    assert result.rows[0]["prompt"] == "one"
    assert result.skipped == 0


def test_generate_plan_raises_when_every_model_fails():
    service = ScriptedService(lambda model, prompt, n: GenerationError("down", OTHER))
    scheduler = _scheduler(service, plan_model_chain=[PLAN_PRO, PLAN_FAST])

    with pytest.raises(GenerationError):
        scheduler.generate_plan(PlanRequest(scenario="s", page_count=2))
    assert [m for m, _ in service.calls] == [PLAN_PRO, PLAN_FAST]


def test_generate_plan_does_not_touch_usage():
    good = json.dumps([{"pageNumber": "Page 1", "template": "T1", "prompt": "one"}])
    ledger = _ledger()
    _scheduler(ScriptedService(lambda m, p, n: GenerationResult(text=good)), ledger).generate_plan(
        PlanRequest(scenario="s", page_count=1)
    )
    assert ledger.current() == 0


def test_cancel_before_run_stops_every_submission():
    service = ScriptedService()
    scheduler = _scheduler(service, concurrency=3)
    scheduler.cancel()
    pages = _pages(5)

    result = scheduler.run_batch(pages, [])

    assert service.calls == []
    assert result.completed == []
    assert sorted(result.cancelled) == [1, 2, 3, 4, 5]
    assert all(p.status == PageStatus.IDLE for p in pages)

    assert scheduler.run_single(_pages(1)[0], []) == CANCELLED
    with pytest.raises(GenerationError):
        scheduler.generate_plan(PlanRequest(scenario="s", page_count=1))
    assert service.calls == []
