"""
Generation Scheduler — runs page jobs against the generation service.

- Pages are drawn by a small pool of worker threads pulling from one queue
- Rate-limited calls back off exponentially (or by the service's retry hint)
  and are resubmitted to the same model
- Other failures, or running out of retries, move on to the next model in
  the chain; the last model's error is recorded on the page
- Today's usage is checked against the model's free daily ceiling before a
  batch starts, and counted once per page that succeeds
- cancel() stops new submissions and cuts any wait short

generate_plan() uses the same retry path to ask a text model for a whole
page script (blueprint → JSON → repaired rows → CSV).
"""

import queue
import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import List, Optional

import blueprint
import json_repair
import story_engine
from character_refs import CharacterAsset, resolve_page_refs
from script_parser import PageSpec, PageStatus, serialize_script
from story_engine import GenerationError, classify_error, model_info

# Job outcomes
SUCCEEDED = "succeeded"
FAILED = "failed"
CANCELLED = "cancelled"


@dataclass
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 2.0
    jitter: float = 1.0
    max_delay: float = 120.0

    def next_delay(self, attempt, retry_after=None, rand=random.random):
        """Backoff before retry number `attempt` (0-based)."""
        delay = self.base_delay * (2 ** attempt) + rand() * self.jitter
        if retry_after:
            delay = max(delay, retry_after)
        return min(delay, self.max_delay)


@dataclass
class GenerationJob:
    page: PageSpec
    model_tier_index: int = 0
    retries_remaining: int = 0
    attempt: int = 0
    submitted_at: Optional[float] = None
    last_error: Optional[str] = None


@dataclass
class BudgetStatus:
    model_id: str
    usage: int
    ceiling: int
    exceeded: bool
    message: str = ""

    def to_dict(self):
        return {
            "model": self.model_id,
            "usage": self.usage,
            "ceiling": self.ceiling,
            "exceeded": self.exceeded,
            "message": self.message,
        }


@dataclass
class BatchResult:
    completed: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)
    cancelled: List[int] = field(default_factory=list)
    budget_warning: Optional[BudgetStatus] = None

    @property
    def submitted(self):
        return bool(self.completed or self.failed or self.cancelled)

    def to_dict(self):
        return {
            "completed": sorted(self.completed),
            "failed": sorted(self.failed),
            "cancelled": sorted(self.cancelled),
            "budgetWarning": self.budget_warning.to_dict() if self.budget_warning else None,
        }


@dataclass
class PlanRequest:
    scenario: str
    page_count: int
    mode: str = "story"
    include_cover: bool = False
    volume_start: int = 1
    chapter_start: int = 1
    auto_increment: bool = False
    chapters_per_volume: int = 4
    existing_plan_text: Optional[str] = None
    title: str = ""
    subtitle: str = ""
    author: str = ""
    chapter_title: str = ""
    target: str = ""
    genre: str = ""
    world_settings: str = ""
    assets: List[CharacterAsset] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data, assets=None):
        return cls(
            scenario=data.get("scenario", ""),
            page_count=int(data.get("pageCount", 0)),
            mode=data.get("mode", "story"),
            include_cover=bool(data.get("includeCover", False)),
            volume_start=int(data.get("volumeStart", 1)),
            chapter_start=int(data.get("chapterStart", 1)),
            auto_increment=bool(data.get("autoIncrement", False)),
            chapters_per_volume=int(data.get("chaptersPerVolume", 4)),
            existing_plan_text=data.get("existingPlanText"),
            title=data.get("title", ""),
            subtitle=data.get("subtitle", ""),
            author=data.get("author", ""),
            chapter_title=data.get("chapterTitle", ""),
            target=data.get("target", ""),
            genre=data.get("genre", ""),
            world_settings=data.get("worldSettings", ""),
            assets=list(assets or []),
        )


@dataclass
class PlanResult:
    rows: List[dict]
    csv: str
    model: str
    skipped: int = 0

    def to_dict(self):
        return {"rows": self.rows, "csv": self.csv, "model": self.model, "skipped": self.skipped}


def _noop_progress(message, msg_type="info"):
    pass


class GenerationScheduler:
    def __init__(self, service, ledger, model_chain=None, retry_policy=None,
                 concurrency=None, conservative=False, status_callback=None,
                 progress_callback=None, sleep=None, plan_model_chain=None,
                 rand=random.random, clock=time.time):
        self.service = service
        self.ledger = ledger
        self.model_chain = list(model_chain or story_engine.IMAGE_MODEL_CHAIN)
        self.plan_model_chain = list(plan_model_chain or story_engine.PLAN_MODEL_CHAIN)
        if not self.model_chain:
            raise ValueError("model_chain must name at least one model")
        self.retry_policy = retry_policy or RetryPolicy()
        self.conservative = conservative
        if conservative:
            self.concurrency = 1
        else:
            self.concurrency = max(1, concurrency or model_info(self.model_chain[0])["concurrency"])
        self.status_callback = status_callback
        self.progress = progress_callback or _noop_progress
        self._sleep = sleep
        self._rand = rand
        self._clock = clock

        self._cancel_event = threading.Event()
        self._pace_lock = threading.Lock()
        self._last_submission = None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def check_budget(self, model_id=None):
        model_id = model_id or self.model_chain[0]
        info = model_info(model_id)
        usage = self.ledger.current()
        ceiling = info["daily_free"]
        exceeded = usage >= ceiling
        message = ""
        if exceeded:
            message = (
                f"Today's usage ({usage}) has reached the free daily limit for "
                f"{info['name']} ({ceiling}/day). Continuing may incur charges."
            )
        return BudgetStatus(model_id, usage, ceiling, exceeded, message)

    def cancel(self):
        """Stop this scheduler for good. Each run gets a new scheduler."""
        print("[scheduler] Cancel requested")
        self._cancel_event.set()

    @property
    def cancelled(self):
        return self._cancel_event.is_set()

    def run_batch(self, pages, pool, force=False):
        """
        Generate every page that is not completed yet.

        If today's usage already reached the ceiling and force is False,
        nothing is submitted and the result carries the budget warning.
        """
        self._last_submission = None

        budget = self.check_budget()
        if budget.exceeded and not force:
            self.progress(f"⚠️ {budget.message}", "warning")
            return BatchResult(budget_warning=budget)

        result = BatchResult(budget_warning=budget if budget.exceeded else None)
        pending = [p for p in pages if p.status != PageStatus.COMPLETED]
        if not pending:
            self.progress("Nothing to generate, every page is completed.", "complete")
            return result

        jobs = queue.Queue()
        for page in pending:
            jobs.put(page)

        workers = min(self.concurrency, len(pending))
        name = model_info(self.model_chain[0])["name"]
        mode = " (conservative)" if self.conservative else ""
        self.progress(f"🚀 Generating {len(pending)} pages with {name}, {workers} at a time{mode}", "info")

        result_lock = threading.Lock()

        def worker():
            while not self.cancelled:
                try:
                    page = jobs.get_nowait()
                except queue.Empty:
                    return
                outcome = self._run_page(page, pool)
                with result_lock:
                    self._record(result, page, outcome)

        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(worker) for _ in range(workers)]
            for future in as_completed(futures):
                future.result()

        # Pages never pulled because of cancel
        while True:
            try:
                page = jobs.get_nowait()
            except queue.Empty:
                break
            result.cancelled.append(page.page_number)

        if self.cancelled:
            self.progress(
                f"⏹ Cancelled: {len(result.completed)} done, {len(result.cancelled)} not generated", "complete"
            )
        else:
            self.progress(
                f"✅ Batch finished: {len(result.completed)} done, {len(result.failed)} failed", "complete"
            )
        return result

    def run_single(self, page, pool, prompt_override=None):
        """(Re)generate one page. An override replaces the page's prompt first."""
        if prompt_override is not None:
            page.prompt = prompt_override
        outcome = self._run_page(page, pool)
        if outcome == SUCCEEDED:
            self.progress(f"✅ Page {page.page_number} regenerated", "complete")
        elif outcome == FAILED:
            self.progress(f"❌ Page {page.page_number} failed: {page.last_error}", "error")
        else:
            self.progress(f"⏹ Page {page.page_number} cancelled", "complete")
        return outcome

    def generate_plan(self, request):
        """Ask a text model for a full page script and repair what comes back."""

        slots = blueprint.allocate(
            request.page_count,
            include_cover=request.include_cover,
            volume_start=request.volume_start,
            chapter_start=request.chapter_start,
            auto_increment=request.auto_increment,
            chapters_per_volume=request.chapters_per_volume,
            existing_plan_text=request.existing_plan_text,
            mode=request.mode,
        )
        labels = [s.label for s in slots]
        parts = story_engine.build_plan_parts(
            request, blueprint.render_blueprint(slots), labels, request.assets
        )

        self.progress(f"📝 Planning {len(labels)} pages ({request.mode})...", "info")
        last_error = None
        for model in self.plan_model_chain:
            job = GenerationJob(page=None)
            try:
                result = self._call_model(
                    model, parts, job,
                    response_schema=story_engine.plan_response_schema(),
                    system_instruction=story_engine.PLAN_SYSTEM_INSTRUCTION,
                    max_output_tokens=story_engine.PLAN_MAX_OUTPUT_TOKENS,
                )
            except GenerationError as e:
                last_error = e
                self.progress(f"⚠️ {model} failed: {e}", "warning")
                continue
            if result is None:
                raise GenerationError("Plan generation cancelled")

            try:
                items = json_repair.repair_batch_json(result.text)
            except json_repair.JsonRepairError as e:
                last_error = GenerationError(str(e))
                self.progress(f"⚠️ {model} returned unusable JSON: {e}", "warning")
                continue

            rows = json_repair.reconcile_pages(items, labels)
            skipped = sum(1 for r in rows if r["skipped"])
            if skipped:
                self.progress(f"⚠️ {skipped} pages were missing from the response and need regenerating", "warning")
            csv_text = serialize_script([[r["pageNumber"], r["template"], r["prompt"]] for r in rows])
            self.progress(f"✅ Plan ready: {len(rows)} pages", "complete")
            return PlanResult(rows=rows, csv=csv_text, model=model, skipped=skipped)

        raise last_error or GenerationError("No plan model available")

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _record(self, result, page, outcome):
        if outcome == SUCCEEDED:
            result.completed.append(page.page_number)
        elif outcome == FAILED:
            result.failed.append(page.page_number)
        else:
            result.cancelled.append(page.page_number)

    def _notify(self, page):
        if self.status_callback:
            self.status_callback(page)

    def _wait(self, seconds):
        """Wait unless cancelled. False if the wait was cut short by cancel()."""
        if seconds <= 0:
            return not self.cancelled
        if self._sleep is not None:
            self._sleep(seconds)
            return not self.cancelled
        return not self._cancel_event.wait(seconds)

    def _pace(self, model):
        """Conservative mode: keep the model's safe gap between submissions."""
        if not self.conservative:
            return not self.cancelled
        with self._pace_lock:
            if self._last_submission is not None:
                gap = model_info(model)["safe_delay"] - (self._clock() - self._last_submission)
                if gap > 0 and not self._wait(gap):
                    return False
            self._last_submission = self._clock()
        return not self.cancelled

    def _call_model(self, model, parts, job, **kwargs):
        """
        Submit to one model, retrying rate-limit errors with backoff.

        Returns the result, or None if cancelled while waiting.
        Raises GenerationError once this model is out of retries or the
        error is not retryable.
        """
        job.retries_remaining = self.retry_policy.max_retries
        retry = 0
        while True:
            if not self._pace(model):
                return None
            job.attempt += 1
            job.submitted_at = self._clock()
            try:
                return self.service.generate(model, parts, **kwargs)
            except Exception as e:
                error = classify_error(e)
                job.last_error = str(error)
                if not error.retryable or job.retries_remaining <= 0:
                    if error is e:
                        raise
                    raise error from e

            delay = self.retry_policy.next_delay(retry, error.retry_after, rand=self._rand)
            retry += 1
            job.retries_remaining -= 1
            print(f"[scheduler] {model} {error.kind}, retry {retry}/{self.retry_policy.max_retries} in {delay:.1f}s")
            self.progress(f"⏳ Rate limited on {model}, retrying in {delay:.0f}s ({retry}/{self.retry_policy.max_retries})", "warning")
            if not self._wait(delay):
                return None

    def _run_page(self, page, pool):
        """Drive one page to a terminal state. Returns the job outcome."""
        if self.cancelled:
            return CANCELLED

        refs = resolve_page_refs(page, pool)
        parts = story_engine.build_page_parts(page, refs)
        job = GenerationJob(page=page)

        page.status = PageStatus.GENERATING
        page.last_error = None
        self._notify(page)
        self.progress(f"🎨 Page {page.page_number}: generating ({len(refs)} refs)", "batch")

        for tier, model in enumerate(self.model_chain):
            job.model_tier_index = tier
            try:
                result = self._call_model(
                    model, parts, job, system_instruction=story_engine.SYSTEM_INSTRUCTION
                )
            except GenerationError as e:
                print(f"[scheduler] Page {page.page_number}: {model} failed ({e.kind}): {e}")
                if tier + 1 < len(self.model_chain):
                    self.progress(f"⚠️ Page {page.page_number}: {model} failed, trying {self.model_chain[tier + 1]}", "warning")
                continue

            if result is None:
                page.status = PageStatus.IDLE
                page.last_error = "Cancelled"
                self._notify(page)
                return CANCELLED

            page.result_artifact = result.image_bytes
            page.result_mime_type = result.mime_type
            page.status = PageStatus.COMPLETED
            page.last_error = None
            count = self.ledger.increment()
            self._notify(page)
            self.progress(f"✅ Page {page.page_number} done (today: {count})", "success")
            return SUCCEEDED

        page.status = PageStatus.ERROR
        page.last_error = job.last_error or "Generation failed"
        self._notify(page)
        self.progress(f"❌ Page {page.page_number} failed: {page.last_error}", "warning")
        return FAILED
