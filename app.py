"""
Page Batch Studio — Flask Application
JSON API for turning a page script plus character reference images into a
batch of generated manga pages, with a daily free-tier budget.

Flow: create project → upload script → upload characters → check links →
generate all (or one page) → follow progress over SSE → fetch page images.
Plans (page scripts) can be generated from a scenario and exported as CSV.
"""
import os
import json
import time
import uuid
import threading
from pathlib import Path

from flask import Flask, request, jsonify, Response, send_file
from dotenv import load_dotenv

import story_engine
from character_refs import analyze_links, asset_from_bytes, merge_assets
from generation_scheduler import GenerationScheduler, PlanRequest, RetryPolicy
from script_parser import PageSpec, PageStatus, ScriptParseError, decode_script_bytes, pages_to_script, parse_script
from usage_ledger import load_usage, save_usage

load_dotenv()

app = Flask(__name__)
app.secret_key = os.environ.get("SECRET_KEY", "page-batch-dev-key")

# Project storage
PROJECTS_DIR = Path(os.environ.get("PROJECTS_DIR", Path(__file__).parent / "projects"))
USAGE_FILE = Path(os.environ.get("USAGE_FILE", PROJECTS_DIR / "usage.json"))

PROJECTS_DIR.mkdir(parents=True, exist_ok=True)

# SSE progress streams (per project)
_progress_streams = {}

# Loaded projects: project_id -> {"pages": [PageSpec], "pool": [CharacterAsset], "scheduler": ...}
_projects = {}
_projects_lock = threading.Lock()
# pages.json writers, one lock per project
_page_locks = {}

_ledger = None
_ledger_lock = threading.Lock()
_service = None

_MIME_EXT = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
    "image/gif": ".gif",
}


# =============================================================================
# HELPERS
# =============================================================================

def get_project_dir(project_id):
    """Get or create project directory."""
    d = PROJECTS_DIR / project_id
    d.mkdir(parents=True, exist_ok=True)
    return d


def load_project_metadata(project_id):
    """Load project metadata.json."""
    meta_path = PROJECTS_DIR / project_id / "metadata.json"
    if meta_path.exists():
        with open(meta_path) as f:
            return json.load(f)
    return {}


def save_project_metadata(project_id, data):
    """Save project metadata.json."""
    meta_path = get_project_dir(project_id) / "metadata.json"
    with open(meta_path, "w") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)


def progress_callback_factory(project_id):
    """Create a progress callback that pushes to SSE stream."""
    def callback(message, msg_type="info"):
        if project_id in _progress_streams:
            _progress_streams[project_id].append({
                "message": message,
                "type": msg_type,
                "timestamp": time.time()
            })
    return callback


def run_in_background(target):
    thread = threading.Thread(target=target)
    thread.start()
    return thread


def get_service():
    global _service
    if _service is None:
        _service = story_engine.GeminiService()
    return _service


def get_ledger():
    global _ledger
    with _ledger_lock:
        if _ledger is None:
            _ledger = load_usage(USAGE_FILE)
        return _ledger


def persist_ledger():
    with _ledger_lock:
        if _ledger is not None:
            save_usage(_ledger, USAGE_FILE)


def _page_image_path(project_id, index, mime_type):
    return get_project_dir(project_id) / "pages" / f"{index:03d}{_MIME_EXT.get(mime_type, '.png')}"


def _project_lock(project_id):
    with _projects_lock:
        lock = _page_locks.get(project_id)
        if lock is None:
            lock = _page_locks[project_id] = threading.Lock()
        return lock


def save_pages(project_id, pages):
    """Save page state to pages.json; artifacts are written as image files."""
    project_dir = get_project_dir(project_id)
    path = project_dir / "pages.json"
    tmp_path = project_dir / "pages.json.tmp"
    with _project_lock(project_id):
        data = [p.to_dict() for p in pages]
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, path)


def _load_pages(project_id):
    path = PROJECTS_DIR / project_id / "pages.json"
    if not path.exists():
        return []
    with open(path) as f:
        data = json.load(f)

    pages = []
    for index, item in enumerate(data):
        page = PageSpec(
            page_number=item["pageNumber"],
            template=item.get("template", ""),
            prompt=item.get("prompt", ""),
            status=item.get("status", PageStatus.IDLE),
            last_error=item.get("error"),
            resolved_refs=item.get("resolvedRefs", []),
        )
        # A generation that was running when the process stopped never finished
        if page.status == PageStatus.GENERATING:
            page.status = PageStatus.IDLE
        if item.get("hasResult"):
            image_path = _page_image_path(project_id, index, item.get("resultMimeType"))
            if image_path.exists():
                page.result_artifact = image_path.read_bytes()
                page.result_mime_type = item.get("resultMimeType")
            elif page.status == PageStatus.COMPLETED:
                page.status = PageStatus.IDLE
        pages.append(page)
    return pages


def _load_pool(project_id):
    char_dir = PROJECTS_DIR / project_id / "characters"
    if not char_dir.exists():
        return []
    order_path = char_dir / "order.json"
    names = []
    if order_path.exists():
        with open(order_path) as f:
            names = json.load(f)
    return [asset_from_bytes(name, (char_dir / name).read_bytes()) for name in names if (char_dir / name).exists()]


def get_project_state(project_id):
    """In-memory state for a project, loaded from disk on first use."""
    with _projects_lock:
        state = _projects.get(project_id)
        if state is None:
            state = {
                "pages": _load_pages(project_id),
                "pool": _load_pool(project_id),
                "scheduler": None,
            }
            _projects[project_id] = state
        return state


def _is_running(state):
    return state.get("scheduler") is not None


def claim_run(state, scheduler):
    """Register scheduler as the project's only run. False if one is already registered."""
    with _projects_lock:
        if state.get("scheduler") is not None:
            return False
        state["scheduler"] = scheduler
        return True


def release_run(state, scheduler):
    with _projects_lock:
        if state.get("scheduler") is scheduler:
            state["scheduler"] = None


def image_model_chain(choice):
    """'fast' → flash image model only; anything else → pro with flash fallback."""
    if choice in ("fast", story_engine.IMAGE_MODEL_FAST):
        return [story_engine.IMAGE_MODEL_FAST]
    return list(story_engine.IMAGE_MODEL_CHAIN)


def build_scheduler(project_id, options):
    state = get_project_state(project_id)
    pages = state["pages"]
    callback = progress_callback_factory(project_id)

    def on_status(page):
        if page.status == PageStatus.COMPLETED and page.result_artifact is not None:
            index = next(i for i, p in enumerate(pages) if p is page)
            image_path = _page_image_path(project_id, index, page.result_mime_type)
            image_path.parent.mkdir(parents=True, exist_ok=True)
            image_path.write_bytes(page.result_artifact)
            persist_ledger()
        if page.status != PageStatus.GENERATING:
            save_pages(project_id, pages)

    concurrency = options.get("concurrency")
    return GenerationScheduler(
        get_service(),
        get_ledger(),
        model_chain=image_model_chain(options.get("model")),
        retry_policy=RetryPolicy(max_retries=int(options.get("maxRetries", 3))),
        concurrency=int(concurrency) if concurrency else None,
        conservative=bool(options.get("conservative", False)),
        status_callback=on_status,
        progress_callback=callback,
    )


def _find_page(pages, index):
    if 0 <= index < len(pages):
        return pages[index]
    return None


# =============================================================================
# ROUTES — Projects
# =============================================================================

@app.route("/api/project/create", methods=["POST"])
def create_project():
    """Create a new empty project."""
    data = request.get_json(silent=True) or {}
    title = data.get("title", "").strip()
    if not title:
        return jsonify({"error": "Title is required"}), 400

    project_id = str(uuid.uuid4())[:8] + "-" + title.lower().replace(" ", "-")[:30]
    metadata = {
        "id": project_id,
        "title": title,
        "created_at": time.strftime("%Y-%m-%dT%H:%M:%S"),
        "status": "new",
    }
    save_project_metadata(project_id, metadata)
    return jsonify(metadata)


@app.route("/api/project/<project_id>")
def get_project(project_id):
    meta = load_project_metadata(project_id)
    if not meta:
        return jsonify({"error": "Project not found"}), 404
    state = get_project_state(project_id)
    return jsonify({
        **meta,
        "pages": [p.to_dict() for p in state["pages"]],
        "characters": [a.name for a in state["pool"]],
        "running": _is_running(state),
    })


@app.route("/api/project/<project_id>/script", methods=["POST"])
def upload_script(project_id):
    """Upload a page script as a file (multipart 'script') or JSON {"text": ...}."""
    meta = load_project_metadata(project_id)
    if not meta:
        return jsonify({"error": "Project not found"}), 404

    state = get_project_state(project_id)
    if _is_running(state):
        return jsonify({"error": "Generation in progress"}), 409

    if "script" in request.files:
        raw = decode_script_bytes(request.files["script"].read())
    else:
        data = request.get_json(silent=True) or {}
        raw = data.get("text", "")

    try:
        pages = parse_script(raw)
    except ScriptParseError as e:
        return jsonify({"error": str(e)}), 400

    # Stale images belong to the old script
    pages_dir = get_project_dir(project_id) / "pages"
    if pages_dir.exists():
        for old in pages_dir.iterdir():
            old.unlink()

    state["pages"] = pages
    with open(get_project_dir(project_id) / "script.csv", "w", encoding="utf-8") as f:
        f.write(pages_to_script(pages))
    save_pages(project_id, pages)

    meta["status"] = "script_loaded"
    meta["page_count"] = len(pages)
    save_project_metadata(project_id, meta)
    print(f"[app] {project_id}: loaded {len(pages)} pages")

    return jsonify({"status": "loaded", "pages": [p.to_dict() for p in pages]})


@app.route("/api/project/<project_id>/characters", methods=["POST"])
def upload_characters(project_id):
    """Add character reference images. A name already in the pool is kept as is."""
    if not load_project_metadata(project_id):
        return jsonify({"error": "Project not found"}), 404

    files = request.files.getlist("files")
    if not files:
        return jsonify({"error": "No files uploaded"}), 400

    incoming = []
    for f in files:
        if not f.filename:
            continue
        incoming.append(asset_from_bytes(os.path.basename(f.filename), f.read(), f.mimetype))

    state = get_project_state(project_id)
    before = {a.name for a in state["pool"]}
    state["pool"] = merge_assets(state["pool"], incoming)

    char_dir = get_project_dir(project_id) / "characters"
    char_dir.mkdir(parents=True, exist_ok=True)
    for asset in state["pool"]:
        if asset.name not in before:
            (char_dir / asset.name).write_bytes(asset.image_bytes)
    with open(char_dir / "order.json", "w") as f:
        json.dump([a.name for a in state["pool"]], f, ensure_ascii=False)

    added = [a.name for a in state["pool"] if a.name not in before]
    return jsonify({"status": "uploaded", "added": added, "characters": [a.name for a in state["pool"]]})


@app.route("/api/project/<project_id>/links")
def character_links(project_id):
    """Advisory report: linked brackets, missing images, unused images."""
    if not load_project_metadata(project_id):
        return jsonify({"error": "Project not found"}), 404
    state = get_project_state(project_id)
    report = analyze_links(state["pages"], state["pool"])
    return jsonify({"links": [r.to_dict() for r in report]})


# =============================================================================
# ROUTES — Generation
# =============================================================================

@app.route("/api/project/<project_id>/generate", methods=["POST"])
def api_generate_all(project_id):
    """Generate every page that is not completed yet."""
    if not load_project_metadata(project_id):
        return jsonify({"error": "Project not found"}), 404

    state = get_project_state(project_id)
    if not state["pages"]:
        return jsonify({"error": "Script not found. Upload a script first."}), 400
    if _is_running(state):
        return jsonify({"error": "Generation already in progress"}), 409

    data = request.get_json(silent=True) or {}
    force = bool(data.get("force", False))
    scheduler = build_scheduler(project_id, data)

    budget = scheduler.check_budget()
    if budget.exceeded and not force:
        return jsonify({"error": "budget_exceeded", "budget": budget.to_dict()}), 409

    if not claim_run(state, scheduler):
        return jsonify({"error": "Generation already in progress"}), 409
    _progress_streams[project_id] = []
    callback = progress_callback_factory(project_id)

    def run():
        try:
            result = scheduler.run_batch(state["pages"], state["pool"], force=force)
            save_pages(project_id, state["pages"])
            print(f"[app] {project_id}: batch result {result.to_dict()}")
        except Exception as e:
            callback(f"❌ Batch failed: {str(e)}", "error")
        finally:
            persist_ledger()
            release_run(state, scheduler)

    run_in_background(run)
    return jsonify({"status": "generating", "budget": budget.to_dict()})


@app.route("/api/project/<project_id>/pages/<int:index>/generate", methods=["POST"])
def api_generate_page(project_id, index):
    """Generate or regenerate one page, optionally with an edited prompt."""
    if not load_project_metadata(project_id):
        return jsonify({"error": "Project not found"}), 404

    state = get_project_state(project_id)
    page = _find_page(state["pages"], index)
    if page is None:
        return jsonify({"error": "Page not found"}), 404
    if _is_running(state):
        return jsonify({"error": "Generation already in progress"}), 409

    data = request.get_json(silent=True) or {}
    scheduler = build_scheduler(project_id, data)
    if not claim_run(state, scheduler):
        return jsonify({"error": "Generation already in progress"}), 409
    _progress_streams[project_id] = []
    callback = progress_callback_factory(project_id)

    def run():
        try:
            scheduler.run_single(page, state["pool"], prompt_override=data.get("prompt"))
            save_pages(project_id, state["pages"])
        except Exception as e:
            callback(f"❌ Page generation failed: {str(e)}", "error")
        finally:
            persist_ledger()
            release_run(state, scheduler)

    run_in_background(run)
    return jsonify({"status": "generating", "page": page.to_dict()})


@app.route("/api/project/<project_id>/cancel", methods=["POST"])
def api_cancel(project_id):
    state = get_project_state(project_id)
    scheduler = state.get("scheduler")
    if scheduler is None:
        return jsonify({"status": "idle"})
    scheduler.cancel()
    return jsonify({"status": "cancelling"})


@app.route("/api/project/<project_id>/pages/<int:index>/image")
def serve_page_image(project_id, index):
    state = get_project_state(project_id)
    page = _find_page(state["pages"], index)
    if page is None or page.result_artifact is None:
        return jsonify({"error": "No image for this page"}), 404
    image_path = _page_image_path(project_id, index, page.result_mime_type)
    if image_path.exists():
        return send_file(image_path, mimetype=page.result_mime_type or "image/png")
    return Response(page.result_artifact, mimetype=page.result_mime_type or "image/png")


# =============================================================================
# ROUTES — Plan (page script) generation
# =============================================================================

@app.route("/api/project/<project_id>/plan", methods=["POST"])
def api_generate_plan(project_id):
    """Generate a page script from a scenario; saved as plan.csv."""
    meta = load_project_metadata(project_id)
    if not meta:
        return jsonify({"error": "Project not found"}), 404

    data = request.get_json(silent=True) or {}
    if not data.get("scenario", "").strip():
        return jsonify({"error": "Scenario is required"}), 400
    try:
        page_count = int(data.get("pageCount", 0))
    except (TypeError, ValueError):
        return jsonify({"error": "pageCount must be a number"}), 400
    if page_count < 1:
        return jsonify({"error": "pageCount must be at least 1"}), 400

    state = get_project_state(project_id)
    plan_request = PlanRequest.from_dict(data, assets=state["pool"])
    scheduler = build_scheduler(project_id, data)
    if not claim_run(state, scheduler):
        return jsonify({"error": "Generation already in progress"}), 409
    _progress_streams[project_id] = []
    callback = progress_callback_factory(project_id)

    def run():
        try:
            result = scheduler.generate_plan(plan_request)
            project_dir = get_project_dir(project_id)
            with open(project_dir / "plan.csv", "w", encoding="utf-8") as f:
                f.write(result.csv)
            with open(project_dir / "plan.json", "w") as f:
                json.dump(result.to_dict(), f, indent=2, ensure_ascii=False)
            meta["status"] = "plan_ready"
            save_project_metadata(project_id, meta)
        except Exception as e:
            callback(f"❌ Plan generation failed: {str(e)}", "error")
        finally:
            release_run(state, scheduler)

    run_in_background(run)
    return jsonify({"status": "generating", "message": "Plan generation started"})


@app.route("/api/project/<project_id>/plan.csv")
def download_plan(project_id):
    plan_path = PROJECTS_DIR / project_id / "plan.csv"
    if not plan_path.exists():
        return jsonify({"error": "No plan found"}), 404
    with open(plan_path, encoding="utf-8") as f:
        csv_text = f.read()
    return Response(
        csv_text,
        mimetype="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{project_id}-plan.csv"'}
    )


# =============================================================================
# ROUTES — Usage
# =============================================================================

@app.route("/api/usage")
def api_usage():
    ledger = get_ledger()
    model = request.args.get("model", story_engine.IMAGE_MODEL_PRIMARY)
    info = story_engine.model_info(model)
    usage = ledger.current()
    return jsonify({
        **ledger.to_dict(),
        "model": model,
        "modelName": info["name"],
        "ceiling": info["daily_free"],
        "exceeded": usage >= info["daily_free"],
    })


@app.route("/api/usage/reset", methods=["POST"])
def api_usage_reset():
    ledger = get_ledger()
    ledger.reset()
    persist_ledger()
    print("[app] Usage counter reset by operator")
    return jsonify(ledger.to_dict())


# =============================================================================
# ROUTES — SSE Progress Stream
# =============================================================================

@app.route("/api/project/<project_id>/progress")
def progress_stream(project_id):
    """SSE endpoint for real-time progress updates."""
    # Only initialize if no stream exists yet (don't clear mid-generation!)
    if project_id not in _progress_streams:
        _progress_streams[project_id] = []

    def generate():
        last_index = 0
        heartbeat = 0

        while True:
            messages = _progress_streams.get(project_id, [])

            if last_index < len(messages):
                for msg in messages[last_index:]:
                    yield f"data: {json.dumps(msg, ensure_ascii=False)}\n\n"
                    # If complete or error, stop
                    if msg.get("type") in ("complete", "error"):
                        return
                last_index = len(messages)

            # Heartbeat every 15 seconds
            heartbeat += 1
            if heartbeat % 30 == 0:
                yield ": heartbeat\n\n"

            time.sleep(0.5)

    return Response(
        generate(),
        mimetype="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no"
        }
    )


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5050))
    debug = os.environ.get("FLASK_ENV") == "development"
    app.run(host="0.0.0.0", port=port, debug=debug)
