"""Web API routes for ReplayForge."""

import json
import math
import queue
import threading
import uuid
from pathlib import Path

from flask import Blueprint, Response, current_app, jsonify, request, send_file

from replayforge.console import (
    COMMAND_LOG,
    CommandChannel,
    ConsoleClosedError,
    ConsoleConnectionError,
)
from replayforge.engine import export_clips
from replayforge.manifest import options_from_dict
from replayforge.models import ExportProgress

bp = Blueprint("web", __name__)

# In-memory job store: job_id -> job dict
_jobs: dict[str, dict] = {}

# The game supports one capture at a time, so exports never overlap.
_export_lock = threading.Lock()


@bp.route("/api/exports", methods=["POST"])
def start_export():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "Expected a JSON object"}), 400

    try:
        options = options_from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        return jsonify({"error": f"Invalid export request: {e}"}), 400

    if not _export_lock.acquire(blocking=False):
        return jsonify({"error": "Another export is already running"}), 409

    job_id = uuid.uuid4().hex[:12]
    progress_queue: queue.Queue = queue.Queue()
    job = {
        "status": "running",
        "progress_queue": progress_queue,
        "last_progress": None,
        "result": None,
        "error": None,
    }
    _jobs[job_id] = job
    settings = current_app.config["SETTINGS"]

    def run():
        try:
            def on_progress(p: ExportProgress):
                job["last_progress"] = p.to_dict()
                progress_queue.put(p.to_dict())

            result = export_clips(options, on_progress=on_progress, settings=settings)
            job["result"] = result.to_dict()
            if result.success:
                job["status"] = "done"
            else:
                job["status"] = "error"
                job["error"] = result.error
        finally:
            _export_lock.release()
            progress_queue.put(None)  # sentinel

    threading.Thread(target=run, daemon=True).start()
    return jsonify({"job_id": job_id, "status": "started"})


@bp.route("/api/exports/<job_id>/progress")
def progress_stream(job_id: str):
    if job_id not in _jobs:
        return jsonify({"error": "Job not found"}), 404

    job = _jobs[job_id]
    q = job["progress_queue"]

    def generate():
        while True:
            try:
                msg = q.get(timeout=600)
            except queue.Empty:
                yield "data: {\"error\": \"timeout\"}\n\n"
                break
            if msg is None:
                if job["status"] == "error":
                    data = json.dumps({"error": job["error"], "result": job.get("result")})
                else:
                    data = json.dumps({"stage": "complete", "result": job.get("result")})
                yield f"data: {data}\n\n"
                break
            yield f"data: {json.dumps(msg)}\n\n"

    return Response(generate(), mimetype="text/event-stream")


@bp.route("/api/exports/<job_id>/status")
def job_status(job_id: str):
    if job_id not in _jobs:
        return jsonify({"error": "Job not found"}), 404

    job = _jobs[job_id]
    resp = {"status": job["status"], "progress": job.get("last_progress")}
    if job["status"] == "done":
        resp["result"] = job.get("result")
    if job["status"] == "error":
        resp["error"] = job.get("error")
    return jsonify(resp)


@bp.route("/api/exports/<job_id>/montage")
def download_montage(job_id: str):
    if job_id not in _jobs:
        return jsonify({"error": "Job not found"}), 404

    job = _jobs[job_id]
    if job["status"] != "done":
        return jsonify({"error": "Job not complete"}), 409

    montage = (job.get("result") or {}).get("montage")
    if not montage:
        return jsonify({"error": "Export produced no montage"}), 404
    return send_file(Path(montage), as_attachment=False)


@bp.route("/api/console/log")
def console_log():
    return jsonify([{"ts": e.ts, "cmd": e.cmd} for e in COMMAND_LOG.entries()])


@bp.route("/api/console/commands", methods=["POST"])
def send_console_commands():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "Expected a JSON object"}), 400
    commands = data.get("commands")
    if not isinstance(commands, list) or not all(isinstance(c, str) for c in commands) or not commands:
        return jsonify({"error": "Expected a non-empty 'commands' list of strings"}), 400
    bad_delay = (jsonify({"error": "'delay' must be a non-negative number of seconds"}), 400)
    try:
        delay = float(data.get("delay", 0.5))
    except (TypeError, ValueError):
        return bad_delay
    if not math.isfinite(delay) or delay < 0:
        return bad_delay

    settings = current_app.config["SETTINGS"]
    channel = CommandChannel(port=settings.get_int("console_port", 2121))
    try:
        channel.send_batch(commands, base_delay=delay)
    except (ConsoleConnectionError, ConsoleClosedError) as e:
        return jsonify({"error": str(e)}), 502
    return jsonify({"sent": len(commands)})
