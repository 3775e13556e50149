from __future__ import annotations

import logging
import os
import threading
import time
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from flask import Flask, jsonify, request, send_file

from backup import BackupService
from db import SQLiteStore
from detector import SiteDetector
from errors import BackupError, FetchError


BASE_DIR = Path(__file__).resolve().parent
BACKUP_DIR = Path(os.environ.get("BACKUP_DIR", str(BASE_DIR / "backups"))).expanduser().resolve()
DB_PATH = Path(os.environ.get("DB_PATH", str(BASE_DIR / "backup_jobs.sqlite3"))).expanduser().resolve()
MAX_ACTIVE_JOBS = int(os.environ.get("MAX_ACTIVE_JOBS", "4"))
RECENT_JOBS_LIMIT = int(os.environ.get("RECENT_JOBS_LIMIT", "10"))
BACKUP_TYPES = ("full", "database-only")

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = Flask(__name__)
store = SQLiteStore(DB_PATH)
detector = SiteDetector()
service = BackupService(store, BACKUP_DIR, detector=detector)
ACTIVE_JOBS: set[int] = set()
ACTIVE_JOBS_LOCK = threading.Lock()


class JobCapacityError(RuntimeError):
    pass


def _error(message: str, status: int):
    return jsonify({"ok": False, "error": message}), status


def _payload() -> dict:
    if request.is_json:
        payload = request.get_json(silent=True)
        return payload if isinstance(payload, dict) else {}
    return request.form.to_dict()


def _parse_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _parse_int(value: Optional[str], default: int, min_value: int, max_value: int) -> int:
    try:
        parsed = int(str(value).strip()) if value is not None else default
    except ValueError:
        parsed = default
    return max(min_value, min(max_value, parsed))


def _normalize_website_url(value: object) -> str:
    raw = str(value or "").strip()
    if not raw:
        return ""
    if "://" not in raw:
        raw = f"https://{raw}"
    parsed = urlparse(raw)
    if parsed.scheme not in {"http", "https"} or not parsed.hostname:
        return ""
    return raw


def _elapsed_seconds(started_at: float) -> int:
    return max(0, int(time.time() - float(started_at or time.time())))


def _job_payload(job) -> dict:
    payload = job.to_dict()
    payload["active"] = job.id in ACTIVE_JOBS
    if not job.is_terminal:
        payload["elapsed_seconds"] = _elapsed_seconds(job.created_at)
    return payload


def _create_claimed_job(website_url: str, backup_type: str, options: dict, credentials: Optional[dict]):
    with ACTIVE_JOBS_LOCK:
        if len(ACTIVE_JOBS) >= max(1, MAX_ACTIVE_JOBS):
            raise JobCapacityError(f"Too many active jobs ({len(ACTIVE_JOBS)}/{MAX_ACTIVE_JOBS}). Wait for current jobs to finish.")
        job = store.create_job(website_url, backup_type, options=options, credentials=credentials)
        ACTIVE_JOBS.add(job.id)
    return job


def _release_job_slot(job_id: int) -> None:
    with ACTIVE_JOBS_LOCK:
        ACTIVE_JOBS.discard(job_id)


def _start_backup_job(job_id: int) -> None:
    def _runner() -> None:
        try:
            service.run_backup(job_id)
        except Exception:
            # The job record carries the failure; this is only for the server log.
            logger.exception("Backup job %s failed", job_id)
        finally:
            _release_job_slot(job_id)

    thread = threading.Thread(target=_runner, name=f"backup-{job_id}", daemon=True)
    thread.start()


@app.get("/")
def index():
    return jsonify({"ok": True, "service": "wordpress-backup", "active_jobs": len(ACTIVE_JOBS)})


@app.post("/api/validate-site")
def validate_site():
    url = _normalize_website_url(_payload().get("url"))
    if not url:
        return _error("URL is required", 400)
    try:
        site_info = detector.classify(url)
    except FetchError as exc:
        return _error(str(exc), 502)
    return jsonify({"ok": True, "site_info": site_info.to_dict()})


@app.post("/api/backup")
def create_backup():
    data = _payload()
    url = _normalize_website_url(data.get("url") or data.get("website_url"))
    if not url:
        return _error("URL is required", 400)

    backup_type = str(data.get("backup_type") or "full").strip().lower()
    if backup_type == "database":
        backup_type = "database-only"
    if backup_type not in BACKUP_TYPES:
        return _error(f"backup_type must be one of: {', '.join(BACKUP_TYPES)}", 400)

    raw_options = data.get("options") if isinstance(data.get("options"), dict) else {}
    options = {
        "include_media": _parse_bool(raw_options.get("include_media", data.get("include_media")), default=True),
        "assume_importer": _parse_bool(raw_options.get("assume_importer", data.get("assume_importer")), default=True),
    }

    credentials = None
    raw_credentials = data.get("credentials") if isinstance(data.get("credentials"), dict) else data
    username = str(raw_credentials.get("username") or "").strip()
    if username:
        credentials = {"username": username, "password": str(raw_credentials.get("password") or "")}

    try:
        job = _create_claimed_job(url, backup_type, options, credentials)
    except JobCapacityError as exc:
        return _error(str(exc), 429)
    _start_backup_job(job.id)
    return jsonify({"ok": True, "job": _job_payload(job)})


@app.get("/api/backup/<int:job_id>")
def backup_status(job_id: int):
    job = store.get_job(job_id)
    if job is None:
        return _error("Backup job not found", 404)
    return jsonify({"ok": True, "job": _job_payload(job)})


@app.get("/api/backup/<int:job_id>/download")
def backup_download(job_id: int):
    file_path = service.locate_archive(job_id)
    if not file_path:
        return _error("Backup file not found", 404)
    job = store.get_job(job_id)
    host = urlparse(job.website_url).hostname or "site"
    download_name = f"backup-{host}-{int(time.time() * 1000)}.zip"
    return send_file(file_path, mimetype="application/zip", as_attachment=True, download_name=download_name)


@app.get("/api/backups")
def list_backups():
    return jsonify({"ok": True, "jobs": [_job_payload(j) for j in store.list_jobs()]})


@app.get("/api/backups/recent")
def recent_backups():
    limit = _parse_int(request.args.get("limit"), RECENT_JOBS_LIMIT, 1, 100)
    return jsonify({"ok": True, "jobs": [_job_payload(j) for j in store.list_recent_jobs(limit)]})


@app.errorhandler(BackupError)
def handle_backup_error(exc: BackupError):
    return _error(str(exc) or "Unknown error", 500)


if __name__ == "__main__":
    host = os.environ.get("HOST", "127.0.0.1")
    port = int(os.environ.get("PORT", "5000"))
    debug = _parse_bool(os.environ.get("FLASK_DEBUG"), default=False)
    app.run(host=host, port=port, debug=debug, use_reloader=False, threaded=True)
