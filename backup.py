from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from content import ContentExtractor, MediaFetcher, MediaFile
from detector import SiteDetector
from errors import ClassificationNegative, JobNotFoundError, JobStateError
from packager import ArchiveBuilder


logger = logging.getLogger(__name__)

NOT_WORDPRESS_MESSAGE = "Only WordPress websites are supported"
UNKNOWN_ERROR_MESSAGE = "Unknown error"

STEP_DETECT = "Detecting website type..."
STEP_EXTRACT = "Extracting content..."
STEP_MEDIA = "Downloading media files..."
STEP_PREPARE = "Preparing backup archive..."
STEP_ARCHIVE = "Creating backup archive..."
STEP_DONE = "Completed"


def wants_media(job) -> bool:
    return job.backup_type == "full" and bool((job.options or {}).get("include_media"))


class BackupService:
    """Runs the backup pipeline for one job and records its progress.

    Progress moves through fixed milestones: 0 (started), 20 (site detected),
    60 (content extracted), 80 (media done or skipped), 100 (archive written).
    Only this class writes to a job after it is created.
    """

    def __init__(
        self,
        store,
        backup_dir: Path,
        detector: Optional[SiteDetector] = None,
        extractor: Optional[ContentExtractor] = None,
        media_fetcher: Optional[MediaFetcher] = None,
        builder: Optional[ArchiveBuilder] = None,
    ) -> None:
        self.store = store
        self.detector = detector or SiteDetector()
        self.extractor = extractor or ContentExtractor()
        self.media_fetcher = media_fetcher or MediaFetcher()
        self.builder = builder or ArchiveBuilder(backup_dir)

    def run_backup(self, job_id: int) -> None:
        job = self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Backup job {job_id} not found")

        started = self.store.update_job(
            job_id,
            {"status": "processing", "progress": 0, "current_step": STEP_DETECT},
            expected_status="pending",
        )
        if started is None:
            raise JobStateError(f"Backup job {job_id} is already {job.status}")
        logger.info("Backup job %s started for %s", job_id, job.website_url)

        try:
            site_info = self.detector.classify(job.website_url)
            if not site_info.is_wordpress:
                raise ClassificationNegative(NOT_WORDPRESS_MESSAGE)
            job = self._advance(job_id, 20, STEP_EXTRACT, site_info=site_info.to_dict())

            content = self.extractor.extract(job, site_info)
            fetch_media = wants_media(job)
            job = self._advance(job_id, 60, STEP_MEDIA if fetch_media else STEP_PREPARE)

            media_files: List[MediaFile] = []
            if fetch_media:
                media_files = self.media_fetcher.fetch_media(content.media)
            job = self._advance(job_id, 80, STEP_ARCHIVE)

            backup_path = self.builder.build(job, content, media_files)
            self._finish(
                job_id,
                {
                    "status": "completed",
                    "progress": 100,
                    "current_step": STEP_DONE,
                    "backup_file_path": backup_path,
                    "backup_file_size": os.path.getsize(backup_path),
                    "completed_at": int(time.time()),
                },
            )
            logger.info("Backup job %s completed: %s", job_id, backup_path)
        except Exception as exc:
            message = str(exc).strip() or UNKNOWN_ERROR_MESSAGE
            self._finish(
                job_id,
                {"status": "failed", "error_message": message, "completed_at": int(time.time())},
            )
            raise

    def locate_archive(self, job_id: int) -> Optional[str]:
        job = self.store.get_job(job_id)
        if job is None or job.status != "completed" or not job.backup_file_path:
            return None
        if not os.path.isfile(job.backup_file_path):
            return None
        return job.backup_file_path

    def _advance(self, job_id: int, progress: int, step: str, **extra: Any):
        updates: Dict[str, Any] = {"progress": progress, "current_step": step}
        updates.update(extra)
        job = self.store.update_job(job_id, updates, expected_status="processing")
        if job is None:
            raise JobStateError(f"Backup job {job_id} left processing unexpectedly")
        return job

    def _finish(self, job_id: int, updates: Dict[str, Any]) -> None:
        if self.store.update_job(job_id, updates, expected_status="processing") is None:
            logger.warning("Backup job %s was no longer processing; final state not recorded", job_id)
