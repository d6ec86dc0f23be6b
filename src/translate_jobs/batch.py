"""
Batch translation.

Runs translate jobs for every (post, language) pair one after another,
pacing them so the admission controller's minimum interval is respected.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from translate_jobs.errors import ErrorCode
from translate_jobs.orchestrator import JobResult
from translate_jobs.service import TranslationService

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

# Rejections that will not clear up within this batch
_STOP_CODES = {ErrorCode.HALTED, ErrorCode.RATE_LIMITED}


@dataclass
class BatchResult:
    """Summary of a batch run."""

    batch_id: str
    total_jobs: int
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    results: list[dict[str, Any]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    progress: float = 0.0
    status: str = "processing"

    @property
    def processed(self) -> int:
        return self.completed + self.failed + self.skipped


class BatchTranslator:
    """Sequential batch runner on top of the translation service."""

    def __init__(
        self,
        service: TranslationService,
        *,
        delay_seconds: float = 0.5,
        max_too_soon_retries: int = 2,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.service = service
        self.delay_seconds = delay_seconds
        self.max_too_soon_retries = max_too_soon_retries
        self._sleep = sleep

    async def process_batch(
        self,
        post_ids: list[int],
        languages: list[str],
        on_progress: ProgressCallback | None = None,
    ) -> BatchResult:
        """
        Translate every post into every language.

        A halted or rate-limited rejection stops the batch; the jobs not yet
        run are counted as skipped and the batch status becomes "stopped".
        """
        jobs = [(post_id, lang) for post_id in post_ids for lang in languages]
        batch = BatchResult(batch_id=uuid.uuid4().hex, total_jobs=len(jobs))
        logger.info("Batch %s started: %d job(s)", batch.batch_id, batch.total_jobs)

        for index, (post_id, lang) in enumerate(jobs):
            if index > 0 and self.delay_seconds > 0:
                await self._sleep(self.delay_seconds)

            result = await self._run_job(post_id, lang)
            batch.results.append({"post_id": post_id, "language": lang, **result.to_dict()})

            if result.success:
                batch.completed += 1
            elif result.error_code == ErrorCode.INVALID_TRANSITION:
                # Already translated or in a state that needs an update job
                batch.skipped += 1
            else:
                batch.failed += 1
                batch.errors.append(f"Post {post_id} ({lang}): {result.message}")

            self._report(batch, on_progress)

            if result.error_code in _STOP_CODES:
                remaining = batch.total_jobs - index - 1
                batch.skipped += remaining
                batch.status = "stopped"
                logger.warning(
                    "Batch %s stopped (%s); %d job(s) skipped",
                    batch.batch_id,
                    result.error_code.value,
                    remaining,
                )
                self._report(batch, on_progress)
                return batch

        batch.status = "completed"
        batch.progress = 100.0
        logger.info(
            "Batch %s finished: %d completed, %d failed, %d skipped",
            batch.batch_id,
            batch.completed,
            batch.failed,
            batch.skipped,
        )
        return batch

    async def _run_job(self, post_id: int, lang: str) -> JobResult:
        """Run one job, waiting out too_soon rejections a bounded number of times."""
        result = await self.service.translate_post(post_id, lang)
        attempts = 0
        while result.error_code == ErrorCode.TOO_SOON and attempts < self.max_too_soon_retries:
            attempts += 1
            await self._sleep(result.retry_after or self.delay_seconds)
            result = await self.service.translate_post(post_id, lang)
        return result

    def _report(self, batch: BatchResult, on_progress: ProgressCallback | None) -> None:
        if batch.total_jobs:
            batch.progress = round(batch.processed / batch.total_jobs * 100, 2)
        if on_progress is not None:
            on_progress(batch.processed, batch.total_jobs)
