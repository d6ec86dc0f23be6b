"""
Translation service.

Request surface of the engine: stores posts, turns translate and update
requests into orchestrated jobs, and writes translated posts back.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from translate_jobs.database import Database, Post, TranslationRelationship
from translate_jobs.errors import ErrorCode, TranslationFailedError
from translate_jobs.jobs import TranslateRequest, UpdateRequest, normalize_language
from translate_jobs.orchestrator import JobOrchestrator, JobResult, WorkResult
from translate_jobs.state import TranslationStateMachine
from translate_jobs.translator import PostTranslator, TranslationOutcome

logger = logging.getLogger(__name__)

NO_TRANSLATOR_MESSAGE = "No translation provider configured (set OPENROUTER_API_KEY)"


def _merge_usage(*outcomes: TranslationOutcome) -> dict[str, Any]:
    """Sum token counts over several translation calls."""
    merged: dict[str, Any] = {"input_tokens": 0, "output_tokens": 0, "calls": 0}
    for outcome in outcomes:
        if not outcome.usage:
            continue
        merged["input_tokens"] += outcome.usage.get("input_tokens", 0)
        merged["output_tokens"] += outcome.usage.get("output_tokens", 0)
        merged["calls"] += 1
        if outcome.usage.get("model"):
            merged["model"] = outcome.usage["model"]
    return merged


class TranslationService:
    """Posts plus translate/update jobs run through the orchestrator."""

    def __init__(
        self,
        db: Database,
        orchestrator: JobOrchestrator,
        translator: PostTranslator | None,
        *,
        source_language: str = "en",
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.orchestrator = orchestrator
        self.translator = translator
        self.source_language = source_language
        self._clock = clock

    @property
    def state(self) -> TranslationStateMachine:
        return self.orchestrator.state

    # ==================== Posts ====================

    def add_post(self, title: str, content: str, language: str | None = None) -> int:
        """Store a new post and return its ID."""
        now = self._clock()
        return self.db.add_post(
            Post(
                title=title,
                content=content,
                language=normalize_language(language or self.source_language),
                created_at=now,
                updated_at=now,
            )
        )

    def get_post(self, post_id: int) -> Post | None:
        return self.db.get_post(post_id)

    def update_post(
        self,
        post_id: int,
        title: str | None = None,
        content: str | None = None,
    ) -> Post:
        """
        Edit a post.

        Completed translations of the post become outdated, so they are
        picked up by the next update job.

        Raises:
            ValueError: If the post does not exist.
        """
        post = self.db.get_post(post_id)
        if post is None:
            raise ValueError(f"Post not found: {post_id}")

        if title is not None:
            post.title = title
        if content is not None:
            post.content = content
        post.updated_at = self._clock()
        self.db.update_post(post)

        self.state.mark_outdated(post_id)
        return post

    def get_translations(self, source_id: int) -> list[TranslationRelationship]:
        """All translation relationships of a source post."""
        return self.state.list_relationships(source_id=source_id)

    # ==================== Jobs ====================

    async def translate_post(self, source_id: int, target_language: str) -> JobResult:
        """
        Translate a source post into target_language.

        Creates the translated post on first success; a retry after an
        error overwrites the post created earlier.
        """
        try:
            request = TranslateRequest(source_id, normalize_language(target_language))
        except ValueError as e:
            return self._rejected(f"translate:{source_id}:{target_language}", str(e))
        key = request.job_key()

        source = self.db.get_post(source_id)
        if source is None:
            return self._rejected(str(key), f"Source post not found: {source_id}")
        if source.language == request.target_language:
            return self._rejected(
                str(key),
                f"Post {source_id} is already written in {request.target_language}",
            )
        if self.translator is None:
            return self._rejected(str(key), NO_TRANSLATOR_MESSAGE)

        async def work() -> WorkResult:
            title, content, usage = await self._translate_post_fields(
                source, request.target_language
            )
            rel = self.state.get(source_id, request.target_language)
            target = self.db.get_post(rel.target_id) if rel and rel.target_id else None
            if target is None:
                target_id = self.add_post(title, content, request.target_language)
            else:
                target_id = self._overwrite(target, title, content)
            return WorkResult(target_id=target_id, data={"title": title}, usage=usage)

        return await self.orchestrator.run(key, work)

    async def update_translation(self, source_id: int, target_id: int) -> JobResult:
        """Re-translate an outdated translation into its existing post."""
        request = UpdateRequest(source_id, target_id)
        key = request.job_key()

        source = self.db.get_post(source_id)
        if source is None:
            return self._rejected(str(key), f"Source post not found: {source_id}")
        if self.db.get_post(target_id) is None:
            return self._rejected(str(key), f"Translated post not found: {target_id}")
        if self.translator is None:
            return self._rejected(str(key), NO_TRANSLATOR_MESSAGE)

        async def work() -> WorkResult:
            rel = self.state.get_by_target(target_id)
            title, content, usage = await self._translate_post_fields(source, rel.language)
            target = self.db.get_post(target_id)
            self._overwrite(target, title, content)
            return WorkResult(target_id=target_id, data={"title": title}, usage=usage)

        return await self.orchestrator.run(key, work)

    async def _translate_post_fields(
        self, source: Post, target_language: str
    ) -> tuple[str, str, dict[str, Any]]:
        """Translate title and content; raise if either call fails."""
        title = await self.translator.translate(source.title, source.language, target_language)
        if not title.success:
            raise TranslationFailedError(f"Title translation failed: {title.error}")

        content = await self.translator.translate(
            source.content, source.language, target_language
        )
        if not content.success:
            raise TranslationFailedError(f"Content translation failed: {content.error}")

        return title.translated_content, content.translated_content, _merge_usage(title, content)

    def _overwrite(self, target: Post, title: str, content: str) -> int:
        target.title = title
        target.content = content
        target.updated_at = self._clock()
        self.db.update_post(target)
        return target.id

    def _rejected(self, job_key: str, message: str) -> JobResult:
        logger.warning("Rejected %s: %s", job_key, message)
        return JobResult(
            success=False,
            job_key=job_key,
            error_code=ErrorCode.WORK_FAILED,
            message=message,
        )
