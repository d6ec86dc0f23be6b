"""
Engine wiring.

Builds every component from Settings and shares one database, one clock
and one lock manager between them.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from translate_jobs.batch import BatchTranslator
from translate_jobs.config import Settings
from translate_jobs.database import Database
from translate_jobs.emergency import EmergencyStop
from translate_jobs.llm import LLMProvider, create_llm_provider
from translate_jobs.locks import LockManager
from translate_jobs.maintenance import Maintenance
from translate_jobs.orchestrator import JobOrchestrator
from translate_jobs.ratelimit import AdmissionController
from translate_jobs.service import TranslationService
from translate_jobs.state import TranslationStateMachine
from translate_jobs.translator import PostTranslator
from translate_jobs.usage import UsageRecorder

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    """All engine components, wired together."""

    settings: Settings
    db: Database
    emergency: EmergencyStop
    admission: AdmissionController
    locks: LockManager
    state: TranslationStateMachine
    usage: UsageRecorder
    orchestrator: JobOrchestrator
    translator: PostTranslator | None
    service: TranslationService
    batch: BatchTranslator
    maintenance: Maintenance

    def close(self) -> None:
        self.db.close()


def create_engine(
    settings: Settings,
    *,
    db: Database | None = None,
    provider: LLMProvider | None = None,
    clock: Callable[[], float] = time.time,
) -> Engine:
    """
    Build an engine from settings.

    Args:
        settings: Validated settings.
        db: Database to use instead of settings.paths.database_path.
        provider: LLM provider to use instead of the configured one. When
            omitted and no API key is configured, the engine has no
            translator and translation jobs are refused.
        clock: Time source shared by every component.
    """
    db = db or Database(settings.paths.database_path)

    emergency = EmergencyStop(db, clock=clock)
    admission = AdmissionController(db, emergency, settings.limits, clock=clock)
    locks = LockManager(
        db,
        ttl=settings.locks.ttl_seconds,
        sweep_on_acquire=settings.locks.sweep_on_acquire,
        clock=clock,
    )
    state = TranslationStateMachine(db, locks, clock=clock)
    usage = UsageRecorder(
        db,
        max_entries=settings.usage.max_entries,
        retention_days=settings.usage.retention_days,
        clock=clock,
    )
    orchestrator = JobOrchestrator(emergency, admission, locks, state, usage)

    translation = settings.translation
    if provider is None and translation.openrouter_api_key:
        provider = create_llm_provider(
            translation.provider,
            api_key=translation.openrouter_api_key,
            model=translation.default_model,
            timeout=translation.timeout_seconds,
            max_retries=translation.max_retries,
        )
    translator = None
    if provider is not None:
        translator = PostTranslator(
            provider,
            temperature=translation.temperature,
            max_tokens=translation.max_tokens,
        )
    else:
        logger.debug("No translation provider configured")

    service = TranslationService(
        db,
        orchestrator,
        translator,
        source_language=translation.source_language,
        clock=clock,
    )
    batch = BatchTranslator(
        service,
        delay_seconds=settings.batch.delay_seconds,
        max_too_soon_retries=settings.batch.max_too_soon_retries,
    )
    maintenance = Maintenance(locks, state, admission, emergency, usage)

    return Engine(
        settings=settings,
        db=db,
        emergency=emergency,
        admission=admission,
        locks=locks,
        state=state,
        usage=usage,
        orchestrator=orchestrator,
        translator=translator,
        service=service,
        batch=batch,
        maintenance=maintenance,
    )
