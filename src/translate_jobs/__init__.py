"""
translate-jobs: job orchestration for AI post translation.

This package provides:
- Fixed-window admission control with an automatic emergency stop
- Durable deduplication locks with TTL recovery
- A per-language translation state machine
- A job orchestrator, batch runner and maintenance tasks on top of them
"""

__version__ = "0.1.0"

from translate_jobs.config import Settings, load_config
from translate_jobs.database import Database, Post, Status, TranslationRelationship
from translate_jobs.emergency import EmergencyStop
from translate_jobs.engine import Engine, create_engine
from translate_jobs.errors import ErrorCode, TranslateJobsError
from translate_jobs.jobs import JobKey, TranslateRequest, UpdateRequest
from translate_jobs.locks import LockManager
from translate_jobs.orchestrator import JobOrchestrator, JobResult, WorkResult
from translate_jobs.ratelimit import AdmissionController
from translate_jobs.state import TranslationStateMachine
from translate_jobs.usage import UsageRecorder

__all__ = [
    # Config
    "Settings",
    "load_config",
    # Database
    "Database",
    "Post",
    "Status",
    "TranslationRelationship",
    # Engine
    "Engine",
    "create_engine",
    "EmergencyStop",
    "AdmissionController",
    "LockManager",
    "TranslationStateMachine",
    "UsageRecorder",
    "JobOrchestrator",
    # Jobs
    "JobKey",
    "TranslateRequest",
    "UpdateRequest",
    "JobResult",
    "WorkResult",
    # Errors
    "ErrorCode",
    "TranslateJobsError",
]
