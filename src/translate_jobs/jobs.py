"""
Job keys and job requests.

A job key names one unit of work and scopes both deduplication locking and
the relationship it may transition:

    translate:{source_id}:{language}
    update:{source_id}:{target_id}
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any


class JobKind(str, Enum):
    """Kinds of translation jobs."""

    TRANSLATE = "translate"
    UPDATE = "update"


_LANGUAGE_RE = re.compile(r"^[a-z]{2,3}([_-][A-Za-z0-9]{2,8})?$")


def normalize_language(code: str) -> str:
    """Validate a language code and return it in canonical form."""
    code = code.strip()
    if not _LANGUAGE_RE.match(code):
        raise ValueError(f"Invalid language code: {code!r}")
    return code


@dataclass(frozen=True)
class JobKey:
    """Parsed job key."""

    kind: JobKind
    source_id: int
    language: str | None = None
    target_id: int | None = None

    def __str__(self) -> str:
        if self.kind == JobKind.TRANSLATE:
            return f"translate:{self.source_id}:{self.language}"
        return f"update:{self.source_id}:{self.target_id}"

    @classmethod
    def translate(cls, source_id: int, language: str) -> JobKey:
        return cls(JobKind.TRANSLATE, int(source_id), language=normalize_language(language))

    @classmethod
    def update(cls, source_id: int, target_id: int) -> JobKey:
        return cls(JobKind.UPDATE, int(source_id), target_id=int(target_id))

    @classmethod
    def parse(cls, key: str | JobKey) -> JobKey:
        """
        Parse a job key string.

        Raises:
            ValueError: If the key is not a translate or update key.
        """
        if isinstance(key, JobKey):
            return key
        parts = key.split(":")
        if len(parts) != 3:
            raise ValueError(f"Malformed job key: {key!r}")
        kind, source, third = parts
        try:
            if kind == JobKind.TRANSLATE.value:
                return cls.translate(int(source), third)
            if kind == JobKind.UPDATE.value:
                return cls.update(int(source), int(third))
        except ValueError as e:
            raise ValueError(f"Malformed job key: {key!r} ({e})") from None
        raise ValueError(f"Unknown job kind in key: {key!r}")


@dataclass
class TranslateRequest:
    """Translate a source post into a new language."""

    source_id: int
    target_language: str

    def job_key(self) -> JobKey:
        return JobKey.translate(self.source_id, self.target_language)

    @classmethod
    def from_params(cls, params: dict[str, Any]) -> TranslateRequest:
        """Build from request parameters (`source_id`, `target_language`)."""
        return cls(
            source_id=int(params["source_id"]),
            target_language=normalize_language(str(params["target_language"])),
        )


@dataclass
class UpdateRequest:
    """Refresh an existing translation from its source post."""

    source_id: int
    target_id: int

    def job_key(self) -> JobKey:
        return JobKey.update(self.source_id, self.target_id)

    @classmethod
    def from_params(cls, params: dict[str, Any]) -> UpdateRequest:
        """Build from request parameters (`source_id`, `target_id`)."""
        return cls(source_id=int(params["source_id"]), target_id=int(params["target_id"]))
