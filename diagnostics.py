#!/usr/bin/env python3
"""
Typed diagnostics for the feed synchronization engine.

Every skip or fallback point emits a ``Diagnostic`` instead of a formatted log
line. The sink forwards each one to the module logger at the matching level
and keeps the ones at or above its minimum severity so a run can report them.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from logging import DEBUG, ERROR, INFO, WARNING
from typing import List, Optional

from config import get_logger

logger = get_logger("diagnostics")


class Severity(IntEnum):
    """Ordered severity levels; values match the stdlib logging levels."""

    DEBUG = DEBUG
    INFO = INFO
    WARNING = WARNING
    ERROR = ERROR

    @classmethod
    def parse(cls, value: Optional[str], default: Optional["Severity"] = None) -> "Severity":
        """Parse a level name such as ``"info"``; unknown names fall back to ``default``."""
        if default is None:
            default = cls.WARNING
        if not value:
            return default
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            return default


class DiagnosticKind(str, Enum):
    MISSING_URL = "missing_url"
    FETCH_FAILED = "fetch_failed"
    FEED_EMPTY = "feed_empty"
    MISSING_IDENTITY = "missing_identity"
    MISSING_TITLE = "missing_title"
    INVALID_THUMBNAIL = "invalid_thumbnail"
    STORE_FAILED = "store_failed"
    TAGS_FAILED = "tags_failed"
    IMAGE_FAILED = "image_failed"
    PRUNE_FAILED = "prune_failed"
    FEED_FAILED = "feed_failed"
    DUPLICATE_RECORD = "duplicate_record"


@dataclass(frozen=True)
class Diagnostic:
    severity: Severity
    kind: DiagnosticKind
    message: str
    feed_url: Optional[str] = None
    item_id: Optional[str] = None
    detail: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def format(self) -> str:
        parts = [f"[{self.kind.value}] {self.message}"]
        if self.feed_url:
            parts.append(f"feed={self.feed_url}")
        if self.item_id:
            parts.append(f"item={self.item_id}")
        if self.detail:
            parts.append(f"detail={self.detail}")
        return " ".join(parts)


class DiagnosticSink:
    """Collects diagnostics for one run and mirrors them to the logger."""

    def __init__(self, min_severity: Severity = Severity.WARNING):
        self.min_severity = min_severity
        self.records: List[Diagnostic] = []

    def emit(
        self,
        severity: Severity,
        kind: DiagnosticKind,
        message: str,
        *,
        feed_url: Optional[str] = None,
        item_id: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> Diagnostic:
        diagnostic = Diagnostic(
            severity=severity,
            kind=kind,
            message=message,
            feed_url=feed_url,
            item_id=item_id,
            detail=detail,
        )
        logger.log(int(severity), diagnostic.format())
        if severity >= self.min_severity:
            self.records.append(diagnostic)
        return diagnostic

    def of_kind(self, kind: DiagnosticKind) -> List[Diagnostic]:
        return [d for d in self.records if d.kind == kind]
