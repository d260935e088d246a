from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol
from uuid import UUID

from sqlalchemy.orm import Session

from section_studio.config import Settings
from section_studio.db.enums import GenerationRunStatusEnum
from section_studio.db.repositories import GenerationRunsRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    reason: Optional[str] = None


class QuotaChecker(Protocol):
    def check_allowed(self, user_id: str, operation_kind: str, item_count: int) -> QuotaDecision:
        ...


class CredentialResolver(Protocol):
    def get_model_api_key(self, user_id: str) -> Optional[str]:
        ...


class UsageRecorder(Protocol):
    def record_generation(
        self,
        *,
        user_id: Optional[str],
        kind: str,
        model: str,
        cost: float,
        status: GenerationRunStatusEnum,
        duration_ms: Optional[int] = None,
        section_id: Optional[UUID] = None,
        error_message: Optional[str] = None,
    ) -> None:
        ...


def _month_start(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class MonthlyQuotaChecker:
    """Allows a job when this month's recorded generations plus the job's items stay within the limit."""

    def __init__(self, session_factory: Callable[[], Session], monthly_limit: Optional[int]) -> None:
        self.session_factory = session_factory
        self.monthly_limit = monthly_limit

    def check_allowed(self, user_id: str, operation_kind: str, item_count: int) -> QuotaDecision:
        if self.monthly_limit is None:
            return QuotaDecision(allowed=True)
        session = self.session_factory()
        try:
            used = GenerationRunsRepository(session).count_since(
                user_id, _month_start(datetime.now(timezone.utc))
            )
        finally:
            session.close()
        if used + item_count > self.monthly_limit:
            logger.info(
                "usage.quota_exceeded",
                extra={"userId": user_id, "operation": operation_kind, "used": used, "requested": item_count},
            )
            return QuotaDecision(
                allowed=False,
                reason=f"Monthly generation limit reached ({used}/{self.monthly_limit}); {item_count} more requested",
            )
        return QuotaDecision(allowed=True)


class SettingsCredentialResolver:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def get_model_api_key(self, user_id: str) -> Optional[str]:
        return self.settings.GEMINI_API_KEY or None


class DatabaseUsageRecorder:
    """Appends one generation_runs row per processed item."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.session_factory = session_factory

    def record_generation(
        self,
        *,
        user_id: Optional[str],
        kind: str,
        model: str,
        cost: float,
        status: GenerationRunStatusEnum,
        duration_ms: Optional[int] = None,
        section_id: Optional[UUID] = None,
        error_message: Optional[str] = None,
    ) -> None:
        session = self.session_factory()
        try:
            GenerationRunsRepository(session).record(
                user_id=user_id,
                operation_kind=kind,
                model=model,
                status=status,
                estimated_cost=cost,
                duration_ms=duration_ms,
                section_id=section_id,
                error_message=error_message[:2000] if error_message else None,
            )
        finally:
            session.close()
        logger.debug(
            "usage.recorded",
            extra={"userId": user_id, "kind": kind, "model": model, "cost": cost, "status": status.value},
        )
