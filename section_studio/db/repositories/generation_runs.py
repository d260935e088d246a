from datetime import datetime
from typing import Optional

from sqlalchemy import func, select

from section_studio.db.enums import GenerationRunStatusEnum
from section_studio.db.models import GenerationRun
from section_studio.db.repositories.base import Repository


class GenerationRunsRepository(Repository):
    def record(
        self,
        *,
        user_id: Optional[str],
        operation_kind: str,
        model: str,
        status: GenerationRunStatusEnum,
        estimated_cost: float,
        **fields,
    ) -> GenerationRun:
        run = GenerationRun(
            user_id=user_id,
            operation_kind=operation_kind,
            model=model,
            status=status,
            estimated_cost=estimated_cost,
            **fields,
        )
        return self.save(run)

    def count_since(self, user_id: str, since: datetime) -> int:
        stmt = (
            select(func.count())
            .select_from(GenerationRun)
            .where(
                GenerationRun.user_id == user_id,
                GenerationRun.created_at >= since,
                GenerationRun.status != GenerationRunStatusEnum.failed,
            )
        )
        return int(self.session.scalar(stmt) or 0)
