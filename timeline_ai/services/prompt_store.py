"""
Prompt Version Store - Versioned prompt templates per pipeline step.

Every update bumps the version and the updated_at timestamp; latest() follows
updated_at, not insertion order.
"""

from collections.abc import Callable
from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from timeline_ai.db.models import PromptTemplateRecord, utc_now
from timeline_ai.models.api import PromptStep
from timeline_ai.models.domain import StoredPromptTemplate

logger = get_logger(__name__)


class PromptVersionStore:
    """SQL-backed store of prompt templates."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.clock = clock

    @staticmethod
    def _to_domain(record: PromptTemplateRecord) -> StoredPromptTemplate:
        return StoredPromptTemplate(
            id=record.id,
            step=record.step,
            system_prompt=record.system_prompt,
            user_prompt=record.user_prompt,
            version=record.version,
            created_at=record.created_at,
            updated_at=record.updated_at,
            metadata=dict(record.template_metadata or {}),
        )

    async def save(
        self,
        step: PromptStep,
        system_prompt: str | None = None,
        user_prompt: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Store a new template at version 1 and return its id."""
        now = self.clock()
        template_id = f"{step.value}-{uuid4().hex}"
        async with self.session_factory() as session:
            session.add(
                PromptTemplateRecord(
                    id=template_id,
                    step=step,
                    system_prompt=system_prompt,
                    user_prompt=user_prompt,
                    version=1,
                    template_metadata=dict(metadata or {}),
                    created_at=now,
                    updated_at=now,
                )
            )
            await session.commit()

        logger.info("prompt_template_saved", template_id=template_id, step=step.value)
        return template_id

    async def get(self, template_id: str) -> StoredPromptTemplate | None:
        """Fetch one template by id."""
        async with self.session_factory() as session:
            record = await session.get(PromptTemplateRecord, template_id)
            return self._to_domain(record) if record else None

    async def latest(self, step: PromptStep) -> StoredPromptTemplate | None:
        """Most recently updated template for a step (ties go to the higher version)."""
        stmt = (
            select(PromptTemplateRecord)
            .where(PromptTemplateRecord.step == step)
            .order_by(PromptTemplateRecord.updated_at.desc(), PromptTemplateRecord.version.desc())
            .limit(1)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            record = result.scalar_one_or_none()
            return self._to_domain(record) if record else None

    async def update(
        self,
        template_id: str,
        system_prompt: str | None = None,
        user_prompt: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> StoredPromptTemplate | None:
        """
        Merge-patch a template.

        Fields left as None keep their stored value; metadata is merged key by
        key. Returns None when the template does not exist.
        """
        async with self.session_factory() as session:
            record = await session.get(PromptTemplateRecord, template_id)
            if record is None:
                return None

            if system_prompt is not None:
                record.system_prompt = system_prompt
            if user_prompt is not None:
                record.user_prompt = user_prompt
            if metadata is not None:
                # New dict so the JSON column change is detected
                record.template_metadata = {**(record.template_metadata or {}), **metadata}
            record.version = record.version + 1
            record.updated_at = self.clock()

            await session.commit()
            await session.refresh(record)
            updated = self._to_domain(record)

        logger.info(
            "prompt_template_updated", template_id=template_id, version=updated.version
        )
        return updated

    async def list(self, step: PromptStep | None = None) -> list[StoredPromptTemplate]:
        """All templates, newest update first, optionally for one step."""
        stmt = select(PromptTemplateRecord).order_by(
            PromptTemplateRecord.updated_at.desc(), PromptTemplateRecord.version.desc()
        )
        if step is not None:
            stmt = stmt.where(PromptTemplateRecord.step == step)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [self._to_domain(record) for record in result.scalars().all()]

    async def delete(self, template_id: str) -> bool:
        """Delete a template. Returns False when it did not exist."""
        async with self.session_factory() as session:
            record = await session.get(PromptTemplateRecord, template_id)
            if record is None:
                return False
            await session.delete(record)
            await session.commit()

        logger.info("prompt_template_deleted", template_id=template_id)
        return True
