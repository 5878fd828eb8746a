from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Optional, TypeVar

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from core.database import KeyedLocks
from core.errors import NotFound
from models.tables import Script

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ScriptView(BaseModel):
    id: str
    user_id: str
    topic: str
    model: Optional[str] = None
    status: str
    script_text: Optional[str] = None
    error: Optional[str] = None
    audio_files: list[dict[str, Any]] = Field(default_factory=list)
    media: list[dict[str, Any]] = Field(default_factory=list)
    applied_dispatches: list[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


def _view(script: Script) -> ScriptView:
    return ScriptView(
        id=script.id,
        user_id=script.user_id,
        topic=script.topic,
        model=script.model,
        status=script.status,
        script_text=script.script_text,
        error=script.error,
        audio_files=list(script.audio_files or []),
        media=list(script.media or []),
        applied_dispatches=list(script.applied_dispatches or []),
        created_at=script.created_at,
        updated_at=script.updated_at,
    )


class ScriptStore:
    """Scripts are the owners of every billable job and its result collections."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory
        self._locks = KeyedLocks()

    def create(
        self,
        user_id: str,
        topic: str,
        model: Optional[str] = None,
        status: str = "pending",
        script_id: Optional[str] = None,
    ) -> ScriptView:
        with self._session_factory.begin() as session:
            script = Script(
                id=script_id or str(uuid.uuid4()),
                user_id=user_id,
                topic=topic,
                model=model,
                status=status,
                audio_files=[],
                media=[],
                applied_dispatches=[],
            )
            session.add(script)
            session.flush()
            logger.info("created script %s for %s", script.id, user_id)
            return _view(script)

    def get(self, script_id: str) -> Optional[ScriptView]:
        with self._session_factory() as session:
            script = session.get(Script, script_id)
            return _view(script) if script else None

    def get_owned(self, script_id: str, user_id: str) -> ScriptView:
        script = self.get(script_id)
        if script is None or script.user_id != user_id:
            raise NotFound("Script not found")
        return script

    def update(self, script_id: str, **updates: Any) -> ScriptView:
        def _apply(script: Script) -> None:
            for name, value in updates.items():
                setattr(script, name, value)

        return self.mutate(script_id, _apply)[0]

    def mutate(self, script_id: str, fn: Callable[[Script], T]) -> tuple[ScriptView, T]:
        """Read-merge-write on one script, serialized per script."""
        with self._locks.hold(script_id):
            with self._session_factory.begin() as session:
                script = session.execute(
                    select(Script).where(Script.id == script_id).with_for_update()
                ).scalar_one_or_none()
                if script is None:
                    raise NotFound("Script not found")
                result = fn(script)
                session.flush()
                return _view(script), result
