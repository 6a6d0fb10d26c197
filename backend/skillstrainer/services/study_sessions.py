from __future__ import annotations

import uuid
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from skillstrainer.models.study_session import Material, MaterialStatus, StudySession


@dataclass(frozen=True)
class SessionOwner:
    owner_id: uuid.UUID
    subject: str
    goal: str


def get_session_owner(db: Session, session_id: uuid.UUID) -> SessionOwner | None:
    s = db.scalar(select(StudySession).where(StudySession.id == session_id))
    if s is None:
        return None
    return SessionOwner(owner_id=s.user_id, subject=s.subject, goal=s.goal or "")


def list_ready_material_texts(db: Session, session_id: uuid.UUID) -> list[str]:
    rows = db.scalars(
        select(Material.extracted_text)
        .where(Material.session_id == session_id)
        .where(Material.status == MaterialStatus.ready)
        .order_by(Material.created_at.asc(), Material.id.asc())
    ).all()
    return [t for t in rows if (t or "").strip()]
