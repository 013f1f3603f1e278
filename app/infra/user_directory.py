from __future__ import annotations

from sqlmodel import Session, select

from app.domain.models import User, UserStatus


class UserDirectory:
    """Identity store lookups; user records are owned by the identity service."""

    def get_user(self, session: Session, user_id: str) -> User | None:
        return session.get(User, user_id)

    def get_user_for_update(self, session: Session, user_id: str, *, lock: bool) -> User | None:
        statement = select(User).where(User.id == user_id)
        if lock:
            statement = statement.with_for_update()
        return session.exec(statement).first()

    def is_active(self, user: User) -> bool:
        return user.status == UserStatus.ACTIVE

    def list_user_ids(self, session: Session) -> list[str]:
        return list(session.exec(select(User.id).order_by(User.created_at)).all())
