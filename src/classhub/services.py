"""Service layer over the relational store: profiles, roles and messages."""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import case
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .database import Message, Profile, RoleGrant, SessionLocal
from .errors import ConflictError, DependencyFailure, ValidationError

logger = logging.getLogger(__name__)

ROLE_ADMIN = "admin"
ROLE_STUDENT = "student"
ROLES = (ROLE_ADMIN, ROLE_STUDENT)


def _handle_service_error(session: Session, exc: Exception) -> None:
    """Rollback transaction and translate store errors for the caller."""
    session.rollback()
    if isinstance(exc, IntegrityError):
        raise ConflictError("Record already exists") from exc
    if isinstance(exc, SQLAlchemyError):
        logger.exception("service layer error", exc_info=exc)
        raise DependencyFailure("Database error") from exc
    raise exc


def username_taken(username: str) -> bool:
    session: Session = SessionLocal()
    try:
        return (
            session.query(Profile.id).filter(Profile.username == username).first()
            is not None
        )
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def insert_profile(user_id: str, username: str, display_name: Optional[str] = None) -> int:
    """Insert the profile row for a freshly created identity.

    A username collision raises ``ConflictError``; the row is never
    overwritten.
    """
    session: Session = SessionLocal()
    try:
        profile = Profile(
            user_id=user_id,
            username=username,
            display_name=display_name or None,
            is_online=False,
            last_seen=datetime.utcnow(),
        )
        session.add(profile)
        session.commit()
        logger.info("created profile user=%s username=%s", user_id, username)
        return profile.id
    except IntegrityError as exc:
        session.rollback()
        raise ConflictError(f"Username {username} is already taken") from exc
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def delete_profile(user_id: str) -> int:
    """Remove the profile owned by ``user_id``; returns the rows deleted."""
    session: Session = SessionLocal()
    try:
        deleted = session.query(Profile).filter(Profile.user_id == user_id).delete()
        session.commit()
        if deleted:
            logger.info("deleted profile user=%s", user_id)
        return deleted
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def insert_role_grant(user_id: str, role: str) -> None:
    if role not in ROLES:
        raise ValidationError(f"Unknown role {role}")
    session: Session = SessionLocal()
    try:
        session.add(RoleGrant(user_id=user_id, role=role))
        session.commit()
        logger.info("granted role=%s user=%s", role, user_id)
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def resolve_role(user_id: str) -> str:
    """Return the effective role of a user, ``student`` when no grant exists."""
    session: Session = SessionLocal()
    try:
        grant = session.query(RoleGrant).filter(RoleGrant.user_id == user_id).first()
        return grant.role if grant and grant.role else ROLE_STUDENT
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def admin_exists() -> bool:
    session: Session = SessionLocal()
    try:
        return (
            session.query(RoleGrant.id).filter(RoleGrant.role == ROLE_ADMIN).first()
            is not None
        )
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def get_profile(user_id: str) -> Optional[Profile]:
    session: Session = SessionLocal()
    try:
        return session.query(Profile).filter(Profile.user_id == user_id).first()
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def set_presence(user_id: str, is_online: bool, seen_at: datetime) -> None:
    """Persist a presence transition for a user's profile."""
    session: Session = SessionLocal()
    try:
        updated = (
            session.query(Profile)
            .filter(Profile.user_id == user_id)
            .update({"is_online": is_online, "last_seen": seen_at})
        )
        session.commit()
        if not updated:
            logger.warning("presence update for user=%s matched no profile", user_id)
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def reset_presence(live_user_ids: Iterable[str], seen_at: datetime) -> int:
    """Mark every stored-online profile without a live connection offline.

    Profiles of users in ``live_user_ids`` are marked online. Returns the
    number of profiles flipped to offline.
    """
    live = list(live_user_ids)
    session: Session = SessionLocal()
    try:
        stale = session.query(Profile).filter(Profile.is_online.is_(True))
        if live:
            stale = stale.filter(Profile.user_id.notin_(live))
        flipped = stale.update(
            {"is_online": False, "last_seen": seen_at}, synchronize_session=False
        )
        if live:
            session.query(Profile).filter(
                Profile.user_id.in_(live), Profile.is_online.is_(False)
            ).update({"is_online": True, "last_seen": seen_at}, synchronize_session=False)
        session.commit()
        return flipped
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def insert_message(user_id: str, content: str) -> Message:
    """Persist a chat message; ``created_at`` is assigned here."""
    session: Session = SessionLocal()
    try:
        message = Message(user_id=user_id, content=content, created_at=datetime.utcnow())
        session.add(message)
        session.commit()
        session.refresh(message)
        session.expunge(message)
        logger.info("stored message id=%s user=%s", message.id, user_id)
        return message
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def _message_rows(session: Session, rows) -> List[Dict[str, object]]:
    user_ids = {row.user_id for row in rows}
    profiles = {}
    if user_ids:
        profiles = {
            p.user_id: p
            for p in session.query(Profile).filter(Profile.user_id.in_(user_ids)).all()
        }
    items = []
    for row in rows:
        profile = profiles.get(row.user_id)
        items.append(
            {
                "id": row.id,
                "user_id": row.user_id,
                "content": row.content,
                "created_at": row.created_at,
                "username": profile.username if profile else None,
                "display_name": profile.display_name if profile else None,
            }
        )
    return items


def recent_messages(limit: int = 100) -> List[Dict[str, object]]:
    """Return the most recent ``limit`` messages in ascending order."""
    session: Session = SessionLocal()
    try:
        rows = (
            session.query(Message)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(limit)
            .all()
        )
        rows.reverse()
        return _message_rows(session, rows)
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def list_presence() -> List[Dict[str, object]]:
    """Point-in-time presence read, online users first then by username."""
    session: Session = SessionLocal()
    try:
        rows = (
            session.query(Profile)
            .order_by(case((Profile.is_online.is_(True), 0), else_=1), Profile.username)
            .all()
        )
        return [
            {
                "user_id": p.user_id,
                "username": p.username,
                "display_name": p.display_name,
                "is_online": p.is_online,
                "last_seen": p.last_seen,
            }
            for p in rows
        ]
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()
