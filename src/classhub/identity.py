"""Identity store: login identities, credentials and session tokens.

The rest of the application treats an identity as an opaque id. Credentials
never leave this module and tokens never carry a role; roles are resolved
from the role grant table at every read site.
"""

import logging
from datetime import datetime, timedelta

import bcrypt
import jwt
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .config import settings
from .database import SessionLocal
from .errors import ConflictError, DependencyFailure, Unauthorized
from .models.user import Identity

logger = logging.getLogger(__name__)


def login_for(username: str) -> str:
    """Derive the login handle for a username."""
    return f"{username.strip().lower()}@{settings.login_domain}"


def hash_password(password: str) -> str:
    # bcrypt only looks at the first 72 bytes
    password_bytes = password.encode("utf-8")[:72]
    return bcrypt.hashpw(password_bytes, bcrypt.gensalt(rounds=settings.bcrypt_rounds)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8")[:72], password_hash.encode("utf-8"))
    except ValueError:
        logger.warning("malformed password hash")
        return False


def create_identity(login: str, password: str) -> str:
    """Create a login identity and return its id.

    Raises ``ConflictError`` when the login handle is already registered.
    """
    session: Session = SessionLocal()
    try:
        identity = Identity(login=login, password_hash=hash_password(password))
        session.add(identity)
        session.commit()
        logger.info("created identity id=%s login=%s", identity.id, login)
        return identity.id
    except IntegrityError as exc:
        session.rollback()
        raise ConflictError(f"Login {login} is already registered") from exc
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("identity store error creating %s", login)
        raise DependencyFailure("Identity store unavailable") from exc
    finally:
        session.close()


def delete_identity(identity_id: str) -> None:
    """Delete an identity; deleting an unknown id is a no-op."""
    session: Session = SessionLocal()
    try:
        deleted = session.query(Identity).filter(Identity.id == identity_id).delete()
        session.commit()
        logger.info("deleted identity id=%s rows=%s", identity_id, deleted)
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("identity store error deleting %s", identity_id)
        raise DependencyFailure("Identity store unavailable") from exc
    finally:
        session.close()


def identity_exists(identity_id: str) -> bool:
    session: Session = SessionLocal()
    try:
        return session.get(Identity, identity_id) is not None
    except SQLAlchemyError as exc:
        raise DependencyFailure("Identity store unavailable") from exc
    finally:
        session.close()


def authenticate(login: str, password: str) -> str:
    """Return the identity id for valid credentials."""
    session: Session = SessionLocal()
    try:
        identity = session.query(Identity).filter(Identity.login == login).first()
    except SQLAlchemyError as exc:
        raise DependencyFailure("Identity store unavailable") from exc
    finally:
        session.close()
    if identity is None or not verify_password(password, identity.password_hash):
        raise Unauthorized("Invalid credentials")
    return identity.id


def _create_token(identity_id: str, expires: timedelta, token_type: str) -> str:
    payload = {"sub": identity_id, "exp": datetime.utcnow() + expires, "type": token_type}
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def create_access_token(identity_id: str) -> str:
    return _create_token(identity_id, timedelta(minutes=settings.access_token_expire_minutes), "access")


def create_refresh_token(identity_id: str) -> str:
    return _create_token(identity_id, timedelta(minutes=settings.refresh_token_expire_minutes), "refresh")


def decode_token(token: str, expected_type: str = "access") -> str:
    """Validate a token and return the identity id it was issued to."""
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError as exc:
        raise Unauthorized("Invalid token") from exc
    identity_id = payload.get("sub")
    if identity_id is None or payload.get("type") != expected_type:
        raise Unauthorized("Invalid token")
    return identity_id
