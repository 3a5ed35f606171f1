"""Identity resolution from bearer session tokens."""

import secrets
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from ..storage.database import session_scope
from ..storage.models import UserSessionModel
from .exceptions import AuthenticationError, StorageError
from .logging import get_logger

logger = get_logger(__name__)


class IdentityResolver:
    """Resolves session tokens to user ids."""

    def create_session(self, user_id: str, ttl: Optional[timedelta] = None) -> str:
        """Issue a new token for ``user_id``."""
        token = secrets.token_urlsafe(32)
        now = datetime.utcnow()
        try:
            with session_scope() as db:
                db.add(UserSessionModel(
                    token=token,
                    user_id=user_id,
                    created_at=now,
                    expires_at=now + ttl if ttl else None,
                ))
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to create session: {str(e)}", operation="create_session")
        logger.info(f"Created session for user {user_id}")
        return token

    def resolve(self, token: Optional[str]) -> Optional[str]:
        """User id for ``token``, or None if it is unknown or expired."""
        if not token:
            return None
        try:
            with session_scope() as db:
                model = db.get(UserSessionModel, token)
                if model is None:
                    return None
                if model.expires_at is not None and model.expires_at <= datetime.utcnow():
                    return None
                return model.user_id
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to resolve session: {str(e)}", operation="resolve")

    def require_user(self, authorization: Optional[str]) -> str:
        """Parse an ``Authorization: Bearer <token>`` header and return the user id.

        Raises:
            AuthenticationError: If the header is missing or the token is not valid
        """
        if not authorization:
            raise AuthenticationError()
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise AuthenticationError()
        user_id = self.resolve(token.strip())
        if user_id is None:
            raise AuthenticationError()
        return user_id

    def revoke(self, token: str) -> bool:
        try:
            with session_scope() as db:
                model = db.get(UserSessionModel, token)
                if model is None:
                    return False
                db.delete(model)
                return True
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to revoke session: {str(e)}", operation="revoke")
