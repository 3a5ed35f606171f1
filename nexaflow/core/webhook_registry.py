"""Webhook Registry: maps public endpoint names to workflows."""

from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from ..models.core import WebhookAuthConfig, WebhookRegistration
from ..storage.database import session_scope
from ..storage.models import WebhookEndpointModel
from .exceptions import ConflictError, StorageError
from .logging import get_logger

logger = get_logger(__name__)


class WebhookRegistry:
    """Database-backed endpoint registrations. Each endpoint maps to exactly one workflow."""

    def register(
        self,
        endpoint: str,
        workflow_id: str,
        auth: Optional[WebhookAuthConfig] = None,
    ) -> WebhookRegistration:
        """
        Map ``endpoint`` to ``workflow_id``. Re-registering the same pair updates its auth.

        Raises:
            ConflictError: If the endpoint already belongs to another workflow
        """
        registration = WebhookRegistration(endpoint=endpoint, workflow_id=workflow_id, auth=auth)
        auth_config = auth.model_dump(mode="json") if auth else None
        try:
            with session_scope() as db:
                model = db.get(WebhookEndpointModel, endpoint)
                if model is not None and model.workflow_id != workflow_id:
                    raise ConflictError(
                        f"Endpoint '{endpoint}' is already registered to another workflow",
                        details={"endpoint": endpoint},
                    )
                if model is None:
                    db.add(WebhookEndpointModel(
                        endpoint=endpoint,
                        workflow_id=workflow_id,
                        auth_config=auth_config,
                        is_active=True,
                        created_at=registration.created_at,
                    ))
                else:
                    model.auth_config = auth_config
                    model.is_active = True
                    registration.created_at = model.created_at or datetime.utcnow()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to register webhook: {str(e)}", operation="register", table="webhook_endpoints")

        logger.info(f"Registered webhook endpoint '{endpoint}' for workflow {workflow_id}")
        return registration

    def lookup(self, endpoint: str) -> Optional[WebhookRegistration]:
        """Return the active registration for ``endpoint``, or None."""
        try:
            with session_scope() as db:
                model = db.get(WebhookEndpointModel, endpoint)
                if model is None or not model.is_active:
                    return None
                return self._to_registration(model)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to look up webhook: {str(e)}", operation="lookup", table="webhook_endpoints")

    def deactivate(self, endpoint: str) -> bool:
        try:
            with session_scope() as db:
                model = db.get(WebhookEndpointModel, endpoint)
                if model is None:
                    return False
                model.is_active = False
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to deactivate webhook: {str(e)}", operation="deactivate")
        logger.info(f"Deactivated webhook endpoint '{endpoint}'")
        return True

    @staticmethod
    def _to_registration(model: WebhookEndpointModel) -> WebhookRegistration:
        return WebhookRegistration(
            endpoint=model.endpoint,
            workflow_id=model.workflow_id,
            auth=WebhookAuthConfig(**model.auth_config) if model.auth_config else None,
            is_active=bool(model.is_active),
            created_at=model.created_at or datetime.utcnow(),
        )
