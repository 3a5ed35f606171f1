"""Trigger Manager: turns inbound webhook requests into workflow executions."""

import hashlib
import hmac
import json
from typing import Any, Iterable, Mapping, Optional, Tuple, Union
from urllib.parse import parse_qsl

from ..models.core import (
    WebhookAuthConfig,
    WebhookAuthType,
    WebhookPayload,
    WebhookRegistration,
    WebhookTriggerResult,
)
from .exceptions import NexaflowError, NotFoundError
from .graph_runner import WorkflowGraphRunner
from .logging import get_logger
from .webhook_registry import WebhookRegistry
from .workflow_store import WorkflowStore

logger = get_logger(__name__)

SIGNATURE_HEADER = "x-signature-256"

HeaderInput = Union[Mapping[str, str], Iterable[Tuple[str, str]]]


def _parse_body(content_type: str, raw_body: bytes) -> Any:
    media_type = content_type.split(";", 1)[0].strip().lower()
    try:
        text = raw_body.decode("utf-8")
        if media_type == "application/json":
            return json.loads(text)
        if media_type == "application/x-www-form-urlencoded":
            return dict(parse_qsl(text, keep_blank_values=True))
        return text
    except (UnicodeDecodeError, ValueError):
        return None


def normalize_webhook_payload(
    method: str,
    headers: Optional[HeaderInput],
    query: Optional[HeaderInput],
    raw_body: Optional[bytes],
) -> WebhookPayload:
    """Build a ``WebhookPayload``: lowercase header names and parse the body by content type.

    A body that cannot be decoded or parsed becomes ``None``; this never raises.
    """
    header_items = headers.items() if isinstance(headers, Mapping) else (headers or [])
    normalized_headers = {str(k).lower(): str(v) for k, v in header_items}
    query_items = query.items() if isinstance(query, Mapping) else (query or [])
    normalized_query = {str(k): str(v) for k, v in query_items}
    raw = raw_body or b""

    return WebhookPayload(
        method=(method or "POST").upper(),
        headers=normalized_headers,
        query=normalized_query,
        body=_parse_body(normalized_headers.get("content-type", ""), raw),
        raw_body=raw,
    )


def _secrets_match(presented: str, expected: str) -> bool:
    # compare_digest only accepts ASCII str, so compare the encoded bytes
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


def verify_webhook_auth(auth: Optional[WebhookAuthConfig], payload: WebhookPayload) -> bool:
    """Check the caller's credentials against the registration's auth config."""
    if auth is None:
        return True

    if auth.type == WebhookAuthType.BEARER:
        header_name = (auth.header_name or "authorization").lower()
        return _secrets_match(payload.headers.get(header_name, ""), f"Bearer {auth.secret}")

    if auth.type == WebhookAuthType.API_KEY:
        header_name = (auth.header_name or "authorization").lower()
        return _secrets_match(payload.headers.get(header_name, ""), auth.secret)

    if auth.type == WebhookAuthType.SIGNATURE:
        expected = "sha256=" + hmac.new(auth.secret.encode("utf-8"), payload.raw_body, hashlib.sha256).hexdigest()
        return _secrets_match(payload.headers.get(SIGNATURE_HEADER, ""), expected)

    return False


class TriggerManager:
    """Dispatches webhook payloads to the workflows registered for their endpoints."""

    def __init__(
        self,
        webhook_registry: WebhookRegistry,
        graph_runner: WorkflowGraphRunner,
        workflow_store: WorkflowStore,
    ):
        self.webhook_registry = webhook_registry
        self.graph_runner = graph_runner
        self.workflow_store = workflow_store

    def register_webhook(
        self,
        endpoint: str,
        workflow_id: str,
        auth: Optional[WebhookAuthConfig] = None,
    ) -> WebhookRegistration:
        """
        Raises:
            NotFoundError: If the workflow does not exist
            ConflictError: If the endpoint belongs to another workflow
        """
        self.workflow_store.require_workflow(workflow_id)
        return self.webhook_registry.register(endpoint, workflow_id, auth)

    def handle_webhook_trigger(self, endpoint: str, payload: WebhookPayload) -> WebhookTriggerResult:
        """Start the workflow registered for ``endpoint``.

        Expected failures come back as ``success=False``; unexpected
        exceptions propagate to the caller.
        """
        registration = self.webhook_registry.lookup(endpoint)
        if registration is None:
            logger.info(f"Webhook received for unknown endpoint '{endpoint}'")
            return WebhookTriggerResult(success=False, error="unknown endpoint")

        if not verify_webhook_auth(registration.auth, payload):
            logger.warning(f"Webhook authentication failed for endpoint '{endpoint}'")
            return WebhookTriggerResult(success=False, error="webhook authentication failed")

        trigger_data = {
            "trigger": "webhook",
            "endpoint": endpoint,
            "method": payload.method,
            "headers": payload.headers,
            "query": payload.query,
            "body": payload.body,
        }

        try:
            workflow = self.workflow_store.get_workflow(registration.workflow_id)
            if workflow is None:
                raise NotFoundError(
                    f"Workflow '{registration.workflow_id}' not found",
                    resource_type="workflow",
                    resource_id=registration.workflow_id,
                )
            execution_id = self.graph_runner.execute_workflow(
                registration.workflow_id,
                trigger_data,
                workflow.owner_id,
                triggered_by="webhook",
            )
        except NexaflowError as e:
            logger.warning(f"Webhook '{endpoint}' could not start workflow: {e.message}")
            return WebhookTriggerResult(success=False, error=e.message)

        logger.info(f"Webhook '{endpoint}' started execution {execution_id}")
        return WebhookTriggerResult(success=True, execution_id=execution_id)
