"""Tests for webhook payload handling and the trigger manager."""

import hashlib
import hmac
from unittest.mock import patch

import pytest

from nexaflow.core.exceptions import ConflictError, NotFoundError
from nexaflow.core.trigger_manager import (
    SIGNATURE_HEADER,
    normalize_webhook_payload,
    verify_webhook_auth,
)
from nexaflow.models.core import (
    ExecutionStatusEnum,
    WebhookAuthConfig,
    WebhookAuthType,
)

WAIT = 10


class TestNormalizeWebhookPayload:
    """Body parsing by content type."""

    def test_json_body(self):
        payload = normalize_webhook_payload(
            "post", {"Content-Type": "application/json; charset=utf-8"}, {}, b'{"a": 1}'
        )
        assert payload.method == "POST"
        assert payload.body == {"a": 1}
        assert payload.headers["content-type"].startswith("application/json")

    def test_malformed_json_becomes_none(self):
        payload = normalize_webhook_payload("POST", {"content-type": "application/json"}, {}, b"{not json")
        assert payload.body is None

    def test_form_body(self):
        payload = normalize_webhook_payload(
            "POST", [("Content-Type", "application/x-www-form-urlencoded")], [], b"name=ada&tag=x&tag=y"
        )
        assert payload.body == {"name": "ada", "tag": "y"}

    def test_other_content_is_text(self):
        payload = normalize_webhook_payload("PUT", {"content-type": "text/plain"}, {"q": "1"}, b"hello")
        assert payload.body == "hello"
        assert payload.query == {"q": "1"}

    def test_undecodable_body_becomes_none(self):
        payload = normalize_webhook_payload("POST", {}, {}, b"\xff\xfe\xfd")
        assert payload.body is None

    def test_empty_request(self):
        payload = normalize_webhook_payload("GET", None, None, None)
        assert payload.body == ""
        assert payload.headers == {}


class TestWebhookAuth:
    """Caller authentication against a registration's auth config."""

    def test_no_auth_configured(self):
        assert verify_webhook_auth(None, normalize_webhook_payload("POST", {}, {}, b""))

    def test_bearer(self):
        auth = WebhookAuthConfig(type=WebhookAuthType.BEARER, secret="s3cret")
        good = normalize_webhook_payload("POST", {"Authorization": "Bearer s3cret"}, {}, b"")
        bad = normalize_webhook_payload("POST", {"Authorization": "Bearer wrong"}, {}, b"")

        assert verify_webhook_auth(auth, good)
        assert not verify_webhook_auth(auth, bad)

    def test_bearer_custom_header(self):
        auth = WebhookAuthConfig(type=WebhookAuthType.BEARER, secret="s3cret", header_name="X-Hook-Token")
        custom = normalize_webhook_payload("POST", {"X-Hook-Token": "Bearer s3cret"}, {}, b"")
        default = normalize_webhook_payload("POST", {"Authorization": "Bearer s3cret"}, {}, b"")

        assert verify_webhook_auth(auth, custom)
        assert not verify_webhook_auth(auth, default)

    def test_non_ascii_credentials_fail_cleanly(self):
        bearer = WebhookAuthConfig(type=WebhookAuthType.BEARER, secret="s3cret")
        api_key = WebhookAuthConfig(type=WebhookAuthType.API_KEY, secret="key-1", header_name="X-Api-Key")
        signature = WebhookAuthConfig(type=WebhookAuthType.SIGNATURE, secret="sign-me")
        payload = normalize_webhook_payload(
            "POST",
            {"Authorization": "Bearer sécret", "X-Api-Key": "clé", SIGNATURE_HEADER: "sha256=ü"},
            {},
            b"",
        )

        assert not verify_webhook_auth(bearer, payload)
        assert not verify_webhook_auth(api_key, payload)
        assert not verify_webhook_auth(signature, payload)

    def test_non_ascii_secret_matches(self):
        auth = WebhookAuthConfig(type=WebhookAuthType.BEARER, secret="sécret")
        payload = normalize_webhook_payload("POST", {"Authorization": "Bearer sécret"}, {}, b"")
        assert verify_webhook_auth(auth, payload)

    def test_api_key_header(self):
        auth = WebhookAuthConfig(type=WebhookAuthType.API_KEY, secret="key-1", header_name="X-Api-Key")
        payload = normalize_webhook_payload("POST", {"X-API-KEY": "key-1"}, {}, b"")
        assert verify_webhook_auth(auth, payload)

    def test_signature(self):
        auth = WebhookAuthConfig(type=WebhookAuthType.SIGNATURE, secret="sign-me")
        body = b'{"event": "push"}'
        signature = "sha256=" + hmac.new(b"sign-me", body, hashlib.sha256).hexdigest()

        signed = normalize_webhook_payload("POST", {SIGNATURE_HEADER: signature}, {}, body)
        tampered = normalize_webhook_payload("POST", {SIGNATURE_HEADER: signature}, {}, body + b" ")

        assert verify_webhook_auth(auth, signed)
        assert not verify_webhook_auth(auth, tampered)


class TestTriggerManager:
    """Test cases for TriggerManager."""

    def test_unknown_endpoint_never_starts_execution(self, trigger_manager, graph_runner):
        payload = normalize_webhook_payload("POST", {}, {}, b"")
        with patch.object(graph_runner, "execute_workflow") as execute:
            result = trigger_manager.handle_webhook_trigger("nobody-home", payload)

        assert result.success is False
        assert result.error == "unknown endpoint"
        execute.assert_not_called()

    def test_registered_endpoint_starts_execution(self, trigger_manager, graph_runner, create_workflow):
        workflow = create_workflow([("a", "succeed", [], {"value": 1})], owner_id="owner-1")
        trigger_manager.register_webhook("orders", workflow.id)

        payload = normalize_webhook_payload(
            "POST", {"content-type": "application/json"}, {"src": "shop"}, b'{"order": 9}'
        )
        result = trigger_manager.handle_webhook_trigger("orders", payload)

        assert result.success is True
        execution = graph_runner.wait_for_execution(result.execution_id, timeout=WAIT)
        assert execution.status == ExecutionStatusEnum.SUCCEEDED
        assert execution.triggered_by == "webhook"
        assert execution.trigger_data["body"] == {"order": 9}
        assert execution.trigger_data["query"] == {"src": "shop"}
        assert execution.trigger_data["endpoint"] == "orders"

    def test_failed_auth_rejected(self, trigger_manager, create_workflow):
        workflow = create_workflow([("a", "succeed", [], None)])
        trigger_manager.register_webhook(
            "secure", workflow.id, WebhookAuthConfig(type=WebhookAuthType.BEARER, secret="token")
        )

        result = trigger_manager.handle_webhook_trigger("secure", normalize_webhook_payload("POST", {}, {}, b""))
        assert result.success is False
        assert result.error == "webhook authentication failed"

    def test_inactive_workflow_reported(self, trigger_manager, workflow_store, create_workflow):
        workflow = create_workflow([("a", "succeed", [], None)])
        trigger_manager.register_webhook("paused", workflow.id)
        workflow_store.set_active(workflow.id, False)

        result = trigger_manager.handle_webhook_trigger("paused", normalize_webhook_payload("POST", {}, {}, b""))
        assert result.success is False
        assert "not active" in result.error

    def test_endpoint_maps_to_one_workflow(self, trigger_manager, create_workflow):
        first = create_workflow([("a", "succeed", [], None)])
        second = create_workflow([("a", "succeed", [], None)])
        trigger_manager.register_webhook("shared", first.id)

        with pytest.raises(ConflictError):
            trigger_manager.register_webhook("shared", second.id)

    def test_register_requires_existing_workflow(self, trigger_manager):
        with pytest.raises(NotFoundError):
            trigger_manager.register_webhook("orphan", "missing-workflow")

    def test_deactivated_endpoint_is_unknown(self, trigger_manager, create_workflow):
        workflow = create_workflow([("a", "succeed", [], None)])
        trigger_manager.register_webhook("temp", workflow.id)
        trigger_manager.webhook_registry.deactivate("temp")

        result = trigger_manager.handle_webhook_trigger("temp", normalize_webhook_payload("POST", {}, {}, b""))
        assert result.error == "unknown endpoint"
