"""Workflow Store: validation, storage and lookup of workflow definitions."""

import uuid
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from ..models.core import NodeDefinition, ValidationResult, WorkflowDefinition
from ..storage.database import session_scope
from ..storage.models import WorkflowModel
from .exceptions import NotFoundError, StorageError, ValidationError
from .error_recovery import with_retry, RetryConfig
from .logging import get_logger

logger = get_logger(__name__)


class WorkflowStore:
    """Manages workflow definitions owned by users."""

    def __init__(self, known_kinds: Optional[Iterable[str]] = None):
        self._known_kinds = set(known_kinds) if known_kinds is not None else None

    def validate_workflow(self, definition: WorkflowDefinition) -> ValidationResult:
        """Check a definition beyond its structural pydantic validation."""
        errors = []
        warnings = []

        if self._known_kinds is not None:
            for node in definition.nodes:
                if node.kind not in self._known_kinds:
                    errors.append(f"Node '{node.id}' has unknown kind '{node.kind}'")

        dependents = definition.dependents()
        if len(definition.nodes) > 1:
            isolated = [
                node.id for node in definition.nodes
                if not node.depends_on and not dependents.get(node.id)
            ]
            if isolated:
                warnings.append(f"Independent nodes: {', '.join(sorted(isolated))}")

        return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)

    def create_workflow(self, definition: WorkflowDefinition, owner_id: str) -> WorkflowDefinition:
        """
        Validate and store a workflow owned by ``owner_id``.

        Returns:
            The stored definition with ``id`` and ``owner_id`` assigned

        Raises:
            ValidationError: If validation fails
            StorageError: If the write fails
        """
        logger.info(f"Creating workflow '{definition.name}' for owner {owner_id}")

        result = self.validate_workflow(definition)
        if not result.is_valid:
            raise ValidationError(
                f"Workflow validation failed: {'; '.join(result.errors)}",
                validation_errors=result.errors,
            )
        if result.warnings:
            logger.debug(f"Workflow validation warnings: {'; '.join(result.warnings)}")

        stored = definition.model_copy(update={
            "id": definition.id or str(uuid.uuid4()),
            "owner_id": owner_id,
        })
        self._persist(stored)
        logger.info(f"Created workflow '{stored.name}' with ID: {stored.id}")
        return stored

    @with_retry(RetryConfig(max_attempts=3, base_delay=0.1))
    def _persist(self, definition: WorkflowDefinition) -> None:
        try:
            with session_scope() as db:
                if db.get(WorkflowModel, definition.id) is not None:
                    raise ValidationError(f"Workflow with ID '{definition.id}' already exists")
                db.add(WorkflowModel(
                    id=definition.id,
                    owner_id=definition.owner_id,
                    name=definition.name,
                    description=definition.description,
                    definition={"nodes": [n.model_dump(mode="json") for n in definition.nodes]},
                    is_active=definition.is_active,
                    created_at=datetime.utcnow(),
                ))
        except SQLAlchemyError as e:
            logger.error(f"Database error while storing workflow: {str(e)}")
            raise StorageError(f"Failed to store workflow: {str(e)}", operation="create", table="workflows")

    def get_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        """Return the workflow, or None if it does not exist."""
        try:
            with session_scope() as db:
                model = db.get(WorkflowModel, workflow_id)
                if model is None:
                    return None
                return self._to_definition(model)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load workflow: {str(e)}", operation="get", table="workflows")

    def require_workflow(self, workflow_id: str) -> WorkflowDefinition:
        workflow = self.get_workflow(workflow_id)
        if workflow is None:
            raise NotFoundError(
                f"Workflow '{workflow_id}' not found",
                resource_type="workflow",
                resource_id=workflow_id,
            )
        return workflow

    def list_workflows(self, owner_id: Optional[str] = None) -> List[WorkflowDefinition]:
        try:
            with session_scope() as db:
                query = db.query(WorkflowModel)
                if owner_id is not None:
                    query = query.filter(WorkflowModel.owner_id == owner_id)
                return [self._to_definition(m) for m in query.order_by(WorkflowModel.created_at).all()]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list workflows: {str(e)}", operation="list", table="workflows")

    def set_active(self, workflow_id: str, is_active: bool) -> WorkflowDefinition:
        try:
            with session_scope() as db:
                model = db.get(WorkflowModel, workflow_id)
                if model is None:
                    raise NotFoundError(
                        f"Workflow '{workflow_id}' not found",
                        resource_type="workflow",
                        resource_id=workflow_id,
                    )
                model.is_active = is_active
                model.updated_at = datetime.utcnow()
                definition = self._to_definition(model)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to update workflow: {str(e)}", operation="update", table="workflows")
        logger.info(f"Workflow {workflow_id} is_active={is_active}")
        return definition

    @staticmethod
    def _to_definition(model: WorkflowModel) -> WorkflowDefinition:
        return WorkflowDefinition(
            id=model.id,
            owner_id=model.owner_id,
            name=model.name,
            description=model.description or "",
            is_active=bool(model.is_active),
            nodes=[NodeDefinition(**n) for n in (model.definition or {}).get("nodes", [])],
        )
