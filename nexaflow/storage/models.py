"""SQLAlchemy database models for workflows, executions, webhooks and sessions."""

from datetime import datetime
from sqlalchemy import Boolean, Column, String, DateTime, Text, JSON, Integer, ForeignKey
from sqlalchemy.orm import relationship
from .database import Base


class WorkflowModel(Base):
    """Database model for workflow definitions."""
    __tablename__ = "workflows"

    id = Column(String, primary_key=True)
    owner_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text)
    definition = Column(JSON, nullable=False)  # nodes, as dumped by WorkflowDefinition
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    executions = relationship("WorkflowExecutionModel", back_populates="workflow")


class WorkflowExecutionModel(Base):
    """Database model for workflow executions."""
    __tablename__ = "workflow_executions"

    id = Column(String, primary_key=True)
    workflow_id = Column(String, ForeignKey("workflows.id"), nullable=False)
    status = Column(String, nullable=False)  # pending, running, succeeded, failed, cancelled
    triggered_by = Column(String, nullable=False, default="manual")
    trigger_data = Column(JSON)
    node_statuses = Column(JSON)
    error_message = Column(Text)
    started_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime)

    workflow = relationship("WorkflowModel", back_populates="executions")
    logs = relationship("ExecutionLogModel", back_populates="execution")


class ExecutionLogModel(Base):
    """Database model for execution log entries."""
    __tablename__ = "execution_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    execution_id = Column(String, ForeignKey("workflow_executions.id"), nullable=False)
    timestamp = Column(DateTime, default=datetime.utcnow)
    node_id = Column(String)
    event_type = Column(String, nullable=False)
    message = Column(Text, nullable=False)

    execution = relationship("WorkflowExecutionModel", back_populates="logs")


class WebhookEndpointModel(Base):
    """Database model for webhook endpoint registrations."""
    __tablename__ = "webhook_endpoints"

    endpoint = Column(String, primary_key=True)
    workflow_id = Column(String, ForeignKey("workflows.id"), nullable=False)
    auth_config = Column(JSON)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class UserSessionModel(Base):
    """Database model for bearer session tokens."""
    __tablename__ = "user_sessions"

    token = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    expires_at = Column(DateTime)
