"""SQLAlchemy database models for templates, flows and integrations."""

from datetime import datetime
from sqlalchemy import Column, String, DateTime, Text, JSON, Float, Integer, Boolean
from .database import Base


class TemplateModel(Base):
    """Database model for workflow templates."""
    __tablename__ = "workflow_templates"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(Text)
    category = Column(String, index=True)
    tags = Column(JSON)
    credit_cost = Column(Float, default=0.0)
    estimated_duration = Column(Integer)
    definition = Column(JSON, nullable=False)  # Graph in its serialized {nodes, edges} form
    editable_fields = Column(JSON)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class FlowModel(Base):
    """Database model for flow instances.

    The whole instance is stored as one JSON document so a write replaces it
    atomically; business and status are duplicated as indexed columns.
    """
    __tablename__ = "flows"

    id = Column(String, primary_key=True)
    business_id = Column(String, nullable=False, index=True)
    template_id = Column(String, nullable=False)
    status = Column(String, nullable=False, index=True)
    document = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class IntegrationModel(Base):
    """Database model for configured external integrations."""
    __tablename__ = "integrations"

    id = Column(String, primary_key=True)
    business_id = Column(String, index=True)
    type = Column(String, nullable=False, index=True)  # openai, dataforseo, email, ...
    name = Column(String, nullable=False)
    config = Column(JSON)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
