"""Database models and storage layer."""

from .database import Base, get_db, create_tables, drop_tables, get_database_engine, get_session_factory
from .models import TemplateModel, FlowModel, IntegrationModel
from .repository import (
    FlowRepository,
    InMemoryFlowRepository,
    SqlFlowRepository,
    IntegrationRepository,
    InMemoryIntegrationRepository,
    SqlIntegrationRepository,
)

__all__ = [
    "Base",
    "get_db",
    "create_tables",
    "drop_tables",
    "get_database_engine",
    "get_session_factory",
    "TemplateModel",
    "FlowModel",
    "IntegrationModel",
    "FlowRepository",
    "InMemoryFlowRepository",
    "SqlFlowRepository",
    "IntegrationRepository",
    "InMemoryIntegrationRepository",
    "SqlIntegrationRepository",
]
