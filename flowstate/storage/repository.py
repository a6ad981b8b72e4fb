"""Repositories through which the flow store and engine reach persistent storage."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..core.error_recovery import RetryConfig, execute_with_retry
from ..core.exceptions import PersistenceError, TransientError
from ..core.logging import get_logger
from ..models.flow import FlowInstance, Integration
from .models import FlowModel, IntegrationModel

logger = get_logger(__name__)


class FlowRepository(ABC):
    """Durable home of flow instances."""

    @abstractmethod
    def save(self, flow: FlowInstance) -> None:
        """Insert or replace a flow. Raises PersistenceError on failure."""

    @abstractmethod
    def delete(self, flow_id: str) -> None:
        """Remove a flow. Raises PersistenceError on failure."""

    @abstractmethod
    def load_all(self) -> List[FlowInstance]:
        """Every stored flow, used to warm the in-memory store."""


class InMemoryFlowRepository(FlowRepository):
    """Dictionary-backed repository for tests and single-process use."""

    def __init__(self):
        self._flows: Dict[str, FlowInstance] = {}

    def save(self, flow: FlowInstance) -> None:
        self._flows[flow.id] = flow

    def delete(self, flow_id: str) -> None:
        self._flows.pop(flow_id, None)

    def load_all(self) -> List[FlowInstance]:
        return list(self._flows.values())


class SqlFlowRepository(FlowRepository):
    """SQLAlchemy repository storing each flow as one JSON document row."""

    def __init__(self, session_factory: sessionmaker, retry_config: Optional[RetryConfig] = None):
        self._session_factory = session_factory
        self._retry_config = retry_config or RetryConfig()

    def _run(self, operation: str, func, flow_id: Optional[str] = None):
        """Run a unit of work, retrying transient database errors."""
        def attempt():
            session = self._session_factory()
            try:
                result = func(session)
                session.commit()
                return result
            except OperationalError as e:
                session.rollback()
                raise TransientError(f"Transient database error during {operation}: {e}")
            except SQLAlchemyError as e:
                session.rollback()
                raise PersistenceError(f"Database error during {operation}: {e}", operation=operation, flow_id=flow_id)
            finally:
                session.close()

        try:
            return execute_with_retry(attempt, self._retry_config)
        except TransientError as e:
            logger.error(f"Giving up on {operation} for flow {flow_id}: {e.message}")
            raise PersistenceError(e.message, operation=operation, flow_id=flow_id)

    def save(self, flow: FlowInstance) -> None:
        document = flow.model_dump(mode="json")

        def write(session):
            session.merge(FlowModel(
                id=flow.id,
                business_id=flow.business_id,
                template_id=flow.template_id,
                status=flow.status.value,
                document=document,
                created_at=flow.created_at,
                updated_at=datetime.utcnow()
            ))

        self._run("save", write, flow.id)

    def delete(self, flow_id: str) -> None:
        def remove(session):
            session.query(FlowModel).filter(FlowModel.id == flow_id).delete()

        self._run("delete", remove, flow_id)

    def load_all(self) -> List[FlowInstance]:
        def read(session):
            rows = session.query(FlowModel).order_by(FlowModel.created_at).all()
            return [FlowInstance.model_validate(row.document) for row in rows]

        return self._run("load_all", read)


class IntegrationRepository(ABC):
    """Source of configured integrations, looked up by capability type."""

    @abstractmethod
    def list_by_type(self, integration_type: str, business_id: Optional[str] = None) -> List[Integration]:
        """Active integrations of a type, agency-wide ones included."""

    @abstractmethod
    def add(self, integration: Integration) -> None:
        pass


class InMemoryIntegrationRepository(IntegrationRepository):

    def __init__(self, integrations: Optional[List[Integration]] = None):
        self._integrations: List[Integration] = list(integrations or [])

    def list_by_type(self, integration_type: str, business_id: Optional[str] = None) -> List[Integration]:
        return [
            integration for integration in self._integrations
            if integration.type == integration_type
            and integration.is_active
            and integration.business_id in (None, business_id)
        ]

    def add(self, integration: Integration) -> None:
        self._integrations.append(integration)


class SqlIntegrationRepository(IntegrationRepository):

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def list_by_type(self, integration_type: str, business_id: Optional[str] = None) -> List[Integration]:
        session = self._session_factory()
        try:
            query = session.query(IntegrationModel).filter(
                IntegrationModel.type == integration_type,
                IntegrationModel.is_active.is_(True)
            )
            rows = [row for row in query.all() if row.business_id in (None, business_id)]
            return [
                Integration(
                    id=row.id, business_id=row.business_id, type=row.type,
                    name=row.name, config=row.config or {}, is_active=row.is_active
                )
                for row in rows
            ]
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to list integrations: {e}", operation="list_integrations")
        finally:
            session.close()

    def add(self, integration: Integration) -> None:
        session = self._session_factory()
        try:
            session.add(IntegrationModel(**integration.model_dump()))
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to store integration: {e}", operation="add_integration")
        finally:
            session.close()
