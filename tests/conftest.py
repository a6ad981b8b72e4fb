"""Pytest configuration and fixtures."""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from flowstate.config import get_testing_config, reset_config
from flowstate.core.exceptions import PersistenceError, TemplateNotFoundError
from flowstate.core.flow_engine import FlowEngine
from flowstate.core.flow_store import FlowStore
from flowstate.core.logging import clear_logging_context
from flowstate.core.node_registry import NodeTypeRegistry
from flowstate.core.template_manager import TemplateManager
from flowstate.models.core import EdgeDefinition, GraphDefinition, NodeDefinition, WorkflowNodeType
from flowstate.models.flow import ApiMetadata, CreateTemplateRequest, Integration, OperationResult
from flowstate.operations import register_builtin_operations
from flowstate.storage.database import Base, reset_database_engine
from flowstate.storage.repository import InMemoryFlowRepository


def fake_ai_task(context):
    """Stand-in for the OpenAI-backed operation."""
    return OperationResult(
        processed={
            "content": f"Draft: {context.config.prompt}",
            "model": context.config.model,
            "tokens_used": 42,
        },
        raw={"choices": [{"text": context.config.prompt}]},
        summary={"length": len(context.config.prompt)},
        credits_used=2.0,
        api_metadata=ApiMetadata(provider="openai", endpoint="chat/completions"),
    )


def node(node_id, node_type, label=None, **config):
    return NodeDefinition(id=node_id, type=node_type, label=label or node_id, config=config)


def edge(source, target):
    return EdgeDefinition(id=f"e-{source}-{target}", source_node_id=source, target_node_id=target)


def chain(*nodes):
    """Graph whose nodes are connected one after another."""
    edges = [edge(a.id, b.id) for a, b in zip(nodes, nodes[1:])]
    return GraphDefinition(nodes=list(nodes), edges=edges)


class StaticTemplates:
    """Template source holding templates in a dict, without storage."""

    def __init__(self, *templates):
        self._templates = {template.id: template for template in templates}

    def get_template(self, template_id):
        if template_id not in self._templates:
            raise TemplateNotFoundError(template_id)
        return self._templates[template_id]


class FlakyRepository(InMemoryFlowRepository):
    """Repository whose writes fail while ``failing`` is set, or for the next few after ``fail_next``."""

    def __init__(self):
        super().__init__()
        self.failing = False
        self.failures_left = 0
        self.error = PersistenceError("database unavailable", operation="save")

    def fail_next(self, count=1):
        self.failures_left = count

    def save(self, flow):
        if self.failures_left:
            self.failures_left -= 1
            raise self.error
        if self.failing:
            raise self.error
        super().save(flow)

    def delete(self, flow_id):
        if self.failing:
            raise self.error
        super().delete(flow_id)


@pytest.fixture(autouse=True)
def reset_globals():
    """Keep configuration and cached engines from leaking between tests."""
    reset_config()
    clear_logging_context()
    yield
    reset_config()
    clear_logging_context()
    reset_database_engine()


@pytest.fixture
def registry():
    """Registry with the built-in operations and a fake AI operation."""
    registry = NodeTypeRegistry()
    register_builtin_operations(registry)
    registry.register_operation(WorkflowNodeType.AI_TASK, fake_ai_task)
    return registry


@pytest.fixture
def session_factory():
    """Session factory over a fresh in-memory database."""
    from flowstate.storage import models  # noqa: F401

    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def template_manager(registry, session_factory):
    return TemplateManager(registry, session_factory)


@pytest.fixture
def store():
    return FlowStore()


@pytest.fixture
def flow_engine(store, registry, template_manager):
    engine = FlowEngine(store, registry, templates=template_manager)
    yield engine
    engine.shutdown()


@pytest.fixture
def review_template(template_manager):
    """trigger -> ai_task -> review."""
    template, _ = template_manager.create_template(CreateTemplateRequest(
        id="blog-post",
        name="Blog Post",
        category="content",
        credit_cost=2.0,
        graph=chain(
            node("trigger", WorkflowNodeType.TRIGGER, "Start"),
            node("ai-step", WorkflowNodeType.AI_TASK, "Write Draft", prompt="Write a post about local SEO"),
            node("review-step", WorkflowNodeType.REVIEW, "Client Review", reviewer_type="client"),
        ),
    ))
    return template


@pytest.fixture
def simple_template(template_manager):
    """trigger -> ai_task, no gates."""
    template, _ = template_manager.create_template(CreateTemplateRequest(
        id="quick-draft",
        name="Quick Draft",
        graph=chain(
            node("trigger", WorkflowNodeType.TRIGGER, "Start"),
            node("ai-step", WorkflowNodeType.AI_TASK, "Write Draft", prompt="Write a tagline"),
        ),
    ))
    return template


@pytest.fixture
def testing_config():
    return get_testing_config()


@pytest.fixture
def client(testing_config):
    """Test client for an app running on an in-memory database."""
    from fastapi.testclient import TestClient
    from flowstate.main import app_state, create_app

    app = create_app(testing_config)
    with TestClient(app) as test_client:
        app_state.registry.register_operation(WorkflowNodeType.AI_TASK, fake_ai_task)
        app_state.flow_engine.integrations.add(Integration(id="openai-agency", type="openai", name="Agency OpenAI"))
        yield test_client
