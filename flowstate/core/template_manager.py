"""Template Manager for reusable workflow graphs."""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..models.core import GraphDefinition, IssueSeverity, ValidationIssue, ValidationResult
from ..models.flow import CreateTemplateRequest, EditableField, WorkflowTemplate
from ..storage.models import TemplateModel
from .exceptions import PersistenceError, TemplateNotFoundError, ValidationError
from .logging import get_logger
from .node_registry import NodeTypeRegistry
from .workflow_graph import WorkflowGraph

logger = get_logger(__name__)


class TemplateManager:
    """Validates and stores workflow templates."""

    def __init__(self, registry: NodeTypeRegistry, session_factory: sessionmaker):
        """Initialize TemplateManager.

        Args:
            registry: Node type registry used for graph validation
            session_factory: Factory producing database sessions
        """
        self.registry = registry
        self._session_factory = session_factory

    def validate_graph(self, graph: GraphDefinition) -> ValidationResult:
        return WorkflowGraph.from_definition(graph, self.registry).validate()

    def _validate_editable_fields(self, graph: GraphDefinition, fields: List[EditableField]) -> List[ValidationIssue]:
        issues = []
        for field in fields:
            node = graph.find_node(field.step_id)
            if node is None:
                issues.append(ValidationIssue(
                    severity=IssueSeverity.ERROR, code="unknown_editable_step", node_id=field.step_id,
                    field=field.path, message=f"Editable field '{field.key}' refers to a missing node",
                ))
                continue
            known_keys = {config_field.key for config_field in self.registry.get(node.type).config_fields}
            if field.path not in known_keys and field.path not in node.config:
                issues.append(ValidationIssue(
                    severity=IssueSeverity.WARNING, code="unknown_editable_key", node_id=node.id,
                    field=field.path, message=f"Editable field '{field.key}' is not a declared config key",
                ))
        return issues

    def create_template(self, request: CreateTemplateRequest) -> Tuple[WorkflowTemplate, ValidationResult]:
        """
        Validate and store a new template.

        Args:
            request: Template definition to store

        Returns:
            The stored template and the validation result (warnings only)

        Raises:
            ValidationError: If the graph or its editable fields have errors
            PersistenceError: If storage fails
        """
        logger.info(f"Creating template: {request.name}")

        result = self.validate_graph(request.graph)
        result = ValidationResult(issues=result.issues + self._validate_editable_fields(request.graph, request.editable_fields))
        if not result.is_valid:
            messages = "; ".join(issue.message for issue in result.errors)
            logger.error(f"Template validation failed: {messages}")
            raise ValidationError(
                f"Template graph validation failed: {messages}",
                issues=[issue.model_dump(mode="json") for issue in result.errors]
            )
        if result.warnings:
            logger.warning(f"Template validation warnings: {'; '.join(issue.message for issue in result.warnings)}")

        template = WorkflowTemplate(
            id=request.id or str(uuid.uuid4()),
            name=request.name,
            description=request.description,
            category=request.category,
            tags=request.tags,
            credit_cost=request.credit_cost,
            estimated_duration=request.estimated_duration,
            graph=request.graph,
            editable_fields=request.editable_fields,
            created_at=datetime.utcnow(),
        )

        session = self._session_factory()
        try:
            if session.get(TemplateModel, template.id) is not None:
                raise ValidationError(f"Template with ID '{template.id}' already exists")
            session.add(TemplateModel(
                id=template.id,
                name=template.name,
                description=template.description,
                category=template.category,
                tags=template.tags,
                credit_cost=template.credit_cost,
                estimated_duration=template.estimated_duration,
                definition=template.graph.to_json_dict(),
                editable_fields=[field.model_dump(mode="json") for field in template.editable_fields],
                created_at=template.created_at,
            ))
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database error while creating template: {str(e)}")
            raise PersistenceError(f"Failed to store template: {str(e)}", operation="create_template")
        finally:
            session.close()

        logger.info(f"Successfully created template '{template.name}' with ID: {template.id}")
        return template, result

    @staticmethod
    def _to_template(model: TemplateModel) -> WorkflowTemplate:
        return WorkflowTemplate(
            id=model.id,
            name=model.name,
            description=model.description or "",
            category=model.category or "general",
            tags=model.tags or [],
            credit_cost=model.credit_cost or 0.0,
            estimated_duration=model.estimated_duration,
            graph=GraphDefinition.model_validate(model.definition),
            editable_fields=[EditableField.model_validate(field) for field in model.editable_fields or []],
            created_at=model.created_at,
        )

    def get_template(self, template_id: str) -> WorkflowTemplate:
        """
        Retrieve a template by its ID.

        Raises:
            TemplateNotFoundError: If no template has that ID
            PersistenceError: If storage fails
        """
        session = self._session_factory()
        try:
            model = session.get(TemplateModel, template_id)
            if model is None:
                raise TemplateNotFoundError(template_id)
            return self._to_template(model)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to retrieve template: {str(e)}", operation="get_template")
        finally:
            session.close()

    def list_templates(self, category: Optional[str] = None) -> List[WorkflowTemplate]:
        session = self._session_factory()
        try:
            query = session.query(TemplateModel)
            if category:
                query = query.filter(TemplateModel.category == category)
            return [self._to_template(model) for model in query.order_by(TemplateModel.created_at).all()]
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to list templates: {str(e)}", operation="list_templates")
        finally:
            session.close()

    def delete_template(self, template_id: str) -> bool:
        """Delete a template. Returns False when it did not exist."""
        session = self._session_factory()
        try:
            model = session.get(TemplateModel, template_id)
            if model is None:
                logger.warning(f"Template with ID '{template_id}' not found for deletion")
                return False
            session.delete(model)
            session.commit()
            logger.info(f"Deleted template {template_id}")
            return True
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to delete template: {str(e)}", operation="delete_template")
        finally:
            session.close()

    def preview(self, template_id: str) -> Dict[str, Any]:
        """Describe the steps a flow created from the template would run, in order."""
        template = self.get_template(template_id)
        graph = WorkflowGraph.from_definition(template.graph, self.registry)
        editable_by_step: Dict[str, List[EditableField]] = {}
        for field in template.editable_fields:
            editable_by_step.setdefault(field.step_id, []).append(field)

        steps = []
        for index, node_id in enumerate(graph.execution_order()):
            node = graph.get_node(node_id)
            spec = self.registry.get(node.type)
            steps.append({
                "order": index + 1,
                "step_id": node.id,
                "label": node.label,
                "type": node.type.value,
                "is_review": spec.is_review_gate,
                "is_options_gate": spec.is_options_gate,
                "is_editable": node.id in editable_by_step,
                "editable_fields": [field.model_dump(mode="json") for field in editable_by_step.get(node.id, [])],
            })

        return {
            "template_id": template.id,
            "name": template.name,
            "total_steps": len(steps),
            "credit_cost": template.credit_cost,
            "estimated_duration": template.estimated_duration,
            "steps": steps,
        }
