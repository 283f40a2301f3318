"""Node Registry System

Maps each node type to its definition metadata and executor class.

Key Components:
- NodeDefinition: Metadata for node types (including the config model)
- BaseNode: Protocol/interface for all executors
- BaseNodeImpl: Common executor functionality (typed config, validation)
- register_node_type: Decorator for registering node types
- create_node: Factory function for executor instantiation
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Type, TypeVar

from pydantic import ValidationError as PydanticValidationError

from ..engine.errors import ExecutorError
from ..engine.models import NODE_CONFIG_MODELS, NodeConfigBase, WorkflowNodeRun
from .contract import NodeContext, Outcome, RunServices, Signal

logger = logging.getLogger(__name__)

# Type variable for node classes
T = TypeVar("T", bound="BaseNodeImpl")


@dataclass
class NodeDefinition:
    """Metadata definition for a node type.

    Attributes:
        node_type: Unique identifier for the node type (e.g., "delay")
        display_name: Human-readable name for UI display
        description: Brief description of node functionality
        category: Category for grouping (e.g., "control", "work", "wait")
        config_model: Pydantic model accepted as this node's config
        output_schema: JSON schema for output structure definition
        suspends: Whether executions of this type may return Suspended
        icon: Optional icon identifier for UI rendering
        color: Optional color code for UI theming
    """

    node_type: str
    display_name: str
    description: str
    category: str
    config_model: Type[NodeConfigBase]
    output_schema: Dict[str, Any]
    suspends: bool = False
    icon: Optional[str] = None
    color: Optional[str] = None

    def __post_init__(self):
        """Validate node definition after initialization."""
        if not self.node_type:
            raise ValueError("node_type cannot be empty")
        if not self.display_name:
            raise ValueError("display_name cannot be empty")
        if not isinstance(self.output_schema, dict):
            raise ValueError("output_schema must be a dictionary")

    @property
    def input_schema(self) -> Dict[str, Any]:
        """JSON schema of the config, in wire (camelCase) field names."""
        return self.config_model.model_json_schema(by_alias=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodeType": self.node_type,
            "displayName": self.display_name,
            "description": self.description,
            "category": self.category,
            "inputSchema": self.input_schema,
            "outputSchema": self.output_schema,
            "suspends": self.suspends,
            "icon": self.icon,
            "color": self.color,
        }


class BaseNode(Protocol):
    """Protocol defining the interface for all node executors.

    Attributes:
        node_id: Id of the workflow node this executor runs
        node_type: Type identifier matching NodeDefinition
        config: Raw configuration dictionary of the node
    """

    node_id: str
    node_type: str
    config: Dict[str, Any]

    async def execute(self, node_run: WorkflowNodeRun, ctx: NodeContext) -> Outcome:
        """Run one activation of the node."""
        ...

    async def resume(self, node_run: WorkflowNodeRun, signal: Signal) -> Outcome:
        """Finish a suspended activation."""
        ...

    async def recover(self, node_run: WorkflowNodeRun, ctx: NodeContext) -> Optional[Outcome]:
        """Finish an activation that was running when the process stopped."""
        ...

    def validate_config(self) -> List[Dict[str, str]]:
        ...


class BaseNodeImpl(ABC):
    """Abstract base class providing common executor functionality.

    Subclasses implement ``execute``. Nodes whose execution has no external
    side effect set ``idempotent = True`` and are simply re-executed on
    recovery.
    """

    idempotent = False

    def __init__(self, node_id: str, node_type: str, config: Dict[str, Any], label: str = ""):
        self.node_id = node_id
        self.node_type = node_type
        self.config = config or {}
        self.label = label or node_id
        self._settings: Optional[NodeConfigBase] = None

    @property
    def definition(self) -> NodeDefinition:
        return NODE_REGISTRY[self.node_type]

    @property
    def settings(self) -> Any:
        """Typed config, parsed once. Raises ExecutorError if invalid."""
        if self._settings is None:
            try:
                self._settings = self.definition.config_model.model_validate(self.config)
            except PydanticValidationError as e:
                raise ExecutorError(f"Invalid config for node '{self.label}': {e}") from e
        return self._settings

    @abstractmethod
    async def execute(self, node_run: WorkflowNodeRun, ctx: NodeContext) -> Outcome:
        """Execute the node's logic. Must be implemented by subclasses."""
        pass

    async def resume(self, node_run: WorkflowNodeRun, signal: Signal) -> Outcome:
        raise ExecutorError(f"Node type '{self.node_type}' does not suspend")

    async def recover(self, node_run: WorkflowNodeRun, ctx: NodeContext) -> Optional[Outcome]:
        """Default recovery: re-execute idempotent nodes, give up on others."""
        if self.idempotent:
            return await self.execute(node_run, ctx)
        return None

    async def abort(self, node_run: WorkflowNodeRun, services: RunServices) -> None:
        """Ask external collaborators to stop work started by this node run."""
        return None

    def validate_config(self) -> List[Dict[str, str]]:
        """Validate the raw config against the node type's config model.

        Returns:
            List of {"field", "error"} dicts, empty if the config is valid
        """
        definition = NODE_REGISTRY.get(self.node_type)
        if not definition:
            return [{"field": "node_type", "error": f"Unknown node type: {self.node_type}"}]

        try:
            definition.config_model.model_validate(self.config)
        except PydanticValidationError as e:
            return [
                {
                    "field": ".".join(str(part) for part in err["loc"]) or "config",
                    "error": err["msg"],
                }
                for err in e.errors()
            ]
        return []


# Global registry for node types
NODE_REGISTRY: Dict[str, NodeDefinition] = {}
NODE_CLASSES: Dict[str, Type[BaseNodeImpl]] = {}


def register_node_type(
    node_type: str,
    display_name: str,
    description: str,
    category: str,
    output_schema: Dict[str, Any],
    config_model: Optional[Type[NodeConfigBase]] = None,
    suspends: bool = False,
    icon: Optional[str] = None,
    color: Optional[str] = None,
) -> Callable[[Type[T]], Type[T]]:
    """Decorator to register a node type.

    Registers both the definition metadata and the executor class. The
    config model defaults to the variant declared for ``node_type`` in
    ``NODE_CONFIG_MODELS``.

    Example:
        @register_node_type(
            node_type="delay",
            display_name="Delay",
            description="Waits for a fixed time",
            category="wait",
            output_schema={"description": "input, unchanged"},
            suspends=True,
        )
        class DelayNode(BaseNodeImpl):
            async def execute(self, node_run, ctx):
                ...
    """

    def decorator(cls: Type[T]) -> Type[T]:
        model = config_model or NODE_CONFIG_MODELS.get(node_type)
        if model is None:
            raise ValueError(f"No config model declared for node type '{node_type}'")

        definition = NodeDefinition(
            node_type=node_type,
            display_name=display_name,
            description=description,
            category=category,
            config_model=model,
            output_schema=output_schema,
            suspends=suspends,
            icon=icon,
            color=color,
        )

        NODE_REGISTRY[node_type] = definition
        NODE_CLASSES[node_type] = cls

        logger.debug(f"Registered node type: {node_type} ({display_name})")

        return cls

    return decorator


def create_node(
    node_id: str,
    node_type: str,
    config: Dict[str, Any],
    label: str = "",
) -> BaseNodeImpl:
    """Factory function to create an executor for a workflow node.

    Raises:
        ValueError: If node_type is not registered
    """
    if node_type not in NODE_CLASSES:
        available_types = list(NODE_CLASSES.keys())
        raise ValueError(
            f"Unknown node type: {node_type}. "
            f"Available types: {available_types}"
        )

    node_class = NODE_CLASSES[node_type]
    node = node_class(node_id=node_id, node_type=node_type, config=config, label=label)

    logger.debug(f"Created node: {node_id} (type={node_type})")

    return node


def get_node_definition(node_type: str) -> Optional[NodeDefinition]:
    return NODE_REGISTRY.get(node_type)


def list_node_types() -> List[NodeDefinition]:
    return list(NODE_REGISTRY.values())


def list_node_types_by_category(category: str) -> List[NodeDefinition]:
    return [
        definition
        for definition in NODE_REGISTRY.values()
        if definition.category == category
    ]


def is_node_type_registered(node_type: str) -> bool:
    return node_type in NODE_REGISTRY
