"""Node System: registry, executor contract, and the built-in node types."""

# Import node modules to auto-register node types
from . import base  # noqa: F401 - registers start, end, condition, transform, parallel, join, delay, webhook_wait
from . import agents  # noqa: F401 - registers agent_session, work_task

from .registry import (
    NODE_CLASSES,
    NODE_REGISTRY,
    BaseNode,
    BaseNodeImpl,
    NodeDefinition,
    create_node,
    get_node_definition,
    is_node_type_registered,
    list_node_types,
    list_node_types_by_category,
    register_node_type,
)

__all__ = [
    "NODE_CLASSES",
    "NODE_REGISTRY",
    "BaseNode",
    "BaseNodeImpl",
    "NodeDefinition",
    "create_node",
    "get_node_definition",
    "is_node_type_registered",
    "list_node_types",
    "list_node_types_by_category",
    "register_node_type",
]
