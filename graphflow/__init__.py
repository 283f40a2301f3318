"""Graph workflow execution engine.

Subpackages:
- engine: Data model, validation, expression/template evaluation, run scheduling
- nodes: Node type registry and executors for the ten built-in node kinds
- agents: Session launcher / work task creator interfaces and HTTP clients
"""
