"""Per-run Context Store.

Maps node id to that node's output. Entries are kept in completion order
(a rewrite moves the entry to the end), which is what lets ``prev``
resolve to the most recently completed predecessor. The store wraps the
run's own ``context`` dict, so persisting the run persists the store.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, Optional

# Keys of the render view that are not node ids
INPUT_KEY = "input"
PREV_KEY = "prev"
RESERVED_KEYS = frozenset({INPUT_KEY, PREV_KEY})


class ContextStore:
    def __init__(self, run_input: Any = None, outputs: Optional[Dict[str, Any]] = None):
        self._input = run_input
        self._outputs: Dict[str, Any] = outputs if outputs is not None else {}

    @property
    def run_input(self) -> Any:
        return self._input

    def write(self, node_id: str, output: Any) -> None:
        self._outputs.pop(node_id, None)
        self._outputs[node_id] = output

    def get(self, node_id: str, default: Any = None) -> Any:
        return self._outputs.get(node_id, default)

    def has(self, node_id: str) -> bool:
        return node_id in self._outputs

    def latest_of(self, node_ids: Iterable[str]) -> Optional[str]:
        """Id of the most recently written node among ``node_ids``."""
        wanted = set(node_ids)
        for node_id in reversed(self._outputs):
            if node_id in wanted:
                return node_id
        return None

    def view(self, prev: Any = None) -> Dict[str, Any]:
        """Render/evaluation view: node outputs plus ``input`` and ``prev``."""
        view = dict(self._outputs)
        view[INPUT_KEY] = self._input
        view[PREV_KEY] = prev
        return view

    def snapshot(self) -> Dict[str, Any]:
        return dict(self._outputs)

    def __len__(self) -> int:
        return len(self._outputs)
