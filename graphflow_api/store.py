"""SQL-backed RunStore used by the API process."""

from __future__ import annotations

import logging
from typing import List, Optional

from graphflow.engine.models import WorkflowNodeRun, WorkflowRun
from graphflow_api import database
from graphflow_api.repositories.run import RunRepository, run_from_row

logger = logging.getLogger(__name__)


class SqlRunStore:
    """RunStore writing through RunRepository, one session per call."""

    async def save_run(self, run: WorkflowRun) -> None:
        async with database.get_session_ctx() as session:
            await RunRepository(session).upsert_run(run)

    async def save_node_run(self, node_run: WorkflowNodeRun) -> None:
        async with database.get_session_ctx() as session:
            await RunRepository(session).upsert_node_run(node_run)

    async def load_active_runs(self) -> List[WorkflowRun]:
        async with database.get_session_ctx() as session:
            rows = await RunRepository(session).load_active()
            runs = [run_from_row(row) for row in rows]
        logger.info(f"Loaded {len(runs)} active run(s) from the database")
        return runs

    async def get_run(self, run_id: str) -> Optional[WorkflowRun]:
        async with database.get_session_ctx() as session:
            row = await RunRepository(session).get(run_id)
            return run_from_row(row) if row else None
