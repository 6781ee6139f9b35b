"""Deployment Tracker — live pipeline state and final results per execution."""

from __future__ import annotations

import logging
import uuid
from typing import Protocol

from orchestrator.schemas.deployments import PipelineExecutionResult, PipelineExecutionState
from orchestrator.services.store import KeyedStore

logger = logging.getLogger(__name__)


class DeploymentTracker(Protocol):
    async def update_state(self, execution_id: uuid.UUID, state: PipelineExecutionState) -> None: ...


class NullDeploymentTracker:
    async def update_state(self, execution_id: uuid.UUID, state: PipelineExecutionState) -> None:
        return None


class InMemoryDeploymentTracker:
    def __init__(self) -> None:
        self._states: dict[uuid.UUID, PipelineExecutionState] = {}
        self._results: KeyedStore[uuid.UUID, PipelineExecutionResult] = KeyedStore()

    async def update_state(self, execution_id: uuid.UUID, state: PipelineExecutionState) -> None:
        self._states[execution_id] = state

    def get_state(self, execution_id: uuid.UUID) -> PipelineExecutionState | None:
        return self._states.get(execution_id)

    def store_result(self, result: PipelineExecutionResult) -> bool:
        stored = self._results.insert_if_absent(result.execution_id, result)
        if not stored:
            logger.warning("Result for execution %s already stored, keeping the first", result.execution_id)
        return stored

    def get_result(self, execution_id: uuid.UUID) -> PipelineExecutionResult | None:
        return self._results.get(execution_id)

    def list_results(self, limit: int = 50, offset: int = 0) -> list[PipelineExecutionResult]:
        results = sorted(self._results.values(), key=lambda r: r.started_at, reverse=True)
        return results[offset : offset + limit]

    def knows(self, execution_id: uuid.UUID) -> bool:
        return execution_id in self._states or execution_id in self._results
