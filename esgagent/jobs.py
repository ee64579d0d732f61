"""Background analysis runs.

``AnalysisJobManager.launch`` returns as soon as the pipeline task is
scheduled; callers poll the Run row for the outcome. The manager keeps a
handle per run so a run can be cancelled or awaited, and bounds each run
with a timeout. Every run ends ``completed`` or ``failed``; a failed run has
no metric, finding or action rows.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from esgagent.agent import AnalysisContext, AnalysisResult, run_esg_analysis, save_analysis_results
from esgagent.config import get_settings
from esgagent.db import get_session
from esgagent.llm import LLMClient
from esgagent.models import Run
from esgagent.utils import utcnow

log = logging.getLogger(__name__)

UNFINISHED_STATUSES = ("pending", "running")


class AnalysisJobManager:
    def __init__(
        self,
        session_factory: Callable[[], Session] | None = None,
        timeout: float | None = None,
    ):
        self._session_factory = session_factory or get_session
        self.timeout = get_settings().analysis_timeout_seconds if timeout is None else timeout
        self._tasks: dict[int, asyncio.Task] = {}

    def launch(self, context: AnalysisContext, client: LLMClient) -> asyncio.Task:
        """Schedule the pipeline for ``context.run_id`` and return its task without awaiting it."""
        run_id = context.run_id
        task = asyncio.create_task(self._execute(context, client), name=f"esg-run-{run_id}")
        self._tasks[run_id] = task

        def _forget(done: asyncio.Task) -> None:
            if self._tasks.get(run_id) is done:
                del self._tasks[run_id]

        task.add_done_callback(_forget)
        log.info("Launched analysis run %s for %s", run_id, context.company_name)
        return task

    def cancel(self, run_id: int) -> bool:
        task = self._tasks.get(run_id)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def wait(self, run_id: int) -> None:
        """Block until the run's task has finished (no-op for unknown runs)."""
        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.wait({task})

    def active_runs(self) -> list[int]:
        return sorted(rid for rid, task in self._tasks.items() if not task.done())

    # ------------------------------------------------------------------

    async def _execute(self, context: AnalysisContext, client: LLMClient) -> None:
        run_id = context.run_id
        try:
            if self.timeout and self.timeout > 0:
                result = await asyncio.wait_for(run_esg_analysis(context, client), self.timeout)
            else:
                result = await run_esg_analysis(context, client)
        except asyncio.CancelledError:
            log.warning("Analysis run %s cancelled", run_id)
            self._mark_failed(run_id, "Analysis cancelled")
            raise
        except TimeoutError:
            log.warning("Analysis run %s timed out after %ss", run_id, self.timeout)
            self._mark_failed(run_id, f"Analysis timed out after {self.timeout:g} seconds")
            return
        except Exception as exc:
            log.exception("Analysis run %s failed", run_id)
            self._mark_failed(run_id, str(exc) or exc.__class__.__name__)
            return
        self._complete(context, result, client.model)

    def _complete(self, context: AnalysisContext, result: AnalysisResult, model: str | None) -> None:
        session = self._session_factory()
        try:
            run = session.get(Run, context.run_id)
            if run is None:
                log.warning("Run %s disappeared before results were saved", context.run_id)
                return
            save_analysis_results(session, context, result)
            run.status = "completed"
            run.model = model
            run.token_in = result.usage.prompt_tokens
            run.token_out = result.usage.completion_tokens
            run.completed_at = utcnow()
            session.commit()
        except Exception as exc:
            session.rollback()
            log.exception("Saving results for run %s failed", context.run_id)
            self._mark_failed(context.run_id, f"Failed to save results: {exc}")
        finally:
            session.close()

    def _mark_failed(self, run_id: int, message: str) -> None:
        session = self._session_factory()
        try:
            run = session.get(Run, run_id)
            if run is None:
                return
            run.status = "failed"
            run.error = message
            run.completed_at = utcnow()
            session.commit()
        finally:
            session.close()


def recover_interrupted_runs(session: Session) -> int:
    """Fail runs a previous process left pending or running. Caller must commit."""
    runs = session.execute(select(Run).where(Run.status.in_(UNFINISHED_STATUSES))).scalars().all()
    for run in runs:
        run.status = "failed"
        run.error = "Interrupted by server restart"
        run.completed_at = utcnow()
    if runs:
        log.warning("Marked %d interrupted run(s) as failed", len(runs))
    return len(runs)
