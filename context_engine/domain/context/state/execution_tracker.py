from typing import Dict, List, Any, Optional
from datetime import datetime, timedelta
import csv
import io
import json
import structlog

from context_engine.domain.context.base_component import ContextComponent
from context_engine.domain.errors import MaxEventsExceeded
from context_engine.domain.models.context_output import EventStatistics
from context_engine.domain.models.context_session import (
    CommandResponse,
    ContextSession,
    ExecutionEvent,
    ExecutorCommand,
    StepExecution,
    StepStatus,
)
from context_engine.infrastructure.observability.logging import ContextLogger
from context_engine.infrastructure.storage.dom_utils import compress_dom, compress_dom_if_needed

logger = structlog.get_logger(__name__)


class ExecutionTracker(ContextComponent):
    """Records execution events per step, always in timestamp order"""

    def __init__(self, settings, storage):
        super().__init__(settings, storage)
        self.context_logger = ContextLogger(__name__)

    async def add_execution_event(
        self,
        session: ContextSession,
        step_index: int,
        command: ExecutorCommand,
        result: CommandResponse,
        reasoning: Optional[str] = None,
        screenshot_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Append an action/result pair to a step and return the event ID"""

        self.validate_step_index(session, step_index)

        execution = self._get_or_create_step_execution(session, step_index)
        if len(execution.events) >= self.settings.max_events_per_step:
            raise MaxEventsExceeded(
                f"Maximum events per step ({self.settings.max_events_per_step}) exceeded",
                session_id=session.session_id,
                step_index=step_index,
                details={"current_events": len(execution.events)},
            )

        page_dom = result.dom or ""
        if self.settings.compression_enabled:
            page_dom = compress_dom_if_needed(page_dom, self.settings.dom_compression_threshold)

        event = ExecutionEvent(
            timestamp=timestamp or datetime.utcnow(),
            reasoning=reasoning or "",
            executor_method=command.action.value,
            executor_command=command.model_copy(deep=True),
            command_result=result.model_copy(deep=True),
            page_dom=page_dom,
            screenshot_id=screenshot_id or result.screenshot_id,
            metadata={
                "duration": result.duration,
                "success": result.success,
                **(metadata or {}),
            },
        )

        execution.events.append(event)
        self._ensure_temporal_ordering(execution)
        session.touch()

        await self._persist(self.storage.save_session(session), "save_session", session.session_id)

        self.context_logger.log_context_update(
            session.session_id,
            "execution_event",
            "add",
            {"step_index": step_index, "event_id": event.event_id, "method": event.executor_method},
        )

        return event.event_id

    def _get_or_create_step_execution(self, session: ContextSession, step_index: int) -> StepExecution:
        execution = session.get_step_execution(step_index)
        if not execution:
            execution = StepExecution(
                step_index=step_index,
                step_name=session.steps[step_index],
                status=StepStatus.ACTIVE,
            )
            session.step_executions.append(execution)
            session.sort_step_executions()
        return execution

    @staticmethod
    def _ensure_temporal_ordering(execution: StepExecution):
        execution.events.sort(key=lambda e: e.timestamp)

    # Queries; every read returns sorted copies

    def get_execution_events(self, session: ContextSession, step_index: int) -> List[ExecutionEvent]:
        execution = session.get_step_execution(step_index)
        if not execution:
            return []
        return [e.model_copy(deep=True) for e in sorted(execution.events, key=lambda e: e.timestamp)]

    def get_execution_event(
        self, session: ContextSession, step_index: int, event_id: str
    ) -> Optional[ExecutionEvent]:
        for event in self.get_execution_events(session, step_index):
            if event.event_id == event_id:
                return event
        return None

    def get_events_by_time_range(
        self, session: ContextSession, step_index: int, start_time: datetime, end_time: datetime
    ) -> List[ExecutionEvent]:
        return [
            e for e in self.get_execution_events(session, step_index)
            if start_time <= e.timestamp <= end_time
        ]

    def get_events_by_executor_method(
        self, session: ContextSession, step_index: int, method: str
    ) -> List[ExecutionEvent]:
        return [e for e in self.get_execution_events(session, step_index) if e.executor_method == method]

    def get_events_with_errors(self, session: ContextSession, step_index: int) -> List[ExecutionEvent]:
        return [
            e for e in self.get_execution_events(session, step_index)
            if e.command_result and not e.command_result.success
        ]

    def get_last_event(self, session: ContextSession, step_index: int) -> Optional[ExecutionEvent]:
        events = self.get_execution_events(session, step_index)
        return events[-1] if events else None

    def get_event_statistics(self, session: ContextSession, step_index: int) -> EventStatistics:
        events = self.get_execution_events(session, step_index)

        stats = EventStatistics(total_events=len(events))
        for event in events:
            if event.command_result:
                if event.command_result.success:
                    stats.successful_events += 1
                else:
                    stats.failed_events += 1
                stats.total_duration += event.command_result.duration or 0

            stats.method_counts[event.executor_method] = stats.method_counts.get(event.executor_method, 0) + 1

        if events:
            stats.average_duration = stats.total_duration / len(events)

        return stats

    def get_execution_history(self, session: ContextSession) -> List[Dict[str, Any]]:
        return [
            {"step_index": execution.step_index, "events": self.get_execution_events(session, execution.step_index)}
            for execution in sorted(session.step_executions, key=lambda e: e.step_index)
        ]

    def get_all_events(self, session: ContextSession) -> List[ExecutionEvent]:
        events = [e for execution in session.step_executions for e in execution.events]
        return [e.model_copy(deep=True) for e in sorted(events, key=lambda e: e.timestamp)]

    def get_events_count(self, session: ContextSession) -> int:
        return sum(len(execution.events) for execution in session.step_executions)

    def filter_events_by_confidence(
        self, session: ContextSession, step_index: int, threshold: float
    ) -> List[ExecutionEvent]:
        """Events whose metadata confidence meets the threshold; events without one pass"""

        filtered = []
        for event in self.get_execution_events(session, step_index):
            confidence = event.metadata.get("confidence")
            if not isinstance(confidence, (int, float)) or confidence >= threshold:
                filtered.append(event)
        return filtered

    # Maintenance

    async def cleanup_old_events(self, session: ContextSession, retention_seconds: float) -> int:
        cutoff = datetime.utcnow() - timedelta(seconds=retention_seconds)
        cleaned = 0

        for execution in session.step_executions:
            before = len(execution.events)
            execution.events = [e for e in execution.events if e.timestamp >= cutoff]
            cleaned += before - len(execution.events)

        if cleaned:
            session.touch()
            await self._persist(self.storage.save_session(session), "save_session", session.session_id)
            logger.info("Cleaned up old events", session_id=session.session_id, count=cleaned)

        return cleaned

    def get_latest_page_dom(self, session: ContextSession, step_index: int) -> Optional[str]:
        last = self.get_last_event(session, step_index)
        return last.page_dom if last and last.page_dom else None

    def get_previous_page_dom(self, session: ContextSession, step_index: int) -> Optional[str]:
        if step_index <= 0:
            return None
        return self.get_latest_page_dom(session, step_index - 1)

    async def compress_dom_data(self, session: ContextSession) -> int:
        """Compress every stored DOM above the threshold; returns characters saved"""

        savings = 0
        for execution in session.step_executions:
            for event in execution.events:
                if event.page_dom and len(event.page_dom) > self.settings.dom_compression_threshold:
                    original_size = len(event.page_dom)
                    event.page_dom = compress_dom(event.page_dom)
                    savings += original_size - len(event.page_dom)

        if savings:
            await self._persist(self.storage.save_session(session), "save_session", session.session_id)

        return savings

    # Export

    def export_events(self, session: ContextSession, format: str = "json") -> str:
        if format == "csv":
            buffer = io.StringIO()
            writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
            writer.writerow(["event_id", "timestamp", "step_index", "executor_method", "reasoning", "success", "duration"])
            for execution in sorted(session.step_executions, key=lambda e: e.step_index):
                for event in sorted(execution.events, key=lambda e: e.timestamp):
                    result = event.command_result
                    writer.writerow([
                        event.event_id,
                        event.timestamp.isoformat(),
                        execution.step_index,
                        event.executor_method,
                        event.reasoning,
                        result.success if result else False,
                        result.duration if result else 0,
                    ])
            return buffer.getvalue().rstrip("\n")

        if format != "json":
            raise ValueError(f"Unsupported export format: {format}")

        return json.dumps(
            [e.model_dump(mode="json") for e in self.get_all_events(session)],
            indent=2,
        )

    def get_event_metrics(self, session: ContextSession) -> Dict[str, Any]:
        events = self.get_all_events(session)
        successful = len([e for e in events if e.command_result and e.command_result.success])
        total_duration = sum(e.command_result.duration for e in events if e.command_result)

        method_counts: Dict[str, int] = {}
        for event in events:
            method_counts[event.executor_method] = method_counts.get(event.executor_method, 0) + 1

        most_used = sorted(method_counts.items(), key=lambda item: item[1], reverse=True)[:5]

        return {
            "total_events": len(events),
            "events_per_step": len(events) / len(session.steps) if session.steps else 0,
            "success_rate": successful / len(events) if events else 0,
            "average_execution_time": total_duration / len(events) if events else 0,
            "most_used_methods": [{"method": m, "count": c} for m, c in most_used],
        }
