from typing import Dict, List, Any, Optional, Tuple, Union
from datetime import datetime, timedelta
import csv
import io
import json
import re
import structlog
from pydantic import ValidationError

from context_engine.domain.context.base_component import ContextComponent
from context_engine.domain.errors import InvalidInvestigation, MaxInvestigationsExceeded
from context_engine.domain.models.context_output import (
    InvestigationRecommendations,
    InvestigationStatistics,
    StorageOptimizationResult,
    TypeStatistics,
)
from context_engine.domain.models.context_session import ContextSession
from context_engine.domain.models.investigation import InvestigationResult, InvestigationType
from context_engine.infrastructure.observability.logging import ContextLogger

logger = structlog.get_logger(__name__)

MAX_STORED_DOM_LENGTH = 10000
MAX_STORED_TEXT_LENGTH = 5000
MIN_OBSERVATIONS = 3

_FIELD_ERROR_CODES = {
    "investigation_id": ("MISSING_INVESTIGATION_ID", "Investigation ID is required"),
    "investigation_type": ("INVALID_INVESTIGATION_TYPE", "Invalid investigation type"),
    "timestamp": ("INVALID_TIMESTAMP", "Investigation timestamp is invalid"),
}


class InvestigationLedger(ContextComponent):
    """Per-step record of page investigations and how well each type works"""

    def __init__(self, settings, storage):
        super().__init__(settings, storage)
        self.context_logger = ContextLogger(__name__)

    async def add_investigation_result(
        self,
        session: ContextSession,
        step_index: int,
        investigation: Union[InvestigationResult, Dict[str, Any]],
    ) -> str:
        self.validate_step_index(session, step_index)
        result = self._coerce_investigation(session, step_index, investigation)

        current = session.investigations.get(step_index, [])
        if len(current) >= self.settings.max_investigations_per_step:
            raise MaxInvestigationsExceeded(
                f"Maximum investigations per step ({self.settings.max_investigations_per_step}) exceeded",
                session_id=session.session_id,
                step_index=step_index,
                details={"current_count": len(current)},
            )

        session.investigations.setdefault(step_index, []).append(result)
        session.touch()

        await self._persist(
            self.storage.save_investigation_result(session.session_id, step_index, result),
            "save_investigation_result",
            session.session_id,
        )

        self.context_logger.log_context_update(
            session.session_id,
            "investigation",
            "add",
            {
                "step_index": step_index,
                "investigation_id": result.investigation_id,
                "type": result.investigation_type.value,
                "success": result.success,
            },
        )

        return result.investigation_id

    def _coerce_investigation(
        self, session: ContextSession, step_index: int, investigation: Union[InvestigationResult, Dict[str, Any]]
    ) -> InvestigationResult:
        """Validate caller input and return a private copy"""

        if isinstance(investigation, InvestigationResult):
            result = investigation.model_copy(deep=True)
        else:
            try:
                result = InvestigationResult.model_validate(investigation)
            except ValidationError as e:
                field = str(e.errors()[0]["loc"][0]) if e.errors() and e.errors()[0]["loc"] else ""
                code, message = _FIELD_ERROR_CODES.get(field, ("INVALID_INVESTIGATION", "Invalid investigation result"))
                raise InvalidInvestigation(
                    message,
                    code=code,
                    session_id=session.session_id,
                    step_index=step_index,
                    details={"errors": e.errors(include_url=False)},
                ) from e

        if not result.investigation_id or not result.investigation_id.strip():
            raise InvalidInvestigation(
                "Investigation ID is required",
                code="MISSING_INVESTIGATION_ID",
                session_id=session.session_id,
                step_index=step_index,
            )

        return result

    # Queries

    def get_investigation_history(self, session: ContextSession, step_index: int) -> List[InvestigationResult]:
        return [r.model_copy(deep=True) for r in session.investigations.get(step_index, [])]

    def get_investigation_by_id(
        self, session: ContextSession, step_index: int, investigation_id: str
    ) -> Optional[InvestigationResult]:
        for result in session.investigations.get(step_index, []):
            if result.investigation_id == investigation_id:
                return result.model_copy(deep=True)
        return None

    def get_investigations_by_type(
        self, session: ContextSession, step_index: int, investigation_type: InvestigationType
    ) -> List[InvestigationResult]:
        return [
            r for r in self.get_investigation_history(session, step_index)
            if r.investigation_type == investigation_type
        ]

    def get_successful_investigations(self, session: ContextSession, step_index: int) -> List[InvestigationResult]:
        return [r for r in self.get_investigation_history(session, step_index) if r.success]

    def get_failed_investigations(self, session: ContextSession, step_index: int) -> List[InvestigationResult]:
        return [r for r in self.get_investigation_history(session, step_index) if not r.success]

    # Analytics

    def get_investigation_statistics(self, session: ContextSession, step_index: int) -> InvestigationStatistics:
        investigations = session.investigations.get(step_index, [])
        successful = len([r for r in investigations if r.success])

        by_type: Dict[str, TypeStatistics] = {}
        for investigation_type in InvestigationType:
            of_type = [r for r in investigations if r.investigation_type == investigation_type]
            type_successful = len([r for r in of_type if r.success])
            by_type[investigation_type.value] = TypeStatistics(
                total=len(of_type),
                successful=type_successful,
                success_rate=type_successful / len(of_type) if of_type else 0.0,
            )

        durations = [
            r.metadata["duration"] for r in investigations
            if isinstance(r.metadata.get("duration"), (int, float))
        ]

        return InvestigationStatistics(
            total_investigations=len(investigations),
            successful_investigations=successful,
            failed_investigations=len(investigations) - successful,
            success_rate=successful / len(investigations) if investigations else 0.0,
            average_duration=sum(durations) / len(durations) if durations else 0.0,
            by_type=by_type,
        )

    def get_most_effective_investigation_type(
        self, session: ContextSession, step_index: int
    ) -> Optional[InvestigationType]:
        """Type with the best frequency-weighted success score; None without any success"""

        stats = self.get_investigation_statistics(session, step_index)
        if stats.successful_investigations == 0:
            return None

        best_type = None
        best_score = 0.0
        for investigation_type in InvestigationType:
            type_stats = stats.by_type[investigation_type.value]
            if type_stats.total == 0:
                continue
            score = type_stats.success_rate * 0.8 + (type_stats.total / stats.total_investigations) * 0.2
            if score > best_score:
                best_score = score
                best_type = investigation_type

        return best_type

    def get_investigation_recommendations(
        self, session: ContextSession, step_index: int
    ) -> InvestigationRecommendations:
        stats = self.get_investigation_statistics(session, step_index)

        recommended: List[str] = []
        avoid: List[str] = []
        for type_name, type_stats in stats.by_type.items():
            if type_stats.total < MIN_OBSERVATIONS:
                continue
            if type_stats.success_rate >= 0.7:
                recommended.append(type_name)
            elif type_stats.success_rate <= 0.3:
                avoid.append(type_name)

        recommended.sort(key=lambda t: stats.by_type[t].success_rate, reverse=True)
        avoid.sort(key=lambda t: stats.by_type[t].success_rate)

        reasoning = "Based on investigation history: "
        if recommended:
            rate = round(stats.by_type[recommended[0]].success_rate * 100)
            reasoning += f"Recommended types have shown {rate}%+ success rate. "
        if avoid:
            rate = round(stats.by_type[avoid[0]].success_rate * 100)
            reasoning += f"Avoid types with {rate}%- success rate."
        if not recommended and not avoid:
            reasoning += "Insufficient data for specific recommendations."

        return InvestigationRecommendations(recommended=recommended, avoid=avoid, reasoning=reasoning.strip())

    def search_investigation_results(
        self,
        session: ContextSession,
        step_index: int,
        investigation_type: Optional[InvestigationType] = None,
        success: Optional[bool] = None,
        text_pattern: Optional[str] = None,
        time_range: Optional[Tuple[datetime, datetime]] = None,
    ) -> List[InvestigationResult]:
        """Filter a step's investigations; newest first"""

        results = self.get_investigation_history(session, step_index)

        if investigation_type:
            results = [r for r in results if r.investigation_type == investigation_type]

        if success is not None:
            results = [r for r in results if r.success == success]

        if text_pattern:
            regex = re.compile(text_pattern, re.IGNORECASE)
            results = [
                r for r in results
                if any(
                    regex.search(text or "")
                    for text in (r.output.text_content, r.output.summary, r.output.visual_description)
                )
            ]

        if time_range:
            start_time, end_time = time_range
            results = [r for r in results if start_time <= r.timestamp <= end_time]

        return sorted(results, key=lambda r: r.timestamp, reverse=True)

    # Maintenance

    async def cleanup_old_investigations(self, session: ContextSession, retention_seconds: float) -> int:
        """Drop investigations older than the retention window, in memory and in storage"""

        cutoff = datetime.utcnow() - timedelta(seconds=retention_seconds)
        cleaned = 0

        for step_index, results in list(session.investigations.items()):
            kept = [r for r in results if r.timestamp >= cutoff]
            if len(kept) < len(results):
                session.investigations[step_index] = kept
                cleaned += len(results) - len(kept)
                await self._persist(
                    self.storage.replace_investigation_results(session.session_id, step_index, kept),
                    "replace_investigation_results",
                    session.session_id,
                )

        if cleaned:
            session.touch()
            logger.info("Cleaned up old investigations", session_id=session.session_id, count=cleaned)

        return cleaned

    async def optimize_investigation_storage(self, session: ContextSession) -> StorageOptimizationResult:
        """Lossy pass: drop large DOM payloads and truncate long text"""

        original_size = 0
        optimized_size = 0
        optimized_items = 0

        for step_index, results in session.investigations.items():
            for result in results:
                original_size += len(result.model_dump_json())
                changed = False

                dom = result.output.dom_content
                if dom and len(dom) > MAX_STORED_DOM_LENGTH:
                    result.output.dom_content = None
                    if not result.output.summary:
                        result.output.summary = f"DOM content removed ({len(dom)} characters)"
                    changed = True

                text = result.output.text_content
                if text and len(text) > MAX_STORED_TEXT_LENGTH:
                    result.output.text_content = text[:MAX_STORED_TEXT_LENGTH] + "..."
                    changed = True

                optimized_size += len(result.model_dump_json())

                if changed:
                    optimized_items += 1
                    await self._persist(
                        self.storage.save_investigation_result(session.session_id, step_index, result),
                        "save_investigation_result",
                        session.session_id,
                    )

        return StorageOptimizationResult(
            original_size=original_size,
            optimized_size=optimized_size,
            savings=original_size - optimized_size,
            optimized_items=optimized_items,
        )

    # Export and reporting

    def export_investigation_history(
        self, session: ContextSession, step_index: Optional[int] = None, format: str = "json"
    ) -> str:
        if step_index is not None:
            items = [(step_index, r) for r in session.investigations.get(step_index, [])]
        else:
            items = [
                (index, r)
                for index in sorted(session.investigations)
                for r in session.investigations[index]
            ]

        if format == "csv":
            buffer = io.StringIO()
            writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
            writer.writerow([
                "step_index", "investigation_id", "type", "timestamp", "success",
                "text_content", "summary", "visual_description", "error",
            ])
            for index, r in items:
                writer.writerow([
                    index,
                    r.investigation_id,
                    r.investigation_type.value,
                    r.timestamp.isoformat(),
                    r.success,
                    r.output.text_content or "",
                    r.output.summary or "",
                    r.output.visual_description or "",
                    r.error or "",
                ])
            return buffer.getvalue().rstrip("\n")

        if format != "json":
            raise ValueError(f"Unsupported export format: {format}")

        return json.dumps(
            [{"step_index": index, "investigation": r.model_dump(mode="json")} for index, r in items],
            indent=2,
        )

    def generate_investigation_report(self, session: ContextSession) -> Dict[str, Any]:
        total_steps = len(session.steps)
        steps_with_investigations = len([k for k, v in session.investigations.items() if v])

        type_usage = {t.value: {"total": 0, "successful": 0} for t in InvestigationType}
        total_investigations = 0
        total_successful = 0
        step_details = []

        for i in range(total_steps):
            results = session.investigations.get(i, [])
            successful = len([r for r in results if r.success])
            total_investigations += len(results)
            total_successful += successful

            for r in results:
                type_usage[r.investigation_type.value]["total"] += 1
                if r.success:
                    type_usage[r.investigation_type.value]["successful"] += 1

            most_effective = self.get_most_effective_investigation_type(session, i)
            step_details.append({
                "step_index": i,
                "step_name": session.steps[i],
                "investigations": len(results),
                "success_rate": successful / len(results) if results else 0,
                "most_effective_type": most_effective.value if most_effective else None,
            })

        type_analysis = {
            type_name: {
                "total_usage": usage["total"],
                "success_rate": usage["successful"] / usage["total"] if usage["total"] else 0,
                "average_per_step": usage["total"] / steps_with_investigations if steps_with_investigations else 0,
            }
            for type_name, usage in type_usage.items()
        }

        return {
            "summary": {
                "total_steps": total_steps,
                "steps_with_investigations": steps_with_investigations,
                "total_investigations": total_investigations,
                "overall_success_rate": total_successful / total_investigations if total_investigations else 0,
            },
            "step_details": step_details,
            "type_analysis": type_analysis,
        }
