from typing import Dict, List, Any, Optional, Union
import csv
import io
import json
import re
import structlog
from pydantic import ValidationError

from context_engine.domain.context.base_component import ContextComponent
from context_engine.domain.errors import InvalidDiscovery
from context_engine.domain.models.context_output import (
    DiscoveryStatistics,
    OptimizedSelector,
    SelectorValidation,
)
from context_engine.domain.models.context_session import ContextSession
from context_engine.domain.models.investigation import (
    DuplicateDiscoveryGroup,
    ElementDiscovery,
    ElementProperties,
    InvestigationType,
    SelectorRanking,
)
from context_engine.infrastructure.observability.logging import ContextLogger

logger = structlog.get_logger(__name__)

MAX_SELECTOR_LENGTH = 200
MAX_SELECTOR_SPECIFICITY = 5

_FRAGILE_PATTERNS = [
    re.compile(r"nth-child\(\d+\)"),
    re.compile(r"nth-of-type\(\d+\)"),
    re.compile(r":contains\("),
]

_FIELD_ERROR_CODES = {
    "discovery_id": ("MISSING_DISCOVERY_ID", "Discovery ID is required"),
    "selector": ("INVALID_SELECTOR", "Valid selector string is required"),
    "confidence": ("INVALID_CONFIDENCE", "Confidence must be between 0 and 1"),
    "discovery_method": ("INVALID_DISCOVERY_METHOD", "Invalid discovery method"),
}


def _by_confidence(discoveries: List[ElementDiscovery]) -> List[ElementDiscovery]:
    return sorted(discoveries, key=lambda d: d.confidence, reverse=True)


class ElementDiscoveryRegistry(ContextComponent):
    """Candidate selectors per step, merged on (selector, element type)"""

    def __init__(self, settings, storage):
        super().__init__(settings, storage)
        self.context_logger = ContextLogger(__name__)

    async def add_page_element_discovery(
        self,
        session: ContextSession,
        step_index: int,
        discovery: Union[ElementDiscovery, Dict[str, Any]],
    ) -> ElementDiscovery:
        """Store a discovery, merging it into an existing record when one matches"""

        self.validate_step_index(session, step_index)
        incoming = self._coerce_discovery(session, step_index, discovery)

        discoveries = session.element_discoveries.setdefault(step_index, [])
        existing = next(
            (
                d for d in discoveries
                if d.selector == incoming.selector and d.element_type == incoming.element_type
            ),
            None,
        )

        if existing:
            weight = self.settings.discovery_merge_weight
            existing.confidence = existing.confidence * (1 - weight) + incoming.confidence * weight
            existing.timestamp = incoming.timestamp
            existing.is_reliable = existing.confidence >= self.settings.reliability_threshold
            existing.metadata = {**existing.metadata, **incoming.metadata}
            existing.properties = ElementProperties.model_validate({
                **existing.properties.model_dump(),
                **incoming.properties.model_dump(exclude_unset=True),
            })
            stored = existing
            action = "merge"
        else:
            incoming.is_reliable = incoming.confidence >= self.settings.reliability_threshold
            discoveries.append(incoming)
            stored = incoming
            action = "add"

        session.touch()

        await self._persist(
            self.storage.save_element_discovery(session.session_id, step_index, stored),
            "save_element_discovery",
            session.session_id,
        )

        self.context_logger.log_context_update(
            session.session_id,
            "element_discovery",
            action,
            {"step_index": step_index, "selector": stored.selector, "confidence": round(stored.confidence, 4)},
        )

        return stored.model_copy(deep=True)

    def _coerce_discovery(
        self, session: ContextSession, step_index: int, discovery: Union[ElementDiscovery, Dict[str, Any]]
    ) -> ElementDiscovery:
        if isinstance(discovery, ElementDiscovery):
            result = discovery.model_copy(deep=True)
        else:
            try:
                result = ElementDiscovery.model_validate(discovery)
            except ValidationError as e:
                errors = e.errors(include_url=False)
                field = str(errors[0]["loc"][0]) if errors and errors[0]["loc"] else ""
                code, message = _FIELD_ERROR_CODES.get(field, ("INVALID_SELECTOR", "Invalid element discovery"))
                raise InvalidDiscovery(
                    message,
                    code=code,
                    session_id=session.session_id,
                    step_index=step_index,
                    details={"errors": errors},
                ) from e

        if not result.discovery_id or not result.discovery_id.strip():
            raise InvalidDiscovery(
                "Discovery ID is required",
                code="MISSING_DISCOVERY_ID",
                session_id=session.session_id,
                step_index=step_index,
            )

        if not result.selector or not result.selector.strip():
            raise InvalidDiscovery(
                "Valid selector string is required",
                code="INVALID_SELECTOR",
                session_id=session.session_id,
                step_index=step_index,
                details={"selector": result.selector},
            )

        if not 0 <= result.confidence <= 1:
            raise InvalidDiscovery(
                "Confidence must be between 0 and 1",
                code="INVALID_CONFIDENCE",
                session_id=session.session_id,
                step_index=step_index,
                details={"confidence": result.confidence},
            )

        return result

    # Lookups

    def get_page_elements_discovered(self, session: ContextSession, step_index: int) -> List[ElementDiscovery]:
        return [d.model_copy(deep=True) for d in session.element_discoveries.get(step_index, [])]

    def get_element_discovery_by_selector(
        self, session: ContextSession, step_index: int, selector: str
    ) -> Optional[ElementDiscovery]:
        for discovery in session.element_discoveries.get(step_index, []):
            if discovery.selector == selector:
                return discovery.model_copy(deep=True)
        return None

    def get_all_element_discoveries(self, session: ContextSession) -> List[Dict[str, Any]]:
        return [
            {"step_index": step_index, "discoveries": self.get_page_elements_discovered(session, step_index)}
            for step_index in sorted(session.element_discoveries)
        ]

    # Filters, highest confidence first

    def get_reliable_element_discoveries(self, session: ContextSession, step_index: int) -> List[ElementDiscovery]:
        return _by_confidence([d for d in self.get_page_elements_discovered(session, step_index) if d.is_reliable])

    def get_element_discoveries_by_type(
        self, session: ContextSession, step_index: int, element_type: str
    ) -> List[ElementDiscovery]:
        return _by_confidence([
            d for d in self.get_page_elements_discovered(session, step_index)
            if d.element_type == element_type
        ])

    def get_element_discoveries_by_method(
        self, session: ContextSession, step_index: int, method: InvestigationType
    ) -> List[ElementDiscovery]:
        return _by_confidence([
            d for d in self.get_page_elements_discovered(session, step_index)
            if d.discovery_method == method
        ])

    def get_interactable_elements(self, session: ContextSession, step_index: int) -> List[ElementDiscovery]:
        return _by_confidence([
            d for d in self.get_page_elements_discovered(session, step_index)
            if d.properties.is_interactable
        ])

    def get_visible_elements(self, session: ContextSession, step_index: int) -> List[ElementDiscovery]:
        return _by_confidence([
            d for d in self.get_page_elements_discovered(session, step_index)
            if d.properties.is_visible
        ])

    def get_discovery_statistics(self, session: ContextSession, step_index: int) -> DiscoveryStatistics:
        discoveries = session.element_discoveries.get(step_index, [])
        if not discoveries:
            return DiscoveryStatistics(by_discovery_method={m.value: 0 for m in InvestigationType})

        reliable = len([d for d in discoveries if d.is_reliable])

        by_element_type: Dict[str, int] = {}
        for d in discoveries:
            by_element_type[d.element_type] = by_element_type.get(d.element_type, 0) + 1

        return DiscoveryStatistics(
            total_discoveries=len(discoveries),
            reliable_discoveries=reliable,
            interactable_discoveries=len([d for d in discoveries if d.properties.is_interactable]),
            visible_discoveries=len([d for d in discoveries if d.properties.is_visible]),
            average_confidence=sum(d.confidence for d in discoveries) / len(discoveries),
            by_element_type=by_element_type,
            by_discovery_method={
                m.value: len([d for d in discoveries if d.discovery_method == m]) for m in InvestigationType
            },
            reliability_rate=reliable / len(discoveries),
        )

    def search_element_discoveries(
        self,
        session: ContextSession,
        step_index: int,
        selector: Optional[str] = None,
        element_type: Optional[str] = None,
        tag_name: Optional[str] = None,
        text_content: Optional[str] = None,
        min_confidence: Optional[float] = None,
        is_reliable: Optional[bool] = None,
        is_interactable: Optional[bool] = None,
        is_visible: Optional[bool] = None,
        discovery_method: Optional[InvestigationType] = None,
    ) -> List[ElementDiscovery]:
        """Filter a step's discoveries; selector and text are case-insensitive regexes"""

        results = self.get_page_elements_discovered(session, step_index)

        if selector:
            regex = re.compile(selector, re.IGNORECASE)
            results = [d for d in results if regex.search(d.selector)]
        if element_type:
            results = [d for d in results if d.element_type == element_type]
        if tag_name:
            results = [d for d in results if d.properties.tag_name.lower() == tag_name.lower()]
        if text_content:
            regex = re.compile(text_content, re.IGNORECASE)
            results = [d for d in results if d.properties.text_content and regex.search(d.properties.text_content)]
        if min_confidence is not None:
            results = [d for d in results if d.confidence >= min_confidence]
        if is_reliable is not None:
            results = [d for d in results if d.is_reliable == is_reliable]
        if is_interactable is not None:
            results = [d for d in results if d.properties.is_interactable == is_interactable]
        if is_visible is not None:
            results = [d for d in results if d.properties.is_visible == is_visible]
        if discovery_method:
            results = [d for d in results if d.discovery_method == discovery_method]

        return _by_confidence(results)

    # Selector analysis

    def _group_by_selector(self, session: ContextSession, step_index: int) -> Dict[str, List[ElementDiscovery]]:
        groups: Dict[str, List[ElementDiscovery]] = {}
        for discovery in self.get_page_elements_discovered(session, step_index):
            groups.setdefault(discovery.selector, []).append(discovery)
        return groups

    def find_best_selectors(self, session: ContextSession, step_index: int) -> List[SelectorRanking]:
        rankings = []
        for selector, group in self._group_by_selector(session, step_index).items():
            confidence = sum(d.confidence for d in group) / len(group)
            latest = max(group, key=lambda d: d.timestamp)
            methods = list(dict.fromkeys(d.discovery_method for d in group))
            rankings.append(SelectorRanking(
                selector=selector,
                confidence=confidence,
                discovery_methods=methods,
                element_type=latest.element_type,
                is_reliable=confidence >= self.settings.reliability_threshold,
                discovery_count=len(group),
            ))
        return sorted(rankings, key=lambda r: r.confidence, reverse=True)

    def find_duplicate_discoveries(self, session: ContextSession, step_index: int) -> List[DuplicateDiscoveryGroup]:
        duplicates = []
        for selector, group in self._group_by_selector(session, step_index).items():
            if len(group) < 2:
                continue

            latest = max(group, key=lambda d: d.timestamp)
            confidence = sum(d.confidence for d in group) / len(group)
            merged = latest.model_copy(deep=True, update={
                "confidence": confidence,
                "is_reliable": confidence >= self.settings.reliability_threshold,
                "metadata": {
                    **latest.metadata,
                    "merged_from": len(group),
                    "discovery_methods": [m.value for m in dict.fromkeys(d.discovery_method for d in group)],
                },
            })
            duplicates.append(DuplicateDiscoveryGroup(selector=selector, discoveries=group, suggested_merge=merged))

        return duplicates

    @staticmethod
    def validate_element_selector(selector: str) -> SelectorValidation:
        issues: List[str] = []
        suggestions: List[str] = []
        is_valid = True

        if not selector or not selector.strip():
            return SelectorValidation(is_valid=False, issues=["Selector is empty"])

        if selector.count("[") != selector.count("]") or selector.count("(") != selector.count(")"):
            is_valid = False
            issues.append("Invalid CSS selector syntax")

        if len(selector) > MAX_SELECTOR_LENGTH:
            issues.append("Selector is very long and may be fragile")
            suggestions.append("Prefer a shorter selector anchored on an ID or stable attribute")

        if any(pattern.search(selector) for pattern in _FRAGILE_PATTERNS):
            issues.append("Selector contains fragile patterns that may break with page changes")
            suggestions.append("Avoid positional pseudo-classes and text matching")

        specificity = len(re.findall(r"[#.]", selector)) + len(re.findall(r"\s", selector))
        if specificity > MAX_SELECTOR_SPECIFICITY:
            issues.append("Selector may be overly specific")
            suggestions.append("Drop intermediate ancestors from the selector")

        return SelectorValidation(is_valid=is_valid, issues=issues, suggestions=suggestions)

    @staticmethod
    def optimize_selector(discovery: ElementDiscovery) -> OptimizedSelector:
        """Prefer ID or class selectors over long descendant chains"""

        original = discovery.selector
        optimized = original
        change = 0.0
        changes: List[str] = []

        parts = original.split(" ")
        if len(parts) > 3:
            optimized = " ".join(parts[-2:])
            change = -0.1
            changes = ["Simplified descendant selector"]

        if "[" in original:
            element_id = discovery.properties.attributes.get("id")
            class_name = discovery.properties.attributes.get("class")
            if element_id and "#" not in original:
                optimized = f"#{element_id}"
                change = 0.2
                changes = ["Converted to ID selector"]
            elif class_name and "." not in original:
                optimized = f".{class_name.split()[0]}"
                change = 0.1
                changes = ["Converted to class selector"]

        return OptimizedSelector(selector=optimized, confidence=discovery.confidence + change, changes=changes)

    # Export

    def export_element_discoveries(
        self, session: ContextSession, step_index: Optional[int] = None, format: str = "json"
    ) -> str:
        if step_index is not None:
            items = [(step_index, d) for d in session.element_discoveries.get(step_index, [])]
        else:
            items = [
                (index, d)
                for index in sorted(session.element_discoveries)
                for d in session.element_discoveries[index]
            ]

        if format == "csv":
            buffer = io.StringIO()
            writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
            writer.writerow([
                "step_index", "discovery_id", "selector", "element_type", "tag_name", "confidence",
                "is_reliable", "is_visible", "is_interactable", "text_content", "discovery_method", "timestamp",
            ])
            for index, d in items:
                writer.writerow([
                    index,
                    d.discovery_id,
                    d.selector,
                    d.element_type,
                    d.properties.tag_name,
                    d.confidence,
                    d.is_reliable,
                    d.properties.is_visible,
                    d.properties.is_interactable,
                    d.properties.text_content or "",
                    d.discovery_method.value,
                    d.timestamp.isoformat(),
                ])
            return buffer.getvalue().rstrip("\n")

        if format != "json":
            raise ValueError(f"Unsupported export format: {format}")

        return json.dumps(
            [{"step_index": index, "discovery": d.model_dump(mode="json")} for index, d in items],
            indent=2,
        )
