"""Flow Selector: picks which flow definition(s) run for a trigger."""

from typing import Dict, List, Optional

from ..models.core import FlowDefinition, SelectionStrategy, utcnow
from .exceptions import NotFoundError, ValidationError
from .logging import get_logger
from .repository import FlowRepository

logger = get_logger(__name__)

STRATEGY_DESCRIPTIONS = {
    SelectionStrategy.DEFAULT_FIRST: ("Default first", "Run the flow marked as default for the robot and trigger"),
    SelectionStrategy.HIGHEST_PRIORITY: ("Highest priority", "Run the single matching flow with the highest priority"),
    SelectionStrategy.ALL_MATCHED: ("All matched", "Run every matching flow, highest priority first"),
    SelectionStrategy.SINGLE: ("Single", "Run one explicitly named flow"),
}


def _priority_order(candidates: List[FlowDefinition]) -> List[FlowDefinition]:
    """Priority descending, oldest first on ties."""
    return sorted(candidates, key=lambda d: (-d.priority, d.created_at))


class FlowSelector:
    """Selects flow definitions for a trigger using pluggable strategies."""

    def __init__(self, repository: FlowRepository):
        self.repository = repository
        self._strategies = {
            SelectionStrategy.DEFAULT_FIRST: self._select_default_first,
            SelectionStrategy.HIGHEST_PRIORITY: self._select_highest_priority,
            SelectionStrategy.ALL_MATCHED: self._select_all_matched,
            SelectionStrategy.SINGLE: self._select_single,
        }

    def get_candidates(self, robot_id: Optional[str], trigger_type: str) -> List[FlowDefinition]:
        """Active definitions for the trigger whose robot binding is unset or equals ``robot_id``."""
        return [
            definition for definition in self.repository.find_active_definitions(trigger_type)
            if definition.robot_binding is None or definition.robot_binding == robot_id
        ]

    def select_flows(
        self,
        robot_id: Optional[str],
        trigger_type: str,
        strategy: SelectionStrategy = SelectionStrategy.DEFAULT_FIRST,
        flow_id: Optional[str] = None,
    ) -> List[FlowDefinition]:
        """
        Select the flow definitions to run for a trigger.

        Args:
            robot_id: Robot the trigger came from; None matches only unbound flows
            trigger_type: Event class, e.g. ``webhook`` or ``message``
            strategy: Selection strategy
            flow_id: Explicit definition id, required by ``SINGLE``

        Returns:
            Selected definitions, possibly empty

        Raises:
            ValidationError: If the strategy is unknown or ``SINGLE`` lacks a flow id
        """
        try:
            strategy = SelectionStrategy(strategy)
        except ValueError:
            raise ValidationError(f"Unknown selection strategy: {strategy}")

        candidates = self.get_candidates(robot_id, trigger_type)
        selected = self._strategies[strategy](candidates, flow_id)
        logger.info(
            f"Selected {len(selected)} of {len(candidates)} candidate flows for robot={robot_id} "
            f"trigger={trigger_type} strategy={strategy.value}"
        )
        return selected

    def _select_default_first(self, candidates: List[FlowDefinition], flow_id: Optional[str]) -> List[FlowDefinition]:
        defaults = [definition for definition in candidates if definition.is_default]
        if not defaults:
            return []
        if len(defaults) > 1:
            logger.warning(f"{len(defaults)} default flows match; using the most recently created one")
        return [max(defaults, key=lambda d: d.created_at)]

    def _select_highest_priority(self, candidates: List[FlowDefinition], flow_id: Optional[str]) -> List[FlowDefinition]:
        return _priority_order(candidates)[:1]

    def _select_all_matched(self, candidates: List[FlowDefinition], flow_id: Optional[str]) -> List[FlowDefinition]:
        return _priority_order(candidates)

    def _select_single(self, candidates: List[FlowDefinition], flow_id: Optional[str]) -> List[FlowDefinition]:
        if not flow_id:
            raise ValidationError("The single strategy requires a flow id")
        return [definition for definition in candidates if definition.id == flow_id]

    def get_default_flow(self, robot_id: Optional[str], trigger_type: str) -> Optional[FlowDefinition]:
        """Default flow for a robot and trigger, or None."""
        selected = self.select_flows(robot_id, trigger_type, SelectionStrategy.DEFAULT_FIRST)
        return selected[0] if selected else None

    def set_default_flow(self, flow_id: str, robot_id: Optional[str] = None) -> FlowDefinition:
        """Mark a flow as default, clearing other defaults with the same trigger and robot scope.

        Raises:
            NotFoundError: If the flow does not exist
        """
        definition = self.repository.get_definition(flow_id)
        if definition is None:
            raise NotFoundError(f"Flow definition '{flow_id}' not found", resource="flow_definition",
                                resource_id=flow_id)

        scope = robot_id if robot_id is not None else definition.robot_binding
        for other in self.repository.find_active_definitions(definition.trigger_type):
            if other.id != flow_id and other.is_default and other.robot_binding == scope:
                self.repository.update_definition(
                    other.model_copy(update={"is_default": False, "updated_at": utcnow()}))
                logger.info(f"Cleared default flag on flow {other.id}")

        updates = {"is_default": True, "updated_at": utcnow()}
        if robot_id is not None and definition.robot_binding is None:
            updates["robot_id"] = robot_id
        updated = self.repository.update_definition(definition.model_copy(update=updates))
        logger.info(f"Flow {flow_id} is now the default for robot={scope} trigger={definition.trigger_type}")
        return updated

    def get_available_strategies(self) -> List[Dict[str, str]]:
        return [
            {"value": strategy.value, "label": label, "description": description}
            for strategy, (label, description) in STRATEGY_DESCRIPTIONS.items()
        ]
