"""
State Manager - validates status transitions of workflow entities
"""
from enum import Enum

from app.core.exceptions import InvalidStateTransitionError
from app.core.logging import get_logger
from app.state_machine.states import EntityType, TRANSITION_TABLES

logger = get_logger(__name__)


def _value(state: "str | Enum") -> str:
    return state.value if isinstance(state, Enum) else str(state)


class StateManager:
    """Stateless guard over the transition tables in states.py"""

    def allowed_targets(self, entity_type: EntityType, current: "str | Enum") -> list[str]:
        state_enum, transitions = TRANSITION_TABLES[entity_type]
        try:
            current_state = state_enum(_value(current))
        except ValueError:
            return []
        return [s.value for s in transitions.get(current_state, [])]

    def is_valid_transition(
        self,
        entity_type: EntityType,
        current: "str | Enum",
        target: "str | Enum"
    ) -> bool:
        return _value(target) in self.allowed_targets(entity_type, current)

    def is_terminal(self, entity_type: EntityType, state: "str | Enum") -> bool:
        return not self.allowed_targets(entity_type, state)

    def ensure_transition(
        self,
        entity_type: EntityType,
        current: "str | Enum",
        target: "str | Enum",
        entity_id: int | None = None
    ) -> None:
        """Raise InvalidStateTransitionError unless current -> target is listed"""
        if self.is_valid_transition(entity_type, current, target):
            return

        logger.warning(
            "Invalid state transition attempted",
            extra_data={
                "entity_type": entity_type.value,
                "entity_id": entity_id,
                "current_state": _value(current),
                "target_state": _value(target)
            }
        )
        raise InvalidStateTransitionError(
            entity_type.value, _value(current), _value(target), entity_id=entity_id
        )


state_manager = StateManager()
