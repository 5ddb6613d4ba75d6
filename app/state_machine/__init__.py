"""
State Machine Module for marketplace jobs, applications and auto-topup policies
"""
from app.state_machine.states import (
    EntityType,
    JOB_TRANSITIONS,
    APPLICATION_TRANSITIONS,
    AUTO_TOPUP_TRANSITIONS,
)
from app.state_machine.manager import StateManager, state_manager

__all__ = [
    "EntityType",
    "JOB_TRANSITIONS",
    "APPLICATION_TRANSITIONS",
    "AUTO_TOPUP_TRANSITIONS",
    "StateManager",
    "state_manager",
]
