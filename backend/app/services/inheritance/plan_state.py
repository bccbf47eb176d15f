"""
Inheritance Plan State Machine

Deterministic, derived state for an InheritancePlan.
States are never stored as a column: they are read off the plan's flags
and its trigger history, so there is one source of truth.

    dormant --(condition met)--> triggered --(dispatch complete)--> disposed
    dormant --(death observed)--> awaiting_verification --(verified)--> triggered
    dormant --(user deactivates)--> deactivated

triggered and disposed never revert.
"""
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ...models.db_models import TriggerStatus


class PlanState(str, Enum):
    DORMANT = "dormant"
    AWAITING_VERIFICATION = "awaiting_verification"
    TRIGGERED = "triggered"
    DISPOSED = "disposed"
    DEACTIVATED = "deactivated"


# =============================================================================
# STATE CONFIGURATION
# =============================================================================
#
# entry_authority names who may move a plan INTO the state:
# - USER: the owner, while alive
# - SYSTEM: the batch evaluator / orchestrator
# - VERIFIER: the external death-certificate verification collaborator
#
# =============================================================================

PLAN_STATE_CONFIG = {
    PlanState.DORMANT: {
        "description": "Plan configured, activation condition not yet met",
        "allowed_transitions": [
            PlanState.TRIGGERED,
            PlanState.AWAITING_VERIFICATION,
            PlanState.DEACTIVATED,
        ],
        "reversible": True,
        "entry_authority": "USER",
    },
    PlanState.AWAITING_VERIFICATION: {
        "description": "Death reported, waiting for external verification",
        "allowed_transitions": [PlanState.TRIGGERED, PlanState.DORMANT],  # DORMANT on cancel
        "reversible": True,
        "entry_authority": "SYSTEM",
    },
    PlanState.TRIGGERED: {
        "description": "Plan activated, dispositions and grants in progress",
        "allowed_transitions": [PlanState.DISPOSED],
        "reversible": False,
        "entry_authority": "SYSTEM",
    },
    PlanState.DISPOSED: {
        "description": "All vault dispositions and heir grants complete",
        "allowed_transitions": [],  # Terminal state
        "reversible": False,
        "entry_authority": "SYSTEM",
    },
    PlanState.DEACTIVATED: {
        "description": "Owner deactivated the plan before it triggered",
        "allowed_transitions": [],  # Terminal for the engine
        "reversible": False,
        "entry_authority": "USER",
    },
}


def derive_state(plan, triggers: Optional[Iterable[Any]] = None) -> PlanState:
    """Read the state off a plan and (optionally) its trigger rows."""
    if plan.is_triggered:
        if plan.disposed_at is not None:
            return PlanState.DISPOSED
        return PlanState.TRIGGERED

    if not plan.is_active:
        return PlanState.DEACTIVATED

    if triggers is None:
        triggers = plan.triggers or []
    for trigger in triggers:
        if trigger.status == TriggerStatus.PENDING and trigger.requires_verification:
            return PlanState.AWAITING_VERIFICATION

    return PlanState.DORMANT


def can_transition(from_state: PlanState, to_state: PlanState) -> Tuple[bool, str]:
    """
    Check if a state transition is allowed.

    Returns (allowed, reason)
    """
    allowed_transitions = PLAN_STATE_CONFIG[from_state]["allowed_transitions"]
    if to_state in allowed_transitions:
        return True, "Transition allowed"
    return False, f"Cannot transition from {from_state.value} to {to_state.value}"


def is_terminal_state(state: PlanState) -> bool:
    return len(PLAN_STATE_CONFIG[state]["allowed_transitions"]) == 0


def get_next_states(state: PlanState) -> List[PlanState]:
    return list(PLAN_STATE_CONFIG[state]["allowed_transitions"])


def describe(plan, triggers: Optional[Iterable[Any]] = None) -> Dict[str, Any]:
    """State summary for API responses, with the trigger history."""
    triggers = list(plan.triggers or []) if triggers is None else list(triggers)
    state = derive_state(plan, triggers)
    config = PLAN_STATE_CONFIG[state]
    return {
        "plan_id": plan.id,
        "state": state.value,
        "description": config["description"],
        "terminal": is_terminal_state(state),
        "next_states": [s.value for s in get_next_states(state)],
        "triggered_at": plan.triggered_at.isoformat() if plan.triggered_at else None,
        "disposed_at": plan.disposed_at.isoformat() if plan.disposed_at else None,
        "triggers": [
            {
                "id": t.id,
                "status": getattr(t.status, "value", t.status),
                "trigger_reason": getattr(t.trigger_reason, "value", t.trigger_reason),
                "requires_verification": t.requires_verification,
                "verified_at": t.verified_at.isoformat() if t.verified_at else None,
            }
            for t in triggers
        ],
    }
