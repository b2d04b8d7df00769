import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from globe.clock import iso, utcnow
from webapp.services.gateway import DataGateway

logger = logging.getLogger(__name__)

SETTING_CATEGORY = "safety_switch"

ACTIONS = (
    "disable_city",
    "enable_city",
    "disable_category",
    "enable_category",
    "disable_global",
    "enable_global",
)


@dataclass
class SafetyState:
    """Kill switch for globe rendering: whole platform, per city, or per category."""

    disabled_cities: List[str] = field(default_factory=list)
    disabled_categories: List[str] = field(default_factory=list)
    global_disabled: bool = False

    @classmethod
    def from_value(cls, value: Optional[Dict[str, Any]]) -> "SafetyState":
        if not isinstance(value, dict):
            return cls()
        return cls(
            disabled_cities=[str(c).lower() for c in value.get("disabled_cities") or []],
            disabled_categories=[str(c).lower() for c in value.get("disabled_categories") or []],
            global_disabled=bool(value.get("global_disabled")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "disabled_cities": list(self.disabled_cities),
            "disabled_categories": list(self.disabled_categories),
            "global_disabled": self.global_disabled,
        }

    def is_disabled(self, city: Optional[str] = None, category: Optional[str] = None) -> bool:
        if self.global_disabled:
            return True
        if city and city.lower() in self.disabled_cities:
            return True
        if category and category.lower() in self.disabled_categories:
            return True
        return False


def is_disabled(state: SafetyState, city: Optional[str] = None, category: Optional[str] = None) -> bool:
    return state.is_disabled(city=city, category=category)


def _add(items: List[str], target: Optional[str]) -> List[str]:
    val = (target or "").strip().lower()
    if not val or val in items:
        return list(items)
    return [*items, val]


def _remove(items: List[str], target: Optional[str]) -> List[str]:
    val = (target or "").strip().lower()
    return [i for i in items if i != val]


def apply_action(state: SafetyState, action: str, target: Optional[str] = None) -> SafetyState:
    """Return a new state with the action applied."""
    if action == "disable_city":
        return SafetyState(_add(state.disabled_cities, target), list(state.disabled_categories), state.global_disabled)
    if action == "enable_city":
        return SafetyState(_remove(state.disabled_cities, target), list(state.disabled_categories), state.global_disabled)
    if action == "disable_category":
        return SafetyState(list(state.disabled_cities), _add(state.disabled_categories, target), state.global_disabled)
    if action == "enable_category":
        return SafetyState(list(state.disabled_cities), _remove(state.disabled_categories, target), state.global_disabled)
    if action == "disable_global":
        return SafetyState(list(state.disabled_cities), list(state.disabled_categories), True)
    if action == "enable_global":
        return SafetyState(list(state.disabled_cities), list(state.disabled_categories), False)
    raise ValueError("Invalid action")


async def load_state(gw: DataGateway) -> SafetyState:
    return SafetyState.from_value(await gw.get_setting(SETTING_CATEGORY))


async def switch(
    gw: DataGateway,
    action: str,
    target: Optional[str],
    admin_id: str,
    reason: Optional[str] = None,
    timestamp: Optional[str] = None,
) -> SafetyState:
    """
    Apply, persist and audit one kill switch action.
    ValueError for an unknown action; persistence errors propagate.
    """
    if action not in ACTIONS:
        raise ValueError("Invalid action")
    state = apply_action(await load_state(gw), action, target)
    await gw.put_setting(SETTING_CATEGORY, state.to_dict())
    logger.warning("🛑 [Safety] %s target=%s by admin=%s", action, target, admin_id)
    try:
        await gw.audit(
            {
                "action_type": "safety_switch",
                "action": action,
                "target": target,
                "reason": reason,
                "admin_id": admin_id,
                "timestamp": timestamp or iso(utcnow()),
            }
        )
    except Exception as e:
        logger.error("❌ [Safety] audit log insert failed: %s", e)
    return state


__all__ = ["ACTIONS", "SafetyState", "apply_action", "is_disabled", "load_state", "switch"]
