"""
Start / pause / stop the agent population
"""

from ..core.models import SystemStatus

ACTION_TO_STATUS = {
    "start": SystemStatus.RUNNING,
    "pause": SystemStatus.PAUSED,
    "stop": SystemStatus.STOPPED,
}

_ACTION_VERBS = {"start": "started", "pause": "paused", "stop": "stopped"}


def set_system_status(db, action: str) -> tuple[dict, int]:
    new_status = ACTION_TO_STATUS.get(action)
    if new_status is None:
        print(f"[CONTROL] Invalid action: {action}")
        return {"error": f"Invalid action. Must be one of: {', '.join(ACTION_TO_STATUS)}"}, 400

    state = db.get_system_state()
    if state is None:
        return {"error": "Failed to get system state"}, 500
    previous = state.status.value

    if not db.update_system_state(state.id, {"status": new_status.value}):
        return {"error": "Failed to update system state"}, 500

    if not db.insert_control_event(action, {"source": "dashboard"},
                                   previous_status=previous, new_status=new_status.value):
        print("[CONTROL] Failed to log event")

    print(f"[CONTROL] {previous} -> {new_status.value}")
    return {
        "success": True,
        "status": new_status.value,
        "previousStatus": previous,
        "message": f"System {_ACTION_VERBS[action]}",
    }, 200
