"""Wire protocol: newline-delimited JSON objects, each with a "type" field."""

import json
from typing import Any

from taskwarden.models import KillOutcome, ResourceKind

# Daemon -> viewer
SYSTEM_INFO = "system_info"
PROCESS_LIST = "process_list"
KILL_ACK = "kill_ack"
KILL_OUTCOME = "kill_outcome"
HEALTH = "health"
ERROR = "error"

# Viewer -> daemon
KILL = "kill"
REFRESH = "refresh"
# HEALTH doubles as the liveness probe request

SNAPSHOT_TYPES = {
    ResourceKind.SYSTEM: SYSTEM_INFO,
    ResourceKind.PROCESSES: PROCESS_LIST,
}
SNAPSHOT_MESSAGE_TYPES = frozenset(SNAPSHOT_TYPES.values())


def encode(message: dict[str, Any]) -> bytes:
    return json.dumps(message).encode() + b"\n"


def decode(line: bytes) -> dict[str, Any]:
    """Parse one line into a message.

    Raises:
        ValueError: The line is not a JSON object with a string "type".
    """
    message = json.loads(line.decode())
    if not isinstance(message, dict) or not isinstance(message.get("type"), str):
        raise ValueError("message must be a JSON object with a 'type' field")
    return message


def snapshot_message(kind: ResourceKind, payload: Any, version: int) -> dict[str, Any]:
    return {"type": SNAPSHOT_TYPES[kind], "version": version, "snapshot": payload.to_dict()}


def kill_ack_message(pid: Any, request_id: str | None) -> dict[str, Any]:
    return {"type": KILL_ACK, "pid": pid, "request_id": request_id, "status": "pending"}


def kill_outcome_message(outcome: KillOutcome) -> dict[str, Any]:
    return {"type": KILL_OUTCOME, **outcome.to_dict()}


def health_message(*, sessions: int, uptime: float) -> dict[str, Any]:
    return {"type": HEALTH, "status": "ok", "sessions": sessions, "uptime": round(uptime, 1)}


def error_message(message: str) -> dict[str, Any]:
    return {"type": ERROR, "message": message}
