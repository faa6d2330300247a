"""
Dialog error taxonomy.

Only FlowValidationError escapes to callers (a broken flow definition is
an authoring problem). Everything else is recovered inside the engine and
turned into an outbound message.
"""
from __future__ import annotations


class DialogError(Exception):
    """Base exception for all dialog engine errors."""

    def __init__(self, message: str, session_id: str = "", node_id: str = ""):
        self.session_id = session_id
        self.node_id = node_id
        super().__init__(message)


class InvalidOption(DialogError):
    def __init__(self, value: str, valid: list[str], session_id: str = "", node_id: str = ""):
        self.value = value
        self.valid = valid
        super().__init__(f"'{value}' is not one of {valid}", session_id, node_id)


class FormValidationError(DialogError):
    def __init__(self, field: str, reason: str, session_id: str = "", node_id: str = ""):
        self.field = field
        self.reason = reason
        super().__init__(f"invalid value for '{field}': {reason}", session_id, node_id)


class FlowNotFound(DialogError):
    def __init__(self, connection_id: str, flow_id: str = ""):
        self.connection_id = connection_id
        self.flow_id = flow_id
        detail = f"flow '{flow_id}'" if flow_id else "no matching or default flow"
        super().__init__(f"{detail} for connection '{connection_id}'")


class FlowValidationError(DialogError):
    def __init__(self, flow_id: str, errors: list[str]):
        self.flow_id = flow_id
        self.errors = errors
        super().__init__(f"Invalid flow '{flow_id}': {'; '.join(errors)}")


class ActionExecutionError(DialogError):
    def __init__(self, action_type: str, cause: Exception, session_id: str = "", node_id: str = ""):
        self.action_type = action_type
        self.cause = cause
        super().__init__(f"{action_type} failed: {cause}", session_id, node_id)
