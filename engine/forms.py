"""
Form Collector — walks a form node one field per turn.

The cursor (`session.form_cursor`) is 1-based and always points at an
existing field while the form is in progress. A valid reply stores the
value, moves the cursor forward and returns either the next field's
prompt or completion with the form's `next` target. An invalid reply
leaves the cursor where it was and repeats the same prompt.

Prompt nodes reuse the same validation through `validate_value`.
"""
from __future__ import annotations

import re
import structlog
from dataclasses import dataclass
from typing import Any, Optional

from engine.errors import FormValidationError
from models.schemas import FieldType, FormField, FormNode, InboundMessage, Session
from utils.templating import render

logger = structlog.get_logger()

_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass
class FormStep:
    """Outcome of one `advance` call."""
    session: Session
    prompt: str = ""                          # next (or repeated) field prompt
    next_node_id: str = ""                    # set once the form is complete
    completed: bool = False
    error: Optional[FormValidationError] = None


def validate_value(spec: FormField, inbound: InboundMessage) -> Any:
    """Return the value to store for `spec`, or raise FormValidationError."""
    if spec.expects_image:
        if inbound.media is None:
            raise FormValidationError(spec.field, "an image attachment is required")
        if inbound.media.mime_type and not inbound.media.is_image:
            raise FormValidationError(spec.field, f"expected an image, got {inbound.media.mime_type}")
        return inbound.media.model_dump(mode="json")

    text = inbound.body
    if not text:
        if spec.required:
            raise FormValidationError(spec.field, "a reply is required")
        return ""

    if spec.field_type == FieldType.NUMBER:
        try:
            float(text.replace(",", ""))
        except ValueError:
            raise FormValidationError(spec.field, "a number is required") from None
    elif spec.field_type == FieldType.EMAIL and not _EMAIL.match(text):
        raise FormValidationError(spec.field, "an email address is required")

    if spec.pattern and not re.fullmatch(spec.pattern, text):
        raise FormValidationError(spec.field, "the reply has the wrong format")
    return text


class FormCollector:

    def start(self, node: FormNode, session: Session) -> str:
        """Enter a form: cursor to the first field, return its prompt."""
        session.form_cursor = 1
        first = node.fields[0]
        if first.stage:
            session.stage = first.stage
        return render(first.prompt, session.template_context())

    def current_field(self, node: FormNode, session: Session) -> FormField:
        cursor = min(max(session.form_cursor, 1), len(node.fields))
        return node.fields[cursor - 1]

    def advance(self, node: FormNode, session: Session, inbound: InboundMessage) -> FormStep:
        if not 1 <= session.form_cursor <= len(node.fields):
            # resumed session without progress: restart at the first field
            return FormStep(session=session, prompt=self.start(node, session))

        spec = node.fields[session.form_cursor - 1]
        try:
            value = validate_value(spec, inbound)
        except FormValidationError as e:
            e.session_id, e.node_id = session.id, node.id
            logger.warning("form_field_invalid",
                           session_id=session.id, node_id=node.id,
                           field=spec.field, cursor=session.form_cursor, reason=e.reason)
            return FormStep(session=session,
                            prompt=render(spec.prompt, session.template_context()),
                            error=e)

        session.field_values[spec.field] = value
        logger.info("form_field_collected",
                    session_id=session.id, node_id=node.id,
                    field=spec.field, cursor=session.form_cursor)

        session.form_cursor += 1
        if session.form_cursor > len(node.fields):
            logger.info("form_completed", session_id=session.id, node_id=node.id,
                        fields=[f.field for f in node.fields])
            return FormStep(session=session, next_node_id=node.next, completed=True)

        upcoming = node.fields[session.form_cursor - 1]
        if upcoming.stage:
            session.stage = upcoming.stage
        return FormStep(session=session,
                        prompt=render(upcoming.prompt, session.template_context()))
