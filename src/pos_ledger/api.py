"""Request envelope handling.

A request is ``{"action": str, "payload": object}``; the reply is either
``{"status": "success", "data": ...}`` or ``{"status": "error", "error": str}``.
Mutating actions run inside the request lock and persist the workbook before
the lock is released. Read-only actions run without the lock.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

from . import catalog, core_logic, log
from .constants import MUTATING_ACTIONS, Action
from .errors import ValidationError
from .serializer import RequestSerializer, get_process_serializer


Handler = Callable[[core_logic.RuntimeContext, Any], Any]


@dataclass(frozen=True)
class Request:
    """A validated request envelope."""

    action: Action
    payload: Any

    @property
    def mutating(self) -> bool:
        return self.action in MUTATING_ACTIONS


def _payload_field(payload: Any, key: str) -> Any:
    if not isinstance(payload, Mapping):
        raise ValidationError("Payload must be an object")
    return payload.get(key)


def record_transaction(context: core_logic.RuntimeContext, payload: Any) -> str:
    command = core_logic.build_transaction_command(payload)
    result = core_logic.commit_transaction(context, command)
    return result.transaction_id


def record_cash_note(context: core_logic.RuntimeContext, payload: Any) -> str:
    command = core_logic.build_cash_note_command(payload)
    note = core_logic.record_cash_note(context, command)
    return f"Cash note '{note.note_type}' saved as {note.note_id}."


HANDLERS: Dict[Action, Handler] = {
    Action.RECORD_TRANSACTION: record_transaction,
    Action.RECORD_CASH_NOTE: record_cash_note,
    Action.SAVE_ITEM: lambda context, payload: catalog.save_item(
        context, _payload_field(payload, "itemData"), _payload_field(payload, "type")
    ),
    Action.DELETE_ITEM: lambda context, payload: catalog.delete_item(
        context, _payload_field(payload, "id"), _payload_field(payload, "type")
    ),
    Action.GET_INITIAL_DATA: lambda context, payload: catalog.get_initial_data(context),
    Action.GET_SHEET_DATA: lambda context, payload: catalog.get_sheet_data(
        context, _payload_field(payload, "sheetName")
    ),
    Action.GET_FILTERED_DATA: catalog.get_filtered_data,
    Action.GET_STORE_LOCATION: lambda context, payload: catalog.get_store_location(context),
}


def parse_envelope(envelope: Any) -> Request:
    """Validate the outer ``{action, payload}`` shape.

    Raises:
        ValidationError: If the envelope is not an object or names an unknown action.
    """
    if not isinstance(envelope, Mapping):
        raise ValidationError("Request must be an object with 'action' and 'payload'")
    raw_action = envelope.get("action")
    try:
        action = Action(raw_action)
    except ValueError as exc:
        raise ValidationError(f"Invalid action: {raw_action}") from exc
    payload = envelope.get("payload")
    return Request(action=action, payload=payload if payload is not None else {})


def _run_mutation(context: core_logic.RuntimeContext, handler: Handler, payload: Any) -> Any:
    core_logic.ensure_schema_version(context)
    try:
        result = handler(context, payload)
    except Exception:
        # Steps applied before a failure are persisted as well; nothing is rolled back.
        try:
            core_logic.persist_context(context)
        except Exception as save_error:
            log.error("Saving after a failed request also failed: %s: %s", type(save_error).__name__, save_error)
        raise
    core_logic.persist_context(context)
    return result


def dispatch(context: core_logic.RuntimeContext, request: Request, serializer: RequestSerializer) -> Any:
    """Run the handler for ``request``, under the lock when it mutates the store."""
    handler = HANDLERS[request.action]
    if not request.mutating:
        return handler(context, request.payload)
    return serializer.run_exclusive(
        lambda: _run_mutation(context, handler, request.payload),
        name=request.action.value,
    )


def success_response(data: Any) -> Dict[str, Any]:
    return {"status": "success", "data": data}


def error_response(error: BaseException) -> Dict[str, Any]:
    message = str(error) or type(error).__name__
    return {"status": "error", "error": message}


def handle_request(
    context: core_logic.RuntimeContext,
    envelope: Any,
    *,
    serializer: Optional[RequestSerializer] = None,
) -> Dict[str, Any]:
    """Execute one request envelope and return the reply envelope.

    Every failure, including lock timeouts, is reported as an error envelope
    carrying the first error's message.
    """
    if serializer is None:
        serializer = get_process_serializer(context.settings.lock_timeout)
    try:
        request = parse_envelope(envelope)
        data = dispatch(context, request, serializer)
    except Exception as error:
        log.error("Request failed: %s: %s", type(error).__name__, error)
        return error_response(error)
    return success_response(data)


def encode_response(response: Mapping[str, Any]) -> str:
    """Serialize a reply envelope to JSON."""
    return json.dumps(response, default=core_logic.json_default)


def handle_raw_request(
    context: core_logic.RuntimeContext,
    body: str,
    *,
    serializer: Optional[RequestSerializer] = None,
) -> str:
    """Transport-facing variant of :func:`handle_request`: JSON text in, JSON text out."""
    try:
        envelope = json.loads(body)
    except ValueError as exc:
        log.error("Rejected request body that is not JSON: %s", exc)
        return encode_response(error_response(ValidationError(f"Request body is not valid JSON: {exc}")))
    return encode_response(handle_request(context, envelope, serializer=serializer))
