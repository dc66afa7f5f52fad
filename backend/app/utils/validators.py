"""
Custom validators
"""
from typing import Any, Dict

from app.utils.exceptions import InvalidWebhookPayloadError


def validate_webhook_payload(payload: Any) -> Dict[str, Any]:
    """A delivery must be an object naming a tracking id or a process number"""
    if not isinstance(payload, dict) or not payload:
        raise InvalidWebhookPayloadError("Webhook payload must be a JSON object")

    tracking_id = payload.get("tracking_id")
    process_number = payload.get("process_number")
    if not _present(tracking_id) and not _present(process_number):
        raise InvalidWebhookPayloadError("Webhook payload needs tracking_id or process_number")
    return payload


def _present(value: Any) -> bool:
    if value is None:
        return False
    return bool(str(value).strip())
