import json
from typing import Any, Dict, Optional

from jsonschema import validate as jsonschema_validate, ValidationError as SchemaValidationError

from deployer_core.errors import ValidationError
from deployer_core.models import PushEvent


PUSH_EVENT_SCHEMA = {
    'type': 'object',
    'required': ['account', 'region', 'detail'],
    'properties': {
        'account': {'type': 'string'},
        'region': {'type': 'string'},
        'detail': {
            'type': 'object',
            'required': ['repository-name', 'image-digest', 'image-tag'],
            'properties': {
                'repository-name': {'type': 'string'},
                'image-digest': {'type': 'string'},
                'image-tag': {'type': 'string'},
            },
        },
    },
}


def _load_object(body: str) -> Dict[str, Any]:
    try:
        parsed = json.loads(body)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Event is not JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise ValidationError(f"Event is not a JSON object but {type(parsed).__name__}")
    return parsed


def is_successful_push(detail: Dict[str, Any]) -> bool:
    return detail.get('action-type') == 'PUSH' and detail.get('result') == 'SUCCESS'


def decode_push_event(body: str) -> Optional[PushEvent]:
    """Decode an ECR EventBridge notification.

    Returns None for notifications that do not report a successful push (pulls,
    deletions, scans, failed pushes). Raises ValidationError when the body is
    not JSON or lacks the fields a push event must carry.
    """
    parsed = _load_object(body)
    detail = parsed.get('detail')
    if not isinstance(detail, dict):
        raise ValidationError("Event does not contain a detail object")
    if not is_successful_push(detail):
        return None

    try:
        jsonschema_validate(parsed, PUSH_EVENT_SCHEMA)
    except SchemaValidationError as e:
        location = '.'.join(str(p) for p in e.absolute_path) or 'event'
        raise ValidationError(f"Invalid push event at {location}: {e.message}") from e

    return PushEvent(
        account_id=parsed['account'],
        region=parsed['region'],
        repository_name=detail['repository-name'],
        image_digest=detail['image-digest'],
        image_tag=detail['image-tag'],
    )
