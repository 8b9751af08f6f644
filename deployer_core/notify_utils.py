import json

import requests


def notify_event(url, event_type: str, payload: dict, logger) -> None:
    if not url:
        return
    try:
        headers = {'Content-Type': 'application/json'}
        data = json.dumps({'event': event_type, **payload})
        requests.post(url, headers=headers, data=data, timeout=5)
    except requests.RequestException as e:
        logger.warning(f"Webhook notify failed: {e}")
