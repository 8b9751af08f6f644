from typing import Optional

from prometheus_client import Counter, start_http_server


def init_metrics(logger, port: Optional[int] = None, addr: str = '0.0.0.0'):
    """Start a Prometheus endpoint when a port is configured.

    Returns a dict with keys: enabled, messages, updates, failures
    """
    result = {
        'enabled': False,
        'messages': None,
        'updates': None,
        'failures': None,
    }
    if not port:
        return result
    try:
        start_http_server(int(port), addr=addr)
    except OSError as e:
        logger.warning(f"Failed to start metrics: {e}")
        return result
    result['messages'] = Counter('deployer_messages', 'Queue messages handled', ['outcome'])
    result['updates'] = Counter('deployer_updates', 'Services updated to a pushed digest')
    result['failures'] = Counter('deployer_failures', 'Messages whose update failed')
    result['enabled'] = True
    logger.info(f"Prometheus metrics server on {addr}:{port}")
    return result
