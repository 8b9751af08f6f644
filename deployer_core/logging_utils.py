import json
import logging
import os
import sys
from datetime import datetime, timezone


class JSONFormatter(logging.Formatter):
    def format(self, record):
        payload = {
            'ts': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'msg': record.getMessage(),
            'logger': record.name,
        }
        if record.exc_info:
            payload['exc_info'] = self.formatException(record.exc_info)
        return json.dumps(payload)


def level_for(verbosity: int, quiet: bool = False) -> int:
    """Map -v occurrences to a level: none=ERROR, -v=WARNING, -vv=INFO, more=DEBUG."""
    if quiet:
        return logging.CRITICAL + 1
    levels = [logging.ERROR, logging.WARNING, logging.INFO]
    if verbosity < len(levels):
        return levels[max(verbosity, 0)]
    return logging.DEBUG


def setup_logging(verbosity: int = 0, quiet: bool = False, log_format: str = 'plain', log_dir=None):
    handlers = [logging.StreamHandler(sys.stderr)]
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(os.path.join(log_dir, 'swarm_deployer.log')))

    fmt = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s', datefmt='%Y-%m-%dT%H:%M:%S')
    if log_format == 'json':
        fmt = JSONFormatter()
    for h in handlers:
        h.setFormatter(fmt)

    logging.basicConfig(level=level_for(verbosity, quiet), handlers=handlers, force=True)
    # boto and docker are chatty at DEBUG
    for noisy in ('botocore', 'boto3', 'urllib3', 'docker'):
        logging.getLogger(noisy).setLevel(max(logging.WARNING, level_for(verbosity, quiet)))
    return logging.getLogger('swarm_deployer')
