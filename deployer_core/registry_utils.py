import time
from typing import Callable, Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from deployer_core.credentials import decode_authorization_token
from deployer_core.errors import CredentialError, TransportError
from deployer_core.models import PushEvent, RegistryCredentials
from deployer_core.queue_utils import classify_aws_error


def retry_transient(func, *args, logger=None, max_attempts: int = 3, base: float = 1.0, **kwargs):
    """Call func, retrying TransportErrors marked transient with exponential backoff."""
    for attempt in range(1, max_attempts + 1):
        try:
            return func(*args, **kwargs)
        except TransportError as e:
            if not e.transient or attempt == max_attempts:
                raise
            sleep = base * (2 ** (attempt - 1)) + (0.1 * attempt)
            if logger:
                logger.warning(f"Transient error: {e}. Retrying in {sleep:.1f}s (attempt {attempt}/{max_attempts})")
            time.sleep(sleep)


class EcrRegistry:
    """Fetches short-lived docker credentials from ECR."""

    def __init__(self, logger, client_factory: Optional[Callable] = None, retry_func=None):
        self.logger = logger
        self.client_factory = client_factory or boto3.client
        self.retry_func = retry_func or retry_transient
        self._clients: Dict[str, object] = {}

    def _client(self, region: str):
        if region not in self._clients:
            self._clients[region] = self.client_factory('ecr', region_name=region)
        return self._clients[region]

    def get_authorization_token(self, account_id: str, region: str) -> str:
        try:
            ecr_client = self._client(region)
            response = ecr_client.get_authorization_token(registryIds=[account_id])
        except (BotoCoreError, ClientError) as e:
            raise classify_aws_error(e, f"Retrieving ECR token for account {account_id} in {region}") from e
        auths = response.get('authorizationData') or []
        if not auths or not auths[0].get('authorizationToken'):
            raise CredentialError(f"ECR returned no authorization data for account {account_id}")
        return auths[0]['authorizationToken']

    def credentials_for(self, event: PushEvent) -> RegistryCredentials:
        token = self.retry_func(
            self.get_authorization_token, event.account_id, event.region, logger=self.logger
        )
        credentials = decode_authorization_token(token, registry=event.registry_host)
        self.logger.debug(f"Obtained ECR credentials for {event.registry_host}")
        return credentials
