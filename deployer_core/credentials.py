import base64
import binascii
from typing import Optional

from deployer_core.errors import MalformedCredentialError
from deployer_core.models import RegistryCredentials


def decode_authorization_token(token: str, registry: Optional[str] = None) -> RegistryCredentials:
    """Turn an ECR authorization token (base64 "user:password") into credentials."""
    try:
        decoded = base64.b64decode(token, validate=True).decode('utf-8')
    except (binascii.Error, UnicodeDecodeError, TypeError, ValueError) as e:
        raise MalformedCredentialError(f"Authorization token is not valid base64: {e}") from e
    username, sep, password = decoded.partition(':')
    if not sep:
        raise MalformedCredentialError("Authorization token lacks a username:password separator")
    return RegistryCredentials(username=username, password=password, registry=registry)
