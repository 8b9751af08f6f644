class DeployerError(Exception):
    """Base class for every error raised by the deployer."""


class ValidationError(DeployerError):
    """A queue message is not a well-formed ECR event."""


class ConfigurationError(DeployerError):
    """Startup configuration is unusable."""


class CredentialError(DeployerError):
    pass


class MalformedCredentialError(CredentialError):
    """An ECR authorization token did not decode to username:password."""


class MultipleMatchError(DeployerError):
    def __init__(self, reference: str, service_ids):
        self.reference = reference
        self.service_ids = list(service_ids)
        super().__init__(
            f"Image {reference} is claimed by several services: {', '.join(self.service_ids)}"
        )


class TransportError(DeployerError):
    """A call to SQS, ECR or the Docker daemon failed.

    ``transient`` errors (network trouble, throttling, server errors) are worth
    another attempt; the others will fail the same way next time.
    """

    def __init__(self, message: str, transient: bool = True):
        super().__init__(message)
        self.transient = transient


class StaleVersionError(TransportError):
    """The service changed between listing and updating."""

    def __init__(self, service_id: str, version_token: int, message: str = ''):
        self.service_id = service_id
        self.version_token = version_token
        super().__init__(
            message or f"Service {service_id} is no longer at version {version_token}",
            transient=False,
        )
