from typing import List, Optional

import docker
from docker.errors import APIError, DockerException
from requests.exceptions import RequestException

from deployer_core.errors import StaleVersionError, TransportError
from deployer_core.models import RegistryCredentials, ServiceRecord, UpdatePlan


def connect(logger):
    """Create a docker client from the environment and check the daemon answers."""
    try:
        client = docker.from_env()
        client.ping()
    except (DockerException, RequestException) as e:
        raise TransportError(f"Could not instantiate a Docker client from environment: {e}", transient=False) from e
    logger.info("Docker client initialized successfully")
    return client


def classify_api_error(error: APIError, plan: UpdatePlan) -> TransportError:
    explanation = str(getattr(error, 'explanation', None) or error)
    if 'out of sequence' in explanation:
        return StaleVersionError(plan.service_id, plan.version_token, explanation)
    status = error.status_code or 0
    transient = status >= 500 or status == 429
    return TransportError(f"Failed to update image for service {plan.service_id}: {explanation}", transient=transient)


def submitted_task_template(spec):
    """TaskTemplate to send, carrying over a legacy top-level Networks list."""
    task_template = spec.get('TaskTemplate')
    if spec.get('Networks') and not (task_template or {}).get('Networks'):
        task_template = dict(task_template or {}, Networks=spec['Networks'])
    return task_template


class SwarmOrchestrator:
    """Lists and updates swarm services through the docker SDK."""

    def __init__(self, docker_client, logger):
        self.client = docker_client
        self.logger = logger

    def list_services(self) -> List[ServiceRecord]:
        try:
            services = self.client.services.list()
        except APIError as e:
            status = e.status_code or 0
            raise TransportError(f"Could not list services: {e}", transient=status >= 500) from e
        except (DockerException, RequestException) as e:
            raise TransportError(f"Could not list services: {e}") from e
        return [ServiceRecord.from_attrs(s.attrs) for s in services]

    def login(self, credentials: RegistryCredentials) -> None:
        """Hand the event's registry credentials to the client.

        docker-py keeps them in the client's auth config so update_service can
        send X-Registry-Auth; reauth=True makes every event replace whatever an
        earlier event stored for the same registry.
        """
        try:
            self.client.login(
                username=credentials.username,
                password=credentials.password,
                registry=credentials.registry,
                reauth=True,
            )
        except APIError as e:
            status = e.status_code or 0
            raise TransportError(
                f"Registry login to {credentials.registry} failed: {e}",
                transient=status >= 500,
            ) from e
        except (DockerException, RequestException) as e:
            raise TransportError(f"Registry login to {credentials.registry} failed: {e}") from e

    def update_service(self, plan: UpdatePlan, credentials: Optional[RegistryCredentials] = None) -> None:
        """Submit the planned spec under the version observed at listing time."""
        if credentials is not None:
            self.login(credentials)
        spec = plan.spec
        try:
            self.client.api.update_service(
                plan.service_id,
                plan.version_token,
                task_template=submitted_task_template(spec),
                name=spec.get('Name'),
                labels=spec.get('Labels'),
                mode=spec.get('Mode'),
                update_config=spec.get('UpdateConfig'),
                rollback_config=spec.get('RollbackConfig'),
                endpoint_spec=spec.get('EndpointSpec'),
            )
        except APIError as e:
            raise classify_api_error(e, plan) from e
        except (DockerException, RequestException) as e:
            raise TransportError(f"Failed to update image for service {plan.service_id}: {e}") from e
