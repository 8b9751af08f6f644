from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


STACK_IMAGE_LABEL = 'com.docker.stack.image'


@dataclass(frozen=True)
class PushEvent:
    """A successful image push reported by ECR."""
    account_id: str
    region: str
    repository_name: str
    image_digest: str  # e.g. "sha256:<hex>"
    image_tag: str

    @property
    def registry_host(self) -> str:
        return f"{self.account_id}.dkr.ecr.{self.region}.amazonaws.com"

    def canonical_reference(self) -> str:
        return f"{self.registry_host}/{self.repository_name}:{self.image_tag}"

    def pinned_image(self) -> str:
        return f"{self.canonical_reference()}@{self.image_digest}"


@dataclass
class ServiceRecord:
    """Snapshot of one swarm service taken when the catalog is built."""
    id: str
    version_token: int
    name: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)
    declared_image: Optional[str] = None  # may carry a trailing @digest
    spec: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_attrs(cls, attrs: Dict[str, Any]) -> 'ServiceRecord':
        """Build a record from the attrs of a docker SDK Service object."""
        spec = attrs.get('Spec') or {}
        container_spec = (spec.get('TaskTemplate') or {}).get('ContainerSpec') or {}
        return cls(
            id=attrs['ID'],
            version_token=int((attrs.get('Version') or {}).get('Index', 0)),
            name=spec.get('Name'),
            labels=dict(spec.get('Labels') or {}),
            declared_image=container_spec.get('Image'),
            spec=spec,
        )


@dataclass(frozen=True)
class RegistryCredentials:
    username: str
    password: str
    registry: Optional[str] = None

    def __repr__(self):
        return f"RegistryCredentials(username={self.username!r}, registry={self.registry!r})"


@dataclass
class UpdatePlan:
    """New spec for a service, pinned to a pushed digest."""
    service_id: str
    version_token: int
    image: str
    force_update: int
    spec: Dict[str, Any]


@dataclass(frozen=True)
class NoFilter:
    def matches(self, labels: Dict[str, str]) -> bool:
        return True

    def __str__(self):
        return '<all services>'


@dataclass(frozen=True)
class KeyEquals:
    key: str
    value: str

    def matches(self, labels: Dict[str, str]) -> bool:
        return self.key in (labels or {}) and labels[self.key] == self.value

    def __str__(self):
        return f"{self.key}={self.value}"


@dataclass
class QueueMessage:
    message_id: str
    body: Optional[str]
    receipt_handle: str


class Outcome(Enum):
    UPDATED = 'updated'
    SKIPPED = 'skipped'      # not a successful push, or empty body
    UNMATCHED = 'unmatched'
    INVALID = 'invalid'
    CONFLICT = 'conflict'
    FAILED = 'failed'        # will never succeed, dropped
    REQUEUED = 'requeued'    # left for redelivery after the visibility timeout


@dataclass
class MessageResult:
    message_id: str
    outcome: Outcome
    reason: Optional[str] = None
    service_id: Optional[str] = None

    @property
    def should_ack(self) -> bool:
        return self.outcome is not Outcome.REQUEUED
