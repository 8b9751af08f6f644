import logging
from typing import Dict, Iterable, List, Optional

from deployer_core.errors import MultipleMatchError
from deployer_core.models import STACK_IMAGE_LABEL, NoFilter, ServiceRecord


logger = logging.getLogger(__name__)


def resolve_image_reference(service: ServiceRecord) -> Optional[str]:
    """Return the digest-less image reference a service runs, if any.

    The stack image label wins and is used verbatim; otherwise the declared
    image is used with everything from the first '@' removed.
    """
    label = (service.labels or {}).get(STACK_IMAGE_LABEL)
    if label is not None:
        return label
    if service.declared_image is not None:
        return service.declared_image.split('@', 1)[0]
    return None


class ServiceCatalog:
    """Lookup from canonical image reference to the service running it."""

    def __init__(self):
        self._by_reference: Dict[str, List[ServiceRecord]] = {}

    @classmethod
    def build(cls, services: Iterable[ServiceRecord], label_filter=None) -> 'ServiceCatalog':
        label_filter = label_filter or NoFilter()
        catalog = cls()
        for service in services:
            if not label_filter.matches(service.labels):
                logger.debug(f"Service {service.id} does not match filter {label_filter}")
                continue
            reference = resolve_image_reference(service)
            if reference is None:
                logger.debug(f"Service {service.id} has no image reference, ignoring")
                continue
            catalog._by_reference.setdefault(reference, []).append(service)
        for reference, service_ids in catalog.conflicts().items():
            logger.warning(f"Image {reference} is used by several services: {', '.join(service_ids)}")
        return catalog

    def lookup(self, reference: str) -> Optional[ServiceRecord]:
        candidates = self._by_reference.get(reference)
        if not candidates:
            return None
        if len(candidates) > 1:
            raise MultipleMatchError(reference, [s.id for s in candidates])
        return candidates[0]

    def conflicts(self) -> Dict[str, List[str]]:
        return {
            reference: [s.id for s in services]
            for reference, services in self._by_reference.items()
            if len(services) > 1
        }

    def references(self) -> List[str]:
        return list(self._by_reference)

    def __contains__(self, reference) -> bool:
        return reference in self._by_reference

    def __len__(self) -> int:
        return len(self._by_reference)


def build_catalog(services: Iterable[ServiceRecord], label_filter=None) -> ServiceCatalog:
    return ServiceCatalog.build(services, label_filter)
