import copy

from deployer_core.models import PushEvent, ServiceRecord, UpdatePlan


def plan_update(service: ServiceRecord, event: PushEvent) -> UpdatePlan:
    """Compute the spec that pins ``service`` to the digest in ``event``.

    Only TaskTemplate.ContainerSpec.Image and TaskTemplate.ForceUpdate change.
    ForceUpdate takes the version index so tasks restart even if the image
    string happens to be identical.
    """
    spec = copy.deepcopy(service.spec)
    image = event.pinned_image()
    task_template = spec.setdefault('TaskTemplate', {})
    task_template['ForceUpdate'] = service.version_token
    task_template.setdefault('ContainerSpec', {})['Image'] = image
    return UpdatePlan(
        service_id=service.id,
        version_token=service.version_token,
        image=image,
        force_update=service.version_token,
        spec=spec,
    )
