import json
import logging

import pytest

import swarm_deployer
from deployer_core.config_utils import Settings
from deployer_core.errors import MalformedCredentialError, StaleVersionError, TransportError
from deployer_core.models import KeyEquals, Outcome, QueueMessage, RegistryCredentials, ServiceRecord
from swarm_deployer import SwarmDeployer


IMAGE = '123456789012.dkr.ecr.rp-north-1.amazonaws.com/bittrance/ze-image:latest'


def push_body(repo='bittrance/ze-image', digest='sha256:1234', action='PUSH', result='SUCCESS'):
    return json.dumps({
        'account': '123456789012',
        'region': 'rp-north-1',
        'detail': {
            'action-type': action,
            'result': result,
            'repository-name': repo,
            'image-digest': digest,
            'image-tag': 'latest',
        },
    })


def make_service(service_id, image, version=1, labels=None):
    spec = {
        'Name': service_id,
        'Labels': dict(labels or {}),
        'TaskTemplate': {'ContainerSpec': {'Image': image}},
    }
    return ServiceRecord(id=service_id, version_token=version, name=service_id,
                         labels=spec['Labels'], declared_image=image, spec=spec)


class FakeQueue:
    def __init__(self, batches, fail_delete=False):
        self.batches = list(batches)
        self.deleted = []
        self.fail_delete = fail_delete

    def receive(self, wait_seconds, max_messages):
        batch = self.batches.pop(0)
        if isinstance(batch, BaseException):
            raise batch
        return batch

    def delete(self, receipt_handle):
        if self.fail_delete:
            raise TransportError('ack failed')
        self.deleted.append(receipt_handle)


class FakeOrchestrator:
    def __init__(self, services, update_errors=None):
        self.services = services
        self.update_errors = list(update_errors or [])
        self.list_calls = 0
        self.updates = []

    def list_services(self):
        self.list_calls += 1
        return self.services

    def update_service(self, plan, credentials=None):
        self.updates.append((plan, credentials))
        if self.update_errors:
            error = self.update_errors.pop(0)
            if error:
                raise error


class FakeRegistry:
    def __init__(self, error=None):
        self.error = error
        self.events = []

    def credentials_for(self, event):
        self.events.append(event)
        if self.error:
            raise self.error
        return RegistryCredentials('AWS', 'secret', event.registry_host)


def message(n, body):
    return QueueMessage(message_id=f'm{n}', body=body, receipt_handle=f'rh-{n}')


def make_deployer(batches, services, label_filter=None, update_errors=None, registry_error=None, **settings):
    config = Settings(queue_name='ecr-events', **settings)
    if label_filter is not None:
        config.label_filter = label_filter
    return SwarmDeployer(
        config,
        queue=FakeQueue(batches),
        orchestrator=FakeOrchestrator(services, update_errors),
        registry=FakeRegistry(registry_error),
        logger=logging.getLogger('test'),
    )


def test_push_updates_matching_service_only():
    services = [
        make_service('ze-service', IMAGE + '@sha512:5678'),
        make_service('other', '123456789012.dkr.ecr.rp-north-1.amazonaws.com/bittrance/other:latest'),
    ]
    deployer = make_deployer([[message(1, push_body())]], services)

    results = deployer.run_once()

    assert [r.outcome for r in results] == [Outcome.UPDATED]
    updates = deployer.orchestrator.updates
    assert len(updates) == 1
    plan, credentials = updates[0]
    assert plan.service_id == 'ze-service'
    assert plan.version_token == 1
    assert plan.spec['TaskTemplate']['ContainerSpec']['Image'] == IMAGE + '@sha256:1234'
    assert plan.spec['TaskTemplate']['ForceUpdate'] == 1
    assert credentials.registry == '123456789012.dkr.ecr.rp-north-1.amazonaws.com'
    assert deployer.queue.deleted == ['rh-1']


def test_empty_batch_does_not_list_services():
    deployer = make_deployer([[]], [make_service('ze-service', IMAGE)])
    assert deployer.run_once() == []
    assert deployer.orchestrator.list_calls == 0


def test_batch_is_matched_against_one_listing():
    deployer = make_deployer([[message(1, push_body()), message(2, push_body(digest='sha256:5678'))]],
                             [make_service('ze-service', IMAGE)])
    deployer.run_once()
    assert deployer.orchestrator.list_calls == 1
    assert [p.image for p, _ in deployer.orchestrator.updates] == [
        IMAGE + '@sha256:1234', IMAGE + '@sha256:5678',
    ]


def test_non_triggers_and_unmatched_events_are_acked():
    batch = [
        message(1, push_body(action='DELETE')),
        message(2, push_body(repo='bittrance/unknown')),
        message(3, ''),
    ]
    deployer = make_deployer([batch], [make_service('ze-service', IMAGE)])
    results = deployer.run_once()
    assert [r.outcome for r in results] == [Outcome.SKIPPED, Outcome.UNMATCHED, Outcome.SKIPPED]
    assert deployer.orchestrator.updates == []
    assert deployer.registry.events == []
    assert deployer.queue.deleted == ['rh-1', 'rh-2', 'rh-3']


def test_poisoned_message_does_not_stop_the_batch():
    batch = [message(1, 'garbage'), message(2, push_body())]
    deployer = make_deployer([batch], [make_service('ze-service', IMAGE)])
    results = deployer.run_once()
    assert [r.outcome for r in results] == [Outcome.INVALID, Outcome.UPDATED]
    assert deployer.queue.deleted == ['rh-1', 'rh-2']


def test_label_filter_excludes_unlabelled_services():
    services = [make_service('ze-service', IMAGE, labels={'some': 'other'})]
    deployer = make_deployer([[message(1, push_body())]], services, label_filter=KeyEquals('some', 'label'))
    results = deployer.run_once()
    assert results[0].outcome is Outcome.UNMATCHED
    assert deployer.orchestrator.updates == []


def test_label_filter_includes_labelled_services():
    services = [make_service('ze-service', IMAGE, labels={'some': 'label'})]
    deployer = make_deployer([[message(1, push_body())]], services, label_filter=KeyEquals('some', 'label'))
    assert deployer.run_once()[0].outcome is Outcome.UPDATED


def test_conflicting_services_are_not_updated():
    services = [make_service('a', IMAGE), make_service('b', IMAGE + '@sha256:0000')]
    deployer = make_deployer([[message(1, push_body())]], services)
    results = deployer.run_once()
    assert results[0].outcome is Outcome.CONFLICT
    assert deployer.orchestrator.updates == []
    assert deployer.queue.deleted == ['rh-1']


def test_transient_update_failure_leaves_message_for_redelivery():
    deployer = make_deployer([[message(1, push_body()), message(2, push_body())]],
                             [make_service('ze-service', IMAGE)],
                             update_errors=[TransportError('daemon hiccup', transient=True), None])
    results = deployer.run_once()
    assert [r.outcome for r in results] == [Outcome.REQUEUED, Outcome.UPDATED]
    assert deployer.queue.deleted == ['rh-2']


def test_stale_version_leaves_message_for_redelivery():
    deployer = make_deployer([[message(1, push_body())]], [make_service('ze-service', IMAGE)],
                             update_errors=[StaleVersionError('ze-service', 1)])
    results = deployer.run_once()
    assert results[0].outcome is Outcome.REQUEUED
    assert deployer.queue.deleted == []


def test_permanent_update_failure_drops_message():
    deployer = make_deployer([[message(1, push_body())]], [make_service('ze-service', IMAGE)],
                             update_errors=[TransportError('forbidden', transient=False)])
    results = deployer.run_once()
    assert results[0].outcome is Outcome.FAILED
    assert results[0].service_id == 'ze-service'
    assert deployer.queue.deleted == ['rh-1']


def test_malformed_credentials_fail_only_that_message():
    deployer = make_deployer([[message(1, push_body())]], [make_service('ze-service', IMAGE)],
                             registry_error=MalformedCredentialError('bad token'))
    results = deployer.run_once()
    assert results[0].outcome is Outcome.FAILED
    assert deployer.orchestrator.updates == []


def test_transient_authentication_failure_is_requeued():
    deployer = make_deployer([[message(1, push_body())]], [make_service('ze-service', IMAGE)],
                             registry_error=TransportError('throttled', transient=True))
    assert deployer.run_once()[0].outcome is Outcome.REQUEUED
    assert deployer.queue.deleted == []


def test_unexpected_error_is_isolated(monkeypatch):
    deployer = make_deployer([[message(1, push_body()), message(2, push_body(action='DELETE'))]],
                             [make_service('ze-service', IMAGE)])

    def explode(service, event):
        raise RuntimeError('bug')

    monkeypatch.setattr(swarm_deployer, 'plan_update', explode)
    results = deployer.run_once()
    assert [r.outcome for r in results] == [Outcome.REQUEUED, Outcome.SKIPPED]
    assert deployer.queue.deleted == ['rh-2']


def test_failed_ack_does_not_stop_the_batch():
    deployer = make_deployer([[message(1, push_body()), message(2, push_body())]],
                             [make_service('ze-service', IMAGE)])
    deployer.queue.fail_delete = True
    results = deployer.run_once()
    assert [r.outcome for r in results] == [Outcome.UPDATED, Outcome.UPDATED]


def test_updates_are_sent_to_webhook(monkeypatch):
    sent = []
    monkeypatch.setattr(swarm_deployer.nu, 'notify_event',
                        lambda url, event_type, payload, logger: sent.append((url, event_type, payload)))
    deployer = make_deployer([[message(1, push_body())]], [make_service('ze-service', IMAGE)],
                             webhook_url='http://hook')
    deployer.run_once()
    assert sent == [('http://hook', 'service_updated', {'service': 'ze-service', 'image': IMAGE + '@sha256:1234'})]


def test_run_retries_transient_poll_failures(monkeypatch):
    sleeps = []
    monkeypatch.setattr(swarm_deployer.time, 'sleep', sleeps.append)
    deployer = make_deployer(
        [TransportError('network'), [message(1, push_body())], KeyboardInterrupt()],
        [make_service('ze-service', IMAGE)],
        error_backoff=2.0,
    )
    deployer.run()
    assert sleeps == [2.0]
    assert len(deployer.orchestrator.updates) == 1


def test_run_gives_up_after_consecutive_failures(monkeypatch):
    monkeypatch.setattr(swarm_deployer.time, 'sleep', lambda s: None)
    deployer = make_deployer([TransportError('network')] * 3, [], max_consecutive_failures=3)
    with pytest.raises(TransportError):
        deployer.run()


def test_run_stops_on_permanent_poll_failure():
    deployer = make_deployer([TransportError('access denied', transient=False)], [])
    with pytest.raises(TransportError):
        deployer.run()


def test_main_exits_2_on_bad_filter(monkeypatch):
    monkeypatch.setattr(swarm_deployer.cu, 'load_env_file', lambda: False)
    monkeypatch.delenv('QUEUE_NAME', raising=False)
    monkeypatch.delenv('CONFIG_FILE', raising=False)
    assert swarm_deployer.main(['-q', 'ecr-events', '--filter-label', 'nolabel']) == 2


def test_main_exits_1_when_docker_is_unreachable(monkeypatch):
    monkeypatch.setattr(swarm_deployer.cu, 'load_env_file', lambda: False)
    monkeypatch.delenv('CONFIG_FILE', raising=False)
    monkeypatch.setattr(swarm_deployer, 'setup_logging', lambda *a, **k: logging.getLogger('test'))

    def unreachable(logger):
        raise TransportError('no docker', transient=False)

    monkeypatch.setattr(swarm_deployer.du, 'connect', unreachable)
    assert swarm_deployer.main(['-q', 'ecr-events', '-vv']) == 1
