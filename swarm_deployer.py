#!/usr/bin/env python3
"""
Swarm ECR Deployer
Listens for ECR push events on an SQS queue and rolls the swarm service running
the pushed image onto the new digest.
"""

import argparse
import logging
import sys
import time
from typing import List, Optional

import boto3
from botocore.exceptions import BotoCoreError

from deployer_core import config_utils as cu
from deployer_core import docker_utils as du
from deployer_core import metrics_utils as mu
from deployer_core import notify_utils as nu
from deployer_core.catalog import ServiceCatalog, build_catalog
from deployer_core.config_utils import Settings
from deployer_core.errors import (
    ConfigurationError,
    CredentialError,
    MultipleMatchError,
    StaleVersionError,
    TransportError,
    ValidationError,
)
from deployer_core.events import decode_push_event
from deployer_core.logging_utils import setup_logging
from deployer_core.models import MessageResult, Outcome, QueueMessage
from deployer_core.planner import plan_update
from deployer_core.queue_utils import SqsQueue
from deployer_core.registry_utils import EcrRegistry


class SwarmDeployer:
    """Poll, list, match, authenticate, update, ack; forever."""

    def __init__(self, settings: Settings, queue, orchestrator, registry, logger=None, metrics=None):
        self.settings = settings
        self.queue = queue
        self.orchestrator = orchestrator
        self.registry = registry
        self.logger = logger or logging.getLogger('swarm_deployer')
        self.metrics = metrics or {'enabled': False}

    def build_catalog(self) -> ServiceCatalog:
        services = self.orchestrator.list_services()
        catalog = build_catalog(services, self.settings.label_filter)
        self.logger.debug(f"Listed {len(services)} services, {len(catalog)} candidate images")
        return catalog

    def process_message(self, message: QueueMessage, catalog: ServiceCatalog) -> MessageResult:
        """Handle one message; failures are reported in the result, never raised."""
        self.logger.debug(f"Processing message {message.message_id}: {message.body!r}")
        if not message.body:
            return MessageResult(message.message_id, Outcome.SKIPPED, 'empty message')

        try:
            event = decode_push_event(message.body)
        except ValidationError as e:
            return MessageResult(message.message_id, Outcome.INVALID, str(e))
        if event is None:
            return MessageResult(message.message_id, Outcome.SKIPPED, 'not a successful push')

        reference = event.canonical_reference()
        try:
            service = catalog.lookup(reference)
        except MultipleMatchError as e:
            return MessageResult(message.message_id, Outcome.CONFLICT, str(e))
        if service is None:
            return MessageResult(message.message_id, Outcome.UNMATCHED, f"no service matching image {reference}")

        try:
            credentials = self.registry.credentials_for(event)
            plan = plan_update(service, event)
            self.orchestrator.update_service(plan, credentials)
        except CredentialError as e:
            return MessageResult(message.message_id, Outcome.FAILED, str(e), service.id)
        except StaleVersionError as e:
            # a fresh listing on redelivery carries the current version
            return MessageResult(message.message_id, Outcome.REQUEUED, str(e), service.id)
        except TransportError as e:
            outcome = Outcome.REQUEUED if e.transient else Outcome.FAILED
            return MessageResult(message.message_id, outcome, str(e), service.id)

        return MessageResult(message.message_id, Outcome.UPDATED, plan.image, service.id)

    def _report(self, result: MessageResult) -> None:
        if result.outcome is Outcome.UPDATED:
            self.logger.info(f"Updated service {result.service_id} with image {result.reason}")
            nu.notify_event(self.settings.webhook_url, 'service_updated', {
                'service': result.service_id, 'image': result.reason,
            }, self.logger)
        elif result.outcome in (Outcome.SKIPPED, Outcome.UNMATCHED):
            self.logger.debug(f"Skipping message {result.message_id}: {result.reason}")
        elif result.outcome is Outcome.REQUEUED:
            self.logger.warning(f"Leaving message {result.message_id} for redelivery: {result.reason}")
        else:
            self.logger.error(f"Dropping message {result.message_id} ({result.outcome.value}): {result.reason}")
            if result.outcome is Outcome.FAILED:
                nu.notify_event(self.settings.webhook_url, 'update_failed', {
                    'service': result.service_id, 'error': result.reason,
                }, self.logger)

        if self.metrics.get('enabled'):
            self.metrics['messages'].labels(outcome=result.outcome.value).inc()
            if result.outcome is Outcome.UPDATED:
                self.metrics['updates'].inc()
            elif result.outcome in (Outcome.FAILED, Outcome.REQUEUED):
                self.metrics['failures'].inc()

    def acknowledge(self, message: QueueMessage) -> bool:
        try:
            self.queue.delete(message.receipt_handle)
            return True
        except TransportError as e:
            self.logger.error(f"Failed to ack message {message.message_id}: {e}")
            return False

    def run_once(self) -> List[MessageResult]:
        """One poll cycle. Poll and listing failures propagate as TransportError."""
        messages = self.queue.receive(self.settings.wait_seconds, self.settings.max_messages)
        if not messages:
            return []
        self.logger.info(f"Received {len(messages)} messages")
        catalog = self.build_catalog()
        results = []
        for message in messages:
            try:
                result = self.process_message(message, catalog)
            except Exception as e:
                self.logger.exception(f"Unexpected error processing message {message.message_id}")
                result = MessageResult(message.message_id, Outcome.REQUEUED, f"unexpected error: {e}")
            self._report(result)
            if result.should_ack:
                self.acknowledge(message)
            results.append(result)
        return results

    def run(self):
        """Main execution loop."""
        self.logger.warning(f"Listening for ECR events on {self.settings.queue_name}")
        failures = 0
        try:
            while True:
                try:
                    self.run_once()
                    failures = 0
                except TransportError as e:
                    failures += 1
                    if not e.transient or failures >= self.settings.max_consecutive_failures:
                        raise
                    self.logger.warning(
                        f"{e}. Retrying in {self.settings.error_backoff:.1f}s "
                        f"(failure {failures}/{self.settings.max_consecutive_failures})"
                    )
                    time.sleep(self.settings.error_backoff)
        except KeyboardInterrupt:
            self.logger.warning("Received interrupt signal. Shutting down...")


def parse_args(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(
        description='Roll swarm services onto images pushed to ECR, driven by SQS events'
    )
    parser.add_argument('-q', '--queue', dest='queue_name', help='SQS queue name to receive ECR events')
    parser.add_argument('--filter-label', dest='filter_label',
                        help='Update only labelled services, key=value (default is to consider all services)')
    parser.add_argument('--config', dest='config', help='Path to a JSON configuration file')
    parser.add_argument('--quiet', action='store_true', help='Silence all output')
    parser.add_argument('-v', '--verbose', action='count', default=0, help='Verbose mode (-v, -vv, -vvv, etc)')
    return parser.parse_args(argv)


def connect(settings: Settings, logger) -> SwarmDeployer:
    """Open the Docker and SQS connections; raises TransportError when unreachable."""
    docker_client = du.connect(logger)
    try:
        sqs_client = boto3.client('sqs')
    except BotoCoreError as e:
        raise TransportError(f"Could not create SQS client: {e}", transient=False) from e
    queue = SqsQueue(sqs_client, settings.queue_name)
    queue.resolve_queue_url()
    metrics = mu.init_metrics(logger, settings.metrics_port, settings.metrics_addr)
    return SwarmDeployer(
        settings,
        queue=queue,
        orchestrator=du.SwarmOrchestrator(docker_client, logger),
        registry=EcrRegistry(logger),
        logger=logger,
        metrics=metrics,
    )


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    cu.load_env_file()
    try:
        settings = cu.build_settings(args)
    except ConfigurationError as e:
        print(f"swarm-ecr-deployer: {e}", file=sys.stderr)
        return 2

    logger = setup_logging(settings.verbosity, settings.quiet, settings.log_format, settings.log_dir)
    try:
        deployer = connect(settings, logger)
        deployer.run()
    except TransportError as e:
        logger.error(f"Unrecoverable error: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
