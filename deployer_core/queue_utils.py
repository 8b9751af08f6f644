from typing import List, Optional

from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

from deployer_core.errors import TransportError
from deployer_core.models import QueueMessage


TRANSIENT_ERROR_CODES = {
    'Throttling',
    'ThrottlingException',
    'ThrottledException',
    'RequestThrottled',
    'RequestLimitExceeded',
    'TooManyRequestsException',
    'ServiceUnavailable',
    'InternalError',
    'InternalFailure',
    'RequestTimeout',
    'RequestTimeoutException',
}


def classify_aws_error(error: Exception, action: str) -> TransportError:
    """Wrap a botocore failure, deciding whether it is worth retrying."""
    if isinstance(error, ClientError):
        err = error.response.get('Error', {})
        code = err.get('Code', '')
        status = error.response.get('ResponseMetadata', {}).get('HTTPStatusCode') or 0
        transient = code in TRANSIENT_ERROR_CODES or status >= 500
        return TransportError(f"{action} failed ({code}): {err.get('Message', error)}", transient=transient)
    if isinstance(error, NoCredentialsError):
        return TransportError(f"{action} failed: {error}", transient=False)
    return TransportError(f"{action} failed: {error}", transient=True)


class SqsQueue:
    """The SQS queue EventBridge forwards ECR events to."""

    def __init__(self, sqs_client, queue_name: str):
        self.sqs = sqs_client
        self.queue_name = queue_name
        self.queue_url: Optional[str] = None

    def resolve_queue_url(self) -> str:
        if self.queue_url is None:
            try:
                response = self.sqs.get_queue_url(QueueName=self.queue_name)
            except (BotoCoreError, ClientError) as e:
                raise classify_aws_error(e, f"Resolving URL for queue {self.queue_name}") from e
            self.queue_url = response['QueueUrl']
        return self.queue_url

    def receive(self, wait_seconds: int = 20, max_messages: int = 10) -> List[QueueMessage]:
        queue_url = self.resolve_queue_url()
        try:
            response = self.sqs.receive_message(
                QueueUrl=queue_url,
                WaitTimeSeconds=wait_seconds,
                MaxNumberOfMessages=max_messages,
            )
        except (BotoCoreError, ClientError) as e:
            raise classify_aws_error(e, f"Polling for ECR events on {queue_url}") from e
        return [
            QueueMessage(
                message_id=m.get('MessageId', ''),
                body=m.get('Body'),
                receipt_handle=m['ReceiptHandle'],
            )
            for m in response.get('Messages', [])
        ]

    def delete(self, receipt_handle: str) -> None:
        queue_url = self.resolve_queue_url()
        try:
            self.sqs.delete_message(QueueUrl=queue_url, ReceiptHandle=receipt_handle)
        except (BotoCoreError, ClientError) as e:
            raise classify_aws_error(e, f"Acking message {receipt_handle} on {queue_url}") from e
