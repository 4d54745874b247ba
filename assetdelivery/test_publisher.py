import threading
import time
from typing import Generator

import boto3
import pytest
from botocore.stub import Stubber
from mypy_boto3_sqs.client import SQSClient

from assetdelivery.publisher import ExecutorPublisher, PublishError, SqsPublisher

QUEUE_URL = 'https://sqs.ap-northeast-1.amazonaws.com/123456789012/resize'
PAYLOAD = b'{"version": 1}'


@pytest.fixture
def sqs() -> SQSClient:
  return boto3.client(
      'sqs',
      region_name='ap-northeast-1',
      aws_access_key_id='testing',
      aws_secret_access_key='testing')


@pytest.fixture
def stubber(sqs: SQSClient) -> Generator[Stubber, None, None]:
  with Stubber(sqs) as stubber:
    yield stubber
    stubber.assert_no_pending_responses()


def test_sqs_publish(sqs: SQSClient, stubber: Stubber) -> None:
  stubber.add_response(
      'send_message',
      {'MessageId': 'm-1', 'MD5OfMessageBody': '0' * 32},
      {'QueueUrl': QUEUE_URL, 'MessageBody': PAYLOAD.decode()},
  )

  receipt = SqsPublisher(sqs).publish(QUEUE_URL, PAYLOAD)

  assert receipt.message_id == 'm-1'
  assert receipt.future is None


def test_sqs_publish_failure(sqs: SQSClient, stubber: Stubber) -> None:
  stubber.add_client_error(
      'send_message',
      service_error_code='AWS.SimpleQueueService.NonExistentQueue',
      http_status_code=400)

  with pytest.raises(PublishError):
    SqsPublisher(sqs).publish(QUEUE_URL, PAYLOAD)


def test_executor_publish() -> None:
  publisher = ExecutorPublisher({'resize': lambda body: body.upper()})
  try:
    receipt = publisher.publish('resize', b'abc')

    assert receipt.future is not None
    assert receipt.future.result(timeout=10) == b'ABC'
    assert receipt.message_id != ''
  finally:
    publisher.shutdown()


def test_executor_unknown_topic() -> None:
  publisher = ExecutorPublisher({})
  try:
    with pytest.raises(PublishError):
      publisher.publish('resize', PAYLOAD)
  finally:
    publisher.shutdown()


def test_executor_is_bounded() -> None:
  release = threading.Event()
  publisher = ExecutorPublisher({'resize': lambda _: release.wait(10)}, max_workers=1, max_pending=2)
  try:
    first = publisher.publish('resize', PAYLOAD)
    second = publisher.publish('resize', PAYLOAD)

    with pytest.raises(PublishError):
      publisher.publish('resize', PAYLOAD)

    release.set()
    assert first.future is not None and first.future.result(timeout=10)
    assert second.future is not None and second.future.result(timeout=10)

    # Slots are released by a done callback, which may run just after result().
    third = None
    for _ in range(100):
      try:
        third = publisher.publish('resize', PAYLOAD)
        break
      except PublishError:
        time.sleep(0.01)
    assert third is not None
  finally:
    release.set()
    publisher.shutdown()


def test_executor_after_shutdown() -> None:
  publisher = ExecutorPublisher({'resize': lambda body: body})
  publisher.shutdown()

  with pytest.raises(PublishError):
    publisher.publish('resize', PAYLOAD)
