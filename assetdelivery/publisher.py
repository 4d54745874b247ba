import dataclasses
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Optional, Protocol

from botocore.exceptions import BotoCoreError, ClientError
from mypy_boto3_sqs.client import SQSClient

Handler = Callable[[bytes], Any]


class PublishError(Exception):
  pass


@dataclasses.dataclass(frozen=True)
class PublishReceipt:
  message_id: str
  # Set only when the job runs in this process.
  future: Optional[Future] = None


class Publisher(Protocol):

  def publish(self, topic: str, payload: bytes) -> PublishReceipt:
    ...


class SqsPublisher:
  """Publishes to SQS. The topic is the queue URL."""

  def __init__(self, sqs: SQSClient):
    self.sqs = sqs

  def publish(self, topic: str, payload: bytes) -> PublishReceipt:
    try:
      res = self.sqs.send_message(QueueUrl=topic, MessageBody=payload.decode())
    except (BotoCoreError, ClientError) as e:
      raise PublishError(f'failed to send message to {topic}') from e
    return PublishReceipt(message_id=res['MessageId'])


class ExecutorPublisher:
  """Runs published jobs on a bounded in-process thread pool.

  At most `max_pending` jobs may be queued or running; beyond that `publish`
  fails instead of growing the backlog.
  """

  def __init__(self, handlers: dict[str, Handler], max_workers: int = 2, max_pending: int = 64):
    self.handlers = handlers
    self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='resize')
    self.slots = threading.BoundedSemaphore(max_pending)

  def publish(self, topic: str, payload: bytes) -> PublishReceipt:
    if topic not in self.handlers:
      raise PublishError(f'no handler for topic {topic}')

    if not self.slots.acquire(blocking=False):
      raise PublishError(f'too many pending jobs for {topic}')

    try:
      future = self.executor.submit(self.handlers[topic], payload)
    except RuntimeError as e:
      self.slots.release()
      raise PublishError('executor is shut down') from e

    future.add_done_callback(lambda _: self.slots.release())
    return PublishReceipt(message_id=uuid.uuid4().hex, future=future)

  def shutdown(self, wait: bool = True) -> None:
    self.executor.shutdown(wait=wait)
