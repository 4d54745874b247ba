import collections
import dataclasses
import subprocess
import threading
from http import HTTPStatus
from logging import Logger
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Mapping, Optional, Sequence
from urllib import parse

from assetdelivery.delivery.index import (
    Config,
    InstantResponse,
    Redirect,
    first_value,
    parse_width,
    safe_relative_path
)
from assetdelivery.errors import (
    DeliveryError,
    InvalidParameter,
    NotFound,
    NotPermitted,
    SystemFailure
)
from assetdelivery.jsonlog import init_logging
from assetdelivery.storage import NoSuchArtifact, Storage
from assetdelivery.typing import StorageKey

VIDEO_EXTENSION = '.webm'
VIDEO_CONTENT_TYPE = 'video/webm'

video_mime_types = [
    'video/quicktime',
    'video/mp4',
    'video/webm',
]

video_suffixes = [
    '.mp4',
    '.mov',
    '.webm',
]

logger = init_logging(__name__)


def is_video_request(path: str, content_type: str) -> bool:
  if content_type.split(';', 1)[0].strip().lower() in video_mime_types:
    return True
  return any(path.lower().endswith(s) for s in video_suffixes)


@dataclasses.dataclass(eq=True, frozen=True)
class VideoJob:
  source_path: Path
  width: int

  @property
  def storage_key(self) -> StorageKey:
    # Output is always webm, whatever the source container is.
    return StorageKey(f'{self.width}/{self.source_path.stem}{VIDEO_EXTENSION}')


class JobQueue:
  """FIFO of pending video jobs. The lock only guards list mutation."""

  def __init__(self, maxsize: int = 256):
    self.maxsize = maxsize
    self.lock = threading.Lock()
    self.pending: collections.deque[VideoJob] = collections.deque()

  def enqueue(self, job: VideoJob) -> bool:
    with self.lock:
      if len(self.pending) >= self.maxsize:
        return False
      self.pending.append(job)
      return True

  def dequeue(self) -> Optional[VideoJob]:
    with self.lock:
      if len(self.pending) == 0:
        return None
      return self.pending.popleft()

  def __len__(self) -> int:
    with self.lock:
      return len(self.pending)


class EncoderError(Exception):
  pass


class VideoWorker:
  """Single consumer of a JobQueue.

  Wakes every `interval` seconds and processes at most one job per tick, so
  only one encoder subprocess runs at a time. Failed jobs are logged and
  dropped.
  """

  def __init__(
      self,
      log: Logger,
      storage: Storage,
      queue: JobQueue,
      interval: float = 1.0,
      crf: int = 17,
      encoder: str = 'ffmpeg',
      cache_control: str = '',
  ):
    self.log = log
    self.storage = storage
    self.queue = queue
    self.interval = interval
    self.crf = crf
    self.encoder = encoder
    self.cache_control = cache_control
    self.stopped = threading.Event()
    self.thread: Optional[threading.Thread] = None

  def start(self) -> None:
    if self.thread is not None:
      return
    self.stopped.clear()
    self.thread = threading.Thread(target=self.run, name='video-worker', daemon=True)
    self.thread.start()

  def stop(self, timeout: Optional[float] = None) -> None:
    self.stopped.set()
    if self.thread is not None:
      self.thread.join(timeout)
      self.thread = None

  def run(self) -> None:
    while not self.stopped.wait(self.interval):
      self.tick()

  def tick(self) -> Optional[VideoJob]:
    job = self.queue.dequeue()
    if job is None:
      return None
    try:
      self.process(job)
    except Exception as e:
      self.log.error({
          'message': 'unable to process video',
          'source': str(job.source_path),
          'width': job.width,
          'reason': f'{type(e).__name__}: {e}',
      })
    return job

  def exists(self, key: StorageKey) -> bool:
    try:
      self.storage.info(key)
    except NoSuchArtifact:
      return False
    return True

  def encoder_args(self, job: VideoJob, dst: Path) -> list[str]:
    return [
        self.encoder,
        '-i',
        str(job.source_path),
        # CRF 0 is lossless, 51 is the worst; 17-28 is the sane range.
        '-crf',
        str(self.crf),
        '-y',
        '-vf',
        f'scale={job.width}:-2',
        str(dst),
    ]

  def run_encoder(self, args: list[str]) -> None:
    proc = subprocess.Popen(args, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE)
    while True:
      try:
        _, stderr = proc.communicate(timeout=self.interval)
        break
      except subprocess.TimeoutExpired:
        if self.stopped.is_set():
          proc.kill()
          proc.communicate()
          raise EncoderError('encoder cancelled')

    if proc.returncode != 0:
      tail = stderr.decode(errors='replace').strip().splitlines()[-1:]
      raise EncoderError(f'encoder exited with {proc.returncode}: {" ".join(tail)}')

  def process(self, job: VideoJob) -> bool:
    key = job.storage_key
    if self.exists(key):
      self.log.debug({'message': 'already processed', 'key': key})
      return False

    if not job.source_path.is_file():
      raise FileNotFoundError(str(job.source_path))

    with NamedTemporaryFile(suffix=VIDEO_EXTENSION, delete_on_close=False) as dst:
      dst.close()

      self.log.info({'message': 'encoding', 'source': str(job.source_path), 'key': key})
      self.run_encoder(self.encoder_args(job, Path(dst.name)))

      self.log.info({'message': 'uploading', 'source': str(job.source_path), 'key': key})
      with open(dst.name, 'rb') as f:
        self.storage.write(key, f, self.cache_control, VIDEO_CONTENT_TYPE)

    self.log.info({'message': 'completed', 'source': str(job.source_path), 'key': key})
    return True


class VideoServer:

  def __init__(self, log: Logger, config: Config, storage: Storage, queue: JobQueue):
    self.log = log
    self.config = config
    self.storage = storage
    self.queue = queue
    self.asset_dir = Path(config.asset_dir)

  def job_from_request(self, path: str, qs: Mapping[str, Sequence[str]]) -> VideoJob:
    width = parse_width(qs)
    rel = safe_relative_path(parse.unquote(path).lstrip('/'))
    if rel is None:
      raise InvalidParameter('path', 'Invalid path provided.')
    return VideoJob(source_path=self.asset_dir.joinpath(*rel.parts), width=width)

  def process_clear(self, job: VideoJob, code: str) -> InstantResponse:
    if self.config.clear_code == '' or code != self.config.clear_code:
      raise NotPermitted()
    try:
      self.storage.delete(job.storage_key)
    except Exception as e:
      raise SystemFailure('Could not delete video.', stage='delete', key=job.storage_key, cause=e)
    return InstantResponse(
        status=HTTPStatus.NO_CONTENT, body='', cache_control='no-store', reason='cleared')

  def process(self, path: str, qs: Mapping[str, Sequence[str]]) -> Redirect | InstantResponse:
    job = self.job_from_request(path, qs)

    clear = (first_value(qs, 'clear') or '').strip()
    if clear != '':
      return self.process_clear(job, clear)

    key = job.storage_key
    try:
      self.storage.info(key)
    except NoSuchArtifact:
      pass
    except Exception as e:
      raise SystemFailure('Could not check if video exists.', stage='lookup', key=key, cause=e)
    else:
      return Redirect(
          status=HTTPStatus.FOUND,
          location=self.storage.canonical_url(key),
          cache_control=self.config.cache_control_temp,
          reason='gen found')

    if not job.source_path.is_file():
      raise NotFound(str(job.source_path))

    if self.queue.enqueue(job):
      self.log.debug({'message': 'enqueued', 'key': key})
    else:
      self.log.warning({'message': 'video queue full', 'key': key})

    return InstantResponse(
        status=HTTPStatus.NOT_FOUND,
        body='Not found.',
        cache_control=self.config.cache_control_temp,
        reason='enqueued')

  def handle(self, method: str, path: str, qstr: str) -> Redirect | InstantResponse:
    if method not in ['GET', 'HEAD']:
      return InstantResponse(
          status=HTTPStatus.FORBIDDEN,
          body='GET methods only.',
          cache_control=self.config.cache_control_temp,
          reason='method not allowed')

    try:
      return self.process(path, parse.parse_qs(qstr, keep_blank_values=True))
    except DeliveryError as e:
      self.log.warning({'message': 'request failed', 'path': path, 'qstr': qstr, **e.log_fields()})
      return InstantResponse(
          status=e.status,
          body=e.message,
          cache_control=self.config.cache_control_temp,
          reason=type(e).__name__)
    except Exception as e:
      self.log.error({'message': 'error during process()', 'path': path, 'reason': str(e)})
      return InstantResponse(
          status=HTTPStatus.INTERNAL_SERVER_ERROR,
          body='An error occurred.',
          cache_control=self.config.cache_control_temp,
          reason='error occurred')
