import dataclasses
import datetime
import hashlib
import json
import re
import threading
from enum import Enum
from http import HTTPStatus
from logging import Logger
from pathlib import PurePosixPath
from typing import Any, Callable, Mapping, Optional, Sequence
from urllib import parse

from assetdelivery.errors import (
    DeliveryError,
    InvalidParameter,
    NotPermitted,
    SystemFailure
)
from assetdelivery.jsonlog import init_logging
from assetdelivery.publisher import Publisher, PublishError, PublishReceipt
from assetdelivery.storage import NoSuchArtifact, Storage, StoredArtifact, get_now
from assetdelivery.typing import (
    FunctionUrlEvent,
    FunctionUrlResult,
    ResizePayload,
    SourceLocation,
    StorageKey
)

MAX_IMAGE_DIMENSION = 4096
RESIZE_TOPIC = 'asset-delivery-resize'
API_VERSION = 1

max_age_re = re.compile(r'^\s*max-age\s*=\s*"?([^",]*)"?\s*$', re.IGNORECASE)
uint_re = re.compile(r'^[0-9]+$')

logger = init_logging(__name__)


def json_dump(obj: Any) -> str:
  return json.dumps(obj, separators=(',', ':'), sort_keys=True)


class SourceMode(Enum):
  URL = 'url'
  LOCAL = 'local'


class DispatchMode(Enum):
  SYNC = 'sync'
  ASYNC = 'async'


def split_list(s: str) -> tuple[str, ...]:
  return tuple(x.strip() for x in s.split(',') if x.strip() != '')


@dataclasses.dataclass(eq=True, frozen=True)
class Config:
  key_prefix: str = 'resized'
  permitted_hosts: tuple[str, ...] = ()
  dispatch_mode: DispatchMode = DispatchMode.ASYNC
  source_mode: SourceMode = SourceMode.URL
  asset_dir: str = '.'
  clear_code: str = ''
  default_cache_control: str = ''
  perm_resp_max_age: int = 365 * 24 * 60 * 60
  temp_resp_max_age: int = 0
  sqs_queue_url: str = ''
  bucket: str = ''
  region: str = ''
  public_host: str = ''
  storage_dir: str = ''
  fetch_timeout: float = 5.0
  quality: int = 80
  video_interval: float = 1.0
  video_crf: int = 17
  video_queue_size: int = 256

  @property
  def resize_topic(self) -> str:
    return self.sqs_queue_url if self.sqs_queue_url != '' else RESIZE_TOPIC

  @property
  def cache_control_perm(self) -> str:
    return f'public, max-age={self.perm_resp_max_age}'

  @property
  def cache_control_temp(self) -> str:
    return f'public, max-age={self.temp_resp_max_age}'

  @classmethod
  def from_env(cls, log: Logger, env: Mapping[str, str]) -> Optional['Config']:
    """Builds the configuration from `ASSET_*` variables.

    Either `ASSET_BUCKET` or `ASSET_STORAGE_DIR` must be set. Returns None,
    after logging the offending key, when the environment is unusable.
    """

    def get(name: str, default: str = '') -> str:
      return env.get(f'ASSET_{name}', default).strip()

    try:
      bucket = get('BUCKET')
      storage_dir = get('STORAGE_DIR')
      if bucket == '' and storage_dir == '':
        raise KeyError('ASSET_BUCKET')

      return cls(
          key_prefix=get('KEY_PREFIX', 'resized').strip('/'),
          permitted_hosts=split_list(get('PERMITTED_HOSTS')),
          dispatch_mode=DispatchMode(get('DISPATCH_MODE', 'async').lower()),
          source_mode=SourceMode(get('SOURCE_MODE', 'url').lower()),
          asset_dir=get('DIR', '.'),
          clear_code=get('CLEAR_CODE'),
          default_cache_control=get('DEFAULT_CACHE_CONTROL'),
          perm_resp_max_age=int(get('PERM_RESP_MAX_AGE', str(365 * 24 * 60 * 60))),
          temp_resp_max_age=int(get('TEMP_RESP_MAX_AGE', '0')),
          sqs_queue_url=get('SQS_QUEUE_URL'),
          bucket=bucket,
          region=get('REGION', env.get('AWS_DEFAULT_REGION', '')),
          public_host=get('PUBLIC_HOST'),
          storage_dir=storage_dir,
          fetch_timeout=float(get('FETCH_TIMEOUT', '5')),
          quality=int(get('QUALITY', '80')),
          video_interval=float(get('VIDEO_INTERVAL', '1')),
          video_crf=int(get('VIDEO_CRF', '17')),
          video_queue_size=int(get('VIDEO_QUEUE_SIZE', '256')))
    except KeyError as e:
      log.warning({
          'message': 'environment variable not found',
          'key': str(e),
      })
      return None
    except ValueError as e:
      log.warning({
          'message': 'invalid environment variable',
          'reason': str(e),
      })
      return None


def derive_content_hash(location: str) -> str:
  return hashlib.sha1(location.encode('utf-8')).hexdigest()


def desired_extension(location: str, encoding: str) -> str:
  if encoding != '':
    return f'.{encoding}'
  return PurePosixPath(parse.urlsplit(location).path).suffix


def derive_storage_key(prefix: str, content_hash: str, width: int, extension: str) -> StorageKey:
  return StorageKey(f'{prefix}/{content_hash}/{width}{extension}')


@dataclasses.dataclass(eq=True, frozen=True)
class TransformRequest:
  location: SourceLocation
  width: int
  prefix: str
  encoding: str = ''
  host: Optional[str] = None
  force: bool = False
  is_local: bool = False

  @property
  def content_hash(self) -> str:
    return derive_content_hash(self.location)

  @property
  def extension(self) -> str:
    return desired_extension(self.location, self.encoding)

  @property
  def storage_key(self) -> StorageKey:
    return derive_storage_key(self.prefix, self.content_hash, self.width, self.extension)

  def to_payload(self) -> ResizePayload:
    return {
        'version': API_VERSION,
        'url': self.location,
        'width': self.width,
        'encoding': self.encoding,
        'prefix': self.prefix,
    }

  @classmethod
  def from_payload(cls, payload: Any) -> 'TransformRequest':
    if not isinstance(payload, dict):
      raise InvalidParameter('body', 'Expected a JSON object.')
    try:
      qs = {
          'url': [str(payload['url'])],
          'width': [str(payload['width'])],
          'encoding': [str(payload.get('encoding', ''))],
      }
      prefix = str(payload['prefix'])
    except KeyError as e:
      raise InvalidParameter('body', f'Missing field {e}.', e)
    return resolve_transform_request(qs, prefix, SourceMode.URL)


def first_value(qs: Mapping[str, Sequence[str]], name: str) -> Optional[str]:
  xs = qs.get(name)
  if xs is None or len(xs) == 0:
    return None
  return xs[0]


def parse_width(qs: Mapping[str, Sequence[str]], name: str = 'width') -> int:
  s = first_value(qs, name)
  if s is None:
    raise InvalidParameter(name, 'Missing value.')

  s = s.strip()
  if uint_re.match(s) is None:
    raise InvalidParameter(name, 'Invalid value.')

  width = int(s)
  if width <= 0 or MAX_IMAGE_DIMENSION < width:
    raise InvalidParameter(
        name, f'Expected a width greater than 0 and at most {MAX_IMAGE_DIMENSION}.')
  return width


def safe_relative_path(s: str) -> Optional[PurePosixPath]:
  if '\x00' in s:
    return None
  path = PurePosixPath(s)
  if path.is_absolute() or '..' in path.parts or len(path.parts) == 0:
    return None
  return path


def resolve_transform_request(
    qs: Mapping[str, Sequence[str]],
    prefix: str,
    source_mode: SourceMode,
) -> TransformRequest:
  width = parse_width(qs)

  location = (first_value(qs, 'url') or '').strip()
  if location == '':
    raise InvalidParameter('url', 'Invalid (or missing) URL.')

  host: Optional[str] = None
  match source_mode:
    case SourceMode.URL:
      try:
        parsed = parse.urlsplit(location)
        hostname = parsed.hostname
        # Accessing the port validates it.
        parsed.port
      except ValueError as e:
        raise InvalidParameter('url', 'Invalid URL provided.', e)
      if parsed.scheme not in ['http', 'https'] or hostname is None or hostname == '':
        raise InvalidParameter('url', 'Invalid URL provided.')
      host = hostname
    case SourceMode.LOCAL:
      if safe_relative_path(location) is None:
        raise InvalidParameter('url', 'Invalid path provided.')

  encoding = (first_value(qs, 'encoding') or '').strip()

  return TransformRequest(
      location=SourceLocation(location),
      width=width,
      prefix=prefix,
      encoding=encoding,
      host=host,
      force='force' in qs,
      is_local=source_mode == SourceMode.LOCAL)


def host_matches_pattern(pattern: str, host: str) -> bool:
  """Matches `host` against a dot-segmented pattern.

  `*` stands for exactly one segment, so both sides must have the same number
  of segments.
  """
  ps = pattern.strip().lower().split('.')
  hs = host.split('.')
  if len(ps) != len(hs):
    return False
  return all(p == '*' or p == h for p, h in zip(ps, hs))


def host_permitted(patterns: Sequence[str], host: str) -> bool:
  if len(patterns) == 0:
    return True
  return any(host_matches_pattern(p, host) for p in patterns)


def parse_max_age(cache_control: str) -> Optional[int]:
  for directive in cache_control.split(','):
    m = max_age_re.match(directive)
    if m is None:
      continue
    value = m.group(1).strip()
    if uint_re.match(value) is None:
      return None
    return int(value)
  return None


def artifact_expired(artifact: StoredArtifact, now: datetime.datetime) -> bool:
  max_age = parse_max_age(artifact.cache_control)
  if max_age is None:
    return False
  if max_age == 0:
    return True
  return artifact.created_at + datetime.timedelta(seconds=max_age) <= now


def needs_transform(
    req: TransformRequest,
    artifact: Optional[StoredArtifact],
    now: datetime.datetime,
) -> bool:
  if req.force:
    return True
  if artifact is None:
    return True
  return artifact_expired(artifact, now)


@dataclasses.dataclass(frozen=True)
class Redirect:
  status: int
  location: str
  cache_control: str
  reason: str
  receipt: Optional[PublishReceipt] = None


@dataclasses.dataclass(frozen=True)
class InstantResponse:
  status: int
  body: str
  cache_control: str
  reason: str


Transform = Callable[[TransformRequest], StorageKey]


class DeliveryServer:

  def __init__(
      self,
      log: Logger,
      config: Config,
      storage: Storage,
      publisher: Publisher,
      transform: Transform,
      clock: Callable[[], datetime.datetime] = get_now,
  ):
    self.log = log
    self.config = config
    self.storage = storage
    self.publisher = publisher
    self.transform = transform
    self.clock = clock
    self.local = threading.local()

  @property
  def log_context(self) -> dict[str, str]:
    return getattr(self.local, 'log_context', {'qstr': ''})

  def set_log_context(self, qstr: str) -> None:
    self.local.log_context = {'qstr': qstr}

  def log_warning(self, message: str, dict: dict[str, Any]) -> None:
    self.log.warning({
        'message': message,
        **self.log_context,
        **dict,
    })

  def log_debug(self, message: str, dict: dict[str, Any]) -> None:
    self.log.debug({
        'message': message,
        **self.log_context,
        **dict,
    })

  def log_error(self, message: str, dict: dict[str, Any]) -> None:
    self.log.error({
        'message': message,
        **self.log_context,
        **dict,
    })

  def get_artifact(self, key: StorageKey) -> Optional[StoredArtifact]:
    try:
      return self.storage.info(key)
    except NoSuchArtifact:
      return None
    except Exception as e:
      raise SystemFailure(
          'Could not check if image already exists.', stage='lookup', key=key, cause=e)

  def needs_transform(self, req: TransformRequest) -> bool:
    if req.force:
      return True
    return needs_transform(req, self.get_artifact(req.storage_key), self.clock())

  def dispatch(self, req: TransformRequest) -> Optional[PublishReceipt]:
    payload = json_dump(req.to_payload()).encode()
    try:
      receipt = self.publisher.publish(self.config.resize_topic, payload)
    except PublishError as e:
      self.log_error('failed to publish', {'reason': str(e.__cause__ or e), 'key': req.storage_key})
      return None
    self.log_debug('enqueued', {'message_id': receipt.message_id, 'key': req.storage_key})
    return receipt

  def process_clear(self, req: TransformRequest, code: str) -> InstantResponse:
    if self.config.clear_code == '' or code != self.config.clear_code:
      raise NotPermitted()

    try:
      self.storage.delete(req.storage_key)
    except Exception as e:
      raise SystemFailure('Could not delete artifact.', stage='delete', key=req.storage_key, cause=e)

    return InstantResponse(
        status=HTTPStatus.NO_CONTENT,
        body='',
        cache_control='no-store',
        reason='cleared')

  def process(self, qs: Mapping[str, Sequence[str]]) -> Redirect | InstantResponse:
    req = resolve_transform_request(qs, self.config.key_prefix, self.config.source_mode)

    clear = (first_value(qs, 'clear') or '').strip()
    if clear != '':
      return self.process_clear(req, clear)

    if req.host is not None and not host_permitted(self.config.permitted_hosts, req.host):
      raise InvalidParameter(
          'url', 'Host is not permitted to perform this action.', status=HTTPStatus.FORBIDDEN)

    key = req.storage_key

    if not self.needs_transform(req):
      return Redirect(
          status=HTTPStatus.PERMANENT_REDIRECT,
          location=self.storage.canonical_url(key),
          cache_control=self.config.cache_control_perm,
          reason='gen found')

    if req.is_local or self.config.dispatch_mode == DispatchMode.SYNC:
      self.transform(req)
      return Redirect(
          status=HTTPStatus.PERMANENT_REDIRECT,
          location=self.storage.canonical_url(key),
          cache_control=self.config.cache_control_perm,
          reason='generated')

    return Redirect(
        status=HTTPStatus.TEMPORARY_REDIRECT,
        location=req.location,
        cache_control=self.config.cache_control_temp,
        reason='dispatched',
        receipt=self.dispatch(req))

  def handle(self, method: str, qstr: str) -> Redirect | InstantResponse:
    self.set_log_context(qstr)

    if method not in ['GET', 'HEAD']:
      return InstantResponse(
          status=HTTPStatus.FORBIDDEN,
          body='GET methods only.',
          cache_control=self.config.cache_control_temp,
          reason='method not allowed')

    try:
      result = self.process(parse.parse_qs(qstr, keep_blank_values=True))
    except DeliveryError as e:
      self.log_warning('request failed', e.log_fields())
      return InstantResponse(
          status=e.status,
          body=e.message,
          cache_control=self.config.cache_control_temp,
          reason=type(e).__name__)
    except Exception as e:
      self.log_error('error during process()', {'reason': str(e)})
      return InstantResponse(
          status=HTTPStatus.INTERNAL_SERVER_ERROR,
          body='An error occurred.',
          cache_control=self.config.cache_control_temp,
          reason='error occurred')

    self.log_debug('done', {
        'status': result.status,
        'reason': result.reason,
    })
    return result


def to_function_url_result(result: Redirect | InstantResponse) -> FunctionUrlResult:
  if isinstance(result, Redirect):
    return {
        'statusCode': result.status,
        'headers': {
            'location': result.location,
            'cache-control': result.cache_control,
        },
        'body': '',
    }
  elif isinstance(result, InstantResponse):
    return {
        'statusCode': result.status,
        'headers': {
            'cache-control': result.cache_control,
            'content-type': 'text/plain; charset=utf-8',
        },
        'body': result.body,
    }
  else:
    raise Exception('system error')


def lambda_main(server: DeliveryServer, event: FunctionUrlEvent) -> FunctionUrlResult:
  method = event['requestContext']['http']['method']
  return to_function_url_result(server.handle(method, event.get('rawQueryString', '')))
