import base64
import binascii
import dataclasses
import json
import time
from http import HTTPStatus
from logging import Logger
from pathlib import Path
from typing import Any, Optional, Tuple

import requests
from pyvips import Error as VipsError  # type: ignore
from pyvips import Image, Kernel, Operation  # type: ignore

from assetdelivery.delivery.index import (
    Config,
    TransformRequest,
    host_permitted,
    safe_relative_path
)
from assetdelivery.errors import (
    DeliveryError,
    InvalidBounds,
    InvalidParameter,
    NotFound,
    SystemFailure,
    UnsupportedEncoding
)
from assetdelivery.jsonlog import init_logging
from assetdelivery.storage import Storage
from assetdelivery.typing import SqsBatchResult, SqsEvent, StorageKey

QUALITY = 80

LOADERS = {
    '.jpg': 'jpegload_buffer',
    '.jpeg': 'jpegload_buffer',
    '.jfif': 'jpegload_buffer',
    '.png': 'pngload_buffer',
    '.webp': 'webpload_buffer',
}

# Extension -> (libvips save suffix, content type, takes quality)
SAVERS = {
    '.jpg': ('.jpg', 'image/jpeg', True),
    '.jpeg': ('.jpg', 'image/jpeg', True),
    '.jfif': ('.jpg', 'image/jpeg', True),
    '.png': ('.png', 'image/png', False),
    '.webp': ('.webp', 'image/webp', True),
}

logger = init_logging(__name__)


@dataclasses.dataclass(eq=True, frozen=True)
class Size:
  width: int
  height: int

  @classmethod
  def from_image(cls, image: Image) -> 'Size':
    return cls(image.get('width'), image.get('height'))


@dataclasses.dataclass(frozen=True)
class Source:
  body: bytes
  cache_control: str


def calc_target_size(original: Size, target_width: int) -> Size:
  if original.width <= 0:
    raise InvalidBounds(original.width)
  height = max(1, target_width * original.height // original.width)
  return Size(target_width, height)


def decode_image(body: bytes, hint: str) -> Image:
  ext = Path(hint).suffix.lower()
  loader = LOADERS.get(ext)
  if loader is None:
    return Image.new_from_buffer(body, '')
  return Operation.call(loader, body)


def resize_image(image: Image, target_width: int) -> Image:
  original = Size.from_image(image)
  target = calc_target_size(original, target_width)

  # Aim a quarter pixel past the target so that libvips' rounding of the
  # output size lands exactly on it.
  resized = image.resize((target.width + 0.25) / original.width,
                         vscale=(target.height + 0.25) / original.height,
                         kernel=Kernel.LANCZOS3)
  if Size.from_image(resized) != target:
    resized = resized.crop(0, 0, min(resized.width, target.width),
                           min(resized.height, target.height))
  return resized


def encode_image(image: Image, extension: str, quality: int) -> Tuple[bytes, str]:
  saver = SAVERS.get(extension.lower())
  if saver is None:
    raise UnsupportedEncoding(extension)
  suffix, content_type, lossy = saver
  if lossy:
    return image.write_to_buffer(suffix, Q=quality), content_type
  return image.write_to_buffer(suffix), content_type


class Resizer:
  """Fetches a source image, resizes it and writes it back to storage."""

  def __init__(
      self,
      log: Logger,
      storage: Storage,
      session: requests.Session,
      default_cache_control: str = '',
      asset_dir: Optional[Path] = None,
      timeout: float = 5.0,
      quality: int = QUALITY,
  ):
    self.log = log
    self.storage = storage
    self.session = session
    self.default_cache_control = default_cache_control
    self.asset_dir = asset_dir
    self.timeout = timeout
    self.quality = quality

  def fetch_url(self, req: TransformRequest) -> Source:
    key = req.storage_key
    try:
      res = self.session.get(req.location, timeout=self.timeout)
    except requests.RequestException as e:
      raise SystemFailure(f'Could not get image: {req.location}', stage='fetch', key=key, cause=e)

    if res.status_code in [HTTPStatus.NOT_FOUND, HTTPStatus.GONE]:
      raise NotFound(req.location)
    if not res.ok:
      raise SystemFailure(
          f'Could not get image: {req.location} (status {res.status_code})',
          stage='fetch',
          key=key)

    return Source(body=res.content, cache_control=res.headers.get('cache-control', ''))

  def fetch_local(self, req: TransformRequest) -> Source:
    rel = safe_relative_path(req.location)
    if self.asset_dir is None or rel is None:
      raise InvalidParameter('url', 'Invalid path provided.')
    try:
      return Source(body=self.asset_dir.joinpath(*rel.parts).read_bytes(), cache_control='')
    except (FileNotFoundError, IsADirectoryError, NotADirectoryError) as e:
      raise NotFound(req.location, e)
    except OSError as e:
      raise SystemFailure(
          f'Could not read file: {req.location}', stage='fetch', key=req.storage_key, cause=e)

  def fetch(self, req: TransformRequest) -> Source:
    if req.is_local:
      return self.fetch_local(req)
    return self.fetch_url(req)

  def resize(self, req: TransformRequest) -> StorageKey:
    key = req.storage_key
    source = self.fetch(req)

    start_ns = time.time_ns()

    try:
      image = decode_image(source.body, req.location)
      original = Size.from_image(image)
    except VipsError as e:
      raise SystemFailure('Could not read URL as an image.', stage='decode', key=key, cause=e)

    try:
      resized = resize_image(image, req.width)
    except InvalidBounds as e:
      e.key = key
      raise e
    except VipsError as e:
      raise SystemFailure(
          'Could not resize the provided image.', stage='resize', key=key, cause=e)

    try:
      body, content_type = encode_image(resized, req.extension, self.quality)
    except UnsupportedEncoding as e:
      e.key = key
      raise e
    except VipsError as e:
      # libvips evaluates lazily, so decode errors also surface here.
      raise SystemFailure('Could not encode the image.', stage='encode', key=key, cause=e)

    vips_us = (time.time_ns() - start_ns) // 1000

    cache_control = source.cache_control
    if cache_control == '':
      cache_control = self.default_cache_control

    try:
      self.storage.write(key, body, cache_control, content_type)
    except Exception as e:
      raise SystemFailure('Could not write the image.', stage='write', key=key, cause=e)

    self.log.debug({
        'message': 'resized',
        'key': key,
        'original': dataclasses.asdict(original),
        'target': dataclasses.asdict(Size.from_image(resized)),
        'content_type': content_type,
        'cache_control': cache_control,
        'img_size': len(body),
        'vips_us': vips_us,
    })

    return key


def parse_payload(body: bytes | str) -> TransformRequest:
  try:
    data: Any = json.loads(body)
  except ValueError as e:
    raise InvalidParameter('body', 'Could not unmarshal body.', e)

  # Pub/Sub push envelope: {"message": {"data": ...}}. Pushed data is base64
  # encoded JSON; an inline object is accepted as is.
  if isinstance(data, dict) and isinstance(data.get('message'), dict):
    inner = data['message'].get('data')
    if isinstance(inner, str):
      try:
        inner = json.loads(base64.b64decode(inner, validate=True))
      except (binascii.Error, ValueError) as e:
        raise InvalidParameter('body', 'Could not unmarshal message data.', e)
    data = inner

  return TransformRequest.from_payload(data)


def authorize_request(config: Config, req: TransformRequest) -> None:
  """Applies the checks the delivery endpoint applies before dispatching."""
  if req.prefix != config.key_prefix:
    raise InvalidParameter('body', 'Unexpected key prefix.')
  if req.host is not None and not host_permitted(config.permitted_hosts, req.host):
    raise InvalidParameter(
        'url', 'Host is not permitted to perform this action.', status=HTTPStatus.FORBIDDEN)


def handle_payload(
    log: Logger,
    resizer: Resizer,
    config: Config,
    body: bytes | str,
) -> Tuple[int, str]:
  """Runs one job and returns the HTTP status and body for the worker ingress."""
  try:
    req = parse_payload(body)
    authorize_request(config, req)
    key = resizer.resize(req)
  except DeliveryError as e:
    log.error({'message': 'could not resize image', **e.log_fields()})
    return e.status, e.message
  except Exception as e:
    log.error({'message': 'error during resize', 'reason': str(e)})
    return HTTPStatus.INTERNAL_SERVER_ERROR, 'An error occurred.'

  log.info({'message': 'resize completed', 'key': key})
  return HTTPStatus.OK, ''


def lambda_main(resizer: Resizer, config: Config, event: SqsEvent) -> SqsBatchResult:
  # Failed jobs are dropped. A later request for the same key dispatches again.
  for record in event['Records']:
    status, _ = handle_payload(logger, resizer, config, record['body'])
    logger.debug({'message': 'record processed', 'message_id': record['messageId'], 'status': status})

  return {'batchItemFailures': []}
