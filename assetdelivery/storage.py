import dataclasses
import datetime
import json
import shutil
from pathlib import Path, PurePosixPath
from typing import IO, Optional, Protocol

from botocore.exceptions import ClientError
from dateutil import parser, tz
from mypy_boto3_s3.client import S3Client
from mypy_boto3_s3.type_defs import HeadObjectOutputTypeDef

from assetdelivery.typing import StorageKey

METADATA_SUFFIX = '.meta.json'


class NoSuchArtifact(Exception):
  pass


@dataclasses.dataclass(frozen=True)
class StoredArtifact:
  cache_control: str
  created_at: datetime.datetime

  @classmethod
  def from_s3_object(cls, obj: HeadObjectOutputTypeDef) -> 'StoredArtifact':
    return cls(cache_control=obj.get('CacheControl', ''), created_at=obj['LastModified'])


class Storage(Protocol):

  def info(self, key: StorageKey) -> StoredArtifact:
    ...

  def read(self, key: StorageKey) -> IO[bytes]:
    ...

  def write(
      self,
      key: StorageKey,
      body: bytes | IO[bytes],
      cache_control: str,
      content_type: Optional[str] = None,
  ) -> None:
    ...

  def delete(self, key: StorageKey) -> None:
    ...

  def canonical_url(self, key: StorageKey) -> str:
    ...


def is_not_found_client_error(exception: ClientError) -> bool:
  if 'Error' not in exception.response:
    return False
  if 'Code' not in exception.response['Error']:
    return False
  return exception.response['Error']['Code'] in ['404', 'NoSuchKey']


def get_now() -> datetime.datetime:
  # Return timezone-aware datetime
  return datetime.datetime.now(tz=tz.tzutc())


class S3Storage:

  def __init__(self, s3: S3Client, bucket: str, public_host: str = ''):
    self.s3 = s3
    self.bucket = bucket
    self.public_host = public_host.strip().rstrip('/')

  def info(self, key: StorageKey) -> StoredArtifact:
    try:
      res = self.s3.head_object(Bucket=self.bucket, Key=key)
    except ClientError as e:
      if is_not_found_client_error(e):
        raise NoSuchArtifact(key) from e
      raise e
    return StoredArtifact.from_s3_object(res)

  def read(self, key: StorageKey) -> IO[bytes]:
    try:
      res = self.s3.get_object(Bucket=self.bucket, Key=key)
    except ClientError as e:
      if is_not_found_client_error(e):
        raise NoSuchArtifact(key) from e
      raise e
    return res['Body']  # type: ignore[return-value]

  def write(
      self,
      key: StorageKey,
      body: bytes | IO[bytes],
      cache_control: str,
      content_type: Optional[str] = None,
  ) -> None:
    extra: dict[str, str] = {}
    if cache_control != '':
      extra['CacheControl'] = cache_control
    if content_type is not None:
      extra['ContentType'] = content_type
    self.s3.put_object(Bucket=self.bucket, Key=key, Body=body, **extra)  # type: ignore[arg-type]

  def delete(self, key: StorageKey) -> None:
    self.s3.delete_object(Bucket=self.bucket, Key=key)

  def canonical_url(self, key: StorageKey) -> str:
    host = self.public_host
    if host == '':
      host = f'https://{self.bucket}.s3.amazonaws.com'
    return f'{host}/{key}'


class LocalStorage:
  """Stores artifacts under a directory, with a JSON sidecar per object.

  The sidecar holds the cache-control value and the write timestamp, which is
  what S3 keeps as object metadata.
  """

  def __init__(self, root: Path, public_host: str):
    self.root = root
    self.public_host = public_host.strip().rstrip('/')

  def path_of(self, key: StorageKey) -> Path:
    rel = PurePosixPath(key)
    if rel.is_absolute() or '..' in rel.parts:
      raise ValueError(f'unsafe storage key: {key}')
    return self.root.joinpath(*rel.parts)

  def meta_path_of(self, key: StorageKey) -> Path:
    path = self.path_of(key)
    return path.with_name(path.name + METADATA_SUFFIX)

  def info(self, key: StorageKey) -> StoredArtifact:
    if not self.path_of(key).is_file():
      raise NoSuchArtifact(key)
    try:
      meta = json.loads(self.meta_path_of(key).read_text())
    except FileNotFoundError as e:
      raise NoSuchArtifact(key) from e
    return StoredArtifact(
        cache_control=meta.get('cache_control', ''),
        created_at=parser.isoparse(meta['created_at']))

  def read(self, key: StorageKey) -> IO[bytes]:
    try:
      return self.path_of(key).open('rb')
    except FileNotFoundError as e:
      raise NoSuchArtifact(key) from e

  def write(
      self,
      key: StorageKey,
      body: bytes | IO[bytes],
      cache_control: str,
      content_type: Optional[str] = None,
  ) -> None:
    path = self.path_of(key)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open('wb') as f:
      if isinstance(body, bytes):
        f.write(body)
      else:
        shutil.copyfileobj(body, f)

    meta = {
        'cache_control': cache_control,
        'content_type': content_type,
        'created_at': get_now().isoformat(),
    }
    self.meta_path_of(key).write_text(json.dumps(meta, sort_keys=True))

  def delete(self, key: StorageKey) -> None:
    self.path_of(key).unlink(missing_ok=True)
    self.meta_path_of(key).unlink(missing_ok=True)

  def canonical_url(self, key: StorageKey) -> str:
    return f'{self.public_host}/{key}'
