import dataclasses
from pathlib import Path

import boto3
import requests

from assetdelivery.delivery import index as delivery
from assetdelivery.delivery.index import Config, DeliveryServer
from assetdelivery.publisher import ExecutorPublisher, Publisher, SqsPublisher
from assetdelivery.resize import index as resize
from assetdelivery.resize.index import Resizer
from assetdelivery.storage import LocalStorage, S3Storage, Storage
from assetdelivery.video import index as video
from assetdelivery.video.index import JobQueue, VideoServer, VideoWorker


@dataclasses.dataclass(frozen=True)
class Components:
  config: Config
  storage: Storage
  publisher: Publisher
  resizer: Resizer
  delivery: DeliveryServer
  video_queue: JobQueue
  video_worker: VideoWorker
  video: VideoServer


instances: dict[Config, Components] = {}


def new_storage(config: Config) -> Storage:
  if config.storage_dir != '':
    return LocalStorage(Path(config.storage_dir), config.public_host)
  s3 = boto3.client('s3', region_name=config.region or None)
  return S3Storage(s3, config.bucket, config.public_host)


def new_publisher(config: Config, resizer: Resizer) -> Publisher:
  if config.sqs_queue_url != '':
    return SqsPublisher(boto3.client('sqs', region_name=config.region or None))

  def run(body: bytes) -> tuple[int, str]:
    return resize.handle_payload(resize.logger, resizer, config, body)

  return ExecutorPublisher({config.resize_topic: run})


def get_components(config: Config) -> Components:
  """Returns the wired components for `config`, creating them once per value."""
  if config in instances:
    return instances[config]

  storage = new_storage(config)
  resizer = Resizer(
      log=resize.logger,
      storage=storage,
      session=requests.Session(),
      default_cache_control=config.default_cache_control,
      asset_dir=Path(config.asset_dir),
      timeout=config.fetch_timeout,
      quality=config.quality)
  publisher = new_publisher(config, resizer)
  video_queue = JobQueue(config.video_queue_size)

  instances[config] = Components(
      config=config,
      storage=storage,
      publisher=publisher,
      resizer=resizer,
      delivery=DeliveryServer(delivery.logger, config, storage, publisher, resizer.resize),
      video_queue=video_queue,
      video_worker=VideoWorker(
          log=video.logger,
          storage=storage,
          queue=video_queue,
          interval=config.video_interval,
          crf=config.video_crf,
          cache_control=config.default_cache_control),
      video=VideoServer(video.logger, config, storage, video_queue))

  return instances[config]
