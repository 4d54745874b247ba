import os

from aws_lambda_powertools.utilities.typing import LambdaContext

from assetdelivery.bootstrap import Components, get_components
from assetdelivery.delivery import index as delivery
from assetdelivery.delivery.index import Config
from assetdelivery.resize import index as resize
from assetdelivery.typing import (
    FunctionUrlEvent,
    FunctionUrlResult,
    SqsBatchResult,
    SqsEvent
)


def load_components() -> Components:
  config = Config.from_env(delivery.logger, os.environ)
  if config is None:
    raise RuntimeError('invalid configuration')
  return get_components(config)


def delivery_lambda_handler(
    event: FunctionUrlEvent,
    _: LambdaContext,
) -> FunctionUrlResult:
  return delivery.lambda_main(load_components().delivery, event)


def resize_lambda_handler(
    event: SqsEvent,
    _: LambdaContext,
) -> SqsBatchResult:
  components = load_components()
  return resize.lambda_main(components.resizer, components.config, event)
