import datetime
import logging
import sys
from logging import Logger
from typing import Any

from pythonjsonlogger.jsonlogger import JsonFormatter

import assetdelivery


class MyJsonFormatter(JsonFormatter):

  def __init__(self) -> None:
    super().__init__(json_ensure_ascii=False)

  def add_fields(self, log_record: Any, record: Any, message_dict: Any) -> None:
    log_record['_ts'] = datetime.datetime.now(datetime.UTC).strftime('%Y-%m-%dT%H:%M:%S.%fZ')

    if log_record.get('level'):
      log_record['level'] = log_record['level'].upper()
    else:
      log_record['level'] = record.levelname

    log_record['version'] = assetdelivery.version

    super().add_fields(log_record, record, message_dict)


def init_logging(name: str) -> Logger:
  # https://stackoverflow.com/a/11548754/1160341
  root = logging.getLogger()
  root.setLevel(logging.DEBUG)
  for h in list(root.handlers):
    root.removeHandler(h)

  logging.getLogger('botocore').setLevel(logging.WARNING)
  logging.getLogger('urllib3').setLevel(logging.INFO)

  log = logging.getLogger(name)
  if log.handlers:
    return log

  log_handler = logging.StreamHandler()
  log_handler.setFormatter(MyJsonFormatter())
  log_handler.setLevel(logging.DEBUG)
  log_handler.setStream(sys.stderr)
  log.addHandler(log_handler)
  log.propagate = False

  return log
