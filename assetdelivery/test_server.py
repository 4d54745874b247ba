import http.client
import json
import logging
import threading
from http import HTTPStatus
from http.server import ThreadingHTTPServer
from pathlib import Path
from typing import Generator

import pytest
import requests
from pyvips import Image  # type: ignore

from assetdelivery.bootstrap import get_components
from assetdelivery.delivery.index import Config, SourceMode
from assetdelivery.jsonlog import MyJsonFormatter
from assetdelivery.server import new_handler

PUBLIC_HOST = 'http://cdn.example.com'


@pytest.fixture
def config(tmp_path: Path) -> Config:
  assets = tmp_path / 'assets'
  (assets / 'clips').mkdir(parents=True)
  image = (Image.black(40, 20, bands=3) + [200, 100, 50]).cast('uchar')
  (assets / 'a.png').write_bytes(image.write_to_buffer('.png'))
  (assets / 'clips' / 'intro.mp4').write_bytes(b'mp4 data')
  return Config(
      source_mode=SourceMode.LOCAL,
      asset_dir=str(assets),
      storage_dir=str(tmp_path / 'store'),
      public_host=PUBLIC_HOST,
      permitted_hosts=('good.example.com',))


@pytest.fixture
def base_url(config: Config) -> Generator[str, None, None]:
  components = get_components(config)
  httpd = ThreadingHTTPServer(('127.0.0.1', 0), new_handler(components))
  thread = threading.Thread(target=httpd.serve_forever, daemon=True)
  thread.start()
  try:
    yield f'http://127.0.0.1:{httpd.server_address[1]}'
  finally:
    httpd.shutdown()
    httpd.server_close()


def test_image_request(base_url: str) -> None:
  res = requests.get(f'{base_url}/?url=a.png&width=20', allow_redirects=False, timeout=30)

  assert res.status_code == HTTPStatus.PERMANENT_REDIRECT
  assert res.headers['location'].startswith(f'{PUBLIC_HOST}/resized/')
  assert res.headers['location'].endswith('/20.png')
  assert res.headers['cache-control'] == f'public, max-age={365 * 24 * 60 * 60}'


def test_image_request_rejected(base_url: str) -> None:
  res = requests.get(f'{base_url}/?url=a.png&width=abc', allow_redirects=False, timeout=30)

  assert res.status_code == HTTPStatus.BAD_REQUEST
  assert res.text.startswith("Bad parameter provided 'width'.")


def test_video_request(base_url: str, config: Config) -> None:
  res = requests.get(f'{base_url}/clips/intro.mp4?width=20', allow_redirects=False, timeout=30)

  assert res.status_code == HTTPStatus.NOT_FOUND
  assert len(get_components(config).video_queue) == 1


def test_resize_ingress(base_url: str) -> None:
  res = requests.post(f'{base_url}/resize', data=b'not json', timeout=30)

  assert res.status_code == HTTPStatus.BAD_REQUEST


@pytest.mark.parametrize(
    'payload, status', [
        ({
            'url': 'http://blocked.example.com/x.png',
            'width': 50,
            'prefix': 'resized',
        }, HTTPStatus.FORBIDDEN),
        ({
            'url': 'http://good.example.com/x.png',
            'width': 50,
            'prefix': 'attacker-chosen',
        }, HTTPStatus.BAD_REQUEST),
    ],
    ids=['blocked-host', 'foreign-prefix'])
def test_resize_ingress_applies_request_checks(
    base_url: str,
    config: Config,
    payload: dict,
    status: int,
) -> None:
  res = requests.post(f'{base_url}/resize', data=json.dumps(payload), timeout=30)

  assert res.status_code == status
  store = Path(config.storage_dir)
  assert not store.exists() or list(store.rglob('*')) == []


def test_resize_ingress_bad_content_length(base_url: str) -> None:
  conn = http.client.HTTPConnection(base_url.removeprefix('http://'), timeout=30)
  try:
    conn.putrequest('POST', '/resize')
    conn.putheader('Content-Length', 'abc')
    conn.endheaders()
    res = conn.getresponse()

    assert res.status == HTTPStatus.BAD_REQUEST
    assert res.read().decode().startswith("Bad parameter provided 'body'.")
  finally:
    conn.close()


def test_head_request(base_url: str) -> None:
  res = requests.head(f'{base_url}/?url=a.png&width=30', allow_redirects=False, timeout=30)

  assert res.status_code == HTTPStatus.PERMANENT_REDIRECT
  assert res.headers['location'].endswith('/30.png')
  assert res.content == b''


def test_json_formatter() -> None:
  record = logging.LogRecord(
      'assetdelivery', logging.WARNING, __file__, 1, {'message': 'hello', 'key': 'k'}, None, None)

  line = json.loads(MyJsonFormatter().format(record))

  assert line['level'] == 'WARNING'
  assert line['message'] == 'hello'
  assert line['key'] == 'k'
  assert '_ts' in line
  assert 'version' in line
