import argparse
import os
import sys
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from logging import Logger
from typing import Optional, Sequence
from urllib import parse

from assetdelivery.bootstrap import Components, get_components
from assetdelivery.delivery.index import Config, InstantResponse, Redirect
from assetdelivery.jsonlog import init_logging
from assetdelivery.resize import index as resize
from assetdelivery.video.index import is_video_request

RESIZE_PATH = '/resize'
MAX_PAYLOAD_SIZE = 64 * 1024

logger = init_logging(__name__)


def new_handler(components: Components) -> type[BaseHTTPRequestHandler]:

  class Handler(BaseHTTPRequestHandler):

    def log_message(self, format: str, *args: object) -> None:
      logger.debug({'message': 'http', 'line': format % args})

    def respond(self, result: Redirect | InstantResponse) -> None:
      self.send_response(result.status)
      self.send_header('cache-control', result.cache_control)
      if isinstance(result, Redirect):
        self.send_header('location', result.location)
        self.send_header('content-length', '0')
        self.end_headers()
        return

      body = result.body.encode()
      self.send_header('content-type', 'text/plain; charset=utf-8')
      self.send_header('content-length', str(len(body)))
      self.end_headers()
      if self.command != 'HEAD':
        self.wfile.write(body)

    def route(self) -> None:
      url = parse.urlsplit(self.path)
      if is_video_request(url.path, self.headers.get('content-type', '')):
        self.respond(components.video.handle(self.command, url.path, url.query))
      else:
        self.respond(components.delivery.handle(self.command, url.query))

    def do_GET(self) -> None:
      self.route()

    def do_HEAD(self) -> None:
      self.route()

    def do_POST(self) -> None:
      if parse.urlsplit(self.path).path != RESIZE_PATH:
        self.route()
        return

      try:
        length = int(self.headers.get('content-length') or 0)
      except ValueError:
        length = 0
      if length <= 0 or MAX_PAYLOAD_SIZE < length:
        status, body = HTTPStatus.BAD_REQUEST, "Bad parameter provided 'body'. body is missing."
      else:
        status, body = resize.handle_payload(resize.logger, components.resizer,
                                             components.config, self.rfile.read(length))
      self.respond(InstantResponse(status=status, body=body, cache_control='no-store', reason=''))

  return Handler


def serve(log: Logger, components: Components, address: str) -> None:
  host, _, port = address.rpartition(':')
  httpd = ThreadingHTTPServer((host, int(port)), new_handler(components))
  components.video_worker.start()
  log.info({'message': 'opening HTTP server', 'address': address})
  try:
    httpd.serve_forever()
  finally:
    httpd.server_close()
    components.video_worker.stop()


def main(argv: Optional[Sequence[str]] = None) -> int:
  ap = argparse.ArgumentParser(description='On-demand image and video resize cache.')
  ap.add_argument(
      '--address', default='0.0.0.0:80', help='The binding address for the application.')
  args = ap.parse_args(argv)

  config = Config.from_env(logger, os.environ)
  if config is None:
    return 1

  try:
    serve(logger, get_components(config), args.address)
  except KeyboardInterrupt:
    pass
  return 0


if __name__ == '__main__':
  sys.exit(main())
