from http import HTTPStatus
from typing import Optional


class DeliveryError(Exception):
  """Failure that maps onto an HTTP status and a single-line body.

  `message` is what the caller sees. `cause` is only ever logged.
  """

  status: int = HTTPStatus.INTERNAL_SERVER_ERROR

  def __init__(self, message: str, cause: Optional[BaseException] = None):
    super().__init__(message)
    self.cause = cause

  @property
  def message(self) -> str:
    return str(self.args[0])

  def log_fields(self) -> dict[str, str]:
    fields = {'error': type(self).__name__}
    if self.cause is not None:
      fields['reason'] = f'{type(self.cause).__name__}: {self.cause}'
    return fields


class InvalidParameter(DeliveryError):

  def __init__(
      self,
      param: str,
      detail: str,
      cause: Optional[BaseException] = None,
      status: int = HTTPStatus.BAD_REQUEST,
  ):
    super().__init__(f"Bad parameter provided '{param}'. {detail}", cause)
    self.param = param
    self.detail = detail
    self.status = status


class NotPermitted(DeliveryError):
  status = HTTPStatus.UNAUTHORIZED

  def __init__(self) -> None:
    super().__init__('Not authorized to perform that action.')


class NotFound(DeliveryError):
  status = HTTPStatus.NOT_FOUND

  def __init__(self, what: str, cause: Optional[BaseException] = None):
    super().__init__('Not found.', cause)
    self.what = what


class SystemFailure(DeliveryError):
  status = HTTPStatus.INTERNAL_SERVER_ERROR

  def __init__(
      self,
      detail: str,
      stage: Optional[str] = None,
      key: Optional[str] = None,
      cause: Optional[BaseException] = None,
  ):
    super().__init__('An error occurred.', cause)
    self.detail = detail
    self.stage = stage
    self.key = key

  def log_fields(self) -> dict[str, str]:
    fields = {**super().log_fields(), 'detail': self.detail}
    if self.stage is not None:
      fields['stage'] = self.stage
    if self.key is not None:
      fields['key'] = self.key
    return fields


class InvalidBounds(SystemFailure):

  def __init__(self, width: int, key: Optional[str] = None):
    super().__init__(f'invalid image bounds: width {width}', stage='resize', key=key)


class UnsupportedEncoding(SystemFailure):

  def __init__(self, extension: str, key: Optional[str] = None):
    super().__init__(f'file type not handled: {extension!r}', stage='encode', key=key)
