from typing import Literal, NewType, NotRequired, TypedDict

SourceLocation = NewType('SourceLocation', str)
StorageKey = NewType('StorageKey', str)


class FunctionUrlHttp(TypedDict):
  method: Literal['GET', 'HEAD', 'OPTIONS', 'PUT', 'DELETE', 'POST', 'PATCH']
  path: str
  protocol: str
  sourceIp: str
  userAgent: str


class FunctionUrlRequestContext(TypedDict):
  accountId: str
  apiId: str
  domainName: str
  requestId: str
  http: FunctionUrlHttp
  timeEpoch: int


class FunctionUrlEvent(TypedDict):
  version: Literal['2.0']
  rawPath: str
  rawQueryString: str
  headers: dict[str, str]
  requestContext: FunctionUrlRequestContext
  body: NotRequired[str]
  isBase64Encoded: bool


class FunctionUrlResult(TypedDict):
  statusCode: int
  headers: dict[str, str]
  body: str


class SqsRecord(TypedDict):
  messageId: str
  receiptHandle: str
  body: str
  eventSource: Literal['aws:sqs']
  eventSourceARN: str


class SqsEvent(TypedDict):
  Records: list[SqsRecord]


class BatchItemFailure(TypedDict):
  itemIdentifier: str


class SqsBatchResult(TypedDict):
  batchItemFailures: list[BatchItemFailure]


class ResizePayload(TypedDict):
  version: int
  url: str
  width: int
  encoding: str
  prefix: str
