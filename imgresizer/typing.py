from typing import Literal, NewType, NotRequired, TypedDict

HttpPath = NewType('HttpPath', str)
S3Key = NewType('S3Key', str)


class Header(TypedDict):
  key: NotRequired[str]
  value: str


class Request(TypedDict):
  clientIp: NotRequired[str]
  method: Literal['GET', 'HEAD', 'OPTIONS', 'TRACE', 'PUT', 'DELETE', 'POST', 'PATCH', 'CONNECT']
  uri: HttpPath
  querystring: str
  headers: dict[str, list[Header]]


class Response(TypedDict):
  headers: dict[str, list[Header]]
  status: str
  statusDescription: str


class OriginResponseConfig(TypedDict):
  distributionDomainName: str
  distributionId: str
  eventType: Literal['origin-response']
  requestId: str


class OriginResponseRecord(TypedDict):
  config: OriginResponseConfig
  request: Request
  response: NotRequired[Response]


class OriginResponseRecordContainer(TypedDict):
  cf: OriginResponseRecord


class OriginResponseEvent(TypedDict):
  Records: list[OriginResponseRecordContainer]


class ResponseResult(TypedDict):
  body: NotRequired[str]
  bodyEncoding: NotRequired[Literal['text', 'base64']]
  headers: dict[str, list[Header]]
  status: str
  statusDescription: str
