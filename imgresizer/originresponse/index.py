import asyncio
import base64
import copy
import dataclasses
import datetime
import functools
import json
import logging
import posixpath
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from http import HTTPStatus
from logging import Logger
from typing import Any, Callable, Coroutine, Optional
from urllib import parse

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from mypy_boto3_s3.client import S3Client
from pythonjsonlogger.jsonlogger import JsonFormatter

import imgresizer
from imgresizer import codec
from imgresizer.profile import (
    ANIMATED_EXTENSIONS,
    PROFILES,
    SVG_MIME,
    WEBP_MIME,
    GatewayConfig,
    ImageFormat,
    ProfileSpec
)
from imgresizer.typing import (
    Header,
    HttpPath,
    OriginResponseEvent,
    Response,
    ResponseResult,
    S3Key
)

JSON_MIME = 'application/json'

# Blocking S3 and libvips calls run here. asyncio.run() does not join this
# pool, so work abandoned at the deadline finishes in the background.
executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix='imgresizer')


class MyJsonFormatter(JsonFormatter):

  def __init__(self) -> None:
    super().__init__(json_ensure_ascii=False)

  def add_fields(self, log_record: Any, record: Any, message_dict: Any) -> None:
    log_record['_ts'] = datetime.datetime.now(datetime.UTC).strftime('%Y-%m-%dT%H:%M:%S.%fZ')

    if log_record.get('level'):
      log_record['level'] = log_record['level'].upper()
    else:
      log_record['level'] = record.levelname

    log_record['version'] = imgresizer.version

    super().add_fields(log_record, record, message_dict)


def init_logging() -> Logger:
  # https://stackoverflow.com/a/11548754/1160341
  logger = logging.getLogger()
  logger.setLevel(logging.DEBUG)
  for h in logger.handlers:
    logger.removeHandler(h)

  logging.getLogger('botocore').setLevel(logging.WARNING)
  logging.getLogger('urllib3').setLevel(logging.INFO)

  log = logging.getLogger(__name__)
  log_handler = logging.StreamHandler()
  log_handler.setFormatter(MyJsonFormatter())
  log_handler.setLevel(logging.DEBUG)
  log_handler.setStream(sys.stderr)
  log.addHandler(log_handler)
  log.propagate = False

  return log


logger = init_logging()

config = GatewayConfig.from_file()


def json_dump(obj: Any) -> str:
  return json.dumps(obj, separators=(',', ':'), sort_keys=True)


def is_not_found_client_error(exception: ClientError) -> bool:
  if 'Error' not in exception.response:
    return False
  if 'Code' not in exception.response['Error']:
    return False
  return exception.response['Error']['Code'] in ['404', 'NoSuchKey']


def header(key: str, value: str) -> list[Header]:
  return [{'key': key, 'value': value}]


class OriginNotFound(Exception):
  pass


class OriginCorrupt(Exception):
  pass


class OriginTransportError(Exception):
  pass


@dataclasses.dataclass(eq=True, frozen=True)
class ParsedRequest:
  uri: HttpPath
  profile: str
  filename: str
  key: S3Key
  extension: str

  @classmethod
  def from_uri(cls, uri: HttpPath) -> 'ParsedRequest':
    path = parse.unquote(uri)
    dirname, filename = posixpath.split(path)

    # /image/<profile>/<filename>
    segments = dirname.split('/')
    profile = segments[2] if len(segments) > 2 else ''

    _, ext = posixpath.splitext(filename)

    return cls(
        uri=uri,
        profile=profile,
        filename=filename,
        key=S3Key(filename),
        extension=ext[1:].lower())


@dataclasses.dataclass(frozen=True)
class OriginObject:
  body: bytes
  content_length: int


@dataclasses.dataclass(frozen=True)
class Success:
  b64_body: str
  content_type: str


@dataclasses.dataclass(frozen=True)
class Redirect:
  location: str


@dataclasses.dataclass(frozen=True)
class Failure:
  status: HTTPStatus
  status_description: str
  error_msg: str


Outcome = Success | Redirect | Failure

NOT_FOUND = Failure(HTTPStatus.NOT_FOUND, 'Not Found', 'Not Found')
UNSUPPORTED_EXTENSION = Failure(
    HTTPStatus.FORBIDDEN, 'Unsupported extension.', 'Unsupported extension.')
NOT_NORMAL = Failure(HTTPStatus.INTERNAL_SERVER_ERROR, '', 'The file is not normal.')


async def race_deadline(
    pipeline: Coroutine[Any, Any, Outcome],
    deadline: float,
    fallback: Outcome,
    on_late: Callable[['asyncio.Task[Outcome]'], None],
) -> Outcome:
  """Returns the pipeline's outcome, or ``fallback`` if ``deadline`` seconds pass first.

  The timer is cancelled as soon as the pipeline finishes. When the timer
  wins, the pipeline is left running and ``on_late`` receives it once it
  finishes; its outcome is never returned.
  """
  task = asyncio.ensure_future(pipeline)
  timer = asyncio.ensure_future(asyncio.sleep(deadline))

  done, _ = await asyncio.wait([task, timer], return_when=asyncio.FIRST_COMPLETED)

  if task in done:
    timer.cancel()
    return task.result()

  task.add_done_callback(on_late)
  return fallback


class ImageGateway:
  instances: dict[GatewayConfig, 'ImageGateway'] = {}

  def __init__(self, log: logging.Logger, config: GatewayConfig, s3: S3Client):
    self.log = log
    self.config = config
    self.s3 = s3

  @classmethod
  def from_config(cls, log: Logger, config: GatewayConfig) -> 'ImageGateway':
    if config not in cls.instances:
      s3 = boto3.client(
          's3',
          region_name=config.region,
          config=Config(s3={'use_accelerate_endpoint': config.use_accelerate_endpoint}))
      cls.instances[config] = cls(log=log, config=config, s3=s3)

    return cls.instances[config]

  async def run_blocking(self, fn: Callable[..., Any], *args: Any) -> Any:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(executor, functools.partial(fn, *args))

  def get_object(self, bucket: str, key: S3Key) -> OriginObject:
    try:
      res = self.s3.get_object(Bucket=bucket, Key=key)
      if res.get('Body') is None:
        raise OriginCorrupt(f'no body: s3://{bucket}/{key}')
      body = res['Body'].read()
    except ClientError as e:
      if is_not_found_client_error(e):
        raise OriginNotFound(f's3://{bucket}/{key}') from e
      raise OriginTransportError(str(e)) from e
    except BotoCoreError as e:
      raise OriginTransportError(str(e)) from e

    return OriginObject(body=body, content_length=len(body))

  async def fetch(self, bucket: str, key: S3Key) -> OriginObject:
    return await self.run_blocking(self.get_object, bucket, key)


class Transformation:
  """Decides the response for a single request."""

  def __init__(self, gateway: ImageGateway, parsed: ParsedRequest, upstream: Optional[Response]):
    self.gateway = gateway
    self.config = gateway.config
    self.parsed = parsed
    self.upstream = upstream
    self.log_context = {
        'uri': str(parsed.uri),
        'profile': parsed.profile,
        'key': str(parsed.key),
    }

  def log_warning(self, message: str, dict: dict[str, Any]) -> None:
    self.gateway.log.warning({
        'message': message,
        **self.log_context,
        **dict,
    })

  def log_debug(self, message: str, dict: dict[str, Any]) -> None:
    self.gateway.log.debug({
        'message': message,
        **self.log_context,
        **dict,
    })

  def log_error(self, message: str, dict: dict[str, Any]) -> None:
    self.gateway.log.error({
        'message': message,
        **self.log_context,
        **dict,
    })

  def redirect(self) -> Redirect:
    return Redirect(self.config.fallback_location(self.parsed.profile, self.parsed.filename))

  def limit(self, b64_body: str, size: int, content_type: str) -> Success | Redirect:
    if size > self.config.size_limit:
      self.log_debug('size limit exceeded', {'size': size, 'body_size': len(b64_body)})
      return self.redirect()

    return Success(b64_body=b64_body, content_type=content_type)

  async def transform(self, profile: ProfileSpec, obj: OriginObject) -> Outcome:
    dims: Optional[codec.ImageDimensions] = await self.gateway.run_blocking(codec.probe, obj.body)

    if dims is not None and dims.format == codec.WIRE_FORMAT and profile.upscales(
        dims.width, dims.height):
      self.log_debug('upscale bypassed', {'width': dims.width, 'height': dims.height})
      # Passed through as stored, so the stored size is what counts.
      return self.limit(base64.b64encode(obj.body).decode(), obj.content_length, WEBP_MIME)

    start_ns = time.time_ns()
    resized: bytes = await self.gateway.run_blocking(
        codec.resize,
        obj.body,
        profile.width,
        profile.height,
        self.parsed.extension in ANIMATED_EXTENSIONS,
    )
    vips_us = (time.time_ns() - start_ns) // 1000

    self.log_debug('resized', {
        'original': dims,
        'target': profile,
        'img_size': len(resized),
        'vips_us': vips_us,
    })

    b64_body = base64.b64encode(resized).decode()
    return self.limit(b64_body, len(b64_body), WEBP_MIME)

  async def decide(self) -> Outcome:
    if self.upstream is None or self.upstream['status'] == str(HTTPStatus.NOT_FOUND.value):
      return NOT_FOUND

    profile = PROFILES.get(self.parsed.profile)
    if profile is None:
      return NOT_FOUND

    image_format = ImageFormat.maybe_from_extension(self.parsed.extension)
    if image_format is None:
      return UNSUPPORTED_EXTENSION

    bucket = self.config.bucket_for(profile.name)
    try:
      obj = await self.gateway.fetch(bucket, self.parsed.key)
    except OriginNotFound:
      return NOT_FOUND
    except OriginCorrupt as e:
      self.log_warning('corrupt origin object', {'reason': str(e)})
      return NOT_NORMAL

    if obj.content_length == 0:
      return NOT_FOUND

    match image_format:
      case ImageFormat.SVG:
        return Success(b64_body=base64.b64encode(obj.body).decode(), content_type=SVG_MIME)
      case ImageFormat.RASTER:
        return await self.transform(profile, obj)
      case _:
        raise Exception('system error')

  async def process(self) -> Outcome:
    try:
      return await self.decide()
    except (OriginTransportError, codec.CodecError) as e:
      self.log_error('error during process()', {'reason': str(e), 'type': type(e).__name__})
      raise

  def discard_late(self, task: 'asyncio.Task[Outcome]') -> None:
    if task.cancelled():
      self.log_warning('late result discarded', {'reason': 'cancelled'})
    elif task.exception() is not None:
      self.log_warning('late result discarded', {'reason': str(task.exception())})
    else:
      self.log_warning('late result discarded', {'outcome': type(task.result()).__name__})

  async def run(self, deadline: float) -> Outcome:
    outcome = await race_deadline(self.process(), deadline, self.redirect(), self.discard_late)
    if isinstance(outcome, Redirect):
      self.log_debug('redirected', {'location': outcome.location})
    return outcome


def assemble(upstream: Optional[Response], outcome: Outcome, max_age: int) -> ResponseResult:
  headers = copy.deepcopy(upstream['headers']) if upstream is not None else {}
  # The upstream body is always replaced.
  headers.pop('content-length', None)

  match outcome:
    case Success(b64_body=b64_body, content_type=content_type):
      headers['cache-control'] = header('Cache-Control', f'max-age={max_age}')
      headers['content-type'] = header('Content-Type', content_type)
      return {
          'status': str(HTTPStatus.OK.value),
          'statusDescription': HTTPStatus.OK.phrase,
          'headers': headers,
          'bodyEncoding': 'base64',
          'body': b64_body,
      }
    case Redirect(location=location):
      headers.pop('content-type', None)
      headers['cache-control'] = header('Cache-Control', f'max-age={max_age}')
      headers['location'] = header('Location', location)
      return {
          'status': str(HTTPStatus.FOUND.value),
          'statusDescription': HTTPStatus.FOUND.phrase,
          'headers': headers,
      }
    case Failure(status=status, status_description=status_description, error_msg=error_msg):
      headers['cache-control'] = header('Cache-Control', 'no-cache')
      headers['content-type'] = header('Content-Type', JSON_MIME)
      return {
          'status': str(status.value),
          'statusDescription': status_description,
          'headers': headers,
          'bodyEncoding': 'text',
          'body': json_dump({
              'errorCode': str(status.value),
              'errorMsg': error_msg,
          }),
      }
    case _:
      raise Exception('system error')


def lambda_main(
    event: OriginResponseEvent,
    gateway: Optional[ImageGateway] = None,
) -> ResponseResult:
  start = time.monotonic()

  cf = event['Records'][0]['cf']
  req = cf['request']
  res = cf.get('response')

  # Building the S3 client on a cold start counts against the deadline.
  if gateway is None:
    gateway = ImageGateway.from_config(logger, config)

  parsed = ParsedRequest.from_uri(req['uri'])
  transformation = Transformation(gateway, parsed, res)

  remaining = max(0.0, gateway.config.deadline - (time.monotonic() - start))
  outcome = asyncio.run(transformation.run(remaining))
  result = assemble(res, outcome, gateway.config.perm_resp_max_age)

  transformation.log_debug('responded', {
      'status': result['status'],
      'content_type': result['headers'].get('content-type', [{'value': None}])[0]['value'],
      'body_size': len(result.get('body', '')),
  })

  return result
