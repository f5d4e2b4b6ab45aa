import base64
import dataclasses
import datetime
import hashlib
import hmac
import json
import logging
import math
import re
import sys
from email.utils import format_datetime
from enum import Enum
from http import HTTPStatus
from logging import Logger
from typing import Any, Mapping, Optional

import boto3
from pythonjsonlogger.jsonlogger import JsonFormatter

import imgresolver
from imgresolver.storage.index import (
    ObjectStore,
    S3ObjectStore,
    SecretProvider,
    SecretsManagerSecretProvider,
    StorageError,
    as_utc
)
from imgresolver.typing import (
    BucketName,
    ErrorResponse,
    ImageEdits,
    ImageRequestEvent,
    ImageRequestInfo,
    S3Key
)

DEFAULT_BUCKET = 'getdogsapp'
KEY_PREFIX = 'content/'
DEFAULT_CACHE_CONTROL = 'max-age=31536000,public'
DEFAULT_CONTENT_TYPE = 'image'
SVG_MIME = 'image/svg+xml'
GENERIC_MIMES = ['binary/octet-stream', 'application/octet-stream']
RESIZE_FIT = 'inside'
PLACEHOLDER_BLUR = 30

DEFAULT_REDUCTION_EFFORT = 4
MIN_REDUCTION_EFFORT = 0
MAX_REDUCTION_EFFORT = 6

FLAG_ENABLED = 'Yes'

IMAGE_SIGNATURES = {
    '89504E47': 'image/png',
    'FFD8FFDB': 'image/jpeg',
    'FFD8FFE0': 'image/jpeg',
    'FFD8FFEE': 'image/jpeg',
    'FFD8FFE1': 'image/jpeg',
    '52494646': 'image/webp',
    '49492A00': 'image/tiff',
    '4D4D002A': 'image/tiff',
}

REQUEST_TYPE_ERROR_MESSAGE = (
    'The file does not have an extension and the file type could not be inferred. '
    'Please ensure that your original image is of a supported file type '
    '(jpg, png, tiff, webp, svg). '
    'Refer to the documentation for additional guidance on forming image requests.')

NO_SOURCE_BUCKETS_MESSAGE = (
    'The SOURCE_BUCKETS variable could not be read. '
    'Please check that it is not empty and contains at least one source bucket, '
    'or multiple buckets separated by commas. '
    'Spaces can be provided between commas and bucket names, '
    'these will be automatically parsed out when decoding.')

whitespace_re = re.compile(r'\s+')


class MyJsonFormatter(JsonFormatter):

  def __init__(self) -> None:
    super().__init__(json_ensure_ascii=False)

  def add_fields(self, log_record: Any, record: Any, message_dict: Any) -> None:
    log_record['_ts'] = datetime.datetime.now(datetime.UTC).strftime('%Y-%m-%dT%H:%M:%S.%fZ')

    if log_record.get('level'):
      log_record['level'] = log_record['level'].upper()
    else:
      log_record['level'] = record.levelname

    log_record['version'] = imgresolver.version

    super().add_fields(log_record, record, message_dict)


def init_logging() -> Logger:
  # https://stackoverflow.com/a/11548754/1160341
  root = logging.getLogger()
  root.setLevel(logging.DEBUG)
  for h in list(root.handlers):
    root.removeHandler(h)

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


class ImageHandlerError(Exception):
  status: HTTPStatus = HTTPStatus.INTERNAL_SERVER_ERROR

  def __init__(self, code: str, message: str):
    super().__init__(message)
    self.code = code
    self.message = message

  def to_dict(self) -> dict[str, Any]:
    return {'status': int(self.status), 'code': self.code, 'message': self.message}


class BadRequest(ImageHandlerError):
  status = HTTPStatus.BAD_REQUEST


class Forbidden(ImageHandlerError):
  status = HTTPStatus.FORBIDDEN


class NotFound(ImageHandlerError):
  status = HTTPStatus.NOT_FOUND


class InternalError(ImageHandlerError):
  status = HTTPStatus.INTERNAL_SERVER_ERROR


class RequestType(Enum):
  DEFAULT = 'Default'
  THUMBOR = 'Thumbor'
  CUSTOM = 'Custom'


class ImageFormatType(Enum):
  JPEG = 'jpeg'
  PNG = 'png'
  WEBP = 'webp'
  TIFF = 'tiff'
  HEIF = 'heif'


QUALITY_FORMATS = frozenset([
    ImageFormatType.JPEG.value,
    ImageFormatType.PNG.value,
    ImageFormatType.WEBP.value,
    ImageFormatType.TIFF.value,
    ImageFormatType.HEIF.value,
])

# Thumbor and Custom are never decoded from a path; they are kept so the per-type
# rules stay explicit. Default profile edits carry quality per format, so they remap.
QUALITY_REMAP_REQUEST_TYPES = frozenset([RequestType.DEFAULT, RequestType.CUSTOM])


@dataclasses.dataclass(eq=True, frozen=True)
class SizeProfile:
  name: str
  dimension: Optional[int]
  quality: Optional[int]
  blur: Optional[int] = None


SIZE_PROFILES: dict[str, SizeProfile] = {
    p.name: p for p in [
        SizeProfile('small', 64, 75),
        SizeProfile('medium', 400, 85),
        SizeProfile('large', 1000, 95),
        SizeProfile('placeholder', 300, 40, blur=PLACEHOLDER_BLUR),
    ]
}


def get_size_profile(name: Optional[str]) -> Optional[SizeProfile]:
  if name is None:
    return None
  return SIZE_PROFILES.get(name)


def edits_from_profile(profile: Optional[SizeProfile]) -> ImageEdits:
  edits: ImageEdits = {}
  if profile is None:
    return edits

  if profile.quality is not None:
    edits[ImageFormatType.WEBP.value] = {'quality': profile.quality}
    edits[ImageFormatType.JPEG.value] = {'quality': profile.quality}

  if profile.dimension is not None:
    edits['resize'] = {
        'width': profile.dimension,
        'height': profile.dimension,
        'fit': RESIZE_FIT,
    }

  if profile.blur is not None:
    edits['blur'] = profile.blur

  return edits


@dataclasses.dataclass(frozen=True)
class Settings:
  enable_signature: bool = False
  secrets_manager: Optional[str] = None
  secret_key: Optional[str] = None
  source_buckets: Optional[str] = None
  auto_webp: bool = False
  default_bucket: str = DEFAULT_BUCKET

  @classmethod
  def from_env(cls, env: Mapping[str, str]) -> 'Settings':
    return cls(
        enable_signature=env.get('ENABLE_SIGNATURE') == FLAG_ENABLED,
        secrets_manager=env.get('SECRETS_MANAGER'),
        secret_key=env.get('SECRET_KEY'),
        source_buckets=env.get('SOURCE_BUCKETS'),
        auto_webp=env.get('AUTO_WEBP') == FLAG_ENABLED,
        default_bucket=env.get('DEFAULT_BUCKET') or DEFAULT_BUCKET)


@dataclasses.dataclass(frozen=True)
class DefaultImageRequest:
  bucket: BucketName
  key: S3Key
  edits: ImageEdits
  output_format: Optional[str] = None
  headers: Optional[dict[str, str]] = None
  reduction_effort: Any = None


@dataclasses.dataclass
class ResolvedImageRequest:
  request_type: RequestType
  bucket: BucketName
  key: S3Key
  edits: ImageEdits
  original_image: bytes
  content_type: str
  cache_control: str
  output_format: Optional[str] = None
  expires: Optional[str] = None
  last_modified: Optional[str] = None
  headers: Optional[dict[str, str]] = None
  reduction_effort: Optional[int] = None

  def to_dict(self) -> ImageRequestInfo:
    info: ImageRequestInfo = {
        'requestType': self.request_type.value,
        'bucket': self.bucket,
        'key': self.key,
        'edits': self.edits,
        'originalImage': base64.b64encode(self.original_image).decode(),
        'contentType': self.content_type,
        'cacheControl': self.cache_control,
    }

    if self.output_format is not None:
      info['outputFormat'] = self.output_format
    if self.expires is not None:
      info['expires'] = self.expires
    if self.last_modified is not None:
      info['lastModified'] = self.last_modified
    if self.headers is not None:
      info['headers'] = self.headers
    if self.reduction_effort is not None:
      info['reductionEffort'] = self.reduction_effort

    return info


def json_dump(obj: Any) -> str:
  return json.dumps(obj, separators=(',', ':'), sort_keys=True)


def http_date(d: datetime.datetime) -> str:
  # usegmt only accepts datetime.timezone.utc, not dateutil's tzutc.
  return format_datetime(as_utc(d).astimezone(datetime.timezone.utc), usegmt=True)


def infer_content_type(data: bytes) -> str:
  signature = data[:4].hex().upper()
  if signature not in IMAGE_SIGNATURES:
    raise InternalError('RequestTypeError', REQUEST_TYPE_ERROR_MESSAGE)
  return IMAGE_SIGNATURES[signature]


def get_event_header(event: ImageRequestEvent, name: str) -> Optional[str]:
  headers = event.get('headers') or {}
  name = name.lower()
  for k, v in headers.items():
    if k.lower() == name:
      return v
  return None


def parse_reduction_effort(value: Any) -> int:
  try:
    effort = math.trunc(float(value))
  except (TypeError, ValueError, OverflowError):
    return DEFAULT_REDUCTION_EFFORT

  if effort < MIN_REDUCTION_EFFORT or MAX_REDUCTION_EFFORT < effort:
    return DEFAULT_REDUCTION_EFFORT
  return effort


def svg_output_format(content_type: str, edits: ImageEdits) -> Optional[str]:
  if content_type == SVG_MIME and 0 < len(edits) and not edits.get('toFormat'):
    return ImageFormatType.PNG.value
  return None


def negotiate_output_format(
    accept_header: Optional[str],
    auto_webp: bool,
    request_type: RequestType,
    decoded: DefaultImageRequest,
) -> Optional[str]:
  if auto_webp and accept_header is not None and 'image/webp' in accept_header:
    return ImageFormatType.WEBP.value

  if request_type == RequestType.DEFAULT:
    return decoded.output_format

  return None


def reconcile_quality_key(edits: ImageEdits, output_format: str) -> ImageEdits:
  if output_format not in QUALITY_FORMATS:
    return edits

  candidates = [k for k in edits if k in QUALITY_FORMATS and k != output_format]
  # Several competing keys are ambiguous and left untouched.
  if len(candidates) != 1:
    return edits

  quality_key = candidates[0]
  reconciled = dict(edits)
  reconciled[output_format] = reconciled.pop(quality_key)
  return reconciled


class ImageRequest:
  instances: dict[Settings, 'ImageRequest'] = {}

  def __init__(
      self,
      log: Logger,
      settings: Settings,
      object_store: ObjectStore,
      secret_provider: SecretProvider,
  ):
    self.log = log
    self.settings = settings
    self.object_store = object_store
    self.secret_provider = secret_provider
    self.log_context: dict[str, Any] = {'path': '', 'qstr': '', 'accept_header': ''}

  @classmethod
  def from_env(cls, log: Logger, env: Mapping[str, str]) -> 'ImageRequest':
    settings = Settings.from_env(env)

    if settings not in cls.instances:
      s3 = boto3.client('s3')
      secretsmanager = boto3.client('secretsmanager')
      cls.instances[settings] = cls(
          log=log,
          settings=settings,
          object_store=S3ObjectStore(log, s3),
          secret_provider=SecretsManagerSecretProvider(secretsmanager))

    return cls.instances[settings]

  def log_debug(self, message: str, dict: dict[str, Any]) -> None:
    self.log.debug({
        'message': message,
        **self.log_context,
        **dict,
    })

  def log_error(self, message: str, dict: dict[str, Any]) -> None:
    self.log.error({
        'message': message,
        **self.log_context,
        **dict,
    })

  def set_log_context(self, event: ImageRequestEvent) -> None:
    qs = event.get('queryStringParameters') or {}
    self.log_context = {
        'path': str(event['path']),
        'qstr': ','.join(sorted(qs)),
        'accept_header': get_event_header(event, 'accept') or '',
    }

  def validate_request_signature(self, event: ImageRequestEvent) -> None:
    if not self.settings.enable_signature:
      return

    qs = event.get('queryStringParameters') or {}
    signature = qs.get('signature')
    if not signature:
      raise BadRequest(
          'AuthorizationQueryParametersError', 'Query-string requires the signature parameter.')

    try:
      secret = json.loads(self.secret_provider.get_secret(str(self.settings.secrets_manager)))
      key = secret[self.settings.secret_key]
      digest = hmac.new(key.encode(), event['path'].encode(), hashlib.sha256).hexdigest()
    except Exception as e:
      self.log_error('error occurred while checking signature', {'reason': str(e)})
      raise InternalError('SignatureValidationFailure', 'Signature validation failed.') from e

    # Signature is made with the full path.
    if not hmac.compare_digest(signature.encode(), digest.encode()):
      raise Forbidden('SignatureDoesNotMatch', 'Signature does not match.')

  def parse_request_type(self, _: ImageRequestEvent) -> RequestType:
    return RequestType.DEFAULT

  def decode_request(self, event: ImageRequestEvent) -> DefaultImageRequest:
    segments = [s for s in event['path'].split('/') if s != '']
    match segments:
      case []:
        identifier, size = '', None
      case [identifier]:
        size = None
      case [*_, identifier, size]:
        pass

    return DefaultImageRequest(
        bucket=BucketName(self.settings.default_bucket),
        key=S3Key(f'{KEY_PREFIX}{identifier}'),
        edits=edits_from_profile(get_size_profile(size)))

  def parse_image_headers(
      self,
      decoded: DefaultImageRequest,
      request_type: RequestType,
  ) -> Optional[dict[str, str]]:
    if request_type == RequestType.DEFAULT and decoded.headers:
      return decoded.headers
    return None

  def list_allowed_source_buckets(self) -> list[str]:
    source_buckets = self.settings.source_buckets
    if source_buckets is None or whitespace_re.sub('', source_buckets) == '':
      raise BadRequest('GetAllowedSourceBuckets::NoSourceBuckets', NO_SOURCE_BUCKETS_MESSAGE)

    return whitespace_re.sub('', source_buckets).split(',')

  def get_original_image(
      self,
      request_type: RequestType,
      decoded: DefaultImageRequest,
  ) -> ResolvedImageRequest:
    try:
      obj = self.object_store.fetch(decoded.bucket, decoded.key)
    except StorageError as e:
      if e.not_found:
        raise NotFound(
            e.code, f'The image {decoded.key} does not exist '
            'or the request may not be base64 encoded properly.') from e
      raise InternalError(e.code, e.message) from e

    if not obj.content_type:
      content_type = DEFAULT_CONTENT_TYPE
    elif obj.content_type in GENERIC_MIMES:
      content_type = infer_content_type(obj.body)
    else:
      content_type = obj.content_type

    return ResolvedImageRequest(
        request_type=request_type,
        bucket=decoded.bucket,
        key=decoded.key,
        edits=decoded.edits,
        original_image=obj.body,
        content_type=content_type,
        cache_control=obj.cache_control or DEFAULT_CACHE_CONTROL,
        expires=None if obj.expires is None else http_date(obj.expires),
        last_modified=None if obj.last_modified is None else http_date(obj.last_modified))

  def resolve_output_format(
      self,
      event: ImageRequestEvent,
      decoded: DefaultImageRequest,
      info: ResolvedImageRequest,
  ) -> None:
    output_format = svg_output_format(info.content_type, info.edits)

    if info.content_type != SVG_MIME or info.edits.get('toFormat') or output_format is not None:
      negotiated = negotiate_output_format(
          get_event_header(event, 'accept'), self.settings.auto_webp, info.request_type, decoded)

      if (negotiated == ImageFormatType.WEBP.value and info.request_type == RequestType.DEFAULT and
          decoded.reduction_effort is not None):
        info.reduction_effort = parse_reduction_effort(decoded.reduction_effort)

      if info.edits.get('toFormat'):
        output_format = info.edits['toFormat']
      elif negotiated:
        output_format = negotiated

    if output_format is None:
      return

    info.output_format = output_format
    info.content_type = f'image/{output_format}'

    if info.request_type in QUALITY_REMAP_REQUEST_TYPES:
      info.edits = reconcile_quality_key(info.edits, output_format)

  def resolve(self, event: ImageRequestEvent) -> ResolvedImageRequest:
    self.log_context = {'path': '', 'qstr': '', 'accept_header': ''}

    try:
      self.set_log_context(event)
      self.validate_request_signature(event)

      request_type = self.parse_request_type(event)
      decoded = self.decode_request(event)

      info = self.get_original_image(request_type, decoded)
      info.headers = self.parse_image_headers(decoded, request_type)

      self.resolve_output_format(event, decoded, info)
    except ImageHandlerError as e:
      self.log_error('failed to resolve image request', {
          'status': int(e.status),
          'code': e.code,
          'reason': e.message,
      })
      raise e
    except Exception as e:
      self.log_error('error during resolve()', {'reason': str(e)})
      raise InternalError('InternalError', str(e)) from e

    self.log_debug(
        'resolved', {
            'bucket': info.bucket,
            'key': info.key,
            'edits': info.edits,
            'content_type': info.content_type,
            'output_format': info.output_format,
            'img_size': len(info.original_image),
        })

    return info


def error_response(e: ImageHandlerError) -> ErrorResponse:
  return {
      'statusCode': int(e.status),
      'headers': {
          'Content-Type': 'application/json',
      },
      'body': json_dump(e.to_dict()),
  }


def lambda_main(
    event: ImageRequestEvent,
    env: Mapping[str, str],
) -> ImageRequestInfo | ErrorResponse:
  image_request = ImageRequest.from_env(logger, env)

  try:
    return image_request.resolve(event).to_dict()
  except ImageHandlerError as e:
    return error_response(e)
