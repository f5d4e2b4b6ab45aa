import datetime
import io
import json
import logging
from logging import Logger
from typing import Generator

import boto3
import pytest
from botocore.exceptions import ClientError
from botocore.response import StreamingBody
from botocore.stub import Stubber
from dateutil import tz

from imgresolver.typing import BucketName, S3Key

from .index import (
    S3ObjectStore,
    SecretsManagerSecretProvider,
    StorageError,
    as_utc,
    is_not_found_client_error
)

REGION = 'us-east-1'
BUCKET = BucketName('getdogsapp')
KEY = S3Key('content/abc')
SECRET_ID = 'image-handler-secret'

PNG_BYTES = bytes.fromhex('89504E470D0A1A0A')

DUMMY_DATETIME = datetime.datetime(2000, 1, 1, tzinfo=tz.tzutc())


def new_client(service: str) -> object:
  return boto3.client(
      service,  # type: ignore
      region_name=REGION,
      aws_access_key_id='testing',
      aws_secret_access_key='testing')


def streaming_body(data: bytes) -> StreamingBody:
  return StreamingBody(io.BytesIO(data), len(data))


@pytest.fixture
def logger() -> Logger:
  return logging.getLogger(__name__)


@pytest.fixture
def s3_stub() -> Generator[tuple[object, Stubber], None, None]:
  s3 = new_client('s3')
  with Stubber(s3) as stubber:  # type: ignore
    yield s3, stubber
    stubber.assert_no_pending_responses()


@pytest.fixture
def secretsmanager_stub() -> Generator[tuple[object, Stubber], None, None]:
  secretsmanager = new_client('secretsmanager')
  with Stubber(secretsmanager) as stubber:  # type: ignore
    yield secretsmanager, stubber
    stubber.assert_no_pending_responses()


def test_fetch(logger: Logger, s3_stub: tuple[object, Stubber]) -> None:
  s3, stubber = s3_stub
  stubber.add_response(
      'get_object', {
          'Body': streaming_body(PNG_BYTES),
          'ContentType': 'image/png',
          'CacheControl': 'public, max-age=60',
          'LastModified': DUMMY_DATETIME,
      }, {
          'Bucket': BUCKET,
          'Key': KEY,
      })

  obj = S3ObjectStore(logger, s3).fetch(BUCKET, KEY)  # type: ignore

  assert obj.body == PNG_BYTES
  assert obj.content_type == 'image/png'
  assert obj.cache_control == 'public, max-age=60'
  assert obj.last_modified == DUMMY_DATETIME
  assert obj.expires is None


def test_fetch_without_metadata(logger: Logger, s3_stub: tuple[object, Stubber]) -> None:
  s3, stubber = s3_stub
  stubber.add_response('get_object', {'Body': streaming_body(b'hello\n')}, {
      'Bucket': BUCKET,
      'Key': KEY,
  })

  obj = S3ObjectStore(logger, s3).fetch(BUCKET, KEY)  # type: ignore

  assert obj.body == b'hello\n'
  assert obj.content_type is None
  assert obj.cache_control is None
  assert obj.last_modified is None


@pytest.mark.parametrize('code, status', [('NoSuchKey', 404), ('404', 404)])
def test_fetch_not_found(
    logger: Logger,
    s3_stub: tuple[object, Stubber],
    code: str,
    status: int,
) -> None:
  s3, stubber = s3_stub
  stubber.add_client_error(
      'get_object',
      service_error_code=code,
      service_message='The specified key does not exist.',
      http_status_code=status,
      expected_params={
          'Bucket': BUCKET,
          'Key': KEY,
      })

  with pytest.raises(StorageError) as e:
    S3ObjectStore(logger, s3).fetch(BUCKET, KEY)  # type: ignore

  assert e.value.not_found
  assert e.value.code == code
  assert e.value.message == 'The specified key does not exist.'


def test_fetch_access_denied(logger: Logger, s3_stub: tuple[object, Stubber]) -> None:
  s3, stubber = s3_stub
  stubber.add_client_error(
      'get_object',
      service_error_code='AccessDenied',
      service_message='Access Denied',
      http_status_code=403,
      expected_params={
          'Bucket': BUCKET,
          'Key': KEY,
      })

  with pytest.raises(StorageError) as e:
    S3ObjectStore(logger, s3).fetch(BUCKET, KEY)  # type: ignore

  assert not e.value.not_found
  assert e.value.code == 'AccessDenied'


def test_parse_expires(logger: Logger) -> None:
  store = S3ObjectStore(logger, None)  # type: ignore

  assert store.parse_expires({'ExpiresString': 'Sat, 01 Jan 2000 00:00:00 GMT'}) == DUMMY_DATETIME  # type: ignore
  assert store.parse_expires({'Expires': DUMMY_DATETIME}) == DUMMY_DATETIME  # type: ignore
  assert store.parse_expires({'ExpiresString': 'never'}) is None  # type: ignore
  assert store.parse_expires({}) is None  # type: ignore


def test_as_utc() -> None:
  jst = tz.tzoffset('JST', 9 * 60 * 60)

  assert as_utc(datetime.datetime(2000, 1, 1, 9, tzinfo=jst)) == DUMMY_DATETIME
  assert as_utc(datetime.datetime(2000, 1, 1)) == DUMMY_DATETIME


def test_is_not_found_client_error() -> None:
  assert is_not_found_client_error(
      ClientError({'Error': {
          'Code': 'NoSuchKey',
          'Message': ''
      }}, 'GetObject'))
  assert not is_not_found_client_error(
      ClientError({'Error': {
          'Code': 'AccessDenied',
          'Message': ''
      }}, 'GetObject'))
  assert not is_not_found_client_error(ClientError({}, 'GetObject'))  # type: ignore


def test_secret_provider_caches(secretsmanager_stub: tuple[object, Stubber]) -> None:
  secretsmanager, stubber = secretsmanager_stub
  secret = json.dumps({'signing-key': 'value'})
  stubber.add_response('get_secret_value', {
      'Name': SECRET_ID,
      'SecretString': secret,
  }, {'SecretId': SECRET_ID})

  provider = SecretsManagerSecretProvider(secretsmanager)  # type: ignore

  assert provider.get_secret(SECRET_ID) == secret
  assert provider.get_secret(SECRET_ID) == secret


def test_secret_provider_error(secretsmanager_stub: tuple[object, Stubber]) -> None:
  secretsmanager, stubber = secretsmanager_stub
  stubber.add_client_error(
      'get_secret_value',
      service_error_code='ResourceNotFoundException',
      http_status_code=400,
      expected_params={'SecretId': SECRET_ID})

  provider = SecretsManagerSecretProvider(secretsmanager)  # type: ignore

  with pytest.raises(ClientError):
    provider.get_secret(SECRET_ID)

  assert provider.cache == {}
