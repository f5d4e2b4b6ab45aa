import dataclasses
import datetime
import logging
from typing import Optional, Protocol

from botocore.exceptions import ClientError
from dateutil import parser, tz
from mypy_boto3_s3.client import S3Client
from mypy_boto3_s3.type_defs import GetObjectOutputTypeDef
from mypy_boto3_secretsmanager.client import SecretsManagerClient

from imgresolver.typing import BucketName, S3Key

NOT_FOUND_CODES = ['404', 'NoSuchKey']


@dataclasses.dataclass(frozen=True)
class StoredObject:
  body: bytes
  content_type: Optional[str] = None
  cache_control: Optional[str] = None
  expires: Optional[datetime.datetime] = None
  last_modified: Optional[datetime.datetime] = None


class StorageError(Exception):

  def __init__(self, code: str, message: str, not_found: bool = False):
    super().__init__(message)
    self.code = code
    self.message = message
    self.not_found = not_found


class ObjectStore(Protocol):

  def fetch(self, bucket: BucketName, key: S3Key) -> StoredObject:
    ...


class SecretProvider(Protocol):

  def get_secret(self, secret_id: str) -> str:
    ...


def is_not_found_client_error(exception: ClientError) -> bool:
  if 'Error' not in exception.response:
    return False
  if 'Code' not in exception.response['Error']:
    return False
  return exception.response['Error']['Code'] in NOT_FOUND_CODES


def client_error_code(exception: ClientError) -> str:
  return exception.response.get('Error', {}).get('Code', 'UnknownError')


def client_error_message(exception: ClientError) -> str:
  return exception.response.get('Error', {}).get('Message', str(exception))


def as_utc(d: datetime.datetime) -> datetime.datetime:
  if d.tzinfo is None:
    return d.replace(tzinfo=tz.tzutc())
  return d.astimezone(tz.tzutc())


class S3ObjectStore:

  def __init__(self, log: logging.Logger, s3: S3Client):
    self.log = log
    self.s3 = s3

  def parse_expires(self, res: GetObjectOutputTypeDef) -> Optional[datetime.datetime]:
    # botocore keeps the raw header in ExpiresString when it cannot parse it.
    expires_str = res.get('ExpiresString')
    if expires_str:
      try:
        return as_utc(parser.parse(expires_str))
      except (ValueError, OverflowError) as e:
        self.log.warning({
            'message': 'unparsable expires',
            'expires': expires_str,
            'reason': str(e),
        })
        return None

    expires = res.get('Expires')
    return None if expires is None else as_utc(expires)

  def fetch(self, bucket: BucketName, key: S3Key) -> StoredObject:
    try:
      res = self.s3.get_object(Bucket=bucket, Key=key)
      body = b''.join(res['Body'].iter_chunks())
    except ClientError as e:
      raise StorageError(
          client_error_code(e), client_error_message(e), not_found=is_not_found_client_error(e))

    last_modified = res.get('LastModified')

    return StoredObject(
        body=body,
        content_type=res.get('ContentType'),
        cache_control=res.get('CacheControl'),
        expires=self.parse_expires(res),
        last_modified=None if last_modified is None else as_utc(last_modified))


class SecretsManagerSecretProvider:
  cache: dict[str, str]

  def __init__(self, secretsmanager: SecretsManagerClient):
    self.secretsmanager = secretsmanager
    self.cache = {}

  def get_secret(self, secret_id: str) -> str:
    if secret_id not in self.cache:
      res = self.secretsmanager.get_secret_value(SecretId=secret_id)
      self.cache[secret_id] = res['SecretString']

    return self.cache[secret_id]
