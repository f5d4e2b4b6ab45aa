from typing import Any, NewType, NotRequired, Optional, TypedDict

HttpPath = NewType('HttpPath', str)
S3Key = NewType('S3Key', str)
BucketName = NewType('BucketName', str)

ImageEdits = dict[str, Any]


class ImageRequestEvent(TypedDict):
  path: HttpPath
  headers: NotRequired[Optional[dict[str, str]]]
  queryStringParameters: NotRequired[Optional[dict[str, str]]]


class ImageRequestInfo(TypedDict):
  requestType: str
  bucket: str
  key: str
  edits: ImageEdits
  originalImage: str
  contentType: str
  cacheControl: str
  outputFormat: NotRequired[str]
  expires: NotRequired[str]
  lastModified: NotRequired[str]
  headers: NotRequired[dict[str, str]]
  reductionEffort: NotRequired[int]


class ErrorResponse(TypedDict):
  statusCode: int
  headers: dict[str, str]
  body: str
