import os

from aws_lambda_powertools.utilities.typing import LambdaContext

from imgresolver.imagerequest import index as imagerequest
from imgresolver.typing import ErrorResponse, ImageRequestEvent, ImageRequestInfo


def image_request_lambda_handler(
    event: ImageRequestEvent,
    _: LambdaContext,
) -> ImageRequestInfo | ErrorResponse:
  # # For debugging
  # print('event:')
  # print(json.dumps(event))

  ret = imagerequest.lambda_main(event, os.environ)

  # # For debugging
  # print('return:')
  # print(json.dumps(ret))

  return ret
