from aws_lambda_powertools.utilities.typing import LambdaContext

from imgresizer.originresponse import index as originresponse
from imgresizer.typing import OriginResponseEvent, ResponseResult


def origin_response_lambda_handler(
    event: OriginResponseEvent,
    _: LambdaContext,
) -> ResponseResult:
  # # For debugging
  # print('event:')
  # print(json.dumps(event))

  ret = originresponse.lambda_main(event)

  # # For debugging
  # print('return:')
  # print(json.dumps(ret))

  return ret
