from fastapi import Request

from .errors import CallerUnknown

# set by the gateway after it has verified the bearer token
USER_SUB_HEADER = "X-User-Sub"


def get_caller(request: Request) -> str:
    user_sub = request.headers.get(USER_SUB_HEADER)
    if not user_sub:
        raise CallerUnknown()

    request.state.user_sub = user_sub
    return user_sub
