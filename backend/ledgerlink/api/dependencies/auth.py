"""Current-user resolution from request state set by upstream auth."""

from fastapi import Request

from ledgerlink.platform.errors import AuthenticationError


def get_current_user_id(request: Request) -> str:
    """
    Return the authenticated user id.

    Raises:
        AuthenticationError: If upstream auth did not set request.state.user_id
    """
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise AuthenticationError()
    return str(user_id)
