import logging
import uuid

from rest_framework import authentication, exceptions

from wallets.utils.identity import verify_access_token

logger = logging.getLogger(__name__)


class ExternalUser:
    """
    Caller identity established by the external identity provider.

    Users live outside this service; only their id is known here.
    """

    is_authenticated = True
    is_anonymous = False

    def __init__(self, user_id):
        self.user_id = uuid.UUID(str(user_id))

    @property
    def pk(self):
        return self.user_id

    def __str__(self):
        return str(self.user_id)


class IdentityProviderAuthentication(authentication.BaseAuthentication):
    """
    Bearer-token authentication backed by the identity provider.

    Header: Authorization: Bearer <access token>
    """

    keyword = "Bearer"

    def authenticate(self, request):
        auth = authentication.get_authorization_header(request).split()

        if not auth or auth[0].lower() != self.keyword.lower().encode():
            return None
        if len(auth) != 2:
            raise exceptions.AuthenticationFailed("Invalid authorization header.")

        try:
            token = auth[1].decode()
        except UnicodeError:
            raise exceptions.AuthenticationFailed("Invalid authorization header.")

        user_id = verify_access_token(token)
        if user_id is None:
            raise exceptions.AuthenticationFailed("Unauthorized")

        try:
            user = ExternalUser(user_id)
        except ValueError:
            logger.warning("Identity provider returned a malformed user id: %r", user_id)
            raise exceptions.AuthenticationFailed("Unauthorized")

        return (user, token)

    def authenticate_header(self, request):
        return self.keyword
