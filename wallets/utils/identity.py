import logging

import requests
from django.conf import settings

logger = logging.getLogger(__name__)


def _identity_provider_url():
    return getattr(settings, "IDENTITY_PROVIDER_URL", "http://localhost:54321").rstrip("/")


def verify_access_token(token: str):
    """
    Resolve a bearer token to a user id through the identity provider.

    Network failures and rejected tokens are logged and reported as None so
    the caller treats the request as unauthenticated.

    Args:
        token: The raw access token from the Authorization header.

    Returns:
        The user id string, or None when the token cannot be verified.
    """
    headers = {"Authorization": f"Bearer {token}"}
    api_key = getattr(settings, "IDENTITY_PROVIDER_API_KEY", "")
    if api_key:
        headers["apikey"] = api_key

    try:
        response = requests.get(
            f"{_identity_provider_url()}/auth/v1/user",
            headers=headers,
            timeout=getattr(settings, "IDENTITY_PROVIDER_TIMEOUT", 5),
        )
    except requests.exceptions.Timeout as exc:
        logger.error("Identity provider timeout: error=%s", str(exc))
        return None
    except requests.exceptions.RequestException as exc:
        logger.error("Identity provider request error: error=%s", str(exc))
        return None

    if response.status_code != 200:
        logger.info(
            "Identity provider rejected token: status=%d", response.status_code
        )
        return None

    try:
        user_id = response.json().get("id")
    except ValueError:
        logger.warning("Identity provider returned a non-JSON body")
        return None

    if not user_id:
        logger.warning("Identity provider response carried no user id")
    return user_id or None
