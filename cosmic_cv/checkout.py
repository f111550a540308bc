from __future__ import annotations

from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .errors import ConfigurationError
from .identity import normalize_email, safe_text

EMAIL_PARAM = "checkout[email]"
USER_ID_PARAM = "checkout[custom][user_id]"


def build_checkout_url(base_url: str, email: str | None, user_id: str | None = None) -> str:
    """Hosted checkout URL carrying identity hints.

    The provider echoes ``checkout[custom][...]`` back as ``meta.custom_data``
    in every webhook for the resulting order or subscription.
    """
    base = safe_text(base_url)
    if not base:
        raise ConfigurationError("Checkout URL is not configured.")

    parts = urlsplit(base)
    query = [(key, value) for key, value in parse_qsl(parts.query, keep_blank_values=True) if key not in {EMAIL_PARAM, USER_ID_PARAM}]
    normalized_email = normalize_email(email)
    if normalized_email:
        query.append((EMAIL_PARAM, normalized_email))
    user_token = safe_text(user_id)
    if user_token:
        query.append((USER_ID_PARAM, user_token))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))
