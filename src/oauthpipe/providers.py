"""Built-in provider endpoint tables and per-provider quirks.

Everything here is data.  URLs configured on a
:class:`~oauthpipe.models.ProviderConfig` take precedence over the tables.
"""

from __future__ import annotations

from typing import Optional

from oauthpipe.exceptions import ProviderError
from oauthpipe.models import ProviderConfig

URL_TYPES = ("auth", "token", "profile", "request_token")

_TWITTER_PROFILE = "https://api.twitter.com/1.1/account/verify_credentials.json"

PROVIDER_URLS: dict[str, dict[str, str]] = {
    "auth": {
        "google": "https://accounts.google.com/o/oauth2/v2/auth",
        "github": "https://github.com/login/oauth/authorize",
        "microsoft": "https://login.microsoftonline.com/{tenant}/oauth2/authorize",
        "linkedin": "https://www.linkedin.com/oauth/v2/authorization",
        "salesforce": "https://login.salesforce.com/services/oauth2/authorize",
        "discord": "https://discord.com/oauth2/authorize",
        "spotify": "https://accounts.spotify.com/authorize",
        "amazon": "https://www.amazon.com/ap/oa",
        "slack": "https://slack.com/oauth/v2/authorize",
        "twitch": "https://id.twitch.tv/oauth2/authorize",
        "facebook": "https://www.facebook.com/v16.0/dialog/oauth",
        "x": "https://api.twitter.com/oauth/authenticate",
        "twitter": "https://api.twitter.com/oauth/authenticate",
    },
    "token": {
        "github": "https://github.com/login/oauth/access_token",
        "microsoft": "https://login.microsoftonline.com/organizations/oauth2/v2.0/token",
        "linkedin": "https://www.linkedin.com/oauth/v2/accessToken",
        "salesforce": "https://login.salesforce.com/services/oauth2/token",
        "discord": "https://discord.com/api/oauth2/token",
        "spotify": "https://accounts.spotify.com/api/token",
        "amazon": "https://api.amazon.co.uk/auth/o2/token",
        "slack": "https://slack.com/api/oauth.v2.access",
        "twitch": "https://id.twitch.tv/oauth2/token",
        "facebook": "https://graph.facebook.com/v16.0/oauth/access_token",
        "x": "https://api.twitter.com/oauth/access_token",
        "twitter": "https://api.twitter.com/oauth/access_token",
    },
    "profile": {
        "google": "https://www.googleapis.com/oauth2/v3/userinfo",
        "github": "https://api.github.com/user/emails",
        "microsoft": "https://graph.microsoft.com/v1.0/me",
        "linkedin": "https://api.linkedin.com/v2/userinfo",
        "salesforce": "https://login.salesforce.com/services/oauth2/userinfo",
        "discord": "https://discord.com/api/users/@me",
        "spotify": "https://api.spotify.com/v1/me",
        "amazon": "https://api.amazon.com/user/profile",
        "slack": "https://slack.com/api/users.info",
        "twitch": "https://api.twitch.tv/helix/users",
        "facebook": "https://graph.facebook.com/v16.0/me",
        "x": _TWITTER_PROFILE,
        "twitter": _TWITTER_PROFILE,
    },
    "request_token": {
        "x": "https://api.twitter.com/oauth/request_token",
        "twitter": "https://api.twitter.com/oauth/request_token",
    },
}

# Providers whose token endpoint wants a form-encoded body.
FORM_ENCODED_TOKEN = frozenset(
    {"microsoft", "linkedin", "salesforce", "discord", "spotify", "amazon", "slack", "facebook"}
)

# Providers that want the client credentials as HTTP Basic auth on the token request.
BASIC_AUTH_TOKEN = frozenset({"discord", "spotify", "amazon", "slack"})

# Providers that return an access token directly in the redirect fragment.
IMPLICIT_TOKEN = frozenset({"google"})

# Providers whose scope may be left empty.
SCOPE_OPTIONAL = frozenset({"salesforce"})

_CONFIG_URL_FIELDS = {
    "auth": "auth_url",
    "token": "token_url",
    "profile": "profile_url",
    "request_token": "request_token_url",
}


def known_providers() -> list[str]:
    return sorted(PROVIDER_URLS["auth"])


def provider_url(provider: str, url_type: str = "auth", config: Optional[ProviderConfig] = None) -> str:
    """Return the endpoint of *url_type* for *provider*.

    A URL set on *config* wins over the built-in table.

    Raises:
        ProviderError: For an unknown URL type or a provider without that
            endpoint.
    """
    if url_type not in URL_TYPES:
        raise ProviderError(f"Invalid URL type '{url_type}'", f"Expected one of {', '.join(URL_TYPES)}")
    if config is not None:
        configured = getattr(config, _CONFIG_URL_FIELDS[url_type])
        if configured:
            return configured
    url = PROVIDER_URLS[url_type].get(provider)
    if url is None:
        raise ProviderError(
            f"Provider '{provider}' has no built-in {url_type} URL",
            f"Set {_CONFIG_URL_FIELDS[url_type]} on the provider or use one of: {', '.join(known_providers())}",
        )
    if provider == "microsoft":
        url = url.format(tenant=(config.tenant if config is not None else None) or "common")
    return url


def token_type(provider: str, config: Optional[ProviderConfig] = None) -> str:
    """``response_type`` sent to the authorization endpoint."""
    if config is not None and config.response_type:
        return config.response_type
    return "token" if provider in IMPLICIT_TOKEN else "code"


def token_body_encoding(provider: str) -> str:
    """Body encoding of the code-for-token request (``"url"`` or ``"json"``)."""
    return "url" if provider in FORM_ENCODED_TOKEN else "json"


def needs_basic_auth(provider: str) -> bool:
    return provider in BASIC_AUTH_TOKEN
