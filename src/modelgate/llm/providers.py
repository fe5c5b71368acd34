"""Provider policies: per-provider wire quirks expressed as data.

Adding a provider means adding a ``ProviderPolicy`` to ``POLICIES``; no
control flow elsewhere branches on the provider id.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from urllib.parse import quote

from modelgate.config import ProviderProfile, resolve_api_key

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderPolicy:
    """How one provider wants its requests shaped.

    ``url_template`` is formatted with ``base``, ``deployment`` and
    ``api_version``.  ``auth_prefix`` is prepended to the key in
    ``auth_header`` (``"Bearer "`` for OpenAI, empty for Azure's
    ``api-key``).
    """

    name: str
    display_name: str
    url_template: str
    auth_header: str
    auth_prefix: str = ""
    api_key_env: str | None = None
    default_api_version: str | None = None
    requires_api_version: bool = False
    model_in_body: bool = True

    def build_url(
        self,
        base_url: str,
        deployment: str,
        api_version: str | None = None,
    ) -> str:
        version = api_version or self.default_api_version
        if self.requires_api_version and not version:
            raise ValueError(f"{self.display_name} requires an api_version")
        return self.url_template.format(
            base=base_url.rstrip("/"),
            deployment=quote(deployment, safe=""),
            api_version=version or "",
        )

    def build_headers(self, api_key: str) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers[self.auth_header] = f"{self.auth_prefix}{api_key}"
        return headers


AZURE_OPENAI = ProviderPolicy(
    name="azure_openai",
    display_name="Azure OpenAI",
    url_template=(
        "{base}/openai/deployments/{deployment}/chat/completions"
        "?api-version={api_version}"
    ),
    auth_header="api-key",
    api_key_env="AZURE_OPENAI_API_KEY",
    default_api_version="2024-10-21",
    requires_api_version=True,
    model_in_body=False,
)

OPENAI = ProviderPolicy(
    name="openai",
    display_name="OpenAI",
    url_template="{base}/chat/completions",
    auth_header="Authorization",
    auth_prefix="Bearer ",
    api_key_env="OPENAI_API_KEY",
)

POLICIES: dict[str, ProviderPolicy] = {p.name: p for p in (AZURE_OPENAI, OPENAI)}


def get_policy(provider: str) -> ProviderPolicy:
    """Return the policy for *provider*; raises ``KeyError`` if unknown."""
    try:
        return POLICIES[provider]
    except KeyError:
        raise KeyError(
            f"Unknown provider {provider!r}; known: {', '.join(sorted(POLICIES))}"
        ) from None


def policy_for_profile(profile: ProviderProfile) -> ProviderPolicy:
    """Resolve the policy for *profile*.

    An ``openai`` profile whose base URL is an ``*.azure.com`` host is
    treated as Azure, since those endpoints reject bearer auth.
    """
    policy = get_policy(profile.provider)
    if policy is OPENAI and ".azure.com" in profile.base_url:
        _logger.info(
            "Base URL %s is an Azure endpoint, using %s policy",
            profile.base_url, AZURE_OPENAI.display_name,
        )
        return AZURE_OPENAI
    return policy


def profile_headers(profile: ProviderProfile, policy: ProviderPolicy) -> dict[str, str]:
    return policy.build_headers(resolve_api_key(profile, policy.api_key_env))
