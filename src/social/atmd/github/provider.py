"""
GitHub token provider.

Talks to GitHub on behalf of a GitHub App with user-to-server tokens:

- `get_access_token` exchanges the OAuth callback code for a token pair
- `refresh_access_token` rotates an expiring token pair
- `list_installations` lists the App installations the user can access

GitHub answers failed token requests with HTTP 200 and an `error` field, so
both the status and the body are checked.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from aiohttp import ClientSession

from social.atmd.account.errors import ExternalServiceError, ExternalServiceErrorCode
from social.atmd.account.models import GitHubInstallation, GitHubTokens, utc_now
from social.atmd.account.ports import GitHubTokenProvider

logger = logging.getLogger(__name__)

GITHUB_ACCESS_TOKEN_URL = "https://github.com/login/oauth/access_token"
GITHUB_API_URL = "https://api.github.com"

# Largest page size GitHub accepts for list endpoints.
INSTALLATIONS_PER_PAGE = 100


class GitHubAppTokenProvider(GitHubTokenProvider):
    def __init__(
        self,
        http_session: ClientSession,
        client_id: str,
        client_secret: str,
        api_url: str = GITHUB_API_URL,
        token_url: str = GITHUB_ACCESS_TOKEN_URL,
    ) -> None:
        self.http_session = http_session
        self.client_id = client_id
        self.client_secret = client_secret
        self.api_url = api_url.rstrip("/")
        self.token_url = token_url

    async def get_access_token(self, code: str) -> GitHubTokens:
        return await self._token_request({"code": code})

    async def refresh_access_token(self, refresh_token: str) -> GitHubTokens:
        return await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token}
        )

    async def list_installations(self, access_token: str) -> List[GitHubInstallation]:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        installations = []
        url: Optional[str] = f"{self.api_url}/user/installations"
        params: Optional[Dict[str, int]] = {"per_page": INSTALLATIONS_PER_PAGE}
        while url is not None:
            async with self.http_session.get(url, headers=headers, params=params) as resp:
                if resp.status == 401:
                    raise ExternalServiceError(
                        "github",
                        ExternalServiceErrorCode.AUTHENTICATION_FAILED,
                        "GitHub rejected the access token",
                    )
                if resp.status != 200:
                    raise ExternalServiceError.from_status(
                        "github",
                        resp.status,
                        f"Listing installations returned {resp.status}",
                    )
                body = await resp.json()
                # The next page URL already carries the query.
                next_link = resp.links.get("next")
                url = str(next_link["url"]) if next_link else None
                params = None

            if not isinstance(body, dict):
                raise ExternalServiceError(
                    "github",
                    ExternalServiceErrorCode.RESPONSE_INVALID,
                    "Invalid installations response",
                )

            for item in body.get("installations", []):
                installation = parse_installation(item)
                if installation is not None:
                    installations.append(installation)
        return installations

    async def _token_request(self, payload: Dict[str, str]) -> GitHubTokens:
        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            **payload,
        }
        now = utc_now()
        async with self.http_session.post(
            self.token_url, data=data, headers={"Accept": "application/json"}
        ) as resp:
            if resp.status != 200:
                raise ExternalServiceError.from_status(
                    "github", resp.status, f"Token request returned {resp.status}"
                )
            body = await resp.json(content_type=None)

        if not isinstance(body, dict):
            raise ExternalServiceError(
                "github",
                ExternalServiceErrorCode.RESPONSE_INVALID,
                "Invalid token response",
            )

        if "error" in body:
            raise ExternalServiceError(
                "github",
                ExternalServiceErrorCode.AUTHENTICATION_FAILED,
                body.get("error_description") or body["error"],
            )

        access_token = body.get("access_token")
        if not access_token:
            raise ExternalServiceError(
                "github",
                ExternalServiceErrorCode.RESPONSE_INVALID,
                "GitHub token response has no access token",
            )

        expires_in = body.get("expires_in")
        return GitHubTokens(
            access_token=access_token,
            refresh_token=body.get("refresh_token") or None,
            expires_at=now + timedelta(seconds=int(expires_in)) if expires_in else None,
        )


def parse_installation(item: Any) -> Optional[GitHubInstallation]:
    if not isinstance(item, dict) or "id" not in item:
        return None

    account = item.get("account") or {}
    login = account.get("login")
    if login is None:
        logger.debug("Skipping installation %s without account login", item.get("id"))
        return None

    return GitHubInstallation(
        id=item["id"],
        account_login=login,
        account_type=account.get("type"),
        target_type=item.get("target_type"),
        repository_selection=item.get("repository_selection"),
        html_url=item.get("html_url"),
    )
