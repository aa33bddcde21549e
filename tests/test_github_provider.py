"""
Unit tests for social.atmd.github.provider

The aiohttp session is mocked; responses are configured per test.
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from aiohttp import ClientResponse, ClientSession

from social.atmd.account.errors import ExternalServiceError, ExternalServiceErrorCode
from social.atmd.account.models import utc_now
from social.atmd.github.provider import (
    GITHUB_ACCESS_TOKEN_URL,
    GitHubAppTokenProvider,
    parse_installation,
)


def mock_response(status: int = 200, body=None, links=None):
    response = AsyncMock(spec=ClientResponse)
    response.status = status
    response.json = AsyncMock(return_value=body)
    response.links = links or {}
    return response


def mock_session(method: str, response) -> AsyncMock:
    session = AsyncMock(spec=ClientSession)
    getattr(session, method).return_value.__aenter__.return_value = response
    return session


class TestTokenRequests:
    async def test_exchange_code(self):
        """The code is exchanged with the App credentials."""
        session = mock_session(
            "post", mock_response(body={"access_token": "gho_token", "scope": ""})
        )
        provider = GitHubAppTokenProvider(session, "Iv1.client", "secret")

        tokens = await provider.get_access_token("gh-code")

        assert tokens.access_token == "gho_token"
        assert tokens.refresh_token is None
        assert tokens.expires_at is None
        session.post.assert_called_once_with(
            GITHUB_ACCESS_TOKEN_URL,
            data={"client_id": "Iv1.client", "client_secret": "secret", "code": "gh-code"},
            headers={"Accept": "application/json"},
        )

    async def test_refresh_with_expiry(self):
        """Expiring tokens report an absolute expiry."""
        session = mock_session(
            "post",
            mock_response(
                body={
                    "access_token": "ghu_new",
                    "refresh_token": "ghr_new",
                    "expires_in": 28800,
                }
            ),
        )
        provider = GitHubAppTokenProvider(session, "Iv1.client", "secret")
        before = utc_now()

        tokens = await provider.refresh_access_token("ghr_old")

        assert tokens.access_token == "ghu_new"
        assert tokens.refresh_token == "ghr_new"
        assert before + timedelta(seconds=28800) <= tokens.expires_at
        assert tokens.expires_at <= utc_now() + timedelta(seconds=28800)
        data = session.post.call_args.kwargs["data"]
        assert data["grant_type"] == "refresh_token"
        assert data["refresh_token"] == "ghr_old"

    async def test_error_body_with_200(self):
        """GitHub reports bad codes with an error field and HTTP 200."""
        session = mock_session(
            "post",
            mock_response(
                body={
                    "error": "bad_verification_code",
                    "error_description": "The code passed is incorrect or expired.",
                }
            ),
        )
        provider = GitHubAppTokenProvider(session, "Iv1.client", "secret")

        with pytest.raises(ExternalServiceError) as exc_info:
            await provider.get_access_token("expired")

        assert exc_info.value.code == ExternalServiceErrorCode.AUTHENTICATION_FAILED
        assert exc_info.value.retryable is False
        assert "incorrect or expired" in exc_info.value.message

    async def test_missing_access_token(self):
        """A response without a token is invalid."""
        session = mock_session("post", mock_response(body={"scope": ""}))
        provider = GitHubAppTokenProvider(session, "Iv1.client", "secret")

        with pytest.raises(ExternalServiceError) as exc_info:
            await provider.get_access_token("gh-code")

        assert exc_info.value.code == ExternalServiceErrorCode.RESPONSE_INVALID

    @pytest.mark.parametrize(
        "status,code,retryable",
        [
            (502, ExternalServiceErrorCode.SERVICE_UNAVAILABLE, True),
            (429, ExternalServiceErrorCode.RATE_LIMITED, True),
            (404, ExternalServiceErrorCode.REQUEST_FAILED, False),
        ],
    )
    async def test_status_classification(self, status, code, retryable):
        """Unexpected statuses are classified as transient or terminal."""
        session = mock_session("post", mock_response(status=status))
        provider = GitHubAppTokenProvider(session, "Iv1.client", "secret")

        with pytest.raises(ExternalServiceError) as exc_info:
            await provider.refresh_access_token("ghr_old")

        assert exc_info.value.code == code
        assert exc_info.value.retryable is retryable


class TestListInstallations:
    async def test_lists_installations(self):
        """Installations are parsed, invalid entries skipped."""
        body = {
            "total_count": 3,
            "installations": [
                {
                    "id": 42,
                    "account": {"login": "alice", "type": "User"},
                    "target_type": "User",
                    "repository_selection": "all",
                    "html_url": "https://github.com/settings/installations/42",
                },
                {"id": 43, "account": {}},
                "garbage",
            ],
        }
        session = mock_session("get", mock_response(body=body))
        provider = GitHubAppTokenProvider(
            session, "Iv1.client", "secret", api_url="https://ghe.example/api/v3/"
        )

        installations = await provider.list_installations("gho_token")

        assert [installation.id for installation in installations] == [42]
        assert installations[0].account_login == "alice"
        assert installations[0].repository_selection == "all"
        url = session.get.call_args.args[0]
        assert url == "https://ghe.example/api/v3/user/installations"
        headers = session.get.call_args.kwargs["headers"]
        assert headers["Authorization"] == "Bearer gho_token"
        assert session.get.call_args.kwargs["params"] == {"per_page": 100}

    async def test_follows_next_page(self):
        """Installations beyond the first page are collected from the next link."""
        next_url = "https://api.github.com/user/installations?per_page=100&page=2"
        first = mock_response(
            body={"installations": [{"id": 1, "account": {"login": "alice"}}]},
            links={"next": {"url": next_url}},
        )
        second = mock_response(
            body={"installations": [{"id": 2, "account": {"login": "acme"}}]}
        )
        session = AsyncMock(spec=ClientSession)
        session.get.return_value.__aenter__.side_effect = [first, second]
        provider = GitHubAppTokenProvider(session, "Iv1.client", "secret")

        installations = await provider.list_installations("gho_token")

        assert [installation.id for installation in installations] == [1, 2]
        assert session.get.call_count == 2
        assert session.get.call_args_list[1].args[0] == next_url
        assert session.get.call_args_list[1].kwargs["params"] is None

    async def test_rejected_token(self):
        """A 401 means the token is no longer valid."""
        session = mock_session("get", mock_response(status=401))
        provider = GitHubAppTokenProvider(session, "Iv1.client", "secret")

        with pytest.raises(ExternalServiceError) as exc_info:
            await provider.list_installations("gho_revoked")

        assert exc_info.value.code == ExternalServiceErrorCode.AUTHENTICATION_FAILED
        assert exc_info.value.retryable is False

    async def test_server_error_is_retryable(self):
        """GitHub outages are transient."""
        session = mock_session("get", mock_response(status=503))
        provider = GitHubAppTokenProvider(session, "Iv1.client", "secret")

        with pytest.raises(ExternalServiceError) as exc_info:
            await provider.list_installations("gho_token")

        assert exc_info.value.retryable is True


class TestParseInstallation:
    def test_minimal(self):
        """Only id and account login are required."""
        installation = parse_installation({"id": 7, "account": {"login": "org"}})

        assert installation is not None
        assert installation.id == 7
        assert installation.account_login == "org"
        assert installation.account_type is None

    def test_missing_id(self):
        """Entries without an id are skipped."""
        assert parse_installation({"account": {"login": "org"}}) is None
