"""
DPoP (Demonstrating Proof of Possession) requests.

Token requests against an AT Protocol authorization server must carry a DPoP
proof signed by a per-session key. Authorization servers hand out nonces via
the `DPoP-Nonce` header and reject proofs without a current nonce with
`use_dpop_nonce`; the request is then retried with the new nonce.
"""

import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from aiohttp import ClientSession
from jwcrypto import jwk, jwt

from social.atmd.account.errors import ExternalServiceError, ExternalServiceErrorCode

NONCE_ERRORS = ("use_dpop_nonce", "invalid_dpop_proof")


@dataclass
class DPoPResponse:
    status: int
    body: Dict[str, Any]
    nonce: Optional[str]


def generate_dpop_key() -> jwk.JWK:
    return jwk.JWK.generate(kty="EC", crv="P-256", alg="ES256")


def dpop_proof(
    dpop_key: jwk.JWK, method: str, url: str, nonce: Optional[str] = None
) -> str:
    now = int(datetime.now(timezone.utc).timestamp())
    claims: Dict[str, Any] = {
        "jti": secrets.token_urlsafe(32),
        "htm": method,
        "htu": url,
        "iat": now,
        "exp": now + 30,
    }
    if nonce:
        claims["nonce"] = nonce

    token = jwt.JWT(
        header={
            "alg": "ES256",
            "typ": "dpop+jwt",
            "jwk": dpop_key.export_public(as_dict=True),
        },
        claims=claims,
    )
    token.make_signed_token(dpop_key)
    return token.serialize()


async def dpop_request(
    session: ClientSession,
    url: str,
    dpop_key: jwk.JWK,
    data: Dict[str, str],
    nonce: Optional[str] = None,
    service: str = "bluesky",
) -> DPoPResponse:
    """
    POST a form to `url` with a DPoP proof, retrying on nonce challenges.

    Returns the final response whatever its status; the caller decides what a
    non-success status means. The last nonce seen is returned so it can be
    stored alongside the session.
    """
    attempts = 3

    while attempts > 0:
        attempts -= 1

        headers = {"DPoP": dpop_proof(dpop_key, "POST", url, nonce)}
        async with session.post(url, headers=headers, data=data) as resp:
            nonce = resp.headers.get("DPoP-Nonce", nonce)
            try:
                body = await resp.json(content_type=None)
            except ValueError as e:
                raise ExternalServiceError(
                    service,
                    ExternalServiceErrorCode.RESPONSE_INVALID,
                    f"Invalid JSON from {url}: {e}",
                ) from e
            status = resp.status

        if not isinstance(body, dict):
            raise ExternalServiceError(
                service,
                ExternalServiceErrorCode.RESPONSE_INVALID,
                f"Unexpected response body from {url}",
            )

        if status in (400, 401) and body.get("error", None) in NONCE_ERRORS:
            continue

        return DPoPResponse(status=status, body=body, nonce=nonce)

    raise ExternalServiceError(
        service,
        ExternalServiceErrorCode.AUTHENTICATION_FAILED,
        f"DPoP nonce negotiation with {url} failed",
    )
