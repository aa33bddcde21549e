"""AT Protocol handle and DID resolution.

A subject typed by a user can be a handle (`alice.bsky.social`, optionally
prefixed with `@` or `at://`) or a DID (`did:plc:...`, `did:web:...`).
Resolution turns it into a `ResolvedSubject` carrying the DID, the verified
handle and the PDS endpoint that hosts the account.

Resolution failures are reported to Sentry and surface as `None`; callers
decide whether an unresolvable subject is an error.
"""

import asyncio
import logging
from enum import IntEnum
from typing import Any, Dict, Optional

import sentry_sdk
from aiodns import DNSResolver
from aiohttp import ClientSession
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class SubjectType(IntEnum):
    did_method_plc = 1
    did_method_web = 2
    hostname = 3


class ParsedSubject(BaseModel):
    subject_type: SubjectType
    subject: str


class ResolvedSubject(BaseModel):
    """A fully resolved identity: DID, handle and PDS endpoint."""

    did: str
    handle: str
    pds: str


def parse_input(subject: str) -> Optional[ParsedSubject]:
    """Normalize a user supplied subject and classify it.

    Leading whitespace, `at://` and `@` are stripped. Empty input yields None.
    """
    subject = subject.strip().removeprefix("at://").removeprefix("@")
    if len(subject) == 0:
        return None

    for prefix, subject_type in (
        ("did:plc:", SubjectType.did_method_plc),
        ("did:web:", SubjectType.did_method_web),
    ):
        if subject.startswith(prefix):
            return ParsedSubject(subject_type=subject_type, subject=subject)

    return ParsedSubject(subject_type=SubjectType.hostname, subject=subject.lower())


async def resolve_handle_dns(handle: str) -> Optional[str]:
    """Look up the `_atproto.{handle}` TXT record."""
    resolver = DNSResolver()
    try:
        records = await resolver.query(f"_atproto.{handle}", "TXT")
    except Exception as e:
        sentry_sdk.capture_exception(e)
        return None

    for record in records or []:
        text = record.text
        if isinstance(text, bytes):
            text = text.decode("utf-8")
        if text.startswith("did="):
            return text.removeprefix("did=")
    return None


async def resolve_handle_http(session: ClientSession, handle: str) -> Optional[str]:
    """Fetch `https://{handle}/.well-known/atproto-did`."""
    try:
        async with session.get(f"https://{handle}/.well-known/atproto-did") as resp:
            if resp.status != 200:
                return None
            body = await resp.text()
    except Exception as e:
        sentry_sdk.capture_exception(e)
        return None

    if body is None:
        return None
    body = body.strip()
    return body if body.startswith("did:") else None


async def resolve_handle(session: ClientSession, handle: str) -> Optional[str]:
    """Resolve a handle over DNS and HTTPS concurrently, preferring DNS."""
    async with asyncio.TaskGroup() as tg:
        dns_task = tg.create_task(resolve_handle_dns(handle))
        http_task = tg.create_task(resolve_handle_http(session, handle))
    return dns_task.result() or http_task.result()


def did_document_url(plc_hostname: str, did: str) -> Optional[str]:
    if did.startswith("did:plc:"):
        return f"https://{plc_hostname}/{did}"

    if did.startswith("did:web:"):
        parts = did.removeprefix("did:web:").split(":")
        if len(parts) == 1:
            parts.append(".well-known")
        return "https://{inner}/did.json".format(inner="/".join(parts))

    return None


def handle_predicate(value: Optional[str]) -> bool:
    return value is not None and value.startswith("at://")


def pds_predicate(value: Optional[Dict[str, Any]]) -> bool:
    return (
        value is not None
        and value.get("type", None) == "AtprotoPersonalDataServer"
        and "serviceEndpoint" in value
    )


def parse_did_document(did: str, document: Dict[str, Any]) -> Optional[ResolvedSubject]:
    """Extract the handle and PDS endpoint from a DID document."""
    handle = next(filter(handle_predicate, document.get("alsoKnownAs", [])), None)
    pds = next(filter(pds_predicate, document.get("service", [])), None)
    if handle is None or pds is None:
        return None

    return ResolvedSubject(
        did=did,
        handle=handle.removeprefix("at://"),
        pds=pds["serviceEndpoint"].rstrip("/"),
    )


async def resolve_did(
    session: ClientSession, plc_hostname: str, did: str
) -> Optional[ResolvedSubject]:
    url = did_document_url(plc_hostname, did)
    if url is None:
        logger.debug("Unsupported DID method: %s", did)
        return None

    async with session.get(url) as resp:
        if resp.status != 200:
            return None
        document = await resp.json()

    if not isinstance(document, dict):
        return None
    return parse_did_document(did, document)


async def resolve_subject(
    session: ClientSession, plc_hostname: str, subject: str
) -> Optional[ResolvedSubject]:
    """Resolve a handle or DID to a `ResolvedSubject`.

    For handles the DID document must point back at the same handle,
    otherwise the handle claim is not trusted and resolution fails.
    """
    parsed = parse_input(subject)
    if parsed is None:
        return None

    if parsed.subject_type != SubjectType.hostname:
        return await resolve_did(session, plc_hostname, parsed.subject)

    did = await resolve_handle(session, parsed.subject)
    if did is None:
        return None

    resolved = await resolve_did(session, plc_hostname, did)
    if resolved is None or resolved.handle.lower() != parsed.subject:
        logger.debug("Handle %s does not match DID document for %s", parsed.subject, did)
        return None
    return resolved
