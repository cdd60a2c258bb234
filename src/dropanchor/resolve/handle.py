"""AT Protocol handle and DID resolution utilities.

Resolves AT Protocol handles to DIDs using DNS TXT records and HTTPS well-known
endpoints, then resolves the DID document to find the account's PDS.
Supports both did:plc and did:web DID methods.
"""

import asyncio
import logging
import re
from enum import IntEnum
from typing import Any, Dict, Optional

from aiodns import DNSResolver
from aiodns.error import DNSError
import sentry_sdk
from aiohttp import ClientError, ClientSession, ClientTimeout
from pydantic import BaseModel

logger = logging.getLogger(__name__)

HANDLE_PATTERN = re.compile(
    r"^([a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)+[a-zA-Z]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$"
)

DEFAULT_TIMEOUT = ClientTimeout(total=10)


class SubjectType(IntEnum):
    """Whether a subject is a DID or a handle requiring resolution."""

    did_method_plc = 1
    did_method_web = 2
    hostname = 3


class ParsedSubject(BaseModel):
    subject_type: SubjectType
    subject: str


class ResolvedSubject(BaseModel):
    """DID, handle and PDS endpoint of a fully resolved account."""

    did: str
    handle: str
    pds: str


async def resolve_handle_dns(handle: str) -> Optional[str]:
    """Resolve a handle to a DID from its ``_atproto.{handle}`` TXT record."""
    resolver = DNSResolver()
    try:
        results = await resolver.query(f"_atproto.{handle}", "TXT")
    except DNSError as e:
        logger.debug(f"No _atproto TXT record for {handle}: {e}")
        return None

    for result in results or []:
        text = result.text
        if isinstance(text, bytes):
            text = text.decode("utf-8", "replace")
        if text.startswith("did="):
            return text.removeprefix("did=").strip()
    return None


async def resolve_handle_http(
    session: ClientSession,
    handle: str,
    timeout: ClientTimeout = DEFAULT_TIMEOUT,
) -> Optional[str]:
    """Resolve a handle to a DID from ``https://{handle}/.well-known/atproto-did``."""
    try:
        async with session.get(
            f"https://{handle}/.well-known/atproto-did", timeout=timeout
        ) as resp:
            if resp.status != 200:
                return None
            body = (await resp.text()).strip()
    except (ClientError, asyncio.TimeoutError) as e:
        logger.debug(f"Well-known DID lookup failed for {handle}: {e}")
        return None

    if body.startswith("did:"):
        return body
    return None


async def resolve_handle(
    session: ClientSession,
    handle: str,
    timeout: ClientTimeout = DEFAULT_TIMEOUT,
) -> Optional[str]:
    """Resolve a handle using DNS and HTTPS concurrently, preferring DNS."""
    async with asyncio.TaskGroup() as tg:
        dns_result = tg.create_task(resolve_handle_dns(handle))
        http_result = tg.create_task(resolve_handle_http(session, handle, timeout))
    if dns_result.result() is not None:
        return dns_result.result()
    return http_result.result()


def handle_predicate(value: str) -> bool:
    return value is not None and value.startswith("at://")


def pds_predicate(value: Dict[str, Any]) -> bool:
    return (
        value is not None
        and value.get("type", None) == "AtprotoPersonalDataServer"
        and "serviceEndpoint" in value
    )


def subject_from_document(did: str, document: Dict[str, Any]) -> Optional[ResolvedSubject]:
    """Pick the handle and PDS endpoint out of a DID document."""
    handle = next(filter(handle_predicate, document.get("alsoKnownAs", [])), None)
    pds = next(filter(pds_predicate, document.get("service", [])), None)
    if handle is None or pds is None:
        return None
    return ResolvedSubject(
        did=did,
        handle=handle.removeprefix("at://"),
        pds=pds.get("serviceEndpoint").rstrip("/"),
    )


def did_document_url(plc_hostname: str, did: str) -> Optional[str]:
    if did.startswith("did:plc:"):
        return f"https://{plc_hostname}/{did}"

    if did.startswith("did:web:"):
        parts = did.removeprefix("did:web:").split(":")
        if not parts[0]:
            return None
        if len(parts) == 1:
            parts.append(".well-known")
        return "https://{inner}/did.json".format(inner="/".join(parts))

    return None


async def resolve_did(
    session: ClientSession,
    plc_hostname: str,
    did: str,
    timeout: ClientTimeout = DEFAULT_TIMEOUT,
) -> Optional[ResolvedSubject]:
    """Fetch the DID document (PLC directory or did:web) and resolve it."""
    url = did_document_url(plc_hostname, did)
    if url is None:
        logger.warning(f"Unsupported DID method: {did}")
        return None

    try:
        async with session.get(url, timeout=timeout) as resp:
            if resp.status != 200:
                return None
            document = await resp.json(content_type=None)
    except (ClientError, asyncio.TimeoutError, ValueError) as e:
        logger.warning(f"Unable to fetch DID document for {did}: {e}")
        sentry_sdk.capture_exception(e)
        return None

    if not isinstance(document, dict):
        return None
    return subject_from_document(did, document)


def parse_input(subject: str) -> Optional[ParsedSubject]:
    """
    Classify a raw subject string as a DID or a handle.

    Leading ``at://`` and ``@`` are removed. Returns None for strings that are
    neither a supported DID nor a syntactically valid handle.
    """
    subject = subject.strip()
    subject = subject.removeprefix("at://")
    subject = subject.removeprefix("@")

    if subject.startswith("did:plc:"):
        return ParsedSubject(subject_type=SubjectType.did_method_plc, subject=subject)
    elif subject.startswith("did:web:"):
        return ParsedSubject(subject_type=SubjectType.did_method_web, subject=subject)

    if not HANDLE_PATTERN.match(subject):
        return None
    return ParsedSubject(subject_type=SubjectType.hostname, subject=subject.lower())


async def resolve_subject(
    session: ClientSession,
    plc_hostname: str,
    subject: str,
    timeout: ClientTimeout = DEFAULT_TIMEOUT,
) -> Optional[ResolvedSubject]:
    """
    Resolve a handle or DID to its DID, handle and PDS endpoint.

    Returns None when the subject cannot be parsed or any step of the
    resolution fails.
    """
    parsed_subject = parse_input(subject)
    if parsed_subject is None:
        return None

    did: Optional[str] = None
    if parsed_subject.subject_type == SubjectType.hostname:
        did = await resolve_handle(session, parsed_subject.subject, timeout)
    else:
        did = parsed_subject.subject

    if did is None:
        return None

    return await resolve_did(session, plc_hostname, did, timeout)
