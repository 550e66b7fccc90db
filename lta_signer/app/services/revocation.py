"""
Revocation evidence sources for a single signing or extension operation.

CRLs are resolved from a certificate's CRL distribution points, OCSP
responses from its authority information access extension. Both fetchers
share one aiohttp session that lives exactly as long as the operation.

Guarantees:
- Fixed connect and socket read timeouts (10 000 ms each)
- No caching across operations
- No retries
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional, Sequence, Tuple

import aiohttp
from asn1crypto import crl, ocsp
from pyhanko_certvalidator.fetchers import Fetchers
from pyhanko_certvalidator.fetchers.aiohttp_fetchers import (
    AIOHttpFetcherBackend,
)

logger = logging.getLogger("lta_signer.revocation")

CONNECT_TIMEOUT_MS = 10_000
SOCKET_TIMEOUT_MS = 10_000


@dataclass(frozen=True)
class RevocationSources:
    """
    CRL and OCSP sources for one operation.

    ``known_crls`` / ``known_ocsps`` seed the evidence with data the
    caller already holds. With ``allow_fetching`` off, only that seeded
    evidence is consulted.
    """

    fetcher_backend: Optional[AIOHttpFetcherBackend]
    allow_fetching: bool = True
    known_crls: Tuple[crl.CertificateList, ...] = field(default=())
    known_ocsps: Tuple[ocsp.OCSPResponse, ...] = field(default=())

    @property
    def fetchers(self) -> Optional[Fetchers]:
        if self.fetcher_backend is None:
            return None
        return self.fetcher_backend.get_fetchers()

    @property
    def crl_fetcher(self):
        fetchers = self.fetchers
        return fetchers.crl_fetcher if fetchers else None

    @property
    def ocsp_fetcher(self):
        fetchers = self.fetchers
        return fetchers.ocsp_fetcher if fetchers else None


def revocation_timeout() -> aiohttp.ClientTimeout:
    return aiohttp.ClientTimeout(
        connect=CONNECT_TIMEOUT_MS / 1000,
        sock_connect=CONNECT_TIMEOUT_MS / 1000,
        sock_read=SOCKET_TIMEOUT_MS / 1000,
    )


def offline_revocation_sources(
    crls: Sequence[crl.CertificateList] = (),
    ocsps: Sequence[ocsp.OCSPResponse] = (),
) -> RevocationSources:
    """Revocation sources backed only by evidence supplied up front."""
    return RevocationSources(
        fetcher_backend=None,
        allow_fetching=False,
        known_crls=tuple(crls),
        known_ocsps=tuple(ocsps),
    )


@asynccontextmanager
async def open_revocation_sources(
    *,
    allow_fetching: bool = True,
    crls: Sequence[crl.CertificateList] = (),
    ocsps: Sequence[ocsp.OCSPResponse] = (),
) -> AsyncIterator[RevocationSources]:
    """
    Open the CRL / OCSP sources for one operation.

    The underlying session is closed when the block exits, on success
    and on failure alike.
    """
    if not allow_fetching:
        yield offline_revocation_sources(crls, ocsps)
        return

    per_request = (CONNECT_TIMEOUT_MS + SOCKET_TIMEOUT_MS) / 1000

    async with aiohttp.ClientSession(
        timeout=revocation_timeout()
    ) as session:
        logger.debug(
            "revocation_sources_opened",
            extra={
                "connect_timeout_ms": CONNECT_TIMEOUT_MS,
                "socket_timeout_ms": SOCKET_TIMEOUT_MS,
            },
        )
        yield RevocationSources(
            fetcher_backend=AIOHttpFetcherBackend(
                session=session,
                per_request_timeout=per_request,
            ),
            allow_fetching=True,
            known_crls=tuple(crls),
            known_ocsps=tuple(ocsps),
        )
