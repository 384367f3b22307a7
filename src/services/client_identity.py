"""
Client identity resolution.

Derives who a request is for: an authenticated user id, else a persistent
anonymous id carried in a signed httpOnly cookie. Also resolves the source
IP, trusting X-Forwarded-For only across hops that are configured reverse
proxies.
"""

import hashlib
import hmac
import ipaddress
import logging
import re
import secrets
from collections.abc import Iterable
from dataclasses import dataclass

from fastapi import Request, Response

from src.utils.ip_utils import parse_ip

logger = logging.getLogger(__name__)

ANON_ID_BYTES = 24  # 192 bits of entropy
_ANON_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{32}$")


@dataclass(frozen=True)
class AuthenticatedIdentity:
    user_id: str

    def __str__(self) -> str:
        return f"user:{self.user_id}"


@dataclass(frozen=True)
class AnonymousIdentity:
    anon_id: str

    def __str__(self) -> str:
        # The id is the only thing protecting this identity's quota state
        return f"anon:{self.anon_id[:6]}…"


Identity = AuthenticatedIdentity | AnonymousIdentity


class TrustedProxies:
    """Set of networks whose X-Forwarded-For entries are believed"""

    def __init__(self, cidrs: Iterable[str] = ()):
        networks = []
        for cidr in cidrs:
            try:
                networks.append(ipaddress.ip_network(cidr.strip(), strict=False))
            except ValueError as e:
                raise RuntimeError(f"Invalid TRUSTED_PROXIES entry {cidr!r}: {e}") from e
        self._networks = tuple(networks)

    def __bool__(self) -> bool:
        return bool(self._networks)

    def __contains__(self, value: str | None) -> bool:
        address = parse_ip(value)
        if address is None:
            return False
        return any(address in network for network in self._networks)


def resolve_client_ip(request: Request, trusted_proxies: TrustedProxies) -> str:
    """
    Return the best-effort source IP of a request.

    The socket peer is the client unless it is a trusted proxy. In that case
    X-Forwarded-For is walked right to left, skipping trusted hops, and the
    first untrusted address is the client. A malformed entry stops the walk
    at the last trusted hop, so a client can never inject an address that a
    trusted proxy did not append.
    """
    peer = request.client.host if request.client else None
    peer_address = parse_ip(peer)
    if peer_address is None:
        return peer or "unknown"

    client = str(peer_address)
    if client not in trusted_proxies:
        return client

    forwarded_for = request.headers.get("X-Forwarded-For", "")
    for hop in reversed([entry.strip() for entry in forwarded_for.split(",") if entry.strip()]):
        hop_address = parse_ip(hop)
        if hop_address is None:
            logger.debug(f"Malformed X-Forwarded-For entry ignored: {hop!r}")
            break
        client = str(hop_address)
        if client not in trusted_proxies:
            break
    return client


def mint_anon_id() -> str:
    return secrets.token_urlsafe(ANON_ID_BYTES)


def is_valid_anon_id(value: str | None) -> bool:
    return bool(value) and _ANON_ID_PATTERN.match(value) is not None


class AnonCookieSigner:
    """HMAC-SHA256 signing of anonymous ids stored in cookies"""

    def __init__(self, secret: str | None):
        if not secret:
            logger.warning(
                "ANON_COOKIE_SECRET not set; using a per-process key, "
                "anonymous cookies will not survive a restart"
            )
            secret = secrets.token_hex(32)
        self._key = secret.encode("utf-8")

    def _signature(self, anon_id: str) -> str:
        return hmac.new(self._key, anon_id.encode("utf-8"), hashlib.sha256).hexdigest()

    def sign(self, anon_id: str) -> str:
        return f"{anon_id}.{self._signature(anon_id)}"

    def unsign(self, value: str | None) -> str | None:
        """Return the anonymous id if the cookie value is well formed and authentic."""
        if not value or "." not in value:
            return None
        anon_id, _, signature = value.rpartition(".")
        if not is_valid_anon_id(anon_id):
            return None
        if not hmac.compare_digest(signature, self._signature(anon_id)):
            return None
        return anon_id


@dataclass(frozen=True)
class ClientIdentity:
    """Everything admission needs to know about who sent a request"""

    user_id: str | None
    source_ip: str
    anon_id: str | None = None
    user_agent: str | None = None

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    @property
    def identity(self) -> Identity | None:
        if self.user_id is not None:
            return AuthenticatedIdentity(self.user_id)
        if self.anon_id is not None:
            return AnonymousIdentity(self.anon_id)
        return None


class ClientIdentityResolver:
    """Reads request identity and issues anonymous-id cookies"""

    def __init__(
        self,
        trusted_proxies: TrustedProxies,
        signer: AnonCookieSigner,
        cookie_name: str = "anon_id",
        cookie_max_age: int = 365 * 24 * 60 * 60,
        secure_cookie: bool = True,
    ):
        self.trusted_proxies = trusted_proxies
        self.signer = signer
        self.cookie_name = cookie_name
        self.cookie_max_age = cookie_max_age
        self.secure_cookie = secure_cookie

    def resolve(self, request: Request, user_id: str | None) -> ClientIdentity:
        """
        Resolve identity without side effects.

        An anonymous id is only read here; minting happens once the request
        has passed the capacity and abuse guards.
        """
        anon_id = None
        if user_id is None:
            anon_id = self.signer.unsign(request.cookies.get(self.cookie_name))
        return ClientIdentity(
            user_id=user_id,
            source_ip=resolve_client_ip(request, self.trusted_proxies),
            anon_id=anon_id,
            user_agent=request.headers.get("User-Agent"),
        )

    def cookie_header(self, anon_id: str) -> str:
        """Serialized Set-Cookie value, for responses built outside the route"""
        response = Response()
        self.set_cookie(response, anon_id)
        return response.headers["set-cookie"]

    def set_cookie(self, response: Response, anon_id: str) -> None:
        response.set_cookie(
            key=self.cookie_name,
            value=self.signer.sign(anon_id),
            max_age=self.cookie_max_age,
            path="/",
            httponly=True,
            secure=self.secure_cookie,
            samesite="lax",
        )
