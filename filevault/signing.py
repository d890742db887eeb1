"""HMAC-signed capability URLs for warehouse files.

A capability URL has the wire format::

    /api/files/<warehouse_id>/<filename>?expires=<unix-seconds>&signature=<hex>

where ``signature`` is the lowercase hex HMAC-SHA256 of the canonical string
``<warehouse_id>/<filename>?expires=<unix-seconds>``. Both issuance and
verification go through :func:`canonical_string`.
"""

import hashlib
import hmac
import logging
import re
from dataclasses import dataclass
from secrets import compare_digest
from typing import Mapping, Optional, Union
from urllib.parse import parse_qs, quote, unquote, urlsplit

CAPABILITY_PATH_PREFIX = "/api/files/"
MIN_TTL_SECONDS = 1
MAX_TTL_SECONDS = 24 * 3600
DEFAULT_TTL_SECONDS = 3600
SIGNATURE_HEX_LENGTH = 64

_SIGNATURE_PATTERN = re.compile(r"^[0-9a-f]{64}$")
_EXPIRES_PATTERN = re.compile(r"^(0|[1-9][0-9]{0,18})$")
# Characters left unescaped when a filename is placed into the URL path.
_PATH_SAFE_CHARS = "/-._~"

logger = logging.getLogger("filevault.signing")


@dataclass(frozen=True)
class FileRef:
    warehouse_id: str
    filename: str


@dataclass(frozen=True)
class Capability:
    """A minted, immutable download grant. Never persisted."""

    warehouse_id: str
    filename: str
    expires_at: int
    signature: str

    @property
    def file_ref(self) -> FileRef:
        return FileRef(self.warehouse_id, self.filename)

    def to_url(self) -> str:
        path = f"{CAPABILITY_PATH_PREFIX}{quote(self.warehouse_id, safe=_PATH_SAFE_CHARS)}/"
        path += quote(self.filename, safe=_PATH_SAFE_CHARS)
        return f"{path}?expires={self.expires_at}&signature={self.signature}"


def canonical_string(warehouse_id: str, filename: str, expires_at: int) -> str:
    """Return the exact string covered by a capability signature."""

    return f"{warehouse_id}/{filename}?expires={int(expires_at)}"


def compute_signature(secret: Union[str, bytes], canonical: str) -> str:
    key = secret.encode("utf-8") if isinstance(secret, str) else secret
    return hmac.new(key, canonical.encode("utf-8"), hashlib.sha256).hexdigest()


def constant_time_equals(provided: str, expected: str) -> bool:
    """Compare two signature strings without leaking timing information.

    Length mismatches and undecodable input compare unequal instead of raising.
    """

    try:
        return compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
    except (AttributeError, TypeError, UnicodeError):
        return False


def clamp_ttl(ttl_seconds: int) -> int:
    return max(MIN_TTL_SECONDS, min(int(ttl_seconds), MAX_TTL_SECONDS))


def is_expired(expires_at: int, now: int) -> bool:
    return now > expires_at


def _first(query: Mapping, key: str) -> Optional[str]:
    value = query.get(key)
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    return value if isinstance(value, str) else None


def parse_capability(path: str, query: Mapping) -> Optional[Capability]:
    """Extract a capability from a request path and its query parameters.

    ``path`` is the decoded path that was actually requested. Returns ``None``
    for anything malformed.
    """

    if not isinstance(path, str) or not path.startswith(CAPABILITY_PATH_PREFIX):
        return None
    remainder = path[len(CAPABILITY_PATH_PREFIX):]
    warehouse_id, separator, filename = remainder.partition("/")
    if not warehouse_id or not separator or not filename:
        return None

    expires_raw = _first(query, "expires")
    signature = _first(query, "signature")
    if not expires_raw or not signature:
        return None
    if not _EXPIRES_PATTERN.match(expires_raw):
        return None
    if not _SIGNATURE_PATTERN.match(signature):
        return None

    return Capability(
        warehouse_id=warehouse_id,
        filename=filename,
        expires_at=int(expires_raw),
        signature=signature,
    )


class CapabilitySigner:
    """Mint and check capability URLs with a server-held secret."""

    def __init__(self, secret: Union[str, bytes]) -> None:
        if not secret:
            raise ValueError("A non-empty signing secret is required")
        self._secret = secret

    def sign(self, warehouse_id: str, filename: str, expires_at: int) -> str:
        return compute_signature(
            self._secret, canonical_string(warehouse_id, filename, expires_at)
        )

    def mint(self, file_ref: FileRef, ttl_seconds: int, now: int) -> Capability:
        expires_at = int(now) + clamp_ttl(ttl_seconds)
        return Capability(
            warehouse_id=file_ref.warehouse_id,
            filename=file_ref.filename,
            expires_at=expires_at,
            signature=self.sign(file_ref.warehouse_id, file_ref.filename, expires_at),
        )

    def issue(self, file_ref: FileRef, ttl_seconds: int, now: int) -> str:
        """Return a relative capability URL for ``file_ref``.

        ``ttl_seconds`` above the 24 hour ceiling is silently reduced to it.
        """

        return self.mint(file_ref, ttl_seconds, now).to_url()

    def verify_capability(self, capability: Optional[Capability], now: int) -> bool:
        if capability is None:
            return False
        if is_expired(capability.expires_at, now):
            logger.debug(
                "capability_expired warehouse_id=%s expires=%d now=%d",
                capability.warehouse_id,
                capability.expires_at,
                now,
            )
            return False
        expected = self.sign(
            capability.warehouse_id, capability.filename, capability.expires_at
        )
        return constant_time_equals(capability.signature, expected)

    def verify(self, url_or_path: str, now: int) -> bool:
        """Check a capability URL (absolute or relative). Never raises."""

        try:
            parts = urlsplit(url_or_path)
            capability = parse_capability(unquote(parts.path), parse_qs(parts.query))
            return self.verify_capability(capability, now)
        except Exception:
            logger.debug("capability_unparseable", exc_info=True)
            return False
