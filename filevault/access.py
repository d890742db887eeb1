"""Per-request authorization decisions for warehouse files."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, FrozenSet, Iterable, Mapping, Optional

from .signing import CapabilitySigner, parse_capability

ADMIN_ROLES = frozenset({"admin", "superadmin"})
USER_ROLES = ("superadmin", "admin", "user")
API_KEY_ROLE = "apikey"


class DenyReason(str, Enum):
    BAD_OR_EXPIRED_SIGNATURE = "bad_or_expired_signature"
    NOT_VERIFIED = "not_verified"
    AUTH_REQUIRED = "auth_required"
    NOT_ENTITLED = "not_entitled"
    MALFORMED_CAPABILITY_INPUT = "malformed_capability_input"
    FILE_NOT_FOUND = "file_not_found"

    @property
    def status_code(self) -> int:
        return _STATUS_CODES.get(self, 403)

    @property
    def message(self) -> str:
        return _MESSAGES[self]


_STATUS_CODES = {
    DenyReason.AUTH_REQUIRED: 401,
    DenyReason.MALFORMED_CAPABILITY_INPUT: 400,
    DenyReason.FILE_NOT_FOUND: 404,
}

_MESSAGES = {
    DenyReason.BAD_OR_EXPIRED_SIGNATURE: "Invalid or expired signature",
    DenyReason.NOT_VERIFIED: "File not verified",
    DenyReason.AUTH_REQUIRED: "Authentication required",
    DenyReason.NOT_ENTITLED: "Access denied: You do not have permission to access this warehouse",
    DenyReason.MALFORMED_CAPABILITY_INPUT: "Malformed request",
    DenyReason.FILE_NOT_FOUND: "File not found",
}


@dataclass(frozen=True)
class FileAccessState:
    is_verified: bool


@dataclass(frozen=True)
class Identity:
    """An authenticated caller, resolved from a session or an API key."""

    subject_id: str
    role: str
    entitled_warehouse_ids: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def build(cls, subject_id: str, role: str, warehouse_ids: Iterable[str] = ()) -> "Identity":
        return cls(subject_id, role, frozenset(w for w in warehouse_ids if w))

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    def can_access(self, warehouse_id: str) -> bool:
        return self.is_admin or warehouse_id in self.entitled_warehouse_ids


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: Optional[DenyReason] = None
    via: Optional[str] = None

    @classmethod
    def allow(cls, via: str) -> "AccessDecision":
        return cls(True, None, via)

    @classmethod
    def deny(cls, reason: DenyReason) -> "AccessDecision":
        return cls(False, reason, None)

    @property
    def status_code(self) -> int:
        return 200 if self.allowed else self.reason.status_code

    def to_payload(self) -> dict:
        return {"error": self.reason.message} if self.reason else {}


def check_entitlement(identity: Optional[Identity], warehouse_id: str) -> AccessDecision:
    """Decide whether ``identity`` may act on ``warehouse_id``."""

    if identity is None:
        return AccessDecision.deny(DenyReason.AUTH_REQUIRED)
    if identity.is_admin:
        return AccessDecision.allow("admin")
    if warehouse_id in identity.entitled_warehouse_ids:
        return AccessDecision.allow("entitlement")
    return AccessDecision.deny(DenyReason.NOT_ENTITLED)


def has_signature(query: Mapping) -> bool:
    return "signature" in query


def decide_file_access(
    *,
    warehouse_id: str,
    path: str,
    query: Mapping,
    file_state: FileAccessState,
    signer: CapabilitySigner,
    resolve_identity: Callable[[], Optional[Identity]],
    now: int,
) -> AccessDecision:
    """Run the file fetch gate for a single request.

    A present ``signature`` parameter routes the request exclusively through
    capability verification: a valid capability is allowed regardless of the
    file's verification status or the caller's identity, and an invalid one is
    denied without falling back to other credentials. Without a signature,
    unverified files are never served, and the caller's identity is resolved
    only after that check.
    """

    if has_signature(query):
        capability = parse_capability(path, query)
        if capability is not None and capability.warehouse_id != warehouse_id:
            capability = None
        if signer.verify_capability(capability, now):
            return AccessDecision.allow("signature")
        return AccessDecision.deny(DenyReason.BAD_OR_EXPIRED_SIGNATURE)

    if not file_state.is_verified:
        return AccessDecision.deny(DenyReason.NOT_VERIFIED)

    return check_entitlement(resolve_identity(), warehouse_id)
