import logging
import mimetypes
import os
import re
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import wraps
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple
from urllib.parse import urlparse

from itsdangerous import BadSignature, URLSafeSerializer

from flask import (
    Flask,
    Response,
    g,
    has_request_context,
    jsonify,
    make_response,
    request,
    send_file,
    session,
)
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.datastructures import FileStorage
from werkzeug.security import check_password_hash, generate_password_hash
from werkzeug.utils import secure_filename

from .access import (
    API_KEY_ROLE,
    USER_ROLES,
    DenyReason,
    FileAccessState,
    Identity,
    check_entitlement,
    decide_file_access,
)
from .signing import DEFAULT_TTL_SECONDS, CapabilitySigner, FileRef
from .storage import (
    DATA_DIR,
    LOGS_DIR,
    UPLOADS_DIR,
    count_users,
    create_api_key,
    create_user,
    create_warehouse,
    delete_file,
    delete_user,
    delete_warehouse,
    ensure_directories,
    find_api_key,
    get_config_mtime,
    get_db,
    get_file,
    get_file_by_key,
    get_storage_path,
    get_storage_statistics,
    get_user,
    get_user_by_email,
    get_user_warehouse_ids,
    get_warehouse,
    list_api_keys,
    list_files,
    list_users,
    list_warehouses,
    load_config,
    prune_empty_upload_dirs,
    register_file,
    set_file_verification,
    update_user,
    warehouses_exist,
)

_CONFIG_CACHE: Dict[str, Any] = load_config()
_CONFIG_CACHE_MTIME: float = get_config_mtime()

CHUNK_SIZE_BYTES = 1024 * 1024  # 1 MB chunks for streaming
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB max log file size
LOG_FILE_BACKUP_COUNT = 3  # Number of log file backups to keep
BYTES_PER_MB = 1024 * 1024
PASSWORD_MIN_LENGTH = 8
SESSION_LIFETIME = timedelta(hours=8)

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, LOG_LEVEL, logging.INFO)
logging.basicConfig(
    level=numeric_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

MAX_FILENAME_LENGTH = int(os.environ.get("FILEVAULT_MAX_FILENAME_LENGTH", "255"))
_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f\n\r]")


def _write_secret_file(path: Path, value: str, flags: int) -> None:
    fd = os.open(path, flags, 0o600)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(value)
            handle.flush()
            os.fsync(handle.fileno())
    except Exception:
        try:
            os.close(fd)
        except OSError:
            pass
        raise


def _load_secret(env_keys: Iterable[str], file_name: str) -> str:
    """Return a process-stable secret from the environment or the data directory.

    When none of *env_keys* is set, a random secret is generated once and
    persisted with owner-only permissions so restarts keep issued cookies and
    capability URLs valid.
    """

    for env_key in env_keys:
        env_secret = os.environ.get(env_key)
        if env_secret:
            return env_secret

    config_logger = logging.getLogger("filevault.config")
    secret_path = DATA_DIR / file_name
    try:
        ensure_directories()
        try:
            # Exclusive creation so concurrent workers agree on one secret.
            generated = secrets.token_hex(32)
            _write_secret_file(secret_path, generated, os.O_WRONLY | os.O_CREAT | os.O_EXCL)
            config_logger.warning("Generated new secret - stored in %s", secret_path)
            return generated
        except FileExistsError:
            existing = secret_path.read_text(encoding="utf-8").strip()
            if existing:
                return existing
            config_logger.warning("Secret file %s exists but is empty, regenerating", secret_path)
            generated = secrets.token_hex(32)
            _write_secret_file(secret_path, generated, os.O_WRONLY | os.O_TRUNC)
            return generated
    except OSError as error:
        config_logger.critical(
            "SECURITY WARNING: Using in-memory secret for %s. Values signed with it will not "
            "survive a restart. Set %s for production use. Error: %s",
            file_name,
            " or ".join(env_keys),
            error,
        )
        return secrets.token_hex(32)


_SESSION_SECRET: Optional[str] = None
_HMAC_SECRET: Optional[str] = None
_capability_signer: Optional[CapabilitySigner] = None
_api_key_serializer: Optional[URLSafeSerializer] = None


def get_session_secret() -> str:
    global _SESSION_SECRET
    if _SESSION_SECRET is None:
        _SESSION_SECRET = _load_secret(("SECRET_KEY",), ".secret_key")
    return _SESSION_SECRET


def get_capability_signer() -> CapabilitySigner:
    """Return the signer holding the capability HMAC secret for this process."""

    global _HMAC_SECRET, _capability_signer
    if _capability_signer is None:
        _HMAC_SECRET = _load_secret(("FILEVAULT_HMAC_SECRET", "HMAC_SECRET"), ".hmac_secret")
        _capability_signer = CapabilitySigner(_HMAC_SECRET)
    return _capability_signer


def _get_api_key_serializer() -> URLSafeSerializer:
    global _api_key_serializer
    if _api_key_serializer is None:
        _api_key_serializer = URLSafeSerializer(get_session_secret(), salt="api-key")
    return _api_key_serializer


def _encrypt_api_key(value: str) -> str:
    return _get_api_key_serializer().dumps(value)


def _decrypt_api_key(token: str) -> Optional[str]:
    if not token:
        return None
    try:
        return _get_api_key_serializer().loads(token)
    except (BadSignature, ValueError):
        return None


def sanitize_log_value(value: Any) -> Any:
    """Remove control characters from log values to prevent log injection."""

    if isinstance(value, str):
        escaped = value.replace("\n", "\\n").replace("\r", "\\r")
        return _CONTROL_CHAR_PATTERN.sub(
            lambda match: f"\\x{ord(match.group()):02x}", escaped
        )
    return value


def blocked_extensions() -> Set[str]:
    """Return the configured set of blocked file extensions."""

    raw_value = os.environ.get("FILEVAULT_BLOCKED_EXTENSIONS", "")
    return {
        entry.strip().lower().lstrip(".")
        for entry in raw_value.split(",")
        if entry.strip()
    }


def validate_filename(filename: str) -> Tuple[bool, Optional[str]]:
    """Validate filenames for length and disallowed characters."""

    if not filename:
        return False, "Filename cannot be empty"

    if len(filename) > MAX_FILENAME_LENGTH:
        return (
            False,
            f"Filename exceeds maximum length of {MAX_FILENAME_LENGTH} characters",
        )

    if "\x00" in filename:
        return False, "Filename contains invalid characters"

    blocked = blocked_extensions()
    if blocked:
        extension = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
        if extension and extension in blocked:
            return False, f"File extension '.{extension}' is not allowed"

    return True, None


def is_dangerous_content_type(content_type: Optional[str]) -> bool:
    """Check if content type is potentially dangerous (executable content)."""

    if not content_type:
        return False

    content_type_lower = content_type.lower().split(";")[0].strip()
    dangerous_types = {
        "application/x-executable",
        "application/x-msdownload",
        "application/x-msdos-program",
        "application/x-sh",
        "application/x-csh",
        "application/x-bat",
        "application/vnd.microsoft.portable-executable",
        "application/x-sharedlib",
        "application/x-elf",
        "application/x-dosexec",
    }
    return content_type_lower in dangerous_types


def validate_password_strength(password: str) -> Tuple[bool, Optional[str]]:
    if not password:
        return False, "Password cannot be empty"
    if len(password) < PASSWORD_MIN_LENGTH:
        return False, f"Password must be at least {PASSWORD_MIN_LENGTH} characters long"
    if not any(c.isalpha() for c in password) or not any(c.isdigit() for c in password):
        return False, "Password must contain both letters and numbers"
    return True, None


class AmbiguousAPIKeyError(Exception):
    """Raised when multiple API keys are provided in a single request."""


class SignedUrlRequestError(ValueError):
    """Raised when a signed URL request body fails validation."""

    reason = DenyReason.MALFORMED_CAPABILITY_INPUT

    def to_payload(self) -> dict:
        return {"error": str(self)}


@dataclass(frozen=True)
class SignedUrlRequest:
    warehouse_id: str
    filename: str
    ttl_seconds: int

    @property
    def file_ref(self) -> FileRef:
        return FileRef(self.warehouse_id, self.filename)

    @classmethod
    def from_payload(cls, payload: Any) -> "SignedUrlRequest":
        """Validate a JSON request body once at the HTTP boundary.

        ``ttlSeconds`` is preferred; ``expiresIn`` is accepted for older
        clients. The TTL is clamped when the capability is minted, not here.
        """

        if not isinstance(payload, dict):
            raise SignedUrlRequestError("Request body must be a JSON object")

        warehouse_id = payload.get("warehouseId")
        filename = payload.get("filename")
        if not isinstance(warehouse_id, str) or not warehouse_id.strip():
            raise SignedUrlRequestError("Warehouse ID and filename required")
        if not isinstance(filename, str) or not filename.strip():
            raise SignedUrlRequestError("Warehouse ID and filename required")

        raw_ttl = payload.get("ttlSeconds")
        if raw_ttl is None:
            raw_ttl = payload.get("expiresIn")
        if raw_ttl is None:
            ttl_seconds = DEFAULT_TTL_SECONDS
        elif isinstance(raw_ttl, bool):
            raise SignedUrlRequestError("ttlSeconds must be an integer number of seconds")
        elif isinstance(raw_ttl, int):
            ttl_seconds = raw_ttl
        elif isinstance(raw_ttl, float) and raw_ttl.is_integer():
            ttl_seconds = int(raw_ttl)
        elif isinstance(raw_ttl, str) and re.fullmatch(r"-?\d{1,18}", raw_ttl.strip()):
            ttl_seconds = int(raw_ttl.strip())
        else:
            raise SignedUrlRequestError("ttlSeconds must be an integer number of seconds")

        return cls(warehouse_id.strip(), filename.strip(), ttl_seconds)


class RequestAwareLogger:
    """Logger wrapper that injects request IDs into log messages."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def _with_request(self, message: str) -> str:
        if has_request_context():
            request_id = getattr(g, "request_id", None)
            if request_id:
                return f"request_id={request_id} {message}"
        return message

    def debug(self, msg: str, *args, **kwargs) -> None:
        self._logger.debug(self._with_request(msg), *args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        self._logger.info(self._with_request(msg), *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._logger.warning(self._with_request(msg), *args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self._logger.error(self._with_request(msg), *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs) -> None:
        self._logger.exception(self._with_request(msg), *args, **kwargs)

    def __getattr__(self, name: str):  # pragma: no cover - passthrough
        return getattr(self._logger, name)


def _configure_file_logging() -> Path:
    """Attach a rotating file handler for application and lifecycle logs."""

    ensure_directories()
    LOGS_DIR.mkdir(parents=True, exist_ok=True)
    log_path = LOGS_DIR / "application.log"
    root_logger = logging.getLogger()
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    for handler in root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and getattr(handler, "baseFilename", "") == str(log_path):
            handler.setLevel(numeric_level)
            handler.setFormatter(formatter)
            return log_path

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)
    return log_path


APP_LOG_PATH = _configure_file_logging()


def _coerce_positive_int(value: Any, fallback: int) -> int:
    try:
        coerced = int(float(value))
    except (TypeError, ValueError):
        return fallback
    return coerced if coerced > 0 else fallback


def get_config(refresh: bool = False) -> Dict[str, Any]:
    global _CONFIG_CACHE, _CONFIG_CACHE_MTIME
    current_mtime = get_config_mtime()
    if refresh or current_mtime > _CONFIG_CACHE_MTIME:
        _CONFIG_CACHE = load_config()
        _CONFIG_CACHE_MTIME = current_mtime
    return _CONFIG_CACHE.copy()


def _get_optional_bool_env(env_key: str) -> Optional[bool]:
    raw_value = os.environ.get(env_key)
    if raw_value is None:
        return None
    normalized = raw_value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return None


def auth_rate_limit_string() -> str:
    value = _coerce_positive_int(get_config().get("auth_rate_limit_per_minute"), 1000)
    return f"{value} per minute"


def upload_rate_limit_string() -> str:
    value = _coerce_positive_int(get_config().get("upload_rate_limit_per_hour"), 10000)
    return f"{value} per hour"


def download_rate_limit_string() -> str:
    value = _coerce_positive_int(get_config().get("download_rate_limit_per_minute"), 10000)
    return f"{value} per minute"


def admin_rate_limit_string() -> str:
    value = _coerce_positive_int(get_config().get("admin_rate_limit_per_minute"), 500)
    return f"{value} per minute"


app = Flask(__name__)

# Rate limit counters live in an injected backend (memory:// by default,
# redis:// or memcached:// in multi-process deployments).
limiter = Limiter(
    app=app,
    key_func=get_remote_address,
    storage_uri=os.environ.get("FILEVAULT_RATE_LIMIT_STORAGE", "memory://"),
)

app.config["MAX_CONTENT_LENGTH"] = int(
    _coerce_positive_int(_CONFIG_CACHE.get("max_upload_size_mb"), 500) * BYTES_PER_MB
)
app.config["SECRET_KEY"] = get_session_secret()
_session_cookie_secure_override = _get_optional_bool_env("SESSION_COOKIE_SECURE")
if _session_cookie_secure_override is None:
    app.config["SESSION_COOKIE_SECURE"] = not app.config.get("TESTING", False)
else:
    app.config["SESSION_COOKIE_SECURE"] = _session_cookie_secure_override

if not app.config["SESSION_COOKIE_SECURE"]:
    logging.getLogger("filevault.security").warning(
        "SECURITY WARNING: SESSION_COOKIE_SECURE is disabled. "
        "Session cookies will be transmitted over unencrypted HTTP connections."
    )

app.config["SESSION_COOKIE_HTTPONLY"] = True
app.config["SESSION_COOKIE_SAMESITE"] = "Lax"
app.config["PERMANENT_SESSION_LIFETIME"] = SESSION_LIFETIME
app.config["SAME_ORIGIN_CHECK_ENABLED"] = True
app.logger.setLevel(numeric_level)

_base_lifecycle_logger = logging.getLogger("filevault.lifecycle")
_base_lifecycle_logger.setLevel(numeric_level)
lifecycle_logger = RequestAwareLogger(_base_lifecycle_logger)
security_logger = RequestAwareLogger(logging.getLogger("filevault.security"))


def current_epoch_seconds() -> int:
    return int(time.time())


def isoformat_utc(timestamp: Optional[float]) -> Optional[str]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat().replace(
        "+00:00", "Z"
    )


# Identity resolution --------------------------------------------------------


def _extract_api_key_from_request() -> Optional[str]:
    candidates: List[str] = []

    header_key = request.headers.get("X-API-Key")
    if header_key:
        candidates.append(header_key.strip())

    authorization = request.headers.get("Authorization", "").strip()
    if authorization.lower().startswith("bearer "):
        candidates.append(authorization[7:].strip())
    elif authorization.lower().startswith("token "):
        candidates.append(authorization[6:].strip())

    unique = {candidate for candidate in candidates if candidate}
    if len(unique) > 1:
        raise AmbiguousAPIKeyError("Multiple API keys provided")
    return next(iter(unique)) if unique else None


def _identity_from_api_key(raw_key: str) -> Optional[Identity]:
    record = find_api_key(raw_key)
    if record is None:
        security_logger.warning(
            "api_key_rejected path=%s ip=%s",
            sanitize_log_value(request.path),
            request.remote_addr or "unknown",
        )
        return None
    return Identity.build(f"apikey:{record['id']}", API_KEY_ROLE, [record["warehouse_id"]])


def _identity_from_session() -> Optional[Identity]:
    user_id = session.get("user_id")
    if not user_id:
        return None
    user = get_user(user_id)
    if user is None:
        # The account was removed after the cookie was issued.
        session.clear()
        return None
    return Identity.build(user["id"], user["role"], get_user_warehouse_ids(user["id"]))


def resolve_request_identity() -> Optional[Identity]:
    """Resolve the caller from an API key, or from the session cookie if none is sent.

    The result is memoized on ``g`` for the rest of the request.
    """

    if "identity" in g:
        return g.identity

    raw_key = _extract_api_key_from_request()
    if raw_key:
        identity = _identity_from_api_key(raw_key)
        g.api_key_authenticated = identity is not None
    else:
        identity = _identity_from_session()
        g.api_key_authenticated = False
    g.identity = identity
    return identity


def _deny(reason: DenyReason, message: Optional[str] = None) -> Response:
    return make_response(jsonify({"error": message or reason.message}), reason.status_code)


def require_identity(view: Callable):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if resolve_request_identity() is None:
            return _deny(DenyReason.AUTH_REQUIRED)
        return view(*args, **kwargs)

    return wrapped


def require_admin(view: Callable):
    """Allow only session users with an admin role."""

    @wraps(view)
    def wrapped(*args, **kwargs):
        identity = resolve_request_identity()
        if identity is None:
            return _deny(DenyReason.AUTH_REQUIRED, "Not authenticated")
        if not identity.is_admin:
            return _deny(DenyReason.NOT_ENTITLED, "Forbidden")
        return view(*args, **kwargs)

    return wrapped


def _parse_origin(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    if value.strip().lower() == "null":
        return None
    parsed = urlparse(value)
    if not parsed.scheme or not parsed.netloc:
        return None
    return f"{parsed.scheme.lower()}://{parsed.netloc.lower()}"


def ensure_same_origin() -> Optional[Response]:
    """Reject cross-site state changes that ride on the session cookie."""

    if not app.config.get("SAME_ORIGIN_CHECK_ENABLED", True):
        return None
    if getattr(g, "api_key_authenticated", False):
        return None

    allowed_origin = _parse_origin(request.host_url)
    origin = _parse_origin(request.headers.get("Origin"))
    referer = _parse_origin(request.headers.get("Referer"))

    if not origin and not referer:
        security_logger.warning(
            "csrf_blocked_missing_headers path=%s", sanitize_log_value(request.path)
        )
        return make_response(
            jsonify({"error": "Missing Origin or Referer header for CSRF protection"}), 403
        )

    for candidate in (origin, referer):
        if candidate and candidate != allowed_origin:
            security_logger.warning(
                "csrf_blocked origin=%s path=%s",
                sanitize_log_value(candidate),
                sanitize_log_value(request.path),
            )
            return make_response(jsonify({"error": "Cross-site requests are not allowed"}), 403)

    return None


def same_origin_required(view: Callable):
    @wraps(view)
    def wrapped(*args, **kwargs):
        resolve_request_identity()
        rejection = ensure_same_origin()
        if rejection is not None:
            return rejection
        return view(*args, **kwargs)

    return wrapped


# Serializers ----------------------------------------------------------------


def file_to_payload(record) -> Dict[str, Any]:
    return {
        "id": record["id"],
        "warehouseId": record["warehouse_id"],
        "filename": record["filename"],
        "originalName": record["original_name"],
        "uploadedAt": isoformat_utc(record["uploaded_at"]),
        "uploader": record["uploader"],
        "size": record["size"],
        "mimeType": record["mime_type"],
        "isVerified": bool(record["is_verified"]),
        "verifiedBy": record["verified_by"],
        "verifiedAt": isoformat_utc(record["verified_at"]),
        "url": f"/api/files/{record['warehouse_id']}/{record['filename']}",
    }


def user_to_payload(record, warehouse_ids: Optional[List[str]] = None) -> Dict[str, Any]:
    if warehouse_ids is None:
        warehouse_ids = get_user_warehouse_ids(record["id"])
    return {
        "id": record["id"],
        "email": record["email"],
        "role": record["role"],
        "name": record["name"],
        "warehouseIds": warehouse_ids,
        "createdAt": isoformat_utc(record["created_at"]),
    }


def warehouse_to_payload(record) -> Dict[str, Any]:
    return {
        "id": record["id"],
        "name": record["name"],
        "notes": record["notes"],
        "createdAt": isoformat_utc(record["created_at"]),
    }


# Request hooks ----------------------------------------------------------------


@app.before_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@app.after_request
def log_request_completion(response: Response):
    # Only the path is logged; query strings may carry capability signatures.
    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
    )
    return response


@app.after_request
def add_security_headers(response: Response):
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    # Capability URLs must not leak to third parties through the Referer header.
    response.headers["Referrer-Policy"] = "no-referrer"
    response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@app.errorhandler(AmbiguousAPIKeyError)
def handle_ambiguous_api_key(error):
    security_logger.warning(
        "api_auth_ambiguous_keys endpoint=%s method=%s", request.endpoint, request.method
    )
    return jsonify({"error": "Multiple API keys provided"}), 400


@app.errorhandler(404)
def not_found(error):
    return jsonify({"error": "Not found"}), 404


@app.errorhandler(405)
def method_not_allowed(error):
    return jsonify({"error": "Method not allowed"}), 405


@app.errorhandler(413)
def handle_file_too_large(error):  # pragma: no cover - framework hook
    return jsonify({"error": "File too large"}), 413


@app.errorhandler(429)
def handle_rate_limit(error):  # pragma: no cover - framework hook
    description = getattr(error, "description", "Too many requests")
    return jsonify({"error": "Too many requests", "message": str(description)}), 429


@app.errorhandler(500)
def handle_internal_error(error):  # pragma: no cover - framework hook
    return jsonify({"error": "Internal server error"}), 500


# Routes -------------------------------------------------------------------------


@app.route("/health")
def health_check():
    checks: Dict[str, Any] = {}
    healthy = True

    try:
        with get_db() as conn:
            conn.execute("SELECT COUNT(*) FROM files").fetchone()
        checks["database"] = "ok"
        checks.update(get_storage_statistics())
    except Exception as error:
        checks["database"] = f"error: {str(error)[:100]}"
        healthy = False

    try:
        ensure_directories()
        probe_file = UPLOADS_DIR / f".health_check_{uuid.uuid4().hex}"
        probe_file.write_text("health_check", encoding="utf-8")
        probe_file.unlink(missing_ok=True)
        checks["uploads_writable"] = "ok"
    except Exception as error:
        checks["uploads_writable"] = f"error: {str(error)[:100]}"
        healthy = False

    return jsonify(
        {
            "status": "healthy" if healthy else "unhealthy",
            "timestamp": time.time(),
            "checks": checks,
        }
    ), (200 if healthy else 503)


@app.route("/api/auth/login", methods=["POST"])
@limiter.limit(lambda: auth_rate_limit_string())
def login():
    payload = request.get_json(silent=True) if request.is_json else None
    if isinstance(payload, dict):
        email = payload.get("email")
        password = payload.get("password")
    else:
        email = request.form.get("email")
        password = request.form.get("password")

    if not isinstance(email, str) or not isinstance(password, str) or not email or not password:
        return jsonify({"error": "Email and password required"}), 400

    user = get_user_by_email(email)
    if user is None or not check_password_hash(user["password_hash"], password):
        security_logger.warning("login_failed ip=%s", request.remote_addr or "unknown")
        return jsonify({"error": "Invalid credentials"}), 401

    session.clear()
    session.permanent = True
    session["user_id"] = user["id"]
    session["logged_in_at"] = time.time()
    lifecycle_logger.info("login_succeeded user_id=%s role=%s", user["id"], user["role"])
    return jsonify(user_to_payload(user))


@app.route("/api/auth/logout", methods=["POST"])
@limiter.limit(lambda: auth_rate_limit_string())
def logout():
    user_id = session.get("user_id")
    session.clear()
    if user_id:
        lifecycle_logger.info("logout user_id=%s", user_id)
    return jsonify({"success": True})


@app.route("/api/auth/me")
@limiter.limit(lambda: auth_rate_limit_string())
def current_user():
    user_id = session.get("user_id")
    user = get_user(user_id) if user_id else None
    if user is None:
        return jsonify({"error": "Not authenticated"}), 401
    return jsonify(user_to_payload(user))


@app.route("/api/signed-url", methods=["POST"])
@limiter.limit(lambda: download_rate_limit_string())
def issue_signed_url():
    try:
        signed_request = SignedUrlRequest.from_payload(request.get_json(silent=True))
    except SignedUrlRequestError as error:
        return jsonify(error.to_payload()), error.reason.status_code

    decision = check_entitlement(resolve_request_identity(), signed_request.warehouse_id)
    if not decision.allowed:
        lifecycle_logger.warning(
            "signed_url_denied warehouse_id=%s reason=%s",
            sanitize_log_value(signed_request.warehouse_id),
            decision.reason.value,
        )
        return jsonify(decision.to_payload()), decision.status_code

    record = get_file_by_key(signed_request.warehouse_id, signed_request.filename)
    if record is None:
        return _deny(DenyReason.FILE_NOT_FOUND)

    # Unverified files may be shared this way; the signed URL is their only fetch path.
    capability = get_capability_signer().mint(
        signed_request.file_ref, signed_request.ttl_seconds, current_epoch_seconds()
    )
    capability_url = capability.to_url()
    lifecycle_logger.info(
        "signed_url_issued file_id=%s expires=%d",
        record["id"],
        capability.expires_at,
    )
    return jsonify(
        {
            "capabilityUrl": capability_url,
            "signedUrl": capability_url,
            "expiresAt": capability.expires_at,
        }
    )


@app.route("/api/files/<warehouse_id>/<path:filename>")
@limiter.limit(lambda: download_rate_limit_string())
def serve_file(warehouse_id: str, filename: str):
    record = get_file_by_key(warehouse_id, filename)
    if record is None:
        lifecycle_logger.warning(
            "file_fetch_missing warehouse_id=%s filename=%s",
            sanitize_log_value(warehouse_id),
            sanitize_log_value(filename),
        )
        return _deny(DenyReason.FILE_NOT_FOUND)

    decision = decide_file_access(
        warehouse_id=warehouse_id,
        path=request.path,
        query=request.args,
        file_state=FileAccessState(is_verified=bool(record["is_verified"])),
        signer=get_capability_signer(),
        resolve_identity=resolve_request_identity,
        now=current_epoch_seconds(),
    )
    if not decision.allowed:
        lifecycle_logger.warning(
            "file_fetch_denied file_id=%s reason=%s",
            record["id"],
            decision.reason.value,
        )
        return jsonify(decision.to_payload()), decision.status_code

    try:
        file_path = get_storage_path(record["warehouse_id"], record["filename"])
    except ValueError:
        security_logger.error("file_fetch_unsafe_path file_id=%s", record["id"])
        return _deny(DenyReason.FILE_NOT_FOUND)

    lifecycle_logger.info("file_served file_id=%s via=%s", record["id"], decision.via)
    try:
        return send_file(
            file_path,
            mimetype=record["mime_type"] or "application/octet-stream",
            as_attachment=False,
            download_name=record["original_name"],
        )
    except FileNotFoundError:
        lifecycle_logger.warning(
            "file_fetch_missing_path file_id=%s", record["id"]
        )
        return _deny(DenyReason.FILE_NOT_FOUND)


def _split_folder(raw_folder: Optional[str]) -> List[str]:
    if not raw_folder:
        return []
    parts = [secure_filename(part) for part in raw_folder.replace("\\", "/").split("/")]
    return [part for part in parts if part]


def _resolve_original_name(upload_name: str, custom_name: Optional[str]) -> str:
    if not custom_name:
        return upload_name
    extension = Path(upload_name).suffix
    if extension and not custom_name.endswith(extension):
        return f"{custom_name}{extension}"
    return custom_name


def _store_upload(upload: FileStorage, warehouse_id: str, object_key: str) -> int:
    """Stream *upload* to disk through a temporary file and return its size."""

    max_bytes = app.config.get("MAX_CONTENT_LENGTH")
    destination_path = get_storage_path(warehouse_id, object_key, ensure_parent=True)
    temp_path = destination_path.with_name(f"{destination_path.name}.tmp")
    written = 0
    try:
        with temp_path.open("wb") as destination:
            while True:
                chunk = upload.stream.read(CHUNK_SIZE_BYTES)
                if not chunk:
                    break
                if max_bytes and written + len(chunk) > max_bytes:
                    raise ValueError("File too large")
                destination.write(chunk)
                written += len(chunk)
        temp_path.replace(destination_path)
    except Exception:
        temp_path.unlink(missing_ok=True)
        prune_empty_upload_dirs(temp_path.parent)
        raise
    finally:
        upload.close()
    return written


@app.route("/api/upload", methods=["POST"])
@limiter.limit(lambda: upload_rate_limit_string())
@require_identity
@same_origin_required
def upload_files():
    identity: Identity = g.identity
    uploads = [
        upload
        for upload in request.files.getlist("file")
        if isinstance(upload, FileStorage) and upload.filename
    ]
    if not uploads:
        return jsonify({"error": "No files uploaded"}), 400

    warehouse_id = (request.form.get("warehouseId") or "").strip()
    if not warehouse_id:
        return jsonify({"error": "Warehouse ID is required"}), 400

    decision = check_entitlement(identity, warehouse_id)
    if not decision.allowed:
        return jsonify({"error": "You do not have access to this warehouse"}), decision.status_code
    if get_warehouse(warehouse_id) is None:
        return jsonify({"error": "Warehouse not found"}), 404

    folder_parts = _split_folder(request.form.get("folder"))
    custom_names = request.form.getlist("originalName")
    uploader = identity.subject_id

    results: List[Dict[str, Any]] = []
    failures: List[Dict[str, str]] = []
    for index, upload in enumerate(uploads):
        safe_name = secure_filename(upload.filename)
        is_valid, name_error = validate_filename(safe_name)
        if not is_valid:
            failures.append(
                {
                    "filename": upload.filename,
                    "reason": "invalid_filename",
                    "detail": name_error or "Invalid filename",
                }
            )
            continue
        if is_dangerous_content_type(upload.content_type):
            lifecycle_logger.warning(
                "upload_blocked_dangerous_content filename=%s content_type=%s",
                sanitize_log_value(safe_name),
                sanitize_log_value(upload.content_type),
            )
            failures.append(
                {
                    "filename": safe_name,
                    "reason": "dangerous_content_type",
                    "detail": f"Executable content type '{upload.content_type}' is not allowed",
                }
            )
            continue

        stored_name = f"{int(time.time() * 1000)}-{secrets.randbelow(10000)}-{safe_name}"
        object_key = "/".join(folder_parts + [stored_name])
        try:
            size = _store_upload(upload, warehouse_id, object_key)
        except ValueError:
            failures.append({"filename": safe_name, "reason": "too_large"})
            continue
        except OSError as error:
            lifecycle_logger.exception(
                "upload_write_failed warehouse_id=%s error=%s",
                warehouse_id,
                sanitize_log_value(str(error)),
            )
            failures.append({"filename": safe_name, "reason": "storage_error"})
            continue

        custom_name = custom_names[index] if index < len(custom_names) else None
        mime_type = upload.mimetype or mimetypes.guess_type(safe_name)[0]
        try:
            record = register_file(
                warehouse_id=warehouse_id,
                filename=object_key,
                original_name=_resolve_original_name(upload.filename, custom_name),
                uploader=uploader,
                size=size,
                mime_type=mime_type,
                is_verified=True,
                verified_by="system",
            )
        except Exception:
            path = get_storage_path(warehouse_id, object_key)
            path.unlink(missing_ok=True)
            prune_empty_upload_dirs(path.parent)
            raise
        results.append(file_to_payload(record))

    lifecycle_logger.info(
        "upload_completed warehouse_id=%s stored=%d failed=%d",
        warehouse_id,
        len(results),
        len(failures),
    )
    if not results:
        status = 413 if any(f["reason"] == "too_large" for f in failures) else 400
        return jsonify({"error": "Failed to upload files", "errors": failures}), status

    response: Dict[str, Any] = {"success": True, "files": results, "count": len(results)}
    if failures:
        response["errors"] = failures
    return jsonify(response), 201


@app.route("/api/user/files")
@limiter.limit(lambda: download_rate_limit_string())
@require_identity
def user_files():
    identity: Identity = g.identity
    warehouse_ids = None if identity.is_admin else identity.entitled_warehouse_ids
    return jsonify({"files": [file_to_payload(r) for r in list_files(warehouse_ids)]})


@app.route("/api/user/warehouses")
@limiter.limit(lambda: admin_rate_limit_string())
@require_identity
def user_warehouses():
    identity: Identity = g.identity
    warehouse_ids = None if identity.is_admin else identity.entitled_warehouse_ids
    return jsonify(
        {"warehouses": [warehouse_to_payload(r) for r in list_warehouses(warehouse_ids)]}
    )


@app.route("/api/user/files/<file_id>", methods=["DELETE"])
@limiter.limit(lambda: download_rate_limit_string())
@require_identity
@same_origin_required
def user_delete_file(file_id: str):
    identity: Identity = g.identity
    record = get_file(file_id)
    if record is None:
        return _deny(DenyReason.FILE_NOT_FOUND)

    if not identity.can_access(record["warehouse_id"]):
        return jsonify({"error": "Forbidden: You do not have access to this warehouse"}), 403
    if not identity.is_admin and record["uploader"] != identity.subject_id:
        return jsonify({"error": "Forbidden: You can only delete files you uploaded"}), 403

    if not delete_file(file_id):
        return jsonify({"error": "Failed to delete file"}), 500
    lifecycle_logger.info("file_deleted_by_user file_id=%s by=%s", file_id, identity.subject_id)
    return jsonify({"success": True})


# Administration -------------------------------------------------------------------


@app.route("/api/admin/warehouses", methods=["GET"])
@limiter.limit(lambda: admin_rate_limit_string())
@require_admin
def admin_list_warehouses():
    return jsonify({"warehouses": [warehouse_to_payload(r) for r in list_warehouses()]})


@app.route("/api/admin/warehouses", methods=["POST"])
@limiter.limit(lambda: admin_rate_limit_string())
@require_admin
@same_origin_required
def admin_create_warehouse():
    payload = request.get_json(silent=True) or {}
    name = payload.get("warehouseName") if isinstance(payload, dict) else None
    if not isinstance(name, str) or not name.strip():
        return jsonify({"error": "Warehouse name required"}), 400
    notes = payload.get("notes")

    warehouse = create_warehouse(name, notes if isinstance(notes, str) else None)
    raw_key = secrets.token_hex(32)
    create_api_key(warehouse["id"], raw_key, _encrypt_api_key(raw_key))
    lifecycle_logger.info(
        "warehouse_created_with_key warehouse_id=%s by=%s", warehouse["id"], g.identity.subject_id
    )
    return jsonify(
        {
            "success": True,
            "warehouse": warehouse_to_payload(warehouse),
            "apiKey": raw_key,
            "downloadBase": f"/api/files/{warehouse['id']}/",
        }
    ), 201


@app.route("/api/admin/warehouses/<warehouse_id>", methods=["DELETE"])
@limiter.limit(lambda: admin_rate_limit_string())
@require_admin
@same_origin_required
def admin_delete_warehouse(warehouse_id: str):
    if not delete_warehouse(warehouse_id):
        return jsonify({"error": "Warehouse not found"}), 404
    return jsonify({"success": True})


@app.route("/api/admin/api-keys")
@limiter.limit(lambda: admin_rate_limit_string())
@require_admin
def admin_list_api_keys():
    keys = []
    for row in list_api_keys():
        keys.append(
            {
                "id": row["id"],
                "key": _decrypt_api_key(row["key_encrypted"]),
                "warehouseId": row["warehouse_id"],
                "warehouseName": row["warehouse_name"] or "Unknown",
                "createdAt": isoformat_utc(row["created_at"]),
                "lastUsed": isoformat_utc(row["last_used_at"]),
            }
        )
    return jsonify({"apis": keys})


@app.route("/api/admin/files")
@limiter.limit(lambda: admin_rate_limit_string())
@require_admin
def admin_list_files():
    return jsonify({"files": [file_to_payload(r) for r in list_files()]})


@app.route("/api/admin/verify-file", methods=["POST"])
@limiter.limit(lambda: admin_rate_limit_string())
@require_admin
@same_origin_required
def admin_verify_file():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict) or not payload.get("fileId"):
        return jsonify({"error": "File ID required"}), 400
    is_verified = payload.get("isVerified", True)
    if not isinstance(is_verified, bool):
        return jsonify({"error": "isVerified must be a boolean"}), 400

    record = set_file_verification(str(payload["fileId"]), is_verified, g.identity.subject_id)
    if record is None:
        return _deny(DenyReason.FILE_NOT_FOUND)
    return jsonify({"success": True, "file": file_to_payload(record)})


@app.route("/api/admin/users", methods=["GET"])
@limiter.limit(lambda: admin_rate_limit_string())
@require_admin
def admin_list_users():
    return jsonify({"users": [user_to_payload(r) for r in list_users()]})


def _parse_warehouse_ids(value: Any) -> Optional[List[str]]:
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValueError("warehouseIds must be a list of strings")
    return list(dict.fromkeys(item.strip() for item in value if item.strip()))


@app.route("/api/admin/users", methods=["POST"])
@limiter.limit(lambda: admin_rate_limit_string())
@require_admin
@same_origin_required
def admin_create_user():
    actor: Identity = g.identity
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return jsonify({"error": "Email and password are required"}), 400

    email = payload.get("email")
    password = payload.get("password")
    role = payload.get("role") or "user"
    if not isinstance(email, str) or not email.strip() or not isinstance(password, str) or not password:
        return jsonify({"error": "Email and password are required"}), 400
    if role not in USER_ROLES or role == "superadmin":
        return jsonify({"error": "Invalid role"}), 400
    if role == "admin" and actor.role != "superadmin":
        return jsonify({"error": "Only superadmins can create admin users"}), 403

    is_valid, password_error = validate_password_strength(password)
    if not is_valid:
        return jsonify({"error": password_error}), 400
    if get_user_by_email(email) is not None:
        return jsonify({"error": "User with this email already exists"}), 400

    try:
        warehouse_ids = _parse_warehouse_ids(payload.get("warehouseIds")) or []
    except ValueError as error:
        return jsonify({"error": str(error)}), 400
    if not warehouses_exist(warehouse_ids):
        return jsonify({"error": "One or more warehouses not found"}), 400

    name = payload.get("name")
    user = create_user(
        email=email,
        password_hash=generate_password_hash(password),
        role=role,
        name=name if isinstance(name, str) else None,
        warehouse_ids=warehouse_ids,
    )
    return jsonify({"success": True, "user": user_to_payload(user)}), 201


@app.route("/api/admin/users/<user_id>", methods=["PUT"])
@limiter.limit(lambda: admin_rate_limit_string())
@require_admin
@same_origin_required
def admin_update_user(user_id: str):
    actor: Identity = g.identity
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return jsonify({"error": "Request body must be a JSON object"}), 400

    target = get_user(user_id)
    if target is None:
        return jsonify({"error": "User not found"}), 404
    if target["role"] == "superadmin":
        return jsonify({"error": "Cannot update superadmin users"}), 403
    if target["role"] == "admin" and actor.role != "superadmin":
        return jsonify({"error": "Only superadmins can update admin users"}), 403

    role = payload.get("role")
    if role is not None and (role not in USER_ROLES or role == "superadmin"):
        return jsonify({"error": "Invalid role"}), 400
    if role == "admin" and target["role"] != "admin" and actor.role != "superadmin":
        return jsonify({"error": "Only superadmins can promote users to admin"}), 403

    try:
        warehouse_ids = _parse_warehouse_ids(payload.get("warehouseIds"))
    except ValueError as error:
        return jsonify({"error": str(error)}), 400
    if warehouse_ids and not warehouses_exist(warehouse_ids):
        return jsonify({"error": "One or more warehouses not found"}), 400

    password = payload.get("password")
    password_hash = None
    if password:
        is_valid, password_error = validate_password_strength(str(password))
        if not is_valid:
            return jsonify({"error": password_error}), 400
        password_hash = generate_password_hash(str(password))

    email = payload.get("email")
    if isinstance(email, str) and email.strip():
        existing = get_user_by_email(email)
        if existing is not None and existing["id"] != user_id:
            return jsonify({"error": "User with this email already exists"}), 400

    name = payload.get("name")
    updated = update_user(
        user_id,
        email=email if isinstance(email, str) else None,
        name=name if isinstance(name, str) else None,
        role=role,
        password_hash=password_hash,
        warehouse_ids=warehouse_ids,
    )
    lifecycle_logger.info("user_updated user_id=%s by=%s", user_id, actor.subject_id)
    return jsonify({"success": True, "user": user_to_payload(updated)})


@app.route("/api/admin/users/<user_id>", methods=["DELETE"])
@limiter.limit(lambda: admin_rate_limit_string())
@require_admin
@same_origin_required
def admin_delete_user(user_id: str):
    actor: Identity = g.identity
    target = get_user(user_id)
    if target is None:
        return jsonify({"error": "User not found"}), 404
    if target["role"] == "superadmin":
        return jsonify({"error": "Cannot delete superadmin users"}), 403
    if target["role"] == "admin" and actor.role != "superadmin":
        return jsonify({"error": "Only superadmins can delete admin users"}), 403

    delete_user(user_id)
    lifecycle_logger.info("user_deleted user_id=%s by=%s", user_id, actor.subject_id)
    return jsonify({"success": True})


def bootstrap_admin() -> None:
    """Create the initial superadmin from the environment when no users exist."""

    email = os.environ.get("FILEVAULT_ADMIN_EMAIL", "").strip()
    password = os.environ.get("FILEVAULT_ADMIN_PASSWORD", "")
    config_logger = logging.getLogger("filevault.config")
    if count_users() > 0:
        return
    if not email or not password:
        config_logger.warning(
            "No users exist. Set FILEVAULT_ADMIN_EMAIL and FILEVAULT_ADMIN_PASSWORD "
            "to create the initial superadmin."
        )
        return
    create_user(
        email=email,
        password_hash=generate_password_hash(password),
        role="superadmin",
        name="Administrator",
    )
    config_logger.info("Created initial superadmin account")


bootstrap_admin()


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", "8000")), debug=False)
