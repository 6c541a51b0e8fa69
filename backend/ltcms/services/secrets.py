"""Signing-key registry with startup entropy validation.

The two signing keys (bearer tokens and CSRF tokens) are written exactly once
per process after passing validation. Reading a key that was never written
raises ``SecretNotInitializedError``, which request handling never catches:
a misconfigured deployment must not quietly run with a weak or missing key.

Handlers do not read the registry directly. Startup builds a
``SecurityContext`` from it and the context travels with the application.
"""

import hashlib
import hmac
import logging
import string
import threading
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)

# Well-known placeholder values that end up in .env files and compose examples
PLACEHOLDER_SECRETS = (
    "CHANGE_ME_OR_APP_WILL_FAIL",
    "your-super-secret-jwt-key-min-32-chars-change-me-in-production",
    "PLEASE-SET-THIS-VIA-DOCKER-COMPOSE-ENV",
    "your-csrf-secret-min-32-chars-change-me-in-production",
    "change-me",
    "changeme",
    "secret",
    "your-secret-key",
    "replace-me",
)

BEARER_MIN_LENGTH = 43  # ~256 bits when base64 encoded
BEARER_MIN_CHAR_CLASSES = 3
CSRF_MIN_LENGTH = 32
MIN_UNIQUE_CHARS = 10

GENERATE_HINT = "Generate a fresh random secret (e.g. `openssl rand -base64 48`)."


class SecretProblem(str, Enum):
    MISSING = "missing"
    PLACEHOLDER = "placeholder"
    WEAK = "weak"
    ALREADY_INITIALIZED = "already_initialized"


class SecretConfigError(Exception):
    """A signing key was rejected at initialization."""

    def __init__(self, name: str, problem: SecretProblem, message: str):
        super().__init__(f"{name}: {message}")
        self.name = name
        self.problem = problem


class SecretNotInitializedError(RuntimeError):
    """A signing key was read before it was initialized."""

    pass


def _char_classes(secret: str) -> int:
    classes = 0
    if any(c in string.ascii_lowercase for c in secret):
        classes += 1
    if any(c in string.ascii_uppercase for c in secret):
        classes += 1
    if any(c in string.digits for c in secret):
        classes += 1
    if any(not (c.isascii() and c.isalnum()) for c in secret):
        classes += 1
    return classes


def _normalize(name: str, raw: str | bytes | None) -> str:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    trimmed = (raw or "").strip()
    if not trimmed:
        raise SecretConfigError(name, SecretProblem.MISSING, "cannot be empty or whitespace")
    lowered = trimmed.lower()
    if any(lowered == candidate.lower() for candidate in PLACEHOLDER_SECRETS):
        raise SecretConfigError(
            name, SecretProblem.PLACEHOLDER, f"uses a known placeholder value. {GENERATE_HINT}"
        )
    return trimmed


def validate_bearer_secret(raw: str | bytes | None, name: str = "JWT_SECRET") -> str:
    """Validate the bearer signing key and return it trimmed.

    Requires at least 43 bytes, three of the four character classes
    (lowercase, uppercase, digits, symbols) and 10 distinct characters.
    """
    secret = _normalize(name, raw)
    if (
        len(secret.encode("utf-8")) < BEARER_MIN_LENGTH
        or _char_classes(secret) < BEARER_MIN_CHAR_CLASSES
        or len(set(secret)) < MIN_UNIQUE_CHARS
    ):
        raise SecretConfigError(
            name,
            SecretProblem.WEAK,
            f"must be a high-entropy value (~256 bits). Use a cryptographically random string "
            f"of at least {BEARER_MIN_LENGTH} characters mixing upper, lower, digits, and symbols.",
        )
    return secret


def validate_csrf_secret(raw: str | bytes | None, name: str = "CSRF_SECRET") -> str:
    """Validate the CSRF signing key: 32+ bytes and 10+ distinct characters."""
    secret = _normalize(name, raw)
    if len(secret.encode("utf-8")) < CSRF_MIN_LENGTH:
        raise SecretConfigError(
            name, SecretProblem.WEAK, f"must be at least {CSRF_MIN_LENGTH} characters long"
        )
    if len(set(secret)) < MIN_UNIQUE_CHARS:
        raise SecretConfigError(
            name, SecretProblem.WEAK, f"must contain at least {MIN_UNIQUE_CHARS} unique characters"
        )
    return secret


class _WriteOnceCell:
    """Holds one value. First writer wins; later writes raise."""

    def __init__(self, name: str):
        self.name = name
        self._value: bytes | None = None
        self._lock = threading.Lock()

    def set(self, value: bytes) -> None:
        with self._lock:
            if self._value is not None:
                raise SecretConfigError(
                    self.name, SecretProblem.ALREADY_INITIALIZED, "already initialized"
                )
            self._value = value

    def get(self) -> bytes:
        value = self._value
        if value is None:
            raise SecretNotInitializedError(
                f"{self.name} not initialized. Initialize the secret registry at startup first."
            )
        return value

    @property
    def is_set(self) -> bool:
        return self._value is not None


class SecretRegistry:
    """Write-once store for the bearer and CSRF signing keys."""

    def __init__(self):
        self._bearer = _WriteOnceCell("JWT_SECRET")
        self._csrf = _WriteOnceCell("CSRF_SECRET")

    def initialize_bearer_secret(self, raw: str | bytes | None) -> None:
        if self._bearer.is_set:
            raise SecretConfigError(
                "JWT_SECRET", SecretProblem.ALREADY_INITIALIZED, "already initialized"
            )
        self._bearer.set(validate_bearer_secret(raw).encode("utf-8"))
        logger.info("JWT secret initialized successfully")

    def initialize_csrf_secret(self, raw: str | bytes | None) -> None:
        if self._csrf.is_set:
            raise SecretConfigError(
                "CSRF_SECRET", SecretProblem.ALREADY_INITIALIZED, "already initialized"
            )
        self._csrf.set(validate_csrf_secret(raw).encode("utf-8"))
        logger.info("CSRF secret initialized successfully")

    def bearer_secret(self) -> bytes:
        return self._bearer.get()

    def csrf_secret(self) -> bytes:
        return self._csrf.get()

    @property
    def initialized(self) -> bool:
        return self._bearer.is_set and self._csrf.is_set


_registry = SecretRegistry()


def get_secret_registry() -> SecretRegistry:
    """Process-wide registry used by the server entrypoint."""
    return _registry


def initialize_bearer_secret(raw: str | bytes | None) -> None:
    _registry.initialize_bearer_secret(raw)


def initialize_csrf_secret(raw: str | bytes | None) -> None:
    _registry.initialize_csrf_secret(raw)


def bearer_secret() -> bytes:
    return _registry.bearer_secret()


def csrf_secret() -> bytes:
    return _registry.csrf_secret()


@dataclass(frozen=True, repr=False)
class SecurityContext:
    """Validated key material and cookie policy for one application.

    Construction re-runs the secret validators, so a context holding a weak
    key cannot exist. Build it with ``from_registry`` at startup.
    """

    bearer_secret: bytes
    csrf_secret: bytes
    cookies_secure: bool = True
    login_attempt_key: bytes = b""

    def __post_init__(self):
        object.__setattr__(
            self, "bearer_secret", validate_bearer_secret(self.bearer_secret).encode("utf-8")
        )
        object.__setattr__(
            self, "csrf_secret", validate_csrf_secret(self.csrf_secret).encode("utf-8")
        )
        if not self.login_attempt_key:
            # Separate key so login_attempts rows are not HMACs under the CSRF key itself
            derived = hmac.new(self.csrf_secret, b"ltcms-login-attempts", hashlib.sha256).digest()
            object.__setattr__(self, "login_attempt_key", derived)

    @classmethod
    def from_registry(
        cls,
        registry: SecretRegistry,
        *,
        cookies_secure: bool = True,
        login_attempt_salt: str = "",
    ) -> "SecurityContext":
        return cls(
            bearer_secret=registry.bearer_secret(),
            csrf_secret=registry.csrf_secret(),
            cookies_secure=cookies_secure,
            login_attempt_key=login_attempt_salt.encode("utf-8"),
        )

    def __repr__(self) -> str:
        return f"<SecurityContext cookies_secure={self.cookies_secure}>"
