"""
Security helpers for channel webhook authentication.
Provides constant-time secret comparison, the Ed25519 verifier used for Discord
interactions, and structured logging of authentication failures.
"""

import hashlib
import hmac
import logging
from typing import Any, Callable, Dict, Optional

from fastapi import Request
from nacl.exceptions import BadSignatureError
from nacl.signing import VerifyKey

logger = logging.getLogger(__name__)

# (public_key_hex, signature_hex, timestamp, body) -> bool
Ed25519Verifier = Callable[[str, str, str, str], bool]


def hash_secret(secret: str) -> str:
    """Create a short SHA-256 digest of a secret for logging (never log the raw value)."""
    return hashlib.sha256(secret.encode()).hexdigest()[:8]


def secrets_match(provided: Optional[str], expected: str) -> bool:
    """Compare a provided secret with the expected one in constant time."""
    if provided is None:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


def get_client_ip(request: Request) -> str:
    """Extract real client IP from request, handling proxies and load balancers."""
    # Check common proxy headers first
    forwarded_for = request.headers.get('X-Forwarded-For')
    if forwarded_for:
        # X-Forwarded-For can contain multiple IPs, use the first one
        return forwarded_for.split(',')[0].strip()

    real_ip = request.headers.get('X-Real-IP')
    if real_ip:
        return real_ip.strip()

    # Fallback to direct client IP
    return str(request.client.host) if request.client else "unknown"


def log_security_event(
    event_type: str,
    ip_address: str,
    details: Dict[str, Any],
    severity: str = "WARNING"
) -> None:
    """
    Log security events with structured data for monitoring and analysis.

    Args:
        event_type: Type of security event (auth_failure, auth_success, etc.)
        ip_address: Source IP address
        details: Additional event details
        severity: Log severity level
    """
    log_entry = {
        "event": event_type,
        "ip": ip_address,
        "severity": severity,
        **details
    }

    if severity == "CRITICAL":
        logger.critical(f"[SECURITY] {log_entry}")
    elif severity == "ERROR":
        logger.error(f"[SECURITY] {log_entry}")
    elif severity == "INFO":
        logger.info(f"[SECURITY] {log_entry}")
    else:
        logger.warning(f"[SECURITY] {log_entry}")


def create_ed25519_verifier() -> Ed25519Verifier:
    """
    Build the default Ed25519 verifier for Discord interaction signatures.

    Discord signs `timestamp + raw_body` with the application's private key;
    both the public key and the signature arrive hex-encoded.
    """
    def verify(public_key: str, signature: str, timestamp: str, body: str) -> bool:
        try:
            verify_key = VerifyKey(bytes.fromhex(public_key))
            verify_key.verify(f"{timestamp}{body}".encode(), bytes.fromhex(signature))
            return True
        except (BadSignatureError, ValueError, TypeError) as e:
            logger.warning(f"[SECURITY] Ed25519 verification failed: {e}")
            return False

    return verify
