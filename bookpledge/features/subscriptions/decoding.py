"""
App Store Server Notification (v2) decoding.

Both layers are JWS compact strings: the outer ``signedPayload`` and the inner
``data.signedTransactionInfo``. Two decoding paths:

- decode-only (``decode_signed_payload``): base64url payload, no signature
  check. Used when APPLE_VERIFY_SIGNATURES is off (tests, sandbox).
- verified (``verify_signed_payload``): ES256 signature checked with the leaf
  certificate from the ``x5c`` header, and the x5c chain checked up to one of
  the configured root certificates.
"""
from __future__ import annotations

import base64
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

import jwt
from cryptography import x509
from cryptography.exceptions import InvalidSignature

from bookpledge.core.config import settings
from bookpledge.core.errors import ValidationError
from bookpledge.core.timeutil import from_epoch_ms
from bookpledge.models.subscription import AppStoreNotification, TransactionInfo

logger = logging.getLogger("bookpledge")


def decode_signed_payload(jws: str) -> Dict[str, Any]:
    """Decode a JWS payload without verifying its signature."""
    if not isinstance(jws, str) or jws.count(".") != 2:
        raise ValidationError("Malformed signed payload")
    try:
        payload = jwt.decode(jws, options={"verify_signature": False})
    except jwt.InvalidTokenError:
        raise ValidationError("Malformed signed payload")
    if not isinstance(payload, dict):
        raise ValidationError("Malformed signed payload")
    return payload


def load_root_certificates(paths: Sequence[str]) -> List[x509.Certificate]:
    """Load PEM or DER root certificates from disk."""
    roots = []
    for path in paths:
        path = path.strip()
        if not path:
            continue
        with open(path, "rb") as f:
            data = f.read()
        if b"-----BEGIN CERTIFICATE-----" in data:
            roots.append(x509.load_pem_x509_certificate(data))
        else:
            roots.append(x509.load_der_x509_certificate(data))
    return roots


def _chain_from_header(jws: str) -> List[x509.Certificate]:
    try:
        header = jwt.get_unverified_header(jws)
    except jwt.InvalidTokenError:
        raise ValidationError("Malformed signed payload")
    x5c = header.get("x5c") or []
    if not x5c:
        raise ValidationError("Signed payload has no certificate chain", code="invalid_signature")
    try:
        return [x509.load_der_x509_certificate(base64.b64decode(c)) for c in x5c]
    except ValueError:
        raise ValidationError("Signed payload certificate chain is malformed", code="invalid_signature")


def _verify_chain(chain: List[x509.Certificate], roots: Sequence[x509.Certificate]) -> None:
    if not roots:
        raise ValidationError("No trusted root certificates configured", code="invalid_signature")
    try:
        for cert, issuer in zip(chain, chain[1:]):
            cert.verify_directly_issued_by(issuer)
        top = chain[-1]
        root_fingerprints = {r.fingerprint(r.signature_hash_algorithm) for r in roots if r.signature_hash_algorithm}
        if top.signature_hash_algorithm and top.fingerprint(top.signature_hash_algorithm) in root_fingerprints:
            return
        for root in roots:
            try:
                top.verify_directly_issued_by(root)
                return
            except (ValueError, TypeError, InvalidSignature):
                continue
    except (ValueError, TypeError, InvalidSignature):
        raise ValidationError("Certificate chain verification failed", code="invalid_signature")
    raise ValidationError("Certificate chain does not end in a trusted root", code="invalid_signature")


def verify_signed_payload(jws: str, root_certificates: Sequence[x509.Certificate]) -> Dict[str, Any]:
    """Verify the ES256 signature and certificate chain, then return the payload."""
    if not isinstance(jws, str) or jws.count(".") != 2:
        raise ValidationError("Malformed signed payload")
    chain = _chain_from_header(jws)
    _verify_chain(chain, root_certificates)
    try:
        return jwt.decode(
            jws,
            chain[0].public_key(),
            algorithms=["ES256"],
            options={"verify_aud": False, "verify_exp": False, "verify_iat": False},
        )
    except jwt.InvalidTokenError as e:
        logger.warning("apple.jws_verification_failed", extra={"error_type": type(e).__name__})
        raise ValidationError("Signature verification failed", code="invalid_signature")


class SignedPayloadDecoder:
    """Picks the decode-only or verified path once, at construction."""

    def __init__(self, verify: bool = False, root_certificates: Optional[Sequence[x509.Certificate]] = None):
        self.verify = verify
        self.root_certificates = list(root_certificates or [])

    @classmethod
    def from_settings(cls) -> "SignedPayloadDecoder":
        if not settings.APPLE_VERIFY_SIGNATURES:
            return cls(verify=False)
        paths = [p for p in settings.APPLE_ROOT_CERT_PATHS.split(",") if p.strip()]
        return cls(verify=True, root_certificates=load_root_certificates(paths))

    def decode(self, jws: str) -> Dict[str, Any]:
        if self.verify:
            return verify_signed_payload(jws, self.root_certificates)
        return decode_signed_payload(jws)


def parse_transaction(payload: Dict[str, Any]) -> TransactionInfo:
    try:
        expires_at = from_epoch_ms(payload.get("expiresDate"))
    except (TypeError, ValueError, OverflowError, OSError):
        raise ValidationError("expiresDate is invalid")
    return TransactionInfo(
        original_transaction_id=payload.get("originalTransactionId"),
        transaction_id=payload.get("transactionId"),
        product_id=payload.get("productId"),
        expires_at=expires_at,
    )


def parse_notification(
    signed_payload: str,
    decode: Optional[Callable[[str], Dict[str, Any]]] = None,
) -> AppStoreNotification:
    """Decode both layers into an AppStoreNotification.

    The inner transaction is only required for notification types other than TEST.

    Raises:
        ValidationError: structurally invalid payload at either layer
    """
    decode = decode or decode_signed_payload
    outer = decode(signed_payload)

    notification_type = outer.get("notificationType")
    if not notification_type or not isinstance(notification_type, str):
        raise ValidationError("notificationType is required")

    signed_date = outer.get("signedDate")
    try:
        signed_at = from_epoch_ms(signed_date)
    except (TypeError, ValueError, OverflowError, OSError):
        raise ValidationError("signedDate is invalid")

    data = outer.get("data") or {}
    if not isinstance(data, dict):
        raise ValidationError("data must be an object")

    transaction = None
    signed_tx = data.get("signedTransactionInfo")
    if signed_tx:
        transaction = parse_transaction(decode(signed_tx))
    elif notification_type != "TEST":
        raise ValidationError("signedTransactionInfo is required")

    return AppStoreNotification(
        notification_uuid=outer.get("notificationUUID"),
        notification_type=notification_type,
        subtype=outer.get("subtype"),
        signed_date=signed_at,
        environment=data.get("environment"),
        transaction=transaction,
    )
