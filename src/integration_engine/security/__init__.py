"""Request authentication helpers for the webhook ingress."""

from .hmac import sign_payload, verify_hmac

__all__ = ["sign_payload", "verify_hmac"]
