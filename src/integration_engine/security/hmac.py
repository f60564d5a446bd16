from __future__ import annotations
import hmac
import hashlib
import time
from fastapi import HTTPException

# Header format: "<unix ts>,<hex sha256 of '<ts>.' + body>"


def sign_payload(body: bytes, secret: str, ts: int | None = None) -> str:
    ts = int(time.time()) if ts is None else ts
    sig = hmac.new(secret.encode(), msg=f"{ts}.".encode() + body, digestmod=hashlib.sha256).hexdigest()
    return f"{ts},{sig}"


def verify_hmac(signature: str | None, body: bytes, secret: str, tolerance_seconds: int = 300, now: float | None = None):
    if not signature:
        raise HTTPException(status_code=401, detail="missing signature")
    try:
        ts_str, sig = signature.split(",", 1)
        ts = int(ts_str)
    except ValueError:
        raise HTTPException(status_code=400, detail="invalid signature header")
    now = time.time() if now is None else now
    if abs(now - ts) > tolerance_seconds:
        raise HTTPException(status_code=401, detail="signature timestamp expired")
    expected = hmac.new(secret.encode(), msg=f"{ts}.".encode() + body, digestmod=hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, sig):
        raise HTTPException(status_code=401, detail="invalid signature")
