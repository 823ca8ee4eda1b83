import hmac
import hashlib
import json
import time
from typing import Optional

from wallet_ledger.config import settings


def compute_signature(body: dict, timestamp: str, secret: Optional[str] = None) -> str:
    message = f"{timestamp}:{json.dumps(body, sort_keys=True)}".encode()
    key = (secret if secret is not None else settings.gateway_hmac_secret).encode()
    return hmac.new(key, message, hashlib.sha256).hexdigest()


def signed_headers(body: dict, secret: Optional[str] = None, timestamp: Optional[str] = None) -> dict[str, str]:
    """
    Headers the settlement gateway uses to authenticate a request body.
    """
    timestamp = timestamp or str(int(time.time()))
    return {
        "X-Timestamp": timestamp,
        "X-Signature": compute_signature(body, timestamp, secret),
    }
