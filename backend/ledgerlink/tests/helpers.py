"""Plain helpers shared by test modules."""

import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

from ledgerlink.credentials.providers import TokenPair

TEST_WEBHOOK_SECRET = "whsec_test_secret_not_real"
USER_ID = "user-test-001"


def sign_payload(payload: bytes, secret: str = TEST_WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(event_type: str, obj: dict, event_id: str = "evt_test_1", created: Optional[int] = None) -> bytes:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": int(time.time()) if created is None else created,
        "livemode": False,
        "data": {"object": obj},
    }).encode("utf-8")


def ts(dt: datetime) -> int:
    return int(dt.timestamp())


def make_token_pair(
    access_token: str = "test_access_token_not_real",
    refresh_token: Optional[str] = "test_refresh_token_not_real",
    expires_in: timedelta = timedelta(hours=1),
) -> TokenPair:
    return TokenPair(
        access_token=access_token,
        access_token_expires_at=datetime.now(timezone.utc) + expires_in,
        refresh_token=refresh_token,
    )
