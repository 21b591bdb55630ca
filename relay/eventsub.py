from __future__ import annotations
import hashlib
import hmac
import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Dict, Mapping, Optional

from .errors import AuthenticationError, ValidationError

logger = logging.getLogger(__name__)

HEADER_MESSAGE_ID = "Twitch-Eventsub-Message-Id"
HEADER_TIMESTAMP = "Twitch-Eventsub-Message-Timestamp"
HEADER_SIGNATURE = "Twitch-Eventsub-Message-Signature"
HEADER_MESSAGE_TYPE = "Twitch-Eventsub-Message-Type"

MESSAGE_VERIFICATION = "webhook_callback_verification"
MESSAGE_NOTIFICATION = "notification"
MESSAGE_REVOCATION = "revocation"

REDEMPTION_EVENT_TYPE = "channel.channel_points_custom_reward_redemption.add"


@dataclass(frozen=True)
class MessageHeaders:
    message_id: str
    timestamp: str
    signature: str
    message_type: str


@dataclass(frozen=True)
class Redemption:
    requester: str
    user_input: str
    reward_title: str
    user_id: Optional[str] = None
    redemption_id: Optional[str] = None


def read_headers(headers: Mapping[str, str]) -> MessageHeaders:
    return MessageHeaders(
        message_id=(headers.get(HEADER_MESSAGE_ID) or "").strip(),
        timestamp=(headers.get(HEADER_TIMESTAMP) or "").strip(),
        signature=(headers.get(HEADER_SIGNATURE) or "").strip(),
        message_type=(headers.get(HEADER_MESSAGE_TYPE) or "").strip().lower(),
    )


def compute_signature(secret: str, message_id: str, timestamp: str, body: bytes) -> str:
    digest = hmac.new(
        secret.encode("utf-8"),
        msg=(message_id + timestamp).encode("utf-8") + body,
        digestmod=hashlib.sha256,
    )
    return f"sha256={digest.hexdigest()}"


def verify_signature(secret: str, message_id: str, timestamp: str, body: bytes, provided: str) -> bool:
    """Validate the HMAC signature on an EventSub webhook payload.

    The digest covers the exact bytes received; re-serialising the parsed JSON
    would change whitespace or key order and break the comparison.
    """

    expected = compute_signature(secret, message_id, timestamp, body)
    # compare_digest rejects non-ASCII str; header values may carry latin-1 bytes.
    return hmac.compare_digest(expected.encode("ascii"), (provided or "").encode("utf-8", "surrogateescape"))


def _parse_timestamp(value: str) -> datetime:
    # Twitch sends RFC3339 with nanosecond precision; fromisoformat tops out at micros.
    raw = value.strip().replace("Z", "+00:00")
    if "." in raw:
        head, _, tail = raw.partition(".")
        digits = ""
        rest = ""
        for index, char in enumerate(tail):
            if not char.isdigit():
                rest = tail[index:]
                break
            digits += char
        raw = f"{head}.{digits[:6].ljust(6, '0')}{rest}"
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def authenticate(
    secret: str,
    headers: MessageHeaders,
    body: bytes,
    *,
    max_age_seconds: int = 0,
    now: Optional[datetime] = None,
) -> None:
    """Raise ``AuthenticationError`` unless the message is signed and fresh."""

    if not headers.message_id or not headers.timestamp or not headers.signature:
        raise AuthenticationError("missing signature headers")
    if not verify_signature(secret, headers.message_id, headers.timestamp, body, headers.signature):
        raise AuthenticationError("invalid signature")
    if max_age_seconds > 0:
        try:
            sent_at = _parse_timestamp(headers.timestamp)
        except ValueError as exc:
            raise AuthenticationError("invalid message timestamp") from exc
        current = now or datetime.now(timezone.utc)
        if abs((current - sent_at).total_seconds()) > max_age_seconds:
            raise AuthenticationError("message timestamp outside the accepted window")


class RecentMessageCache:
    """Bounded window of EventSub message ids that were already processed.

    Twitch delivers at least once, so the same id may arrive again after a
    timeout on its side. Entries expire after ``ttl_seconds`` and the oldest
    are evicted once ``max_size`` is reached.
    """

    __slots__ = ("max_size", "ttl_seconds", "_entries", "_lock", "_clock")

    def __init__(self, max_size: int = 1000, ttl_seconds: float = 600.0, clock: Callable[[], float] = time.monotonic) -> None:
        if max_size < 1:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._entries: "OrderedDict[str, float]" = OrderedDict()
        self._lock = Lock()
        self._clock = clock

    def check_and_add(self, message_id: str) -> bool:
        """Record ``message_id``; return ``False`` when it was already seen."""

        now = self._clock()
        with self._lock:
            self._expire(now)
            if message_id in self._entries:
                return False
            self._entries[message_id] = now
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)
            return True

    def __contains__(self, message_id: object) -> bool:
        with self._lock:
            self._expire(self._clock())
            return message_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _expire(self, now: float) -> None:
        if self.ttl_seconds <= 0:
            return
        while self._entries:
            oldest_id, seen_at = next(iter(self._entries.items()))
            if now - seen_at <= self.ttl_seconds:
                break
            self._entries.pop(oldest_id, None)


def parse_body(body: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(body.decode("utf-8") or "{}")
    except (UnicodeDecodeError, ValueError) as exc:
        raise ValidationError("invalid JSON body") from exc
    if not isinstance(payload, dict):
        raise ValidationError("EventSub body must be a JSON object")
    return payload


def subscription_type(payload: Mapping[str, Any]) -> str:
    subscription = payload.get("subscription") or {}
    if not isinstance(subscription, Mapping):
        return ""
    return str(subscription.get("type") or "")


def extract_redemption(payload: Mapping[str, Any], redemption_name: str) -> Optional[Redemption]:
    """Return the song request carried by a reward redemption notification.

    ``None`` means the notification is not a redemption of the configured
    reward and should only be acknowledged.
    """

    if subscription_type(payload) != REDEMPTION_EVENT_TYPE:
        return None
    event = payload.get("event") or {}
    if not isinstance(event, Mapping):
        return None
    reward = event.get("reward") or {}
    title = str(reward.get("title") or "") if isinstance(reward, Mapping) else ""
    if title.strip().casefold() != redemption_name.strip().casefold():
        logger.debug("Ignoring redemption of reward %r", title)
        return None
    requester = str(event.get("user_name") or event.get("user_login") or "").strip()
    return Redemption(
        requester=requester,
        user_input=str(event.get("user_input") or "").strip(),
        reward_title=title,
        user_id=event.get("user_id"),
        redemption_id=event.get("id"),
    )
