import hashlib
import hmac
import json
from typing import Any, Dict, Iterable, List, Mapping, Optional

REQUIRED_FIELDS = ('signal_type', 'symbol', 'timeframe', 'exchange')


class ValidationFailure(Exception):
    """Base class for rejected webhook submissions."""

    kind = 'invalid'

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class SignatureMismatch(ValidationFailure):
    kind = 'invalid_signature'


class MissingRequiredFields(ValidationFailure):
    kind = 'missing_fields'

    def __init__(self, missing: List[str]):
        self.missing = missing
        super().__init__(f"Missing required fields: {', '.join(missing)}")


class UnknownSignalType(ValidationFailure):
    kind = 'invalid_signal_type'


class UnsupportedTimeframe(ValidationFailure):
    kind = 'invalid_timeframe'


class UnsupportedVenue(ValidationFailure):
    kind = 'invalid_exchange'


def canonical_payload(payload: Any) -> bytes:
    """Compact JSON in the payload's own key order, as the sender serializes it."""
    return json.dumps(payload, separators=(',', ':'), ensure_ascii=False).encode('utf-8')


def sign_payload(payload: Any, secret: str) -> str:
    return hmac.new(secret.encode('utf-8'), canonical_payload(payload), hashlib.sha256).hexdigest()


class WebhookValidator:
    def __init__(
        self,
        secret: str,
        signal_types: Iterable[str],
        timeframes: Iterable[str],
        exchanges: Iterable[str],
    ):
        self.secret = secret
        self.signal_types = tuple(signal_types)
        self.timeframes = tuple(timeframes)
        self.exchanges = tuple(exchanges)

    def validate(self, payload: Any, signature: Optional[str]) -> Dict[str, Any]:
        """Run every check in order and stop at the first failure."""
        try:
            expected = sign_payload(payload, self.secret)
        except (TypeError, ValueError) as exc:
            raise SignatureMismatch(f"Webhook payload cannot be canonicalized: {exc}") from exc
        if not signature or not hmac.compare_digest(expected.encode('ascii'), str(signature).encode('utf-8')):
            raise SignatureMismatch('Webhook signature does not match payload')

        if not isinstance(payload, Mapping):
            raise MissingRequiredFields(list(REQUIRED_FIELDS))

        missing = [name for name in REQUIRED_FIELDS if not payload.get(name)]
        if missing:
            raise MissingRequiredFields(missing)

        if payload['signal_type'] not in self.signal_types:
            raise UnknownSignalType(f"Invalid signal type: {payload['signal_type']}")
        if payload['timeframe'] not in self.timeframes:
            raise UnsupportedTimeframe(f"Invalid timeframe: {payload['timeframe']}")
        if payload['exchange'] not in self.exchanges:
            raise UnsupportedVenue(f"Invalid exchange: {payload['exchange']}")
        return dict(payload)
