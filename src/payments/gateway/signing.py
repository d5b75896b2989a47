"""HMAC-SHA256 signing used for payment confirmations and webhooks."""

import hashlib
import hmac


class HMACSigner:
    def __init__(self, secret: str) -> None:
        self._secret = secret.encode()

    def sign(self, data: bytes | str) -> str:
        if isinstance(data, str):
            data = data.encode()
        return hmac.new(self._secret, data, hashlib.sha256).hexdigest()

    def verify(self, data: bytes | str, signature: str | None) -> bool:
        if not signature or not self._secret:
            return False
        return hmac.compare_digest(self.sign(data), signature.strip().lower())


def payment_message(order_id: str, payment_id: str) -> str:
    return f"{order_id}|{payment_id}"
