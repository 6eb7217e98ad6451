"""
Client-supplied idempotency keys.
"""
from dataclasses import dataclass

from newsletter.core.exceptions import InvalidIdempotencyKey

MAX_IDEMPOTENCY_KEY_LENGTH = 50


@dataclass(frozen=True)
class IdempotencyKey:
    """
    Opaque token identifying one logical client action.

    Compared byte-for-byte; no trimming or case folding is applied.
    """

    value: str

    @classmethod
    def parse(cls, raw: str) -> "IdempotencyKey":
        """
        Validate ``raw`` as an idempotency key.

        Args:
            raw: Key as submitted by the client.

        Returns:
            The validated key.

        Raises:
            InvalidIdempotencyKey: If the key is empty or longer than 50 characters.
        """
        if raw is None or len(raw) == 0:
            raise InvalidIdempotencyKey("The idempotency key cannot be empty")
        if len(raw) > MAX_IDEMPOTENCY_KEY_LENGTH:
            raise InvalidIdempotencyKey(
                f"The idempotency key must be at most {MAX_IDEMPOTENCY_KEY_LENGTH} characters long"
            )
        return cls(raw)

    def __str__(self) -> str:
        return self.value
