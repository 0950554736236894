"""Redis key schema.

Key format: {prefix}:{kind}:{name}

Where:
- prefix: ``settings.key_prefix`` (namespace for shared Redis instances)
- kind: "lock", "ratelimit:tb" (token bucket), "ratelimit:sw" (sliding window)
- name: resource or identifier as given by the caller

Queue streams are named by the caller and used verbatim; only the
dead-letter stream name is derived here.
"""

from __future__ import annotations

from typing import Literal

from concord.config import settings

KeyKind = Literal["lock", "ratelimit:tb", "ratelimit:sw"]


class StoreKeys:
    """Key generator following a consistent naming convention."""

    PREFIX = settings.key_prefix
    DEAD_LETTER_SUFFIX = settings.queue_dead_letter_suffix

    @classmethod
    def lock(cls, resource: str) -> str:
        """Key holding the token of the current lock holder."""
        return f"{cls.PREFIX}:lock:{resource}"

    @classmethod
    def token_bucket(cls, identifier: str) -> str:
        """Hash with ``tokens`` and ``ts`` fields."""
        return f"{cls.PREFIX}:ratelimit:tb:{identifier}"

    @classmethod
    def sliding_window(cls, identifier: str) -> str:
        """Sorted set of event timestamps."""
        return f"{cls.PREFIX}:ratelimit:sw:{identifier}"

    @classmethod
    def dead_letter(cls, stream: str) -> str:
        """Dead-letter stream paired with ``stream``."""
        return f"{stream}{cls.DEAD_LETTER_SUFFIX}"

    @classmethod
    def parse_key(cls, key: str) -> dict[str, str] | None:
        """Parse a key into its components.

        Returns None if the key doesn't match the expected format.
        """
        prefix = f"{cls.PREFIX}:"
        if not key.startswith(prefix):
            return None

        rest = key[len(prefix) :]
        for kind in ("ratelimit:tb", "ratelimit:sw", "lock"):
            if rest.startswith(f"{kind}:"):
                name = rest[len(kind) + 1 :]
                if not name:
                    return None
                return {"prefix": cls.PREFIX, "kind": kind, "name": name}
        return None
