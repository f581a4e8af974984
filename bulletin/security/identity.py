from dataclasses import dataclass


@dataclass(frozen=True)
class Identity:
    """The caller resolved from a bearer token, valid for one request."""

    user_id: int
    username: str
    roles: frozenset[str] = frozenset()
