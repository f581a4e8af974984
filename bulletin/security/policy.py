"""
Route access policy evaluated once per request by the auth gate.

A policy is an ordered list of rules; the first rule whose pattern and
method match the request decides.  Patterns are ant-style: ``*`` matches a
single path segment and ``/**`` matches the bare prefix or anything below
it.  Requests that match no rule require an authenticated caller.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable

from bulletin.security.identity import Identity


class Decision(str, Enum):
    ALLOW = "allow"
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"


def _compile(pattern: str) -> re.Pattern:
    out = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("/**", i):
            out.append("(?:/.*)?")
            i += 3
        elif pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif pattern[i] == "*":
            out.append("[^/]*")
            i += 1
        else:
            out.append(re.escape(pattern[i]))
            i += 1
    return re.compile("^" + "".join(out) + "$")


@dataclass(frozen=True)
class AccessRule:
    """
    ``required_roles=None`` marks a public rule (the gate skips token
    handling entirely); an empty set means any authenticated caller.
    ``methods=None`` matches every HTTP method.
    """

    pattern: str
    methods: frozenset[str] | None = None
    required_roles: frozenset[str] | None = frozenset()
    _regex: re.Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_regex", _compile(self.pattern))

    @property
    def is_public(self) -> bool:
        return self.required_roles is None

    def matches(self, method: str, path: str) -> bool:
        if self.methods is not None and method.upper() not in self.methods:
            return False
        return self._regex.match(path) is not None


def public(pattern: str, *methods: str) -> AccessRule:
    return AccessRule(pattern, frozenset(methods) or None, None)


def requires(pattern: str, *methods: str, roles: Iterable[str] = ()) -> AccessRule:
    return AccessRule(pattern, frozenset(methods) or None, frozenset(roles))


AUTHENTICATED = AccessRule("/**")


class AccessPolicy:
    def __init__(self, rules: Iterable[AccessRule], fallback: AccessRule = AUTHENTICATED) -> None:
        self.rules = tuple(rules)
        self.fallback = fallback

    def match(self, method: str, path: str) -> AccessRule:
        for rule in self.rules:
            if rule.matches(method, path):
                return rule
        return self.fallback

    @staticmethod
    def decide(rule: AccessRule, identity: Identity | None) -> Decision:
        if rule.is_public:
            return Decision.ALLOW
        if identity is None:
            return Decision.UNAUTHENTICATED
        if not rule.required_roles <= identity.roles:
            return Decision.FORBIDDEN
        return Decision.ALLOW


WRITE_METHODS = ("POST", "PUT", "PATCH", "DELETE")

default_policy = AccessPolicy(
    [
        public("/login", "POST"),
        public("/register", "POST"),
        public("/health"),
        public("/docs/**"),
        public("/redoc"),
        public("/openapi.json"),
        public("/api/articles/**", "GET", "HEAD"),
        requires("/api/articles/**", *WRITE_METHODS, roles={"ROLE_USER"}),
        requires("/api/users", "POST", roles={"ROLE_ADMIN"}),
        requires("/api/users/*", "PUT", "DELETE", roles={"ROLE_ADMIN"}),
    ]
)
