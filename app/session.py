"""
Amora — Authenticated session.

Produced by the HTTP auth dependency from a verified Firebase ID token and
handed to route handlers.  Services never read ambient auth state; they take
the uid from here explicitly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class Session:
    uid: str
    email: Optional[str] = None
    claims: dict = field(default_factory=dict, compare=False, repr=False)
