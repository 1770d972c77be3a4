"""Canonical identifiers shared by matches and chat threads."""

from app.exceptions import InvalidInputError


def pair_id(uid_a: str, uid_b: str) -> str:
    """Order-independent id for an unordered pair of users.

    ``pair_id("b", "a") == pair_id("a", "b") == "a_b"``.  The same id keys
    both ``matches/{id}`` and ``chats/{id}``.
    """
    if not uid_a or not uid_b:
        raise InvalidInputError("Both user ids are required")
    if uid_a == uid_b:
        raise InvalidInputError("A pair needs two distinct users", details={"uid": uid_a})
    return "_".join(sorted([uid_a, uid_b]))
