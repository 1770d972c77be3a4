"""
Amora — Shared base for document models.

Documents are stored with camelCase field names (the mobile client reads the
same documents), while Python code uses snake_case attributes.
"""

from __future__ import annotations

from typing import TypeVar

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from app.store.base import DocumentSnapshot

M = TypeVar("M", bound="DocumentModel")


class DocumentModel(BaseModel):
    """Base class for every model read from (or written to) the store.

    Subclasses that are stored as whole documents set ``id`` from the
    snapshot's document id::

        thread = ChatThread.from_snapshot(snap)
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    @classmethod
    def from_snapshot(cls: type[M], snap: DocumentSnapshot) -> M:
        data = snap.to_dict()
        if "id" in cls.model_fields:
            data.setdefault("id", snap.id)
        return cls.model_validate(data)

    def to_document(self, *, exclude_none: bool = False) -> dict:
        return self.model_dump(by_alias=True, exclude_none=exclude_none, exclude={"id"})
