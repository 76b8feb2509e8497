from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field


class ContactSnapshot(BaseModel):
    """Point-in-time view of a contact, as returned by the contact store."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str | None = None
    tags: List[str] = Field(default_factory=list)
    segment_ids: List[str] = Field(default_factory=list)
    fields: Dict[str, Any] = Field(default_factory=dict)
    deleted: bool = False

    def as_document(self) -> Dict[str, Any]:
        """Flattened view used for field lookups: custom fields first, then top-level attributes."""
        document: Dict[str, Any] = dict(self.fields)
        document.update(
            {
                "id": self.id,
                "email": self.email,
                "tags": list(self.tags),
                "segment_ids": list(self.segment_ids),
                "fields": dict(self.fields),
            }
        )
        return document
