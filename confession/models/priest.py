"""Pydantic model for a priest's profile in the user directory."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class PriestProfile(BaseModel):
    """Profile document fields the matching flow reads.

    Availability and language capabilities belong to the profile store; the
    core only reads and filters on them.
    """

    model_config = ConfigDict(populate_by_name=True)

    uid: str
    name: str = ""
    display_name: Optional[str] = Field(None, alias="displayName")
    email: str = ""
    photo_url: Optional[str] = Field(None, alias="photoUrl")
    languages: list[str] = []
    is_priest_verified: bool = Field(False, alias="isPriestVerified")
    is_available_for_confession: bool = Field(False, alias="isAvailableForConfession")

    @property
    def label(self) -> str:
        """Human label for a priest list, e.g. ``Priest John (Languages: English, Latin)``."""
        name = self.display_name or self.name or self.uid[-4:] or "N/A"
        return f"Priest {name} (Languages: {', '.join(self.languages)})"
