"""Subset of the Plex Media Server JSON responses used by the session monitor"""
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _PlexModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class PlexUser(_PlexModel):
    id: str = ""
    title: str = ""

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value):
        return "" if value is None else str(value)


class PlexSession(_PlexModel):
    type: str
    grandparentTitle: str = ""
    grandparentKey: str = ""
    parentIndex: int = 0
    index: int = 0
    User: PlexUser = Field(default_factory=PlexUser)

    @property
    def episode_label(self) -> str:
        return f"{self.grandparentTitle} S{self.parentIndex:02d}E{self.index:02d}"


class PlexGuid(_PlexModel):
    id: str


class PlexMetadataContainer(_PlexModel):
    guid: Optional[str] = None
    Guid: Optional[List[PlexGuid]] = None


class PlexShowMetadata(_PlexModel):
    MediaContainer: PlexMetadataContainer

    def all_guids(self) -> List[str]:
        guids = []
        if self.MediaContainer.guid:
            guids.append(self.MediaContainer.guid)
        for guid in self.MediaContainer.Guid or []:
            if guid.id:
                guids.append(guid.id)
        return guids
