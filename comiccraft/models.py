# models.py
import re
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

# ------------------ DATA MODELS -------------------

Role = Literal["hero", "villain", "friend", "helper", "pet", "other"]

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def is_email(value: Optional[str]) -> bool:
    return bool(value) and EMAIL_RE.match(value) is not None


class CharacterCreate(BaseModel):
    name: str = Field(min_length=1)
    appearance: str = Field(min_length=1)
    personality: str = Field(min_length=1)
    role: Role


class CharacterUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    appearance: Optional[str] = Field(default=None, min_length=1)
    personality: Optional[str] = Field(default=None, min_length=1)
    role: Optional[Role] = None


class Character(CharacterCreate):
    id: int


class CharacterSketch(BaseModel):
    """Character passed inline to the generate/email endpoints; role is free text there."""
    name: str
    appearance: str = ""
    personality: str = ""
    role: str = ""


def _no_line_breaks(value: str) -> str:
    # Used in mail headers
    if "\r" in value or "\n" in value:
        raise ValueError("must not contain line breaks")
    return value


def _unique_ids(ids: List[int]) -> List[int]:
    seen, out = set(), []
    for i in ids:
        if i not in seen:
            out.append(i)
            seen.add(i)
    return out


class StoryCreate(BaseModel):
    title: str = Field(min_length=1)
    description: str = Field(min_length=1)
    characterIds: List[int] = Field(default_factory=list)

    @field_validator("characterIds")
    @classmethod
    def _dedupe(cls, v: List[int]) -> List[int]:
        return _unique_ids(v)


class StoryUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = Field(default=None, min_length=1)
    characterIds: Optional[List[int]] = None

    @field_validator("characterIds")
    @classmethod
    def _dedupe(cls, v: Optional[List[int]]) -> Optional[List[int]]:
        return _unique_ids(v) if v is not None else v


class Story(StoryCreate):
    id: int


class StoryWithCharacters(Story):
    characters: List[Character] = Field(default_factory=list)


class ComicCreate(BaseModel):
    storyId: int
    imageUrl: str
    prompt: str


class Comic(ComicCreate):
    id: int


class ComicRequest(BaseModel):
    """Inline story sent to the generate endpoints."""
    storyTitle: str = Field(min_length=1)
    storyDescription: str = Field(min_length=1)
    characters: List[CharacterSketch] = Field(min_length=1)

    @field_validator("storyTitle")
    @classmethod
    def _single_line(cls, v: str) -> str:
        return _no_line_breaks(v)


class ComicEmailRequest(ComicRequest):
    childName: str = Field(min_length=1)
    childEmail: Optional[str] = None
    parentEmail: str

    @field_validator("childName")
    @classmethod
    def _single_line_name(cls, v: str) -> str:
        return _no_line_breaks(v)


class ComicEmail(ComicEmailRequest):
    imageUrl: str
