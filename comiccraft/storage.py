# storage.py
from typing import Dict, Iterator, List, Optional
import itertools

from .models import (
    Character,
    CharacterCreate,
    CharacterUpdate,
    Comic,
    ComicCreate,
    Story,
    StoryCreate,
    StoryUpdate,
    StoryWithCharacters,
)


class IdAllocator:
    """Hands out 1, 2, 3, ... for one entity type."""

    def __init__(self, start: int = 1):
        self._counter: Iterator[int] = itertools.count(start)

    def next(self) -> int:
        return next(self._counter)


class MemStorage:
    def __init__(self):
        self.characters: Dict[int, Character] = {}
        self.stories: Dict[int, Story] = {}
        self.comics: Dict[int, Comic] = {}
        self.character_ids = IdAllocator()
        self.story_ids = IdAllocator()
        self.comic_ids = IdAllocator()

    # Characters
    def get_characters(self) -> List[Character]:
        return list(self.characters.values())

    def get_character(self, id: int) -> Optional[Character]:
        return self.characters.get(id)

    def create_character(self, data: CharacterCreate) -> Character:
        character = Character(id=self.character_ids.next(), **data.model_dump())
        self.characters[character.id] = character
        return character

    def update_character(self, id: int, updates: CharacterUpdate) -> Optional[Character]:
        character = self.characters.get(id)
        if character is None:
            return None
        updated = character.model_copy(update=updates.model_dump(exclude_none=True))
        self.characters[id] = updated
        return updated

    def delete_character(self, id: int) -> bool:
        # Story references are left dangling on purpose; readers skip them.
        return self.characters.pop(id, None) is not None

    # Stories
    def get_stories(self) -> List[Story]:
        return list(self.stories.values())

    def get_story(self, id: int) -> Optional[Story]:
        return self.stories.get(id)

    def get_story_with_characters(self, id: int) -> Optional[StoryWithCharacters]:
        story = self.stories.get(id)
        if story is None:
            return None
        characters = [self.characters[cid] for cid in story.characterIds if cid in self.characters]
        return StoryWithCharacters(**story.model_dump(), characters=characters)

    def create_story(self, data: StoryCreate) -> Story:
        story = Story(id=self.story_ids.next(), **data.model_dump())
        self.stories[story.id] = story
        return story

    def update_story(self, id: int, updates: StoryUpdate) -> Optional[Story]:
        story = self.stories.get(id)
        if story is None:
            return None
        updated = story.model_copy(update=updates.model_dump(exclude_none=True))
        self.stories[id] = updated
        return updated

    def delete_story(self, id: int) -> bool:
        return self.stories.pop(id, None) is not None

    # Comics
    def get_comics(self) -> List[Comic]:
        return list(self.comics.values())

    def get_comic(self, id: int) -> Optional[Comic]:
        return self.comics.get(id)

    def get_comics_by_story(self, story_id: int) -> List[Comic]:
        return [c for c in self.comics.values() if c.storyId == story_id]

    def create_comic(self, data: ComicCreate) -> Comic:
        comic = Comic(id=self.comic_ids.next(), **data.model_dump())
        self.comics[comic.id] = comic
        return comic
