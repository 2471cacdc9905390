import pytest
from pydantic import ValidationError

from comiccraft.models import CharacterCreate, CharacterUpdate, ComicCreate, StoryCreate, StoryUpdate


def hero(name="Zayd"):
    return CharacterCreate(name=name, appearance="red cap", personality="brave", role="hero")


def test_ids_are_sequential_per_entity(storage):
    a = storage.create_character(hero("A"))
    b = storage.create_character(hero("B"))
    story = storage.create_story(StoryCreate(title="T", description="D", characterIds=[a.id]))
    assert (a.id, b.id, story.id) == (1, 2, 1)


def test_ids_are_not_reused_after_delete(storage):
    storage.create_character(hero())
    storage.delete_character(1)
    assert storage.create_character(hero()).id == 2


def test_partial_update_keeps_other_fields(storage):
    c = storage.create_character(hero())
    updated = storage.update_character(c.id, CharacterUpdate(personality="curious"))
    assert updated.personality == "curious"
    assert updated.name == "Zayd"
    assert storage.update_character(99, CharacterUpdate(name="x")) is None


def test_story_character_ids_are_deduplicated():
    story = StoryCreate(title="T", description="D", characterIds=[2, 1, 2, 3, 1])
    assert story.characterIds == [2, 1, 3]
    assert StoryUpdate(characterIds=[5, 5]).characterIds == [5]


def test_story_with_characters_skips_deleted(storage):
    a = storage.create_character(hero("A"))
    b = storage.create_character(hero("B"))
    story = storage.create_story(StoryCreate(title="T", description="D", characterIds=[b.id, a.id]))
    storage.delete_character(a.id)
    full = storage.get_story_with_characters(story.id)
    assert [c.name for c in full.characters] == ["B"]
    assert full.characterIds == [b.id, a.id]


def test_comics_by_story(storage):
    storage.create_comic(ComicCreate(storyId=1, imageUrl="/a.png", prompt="p"))
    storage.create_comic(ComicCreate(storyId=2, imageUrl="/b.png", prompt="p"))
    assert [c.imageUrl for c in storage.get_comics_by_story(2)] == ["/b.png"]
    assert storage.get_comic(1).storyId == 1
    assert storage.get_comic(3) is None


def test_delete_reports_missing(storage):
    assert storage.delete_story(1) is False
    assert storage.delete_character(1) is False


@pytest.mark.parametrize("field", ["name", "appearance", "personality"])
def test_character_fields_must_be_non_empty(field):
    data = dict(name="Zayd", appearance="red cap", personality="brave", role="hero")
    data[field] = ""
    with pytest.raises(ValidationError):
        CharacterCreate(**data)


def test_role_must_be_known():
    with pytest.raises(ValidationError):
        CharacterCreate(name="Zayd", appearance="cap", personality="brave", role="wizard")
