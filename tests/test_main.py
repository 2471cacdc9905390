import pytest

from comiccraft.config import Settings, key_is_disabled
from comiccraft.errors import ImageGenerationError
from comiccraft.main import (
    FALLBACK_IMAGE_URL,
    FALLBACK_NOTE,
    ComicImageGenerator,
    FalImageClient,
    PromptLogger,
    build_comic_prompt,
    character_descriptions,
    generated_filename,
    safe_path,
)
from comiccraft.models import CharacterSketch

from .conftest import FakeFal, FakeResponse, png_bytes

ZAYD = CharacterSketch(name="Zayd", appearance="boy with a red cap", personality="brave", role="hero")
FALCON = CharacterSketch(name="Saqr", appearance="golden falcon", personality="wise", role="pet")


@pytest.mark.parametrize("key", [None, "", "   ", "#fal-abc", "  # disabled"])
def test_disabled_keys(key):
    assert key_is_disabled(key)


def test_real_key_enables_generation(tmp_path):
    assert Settings(fal_key="fal-abc", root_dir=tmp_path).image_generation_enabled


def test_prompt_embeds_story_and_characters():
    prompt = build_comic_prompt("Desert Rescue", "Zayd finds a lost camel", [ZAYD, FALCON])
    assert 'Story: "Desert Rescue" - Zayd finds a lost camel' in prompt
    assert "Zayd (hero): boy with a red cap, Saqr (pet): golden falcon" in prompt
    assert "2x2" in prompt or "four panels" in prompt.lower()


def test_character_descriptions_empty():
    assert character_descriptions([]) == ""


def test_fallback_mode_makes_no_provider_call(generator, fake_http):
    result = generator.generate("Desert Rescue", "Zayd finds a lost camel", [ZAYD])
    assert result.url == FALLBACK_IMAGE_URL == "/example_uae.jpeg"
    assert result.prompt.startswith(FALLBACK_NOTE)
    assert "Zayd (hero)" in result.prompt
    assert fake_http.calls == []


def test_live_generation_downloads_and_stores(live_generator, live_settings, fake_fal, fake_http):
    fake_http.routes["https://fal.media/comic.png"] = FakeResponse(png_bytes())
    result = live_generator.generate("Desert Rescue", "Zayd finds a lost camel", [ZAYD])

    assert len(fake_fal.calls) == 1
    model, arguments = fake_fal.calls[0]
    assert model == "fal-ai/nano-banana"
    assert arguments["num_images"] == 1
    assert "Zayd (hero)" in arguments["prompt"]

    assert result.url.startswith("/generated-images/comic-")
    assert result.url.endswith(".png")
    stored = live_settings.generated_images_dir / result.url.rsplit("/", 1)[-1]
    assert stored.read_bytes() == png_bytes()
    assert "Zayd (hero)" in result.prompt


def test_jpeg_download_keeps_extension(live_generator, fake_http):
    fake_http.routes["https://fal.media/comic.png"] = FakeResponse(png_bytes(fmt="JPEG"))
    assert live_generator.generate("T", "D", [ZAYD]).url.endswith(".jpg")


def test_failed_download_returns_remote_url(live_generator, fake_http):
    fake_http.routes["https://fal.media/comic.png"] = FakeResponse(status=503)
    result = live_generator.generate("T", "D", [ZAYD])
    assert result.url == "https://fal.media/comic.png"


def test_non_image_download_returns_remote_url(live_generator, fake_http):
    fake_http.routes["https://fal.media/comic.png"] = FakeResponse(b"<html>oops</html>")
    assert live_generator.generate("T", "D", [ZAYD]).url == "https://fal.media/comic.png"


def test_provider_error_is_wrapped(live_settings, fake_http):
    from comiccraft.main import FalImageClient

    client = FalImageClient("k", "fal-ai/nano-banana", client=FakeFal(error=RuntimeError("quota exceeded")))
    generator = ComicImageGenerator(live_settings, image_client=client, http=fake_http)
    with pytest.raises(ImageGenerationError, match="Failed to generate comic image: quota exceeded"):
        generator.generate("T", "D", [ZAYD])


def test_empty_provider_result_is_an_error(live_settings, fake_http):
    from comiccraft.main import FalImageClient

    client = FalImageClient("k", "fal-ai/nano-banana", client=FakeFal(result={"images": []}))
    generator = ComicImageGenerator(live_settings, image_client=client, http=fake_http)
    with pytest.raises(ImageGenerationError, match="no images"):
        generator.generate("T", "D", [ZAYD])


def test_generated_filenames_are_unique():
    names = {generated_filename() for _ in range(50)}
    assert len(names) == 50
    assert all(n.startswith("comic-") and n.endswith(".png") for n in names)


def test_safe_path_rejects_escape(tmp_path):
    (tmp_path / "inside.png").write_bytes(b"x")
    assert safe_path(tmp_path, "inside.png") == (tmp_path / "inside.png").resolve()
    assert safe_path(tmp_path, "../etc/passwd") is None
    assert safe_path(tmp_path, "missing.png") is None


def test_prompt_logger_flushes_to_file(tmp_path):
    out = tmp_path / "logs" / "prompts.txt"
    prompt_logger = PromptLogger(out)
    prompt_logger.log("COMIC_PAGE_PROMPT", "draw a falcon")
    prompt_logger.flush()
    assert "===== COMIC_PAGE_PROMPT =====" in out.read_text(encoding="utf-8")


def test_prompt_logger_appends_and_clears(tmp_path):
    out = tmp_path / "prompts.txt"
    prompt_logger = PromptLogger(out)
    for text in ("first page", "second page"):
        prompt_logger.log("COMIC_PAGE_PROMPT", text)
        prompt_logger.flush()
        assert prompt_logger.lines == []
    content = out.read_text(encoding="utf-8")
    assert content.count("===== COMIC_PAGE_PROMPT =====") == 2
    assert "first page" in content and "second page" in content


def test_generator_writes_prompt_log(live_settings, fake_fal, fake_http, tmp_path):
    settings = live_settings.model_copy(update={"prompt_log": tmp_path / "logs" / "prompts.txt"})
    client = FalImageClient("fal-test-key", settings.fal_image_model, client=fake_fal)
    generator = ComicImageGenerator(settings, image_client=client, http=fake_http)
    fake_http.routes["https://fal.media/comic.png"] = FakeResponse(png_bytes())
    generator.generate("Desert Rescue", "Zayd finds a lost camel", [ZAYD])
    assert "Zayd (hero)" in settings.prompt_log.read_text(encoding="utf-8")


def test_settings_read_mail_and_editor_env(tmp_path, monkeypatch):
    monkeypatch.setenv("SENDGRID_API_KEY", "SG.abc")
    monkeypatch.setenv("PROMPT_LOG", str(tmp_path / "prompts.txt"))
    monkeypatch.setenv("EDITOR_MAX_SESSIONS", "7")
    monkeypatch.setenv("EDITOR_IDLE_TIMEOUT", "90")
    settings = Settings.from_env()
    assert settings.sendgrid_api_key == "SG.abc"
    assert settings.prompt_log == tmp_path / "prompts.txt"
    assert (settings.editor_max_sessions, settings.editor_idle_timeout) == (7, 90.0)
