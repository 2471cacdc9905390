# main.py
import io
import random
import string
import time
import logging
from pathlib import Path
from typing import List, Optional, Sequence

from pydantic import BaseModel
from PIL import Image

# Fal AI SDK for image generation
import fal_client
import requests

from .config import FALLBACK_IMAGE_NAME, GENERATED_IMAGES, Settings
from .errors import ImageGenerationError

logger = logging.getLogger(__name__)

# ------------------ PROMPTS -----------------------
PROMPTS_DIR = Path(__file__).parent / "prompts"


def load_prompt(name: str) -> str:
    p = PROMPTS_DIR / f"{name}.txt"
    if not p.exists():
        raise FileNotFoundError(f"Prompt file not found: {p}")
    return p.read_text(encoding="utf-8")


COMIC_PAGE_TEMPLATE = load_prompt("comic_page")

FALLBACK_IMAGE_URL = f"/{FALLBACK_IMAGE_NAME}"
FALLBACK_NOTE = "Default example image used because the image API key is commented out or missing."

# Extensions for the formats Pillow reports
FORMAT_EXTENSIONS = {"PNG": "png", "JPEG": "jpg", "WEBP": "webp", "GIF": "gif"}


class GeneratedImage(BaseModel):
    url: str
    prompt: str

# ------------------ UTILITIES ---------------------


def fill(template: str, **kv):
    """Replace only specific placeholders, leaving other braces alone."""
    out = template
    for k, v in kv.items():
        out = out.replace(f"{{{k}}}", v)
    return out


def ensure_dir(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)


def image_bytes_to_pil(b: bytes) -> Image.Image:
    return Image.open(io.BytesIO(b)).convert("RGBA")


def pil_to_png_bytes(img: Image.Image) -> bytes:
    """Converts a PIL Image object to PNG bytes."""
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def safe_path(root: Path, rel: str) -> Optional[Path]:
    """Resolve ``rel`` under ``root``; None if it escapes the root or does not exist."""
    p = (root / rel).resolve()
    if root.resolve() in p.parents or p == root.resolve():
        return p if p.exists() else None
    return None


def generated_filename(prefix: str = "comic", ext: str = "png") -> str:
    """prefix-<ms timestamp>-<6 random chars>.ext, unique enough for concurrent writers."""
    rand = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"{prefix}-{int(time.time() * 1000)}-{rand}.{ext}"


def character_descriptions(characters: Sequence) -> str:
    return ", ".join(f"{c.name} ({c.role}): {c.appearance}" for c in characters)


def build_comic_prompt(story_title: str, story_description: str, characters: Sequence) -> str:
    return fill(
        COMIC_PAGE_TEMPLATE,
        story_title=story_title,
        story_description=story_description,
        character_descriptions=character_descriptions(characters),
    ).strip()

# --- Simple prompt logger (log + optional file) ---


class PromptLogger:
    def __init__(self, out_file: Optional[Path] = None):
        self.out_file = out_file
        self.lines: List[str] = []

    def log(self, title: str, content: str):
        block = f"\n===== {title} =====\n{content.strip()}\n"
        self.lines.append(block)
        logger.debug(block)

    def flush(self):
        """Append pending blocks to ``out_file``; the buffer is cleared either way."""
        lines, self.lines = self.lines, []
        if self.out_file is None or not lines:
            return
        ensure_dir(self.out_file.parent)
        with self.out_file.open("a", encoding="utf-8") as f:
            f.write("".join(lines))

# ------------------ FAL WRAPPER -------------------


class FalImageClient:
    def __init__(self, api_key: str, model: str, client=None):
        self.model = model
        self.client = client or fal_client.SyncClient(key=api_key)

    def generate_image_url(self, prompt: str) -> str:
        """Text-to-image call; returns the (time-limited) URL of the first image."""
        result = self.client.subscribe(
            self.model,
            arguments={
                "prompt": prompt,
                "num_images": 1,
                "output_format": "png"
            },
            with_logs=True,
        )
        images = (result or {}).get("images") or []
        if not images:
            raise RuntimeError("Fal API returned no images")
        url = images[0].get("url")
        if not url:
            raise RuntimeError("Fal API returned no image URL")
        return url

# ------------------ ACQUISITION -------------------


class ComicImageGenerator:
    """Builds the comic prompt, calls the provider once and stores the result locally."""

    def __init__(self, settings: Settings, image_client: Optional[FalImageClient] = None,
                 http=None, prompt_logger: Optional[PromptLogger] = None):
        self.settings = settings
        self.image_client = image_client
        if self.image_client is None and settings.image_generation_enabled:
            self.image_client = FalImageClient(settings.fal_key.strip(), settings.fal_image_model)
        self.http = http or requests.Session()
        self.prompt_logger = prompt_logger or PromptLogger(settings.prompt_log)
        if settings.image_generation_enabled:
            logger.info(f"Image API key found, using {settings.fal_image_model}")
        else:
            logger.warning("No image API key found or it's commented out. Will use default image.")

    def generate(self, story_title: str, story_description: str, characters: Sequence) -> GeneratedImage:
        prompt = build_comic_prompt(story_title, story_description, characters)

        if not self.settings.image_generation_enabled:
            logger.info("Image API key is commented out or missing. Using default example image.")
            return GeneratedImage(url=FALLBACK_IMAGE_URL, prompt=f"{FALLBACK_NOTE}\n\n{prompt}")

        self.prompt_logger.log("COMIC_PAGE_PROMPT", prompt)
        try:
            self.prompt_logger.flush()
        except OSError as e:
            logger.warning(f"Could not write prompt log: {e}")
        try:
            remote_url = self.image_client.generate_image_url(prompt)
        except Exception as e:
            logger.error(f"Failed to generate comic image: {e}")
            raise ImageGenerationError(f"Failed to generate comic image: {e}") from e

        return GeneratedImage(url=self.download(remote_url), prompt=prompt)

    def download(self, url: str) -> str:
        """Save a remote image under generated-images; the remote URL is returned if that fails."""
        try:
            response = self.http.get(url, timeout=self.settings.download_timeout)
            response.raise_for_status()
            # Validate that it's actually image data
            img = Image.open(io.BytesIO(response.content))
            ext = FORMAT_EXTENSIONS.get(img.format or "", "png")

            target_dir = self.settings.generated_images_dir
            ensure_dir(target_dir)
            fname = generated_filename("comic", ext)
            (target_dir / fname).write_bytes(response.content)
            logger.info(f"Saved generated comic {img.size} to {target_dir / fname}")
            return f"/{GENERATED_IMAGES}/{fname}"
        except (requests.RequestException, OSError) as e:
            logger.warning(f"Could not store generated image locally, using remote URL: {e}")
            return url
