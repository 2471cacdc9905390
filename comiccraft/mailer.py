# mailer.py
import base64
import binascii
import html
import logging
import mimetypes
import re
from pathlib import Path
from typing import List, Optional

import requests
from pydantic import BaseModel
from python_http_client.exceptions import HTTPError
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import (
    Attachment,
    Cc,
    ContentId,
    Disposition,
    FileContent,
    FileName,
    FileType,
    Mail,
)

from .config import FALLBACK_IMAGE_NAME, GENERATED_IMAGES, Settings
from .errors import EmailDeliveryError
from .main import ensure_dir, fill, generated_filename, safe_path
from .models import CharacterSketch, ComicEmail

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).parent / "templates"
EMAIL_TEMPLATE = (TEMPLATES_DIR / "comic_email.html").read_text(encoding="utf-8")

IMAGE_CID = "comic-image"
DATA_URI_RE = re.compile(r"^data:image/([^;,]+)(;base64)?,(.*)$", re.DOTALL)

CHARACTER_CARD = """
    <div style="margin-bottom: 15px; padding: 10px; background-color: white; border-radius: 5px;">
      <h4 style="margin: 0; color: #333;">{name}</h4>
      <p style="margin: 5px 0;"><strong>Appearance:</strong> {appearance}</p>
      <p style="margin: 5px 0;"><strong>Personality:</strong> {personality}</p>
      <p style="margin: 5px 0;"><strong>Role:</strong> {role}</p>
    </div>"""


class DeliveryResult(BaseModel):
    success: bool
    messageId: str


class SendGridTransport:
    """Sends a prepared Mail; returns SendGrid's message id."""

    def __init__(self, api_key: Optional[str], client=None):
        self.client = client or SendGridAPIClient(api_key)

    def send(self, message: Mail) -> str:
        response = self.client.send(message)
        headers = getattr(response, "headers", None) or {}
        return headers.get("X-Message-Id", "")


def attachment_filename(story_title: str) -> str:
    return f"{re.sub(r'[^a-zA-Z0-9]', '_', story_title)}_comic.png"


def email_subject(data: ComicEmail) -> str:
    # Header values stay on one line
    child = " ".join(data.childName.split())
    title = " ".join(data.storyTitle.split())
    return f"🎨 {child}'s New Comic: \"{title}\""


def cc_addresses(data: ComicEmail, admin_email: Optional[str]) -> List[str]:
    """Child and admin copies, skipping blanks and repeats of an earlier recipient."""
    seen = {data.parentEmail.lower()}
    out = []
    for addr in (data.childEmail, admin_email):
        if addr and addr.lower() not in seen:
            seen.add(addr.lower())
            out.append(addr)
    return out


def image_mime(path: Path) -> str:
    mime, _ = mimetypes.guess_type(path.name)
    if not mime or not mime.startswith("image/"):
        mime = "image/png"
    return mime


def render_characters(characters: List[CharacterSketch]) -> str:
    return "".join(
        fill(CHARACTER_CARD,
             name=html.escape(c.name),
             appearance=html.escape(c.appearance),
             personality=html.escape(c.personality),
             role=html.escape(c.role))
        for c in characters
    )


def render_email_html(data: ComicEmail) -> str:
    return fill(
        EMAIL_TEMPLATE,
        story_title=html.escape(data.storyTitle),
        story_description=html.escape(data.storyDescription),
        child_name=html.escape(data.childName),
        characters_html=render_characters(data.characters),
        image_cid=IMAGE_CID,
    )


def render_email_text(data: ComicEmail) -> str:
    lines = [
        "New Comic Created!",
        "",
        f"Title: {data.storyTitle}",
        f"Description: {data.storyDescription}",
        f"Created by: {data.childName}",
        "",
        "Characters:",
    ]
    lines += [f"- {c.name} ({c.role}): {c.appearance}" for c in data.characters]
    lines += ["", "The comic image is attached to this email."]
    return "\n".join(lines)


class ComicMailer:
    def __init__(self, settings: Settings, transport=None, http=None):
        self.settings = settings
        self.transport = transport or SendGridTransport(settings.sendgrid_api_key)
        self.http = http or requests.Session()

    # ---- image resolution ----

    def resolve_attachment(self, image_url: str) -> Optional[Path]:
        """Find a local file for ``image_url``; inline data is written to a new file first."""
        s = self.settings
        if image_url.startswith(f"/{GENERATED_IMAGES}/"):
            filename = Path(image_url).name
            persistent = safe_path(s.generated_images_dir, filename)
            if persistent:
                logger.info(f"Using persistent comic image: {persistent}")
                return persistent
            temporary = safe_path(s.dist_generated_images_dir, filename)
            if temporary:
                logger.info(f"Using temporary comic image: {temporary}")
                return temporary
            logger.warning(f"Comic image not found in either location: "
                           f"{s.generated_images_dir / filename} or {s.dist_generated_images_dir / filename}")
            return None

        if image_url.startswith("/"):
            rel = image_url.lstrip("/")
            if rel == FALLBACK_IMAGE_NAME and s.fallback_image_path.is_file():
                logger.info(f"Using default example image: {s.fallback_image_path}")
                return s.fallback_image_path
            for root in (s.public_dir, s.dist_dir):
                found = safe_path(root, rel)
                if found and found.is_file():
                    logger.info(f"Using static image: {found}")
                    return found
            logger.warning(f"Static image not found in either location: "
                           f"{s.public_dir / rel} or {s.dist_dir / rel}")
            return None

        if image_url.startswith("data:image/"):
            return self.save_data_uri(image_url)

        logger.warning(f"Unexpected imageUrl format: {image_url[:80]}")
        return None

    def save_data_uri(self, uri: str) -> Optional[Path]:
        match = DATA_URI_RE.match(uri)
        if not match or not match.group(2):
            logger.error("Failed to save base64 image: not a base64 data URI")
            return None
        fmt = match.group(1).split("+")[0]
        try:
            payload = base64.b64decode(match.group(3), validate=True)
            target_dir = self.settings.generated_images_dir
            ensure_dir(target_dir)
            path = target_dir / generated_filename("comic", fmt)
            path.write_bytes(payload)
        except (binascii.Error, ValueError, OSError) as e:
            logger.error(f"Failed to save base64 image: {e}")
            return None
        logger.info(f"Saved base64 image to: {path}")
        return path

    def remote_url(self, image_url: str) -> Optional[str]:
        if image_url.startswith(("http://", "https://")):
            return image_url
        if image_url.startswith("/"):
            return f"{self.settings.public_base_url.rstrip('/')}{image_url}"
        return None

    # ---- message ----

    def build_message(self, data: ComicEmail) -> Mail:
        s = self.settings
        message = Mail(
            from_email=s.email_user or "no-reply@localhost",
            to_emails=data.parentEmail,
            subject=email_subject(data),
            plain_text_content=render_email_text(data),
            html_content=render_email_html(data),
        )
        for addr in cc_addresses(data, s.admin_email):
            message.add_cc(Cc(addr))

        filename = attachment_filename(data.storyTitle)
        path = self.resolve_attachment(data.imageUrl)
        if path and path.is_file():
            logger.info(f"Adding comic image attachment: {path}")
            message.attachment = Attachment(
                FileContent(base64.b64encode(path.read_bytes()).decode()),
                FileName(filename),
                FileType(image_mime(path)),
                Disposition("inline"),
                ContentId(IMAGE_CID),
            )
        else:
            self._attach_remote(message, data.imageUrl, filename)
        return message

    def _attach_remote(self, message: Mail, image_url: str, filename: str) -> None:
        """Fetch the image over HTTP and attach it; a failed fetch only loses the attachment."""
        url = self.remote_url(image_url)
        if not url:
            logger.warning("Comic image file not found for attachment and no remote URL available")
            return
        logger.warning(f"Comic image file not found locally, attaching from remote URL (less reliable): {url}")
        try:
            response = self.http.get(url, timeout=self.settings.download_timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.warning(f"Could not fetch remote comic image: {e}")
            return
        mime = response.headers.get("Content-Type", "image/png").split(";")[0]
        if not mime.startswith("image/"):
            mime = "image/png"
        message.attachment = Attachment(
            FileContent(base64.b64encode(response.content).decode()),
            FileName(filename),
            FileType(mime),
            Disposition("attachment"),
        )

    def send(self, data: ComicEmail) -> DeliveryResult:
        message = self.build_message(data)
        try:
            message_id = self.transport.send(message)
        except (HTTPError, OSError) as e:
            logger.error(f"Email sending failed: {e}")
            raise EmailDeliveryError(f"Failed to send email: {e}") from e
        logger.info(f"Email sent successfully: {message_id}")
        return DeliveryResult(success=True, messageId=message_id or "")
