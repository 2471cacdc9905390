# server.py
import base64
import binascii
import io
import logging
import re
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests
from flask import Flask, jsonify, request, send_file
from pydantic import ValidationError

from . import __version__
from .canvas import TOOLS, AnnotationCanvas, Document, flatten_png, to_data_uri
from .config import FALLBACK_IMAGE_NAME, GENERATED_IMAGES, Settings
from .errors import ComicCraftError
from .logging_config import setup_logging
from .mailer import ComicMailer, attachment_filename
from .main import ComicImageGenerator, safe_path
from .models import (
    CharacterCreate,
    CharacterSketch,
    CharacterUpdate,
    ComicCreate,
    ComicEmail,
    ComicEmailRequest,
    ComicRequest,
    StoryCreate,
    StoryUpdate,
    is_email,
)
from .overlays import TextStyle
from .storage import MemStorage

logger = logging.getLogger(__name__)

BUBBLE_KINDS = ("speech", "thought", "shout")
EMAIL_FIELDS = ["childName", "parentEmail", "storyTitle", "storyDescription", "characters"]
DATA_URI_RE = re.compile(r"^data:image/[^;,]+;base64,(.*)$", re.DOTALL)


class BadRequest(Exception):
    """Rejected input; carries the message returned with the 400."""


class SessionNotFound(Exception):
    pass


# ------------------ REQUEST HELPERS ---------------


def body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return {}
    return data


def require_fields(data: Dict[str, Any], fields: List[str]) -> None:
    missing = [f for f in fields if data.get(f) is None or data.get(f) == ""]
    if missing:
        raise BadRequest(f"Missing required fields: {', '.join(missing)}")


def check_recipients(data: Dict[str, Any]) -> None:
    if not is_email(data.get("parentEmail")):
        raise BadRequest("Invalid parent email format")
    if data.get("childEmail") and not is_email(data.get("childEmail")):
        raise BadRequest("Invalid child email format")


def check_characters(data: Dict[str, Any]) -> None:
    characters = data.get("characters")
    if not isinstance(characters, list) or not characters:
        raise BadRequest("At least one character is required")


def email_request(data: Dict[str, Any]) -> ComicEmailRequest:
    """Everything an email endpoint needs, checked before any work starts."""
    require_fields(data, EMAIL_FIELDS)
    check_characters(data)
    check_recipients(data)
    return ComicEmailRequest.model_validate({
        "childName": data["childName"],
        "childEmail": data.get("childEmail") or None,
        "parentEmail": data["parentEmail"],
        "storyTitle": data["storyTitle"],
        "storyDescription": data["storyDescription"],
        "characters": data["characters"],
    })


def point(data: Dict[str, Any]):
    try:
        return float(data["x"]), float(data["y"])
    except (KeyError, TypeError, ValueError):
        raise BadRequest("x and y must be numbers")


def upstream_error(prefix: str, e: Exception):
    logger.error(f"{prefix}: {e}")
    return jsonify({"success": False, "message": f"{prefix}: {e}"}), 500

# ------------------ EDITOR SESSIONS ---------------


class EditorSession:
    def __init__(self, canvas: AnnotationCanvas, meta: Dict[str, Any], now: float = 0.0):
        self.id = uuid.uuid4().hex
        self.canvas = canvas
        self.meta = meta
        self.lock = threading.Lock()
        self.last_used = now

    @property
    def document(self) -> Document:
        return self.canvas.document

    def state(self) -> Dict[str, Any]:
        return {"sessionId": self.id, "meta": self.meta, **self.canvas.to_state()}


class EditorSessions:
    """Open annotation canvases keyed by session id.

    Sessions idle for longer than ``idle_timeout`` seconds are closed, and the
    least recently used one is closed when opening would exceed ``max_sessions``.
    """

    def __init__(self, max_sessions: int = 50, idle_timeout: float = 1800.0, clock=time.monotonic):
        self.max_sessions = max(1, max_sessions)
        self.idle_timeout = idle_timeout
        self.clock = clock
        self._sessions: Dict[str, EditorSession] = {}
        self._lock = threading.Lock()

    def _evict(self, reserve: int = 0) -> List[EditorSession]:
        # Caller holds self._lock
        now = self.clock()
        evicted = [s for s in self._sessions.values() if now - s.last_used > self.idle_timeout]
        for s in evicted:
            del self._sessions[s.id]
        while self._sessions and len(self._sessions) + reserve > self.max_sessions:
            oldest = min(self._sessions.values(), key=lambda s: s.last_used)
            del self._sessions[oldest.id]
            evicted.append(oldest)
        return evicted

    @staticmethod
    def _dispose(evicted: List[EditorSession]) -> None:
        for session in evicted:
            session.canvas.dispose()
            logger.info(f"Evicted editor session {session.id}")

    def open(self, canvas: AnnotationCanvas, meta: Dict[str, Any]) -> EditorSession:
        with self._lock:
            evicted = self._evict(reserve=1)
            session = EditorSession(canvas, meta, now=self.clock())
            self._sessions[session.id] = session
        self._dispose(evicted)
        logger.info(f"Opened editor session {session.id}")
        return session

    def get(self, sid: str) -> Optional[EditorSession]:
        with self._lock:
            evicted = self._evict()
            session = self._sessions.get(sid)
            if session is not None:
                session.last_used = self.clock()
        self._dispose(evicted)
        return session

    def close(self, sid: str) -> bool:
        with self._lock:
            session = self._sessions.pop(sid, None)
        if session is None:
            return False
        session.canvas.dispose()
        logger.info(f"Closed editor session {sid}")
        return True

    def __len__(self) -> int:
        return len(self._sessions)


def editor_image_loader(settings: Settings, http, image_url: str):
    """Deferred loader for the editor background; raises if the image cannot be found."""

    def load():
        if image_url.startswith(f"/{GENERATED_IMAGES}/"):
            name = image_url.rsplit("/", 1)[-1]
            for root in (settings.generated_images_dir, settings.dist_generated_images_dir):
                found = safe_path(root, name)
                if found:
                    return found
            raise FileNotFoundError(f"Image not found: {image_url}")
        if image_url == f"/{FALLBACK_IMAGE_NAME}" and settings.fallback_image_path.is_file():
            return settings.fallback_image_path
        if image_url.startswith("/"):
            for root in (settings.public_dir, settings.dist_dir):
                found = safe_path(root, image_url.lstrip("/"))
                if found and found.is_file():
                    return found
            raise FileNotFoundError(f"Image not found: {image_url}")
        match = DATA_URI_RE.match(image_url)
        if match:
            try:
                return base64.b64decode(match.group(1), validate=True)
            except binascii.Error as e:
                raise ValueError(f"Invalid image data: {e}") from e
        response = http.get(image_url, timeout=settings.download_timeout)
        response.raise_for_status()
        return response.content

    return load

# ------------------ APP FACTORY -------------------


def create_app(settings: Optional[Settings] = None,
               storage: Optional[MemStorage] = None,
               generator: Optional[ComicImageGenerator] = None,
               mailer: Optional[ComicMailer] = None,
               http=None) -> Flask:
    settings = settings or Settings.from_env()
    storage = storage or MemStorage()
    generator = generator or ComicImageGenerator(settings)
    mailer = mailer or ComicMailer(settings)
    http = http or requests.Session()
    sessions = EditorSessions(settings.editor_max_sessions, settings.editor_idle_timeout)
    started = time.monotonic()

    app = Flask(__name__, static_folder=None)
    app.extensions["comiccraft"] = {
        "settings": settings,
        "storage": storage,
        "generator": generator,
        "mailer": mailer,
        "sessions": sessions,
    }

    @app.errorhandler(BadRequest)
    def handle_bad_request(e: BadRequest):
        return jsonify({"message": str(e)}), 400

    @app.errorhandler(ValidationError)
    def handle_validation_error(e: ValidationError):
        return jsonify({"message": f"Validation error: {e}"}), 400

    # ---- health & images ----

    @app.route("/health")
    def health():
        return jsonify({
            "status": "OK",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime": time.monotonic() - started,
            "environment": settings.environment,
            "version": settings.version if settings.version != "unknown" else __version__,
        })

    @app.route(f"/{FALLBACK_IMAGE_NAME}")
    def fallback_image():
        p = settings.fallback_image_path
        if not p.is_file():
            return jsonify({"error": "Image not found", "path": str(p)}), 404
        return send_file(str(p))

    def serve_generated(filename: str):
        for root in (settings.generated_images_dir, settings.dist_generated_images_dir):
            p = safe_path(root, filename)
            if p and p.is_file():
                return send_file(str(p))
        path = settings.generated_images_dir / filename
        logger.warning(f"Image not found: {path}")
        return jsonify({"error": "Image not found", "path": str(path)}), 404

    app.add_url_rule(f"/{GENERATED_IMAGES}/<path:filename>", "generated_image", serve_generated)
    app.add_url_rule("/api/images/<path:filename>", "api_image", serve_generated)

    # ---- characters ----

    @app.route("/api/characters", methods=["GET"])
    def list_characters():
        return jsonify([c.model_dump() for c in storage.get_characters()])

    @app.route("/api/characters/<int:id>", methods=["GET"])
    def get_character(id: int):
        character = storage.get_character(id)
        if character is None:
            return jsonify({"message": "Character not found"}), 404
        return jsonify(character.model_dump())

    @app.route("/api/characters", methods=["POST"])
    def create_character():
        character = storage.create_character(CharacterCreate.model_validate(body()))
        logger.info(f"Created character {character.id}: {character.name}")
        return jsonify(character.model_dump()), 201

    @app.route("/api/characters/<int:id>", methods=["PUT"])
    def update_character(id: int):
        character = storage.update_character(id, CharacterUpdate.model_validate(body()))
        if character is None:
            return jsonify({"message": "Character not found"}), 404
        return jsonify(character.model_dump())

    @app.route("/api/characters/<int:id>", methods=["DELETE"])
    def delete_character(id: int):
        if not storage.delete_character(id):
            return jsonify({"message": "Character not found"}), 404
        return "", 204

    # ---- stories ----

    @app.route("/api/stories", methods=["GET"])
    def list_stories():
        return jsonify([s.model_dump() for s in storage.get_stories()])

    @app.route("/api/stories/<int:id>", methods=["GET"])
    def get_story(id: int):
        story = storage.get_story_with_characters(id)
        if story is None:
            return jsonify({"message": "Story not found"}), 404
        return jsonify(story.model_dump())

    @app.route("/api/stories", methods=["POST"])
    def create_story():
        story = storage.create_story(StoryCreate.model_validate(body()))
        logger.info(f"Created story {story.id}: {story.title}")
        return jsonify(story.model_dump()), 201

    @app.route("/api/stories/<int:id>", methods=["PUT"])
    def update_story(id: int):
        story = storage.update_story(id, StoryUpdate.model_validate(body()))
        if story is None:
            return jsonify({"message": "Story not found"}), 404
        return jsonify(story.model_dump())

    @app.route("/api/stories/<int:id>", methods=["DELETE"])
    def delete_story(id: int):
        if not storage.delete_story(id):
            return jsonify({"message": "Story not found"}), 404
        return "", 204

    # ---- comics ----

    @app.route("/api/comics", methods=["GET"])
    def list_comics():
        return jsonify([c.model_dump() for c in storage.get_comics()])

    @app.route("/api/comics/story/<int:story_id>", methods=["GET"])
    def list_story_comics(story_id: int):
        return jsonify([c.model_dump() for c in storage.get_comics_by_story(story_id)])

    @app.route("/api/comics/generate", methods=["POST"])
    def generate_comic():
        data = body()
        if "storyId" in data:
            try:
                story_id = int(data["storyId"])
            except (TypeError, ValueError):
                raise BadRequest("Story ID is required")
            story = storage.get_story_with_characters(story_id)
            if story is None:
                return jsonify({"message": "Story not found"}), 404
            try:
                image = generator.generate(story.title, story.description, story.characters)
            except ComicCraftError as e:
                return upstream_error("Failed to generate comic", e)
            comic = storage.create_comic(ComicCreate(storyId=story.id, imageUrl=image.url, prompt=image.prompt))
            return jsonify(comic.model_dump()), 201

        if (not data.get("storyTitle") or not data.get("storyDescription")
                or not isinstance(data.get("characters"), list) or not data["characters"]):
            raise BadRequest("Story title, description, and characters are required")
        story = ComicRequest.model_validate({
            "storyTitle": data["storyTitle"],
            "storyDescription": data["storyDescription"],
            "characters": data["characters"],
        })
        try:
            image = generator.generate(story.storyTitle, story.storyDescription, story.characters)
        except ComicCraftError as e:
            return upstream_error("Failed to generate comic", e)
        return jsonify({"success": True, "imageUrl": image.url, "prompt": image.prompt}), 201

    @app.route("/api/test-image-provider", methods=["GET"])
    def test_image_provider():
        try:
            image = generator.generate(
                "Test Story",
                "This is a test to verify the image API key is working",
                [CharacterSketch(name="Test Character", appearance="A friendly character with blue clothes",
                                 personality="Helpful and kind", role="Main character")],
            )
        except ComicCraftError as e:
            logger.error(f"Image provider test failed: {e}")
            return jsonify({"success": False, "message": "Image provider test failed", "error": str(e)}), 500
        return jsonify({"success": True, "message": "Image provider is working!", "imageUrl": image.url})

    def generate_and_email():
        req = email_request(body())

        logger.info(f"Generating comic for {req.childName}: {req.storyTitle}")
        try:
            image = generator.generate(req.storyTitle, req.storyDescription, req.characters)
            result = mailer.send(ComicEmail(**req.model_dump(), imageUrl=image.url))
        except ComicCraftError as e:
            return upstream_error("Failed to generate comic and send email", e)

        return jsonify({
            "success": True,
            "message": "Comic generated and email sent successfully!",
            "data": {
                "imageUrl": image.url,
                "prompt": image.prompt,
                "emailSent": result.success,
                "messageId": result.messageId,
            },
        }), 201

    app.add_url_rule("/api/comics/generate-and-email", "generate_and_email",
                     generate_and_email, methods=["POST"])
    app.add_url_rule("/api/comics/generate-and-email-v2", "generate_and_email_v2",
                     generate_and_email, methods=["POST"])

    @app.route("/api/comics/email", methods=["POST"])
    def email_comic():
        data = body()
        require_fields(data, EMAIL_FIELDS + ["imageUrl"])
        req = email_request(data)
        email = ComicEmail(**req.model_dump(), imageUrl=data["imageUrl"])
        try:
            result = mailer.send(email)
        except ComicCraftError as e:
            return upstream_error("Failed to send comic email", e)
        return jsonify({
            "success": True,
            "message": "Comic emailed successfully!",
            "emailSent": result.success,
            "messageId": result.messageId,
        })

    # ---- editor ----

    def session_or_404(sid: str) -> EditorSession:
        session = sessions.get(sid)
        if session is None:
            raise SessionNotFound(sid)
        return session

    @app.errorhandler(SessionNotFound)
    def handle_missing_session(e: SessionNotFound):
        return jsonify({"message": "Editor session not found"}), 404

    @app.route("/api/editor/sessions", methods=["POST"])
    def open_session():
        data = body()
        require_fields(data, ["imageUrl"])
        if not isinstance(data["imageUrl"], str):
            raise BadRequest("imageUrl must be a string")
        canvas = AnnotationCanvas.initialize(editor_image_loader(settings, http, data["imageUrl"]))
        # Inline image data stays out of the session metadata
        meta = {k: v for k, v in data.items() if k != "imageUrl" or not str(v).startswith("data:")}
        session = sessions.open(canvas, meta)
        return jsonify(session.state()), 201

    @app.route("/api/editor/sessions/<sid>", methods=["GET"])
    def session_state(sid: str):
        session = session_or_404(sid)
        with session.lock:
            return jsonify(session.state())

    @app.route("/api/editor/sessions/<sid>", methods=["DELETE"])
    def close_session(sid: str):
        if not sessions.close(sid):
            return jsonify({"message": "Editor session not found"}), 404
        return "", 204

    @app.route("/api/editor/sessions/<sid>/tool", methods=["POST"])
    def set_tool(sid: str):
        session = session_or_404(sid)
        data = body()
        tool = data.get("tool", session.canvas.tool)
        if tool not in TOOLS:
            raise BadRequest(f"Unknown tool: {tool}")
        kind = data.get("bubbleKind")
        if kind is not None and kind not in BUBBLE_KINDS:
            raise BadRequest(f"Unknown bubble kind: {kind}")
        style = TextStyle.model_validate(data["style"]) if data.get("style") else None

        with session.lock:
            canvas = session.canvas
            canvas.set_active_tool(tool)
            if "content" in data:
                canvas.set_pending_content(data.get("content") or "")
            if kind is not None:
                canvas.set_bubble_kind(kind)
            if style is not None:
                canvas.set_text_style(style)
            return jsonify(session.state())

    @app.route("/api/editor/sessions/<sid>/click", methods=["POST"])
    def click(sid: str):
        session = session_or_404(sid)
        x, y = point(body())
        with session.lock:
            overlay = session.canvas.handle_click(x, y)
            return jsonify({
                "overlay": overlay.model_dump() if overlay is not None else None,
                "state": session.state(),
            })

    @app.route("/api/editor/sessions/<sid>/move", methods=["POST"])
    def move(sid: str):
        """Absolute ``{x, y}`` or relative ``{dx, dy}`` move of the selection."""
        session = session_or_404(sid)
        data = body()
        if "dx" in data or "dy" in data:
            try:
                dx, dy = float(data.get("dx", 0)), float(data.get("dy", 0))
            except (TypeError, ValueError):
                raise BadRequest("dx and dy must be numbers")
            with session.lock:
                moved = session.canvas.move_by(dx, dy)
                return jsonify({"moved": moved, "state": session.state()})
        x, y = point(data)
        with session.lock:
            moved = session.canvas.move_selected(x, y)
            return jsonify({"moved": moved, "state": session.state()})

    @app.route("/api/editor/sessions/<sid>/keys", methods=["POST"])
    def keys(sid: str):
        session = session_or_404(sid)
        key = body().get("key")
        if not key:
            raise BadRequest("Missing required fields: key")
        with session.lock:
            handled = any(session.document.dispatch("keydown", key))
            return jsonify({"handled": handled, "state": session.state()})

    @app.route("/api/editor/sessions/<sid>/selected", methods=["DELETE"])
    def delete_selected(sid: str):
        session = session_or_404(sid)
        with session.lock:
            deleted = session.canvas.delete_selected()
            return jsonify({"deleted": deleted, "state": session.state()})

    @app.route("/api/editor/sessions/<sid>/export", methods=["GET"])
    def export(sid: str):
        session = session_or_404(sid)
        with session.lock:
            png = flatten_png(session.canvas)
        title = session.meta.get("storyTitle") or "comic"
        return send_file(io.BytesIO(png), mimetype="image/png", as_attachment=True,
                         download_name=attachment_filename(title))

    @app.route("/api/editor/sessions/<sid>/email", methods=["POST"])
    def email_session(sid: str):
        session = session_or_404(sid)
        data = {**session.meta, **body()}
        data.pop("imageUrl", None)
        req = email_request(data)

        with session.lock:
            png = flatten_png(session.canvas)
        try:
            result = mailer.send(ComicEmail(**req.model_dump(), imageUrl=to_data_uri(png)))
        except ComicCraftError as e:
            return upstream_error("Failed to send comic email", e)
        return jsonify({
            "success": True,
            "message": "Comic emailed successfully!",
            "emailSent": result.success,
            "messageId": result.messageId,
        })

    return app


def main():
    settings = Settings.from_env()
    setup_logging(settings.log_level)
    app = create_app(settings)
    logger.info(f"Starting ComicCraft on {settings.host}:{settings.port} ({settings.environment})")
    app.run(host=settings.host, port=settings.port,
            debug=settings.environment == "development", threaded=True)


if __name__ == "__main__":
    main()
