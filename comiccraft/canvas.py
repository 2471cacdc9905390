"""
Annotation canvas for generated comic pages.

The canvas holds a background image fitted into a fixed viewport and an
ordered list of overlays (plain text and bubbles) drawn above it. Input
arrives as discrete events (pointer clicks, moves, key presses) and every
handler runs to completion before the next one, so overlays never see
overlapping mutations.

Keyboard shortcuts are bound on a ``Document`` for the lifetime of the
canvas and released by ``dispose()``.
"""

import base64
import logging
from pathlib import Path
from typing import Annotated, Any, Callable, Dict, List, Literal, Optional, Tuple, Union

from PIL import Image, ImageDraw
from pydantic import Field

from .bubbles import BubbleKind, BubbleOverlay, compose_bubble
from .main import image_bytes_to_pil, pil_to_png_bytes
from .overlays import TextOverlay, TextStyle

logger = logging.getLogger(__name__)

VIEWPORT_WIDTH = 800
VIEWPORT_HEIGHT = 600
EXPORT_MULTIPLIER = 2
DELETE_KEYS = {"Delete", "Backspace"}

Tool = Literal["none", "text", "dialogue"]
TOOLS = ("none", "text", "dialogue")

CanvasOverlay = Annotated[Union[TextOverlay, BubbleOverlay], Field(discriminator="kind")]

BackgroundSource = Union[bytes, str, Path, Image.Image, Callable[[], Any]]


class Document:
    """Key event target shared by whatever is bound to it (one per editor session)."""

    def __init__(self):
        self._listeners: Dict[str, List[Callable[[str], Any]]] = {}

    def add_listener(self, event: str, handler: Callable[[str], Any]) -> None:
        self._listeners.setdefault(event, []).append(handler)

    def remove_listener(self, event: str, handler: Callable[[str], Any]) -> None:
        handlers = self._listeners.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    def dispatch(self, event: str, key: str) -> List[Any]:
        return [handler(key) for handler in list(self._listeners.get(event, []))]


def load_background(source: BackgroundSource) -> Image.Image:
    if callable(source) and not isinstance(source, Image.Image):
        source = source()
    if isinstance(source, Image.Image):
        return source.convert("RGBA")
    if isinstance(source, (bytes, bytearray)):
        return image_bytes_to_pil(bytes(source))
    if isinstance(source, (str, Path)):
        with Image.open(source) as img:
            return img.convert("RGBA")
    raise TypeError(f"Unsupported background source: {type(source).__name__}")


def fit_box(img_w: int, img_h: int, view_w: int, view_h: int) -> Tuple[float, float, float, float]:
    """Scale to fit the viewport keeping aspect ratio, centred: (left, top, width, height)."""
    scale = min(view_w / img_w, view_h / img_h)
    w, h = img_w * scale, img_h * scale
    return ((view_w - w) / 2, (view_h - h) / 2, w, h)


class AnnotationCanvas:
    def __init__(self, width: int = VIEWPORT_WIDTH, height: int = VIEWPORT_HEIGHT,
                 document: Optional[Document] = None, background_color: str = "white"):
        self.width = width
        self.height = height
        self.background_color = background_color
        self.background: Optional[Image.Image] = None
        self.background_box: Optional[Tuple[float, float, float, float]] = None
        self.load_error: Optional[str] = None
        self.overlays: List[CanvasOverlay] = []

        self.tool: Tool = "none"
        self.pending_content = ""
        self.bubble_kind: BubbleKind = "speech"
        self.text_style = TextStyle()

        self.preview: Optional[Image.Image] = None
        self.render_count = 0

        self.document = document or Document()
        self._key_handler = self.handle_key
        self.document.add_listener("keydown", self._key_handler)
        self._disposed = False

    @classmethod
    def initialize(cls, source: Optional[BackgroundSource], document: Optional[Document] = None,
                   width: int = VIEWPORT_WIDTH, height: int = VIEWPORT_HEIGHT) -> "AnnotationCanvas":
        """
        Create a canvas with ``source`` as its background.

        A background that cannot be loaded leaves the canvas blank and usable;
        the reason is kept in ``load_error`` for the caller to report.
        """
        canvas = cls(width, height, document)
        if source is not None:
            try:
                canvas.set_background(load_background(source))
            except Exception as e:
                logger.error(f"Failed to load image: {e}")
                canvas.load_error = f"Could not load the comic image for editing: {e}"
        canvas.render()
        return canvas

    # ---- lifecycle ----

    def dispose(self) -> None:
        if self._disposed:
            return
        self.document.remove_listener("keydown", self._key_handler)
        self._disposed = True

    def __enter__(self) -> "AnnotationCanvas":
        return self

    def __exit__(self, *exc) -> None:
        self.dispose()

    # ---- state ----

    def set_background(self, img: Image.Image) -> None:
        previous = (self.background, self.background_box)
        self.background = img
        self.background_box = fit_box(img.width, img.height, self.width, self.height)
        try:
            self.render()
        except Exception:
            self.background, self.background_box = previous
            raise

    def set_active_tool(self, tool: Tool) -> None:
        if tool not in TOOLS:
            raise ValueError(f"Unknown tool: {tool}")
        self.tool = tool

    def set_pending_content(self, text: str) -> None:
        self.pending_content = text or ""

    def set_bubble_kind(self, kind: BubbleKind) -> None:
        self.bubble_kind = kind

    def set_text_style(self, style: TextStyle) -> None:
        self.text_style = style

    @property
    def selected(self) -> Optional[CanvasOverlay]:
        return next((o for o in self.overlays if o.transform.selected), None)

    # ---- input ----

    def handle_click(self, x: float, y: float):
        """Place the pending overlay if a tool is armed, otherwise select what is under the pointer."""
        if self.tool != "none" and self.pending_content.strip():
            return self._place(x, y)
        return self.select_at(x, y)

    def _place(self, x: float, y: float):
        style = self.text_style.model_copy(deep=True)
        if self.tool == "text":
            overlay = TextOverlay(content=self.pending_content, style=style)
            overlay.move_to(x, y)
        else:
            overlay = compose_bubble(self.bubble_kind, self.pending_content, style, x, y)

        # Single shot: the tool disarms after every placement
        self.pending_content = ""
        self.tool = "none"

        self.overlays.append(overlay)
        logger.info(f"Added {overlay.kind} overlay {overlay.id} at ({x:.0f}, {y:.0f})")
        self.render()
        return overlay

    def select_at(self, x: float, y: float):
        hit = next((o for o in reversed(self.overlays) if o.hit_test(x, y)), None)
        for o in self.overlays:
            o.transform.selected = o is hit
        self.render()
        return hit

    def move_selected(self, x: float, y: float) -> bool:
        overlay = self.selected
        if overlay is None:
            return False
        overlay.move_to(x, y)
        self.render()
        return True

    def move_by(self, dx: float, dy: float) -> bool:
        overlay = self.selected
        if overlay is None:
            return False
        return self.move_selected(overlay.transform.x + dx, overlay.transform.y + dy)

    def delete_selected(self) -> bool:
        overlay = self.selected
        if overlay is None:
            return False
        self.overlays.remove(overlay)
        logger.info(f"Deleted {overlay.kind} overlay {overlay.id}")
        self.render()
        return True

    def handle_key(self, key: str) -> bool:
        if key in DELETE_KEYS:
            return self.delete_selected()
        return False

    # ---- rendering ----

    def compose(self, multiplier: float = 1.0, show_selection: bool = False) -> Image.Image:
        size = (round(self.width * multiplier), round(self.height * multiplier))
        img = Image.new("RGB", size, self.background_color)

        if self.background is not None:
            left, top, w, h = self.background_box
            # Very thin images still cover at least one pixel
            size_px = (max(1, round(w * multiplier)), max(1, round(h * multiplier)))
            scaled = self.background.resize(size_px, resample=Image.LANCZOS)
            img.paste(scaled, (round(left * multiplier), round(top * multiplier)), scaled)

        for overlay in self.overlays:
            overlay.paint(img, multiplier)

        if show_selection and self.selected is not None:
            l, t, r, b = (v * multiplier for v in self.selected.bounds())
            ImageDraw.Draw(img).rectangle([l - 2, t - 2, r + 2, b + 2], outline="#1e90ff", width=2)
        return img

    def render(self) -> Image.Image:
        self.preview = self.compose(1.0, show_selection=True)
        self.render_count += 1
        return self.preview

    def to_state(self) -> Dict[str, Any]:
        box = None
        if self.background_box is not None:
            left, top, w, h = self.background_box
            box = {"left": left, "top": top, "width": w, "height": h}
        selected = self.selected
        return {
            "width": self.width,
            "height": self.height,
            "tool": self.tool,
            "pendingContent": self.pending_content,
            "bubbleKind": self.bubble_kind,
            "textStyle": self.text_style.model_dump(),
            "loadError": self.load_error,
            "background": box,
            "overlays": [o.model_dump() for o in self.overlays],
            "selectedId": selected.id if selected else None,
        }

# ------------------ EXPORT ------------------------


def flatten(canvas: AnnotationCanvas, multiplier: float = EXPORT_MULTIPLIER) -> Image.Image:
    """Background plus overlays as one bitmap, without selection marks."""
    return canvas.compose(multiplier, show_selection=False)


def flatten_png(canvas: AnnotationCanvas, multiplier: float = EXPORT_MULTIPLIER) -> bytes:
    return pil_to_png_bytes(flatten(canvas, multiplier))


def to_data_uri(png: bytes, mime: str = "image/png") -> str:
    return f"data:{mime};base64,{base64.b64encode(png).decode('utf-8')}"
