# bubbles.py
from dataclasses import dataclass, field
from typing import Dict, List, Literal, Optional, Tuple

from PIL import Image, ImageDraw
from pydantic import BaseModel, Field

from .overlays import LINE_HEIGHT, Box, OverlayBase, TextStyle, draw_lines, wrap_text

BubbleKind = Literal["speech", "thought", "shout"]

MIN_SCALE = 0.6
MAX_SCALE = 2.0
# Horizontal padding removed from the scaled bubble width before wrapping text
TEXT_PADDING = 60
MIN_TEXT_WIDTH = 80

OUTLINE = "#333333"
FILL = "white"

# ------------------ TEMPLATES ---------------------


@dataclass(frozen=True)
class Shape:
    """One primitive of a bubble template, in template pixel coordinates."""
    kind: Literal["ellipse", "polygon"]
    points: Tuple[float, ...]
    stroke_width: float = 3


@dataclass(frozen=True)
class BubbleTemplate:
    width: float
    height: float
    shapes: Tuple[Shape, ...] = field(default_factory=tuple)

    def paint(self, img: Image.Image, left: float, top: float, scale: float) -> None:
        draw = ImageDraw.Draw(img)
        for shape in self.shapes:
            pts = [(left + shape.points[i] * scale, top + shape.points[i + 1] * scale)
                   for i in range(0, len(shape.points), 2)]
            width = max(1, round(shape.stroke_width * scale))
            if shape.kind == "ellipse":
                (cx, cy), (rx, ry) = pts[0], (shape.points[2] * scale, shape.points[3] * scale)
                draw.ellipse([cx - rx, cy - ry, cx + rx, cy + ry], fill=FILL, outline=OUTLINE, width=width)
            else:
                draw.polygon(pts, fill=FILL, outline=OUTLINE, width=width)


def _ellipse(cx, cy, rx, ry, stroke_width=3) -> Shape:
    # Stored as (cx, cy, rx, ry); only the centre is translated when painting
    return Shape("ellipse", (cx, cy, rx, ry), stroke_width)


def _circle(cx, cy, r, stroke_width=2) -> Shape:
    return _ellipse(cx, cy, r, r, stroke_width)


def _polygon(*points) -> Shape:
    return Shape("polygon", tuple(points))


BUBBLE_TEMPLATES: Dict[str, BubbleTemplate] = {
    "speech": BubbleTemplate(200, 120, (
        _ellipse(100, 50, 90, 40),
        _polygon(70, 85, 60, 110, 90, 90),
    )),
    "thought": BubbleTemplate(180, 100, (
        _ellipse(90, 40, 80, 30),
        _circle(45, 75, 8),
        _circle(30, 85, 5),
        _circle(20, 92, 3),
    )),
    "shout": BubbleTemplate(200, 80, (
        _polygon(20, 20, 30, 10, 50, 15, 60, 5, 80, 10, 90, 2, 110, 8, 130, 3, 150, 10,
                 170, 5, 180, 15, 185, 25, 180, 35, 175, 45, 170, 55, 160, 60, 150, 65,
                 140, 70, 120, 68, 100, 70, 80, 68, 60, 70, 50, 65, 40, 60, 30, 55,
                 25, 45, 20, 35, 15, 25),
        _polygon(60, 65, 50, 85, 45, 75, 40, 90, 35, 80, 80, 70),
    )),
}

# Per-kind text rules: width factor, max font size (None keeps the requested size), vertical offset
TEXT_RULES: Dict[str, Tuple[float, Optional[int], float]] = {
    "speech": (1.0, None, -8),
    "thought": (0.8, 18, -15),
    "shout": (0.7, 22, -5),
}

# ------------------ RULES -------------------------


def bubble_scale(text: str) -> float:
    return min(MAX_SCALE, max(MIN_SCALE, len(text) / 40 + 0.7))


def bubble_text_width(kind: str, scale: float) -> float:
    factor = TEXT_RULES[kind][0]
    width = (BUBBLE_TEMPLATES[kind].width * scale - TEXT_PADDING) * factor
    return max(width, MIN_TEXT_WIDTH)


def bubble_font_size(kind: str, requested: int) -> int:
    limit = TEXT_RULES[kind][1]
    return requested if limit is None else min(requested, limit)


def bubble_text_offset(kind: str) -> Tuple[float, float]:
    return 0.0, TEXT_RULES[kind][2]

# ------------------ OVERLAY -----------------------


class BubbleText(BaseModel):
    content: str
    lines: List[str]
    width: float
    fontSize: int
    offsetX: float = 0.0
    offsetY: float = 0.0
    style: TextStyle = Field(default_factory=TextStyle)


class BubbleOverlay(OverlayBase):
    """A bubble shape and its wrapped text, moved and selected as one unit."""
    kind: Literal["bubble"] = "bubble"
    bubbleKind: BubbleKind
    scale: float
    text: BubbleText

    @property
    def template(self) -> BubbleTemplate:
        return BUBBLE_TEMPLATES[self.bubbleKind]

    def _text_box(self) -> Box:
        t = self.text
        cx = self.transform.x + t.offsetX
        cy = self.transform.y + t.offsetY
        h = t.fontSize * LINE_HEIGHT * len(t.lines)
        return (cx - t.width / 2, cy - h / 2, cx + t.width / 2, cy + h / 2)

    def _shape_box(self) -> Box:
        w = self.template.width * self.scale
        h = self.template.height * self.scale
        x, y = self.transform.x, self.transform.y
        return (x - w / 2, y - h / 2, x + w / 2, y + h / 2)

    def bounds(self) -> Box:
        a, b = self._shape_box(), self._text_box()
        return (min(a[0], b[0]), min(a[1], b[1]), max(a[2], b[2]), max(a[3], b[3]))

    def paint(self, img: Image.Image, multiplier: float = 1.0) -> None:
        left, top, _, _ = self._shape_box()
        self.template.paint(img, left * multiplier, top * multiplier, self.scale * multiplier)
        t = self.text
        center = ((self.transform.x + t.offsetX) * multiplier, (self.transform.y + t.offsetY) * multiplier)
        draw_lines(img, t.lines, t.style, t.fontSize, center, t.width * multiplier, "center", multiplier)

# ------------------ COMPOSER ----------------------


def compose_bubble(kind: BubbleKind, text: str, style: Optional[TextStyle] = None,
                   x: float = 0.0, y: float = 0.0) -> Optional[BubbleOverlay]:
    """
    Build a bubble overlay centred at (x, y).

    Returns None for blank text; callers are expected to check before
    composing, so there is nothing to report.
    """
    if not text or not text.strip():
        return None
    if kind not in BUBBLE_TEMPLATES:
        raise ValueError(f"Unknown bubble kind: {kind}")

    style = style or TextStyle()
    scale = bubble_scale(text)
    width = bubble_text_width(kind, scale)
    font_size = bubble_font_size(kind, style.fontSize)
    offset_x, offset_y = bubble_text_offset(kind)
    lines = wrap_text(text, style.font(font_size), width)

    overlay = BubbleOverlay(
        bubbleKind=kind,
        scale=scale,
        text=BubbleText(content=text, lines=lines, width=width, fontSize=font_size,
                        offsetX=offset_x, offsetY=offset_y, style=style),
    )
    overlay.move_to(x, y)
    return overlay
