"""
Overlay models for the comic annotation canvas.

Every overlay shares a ``Transform`` (centre position and selection state)
and carries a kind-specific payload. Overlays know how to:
- report their bounding box in logical canvas coordinates
- hit-test a point against that box
- paint themselves onto a Pillow image at a given pixel multiplier

Text and bubble overlays are distinguished by the ``kind`` field so the
union can be validated and serialised by pydantic.
"""

from functools import lru_cache
from typing import List, Literal, Optional, Tuple
from uuid import uuid4

from PIL import Image, ImageColor, ImageDraw, ImageFont
from pydantic import BaseModel, Field, field_validator

Box = Tuple[float, float, float, float]

# Ratio of line height to font size used for all overlay text
LINE_HEIGHT = 1.16

# Font files tried in order for each family group and (bold, italic) variant
FONT_FILES = {
    "sans": {
        (False, False): ["/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
                         "/System/Library/Fonts/Helvetica.ttc", "arial.ttf"],
        (True, False): ["/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
                        "/System/Library/Fonts/Helvetica.ttc", "arialbd.ttf"],
        (False, True): ["/usr/share/fonts/truetype/dejavu/DejaVuSans-Oblique.ttf",
                        "/System/Library/Fonts/Helvetica.ttc", "ariali.ttf"],
        (True, True): ["/usr/share/fonts/truetype/dejavu/DejaVuSans-BoldOblique.ttf",
                       "/System/Library/Fonts/Helvetica.ttc", "arialbi.ttf"],
    },
    "serif": {
        (False, False): ["/usr/share/fonts/truetype/dejavu/DejaVuSerif.ttf",
                         "/System/Library/Fonts/Times.ttc", "times.ttf"],
        (True, False): ["/usr/share/fonts/truetype/dejavu/DejaVuSerif-Bold.ttf",
                        "/System/Library/Fonts/Times.ttc", "timesbd.ttf"],
        (False, True): ["/usr/share/fonts/truetype/dejavu/DejaVuSerif-Italic.ttf",
                        "/System/Library/Fonts/Times.ttc", "timesi.ttf"],
        (True, True): ["/usr/share/fonts/truetype/dejavu/DejaVuSerif-BoldItalic.ttf",
                       "/System/Library/Fonts/Times.ttc", "timesbi.ttf"],
    },
}

FAMILY_GROUPS = {
    "Arial": "sans",
    "Helvetica": "sans",
    "Verdana": "sans",
    "Comic Sans MS": "sans",
    "Times": "serif",
    "Georgia": "serif",
}


@lru_cache(maxsize=128)
def load_font(family: str, size: int, bold: bool = False, italic: bool = False):
    group = FAMILY_GROUPS.get(family, "sans")
    for font_path in FONT_FILES[group][(bold, italic)]:
        try:
            return ImageFont.truetype(font_path, size)
        except OSError:
            continue
    return ImageFont.load_default(size)


def _split_by_char(word: str, font, max_width: float) -> List[str]:
    pieces, current = [], ""
    for ch in word:
        if current and font.getlength(current + ch) > max_width:
            pieces.append(current)
            current = ch
        else:
            current += ch
    pieces.append(current)
    return pieces


def wrap_text(text: str, font, max_width: float) -> List[str]:
    """
    Wrap text to fit within a maximum width, breaking at word boundaries.
    A single word wider than the limit is broken by character.
    """
    lines = []
    for paragraph in text.split("\n"):
        current_line = ""
        for word in paragraph.split():
            test_line = current_line + (" " if current_line else "") + word
            if font.getlength(test_line) <= max_width:
                current_line = test_line
                continue
            if current_line:
                lines.append(current_line)
                current_line = ""
            if font.getlength(word) <= max_width:
                current_line = word
            else:
                pieces = _split_by_char(word, font, max_width)
                lines.extend(pieces[:-1])
                current_line = pieces[-1]
        if current_line:
            lines.append(current_line)
    return lines


def _check_color(value: str) -> str:
    ImageColor.getrgb(value)
    return value


class Transform(BaseModel):
    x: float = 0.0
    y: float = 0.0
    selected: bool = False


class Stroke(BaseModel):
    color: str = "#FFFFFF"
    width: float = 1.0

    @field_validator("color")
    @classmethod
    def check_color(cls, v: str) -> str:
        return _check_color(v)


class TextStyle(BaseModel):
    fontSize: int = Field(default=20, ge=1, le=400)
    color: str = "#000000"
    fontFamily: str = "Arial"
    weight: Literal["normal", "bold"] = "normal"
    style: Literal["normal", "italic"] = "normal"
    stroke: Optional[Stroke] = None

    @field_validator("color")
    @classmethod
    def check_color(cls, v: str) -> str:
        return _check_color(v)

    def font(self, size: Optional[int] = None, multiplier: float = 1.0):
        px = max(1, round((size or self.fontSize) * multiplier))
        return load_font(self.fontFamily, px, self.weight == "bold", self.style == "italic")


def draw_lines(img: Image.Image, lines: List[str], style: TextStyle, font_size: int,
                center: Tuple[float, float], block_width: float, align: str,
                multiplier: float) -> None:
    """Draw a block of lines whose centre sits at ``center`` (already in pixels)."""
    draw = ImageDraw.Draw(img)
    font = style.font(font_size, multiplier)
    line_height = font_size * LINE_HEIGHT * multiplier
    top = center[1] - line_height * len(lines) / 2
    left = center[0] - block_width / 2
    stroke_width = 0
    stroke_fill = None
    if style.stroke:
        stroke_width = max(1, round(style.stroke.width * multiplier))
        stroke_fill = style.stroke.color

    for i, line in enumerate(lines):
        line_width = font.getlength(line)
        if align == "center":
            x = left + (block_width - line_width) / 2
        else:
            x = left
        draw.text((x, top + i * line_height), line, fill=style.color, font=font,
                  stroke_width=stroke_width, stroke_fill=stroke_fill)


class OverlayBase(BaseModel):
    id: str = Field(default_factory=lambda: uuid4().hex)
    transform: Transform = Field(default_factory=Transform)

    def bounds(self) -> Box:
        raise NotImplementedError

    def hit_test(self, x: float, y: float) -> bool:
        left, top, right, bottom = self.bounds()
        return left <= x <= right and top <= y <= bottom

    def move_to(self, x: float, y: float) -> None:
        self.transform.x = x
        self.transform.y = y

    def paint(self, img: Image.Image, multiplier: float = 1.0) -> None:
        raise NotImplementedError


class TextOverlay(OverlayBase):
    kind: Literal["text"] = "text"
    content: str
    style: TextStyle = Field(default_factory=TextStyle)

    @property
    def lines(self) -> List[str]:
        return self.content.split("\n")

    def _block_size(self, multiplier: float = 1.0) -> Tuple[float, float]:
        font = self.style.font(multiplier=multiplier)
        width = max(font.getlength(line) for line in self.lines)
        height = self.style.fontSize * LINE_HEIGHT * multiplier * len(self.lines)
        return width, height

    def bounds(self) -> Box:
        w, h = self._block_size()
        x, y = self.transform.x, self.transform.y
        return (x - w / 2, y - h / 2, x + w / 2, y + h / 2)

    def paint(self, img: Image.Image, multiplier: float = 1.0) -> None:
        w, _ = self._block_size(multiplier)
        center = (self.transform.x * multiplier, self.transform.y * multiplier)
        draw_lines(img, self.lines, self.style, self.style.fontSize, center, w, "left", multiplier)
