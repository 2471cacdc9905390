"""ComicCraft: story-driven comic pages for kids, with annotation and email delivery."""

__version__ = "0.1.0"
