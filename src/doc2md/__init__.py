"""doc2md: Word documents to Markdown with frontmatter."""

from .version import __version__

__all__ = ["__version__"]
