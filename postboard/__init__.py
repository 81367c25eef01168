"""postboard — blog/notes backend with ownership-aware posts, comments and favorites."""

__version__ = "1.0.0"
