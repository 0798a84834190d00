"""audiotree

Export a tree of audio files into a mirrored tree in another format using
ffmpeg, plus small single-file conversion and cover art tools.
"""

__all__ = [
    "__version__",
]

# Keep in sync with pyproject.toml
__version__ = "0.1.0"
