"""rotawall core package.

The package is organized into focused modules:

- **rotation**: weighted rotation engine (conserved weights, tolerance-median selection)
- **transcode**: hardware probing, ffmpeg encodes, rendition cache and preload queue
- **display**: mpvpaper and swww adapters
- **daemon**: the long-running loop tying pools, cache and displays together
- **cli**: the ``rotawall`` command

Most modules are imported directly where needed
(e.g. ``from rotawall.rotation import RotationEngine``).
"""

from .version import __version__

__all__ = ["__version__"]
