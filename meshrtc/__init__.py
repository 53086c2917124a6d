"""meshrtc establishes a full mesh of WebRTC peer connections in a room."""
from __future__ import annotations

import importlib.metadata as importlib_metadata

__version__ = importlib_metadata.version('meshrtc')
