"""Voice chat backend: turn-taking meeting assistant over WebSocket."""

__version__ = "1.0.0"
