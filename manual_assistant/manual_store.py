from __future__ import annotations

from typing import Optional

from .models import ManualContent


class ManualStore:
    """Holds the manual currently loaded into a session."""

    def __init__(self) -> None:
        self._content: Optional[ManualContent] = None

    @property
    def content(self) -> Optional[ManualContent]:
        return self._content

    @property
    def is_loaded(self) -> bool:
        return self._content is not None

    @property
    def image_count(self) -> int:
        return len(self._content.images) if self._content else 0

    def load(self, content: ManualContent) -> None:
        """Replace the loaded manual wholesale."""
        self._content = content

    def clear(self) -> None:
        self._content = None
