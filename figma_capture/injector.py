"""Temporary insertion of the capture script into the page under capture."""

from __future__ import annotations

import logging
import re
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from .config import CAPTURE_SCRIPT_MARKER, CAPTURE_SCRIPT_URL

logger = logging.getLogger("figma_capture.injector")

HEAD_CLOSE_PATTERN = re.compile(r"</head\s*>", re.IGNORECASE)


def script_tag(script_url: str) -> str:
    return f'<script src="{script_url}" async></script>'


def inject_script(html: str, script_url: str, marker: str) -> str:
    """Insert the script tag before ``</head>``, or prepend it; no-op if present."""
    if marker in html:
        return html
    tag = script_tag(script_url)
    match = HEAD_CLOSE_PATTERN.search(html)
    if match is None:
        return f"{tag}\n{html}"
    return f"{html[:match.start()]}  {tag}\n{html[match.start():]}"


class HtmlInjector:
    """Back up, mutate and restore one HTML file on disk.

    The file is handled as bytes so that ``restore`` writes back exactly what
    ``backup`` read, line endings included. Bytes that are not UTF-8 pass
    through ``inject`` unchanged via surrogate escapes.
    """

    def __init__(
        self,
        path: Path,
        script_url: str = CAPTURE_SCRIPT_URL,
        marker: str = CAPTURE_SCRIPT_MARKER,
    ) -> None:
        self.path = Path(path)
        self.script_url = script_url
        self.marker = marker
        self._original: Optional[bytes] = None

    @property
    def has_backup(self) -> bool:
        return self._original is not None

    def backup(self) -> None:
        self._original = self.path.read_bytes()
        logger.debug("Backed up %s (%d bytes)", self.path, len(self._original))

    def inject(self) -> bool:
        """Insert the capture script; returns False when it was already there."""
        html = self.path.read_bytes().decode("utf-8", errors="surrogateescape")
        updated = inject_script(html, self.script_url, self.marker)
        if updated == html:
            logger.info("Capture script already present in %s", self.path)
            return False
        self.path.write_bytes(updated.encode("utf-8", errors="surrogateescape"))
        logger.info("Injected capture script into %s", self.path)
        return True

    def restore(self) -> None:
        if self._original is None:
            return
        self.path.write_bytes(self._original)
        self._original = None
        logger.info("Restored original %s", self.path)

    @contextmanager
    def session(self, restore: bool = True) -> Iterator["HtmlInjector"]:
        """Back up on entry, inject, and restore on every exit path."""
        self.backup()
        try:
            self.inject()
            yield self
        finally:
            if restore:
                self.restore()
            else:
                logger.info("Leaving capture script in %s", self.path)
