"""
Read-only view of the source registry.

Sources are created and edited by the source manager, which persists them
as a JSON list. The relay only needs lookups by id, so the file is re-read
when its modification time changes.
"""

import json
import logging
import os
from typing import Dict, Optional

from pydantic import ValidationError

from models import Source

logger = logging.getLogger(__name__)


class SourceRepository:
    def __init__(self, path: str):
        self.path = path
        self._sources: Dict[str, Source] = {}
        self._mtime: Optional[float] = None

    def _reload_if_changed(self):
        try:
            mtime = os.path.getmtime(self.path)
        except OSError:
            if self._sources:
                logger.warning(f"Source registry {self.path} disappeared")
            self._sources = {}
            self._mtime = None
            return

        if mtime == self._mtime:
            return

        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                raw = json.load(fh)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to read source registry {self.path}: {e}")
            return

        sources: Dict[str, Source] = {}
        for item in raw if isinstance(raw, list) else []:
            try:
                source = Source.model_validate(item)
            except ValidationError as e:
                logger.warning(f"Skipping invalid source entry {item!r}: {e}")
                continue
            sources[source.id] = source

        self._sources = sources
        self._mtime = mtime
        logger.info(f"Loaded {len(sources)} sources from {self.path}")

    def get_by_id(self, source_id: str) -> Optional[Source]:
        self._reload_if_changed()
        return self._sources.get(str(source_id))
