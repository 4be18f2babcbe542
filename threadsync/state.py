"""Durable thread -> remote document mapping table (JSON file)."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from threadsync.errors import StateError
from threadsync.models import ThreadMapping, utcnow

logger = logging.getLogger(__name__)


class StateStore:
    """One mapping per thread fingerprint, persisted as a whole table.

    Every mutation rewrites the full table through a temp file and
    ``os.replace``. If the write fails the in-memory table is already
    updated, so callers must treat a ``StateError`` from a mutation as
    "not durably committed".
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._mappings: dict[str, ThreadMapping] = {}

    def load(self) -> None:
        """Read the table from disk. A missing file is an empty table."""
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.info("No state file at %s, starting empty", self.path)
            self._mappings = {}
            return
        except OSError as exc:
            raise StateError(f"Cannot read state file {self.path}: {exc}") from exc

        try:
            data = json.loads(raw)
            entries = data.get("mappings", {})
            self._mappings = {
                fp: ThreadMapping.from_dict(fp, entry)
                for fp, entry in entries.items()
            }
        except (json.JSONDecodeError, AttributeError, KeyError, TypeError) as exc:
            raise StateError(f"Malformed state file {self.path}: {exc}") from exc

        logger.info("Loaded %d mappings from %s", len(self._mappings), self.path)

    def save(self) -> None:
        payload = {
            "mappings": {
                fp: mapping.to_dict() for fp, mapping in self._mappings.items()
            },
        }
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise StateError(f"Cannot write state file {self.path}: {exc}") from exc

    def get(self, fingerprint: str) -> ThreadMapping | None:
        return self._mappings.get(fingerprint)

    def get_document_id(self, fingerprint: str) -> int | str | None:
        mapping = self._mappings.get(fingerprint)
        return mapping.document_id if mapping else None

    def is_mapped(self, fingerprint: str) -> bool:
        return fingerprint in self._mappings

    def all_mappings(self) -> dict[str, ThreadMapping]:
        return dict(self._mappings)

    def upsert(
        self,
        fingerprint: str,
        document_id: int | str,
        title: str,
        derived_prompt: str | None = None,
    ) -> ThreadMapping:
        """Create or refresh a mapping and persist the whole table."""
        existing = self._mappings.get(fingerprint)
        if existing and existing.document_id != document_id:
            raise StateError(
                f"Thread {fingerprint} is already mapped to document "
                f"{existing.document_id}, refusing to remap to {document_id}"
            )

        mapping = ThreadMapping(
            fingerprint=fingerprint,
            document_id=document_id,
            title=title,
            last_updated_at=utcnow().isoformat(),
            derived_prompt=derived_prompt,
        )
        self._mappings[fingerprint] = mapping
        self.save()
        return mapping

    def get_prompt(self, fingerprint: str) -> str | None:
        mapping = self._mappings.get(fingerprint)
        return mapping.derived_prompt if mapping else None

    def set_prompt(self, fingerprint: str, prompt: str) -> bool:
        """Attach a derived prompt to an existing mapping.

        Returns False without writing when the thread is not mapped yet.
        """
        mapping = self._mappings.get(fingerprint)
        if mapping is None:
            return False
        mapping.derived_prompt = prompt
        self.save()
        return True

    def remove(self, fingerprint: str) -> bool:
        if self._mappings.pop(fingerprint, None) is None:
            return False
        self.save()
        return True
