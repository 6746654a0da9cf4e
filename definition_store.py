"""Definition stores: durable documents keyed by model name."""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, List

from model_definition import is_model_name


logger = logging.getLogger("modelkit.store")


def _check_name(name: str) -> str:
    if not is_model_name(name):
        raise ValueError(f"Invalid model name: {name!r}")
    return name


class MemoryDefinitionStore:
    def __init__(self) -> None:
        self._docs: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def read(self, name: str) -> dict | None:
        doc = self._docs.get(name)
        return copy.deepcopy(doc) if doc is not None else None

    def write(self, name: str, doc: dict) -> None:
        with self._lock:
            self._docs = {**self._docs, _check_name(name): copy.deepcopy(doc)}

    def delete(self, name: str) -> bool:
        with self._lock:
            if name not in self._docs:
                return False
            docs = dict(self._docs)
            del docs[name]
            self._docs = docs
            return True

    def list_names(self) -> List[str]:
        return sorted(self._docs.keys())


class FileDefinitionStore:
    """One ``<name>.json`` document per model inside ``directory``.

    Writes land in a temp file next to the target and are moved into place
    with ``os.replace``, so a reader sees either the old or the new document.
    """

    def __init__(self, directory: str | os.PathLike) -> None:
        self._dir = Path(directory)

    def _ensure_dir(self) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, name: str) -> Path:
        return self._dir / f"{_check_name(name)}.json"

    def read(self, name: str) -> dict | None:
        path = self.path_for(name)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            doc = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValueError(f"{path.name}: {exc}") from exc
        if not isinstance(doc, dict):
            raise ValueError(f"{path.name}: document must be an object")
        return doc

    def write(self, name: str, doc: dict) -> None:
        target = self.path_for(name)
        self._ensure_dir()
        fd, tmp_path = tempfile.mkstemp(prefix=f".{name}.", suffix=".tmp", dir=str(self._dir))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(doc, handle, indent=2, ensure_ascii=False)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, target)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass
            raise
        logger.info("definition_written name=%s path=%s", name, target)

    def delete(self, name: str) -> bool:
        try:
            self.path_for(name).unlink()
        except FileNotFoundError:
            return False
        return True

    def list_names(self) -> List[str]:
        if not self._dir.exists():
            return []
        names = []
        for path in self._dir.glob("*.json"):
            if is_model_name(path.stem):
                names.append(path.stem)
        return sorted(names)
