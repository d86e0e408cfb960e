"""
Moorage - Gateway Config Store
=================================
Reads and writes the single JSON document that drives the gateway
(`<state_dir>/openclaw.json`).

No schema and no locking. An unparsable document raises
`json.JSONDecodeError` (a `ValueError`) to whoever asked for it; the
supervisor lets that fail the start attempt.

Writes go to a temporary sibling first and are moved into place, so the
gateway never reads a half-written file.
"""

import json
import os
from typing import Any


class ConfigStore:
    """
    File-backed storage for the gateway config document.

    Attributes:
        path: Absolute path of the JSON file.
    """

    def __init__(self, path: str):
        self.path = path

    def exists(self) -> bool:
        return os.path.isfile(self.path)

    def load(self) -> dict[str, Any]:
        """
        Parse and return the document.

        Raises:
            FileNotFoundError: If the document does not exist.
            ValueError:        If the file is not valid JSON or not an object.
        """
        with open(self.path, "r", encoding="utf-8") as f:
            doc = json.load(f)
        if not isinstance(doc, dict):
            raise ValueError(f"{self.path} must contain a JSON object")
        return doc

    def save(self, doc: dict[str, Any]) -> None:
        """Write the document atomically (temp file + rename)."""
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(doc, f, indent=2, ensure_ascii=False)
            f.write("\n")
        os.replace(tmp_path, self.path)

    def reset(self) -> bool:
        """
        Delete the document.

        Returns:
            True if a file was removed, False if there was nothing to remove.
        """
        try:
            os.remove(self.path)
        except FileNotFoundError:
            return False
        return True
