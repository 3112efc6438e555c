"""Local model file storage.

Owns the models directory: which GGUF files are present, the size and
checksum each was downloaded with, and which model the user selected.
State lives in ``store.json`` next to the model files.
"""

import json
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any

from core.errors import ValidationFailure

if TYPE_CHECKING:
    from services.manifest import ModelDescriptor

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "store.json"
TEMP_SUFFIX = ".part"


class ModelStore:
    """Tracks model files on local storage and the selected model id."""

    def __init__(self, models_dir: Path | str, default_model_id: str | None = None):
        self._models_dir = Path(models_dir)
        self._default_model_id = default_model_id
        self._in_use: set[Path] = set()

    @property
    def models_dir(self) -> Path:
        return self._models_dir

    @property
    def default_model_id(self) -> str | None:
        return self._default_model_id

    @default_model_id.setter
    def default_model_id(self, model_id: str | None) -> None:
        self._default_model_id = model_id

    # ── Paths ─────────────────────────────────────────────────────────

    def ensure_directory(self) -> None:
        self._models_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, file_name: str) -> Path:
        """Resolve a model file name inside the models directory, preventing traversal."""
        if not file_name or file_name in (".", ".."):
            raise ValidationFailure(f"Invalid model file name: {file_name!r}")
        resolved = (self._models_dir / file_name).resolve()
        if resolved.parent != self._models_dir.resolve():
            raise ValidationFailure(f"Path traversal not allowed: {file_name}")
        return resolved

    def temp_path_for(self, file_name: str) -> Path:
        """Path of the partial download for a model file."""
        path = self.path_for(file_name)
        return path.with_name(path.name + TEMP_SUFFIX)

    # ── State file ────────────────────────────────────────────────────

    def _state_path(self) -> Path:
        return self._models_dir / STATE_FILE_NAME

    def _read_state(self) -> dict[str, Any]:
        p = self._state_path()
        if p.exists():
            try:
                data = json.loads(p.read_text())
                if isinstance(data, dict):
                    return data
            except (json.JSONDecodeError, OSError):
                logger.warning("Ignoring unreadable model store state: %s", p)
        return {}

    def _write_state(self, state: dict[str, Any]) -> None:
        self.ensure_directory()
        tmp = self._models_dir / f".{STATE_FILE_NAME}.tmp"
        tmp.write_text(json.dumps(state, indent=2, sort_keys=True))
        os.replace(tmp, self._state_path())

    # ── Downloaded files ──────────────────────────────────────────────

    def is_downloaded(self, file_name: str) -> bool:
        """Check the file exists and matches its recorded size, if any."""
        path = self.path_for(file_name)
        if not path.is_file():
            return False
        record = self._read_state().get("files", {}).get(file_name)
        if record and record.get("size_bytes") is not None:
            return path.stat().st_size == record["size_bytes"]
        return True

    def list_downloaded(self) -> set[str]:
        """File names of all complete model files."""
        if not self._models_dir.is_dir():
            return set()
        return {
            p.name
            for p in self._models_dir.iterdir()
            if p.is_file()
            and not p.name.endswith(TEMP_SUFFIX)
            and p.name != STATE_FILE_NAME
            and not p.name.startswith(".")
            and self.is_downloaded(p.name)
        }

    def file_size(self, file_name: str) -> int | None:
        path = self.path_for(file_name)
        return path.stat().st_size if path.is_file() else None

    def declared_metadata(self, file_name: str) -> dict[str, Any] | None:
        """Size and checksum recorded when the file was downloaded."""
        return self._read_state().get("files", {}).get(file_name)

    def commit_download(self, file_name: str, descriptor: "ModelDescriptor | None" = None) -> Path:
        """Atomically move a finished partial download into place."""
        temp = self.temp_path_for(file_name)
        dest = self.path_for(file_name)
        os.replace(temp, dest)

        state = self._read_state()
        files = state.setdefault("files", {})
        files[file_name] = {
            "model_id": descriptor.id if descriptor else None,
            "size_bytes": dest.stat().st_size,
            "sha256": descriptor.sha256 if descriptor else None,
        }
        self._write_state(state)
        logger.info("Stored model file %s (%d bytes)", file_name, files[file_name]["size_bytes"])
        return dest

    def discard_temp(self, file_name: str) -> None:
        """Remove a partial download if present."""
        self.temp_path_for(file_name).unlink(missing_ok=True)

    def delete(self, file_name: str) -> bool:
        """Delete a model file. Refused while the engine has it loaded."""
        path = self.path_for(file_name)
        if path in self._in_use:
            logger.warning("Refusing to delete %s: model is loaded", file_name)
            return False
        if not path.is_file():
            return False

        path.unlink()
        state = self._read_state()
        if state.get("files", {}).pop(file_name, None) is not None:
            self._write_state(state)
        logger.info("Deleted model file %s", file_name)
        return True

    # ── Engine leases ─────────────────────────────────────────────────

    def mark_in_use(self, model_path: Path | str) -> None:
        self._in_use.add(Path(model_path).resolve())

    def release(self, model_path: Path | str) -> None:
        self._in_use.discard(Path(model_path).resolve())

    def is_in_use(self, file_name: str) -> bool:
        return self.path_for(file_name) in self._in_use

    # ── Selection ─────────────────────────────────────────────────────

    @property
    def selected_model_id(self) -> str | None:
        """The user's selected model, defaulting to the recommended one."""
        return self._read_state().get("selected_model_id") or self._default_model_id

    def select_model(self, model_id: str) -> None:
        """Persist the selected model ID."""
        state = self._read_state()
        state["selected_model_id"] = model_id
        self._write_state(state)

    def has_explicit_selection(self) -> bool:
        return bool(self._read_state().get("selected_model_id"))

    def clear_selection(self) -> None:
        state = self._read_state()
        if state.pop("selected_model_id", None) is not None:
            self._write_state(state)
