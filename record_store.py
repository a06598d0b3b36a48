import copy
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

ChangeListener = Callable[[str, Any], None]


class MemoryRecordStore:
    """Whole-record key/value store with change notifications.

    Values are deep-copied on the way in and out so callers never share
    mutable state with the store; every write replaces the full record.
    """

    def __init__(self, initial: Optional[Dict[str, Any]] = None) -> None:
        self._lock = threading.Lock()
        self._data: Dict[str, Any] = copy.deepcopy(initial or {})
        self._listeners: List[ChangeListener] = []

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            data = self._read_all()
            if key not in data:
                return copy.deepcopy(default)
            return copy.deepcopy(data[key])

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._read_all()
            data[key] = copy.deepcopy(value)
            self._write_all(data)
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener(key, copy.deepcopy(value))
            except Exception:  # noqa: BLE001
                logging.exception("Store listener failed for key %s", key)

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _read_all(self) -> Dict[str, Any]:
        return self._data

    def _write_all(self, data: Dict[str, Any]) -> None:
        self._data = data


class JsonFileRecordStore(MemoryRecordStore):
    """File-backed store shared between the booker and the companion app.

    The file is re-read on every access so writes from another process are
    picked up; concurrent writers race and the last one wins.
    """

    def __init__(self, path: str) -> None:
        super().__init__()
        self.path = Path(path).expanduser()
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def _read_all(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except (OSError, json.JSONDecodeError) as exc:
            logging.warning("Unable to read state file %s (%s); starting empty", self.path, exc)
            return {}
        return raw if isinstance(raw, dict) else {}

    def _write_all(self, data: Dict[str, Any]) -> None:
        fd, tmp_name = tempfile.mkstemp(prefix=".state-", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2, sort_keys=True)
            os.replace(tmp_name, self.path)
        except Exception:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
