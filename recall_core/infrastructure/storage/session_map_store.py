import json
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union
from uuid import uuid4

from recall_core.config.settings import settings
from recall_core.domain.exceptions import BusinessError
from recall_core.domain.models import SessionMappingKey


class JsonSessionMapStore:
    """SessionMappingKey -> session id 的持久化映射。

    文件在第一次使用时才加载；每次变更都整体写入临时文件再 os.replace，
    保证进程崩溃时文件要么是旧内容要么是新内容。
    """

    def __init__(self, path: Union[str, Path, None] = None):
        self._path = Path(path or settings.session_map_file).resolve()
        self._lock = threading.Lock()
        self._entries: Optional[Dict[str, Dict[str, Any]]] = None

    @property
    def path(self) -> Path:
        return self._path

    def get(self, key: SessionMappingKey) -> Optional[str]:
        with self._lock:
            entry = self._load().get(key.as_key())
        if not entry:
            return None
        session_id = entry.get("session_id")
        return session_id if isinstance(session_id, str) and session_id else None

    def upsert(self, key: SessionMappingKey, session_id: str) -> None:
        with self._lock:
            entries = self._load()
            entries[key.as_key()] = {
                "session_id": session_id,
                "channel": key.channel,
                "sender_id": key.sender_id,
                "agent_id": key.agent_id,
                "updated_at": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            }
            self._write(entries)

    def delete(self, key: SessionMappingKey) -> bool:
        with self._lock:
            entries = self._load()
            if entries.pop(key.as_key(), None) is None:
                return False
            self._write(entries)
            return True

    def all(self) -> Dict[str, str]:
        with self._lock:
            return {k: v.get("session_id", "") for k, v in self._load().items()}

    def _load(self) -> Dict[str, Dict[str, Any]]:
        if self._entries is not None:
            return self._entries
        if not self._path.exists():
            self._entries = {}
            return self._entries
        try:
            data = json.loads(self._path.read_text(encoding="utf-8") or "{}")
        except (OSError, json.JSONDecodeError) as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e), path=str(self._path))
        sessions = data.get("sessions") if isinstance(data, dict) else None
        self._entries = {k: v for k, v in (sessions or {}).items() if isinstance(v, dict)}
        return self._entries

    def _write(self, entries: Dict[str, Dict[str, Any]]) -> None:
        tmp_path = self._path.parent / f"{self._path.stem}.{uuid4().hex}.json.tmp"
        obj = {"version": 1, "sessions": entries}
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(obj, ensure_ascii=False, indent=2), encoding="utf-8")
            os.replace(tmp_path, self._path)
        except OSError as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e), path=str(self._path))
