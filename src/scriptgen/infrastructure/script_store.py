from __future__ import annotations

from datetime import UTC, datetime
from threading import RLock
from typing import Dict, List, Optional, Protocol
import uuid

from ..domain.script_models import ScriptRecord, ScriptStatus


class ScriptStore(Protocol):
    def create_script(self, owner_id: str, prompt: str, provider: Optional[str] = None) -> ScriptRecord: ...

    def get_script(self, script_id: str) -> Optional[ScriptRecord]: ...

    def update_script(
        self,
        script_id: str,
        *,
        status: Optional[ScriptStatus] = None,
        content: Optional[str] = None,
        error: Optional[str] = None,
    ) -> ScriptRecord: ...

    def list_scripts(self, owner_id: str) -> List[ScriptRecord]: ...


class InMemoryScriptStore:
    def __init__(self) -> None:
        self._scripts: Dict[str, ScriptRecord] = {}
        self._lock = RLock()

    def _now_iso(self) -> str:
        return datetime.now(UTC).isoformat().replace("+00:00", "Z")

    def create_script(self, owner_id: str, prompt: str, provider: Optional[str] = None) -> ScriptRecord:
        with self._lock:
            now = self._now_iso()
            record = ScriptRecord(
                id=uuid.uuid4().hex,
                prompt=prompt,
                owner_id=owner_id,
                provider=provider,
                created_at=now,
                updated_at=now,
            )
            self._scripts[record.id] = record
            return record.model_copy()

    def get_script(self, script_id: str) -> Optional[ScriptRecord]:
        with self._lock:
            record = self._scripts.get(script_id)
            return record.model_copy() if record else None

    def update_script(
        self,
        script_id: str,
        *,
        status: Optional[ScriptStatus] = None,
        content: Optional[str] = None,
        error: Optional[str] = None,
    ) -> ScriptRecord:
        with self._lock:
            record = self._scripts.get(script_id)
            if record is None:
                raise KeyError(script_id)
            if status is not None:
                record.status = status
            if content is not None:
                record.content = content
            if error is not None:
                record.error = error
            record.updated_at = self._now_iso()
            return record.model_copy()

    def list_scripts(self, owner_id: str) -> List[ScriptRecord]:
        with self._lock:
            return [r.model_copy() for r in self._scripts.values() if r.owner_id == owner_id]


_store: ScriptStore | None = None


def get_script_store() -> ScriptStore:
    global _store
    if _store is None:
        _store = InMemoryScriptStore()
    return _store


def reset_script_store() -> None:
    global _store
    _store = None
