"""Chroma-based persistence for lifecycle events and agent metrics."""

from __future__ import annotations

import json
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

from .models import SessionTrackingRecord, WorkspaceRecord

METRICS_STREAM = "metrics::agents"


class ChromaUnavailableError(RuntimeError):
    """Raised when the Chroma client cannot be constructed."""


class CollectionProtocol(Protocol):
    """Protocol for the minimal Chroma collection API used here."""

    def add(
        self,
        *,
        documents: Iterable[str],
        metadatas: Iterable[dict[str, Any]],
        ids: Iterable[str],
    ) -> None:
        ...

    def get(
        self,
        *,
        ids: Iterable[str] | None = None,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> dict[str, list[Any]]:
        ...


class ClientProtocol(Protocol):
    """Protocol for the minimal Chroma client API used here."""

    def get_or_create_collection(self, name: str) -> CollectionProtocol:
        ...


@dataclass(slots=True)
class ChromaEvent:
    """Represents a stored event in Chroma."""

    id: str
    session_id: str
    event_type: str
    document: str
    metadata: dict[str, Any]
    timestamp: datetime


def _build_where(filters: dict[str, Any] | None) -> dict[str, Any] | None:
    if not filters:
        return None
    clauses = [{key: value} for key, value in filters.items() if value is not None]
    if not clauses:
        return None
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


def _scalar_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    # Chroma only stores str/int/float/bool metadata values.
    cleaned: dict[str, Any] = {}
    for key, value in metadata.items():
        if value is None:
            continue
        if isinstance(value, (str, int, float, bool)):
            cleaned[key] = value
        else:
            cleaned[key] = json.dumps(value)
    return cleaned


class ChromaStore:
    """Manage persistence of session and workspace events via ChromaDB."""

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = "coding_agent_runs",
        client_factory: Callable[[], ClientProtocol] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path)
        self._collection_name = collection_name
        self._client_factory = client_factory or self._default_client_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._client: ClientProtocol | None = None
        self._collection: CollectionProtocol | None = None
        self._counters: dict[str, int] = defaultdict(int)

    def _default_client_factory(self) -> ClientProtocol:
        try:
            import chromadb
        except ImportError as exc:  # pragma: no cover - depends on environment
            raise ChromaUnavailableError(
                "chromadb package is not installed; install codeagent-mcp[persistence]"
            ) from exc

        return chromadb.PersistentClient(path=str(self._path))

    def _ensure_collection(self) -> CollectionProtocol:
        if self._collection is None:
            client = self._client or self._client_factory()
            self._client = client
            self._collection = client.get_or_create_collection(self._collection_name)
        return self._collection

    def _convert_result(self, result: dict[str, list[Any]]) -> list[ChromaEvent]:
        events: list[ChromaEvent] = []
        ids = result.get("ids") or []
        documents = result.get("documents") or []
        metadatas = result.get("metadatas") or []
        for event_id, document, metadata in zip(ids, documents, metadatas):
            metadata = dict(metadata or {})
            timestamp_raw = metadata.get("timestamp")
            timestamp = (
                datetime.fromisoformat(timestamp_raw)
                if isinstance(timestamp_raw, str)
                else self._clock()
            )
            events.append(
                ChromaEvent(
                    id=event_id,
                    session_id=metadata.get("session_id", ""),
                    event_type=metadata.get("event_type", ""),
                    document=document,
                    metadata=metadata,
                    timestamp=timestamp,
                )
            )
        events.sort(key=lambda event: (event.timestamp, event.metadata.get("sequence", 0)))
        return events

    @property
    def path(self) -> Path:
        return self._path

    def ping(self) -> bool:
        """Verify that the underlying collection can be obtained."""

        self._ensure_collection()
        return True

    def record_event(
        self,
        *,
        session_id: str,
        event_type: str,
        body: Any,
        metadata: dict[str, Any] | None = None,
    ) -> ChromaEvent:
        collection = self._ensure_collection()
        counter = self._counters[session_id] = self._counters[session_id] + 1
        event_id = f"{session_id}:{uuid.uuid4().hex}"
        timestamp = self._clock()

        document = body if isinstance(body, str) else json.dumps(body)
        record_metadata: dict[str, Any] = {
            "session_id": session_id,
            "event_type": event_type,
            "timestamp": timestamp.isoformat(),
            "sequence": counter,
        }
        if metadata:
            record_metadata.update(metadata)
        record_metadata = _scalar_metadata(record_metadata)

        collection.add(
            documents=[document],
            metadatas=[record_metadata],
            ids=[event_id],
        )

        return ChromaEvent(
            id=event_id,
            session_id=session_id,
            event_type=event_type,
            document=document,
            metadata=record_metadata,
            timestamp=timestamp,
        )

    def fetch_session_events(self, session_id: str, *, limit: int | None = None) -> list[ChromaEvent]:
        collection = self._ensure_collection()
        result = collection.get(where={"session_id": session_id}, limit=limit)
        return self._convert_result(result)

    def search_events(
        self,
        query: str | None = None,
        *,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[ChromaEvent]:
        collection = self._ensure_collection()
        result = collection.get(where=_build_where(filters))
        events = self._convert_result(result)
        if query:
            needle = query.lower()
            events = [
                event
                for event in events
                if needle in event.document.lower()
                or any(needle in str(value).lower() for value in event.metadata.values())
            ]
        return events[-limit:] if limit else events

    # ------------------------------------------------------------- sessions

    def record_session_tracking(
        self,
        *,
        session_id: str,
        adapter_type: str,
        status: str,
        workdir: str | None = None,
        workspace_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SessionTrackingRecord:
        payload = {
            "session_id": session_id,
            "adapter_type": adapter_type,
            "status": status,
            "workdir": workdir,
            "workspace_id": workspace_id,
        }
        if metadata:
            payload.update(metadata)

        event = self.record_event(
            session_id=f"session::{session_id}",
            event_type="session_tracking",
            body=payload,
            metadata={
                "tracked_session_id": session_id,
                "adapter_type": adapter_type,
                "status": status,
                "workspace_id": workspace_id,
            },
        )

        return SessionTrackingRecord(
            session_id=session_id,
            adapter_type=adapter_type,
            status=status,
            workdir=workdir,
            workspace_id=workspace_id,
            recorded_at=event.timestamp,
            metadata=metadata or {},
        )

    def list_session_tracking(self, adapter_type: str | None = None) -> list[SessionTrackingRecord]:
        filters: dict[str, Any] = {"event_type": "session_tracking"}
        if adapter_type:
            filters["adapter_type"] = adapter_type
        records: list[SessionTrackingRecord] = []
        for event in self.search_events(filters=filters):
            doc = json.loads(event.document)
            records.append(
                SessionTrackingRecord(
                    session_id=doc["session_id"],
                    adapter_type=doc.get("adapter_type", "unknown"),
                    status=doc.get("status", "unknown"),
                    workdir=doc.get("workdir"),
                    workspace_id=doc.get("workspace_id"),
                    recorded_at=event.timestamp,
                    metadata={
                        k: v
                        for k, v in doc.items()
                        if k not in {"session_id", "adapter_type", "status", "workdir", "workspace_id"}
                    },
                )
            )
        return records

    # ----------------------------------------------------------- workspaces

    def record_workspace(
        self,
        *,
        workspace_id: str,
        path: str,
        branch: str | None,
        status: str,
        metadata: dict[str, Any] | None = None,
    ) -> WorkspaceRecord:
        payload = {
            "workspace_id": workspace_id,
            "path": path,
            "branch": branch,
            "status": status,
        }
        if metadata:
            payload.update(metadata)

        event = self.record_event(
            session_id=f"workspace::{workspace_id}",
            event_type="workspace_update",
            body=payload,
            metadata={"workspace_id": workspace_id, "path": path, "status": status},
        )

        return WorkspaceRecord(
            workspace_id=workspace_id,
            path=path,
            branch=branch,
            status=status,
            recorded_at=event.timestamp,
            metadata=metadata or {},
        )

    def list_workspaces(self, workspace_id: str | None = None) -> list[WorkspaceRecord]:
        filters: dict[str, Any] = {"event_type": "workspace_update"}
        if workspace_id:
            filters["workspace_id"] = workspace_id
        records: list[WorkspaceRecord] = []
        for event in self.search_events(filters=filters):
            doc = json.loads(event.document)
            records.append(
                WorkspaceRecord(
                    workspace_id=doc["workspace_id"],
                    path=doc["path"],
                    branch=doc.get("branch"),
                    status=doc.get("status", "unknown"),
                    recorded_at=event.timestamp,
                    metadata={
                        k: v
                        for k, v in doc.items()
                        if k not in {"workspace_id", "path", "branch", "status"}
                    },
                )
            )
        return records

    # -------------------------------------------------------------- metrics

    def save_metrics(self, snapshot: dict[str, dict[str, Any]]) -> ChromaEvent:
        return self.record_event(
            session_id=METRICS_STREAM,
            event_type="metrics_snapshot",
            body=snapshot,
            metadata={"adapter_count": len(snapshot)},
        )

    def load_metrics(self) -> dict[str, dict[str, Any]]:
        """Return the most recent metrics snapshot, or an empty mapping."""

        events = self.search_events(filters={"event_type": "metrics_snapshot"})
        if not events:
            return {}
        latest = events[-1]
        try:
            payload = json.loads(latest.document)
        except json.JSONDecodeError:
            return {}
        return payload if isinstance(payload, dict) else {}


__all__ = ["ChromaEvent", "ChromaStore", "ChromaUnavailableError", "METRICS_STREAM"]
