"""Ticket tracker interface, provider registry and the file-backed provider."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol

from ticket_agent.engine.models import TicketComment, TicketData, TicketProviderName
from ticket_agent.errors import TicketProviderError
from ticket_agent.storage.common import utc_now

logger = logging.getLogger(__name__)

READY_STATUSES = frozenset({"todo", "unstarted"})
COMMENT_AUTHOR = "ticket-agent"

ProviderConfig = dict[str, Any]


class TicketProvider(Protocol):
    """Minimal surface the engine needs from a ticket tracker."""

    name: str

    def fetch_ready(self, config: ProviderConfig) -> list[TicketData]: ...

    def get_ticket(self, external_id: str, config: ProviderConfig) -> TicketData | None: ...

    def update_status(self, external_id: str, status: str, config: ProviderConfig) -> None: ...

    def add_comment(self, external_id: str, text: str, config: ProviderConfig) -> None: ...


ProviderFactory = Callable[[], TicketProvider]

_registry: dict[str, ProviderFactory] = {}
_registry_lock = threading.Lock()


def register_ticket_provider(name: TicketProviderName | str, factory: ProviderFactory) -> None:
    """Register or replace the factory for one provider name."""

    key = name.value if isinstance(name, TicketProviderName) else str(name)
    with _registry_lock:
        _registry[key] = factory


def unregister_ticket_provider(name: TicketProviderName | str) -> None:
    key = name.value if isinstance(name, TicketProviderName) else str(name)
    with _registry_lock:
        _registry.pop(key, None)


def create_ticket_provider(name: TicketProviderName | str) -> TicketProvider:
    key = name.value if isinstance(name, TicketProviderName) else str(name)
    with _registry_lock:
        factory = _registry.get(key)
    if factory is None:
        raise TicketProviderError(f"Unknown ticket provider: {key}", key)
    return factory()


class LocalFileTicketProvider:
    """Tickets stored in a JSON file; ``config["path"]`` points at it.

    File layout: ``{"tickets": [{"external_id", "title", "status", ...}]}``.
    """

    name = TicketProviderName.LOCAL.value

    _file_lock = threading.Lock()

    def fetch_ready(self, config: ProviderConfig) -> list[TicketData]:
        tickets = []
        for item in self._load(config):
            if str(item.get("status", "")).strip().lower() in READY_STATUSES:
                tickets.append(_to_ticket_data(item))
        return tickets

    def get_ticket(self, external_id: str, config: ProviderConfig) -> TicketData | None:
        for item in self._load(config):
            if str(item.get("external_id")) == external_id:
                return _to_ticket_data(item)
        return None

    def update_status(self, external_id: str, status: str, config: ProviderConfig) -> None:
        def apply(item: dict[str, Any]) -> None:
            item["status"] = status

        self._mutate(config, external_id, apply)

    def add_comment(self, external_id: str, text: str, config: ProviderConfig) -> None:
        def apply(item: dict[str, Any]) -> None:
            item.setdefault("comments", []).append(
                {
                    "body": text,
                    "created_at": utc_now().isoformat(),
                    "author": COMMENT_AUTHOR,
                },
            )

        self._mutate(config, external_id, apply)

    def _path(self, config: ProviderConfig) -> Path:
        raw = config.get("path")
        if not raw:
            raise TicketProviderError("Local ticket provider requires config.path", self.name)
        return Path(str(raw)).expanduser()

    def _load(self, config: ProviderConfig) -> list[dict[str, Any]]:
        path = self._path(config)
        try:
            payload = json.loads(path.read_text("utf-8"))
        except FileNotFoundError as error:
            raise TicketProviderError(f"Ticket file not found: {path}", self.name) from error
        except json.JSONDecodeError as error:
            raise TicketProviderError(f"Invalid ticket file {path}: {error}", self.name) from error
        tickets = payload.get("tickets") if isinstance(payload, dict) else payload
        if not isinstance(tickets, list):
            raise TicketProviderError(f"Ticket file {path} has no tickets list", self.name)
        return [item for item in tickets if isinstance(item, dict)]

    def _mutate(
        self,
        config: ProviderConfig,
        external_id: str,
        apply: Callable[[dict[str, Any]], None],
    ) -> None:
        path = self._path(config)
        with self._file_lock:
            tickets = self._load(config)
            for item in tickets:
                if str(item.get("external_id")) == external_id:
                    apply(item)
                    break
            else:
                raise TicketProviderError(f"Ticket not found: {external_id}", self.name)
            _write_atomic(path, {"tickets": tickets})


def _to_ticket_data(item: dict[str, Any]) -> TicketData:
    comments = [
        TicketComment(
            body=str(comment.get("body", "")),
            created_at=str(comment.get("created_at", "")),
            author=comment.get("author"),
        )
        for comment in item.get("comments") or []
        if isinstance(comment, dict)
    ]
    return TicketData(
        external_id=str(item["external_id"]),
        title=str(item.get("title", "")),
        status=str(item.get("status", "")),
        external_url=str(item.get("url", "")),
        description=item.get("description"),
        priority=item.get("priority"),
        labels=[str(label) for label in item.get("labels") or []],
        depends_on=[str(dep) for dep in item.get("depends_on") or []],
        comments=comments,
    )


def _write_atomic(path: Path, payload: dict[str, Any]) -> None:
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2)
        os.replace(tmp_name, path)
    except OSError:
        Path(tmp_name).unlink(missing_ok=True)
        raise


register_ticket_provider(TicketProviderName.LOCAL, LocalFileTicketProvider)
