"""Repository persisted as YAML files."""

import itertools
import logging
import types
from dataclasses import fields, is_dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Union, get_args, get_origin, get_type_hints

import yaml

from site_monitor.adapters.storage.memory_store import InMemoryRepository
from site_monitor.core import (
    ChangeAlert,
    CrawlSession,
    EmailConfig,
    PersistenceError,
    ScrapeResult,
    UserSettings,
    Website,
)

logger = logging.getLogger(__name__)


def to_plain(value: Any) -> Any:
    """Convert entities to YAML-safe builtins."""
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_plain(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_plain(v) for v in value]
    return value


def _convert(tp: Any, value: Any) -> Any:
    if value is None:
        return None

    origin = get_origin(tp)
    if origin is Union or origin is types.UnionType:
        args = [a for a in get_args(tp) if a is not type(None)]
        return _convert(args[0], value)

    if origin is None and isinstance(tp, type):
        if is_dataclass(tp):
            return from_plain(tp, value)
        if issubclass(tp, Enum):
            return tp(value)
        if tp is datetime and isinstance(value, str):
            return datetime.fromisoformat(value)
    return value


def from_plain(cls: type, data: dict[str, Any]) -> Any:
    """Rebuild an entity from its YAML form."""
    hints = get_type_hints(cls)
    kwargs = {}
    for f in fields(cls):
        if f.name in data:
            kwargs[f.name] = _convert(hints[f.name], data[f.name])
    return cls(**kwargs)


class YamlRepository(InMemoryRepository):
    """In-memory indexes backed by YAML files.

    Small tables (websites, settings, email configs) are one snapshot file
    each. History tables grow with every check, so each of their records is
    its own file under ``<table>/<website_id>/`` and a write touches only
    that file. Every file is written to a temp path and renamed into place
    before the record reaches the indexes. On start everything is loaded and
    re-indexed.
    """

    ENTITY_TYPES = {
        "websites": Website,
        "scrape_results": ScrapeResult,
        "crawl_sessions": CrawlSession,
        "change_alerts": ChangeAlert,
        "user_settings": UserSettings,
        "email_configs": EmailConfig,
    }

    # One file per record, named "<sequence>-<id>.yaml" so load order is write order
    RECORD_TABLES = ("scrape_results", "crawl_sessions", "change_alerts")

    def __init__(self, storage_dir: Path) -> None:
        super().__init__()
        self.storage_dir = storage_dir
        self._record_paths: dict[str, Path] = {}
        self._file_seq = itertools.count()
        self._ensure_structure()
        self._load()

    def _ensure_structure(self) -> None:
        try:
            self.storage_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"Cannot create storage dir {self.storage_dir}: {e}") from e

    def _table_path(self, table: str) -> Path:
        return self.storage_dir / f"{table}.yaml"

    def _record_path(self, table: str, record: Any) -> Path:
        path = self._record_paths.get(record.id)
        if path is None:
            path = self.storage_dir / table / record.website_id / f"{next(self._file_seq):09d}-{record.id}.yaml"
        return path

    def _read(self, path: Path) -> Any:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise PersistenceError(f"Cannot read {path}: {e}") from e

    def _load(self) -> None:
        """Load every table and rebuild indexes."""
        putters = {
            "websites": self._put_website,
            "scrape_results": self._put_result,
            "crawl_sessions": self._put_session,
            "change_alerts": self._put_alert,
            "user_settings": self._put_settings,
            "email_configs": self._put_email_config,
        }

        last_seq = -1
        for table, entity_type in self.ENTITY_TYPES.items():
            if table in self.RECORD_TABLES:
                paths = sorted((self.storage_dir / table).glob("*/*.yaml"), key=lambda p: p.name)
                for path in paths:
                    record = from_plain(entity_type, self._read(path))
                    putters[table](record)
                    self._record_paths[record.id] = path
                    last_seq = max(last_seq, int(path.name.split("-", 1)[0]))
                count = len(paths)
            else:
                path = self._table_path(table)
                if not path.exists():
                    continue
                records = self._read(path) or []
                for record in records:
                    putters[table](from_plain(entity_type, record))
                count = len(records)

            logger.debug("Loaded %d %s", count, table)

        self._file_seq = itertools.count(last_seq + 1)

    def _persist(self, table: str, record: Any) -> None:
        if table in self.RECORD_TABLES:
            path = self._record_path(table, record)
            self._write(path, to_plain(record))
            self._record_paths[record.id] = path
            return

        attr, key = self.TABLES[table]
        records = dict(getattr(self, attr))
        records[getattr(record, key)] = record
        self._write(self._table_path(table), [to_plain(r) for r in records.values()])

    def _write(self, path: Path, data: Any) -> None:
        tmp_path = path.with_suffix(".yaml.tmp")

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                yaml.safe_dump(
                    data,
                    f,
                    allow_unicode=True,
                    default_flow_style=False,
                    sort_keys=False,
                )
            tmp_path.replace(path)
        except (OSError, yaml.YAMLError) as e:
            raise PersistenceError(f"Cannot write {path}: {e}") from e
