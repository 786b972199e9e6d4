from __future__ import annotations

import json
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import redis

from .config import CrawlerSettings, RedisSettings
from .errors import StorageError
from .ids import generate_record_id
from .logging_config import get_logger
from .models import Record, StoreSnapshot, utc_now_iso

logger = get_logger("storage")

# errors that mean "this backend is unreachable right now", not a bug
OPERATIONAL_ERRORS: Tuple[type, ...] = (redis.RedisError, OSError, StorageError)

PROBE_LOG_EVERY = 5

RecordListener = Callable[[str, List[Record]], None]


def apply_capacity(records: List[Record], max_records: int) -> Tuple[List[Record], List[Record]]:
    """Split records into (kept, evicted), evicting oldest capture time first.

    Records without a parseable timestamp count as the epoch and go first.
    """
    if len(records) <= max_records:
        return list(records), []
    ordered = sorted(records, key=lambda r: r.timestamp)
    excess = len(records) - max_records
    return ordered[excess:], ordered[:excess]


def sort_for_display(records: List[Record]) -> List[Record]:
    return sorted(records, key=lambda r: (r.name or "", r.id))


def _decode_object(value: Optional[str]) -> Optional[Dict]:
    """Parse a stored JSON object; anything else is None."""
    if not value:
        return None
    try:
        data = json.loads(value)
    except (TypeError, ValueError):
        return None
    return data if isinstance(data, dict) else None


class StorageBackend(ABC):
    """Abstract base class for record storage backends.

    Implementations persist one collection of records per category,
    keyed by record id."""

    name = "backend"

    @abstractmethod
    def read(self, category: str) -> StoreSnapshot:
        """Return every stored record for the category, sorted by name."""

    @abstractmethod
    def write_records(self, category: str, records: List[Record], max_records: int) -> None:
        """Upsert records by id and evict down to max_records."""

    def ping(self) -> None:
        """Raise if the backend is not reachable."""

    def publish(self, category: str, records: List[Record]) -> None:
        """Announce freshly written records to live subscribers, if supported."""

    def close(self) -> None:
        """Release connections and resources."""


class JsonFileBackend(StorageBackend):
    """Durable local backend: one JSON document per category.

    Writes go to a temporary file that is atomically renamed over the
    previous document, so a crash never leaves a half-written file."""

    name = "json"

    def __init__(self, data_dir: Path) -> None:
        self._data_dir = Path(data_dir)

    def path_for(self, category: str) -> Path:
        return self._data_dir / f"{category}.json"

    def read(self, category: str) -> StoreSnapshot:
        path = self.path_for(category)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return StoreSnapshot.empty(category)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            logger.warning(f"[json/{category}] Unreadable data file {path}, starting empty: {exc}")
            return StoreSnapshot.empty(category)
        if not isinstance(data, dict):
            return StoreSnapshot.empty(category)
        snapshot = StoreSnapshot.from_dict(category, data)
        snapshot.records = sort_for_display(snapshot.records)
        return snapshot

    def write_records(self, category: str, records: List[Record], max_records: int) -> None:
        snapshot = self.read(category)
        by_id: Dict[str, Record] = {r.id: r for r in snapshot.records}
        for record in records:
            by_id[record.id] = record

        kept, evicted = apply_capacity(list(by_id.values()), max_records)
        if evicted:
            logger.debug(f"[json/{category}] Removed {len(evicted)} old records")

        snapshot.records = sort_for_display(kept)
        snapshot.last_updated = utc_now_iso()
        self._write_file(category, snapshot)

    def _write_file(self, category: str, snapshot: StoreSnapshot) -> None:
        path = self.path_for(category)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(snapshot.to_dict(), f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, path)
        except Exception:
            tmp_path.unlink(missing_ok=True)
            raise


class RedisBackend(StorageBackend):
    """Preferred backend: one Redis hash per category.

    ``{prefix}prices:{category}`` maps record id to record JSON,
    ``{prefix}meta:{category}`` holds the category metadata, and new records
    are published on ``{channel_prefix}{category}``."""

    name = "redis"

    def __init__(self, client: "redis.Redis", key_prefix: str = "pricecrawl:", channel_prefix: str = "price-updates:") -> None:
        self._client = client
        self._key_prefix = key_prefix
        self._channel_prefix = channel_prefix

    @classmethod
    def from_settings(cls, settings: RedisSettings) -> "RedisBackend":
        client = redis.Redis(
            host=settings.host,
            port=settings.port,
            password=settings.password,
            db=settings.db,
            socket_timeout=settings.socket_timeout,
            socket_connect_timeout=settings.socket_timeout,
            decode_responses=True,
        )
        return cls(client, key_prefix=settings.key_prefix, channel_prefix=settings.channel_prefix)

    def hash_key(self, category: str) -> str:
        return f"{self._key_prefix}prices:{category}"

    def meta_key(self, category: str) -> str:
        return f"{self._key_prefix}meta:{category}"

    def channel(self, category: str) -> str:
        return f"{self._channel_prefix}{category}"

    def ping(self) -> None:
        self._client.ping()

    def read(self, category: str) -> StoreSnapshot:
        raw = self._client.hgetall(self.hash_key(category))
        meta = _decode_object(self._client.get(self.meta_key(category))) or {}

        records: List[Record] = []
        for record_id, value in raw.items():
            data = _decode_object(value)
            if data is None:
                logger.warning(f"[redis/{category}] Skipping unreadable record {record_id}")
                continue
            records.append(Record.from_dict(data))
        return StoreSnapshot(
            category=meta.get("category") or category,
            last_updated=meta.get("lastUpdated") or utc_now_iso(),
            records=sort_for_display(records),
        )

    def write_records(self, category: str, records: List[Record], max_records: int) -> None:
        hash_key = self.hash_key(category)
        pipe = self._client.pipeline()
        for record in records:
            pipe.hset(hash_key, record.id, json.dumps(record.to_dict(), ensure_ascii=False))
        pipe.set(
            self.meta_key(category),
            json.dumps({"category": category, "lastUpdated": utc_now_iso()}),
        )
        pipe.execute()
        self._enforce_limit(category, max_records)

    def _enforce_limit(self, category: str, max_records: int) -> None:
        hash_key = self.hash_key(category)
        raw = self._client.hgetall(hash_key)
        if len(raw) <= max_records:
            return

        stored: List[Record] = []
        for record_id, value in raw.items():
            data = _decode_object(value)
            if data is None:
                record = Record(id=record_id, name="", region="", category=category)
            else:
                record = Record.from_dict(data)
            record.id = record_id
            stored.append(record)

        _, evicted = apply_capacity(stored, max_records)
        if evicted:
            self._client.hdel(hash_key, *[r.id for r in evicted])
            logger.debug(f"[redis/{category}] Removed {len(evicted)} old records")

    def publish(self, category: str, records: List[Record]) -> None:
        message = {
            "category": category,
            "timestamp": utc_now_iso(),
            "records": [r.to_dict() for r in records],
        }
        self._client.publish(self.channel(category), json.dumps(message, ensure_ascii=False))

    def close(self) -> None:
        self._client.close()


class RecordStore:
    """Records for one category, written through a preferred backend with
    transparent failover to a fallback backend.

    Pushes are serialised per category. Once the preferred backend fails,
    every call goes to the fallback until probe() sees the preferred backend
    answering again. Nothing is migrated between backends on switch-over.
    """

    def __init__(
        self,
        category: str,
        primary: Optional[StorageBackend],
        fallback: StorageBackend,
        max_records: int = 99,
        available: Optional[bool] = None,
    ) -> None:
        self.category = category
        self._primary = primary
        self._fallback = fallback
        self._max_records = max_records
        self._lock = threading.Lock()
        self._listeners: List[RecordListener] = []
        self._failed_probes = 0
        if available is None:
            available = self._initial_availability()
        self._available = bool(available) and primary is not None

    def _initial_availability(self) -> bool:
        if self._primary is None:
            return False
        try:
            self._primary.ping()
            return True
        except OPERATIONAL_ERRORS as exc:
            logger.info(
                f"[store/{self.category}] {self._primary.name} unavailable, using {self._fallback.name} fallback: {exc}"
            )
            return False

    @property
    def is_primary_available(self) -> bool:
        return self._available

    @property
    def active_backend(self) -> StorageBackend:
        if self._available and self._primary is not None:
            return self._primary
        return self._fallback

    def subscribe(self, listener: RecordListener) -> None:
        self._listeners.append(listener)

    def push(self, items: List[Record]) -> List[Record]:
        """Persist records and return them with identifiers assigned."""
        records = [self._with_id(item) for item in items]
        if not records:
            return []

        with self._lock:
            backend = self._write(records)

        self._announce(backend, records)
        return records

    def _with_id(self, record: Record) -> Record:
        if not record.id:
            record.id = generate_record_id(record.name, record.region, record.href)
        if not record.category:
            record.category = self.category
        return record

    def _write(self, records: List[Record]) -> StorageBackend:
        primary = self._primary
        if self._available and primary is not None:
            try:
                primary.write_records(self.category, records, self._max_records)
                return primary
            except OPERATIONAL_ERRORS as exc:
                logger.warning(
                    f"[store/{self.category}] {primary.name} push failed, falling back to {self._fallback.name}: {exc}"
                )
                self._mark_unavailable()

        self._fallback.write_records(self.category, records, self._max_records)
        return self._fallback

    def _announce(self, backend: StorageBackend, records: List[Record]) -> None:
        try:
            backend.publish(self.category, records)
        except Exception as exc:  # noqa: BLE001
            logger.debug(f"[store/{self.category}] publish failed (ignored): {exc}")

        for listener in list(self._listeners):
            try:
                listener(self.category, records)
            except Exception as exc:  # noqa: BLE001
                logger.warning(f"[store/{self.category}] listener failed (ignored): {exc}")

    def get_all(self) -> StoreSnapshot:
        primary = self._primary
        if self._available and primary is not None:
            try:
                return primary.read(self.category)
            except OPERATIONAL_ERRORS as exc:
                logger.warning(
                    f"[store/{self.category}] {primary.name} read failed, falling back to {self._fallback.name}: {exc}"
                )
                self._mark_unavailable()
        try:
            return self._fallback.read(self.category)
        except OPERATIONAL_ERRORS as exc:
            logger.warning(f"[store/{self.category}] {self._fallback.name} read failed: {exc}")
            return StoreSnapshot.empty(self.category)

    def get_current(self) -> List[Record]:
        return self.get_all().records

    def get_by_region(self, region: str) -> List[Record]:
        return [r for r in self.get_all().records if r.region == region]

    def probe(self) -> bool:
        """Liveness check of the preferred backend; returns availability."""
        primary = self._primary
        if primary is None:
            return False
        try:
            primary.ping()
        except OPERATIONAL_ERRORS as exc:
            if self._available:
                logger.warning(f"[store/{self.category}] Health check failed, {primary.name} unavailable: {exc}")
                self._mark_unavailable()
            else:
                self._failed_probes += 1
                if self._failed_probes % PROBE_LOG_EVERY == 0:
                    logger.debug(
                        f"[store/{self.category}] Still waiting for {primary.name} (attempt {self._failed_probes})"
                    )
            return False

        if not self._available:
            logger.info(f"[store/{self.category}] {primary.name} reachable again, switching back")
        self._available = True
        self._failed_probes = 0
        return True

    def _mark_unavailable(self) -> None:
        self._available = False
        self._failed_probes = 0


class StoreRegistry:
    """Owns one RecordStore per category plus the shared backends.

    Created by the composition root and handed to every crawl cycle; runs a
    single background thread that health-probes the preferred backend."""

    def __init__(
        self,
        settings: CrawlerSettings,
        redis_settings: Optional[RedisSettings] = None,
        primary: Optional[StorageBackend] = None,
        fallback: Optional[StorageBackend] = None,
    ) -> None:
        self._settings = settings
        self._redis_settings = redis_settings or RedisSettings()
        if primary is None and not self._redis_settings.disabled:
            primary = RedisBackend.from_settings(self._redis_settings)
        self._primary = primary
        self._fallback = fallback or JsonFileBackend(settings.data_dir)
        self._stores: Dict[str, RecordStore] = {}
        self._lock = threading.Lock()
        self._probe_stop = threading.Event()
        self._probe_thread: Optional[threading.Thread] = None

    def get(self, category: str) -> RecordStore:
        with self._lock:
            store = self._stores.get(category)
            if store is None:
                store = RecordStore(category, self._primary, self._fallback, max_records=self._settings.max_records)
                self._stores[category] = store
            return store

    def stores(self) -> List[RecordStore]:
        with self._lock:
            return list(self._stores.values())

    def probe_all(self) -> None:
        for store in self.stores():
            store.probe()

    def start_health_checks(self, interval: Optional[float] = None) -> None:
        if self._primary is None or self._probe_thread is not None:
            return
        interval = self._redis_settings.health_check_interval if interval is None else interval
        self._probe_stop.clear()
        self._probe_thread = threading.Thread(
            target=self._probe_loop, args=(interval,), name="store-health", daemon=True
        )
        self._probe_thread.start()

    def _probe_loop(self, interval: float) -> None:
        while not self._probe_stop.wait(interval):
            try:
                self.probe_all()
            except Exception as exc:  # noqa: BLE001
                logger.error(f"Health probe loop error: {exc}")

    def close(self) -> None:
        self._probe_stop.set()
        if self._probe_thread is not None:
            self._probe_thread.join(timeout=5)
            self._probe_thread = None
        for backend in (self._primary, self._fallback):
            if backend is None:
                continue
            try:
                backend.close()
            except OPERATIONAL_ERRORS as exc:
                logger.debug(f"Closing {backend.name} failed: {exc}")
