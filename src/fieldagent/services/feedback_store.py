"""Rotating, corruption tolerant append-only event store.

On-disk layout (per channel, under {work_dir}/feedback/):
    auditlog-1700000000000.1     # store 1700000000000, first file
    auditlog-1700000000000.2     # same store, rotated
    auditlog-1700000123456.1     # new store (era)

Each file is a sequence of records:
    [8-byte signed id][4-byte signed length][length bytes of payload]
"""

import logging
import re
import struct
import threading
import time
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional, Tuple

from fieldagent.exceptions import StoreCorruptedError
from fieldagent.models.event import LogRecord

HEADER = struct.Struct(">qi")

DEFAULT_STORE_SIZE = 1024 * 1024  # 1MB per channel
NUMBER_OF_FILES = 10


class StoreRecord(NamedTuple):
    id: int
    offset: int
    payload: bytes


class FeedbackStore:
    """One store file; appends are serialized and atomic for readers."""

    def __init__(self, path: Path, store_id: int):
        self.logger = logging.getLogger("fieldagent.feedback_store")
        self.path = Path(path)
        self.store_id = store_id
        self.first_event_id = 0
        self.last_event_id = 0
        self._lock = threading.RLock()
        self._valid_size = 0
        self.path.touch(exist_ok=True)
        self._file = open(self.path, "r+b")

    @property
    def closed(self) -> bool:
        return self._file.closed

    @property
    def file_size(self) -> int:
        with self._lock:
            return self.path.stat().st_size

    def init(self) -> None:
        """Scan the file for its lowest and highest record ids.

        Raises:
            StoreCorruptedError: If a record cannot be read; the valid size
                is set to the end of the last readable record
        """
        with self._lock:
            lowest, highest = 0, 0
            for record in self._scan():
                lowest = record.id if lowest == 0 else min(lowest, record.id)
                highest = max(highest, record.id)
            self.first_event_id = lowest
            self.last_event_id = highest

    def append(self, record_id: int, payload: bytes) -> None:
        """Append one record at the end of the file.

        Raises:
            OSError: On a write failure; the file position is restored to
                the last known good offset before the error propagates
        """
        with self._lock:
            position = self._file.tell()
            try:
                end = self._file.seek(0, 2)
                self._file.write(HEADER.pack(record_id, len(payload)) + payload)
                self._file.flush()
            except OSError:
                try:
                    self._file.seek(position)
                except OSError:
                    pass
                raise
            self._valid_size = end + HEADER.size + len(payload)
            if self.first_event_id == 0 or record_id < self.first_event_id:
                self.first_event_id = record_id
            self.last_event_id = max(self.last_event_id, record_id)

    def get_records(self, from_id: int, to_id: int) -> List[StoreRecord]:
        """Records whose id lies in [from_id, to_id], in file order.

        Raises:
            StoreCorruptedError: If a record cannot be read
        """
        with self._lock:
            return [record for record in self._scan() if from_id <= record.id <= to_id]

    def invalidate_from(self, offset: int) -> None:
        """Mark everything from offset on as unreadable."""
        with self._lock:
            self._valid_size = min(self._valid_size, offset)

    def truncate(self) -> None:
        """Cut the file at the end of the last known good record."""
        with self._lock:
            self._file.truncate(self._valid_size)
            self._file.seek(self._valid_size)
            self.logger.warning(
                f"Truncated feedback store #{self.store_id} at {self._valid_size} bytes: {self.path}"
            )

    def close(self) -> None:
        with self._lock:
            if not self._file.closed:
                self._file.close()

    def _scan(self):
        """Yield every record; reads through a separate handle."""
        offset = 0
        self._valid_size = 0
        with open(self.path, "rb") as f:
            while True:
                header = f.read(HEADER.size)
                if not header:
                    return
                if len(header) < HEADER.size:
                    raise StoreCorruptedError(
                        f"Unexpected end of file in record header at offset {offset}: {self.path}"
                    )
                record_id, length = HEADER.unpack(header)
                if length < 0 or record_id < 1:
                    raise StoreCorruptedError(
                        f"Invalid record header (id={record_id}, length={length}) "
                        f"at offset {offset}: {self.path}"
                    )
                payload = f.read(length)
                if len(payload) < length:
                    raise StoreCorruptedError(
                        f"Unexpected end of file, expected {length} payload bytes "
                        f"at offset {offset}: {self.path}"
                    )
                yield StoreRecord(record_id, offset, payload)
                offset += HEADER.size + length
                self._valid_size = offset


class FeedbackStoreManager:
    """Stores, rotates and cleans up the event files of one channel.

    Manages:
    - Exactly one current store file open for writing
    - Rotation to the next file number once a file reaches max_file_size
    - Cleanup of the oldest files so the channel stays within max_store_size
    - A cached highest event id per store id

    Only one manager may be open per channel directory and name.
    """

    _open_channels: Dict[Tuple[Path, str], "FeedbackStoreManager"] = {}
    _open_channels_lock = threading.Lock()

    def __init__(
        self,
        base_dir: Path,
        name: str,
        target_id: str = "",
        max_store_size: int = DEFAULT_STORE_SIZE,
        max_file_size: Optional[int] = None,
    ):
        """Initialize store manager.

        Args:
            base_dir: Directory holding the channel's store files
            name: Channel name (file name prefix)
            target_id: Originator recorded in new events
            max_store_size: Total bytes kept for the channel
            max_file_size: Bytes per file before rotation (max_store_size / 10)

        Raises:
            ValueError: If the sizes are inconsistent or a manager for this
                channel is already open
        """
        max_file_size = max_file_size or max_store_size // NUMBER_OF_FILES
        if max_file_size <= 0 or max_file_size > max_store_size:
            raise ValueError("Maximum file size must be positive and cannot exceed maximum store size")

        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._key = (self.base_dir.resolve(), name)
        with self._open_channels_lock:
            if self._key in self._open_channels:
                raise ValueError(f"Feedback store for channel '{name}' is already open in {base_dir}")
            self._open_channels[self._key] = self

        self.logger = logging.getLogger(f"fieldagent.feedback.{name}")
        self.name = name
        self.target_id = target_id
        self.max_store_size = max_store_size
        self.max_file_size = max_file_size
        self._lock = threading.RLock()
        self._closed = False
        self._current: Optional[FeedbackStore] = None
        self._highest: Dict[int, int] = {}
        self._index: Dict[int, List[int]] = {}
        self._pattern = re.compile(rf"^{re.escape(name)}-(\d+)\.(\d+)$")

        for path in self.base_dir.iterdir():
            match = self._pattern.match(path.name)
            if match:
                self._index.setdefault(int(match.group(1)), []).append(int(match.group(2)))
        for file_numbers in self._index.values():
            file_numbers.sort()

        try:
            self._open_latest_store()
        except Exception:
            self._release()
            raise

    @property
    def current_store_id(self) -> int:
        with self._lock:
            return self._current.store_id if self._current is not None else 0

    def get_all_store_ids(self) -> List[int]:
        with self._lock:
            return sorted(self._index)

    def total_size(self) -> int:
        with self._lock:
            return sum(path.stat().st_size for _, _, path in self._store_files())

    def write(self, event_type: int, properties: Optional[Dict[str, str]] = None) -> Optional[LogRecord]:
        """Append an event with the next sequential id of the current store.

        Returns:
            The written record, or None when the manager is closed

        Raises:
            OSError: If the store could not be written; the current store is
                replaced by a fresh one before the error propagates
        """
        with self._lock:
            if self._closed:
                self.logger.debug("Dropping event, feedback store is closed")
                return None

            store = self._current
            try:
                store_id = store.store_id
                record = LogRecord(
                    target_id=self.target_id,
                    store_id=store_id,
                    id=self._highest_event_id(store_id) + 1,
                    type=event_type,
                    properties=properties or {},
                )
                payload = record.to_representation().encode("utf-8")

                if store.file_size >= self.max_file_size:
                    file_number = self._index[store_id][-1] + 1
                    store = self._set_store(self._open_store(store_id, file_number))
                    self.logger.debug(f"Rotated store #{store_id} to file {file_number}")
                self._cleanup(HEADER.size + len(payload))

                store.append(record.id, payload)
                self._highest[store_id] = record.id
                return record
            except OSError as e:
                self._handle_exception(store, e)

    def get_events(self, store_id: int, from_id: int, to_id: int) -> List[LogRecord]:
        """Events of store_id with ids in [from_id, to_id], ascending; gaps are skipped.

        Raises:
            StoreCorruptedError: If a file holds an unreadable record (the
                file is truncated before the error propagates)
        """
        with self._lock:
            if self._closed:
                return []
            records: List[LogRecord] = []
            for file_number in list(self._index.get(store_id, [])):
                store = self._store_for(store_id, file_number)
                try:
                    if store is not self._current:
                        store.init()
                    if store.last_event_id < from_id or (
                        store.first_event_id and store.first_event_id > to_id
                    ):
                        continue
                    for raw in store.get_records(from_id, to_id):
                        records.append(self._decode(store, raw))
                except OSError as e:
                    self._handle_exception(store, e)
                finally:
                    if store is not self._current:
                        store.close()
            records.sort(key=lambda record: record.id)
            return records

    def get_highest_event_id(self, store_id: int) -> int:
        """Highest id written to store_id, 0 when none; cached after the first scan."""
        with self._lock:
            if self._closed:
                return 0
            return self._highest_event_id(store_id)

    def force_new_store(self) -> int:
        """Start a new store era; returns its id."""
        with self._lock:
            store = self._set_store(self._new_store())
            self.logger.info(f"Started new feedback store #{store.store_id}")
            return store.store_id

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._set_store(None)
            self._release()

    def _release(self) -> None:
        with self._open_channels_lock:
            if self._open_channels.get(self._key) is self:
                del self._open_channels[self._key]

    def _path(self, store_id: int, file_number: int) -> Path:
        return self.base_dir / f"{self.name}-{store_id}.{file_number}"

    def _open_latest_store(self) -> None:
        if not self._index:
            self._set_store(self._new_store())
            return
        store_id = max(self._index)
        store = self._open_store(store_id, self._index[store_id][-1])
        try:
            store.init()
        except OSError as e:
            self.logger.error(f"Feedback store #{store_id} is corrupted, starting a new store: {e}")
            self._set_store(store)
            self._recover(store)
            return
        self._set_store(store)

    def _open_store(self, store_id: int, file_number: int) -> FeedbackStore:
        file_numbers = self._index.setdefault(store_id, [])
        if file_number not in file_numbers:
            file_numbers.append(file_number)
            file_numbers.sort()
        return FeedbackStore(self._path(store_id, file_number), store_id)

    def _new_store(self) -> FeedbackStore:
        store_id = int(time.time() * 1000)
        if self._index:
            store_id = max(store_id, max(self._index) + 1)
        while True:
            try:
                with open(self._path(store_id, 1), "xb"):
                    break
            except FileExistsError:
                store_id += 1
        self._index[store_id] = [1]
        return FeedbackStore(self._path(store_id, 1), store_id)

    def _set_store(self, store: Optional[FeedbackStore]) -> Optional[FeedbackStore]:
        old, self._current = self._current, store
        if old is not None and old is not store:
            old.close()
        return store

    def _store_for(self, store_id: int, file_number: int) -> FeedbackStore:
        current = self._current
        if current is not None and current.path == self._path(store_id, file_number):
            return current
        return FeedbackStore(self._path(store_id, file_number), store_id)

    def _highest_event_id(self, store_id: int) -> int:
        cached = self._highest.get(store_id)
        if cached is not None:
            return cached
        highest = 0
        for file_number in reversed(self._index.get(store_id, [])):
            store = self._store_for(store_id, file_number)
            try:
                store.init()
                highest = store.last_event_id
            except OSError as e:
                self._handle_exception(store, e)
            finally:
                if store is not self._current:
                    store.close()
            if highest:
                break
        self._highest[store_id] = highest
        return highest

    def _decode(self, store: FeedbackStore, raw: StoreRecord) -> LogRecord:
        try:
            return LogRecord.from_representation(raw.payload.decode("utf-8"))
        except ValueError as e:
            store.invalidate_from(raw.offset)
            raise StoreCorruptedError(
                f"Unable to read event {raw.id} of store #{store.store_id}: {e}"
            ) from e

    def _store_files(self) -> List[Tuple[int, int, Path]]:
        """All files, oldest first (by store id, then file number)."""
        return [
            (store_id, file_number, self._path(store_id, file_number))
            for store_id in sorted(self._index)
            for file_number in self._index[store_id]
            if self._path(store_id, file_number).exists()
        ]

    def _cleanup(self, incoming: int = 0) -> None:
        """Delete the oldest files until ``incoming`` more bytes fit under the size cap.

        The current file is never deleted.
        """
        files = self._store_files()
        total = sum(path.stat().st_size for _, _, path in files)
        if total + incoming <= self.max_store_size:
            return

        current_path = self._current.path if self._current is not None else None
        for store_id, file_number, path in files:
            if total + incoming <= self.max_store_size:
                break
            if path == current_path:
                continue
            size = path.stat().st_size
            path.unlink()
            total -= size
            self._index[store_id].remove(file_number)
            if not self._index[store_id]:
                del self._index[store_id]
                self._highest.pop(store_id, None)
            self.logger.info(f"Deleted old feedback file {path.name} ({size} bytes)")

    def _handle_exception(self, store: FeedbackStore, exception: BaseException) -> None:
        """Truncate a failing store at its last good record, close it and re-raise."""
        self.logger.error(
            f"Exception caught while accessing feedback store #{store.store_id}: {exception}"
        )
        self._recover(store)
        if isinstance(exception, OSError):
            raise exception
        raise StoreCorruptedError(f"Unable to read log entry: {exception}") from exception

    def _recover(self, store: FeedbackStore) -> None:
        self._highest.pop(store.store_id, None)
        try:
            if not store.closed:
                store.truncate()
        except OSError as e:
            self.logger.error(f"Exception caught while truncating feedback store #{store.store_id}: {e}")
        if store is self._current:
            self._set_store(self._new_store())
        store.close()
